"""Approval gate: suspension points that need an explicit external decision.

Every request is resolved exactly once, by an explicit approval, an explicit
denial, or expiry. Resolutions are appended to a JSON-lines audit trail when
``approval_audit_log_path`` is configured.
"""

from __future__ import annotations

import json
import math
import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from integration.logger import get_logger

from .config import SkillEngineConfig
from .schema import (
    AlreadyResolved,
    ApprovalAlreadyPending,
    ApprovalDecision,
    ApprovalNotFound,
    ApprovalRequest,
    ApprovalState,
    CriticalCooldownActive,
    RiskLevel,
)

_logger = get_logger(__name__)

RISK_DESCRIPTIONS: Dict[RiskLevel, str] = {
    RiskLevel.LOW: "Low risk - easily reversible, minimal impact",
    RiskLevel.MEDIUM: "Medium risk - may affect service briefly",
    RiskLevel.HIGH: "High risk - may cause service disruption",
    RiskLevel.CRITICAL: "Critical risk - may cause significant downtime or data loss",
}

_CRITICAL_VERBS = ("delete", "terminate", "destroy", "truncate", "drop")
_HIGH_VERBS = ("restart", "reboot", "stop", "deploy", "update-service")
_MEDIUM_VERBS = ("update", "modify", "change")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def classify_risk(operation: str, resource: str = "") -> RiskLevel:
    """Heuristic risk level for a mutating *operation* on *resource*."""
    op = operation.lower()
    res = resource.lower()

    if any(v in op for v in _CRITICAL_VERBS):
        return RiskLevel.CRITICAL
    if "prod" in res and ("update" in op or "modify" in op):
        return RiskLevel.HIGH
    if any(v in op for v in _HIGH_VERBS):
        return RiskLevel.HIGH
    if "scale" in op and "down" in res:
        return RiskLevel.HIGH
    if any(v in op for v in _MEDIUM_VERBS) or "scale" in op:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def can_auto_approve(risk_level: RiskLevel, auto_approve: Iterable[RiskLevel]) -> bool:
    """``True`` if *risk_level* is configured for auto-approval (never critical)."""
    if risk_level is RiskLevel.CRITICAL:
        return False
    return risk_level in set(auto_approve)


class ApprovalGate:
    """Issue and resolve approval requests; one outstanding request per session.

    Args:
        config: Engine configuration (default timeout, audit log path).
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        config: SkillEngineConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config or SkillEngineConfig()
        self._clock = clock
        self._requests: Dict[str, ApprovalRequest] = {}
        self._pending_by_session: Dict[str, str] = {}
        self._audit: List[Dict[str, Any]] = []
        self._last_critical_approval: Optional[datetime] = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def request(
        self,
        session_id: str,
        skill_id: str,
        step_id: str,
        action: str,
        parameters: Dict[str, Any],
        risk_level: RiskLevel,
        rollback_command: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> ApprovalRequest:
        """Open a new pending request for *session_id*.

        Raises:
            ApprovalAlreadyPending: If the session already awaits a decision.
        """
        window = timeout_ms or self.config.default_approval_timeout_ms
        with self._lock:
            existing = self._pending_by_session.get(session_id)
            if existing is not None:
                raise ApprovalAlreadyPending(session_id, existing)
            issued = self._clock()
            req = ApprovalRequest(
                id=f"apr-{uuid.uuid4().hex[:12]}",
                session_id=session_id,
                skill_id=skill_id,
                step_id=step_id,
                action=action,
                parameters=dict(parameters),
                risk_level=risk_level,
                rollback_command=rollback_command,
                issued_at=issued,
                expires_at=issued + timedelta(milliseconds=window),
            )
            self._requests[req.id] = req
            self._pending_by_session[session_id] = req.id

        _logger.info(
            "Approval requested",
            approval_id=req.id,
            session_id=session_id,
            step_id=step_id,
            action=action,
            risk_level=risk_level.value,
        )
        return req.model_copy(deep=True)

    def restore(self, request: ApprovalRequest) -> ApprovalRequest:
        """Re-register a checkpointed request after a process restart."""
        with self._lock:
            current = self._requests.get(request.id)
            if current is not None:
                return current.model_copy(deep=True)
            self._requests[request.id] = request.model_copy(deep=True)
            if request.state is ApprovalState.PENDING:
                self._pending_by_session[request.session_id] = request.id
            elif (
                request.state is ApprovalState.APPROVED
                and request.risk_level is RiskLevel.CRITICAL
                and request.resolved_at is not None
                and (self._last_critical_approval is None or request.resolved_at > self._last_critical_approval)
            ):
                self._last_critical_approval = request.resolved_at
        _logger.info("Approval restored", approval_id=request.id, state=request.state.value)
        return request.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Resolve
    # ------------------------------------------------------------------

    def resolve(
        self,
        approval_id: str,
        decision: ApprovalDecision | str,
        approver: str,
        reason: Optional[str] = None,
    ) -> ApprovalRequest:
        """Resolve *approval_id*; the first resolution wins.

        A request whose window has already lapsed resolves to ``timeout``
        regardless of *decision*.  Approving a critical request is refused
        while another critical approval is younger than
        ``critical_cooldown_ms``; the request stays pending.

        Raises:
            ApprovalNotFound: If the id is unknown.
            AlreadyResolved: If the request was already resolved.
            CriticalCooldownActive: If a critical approval comes too soon.
        """
        choice = ApprovalDecision(decision)
        with self._lock:
            req = self._requests.get(approval_id)
            if req is None:
                raise ApprovalNotFound(approval_id)
            if req.is_resolved:
                raise AlreadyResolved(approval_id, req.state)
            now = self._clock()
            if req.expires_at is not None and now >= req.expires_at:
                resolved = self._finish(req, ApprovalState.TIMEOUT, "system", "approval window expired", now)
            else:
                state = ApprovalState(choice.value)
                if state is ApprovalState.APPROVED and req.risk_level is RiskLevel.CRITICAL:
                    remaining = self._cooldown_remaining_ms(now)
                    if remaining > 0:
                        _logger.warning(
                            "Critical approval refused during cooldown",
                            approval_id=approval_id,
                            session_id=req.session_id,
                            remaining_ms=remaining,
                        )
                        raise CriticalCooldownActive(approval_id, remaining)
                    self._last_critical_approval = now
                resolved = self._finish(req, state, approver, reason, now)
        self._log_resolution(resolved)
        return resolved.model_copy(deep=True)

    def expire_stale(self) -> List[ApprovalRequest]:
        """Resolve every overdue pending request to ``timeout``."""
        expired: List[ApprovalRequest] = []
        with self._lock:
            now = self._clock()
            for req in list(self._requests.values()):
                if req.is_resolved or req.expires_at is None or now < req.expires_at:
                    continue
                expired.append(
                    self._finish(req, ApprovalState.TIMEOUT, "system", "approval window expired", now)
                )
        for req in expired:
            self._log_resolution(req)
        return [r.model_copy(deep=True) for r in expired]

    def auto_approve(self, request: ApprovalRequest) -> ApprovalRequest:
        """Resolve *request* as approved by policy."""
        return self.resolve(
            request.id,
            ApprovalDecision.APPROVED,
            approver="auto-approve",
            reason=f"risk level {request.risk_level.value} is auto-approved",
        )

    def forget(self, session_id: str) -> int:
        """Drop resolved requests and in-memory audit entries of *session_id*.

        A pending request is kept. The JSON-lines audit file is untouched.
        Returns the number of requests dropped.
        """
        with self._lock:
            dropped = [
                rid for rid, req in self._requests.items()
                if req.session_id == session_id and req.is_resolved
            ]
            for rid in dropped:
                del self._requests[rid]
            self._audit = [e for e in self._audit if e["session_id"] != session_id]
        return len(dropped)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, approval_id: str) -> Optional[ApprovalRequest]:
        with self._lock:
            req = self._requests.get(approval_id)
            return req.model_copy(deep=True) if req is not None else None

    def pending(self) -> List[ApprovalRequest]:
        with self._lock:
            return [
                self._requests[i].model_copy(deep=True)
                for i in self._pending_by_session.values()
            ]

    def audit_trail(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(e) for e in self._audit]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _finish(
        self,
        req: ApprovalRequest,
        state: ApprovalState,
        approver: str,
        reason: Optional[str],
        now: datetime,
    ) -> ApprovalRequest:
        resolved = req.model_copy(
            update={"state": state, "approver": approver, "reason": reason, "resolved_at": now}
        )
        self._requests[req.id] = resolved
        self._pending_by_session.pop(req.session_id, None)
        entry = {
            "timestamp": now.isoformat(),
            "id": resolved.id,
            "session_id": resolved.session_id,
            "skill_id": resolved.skill_id,
            "step_id": resolved.step_id,
            "action": resolved.action,
            "risk_level": resolved.risk_level.value,
            "state": state.value,
            "approved": state is ApprovalState.APPROVED,
            "approver": approver,
            "reason": reason,
        }
        self._audit.append(entry)
        self._write_audit(entry)
        return resolved

    def _cooldown_remaining_ms(self, now: datetime) -> int:
        window = self.config.critical_cooldown_ms
        if not window or self._last_critical_approval is None:
            return 0
        elapsed = (now - self._last_critical_approval).total_seconds() * 1000.0
        return max(0, math.ceil(window - elapsed))

    def _write_audit(self, entry: Dict[str, Any]) -> None:
        path = self.config.approval_audit_log_path
        if not path:
            return
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(entry) + "\n")

    @staticmethod
    def _log_resolution(req: ApprovalRequest) -> None:
        _logger.info(
            "Approval resolved",
            approval_id=req.id,
            session_id=req.session_id,
            state=req.state.value,
            approver=req.approver,
        )
