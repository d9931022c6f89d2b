"""Hypothesis tree engine: propose, test, branch, prune, confirm.

The tree is an arena of :class:`Hypothesis` nodes keyed by id. Parent and
child links are ids, never object references, and every hypothesis handed
to a caller is a value copy, so callers cannot mutate engine state.
"""

from __future__ import annotations

import copy
import re
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Set, Union

from integration.logger import get_logger

from .confidence import score_confidence, strongest
from .config import HypothesisTreeConfig
from .schema import (
    AmbiguousConfirmation,
    DepthExceeded,
    EvidenceQuery,
    EvidenceStrength,
    Hypothesis,
    HypothesisCategory,
    HypothesisNotFound,
    HypothesisStatus,
    InvalidTransition,
    TreeSnapshot,
)

_logger = get_logger(__name__)

# Valid status transitions; CONFIRMED and PRUNED are terminal.
_VALID_TRANSITIONS: Dict[HypothesisStatus, Set[HypothesisStatus]] = {
    HypothesisStatus.PENDING: {HypothesisStatus.INVESTIGATING, HypothesisStatus.PRUNED},
    HypothesisStatus.INVESTIGATING: {HypothesisStatus.CONFIRMED, HypothesisStatus.PRUNED},
    HypothesisStatus.CONFIRMED: set(),
    HypothesisStatus.PRUNED: set(),
}

_ID_RE = re.compile(r"^h(\d+)$")

Category = Union[HypothesisCategory, str]
Classification = Union[EvidenceStrength, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HypothesisTree:
    """Branching belief state about the root cause of one investigation.

    Mutations (``propose``, ``record_evidence``, ``branch``, ``prune``,
    ``confirm``, ``retest``) are serialised by a lock and validated before
    anything is committed: a rejected mutation leaves the tree untouched.
    Nothing is retried internally.

    Args:
        investigation_id: Investigation this tree belongs to.
        query: Original natural-language request.
        config: Depth limit and scoring constants.
    """

    def __init__(
        self,
        investigation_id: str,
        query: str = "",
        config: HypothesisTreeConfig | None = None,
    ) -> None:
        self.investigation_id = investigation_id
        self.query = query
        self.config = config or HypothesisTreeConfig()
        self._nodes: Dict[str, Hypothesis] = {}
        self._roots: List[str] = []
        self._counter = 0
        self._lock = threading.RLock()

    @property
    def max_depth(self) -> int:
        return self.config.max_depth

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def propose(
        self,
        parent_id: Optional[str],
        statement: str,
        category: Category,
    ) -> Hypothesis:
        """Create a new ``pending`` hypothesis.

        Args:
            parent_id: Parent hypothesis id, or ``None`` for a root.
            statement: Human-readable claim.
            category: Root-cause category.

        Returns:
            A copy of the new hypothesis.

        Raises:
            HypothesisNotFound: If *parent_id* is unknown.
            InvalidTransition: If the parent has been pruned.
            DepthExceeded: If the new node would exceed ``max_depth``.
        """
        cat = HypothesisCategory(category)
        with self._lock:
            parent = self._require(parent_id) if parent_id is not None else None
            if parent is not None and parent.status is HypothesisStatus.PRUNED:
                raise InvalidTransition(parent.id, "propose a child under", "parent is pruned")
            depth = parent.depth + 1 if parent is not None else 0
            if depth > self.config.max_depth:
                raise DepthExceeded(parent_id, depth, self.config.max_depth)

            node = self._add_node(statement, cat, parent)
            _logger.info(
                "Hypothesis proposed",
                hypothesis_id=node.id,
                parent_id=parent_id,
                depth=depth,
                category=cat.value,
            )
            return node.model_copy(deep=True)

    def record_evidence(
        self,
        hypothesis_id: str,
        query_result: Any,
        classification: Classification,
        reasoning: str,
        *,
        query: str = "",
        refutes: bool = False,
    ) -> Hypothesis:
        """Attach a query result to a hypothesis and rescore it.

        Evidence strength only ratchets upwards within a testing pass.
        The first piece of evidence moves ``pending`` to ``investigating``.
        Confidence is a running maximum within the current testing pass, so
        a refuting result never lowers the stored score while the
        hypothesis is investigated.  Use :meth:`prune` to act on
        contradicting evidence, or :meth:`retest` to score a fresh pass.

        Args:
            hypothesis_id: Target hypothesis.
            query_result: Raw result, stored for audit.
            classification: ``strong``, ``weak`` or ``none``.
            reasoning: Why the result was classified this way.
            query: Description of the evidence-gathering action.
            refutes: ``True`` if the result contradicts the hypothesis.

        Returns:
            A copy of the updated hypothesis. A confirmed hypothesis is
            returned unchanged.

        Raises:
            HypothesisNotFound: If *hypothesis_id* is unknown.
            InvalidTransition: If the hypothesis has been pruned.
        """
        strength = EvidenceStrength(classification)
        with self._lock:
            node = self._require(hypothesis_id)
            if node.status is HypothesisStatus.CONFIRMED:
                _logger.debug("Evidence ignored for confirmed hypothesis", hypothesis_id=hypothesis_id)
                return node.model_copy(deep=True)
            if node.status is HypothesisStatus.PRUNED:
                raise InvalidTransition(hypothesis_id, "record evidence for", "hypothesis is pruned")

            updated = node.model_copy(deep=True)
            entry = EvidenceQuery(
                id=f"{node.id}-q{len(node.queries) + 1}",
                description=query,
                classification=strength,
                refutes=refutes,
                test_pass=node.test_pass,
                reasoning=reasoning,
            )
            updated.queries.append(entry)
            updated.query_results[entry.id] = copy.deepcopy(query_result)
            if reasoning:
                updated.reasoning.append(reasoning)
                if refutes:
                    updated.refuting_evidence.append(reasoning)
                elif strength is not EvidenceStrength.NONE:
                    updated.confirming_evidence.append(reasoning)

            if not refutes:
                updated.evidence_strength = strongest([updated.evidence_strength, strength])
            if updated.status is HypothesisStatus.PENDING:
                self._check_transition(updated, HypothesisStatus.INVESTIGATING, "record evidence for")
                updated.status = HypothesisStatus.INVESTIGATING

            current_pass = [q for q in updated.queries if q.test_pass == updated.test_pass]
            scored = score_confidence(current_pass, self._strong_ancestors(updated), self.config)
            # running maximum within the current pass only
            floor = node.confidence if len(current_pass) > 1 else 0
            updated.confidence = max(floor, scored)
            updated.updated_at = _utcnow()
            self._nodes[hypothesis_id] = updated

            _logger.info(
                "Evidence recorded",
                hypothesis_id=hypothesis_id,
                query_id=entry.id,
                classification=strength.value,
                refutes=refutes,
                evidence_strength=updated.evidence_strength.value,
                confidence=updated.confidence,
            )
            self._warn_on_strong_siblings(updated)
            return updated.model_copy(deep=True)

    def branch(
        self,
        hypothesis_id: str,
        child_statements: Sequence[str],
        category: Category | None = None,
    ) -> List[Hypothesis]:
        """Drill into a strongly supported hypothesis with more specific children.

        Args:
            hypothesis_id: Parent hypothesis (must hold strong evidence).
            child_statements: Statements for the new children, in order.
            category: Category for the children (defaults to the parent's).

        Returns:
            Copies of the new child hypotheses.

        Raises:
            InvalidTransition: If the parent is pruned or lacks strong evidence.
            DepthExceeded: If the parent already sits at ``max_depth``.
        """
        with self._lock:
            parent = self._require(hypothesis_id)
            if parent.status is HypothesisStatus.PRUNED:
                raise InvalidTransition(hypothesis_id, "branch", "hypothesis is pruned")
            if parent.evidence_strength is not EvidenceStrength.STRONG:
                raise InvalidTransition(
                    hypothesis_id,
                    "branch",
                    f"requires strong evidence, has {parent.evidence_strength.value}",
                )
            if parent.depth >= self.config.max_depth:
                raise DepthExceeded(hypothesis_id, parent.depth + 1, self.config.max_depth)
            if not child_statements:
                raise ValueError("child_statements must not be empty")

            cat = HypothesisCategory(category) if category is not None else parent.category
            children = [self._add_node(s, cat, self._nodes[hypothesis_id]) for s in child_statements]
            _logger.info(
                "Hypothesis branched",
                hypothesis_id=hypothesis_id,
                children=[c.id for c in children],
            )
            return [c.model_copy(deep=True) for c in children]

    def prune(self, hypothesis_id: str, reason: str) -> Hypothesis:
        """Mark a hypothesis and all of its descendants as pruned.

        Descendants inherit *reason* suffixed with ``(ancestor pruned)``.
        Pruning an already-pruned hypothesis is a no-op.

        Raises:
            InvalidTransition: If the hypothesis or a descendant is confirmed.
        """
        with self._lock:
            node = self._require(hypothesis_id)
            if node.status is HypothesisStatus.PRUNED:
                return node.model_copy(deep=True)

            subtree = [node] + self._descendants(hypothesis_id)
            confirmed = [n.id for n in subtree if n.status is HypothesisStatus.CONFIRMED]
            if confirmed:
                raise InvalidTransition(
                    hypothesis_id, "prune", f"'{confirmed[0]}' in its subtree is confirmed",
                )

            inherited = f"{reason} (ancestor pruned)"
            for n in subtree:
                if n.status is HypothesisStatus.PRUNED:
                    continue
                why = reason if n.id == hypothesis_id else inherited
                self._set_status(n, HypothesisStatus.PRUNED, why)
                n.reasoning.append(f"Pruned: {why}")

            _logger.info(
                "Hypothesis pruned",
                hypothesis_id=hypothesis_id,
                cascaded=len(subtree) - 1,
                reason=reason,
            )
            return self._nodes[hypothesis_id].model_copy(deep=True)

    def confirm(self, hypothesis_id: str, reason: str | None = None) -> Hypothesis:
        """Confirm a hypothesis as the investigation's root cause.

        Confidence is frozen from here on. Confirming an already-confirmed
        hypothesis is a no-op.

        Raises:
            InvalidTransition: If pruned or not backed by strong evidence.
            AmbiguousConfirmation: If another hypothesis is already confirmed.
        """
        with self._lock:
            node = self._require(hypothesis_id)
            if node.status is HypothesisStatus.CONFIRMED:
                return node.model_copy(deep=True)
            if node.status is HypothesisStatus.PRUNED:
                raise InvalidTransition(hypothesis_id, "confirm", "hypothesis is pruned")
            if node.evidence_strength is not EvidenceStrength.STRONG:
                raise InvalidTransition(
                    hypothesis_id,
                    "confirm",
                    f"requires strong evidence, has {node.evidence_strength.value}",
                )
            others = [
                n.id for n in self._nodes.values()
                if n.status is HypothesisStatus.CONFIRMED and n.id != hypothesis_id
            ]
            if others:
                raise AmbiguousConfirmation(hypothesis_id, others)

            why = reason or f"Confirmed on strong evidence at {node.confidence}% confidence"
            self._set_status(node, HypothesisStatus.CONFIRMED, why)
            _logger.info(
                "Hypothesis confirmed",
                hypothesis_id=hypothesis_id,
                confidence=node.confidence,
            )
            return node.model_copy(deep=True)

    def retest(self, hypothesis_id: str) -> Hypothesis:
        """Start a new testing pass, resetting the evidence-strength ratchet.

        The evidence ledger is kept. Confidence keeps its last value until
        the first evidence of the new pass, which is scored from scratch.

        Raises:
            InvalidTransition: If the hypothesis has been pruned.
        """
        with self._lock:
            node = self._require(hypothesis_id)
            if node.status is HypothesisStatus.CONFIRMED:
                return node.model_copy(deep=True)
            if node.status is HypothesisStatus.PRUNED:
                raise InvalidTransition(hypothesis_id, "re-test", "hypothesis is pruned")
            node.test_pass += 1
            node.evidence_strength = EvidenceStrength.NONE
            node.updated_at = _utcnow()
            _logger.info("Hypothesis re-test started", hypothesis_id=hypothesis_id, test_pass=node.test_pass)
            return node.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, hypothesis_id: str) -> Optional[Hypothesis]:
        """Return a copy of *hypothesis_id*, or ``None``."""
        with self._lock:
            node = self._nodes.get(hypothesis_id)
            return node.model_copy(deep=True) if node is not None else None

    def roots(self) -> List[Hypothesis]:
        with self._lock:
            return [self._nodes[i].model_copy(deep=True) for i in self._roots]

    def children(self, hypothesis_id: str) -> List[Hypothesis]:
        with self._lock:
            node = self._require(hypothesis_id)
            return [self._nodes[c].model_copy(deep=True) for c in node.children]

    def all(self) -> List[Hypothesis]:
        """Return every hypothesis in depth-first tree order."""
        with self._lock:
            ordered: List[Hypothesis] = []
            for root in self._roots:
                ordered.append(self._nodes[root])
                ordered.extend(self._descendants(root))
            return [n.model_copy(deep=True) for n in ordered]

    def active_hypotheses(self) -> List[Hypothesis]:
        """Hypotheses still open for testing (pending or investigating)."""
        return [h for h in self.all() if not h.is_terminal]

    def strong_hypotheses(self) -> List[Hypothesis]:
        """Investigating hypotheses with strong evidence that can still branch."""
        return [
            h for h in self.all()
            if h.status is HypothesisStatus.INVESTIGATING
            and h.evidence_strength is EvidenceStrength.STRONG
            and h.depth < self.config.max_depth
        ]

    def confirmed(self) -> Optional[Hypothesis]:
        """Return the confirmed root cause, if any."""
        for h in self.all():
            if h.status is HypothesisStatus.CONFIRMED:
                return h
        return None

    def disambiguation_candidates(self) -> List[List[Hypothesis]]:
        """Sibling groups where two or more hypotheses hold strong evidence.

        The engine never picks one of them; the caller has to gather more
        evidence, prune, or confirm explicitly.
        """
        groups: Dict[Optional[str], List[Hypothesis]] = {}
        for h in self.all():
            if (
                h.status is HypothesisStatus.INVESTIGATING
                and h.evidence_strength is EvidenceStrength.STRONG
            ):
                groups.setdefault(h.parent_id, []).append(h)
        return [g for g in groups.values() if len(g) > 1]

    def overall_confidence(self) -> int:
        """Confidence of the confirmed root cause, else the best open hypothesis."""
        confirmed = self.confirmed()
        if confirmed is not None:
            return confirmed.confidence
        open_scores = [h.confidence for h in self.active_hypotheses()]
        return max(open_scores, default=0)

    def is_complete(self) -> bool:
        """``True`` once a root cause is confirmed or every hypothesis is closed."""
        with self._lock:
            if not self._nodes:
                return False
            if any(n.status is HypothesisStatus.CONFIRMED for n in self._nodes.values()):
                return True
            return all(n.is_terminal for n in self._nodes.values())

    def __len__(self) -> int:
        return len(self._nodes)

    # ------------------------------------------------------------------
    # Snapshot / restore
    # ------------------------------------------------------------------

    def snapshot(self) -> TreeSnapshot:
        """Return a flattened value copy of the whole tree."""
        return TreeSnapshot(
            investigation_id=self.investigation_id,
            query=self.query,
            max_depth=self.config.max_depth,
            hypotheses=self.all(),
        )

    @classmethod
    def from_snapshot(
        cls,
        snapshot: TreeSnapshot,
        config: HypothesisTreeConfig | None = None,
    ) -> "HypothesisTree":
        """Rebuild a tree from :meth:`snapshot` output (e.g. after a restart)."""
        return cls.from_hypotheses(
            snapshot.investigation_id,
            snapshot.hypotheses,
            query=snapshot.query,
            config=config or HypothesisTreeConfig(max_depth=snapshot.max_depth),
        )

    @classmethod
    def from_hypotheses(
        cls,
        investigation_id: str,
        hypotheses: Sequence[Hypothesis],
        query: str = "",
        config: HypothesisTreeConfig | None = None,
    ) -> "HypothesisTree":
        """Rebuild a tree from a flattened list of hypothesis copies."""
        tree = cls(investigation_id, query=query, config=config)
        for h in hypotheses:
            node = h.model_copy(deep=True)
            tree._nodes[node.id] = node
            if node.parent_id is None:
                tree._roots.append(node.id)
            match = _ID_RE.match(node.id)
            if match:
                tree._counter = max(tree._counter, int(match.group(1)))
        for node in tree._nodes.values():
            if node.parent_id is not None and node.parent_id not in tree._nodes:
                raise HypothesisNotFound(node.parent_id)
        return tree

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _require(self, hypothesis_id: str) -> Hypothesis:
        node = self._nodes.get(hypothesis_id)
        if node is None:
            raise HypothesisNotFound(hypothesis_id)
        return node

    def _add_node(
        self,
        statement: str,
        category: HypothesisCategory,
        parent: Optional[Hypothesis],
    ) -> Hypothesis:
        self._counter += 1
        node = Hypothesis(
            id=f"h{self._counter}",
            parent_id=parent.id if parent is not None else None,
            depth=parent.depth + 1 if parent is not None else 0,
            statement=statement,
            category=category,
        )
        self._nodes[node.id] = node
        if parent is None:
            self._roots.append(node.id)
        else:
            parent.children.append(node.id)
            parent.updated_at = _utcnow()
        return node

    def _descendants(self, hypothesis_id: str) -> List[Hypothesis]:
        out: List[Hypothesis] = []
        for child_id in self._nodes[hypothesis_id].children:
            out.append(self._nodes[child_id])
            out.extend(self._descendants(child_id))
        return out

    def _strong_ancestors(self, node: Hypothesis) -> int:
        count = 0
        parent_id = node.parent_id
        while parent_id is not None:
            parent = self._nodes[parent_id]
            if parent.evidence_strength is EvidenceStrength.STRONG:
                count += 1
            parent_id = parent.parent_id
        return count

    @staticmethod
    def _check_transition(node: Hypothesis, to: HypothesisStatus, operation: str) -> None:
        if to not in _VALID_TRANSITIONS[node.status]:
            raise InvalidTransition(
                node.id, operation, f"transition {node.status.value} -> {to.value} is not allowed",
            )

    def _set_status(self, node: Hypothesis, to: HypothesisStatus, reason: str) -> None:
        self._check_transition(node, to, to.value)
        node.status = to
        node.status_reason = reason
        node.updated_at = _utcnow()

    def _warn_on_strong_siblings(self, node: Hypothesis) -> None:
        if node.evidence_strength is not EvidenceStrength.STRONG:
            return
        siblings = (
            self._nodes[node.parent_id].children if node.parent_id is not None else self._roots
        )
        rivals = [
            s for s in siblings
            if s != node.id
            and self._nodes[s].status is HypothesisStatus.INVESTIGATING
            and self._nodes[s].evidence_strength is EvidenceStrength.STRONG
        ]
        if rivals:
            _logger.warning(
                "Sibling hypotheses share strong evidence; disambiguation required",
                hypothesis_id=node.id,
                rivals=rivals,
            )
