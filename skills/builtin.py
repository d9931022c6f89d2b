"""Built-in operational skills shipped with the engine."""

from __future__ import annotations

from typing import Any, Dict, List

from .schema import Skill

_SCALE_SERVICE: Dict[str, Any] = {
    "id": "scale-service",
    "name": "Scale Service",
    "description": "Safely scale an ECS service or Lambda function with pre/post checks",
    "version": "1.0.0",
    "tags": ["scaling", "capacity", "ecs", "lambda"],
    "applicable_services": ["ecs", "lambda", "eks"],
    "risk_level": "medium",
    "rollback": "Scale {{ service_name }} back to {{ steps.check_current_state.result.desired_count }} instances",
    "parameters": [
        {"name": "service_type", "type": "string", "required": True,
         "enum": ["ecs", "lambda", "eks"], "description": "Type of service to scale"},
        {"name": "service_name", "type": "string", "required": True,
         "description": "Name of the service to scale"},
        {"name": "cluster", "type": "string",
         "description": "ECS/EKS cluster name (required for ecs/eks)"},
        {"name": "target_count", "type": "integer", "required": True,
         "description": "Target number of instances/tasks"},
        {"name": "reason", "type": "string", "default": "Manual scaling request",
         "description": "Reason for scaling"},
    ],
    "steps": [
        {
            "id": "check_current_state",
            "name": "Check Current State",
            "action": "aws_query",
            "parameters": {
                "query": "Get details for {{ service_type }} service {{ service_name }}",
                "services": ["{{ service_type }}"],
            },
            "on_error": "retry",
            "retry_count": 2,
            "retry_delay_ms": 1000,
            "retry_backoff": "exponential",
        },
        {
            "id": "check_alarms",
            "name": "Check for Active Alarms",
            "action": "cloudwatch_alarms",
            "parameters": {"state": "ALARM"},
            "on_error": "continue",
        },
        {
            "id": "execute_scaling",
            "name": "Execute Scaling",
            "action": "aws_mutate",
            "condition": "{{ steps.check_current_state.result.desired_count != target_count }}",
            "requires_approval": True,
            "parameters": {
                "operation": "{{ service_type }}:UpdateService",
                "resource": "{{ service_name }}",
                "parameters": {
                    "cluster": "{{ cluster }}",
                    "desired_count": "{{ target_count }}",
                },
                "description": "Scale {{ service_name }} to {{ target_count }} instances. Reason: {{ reason }}",
            },
        },
        {
            "id": "verify_scaling",
            "name": "Verify Scaling",
            "action": "aws_query",
            "parameters": {
                "query": "Get current status of {{ service_type }} service {{ service_name }}",
                "services": ["{{ service_type }}"],
            },
            "on_error": "continue",
        },
        {
            "id": "check_health",
            "name": "Check Service Health",
            "action": "cloudwatch_alarms",
            "parameters": {"state": "all"},
            "on_error": "continue",
        },
    ],
}

_ROLLBACK_DEPLOYMENT: Dict[str, Any] = {
    "id": "rollback-deployment",
    "name": "Rollback Deployment",
    "description": "Roll a service back to its previous (or a given) version",
    "version": "1.0.0",
    "tags": ["deployment", "rollback", "recovery"],
    "applicable_services": ["ecs", "lambda", "amplify"],
    "risk_level": "high",
    "rollback": "Redeploy {{ service_name }} at {{ steps.get_current_state.result.version }}",
    "parameters": [
        {"name": "service_type", "type": "string", "required": True,
         "enum": ["ecs", "lambda", "amplify"]},
        {"name": "service_name", "type": "string", "required": True},
        {"name": "cluster", "type": "string"},
        {"name": "target_version", "type": "string",
         "description": "Version to roll back to (defaults to previous)"},
        {"name": "reason", "type": "string", "required": True},
    ],
    "steps": [
        {
            "id": "get_current_state",
            "name": "Get Current State",
            "action": "aws_query",
            "parameters": {
                "query": "Get deployment history for {{ service_type }} service {{ service_name }}",
                "services": ["{{ service_type }}"],
            },
        },
        {
            "id": "search_rollback_runbook",
            "name": "Find Rollback Procedure",
            "action": "search_knowledge",
            "parameters": {"query": "rollback {{ service_type }} {{ service_name }}", "type_filter": ["runbook"]},
            "on_error": "continue",
        },
        {
            "id": "execute_rollback",
            "name": "Execute Rollback",
            "action": "aws_mutate",
            "requires_approval": True,
            "parameters": {
                "operation": "{{ service_type }}:Rollback",
                "resource": "{{ service_name }}",
                "parameters": {
                    "cluster": "{{ cluster }}",
                    "target_version": "{{ target_version }}",
                },
                "description": "Roll back {{ service_name }}. Reason: {{ reason }}",
            },
        },
        {
            "id": "verify_rollback",
            "name": "Verify Rollback",
            "action": "aws_query",
            "parameters": {"query": "Get current version of {{ service_name }}", "services": ["{{ service_type }}"]},
            "on_error": "continue",
        },
        {
            "id": "check_logs",
            "name": "Check for New Errors",
            "action": "cloudwatch_logs",
            "parameters": {"log_group": "{{ service_name }}", "filter_pattern": "ERROR", "minutes_back": 10},
            "on_error": "continue",
        },
    ],
}

_DEPLOY_SERVICE: Dict[str, Any] = {
    "id": "deploy-service",
    "name": "Deploy Service",
    "description": "Deploy a new version of a service with pre-deployment safety checks",
    "version": "1.0.0",
    "tags": ["deployment", "release"],
    "applicable_services": ["ecs", "lambda", "amplify"],
    "risk_level": "high",
    "rollback": "Roll {{ service_name }} back to {{ steps.pre_check_state.result.version }}",
    "parameters": [
        {"name": "service_type", "type": "string", "required": True,
         "enum": ["ecs", "lambda", "amplify"]},
        {"name": "service_name", "type": "string", "required": True},
        {"name": "cluster", "type": "string"},
        {"name": "image", "type": "string", "description": "Container image or artifact to deploy"},
        {"name": "force_new_deployment", "type": "boolean", "default": False},
    ],
    "steps": [
        {
            "id": "pre_check_state",
            "name": "Pre-Deployment Check",
            "action": "aws_query",
            "parameters": {"query": "Get details for {{ service_type }} service {{ service_name }}",
                           "services": ["{{ service_type }}"]},
        },
        {
            "id": "check_active_incidents",
            "name": "Check for Active Incidents",
            "action": "pagerduty_list_incidents",
            "parameters": {"status": "triggered", "service": "{{ service_name }}"},
            "on_error": "continue",
        },
        {
            "id": "check_alarms",
            "name": "Check CloudWatch Alarms",
            "action": "cloudwatch_alarms",
            "parameters": {"state": "ALARM"},
            "on_error": "continue",
        },
        {
            "id": "execute_deployment",
            "name": "Execute Deployment",
            "action": "aws_mutate",
            "requires_approval": True,
            "parameters": {
                "operation": "{{ service_type }}:UpdateService",
                "resource": "{{ service_name }}",
                "parameters": {
                    "cluster": "{{ cluster }}",
                    "image": "{{ image }}",
                    "force_new_deployment": "{{ force_new_deployment }}",
                },
                "description": "Deploy {{ image }} to {{ service_name }}",
            },
            "timeout_ms": 120000,
        },
        {
            "id": "verify_deployment",
            "name": "Verify Deployment",
            "action": "aws_query",
            "parameters": {"query": "Get deployment status of {{ service_name }}", "services": ["{{ service_type }}"]},
            "on_error": "retry",
            "retry_count": 3,
            "retry_delay_ms": 5000,
            "retry_backoff": "linear",
            "on_retries_exhausted": "continue",
        },
    ],
}


def builtin_skills() -> List[Skill]:
    """Return freshly validated copies of the built-in skills."""
    return [
        Skill.model_validate(d)
        for d in (_SCALE_SERVICE, _ROLLBACK_DEPLOYMENT, _DEPLOY_SERVICE)
    ]
