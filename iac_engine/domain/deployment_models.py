"""
Domain models for templates, deployment credentials and deployments.
"""
from typing import Any, Dict, Optional
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from iac_engine.domain.cloud_models import utc_now


class DeploymentStatus(Enum):
    PLANNING = "PLANNING"
    PLAN_READY = "PLAN_READY"
    APPLYING = "APPLYING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    DESTROYING = "DESTROYING"
    DESTROYED = "DESTROYED"


# One-directional; DESTROYED is terminal
ALLOWED_TRANSITIONS: Dict[DeploymentStatus, frozenset] = {
    DeploymentStatus.PLANNING: frozenset({DeploymentStatus.PLAN_READY, DeploymentStatus.FAILED}),
    DeploymentStatus.PLAN_READY: frozenset({DeploymentStatus.APPLYING}),
    DeploymentStatus.APPLYING: frozenset({DeploymentStatus.SUCCEEDED, DeploymentStatus.FAILED}),
    DeploymentStatus.SUCCEEDED: frozenset({DeploymentStatus.DESTROYING}),
    DeploymentStatus.FAILED: frozenset({DeploymentStatus.DESTROYING}),
    DeploymentStatus.DESTROYING: frozenset({DeploymentStatus.DESTROYED, DeploymentStatus.FAILED}),
    DeploymentStatus.DESTROYED: frozenset(),
}

# Statuses with a provisioning operation in flight or pending
IN_PROGRESS_STATUSES = frozenset({
    DeploymentStatus.PLANNING,
    DeploymentStatus.PLAN_READY,
    DeploymentStatus.APPLYING,
    DeploymentStatus.DESTROYING,
})


def can_transition(current: DeploymentStatus, target: DeploymentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


@dataclass
class PlanSummary:
    add: int = 0
    change: int = 0
    destroy: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"add": self.add, "change": self.change, "destroy": self.destroy}


@dataclass
class Template:
    """A saved configuration. Deployments reference it by ID."""
    id: str
    user_id: str
    name: str
    content: str
    provider: str = "aws"
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self, include_content: bool = True) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = {
            "id": self.id,
            "name": self.name,
            "provider": self.provider,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
        }
        if include_content:
            data["content"] = self.content
        return data


@dataclass
class DeploymentCredential:
    """Delegated deploy access. The role ARN is held encrypted."""
    id: str
    user_id: str
    name: str
    encrypted_role_arn: str
    external_id: str
    provider: str = "aws"
    is_active: bool = True
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Public view; never includes the ARN."""
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider,
            "is_active": self.is_active,
            "external_id": self.external_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class Deployment:
    """
    One provisioning attempt against a template snapshot.

    Holds no credentials: access keys and session tokens only ever exist in
    the ephemeral workspace.
    """
    id: str
    user_id: str
    template_id: str
    credential_id: str
    region: str
    status: DeploymentStatus = DeploymentStatus.PLANNING
    plan_summary: Optional[PlanSummary] = None
    plan_output: Optional[str] = None
    apply_output: Optional[str] = None
    audit_score: Optional[int] = None
    audit_issues: Optional[int] = None
    resource_count: int = 0
    estimated_cost: Optional[float] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "template_id": self.template_id,
            "credential_id": self.credential_id,
            "region": self.region,
            "status": self.status.value,
            "plan_summary": self.plan_summary.to_dict() if self.plan_summary else None,
            "plan_output": self.plan_output,
            "apply_output": self.apply_output,
            "audit_score": self.audit_score,
            "audit_issues": self.audit_issues,
            "resource_count": self.resource_count,
            "estimated_cost": self.estimated_cost,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
