"""
Domain models for live cloud accounts.
Connections, discovered resources, and the results of a security/cost scan.
"""
from typing import List, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from iac_engine.domain.policy_models import Severity


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AWSCredentials:
    """Short-lived credentials. Secret fields are kept out of repr()."""
    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: Optional[str] = field(default=None, repr=False)
    region: str = "us-east-1"
    expiration: Optional[datetime] = None


@dataclass
class SecurityIssue:
    resource_type: str
    resource_id: str
    severity: Severity
    issue: str
    recommendation: str
    region: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "severity": self.severity.value,
            "issue": self.issue,
            "recommendation": self.recommendation,
            "region": self.region,
        }


@dataclass
class CostOpportunity:
    resource_type: str
    resource_id: str
    current_cost: float
    potential_savings: float
    recommendation: str
    region: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "current_cost": round(self.current_cost, 2),
            "potential_savings": round(self.potential_savings, 2),
            "recommendation": self.recommendation,
            "region": self.region,
        }


@dataclass
class CategoryResult:
    """Outcome of scanning one resource category. error is set when the category failed."""
    category: str
    issues: List[SecurityIssue] = field(default_factory=list)
    opportunities: List[CostOpportunity] = field(default_factory=list)
    scanned_count: int = 0
    error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)  # e.g. Cost Explorer figures

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "category": self.category,
            "issues": [issue.to_dict() for issue in self.issues],
            "opportunities": [opportunity.to_dict() for opportunity in self.opportunities],
            "scanned_count": self.scanned_count,
            "error": self.error,
        }


@dataclass
class ScanResult:
    """
    Aggregate of all categories for one account and region.

    partial is True whenever at least one category failed; the remaining
    categories are still reported.
    """
    account_id: Optional[str]
    region: str
    categories: Dict[str, CategoryResult]
    errors: List[str]
    cost_summary: Dict[str, Any]
    summary: Dict[str, Any]
    scanned_at: datetime = field(default_factory=utc_now)

    @property
    def partial(self) -> bool:
        return bool(self.errors)

    @property
    def security_issues(self) -> List[SecurityIssue]:
        return [issue for result in self.categories.values() for issue in result.issues]

    @property
    def cost_opportunities(self) -> List[CostOpportunity]:
        return [item for result in self.categories.values() for item in result.opportunities]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "account_id": self.account_id,
            "region": self.region,
            "partial": self.partial,
            "errors": self.errors,
            "categories": {name: result.to_dict() for name, result in self.categories.items()},
            "security_issues": [issue.to_dict() for issue in self.security_issues],
            "cost_opportunities": [item.to_dict() for item in self.cost_opportunities],
            "cost_summary": self.cost_summary,
            "summary": self.summary,
            "scanned_at": self.scanned_at.isoformat(),
        }


class ConnectionStatus(Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    FAILED = "FAILED"
    DISCONNECTED = "DISCONNECTED"


@dataclass
class CloudConnection:
    """Delegated read-only access to one cloud account."""
    id: str
    user_id: str
    name: str
    encrypted_role_arn: str
    external_id: str
    region: str
    provider: str = "aws"
    status: ConnectionStatus = ConnectionStatus.PENDING
    account_id: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Public view. The role ARN and external ID are never included."""
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider,
            "region": self.region,
            "status": self.status.value,
            "account_id": self.account_id,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class CloudResource:
    """One discovered live resource, keyed by (connection_id, resource_id)."""
    connection_id: str
    resource_id: str
    resource_type: str
    region: str
    name: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    last_synced_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "connection_id": self.connection_id,
            "resource_id": self.resource_id,
            "resource_type": self.resource_type,
            "name": self.name,
            "region": self.region,
            "metadata": self.metadata,
            "last_synced_at": self.last_synced_at.isoformat(),
        }
