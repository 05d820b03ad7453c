"""
Domain models for policies and audit reports.
Defines policies, the findings they produce, and the scored report.
"""
from typing import List, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class Severity(Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INFO = "INFO"


class PolicyCategory(Enum):
    SECURITY = "SECURITY"
    COST = "COST"
    RELIABILITY = "RELIABILITY"
    PERFORMANCE = "PERFORMANCE"
    COMPLIANCE = "COMPLIANCE"


# Score deduction per finding; must stay strictly decreasing CRITICAL -> INFO
SEVERITY_WEIGHTS: Dict[Severity, int] = {
    Severity.CRITICAL: 25,
    Severity.HIGH: 15,
    Severity.MEDIUM: 5,
    Severity.LOW: 2,
    Severity.INFO: 1,
}

SEVERITY_ORDER: Dict[Severity, int] = {
    severity: index for index, severity in enumerate(SEVERITY_WEIGHTS)
}

MAX_SCORE = 100


@dataclass
class Policy:
    """Catalog row for a policy. Inactive policies are kept but never evaluated."""
    code: str
    name: str
    description: str
    provider: str  # "aws" | "all"
    category: PolicyCategory
    severity: Severity
    is_built_in: bool = True
    is_active: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "provider": self.provider,
            "category": self.category.value,
            "severity": self.severity.value,
            "is_built_in": self.is_built_in,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class Finding:
    """One policy match against one resource (or the template as a whole)."""
    resource_ref: str  # e.g. "aws_s3_bucket.main" or "template"
    resource_type: str
    message: str
    line: Optional[int] = None
    suggestion: Optional[str] = None
    auto_fixable: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "resource_ref": self.resource_ref,
            "resource_type": self.resource_type,
            "line": self.line,
            "message": self.message,
            "suggestion": self.suggestion,
            "auto_fixable": self.auto_fixable,
            "metadata": self.metadata,
        }


@dataclass
class Violation:
    """All findings of one policy in one audit run."""
    policy_code: str
    policy_name: str
    category: PolicyCategory
    severity: Severity
    findings: List[Finding]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "policy_code": self.policy_code,
            "policy_name": self.policy_name,
            "category": self.category.value,
            "severity": self.severity.value,
            "findings": [finding.to_dict() for finding in self.findings],
        }


@dataclass
class CostLineItem:
    """Estimated monthly cost of a single resource."""
    resource_ref: str
    resource_type: str
    service: str
    region: str
    monthly_cost_usd: float
    description: str = ""
    priced: bool = True  # False when estimation failed and the row is a $0 placeholder

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "resource_ref": self.resource_ref,
            "resource_type": self.resource_type,
            "service": self.service,
            "region": self.region,
            "monthly_cost_usd": round(self.monthly_cost_usd, 2),
            "description": self.description,
            "priced": self.priced,
        }


@dataclass
class CostBreakdown:
    total_monthly: float
    by_service: Dict[str, float]
    line_items: List[CostLineItem] = field(default_factory=list)
    currency: str = "USD"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        sorted_items = sorted(
            self.line_items,
            key=lambda x: x.monthly_cost_usd,
            reverse=True
        )
        return {
            "currency": self.currency,
            "total_monthly": round(self.total_monthly, 2),
            "by_service": {service: round(cost, 2) for service, cost in self.by_service.items()},
            "line_items": [item.to_dict() for item in sorted_items],
        }


@dataclass
class AuditSummary:
    total_issues: int
    critical_count: int
    high_count: int
    medium_count: int
    low_count: int
    info_count: int
    passed_checks: int
    score: int

    @classmethod
    def from_violations(cls, violations: List[Violation], passed_checks: int) -> "AuditSummary":
        """
        Count findings per severity and compute the 0-100 score.

        Every finding deducts its severity weight; the score floors at 0.
        """
        counts = {severity: 0 for severity in Severity}
        for violation in violations:
            counts[violation.severity] += len(violation.findings)

        penalty = sum(SEVERITY_WEIGHTS[severity] * count for severity, count in counts.items())
        return cls(
            total_issues=sum(counts.values()),
            critical_count=counts[Severity.CRITICAL],
            high_count=counts[Severity.HIGH],
            medium_count=counts[Severity.MEDIUM],
            low_count=counts[Severity.LOW],
            info_count=counts[Severity.INFO],
            passed_checks=passed_checks,
            score=max(0, MAX_SCORE - penalty),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "total_issues": self.total_issues,
            "critical_count": self.critical_count,
            "high_count": self.high_count,
            "medium_count": self.medium_count,
            "low_count": self.low_count,
            "info_count": self.info_count,
            "passed_checks": self.passed_checks,
            "score": self.score,
        }


@dataclass
class AuditReport:
    """Scored snapshot of one audit run. Never modified after it is saved."""
    id: str
    template_id: Optional[str]
    provider: str
    violations: List[Violation]
    cost_breakdown: CostBreakdown
    summary: AuditSummary
    created_at: datetime
    policy_errors: List[str] = field(default_factory=list)  # Codes whose evaluator raised
    parse_warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "template_id": self.template_id or "inline",
            "provider": self.provider,
            "violations": [violation.to_dict() for violation in self.violations],
            "cost_breakdown": self.cost_breakdown.to_dict(),
            "summary": self.summary.to_dict(),
            "policy_errors": self.policy_errors,
            "parse_warnings": self.parse_warnings,
            "created_at": self.created_at.isoformat(),
        }
