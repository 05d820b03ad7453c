"""
Template comparison.

Diffs two versions of a configuration and reports what the change does to
cost and to the audit: findings introduced, findings fixed, and the score
movement. Findings are matched across versions by "policy_code:resource_ref".
"""
from typing import Any, Dict, List, Optional, Set
import difflib

from iac_engine.domain.policy_models import AuditReport, Violation
from iac_engine.services.policy_engine import PolicyEngine


def _finding_keys(report: AuditReport) -> Set[str]:
    return {
        f"{violation.policy_code}:{finding.resource_ref}"
        for violation in report.violations
        for finding in violation.findings
    }


def _only_in(report: AuditReport, other_keys: Set[str]) -> List[Dict[str, Any]]:
    """Violations of report restricted to findings whose key is absent from other_keys."""
    delta = []
    for violation in report.violations:
        findings = [
            finding for finding in violation.findings
            if f"{violation.policy_code}:{finding.resource_ref}" not in other_keys
        ]
        if findings:
            delta.append(Violation(
                policy_code=violation.policy_code,
                policy_name=violation.policy_name,
                category=violation.category,
                severity=violation.severity,
                findings=findings,
            ).to_dict())
    return delta


def unified_patch(old_content: str, new_content: str) -> str:
    return "".join(difflib.unified_diff(
        old_content.splitlines(keepends=True),
        new_content.splitlines(keepends=True),
        fromfile="Current Version",
        tofile="New Version",
    ))


async def compare_templates(
    old_content: str,
    new_content: str,
    provider: str,
    engine: Optional[PolicyEngine] = None
) -> Dict[str, Any]:
    """
    Compare two configuration versions.

    Args:
        old_content: Current configuration text
        new_content: Proposed configuration text
        provider: Cloud provider key
        engine: Policy engine to audit with (default engine if None)

    Returns:
        Dictionary with patch text, cost delta and security delta
    """
    engine = engine or PolicyEngine()
    old_report = await engine.audit_template(old_content, provider)
    new_report = await engine.audit_template(new_content, provider)

    old_cost = old_report.cost_breakdown.total_monthly
    new_cost = new_report.cost_breakdown.total_monthly

    return {
        "patch": unified_patch(old_content, new_content),
        "cost_delta": round(new_cost - old_cost, 2),
        "old_monthly_cost": round(old_cost, 2),
        "new_monthly_cost": round(new_cost, 2),
        "security_delta": {
            "new_violations": _only_in(new_report, _finding_keys(old_report)),
            "fixed_violations": _only_in(old_report, _finding_keys(new_report)),
            "total_issues_change": new_report.summary.total_issues - old_report.summary.total_issues,
            "score_change": new_report.summary.score - old_report.summary.score,
        },
    }
