"""
Policy engine service.

Runs the active policies for a provider against a parsed configuration and
produces a scored AuditReport. Each evaluator runs in isolation: one that
raises is logged, recorded in the report's policy_errors and treated as
having found nothing, and the rest of the audit carries on.
"""
from typing import Dict, List, Optional, Tuple
from datetime import datetime, timezone
import logging
import uuid

from iac_engine.core.config import config
from iac_engine.core.errors import ConflictError, NotFoundError, ValidationError
from iac_engine.domain.hcl_models import ParsedConfiguration, ValueKind
from iac_engine.domain.policy_models import (
    AuditReport,
    AuditSummary,
    Policy,
    SEVERITY_ORDER,
    Violation,
)
from iac_engine.parsing.hcl_parser import parse
from iac_engine.policies.registry import (
    PolicyContext,
    PolicyDefinition,
    builtin_policy_definitions,
    get_policy_definition,
)
from iac_engine.services.cost_service import CostService
from iac_engine.services.store import InMemoryStore, get_store


logger = logging.getLogger(__name__)

# User-defined evaluators live for the life of the process, next to the built-ins
_custom_definitions: Dict[str, PolicyDefinition] = {}


def _resolve_definition(code: str) -> Optional[PolicyDefinition]:
    return get_policy_definition(code) or _custom_definitions.get(code)


def provider_region(parsed: ParsedConfiguration, provider: str) -> str:
    """Region from the first provider block with a literal region, else the default."""
    for block in parsed.provider_blocks:
        if block.type != provider:
            continue
        region = block.properties.get("region")
        if region is not None and region.kind == ValueKind.STRING:
            return region.value
    return config.AWS_DEFAULT_REGION


class PolicyEngine:
    """Policy catalog management and auditing."""

    def __init__(self, store: Optional[InMemoryStore] = None, cost_service: Optional[CostService] = None):
        self.store = store or get_store()
        self.cost_service = cost_service or CostService()

    async def seed_builtin_policies(self) -> int:
        """
        Upsert every built-in policy by code.

        Metadata of existing rows is refreshed but is_active is left alone,
        so an operator's toggle survives restarts.

        Returns:
            Number of policies newly created
        """
        created = 0
        for definition in builtin_policy_definitions():
            existing = await self.store.get("policies", definition.code)
            row = definition.to_policy()
            if existing is None:
                created += 1
            else:
                row.is_active = existing.is_active
                row.created_at = existing.created_at
            await self.store.put("policies", definition.code, row)

        logger.info(f"Seeded built-in policies ({created} new)")
        return created

    async def register_custom_policy(self, definition: PolicyDefinition) -> Policy:
        """
        Add a user-defined policy. Never overwrites an existing code.

        Raises:
            ValidationError: If the code is empty
            ConflictError: If the code belongs to a built-in or is already registered
        """
        if not definition.code:
            raise ValidationError("Policy code is required")
        if get_policy_definition(definition.code) is not None:
            raise ConflictError(f"Policy code {definition.code} is reserved for a built-in policy")
        if await self.store.get("policies", definition.code) is not None:
            raise ConflictError(f"Policy code {definition.code} already exists")

        definition.is_built_in = False
        _custom_definitions[definition.code] = definition
        row = definition.to_policy()
        await self.store.put("policies", definition.code, row)
        return row

    async def ensure_seeded(self) -> None:
        """Seed the built-ins when the catalog holds none of them."""
        built_in = await self.store.list("policies", lambda policy: policy.is_built_in)
        if not built_in:
            await self.seed_builtin_policies()

    async def get_active_policies(self, provider: str) -> List[Tuple[Policy, PolicyDefinition]]:
        """Active catalog rows for a provider (or 'all') that have an evaluator."""
        await self.ensure_seeded()
        rows = await self.store.list(
            "policies",
            lambda policy: policy.is_active and policy.provider in (provider, "all"),
        )
        active = []
        for row in rows:
            definition = _resolve_definition(row.code)
            if definition is None:
                logger.warning(f"Policy {row.code} has no evaluator; skipping")
                continue
            active.append((row, definition))
        return active

    async def audit_configuration(
        self,
        parsed: ParsedConfiguration,
        provider: str,
        raw_content: str = "",
        template_id: Optional[str] = None
    ) -> AuditReport:
        """
        Evaluate all active policies and score the result.

        Args:
            parsed: Parsed configuration
            provider: Cloud provider key (e.g. 'aws')
            raw_content: Original text, for text-scanning policies
            template_id: Template the audit belongs to, if persisted

        Returns:
            AuditReport (not saved)
        """
        context = PolicyContext(
            parsed=parsed,
            provider=provider,
            raw_content=raw_content,
            template_id=template_id,
        )

        violations: List[Violation] = []
        policy_errors: List[str] = []
        passed_checks = 0

        for policy, definition in await self.get_active_policies(provider):
            try:
                findings = definition.check(context)
            except Exception as error:
                logger.warning(f"Policy {policy.code} failed to evaluate: {error}", exc_info=True)
                policy_errors.append(policy.code)
                passed_checks += 1
                continue

            if not findings:
                passed_checks += 1
                continue

            violations.append(Violation(
                policy_code=policy.code,
                policy_name=policy.name,
                category=policy.category,
                severity=policy.severity,
                findings=list(findings),
            ))

        violations.sort(key=lambda violation: SEVERITY_ORDER[violation.severity])

        cost_breakdown = await self.cost_service.analyze_template_cost(
            parsed.resources, provider_region(parsed, provider)
        )

        return AuditReport(
            id=str(uuid.uuid4()),
            template_id=template_id,
            provider=provider,
            violations=violations,
            cost_breakdown=cost_breakdown,
            summary=AuditSummary.from_violations(violations, passed_checks),
            created_at=datetime.now(timezone.utc),
            policy_errors=policy_errors,
            parse_warnings=list(parsed.parse_warnings),
        )

    async def audit_template(
        self,
        content: str,
        provider: str,
        template_id: Optional[str] = None
    ) -> AuditReport:
        """Parse configuration text and audit it."""
        if not isinstance(content, str):
            raise ValidationError("Configuration content must be text")
        parsed = parse(content)
        return await self.audit_configuration(parsed, provider, raw_content=content, template_id=template_id)

    async def save_report(self, report: AuditReport) -> str:
        """
        Append a report to its template's history. Earlier reports are never touched.

        Raises:
            ValidationError: If the report has no template_id
        """
        if not report.template_id:
            raise ValidationError("Only reports for a saved template can be stored")
        await self.store.append_report(report)
        return report.id

    async def list_reports(self, template_id: str) -> List[AuditReport]:
        """Report history for a template, newest first."""
        return await self.store.list_reports(template_id)

    async def get_latest_report(self, template_id: str) -> Optional[AuditReport]:
        reports = await self.store.list_reports(template_id)
        return reports[0] if reports else None

    async def list_policies(self, provider: Optional[str] = None) -> List[Policy]:
        """Catalog ordered by category, severity, then code."""
        await self.ensure_seeded()
        policies = await self.store.list(
            "policies",
            None if provider is None else (lambda policy: policy.provider in (provider, "all")),
        )
        policies.sort(key=lambda policy: (policy.category.value, SEVERITY_ORDER[policy.severity], policy.code))
        return policies

    async def toggle_policy(self, code: str, is_active: bool) -> Policy:
        """
        Activate or deactivate a policy. Inactive policies stay in the catalog.

        Raises:
            NotFoundError: If no policy has that code
        """
        await self.ensure_seeded()
        policy = await self.store.get("policies", code)
        if policy is None:
            raise NotFoundError("Policy")
        policy.is_active = is_active
        policy.updated_at = datetime.now(timezone.utc)
        await self.store.put("policies", code, policy)
        logger.info(f"Policy {code} {'activated' if is_active else 'deactivated'}")
        return policy
