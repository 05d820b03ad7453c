"""
Tests for the policy engine: scoring, isolation and catalog management.
"""

import pytest
from iac_engine.core.errors import ConflictError, NotFoundError, ValidationError
from iac_engine.domain.policy_models import AuditSummary, PolicyCategory, Severity, Violation
from iac_engine.policies.registry import PolicyDefinition, builtin_policy_definitions
from iac_engine.services.cost_service import CostService
from iac_engine.services.policy_engine import PolicyEngine
from iac_engine.services.pricing_estimator import PricingEstimator
from iac_engine.services.store import InMemoryStore
from iac_engine.services.template_diff import compare_templates


async def seeded_engine() -> PolicyEngine:
    engine = PolicyEngine(InMemoryStore(), CostService(PricingEstimator(use_network=False)))
    await engine.seed_builtin_policies()
    return engine


def codes(report):
    return {violation.policy_code for violation in report.violations}


@pytest.mark.asyncio
async def test_open_ssh_yields_single_critical_finding(open_ssh_config, secure_bucket_config):
    """One world-open SSH rule next to a locked-down bucket costs exactly one CRITICAL deduction."""
    engine = await seeded_engine()

    report = await engine.audit_template(open_ssh_config + secure_bucket_config, 'aws')

    assert codes(report) == {'SEC002'}
    assert report.summary.critical_count == 1
    assert report.summary.total_issues == 1
    assert report.summary.score == 75
    finding = report.violations[0].findings[0]
    assert finding.resource_ref == 'aws_security_group.bastion'
    assert finding.metadata['port'] == 22
    for storage_code in ('SEC001', 'SEC009', 'SEC020'):
        assert storage_code not in codes(report)


@pytest.mark.asyncio
async def test_empty_configuration_scores_100():
    engine = await seeded_engine()

    report = await engine.audit_template('', 'aws')

    assert report.violations == []
    assert report.summary.score == 100
    assert report.cost_breakdown.total_monthly == 0


@pytest.mark.asyncio
async def test_audit_is_idempotent(open_ssh_config):
    engine = await seeded_engine()

    first = await engine.audit_template(open_ssh_config, 'aws')
    second = await engine.audit_template(open_ssh_config, 'aws')

    assert first.id != second.id
    assert first.summary.to_dict() == second.summary.to_dict()
    assert [v.to_dict() for v in first.violations] == [v.to_dict() for v in second.violations]


@pytest.mark.asyncio
async def test_adding_a_violation_never_raises_the_score(secure_bucket_config, open_ssh_config):
    engine = await seeded_engine()

    clean = await engine.audit_template(secure_bucket_config, 'aws')
    worse = await engine.audit_template(secure_bucket_config + open_ssh_config, 'aws')

    assert worse.summary.score <= clean.summary.score
    assert worse.summary.total_issues > clean.summary.total_issues


@pytest.mark.asyncio
async def test_violations_are_ordered_by_severity():
    engine = await seeded_engine()
    report = await engine.audit_template('''
resource "aws_instance" "web" {
  ami           = "ami-123"
  instance_type = "m5.4xlarge"
}

resource "aws_security_group" "db" {
  ingress {
    from_port   = 3306
    to_port     = 3306
    protocol    = "tcp"
    cidr_blocks = ["0.0.0.0/0"]
  }
}
''', 'aws')

    weights = [violation.severity for violation in report.violations]
    order = list(Severity)
    assert weights == sorted(weights, key=order.index)
    assert report.violations[0].severity == Severity.CRITICAL
    assert 'COST002' in codes(report)


def test_score_floors_at_zero():
    violations = [
        Violation('SEC002', 'x', PolicyCategory.SECURITY, Severity.CRITICAL, findings=[object()] * 5),
    ]

    summary = AuditSummary.from_violations(violations, passed_checks=0)

    assert summary.score == 0
    assert summary.critical_count == 5


@pytest.mark.asyncio
async def test_failing_evaluator_is_isolated(open_ssh_config):
    """An evaluator that raises is recorded and the rest of the audit still runs."""
    engine = await seeded_engine()

    def explode(context):
        raise RuntimeError('boom')

    await engine.register_custom_policy(PolicyDefinition(
        code='CUSTOM_BROKEN',
        name='Broken rule',
        description='Always raises',
        provider='aws',
        category=PolicyCategory.COMPLIANCE,
        severity=Severity.HIGH,
        check=explode,
    ))

    report = await engine.audit_template(open_ssh_config, 'aws')

    assert report.policy_errors == ['CUSTOM_BROKEN']
    assert 'SEC002' in codes(report)
    assert 'CUSTOM_BROKEN' not in codes(report)


@pytest.mark.asyncio
async def test_custom_policy_cannot_shadow_builtin():
    engine = await seeded_engine()

    with pytest.raises(ConflictError):
        await engine.register_custom_policy(PolicyDefinition(
            code='SEC002',
            name='Shadow',
            description='',
            provider='aws',
            category=PolicyCategory.SECURITY,
            severity=Severity.LOW,
            check=lambda context: [],
        ))


@pytest.mark.asyncio
async def test_inactive_policy_is_not_evaluated(open_ssh_config):
    engine = await seeded_engine()

    policy = await engine.toggle_policy('SEC002', False)
    report = await engine.audit_template(open_ssh_config, 'aws')

    assert policy.is_active is False
    assert 'SEC002' not in codes(report)
    assert any(row.code == 'SEC002' for row in await engine.list_policies('aws'))


@pytest.mark.asyncio
async def test_reseeding_keeps_toggles_and_creates_nothing():
    engine = await seeded_engine()
    await engine.toggle_policy('SEC006', False)

    created = await engine.seed_builtin_policies()
    policies = {policy.code: policy for policy in await engine.list_policies()}

    assert created == 0
    assert len(policies) == len(builtin_policy_definitions())
    assert policies['SEC006'].is_active is False


@pytest.mark.asyncio
async def test_toggle_unknown_policy_raises():
    engine = await seeded_engine()

    with pytest.raises(NotFoundError):
        await engine.toggle_policy('NOPE', True)


@pytest.mark.asyncio
async def test_report_history_is_append_only(open_ssh_config):
    engine = await seeded_engine()

    first = await engine.audit_template(open_ssh_config, 'aws', template_id='tpl-1')
    await engine.save_report(first)
    second = await engine.audit_template('', 'aws', template_id='tpl-1')
    await engine.save_report(second)

    history = await engine.list_reports('tpl-1')
    latest = await engine.get_latest_report('tpl-1')

    assert [report.id for report in history] == [second.id, first.id]
    assert latest.id == second.id
    assert history[1].summary.score == 75 - 15  # SEC006 also fires without CloudTrail


@pytest.mark.asyncio
async def test_reports_without_template_are_not_saved():
    engine = await seeded_engine()
    report = await engine.audit_template('', 'aws')

    with pytest.raises(ValidationError):
        await engine.save_report(report)


@pytest.mark.asyncio
async def test_compare_templates_reports_fixed_and_new_findings(open_ssh_config, secure_bucket_config):
    engine = await seeded_engine()

    comparison = await compare_templates(
        secure_bucket_config + open_ssh_config,
        secure_bucket_config,
        'aws',
        engine=engine,
    )

    fixed = comparison['security_delta']['fixed_violations']
    assert [violation['policy_code'] for violation in fixed] == ['SEC002']
    assert comparison['security_delta']['new_violations'] == []
    assert comparison['security_delta']['score_change'] == 25
    assert comparison['patch'].startswith('--- Current Version')


@pytest.mark.asyncio
async def test_unseeded_catalog_is_seeded_before_auditing(open_ssh_config):
    engine = PolicyEngine(InMemoryStore(), CostService(PricingEstimator(use_network=False)))

    report = await engine.audit_template(open_ssh_config, 'aws')

    assert 'SEC002' in codes(report)
    assert report.summary.score < 100
    assert len(await engine.list_policies()) == len(builtin_policy_definitions())


@pytest.mark.asyncio
async def test_reactivating_a_policy_restores_the_violation_count(open_ssh_config):
    engine = await seeded_engine()
    before = await engine.audit_template(open_ssh_config, 'aws')

    await engine.toggle_policy('SEC002', False)
    without = await engine.audit_template(open_ssh_config, 'aws')
    await engine.toggle_policy('SEC002', True)
    restored = await engine.audit_template(open_ssh_config, 'aws')

    assert len(without.violations) == len(before.violations) - 1
    assert without.summary.score >= before.summary.score
    assert len(restored.violations) == len(before.violations)
    assert restored.summary.score == before.summary.score
