"""
Tests for the deployment lifecycle: plan, apply, destroy and credentials.
"""

import pytest
from iac_engine.core.errors import (
    ConflictError,
    NotFoundError,
    PaymentRequiredError,
    ProvisioningError,
    RateLimitError,
    ValidationError,
)
from iac_engine.domain.cloud_models import AWSCredentials
from iac_engine.domain.deployment_models import DeploymentStatus
from iac_engine.services.concurrency import DeploymentSlots
from iac_engine.services.cost_service import CostService
from iac_engine.services.credit_gate import InMemoryCreditGate
from iac_engine.services.deployment_service import DeploymentService, count_state_resources
from iac_engine.services.policy_engine import PolicyEngine
from iac_engine.services.pricing_estimator import PricingEstimator
from iac_engine.services.sandbox import TerraformSandbox
from iac_engine.services.state_service import StateService
from iac_engine.services.store import InMemoryStore
from iac_engine.services.template_service import TemplateService


ROLE_ARN = 'arn:aws:iam::123456789012:role/iac-engine-deployment-role'
USER = 'user-1'


class StubSessionFactory:
    """Records role assumptions instead of calling STS."""

    def __init__(self):
        self.calls = []
        self.error = None

    async def assume_role(self, role_arn, external_id, purpose, region=None, duration_seconds=None):
        self.calls.append((role_arn, external_id, purpose))
        if self.error:
            raise self.error
        return AWSCredentials(
            access_key_id='ASIASTUB',
            secret_access_key='stub-secret',
            session_token='stub-token',
            region=region or 'us-east-1',
        )


class Harness:
    def __init__(self, terraform, root, slot_limit=2):
        self.store = InMemoryStore()
        self.sessions = StubSessionFactory()
        self.credits = InMemoryCreditGate(default_balance=100)
        self.slots = DeploymentSlots(limit=slot_limit)
        self.root = root
        self.state = StateService(self.store, master_key='deployment-test-master-key')
        self.templates = TemplateService(self.store, credit_gate=self.credits)
        self.service = DeploymentService(
            store=self.store,
            session_factory=self.sessions,
            sandbox=TerraformSandbox(binary=str(terraform), root=root),
            state_service=self.state,
            slots=self.slots,
            credit_gate=self.credits,
            policy_engine=PolicyEngine(self.store, CostService(PricingEstimator(use_network=False))),
            template_service=self.templates,
        )

    async def template_and_credential(self, content):
        template = await self.templates.create_template(USER, 'web', content)
        credential = await self.service.create_credential(USER, 'prod', ROLE_ARN, 'ext-123')
        return template, credential

    def workspaces(self):
        return list(self.root.iterdir()) if self.root.exists() else []


@pytest.fixture
def harness(fake_terraform, tmp_path):
    return Harness(fake_terraform, tmp_path / 'workspaces')


def test_count_state_resources():
    assert count_state_resources('{"resources": [{}, {}]}') == 2
    assert count_state_resources('not json') == 0
    assert count_state_resources(None) == 0
    assert count_state_resources('[]') == 0


@pytest.mark.asyncio
async def test_plan_reaches_plan_ready(harness, open_ssh_config):
    template, credential = await harness.template_and_credential(open_ssh_config)

    deployment = await harness.service.plan_deployment(USER, template.id, credential.id, 'eu-west-1')

    assert deployment.status == DeploymentStatus.PLAN_READY
    assert deployment.plan_summary.to_dict() == {'add': 3, 'change': 1, 'destroy': 0}
    assert deployment.resource_count == 4
    assert deployment.audit_score == 60
    assert deployment.region == 'eu-west-1'
    assert 'Plan: 3 to add' in deployment.plan_output
    assert await harness.credits.balance(USER) == 85
    assert harness.slots.active(USER) == 0
    assert harness.workspaces() == []
    assert harness.sessions.calls[-1] == (ROLE_ARN, 'ext-123', 'deploy')


@pytest.mark.asyncio
async def test_deployment_record_holds_no_credentials(harness, secure_bucket_config):
    template, credential = await harness.template_and_credential(secure_bucket_config)

    deployment = await harness.service.plan_deployment(USER, template.id, credential.id)

    assert 'ASIASTUB' not in repr(deployment.to_dict())
    assert 'stub-secret' not in repr(deployment)


@pytest.mark.asyncio
async def test_apply_then_destroy(harness, secure_bucket_config):
    template, credential = await harness.template_and_credential(secure_bucket_config)
    planned = await harness.service.plan_deployment(USER, template.id, credential.id)

    applied = await harness.service.apply_deployment(USER, planned.id)

    assert applied.status == DeploymentStatus.SUCCEEDED
    assert applied.resource_count == 3
    assert applied.completed_at is not None
    assert await harness.credits.balance(USER) == 100 - 15 - 30
    assert '"resources"' in await harness.state.retrieve_state(planned.id)

    destroyed = await harness.service.destroy_deployment(USER, planned.id)

    assert destroyed.status == DeploymentStatus.DESTROYED
    assert destroyed.resource_count == 0
    assert 'Destroy complete' in destroyed.apply_output
    assert await harness.state.retrieve_state(planned.id) is None
    assert await harness.credits.balance(USER) == 55
    assert harness.slots.active(USER) == 0
    assert harness.workspaces() == []


@pytest.mark.asyncio
async def test_illegal_transitions_change_nothing(harness, secure_bucket_config):
    template, credential = await harness.template_and_credential(secure_bucket_config)
    planned = await harness.service.plan_deployment(USER, template.id, credential.id)
    calls_before = len(harness.sessions.calls)

    with pytest.raises(ConflictError):
        await harness.service.destroy_deployment(USER, planned.id)

    assert len(harness.sessions.calls) == calls_before
    assert (await harness.service.get_deployment(USER, planned.id)).status == DeploymentStatus.PLAN_READY

    await harness.service.apply_deployment(USER, planned.id)
    balance = await harness.credits.balance(USER)
    calls_before = len(harness.sessions.calls)

    with pytest.raises(ConflictError) as raised:
        await harness.service.apply_deployment(USER, planned.id)

    current = await harness.service.get_deployment(USER, planned.id)
    assert 'SUCCEEDED' in raised.value.message
    assert current.status == DeploymentStatus.SUCCEEDED
    assert await harness.credits.balance(USER) == balance
    assert len(harness.sessions.calls) == calls_before
    assert harness.slots.active(USER) == 0


@pytest.mark.asyncio
async def test_failed_plan_marks_deployment_failed(harness, make_script, secure_bucket_config):
    broken = make_script('tf-broken', '#!/bin/sh\nif [ "$1" = "plan" ]; then echo "Error: invalid reference"; exit 1; fi\nexit 0\n')
    harness.service.sandbox = TerraformSandbox(binary=str(broken), root=harness.root)
    template, credential = await harness.template_and_credential(secure_bucket_config)

    with pytest.raises(ProvisioningError):
        await harness.service.plan_deployment(USER, template.id, credential.id)

    [deployment] = await harness.service.list_deployments(USER)
    assert deployment.status == DeploymentStatus.FAILED
    assert deployment.error_message.startswith('Terraform plan failed')
    assert 'invalid reference' in deployment.plan_output
    assert harness.slots.active(USER) == 0
    assert harness.workspaces() == []


@pytest.mark.asyncio
async def test_refused_role_refunds_the_charge(harness, secure_bucket_config):
    template, credential = await harness.template_and_credential(secure_bucket_config)
    harness.sessions.error = ValidationError('Unable to assume role.')

    with pytest.raises(ValidationError):
        await harness.service.plan_deployment(USER, template.id, credential.id)

    [deployment] = await harness.service.list_deployments(USER)
    assert deployment.status == DeploymentStatus.FAILED
    assert await harness.credits.balance(USER) == 100
    assert harness.slots.active(USER) == 0


@pytest.mark.asyncio
async def test_failed_destroy_can_be_retried(harness, make_script, secure_bucket_config):
    template, credential = await harness.template_and_credential(secure_bucket_config)
    planned = await harness.service.plan_deployment(USER, template.id, credential.id)
    await harness.service.apply_deployment(USER, planned.id)
    working_sandbox = harness.service.sandbox
    harness.service.sandbox = TerraformSandbox(
        binary=str(make_script('tf-nodestroy', '#!/bin/sh\nif [ "$1" = "destroy" ]; then echo "Error: locked"; exit 1; fi\nexit 0\n')),
        root=harness.root,
    )

    with pytest.raises(ProvisioningError):
        await harness.service.destroy_deployment(USER, planned.id)

    failed = await harness.service.get_deployment(USER, planned.id)
    assert failed.status == DeploymentStatus.FAILED
    assert failed.error_message.startswith('Destroy failed: ')

    harness.service.sandbox = working_sandbox
    destroyed = await harness.service.destroy_deployment(USER, planned.id)
    assert destroyed.status == DeploymentStatus.DESTROYED


@pytest.mark.asyncio
async def test_failed_apply_keeps_partial_state_for_destroy(partial_apply_terraform, tmp_path, secure_bucket_config):
    harness = Harness(partial_apply_terraform, tmp_path / 'workspaces')
    template, credential = await harness.template_and_credential(secure_bucket_config)
    planned = await harness.service.plan_deployment(USER, template.id, credential.id)

    with pytest.raises(ProvisioningError):
        await harness.service.apply_deployment(USER, planned.id)

    failed = await harness.service.get_deployment(USER, planned.id)
    assert failed.status == DeploymentStatus.FAILED
    assert failed.resource_count == 1
    assert '"aws_s3_bucket"' in await harness.state.retrieve_state(planned.id)
    assert harness.workspaces() == []

    destroyed = await harness.service.destroy_deployment(USER, planned.id)

    assert destroyed.status == DeploymentStatus.DESTROYED
    assert 'Destroy complete' in destroyed.apply_output
    assert await harness.state.retrieve_state(planned.id) is None


@pytest.mark.asyncio
async def test_concurrency_limit_refuses_before_charging(fake_terraform, tmp_path, secure_bucket_config):
    harness = Harness(fake_terraform, tmp_path / 'workspaces', slot_limit=1)
    template, credential = await harness.template_and_credential(secure_bucket_config)
    await harness.slots.acquire(USER)

    with pytest.raises(RateLimitError):
        await harness.service.plan_deployment(USER, template.id, credential.id)

    assert await harness.credits.balance(USER) == 100
    assert await harness.service.list_deployments(USER) == []
    assert harness.slots.active(USER) == 1


@pytest.mark.asyncio
async def test_insufficient_credits(harness, secure_bucket_config):
    template, credential = await harness.template_and_credential(secure_bucket_config)
    harness.credits.set_balance(USER, 10)

    with pytest.raises(PaymentRequiredError):
        await harness.service.plan_deployment(USER, template.id, credential.id)

    assert await harness.service.list_deployments(USER) == []
    assert harness.slots.active(USER) == 0


@pytest.mark.asyncio
async def test_inactive_credential_is_refused(harness, secure_bucket_config):
    template, credential = await harness.template_and_credential(secure_bucket_config)
    await harness.service.toggle_credential(USER, credential.id, False)

    with pytest.raises(ValidationError):
        await harness.service.plan_deployment(USER, template.id, credential.id)


@pytest.mark.asyncio
async def test_other_users_cannot_see_deployments(harness, secure_bucket_config):
    template, credential = await harness.template_and_credential(secure_bucket_config)
    planned = await harness.service.plan_deployment(USER, template.id, credential.id)

    with pytest.raises(NotFoundError):
        await harness.service.get_deployment('user-2', planned.id)
    with pytest.raises(NotFoundError):
        await harness.service.plan_deployment('user-2', template.id, credential.id)


@pytest.mark.asyncio
async def test_credential_creation_validates_arn_first(harness):
    with pytest.raises(ValidationError):
        await harness.service.create_credential(USER, 'bad', 'arn:aws:iam::123:user/bob')

    assert harness.sessions.calls == []


@pytest.mark.asyncio
async def test_credential_is_stored_encrypted(harness):
    credential = await harness.service.create_credential(USER, 'prod', ROLE_ARN)

    assert ROLE_ARN not in credential.encrypted_role_arn
    assert 'role_arn' not in credential.to_dict()
    assert credential.external_id
    assert harness.sessions.calls == [(ROLE_ARN, credential.external_id, 'verify')]


@pytest.mark.asyncio
async def test_credential_in_use_cannot_be_deleted(harness, secure_bucket_config):
    template, credential = await harness.template_and_credential(secure_bucket_config)
    planned = await harness.service.plan_deployment(USER, template.id, credential.id)

    with pytest.raises(ConflictError):
        await harness.service.delete_credential(USER, credential.id)

    await harness.service.apply_deployment(USER, planned.id)
    await harness.service.delete_credential(USER, credential.id)

    assert await harness.service.list_credentials(USER) == []


@pytest.mark.asyncio
async def test_list_deployments_filters_by_template(harness, secure_bucket_config, open_ssh_config):
    first, credential = await harness.template_and_credential(secure_bucket_config)
    second = await harness.templates.create_template(USER, 'ssh', open_ssh_config)
    await harness.service.plan_deployment(USER, first.id, credential.id)
    latest = await harness.service.plan_deployment(USER, second.id, credential.id)

    everything = await harness.service.list_deployments(USER)
    filtered = await harness.service.list_deployments(USER, template_id=second.id)

    assert len(everything) == 2
    assert everything[0].id == latest.id
    assert [item.id for item in filtered] == [latest.id]


def test_setup_template_embeds_external_id(harness):
    setup = harness.service.get_deployment_setup_template('ext-999')

    assert setup['external_id'] == 'ext-999'
    assert "Default: 'ext-999'" in setup['template_yaml']
    assert "arn:aws:iam::111111111111:root" in setup['template_yaml']
    assert "'aws:RequestTag/ManagedBy'" in setup['template_yaml']
