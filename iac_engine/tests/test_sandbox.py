"""
Tests for the terraform sandbox: workspaces, invocation and output handling.
"""

import pytest
from iac_engine.domain.cloud_models import AWSCredentials
from iac_engine.services.sandbox import (
    STRIPPED_ENV_VARS,
    TerraformSandbox,
    TerraformSandboxError,
    parse_plan_summary,
    provider_override,
)


CREDENTIALS = AWSCredentials(
    access_key_id='ASIATEST',
    secret_access_key='secret"with$quote',
    session_token='token-123',
    region='us-east-1',
)


@pytest.fixture
def sandbox(fake_terraform, tmp_path):
    return TerraformSandbox(binary=str(fake_terraform), root=tmp_path / 'workspaces')


def test_plan_summary_parses_counts():
    summary = parse_plan_summary('...\nPlan: 3 to add, 1 to change, 0 to destroy.\n')

    assert summary.to_dict() == {'add': 3, 'change': 1, 'destroy': 0}


def test_no_changes_plan_is_all_zero():
    summary = parse_plan_summary('No changes. Your infrastructure matches the configuration.')

    assert summary.to_dict() == {'add': 0, 'change': 0, 'destroy': 0}


def test_provider_override_escapes_and_tags():
    text = provider_override(CREDENTIALS, 'eu-west-1')

    assert 'region     = "eu-west-1"' in text
    assert 'secret_key = "secret\\"with$quote"' in text
    assert 'token      = "token-123"' in text
    assert 'ManagedBy = "iac-engine"' in text
    assert 'backend "local"' in text


@pytest.mark.asyncio
async def test_workspace_is_exclusive_and_private(sandbox):
    workdir = await sandbox.create_workspace('dep-1')

    assert workdir.is_dir()
    assert oct(workdir.stat().st_mode & 0o777) == oct(0o700)
    with pytest.raises(TerraformSandboxError):
        await sandbox.create_workspace('dep-1')

    await sandbox.cleanup_workspace(workdir)
    assert not workdir.exists()


@pytest.mark.asyncio
async def test_workspace_id_must_be_safe(sandbox):
    with pytest.raises(TerraformSandboxError):
        await sandbox.create_workspace('../escape')


@pytest.mark.asyncio
async def test_cleanup_of_missing_workspace_is_silent(sandbox, tmp_path):
    await sandbox.cleanup_workspace(tmp_path / 'never-created')
    await sandbox.cleanup_workspace(None)


@pytest.mark.asyncio
async def test_template_files_are_written_privately(sandbox):
    workdir = await sandbox.create_workspace('dep-2')

    await sandbox.write_template_files(workdir, 'resource "aws_s3_bucket" "b" {}', CREDENTIALS, 'us-east-1')

    override = workdir / 'provider_override.tf'
    assert (workdir / 'main.tf').read_text() == 'resource "aws_s3_bucket" "b" {}'
    assert 'ASIATEST' in override.read_text()
    assert oct(override.stat().st_mode & 0o777) == oct(0o600)


@pytest.mark.asyncio
async def test_init_plan_apply_destroy(sandbox):
    workdir = await sandbox.create_workspace('dep-3')

    init = await sandbox.init(workdir)
    plan = await sandbox.plan(workdir)
    applied = await sandbox.apply(workdir)
    destroyed = await sandbox.destroy(workdir, applied.state_content)

    assert init.success
    assert plan.success and plan.returncode == 2
    assert plan.summary.to_dict() == {'add': 3, 'change': 1, 'destroy': 0}
    assert applied.success
    assert '"resources"' in applied.state_content
    assert destroyed.success


@pytest.mark.asyncio
async def test_failed_apply_still_returns_state(partial_apply_terraform, tmp_path):
    sandbox = TerraformSandbox(binary=str(partial_apply_terraform), root=tmp_path / 'ws')
    workdir = await sandbox.create_workspace('dep-partial')

    applied = await sandbox.apply(workdir)

    assert not applied.success
    assert 'UnauthorizedOperation' in applied.output
    assert '"aws_s3_bucket"' in applied.state_content


@pytest.mark.asyncio
async def test_failing_command_reports_exit_code(tmp_path, make_script):
    script = make_script('tf-fail', '#!/bin/sh\necho "Error: bad config"\nexit 1\n')
    sandbox = TerraformSandbox(binary=str(script), root=tmp_path / 'ws')
    workdir = await sandbox.create_workspace('dep-4')

    result = await sandbox.init(workdir)

    assert not result.success
    assert result.returncode == 1
    assert 'Error: bad config' in result.output
    assert 'exited with code 1' in result.error


@pytest.mark.asyncio
async def test_timeout_kills_the_process(tmp_path, make_script):
    script = make_script('tf-slow', '#!/bin/sh\necho "starting"\nexec sleep 30\n')
    sandbox = TerraformSandbox(binary=str(script), timeout_seconds=1, root=tmp_path / 'ws')
    workdir = await sandbox.create_workspace('dep-5')

    result = await sandbox.plan(workdir)

    assert not result.success
    assert result.timed_out
    assert 'timed out' in result.error


@pytest.mark.asyncio
async def test_output_is_capped(tmp_path, make_script):
    script = make_script(
        'tf-loud',
        '#!/bin/sh\ni=0\nwhile [ $i -lt 2000 ]; do echo "line $i of noisy output"; i=$((i+1)); done\n',
    )
    sandbox = TerraformSandbox(binary=str(script), max_output_bytes=1024, root=tmp_path / 'ws')
    workdir = await sandbox.create_workspace('dep-6')

    result = await sandbox.init(workdir)

    assert result.success
    assert result.truncated
    assert len(result.output.encode('utf-8')) <= 1024


@pytest.mark.asyncio
async def test_host_secrets_are_not_passed_to_terraform(tmp_path, make_script, monkeypatch):
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'host-secret')
    monkeypatch.setenv('MISTRAL_API_KEY', 'ai-secret')
    script = make_script('tf-env', '#!/bin/sh\nenv\n')
    sandbox = TerraformSandbox(binary=str(script), root=tmp_path / 'ws')
    workdir = await sandbox.create_workspace('dep-7')

    result = await sandbox.init(workdir)

    assert 'host-secret' not in result.output
    assert 'ai-secret' not in result.output
    assert 'TF_IN_AUTOMATION=1' in result.output
    assert 'MISTRAL_API_KEY' in STRIPPED_ENV_VARS


@pytest.mark.asyncio
async def test_missing_binary_raises(tmp_path):
    sandbox = TerraformSandbox(binary=str(tmp_path / 'no-such-terraform'), root=tmp_path / 'ws')
    workdir = await sandbox.create_workspace('dep-8')

    with pytest.raises(TerraformSandboxError):
        await sandbox.init(workdir)


@pytest.mark.asyncio
async def test_check_terraform_available(sandbox, tmp_path):
    available = await sandbox.check_terraform_available()
    missing = await TerraformSandbox(binary=str(tmp_path / 'absent')).check_terraform_available()

    assert available == {'available': True, 'version': '1.7.5'}
    assert missing == {'available': False, 'version': None}
