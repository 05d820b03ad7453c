"""
Tests for the live cloud scanner.
"""

import asyncio
import time

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from iac_engine.core.config import config
from iac_engine.domain.cloud_models import AWSCredentials, CategoryResult, SecurityIssue
from iac_engine.domain.policy_models import Severity
from iac_engine.services.aws_sessions import AWSSessionFactory
from iac_engine.services.cloud_scanner import CATEGORIES, CloudScanner, describe_failure
from iac_engine.services.cost_service import CostService
from iac_engine.services.pricing_estimator import PricingEstimator


CREDENTIALS = AWSCredentials(
    access_key_id='testing',
    secret_access_key='testing',
    session_token='testing',
    region='us-east-1',
)


def access_denied(operation='ListBuckets'):
    return ClientError({'Error': {'Code': 'AccessDenied', 'Message': 'denied'}}, operation)


@pytest.fixture
def scanner():
    return CloudScanner(AWSSessionFactory(), CostService(PricingEstimator(use_network=False)))


def stub_categories(scanner, **overrides):
    """Replace every category with an empty result unless overridden."""
    for name in CATEGORIES:
        def empty(session, region, name=name):
            return CategoryResult(category=name)
        setattr(scanner, f'_scan_{name}', overrides.get(name, empty))


def test_world_open_ssh_is_critical():
    permission = {
        'IpProtocol': 'tcp',
        'FromPort': 22,
        'ToPort': 22,
        'IpRanges': [{'CidrIp': '0.0.0.0/0'}],
    }

    [issue] = CloudScanner._permission_issues('sg-1 (bastion)', permission, 'us-east-1')

    assert issue.severity == Severity.CRITICAL
    assert 'Port 22' in issue.issue
    assert issue.resource_id == 'sg-1 (bastion)'


def test_port_range_reports_each_sensitive_port():
    permission = {
        'IpProtocol': 'tcp',
        'FromPort': 3000,
        'ToPort': 6000,
        'Ipv6Ranges': [{'CidrIpv6': '::/0'}],
    }

    issues = CloudScanner._permission_issues('sg-2', permission, 'us-east-1')

    assert [issue.issue.split()[1] for issue in issues] == ['3389', '3306', '5432']
    assert all('::/0' in issue.issue for issue in issues)


def test_all_traffic_and_all_ports_collapse_to_one_issue():
    everything = {'IpProtocol': '-1', 'IpRanges': [{'CidrIp': '0.0.0.0/0'}]}
    all_ports = {'IpProtocol': 'tcp', 'FromPort': 0, 'ToPort': 65535, 'IpRanges': [{'CidrIp': '0.0.0.0/0'}]}

    assert len(CloudScanner._permission_issues('sg-3', everything, 'us-east-1')) == 1
    assert 'All ports' in CloudScanner._permission_issues('sg-3', all_ports, 'us-east-1')[0].issue


def test_private_ranges_are_ignored():
    permission = {'IpProtocol': 'tcp', 'FromPort': 22, 'ToPort': 22, 'IpRanges': [{'CidrIp': '10.0.0.0/8'}]}

    assert CloudScanner._permission_issues('sg-4', permission, 'us-east-1') == []


def test_failure_messages():
    denied = describe_failure('storage', access_denied())
    timed_out = describe_failure('compute', asyncio.TimeoutError())

    assert denied.startswith('S3 scan skipped')
    assert 'AccessDenied' in denied
    assert timed_out.startswith('EC2 scan timed out')


def test_network_category_against_mocked_account(scanner):
    with mock_aws():
        session = boto3.Session(
            aws_access_key_id='testing', aws_secret_access_key='testing', region_name='us-east-1'
        )
        ec2 = session.client('ec2')
        group = ec2.create_security_group(GroupName='bastion', Description='bastion hosts')
        ec2.authorize_security_group_ingress(
            GroupId=group['GroupId'],
            IpPermissions=[{
                'IpProtocol': 'tcp',
                'FromPort': 22,
                'ToPort': 22,
                'IpRanges': [{'CidrIp': '0.0.0.0/0'}],
            }],
        )

        result = scanner._scan_network(session, 'us-east-1')

    flagged = [issue for issue in result.issues if group['GroupId'] in issue.resource_id]
    assert result.scanned_count >= 1
    assert len(flagged) == 1
    assert flagged[0].severity == Severity.CRITICAL


def test_storage_category_flags_missing_public_access_block(scanner):
    with mock_aws():
        session = boto3.Session(
            aws_access_key_id='testing', aws_secret_access_key='testing', region_name='us-east-1'
        )
        session.client('s3').create_bucket(Bucket='exposed-bucket')

        result = scanner._scan_storage(session, 'us-east-1')

    assert result.scanned_count == 1
    assert any(
        issue.resource_id == 'exposed-bucket' and issue.severity == Severity.CRITICAL
        for issue in result.issues
    )
    assert [resource.resource_type for resource in result.extra['resources']] == ['s3_bucket']


@pytest.mark.asyncio
async def test_failed_category_makes_scan_partial(scanner):
    def network(session, region):
        result = CategoryResult(category='network', scanned_count=2)
        result.issues.append(SecurityIssue('Security Group', 'sg-1', Severity.CRITICAL, 'Port 22 open', 'Restrict'))
        return result

    def storage(session, region):
        raise access_denied()

    stub_categories(scanner, network=network, storage=storage)

    result = await scanner.scan_account(CREDENTIALS, account_id='123456789012')

    assert result.partial
    assert len(result.errors) == 1
    assert 'missing read permissions' in result.errors[0]
    assert set(result.categories) == set(CATEGORIES)
    assert result.summary['critical_issues'] == 1
    assert result.summary['total_resources'] == 2
    assert result.cost_summary['source'] == 'heuristic'
    assert result.to_dict()['partial'] is True


@pytest.mark.asyncio
async def test_slow_category_times_out_alone(scanner, monkeypatch):
    monkeypatch.setattr(config, 'SCAN_CATEGORY_TIMEOUT_SECONDS', 0.05)

    def compute(session, region):
        time.sleep(0.5)
        return CategoryResult(category='compute')

    stub_categories(scanner, compute=compute)

    result = await scanner.scan_account(CREDENTIALS)

    assert result.errors == [describe_failure('compute', asyncio.TimeoutError())]
    assert result.categories['network'].error is None


@pytest.mark.asyncio
async def test_cost_explorer_figures_take_precedence(scanner):
    def cost(session, region):
        result = CategoryResult(category='cost')
        result.extra['by_service'] = {'Amazon EC2': 10.0, 'Amazon S3': 2.5}
        result.extra['history'] = [{'month': '2026-09', 'total': 12.5}]
        return result

    stub_categories(scanner, cost=cost)

    result = await scanner.scan_account(CREDENTIALS)

    assert result.partial is False
    assert result.cost_summary['source'] == 'cost_explorer'
    assert result.cost_summary['total_monthly'] == 12.5
    assert len(result.cost_summary['history']) == 1
