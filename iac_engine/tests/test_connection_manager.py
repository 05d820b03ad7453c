"""
Tests for cloud connections: verification, resource sync and scans.
"""

import boto3
import pytest
from moto import mock_aws

from iac_engine.core.errors import NotFoundError, PaymentRequiredError, ValidationError
from iac_engine.domain.cloud_models import AWSCredentials, CloudResource, ConnectionStatus, ScanResult
from iac_engine.services.aws_sessions import AWSSessionFactory
from iac_engine.services.connection_manager import ConnectionManager
from iac_engine.services.credit_gate import InMemoryCreditGate
from iac_engine.services.state_service import StateService
from iac_engine.services.store import InMemoryStore


ROLE_ARN = 'arn:aws:iam::123456789012:role/iac-engine-connect'
USER = 'user-1'


class StubSessionFactory:
    def __init__(self):
        self.refuse = False
        self.reject_credentials = False

    async def assume_role(self, role_arn, external_id, purpose, region=None, duration_seconds=None):
        if self.refuse:
            raise ValidationError('Unable to assume role. Check the role\'s trust policy and external ID.')
        return AWSCredentials('ASIASTUB', 'secret', 'token', region or 'us-east-1')

    async def validate_credentials(self, credentials):
        if self.reject_credentials:
            raise ValidationError('AWS credentials are invalid or expired')
        return '123456789012'

    async def get_host_account_id(self):
        return '111111111111'

    @staticmethod
    def session(credentials):
        return None


class StubDiscovery:
    def __init__(self, resources=None, failures=None):
        self.resources = resources or []
        self.failures = failures or []

    def discover_all(self, session, region, connection_id=''):
        return list(self.resources), list(self.failures)


class StubScanner:
    def __init__(self):
        self.scanned = []

    async def scan_account(self, credentials, account_id=None):
        self.scanned.append(account_id)
        return ScanResult(account_id, credentials.region, {}, [], {}, {})


def manager_with(sessions=None, discovery=None, scanner=None, store=None):
    store = store or InMemoryStore()
    return ConnectionManager(
        store=store,
        session_factory=sessions or StubSessionFactory(),
        discovery=discovery or StubDiscovery(),
        scanner=scanner or StubScanner(),
        credit_gate=InMemoryCreditGate(default_balance=100),
        state_service=StateService(store, master_key='connection-test-master-key'),
    )


@pytest.mark.asyncio
async def test_setup_details_contain_trust_parameters():
    details = await manager_with().generate_setup_details(USER)

    assert details['host_account_id'] == '111111111111'
    assert details['external_id'] in details['template_yaml']
    assert 'arn:aws:iam::111111111111:root' in details['template_yaml']
    assert 'param_ExternalId=' + details['external_id'] in details['setup_url']


@pytest.mark.asyncio
async def test_create_connection_stores_encrypted_arn():
    manager = manager_with()

    connection = await manager.create_connection(USER, 'prod', ROLE_ARN, 'ext-1', 'eu-west-1')

    assert connection.status == ConnectionStatus.ACTIVE
    assert connection.account_id == '123456789012'
    assert ROLE_ARN not in connection.encrypted_role_arn
    assert 'external_id' not in connection.to_dict()


@pytest.mark.asyncio
async def test_refused_role_keeps_failed_connection():
    sessions = StubSessionFactory()
    sessions.refuse = True
    manager = manager_with(sessions=sessions)

    with pytest.raises(ValidationError):
        await manager.create_connection(USER, 'prod', ROLE_ARN, 'ext-1')

    [connection] = await manager.list_connections(USER)
    assert connection.status == ConnectionStatus.FAILED
    assert 'trust policy' in connection.last_error


@pytest.mark.asyncio
@pytest.mark.parametrize('name,role_arn,external_id', [
    ('prod', 'not-an-arn', 'ext-1'),
    ('', ROLE_ARN, 'ext-1'),
    ('prod', ROLE_ARN, ''),
])
async def test_invalid_connection_input(name, role_arn, external_id):
    manager = manager_with()

    with pytest.raises(ValidationError):
        await manager.create_connection(USER, name, role_arn, external_id)

    assert await manager.list_connections(USER) == []


@pytest.mark.asyncio
async def test_connections_are_scoped_to_their_owner():
    manager = manager_with()
    connection = await manager.create_connection(USER, 'prod', ROLE_ARN, 'ext-1')

    with pytest.raises(NotFoundError):
        await manager.get_connection('user-2', connection.id)
    with pytest.raises(NotFoundError):
        await manager.delete_connection('user-2', connection.id)


@pytest.mark.asyncio
async def test_sync_upserts_without_duplicates():
    discovery = StubDiscovery()
    manager = manager_with(discovery=discovery)
    connection = await manager.create_connection(USER, 'prod', ROLE_ARN, 'ext-1')
    discovery.resources = [
        CloudResource(connection.id, 'i-1', 'ec2_instance', 'us-east-1', 'web', {'instance_type': 't3.micro'}),
        CloudResource(connection.id, 'logs', 's3_bucket', 'global', 'logs'),
    ]

    await manager.sync_connection(USER, connection.id)
    synced = await manager.sync_connection(USER, connection.id)

    assert synced.status == ConnectionStatus.ACTIVE
    assert synced.last_sync_at is not None
    assert len(await manager.get_connection_resources(USER, connection.id)) == 2
    [bucket] = await manager.get_connection_resources(USER, connection.id, 's3_bucket')
    assert bucket.resource_id == 'logs'


@pytest.mark.asyncio
async def test_sync_without_any_permission_fails_the_connection():
    discovery = StubDiscovery(failures=['AccessDenied', 'UnauthorizedOperation'])
    manager = manager_with(discovery=discovery)
    connection = await manager.create_connection(USER, 'prod', ROLE_ARN, 'ext-1')

    with pytest.raises(ValidationError):
        await manager.sync_connection(USER, connection.id)

    failed = await manager.get_connection(USER, connection.id)
    assert failed.status == ConnectionStatus.FAILED
    assert 'read permissions' in failed.last_error


@pytest.mark.asyncio
async def test_partial_sync_still_succeeds():
    discovery = StubDiscovery(failures=['AccessDenied'])
    manager = manager_with(discovery=discovery)
    connection = await manager.create_connection(USER, 'prod', ROLE_ARN, 'ext-1')
    discovery.resources = [CloudResource(connection.id, 'vpc-1', 'vpc', 'us-east-1')]

    synced = await manager.sync_connection(USER, connection.id)

    assert synced.status == ConnectionStatus.ACTIVE


@pytest.mark.asyncio
async def test_delete_connection_removes_resources():
    discovery = StubDiscovery()
    store = InMemoryStore()
    manager = manager_with(discovery=discovery, store=store)
    connection = await manager.create_connection(USER, 'prod', ROLE_ARN, 'ext-1')
    discovery.resources = [CloudResource(connection.id, 'vpc-1', 'vpc', 'us-east-1')]
    await manager.sync_connection(USER, connection.id)

    await manager.delete_connection(USER, connection.id)

    assert await store.list_cloud_resources(connection.id) == []
    assert await manager.list_connections(USER) == []


@pytest.mark.asyncio
async def test_scan_charges_credits():
    scanner = StubScanner()
    manager = manager_with(scanner=scanner)
    connection = await manager.create_connection(USER, 'prod', ROLE_ARN, 'ext-1')

    result = await manager.scan_connection(USER, connection.id)

    assert result.account_id == '123456789012'
    assert scanner.scanned == ['123456789012']
    assert await manager.credit_gate.balance(USER) == 80


@pytest.mark.asyncio
async def test_scan_with_rejected_credentials_is_never_charged():
    sessions = StubSessionFactory()
    scanner = StubScanner()
    manager = manager_with(sessions=sessions, scanner=scanner)
    connection = await manager.create_connection(USER, 'prod', ROLE_ARN, 'ext-1')
    charges = []
    original_charge = manager.credit_gate.charge

    async def recording_charge(user_id, action):
        charges.append(action)
        return await original_charge(user_id, action)

    manager.credit_gate.charge = recording_charge
    sessions.reject_credentials = True

    with pytest.raises(ValidationError):
        await manager.scan_connection(USER, connection.id)

    assert charges == []
    assert await manager.credit_gate.balance(USER) == 100
    assert scanner.scanned == []


@pytest.mark.asyncio
async def test_scan_with_refused_role_is_never_charged():
    sessions = StubSessionFactory()
    manager = manager_with(sessions=sessions)
    connection = await manager.create_connection(USER, 'prod', ROLE_ARN, 'ext-1')
    sessions.refuse = True
    manager.credit_gate.set_balance(USER, 5)

    with pytest.raises(ValidationError):
        await manager.scan_connection(USER, connection.id)

    assert await manager.credit_gate.balance(USER) == 5


@pytest.mark.asyncio
async def test_scan_without_credits_is_refused():
    manager = manager_with()
    connection = await manager.create_connection(USER, 'prod', ROLE_ARN, 'ext-1')
    manager.credit_gate.set_balance(USER, 5)

    with pytest.raises(PaymentRequiredError):
        await manager.scan_connection(USER, connection.id)


@pytest.mark.asyncio
async def test_connect_and_sync_against_mocked_account():
    with mock_aws():
        seed = boto3.Session(aws_access_key_id='testing', aws_secret_access_key='testing', region_name='us-east-1')
        seed.client('s3').create_bucket(Bucket='inventory-bucket')
        vpc = seed.client('ec2').create_vpc(CidrBlock='10.10.0.0/16')['Vpc']

        store = InMemoryStore()
        manager = ConnectionManager(
            store=store,
            session_factory=AWSSessionFactory(),
            credit_gate=InMemoryCreditGate(default_balance=100),
            state_service=StateService(store, master_key='connection-test-master-key'),
        )
        connection = await manager.create_connection(USER, 'sandbox', ROLE_ARN, 'ext-1', 'us-east-1')
        await manager.sync_connection(USER, connection.id)

        buckets = await manager.get_connection_resources(USER, connection.id, 's3_bucket')
        vpcs = await manager.get_connection_resources(USER, connection.id, 'vpc')

    assert [bucket.resource_id for bucket in buckets] == ['inventory-bucket']
    assert buckets[0].region == 'global'
    assert vpc['VpcId'] in {item.resource_id for item in vpcs}
