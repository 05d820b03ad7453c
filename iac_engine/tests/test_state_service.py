"""
Tests for encrypted deployment state and role ARN storage.
"""

import json
import pytest
from iac_engine.services.state_service import StateEncryptionError, StateService, decrypt, encrypt
from iac_engine.services.store import InMemoryStore


MASTER_KEY = 'unit-test-master-key-0123456789'


@pytest.fixture
def service():
    return StateService(InMemoryStore(), master_key=MASTER_KEY)


def test_blob_format_is_hex_triplet():
    blob = encrypt('hello', 'dep-1', MASTER_KEY)

    iv, tag, ciphertext = blob.split(':')
    assert len(bytes.fromhex(iv)) == 16
    assert len(bytes.fromhex(tag)) == 16
    assert bytes.fromhex(ciphertext) != b'hello'


def test_same_plaintext_encrypts_differently():
    assert encrypt('hello', 'dep-1', MASTER_KEY) != encrypt('hello', 'dep-1', MASTER_KEY)


def test_key_is_bound_to_record_id():
    blob = encrypt('arn:aws:iam::123456789012:role/x', 'conn-1', MASTER_KEY)

    with pytest.raises(StateEncryptionError):
        decrypt(blob, 'conn-2', MASTER_KEY)


def test_wrong_master_key_fails():
    blob = encrypt('secret', 'dep-1', MASTER_KEY)

    with pytest.raises(StateEncryptionError):
        decrypt(blob, 'dep-1', 'another-master-key-entirely')


@pytest.mark.parametrize('blob', ['', 'abc', 'zz:zz:zz', 'a:b'])
def test_malformed_blob_is_rejected(blob):
    with pytest.raises(StateEncryptionError):
        decrypt(blob, 'dep-1', MASTER_KEY)


@pytest.mark.asyncio
async def test_state_round_trip(service):
    state = json.dumps({'version': 4, 'resources': [{'type': 'aws_s3_bucket'}]})

    await service.store_state('dep-1', state)

    assert await service.retrieve_state('dep-1') == state
    stored = await service.store.get('states', 'dep-1')
    assert 'aws_s3_bucket' not in stored


@pytest.mark.asyncio
async def test_missing_state_is_none(service):
    assert await service.retrieve_state('unknown') is None


@pytest.mark.asyncio
async def test_tampered_state_raises(service):
    await service.store_state('dep-1', '{"resources": []}')
    iv, tag, ciphertext = (await service.store.get('states', 'dep-1')).split(':')
    flipped = format(int(ciphertext[:2], 16) ^ 0x01, '02x') + ciphertext[2:]
    await service.store.put('states', 'dep-1', f'{iv}:{tag}:{flipped}')

    with pytest.raises(StateEncryptionError):
        await service.retrieve_state('dep-1')


@pytest.mark.asyncio
async def test_delete_state(service):
    await service.store_state('dep-1', '{}')
    await service.delete_state('dep-1')

    assert await service.retrieve_state('dep-1') is None


def test_role_arn_round_trip(service):
    arn = 'arn:aws:iam::123456789012:role/deployer'

    blob = service.encrypt_role_arn(arn, 'cred-1')

    assert arn not in blob
    assert service.decrypt_role_arn(blob, 'cred-1') == arn


def test_missing_master_key_is_refused(monkeypatch):
    from iac_engine.core.config import config
    monkeypatch.setattr(config, 'STATE_ENCRYPTION_KEY', '')

    with pytest.raises(StateEncryptionError):
        StateService(InMemoryStore())
