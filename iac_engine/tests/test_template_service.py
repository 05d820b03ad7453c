"""
Tests for templates and AI generation.
"""

import json

import httpx
import pytest

from iac_engine.core.errors import ExternalServiceError, GenerationError, NotFoundError, ValidationError
from iac_engine.domain.cloud_models import CloudResource
from iac_engine.services.credit_gate import InMemoryCreditGate
from iac_engine.services.store import InMemoryStore
from iac_engine.services.template_generator import TemplateGenerator, resource_context, strip_fences
from iac_engine.services.template_service import TemplateService


USER = 'user-1'

MAIN_TF = 'resource "aws_s3_bucket" "assets" {\n  bucket = "assets"\n}\n'


def completion(content):
    return {'choices': [{'message': {'content': content}}]}


def service_with(handler):
    """TemplateService whose generator talks to a mocked chat-completion endpoint."""
    requests = []

    def record(request):
        requests.append(json.loads(request.content))
        return handler(request)

    generator = TemplateGenerator(api_key='test-key', transport=httpx.MockTransport(record))
    service = TemplateService(InMemoryStore(), generator, InMemoryCreditGate(default_balance=100))
    return service, requests


@pytest.mark.asyncio
async def test_create_and_fetch_template():
    service = TemplateService(InMemoryStore(), TemplateGenerator(api_key='unused'), InMemoryCreditGate())

    template = await service.create_template(USER, ' web ', MAIN_TF)

    assert template.name == 'web'
    assert (await service.get_template(USER, template.id)).content == MAIN_TF
    with pytest.raises(NotFoundError):
        await service.get_template('user-2', template.id)


@pytest.mark.asyncio
@pytest.mark.parametrize('name,content,provider', [
    ('', MAIN_TF, 'aws'),
    ('web', '   ', 'aws'),
    ('web', MAIN_TF, 'openstack'),
])
async def test_template_validation(name, content, provider):
    service = TemplateService(InMemoryStore(), TemplateGenerator(api_key='unused'), InMemoryCreditGate())

    with pytest.raises(ValidationError):
        await service.create_template(USER, name, content, provider)


@pytest.mark.asyncio
async def test_generation_saves_template_and_charges():
    body = json.dumps({'files': {'main.tf': f'```hcl\n{MAIN_TF}```', 'variables.tf': ''}})
    service, requests = service_with(lambda request: httpx.Response(200, json=completion(body)))

    result = await service.generate_template(USER, 'A bucket for static assets')

    assert result['resource_count'] == 1
    assert result['credits_remaining'] == 90
    assert result['files']['main.tf'].startswith('resource "aws_s3_bucket"')
    assert result['template']['name'] == 'A bucket for static assets'
    assert requests[0]['response_format'] == {'type': 'json_object'}
    assert 'aws provider' in requests[0]['messages'][0]['content']


@pytest.mark.asyncio
async def test_context_resources_reach_the_prompt():
    body = json.dumps({'files': {'main.tf': MAIN_TF}})
    service, requests = service_with(lambda request: httpx.Response(200, json=completion(body)))
    existing = [CloudResource('c1', 'vpc-1', 'vpc', 'us-east-1', 'main-vpc')]

    await service.generate_template(USER, 'A bucket', context_resources=existing)

    assert '- vpc: main-vpc (us-east-1)' in requests[0]['messages'][0]['content']


@pytest.mark.asyncio
async def test_provider_outage_is_refunded():
    service, _ = service_with(lambda request: httpx.Response(503, json={'error': {'message': 'overloaded'}}))

    with pytest.raises(ExternalServiceError):
        await service.generate_template(USER, 'A bucket')

    assert await service.credit_gate.balance(USER) == 100


@pytest.mark.asyncio
async def test_safety_block_is_not_refunded():
    service, _ = service_with(
        lambda request: httpx.Response(400, json={'error': {'message': 'Request blocked by safety policy'}})
    )

    with pytest.raises(GenerationError):
        await service.generate_template(USER, 'Something disallowed')

    assert await service.credit_gate.balance(USER) == 90


@pytest.mark.asyncio
@pytest.mark.parametrize('content', [
    'not json at all',
    json.dumps({'files': {'variables.tf': 'variable "x" {}'}}),
    json.dumps({'files': {'main.tf': 'variable "x" {}'}}),
])
async def test_unusable_output_is_rejected(content):
    service, _ = service_with(lambda request: httpx.Response(200, json=completion(content)))

    with pytest.raises(GenerationError):
        await service.generate_template(USER, 'A bucket')

    assert await service.list_templates(USER) == []


@pytest.mark.asyncio
async def test_prompt_limits():
    service, requests = service_with(lambda request: httpx.Response(500))

    with pytest.raises(ValidationError):
        await service.generate_template(USER, '   ')
    with pytest.raises(ValidationError):
        await service.generate_template(USER, 'x' * 5001)
    with pytest.raises(ValidationError):
        await service.generate_template(USER, 'A bucket', provider='openstack')

    assert requests == []
    assert await service.credit_gate.balance(USER) == 100


@pytest.mark.asyncio
async def test_missing_api_key_counts_as_outage():
    service = TemplateService(InMemoryStore(), TemplateGenerator(api_key=''), InMemoryCreditGate(default_balance=100))
    service.generator.api_key = ''

    with pytest.raises(ExternalServiceError):
        await service.generate_template(USER, 'A bucket')

    assert await service.credit_gate.balance(USER) == 100


def test_strip_fences_and_context():
    assert strip_fences('```hcl\nx = 1\n```') == 'x = 1'
    assert resource_context([]) == ''
