"""
Shared pytest fixtures for engine tests.
"""

import sys
import os
import stat
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

# Set minimal environment variables for testing (read once at config import)
os.environ.setdefault('STATE_ENCRYPTION_KEY', 'test-master-key-for-testing-only')
os.environ.setdefault('PRICING_API_ENABLED', 'false')
os.environ.setdefault('HOST_ACCOUNT_ID', '111111111111')
os.environ.setdefault('AWS_ACCESS_KEY_ID', 'testing')
os.environ.setdefault('AWS_SECRET_ACCESS_KEY', 'testing')
os.environ.setdefault('AWS_SECURITY_TOKEN', 'testing')
os.environ.setdefault('AWS_SESSION_TOKEN', 'testing')
os.environ.setdefault('AWS_DEFAULT_REGION', 'us-east-1')

import pytest
from fastapi.testclient import TestClient

from iac_engine.middleware.rate_limiter import get_rate_limiter
from iac_engine.resilience.circuit_breaker import reset_circuit_breakers
from iac_engine.services.concurrency import reset_deployment_slots
from iac_engine.services.credit_gate import reset_credit_gate
from iac_engine.services.store import reset_store


SECURE_BUCKET = '''
resource "aws_s3_bucket" "data" {
  bucket = "data-bucket"

  server_side_encryption_configuration {
    rule {
      apply_server_side_encryption_by_default {
        sse_algorithm = "aws:kms"
      }
    }
  }

  logging {
    target_bucket = "audit-logs"
    target_prefix = "data/"
  }
}

resource "aws_s3_bucket_public_access_block" "data" {
  bucket                  = aws_s3_bucket.data.id
  block_public_acls       = true
  block_public_policy     = true
  ignore_public_acls      = true
  restrict_public_buckets = true
}

resource "aws_cloudtrail" "main" {
  name                       = "main"
  s3_bucket_name             = "audit-logs"
  enable_log_file_validation = true
}
'''

OPEN_SSH_GROUP = '''
resource "aws_security_group" "bastion" {
  name = "bastion"

  ingress {
    from_port   = 22
    to_port     = 22
    protocol    = "tcp"
    cidr_blocks = ["0.0.0.0/0"]
  }
}
'''

FAKE_TERRAFORM = '''#!/bin/sh
case "$1" in
  init)
    echo "Terraform has been successfully initialized!"
    exit 0
    ;;
  plan)
    echo "Plan: 3 to add, 1 to change, 0 to destroy."
    exit 2
    ;;
  apply)
    echo "Apply complete! Resources: 3 added, 1 changed, 0 destroyed."
    printf '{"version": 4, "resources": [{"type": "aws_s3_bucket"}, {"type": "aws_instance"}, {"type": "aws_security_group"}]}' > terraform.tfstate
    exit 0
    ;;
  destroy)
    echo "Destroy complete! Resources: 3 destroyed."
    exit 0
    ;;
  version)
    echo '{"terraform_version": "1.7.5"}'
    exit 0
    ;;
esac
exit 1
'''


PARTIAL_APPLY_TERRAFORM = '''#!/bin/sh
case "$1" in
  init)
    exit 0
    ;;
  plan)
    echo "Plan: 2 to add, 0 to change, 0 to destroy."
    exit 2
    ;;
  apply)
    printf '{"version": 4, "resources": [{"type": "aws_s3_bucket"}]}' > terraform.tfstate
    echo "Error: creating EC2 Instance: UnauthorizedOperation"
    exit 1
    ;;
  destroy)
    if [ -s terraform.tfstate ]; then
      echo "Destroy complete! Resources: 1 destroyed."
    else
      echo "No state: nothing to destroy."
    fi
    exit 0
    ;;
esac
exit 1
'''


@pytest.fixture(autouse=True)
def reset_singletons():
    """Fresh process-wide state for every test."""
    reset_store()
    reset_credit_gate()
    reset_deployment_slots()
    reset_circuit_breakers()
    get_rate_limiter().reset()
    yield


@pytest.fixture
def client():
    """FastAPI test client (startup hooks run, so built-in policies are seeded)."""
    from iac_engine.main import app
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def user_headers():
    return {'X-User-Id': 'user-1'}


def write_script(path: Path, body: str) -> Path:
    path.write_text(body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def make_script(tmp_path):
    """Factory writing an executable shell script into tmp_path."""
    def make(name, body):
        return write_script(tmp_path / name, body)
    return make


@pytest.fixture
def fake_terraform(tmp_path):
    """Executable standing in for the terraform binary."""
    return write_script(tmp_path / 'terraform', FAKE_TERRAFORM)


@pytest.fixture
def partial_apply_terraform(tmp_path):
    """Terraform whose apply creates one resource, writes state, then fails."""
    return write_script(tmp_path / 'terraform-partial', PARTIAL_APPLY_TERRAFORM)


@pytest.fixture
def secure_bucket_config():
    return SECURE_BUCKET


@pytest.fixture
def open_ssh_config():
    return OPEN_SSH_GROUP
