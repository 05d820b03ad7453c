"""
AWS session factory.

Assumes cross-account roles through STS and builds boto3 sessions/clients
from the resulting short-lived credentials. Role ARNs are shape-checked
before any network call and only ever logged masked.
"""
from typing import Optional
import asyncio
import logging
import re
import time

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from iac_engine.core.config import config
from iac_engine.core.errors import ExternalServiceError, ValidationError
from iac_engine.domain.cloud_models import AWSCredentials
from iac_engine.resilience.circuit_breaker import get_circuit_breaker


logger = logging.getLogger(__name__)


ROLE_ARN_RE = re.compile(r"^arn:aws:iam::\d{12}:role/[\w+=,.@\-/]+$")

# Global services answer from us-east-1 regardless of the scanned region
GLOBAL_SERVICES = {"iam", "ce", "cloudfront", "route53"}
GLOBAL_REGION = "us-east-1"

ACCESS_DENIED_CODES = {
    "AccessDenied",
    "AccessDeniedException",
    "UnauthorizedOperation",
    "UnauthorizedAccess",
    "AuthFailure",
}

BOTO_CONFIG = Config(
    connect_timeout=10,
    read_timeout=30,
    retries={"max_attempts": 2, "mode": "standard"},
)


def validate_role_arn(role_arn: str) -> None:
    """
    Reject anything that is not an IAM role ARN.

    Raises:
        ValidationError: If the ARN is malformed
    """
    if not isinstance(role_arn, str) or not ROLE_ARN_RE.match(role_arn.strip()):
        raise ValidationError(
            "Invalid role ARN. Expected format: arn:aws:iam::<12-digit-account-id>:role/<role-name>"
        )


def mask_arn(role_arn: str) -> str:
    """Role ARN with the account ID elided, safe for logs."""
    return re.sub(r"::\d{12}:", "::************:", role_arn or "")


def error_code(error: Exception) -> str:
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code", "")
    return ""


def is_access_denied(error: Exception) -> bool:
    return error_code(error) in ACCESS_DENIED_CODES


class AWSSessionFactory:
    """Role assumption and client construction."""

    def __init__(self, sts_client=None):
        """
        Initialize the factory.

        Args:
            sts_client: STS client using the host's own credentials (created if None)
        """
        self._sts_client = sts_client
        self.circuit_breaker = get_circuit_breaker("aws_sts")

    @property
    def sts(self):
        if self._sts_client is None:
            self._sts_client = boto3.client("sts", region_name=config.AWS_DEFAULT_REGION, config=BOTO_CONFIG)
        return self._sts_client

    async def assume_role(
        self,
        role_arn: str,
        external_id: Optional[str],
        purpose: str,
        region: Optional[str] = None,
        duration_seconds: Optional[int] = None
    ) -> AWSCredentials:
        """
        Assume a delegated role and return its temporary credentials.

        Args:
            role_arn: Role to assume
            external_id: Secret shared with the trusting account
            purpose: Short label for the session name (e.g. 'deploy', 'scan')
            region: Region the credentials will be used in
            duration_seconds: Session lifetime (default from config)

        Returns:
            AWSCredentials

        Raises:
            ValidationError: If the ARN is malformed or the role refuses us
            ExternalServiceError: If STS itself is failing
        """
        validate_role_arn(role_arn)
        if not self.circuit_breaker.allow_request():
            raise ExternalServiceError("AWS STS")

        params = {
            "RoleArn": role_arn.strip(),
            "RoleSessionName": f"{config.APP_NAME}-{purpose}-{int(time.time())}"[:64],
            "DurationSeconds": duration_seconds or config.ASSUME_ROLE_DURATION_SECONDS,
        }
        if external_id:
            params["ExternalId"] = external_id

        try:
            response = await asyncio.to_thread(self.sts.assume_role, **params)
        except ClientError as error:
            if is_access_denied(error) or error_code(error) in ("ValidationError", "InvalidClientTokenId"):
                # The caller's trust policy or external ID is wrong; STS is healthy
                self.circuit_breaker.record_success()
                logger.warning(f"assume_role refused for {mask_arn(role_arn)}: {error_code(error)}")
                raise ValidationError(
                    "Unable to assume role. Check the role's trust policy and external ID."
                ) from error
            self.circuit_breaker.record_failure()
            logger.error(f"assume_role failed for {mask_arn(role_arn)}: {error}")
            raise ExternalServiceError("AWS STS") from error
        except BotoCoreError as error:
            self.circuit_breaker.record_failure()
            logger.error(f"assume_role failed for {mask_arn(role_arn)}: {error}")
            raise ExternalServiceError("AWS STS") from error

        self.circuit_breaker.record_success()
        issued = response["Credentials"]
        logger.info(f"Assumed role {mask_arn(role_arn)} for {purpose}")
        return AWSCredentials(
            access_key_id=issued["AccessKeyId"],
            secret_access_key=issued["SecretAccessKey"],
            session_token=issued.get("SessionToken"),
            region=region or config.AWS_DEFAULT_REGION,
            expiration=issued.get("Expiration"),
        )

    @staticmethod
    def session(credentials: AWSCredentials) -> boto3.Session:
        return boto3.Session(
            aws_access_key_id=credentials.access_key_id,
            aws_secret_access_key=credentials.secret_access_key,
            aws_session_token=credentials.session_token,
            region_name=credentials.region,
        )

    @staticmethod
    def client(session: boto3.Session, service: str, region: Optional[str] = None):
        """boto3 client with global services pinned to us-east-1."""
        if service in GLOBAL_SERVICES:
            region = GLOBAL_REGION
        return session.client(service, region_name=region or session.region_name, config=BOTO_CONFIG)

    async def validate_credentials(self, credentials: AWSCredentials) -> str:
        """
        Cheap identity check (GetCallerIdentity).

        Returns:
            The account ID the credentials belong to

        Raises:
            ValidationError: If the credentials are rejected
        """
        sts = self.client(self.session(credentials), "sts")
        try:
            identity = await asyncio.to_thread(sts.get_caller_identity)
        except (ClientError, BotoCoreError) as error:
            logger.warning(f"Credential validation failed: {error_code(error) or type(error).__name__}")
            raise ValidationError("AWS credentials are invalid or expired") from error
        return identity["Account"]

    async def get_host_account_id(self) -> str:
        """Account ID of our own credentials, or the configured fallback."""
        try:
            identity = await asyncio.to_thread(self.sts.get_caller_identity)
            return identity["Account"]
        except (ClientError, BotoCoreError) as error:
            logger.warning(f"Could not resolve host account ID, using configured value: {error}")
            return config.HOST_ACCOUNT_ID
