"""
Cloud connection manager.

A connection is delegated read-only access to a customer account: a role
ARN plus an external ID. The ARN is stored encrypted and never returned.
Every read or change is scoped to the owning user; another user's
connection is indistinguishable from a missing one.
"""
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
import asyncio
import logging
import uuid

from iac_engine.core.config import config
from iac_engine.core.errors import AppError, ExternalServiceError, NotFoundError, ValidationError
from iac_engine.domain.cloud_models import CloudConnection, CloudResource, ConnectionStatus, ScanResult
from iac_engine.services.aws_sessions import (
    ACCESS_DENIED_CODES,
    AWSSessionFactory,
    mask_arn,
    validate_role_arn,
)
from iac_engine.services.cloud_scanner import CloudScanner
from iac_engine.services.credit_gate import CreditGate, get_credit_gate
from iac_engine.services.resource_discovery import ResourceDiscovery
from iac_engine.services.state_service import StateService
from iac_engine.services.store import InMemoryStore, get_store


logger = logging.getLogger(__name__)


READ_ONLY_ACTIONS = (
    "ec2:Describe*",
    "rds:Describe*",
    "s3:ListAllMyBuckets",
    "s3:GetBucketLocation",
    "s3:GetBucketVersioning",
    "s3:GetPublicAccessBlock",
    "s3:GetBucketEncryption",
    "s3:ListBucket",
    "iam:ListUsers",
    "iam:ListRoles",
    "iam:ListAccessKeys",
    "iam:GetAccessKeyLastUsed",
    "lambda:ListFunctions",
    "dynamodb:ListTables",
    "dynamodb:DescribeTable",
    "dynamodb:DescribeContinuousBackups",
    "elasticloadbalancing:Describe*",
    "ecs:List*",
    "ecs:Describe*",
    "eks:ListClusters",
    "eks:DescribeCluster",
    "cloudfront:ListDistributions",
    "route53:ListHostedZones",
    "sns:ListTopics",
    "sqs:ListQueues",
    "elasticache:Describe*",
    "ce:GetCostAndUsage",
    "logs:DescribeLogGroups",
)


def connect_role_template(external_id: str, host_account_id: str) -> str:
    """CloudFormation YAML creating the read-only cross-account role."""
    actions = "\n".join(f"                  - '{action}'" for action in READ_ONLY_ACTIONS)
    return f"""AWSTemplateFormatVersion: '2010-09-09'
Description: '{config.APP_NAME} cross-account read-only access role'
Parameters:
  ExternalId:
    Type: String
    Description: 'External ID that secures the connection'
    Default: '{external_id}'
Resources:
  ConnectRole:
    Type: 'AWS::IAM::Role'
    Properties:
      RoleName: {config.APP_NAME}-connect-role
      AssumeRolePolicyDocument:
        Version: '2012-10-17'
        Statement:
          - Effect: Allow
            Principal:
              AWS: 'arn:aws:iam::{host_account_id}:root'
            Action: 'sts:AssumeRole'
            Condition:
              StringEquals:
                'sts:ExternalId': !Ref ExternalId
      Policies:
        - PolicyName: {config.APP_NAME}-read-only
          PolicyDocument:
            Version: '2012-10-17'
            Statement:
              - Effect: Allow
                Action:
{actions}
                Resource: '*'
Outputs:
  RoleArn:
    Description: 'ARN of the role to register'
    Value: !GetAtt ConnectRole.Arn
"""


def account_from_arn(role_arn: str) -> str:
    return role_arn.split(":")[4]


class ConnectionManager:
    """Connection lifecycle, resource sync and live scans."""

    def __init__(
        self,
        store: Optional[InMemoryStore] = None,
        session_factory: Optional[AWSSessionFactory] = None,
        discovery: Optional[ResourceDiscovery] = None,
        scanner: Optional[CloudScanner] = None,
        credit_gate: Optional[CreditGate] = None,
        state_service: Optional[StateService] = None
    ):
        self.store = store or get_store()
        self.session_factory = session_factory or AWSSessionFactory()
        self.discovery = discovery or ResourceDiscovery(self.session_factory)
        self.scanner = scanner or CloudScanner(self.session_factory)
        self.credit_gate = credit_gate or get_credit_gate()
        self.state_service = state_service or StateService(self.store)

    async def generate_setup_details(self, user_id: str) -> Dict[str, Any]:
        """
        Fresh external ID plus everything the user needs to create the role.

        Returns:
            Dictionary with external_id, host_account_id, template_yaml, setup_url
        """
        external_id = str(uuid.uuid4())
        host_account_id = await self.session_factory.get_host_account_id()
        logger.info(f"Generated connection setup details for user {user_id}")
        return {
            "external_id": external_id,
            "host_account_id": host_account_id,
            "template_yaml": connect_role_template(external_id, host_account_id),
            "setup_url": (
                f"https://console.aws.amazon.com/cloudformation/home?region={config.AWS_DEFAULT_REGION}"
                f"#/stacks/quickcreate?stackName={config.APP_NAME}-connect&param_ExternalId={external_id}"
            ),
        }

    async def create_connection(
        self,
        user_id: str,
        name: str,
        role_arn: str,
        external_id: str,
        region: Optional[str] = None
    ) -> CloudConnection:
        """
        Verify the role can be assumed and save the connection.

        Raises:
            ValidationError: Malformed input, or the role refused us (a FAILED
                connection is kept so the user can see the error)
            ExternalServiceError: STS unavailable
        """
        validate_role_arn(role_arn)
        if not name or not name.strip():
            raise ValidationError("Connection name is required")
        if not external_id:
            raise ValidationError("External ID is required")

        role_arn = role_arn.strip()
        connection_id = str(uuid.uuid4())
        connection = CloudConnection(
            id=connection_id,
            user_id=user_id,
            name=name.strip(),
            encrypted_role_arn=self.state_service.encrypt_role_arn(role_arn, connection_id),
            external_id=external_id,
            region=region or config.AWS_DEFAULT_REGION,
            account_id=account_from_arn(role_arn),
        )

        try:
            await self.session_factory.assume_role(role_arn, external_id, "connect", connection.region)
        except ValidationError as error:
            connection.status = ConnectionStatus.FAILED
            connection.last_error = error.message
            await self.store.put("connections", connection_id, connection)
            logger.warning(f"Connection {connection_id} ({mask_arn(role_arn)}) failed verification")
            raise

        connection.status = ConnectionStatus.ACTIVE
        await self.store.put("connections", connection_id, connection)
        logger.info(f"Created connection {connection_id} for user {user_id} ({mask_arn(role_arn)})")
        return connection

    async def list_connections(self, user_id: str) -> List[CloudConnection]:
        return await self.store.list("connections", lambda connection: connection.user_id == user_id)

    async def get_connection(self, user_id: str, connection_id: str) -> CloudConnection:
        """
        Raises:
            NotFoundError: If absent or owned by someone else
        """
        connection = await self.store.get("connections", connection_id)
        if connection is None or connection.user_id != user_id:
            raise NotFoundError("Connection")
        return connection

    async def delete_connection(self, user_id: str, connection_id: str) -> None:
        await self.get_connection(user_id, connection_id)
        removed = await self.store.delete_cloud_resources(connection_id)
        await self.store.delete("connections", connection_id)
        logger.info(f"Deleted connection {connection_id} and {removed} resources")

    async def get_connection_resources(
        self,
        user_id: str,
        connection_id: str,
        resource_type: Optional[str] = None
    ) -> List[CloudResource]:
        await self.get_connection(user_id, connection_id)
        return await self.store.list_cloud_resources(connection_id, resource_type)

    async def _assume(self, connection: CloudConnection, purpose: str):
        role_arn = self.state_service.decrypt_role_arn(connection.encrypted_role_arn, connection.id)
        return await self.session_factory.assume_role(role_arn, connection.external_id, purpose, connection.region)

    async def sync_connection(self, user_id: str, connection_id: str) -> CloudConnection:
        """
        Discover the account's resources and upsert them.

        Raises:
            NotFoundError: Unknown connection
            ValidationError: Role refused or lacks every read permission
            ExternalServiceError: Cloud API failure
        """
        connection = await self.get_connection(user_id, connection_id)

        try:
            credentials = await self._assume(connection, "sync")
            session = self.session_factory.session(credentials)
            resources, failures = await asyncio.to_thread(
                self.discovery.discover_all, session, connection.region, connection.id
            )
            if failures and not resources and all(code in ACCESS_DENIED_CODES for code in failures):
                raise ValidationError(
                    "The connected role is missing read permissions. Update it with the setup template."
                )
        except AppError as error:
            await self._mark_failed(connection, error.message)
            raise
        except Exception as error:
            logger.error(f"Sync of connection {connection_id} failed: {error}", exc_info=True)
            await self._mark_failed(connection, "Resource discovery failed")
            raise ExternalServiceError("AWS", "Resource discovery failed. Please try again.") from error

        created = 0
        for resource in resources:
            if await self.store.upsert_cloud_resource(resource):
                created += 1

        connection.status = ConnectionStatus.ACTIVE
        connection.last_error = None
        connection.last_sync_at = datetime.now(timezone.utc)
        connection.updated_at = connection.last_sync_at
        await self.store.put("connections", connection.id, connection)
        logger.info(
            f"Synced connection {connection_id}: {len(resources)} resources ({created} new), "
            f"{len(failures)} types skipped"
        )
        return connection

    async def _mark_failed(self, connection: CloudConnection, message: str) -> None:
        connection.status = ConnectionStatus.FAILED
        connection.last_error = message[:config.ERROR_MESSAGE_MAX_CHARS]
        connection.updated_at = datetime.now(timezone.utc)
        await self.store.put("connections", connection.id, connection)

    async def scan_connection(self, user_id: str, connection_id: str) -> ScanResult:
        """
        Confirm the credentials work, charge for the scan, then scan.

        Raises:
            PaymentRequiredError: Insufficient credits
            ValidationError: Role refused or credentials rejected
        """
        connection = await self.get_connection(user_id, connection_id)
        credentials = await self._assume(connection, "scan")
        account_id = await self.session_factory.validate_credentials(credentials)

        await self.credit_gate.charge(user_id, "CLOUD_SCAN")
        return await self.scanner.scan_account(credentials, account_id=account_id)
