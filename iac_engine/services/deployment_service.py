"""
Deployment orchestrator.

Drives a template through plan, apply and destroy in an isolated terraform
workspace, using short-lived credentials from a delegated deployment role.

Invariants:
- Status changes follow ALLOWED_TRANSITIONS. An illegal request is refused
  before anything happens (no slot, no workspace, no charge, no status change).
- Every operation holds a per-user concurrency slot and its own workspace;
  both are released on every exit path.
- Apply never trusts an earlier plan artifact: it re-assumes the role,
  re-inits and re-plans, then applies the fresh plan.
- Terraform state is stored encrypted; the resource count comes from the
  state's resource list, not the apply log. A failed apply keeps whatever
  state it left behind so the deployment can still be destroyed.
- Credentials only ever exist inside the workspace; the Deployment record
  holds none.
"""
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
import json
import logging
import uuid

from iac_engine.core.config import config
from iac_engine.core.errors import (
    AppError,
    ConflictError,
    NotFoundError,
    ProvisioningError,
    ValidationError,
)
from iac_engine.domain.cloud_models import AWSCredentials
from iac_engine.domain.deployment_models import (
    IN_PROGRESS_STATUSES,
    Deployment,
    DeploymentCredential,
    DeploymentStatus,
    can_transition,
)
from iac_engine.services.aws_sessions import AWSSessionFactory, mask_arn, validate_role_arn
from iac_engine.services.concurrency import DeploymentSlots, get_deployment_slots
from iac_engine.services.credit_gate import CreditGate, get_credit_gate
from iac_engine.services.policy_engine import PolicyEngine
from iac_engine.services.sandbox import CommandResult, TerraformSandbox
from iac_engine.services.state_service import StateService
from iac_engine.services.store import InMemoryStore, get_store
from iac_engine.services.template_service import TemplateService


logger = logging.getLogger(__name__)

MAX_LISTED_DEPLOYMENTS = 50
OUTPUT_EXCERPT_CHARS = 500


def count_state_resources(state_content: Optional[str]) -> int:
    """Number of entries in a terraform state's resource list."""
    if not state_content:
        return 0
    try:
        state = json.loads(state_content)
    except ValueError:
        logger.warning("count_state_resources: state is not valid JSON")
        return 0
    resources = state.get("resources") if isinstance(state, dict) else None
    return len(resources) if isinstance(resources, list) else 0


def _truncate(text: Optional[str], limit: int) -> Optional[str]:
    return text[:limit] if text else text


def _tool_failure(step: str, result: CommandResult) -> ProvisioningError:
    detail = result.error or "unknown error"
    excerpt = (result.output or "")[-OUTPUT_EXCERPT_CHARS:]
    message = f"Terraform {step} failed: {detail}"
    if excerpt:
        message = f"{message}\n{excerpt}"
    return ProvisioningError(message, output=_truncate(result.output, config.DEPLOYMENT_OUTPUT_MAX_CHARS) or "")


def deployment_role_template(external_id: str, host_account_id: Optional[str] = None) -> str:
    """CloudFormation YAML creating the deployment role, scoped to resources tagged ManagedBy=<app>."""
    app = config.APP_NAME
    account = host_account_id or config.HOST_ACCOUNT_ID
    return f"""AWSTemplateFormatVersion: '2010-09-09'
Description: {app} deployment role - allows {app} to deploy Terraform resources

Parameters:
  ExternalId:
    Type: String
    Default: '{external_id}'
    Description: External ID for secure cross-account access

Resources:
  DeploymentRole:
    Type: AWS::IAM::Role
    Properties:
      RoleName: {app}-deployment-role
      AssumeRolePolicyDocument:
        Version: '2012-10-17'
        Statement:
          - Effect: Allow
            Principal:
              AWS: 'arn:aws:iam::{account}:root'
            Action: 'sts:AssumeRole'
            Condition:
              StringEquals:
                'sts:ExternalId': !Ref ExternalId
      Policies:
        - PolicyName: {app}-deployment-policy
          PolicyDocument:
            Version: '2012-10-17'
            Statement:
              - Sid: ResourceManagement
                Effect: Allow
                Action:
                  - 'ec2:*'
                  - 'rds:*'
                  - 's3:*'
                  - 'lambda:*'
                  - 'dynamodb:*'
                  - 'elasticloadbalancing:*'
                  - 'ecs:*'
                  - 'route53:*'
                  - 'cloudfront:*'
                  - 'cloudwatch:*'
                  - 'logs:*'
                  - 'secretsmanager:*'
                  - 'sqs:*'
                  - 'sns:*'
                  - 'apigateway:*'
                  - 'elasticache:*'
                Resource: '*'
                Condition:
                  StringEqualsIfExists:
                    'aws:RequestTag/ManagedBy': '{app}'
              - Sid: TaggedResourceManagement
                Effect: Allow
                Action:
                  - 'ec2:*'
                  - 'rds:*'
                  - 's3:*'
                  - 'lambda:*'
                  - 'dynamodb:*'
                  - 'elasticloadbalancing:*'
                  - 'ecs:*'
                Resource: '*'
                Condition:
                  StringEquals:
                    'aws:ResourceTag/ManagedBy': '{app}'
              - Sid: IAMPassRole
                Effect: Allow
                Action:
                  - 'iam:PassRole'
                  - 'iam:CreateRole'
                  - 'iam:AttachRolePolicy'
                  - 'iam:DetachRolePolicy'
                  - 'iam:DeleteRole'
                  - 'iam:GetRole'
                  - 'iam:CreatePolicy'
                  - 'iam:DeletePolicy'
                Resource:
                  - 'arn:aws:iam::*:role/{app}-*'
                  - 'arn:aws:iam::*:policy/{app}-*'
              - Sid: KMSAccess
                Effect: Allow
                Action:
                  - 'kms:CreateKey'
                  - 'kms:CreateAlias'
                  - 'kms:Encrypt'
                  - 'kms:Decrypt'
                  - 'kms:DescribeKey'
                  - 'kms:TagResource'
                Resource: '*'
              - Sid: ReadOnly
                Effect: Allow
                Action:
                  - 'sts:GetCallerIdentity'
                  - 'iam:ListRoles'
                  - 'iam:ListPolicies'
                  - 'ec2:DescribeAvailabilityZones'
                  - 'ec2:DescribeRegions'
                Resource: '*'

Outputs:
  RoleArn:
    Description: ARN of the deployment role
    Value: !GetAtt DeploymentRole.Arn
  ExternalId:
    Description: External ID for the role
    Value: !Ref ExternalId
"""


class DeploymentService:
    """Deployment credentials and the plan/apply/destroy lifecycle."""

    def __init__(
        self,
        store: Optional[InMemoryStore] = None,
        session_factory: Optional[AWSSessionFactory] = None,
        sandbox: Optional[TerraformSandbox] = None,
        state_service: Optional[StateService] = None,
        slots: Optional[DeploymentSlots] = None,
        credit_gate: Optional[CreditGate] = None,
        policy_engine: Optional[PolicyEngine] = None,
        template_service: Optional[TemplateService] = None
    ):
        self.store = store or get_store()
        self.session_factory = session_factory or AWSSessionFactory()
        self.sandbox = sandbox or TerraformSandbox()
        self.state_service = state_service or StateService(self.store)
        self.slots = slots or get_deployment_slots()
        self.credit_gate = credit_gate or get_credit_gate()
        self.policy_engine = policy_engine or PolicyEngine(self.store)
        self.template_service = template_service or TemplateService(self.store, credit_gate=self.credit_gate)

    # --- Credentials -----------------------------------------------------

    async def create_credential(
        self,
        user_id: str,
        name: str,
        role_arn: str,
        external_id: Optional[str] = None
    ) -> DeploymentCredential:
        """
        Register a deployment role after proving it can be assumed.

        Args:
            user_id: Owner
            name: Human label
            role_arn: Deployment role ARN (shape-checked before any network call)
            external_id: External ID from the setup template (generated if None)

        Raises:
            ValidationError: Malformed ARN, missing name, or the role refused us
            ExternalServiceError: STS unavailable
        """
        validate_role_arn(role_arn)
        if not name or not name.strip():
            raise ValidationError("Credential name is required")

        role_arn = role_arn.strip()
        external_id = external_id or str(uuid.uuid4())
        await self.session_factory.assume_role(role_arn, external_id, "verify")

        credential_id = str(uuid.uuid4())
        credential = DeploymentCredential(
            id=credential_id,
            user_id=user_id,
            name=name.strip(),
            encrypted_role_arn=self.state_service.encrypt_role_arn(role_arn, credential_id),
            external_id=external_id,
        )
        await self.store.put("credentials", credential_id, credential)
        logger.info("create_credential: Created %s for user %s (%s)", credential_id, user_id, mask_arn(role_arn))
        return credential

    async def list_credentials(self, user_id: str) -> List[DeploymentCredential]:
        credentials = await self.store.list("credentials", lambda item: item.user_id == user_id)
        credentials.sort(key=lambda item: item.created_at, reverse=True)
        return credentials

    async def get_credential(self, user_id: str, credential_id: str) -> DeploymentCredential:
        credential = await self.store.get("credentials", credential_id)
        if credential is None or credential.user_id != user_id:
            raise NotFoundError("Credential")
        return credential

    async def toggle_credential(self, user_id: str, credential_id: str, is_active: bool) -> DeploymentCredential:
        credential = await self.get_credential(user_id, credential_id)
        credential.is_active = is_active
        credential.updated_at = datetime.now(timezone.utc)
        await self.store.put("credentials", credential_id, credential)
        return credential

    async def delete_credential(self, user_id: str, credential_id: str) -> None:
        """
        Raises:
            NotFoundError: Unknown credential
            ConflictError: A deployment using it is still in progress
        """
        await self.get_credential(user_id, credential_id)
        in_use = await self.store.list(
            "deployments",
            lambda item: item.credential_id == credential_id and item.status in IN_PROGRESS_STATUSES,
        )
        if in_use:
            raise ConflictError("Cannot delete credentials with active deployments")
        await self.store.delete("credentials", credential_id)
        logger.info("delete_credential: Deleted %s", credential_id)

    def get_deployment_setup_template(self, external_id: Optional[str] = None) -> Dict[str, str]:
        external_id = external_id or str(uuid.uuid4())
        return {
            "external_id": external_id,
            "template_yaml": deployment_role_template(external_id),
        }

    # --- Deployments -----------------------------------------------------

    async def get_deployment(self, user_id: str, deployment_id: str) -> Deployment:
        deployment = await self.store.get("deployments", deployment_id)
        if deployment is None or deployment.user_id != user_id:
            raise NotFoundError("Deployment")
        return deployment

    async def list_deployments(self, user_id: str, template_id: Optional[str] = None) -> List[Deployment]:
        """Newest first, at most 50."""
        deployments = await self.store.list(
            "deployments",
            lambda item: item.user_id == user_id and (template_id is None or item.template_id == template_id),
        )
        deployments.sort(key=lambda item: item.created_at, reverse=True)
        return deployments[:MAX_LISTED_DEPLOYMENTS]

    async def plan_deployment(
        self,
        user_id: str,
        template_id: str,
        credential_id: str,
        region: Optional[str] = None
    ) -> Deployment:
        """
        Create a deployment and run terraform plan against the template.

        The plan workspace is released afterwards; apply re-plans.

        Returns:
            Deployment in PLAN_READY with plan summary, audit score and cost estimate

        Raises:
            NotFoundError: Unknown template or credential
            ValidationError: Inactive credential, or the role refused us
            RateLimitError: Too many concurrent deployments
            PaymentRequiredError: Insufficient credits
            ProvisioningError: terraform init/plan failed (deployment is FAILED)
        """
        region = region or config.AWS_DEFAULT_REGION
        template = await self.template_service.get_template(user_id, template_id)
        credential = await self.get_credential(user_id, credential_id)
        if not credential.is_active:
            raise ValidationError("Deployment credential is inactive")

        async with self.slots.slot(user_id):
            await self.credit_gate.charge(user_id, "DEPLOY_PLAN")

            now = datetime.now(timezone.utc)
            deployment = Deployment(
                id=str(uuid.uuid4()),
                user_id=user_id,
                template_id=template.id,
                credential_id=credential.id,
                region=region,
                created_at=now,
                started_at=now,
            )
            await self.store.put("deployments", deployment.id, deployment)
            logger.info("plan_deployment: Entry - deployment=%s template=%s region=%s", deployment.id, template.id, region)

            workdir = None
            try:
                credentials = await self._assume_or_refund(user_id, credential, region, "DEPLOY_PLAN")

                workdir = await self.sandbox.create_workspace(deployment.id)
                await self.sandbox.write_template_files(workdir, template.content, credentials, region)

                logger.info("plan_deployment: Stage=init - deployment=%s", deployment.id)
                init = await self.sandbox.init(workdir)
                if not init.success:
                    raise _tool_failure("init", init)

                logger.info("plan_deployment: Stage=plan - deployment=%s", deployment.id)
                plan = await self.sandbox.plan(workdir)
                if not plan.success:
                    raise _tool_failure("plan", plan)

                logger.info("plan_deployment: Stage=audit - deployment=%s", deployment.id)
                report = await self.policy_engine.audit_template(template.content, template.provider, template.id)

                self._transition(deployment, DeploymentStatus.PLAN_READY)
                deployment.plan_summary = plan.summary
                deployment.plan_output = _truncate(plan.output, config.DEPLOYMENT_OUTPUT_MAX_CHARS)
                deployment.audit_score = report.summary.score
                deployment.audit_issues = report.summary.total_issues
                deployment.resource_count = plan.summary.add + plan.summary.change
                deployment.estimated_cost = report.cost_breakdown.total_monthly or None
                await self.store.put("deployments", deployment.id, deployment)
                logger.info(
                    "plan_deployment: Success - deployment=%s add=%d change=%d destroy=%d",
                    deployment.id, plan.summary.add, plan.summary.change, plan.summary.destroy,
                )
                return deployment

            except Exception as error:
                await self._fail(deployment, error, "plan_deployment")
                raise

            finally:
                await self.sandbox.cleanup_workspace(workdir)

    async def apply_deployment(self, user_id: str, deployment_id: str) -> Deployment:
        """
        Apply a planned deployment.

        Raises:
            NotFoundError: Unknown deployment
            ConflictError: Not in PLAN_READY (nothing is changed)
            RateLimitError: Too many concurrent deployments
            PaymentRequiredError: Insufficient credits
            ProvisioningError: terraform failed (deployment is FAILED)
        """
        deployment = await self.get_deployment(user_id, deployment_id)
        if not can_transition(deployment.status, DeploymentStatus.APPLYING):
            raise ConflictError(f"Cannot apply: deployment is in {deployment.status.value} state")

        credential = await self.get_credential(user_id, deployment.credential_id)
        template = await self.template_service.get_template(user_id, deployment.template_id)

        async with self.slots.slot(user_id):
            await self.credit_gate.charge(user_id, "DEPLOY_APPLY")
            self._transition(deployment, DeploymentStatus.APPLYING)
            await self.store.put("deployments", deployment.id, deployment)
            logger.info("apply_deployment: Entry - deployment=%s", deployment.id)

            workdir = None
            applied = None
            try:
                credentials = await self._assume_or_refund(user_id, credential, deployment.region, "DEPLOY_APPLY")

                workdir = await self.sandbox.create_workspace(deployment.id)
                await self.sandbox.write_template_files(workdir, template.content, credentials, deployment.region)

                logger.info("apply_deployment: Stage=init - deployment=%s", deployment.id)
                init = await self.sandbox.init(workdir)
                if not init.success:
                    raise _tool_failure("init", init)

                logger.info("apply_deployment: Stage=replan - deployment=%s", deployment.id)
                plan = await self.sandbox.plan(workdir)
                if not plan.success:
                    raise _tool_failure("re-plan", plan)

                logger.info("apply_deployment: Stage=apply - deployment=%s", deployment.id)
                applied = await self.sandbox.apply(workdir)
                if not applied.success:
                    raise _tool_failure("apply", applied)

                if applied.state_content:
                    await self.state_service.store_state(deployment.id, applied.state_content)

                self._transition(deployment, DeploymentStatus.SUCCEEDED)
                deployment.apply_output = _truncate(applied.output, config.DEPLOYMENT_OUTPUT_MAX_CHARS)
                deployment.resource_count = count_state_resources(applied.state_content)
                deployment.error_message = None
                deployment.completed_at = datetime.now(timezone.utc)
                await self.store.put("deployments", deployment.id, deployment)
                logger.info(
                    "apply_deployment: Success - deployment=%s resources=%d", deployment.id, deployment.resource_count
                )
                return deployment

            except Exception as error:
                if applied is not None and applied.state_content:
                    await self._keep_partial_state(deployment, applied.state_content)
                await self._fail(deployment, error, "apply_deployment")
                raise

            finally:
                await self.sandbox.cleanup_workspace(workdir)

    async def destroy_deployment(self, user_id: str, deployment_id: str) -> Deployment:
        """
        Destroy a deployment's infrastructure from its stored state.

        Raises:
            NotFoundError: Unknown deployment
            ConflictError: Not SUCCEEDED or FAILED (nothing is changed)
            RateLimitError: Too many concurrent deployments
            ProvisioningError: terraform destroy failed (deployment is FAILED, retryable)
        """
        deployment = await self.get_deployment(user_id, deployment_id)
        if not can_transition(deployment.status, DeploymentStatus.DESTROYING):
            raise ConflictError(f"Cannot destroy: deployment is in {deployment.status.value} state")

        credential = await self.get_credential(user_id, deployment.credential_id)
        template = await self.template_service.get_template(user_id, deployment.template_id)

        async with self.slots.slot(user_id):
            self._transition(deployment, DeploymentStatus.DESTROYING)
            await self.store.put("deployments", deployment.id, deployment)
            logger.info("destroy_deployment: Entry - deployment=%s", deployment.id)

            workdir = None
            try:
                credentials = await self._assume(credential, deployment.region)

                workdir = await self.sandbox.create_workspace(deployment.id)
                await self.sandbox.write_template_files(workdir, template.content, credentials, deployment.region)
                state_content = await self.state_service.retrieve_state(deployment.id)

                logger.info("destroy_deployment: Stage=init - deployment=%s", deployment.id)
                init = await self.sandbox.init(workdir)
                if not init.success:
                    raise _tool_failure("init", init)

                logger.info("destroy_deployment: Stage=destroy - deployment=%s", deployment.id)
                destroyed = await self.sandbox.destroy(workdir, state_content)
                if not destroyed.success:
                    raise _tool_failure("destroy", destroyed)

                await self.state_service.delete_state(deployment.id)
                self._transition(deployment, DeploymentStatus.DESTROYED)
                deployment.resource_count = 0
                deployment.apply_output = _truncate(destroyed.output, config.DEPLOYMENT_OUTPUT_MAX_CHARS)
                deployment.error_message = None
                deployment.completed_at = datetime.now(timezone.utc)
                await self.store.put("deployments", deployment.id, deployment)
                logger.info("destroy_deployment: Success - deployment=%s", deployment.id)
                return deployment

            except Exception as error:
                await self._fail(deployment, error, "destroy_deployment", prefix="Destroy failed: ")
                raise

            finally:
                await self.sandbox.cleanup_workspace(workdir)

    # --- Helpers ---------------------------------------------------------

    @staticmethod
    def _transition(deployment: Deployment, target: DeploymentStatus) -> None:
        if not can_transition(deployment.status, target):
            raise ConflictError(
                f"Illegal deployment transition {deployment.status.value} -> {target.value}"
            )
        deployment.status = target

    async def _assume(self, credential: DeploymentCredential, region: str) -> AWSCredentials:
        role_arn = self.state_service.decrypt_role_arn(credential.encrypted_role_arn, credential.id)
        return await self.session_factory.assume_role(role_arn, credential.external_id, "deploy", region)

    async def _assume_or_refund(
        self,
        user_id: str,
        credential: DeploymentCredential,
        region: str,
        action: str
    ) -> AWSCredentials:
        """Assume the role; a refusal means no metered work happened, so the charge is returned."""
        try:
            return await self._assume(credential, region)
        except AppError:
            await self.credit_gate.refund(user_id, action)
            raise

    async def _keep_partial_state(self, deployment: Deployment, state_content: str) -> None:
        """Store the state a failed apply left behind, for a later destroy."""
        try:
            await self.state_service.store_state(deployment.id, state_content)
        except AppError as error:
            logger.error(
                "apply_deployment: Stage=partial_state - deployment=%s - could not store state: %s",
                deployment.id, error.message,
            )
            return
        deployment.resource_count = count_state_resources(state_content)
        logger.warning(
            "apply_deployment: Stage=partial_state - deployment=%s resources=%d",
            deployment.id, deployment.resource_count,
        )

    async def _fail(self, deployment: Deployment, error: Exception, operation: str, prefix: str = "") -> None:
        message = error.message if isinstance(error, AppError) else str(error) or type(error).__name__
        logger.error("%s: Failed - deployment=%s - %s: %s", operation, deployment.id, type(error).__name__, message)

        if can_transition(deployment.status, DeploymentStatus.FAILED):
            deployment.status = DeploymentStatus.FAILED
        deployment.error_message = _truncate(f"{prefix}{message}", config.ERROR_MESSAGE_MAX_CHARS)
        if isinstance(error, ProvisioningError) and error.output:
            if operation == "plan_deployment":
                deployment.plan_output = _truncate(error.output, config.DEPLOYMENT_OUTPUT_MAX_CHARS)
            else:
                deployment.apply_output = _truncate(error.output, config.DEPLOYMENT_OUTPUT_MAX_CHARS)
        deployment.completed_at = datetime.now(timezone.utc)
        await self.store.put("deployments", deployment.id, deployment)

    async def get_status(self) -> Dict[str, Any]:
        """Provisioning tool availability for health checks."""
        return await self.sandbox.check_terraform_available()
