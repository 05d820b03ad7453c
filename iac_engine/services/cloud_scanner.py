"""
Live cloud scanner.

Scans one AWS account and region for security issues and cost-saving
opportunities. Every category runs in a worker thread (boto3 is blocking),
all categories run concurrently and each is bounded by
SCAN_CATEGORY_TIMEOUT_SECONDS. A category that fails or times out is
recorded in ScanResult.errors and the others are still reported.
"""
from typing import Any, Dict, List, Optional
from datetime import date, datetime, timedelta, timezone
import asyncio
import logging

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from iac_engine.core.config import config
from iac_engine.domain.cloud_models import (
    AWSCredentials,
    CategoryResult,
    CloudResource,
    CostOpportunity,
    ScanResult,
    SecurityIssue,
)
from iac_engine.domain.policy_models import Severity
from iac_engine.services.aws_sessions import AWSSessionFactory, error_code, is_access_denied
from iac_engine.services.cost_service import CostService


logger = logging.getLogger(__name__)


CATEGORIES = (
    "compute",
    "network",
    "storage",
    "database",
    "identity",
    "serverless",
    "nosql",
    "load_balancers",
    "containers",
    "cost",
)

CATEGORY_LABELS = {
    "compute": "EC2",
    "network": "Security Group",
    "storage": "S3",
    "database": "RDS",
    "identity": "IAM",
    "serverless": "Lambda",
    "nosql": "DynamoDB",
    "load_balancers": "ELB",
    "containers": "EKS",
    "cost": "Cost Explorer",
}

SENSITIVE_PORTS = (22, 3389, 3306, 5432, 27017, 6379, 9200)

DEPRECATED_RUNTIMES = {
    "nodejs14.x",
    "nodejs16.x",
    "python3.8",
    "python3.9",
    "java11",
    "dotnetcore3.1",
    "ruby2.7",
    "go1.x",
}

KEY_MAX_AGE_DAYS = 90
EBS_GB_MONTH_PRICE = 0.10
STOPPED_INSTANCE_SAVINGS = 5.0
SMALL_DB_BASELINE_COST = 15.0
SMALL_DB_GRAVITON_SAVINGS = 5.0
TREND_MONTHS = 6

PUBLIC_ACCESS_FLAGS = ("BlockPublicAcls", "BlockPublicPolicy", "IgnorePublicAcls", "RestrictPublicBuckets")


def _older_than(moment: Optional[datetime], days: int) -> bool:
    if moment is None:
        return False
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc) - moment > timedelta(days=days)


def _name_tag(tags: Optional[List[Dict[str, str]]]) -> Optional[str]:
    for tag in tags or []:
        if tag.get("Key") == "Name":
            return tag.get("Value")
    return None


def describe_failure(category: str, error: BaseException) -> str:
    """Error line for ScanResult.errors. Permission problems get an actionable message."""
    label = CATEGORY_LABELS.get(category, category)
    if is_access_denied(error):
        return (
            f"{label} scan skipped: the role is missing read permissions ({error_code(error)}). "
            f"Attach the read-only policy from the connection setup template."
        )
    if isinstance(error, asyncio.TimeoutError):
        return f"{label} scan timed out after {config.SCAN_CATEGORY_TIMEOUT_SECONDS}s"
    return f"{label} scan failed: {error}"


class CloudScanner:
    """Security and cost scan of one account/region."""

    def __init__(
        self,
        session_factory: Optional[AWSSessionFactory] = None,
        cost_service: Optional[CostService] = None
    ):
        self.session_factory = session_factory or AWSSessionFactory()
        self.cost_service = cost_service or CostService()

    async def scan_account(self, credentials: AWSCredentials, account_id: Optional[str] = None) -> ScanResult:
        """
        Run every category concurrently and aggregate.

        Args:
            credentials: Credentials for the account being scanned
            account_id: Account ID if already known (informational)

        Returns:
            ScanResult; partial when any category failed
        """
        session = self.session_factory.session(credentials)
        region = credentials.region
        logger.info(f"Starting cloud scan for region {region}")

        results = await asyncio.gather(*(self._run_category(name, session, region) for name in CATEGORIES))
        categories = {result.category: result for result in results}
        errors = [result.error for result in results if result.error]
        if errors:
            logger.warning(f"Cloud scan for {region} completed with {len(errors)} failed categories")

        cost_summary = await self._cost_summary(categories, region)

        issues = [issue for result in results for issue in result.issues]
        opportunities = [item for result in results for item in result.opportunities]
        summary = {
            "total_resources": sum(result.scanned_count for result in results),
            "critical_issues": sum(1 for issue in issues if issue.severity == Severity.CRITICAL),
            "high_issues": sum(1 for issue in issues if issue.severity == Severity.HIGH),
            "estimated_monthly_savings": round(sum(item.potential_savings for item in opportunities), 2),
        }

        logger.info(
            f"Cloud scan complete for {region}: {summary['total_resources']} resources, "
            f"{len(issues)} issues, {len(opportunities)} opportunities"
        )
        return ScanResult(
            account_id=account_id,
            region=region,
            categories=categories,
            errors=errors,
            cost_summary=cost_summary,
            summary=summary,
        )

    async def _run_category(self, category: str, session: boto3.Session, region: str) -> CategoryResult:
        scan = getattr(self, f"_scan_{category}")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(scan, session, region),
                timeout=config.SCAN_CATEGORY_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as error:
            logger.warning(f"Scan category {category} timed out")
            return CategoryResult(category=category, error=describe_failure(category, error))
        except (ClientError, BotoCoreError) as error:
            logger.warning(f"Scan category {category} failed: {error}")
            return CategoryResult(category=category, error=describe_failure(category, error))
        except Exception as error:
            logger.error(f"Scan category {category} failed unexpectedly: {error}", exc_info=True)
            return CategoryResult(category=category, error=describe_failure(category, error))

    async def _cost_summary(self, categories: Dict[str, CategoryResult], region: str) -> Dict[str, Any]:
        """Cost Explorer figures when it reports spend, otherwise a pricing estimate of what was found."""
        explorer = categories.get("cost")
        by_service = dict(explorer.extra.get("by_service", {})) if explorer else {}
        history = list(explorer.extra.get("history", [])) if explorer else []
        total = round(sum(by_service.values()), 2)

        if total > 0:
            return {"source": "cost_explorer", "total_monthly": total, "by_service": by_service, "history": history}

        priced = [
            resource
            for result in categories.values()
            for resource in result.extra.get("resources", [])
        ]
        try:
            breakdown = await self.cost_service.analyze_live_resources(priced, region)
        except Exception as error:
            logger.warning(f"Heuristic cost analysis failed: {error}")
            return {"source": "heuristic", "total_monthly": 0.0, "by_service": {}, "history": history}
        return {
            "source": "heuristic",
            "total_monthly": breakdown.total_monthly,
            "by_service": breakdown.by_service,
            "history": history,
        }

    # --- Categories (run in worker threads) ------------------------------

    def _scan_compute(self, session: boto3.Session, region: str) -> CategoryResult:
        ec2 = self.session_factory.client(session, "ec2", region)
        result = CategoryResult(category="compute")
        priced: List[CloudResource] = []

        for page in ec2.get_paginator("describe_instances").paginate():
            for reservation in page.get("Reservations", []):
                for instance in reservation.get("Instances", []):
                    result.scanned_count += 1
                    instance_id = instance.get("InstanceId", "Unknown")
                    state = instance.get("State", {}).get("Name")

                    if state == "stopped":
                        result.opportunities.append(CostOpportunity(
                            resource_type="EC2 Instance",
                            resource_id=instance_id,
                            current_cost=0.0,
                            potential_savings=STOPPED_INSTANCE_SAVINGS,
                            recommendation="Instance is stopped but its volumes are still billed. Terminate it if it is no longer needed.",
                            region=region,
                        ))
                        continue
                    if state != "running":
                        continue

                    if instance.get("MetadataOptions", {}).get("HttpTokens") != "required":
                        result.issues.append(SecurityIssue(
                            resource_type="EC2 Instance",
                            resource_id=instance_id,
                            severity=Severity.HIGH,
                            issue="IMDSv1 is allowed (HttpTokens is not 'required')",
                            recommendation="Require IMDSv2 tokens to block SSRF access to instance credentials",
                            region=region,
                        ))
                    priced.append(CloudResource(
                        connection_id="",
                        resource_id=instance_id,
                        resource_type="ec2_instance",
                        region=region,
                        name=_name_tag(instance.get("Tags")),
                        metadata={"instance_type": instance.get("InstanceType")},
                    ))

        for page in ec2.get_paginator("describe_volumes").paginate(
            Filters=[{"Name": "status", "Values": ["available"]}]
        ):
            for volume in page.get("Volumes", []):
                result.scanned_count += 1
                monthly = volume.get("Size", 0) * EBS_GB_MONTH_PRICE
                result.opportunities.append(CostOpportunity(
                    resource_type="EBS Volume",
                    resource_id=volume.get("VolumeId", "Unknown"),
                    current_cost=monthly,
                    potential_savings=monthly,
                    recommendation="Unattached volume. Snapshot and delete it if it is not needed.",
                    region=region,
                ))
                priced.append(CloudResource(
                    connection_id="",
                    resource_id=volume.get("VolumeId", "Unknown"),
                    resource_type="ebs_volume",
                    region=region,
                    metadata={"size": volume.get("Size", 0), "volume_type": volume.get("VolumeType")},
                ))

        result.extra["resources"] = priced
        return result

    def _scan_network(self, session: boto3.Session, region: str) -> CategoryResult:
        ec2 = self.session_factory.client(session, "ec2", region)
        result = CategoryResult(category="network")

        for page in ec2.get_paginator("describe_security_groups").paginate():
            for group in page.get("SecurityGroups", []):
                result.scanned_count += 1
                group_ref = f"{group.get('GroupId')} ({group.get('GroupName')})"
                for permission in group.get("IpPermissions", []):
                    result.issues.extend(self._permission_issues(group_ref, permission, region))

        return result

    @staticmethod
    def _permission_issues(group_ref: str, permission: Dict[str, Any], region: str) -> List[SecurityIssue]:
        """CRITICAL issues for one ingress permission open to the world."""
        public_ipv4 = any(item.get("CidrIp") == "0.0.0.0/0" for item in permission.get("IpRanges", []))
        public_ipv6 = any(item.get("CidrIpv6") == "::/0" for item in permission.get("Ipv6Ranges", []))
        if not (public_ipv4 or public_ipv6):
            return []
        cidr = "0.0.0.0/0" if public_ipv4 else "::/0"

        def issue(text: str, recommendation: str) -> SecurityIssue:
            return SecurityIssue(
                resource_type="Security Group",
                resource_id=group_ref,
                severity=Severity.CRITICAL,
                issue=text,
                recommendation=recommendation,
                region=region,
            )

        if permission.get("IpProtocol") == "-1":
            return [issue(f"All traffic is open to the world ({cidr})", "Restrict to only necessary ports and IPs")]

        from_port = permission.get("FromPort")
        to_port = permission.get("ToPort")
        if from_port == 0 and to_port == 65535:
            return [issue(f"All ports (0-65535) are open to the world ({cidr})", "Restrict to only necessary ports and IPs")]
        if from_port is None or to_port is None:
            return []

        return [
            issue(
                f"Port {port} is open to the world ({cidr}) via range {from_port}-{to_port}",
                "Restrict CIDR to specific IP addresses or ranges",
            )
            for port in SENSITIVE_PORTS
            if from_port <= port <= to_port
        ]

    def _scan_storage(self, session: boto3.Session, region: str) -> CategoryResult:
        s3 = self.session_factory.client(session, "s3", region)
        result = CategoryResult(category="storage")
        priced: List[CloudResource] = []

        for bucket in s3.list_buckets().get("Buckets", []):
            name = bucket["Name"]
            result.scanned_count += 1

            try:
                block = s3.get_public_access_block(Bucket=name)["PublicAccessBlockConfiguration"]
                missing = [flag for flag in PUBLIC_ACCESS_FLAGS if not block.get(flag)]
                if missing:
                    result.issues.append(SecurityIssue(
                        resource_type="S3 Bucket",
                        resource_id=name,
                        severity=Severity.CRITICAL,
                        issue=f"Public access not fully blocked (missing: {', '.join(missing)})",
                        recommendation="Enable all four public access block settings: " + ", ".join(PUBLIC_ACCESS_FLAGS),
                    ))
            except ClientError as error:
                if error_code(error) != "NoSuchPublicAccessBlockConfiguration":
                    raise
                result.issues.append(SecurityIssue(
                    resource_type="S3 Bucket",
                    resource_id=name,
                    severity=Severity.CRITICAL,
                    issue="No public access block configuration",
                    recommendation="Configure public access block settings",
                ))

            try:
                s3.get_bucket_encryption(Bucket=name)
            except ClientError as error:
                if error_code(error) != "ServerSideEncryptionConfigurationNotFoundError":
                    raise
                result.issues.append(SecurityIssue(
                    resource_type="S3 Bucket",
                    resource_id=name,
                    severity=Severity.HIGH,
                    issue="Default encryption is not enabled",
                    recommendation="Enable default server-side encryption",
                ))

            result.opportunities.append(CostOpportunity(
                resource_type="S3 Bucket",
                resource_id=name,
                current_cost=0.0,
                potential_savings=0.0,
                recommendation="Enable Intelligent-Tiering to automatically save on infrequent access",
            ))
            priced.append(CloudResource(connection_id="", resource_id=name, resource_type="s3_bucket", region=region, name=name))

        result.extra["resources"] = priced
        return result

    def _scan_database(self, session: boto3.Session, region: str) -> CategoryResult:
        rds = self.session_factory.client(session, "rds", region)
        result = CategoryResult(category="database")
        priced: List[CloudResource] = []

        for page in rds.get_paginator("describe_db_instances").paginate():
            for db in page.get("DBInstances", []):
                result.scanned_count += 1
                identifier = db.get("DBInstanceIdentifier", "Unknown")
                instance_class = db.get("DBInstanceClass", "")

                def issue(severity: Severity, text: str, recommendation: str) -> None:
                    result.issues.append(SecurityIssue(
                        resource_type="RDS Instance",
                        resource_id=identifier,
                        severity=severity,
                        issue=text,
                        recommendation=recommendation,
                        region=region,
                    ))

                if db.get("PubliclyAccessible"):
                    issue(Severity.HIGH, "Database is publicly accessible", "Disable public accessibility and use VPC")
                if not db.get("StorageEncrypted"):
                    issue(Severity.HIGH, "Storage is not encrypted", "Enable storage encryption")
                if not db.get("MultiAZ") and "prod" in identifier.lower():
                    issue(Severity.MEDIUM, "Production database is not Multi-AZ", "Enable Multi-AZ for high availability")

                if db.get("DBInstanceStatus") == "available" and ("micro" in instance_class or "small" in instance_class):
                    result.opportunities.append(CostOpportunity(
                        resource_type="RDS Instance",
                        resource_id=identifier,
                        current_cost=SMALL_DB_BASELINE_COST,
                        potential_savings=SMALL_DB_GRAVITON_SAVINGS,
                        recommendation="Consider Graviton (db.t4g) for 20% better price/performance",
                        region=region,
                    ))

                priced.append(CloudResource(
                    connection_id="",
                    resource_id=identifier,
                    resource_type="rds_instance",
                    region=region,
                    name=identifier,
                    metadata={
                        "instance_class": instance_class,
                        "engine": db.get("Engine"),
                        "allocated_storage": db.get("AllocatedStorage"),
                        "multi_az": bool(db.get("MultiAZ")),
                    },
                ))

        result.extra["resources"] = priced
        return result

    def _scan_identity(self, session: boto3.Session, region: str) -> CategoryResult:
        iam = self.session_factory.client(session, "iam")
        result = CategoryResult(category="identity")

        for page in iam.get_paginator("list_users").paginate():
            for user in page.get("Users", []):
                result.scanned_count += 1
                user_name = user["UserName"]

                if _older_than(user.get("PasswordLastUsed"), KEY_MAX_AGE_DAYS):
                    result.issues.append(SecurityIssue(
                        resource_type="IAM User",
                        resource_id=user_name,
                        severity=Severity.MEDIUM,
                        issue=f"Password older than {KEY_MAX_AGE_DAYS} days",
                        recommendation="Rotate password",
                    ))

                for key in iam.list_access_keys(UserName=user_name).get("AccessKeyMetadata", []):
                    key_ref = f"{user_name} ({key['AccessKeyId']})"
                    if _older_than(key.get("CreateDate"), KEY_MAX_AGE_DAYS):
                        result.issues.append(SecurityIssue(
                            resource_type="IAM Access Key",
                            resource_id=key_ref,
                            severity=Severity.MEDIUM,
                            issue=f"Access key is older than {KEY_MAX_AGE_DAYS} days",
                            recommendation="Rotate access keys regularly",
                        ))
                    last_used = iam.get_access_key_last_used(AccessKeyId=key["AccessKeyId"])
                    if not last_used.get("AccessKeyLastUsed", {}).get("LastUsedDate"):
                        result.issues.append(SecurityIssue(
                            resource_type="IAM Access Key",
                            resource_id=key_ref,
                            severity=Severity.LOW,
                            issue="Access key has never been used",
                            recommendation="Remove unused access keys",
                        ))

        return result

    def _scan_serverless(self, session: boto3.Session, region: str) -> CategoryResult:
        lambda_client = self.session_factory.client(session, "lambda", region)
        result = CategoryResult(category="serverless")

        for page in lambda_client.get_paginator("list_functions").paginate():
            for function in page.get("Functions", []):
                result.scanned_count += 1
                runtime = function.get("Runtime")
                if runtime in DEPRECATED_RUNTIMES:
                    result.issues.append(SecurityIssue(
                        resource_type="Lambda Function",
                        resource_id=function.get("FunctionName", "Unknown"),
                        severity=Severity.HIGH,
                        issue=f"Deprecated Runtime: {runtime}",
                        recommendation="Update to a supported runtime version (e.g., nodejs18.x, python3.11)",
                        region=region,
                    ))

        return result

    def _scan_nosql(self, session: boto3.Session, region: str) -> CategoryResult:
        dynamodb = self.session_factory.client(session, "dynamodb", region)
        result = CategoryResult(category="nosql")
        priced: List[CloudResource] = []

        for page in dynamodb.get_paginator("list_tables").paginate():
            for table_name in page.get("TableNames", []):
                result.scanned_count += 1
                table = dynamodb.describe_table(TableName=table_name)["Table"]

                if not table.get("DeletionProtectionEnabled"):
                    result.issues.append(SecurityIssue(
                        resource_type="DynamoDB Table",
                        resource_id=table_name,
                        severity=Severity.MEDIUM,
                        issue="Deletion protection is disabled",
                        recommendation="Enable deletion protection to prevent accidental deletion",
                        region=region,
                    ))

                backups = dynamodb.describe_continuous_backups(TableName=table_name)
                pitr = (
                    backups.get("ContinuousBackupsDescription", {})
                    .get("PointInTimeRecoveryDescription", {})
                    .get("PointInTimeRecoveryStatus")
                )
                if pitr != "ENABLED":
                    result.issues.append(SecurityIssue(
                        resource_type="DynamoDB Table",
                        resource_id=table_name,
                        severity=Severity.LOW,
                        issue="Point-in-Time Recovery (PITR) is disabled",
                        recommendation="Enable PITR for data recovery",
                        region=region,
                    ))

                throughput = table.get("ProvisionedThroughput", {})
                billing = table.get("BillingModeSummary", {}).get("BillingMode", "PROVISIONED")
                priced.append(CloudResource(
                    connection_id="",
                    resource_id=table_name,
                    resource_type="dynamodb_table",
                    region=region,
                    name=table_name,
                    metadata={
                        "billing_mode": billing,
                        "read_capacity": throughput.get("ReadCapacityUnits"),
                        "write_capacity": throughput.get("WriteCapacityUnits"),
                    },
                ))

        result.extra["resources"] = priced
        return result

    def _scan_load_balancers(self, session: boto3.Session, region: str) -> CategoryResult:
        elb = self.session_factory.client(session, "elbv2", region)
        result = CategoryResult(category="load_balancers")
        priced: List[CloudResource] = []

        for page in elb.get_paginator("describe_load_balancers").paginate():
            for balancer in page.get("LoadBalancers", []):
                result.scanned_count += 1
                arn = balancer["LoadBalancerArn"]
                name = balancer.get("LoadBalancerName", arn)

                def issue(severity: Severity, text: str, recommendation: str) -> None:
                    result.issues.append(SecurityIssue(
                        resource_type="Load Balancer",
                        resource_id=name,
                        severity=severity,
                        issue=text,
                        recommendation=recommendation,
                        region=region,
                    ))

                attributes = {
                    item["Key"]: item.get("Value")
                    for item in elb.describe_load_balancer_attributes(LoadBalancerArn=arn).get("Attributes", [])
                }
                if attributes.get("access_logs.s3.enabled") != "true":
                    issue(Severity.MEDIUM, "Access logging is disabled", "Enable access logs to S3 for auditability")
                if attributes.get("deletion_protection.enabled") != "true":
                    issue(Severity.LOW, "Deletion protection is disabled", "Enable deletion protection")

                for listener in elb.describe_listeners(LoadBalancerArn=arn).get("Listeners", []):
                    if listener.get("Protocol") != "HTTP":
                        continue
                    redirects = any(action.get("Type") == "redirect" for action in listener.get("DefaultActions", []))
                    if not redirects:
                        issue(
                            Severity.HIGH,
                            "Unsecured HTTP Listener found without redirect",
                            "Redirect HTTP to HTTPS or remove HTTP listener",
                        )

                priced.append(CloudResource(
                    connection_id="",
                    resource_id=arn,
                    resource_type="load_balancer",
                    region=region,
                    name=name,
                    metadata={"type": balancer.get("Type")},
                ))

        result.extra["resources"] = priced
        return result

    def _scan_containers(self, session: boto3.Session, region: str) -> CategoryResult:
        eks = self.session_factory.client(session, "eks", region)
        result = CategoryResult(category="containers")

        for page in eks.get_paginator("list_clusters").paginate():
            for cluster_name in page.get("clusters", []):
                result.scanned_count += 1
                cluster = eks.describe_cluster(name=cluster_name)["cluster"]
                vpc_config = cluster.get("resourcesVpcConfig", {})

                public_cidrs = vpc_config.get("publicAccessCidrs") or []
                if vpc_config.get("endpointPublicAccess") and (not public_cidrs or "0.0.0.0/0" in public_cidrs):
                    result.issues.append(SecurityIssue(
                        resource_type="EKS Cluster",
                        resource_id=cluster_name,
                        severity=Severity.CRITICAL,
                        issue="Public API endpoint enabled with 0.0.0.0/0",
                        recommendation="Disable public access or restrict CIDRs",
                        region=region,
                    ))
                if not cluster.get("encryptionConfig"):
                    result.issues.append(SecurityIssue(
                        resource_type="EKS Cluster",
                        resource_id=cluster_name,
                        severity=Severity.HIGH,
                        issue="Secrets encryption (Envelope Encryption) inactive",
                        recommendation="Enable secrets encryption with KMS",
                        region=region,
                    ))

        return result

    def _scan_cost(self, session: boto3.Session, region: str) -> CategoryResult:
        ce = self.session_factory.client(session, "ce")
        result = CategoryResult(category="cost")
        today = date.today()
        month_start = today.replace(day=1)

        by_service: Dict[str, float] = {}
        # Cost Explorer rejects an empty period on the first of the month
        if today > month_start:
            response = ce.get_cost_and_usage(
                TimePeriod={"Start": month_start.isoformat(), "End": today.isoformat()},
                Granularity="MONTHLY",
                Metrics=["UnblendedCost"],
                GroupBy=[{"Type": "DIMENSION", "Key": "SERVICE"}],
            )
            periods = response.get("ResultsByTime", [])
            for group in periods[0].get("Groups", []) if periods else []:
                service = (group.get("Keys") or ["Unknown"])[0]
                amount = float(group.get("Metrics", {}).get("UnblendedCost", {}).get("Amount", "0"))
                if amount > 0:
                    by_service[service] = round(amount, 2)

        history_start = month_start
        for _ in range(TREND_MONTHS - 1):
            history_start = (history_start - timedelta(days=1)).replace(day=1)
        history = []
        if history_start < month_start:
            response = ce.get_cost_and_usage(
                TimePeriod={"Start": history_start.isoformat(), "End": month_start.isoformat()},
                Granularity="MONTHLY",
                Metrics=["UnblendedCost"],
            )
            for period in response.get("ResultsByTime", []):
                start = date.fromisoformat(period["TimePeriod"]["Start"])
                history.append({
                    "name": start.strftime("%b"),
                    "cost": round(float(period.get("Total", {}).get("UnblendedCost", {}).get("Amount", "0")), 2),
                })

        result.extra["by_service"] = by_service
        result.extra["history"] = history
        return result
