"""
Built-in AWS security policies.

Evaluators read parsed property values first and fall back to the raw block
text only where the relevant setting is usually hidden inside an opaque
expression (jsonencode(...) policies, heredocs).
"""
from typing import Any, Iterable, List, Optional
import re

from iac_engine.domain.hcl_models import HclBlock
from iac_engine.domain.policy_models import Finding, PolicyCategory, Severity
from iac_engine.parsing.hcl_parser import find_resources_by_type, get_blocks
from iac_engine.policies.registry import PolicyContext, register_policy


# Ports that must never be reachable from the whole internet
SENSITIVE_PORTS = (22, 3389, 3306, 5432, 27017, 6379)
OPEN_CIDRS = ("0.0.0.0/0", "::/0")

_ACTION_WILDCARD_RE = re.compile(r'"?Action"?\s*[:=]\s*(\[\s*)?"\*"')
_RESOURCE_WILDCARD_RE = re.compile(r'"?Resource"?\s*[:=]\s*(\[\s*)?"\*"')

# (pattern, label): literal string values only; interpolations contain '$'
SECRET_PATTERNS = [
    (re.compile(r'password\s*=\s*"[^"$]+"'), "password"),
    (re.compile(r'secret_key\s*=\s*"[^"$]+"'), "secret_key"),
    (re.compile(r'api_key\s*=\s*"[^"$]+"'), "api_key"),
    (re.compile(r'access_key\s*=\s*"[^"$]+"'), "access_key"),
    (re.compile(r'secret\s*=\s*"[^"$]+"'), "secret"),
    (re.compile(r'private_key\s*=\s*"[^"$]+"'), "private_key"),
    (re.compile(r'token\s*=\s*"[^"$]+"'), "token"),
]


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _port(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def references(value: Any, target: HclBlock) -> bool:
    """
    True if a property value points at target.

    Matches references such as aws_s3_bucket.logs.id, and literal values equal
    to the target's own name attribute (bucket, name).
    """
    ref = f"{target.type}.{target.name}"
    for item in _as_list(value):
        if not isinstance(item, str):
            continue
        if re.search(rf"(^|[^\w.]){re.escape(ref)}(\.|\b)", item):
            return True
        for attribute in ("bucket", "name", "id"):
            literal = target.get(attribute)
            if isinstance(literal, str) and not literal.startswith(("var.", "local.")) and item == literal:
                return True
    return False


def _open_cidr(rule: dict) -> Optional[str]:
    cidrs = (
        _as_list(rule.get("cidr_blocks"))
        + _as_list(rule.get("ipv6_cidr_blocks"))
        + _as_list(rule.get("cidr_ipv4"))
        + _as_list(rule.get("cidr_ipv6"))
    )
    for cidr in cidrs:
        if cidr in OPEN_CIDRS:
            return cidr
    return None


def exposed_ports(rule: dict) -> Optional[List[int]]:
    """
    Sensitive ports an ingress rule opens to the world.

    Returns None when the rule is not world-open, [] when it is open but
    only on harmless ports, and every sensitive port for all-traffic rules.
    """
    cidr = _open_cidr(rule)
    if cidr is None:
        return None

    protocol = str(rule.get("protocol", rule.get("ip_protocol", "tcp"))).strip('"').lower()
    if protocol in ("-1", "all"):
        return list(SENSITIVE_PORTS)

    from_port = _port(rule.get("from_port"))
    to_port = _port(rule.get("to_port"))
    if from_port is None and to_port is None:
        return []
    from_port = from_port if from_port is not None else to_port
    to_port = to_port if to_port is not None else from_port
    return [port for port in SENSITIVE_PORTS if from_port <= port <= to_port]


def _finding(resource: HclBlock, message: str, suggestion: str, auto_fixable: bool = False, **metadata) -> Finding:
    return Finding(
        resource_ref=resource.full_name,
        resource_type=resource.type,
        line=resource.start_line,
        message=message,
        suggestion=suggestion,
        auto_fixable=auto_fixable,
        metadata=metadata,
    )


def _is_true(value: Any) -> bool:
    return value is True or (isinstance(value, str) and value.lower() == "true")


def _referenced_by(target: HclBlock, candidates: Iterable[HclBlock], attribute: str) -> bool:
    return any(references(candidate.get(attribute), target) for candidate in candidates)


@register_policy(
    code="SEC001",
    name="S3 Bucket Public Access Blocked",
    description="Ensures S3 buckets have public access blocked to prevent unintended data exposure",
    category=PolicyCategory.SECURITY,
    severity=Severity.CRITICAL,
)
def s3_public_access_blocked(context: PolicyContext) -> List[Finding]:
    blocks = find_resources_by_type(context.parsed, "aws_s3_bucket_public_access_block")
    results = []
    for bucket in find_resources_by_type(context.parsed, "aws_s3_bucket"):
        if not _referenced_by(bucket, blocks, "bucket"):
            results.append(_finding(
                bucket,
                f'S3 bucket "{bucket.name}" does not have a public access block configured',
                f'Add an aws_s3_bucket_public_access_block resource for "{bucket.name}" with '
                "block_public_acls, block_public_policy, ignore_public_acls and "
                "restrict_public_buckets all set to true",
                auto_fixable=True,
            ))
    return results


@register_policy(
    code="SEC002",
    name="Security Group Not Open to World",
    description="Detects security groups with SSH (22), RDP (3389) or database ports open to 0.0.0.0/0",
    category=PolicyCategory.SECURITY,
    severity=Severity.CRITICAL,
)
def security_group_not_open(context: PolicyContext) -> List[Finding]:
    results = []

    def report(resource: HclBlock, rule: dict, label: str) -> None:
        ports = exposed_ports(rule)
        if not ports:
            return
        cidr = _open_cidr(rule)
        for port in ports:
            results.append(_finding(
                resource,
                f'{label} "{resource.name}" allows inbound traffic on port {port} from {cidr}',
                "Restrict the CIDR block to specific IP ranges instead of the whole internet",
                port=port,
                cidr=cidr,
            ))

    for group in find_resources_by_type(context.parsed, "aws_security_group"):
        for rule in get_blocks(group, "ingress"):
            report(group, rule, "Security group")

    for rule in find_resources_by_type(context.parsed, "aws_security_group_rule"):
        if rule.get("type") == "ingress":
            report(rule, {key: value.to_python() for key, value in rule.properties.items()},
                   "Security group rule")

    for rule in find_resources_by_type(context.parsed, "aws_vpc_security_group_ingress_rule"):
        report(rule, {key: value.to_python() for key, value in rule.properties.items()},
               "Security group rule")

    return results


@register_policy(
    code="SEC003",
    name="RDS Instance Not Publicly Accessible",
    description="Ensures RDS instances are not publicly accessible from the internet",
    category=PolicyCategory.SECURITY,
    severity=Severity.HIGH,
)
def rds_not_public(context: PolicyContext) -> List[Finding]:
    return [
        _finding(
            rds,
            f'RDS instance "{rds.name}" is publicly accessible',
            "Set publicly_accessible = false to restrict access to your VPC",
            auto_fixable=True,
        )
        for rds in find_resources_by_type(context.parsed, "aws_db_instance")
        if _is_true(rds.get("publicly_accessible"))
    ]


@register_policy(
    code="SEC004",
    name="EBS Volumes Encrypted",
    description="Ensures EBS volumes have encryption enabled at rest",
    category=PolicyCategory.SECURITY,
    severity=Severity.HIGH,
)
def ebs_encrypted(context: PolicyContext) -> List[Finding]:
    results = []
    for volume in find_resources_by_type(context.parsed, "aws_ebs_volume"):
        if not _is_true(volume.get("encrypted")):
            results.append(_finding(
                volume,
                f'EBS volume "{volume.name}" is not encrypted',
                "Add encrypted = true to enable encryption at rest",
                auto_fixable=True,
            ))

    for instance in find_resources_by_type(context.parsed, "aws_instance"):
        devices = get_blocks(instance, "root_block_device")
        if devices and not all(_is_true(device.get("encrypted")) for device in devices):
            results.append(_finding(
                instance,
                f'EC2 instance "{instance.name}" has an unencrypted root block device',
                "Add encrypted = true inside the root_block_device block",
                auto_fixable=True,
            ))
    return results


@register_policy(
    code="SEC005",
    name="IAM Policies No Wildcards",
    description="Detects IAM policies using overly permissive wildcard (*) actions or resources",
    category=PolicyCategory.SECURITY,
    severity=Severity.HIGH,
)
def iam_no_wildcards(context: PolicyContext) -> List[Finding]:
    results = []
    for policy in find_resources_by_type(context.parsed, "aws_iam_policy", "aws_iam_role_policy"):
        if _ACTION_WILDCARD_RE.search(policy.raw):
            results.append(_finding(
                policy,
                f'IAM policy "{policy.name}" uses wildcard (*) for Action',
                "Specify explicit actions instead of using * to follow least privilege",
            ))
        if _RESOURCE_WILDCARD_RE.search(policy.raw):
            results.append(_finding(
                policy,
                f'IAM policy "{policy.name}" uses wildcard (*) for Resource',
                "Specify explicit resource ARNs instead of using * to limit scope",
            ))
    return results


@register_policy(
    code="SEC006",
    name="CloudTrail Enabled",
    description="Ensures an AWS CloudTrail trail is defined to log API activity across the account",
    category=PolicyCategory.SECURITY,
    severity=Severity.HIGH,
)
def cloudtrail_enabled(context: PolicyContext) -> List[Finding]:
    # Nothing is being provisioned, so there is nothing to audit
    if not context.parsed.resources:
        return []
    if find_resources_by_type(context.parsed, "aws_cloudtrail"):
        return []
    return [Finding(
        resource_ref="template",
        resource_type="aws_cloudtrail",
        message="No aws_cloudtrail resource found in the template. CloudTrail should be enabled for API auditing",
        suggestion="Add an aws_cloudtrail resource with is_multi_region_trail = true and enable_logging = true",
    )]


@register_policy(
    code="SEC007",
    name="CloudTrail Log File Validation Enabled",
    description="Ensures CloudTrail log file validation is enabled to detect tampering",
    category=PolicyCategory.SECURITY,
    severity=Severity.MEDIUM,
)
def cloudtrail_log_validation(context: PolicyContext) -> List[Finding]:
    return [
        _finding(
            trail,
            f'CloudTrail "{trail.name}" does not have log file validation enabled',
            "Add enable_log_file_validation = true to detect unauthorized log modifications",
            auto_fixable=True,
        )
        for trail in find_resources_by_type(context.parsed, "aws_cloudtrail")
        if not _is_true(trail.get("enable_log_file_validation"))
    ]


@register_policy(
    code="SEC008",
    name="VPC Flow Logs Enabled",
    description="Ensures each VPC has flow logs enabled for network traffic monitoring",
    category=PolicyCategory.SECURITY,
    severity=Severity.MEDIUM,
)
def vpc_flow_logs(context: PolicyContext) -> List[Finding]:
    flow_logs = find_resources_by_type(context.parsed, "aws_flow_log")
    return [
        _finding(
            vpc,
            f'VPC "{vpc.name}" does not have flow logs enabled',
            f'Add an aws_flow_log resource referencing "{vpc.name}" to capture network traffic',
        )
        for vpc in find_resources_by_type(context.parsed, "aws_vpc")
        if not _referenced_by(vpc, flow_logs, "vpc_id")
    ]


@register_policy(
    code="SEC009",
    name="S3 Bucket Access Logging Enabled",
    description="Ensures S3 buckets have server access logging enabled for audit purposes",
    category=PolicyCategory.SECURITY,
    severity=Severity.MEDIUM,
)
def s3_access_logging(context: PolicyContext) -> List[Finding]:
    logging_configs = find_resources_by_type(context.parsed, "aws_s3_bucket_logging")
    results = []
    for bucket in find_resources_by_type(context.parsed, "aws_s3_bucket"):
        # Inline logging blocks predate aws_s3_bucket_logging but still work
        if bucket.has("logging") or _referenced_by(bucket, logging_configs, "bucket"):
            continue
        results.append(_finding(
            bucket,
            f'S3 bucket "{bucket.name}" does not have access logging configured',
            f'Add an aws_s3_bucket_logging resource for "{bucket.name}" with a target_bucket and target_prefix',
        ))
    return results


@register_policy(
    code="SEC010",
    name="Default Security Group Restricts All Traffic",
    description="Ensures the default security group of every VPC restricts all inbound and outbound traffic",
    category=PolicyCategory.SECURITY,
    severity=Severity.HIGH,
)
def default_security_group_restrictive(context: PolicyContext) -> List[Finding]:
    return [
        _finding(
            group,
            f'Default security group "{group.name}" has ingress or egress rules defined. '
            "The default security group should restrict all traffic",
            "Remove all ingress and egress blocks from the aws_default_security_group and use "
            "dedicated security groups for traffic rules instead",
        )
        for group in find_resources_by_type(context.parsed, "aws_default_security_group")
        if group.has("ingress") or group.has("egress")
    ]


@register_policy(
    code="SEC011",
    name="VPC Subnets Do Not Auto-Assign Public IP",
    description="Flags subnets that automatically assign public IP addresses to launched instances",
    category=PolicyCategory.SECURITY,
    severity=Severity.MEDIUM,
)
def subnet_no_public_ip(context: PolicyContext) -> List[Finding]:
    return [
        _finding(
            subnet,
            f'Subnet "{subnet.name}" auto-assigns public IP addresses to instances on launch',
            "Set map_public_ip_on_launch = false and use Elastic IPs or NAT Gateways for "
            "controlled internet access",
            auto_fixable=True,
        )
        for subnet in find_resources_by_type(context.parsed, "aws_subnet")
        if _is_true(subnet.get("map_public_ip_on_launch"))
    ]


@register_policy(
    code="SEC012",
    name="RDS Encryption at Rest Enabled",
    description="Ensures RDS database instances have encryption at rest enabled",
    category=PolicyCategory.SECURITY,
    severity=Severity.HIGH,
)
def rds_encrypted(context: PolicyContext) -> List[Finding]:
    return [
        _finding(
            rds,
            f'RDS instance "{rds.name}" does not have encryption at rest enabled',
            "Add storage_encrypted = true and optionally a kms_key_id for customer-managed encryption",
            auto_fixable=True,
        )
        for rds in find_resources_by_type(context.parsed, "aws_db_instance")
        if not _is_true(rds.get("storage_encrypted"))
    ]


@register_policy(
    code="SEC013",
    name="RDS Deletion Protection Enabled",
    description="Ensures RDS database instances have deletion protection enabled to prevent accidental deletion",
    category=PolicyCategory.SECURITY,
    severity=Severity.MEDIUM,
)
def rds_deletion_protection(context: PolicyContext) -> List[Finding]:
    return [
        _finding(
            rds,
            f'RDS instance "{rds.name}" does not have deletion protection enabled',
            "Add deletion_protection = true to prevent accidental database deletion",
            auto_fixable=True,
        )
        for rds in find_resources_by_type(context.parsed, "aws_db_instance")
        if not _is_true(rds.get("deletion_protection"))
    ]


@register_policy(
    code="SEC014",
    name="DynamoDB Server-Side Encryption Enabled",
    description="Ensures DynamoDB tables have server-side encryption configured with a customer-managed KMS key",
    category=PolicyCategory.SECURITY,
    severity=Severity.MEDIUM,
)
def dynamodb_encrypted(context: PolicyContext) -> List[Finding]:
    return [
        _finding(
            table,
            f'DynamoDB table "{table.name}" does not have a server_side_encryption block configured',
            "Add a server_side_encryption block with enabled = true and a kms_key_arn",
        )
        for table in find_resources_by_type(context.parsed, "aws_dynamodb_table")
        if not table.has("server_side_encryption")
    ]


@register_policy(
    code="SEC015",
    name="SNS Topic Encryption Enabled",
    description="Ensures SNS topics are encrypted at rest using a KMS key",
    category=PolicyCategory.SECURITY,
    severity=Severity.MEDIUM,
)
def sns_encrypted(context: PolicyContext) -> List[Finding]:
    return [
        _finding(
            topic,
            f'SNS topic "{topic.name}" does not have encryption enabled',
            "Add kms_master_key_id with a KMS key ARN or alias to enable server-side encryption",
        )
        for topic in find_resources_by_type(context.parsed, "aws_sns_topic")
        if not topic.get("kms_master_key_id")
    ]


@register_policy(
    code="SEC016",
    name="SQS Queue Encryption Enabled",
    description="Ensures SQS queues are encrypted at rest using KMS or SQS-managed SSE",
    category=PolicyCategory.SECURITY,
    severity=Severity.MEDIUM,
)
def sqs_encrypted(context: PolicyContext) -> List[Finding]:
    return [
        _finding(
            queue,
            f'SQS queue "{queue.name}" does not have encryption enabled',
            "Add kms_master_key_id for KMS-managed encryption, or set "
            "sqs_managed_sse_enabled = true for SQS-managed server-side encryption",
        )
        for queue in find_resources_by_type(context.parsed, "aws_sqs_queue")
        if not queue.get("kms_master_key_id") and not _is_true(queue.get("sqs_managed_sse_enabled"))
    ]


@register_policy(
    code="SEC017",
    name="No Inline IAM User Policies",
    description="Flags inline IAM user policies which are harder to audit and manage than managed policies",
    category=PolicyCategory.SECURITY,
    severity=Severity.MEDIUM,
)
def no_inline_user_policies(context: PolicyContext) -> List[Finding]:
    return [
        _finding(
            policy,
            f'Inline IAM user policy "{policy.name}" found. Inline policies are harder to manage, audit and reuse',
            "Replace aws_iam_user_policy with aws_iam_user_policy_attachment referencing a managed aws_iam_policy",
        )
        for policy in find_resources_by_type(context.parsed, "aws_iam_user_policy")
    ]


@register_policy(
    code="SEC018",
    name="EC2 IMDSv2 Enforced",
    description="Ensures EC2 instances require IMDSv2 to mitigate SSRF attacks",
    category=PolicyCategory.SECURITY,
    severity=Severity.HIGH,
)
def imdsv2_required(context: PolicyContext) -> List[Finding]:
    return [
        _finding(
            instance,
            f'EC2 instance "{instance.name}" does not enforce IMDSv2. Without http_tokens = "required", '
            "the instance metadata service is vulnerable to SSRF attacks",
            'Add a metadata_options block with http_tokens = "required" and http_endpoint = "enabled"',
            auto_fixable=True,
        )
        for instance in find_resources_by_type(context.parsed, "aws_instance")
        if instance.get("metadata_options.http_tokens") != "required"
    ]


@register_policy(
    code="SEC019",
    name="No Hardcoded Secrets",
    description="Scans configuration text for hardcoded passwords, secret keys and API keys",
    category=PolicyCategory.SECURITY,
    severity=Severity.CRITICAL,
)
def no_hardcoded_secrets(context: PolicyContext) -> List[Finding]:
    results = []
    for index, raw_line in enumerate(context.raw_content.splitlines(), start=1):
        line = raw_line.strip()
        if line.startswith(("#", "//", "/*")):
            continue
        if "var." in line or "local." in line or "data." in line or '""' in line:
            continue
        for pattern, label in SECRET_PATTERNS:
            if pattern.search(line):
                # First matching pattern only, one finding per line
                results.append(Finding(
                    resource_ref="template",
                    resource_type="hardcoded_secret",
                    line=index,
                    message=f"Potential hardcoded {label} detected on line {index}. "
                            "Secrets should never be stored in plain text in configuration files",
                    suggestion=f"Use a variable reference (var.{label}), AWS Secrets Manager "
                               "(aws_secretsmanager_secret) or SSM Parameter Store (aws_ssm_parameter) instead",
                ))
                break
    return results


@register_policy(
    code="SEC020",
    name="S3 Default Encryption Configured",
    description="Ensures S3 buckets declare a server-side encryption configuration",
    category=PolicyCategory.SECURITY,
    severity=Severity.HIGH,
)
def s3_encrypted(context: PolicyContext) -> List[Finding]:
    configs = find_resources_by_type(context.parsed, "aws_s3_bucket_server_side_encryption_configuration")
    results = []
    for bucket in find_resources_by_type(context.parsed, "aws_s3_bucket"):
        if bucket.has("server_side_encryption_configuration") or _referenced_by(bucket, configs, "bucket"):
            continue
        results.append(_finding(
            bucket,
            f'S3 bucket "{bucket.name}" does not declare default encryption',
            f'Add an aws_s3_bucket_server_side_encryption_configuration for "{bucket.name}" '
            'with sse_algorithm = "aws:kms" or "AES256"',
            auto_fixable=True,
        ))
    return results
