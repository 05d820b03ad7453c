"""
Built-in AWS cost optimization policies.
"""
from typing import List
import re

from iac_engine.core.config import config
from iac_engine.domain.policy_models import Finding, PolicyCategory, Severity
from iac_engine.parsing.hcl_parser import find_resources_by_type
from iac_engine.policies.aws_security import references
from iac_engine.policies.registry import PolicyContext, register_policy
from iac_engine.pricing.aws_price_catalog import FLAT_MONTHLY_COSTS, INSTANCE_PRICE_CATALOG


NON_PROD_MARKERS = ("dev", "test", "staging", "qa", "demo", "sandbox")

# Checked in order; the first match wins
_OVERSIZED_PATTERNS = [
    (re.compile(r"^(m5|m6i|c5|c6i|r5|r6i)\.(2xlarge|4xlarge|8xlarge)$"), "very large"),
    (re.compile(r"\.(x?large|2xlarge|4xlarge|8xlarge|12xlarge|16xlarge|24xlarge)$"), "large"),
]


@register_policy(
    code="COST001",
    name="Consider NAT Instance for Cost Savings",
    description="NAT Gateways cost ~$32/month plus data charges. For dev/test environments, "
                "a NAT Instance can save 60-80%",
    category=PolicyCategory.COST,
    severity=Severity.MEDIUM,
)
def nat_gateway_alternative(context: PolicyContext) -> List[Finding]:
    return [
        Finding(
            resource_ref=nat.full_name,
            resource_type=nat.type,
            line=nat.start_line,
            message=f'NAT Gateway "{nat.name}" costs ~$32/month plus data processing fees',
            suggestion="For non-production workloads, consider a NAT Instance (t3.nano ~$3/month) instead. "
                       "This can save $25-30/month per NAT.",
            metadata={
                "estimated_monthly_cost": 32,
                "potential_savings": 29,
                "alternative_resource": "aws_instance with source_dest_check = false",
            },
        )
        for nat in find_resources_by_type(context.parsed, "aws_nat_gateway")
    ]


@register_policy(
    code="COST002",
    name="Potentially Oversized Instance",
    description="Detects large instance types that might be oversized for typical workloads",
    category=PolicyCategory.COST,
    severity=Severity.LOW,
)
def oversized_instance(context: PolicyContext) -> List[Finding]:
    results = []
    for instance in find_resources_by_type(context.parsed, "aws_instance"):
        instance_type = instance.get("instance_type")
        # Unresolved references (var.instance_type) cannot be judged
        if not isinstance(instance_type, str) or instance.value("instance_type").is_expression:
            continue
        for pattern, size in _OVERSIZED_PATTERNS:
            if not pattern.search(instance_type):
                continue
            metadata = {"current_instance_type": instance_type}
            if instance_type in INSTANCE_PRICE_CATALOG:
                metadata["estimated_monthly_cost"] = round(
                    INSTANCE_PRICE_CATALOG[instance_type] * config.HOURS_PER_MONTH, 2
                )
            results.append(Finding(
                resource_ref=instance.full_name,
                resource_type=instance.type,
                line=instance.start_line,
                message=f'Instance "{instance.name}" uses a {size} instance type ({instance_type})',
                suggestion="Consider starting with a smaller instance and scaling up based on actual usage. "
                           "AWS Compute Optimizer gives right-sizing recommendations.",
                metadata=metadata,
            ))
            break
    return results


@register_policy(
    code="COST003",
    name="Multi-AZ Enabled (Verify if Needed)",
    description="Multi-AZ deployments double RDS costs. Ensure this is intended for production workloads.",
    category=PolicyCategory.COST,
    severity=Severity.MEDIUM,
)
def multi_az_non_production(context: PolicyContext) -> List[Finding]:
    results = []
    for rds in find_resources_by_type(context.parsed, "aws_db_instance"):
        if rds.get("multi_az") is not True:
            continue
        name = rds.name.lower()
        if any(marker in name for marker in NON_PROD_MARKERS):
            results.append(Finding(
                resource_ref=rds.full_name,
                resource_type=rds.type,
                line=rds.start_line,
                message=f'RDS instance "{rds.name}" has Multi-AZ enabled but appears to be non-production',
                suggestion="Multi-AZ doubles your RDS cost. For dev/test environments, consider disabling "
                           "Multi-AZ to save 50% on database costs.",
                auto_fixable=True,
                metadata={"environment_indicator": name},
            ))
        else:
            results.append(Finding(
                resource_ref=rds.full_name,
                resource_type=rds.type,
                line=rds.start_line,
                message=f'RDS instance "{rds.name}" has Multi-AZ enabled (2x cost)',
                suggestion="Multi-AZ is recommended for production but doubles cost. "
                           "Verify this is a production database.",
            ))
    return results


@register_policy(
    code="COST004",
    name="Elastic IP Association Check",
    description="Unassociated Elastic IPs cost $3.65/month. Ensure all EIPs are attached to resources.",
    category=PolicyCategory.COST,
    severity=Severity.LOW,
)
def unattached_elastic_ip(context: PolicyContext) -> List[Finding]:
    associations = find_resources_by_type(context.parsed, "aws_eip_association")
    nat_gateways = find_resources_by_type(context.parsed, "aws_nat_gateway")
    results = []
    for eip in find_resources_by_type(context.parsed, "aws_eip"):
        if eip.has("instance") or eip.has("network_interface"):
            continue
        if any(references(assoc.get("allocation_id"), eip) for assoc in associations):
            continue
        if any(references(nat.get("allocation_id"), eip) for nat in nat_gateways):
            continue
        results.append(Finding(
            resource_ref=eip.full_name,
            resource_type=eip.type,
            line=eip.start_line,
            message=f'Elastic IP "{eip.name}" may not be associated with any resource',
            suggestion="Unassociated EIPs cost $3.65/month. Attach this EIP to an instance or NAT Gateway.",
            metadata={"monthly_cost": FLAT_MONTHLY_COSTS["aws_eip"]},
        ))
    return results
