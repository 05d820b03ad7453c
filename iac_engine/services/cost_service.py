"""
Cost analysis service.

Builds a CostBreakdown for parsed template resources or discovered live
resources. One resource failing to price never breaks the whole analysis:
it is recorded as a $0 row and the rest continue.
"""
from typing import Any, Dict, List, Optional
import logging

from iac_engine.domain.hcl_models import HclBlock
from iac_engine.domain.policy_models import CostBreakdown, CostLineItem
from iac_engine.services.pricing_estimator import PricingEstimator


logger = logging.getLogger(__name__)


SERVICE_NAMES: Dict[str, str] = {
    "aws_instance": "EC2",
    "ec2_instance": "EC2",
    "aws_ebs_volume": "EC2",
    "ebs_volume": "EC2",
    "aws_eip": "EC2",
    "aws_db_instance": "RDS",
    "rds_instance": "RDS",
    "aws_lb": "ELB",
    "aws_alb": "ELB",
    "aws_nlb": "ELB",
    "load_balancer": "ELB",
    "aws_nat_gateway": "VPC",
    "nat_gateway": "VPC",
    "aws_cloudfront_distribution": "CloudFront",
    "cloudfront_distribution": "CloudFront",
    "aws_route53_zone": "Route53",
    "route53_zone": "Route53",
    "aws_ecs_service": "ECS",
    "aws_ecs_cluster": "ECS",
    "ecs_cluster": "ECS",
    "aws_eks_cluster": "EKS",
    "aws_kms_key": "KMS",
    "aws_secretsmanager_secret": "Secrets Manager",
    "aws_cloudwatch_log_group": "CloudWatch",
    "log_group": "CloudWatch",
    "aws_api_gateway_rest_api": "API Gateway",
    "aws_apigatewayv2_api": "API Gateway",
}

# Substring fallbacks, checked in order
_SERVICE_MARKERS = (
    ("s3", "S3"),
    ("dynamodb", "DynamoDB"),
    ("lambda", "Lambda"),
    ("elasticache", "ElastiCache"),
    ("sqs", "SQS"),
    ("sns", "SNS"),
    ("iam", "IAM"),
)


def get_service_name(resource_type: str) -> str:
    if resource_type in SERVICE_NAMES:
        return SERVICE_NAMES[resource_type]
    for marker, service in _SERVICE_MARKERS:
        if marker in resource_type:
            return service
    return "Other"


def _describe(resource_type: str, properties: Dict[str, Any]) -> str:
    size = (
        properties.get("instance_type")
        or properties.get("instance_class")
        or properties.get("node_type")
    )
    label = resource_type.replace("aws_", "").replace("_", " ")
    if isinstance(size, str) and not size.startswith(("var.", "local.")):
        return f"{label} ({size})"
    return label


class CostService:
    """Monthly cost breakdowns for templates and live resources."""

    def __init__(self, estimator: Optional[PricingEstimator] = None):
        self.estimator = estimator or PricingEstimator()

    async def analyze_template_cost(self, resources: List[HclBlock], region: str = "us-east-1") -> CostBreakdown:
        """
        Estimate cost for parsed template resources.

        Args:
            resources: Parsed resource blocks
            region: Region every resource is priced in

        Returns:
            CostBreakdown with per-service subtotals rounded to cents
        """
        rows = [
            (resource.full_name, resource.type, region,
             {key: value.to_python() for key, value in resource.properties.items()})
            for resource in resources
        ]
        return await self._analyze(rows)

    async def analyze_live_resources(self, resources: List[Any], default_region: str = "us-east-1") -> CostBreakdown:
        """
        Estimate cost for discovered CloudResource records.

        Metadata collected at discovery time (instance_type, size, ...) is
        used as the pricing properties.
        """
        rows = [
            (resource.name or resource.resource_id, resource.resource_type,
             resource.region or default_region, resource.metadata or {})
            for resource in resources
        ]
        return await self._analyze(rows)

    async def _analyze(self, rows) -> CostBreakdown:
        breakdown = CostBreakdown(total_monthly=0.0, by_service={})
        for ref, resource_type, region, properties in rows:
            service = get_service_name(resource_type)
            try:
                cost = round(
                    await self.estimator.estimate_monthly_cost(resource_type, properties, region), 2
                )
            except Exception as error:
                logger.warning(f"Cost estimation failed for {ref} ({resource_type}): {error}")
                breakdown.line_items.append(CostLineItem(
                    resource_ref=ref,
                    resource_type=resource_type,
                    service=service,
                    region=region,
                    monthly_cost_usd=0.0,
                    description="Unable to estimate cost",
                    priced=False,
                ))
                continue

            description = _describe(resource_type, properties)
            if cost == 0:
                description = f"{description} (free tier / request-based)"
            breakdown.total_monthly += cost
            breakdown.by_service[service] = round(breakdown.by_service.get(service, 0.0) + cost, 2)
            breakdown.line_items.append(CostLineItem(
                resource_ref=ref,
                resource_type=resource_type,
                service=service,
                region=region,
                monthly_cost_usd=cost,
                description=description,
            ))

        breakdown.total_monthly = round(breakdown.total_monthly, 2)
        return breakdown
