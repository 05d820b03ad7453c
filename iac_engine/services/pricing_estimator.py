"""
Monthly cost estimator for AWS resource types.

Prices come from the static catalog first, then the Price List API for
instance classes the catalog lacks, then a size-based heuristic. A resource
type without a pricing rule costs 0; that is not an error.
"""
from typing import Dict, Any, Optional
import logging

from iac_engine.core.config import config
from iac_engine.pricing.aws_price_catalog import (
    DYNAMODB_RCU_HOURLY,
    DYNAMODB_WCU_HOURLY,
    ELASTICACHE_PRICE_CATALOG,
    FARGATE_GB_HOURLY,
    FARGATE_VCPU_HOURLY,
    FLAT_MONTHLY_COSTS,
    HEURISTIC_UNIT_PRICE,
    INSTANCE_PRICE_CATALOG,
    PROVISIONED_IOPS_PRICE,
    RDS_ENGINE_MULTIPLIERS,
    RDS_PRICE_CATALOG,
    SIZE_MULTIPLIERS,
    STORAGE_PRICES,
)
from iac_engine.pricing.aws_pricing_client import AWSPricingClient, AWSPricingError
from iac_engine.pricing.aws_region_map import get_region_multiplier


logger = logging.getLogger(__name__)

HOURS_PER_MONTH = config.HOURS_PER_MONTH


def _number(value: Any, default: float) -> float:
    """Coerce a property to a number; expressions and junk use the default."""
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _text(value: Any, default: str) -> str:
    if isinstance(value, str) and value and not value.startswith(("var.", "local.", "data.", "${")):
        return value
    return default


class PricingEstimator:
    """Estimates on-demand monthly cost per resource."""

    def __init__(self, pricing_client: Optional[AWSPricingClient] = None, use_network: Optional[bool] = None):
        """
        Initialize estimator.

        Args:
            pricing_client: Price List API client (created lazily if None)
            use_network: Allow Price List API lookups (defaults to config)
        """
        self.use_network = config.PRICING_API_ENABLED if use_network is None else use_network
        self.pricing_client = pricing_client
        if self.use_network and self.pricing_client is None:
            try:
                self.pricing_client = AWSPricingClient()
            except Exception as error:
                logger.warning(
                    f"AWS pricing client unavailable, using static catalog only: {error}"
                )
                self.pricing_client = None

    async def get_ec2_hourly_price(self, instance_type: str, region: str) -> float:
        multiplier = get_region_multiplier(region)
        if instance_type in INSTANCE_PRICE_CATALOG:
            return INSTANCE_PRICE_CATALOG[instance_type] * multiplier

        api_price = await self._api_price("ec2", instance_type, region)
        if api_price is not None:
            return api_price

        return self.heuristic_hourly_price(instance_type) * multiplier

    async def get_rds_hourly_price(self, instance_class: str, engine: str, region: str) -> float:
        region_multiplier = get_region_multiplier(region)
        engine_multiplier = RDS_ENGINE_MULTIPLIERS.get((engine or "mysql").lower().strip(), 1.0)
        if instance_class in RDS_PRICE_CATALOG:
            return RDS_PRICE_CATALOG[instance_class] * region_multiplier * engine_multiplier

        api_price = await self._api_price("rds", instance_class, region, engine)
        if api_price is not None:
            return api_price

        return 0.10 * region_multiplier * engine_multiplier

    @staticmethod
    def get_elasticache_hourly_price(node_type: str, region: str) -> float:
        multiplier = get_region_multiplier(region)
        return ELASTICACHE_PRICE_CATALOG.get(node_type, 0.068) * multiplier

    @staticmethod
    def heuristic_hourly_price(instance_type: str) -> float:
        """Rough hourly rate from the size suffix (e.g. 'xlarge')."""
        parts = instance_type.split(".")
        size = parts[-1] if len(parts) > 1 else "large"
        return HEURISTIC_UNIT_PRICE * SIZE_MULTIPLIERS.get(size, 4)

    async def _api_price(self, kind: str, instance_type: str, region: str, engine: str = "mysql") -> Optional[float]:
        if not self.use_network or self.pricing_client is None:
            return None
        try:
            if kind == "ec2":
                return await self.pricing_client.get_ec2_instance_price(instance_type, region)
            return await self.pricing_client.get_rds_instance_price(instance_type, region, engine)
        except AWSPricingError as error:
            logger.warning(f"Price List lookup failed for {instance_type} in {region}, using heuristic: {error}")
            return None

    async def estimate_monthly_cost(
        self,
        resource_type: str,
        properties: Optional[Dict[str, Any]],
        region: str = "us-east-1"
    ) -> float:
        """
        Estimate monthly cost for one resource.

        Args:
            resource_type: Terraform type (e.g. 'aws_instance') or a scanner
                           type alias (e.g. 'ec2_instance')
            properties: Plain property values
            region: AWS region code

        Returns:
            Estimated USD per month (>= 0)
        """
        props = properties or {}

        if resource_type in ("aws_instance", "ec2_instance"):
            instance_type = _text(props.get("instance_type"), "t3.micro")
            return await self.get_ec2_hourly_price(instance_type, region) * HOURS_PER_MONTH

        if resource_type in ("aws_db_instance", "rds_instance"):
            instance_class = _text(props.get("instance_class"), "db.t3.micro")
            engine = _text(props.get("engine"), "postgres")
            storage = _number(props.get("allocated_storage"), 20)
            hourly = await self.get_rds_hourly_price(instance_class, engine, region)
            return hourly * HOURS_PER_MONTH + storage * STORAGE_PRICES["rds_storage"]

        if resource_type in ("aws_ebs_volume", "ebs_volume"):
            size = _number(props.get("size"), 20)
            volume_type = _text(props.get("volume_type") or props.get("type"), "gp3")
            cost = size * STORAGE_PRICES.get(f"ebs_{volume_type}", STORAGE_PRICES["ebs_gp3"])
            if volume_type in ("io1", "io2"):
                cost += _number(props.get("iops"), 0) * PROVISIONED_IOPS_PRICE
            return cost

        if resource_type in ("aws_dynamodb_table", "dynamodb_table"):
            if _text(props.get("billing_mode"), "PROVISIONED") == "PAY_PER_REQUEST":
                return 1.25
            wcu = _number(props.get("write_capacity"), 5)
            rcu = _number(props.get("read_capacity"), 5)
            return (wcu * DYNAMODB_WCU_HOURLY + rcu * DYNAMODB_RCU_HOURLY) * HOURS_PER_MONTH \
                + STORAGE_PRICES["dynamodb_storage"]

        if resource_type in ("aws_lb", "aws_alb", "aws_nlb", "load_balancer"):
            # Hourly base plus a light LCU allowance
            return 0.0225 * HOURS_PER_MONTH + 5.0

        if resource_type in ("aws_nat_gateway", "nat_gateway"):
            # Hourly base plus 10 GB of data processing
            return 0.045 * HOURS_PER_MONTH + 10 * 0.045

        if resource_type == "aws_ecs_service":
            tasks = _number(props.get("desired_count"), 1)
            per_task_hourly = 0.25 * FARGATE_VCPU_HOURLY + 0.5 * FARGATE_GB_HOURLY
            return tasks * per_task_hourly * HOURS_PER_MONTH

        if resource_type in ("aws_elasticache_cluster", "elasticache_cluster"):
            node_type = _text(props.get("node_type"), "cache.t3.medium")
            nodes = _number(props.get("num_cache_nodes"), 1)
            return self.get_elasticache_hourly_price(node_type, region) * HOURS_PER_MONTH * nodes

        if resource_type == "aws_elasticache_replication_group":
            node_type = _text(props.get("node_type"), "cache.t3.medium")
            clusters = _number(
                props.get("num_cache_clusters", props.get("number_cache_clusters")), 2
            )
            return self.get_elasticache_hourly_price(node_type, region) * HOURS_PER_MONTH * clusters

        if resource_type in ("s3_bucket",):
            return FLAT_MONTHLY_COSTS["aws_s3_bucket"]

        return FLAT_MONTHLY_COSTS.get(resource_type, 0.0)
