"""
AWS Pricing API client.
Uses boto3 to query the official AWS Price List API for instance classes
missing from the static catalog.
"""
from typing import Dict, Any, List, Optional, Tuple
import asyncio
import json
import logging
from datetime import datetime, timedelta

import boto3
from botocore.exceptions import ClientError, BotoCoreError
from botocore.config import Config

from iac_engine.core.config import config
from iac_engine.pricing.aws_price_catalog import RDS_ENGINE_API_NAMES
from iac_engine.pricing.aws_region_map import get_aws_pricing_location
from iac_engine.resilience.circuit_breaker import get_circuit_breaker


logger = logging.getLogger(__name__)


class AWSPricingError(Exception):
    """Raised when AWS pricing lookup fails."""
    pass


class AWSPricingClient:
    """Client for querying on-demand hourly prices using boto3."""

    # In-memory cache shared by all instances: cache_key -> (price, timestamp)
    _cache: Dict[str, Tuple[Optional[float], datetime]] = {}

    def __init__(self, pricing_client=None):
        """
        Initialize AWS pricing client.

        Args:
            pricing_client: Optional preconfigured boto3 'pricing' client
        """
        if pricing_client is None:
            boto_config = Config(
                connect_timeout=10,
                read_timeout=10,
                retries={'max_attempts': 0}  # No retries, circuit breaker handles failures
            )
            pricing_client = boto3.client(
                'pricing',
                region_name=config.AWS_PRICING_REGION,
                config=boto_config
            )
        self.pricing_client = pricing_client
        self.cache_ttl = timedelta(seconds=config.PRICING_CACHE_TTL_SECONDS)
        self.circuit_breaker = get_circuit_breaker("aws_pricing")

    def _get_cached_price(self, cache_key: str) -> Tuple[bool, Optional[float]]:
        """Return (hit, price). A cached None records a known miss."""
        if cache_key in self._cache:
            price, timestamp = self._cache[cache_key]
            if datetime.now() - timestamp < self.cache_ttl:
                return True, price
            del self._cache[cache_key]
        return False, None

    def _cache_price(self, cache_key: str, price: Optional[float]) -> None:
        self._cache[cache_key] = (price, datetime.now())

    async def get_ec2_instance_price(
        self,
        instance_type: str,
        region: str,
        operating_system: str = "Linux"
    ) -> Optional[float]:
        """
        Get hourly price for an EC2 instance type.

        Args:
            instance_type: EC2 instance type (e.g., 'm6a.large')
            region: AWS region (e.g., 'us-east-1')
            operating_system: OS type (default: 'Linux')

        Returns:
            Hourly price in USD, or None if the API has no matching product

        Raises:
            AWSPricingError: If the API call fails or the circuit is open
        """
        filters = [
            {'Type': 'TERM_MATCH', 'Field': 'instanceType', 'Value': instance_type},
            {'Type': 'TERM_MATCH', 'Field': 'operatingSystem', 'Value': operating_system},
            {'Type': 'TERM_MATCH', 'Field': 'tenancy', 'Value': 'Shared'},
            {'Type': 'TERM_MATCH', 'Field': 'preInstalledSw', 'Value': 'NA'},
            {'Type': 'TERM_MATCH', 'Field': 'capacitystatus', 'Value': 'Used'},
        ]
        cache_key = f"AmazonEC2:{instance_type}:{region}:{operating_system}"
        return await self._lookup("AmazonEC2", region, filters, cache_key)

    async def get_rds_instance_price(
        self,
        instance_type: str,
        region: str,
        engine: str = "mysql"
    ) -> Optional[float]:
        """
        Get hourly Single-AZ price for an RDS instance class.

        Args:
            instance_type: RDS instance class (e.g., 'db.m6i.large')
            region: AWS region
            engine: Terraform engine name (e.g., 'postgres')

        Returns:
            Hourly price in USD, or None if not found

        Raises:
            AWSPricingError: If the API call fails or the circuit is open
        """
        api_engine = RDS_ENGINE_API_NAMES.get((engine or "").lower(), engine)
        filters = [
            {'Type': 'TERM_MATCH', 'Field': 'instanceType', 'Value': instance_type},
            {'Type': 'TERM_MATCH', 'Field': 'databaseEngine', 'Value': api_engine},
            {'Type': 'TERM_MATCH', 'Field': 'deploymentOption', 'Value': 'Single-AZ'},
        ]
        cache_key = f"AmazonRDS:{instance_type}:{region}:{api_engine}"
        return await self._lookup("AmazonRDS", region, filters, cache_key)

    async def _lookup(
        self,
        service_code: str,
        region: str,
        filters: List[Dict[str, str]],
        cache_key: str
    ) -> Optional[float]:
        hit, cached_price = self._get_cached_price(cache_key)
        if hit:
            return cached_price

        pricing_location = get_aws_pricing_location(region)
        if pricing_location is None:
            logger.warning(f"AWS region code '{region}' not found in region map")
            return None

        if not self.circuit_breaker.allow_request():
            raise AWSPricingError(
                "AWS pricing service temporarily unavailable (circuit breaker open)"
            )

        filters = filters + [{'Type': 'TERM_MATCH', 'Field': 'location', 'Value': pricing_location}]
        try:
            # boto3 is blocking; keep the event loop free
            response = await asyncio.to_thread(
                self.pricing_client.get_products,
                ServiceCode=service_code,
                Filters=filters,
                MaxResults=1,
            )
            price = self._extract_on_demand_price(response)
        except ClientError as error:
            self.circuit_breaker.record_failure()
            logger.error(f"AWS pricing API error: {error}")
            raise AWSPricingError(f"Failed to query AWS pricing: {str(error)}") from error
        except (BotoCoreError, ValueError, KeyError) as error:
            self.circuit_breaker.record_failure()
            logger.error(f"Error parsing AWS pricing response: {error}")
            raise AWSPricingError(f"Failed to parse AWS pricing response: {str(error)}") from error

        # Not found is not a failure
        self.circuit_breaker.record_success()
        self._cache_price(cache_key, price)
        return price

    @staticmethod
    def _extract_on_demand_price(response: Dict[str, Any]) -> Optional[float]:
        """Pull the first positive On-Demand USD unit price out of a GetProducts response."""
        price_list = response.get('PriceList') or []
        if not price_list:
            return None
        price_data = json.loads(price_list[0])
        terms = price_data.get('terms', {}).get('OnDemand', {})
        for term in terms.values():
            for dimension in term.get('priceDimensions', {}).values():
                price_per_unit = dimension.get('pricePerUnit', {}).get('USD')
                if price_per_unit and float(price_per_unit) > 0:
                    return float(price_per_unit)
        return None
