"""
AWS region lookups for pricing.

The Price List API filters on human-readable location strings, and the
static catalog is priced for us-east-1 and scaled per region.
"""
from typing import Dict, Optional


# AWS region code to Pricing API location string mapping
AWS_REGION_TO_LOCATION: Dict[str, str] = {
    # US
    "us-east-1": "US East (N. Virginia)",
    "us-east-2": "US East (Ohio)",
    "us-west-1": "US West (N. California)",
    "us-west-2": "US West (Oregon)",
    "ca-central-1": "Canada (Central)",

    # Asia Pacific
    "ap-south-1": "Asia Pacific (Mumbai)",
    "ap-southeast-1": "Asia Pacific (Singapore)",
    "ap-southeast-2": "Asia Pacific (Sydney)",
    "ap-northeast-1": "Asia Pacific (Tokyo)",
    "ap-northeast-2": "Asia Pacific (Seoul)",
    "ap-northeast-3": "Asia Pacific (Osaka)",

    # Europe
    "eu-west-1": "EU (Ireland)",
    "eu-west-2": "EU (London)",
    "eu-west-3": "EU (Paris)",
    "eu-central-1": "EU (Frankfurt)",
    "eu-north-1": "EU (Stockholm)",

    # Other
    "sa-east-1": "South America (Sao Paulo)",
    "me-south-1": "Middle East (Bahrain)",
    "af-south-1": "Africa (Cape Town)",
}

# Static catalog prices are us-east-1; other regions scale by these factors
REGION_MULTIPLIERS: Dict[str, float] = {
    "us-east-1": 1.0,
    "us-east-2": 1.0,
    "us-west-1": 1.05,
    "us-west-2": 1.02,
    "ca-central-1": 1.04,
    "eu-west-1": 1.05,
    "eu-west-2": 1.07,
    "eu-west-3": 1.08,
    "eu-central-1": 1.06,
    "eu-north-1": 1.05,
    "ap-southeast-1": 1.10,
    "ap-southeast-2": 1.12,
    "ap-northeast-1": 1.15,
    "ap-northeast-2": 1.12,
    "ap-northeast-3": 1.15,
    "ap-south-1": 1.08,
    "sa-east-1": 1.20,
    "me-south-1": 1.12,
    "af-south-1": 1.14,
}


def get_aws_pricing_location(region_code: str) -> Optional[str]:
    """
    Get AWS Pricing API location string from region code.

    Args:
        region_code: AWS region code (e.g., 'ap-south-1')

    Returns:
        Pricing API location string (e.g., 'Asia Pacific (Mumbai)'), or None if not found
    """
    return AWS_REGION_TO_LOCATION.get(region_code)


def get_region_multiplier(region_code: str) -> float:
    """Price multiplier relative to us-east-1; unknown regions use 1.0."""
    return REGION_MULTIPLIERS.get(region_code, 1.0)
