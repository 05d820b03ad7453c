"""
Configuration module for loading environment variables.
All secrets and tunables are read once at import time.
"""
import os
import re


class Config:
    """Application configuration loaded from environment variables."""

    APP_NAME: str = os.getenv("APP_NAME", "iac-engine")

    # AWS
    AWS_DEFAULT_REGION: str = os.getenv("AWS_DEFAULT_REGION", "us-east-1")
    AWS_PRICING_REGION: str = os.getenv("AWS_PRICING_REGION", "us-east-1")
    HOST_ACCOUNT_ID: str = os.getenv("HOST_ACCOUNT_ID", "000000000000")
    ASSUME_ROLE_DURATION_SECONDS: int = int(os.getenv("ASSUME_ROLE_DURATION_SECONDS", "3600"))
    SCAN_CATEGORY_TIMEOUT_SECONDS: int = int(os.getenv("SCAN_CATEGORY_TIMEOUT_SECONDS", "60"))

    # Pricing
    PRICING_CACHE_TTL_SECONDS: int = int(os.getenv("PRICING_CACHE_TTL_SECONDS", "900"))  # 15 minutes
    # Price List API fallback for instance classes missing from the static catalog
    PRICING_API_ENABLED: bool = os.getenv("PRICING_API_ENABLED", "true").lower() == "true"
    HOURS_PER_MONTH: int = 730  # Standard assumption: 24/7 operation

    # Encryption at rest for deployment state and delegated role ARNs
    STATE_ENCRYPTION_KEY: str = os.getenv("STATE_ENCRYPTION_KEY", "")

    # Provisioning tool
    TERRAFORM_BIN: str = os.getenv("TERRAFORM_BIN", "terraform")
    TERRAFORM_TIMEOUT_SECONDS: int = int(os.getenv("TERRAFORM_TIMEOUT_SECONDS", "300"))
    TERRAFORM_MAX_OUTPUT_BYTES: int = int(os.getenv("TERRAFORM_MAX_OUTPUT_BYTES", str(1024 * 1024)))
    DEPLOYMENT_OUTPUT_MAX_CHARS: int = 50000
    ERROR_MESSAGE_MAX_CHARS: int = 2000
    MAX_CONCURRENT_DEPLOYMENTS: int = int(os.getenv("MAX_CONCURRENT_DEPLOYMENTS", "5"))

    # Mistral AI Configuration (template generation)
    MISTRAL_API_KEY: str = os.getenv("MISTRAL_API_KEY", "")
    MISTRAL_MODEL: str = os.getenv("MISTRAL_MODEL", "mistral-large-latest")
    MISTRAL_API_BASE_URL: str = os.getenv("MISTRAL_API_BASE_URL", "https://api.mistral.ai/v1")
    MISTRAL_TIMEOUT: int = int(os.getenv("MISTRAL_TIMEOUT", "120"))
    MISTRAL_MAX_TOKENS: int = 8192

    # Credits
    DEFAULT_CREDIT_BALANCE: int = int(os.getenv("DEFAULT_CREDIT_BALANCE", "100"))

    @classmethod
    def validate(cls) -> None:
        """
        Validates that required configuration values are set.

        Raises:
            ValueError: If any required configuration is missing or invalid.
        """
        if not cls.STATE_ENCRYPTION_KEY:
            raise ValueError("STATE_ENCRYPTION_KEY is required")
        if len(cls.STATE_ENCRYPTION_KEY) < 16:
            raise ValueError("STATE_ENCRYPTION_KEY must be at least 16 characters")

        if not re.match(r"^[a-z]{2}(-gov)?-[a-z]+-\d$", cls.AWS_DEFAULT_REGION):
            raise ValueError(
                f"AWS_DEFAULT_REGION must be a region code (got: {cls.AWS_DEFAULT_REGION})"
            )

        for name in (
            "TERRAFORM_TIMEOUT_SECONDS",
            "TERRAFORM_MAX_OUTPUT_BYTES",
            "MAX_CONCURRENT_DEPLOYMENTS",
            "ASSUME_ROLE_DURATION_SECONDS",
            "SCAN_CATEGORY_TIMEOUT_SECONDS",
        ):
            if getattr(cls, name) <= 0:
                raise ValueError(f"{name} must be positive")

        # STS rejects sessions shorter than 15 minutes
        if cls.ASSUME_ROLE_DURATION_SECONDS < 900:
            raise ValueError("ASSUME_ROLE_DURATION_SECONDS must be at least 900")

        # API key is optional: generation is disabled without it
        if not cls.MISTRAL_MODEL:
            raise ValueError("MISTRAL_MODEL is required")


config = Config()
