"""
Shared request dependencies: caller identity and service construction.

Routers take services through Depends so tests can swap them with
app.dependency_overrides.
"""
from typing import Optional

from fastapi import Header, HTTPException

from iac_engine.services.connection_manager import ConnectionManager
from iac_engine.services.deployment_service import DeploymentService
from iac_engine.services.policy_engine import PolicyEngine
from iac_engine.services.template_service import TemplateService


def get_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """
    Caller identity, set by the authenticating proxy in front of the API.

    Raises:
        HTTPException: 401 if the header is missing or blank
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=401,
            detail="Authentication required"
        )
    return x_user_id.strip()


def get_policy_engine() -> PolicyEngine:
    return PolicyEngine()


def get_template_service() -> TemplateService:
    return TemplateService()


def get_connection_manager() -> ConnectionManager:
    return ConnectionManager()


def get_deployment_service() -> DeploymentService:
    return DeploymentService()
