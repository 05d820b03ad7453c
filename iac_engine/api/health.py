"""
Health endpoint.
"""
from typing import Any, Dict

from fastapi import APIRouter, Depends

from iac_engine.api.dependencies import get_deployment_service
from iac_engine.core.config import config
from iac_engine.services.deployment_service import DeploymentService


router = APIRouter()


@router.get("/api/health")
async def health(deployments: DeploymentService = Depends(get_deployment_service)) -> Dict[str, Any]:
    """Service liveness plus provisioning tool availability. No authentication."""
    terraform = await deployments.get_status()
    return {
        "status": "ok",
        "service": config.APP_NAME,
        "terraform": terraform,
    }
