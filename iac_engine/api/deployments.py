"""
API routes for deployment credentials and the plan/apply/destroy lifecycle.
"""
from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from iac_engine.api.dependencies import get_deployment_service, get_user_id
from iac_engine.core.errors import AppError
from iac_engine.services.deployment_service import DeploymentService


logger = logging.getLogger(__name__)
router = APIRouter()


class CredentialCreateRequest(BaseModel):
    """Request model for registering a deployment role."""
    name: str = Field(..., description="Credential name")
    role_arn: str = Field(..., description="ARN of the deployment role")
    external_id: Optional[str] = Field(None, description="External ID from the setup template")


class CredentialToggleRequest(BaseModel):
    is_active: bool = Field(..., description="Whether the credential may be used for new plans")


class PlanRequest(BaseModel):
    """Request model for planning a deployment."""
    template_id: str = Field(..., description="Template to deploy")
    credential_id: str = Field(..., description="Deployment credential to assume")
    region: Optional[str] = Field(None, description="Target region (defaults to AWS_DEFAULT_REGION)")


def _lifecycle_failure(operation: str, error: Exception) -> HTTPException:
    logger.error("%s: Unexpected error: %s", operation, error, exc_info=True)
    return HTTPException(
        status_code=500,
        detail=f"An unexpected error occurred during {operation.split('_')[0]}"
    )


# --- Credentials ---------------------------------------------------------

@router.post("/api/deployments/credentials")
async def create_credential(
    create_request: CredentialCreateRequest,
    user_id: str = Depends(get_user_id),
    deployments: DeploymentService = Depends(get_deployment_service)
) -> Dict[str, Any]:
    credential = await deployments.create_credential(
        user_id,
        create_request.name,
        create_request.role_arn,
        create_request.external_id,
    )
    return {"status": "ok", "credential": credential.to_dict()}


@router.get("/api/deployments/credentials")
async def list_credentials(
    user_id: str = Depends(get_user_id),
    deployments: DeploymentService = Depends(get_deployment_service)
) -> Dict[str, Any]:
    credentials = await deployments.list_credentials(user_id)
    return {"status": "ok", "credentials": [credential.to_dict() for credential in credentials]}


@router.patch("/api/deployments/credentials/{credential_id}")
async def toggle_credential(
    credential_id: str,
    toggle_request: CredentialToggleRequest,
    user_id: str = Depends(get_user_id),
    deployments: DeploymentService = Depends(get_deployment_service)
) -> Dict[str, Any]:
    credential = await deployments.toggle_credential(user_id, credential_id, toggle_request.is_active)
    return {"status": "ok", "credential": credential.to_dict()}


@router.delete("/api/deployments/credentials/{credential_id}")
async def delete_credential(
    credential_id: str,
    user_id: str = Depends(get_user_id),
    deployments: DeploymentService = Depends(get_deployment_service)
) -> Dict[str, Any]:
    await deployments.delete_credential(user_id, credential_id)
    return {"status": "ok"}


@router.get("/api/deployments/setup-template")
async def get_setup_template(
    external_id: Optional[str] = None,
    user_id: str = Depends(get_user_id),
    deployments: DeploymentService = Depends(get_deployment_service)
) -> Dict[str, Any]:
    return {"status": "ok", **deployments.get_deployment_setup_template(external_id)}


# --- Lifecycle -----------------------------------------------------------

@router.post("/api/deployments/plan")
async def plan_deployment(
    plan_request: PlanRequest,
    user_id: str = Depends(get_user_id),
    deployments: DeploymentService = Depends(get_deployment_service)
) -> Dict[str, Any]:
    """
    Plan a template against the caller's cloud account.

    Returns:
        JSON response with the deployment in PLAN_READY, its plan summary,
        audit score and estimated monthly cost
    """
    try:
        logger.info("plan_deployment: Entry - user=%s template=%s", user_id, plan_request.template_id)
        deployment = await deployments.plan_deployment(
            user_id,
            plan_request.template_id,
            plan_request.credential_id,
            plan_request.region,
        )
        return {"status": "ok", "deployment": deployment.to_dict()}

    except HTTPException:
        raise
    except AppError:
        raise
    except Exception as error:
        raise _lifecycle_failure("plan_deployment", error) from error


@router.post("/api/deployments/{deployment_id}/apply")
async def apply_deployment(
    deployment_id: str,
    user_id: str = Depends(get_user_id),
    deployments: DeploymentService = Depends(get_deployment_service)
) -> Dict[str, Any]:
    try:
        deployment = await deployments.apply_deployment(user_id, deployment_id)
        return {"status": "ok", "deployment": deployment.to_dict()}

    except HTTPException:
        raise
    except AppError:
        raise
    except Exception as error:
        raise _lifecycle_failure("apply_deployment", error) from error


@router.post("/api/deployments/{deployment_id}/destroy")
async def destroy_deployment(
    deployment_id: str,
    user_id: str = Depends(get_user_id),
    deployments: DeploymentService = Depends(get_deployment_service)
) -> Dict[str, Any]:
    try:
        deployment = await deployments.destroy_deployment(user_id, deployment_id)
        return {
            "status": "ok",
            "deployment": deployment.to_dict(),
            "output": deployment.apply_output or "",
        }

    except HTTPException:
        raise
    except AppError:
        raise
    except Exception as error:
        raise _lifecycle_failure("destroy_deployment", error) from error


@router.get("/api/deployments")
async def list_deployments(
    template_id: Optional[str] = None,
    user_id: str = Depends(get_user_id),
    deployments: DeploymentService = Depends(get_deployment_service)
) -> Dict[str, Any]:
    items = await deployments.list_deployments(user_id, template_id)
    return {"status": "ok", "deployments": [deployment.to_dict() for deployment in items]}


@router.get("/api/deployments/{deployment_id}")
async def get_deployment(
    deployment_id: str,
    user_id: str = Depends(get_user_id),
    deployments: DeploymentService = Depends(get_deployment_service)
) -> Dict[str, Any]:
    deployment = await deployments.get_deployment(user_id, deployment_id)
    return {"status": "ok", "deployment": deployment.to_dict()}
