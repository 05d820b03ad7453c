"""
API routes for saved templates and AI generation.
"""
from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from iac_engine.api.dependencies import get_connection_manager, get_template_service, get_user_id
from iac_engine.core.errors import AppError
from iac_engine.services.connection_manager import ConnectionManager
from iac_engine.services.template_service import TemplateService


logger = logging.getLogger(__name__)
router = APIRouter()


class TemplateCreateRequest(BaseModel):
    """Request model for saving a template."""
    name: str = Field(..., description="Template name")
    content: str = Field(..., description="Terraform configuration text")
    provider: str = Field(default="aws", description="Cloud provider key")
    description: Optional[str] = Field(None, description="Free-text description")


class TemplateGenerateRequest(BaseModel):
    """Request model for AI template generation."""
    prompt: str = Field(..., description="Architecture description")
    provider: str = Field(default="aws", description="Cloud provider key")
    name: Optional[str] = Field(None, description="Template name (defaults to the prompt)")
    connection_id: Optional[str] = Field(None, description="Connection whose synced resources give context")


@router.post("/api/templates")
async def create_template(
    create_request: TemplateCreateRequest,
    user_id: str = Depends(get_user_id),
    templates: TemplateService = Depends(get_template_service)
) -> Dict[str, Any]:
    template = await templates.create_template(
        user_id,
        create_request.name,
        create_request.content,
        create_request.provider,
        create_request.description,
    )
    return {"status": "ok", "template": template.to_dict()}


@router.get("/api/templates")
async def list_templates(
    user_id: str = Depends(get_user_id),
    templates: TemplateService = Depends(get_template_service)
) -> Dict[str, Any]:
    items = await templates.list_templates(user_id)
    return {
        "status": "ok",
        "templates": [template.to_dict(include_content=False) for template in items],
    }


@router.post("/api/templates/generate")
async def generate_template(
    generate_request: TemplateGenerateRequest,
    user_id: str = Depends(get_user_id),
    templates: TemplateService = Depends(get_template_service),
    connections: ConnectionManager = Depends(get_connection_manager)
) -> Dict[str, Any]:
    """
    Generate a Terraform configuration from an architecture description.

    Returns:
        JSON response with the saved template, generated files and remaining credits

    Raises:
        HTTPException: On unexpected errors (service errors render through the AppError handler)
    """
    try:
        logger.info("generate_template: Entry - user=%s provider=%s", user_id, generate_request.provider)
        context_resources = None
        if generate_request.connection_id:
            context_resources = await connections.get_connection_resources(user_id, generate_request.connection_id)

        result = await templates.generate_template(
            user_id,
            generate_request.prompt,
            generate_request.provider,
            name=generate_request.name,
            context_resources=context_resources,
        )
        logger.info("generate_template: Success - %d resources", result["resource_count"])
        return {"status": "ok", **result}

    except HTTPException:
        raise
    except AppError:
        raise
    except Exception as error:
        logger.error("generate_template: Unexpected error: %s", error, exc_info=True)
        raise HTTPException(
            status_code=500,
            detail="An unexpected error occurred while generating the template"
        ) from error
