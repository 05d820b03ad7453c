"""
API routes for configuration audits and the policy catalog.
"""
from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from iac_engine.api.dependencies import get_policy_engine, get_template_service, get_user_id
from iac_engine.core.errors import AppError, NotFoundError
from iac_engine.services.policy_engine import PolicyEngine
from iac_engine.services.template_diff import compare_templates
from iac_engine.services.template_service import TemplateService


logger = logging.getLogger(__name__)
router = APIRouter()


class AuditRequest(BaseModel):
    """Request model for auditing a configuration."""
    content: str = Field(..., description="Raw Terraform configuration text")
    provider: str = Field(default="aws", description="Cloud provider key")
    template_id: Optional[str] = Field(None, description="Saved template to attach the report to")


class AuditDiffRequest(BaseModel):
    """Request model for comparing two configuration versions."""
    old_content: str = Field(..., description="Current configuration text")
    new_content: str = Field(..., description="Proposed configuration text")
    provider: str = Field(default="aws", description="Cloud provider key")


class PolicyToggleRequest(BaseModel):
    is_active: bool = Field(..., description="Whether the policy participates in audits")


@router.post("/api/audit")
async def audit_configuration(
    audit_request: AuditRequest,
    user_id: str = Depends(get_user_id),
    engine: PolicyEngine = Depends(get_policy_engine),
    templates: TemplateService = Depends(get_template_service)
) -> Dict[str, Any]:
    """
    Audit a configuration against all active policies.

    When template_id is given the template must belong to the caller and the
    report is appended to its history.

    Returns:
        JSON response with the scored report
    """
    try:
        logger.info("audit_configuration: Entry - user=%s provider=%s", user_id, audit_request.provider)
        if audit_request.template_id:
            await templates.get_template(user_id, audit_request.template_id)

        report = await engine.audit_template(
            audit_request.content,
            audit_request.provider,
            template_id=audit_request.template_id,
        )
        if audit_request.template_id:
            await engine.save_report(report)

        logger.info(
            "audit_configuration: Success - score=%d issues=%d",
            report.summary.score, report.summary.total_issues,
        )
        return {"status": "ok", "report": report.to_dict()}

    except HTTPException:
        raise
    except AppError:
        raise
    except Exception as error:
        logger.error("audit_configuration: Unexpected error: %s", error, exc_info=True)
        raise HTTPException(
            status_code=500,
            detail="An unexpected error occurred while auditing the configuration"
        ) from error


@router.post("/api/audit/diff")
async def audit_diff(
    diff_request: AuditDiffRequest,
    user_id: str = Depends(get_user_id),
    engine: PolicyEngine = Depends(get_policy_engine)
) -> Dict[str, Any]:
    """Compare cost and findings between two configuration versions."""
    try:
        comparison = await compare_templates(
            diff_request.old_content,
            diff_request.new_content,
            diff_request.provider,
            engine=engine,
        )
        return {"status": "ok", **comparison}

    except HTTPException:
        raise
    except AppError:
        raise
    except Exception as error:
        logger.error("audit_diff: Unexpected error: %s", error, exc_info=True)
        raise HTTPException(
            status_code=500,
            detail="An unexpected error occurred while comparing configurations"
        ) from error


@router.get("/api/templates/{template_id}/audit/latest")
async def latest_audit(
    template_id: str,
    user_id: str = Depends(get_user_id),
    engine: PolicyEngine = Depends(get_policy_engine),
    templates: TemplateService = Depends(get_template_service)
) -> Dict[str, Any]:
    await templates.get_template(user_id, template_id)
    report = await engine.get_latest_report(template_id)
    if report is None:
        raise NotFoundError("Audit report")
    return {"status": "ok", "report": report.to_dict()}


@router.get("/api/policies")
async def list_policies(
    provider: Optional[str] = None,
    user_id: str = Depends(get_user_id),
    engine: PolicyEngine = Depends(get_policy_engine)
) -> Dict[str, Any]:
    policies = await engine.list_policies(provider)
    return {
        "status": "ok",
        "policy_count": len(policies),
        "policies": [policy.to_dict() for policy in policies],
    }


@router.patch("/api/policies/{code}")
async def toggle_policy(
    code: str,
    toggle_request: PolicyToggleRequest,
    user_id: str = Depends(get_user_id),
    engine: PolicyEngine = Depends(get_policy_engine)
) -> Dict[str, Any]:
    policy = await engine.toggle_policy(code, toggle_request.is_active)
    logger.info("toggle_policy: %s set is_active=%s by user %s", code, toggle_request.is_active, user_id)
    return {"status": "ok", "policy": policy.to_dict()}
