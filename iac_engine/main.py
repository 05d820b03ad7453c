"""
Main FastAPI application bootstrap.
Configures middleware, error rendering and includes routers.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from iac_engine.core.config import config
from iac_engine.core.errors import AppError
from iac_engine.api.audit import router as audit_router
from iac_engine.api.cloud import router as cloud_router
from iac_engine.api.deployments import router as deployments_router
from iac_engine.api.health import router as health_router
from iac_engine.api.templates import router as templates_router
from iac_engine.middleware.rate_limiter import RateLimitMiddleware
from iac_engine.middleware.request_size_limiter import RequestSizeLimiterMiddleware
from iac_engine.services.policy_engine import PolicyEngine


logger = logging.getLogger(__name__)

# Validate configuration on startup
try:
    config.validate()
except ValueError as error:
    # Fail fast with a clear, non-secret-bearing message
    raise RuntimeError(f"Configuration error: {error}") from error

logger.info(
    "Starting %s: region=%s, terraform=%s, max_concurrent_deployments=%d, ai_generation=%s",
    config.APP_NAME,
    config.AWS_DEFAULT_REGION,
    config.TERRAFORM_BIN,
    config.MAX_CONCURRENT_DEPLOYMENTS,
    "enabled" if config.MISTRAL_API_KEY else "disabled",
)


app = FastAPI(
    title="IaC Audit & Deployment Engine",
    description="Terraform policy audits, cost estimates, live cloud scans and managed deployments",
)

app.add_middleware(RateLimitMiddleware)
app.add_middleware(RequestSizeLimiterMiddleware)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, error: AppError) -> JSONResponse:
    """Render service errors with their status code and machine-readable code."""
    if error.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, error.code, error.message)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, error.code)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.on_event("startup")
async def seed_policies() -> None:
    seeded = await PolicyEngine().seed_builtin_policies()
    logger.info("Seeded %d built-in policies", seeded)


app.include_router(health_router)
app.include_router(audit_router)
app.include_router(templates_router)
app.include_router(cloud_router)
app.include_router(deployments_router)
