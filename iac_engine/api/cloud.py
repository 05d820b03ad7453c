"""
API routes for cloud account connections, resource sync and live scans.
"""
from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from iac_engine.api.dependencies import get_connection_manager, get_user_id
from iac_engine.core.errors import AppError
from iac_engine.services.connection_manager import ConnectionManager


logger = logging.getLogger(__name__)
router = APIRouter()


class ConnectionCreateRequest(BaseModel):
    """Request model for connecting a cloud account."""
    name: str = Field(..., description="Connection name")
    role_arn: str = Field(..., description="ARN of the read-only role created from the setup template")
    external_id: str = Field(..., description="External ID issued by the setup endpoint")
    region: Optional[str] = Field(None, description="Home region for regional scans")


@router.get("/api/cloud/setup")
async def get_setup_details(
    user_id: str = Depends(get_user_id),
    connections: ConnectionManager = Depends(get_connection_manager)
) -> Dict[str, Any]:
    details = await connections.generate_setup_details(user_id)
    return {"status": "ok", **details}


@router.post("/api/cloud/connections")
async def create_connection(
    create_request: ConnectionCreateRequest,
    user_id: str = Depends(get_user_id),
    connections: ConnectionManager = Depends(get_connection_manager)
) -> Dict[str, Any]:
    connection = await connections.create_connection(
        user_id,
        create_request.name,
        create_request.role_arn,
        create_request.external_id,
        create_request.region,
    )
    return {"status": "ok", "connection": connection.to_dict()}


@router.get("/api/cloud/connections")
async def list_connections(
    user_id: str = Depends(get_user_id),
    connections: ConnectionManager = Depends(get_connection_manager)
) -> Dict[str, Any]:
    items = await connections.list_connections(user_id)
    return {"status": "ok", "connections": [connection.to_dict() for connection in items]}


@router.delete("/api/cloud/connections/{connection_id}")
async def delete_connection(
    connection_id: str,
    user_id: str = Depends(get_user_id),
    connections: ConnectionManager = Depends(get_connection_manager)
) -> Dict[str, Any]:
    await connections.delete_connection(user_id, connection_id)
    return {"status": "ok"}


@router.post("/api/cloud/connections/{connection_id}/sync")
async def sync_connection(
    connection_id: str,
    user_id: str = Depends(get_user_id),
    connections: ConnectionManager = Depends(get_connection_manager)
) -> Dict[str, Any]:
    try:
        logger.info("sync_connection: Entry - connection=%s", connection_id)
        connection = await connections.sync_connection(user_id, connection_id)
        resources = await connections.get_connection_resources(user_id, connection_id)
        return {
            "status": "ok",
            "connection": connection.to_dict(),
            "resource_count": len(resources),
        }

    except HTTPException:
        raise
    except AppError:
        raise
    except Exception as error:
        logger.error("sync_connection: Unexpected error: %s", error, exc_info=True)
        raise HTTPException(
            status_code=500,
            detail="An unexpected error occurred while syncing resources"
        ) from error


@router.get("/api/cloud/connections/{connection_id}/resources")
async def list_resources(
    connection_id: str,
    resource_type: Optional[str] = None,
    user_id: str = Depends(get_user_id),
    connections: ConnectionManager = Depends(get_connection_manager)
) -> Dict[str, Any]:
    resources = await connections.get_connection_resources(user_id, connection_id, resource_type)
    return {
        "status": "ok",
        "resource_count": len(resources),
        "resources": [resource.to_dict() for resource in resources],
    }


@router.post("/api/cloud/connections/{connection_id}/scan")
async def scan_connection(
    connection_id: str,
    user_id: str = Depends(get_user_id),
    connections: ConnectionManager = Depends(get_connection_manager)
) -> Dict[str, Any]:
    """
    Run a live security and cost scan of the connected account.

    Returns:
        JSON response with per-category results; a category that failed
        carries its error while the rest still report
    """
    try:
        logger.info("scan_connection: Entry - connection=%s", connection_id)
        result = await connections.scan_connection(user_id, connection_id)
        logger.info("scan_connection: Success - partial=%s", result.partial)
        return {"status": "ok", "scan": result.to_dict()}

    except HTTPException:
        raise
    except AppError:
        raise
    except Exception as error:
        logger.error("scan_connection: Unexpected error: %s", error, exc_info=True)
        raise HTTPException(
            status_code=500,
            detail="An unexpected error occurred while scanning the account"
        ) from error
