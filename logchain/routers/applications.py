"""
Application management endpoints.

All endpoints require the X-Admin-Token header.
"""

import logging

from fastapi import APIRouter, Depends, Query, status

from logchain.auth import require_admin_token
from logchain.database import Database, get_db
from logchain.models import (
    ApplicationCreate,
    ApplicationKeyResponse,
    ApplicationListResponse,
    ApplicationResponse,
    ApplicationUpdate,
    ApplicationWithKey,
)
from logchain.services.applications import ApplicationManager

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/applications",
    tags=["applications"],
    dependencies=[Depends(require_admin_token)]
)


def get_manager(db: Database = Depends(get_db)) -> ApplicationManager:
    return ApplicationManager(db)


@router.post("", response_model=ApplicationKeyResponse, status_code=status.HTTP_201_CREATED)
async def create_application(
    request: ApplicationCreate,
    manager: ApplicationManager = Depends(get_manager)
):
    """
    Register a new application.

    The API key is returned only in this response. Store it securely;
    it cannot be retrieved later, only regenerated.
    """
    info, api_key = await manager.create_application(request)

    return ApplicationKeyResponse(
        message="Application created. Store the API key securely, it will not be shown again",
        data=ApplicationWithKey(id=info.id, name=info.name, slug=info.slug, api_key=api_key)
    )


@router.get("", response_model=ApplicationListResponse)
async def list_applications(
    include_inactive: bool = Query(default=True),
    manager: ApplicationManager = Depends(get_manager)
):
    """List applications that have not been deleted."""
    return ApplicationListResponse(
        data=await manager.list_applications(include_inactive=include_inactive)
    )


@router.get("/{application_id}", response_model=ApplicationResponse)
async def get_application(
    application_id: str,
    manager: ApplicationManager = Depends(get_manager)
):
    """Get one application."""
    return ApplicationResponse(data=await manager.get_application(application_id))


@router.put("/{application_id}", response_model=ApplicationResponse)
async def update_application(
    application_id: str,
    update: ApplicationUpdate,
    manager: ApplicationManager = Depends(get_manager)
):
    """Update an application's name, domain, stack or active flag."""
    return ApplicationResponse(
        data=await manager.update_application(application_id, update)
    )


@router.delete("/{application_id}")
async def delete_application(
    application_id: str,
    manager: ApplicationManager = Depends(get_manager)
):
    """
    Soft-delete an application.

    The application's API key stops working. Its chain is kept and can
    still be checked with scripts/verify_chain.py --include-deleted.
    """
    await manager.soft_delete(application_id)
    return {"success": True, "message": "Application deleted"}


@router.delete("/{application_id}/hard-delete")
async def hard_delete_application(
    application_id: str,
    manager: ApplicationManager = Depends(get_manager)
):
    """
    Permanently delete an application.

    Refused (400) when the application has logs: the chain is append-only.
    """
    await manager.hard_delete(application_id)
    return {"success": True, "message": "Application permanently deleted"}


@router.post("/{application_id}/regenerate-key", response_model=ApplicationKeyResponse)
async def regenerate_api_key(
    application_id: str,
    manager: ApplicationManager = Depends(get_manager)
):
    """Issue a new API key. The previous key stops working immediately."""
    info, api_key = await manager.regenerate_api_key(application_id)

    return ApplicationKeyResponse(
        message="API key regenerated. Store it securely, it will not be shown again",
        data=ApplicationWithKey(id=info.id, name=info.name, slug=info.slug, api_key=api_key)
    )
