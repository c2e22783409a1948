"""
Authentication dependencies.

Applications authenticate with their API key (X-API-Key header).
Application management requires the admin token (X-Admin-Token header).
"""

import logging
from typing import Optional

from fastapi import Depends, HTTPException, Query, status
from fastapi.security import APIKeyHeader

from logchain.config import settings
from logchain.crypto import api_key_prefix, constant_time_compare
from logchain.database import Database, get_db
from logchain.models import ApplicationInfo
from logchain.services.applications import ApplicationManager

logger = logging.getLogger(__name__)

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
admin_token_header = APIKeyHeader(name="X-Admin-Token", auto_error=False)


async def get_current_application(
    x_api_key: Optional[str] = Depends(api_key_header),
    api_key: Optional[str] = Query(default=None, include_in_schema=False),
    db: Database = Depends(get_db)
) -> ApplicationInfo:
    """
    Dependency resolving the calling application from its API key.

    Raises:
        HTTPException: 401 if the key is missing, unknown or inactive
    """
    key = x_api_key or api_key
    if not key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API Key is required. Use the X-API-Key header"
        )

    application = await ApplicationManager(db).get_by_api_key(key)
    if application is None:
        logger.warning(f"Rejected API key: prefix={api_key_prefix(key)}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or inactive API Key"
        )

    return application


async def require_admin_token(
    x_admin_token: Optional[str] = Depends(admin_token_header)
) -> None:
    """
    Dependency guarding application management endpoints.

    Raises:
        HTTPException: 401 if the admin token is missing or wrong
    """
    if not x_admin_token or not constant_time_compare(x_admin_token, settings.admin_token):
        logger.warning("Rejected admin request: invalid X-Admin-Token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token"
        )
