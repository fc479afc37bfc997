"""
Tenant resolution for the admin endpoints.

User authentication lives in the host application. These endpoints expect the
tenant id in X-Tenant-ID and, when ADMIN_API_KEY is configured, a matching
X-Admin-Key header.
"""
import logging
import secrets
import uuid
from typing import Optional

from fastapi import Header, HTTPException

from lendflow.config import get_settings
from lendflow.services.tenancy import InvalidTenantError, require_tenant_id

logger = logging.getLogger(__name__)


async def require_admin_key(
    x_admin_key: Optional[str] = Header(default=None),
) -> None:
    expected = get_settings().admin_api_key
    if not expected:
        return
    if not x_admin_key or not secrets.compare_digest(x_admin_key, expected):
        logger.warning("Admin API request rejected: bad or missing X-Admin-Key")
        raise HTTPException(status_code=401, detail="Invalid admin key")


async def get_tenant_id(
    x_tenant_id: Optional[str] = Header(default=None),
) -> uuid.UUID:
    """FastAPI dependency returning the request's tenant UUID."""
    try:
        return require_tenant_id(x_tenant_id)
    except InvalidTenantError:
        raise HTTPException(status_code=400, detail="Missing or invalid X-Tenant-ID header")
