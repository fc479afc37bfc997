"""
Tenant scoping helpers for the workflow engine.
Every rule, event and subscription belongs to exactly one tenant; callers must
hand in a real tenant id, there is no implicit default tenant.
"""
from __future__ import annotations

import uuid
from typing import Optional


class InvalidTenantError(ValueError):
    """Raised when a caller passes a missing or malformed tenant id."""
    pass


def normalize_tenant_id(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def require_tenant_id(value) -> uuid.UUID:
    tenant_id = normalize_tenant_id(value)
    if tenant_id is None:
        raise InvalidTenantError(f"Invalid tenant id: {value!r}")
    return tenant_id
