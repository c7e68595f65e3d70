from typing import Annotated
from fastapi import Depends, Request, HTTPException, status
from uuid import UUID


def get_tenant_id(request: Request) -> UUID:
    """Extract tenant_id from request state set by TenantMiddleware"""
    if not hasattr(request.state, 'tenant_id'):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Tenant context not found. Ensure X-Company-ID header is provided."
        )
    return request.state.tenant_id


def get_session_id(request: Request) -> str:
    """UI session that owns the conversion modal and the local overlay"""
    return getattr(request.state, 'session_id', None) or "default"


TenantId = Annotated[UUID, Depends(get_tenant_id)]
SessionId = Annotated[str, Depends(get_session_id)]
