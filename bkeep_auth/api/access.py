from __future__ import annotations

from typing import Any, Callable, Dict, Optional, Sequence

from fastapi import Depends, Request

from bkeep_auth.logging import get_correlation_id
from bkeep_auth.service.audit import RequestContext
from bkeep_auth.service.authorization import check_access
from bkeep_auth.service.errors import AuthenticationError, ForbiddenError
from bkeep_auth.service.runtime import get_runtime

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"
SESSION_COOKIE = "session"


def presented_access_token(request: Request) -> Optional[str]:
    """Bearer header wins over the cookie when both are sent."""
    authorization = request.headers.get("Authorization")
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
    return request.cookies.get(ACCESS_COOKIE) or None


def request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
        method=request.method,
        endpoint=request.url.path,
        request_id=get_correlation_id(),
    )


async def authenticate(request: Request) -> Dict[str, Any]:
    token = presented_access_token(request)
    if not token:
        raise AuthenticationError("access token required")
    user = await get_runtime().tokens.verify_access(token)
    request.state.user = user
    return user


def require(
    roles: Optional[Sequence[str]] = None,
    permissions: Optional[Sequence[str]] = None,
    *,
    require_all_permissions: bool = False,
    require_both: bool = False,
) -> Callable:
    """Build a dependency that authenticates and then enforces role/permission rules.

    With both ``roles`` and ``permissions`` given, either one satisfies the
    check unless ``require_both`` is set.
    """

    async def dependency(user: Dict[str, Any] = Depends(authenticate)) -> Dict[str, Any]:
        check_access(
            user,
            roles=list(roles) if roles else None,
            permissions=list(permissions) if permissions else None,
            require_all_permissions=require_all_permissions,
            require_both=require_both,
        )
        return user

    return dependency


async def require_tenant_context(
    user: Dict[str, Any] = Depends(authenticate),
) -> Dict[str, Any]:
    tenant_id = user.get("selectedTenantId")
    tenant = get_runtime().store.get_tenant(tenant_id) if tenant_id else None
    if not tenant or not tenant.is_active:
        raise ForbiddenError("tenant context required")
    return user
