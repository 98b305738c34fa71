from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import PlainTextResponse

from bkeep_auth.api.access import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    SESSION_COOKIE,
    authenticate,
    presented_access_token,
    request_context,
    require,
    require_tenant_context,
)
from bkeep_auth.api.schemas import (
    AcceptInvitationRequest,
    ChangePasswordRequest,
    CreateInvitationRequest,
    CreateTenantRequest,
    Envelope,
    ForgotPasswordRequest,
    InvitationTokenRequest,
    LoginRequest,
    MfaVerifyRequest,
    PasskeyLoginOptionsRequest,
    PasskeyLoginVerifyRequest,
    PasskeyRegisterVerifyRequest,
    PasskeyRenameRequest,
    RefreshRequest,
    ResetPasswordRequest,
    TotpLoginRequest,
    TotpVerifyRequest,
    UpdateProfileRequest,
    UpdateUserRolesRequest,
)
from bkeep_auth.logging import get_logger
from bkeep_auth.service.audit import actor_for
from bkeep_auth.service.auth import LoginChallenge, SessionResult
from bkeep_auth.service.errors import NotFoundError
from bkeep_auth.service.mfa import BACKUP_CODES_FILENAME
from bkeep_auth.service.passkeys import passkey_to_dict
from bkeep_auth.service.runtime import get_runtime
from bkeep_auth.service.tenants import tenant_to_dict
from bkeep_auth.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")

invitation_managers = require(
    roles=["admin", "superadmin"], permissions=["invitations.manage"]
)
role_managers = require(roles=["admin"], permissions=["users.update"])
superadmins = require(roles=["superadmin"])


def _apply_session_cookies(response: Response, result: SessionResult) -> None:
    settings = get_runtime().settings
    cookies = (
        (ACCESS_COOKIE, result.access_token, settings.access_token_ttl_seconds),
        (REFRESH_COOKIE, result.refresh_token, settings.refresh_token_ttl_seconds),
        (SESSION_COOKIE, result.session_id, settings.session_max_age_seconds),
    )
    for name, value, max_age in cookies:
        response.set_cookie(
            name,
            value,
            httponly=True,
            secure=settings.cookie_secure,
            samesite="lax",
            max_age=max_age,
            path="/",
        )


def _clear_session_cookies(response: Response) -> None:
    secure = get_runtime().settings.cookie_secure
    for name in (ACCESS_COOKIE, REFRESH_COOKIE, SESSION_COOKIE):
        response.delete_cookie(name, path="/", secure=secure, httponly=True, samesite="lax")


def _session_payload(result: SessionResult) -> Dict[str, Any]:
    return {
        "user": result.user.to_response(),
        "accessToken": result.access_token,
        "refreshToken": result.refresh_token,
    }


def _signed_in(response: Response, result: SessionResult, message: str) -> dict:
    _apply_session_cookies(response, result)
    return Envelope.ok(message, _session_payload(result))


def _load_user(user: Dict[str, Any]) -> User:
    record = get_runtime().store.get_user(user["id"])
    if not record:
        raise NotFoundError("user not found")
    return record


# auth


@router.post("/auth/login", tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Check credentials; either opens a session or asks for a second factor."""
    runtime = get_runtime()
    outcome = await runtime.auth.login(body.email, body.password, request_context(request))
    if isinstance(outcome, LoginChallenge):
        logger.info("login_mfa_required", mfa_type=outcome.mfa_type)
        return Envelope.ok("MFA verification required", outcome.to_response())
    return _signed_in(response, outcome, "login successful")


@router.post("/auth/refresh-token", tags=["auth"])
async def refresh_token(request: Request, response: Response, body: Optional[RefreshRequest] = None):
    """Rotate the refresh token; the cookie is used when the body carries none."""
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    result = await runtime.auth.refresh(
        token,
        request_context(request),
        session_id=request.cookies.get(SESSION_COOKIE),
    )
    return _signed_in(response, result, "token refreshed")


@router.post("/auth/logout", tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    user: Dict[str, Any] = Depends(authenticate),
):
    await get_runtime().auth.logout(
        user,
        access_token=presented_access_token(request),
        session_id=request.cookies.get(SESSION_COOKIE),
        context=request_context(request),
    )
    _clear_session_cookies(response)
    return Envelope.ok("logout successful")


@router.post("/auth/forgot-password", tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    message = await get_runtime().auth.forgot_password(body.email)
    return Envelope.ok(message)


@router.post("/auth/reset-password", tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    await get_runtime().auth.reset_password(body.email, body.token, body.password)
    return Envelope.ok("password reset successful")


@router.post("/auth/change-password", tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, user: Dict[str, Any] = Depends(authenticate)
):
    await get_runtime().auth.change_password(
        user["id"], body.current_password, body.new_password
    )
    return Envelope.ok("password changed successfully")


@router.get("/auth/profile", tags=["auth"])
async def get_profile(user: Dict[str, Any] = Depends(authenticate)):
    return Envelope.ok("profile retrieved", get_runtime().auth.get_profile(user))


@router.put("/auth/profile", tags=["auth"])
async def update_profile(
    body: UpdateProfileRequest, user: Dict[str, Any] = Depends(authenticate)
):
    return Envelope.ok("profile updated", get_runtime().auth.update_profile(user, body.name))


# email mfa


@router.post("/auth/mfa/verify", tags=["mfa"])
async def verify_mfa(body: MfaVerifyRequest, request: Request, response: Response):
    result = await get_runtime().auth.verify_email_mfa(
        body.email, body.code, request_context(request)
    )
    return _signed_in(response, result, "MFA verification successful")


@router.post("/auth/mfa/enable", tags=["mfa"])
async def enable_mfa(user: Dict[str, Any] = Depends(authenticate)):
    return Envelope.ok("MFA enabled", get_runtime().auth.enable_email_mfa(user["id"]))


@router.post("/auth/mfa/disable", tags=["mfa"])
async def disable_mfa(user: Dict[str, Any] = Depends(authenticate)):
    return Envelope.ok("MFA disabled", get_runtime().auth.disable_email_mfa(user["id"]))


@router.get("/auth/mfa/status", tags=["mfa"])
async def mfa_status(user: Dict[str, Any] = Depends(authenticate)):
    return Envelope.ok("MFA status retrieved", get_runtime().auth.email_mfa_status(user["id"]))


# totp


@router.post("/auth/totp/setup", tags=["totp"])
async def totp_setup(user: Dict[str, Any] = Depends(authenticate)):
    data = get_runtime().mfa.setup_totp(_load_user(user))
    return Envelope.ok("TOTP setup initiated", data)


@router.post("/auth/totp/verify", tags=["totp"])
async def totp_verify(body: TotpVerifyRequest, user: Dict[str, Any] = Depends(authenticate)):
    data = await get_runtime().mfa.verify_and_enable_totp(_load_user(user), body.code)
    return Envelope.ok("TOTP enabled", data)


@router.post("/auth/totp/disable", tags=["totp"])
async def totp_disable(user: Dict[str, Any] = Depends(authenticate)):
    return Envelope.ok("TOTP disabled", get_runtime().mfa.disable_totp(_load_user(user)))


@router.get("/auth/totp/status", tags=["totp"])
async def totp_status(user: Dict[str, Any] = Depends(authenticate)):
    return Envelope.ok("TOTP status retrieved", get_runtime().mfa.totp_status(_load_user(user)))


@router.post("/auth/totp/login", tags=["totp"])
async def totp_login(body: TotpLoginRequest, request: Request, response: Response):
    result = await get_runtime().auth.verify_totp_login(
        body.email,
        body.code,
        is_backup_code=body.is_backup_code,
        context=request_context(request),
    )
    return _signed_in(response, result, "TOTP verification successful")


@router.post("/auth/totp/backup-codes", tags=["totp"])
async def regenerate_backup_codes(user: Dict[str, Any] = Depends(authenticate)):
    codes = get_runtime().mfa.regenerate_backup_codes(_load_user(user))
    return Envelope.ok("backup codes regenerated", {"backupCodes": codes})


@router.get("/auth/totp/backup-codes/download", tags=["totp"])
async def download_backup_codes(user: Dict[str, Any] = Depends(authenticate)):
    runtime = get_runtime()
    record = _load_user(user)
    codes = runtime.mfa.remaining_backup_codes(record)
    return PlainTextResponse(
        runtime.mfa.backup_codes_text(record, codes),
        headers={"Content-Disposition": f'attachment; filename="{BACKUP_CODES_FILENAME}"'},
    )


# passkeys


@router.post("/passkeys/register/options", tags=["passkeys"])
async def passkey_register_options(user: Dict[str, Any] = Depends(authenticate)):
    options = await get_runtime().passkeys.registration_options(_load_user(user))
    return Envelope.ok("registration options generated", options)


@router.post("/passkeys/register/verify", status_code=201, tags=["passkeys"])
async def passkey_register_verify(
    body: PasskeyRegisterVerifyRequest, user: Dict[str, Any] = Depends(authenticate)
):
    passkey = await get_runtime().passkeys.verify_registration(
        _load_user(user), body.credential, body.name
    )
    return Envelope.ok("passkey registered", passkey_to_dict(passkey), status_code=201)


@router.post("/passkeys/login/options", tags=["passkeys"])
async def passkey_login_options(body: Optional[PasskeyLoginOptionsRequest] = None):
    options = await get_runtime().passkeys.authentication_options(body.email if body else None)
    return Envelope.ok("authentication options generated", options)


@router.post("/passkeys/login/verify", tags=["passkeys"])
async def passkey_login_verify(
    body: PasskeyLoginVerifyRequest, request: Request, response: Response
):
    result = await get_runtime().auth.verify_passkey_login(
        body.credential, request_context(request)
    )
    return _signed_in(response, result, "passkey login successful")


@router.get("/passkeys", tags=["passkeys"])
async def list_passkeys(user: Dict[str, Any] = Depends(authenticate)):
    return Envelope.ok("passkeys retrieved", get_runtime().passkeys.list_passkeys(_load_user(user)))


@router.get("/passkeys/stats", tags=["passkeys"])
async def passkey_stats(user: Dict[str, Any] = Depends(authenticate)):
    return Envelope.ok(
        "passkey stats retrieved", get_runtime().passkeys.passkey_stats(_load_user(user))
    )


@router.get("/passkeys/{passkey_id}", tags=["passkeys"])
async def get_passkey(passkey_id: str, user: Dict[str, Any] = Depends(authenticate)):
    return Envelope.ok(
        "passkey retrieved", get_runtime().passkeys.get_passkey(_load_user(user), passkey_id)
    )


@router.patch("/passkeys/{passkey_id}", tags=["passkeys"])
async def rename_passkey(
    body: PasskeyRenameRequest,
    passkey_id: str,
    user: Dict[str, Any] = Depends(authenticate),
):
    data = get_runtime().passkeys.rename_passkey(_load_user(user), passkey_id, body.name)
    return Envelope.ok("passkey renamed", data)


@router.delete("/passkeys/{passkey_id}", tags=["passkeys"])
async def delete_passkey(passkey_id: str, user: Dict[str, Any] = Depends(authenticate)):
    get_runtime().passkeys.delete_passkey(_load_user(user), passkey_id)
    return Envelope.ok("passkey deleted")


@router.post("/passkeys/{passkey_id}/enable", tags=["passkeys"])
async def enable_passkey(passkey_id: str, user: Dict[str, Any] = Depends(authenticate)):
    data = get_runtime().passkeys.enable_passkey(_load_user(user), passkey_id)
    return Envelope.ok("passkey enabled", data)


@router.post("/passkeys/{passkey_id}/disable", tags=["passkeys"])
async def disable_passkey(passkey_id: str, user: Dict[str, Any] = Depends(authenticate)):
    data = get_runtime().passkeys.disable_passkey(_load_user(user), passkey_id)
    return Envelope.ok("passkey disabled", data)


# invitations


@router.get("/users/invitations", tags=["invitations"])
async def list_invitations(
    user: Dict[str, Any] = Depends(require_tenant_context),
    _: Dict[str, Any] = Depends(invitation_managers),
):
    invitations = get_runtime().invitations.list_for_tenant(user["selectedTenantId"])
    return Envelope.ok(
        "invitations retrieved", {"invitations": invitations, "total": len(invitations)}
    )


@router.post("/users/invitations", status_code=201, tags=["invitations"])
async def create_invitation(
    body: CreateInvitationRequest,
    request: Request,
    user: Dict[str, Any] = Depends(require_tenant_context),
    _: Dict[str, Any] = Depends(invitation_managers),
):
    runtime = get_runtime()
    issued = await runtime.invitations.create(
        user["id"], user["selectedTenantId"], body.email, body.name, body.role_id
    )
    runtime.audit.record_safely(
        "user.invited",
        actor_for(user),
        [{"type": "invitation", "id": issued.invitation.id}],
        tenant_id=user["selectedTenantId"],
        context=request_context(request),
        metadata={"roleId": body.role_id},
    )
    return Envelope.ok(
        "invitation sent", runtime.invitations.describe(issued.invitation), status_code=201
    )


@router.post("/users/invitations/verify", tags=["invitations"])
async def verify_invitation(body: InvitationTokenRequest):
    return Envelope.ok("invitation is valid", get_runtime().invitations.verify(body.token))


@router.post("/users/invitations/accept", tags=["invitations"])
async def accept_invitation(body: AcceptInvitationRequest):
    data = await get_runtime().invitations.accept(body.token, body.password)
    return Envelope.ok("invitation accepted", data)


@router.delete("/users/invitations/{invitation_id}", tags=["invitations"])
async def revoke_invitation(
    request: Request,
    invitation_id: str,
    user: Dict[str, Any] = Depends(require_tenant_context),
    _: Dict[str, Any] = Depends(invitation_managers),
):
    runtime = get_runtime()
    runtime.invitations.revoke(invitation_id, user["selectedTenantId"])
    runtime.audit.record_safely(
        "invitation.revoked",
        actor_for(user),
        [{"type": "invitation", "id": invitation_id}],
        tenant_id=user["selectedTenantId"],
        context=request_context(request),
    )
    return Envelope.ok("invitation revoked")


@router.post("/users/invitations/{invitation_id}/resend", tags=["invitations"])
async def resend_invitation(
    invitation_id: str,
    user: Dict[str, Any] = Depends(require_tenant_context),
    _: Dict[str, Any] = Depends(invitation_managers),
):
    runtime = get_runtime()
    issued = await runtime.invitations.resend(invitation_id, user["selectedTenantId"])
    return Envelope.ok("invitation resent", runtime.invitations.describe(issued.invitation))


# tenants


@router.post("/tenants", status_code=201, tags=["tenants"])
async def create_tenant(
    body: CreateTenantRequest,
    request: Request,
    user: Dict[str, Any] = Depends(superadmins),
):
    tenant = get_runtime().tenants.onboard(
        body.name,
        body.schema_name,
        actor=actor_for(user),
        context=request_context(request),
    )
    return Envelope.ok("tenant created", tenant_to_dict(tenant), status_code=201)


@router.post("/tenants/{tenant_id}/switch", tags=["tenants"])
async def switch_tenant(
    request: Request,
    response: Response,
    tenant_id: str,
    user: Dict[str, Any] = Depends(authenticate),
):
    result = await get_runtime().tenants.switch(
        user,
        tenant_id,
        refresh_token=request.cookies.get(REFRESH_COOKIE),
        access_token=presented_access_token(request),
        session_id=request.cookies.get(SESSION_COOKIE),
        context=request_context(request),
    )
    return _signed_in(response, result, "tenant switched")


@router.put(
    "/users/{user_id}/roles",
    tags=["users"],
    dependencies=[Depends(require_tenant_context)],
)
async def update_user_roles(
    body: UpdateUserRolesRequest,
    request: Request,
    user_id: str,
    user: Dict[str, Any] = Depends(role_managers),
):
    data = get_runtime().tenants.update_user_roles(
        user_id,
        user["selectedTenantId"],
        body.role_ids,
        actor=actor_for(user),
        context=request_context(request),
    )
    return Envelope.ok("user roles updated", data)
