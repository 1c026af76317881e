from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Path, Query, Request

from apitemplate.api.pagination import paginated_payload, parse_pagination
from apitemplate.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PermissionCreateRequest,
    PermissionResponse,
    PresenceResponse,
    RegisterRequest,
    RoleCreateRequest,
    RolePermissionsRequest,
    RoleResponse,
    RoleUpdateRequest,
    TokenRefreshRequest,
    UserResponse,
    UserRolesRequest,
    UserUpdateRequest,
)
from apitemplate.logging import get_logger
from apitemplate.service.auth import AuthContext
from apitemplate.service.i18n import negotiate_locale
from apitemplate.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Resolve the bearer access token into the caller's AuthContext."""
    runtime = get_runtime()
    ctx = runtime.auth.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "invalid or expired access token", status_code=401)
    return ctx


async def get_locale(accept_language: Optional[str] = Header(None)) -> str:
    return negotiate_locale(accept_language, get_runtime().translations)


def _ok(locale: str, key: str, data=None) -> Envelope:
    message = get_runtime().translations.translate(locale, key)
    return Envelope(status="ok", message=message, data=data)


# auth


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, locale: str = Depends(get_locale)):
    """Exchange email and password for an access/refresh token pair.

    Raises:
        401: If credentials are invalid
        500: If the refresh token or presence marker cannot be stored
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password)
    await runtime.auth.track_user_login(result.user.id)
    return _ok(
        locale,
        "login_success",
        AuthResponse(
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            token_type=result.tokens.token_type,
            user=UserResponse.from_model(result.user),
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest, locale: str = Depends(get_locale)):
    runtime = get_runtime()
    pair = await runtime.auth.refresh(body.refresh_token)
    return _ok(
        locale,
        "token_refreshed",
        AuthResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: LogoutRequest,
    authorization: Optional[str] = Header(None),
    locale: str = Depends(get_locale),
):
    """Revoke a refresh token. Idempotent.

    A valid bearer access token also clears the caller's presence marker.
    """
    runtime = get_runtime()
    await runtime.auth.logout(body.refresh_token)
    ctx = runtime.auth.authenticate(authorization)
    if ctx:
        await runtime.auth.track_user_logout(ctx.user_id)
    return _ok(locale, "logout_success")


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user), locale: str = Depends(get_locale)):
    user = get_runtime().auth.get_auth_user(principal.user_id)
    return _ok(locale, "user_found", UserResponse.from_model(user))


@router.post("/auth/presence", response_model=Envelope, tags=["presence"])
async def presence_heartbeat(
    principal: AuthContext = Depends(get_user), locale: str = Depends(get_locale)
):
    await get_runtime().auth.track_user_login(principal.user_id)
    return _ok(locale, "presence_online", PresenceResponse(user_id=principal.user_id, online=True))


@router.delete("/auth/presence", response_model=Envelope, tags=["presence"])
async def presence_clear(
    principal: AuthContext = Depends(get_user), locale: str = Depends(get_locale)
):
    await get_runtime().auth.track_user_logout(principal.user_id)
    return _ok(
        locale, "presence_offline", PresenceResponse(user_id=principal.user_id, online=False)
    )


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(
    body: PasswordResetRequest,
    background_tasks: BackgroundTasks,
    locale: str = Depends(get_locale),
):
    runtime = get_runtime()
    issued = await asyncio.to_thread(runtime.users.generate_reset_token, body.email)
    if issued:
        user, token = issued
        # Blocking SMTP runs after the response is sent
        background_tasks.add_task(runtime.email.send_password_reset, user.email, token, locale)
    # Always return success to prevent email enumeration
    return _ok(locale, "password_reset_request_success")


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, locale: str = Depends(get_locale)):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.users.reset_password, body.token, body.new_password)
    return _ok(locale, "password_reset_success")


# users


@router.post("/users/register", response_model=Envelope, status_code=201, tags=["users"])
async def register(body: RegisterRequest, locale: str = Depends(get_locale)):
    runtime = get_runtime()
    user = await asyncio.to_thread(
        runtime.users.create_user, body.name, body.email, body.password
    )
    return _ok(locale, "user_created", UserResponse.from_model(user))


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    request: Request,
    page: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    principal: AuthContext = Depends(get_user),
    locale: str = Depends(get_locale),
):
    runtime = get_runtime()
    params = parse_pagination(
        page,
        limit,
        default_limit=runtime.settings.default_page_size,
        max_limit=runtime.settings.max_page_size,
    )
    users, total = runtime.users.list_users(page=params.page, limit=params.limit)
    payload = paginated_payload(
        [UserResponse.from_model(u).model_dump(mode="json") for u in users],
        params=params,
        total=total,
        path=request.url.path,
        query=dict(request.query_params),
    )
    return _ok(locale, "user_list", payload)


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user_by_id(
    user_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_user),
    locale: str = Depends(get_locale),
):
    user = get_runtime().users.get_user(user_id)
    return _ok(locale, "user_retrieved", UserResponse.from_model(user))


@router.put("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    body: UserUpdateRequest,
    user_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_user),
    locale: str = Depends(get_locale),
):
    runtime = get_runtime()
    user = await asyncio.to_thread(
        runtime.users.update_user,
        user_id,
        name=body.name,
        email=body.email,
        password=body.password,
    )
    return _ok(locale, "user_updated", UserResponse.from_model(user))


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def delete_user(
    user_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_user),
    locale: str = Depends(get_locale),
):
    get_runtime().users.delete_user(user_id)
    return _ok(locale, "user_deleted")


@router.get("/users/{user_id}/online", response_model=Envelope, tags=["presence"])
async def user_online(
    user_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_user),
    locale: str = Depends(get_locale),
):
    online = await get_runtime().auth.is_user_online(user_id)
    return _ok(locale, "presence_status", PresenceResponse(user_id=user_id, online=online))


@router.get("/users/{user_id}/permissions", response_model=Envelope, tags=["users"])
async def user_permissions(
    user_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_user),
    locale: str = Depends(get_locale),
):
    permissions = get_runtime().users.get_permissions(user_id)
    return _ok(
        locale, "user_permissions", [PermissionResponse.from_model(p) for p in permissions]
    )


@router.put("/users/{user_id}/roles", response_model=Envelope, tags=["users"])
async def set_user_roles(
    body: UserRolesRequest,
    user_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_user),
    locale: str = Depends(get_locale),
):
    user = get_runtime().users.set_roles(user_id, body.role_ids)
    return _ok(locale, "user_roles_updated", UserResponse.from_model(user))


# roles


@router.get("/roles", response_model=Envelope, tags=["roles"])
async def list_roles(
    principal: AuthContext = Depends(get_user), locale: str = Depends(get_locale)
):
    roles = get_runtime().roles.list_roles()
    return _ok(locale, "role_list", [RoleResponse.from_model(r) for r in roles])


@router.post("/roles", response_model=Envelope, status_code=201, tags=["roles"])
async def create_role(
    body: RoleCreateRequest,
    principal: AuthContext = Depends(get_user),
    locale: str = Depends(get_locale),
):
    role = get_runtime().roles.create_role(body.name, body.permission_ids)
    return _ok(locale, "role_created", RoleResponse.from_model(role))


@router.get("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def get_role(
    role_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_user),
    locale: str = Depends(get_locale),
):
    role = get_runtime().roles.get_role(role_id)
    return _ok(locale, "role_retrieved", RoleResponse.from_model(role))


@router.put("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def update_role(
    body: RoleUpdateRequest,
    role_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_user),
    locale: str = Depends(get_locale),
):
    role = get_runtime().roles.update_role(role_id, body.name)
    return _ok(locale, "role_updated", RoleResponse.from_model(role))


@router.delete("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def delete_role(
    role_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_user),
    locale: str = Depends(get_locale),
):
    get_runtime().roles.delete_role(role_id)
    return _ok(locale, "role_deleted")


@router.get("/roles/{role_id}/permissions", response_model=Envelope, tags=["roles"])
async def role_permissions(
    role_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_user),
    locale: str = Depends(get_locale),
):
    permissions = get_runtime().roles.get_permissions(role_id)
    return _ok(
        locale, "role_permissions", [PermissionResponse.from_model(p) for p in permissions]
    )


@router.put("/roles/{role_id}/permissions", response_model=Envelope, tags=["roles"])
async def set_role_permissions(
    body: RolePermissionsRequest,
    role_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_user),
    locale: str = Depends(get_locale),
):
    role = get_runtime().roles.set_permissions(role_id, body.permission_ids)
    return _ok(locale, "role_permissions_updated", RoleResponse.from_model(role))


# permissions


@router.get("/permissions", response_model=Envelope, tags=["permissions"])
async def list_permissions(
    principal: AuthContext = Depends(get_user), locale: str = Depends(get_locale)
):
    permissions = get_runtime().roles.list_permissions()
    return _ok(
        locale, "permission_list", [PermissionResponse.from_model(p) for p in permissions]
    )


@router.post("/permissions", response_model=Envelope, status_code=201, tags=["permissions"])
async def create_permission(
    body: PermissionCreateRequest,
    principal: AuthContext = Depends(get_user),
    locale: str = Depends(get_locale),
):
    permission = get_runtime().roles.create_permission(body.name)
    return _ok(locale, "permission_created", PermissionResponse.from_model(permission))


@router.delete("/permissions/{permission_id}", response_model=Envelope, tags=["permissions"])
async def delete_permission(
    permission_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_user),
    locale: str = Depends(get_locale),
):
    get_runtime().roles.delete_permission(permission_id)
    return _ok(locale, "permission_deleted")
