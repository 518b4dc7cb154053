import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from fastapi.security.utils import get_authorization_scheme_param

from xerosync.infra.logging import update_log_context
from xerosync.settings import settings

logger = logging.getLogger(__name__)


class AdminAuthException(HTTPException):
    def __init__(self, *, reason: str, detail: str = "Invalid authentication") -> None:
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Basic"},
        )
        self.reason = reason


class AdminRole(str, Enum):
    ADMIN = "admin"
    FINANCE = "finance"
    VIEWER = "viewer"


class AdminPermission(str, Enum):
    VIEW = "view"
    FINANCE = "finance"
    ADMIN = "admin"


ROLE_PERMISSIONS: dict[AdminRole, set[AdminPermission]] = {
    AdminRole.ADMIN: {AdminPermission.VIEW, AdminPermission.FINANCE, AdminPermission.ADMIN},
    AdminRole.FINANCE: {AdminPermission.VIEW, AdminPermission.FINANCE},
    AdminRole.VIEWER: {AdminPermission.VIEW},
}


@dataclass
class AdminIdentity:
    username: str
    role: AdminRole
    auth_method: str | None = None


@dataclass
class _ConfiguredUser:
    username: str
    password: str
    role: AdminRole


security = HTTPBasic(auto_error=False)


def _resolve_settings(request: Request):
    return getattr(request.app.state, "app_settings", None) or settings


def _configured_users(app_settings) -> list[_ConfiguredUser]:
    configured: list[_ConfiguredUser] = []
    for username, password, role in (
        (app_settings.admin_basic_username, app_settings.admin_basic_password, AdminRole.ADMIN),
        (app_settings.accountant_basic_username, app_settings.accountant_basic_password, AdminRole.FINANCE),
        (app_settings.viewer_basic_username, app_settings.viewer_basic_password, AdminRole.VIEWER),
    ):
        if username and password:
            configured.append(_ConfiguredUser(username=username, password=password, role=role))
    return configured


def _log_admin_auth_failure(request: Request, *, reason: str, credentials: HTTPBasicCredentials | None) -> None:
    authorization_header = request.headers.get("Authorization")
    scheme, _ = get_authorization_scheme_param(authorization_header)
    payload = {
        "reason": reason,
        "path": request.url.path,
        "method": request.method,
        "has_authorization_header": authorization_header is not None,
        "auth_scheme": scheme.lower() if scheme else None,
    }
    if credentials and credentials.username:
        payload["presented_username"] = credentials.username
    logger.warning("admin_auth_failed", extra={"extra": payload})


def _authenticate_credentials(app_settings, credentials: HTTPBasicCredentials | None) -> AdminIdentity:
    configured = _configured_users(app_settings)
    if not configured:
        logger.warning(
            "admin_auth_unconfigured",
            extra={
                "extra": {
                    "admin_configured": bool(app_settings.admin_basic_username and app_settings.admin_basic_password),
                    "accountant_configured": bool(
                        app_settings.accountant_basic_username and app_settings.accountant_basic_password
                    ),
                    "viewer_configured": bool(app_settings.viewer_basic_username and app_settings.viewer_basic_password),
                }
            },
        )
        raise AdminAuthException(reason="unconfigured_credentials")
    if not credentials:
        raise AdminAuthException(reason="missing_credentials")

    for user in configured:
        if secrets.compare_digest(credentials.username, user.username) and secrets.compare_digest(
            credentials.password, user.password
        ):
            return AdminIdentity(username=user.username, role=user.role, auth_method="basic")

    raise AdminAuthException(reason="invalid_credentials")


def _assert_permissions(identity: AdminIdentity, required: Iterable[AdminPermission]) -> None:
    granted = ROLE_PERMISSIONS.get(identity.role, set())
    missing = set(required) - granted
    if missing:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


async def get_admin_identity(
    request: Request, credentials: HTTPBasicCredentials | None = Depends(security)
) -> AdminIdentity:
    cached: AdminIdentity | None = getattr(request.state, "admin_identity", None)
    if cached:
        return cached
    try:
        identity = _authenticate_credentials(_resolve_settings(request), credentials)
    except AdminAuthException as exc:
        _log_admin_auth_failure(request, reason=exc.reason, credentials=credentials)
        raise
    request.state.admin_identity = identity
    update_log_context(role=identity.role.value, admin_user=identity.username)
    return identity


def require_permissions(*permissions: AdminPermission):
    async def _require(identity: AdminIdentity = Depends(get_admin_identity)) -> AdminIdentity:
        _assert_permissions(identity, permissions or [AdminPermission.VIEW])
        return identity

    return _require


async def require_admin(identity: AdminIdentity = Depends(require_permissions(AdminPermission.ADMIN))) -> AdminIdentity:
    return identity


async def require_finance(
    identity: AdminIdentity = Depends(require_permissions(AdminPermission.FINANCE)),
) -> AdminIdentity:
    return identity


async def require_viewer(
    identity: AdminIdentity = Depends(require_permissions(AdminPermission.VIEW)),
) -> AdminIdentity:
    return identity
