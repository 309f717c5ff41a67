import secrets

from fastapi import Header

from listing_sync.core.config import settings
from listing_sync.core.errors import AuthenticationFailure, PermissionFailure


def _matches(provided: str | None, expected: str) -> bool:
    if not provided or not expected:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def require_internal_admin(x_internal_admin_key: str | None = Header(default=None)) -> None:
    if not _matches(x_internal_admin_key, settings.internal_admin_key):
        raise PermissionFailure("Internal admin key required")


async def require_cron_secret(
    x_cron_secret: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> None:
    provided = x_cron_secret
    if not provided and authorization and authorization.startswith("Bearer "):
        provided = authorization.removeprefix("Bearer ")
    if not _matches(provided, settings.cron_secret):
        raise AuthenticationFailure("Unauthorized")


async def require_webhook_secret(x_webhook_secret: str | None = Header(default=None)) -> None:
    if not _matches(x_webhook_secret, settings.webhook_secret):
        raise AuthenticationFailure("Invalid webhook secret")
