from __future__ import annotations

import logging
from dataclasses import dataclass

from cryptography.fernet import InvalidToken
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from listing_sync.core.config import settings
from listing_sync.core.crypto import decrypt_json, encrypt_json
from listing_sync.core.errors import ConfigurationFailure
from listing_sync.models.upstream_config import UpstreamConfig

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActiveUpstreamConfig:
    id: str
    auth_token: str
    api_base_url: str
    rate_limit_per_minute: int
    polling_interval_minutes: int


async def get_active_config(db: AsyncSession) -> ActiveUpstreamConfig | None:
    row = (await db.execute(
        select(UpstreamConfig)
        .where(UpstreamConfig.is_active.is_(True))
        .order_by(UpstreamConfig.updated_at.desc())
        .limit(1)
    )).scalar_one_or_none()
    if not row:
        return None

    try:
        secret = decrypt_json(row.auth_token_ciphertext)
    except InvalidToken as e:
        raise ConfigurationFailure("Stored upstream token cannot be decrypted with the configured key") from e

    return ActiveUpstreamConfig(
        id=row.id,
        auth_token=str(secret.get("auth_token") or ""),
        api_base_url=row.api_base_url,
        rate_limit_per_minute=row.rate_limit_per_minute,
        polling_interval_minutes=row.polling_interval_minutes,
    )


async def get_active_rate_limit(db: AsyncSession) -> int | None:
    # read without decrypting the token, so a rotated key never blocks throttling
    return (await db.execute(
        select(UpstreamConfig.rate_limit_per_minute)
        .where(UpstreamConfig.is_active.is_(True))
        .order_by(UpstreamConfig.updated_at.desc())
        .limit(1)
    )).scalar_one_or_none()


async def save_config(
    db: AsyncSession,
    *,
    auth_token: str,
    api_base_url: str | None = None,
    rate_limit_per_minute: int | None = None,
    polling_interval_minutes: int | None = None,
    actor: str = "api",
) -> UpstreamConfig:
    """Store the token encrypted and make this the only active config. Caller commits."""
    if not auth_token:
        raise ConfigurationFailure("auth_token is required")

    await db.execute(
        update(UpstreamConfig).where(UpstreamConfig.is_active.is_(True)).values(is_active=False, updated_by=actor)
    )
    row = UpstreamConfig(
        auth_token_ciphertext=encrypt_json({"auth_token": auth_token}),
        api_base_url=api_base_url or settings.upstream_base_url,
        rate_limit_per_minute=rate_limit_per_minute or settings.upstream_rate_limit_per_minute,
        polling_interval_minutes=polling_interval_minutes or settings.sync_poll_minutes,
        is_active=True,
        created_by=actor,
        updated_by=actor,
    )
    db.add(row)
    await db.flush()
    log.info("upstream config %s activated by %s", row.id, actor)
    return row
