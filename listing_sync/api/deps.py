from functools import lru_cache

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from listing_sync.core.config import settings
from listing_sync.core.db import get_session_factory
from listing_sync.services.gateway import PropertyGateway
from listing_sync.services.orchestrator import OrchestratorOptions, SyncOrchestrator
from listing_sync.services.sync_sessions import SyncSessionStore
from listing_sync.services.upstream_config import get_active_rate_limit
from listing_sync.services.webhooks import ChangeNotificationReceiver
from listing_sync.upstream.client import ClientFactory, client_factory
from listing_sync.upstream.rate_limit import FixedWindowRateLimiter


@lru_cache(maxsize=1)
def get_rate_limiter() -> FixedWindowRateLimiter:
    # One upstream budget per process, shared by every client built here
    return FixedWindowRateLimiter(limit=settings.upstream_rate_limit_per_minute, window_seconds=60.0)


async def get_client_factory(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> ClientFactory:
    limiter = get_rate_limiter()
    # the stored config owns the upstream budget once one exists
    async with session_factory() as db:
        stored_limit = await get_active_rate_limit(db)
    if stored_limit:
        limiter.set_limit(stored_limit)
    return client_factory(limiter, timeout_seconds=settings.upstream_timeout_seconds)


@lru_cache(maxsize=8)
def build_gateway(session_factory: async_sessionmaker[AsyncSession]) -> PropertyGateway:
    # cached so the per-upstream-id locks are shared across requests
    return PropertyGateway(session_factory, language_id=settings.upstream_language_id)


def orchestrator_options() -> OrchestratorOptions:
    return OrchestratorOptions(
        batch_size=settings.sync_batch_size,
        batch_pause_seconds=settings.sync_batch_pause_seconds,
        fetch_max_attempts=settings.sync_fetch_max_attempts,
        max_pages=settings.sync_max_pages,
        run_deadline_seconds=settings.sync_run_deadline_seconds,
    )


def build_orchestrator(
    session_factory: async_sessionmaker[AsyncSession], clients: ClientFactory
) -> SyncOrchestrator:
    return SyncOrchestrator(
        gateway=build_gateway(session_factory),
        sessions=SyncSessionStore(session_factory),
        client_factory=clients,
        options=orchestrator_options(),
    )


def get_gateway(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> PropertyGateway:
    return build_gateway(session_factory)


def get_session_store(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> SyncSessionStore:
    return SyncSessionStore(session_factory)


def get_orchestrator(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    clients: ClientFactory = Depends(get_client_factory),
) -> SyncOrchestrator:
    return build_orchestrator(session_factory, clients)


def get_receiver(
    gateway: PropertyGateway = Depends(get_gateway),
    sessions: SyncSessionStore = Depends(get_session_store),
    clients: ClientFactory = Depends(get_client_factory),
) -> ChangeNotificationReceiver:
    return ChangeNotificationReceiver(gateway=gateway, sessions=sessions, client_factory=clients)
