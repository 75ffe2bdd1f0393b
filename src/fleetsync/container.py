"""Explicit wiring of the sync stack. One Services bundle per process."""
from dataclasses import dataclass
from typing import Optional

import httpx

from fleetsync.config import Settings, get_settings
from fleetsync.db.store import LocalStore
from fleetsync.risex.auth import TokenManager
from fleetsync.risex.client import RiseXClient
from fleetsync.risex.sync_service import RiseXSyncService
from fleetsync.risex.vault import TokenVault
from fleetsync.scheduler.trigger import SyncTrigger


@dataclass
class Services:
    settings: Settings
    engine: object
    store: LocalStore
    client: RiseXClient
    token_manager: TokenManager
    sync_service: RiseXSyncService
    trigger: SyncTrigger


def build_services(
    engine=None,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Services:
    """
    Build every service from settings.

    Args:
        engine: SQLAlchemy engine; defaults to fleetsync.db.engine.get_engine().
        settings: Defaults to the cached get_settings().
        transport: Optional httpx transport for the upstream client (tests).
    """
    settings = settings or get_settings()
    if engine is None:
        from fleetsync.db.engine import get_engine
        engine = get_engine()

    client = RiseXClient(
        api_base_url=settings.risex_api_base_url,
        account_base_url=settings.risex_account_base_url,
        client_id=settings.risex_client_id,
        timeout=settings.http_timeout_seconds,
        transport=transport,
    )
    vault = TokenVault.from_setting(settings.token_encryption_key)
    store = LocalStore(engine)
    token_manager = TokenManager(engine, vault, client)
    sync_service = RiseXSyncService(token_manager, client, store, settings)
    trigger = SyncTrigger(
        sync_service, token_manager, cooldown_minutes=settings.sync_cooldown_minutes
    )
    return Services(
        settings=settings,
        engine=engine,
        store=store,
        client=client,
        token_manager=token_manager,
        sync_service=sync_service,
        trigger=trigger,
    )
