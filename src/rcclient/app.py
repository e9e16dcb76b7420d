"""Composition root: builds every component once and owns their lifecycle."""

import asyncio
import contextlib
import time
from typing import Any

import requests
import structlog

from .config import Config
from .connectivity import ConnectivityMonitor
from .db.store import LocalStore, Predicate, Record
from .errors import StorageUnavailableError
from .events import EventBus
from .remote import RemoteApi
from .session import Principal, SessionGate, SessionStorage
from .sync import SyncEngine

logger = structlog.get_logger(__name__)


class Application:
    """The client core as seen by a UI.

    Example:
        async with Application(load_config()) as app:
            await app.sign_in("admin", "secret")
            app.store.put("clients", {...})
            await app.sync_now()
    """

    def __init__(self, config: Config | None = None, http: requests.Session | None = None):
        self.config = config or Config()
        cfg = self.config

        self.bus = EventBus()
        self.remote = RemoteApi(
            cfg.remote.base_url,
            session=http,
            push_timeout=cfg.remote.push_timeout,
            pull_timeout=cfg.remote.pull_timeout,
            verify=cfg.remote.verify_tls,
        )
        self.gate = SessionGate(
            self.remote,
            SessionStorage(cfg.session.storage_path),
            self.bus,
            storage_key=cfg.session.storage_key,
            lifetime_minutes=cfg.session.lifetime_minutes,
        )
        self.store = LocalStore(
            cfg.store.path,
            bus=self.bus,
            gate=self.gate,
            allow_fallback=cfg.store.allow_fallback,
            backlog_soft_limit=cfg.store.backlog_soft_limit,
            snapshot_dir=cfg.store.snapshot_directory,
            max_snapshots=cfg.store.max_snapshots,
        )
        self.monitor = ConnectivityMonitor(
            self.bus,
            debounce=cfg.connectivity.debounce,
            probe=self.remote.ping if cfg.connectivity.probe_enabled else None,
            probe_interval=cfg.connectivity.probe_interval,
        )
        self.engine = SyncEngine(
            self.store,
            self.remote,
            self.gate,
            self.monitor,
            self.bus,
            cfg.sync,
            page_size=cfg.remote.pull_page_size,
        )
        self._snapshot_task: asyncio.Task | None = None
        self._opened = False

    async def open(self, *, online: bool | None = None) -> "Application":
        """Open the store, restore the session and start syncing.

        Args:
            online: Initial connectivity. When None the server is probed
                (if probing is enabled), otherwise the client starts offline.
        """
        if self._opened:
            return self

        self.store.open()
        self.gate.restore()

        if online is None and self.config.connectivity.probe_enabled:
            online = await asyncio.to_thread(self.remote.ping)
        self.monitor.set_online(bool(online))

        self.monitor.start()
        self.engine.start()
        if self._snapshots_enabled():
            self._snapshot_if_due()
            self._snapshot_task = asyncio.create_task(self._snapshot_loop())
        self._opened = True
        logger.info(
            "application_opened",
            online=self.monitor.online,
            signed_in=self.gate.is_authenticated(),
            schema_version=self.store.schema_version,
            read_only=self.store.read_only,
        )
        self.engine.request_sync("startup")
        return self

    async def close(self) -> None:
        if not self._opened:
            return
        if self._snapshot_task is not None:
            self._snapshot_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._snapshot_task
            self._snapshot_task = None
        await self.engine.close()
        await self.monitor.close()
        self.store.close()
        self.remote.close()
        self._opened = False
        logger.info("application_closed")

    # Automatic snapshots

    def _snapshots_enabled(self) -> bool:
        return (
            self.store.snapshots is not None
            and not self.store.is_fallback()
            and self.config.store.snapshot_interval > 0
        )

    def _snapshot_if_due(self) -> None:
        """Take an "auto" snapshot when the newest one is older than the interval."""
        latest = self.store.snapshots.latest()
        interval = self.config.store.snapshot_interval
        if latest is not None and time.time() - latest.created_at.timestamp() < interval:
            return
        try:
            self.store.snapshots.create("auto")
        except StorageUnavailableError as exc:
            logger.warning("snapshot_failed", error=str(exc))

    async def _snapshot_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.store.snapshot_interval)
            self._snapshot_if_due()

    async def __aenter__(self) -> "Application":
        return await self.open()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # Observable state

    @property
    def principal(self) -> Principal | None:
        return self.gate.principal

    @property
    def online(self) -> bool:
        return self.monitor.online

    @property
    def pending_changes(self) -> int:
        return self.store.pending_count()

    @property
    def last_sync_at(self) -> int | None:
        return self.engine.last_sync_at

    @property
    def conflicts(self) -> list[Record]:
        return self.store.conflicts()

    def collection(
        self,
        entity: str,
        where: dict[str, Any] | None = None,
        predicate: Predicate | None = None,
        **kwargs: Any,
    ) -> list[Record]:
        """Live records of an entity, as the UI lists them."""
        return self.store.find(entity, where, predicate, **kwargs)

    # Commands

    async def sign_in(self, username: str, password: str) -> Principal:
        return await self.gate.sign_in(username, password)

    def sign_out(self) -> None:
        self.gate.sign_out()

    def report_connectivity(self, online: bool) -> None:
        """Host online/offline signal."""
        self.monitor.report(online)

    async def sync_now(self) -> bool:
        return await self.engine.sync_now("manual")

    async def resolve_conflict(self, entity: str, record_id: int, choice: str):
        return await self.engine.resolve_conflict(entity, record_id, choice)
