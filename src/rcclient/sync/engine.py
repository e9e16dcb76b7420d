"""Sync engine: reconciles the local journal with the server.

One cycle pulls server changes for every entity, then drains the journal
chain by chain in FIFO order. Cycles are single-flight: triggers that
arrive while a cycle runs collapse into exactly one follow-up cycle.
"""

import asyncio
import contextlib
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import structlog
from sqlalchemy.exc import IntegrityError

from .. import audit
from ..config import SyncConfig
from ..connectivity import ConnectivityMonitor
from ..db import journal
from ..db.store import LocalStore
from ..errors import (
    ConstraintError,
    ForbiddenError,
    RateLimitedError,
    RCClientError,
    RecordValidationError,
    RejectedError,
    StaleRecordError,
    TransientRemoteError,
    UnauthenticatedError,
)
from ..events import (
    CONFLICT,
    LOCAL_CHANGED,
    ONLINE,
    SIGNED_IN,
    SYNC_BACKLOG_HIGH,
    SYNC_COMPLETED,
    SYNC_FAILED,
    SYNC_PROGRESS,
    SYNC_STARTED,
    EventBus,
)
from ..logging import sync_context
from ..models import ENTITIES, EntitySpec, SyncStatus, get_entity, now_ms
from ..remote import RemoteApi
from ..session import SessionGate
from . import reconcile

logger = structlog.get_logger(__name__)

LAST_SYNC_KEY = "last_sync_at"
CURSOR_KEY = "cursor:{entity}"


class CycleAborted(Exception):
    """The current cycle cannot continue; its in-flight result is discarded."""


@dataclass
class CycleStats:
    reason: str
    pulled: int = 0
    pushed: int = 0
    failed: int = 0
    deferred: int = 0
    skipped: int = 0
    conflicts: list[dict[str, Any]] = field(default_factory=list)


class SyncEngine:
    """Drives pull/push cycles between the local store and the server."""

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteApi,
        gate: SessionGate,
        monitor: ConnectivityMonitor,
        bus: EventBus,
        config: SyncConfig | None = None,
        *,
        page_size: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._remote = remote
        self._gate = gate
        self._monitor = monitor
        self._bus = bus
        self._config = config or SyncConfig()
        self._page_size = page_size
        self._clock = clock
        self._running: asyncio.Task | None = None
        self._pending_reason: str | None = None
        self._tick_task: asyncio.Task | None = None
        self._unsubscribe: list[Callable[[], None]] = []
        self._retry_after_until = 0.0
        self._backlog_alerted = False
        self.last_sync_at: int | None = None
        self.last_error: str | None = None
        self.cycles = 0

    @property
    def is_running(self) -> bool:
        return self._running is not None and not self._running.done()

    @property
    def retry_after_until(self) -> float:
        """Epoch seconds until which the server asked us to stay away."""
        return self._retry_after_until

    def can_sync(self) -> bool:
        """Whether a cycle may start now."""
        return (
            self._monitor.online
            and not self._store.read_only
            and self._clock() >= self._retry_after_until
            and self._gate.is_authenticated()
        )

    # Lifecycle

    def start(self) -> None:
        """Subscribe to triggers and start the periodic tick. Requires a running loop."""
        stored = self._store.read_state(LAST_SYNC_KEY)
        self.last_sync_at = int(stored) if stored else None

        self._unsubscribe = [
            self._bus.subscribe(ONLINE, lambda event: self.request_sync("online")),
            self._bus.subscribe(SIGNED_IN, lambda event: self.request_sync("signed_in")),
            self._bus.subscribe(LOCAL_CHANGED, self._on_local_change),
        ]
        if self._tick_task is None:
            self._tick_task = asyncio.get_running_loop().create_task(self._tick_loop())
        self._check_backlog()

    async def close(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

        for task in (self._tick_task, self._running):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._tick_task = None
        self._running = None

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.tick_interval)
            self.request_sync("tick")

    def _on_local_change(self, event: dict[str, Any]) -> None:
        self._check_backlog()
        if self._monitor.online:
            self.request_sync("local_change")

    def _check_backlog(self) -> None:
        if self._store.read_only:
            return
        pending = self._store.pending_count()
        high = pending > self._store.backlog_soft_limit
        if high and not self._backlog_alerted:
            logger.warning("sync_backlog_high", pending=pending, limit=self._store.backlog_soft_limit)
            self._bus.publish(
                SYNC_BACKLOG_HIGH, {"pending": pending, "limit": self._store.backlog_soft_limit}
            )
        self._backlog_alerted = high

    # Triggers

    def request_sync(self, reason: str = "manual") -> bool:
        """Ask for a cycle.

        Returns:
            False if the engine is idle (offline, signed out, quarantined or
            rate limited) and the trigger was dropped.
        """
        if self.is_running:
            if self._pending_reason is None:
                self._pending_reason = reason
            return True
        if not self.can_sync():
            logger.debug("sync_skipped", reason=reason)
            return False
        self._running = asyncio.get_running_loop().create_task(self._run(reason))
        return True

    async def sync_now(self, reason: str = "manual") -> bool:
        """Trigger a cycle and wait until the engine is idle again."""
        accepted = self.request_sync(reason)
        await self.wait_idle()
        return accepted

    async def wait_idle(self) -> None:
        while self.is_running:
            await asyncio.wait({self._running})

    async def _run(self, reason: str) -> None:
        while True:
            self._pending_reason = None
            await self._cycle(reason)
            reason = self._pending_reason
            if reason is None or not self.can_sync():
                break
        self._pending_reason = None

    # Cycle

    async def _cycle(self, reason: str) -> None:
        self.cycles += 1
        with sync_context(cycle=self.cycles, reason=reason):
            await self._run_cycle(reason)

    async def _run_cycle(self, reason: str) -> None:
        generation = self._gate.generation
        stats = CycleStats(reason)
        logger.info("sync_started")
        self._bus.publish(SYNC_STARTED, {"reason": reason})

        try:
            await self._pull_all(generation, stats)
            await self._push_all(generation, stats)
        except CycleAborted as exc:
            self._fail(stats, str(exc))
            return
        except RCClientError as exc:
            # Store and remote errors end the cycle, never the engine
            self._fail(stats, str(exc))
            return

        self.last_sync_at = now_ms()
        self.last_error = None
        with self._store.begin() as conn:
            self._store.set_state(conn, LAST_SYNC_KEY, str(self.last_sync_at))
        pending = self._store.pending_count()

        logger.info(
            "sync_completed",
            reason=reason,
            pulled=stats.pulled,
            pushed=stats.pushed,
            pending=pending,
        )
        audit.log_sync_cycle(reason, stats.pulled, stats.pushed, pending)
        self._bus.publish(
            SYNC_COMPLETED,
            {
                "reason": reason,
                "pulled": stats.pulled,
                "pushed": stats.pushed,
                "failed": stats.failed,
                "pending": pending,
                "conflicts": len(stats.conflicts),
            },
        )
        self._check_backlog()

    def _fail(self, stats: CycleStats, error: str) -> None:
        self.last_error = error
        pending = self._store.pending_count()
        logger.warning("sync_failed", reason=stats.reason, error=error)
        audit.log_sync_cycle(stats.reason, stats.pulled, stats.pushed, pending, error=error)
        self._bus.publish(
            SYNC_FAILED,
            {
                "reason": stats.reason,
                "error": error,
                "pulled": stats.pulled,
                "pushed": stats.pushed,
                "pending": pending,
            },
        )

    def _headers(self) -> dict[str, str]:
        try:
            return self._gate.auth_header()
        except UnauthenticatedError as exc:
            raise CycleAborted("not signed in") from exc

    def _check_still_valid(self, generation: int) -> None:
        if self._gate.generation != generation:
            raise CycleAborted("session changed during sync")
        if not self._monitor.online and self._monitor.offline_for() > self._config.offline_grace:
            raise CycleAborted("connection lost during sync")

    async def _call(self, generation: int, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking remote call off the loop and validate its result."""
        try:
            result = await asyncio.to_thread(fn, *args)
        except UnauthenticatedError as exc:
            if self._gate.generation == generation:
                self._gate.expire("rejected")
            raise CycleAborted("session rejected by server") from exc
        except RateLimitedError as exc:
            self._retry_after_until = self._clock() + exc.retry_after
            raise CycleAborted(str(exc)) from exc
        self._check_still_valid(generation)
        return result

    # Pull

    async def _pull_all(self, generation: int, stats: CycleStats) -> None:
        for spec in ENTITIES.values():
            await self._pull_entity(spec, generation, stats)

    async def _pull_entity(self, spec: EntitySpec, generation: int, stats: CycleStats) -> None:
        key = CURSOR_KEY.format(entity=spec.name)
        cursor = self._store.read_state(key)

        while True:
            page = await self._call(
                generation, self._remote.pull, spec.path, cursor, self._page_size, self._headers()
            )
            conflicts: list[dict[str, Any]] = []
            with self._store.begin() as conn:
                for item in page.items:
                    self._apply_item(conn, spec, item, stats, conflicts)
                if page.next_cursor is not None:
                    cursor = str(page.next_cursor)
                    self._store.set_state(conn, key, cursor)
            for conflict in conflicts:
                self._emit_conflict(conflict, stats)

            if not page.has_more or page.next_cursor is None:
                break

    def _apply_item(
        self,
        conn: Any,
        spec: EntitySpec,
        item: dict[str, Any],
        stats: CycleStats,
        conflicts: list[dict[str, Any]],
    ) -> None:
        # One savepoint per item so a rejected item leaves the page intact
        try:
            with conn.begin_nested():
                outcome = reconcile.apply_remote(self._store, conn, spec, item)
        except RecordValidationError as exc:
            logger.warning("pull_item_invalid", entity=spec.name, id=item.get("id"), error=str(exc))
            stats.skipped += 1
            return
        except IntegrityError as exc:
            parked = reconcile.park_duplicate(self._store, conn, spec, item, str(exc.orig))
            if parked is None:
                logger.warning(
                    "pull_item_rejected", entity=spec.name, id=item.get("id"), error=str(exc.orig)
                )
                stats.skipped += 1
                return
            local_id, reason = parked
            conflicts.append({"entity": spec.name, "id": local_id, "reason": reason})
            return

        if outcome == reconcile.SKIPPED:
            return
        stats.pulled += 1
        if outcome == reconcile.CONFLICT:
            conflicts.append(
                {"entity": spec.name, "id": int(item["id"]), "reason": reconcile.DELETED_ON_SERVER}
            )

    # Push

    async def _push_all(self, generation: int, stats: CycleStats) -> None:
        with self._store.engine.connect() as conn:
            heads = journal.ready_heads(conn, now_ms())

        for head in heads:
            if not self._monitor.online:
                raise CycleAborted("offline, push interrupted")
            await self._push_chain(head.entity, head.local_id, generation, stats)

    async def _push_chain(self, entity: str, local_id: int, generation: int, stats: CycleStats) -> None:
        spec = get_entity(entity)
        rebased = False

        while True:
            with self._store.engine.connect() as conn:
                entries = journal.chain(conn, entity, local_id)
            if not entries:
                return
            entry = entries[0]
            if entry.suspended or entry.dispatched or entry.next_attempt_at > now_ms():
                return
            if self._blocked_by_parent(spec, entry):
                logger.debug("push_deferred", entity=entity, id=local_id)
                stats.deferred += 1
                return
            if not self._monitor.online:
                raise CycleAborted("offline, push interrupted")

            with self._store.begin() as conn:
                journal.mark_dispatched(conn, entry.id)

            try:
                response = await self._send(spec, entry, generation)
            except (CycleAborted, asyncio.CancelledError):
                self._release(entry)
                raise
            except StaleRecordError as exc:
                if rebased or entry.op == journal.CREATE:
                    self._suspend(spec, entry, "stale: server holds a newer version", exc.server_record, stats)
                    return
                rebased = True
                await self._rebase(spec, entry, exc, generation, stats)
                continue
            except (RejectedError, ForbiddenError) as exc:
                self._suspend(spec, entry, str(exc), None, stats)
                return
            except TransientRemoteError as exc:
                self._retry_later(entry, str(exc))
                stats.failed += 1
                return

            try:
                with self._store.begin() as conn:
                    local_id = reconcile.apply_ack(self._store, conn, spec, entry, response or {})
            except RCClientError:
                self._release(entry)
                raise
            stats.pushed += 1
            logger.debug("push_acknowledged", entity=entity, id=local_id, op=entry.op)
            self._bus.publish(
                SYNC_PROGRESS,
                {"entity": entity, "id": local_id, "op": entry.op, "pushed": stats.pushed},
            )

    async def _send(self, spec: EntitySpec, entry: journal.JournalEntry, generation: int) -> Any:
        headers = self._headers()
        if entry.op == journal.CREATE:
            return await self._call(generation, self._remote.create, spec.path, entry.payload, headers)
        if entry.op == journal.UPDATE:
            return await self._call(
                generation,
                self._remote.update,
                spec.path,
                entry.local_id,
                entry.payload,
                entry.base_version,
                headers,
            )
        await self._call(
            generation, self._remote.delete, spec.path, entry.local_id, entry.base_version, headers
        )
        return {}

    def _blocked_by_parent(self, spec: EntitySpec, entry: journal.JournalEntry) -> bool:
        """True while a referenced parent has not reached the server yet."""
        if entry.op == journal.DELETE or not entry.payload:
            return False
        with self._store.engine.connect() as conn:
            for parent, column in spec.references:
                parent_id = entry.payload.get(spec.alias(column))
                if parent_id is None:
                    continue
                parent_chain = journal.chain(conn, parent, parent_id)
                if parent_chain and parent_chain[0].op == journal.CREATE:
                    return True
        return False

    async def _rebase(
        self,
        spec: EntitySpec,
        entry: journal.JournalEntry,
        exc: StaleRecordError,
        generation: int,
        stats: CycleStats,
    ) -> None:
        """Merge the server's newer image into a stale entry before re-pushing."""
        image = exc.server_record
        if not isinstance(image, dict) or not any(spec.alias(f) in image for f in spec.fields):
            try:
                image = await self._call(
                    generation, self._remote.fetch, spec.path, entry.local_id, self._headers()
                )
            except (CycleAborted, asyncio.CancelledError):
                self._release(entry)
                raise
            except TransientRemoteError as fetch_error:
                self._retry_later(entry, str(fetch_error))
                stats.failed += 1
                return
            except (RejectedError, ForbiddenError, StaleRecordError) as fetch_error:
                self._suspend(spec, entry, f"refresh failed: {fetch_error}", None, stats)
                return

        if image is None:
            item: dict[str, Any] = {"id": entry.local_id, "deleted": True}
        else:
            item = {**image, "id": entry.local_id}
            if item.get("serverVersion") is None:
                item["serverVersion"] = exc.server_version

        try:
            with self._store.begin() as conn:
                journal.mark_dispatched(conn, entry.id, False)
                outcome = reconcile.apply_remote(self._store, conn, spec, item)
        except (RecordValidationError, ConstraintError) as invalid:
            self._suspend(spec, entry, f"invalid server image: {invalid}", None, stats)
            return
        logger.info("push_rebased", entity=spec.name, id=entry.local_id, outcome=outcome)
        if outcome == reconcile.CONFLICT:
            self._emit_conflict(
                {"entity": spec.name, "id": entry.local_id, "reason": reconcile.DELETED_ON_SERVER},
                stats,
            )

    def _release(self, entry: journal.JournalEntry) -> None:
        with self._store.begin() as conn:
            journal.mark_dispatched(conn, entry.id, False)

    def _retry_later(self, entry: journal.JournalEntry, error: str) -> None:
        delay = journal.backoff_delay(
            entry.attempts + 1, self._config.backoff_base, self._config.backoff_max
        )
        with self._store.begin() as conn:
            attempts = journal.mark_failed(conn, entry, error, now_ms() + int(delay * 1000))
        logger.warning(
            "push_failed",
            entity=entry.entity,
            id=entry.local_id,
            attempts=attempts,
            retry_in=delay,
            error=error,
        )

    def _suspend(
        self,
        spec: EntitySpec,
        entry: journal.JournalEntry,
        reason: str,
        server_record: dict[str, Any] | None,
        stats: CycleStats,
    ) -> None:
        image = None
        if isinstance(server_record, dict) and entry.op != journal.CREATE:
            image = {**server_record, "id": entry.local_id}
        with self._store.begin() as conn:
            journal.suspend(conn, entry, reason, image)
            self._store.update_row(
                conn, spec.name, entry.local_id, {"sync_status": SyncStatus.CONFLICT}
            )
        self._emit_conflict({"entity": spec.name, "id": entry.local_id, "reason": reason}, stats)

    def _emit_conflict(self, conflict: dict[str, Any], stats: CycleStats) -> None:
        stats.conflicts.append(conflict)
        logger.warning("sync_conflict", **conflict)
        audit.log_conflict(conflict["entity"], conflict["id"], conflict["reason"])
        self._bus.publish(CONFLICT, dict(conflict))

    # Conflicts

    async def resolve_conflict(self, entity: str, record_id: int, choice: str) -> SyncStatus | None:
        """Apply the user's choice (``keepLocal`` or ``acceptServer``) to a conflict.

        Returns:
            The record's new sync status, or None if the record was removed.
        """
        spec = get_entity(entity)
        self._gate.require_permission(spec.manage_permission)
        if self.is_running:
            await self.wait_idle()

        with self._store.begin() as conn:
            status = reconcile.resolve(self._store, conn, spec, record_id, choice)

        principal = self._gate.principal
        audit.log_conflict_resolved(
            entity, record_id, choice, principal.username if principal else None
        )
        logger.info("conflict_resolved", entity=entity, id=record_id, choice=choice)
        if status not in (None, SyncStatus.SYNCED):
            self.request_sync("conflict_resolved")
        return status
