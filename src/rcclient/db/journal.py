"""Sync journal: durable log of local mutations awaiting server acknowledgement.

Entries form chains keyed by (entity, local_id) that are drained strictly
FIFO. All functions take an open connection so callers can write the
journal in the same transaction as the record they describe.
"""

from dataclasses import dataclass
from typing import Any, Iterable

from sqlalchemy import delete, func, select, update
from sqlalchemy.engine import Connection

from ..models import SyncStatus, children_of, now_ms
from .tables import sync_journal

CREATE = "create"
UPDATE = "update"
DELETE = "delete"


@dataclass
class JournalEntry:
    """Sync journal entry."""

    id: int
    entity: str
    local_id: int
    op: str
    payload: dict[str, Any] | None
    changed_fields: list[str]
    base_version: int | None
    server_payload: dict[str, Any] | None
    attempts: int
    last_error: str | None
    enqueued_at: int
    next_attempt_at: int
    dispatched: bool
    suspended: bool


def _row_to_entry(row: Any) -> JournalEntry:
    values = dict(row._mapping)
    values["changed_fields"] = values["changed_fields"] or []
    values["dispatched"] = bool(values["dispatched"])
    values["suspended"] = bool(values["suspended"])
    return JournalEntry(**values)


def backoff_delay(attempts: int, base: float, maximum: float) -> float:
    """Exponential retry delay in seconds, capped at ``maximum``."""
    if attempts <= 0:
        return 0.0
    return min(base * 2 ** (attempts - 1), maximum)


def status_for(entries: Iterable[JournalEntry]) -> SyncStatus:
    """The sync status a record must carry given its remaining chain."""
    entries = list(entries)
    if not entries:
        return SyncStatus.SYNCED
    if any(e.suspended for e in entries):
        return SyncStatus.CONFLICT
    if any(e.op == DELETE for e in entries):
        return SyncStatus.PENDING_DELETE
    if entries[0].op == CREATE:
        return SyncStatus.PENDING_CREATE
    return SyncStatus.PENDING_UPDATE


def get_entry(conn: Connection, entry_id: int) -> JournalEntry | None:
    row = conn.execute(select(sync_journal).where(sync_journal.c.id == entry_id)).first()
    return _row_to_entry(row) if row else None


def chain(conn: Connection, entity: str, local_id: int) -> list[JournalEntry]:
    """All entries for one record, oldest first."""
    stmt = (
        select(sync_journal)
        .where(sync_journal.c.entity == entity, sync_journal.c.local_id == local_id)
        .order_by(sync_journal.c.id)
    )
    return [_row_to_entry(row) for row in conn.execute(stmt)]


def count(conn: Connection, suspended: bool | None = None) -> int:
    stmt = select(func.count()).select_from(sync_journal)
    if suspended is not None:
        stmt = stmt.where(sync_journal.c.suspended == suspended)
    return conn.execute(stmt).scalar_one()


def suspended_entries(conn: Connection) -> list[JournalEntry]:
    stmt = select(sync_journal).where(sync_journal.c.suspended.is_(True)).order_by(sync_journal.c.id)
    return [_row_to_entry(row) for row in conn.execute(stmt)]


def ready_heads(conn: Connection, now: int | None = None) -> list[JournalEntry]:
    """Oldest entry of every chain that may be sent now, in FIFO order.

    Chains whose head is suspended, in backoff or already dispatched are
    left out entirely: later entries in the same chain must wait.
    """
    now = now_ms() if now is None else now
    heads = (
        select(func.min(sync_journal.c.id))
        .group_by(sync_journal.c.entity, sync_journal.c.local_id)
        .scalar_subquery()
    )
    stmt = (
        select(sync_journal)
        .where(
            sync_journal.c.id.in_(heads),
            sync_journal.c.suspended.is_(False),
            sync_journal.c.dispatched.is_(False),
            sync_journal.c.next_attempt_at <= now,
        )
        .order_by(sync_journal.c.id)
    )
    return [_row_to_entry(row) for row in conn.execute(stmt)]


def append(
    conn: Connection,
    entity: str,
    local_id: int,
    op: str,
    payload: dict[str, Any] | None,
    *,
    changed_fields: Iterable[str] = (),
    base_version: int | None = None,
    server_payload: dict[str, Any] | None = None,
    now: int | None = None,
) -> int:
    """Append an entry to the end of a chain."""
    result = conn.execute(
        sync_journal.insert().values(
            entity=entity,
            local_id=local_id,
            op=op,
            payload=payload,
            changed_fields=sorted(changed_fields),
            base_version=base_version,
            server_payload=server_payload,
            enqueued_at=now_ms() if now is None else now,
            next_attempt_at=0,
        )
    )
    return result.inserted_primary_key[0]


def record_create(conn: Connection, entity: str, local_id: int, payload: dict[str, Any], now: int | None = None) -> int:
    return append(conn, entity, local_id, CREATE, payload, now=now)


def record_update(
    conn: Connection,
    entity: str,
    local_id: int,
    payload: dict[str, Any],
    changed_fields: Iterable[str],
    base_version: int | None,
    server_image: dict[str, Any] | None,
    now: int | None = None,
) -> None:
    """Record an update, folding it into the newest entry when still unsent.

    A pending create or update that has not been dispatched absorbs the new
    post-image, so several offline edits reach the server as one request.
    """
    entries = chain(conn, entity, local_id)
    last = entries[-1] if entries else None

    if last is not None and not last.dispatched and last.op in (CREATE, UPDATE):
        merged = sorted(set(last.changed_fields) | set(changed_fields))
        conn.execute(
            update(sync_journal)
            .where(sync_journal.c.id == last.id)
            .values(payload=payload, changed_fields=merged)
        )
        return

    # Carry the last known server image along the chain
    if entries:
        server_image = entries[0].server_payload or server_image
    append(
        conn,
        entity,
        local_id,
        UPDATE,
        payload,
        changed_fields=changed_fields,
        base_version=base_version,
        server_payload=server_image,
        now=now,
    )


def record_delete(
    conn: Connection,
    entity: str,
    local_id: int,
    base_version: int | None,
    server_image: dict[str, Any] | None,
    now: int | None = None,
) -> bool:
    """Record a delete.

    Returns:
        True if the record never reached the server and must be erased
        outright. The chain has already been cancelled in that case.
    """
    entries = chain(conn, entity, local_id)

    if entries and entries[0].op == CREATE and not entries[0].dispatched:
        drop_chain(conn, entity, local_id)
        return True

    if entries:
        server_image = entries[0].server_payload or server_image
    undispatched = [e.id for e in entries if not e.dispatched]
    if undispatched:
        conn.execute(delete(sync_journal).where(sync_journal.c.id.in_(undispatched)))
    append(
        conn,
        entity,
        local_id,
        DELETE,
        None,
        base_version=base_version,
        server_payload=server_image,
        now=now,
    )
    return False


def drop_chain(conn: Connection, entity: str, local_id: int) -> None:
    conn.execute(
        delete(sync_journal).where(
            sync_journal.c.entity == entity, sync_journal.c.local_id == local_id
        )
    )


def acknowledge(conn: Connection, entry_id: int) -> None:
    """Drop an entry the server has applied."""
    conn.execute(delete(sync_journal).where(sync_journal.c.id == entry_id))


def mark_dispatched(conn: Connection, entry_id: int, dispatched: bool = True) -> None:
    conn.execute(
        update(sync_journal).where(sync_journal.c.id == entry_id).values(dispatched=dispatched)
    )


def reset_dispatched(conn: Connection) -> int:
    """Clear in-flight markers left behind by an interrupted cycle."""
    result = conn.execute(
        update(sync_journal).where(sync_journal.c.dispatched.is_(True)).values(dispatched=False)
    )
    return result.rowcount


def mark_failed(conn: Connection, entry: JournalEntry, error: str, retry_at: int) -> int:
    """Record a failed attempt and schedule the next one. Returns attempts so far."""
    attempts = entry.attempts + 1
    conn.execute(
        update(sync_journal)
        .where(sync_journal.c.id == entry.id)
        .values(
            attempts=attempts,
            last_error=error,
            next_attempt_at=retry_at,
            dispatched=False,
        )
    )
    return attempts


def defer(conn: Connection, entry_id: int, retry_at: int, error: str | None = None) -> None:
    """Postpone an entry without counting an attempt (rate limiting)."""
    values: dict[str, Any] = {"next_attempt_at": retry_at, "dispatched": False}
    if error is not None:
        values["last_error"] = error
    conn.execute(update(sync_journal).where(sync_journal.c.id == entry_id).values(**values))


def suspend(
    conn: Connection,
    entry: JournalEntry,
    reason: str,
    server_payload: dict[str, Any] | None = None,
) -> None:
    """Park an entry until the user resolves the conflict."""
    values: dict[str, Any] = {
        "suspended": True,
        "dispatched": False,
        "last_error": reason,
        "attempts": entry.attempts + 1,
    }
    if server_payload is not None:
        values["server_payload"] = server_payload
    conn.execute(update(sync_journal).where(sync_journal.c.id == entry.id).values(**values))


def resume(conn: Connection, entity: str, local_id: int, base_version: int | None) -> None:
    """Release a suspended chain for another push against ``base_version``."""
    conn.execute(
        update(sync_journal)
        .where(sync_journal.c.entity == entity, sync_journal.c.local_id == local_id)
        .values(
            suspended=False,
            attempts=0,
            last_error=None,
            next_attempt_at=0,
            base_version=base_version,
        )
    )


def refresh_pending(
    conn: Connection,
    entity: str,
    local_id: int,
    payload: dict[str, Any] | None,
    base_version: int | None,
    server_payload: dict[str, Any] | None,
) -> None:
    """Rebase undispatched entries of a chain onto a newer server image."""
    for entry in chain(conn, entity, local_id):
        if entry.dispatched:
            continue
        values: dict[str, Any] = {"base_version": base_version, "server_payload": server_payload}
        # Deletes carry no payload
        if payload is not None and entry.op != DELETE:
            values["payload"] = payload
        conn.execute(update(sync_journal).where(sync_journal.c.id == entry.id).values(**values))


def rekey(conn: Connection, entity: str, old_id: int, new_id: int) -> None:
    """Move a chain to a new local id and rewrite child payload references."""
    conn.execute(
        update(sync_journal)
        .where(sync_journal.c.entity == entity, sync_journal.c.local_id == old_id)
        .values(local_id=new_id)
    )

    for child, column in children_of(entity):
        key = child.alias(column)
        stmt = select(sync_journal.c.id, sync_journal.c.payload).where(
            sync_journal.c.entity == child.name, sync_journal.c.payload.isnot(None)
        )
        for entry_id, payload in conn.execute(stmt).fetchall():
            if payload and payload.get(key) == old_id:
                conn.execute(
                    update(sync_journal)
                    .where(sync_journal.c.id == entry_id)
                    .values(payload={**payload, key: new_id})
                )
