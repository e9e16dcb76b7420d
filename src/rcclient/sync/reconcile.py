"""Applying server state to the local store.

All functions run inside a transaction opened by the caller and never
talk to the network.
"""

import re
from typing import Any

from sqlalchemy.engine import Connection

from ..db import journal
from ..db.store import LocalStore
from ..errors import RecordValidationError
from ..models import EntitySpec, SyncStatus, now_ms, to_epoch_ms

KEEP_LOCAL = "keepLocal"
ACCEPT_SERVER = "acceptServer"

# apply_remote outcomes
INSERTED = "inserted"
UPDATED = "updated"
MERGED = "merged"
REBASED = "rebased"
DELETED = "deleted"
SKIPPED = "skipped"
CONFLICT = "conflict"

DELETED_ON_SERVER = "deleted on server"

# "UNIQUE constraint failed: clients.email, clients.tax_id"
_UNIQUE_COLUMNS_RE = re.compile(r"(\w+)\.(\w+)")


def _ms(value: Any, default: int) -> int:
    converted = to_epoch_ms(value) if value is not None else None
    return converted if isinstance(converted, int) and not isinstance(converted, bool) else default


def wire_image(spec: EntitySpec, values: dict[str, Any], record_id: int, version: int | None) -> dict[str, Any]:
    return {**spec.to_wire(values), "id": record_id, "serverVersion": version}


def merge_fields(
    spec: EntitySpec,
    local: dict[str, Any],
    server: dict[str, Any],
    touched: set[str],
) -> dict[str, Any]:
    """Field-level merge: local values for touched fields, server values otherwise."""
    return {
        field: local[field] if field in touched and field in local else server[field]
        for field in spec.fields
        if field in server
    }


def _item_id(spec: EntitySpec, item: dict[str, Any]) -> int:
    raw = item.get("id")
    if raw is None:
        raise RecordValidationError(spec.name, "server item without id")
    if isinstance(raw, bool):
        raise RecordValidationError(spec.name, f"server item id {raw!r} is not an integer")
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise RecordValidationError(spec.name, f"server item id {raw!r} is not an integer") from exc


def apply_remote(store: LocalStore, conn: Connection, spec: EntitySpec, item: dict[str, Any]) -> str:
    """Apply one server delta to the local store.

    Synced rows take the server image as is. Rows with pending local
    changes are merged field by field and their journal entries rebased
    on the new server version.

    Raises:
        RecordValidationError: The server item is malformed.
    """
    record_id = _item_id(spec, item)
    row = store.fetch_row(conn, spec.name, record_id)

    if item.get("deleted"):
        return _apply_remote_delete(store, conn, spec, record_id, row)

    values = spec.from_wire(item)
    version = item.get("serverVersion")

    if row is not None and row["sync_status"] == SyncStatus.PENDING_CREATE:
        # A local-only record is sitting on the server's id
        store.relocate(conn, spec.name, record_id)
        row = None

    now = now_ms()
    if row is None:
        created = _ms(item.get("createdAt"), now)
        store.insert_row(
            conn,
            spec.name,
            {
                **values,
                "id": record_id,
                "server_version": version,
                "sync_status": SyncStatus.SYNCED,
                "created_at": created,
                "updated_at": max(_ms(item.get("updatedAt"), now), created),
            },
        )
        return INSERTED

    if row["server_version"] is not None and version is not None and version <= row["server_version"]:
        return SKIPPED

    status = row["sync_status"]
    updated_at = max(now, row["created_at"])
    image = wire_image(spec, values, record_id, version)

    if status == SyncStatus.SYNCED:
        store.update_row(
            conn,
            spec.name,
            record_id,
            {**values, "server_version": version, "updated_at": updated_at},
        )
        return UPDATED

    if status == SyncStatus.PENDING_DELETE:
        # The local delete still wins, it just targets the newer version
        journal.refresh_pending(conn, spec.name, record_id, None, version, image)
        store.update_row(conn, spec.name, record_id, {"server_version": version})
        return REBASED

    entries = journal.chain(conn, spec.name, record_id)
    touched = set().union(*(set(e.changed_fields) for e in entries)) if entries else set()
    merged = merge_fields(spec, row, values, touched)
    store.update_row(
        conn,
        spec.name,
        record_id,
        {**merged, "server_version": version, "updated_at": updated_at},
    )
    journal.refresh_pending(
        conn, spec.name, record_id, spec.to_wire({**row, **merged}), version, image
    )
    return MERGED


def _apply_remote_delete(
    store: LocalStore,
    conn: Connection,
    spec: EntitySpec,
    record_id: int,
    row: dict[str, Any] | None,
) -> str:
    if row is None or row["sync_status"] == SyncStatus.PENDING_CREATE:
        return SKIPPED

    if row["sync_status"] in (SyncStatus.SYNCED, SyncStatus.PENDING_DELETE):
        store.delete_row(conn, spec.name, record_id)
        journal.drop_chain(conn, spec.name, record_id)
        return DELETED

    # Edited locally, deleted remotely: the user decides
    entries = journal.chain(conn, spec.name, record_id)
    journal.suspend(conn, entries[0], DELETED_ON_SERVER, {"id": record_id, "deleted": True})
    store.update_row(conn, spec.name, record_id, {"sync_status": SyncStatus.CONFLICT})
    return CONFLICT


def park_duplicate(
    store: LocalStore,
    conn: Connection,
    spec: EntitySpec,
    item: dict[str, Any],
    message: str,
) -> tuple[int, str] | None:
    """Put the local record blocking a server item on a unique column in conflict.

    The server item becomes the conflict's server image, so acceptServer
    replaces the local record with it.

    Args:
        message: The database error naming the violated columns.

    Returns:
        (local id, reason) of the parked record, or None when no local
        change holds the value and the item can only be skipped.
    """
    if "UNIQUE" not in message.upper():
        return None
    record_id = _item_id(spec, item)
    values = spec.from_wire(item)
    failed = message.split("failed:", 1)[-1]
    columns = [c for table, c in _UNIQUE_COLUMNS_RE.findall(failed) if table == spec.name]

    for column in columns:
        if values.get(column) is None:
            continue
        for row in store.rows_where(conn, spec.name, column, values[column]):
            if row["id"] == record_id or row["sync_status"] == SyncStatus.SYNCED:
                continue
            entries = journal.chain(conn, spec.name, row["id"])
            if not entries:
                continue
            reason = f"duplicate {column} of server record {record_id}"
            image = wire_image(spec, values, record_id, item.get("serverVersion"))
            journal.suspend(conn, entries[0], reason, image)
            store.update_row(conn, spec.name, row["id"], {"sync_status": SyncStatus.CONFLICT})
            return row["id"], reason
    return None


def apply_ack(
    store: LocalStore,
    conn: Connection,
    spec: EntitySpec,
    entry: journal.JournalEntry,
    response: dict[str, Any],
) -> int:
    """Record a server acknowledgement for ``entry``.

    Returns:
        The record id after the acknowledgement (the server id for creates).
    """
    record_id = entry.local_id

    if entry.op == journal.DELETE:
        store.delete_row(conn, spec.name, record_id)
        journal.drop_chain(conn, spec.name, record_id)
        return record_id

    if entry.op == journal.CREATE and response.get("id") is not None:
        server_id = int(response["id"])
        if server_id != record_id:
            occupant = store.fetch_row(conn, spec.name, server_id)
            if occupant is not None:
                if occupant["sync_status"] == SyncStatus.PENDING_CREATE:
                    store.relocate(conn, spec.name, server_id)
                else:
                    # Stale copy of a record the server has reassigned
                    store.delete_row(conn, spec.name, server_id)
                    journal.drop_chain(conn, spec.name, server_id)
            store.rekey(conn, spec.name, record_id, server_id)
            record_id = server_id

    version = response.get("serverVersion")
    journal.acknowledge(conn, entry.id)
    remaining = journal.chain(conn, spec.name, record_id)

    row = store.fetch_row(conn, spec.name, record_id)
    if remaining and row is not None:
        journal.refresh_pending(
            conn, spec.name, record_id, None, version, wire_image(spec, row, record_id, version)
        )
    store.update_row(
        conn,
        spec.name,
        record_id,
        {"server_version": version, "sync_status": journal.status_for(remaining)},
    )
    return record_id


def resolve(
    store: LocalStore,
    conn: Connection,
    spec: EntitySpec,
    record_id: int,
    choice: str,
) -> SyncStatus | None:
    """Apply the user's decision on a conflicted record.

    Returns:
        The record's new sync status, or None if the record was removed.
    """
    if choice not in (KEEP_LOCAL, ACCEPT_SERVER):
        raise ValueError(f"Unknown conflict resolution: {choice!r}")

    entries = journal.chain(conn, spec.name, record_id)
    row = store.fetch_row(conn, spec.name, record_id)
    if row is None or not any(e.suspended for e in entries):
        raise ValueError(f"{spec.name} {record_id} is not in conflict")

    image = next((e.server_payload for e in entries if e.server_payload), None)
    server_gone = bool(image and image.get("deleted"))
    # Image of another server record that clashed with this one
    foreign = image is not None and image.get("id") not in (None, record_id)

    if choice == KEEP_LOCAL:
        if server_gone:
            # Recreate what the server deleted
            journal.drop_chain(conn, spec.name, record_id)
            journal.record_create(conn, spec.name, record_id, spec.to_wire(row))
            store.update_row(
                conn,
                spec.name,
                record_id,
                {"server_version": None, "sync_status": SyncStatus.PENDING_CREATE},
            )
            return SyncStatus.PENDING_CREATE

        base = image.get("serverVersion") if image and not foreign else row["server_version"]
        journal.resume(conn, spec.name, record_id, base)
        status = journal.status_for(journal.chain(conn, spec.name, record_id))
        store.update_row(conn, spec.name, record_id, {"server_version": base, "sync_status": status})
        return status

    journal.drop_chain(conn, spec.name, record_id)
    if image is None or server_gone:
        # Never reached the server, or no longer exists there
        store.delete_row(conn, spec.name, record_id)
        return None
    if foreign:
        store.delete_row(conn, spec.name, record_id)
        apply_remote(store, conn, spec, image)
        return None

    values = spec.from_wire(image)
    store.update_row(
        conn,
        spec.name,
        record_id,
        {
            **values,
            "server_version": image.get("serverVersion"),
            "sync_status": SyncStatus.SYNCED,
            "updated_at": max(now_ms(), row["created_at"]),
        },
    )
    return SyncStatus.SYNCED
