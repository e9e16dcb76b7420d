"""Demo data for development and presentations without a live server.

Records are written through the local store like any user edit, so they
are journaled and reach the server on the next sync.
"""

import random
from datetime import timedelta
from typing import Any

import structlog
from sqlalchemy import delete

from . import audit
from .db.store import LocalStore
from .db.tables import ENTITY_TABLES, sync_journal
from .errors import DemoDataRefused
from .models import (
    ADMIN_ROLE,
    DEFAULT_PERMISSIONS,
    ENTITIES,
    BudgetStatus,
    ContractStatus,
    FinancialType,
    now_ms,
)
from .session import hash_password

logger = structlog.get_logger(__name__)

DEMO_USERNAME = "demo@rc.com"
DEMO_PASSWORD = "DemoPassword123!"

DAY_MS = int(timedelta(days=1).total_seconds() * 1000)

_BUILDINGS = ("uma casa", "um escritório", "um galpão")
_CATEGORIES = ("Materiais", "Mão de obra", "Equipamentos", "Transporte", "Serviços")


def _cpf(rng: random.Random) -> str:
    return "".join(str(rng.randint(0, 9)) for _ in range(11))


def _phone(rng: random.Random) -> str:
    return f"119{rng.randint(10_000_000, 99_999_999)}"


def populate_demo_data(
    store: LocalStore,
    *,
    clients: int = 10,
    budgets_per_client: int = 3,
    contracts_per_client: int = 2,
    financial_entries: int = 50,
    seed: int | None = None,
) -> dict[str, int]:
    """Fill the local store with a demo user and related records.

    Args:
        store: An open, writable local store.
        clients: Number of clients to create.
        budgets_per_client: Budgets per client.
        contracts_per_client: Contracts per client, tied to approved budgets
            where the client has any.
        financial_entries: Income/expense entries over the last year.
        seed: Seed for reproducible data.

    Returns:
        Number of records created per entity.

    Raises:
        DemoDataRefused: The store runs in memory fallback, is read-only, or
            the journal is already above its soft limit.
    """
    if store.is_fallback():
        raise DemoDataRefused("Refusing to populate demo data into a temporary in-memory store")
    if store.read_only:
        raise DemoDataRefused("Refusing to populate demo data into a read-only store")
    if store.backlog_high():
        raise DemoDataRefused("Sync backlog is above its soft limit; sync before adding demo data")

    rng = random.Random(seed)
    now = now_ms()
    counts = {name: 0 for name in ENTITIES}

    with store.transaction() as tx:
        if not tx.find("users", {"username": DEMO_USERNAME}, limit=1):
            tx.put(
                "users",
                {
                    "username": DEMO_USERNAME,
                    "email": DEMO_USERNAME,
                    "password_hash": hash_password(DEMO_PASSWORD),
                    "role": ADMIN_ROLE,
                    "permissions": list(DEFAULT_PERMISSIONS),
                },
            )
            counts["users"] += 1

        for i in range(clients):
            client = tx.put(
                "clients",
                {
                    "name": f"Cliente Demo {i + 1}",
                    "email": f"cliente{i + 1}.{rng.randint(1000, 9999)}@demo.rc.com",
                    "phone": _phone(rng),
                    "address": f"Rua Demo, {rng.randint(1, 999)}",
                    "tax_id": _cpf(rng),
                },
            )
            counts["clients"] += 1

            budgets = []
            for j in range(budgets_per_client):
                budgets.append(
                    tx.put(
                        "budgets",
                        {
                            "client_id": client["id"],
                            "title": f"Orçamento de Obra {j + 1} - Cliente {i + 1}",
                            "description": f"Construção de {rng.choice(_BUILDINGS)}.",
                            "amount": round(rng.uniform(1000, 11000), 2),
                            "status": rng.choice(
                                [BudgetStatus.PENDING, BudgetStatus.APPROVED, BudgetStatus.REJECTED]
                            ).value,
                        },
                    )
                )
                counts["budgets"] += 1

            approved = [b for b in budgets if b["status"] == BudgetStatus.APPROVED.value]
            for j in range(contracts_per_client):
                budget = rng.choice(approved) if approved else None
                start = now - rng.randint(0, 90) * DAY_MS
                tx.put(
                    "contracts",
                    {
                        "client_id": client["id"],
                        "budget_id": budget["id"] if budget else None,
                        "title": f"Contrato de Obra {j + 1} - Cliente {i + 1}",
                        "terms": "Termos padrão de execução e pagamento.",
                        "value": budget["amount"] if budget else round(rng.uniform(1000, 11000), 2),
                        "start_date": start,
                        "end_date": start + rng.randint(30, 180) * DAY_MS,
                        "status": rng.choice(list(ContractStatus)).value,
                    },
                )
                counts["contracts"] += 1

        for i in range(financial_entries):
            kind = rng.choice(list(FinancialType))
            category = rng.choice(_CATEGORIES)
            tx.put(
                "financial",
                {
                    "type": kind.value,
                    "description": f"{'Pagamento' if kind == FinancialType.INCOME else 'Custo'} de {category}",
                    "amount": round(rng.uniform(100, 5100), 2),
                    "date": now - rng.randint(0, 365) * DAY_MS,
                    "category": category,
                    "reference_id": f"demo-{i + 1:04d}",
                },
            )
            counts["financial"] += 1

    logger.info("demo_populated", **counts)
    audit.log_demo("populated", counts)
    return counts


def clear_demo_data(store: LocalStore, keep_user: str | None = None) -> dict[str, int]:
    """Wipe local records and their journal chains.

    Nothing is sent to the server. Pull cursors are reset so the next sync
    brings server data back.

    Args:
        store: An open, writable local store.
        keep_user: Username whose user row survives. Defaults to the
            principal signed in through the store's session gate.

    Returns:
        Number of rows removed per entity.
    """
    if keep_user is None and store.gate is not None and store.gate.principal is not None:
        keep_user = store.gate.principal.username

    counts: dict[str, int] = {}
    with store.begin() as conn:
        kept: list[int] = []
        if keep_user is not None:
            users = ENTITY_TABLES["users"]
            kept = [
                row.id
                for row in conn.execute(users.select().where(users.c.username == keep_user))
            ]

        # Children before parents
        for name in reversed(list(ENTITIES)):
            table = ENTITY_TABLES[name]
            stmt = delete(table)
            journal_stmt = delete(sync_journal).where(sync_journal.c.entity == name)
            if name == "users" and kept:
                stmt = stmt.where(table.c.id.not_in(kept))
                journal_stmt = journal_stmt.where(sync_journal.c.local_id.not_in(kept))
            counts[name] = conn.execute(stmt).rowcount
            conn.execute(journal_stmt)

        store.reset_cursors(conn)

    logger.info("demo_cleared", kept_user=keep_user, **counts)
    audit.log_demo("cleared", counts)
    return counts


def demo_summary(counts: dict[str, Any]) -> str:
    return ", ".join(f"{n} {entity}" for entity, n in counts.items() if n)
