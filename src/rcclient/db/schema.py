"""SQLite DDL for each schema version.

Statements are executed one at a time by the migrator inside its upgrade
transaction, so every statement here must be safe to replay.
"""

SCHEMA_META = """
CREATE TABLE IF NOT EXISTS schema_meta (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    current_version INTEGER NOT NULL,
    updated_at INTEGER
)
"""

# Version 1: base entity stores, journal and sync state
V1_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL,
        email TEXT,
        password_hash TEXT NOT NULL DEFAULT '',
        role TEXT NOT NULL DEFAULT 'user',
        server_version INTEGER,
        sync_status INTEGER NOT NULL DEFAULT 1 CHECK (sync_status BETWEEN 0 AND 4),
        created_at INTEGER NOT NULL DEFAULT 0,
        updated_at INTEGER NOT NULL DEFAULT 0,
        CONSTRAINT uq_users_username UNIQUE (username),
        CONSTRAINT uq_users_email UNIQUE (email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS clients (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        email TEXT NOT NULL,
        phone TEXT,
        address TEXT,
        tax_id TEXT,
        is_active INTEGER DEFAULT 1,
        server_version INTEGER,
        sync_status INTEGER NOT NULL DEFAULT 1 CHECK (sync_status BETWEEN 0 AND 4),
        created_at INTEGER NOT NULL DEFAULT 0,
        updated_at INTEGER NOT NULL DEFAULT 0,
        CONSTRAINT uq_clients_email UNIQUE (email)
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_clients_tax_id ON clients (tax_id)",
    """
    CREATE TABLE IF NOT EXISTS budgets (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        client_id INTEGER NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        amount REAL NOT NULL CHECK (amount > 0),
        status TEXT NOT NULL DEFAULT 'Pending'
            CHECK (status IN ('Pending', 'Approved', 'Rejected', 'Cancelled')),
        server_version INTEGER,
        sync_status INTEGER NOT NULL DEFAULT 1 CHECK (sync_status BETWEEN 0 AND 4),
        created_at INTEGER NOT NULL DEFAULT 0,
        updated_at INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_budgets_client_id ON budgets (client_id)",
    "CREATE INDEX IF NOT EXISTS ix_budgets_status ON budgets (status)",
    """
    CREATE TABLE IF NOT EXISTS contracts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        client_id INTEGER NOT NULL,
        budget_id INTEGER,
        title TEXT NOT NULL,
        terms TEXT,
        value REAL NOT NULL CHECK (value > 0),
        start_date INTEGER NOT NULL,
        end_date INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'Active'
            CHECK (status IN ('Active', 'Completed', 'Suspended')),
        server_version INTEGER,
        sync_status INTEGER NOT NULL DEFAULT 1 CHECK (sync_status BETWEEN 0 AND 4),
        created_at INTEGER NOT NULL DEFAULT 0,
        updated_at INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_contracts_client_id ON contracts (client_id)",
    "CREATE INDEX IF NOT EXISTS ix_contracts_budget_id ON contracts (budget_id)",
    # Entry dates were ISO strings in the first release
    """
    CREATE TABLE IF NOT EXISTS financial (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        type TEXT NOT NULL CHECK (type IN ('Income', 'Expense')),
        description TEXT NOT NULL,
        amount REAL NOT NULL CHECK (amount > 0),
        date TEXT NOT NULL,
        category TEXT,
        reference_id TEXT,
        server_version INTEGER,
        sync_status INTEGER NOT NULL DEFAULT 1 CHECK (sync_status BETWEEN 0 AND 4),
        created_at INTEGER NOT NULL DEFAULT 0,
        updated_at INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_financial_date ON financial (date)",
    "CREATE INDEX IF NOT EXISTS ix_financial_type ON financial (type)",
    """
    CREATE TABLE IF NOT EXISTS sync_journal (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        entity TEXT NOT NULL,
        local_id INTEGER NOT NULL,
        op TEXT NOT NULL CHECK (op IN ('create', 'update', 'delete')),
        payload TEXT,
        changed_fields TEXT,
        base_version INTEGER,
        server_payload TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        enqueued_at INTEGER NOT NULL,
        next_attempt_at INTEGER NOT NULL DEFAULT 0,
        dispatched INTEGER NOT NULL DEFAULT 0,
        suspended INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_sync_journal_chain ON sync_journal (entity, local_id)",
    """
    CREATE TABLE IF NOT EXISTS sync_state (
        key TEXT PRIMARY KEY,
        value TEXT
    )
    """,
)

# Version 3: unique tax id when present
CLIENT_TAX_ID_INDEX = (
    "DROP INDEX IF EXISTS ix_clients_tax_id",
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_clients_tax_id ON clients (tax_id) "
    "WHERE tax_id IS NOT NULL",
)

# Version 3: financial entry dates as epoch milliseconds
FINANCIAL_V3 = """
CREATE TABLE financial_v3 (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL CHECK (type IN ('Income', 'Expense')),
    description TEXT NOT NULL,
    amount REAL NOT NULL CHECK (amount > 0),
    date INTEGER NOT NULL,
    category TEXT,
    reference_id TEXT,
    server_version INTEGER,
    sync_status INTEGER NOT NULL DEFAULT 1 CHECK (sync_status BETWEEN 0 AND 4),
    created_at INTEGER NOT NULL DEFAULT 0,
    updated_at INTEGER NOT NULL DEFAULT 0
)
"""

FINANCIAL_INDEXES = (
    "CREATE INDEX IF NOT EXISTS ix_financial_date ON financial (date)",
    "CREATE INDEX IF NOT EXISTS ix_financial_type ON financial (type)",
)
