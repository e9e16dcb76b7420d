"""Entity declarations shared by local validation and the wire format.

Each entity is declared once as a pydantic model. Field names are the
local column names (snake_case) and their camelCase aliases are the JSON
keys exchanged with the server.
"""

import re
import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Annotated, Any

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    PlainSerializer,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .errors import RecordValidationError


class SyncStatus(IntEnum):
    """Per-record synchronization state."""

    SYNCED = 0
    PENDING_CREATE = 1
    PENDING_UPDATE = 2
    PENDING_DELETE = 3
    CONFLICT = 4


class BudgetStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    CANCELLED = "Cancelled"


class ContractStatus(str, Enum):
    ACTIVE = "Active"
    COMPLETED = "Completed"
    SUSPENDED = "Suspended"


class FinancialType(str, Enum):
    INCOME = "Income"
    EXPENSE = "Expense"


DEFAULT_PERMISSIONS = (
    "dashboard_access",
    "clients_view",
    "clients_manage",
    "budgets_view",
    "budgets_manage",
    "contracts_view",
    "contracts_manage",
    "financial_view",
    "financial_manage",
)

ADMIN_ROLE = "admin"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


def to_epoch_ms(value: Any) -> Any:
    """Coerce dates, datetimes and ISO strings to epoch milliseconds.

    Naive datetimes are taken as UTC. Anything unrecognised is returned
    unchanged for pydantic to reject.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, date):
        return to_epoch_ms(datetime(value.year, value.month, value.day))
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return int(text)
        try:
            return to_epoch_ms(datetime.fromisoformat(text.replace("Z", "+00:00")))
        except ValueError:
            return value
    return value


def normalize_email(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


def normalize_tax_id(value: Any) -> Any:
    """Reduce CPF/CNPJ to digits only. Blank values mean absent."""
    if value is None:
        return None
    if isinstance(value, str):
        digits = re.sub(r"\D", "", value)
        return digits or None
    return value


EpochMs = Annotated[int, BeforeValidator(to_epoch_ms), Field(ge=0)]
Amount = Annotated[
    Decimal,
    Field(gt=0, decimal_places=2),
    PlainSerializer(float, return_type=float),
]


class EntityModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        use_enum_values=True,
        validate_default=True,
    )


class UserRecord(EntityModel):
    username: str = Field(min_length=1, max_length=50)
    email: str
    password_hash: str = ""
    role: str = "user"
    permissions: list[str] = Field(default_factory=lambda: list(DEFAULT_PERMISSIONS))
    last_login: EpochMs | None = None

    @field_validator("email", mode="before")
    @classmethod
    def normalize(cls, v: Any) -> Any:
        return normalize_email(v)

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        if not _EMAIL_RE.match(v):
            raise ValueError("invalid email address")
        return v


class ClientRecord(EntityModel):
    name: str = Field(min_length=1, max_length=200)
    email: str
    phone: str = ""
    address: str | None = None
    tax_id: str | None = None
    is_active: bool = True

    @field_validator("email", mode="before")
    @classmethod
    def normalize(cls, v: Any) -> Any:
        return normalize_email(v)

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        if not _EMAIL_RE.match(v):
            raise ValueError("invalid email address")
        return v

    @field_validator("tax_id", mode="before")
    @classmethod
    def strip_tax_id(cls, v: Any) -> Any:
        return normalize_tax_id(v)

    @field_validator("tax_id")
    @classmethod
    def check_tax_id(cls, v: str | None) -> str | None:
        # CPF has 11 digits, CNPJ 14
        if v is not None and len(v) not in (11, 14):
            raise ValueError("tax id must have 11 (CPF) or 14 (CNPJ) digits")
        return v


class BudgetRecord(EntityModel):
    client_id: int
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    amount: Amount
    status: BudgetStatus = BudgetStatus.PENDING
    tags: list[str] = Field(default_factory=list)


class ContractRecord(EntityModel):
    client_id: int
    budget_id: int | None = None
    title: str = Field(min_length=1, max_length=200)
    terms: str = ""
    value: Amount
    start_date: EpochMs
    end_date: EpochMs
    status: ContractStatus = ContractStatus.ACTIVE

    @model_validator(mode="after")
    def check_dates(self) -> "ContractRecord":
        if self.end_date < self.start_date:
            raise ValueError("end date precedes start date")
        return self


class FinancialRecord(EntityModel):
    type: FinancialType
    description: str = Field(min_length=1)
    amount: Amount
    date: EpochMs
    category: str = ""
    # Opaque correlation token (budget or contract), never a foreign key
    reference_id: str | None = None


@dataclass(frozen=True)
class EntitySpec:
    """Everything the store and the sync engine need to know about an entity."""

    name: str
    model: type[EntityModel]
    path: str
    view_permission: str
    manage_permission: str
    # (parent entity, local column) pairs this entity points at
    references: tuple[tuple[str, str], ...] = ()

    @property
    def fields(self) -> tuple[str, ...]:
        return tuple(self.model.model_fields)

    def alias(self, field: str) -> str:
        return self.model.model_fields[field].alias or field

    def validate(self, values: dict[str, Any]) -> dict[str, Any]:
        """Validate and normalize field values, returning storable columns."""
        try:
            return self.model.model_validate(values).model_dump()
        except ValidationError as exc:
            raise RecordValidationError(
                self.name, exc.errors(include_url=False, include_context=False)
            ) from exc

    def to_wire(self, record: dict[str, Any]) -> dict[str, Any]:
        """Map stored columns to the JSON keys the server expects."""
        return {self.alias(f): record.get(f) for f in self.fields}

    def from_wire(self, item: dict[str, Any]) -> dict[str, Any]:
        """Validate a server item and return storable columns."""
        return self.validate(item)


USERS = EntitySpec("users", UserRecord, "users", "users_manage", "users_manage")
CLIENTS = EntitySpec("clients", ClientRecord, "clients", "clients_view", "clients_manage")
BUDGETS = EntitySpec(
    "budgets",
    BudgetRecord,
    "budgets",
    "budgets_view",
    "budgets_manage",
    references=(("clients", "client_id"),),
)
CONTRACTS = EntitySpec(
    "contracts",
    ContractRecord,
    "contracts",
    "contracts_view",
    "contracts_manage",
    references=(("clients", "client_id"), ("budgets", "budget_id")),
)
FINANCIAL = EntitySpec(
    "financial", FinancialRecord, "financial", "financial_view", "financial_manage"
)

# Parents before children so pulls and pushes respect references
ENTITIES: dict[str, EntitySpec] = {
    spec.name: spec for spec in (USERS, CLIENTS, BUDGETS, CONTRACTS, FINANCIAL)
}


def get_entity(name: str) -> EntitySpec:
    """Look up an entity declaration by name."""
    try:
        return ENTITIES[name]
    except KeyError:
        raise ValueError(f"Unknown entity: {name}") from None


def children_of(entity: str) -> list[tuple[EntitySpec, str]]:
    """Entities (and the column) that reference ``entity`` by id."""
    return [
        (spec, column)
        for spec in ENTITIES.values()
        for parent, column in spec.references
        if parent == entity
    ]
