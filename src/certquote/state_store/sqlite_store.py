"""
SQLite-based state store implementation.

Tables (base schema):
- certification_types, languages, document_types, delivery_options, staff_users:
  reference data, read-only to the pricing core
- customers, quotes, quote_files, quote_pages, analysis_results,
  quote_certifications: quote-scoped priced entities

Tables (migrations):
- document_groups, group_assignments (001)
- quote_adjustments (002)
- staff_corrections (003)
- staff_activity_log (004)

Money, rates and multipliers are stored as TEXT and read back as Decimal.

Units of work:
- _transaction() is re-entrant per thread: a nested call joins the outer
  connection, and only the outermost call commits or rolls back
- quote_transaction(quote_id) serializes writers per quote (re-entrant lock)
  and takes the SQLite write lock up front with BEGIN IMMEDIATE
- savepoint(name) isolates a best-effort write inside a unit of work
"""

import json
import logging
import sqlite3
import threading
import weakref
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any

from ..errors import NotFoundError, ValidationError
from ..schemas.activity import ActivityEvent
from ..schemas.quote_totals import QuoteTotals

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _dec(value: Any) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


def _to_db(value: Any) -> Any:
    """Convert a Python value to its stored representation."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return value


def _json(value: str | None) -> Any:
    return json.loads(value) if value else None


class QuoteStatus(str, Enum):
    """Lifecycle of a quote."""

    DRAFT = "draft"
    DETAILS_PENDING = "details_pending"
    QUOTE_READY = "quote_ready"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    BALANCE_DUE = "balance_due"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Statuses whose pricing has been finalized and paid against
FINALIZED_STATUSES = frozenset(
    {QuoteStatus.PAID, QuoteStatus.BALANCE_DUE, QuoteStatus.IN_PROGRESS, QuoteStatus.COMPLETED}
)

# Statuses that accept no further pricing mutations
TERMINAL_STATUSES = frozenset({QuoteStatus.COMPLETED, QuoteStatus.CANCELLED})


# =============================================================================
# Reference data records
# =============================================================================


@dataclass
class CertificationTypeRecord:
    """A certification product (e.g. notarized, sworn)."""

    id: int
    code: str
    name: str
    price: Decimal
    is_default: bool
    is_active: bool
    sort_order: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "CertificationTypeRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            code=row["code"],
            name=row["name"],
            price=Decimal(row["price"]),
            is_default=bool(row["is_default"]),
            is_active=bool(row["is_active"]),
            sort_order=row["sort_order"],
        )


@dataclass
class LanguageRecord:
    """A language with its pricing tier multiplier."""

    id: int
    code: str
    name: str
    tier: int
    multiplier: Decimal

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "LanguageRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            code=row["code"],
            name=row["name"],
            tier=row["tier"],
            multiplier=Decimal(row["multiplier"]),
        )


@dataclass
class DocumentTypeRecord:
    """A document type and the certification it usually needs."""

    id: int
    code: str
    name: str
    default_certification_type_id: int | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "DocumentTypeRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            code=row["code"],
            name=row["name"],
            default_certification_type_id=row["default_certification_type_id"],
        )


@dataclass
class DeliveryOptionRecord:
    """A delivery option (email, courier, ...) and its fee."""

    id: int
    code: str
    name: str
    fee: Decimal
    is_active: bool

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "DeliveryOptionRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            code=row["code"],
            name=row["name"],
            fee=Decimal(row["fee"]),
            is_active=bool(row["is_active"]),
        )


@dataclass
class StaffRecord:
    """A staff user and role."""

    id: int
    email: str
    full_name: str | None
    role: str
    is_active: bool

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "StaffRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            email=row["email"],
            full_name=row["full_name"],
            role=row["role"],
            is_active=bool(row["is_active"]),
        )


# =============================================================================
# Quote-scoped records
# =============================================================================


@dataclass
class CustomerRecord:
    """Customer contact details."""

    id: int
    full_name: str | None
    email: str | None
    phone: str | None
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "CustomerRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            full_name=row["full_name"],
            email=row["email"],
            phone=row["phone"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class QuoteRecord:
    """One customer order in progress."""

    id: int
    quote_number: str
    customer_id: int | None
    status: QuoteStatus
    source_language_id: int | None
    target_language_id: int | None
    language_multiplier_override: Decimal | None
    is_rush: bool
    delivery_option_id: int | None
    tax_rate: Decimal
    subtotal: Decimal
    certification_total: Decimal
    rush_fee: Decimal
    delivery_fee: Decimal
    tax_amount: Decimal
    total: Decimal
    calculated_totals: dict[str, Any] | None
    amount_paid: Decimal
    balance_due: Decimal
    refund_amount: Decimal
    overpayment_credit: Decimal
    shipping_address: dict[str, Any] | None
    billing_address: dict[str, Any] | None
    payment_method: str | None
    staff_notes: str | None
    is_manual: bool
    created_by_staff_id: int | None
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "QuoteRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            quote_number=row["quote_number"],
            customer_id=row["customer_id"],
            status=QuoteStatus(row["status"]),
            source_language_id=row["source_language_id"],
            target_language_id=row["target_language_id"],
            language_multiplier_override=_dec(row["language_multiplier_override"]),
            is_rush=bool(row["is_rush"]),
            delivery_option_id=row["delivery_option_id"],
            tax_rate=Decimal(row["tax_rate"]),
            subtotal=Decimal(row["subtotal"]),
            certification_total=Decimal(row["certification_total"]),
            rush_fee=Decimal(row["rush_fee"]),
            delivery_fee=Decimal(row["delivery_fee"]),
            tax_amount=Decimal(row["tax_amount"]),
            total=Decimal(row["total"]),
            calculated_totals=_json(row["calculated_totals"]),
            amount_paid=Decimal(row["amount_paid"]),
            balance_due=Decimal(row["balance_due"]),
            refund_amount=Decimal(row["refund_amount"]),
            overpayment_credit=Decimal(row["overpayment_credit"]),
            shipping_address=_json(row["shipping_address"]),
            billing_address=_json(row["billing_address"]),
            payment_method=row["payment_method"],
            staff_notes=row["staff_notes"],
            is_manual=bool(row["is_manual"]),
            created_by_staff_id=row["created_by_staff_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class QuoteFileRecord:
    """An uploaded file belonging to a quote."""

    id: int
    quote_id: int
    filename: str
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "QuoteFileRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            quote_id=row["quote_id"],
            filename=row["filename"],
            created_at=row["created_at"],
        )


@dataclass
class QuotePageRecord:
    """A single page of an uploaded file."""

    id: int
    file_id: int
    quote_id: int
    page_number: int
    word_count: int
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "QuotePageRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            file_id=row["file_id"],
            quote_id=row["quote_id"],
            page_number=row["page_number"],
            word_count=row["word_count"],
            created_at=row["created_at"],
        )


@dataclass
class AnalysisRecord:
    """Per-file analysis and pricing (or a staff-entered manual line)."""

    id: int
    quote_id: int
    file_id: int | None
    manual_label: str | None
    detected_language: str | None
    detected_document_type: str | None
    assessed_complexity: str
    complexity_multiplier: Decimal
    word_count: int
    page_count: int
    billable_pages: Decimal
    base_rate: Decimal
    line_total: Decimal
    certification_type_id: int | None
    certification_price: Decimal
    overridden_fields: list[str]
    is_staff_created: bool
    created_by_staff_id: int | None
    created_at: str
    updated_at: str

    @property
    def is_manual(self) -> bool:
        return self.file_id is None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AnalysisRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            quote_id=row["quote_id"],
            file_id=row["file_id"],
            manual_label=row["manual_label"],
            detected_language=row["detected_language"],
            detected_document_type=row["detected_document_type"],
            assessed_complexity=row["assessed_complexity"],
            complexity_multiplier=Decimal(row["complexity_multiplier"]),
            word_count=row["word_count"],
            page_count=row["page_count"],
            billable_pages=Decimal(row["billable_pages"]),
            base_rate=Decimal(row["base_rate"]),
            line_total=Decimal(row["line_total"]),
            certification_type_id=row["certification_type_id"],
            certification_price=Decimal(row["certification_price"]),
            overridden_fields=json.loads(row["overridden_fields"]) if row["overridden_fields"] else [],
            is_staff_created=bool(row["is_staff_created"]),
            created_by_staff_id=row["created_by_staff_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class QuoteCertificationRecord:
    """A quote-level certification (e.g. an apostille for the whole order)."""

    id: int
    quote_id: int
    certification_type_id: int
    price: Decimal
    quantity: int
    created_at: str

    @property
    def line_amount(self) -> Decimal:
        return self.price * self.quantity

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "QuoteCertificationRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            quote_id=row["quote_id"],
            certification_type_id=row["certification_type_id"],
            price=Decimal(row["price"]),
            quantity=row["quantity"],
            created_at=row["created_at"],
        )


@dataclass
class DocumentGroupRecord:
    """A staff-defined group of files/pages priced as one unit."""

    id: int
    quote_id: int
    group_number: int
    group_label: str
    document_type: str | None
    complexity: str
    complexity_multiplier: Decimal
    certification_type_id: int | None
    certification_price: Decimal
    word_count: int
    total_pages: int
    billable_pages: Decimal
    line_total: Decimal
    created_by: int | None
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "DocumentGroupRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            quote_id=row["quote_id"],
            group_number=row["group_number"],
            group_label=row["group_label"],
            document_type=row["document_type"],
            complexity=row["complexity"],
            complexity_multiplier=Decimal(row["complexity_multiplier"]),
            certification_type_id=row["certification_type_id"],
            certification_price=Decimal(row["certification_price"]),
            word_count=row["word_count"],
            total_pages=row["total_pages"],
            billable_pages=Decimal(row["billable_pages"]),
            line_total=Decimal(row["line_total"]),
            created_by=row["created_by"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class ItemType(str, Enum):
    """What an assignment points at."""

    FILE = "file"
    PAGE = "page"


@dataclass
class AssignmentRecord:
    """Links one file or page to one document group."""

    id: int
    group_id: int
    quote_id: int
    item_type: ItemType
    file_id: int | None
    page_id: int | None
    word_count_override: int | None
    assigned_by: int | None
    assigned_at: str

    @property
    def item_id(self) -> int:
        return self.file_id if self.item_type == ItemType.FILE else self.page_id

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AssignmentRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            group_id=row["group_id"],
            quote_id=row["quote_id"],
            item_type=ItemType(row["item_type"]),
            file_id=row["file_id"],
            page_id=row["page_id"],
            word_count_override=row["word_count_override"],
            assigned_by=row["assigned_by"],
            assigned_at=row["assigned_at"],
        )


@dataclass
class AdjustmentRecord:
    """One adjustment ledger entry."""

    id: int
    quote_id: int
    adjustment_type: str
    value_type: str
    value: Decimal
    calculated_amount: Decimal
    reason: str | None
    method: str | None
    reference: str | None
    supersedes_id: int | None
    superseded_by_id: int | None
    created_by: int | None
    created_at: str

    @property
    def is_void(self) -> bool:
        """A zero replacement: it cancels the entry it supersedes and counts as nothing."""
        return self.supersedes_id is not None and self.calculated_amount == 0

    @property
    def is_active(self) -> bool:
        return self.superseded_by_id is None and not self.is_void

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AdjustmentRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            quote_id=row["quote_id"],
            adjustment_type=row["adjustment_type"],
            value_type=row["value_type"],
            value=Decimal(row["value"]),
            calculated_amount=Decimal(row["calculated_amount"]),
            reason=row["reason"],
            method=row["method"],
            reference=row["reference"],
            supersedes_id=row["supersedes_id"],
            superseded_by_id=row["superseded_by_id"],
            created_by=row["created_by"],
            created_at=row["created_at"],
        )


@dataclass
class CorrectionRecord:
    """Immutable audit record of one staff correction."""

    id: int
    quote_id: int
    analysis_id: int | None
    group_id: int | None
    file_id: int | None
    page_id: int | None
    field_name: str
    ai_value: str | None
    corrected_value: str | None
    reason: str | None
    submit_to_knowledge_base: bool
    knowledge_base_comment: str | None
    staff_id: int | None
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "CorrectionRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            quote_id=row["quote_id"],
            analysis_id=row["analysis_id"],
            group_id=row["group_id"],
            file_id=row["file_id"],
            page_id=row["page_id"],
            field_name=row["field_name"],
            ai_value=row["ai_value"],
            corrected_value=row["corrected_value"],
            reason=row["reason"],
            submit_to_knowledge_base=bool(row["submit_to_knowledge_base"]),
            knowledge_base_comment=row["knowledge_base_comment"],
            staff_id=row["staff_id"],
            created_at=row["created_at"],
        )


@dataclass
class ActivityRecord:
    """Persisted staff activity entry."""

    id: int
    staff_id: int | None
    activity_type: str
    entity_type: str
    entity_id: int | None
    quote_id: int | None
    details: dict[str, Any]
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ActivityRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            staff_id=row["staff_id"],
            activity_type=row["activity_type"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            quote_id=row["quote_id"],
            details=_json(row["details"]) or {},
            created_at=row["created_at"],
        )


# Columns that generic update helpers may touch
_QUOTE_COLUMNS = frozenset(
    {
        "status",
        "source_language_id",
        "target_language_id",
        "language_multiplier_override",
        "is_rush",
        "delivery_option_id",
        "delivery_fee",
        "tax_rate",
        "amount_paid",
        "refund_amount",
        "shipping_address",
        "billing_address",
        "payment_method",
        "staff_notes",
    }
)

_ANALYSIS_COLUMNS = frozenset(
    {
        "detected_language",
        "detected_document_type",
        "assessed_complexity",
        "complexity_multiplier",
        "word_count",
        "page_count",
        "billable_pages",
        "base_rate",
        "line_total",
        "certification_type_id",
        "certification_price",
        "overridden_fields",
    }
)

_GROUP_COLUMNS = frozenset(
    {
        "group_number",
        "group_label",
        "document_type",
        "complexity",
        "complexity_multiplier",
        "certification_type_id",
        "certification_price",
        "word_count",
        "total_pages",
        "billable_pages",
        "line_total",
    }
)

_CUSTOMER_COLUMNS = frozenset({"full_name", "email", "phone"})


class StateStore:
    """
    SQLite-based state store for the pricing core.

    Provides persistent storage for:
    - Reference data (certifications, languages, document types, delivery, staff)
    - Quotes, files, pages and per-file analysis results
    - Document groups and assignments
    - Adjustment ledger, correction audit log, staff activity log

    Safe for concurrent writers: each thread uses its own connection and
    writers to the same quote are serialized by quote_transaction().
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str, run_migrations: bool = True):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        # Entries drop out once no unit of work holds the lock
        self._quote_locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()
        self._quote_locks_guard = threading.Lock()
        self._init_db()
        if run_migrations:
            self._run_migrations()

    # -------------------------------------------------------------------------
    # Connections and units of work
    # -------------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @property
    def in_transaction(self) -> bool:
        """Whether the calling thread is inside a unit of work."""
        return getattr(self._local, "conn", None) is not None

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions.

        Nested calls on the same thread join the outermost transaction.
        """
        outer = getattr(self._local, "conn", None)
        if outer is not None:
            yield outer
            return

        conn = self._get_connection()
        self._local.conn = conn
        self._local.after_commit = []
        committed = False
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            yield conn
            conn.commit()
            committed = True
        except Exception:
            conn.rollback()
            raise
        finally:
            callbacks = self._local.after_commit
            self._local.conn = None
            self._local.after_commit = []
            conn.close()

        if committed:
            for callback in callbacks:
                try:
                    callback()
                except Exception as e:
                    logger.error(f"After-commit callback failed: {e}")

    @contextmanager
    def transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Unit of work for service code; joins an enclosing one."""
        with self._transaction(immediate=immediate) as conn:
            yield conn

    @contextmanager
    def quote_transaction(self, quote_id: int) -> Iterator[sqlite3.Connection]:
        """Serialized unit of work for one quote.

        Writers to the same quote run one at a time; writers to different
        quotes only contend on SQLite's own write lock.
        """
        with self._quote_locks_guard:
            lock = self._quote_locks.get(quote_id)
            if lock is None:
                lock = self._quote_locks[quote_id] = threading.RLock()
        with lock:
            with self._transaction(immediate=True) as conn:
                yield conn

    @contextmanager
    def savepoint(self, name: str) -> Iterator[sqlite3.Connection]:
        """Run a block inside a SAVEPOINT.

        On error the block's writes are rolled back and the exception is
        re-raised; the enclosing unit of work stays usable.
        """
        if not name.isidentifier():
            raise ValueError(f"Invalid savepoint name: {name!r}")
        with self._transaction() as conn:
            conn.execute(f"SAVEPOINT {name}")
            try:
                yield conn
            except Exception:
                conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
                conn.execute(f"RELEASE SAVEPOINT {name}")
                raise
            conn.execute(f"RELEASE SAVEPOINT {name}")

    def on_commit(self, callback: Callable[[], None]) -> None:
        """Run callback after the current unit of work commits.

        Outside a unit of work the callback runs immediately. Callbacks are
        dropped if the unit of work rolls back.
        """
        if self.in_transaction:
            self._local.after_commit.append(callback)
        else:
            callback()

    # -------------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------------

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            # Reference data
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS certification_types (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    code TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    price TEXT NOT NULL,
                    is_default INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    sort_order INTEGER NOT NULL DEFAULT 0
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS languages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    code TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    tier INTEGER NOT NULL DEFAULT 1,
                    multiplier TEXT NOT NULL DEFAULT '1.00'
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS document_types (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    code TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    default_certification_type_id INTEGER,
                    FOREIGN KEY (default_certification_type_id) REFERENCES certification_types(id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS delivery_options (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    code TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    fee TEXT NOT NULL DEFAULT '0.00',
                    is_active INTEGER NOT NULL DEFAULT 1
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS staff_users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT NOT NULL UNIQUE,
                    full_name TEXT,
                    role TEXT NOT NULL DEFAULT 'reviewer',
                    is_active INTEGER NOT NULL DEFAULT 1
                )
            """
            )

            # Quote-scoped entities
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS customers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    full_name TEXT,
                    email TEXT,
                    phone TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS quotes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    quote_number TEXT NOT NULL UNIQUE,
                    customer_id INTEGER,
                    status TEXT NOT NULL DEFAULT 'draft',
                    source_language_id INTEGER,
                    target_language_id INTEGER,
                    language_multiplier_override TEXT,
                    is_rush INTEGER NOT NULL DEFAULT 0,
                    delivery_option_id INTEGER,
                    tax_rate TEXT NOT NULL DEFAULT '0',
                    subtotal TEXT NOT NULL DEFAULT '0.00',
                    certification_total TEXT NOT NULL DEFAULT '0.00',
                    rush_fee TEXT NOT NULL DEFAULT '0.00',
                    delivery_fee TEXT NOT NULL DEFAULT '0.00',
                    tax_amount TEXT NOT NULL DEFAULT '0.00',
                    total TEXT NOT NULL DEFAULT '0.00',
                    calculated_totals TEXT,  -- JSON snapshot of the same QuoteTotals
                    amount_paid TEXT NOT NULL DEFAULT '0.00',
                    balance_due TEXT NOT NULL DEFAULT '0.00',
                    refund_amount TEXT NOT NULL DEFAULT '0.00',
                    overpayment_credit TEXT NOT NULL DEFAULT '0.00',
                    shipping_address TEXT,  -- JSON object
                    billing_address TEXT,  -- JSON object
                    payment_method TEXT,
                    staff_notes TEXT,
                    is_manual INTEGER NOT NULL DEFAULT 0,
                    created_by_staff_id INTEGER,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (customer_id) REFERENCES customers(id),
                    FOREIGN KEY (source_language_id) REFERENCES languages(id),
                    FOREIGN KEY (target_language_id) REFERENCES languages(id),
                    FOREIGN KEY (delivery_option_id) REFERENCES delivery_options(id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS quote_files (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    quote_id INTEGER NOT NULL,
                    filename TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (quote_id) REFERENCES quotes(id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS quote_pages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    file_id INTEGER NOT NULL,
                    quote_id INTEGER NOT NULL,
                    page_number INTEGER NOT NULL,
                    word_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (file_id) REFERENCES quote_files(id),
                    UNIQUE(file_id, page_number)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS analysis_results (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    quote_id INTEGER NOT NULL,
                    file_id INTEGER UNIQUE,  -- NULL for staff-entered manual lines
                    manual_label TEXT,
                    detected_language TEXT,
                    detected_document_type TEXT,
                    assessed_complexity TEXT NOT NULL DEFAULT 'easy',
                    complexity_multiplier TEXT NOT NULL DEFAULT '1.00',
                    word_count INTEGER NOT NULL DEFAULT 0,
                    page_count INTEGER NOT NULL DEFAULT 1,
                    billable_pages TEXT NOT NULL DEFAULT '0.0',
                    base_rate TEXT NOT NULL,
                    line_total TEXT NOT NULL DEFAULT '0.00',
                    certification_type_id INTEGER,
                    certification_price TEXT NOT NULL DEFAULT '0.00',
                    overridden_fields TEXT,  -- JSON array of staff-pinned fields
                    is_staff_created INTEGER NOT NULL DEFAULT 0,
                    created_by_staff_id INTEGER,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (quote_id) REFERENCES quotes(id),
                    FOREIGN KEY (file_id) REFERENCES quote_files(id),
                    FOREIGN KEY (certification_type_id) REFERENCES certification_types(id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS quote_certifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    quote_id INTEGER NOT NULL,
                    certification_type_id INTEGER NOT NULL,
                    price TEXT NOT NULL,
                    quantity INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (quote_id) REFERENCES quotes(id),
                    FOREIGN KEY (certification_type_id) REFERENCES certification_types(id)
                )
            """
            )

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_quote_files_quote_id ON quote_files(quote_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_quote_pages_quote_id ON quote_pages(quote_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_analysis_quote_id ON analysis_results(quote_id)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_quotes_status ON quotes(status)")

            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            MigrationRunner(conn).upgrade()
        finally:
            conn.close()

    def get_migration_version(self) -> int:
        """Highest applied migration version."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            return MigrationRunner(conn).current_version
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Reference data
    # -------------------------------------------------------------------------

    def upsert_certification_type(
        self,
        code: str,
        name: str,
        price: Decimal,
        is_default: bool = False,
        is_active: bool = True,
        sort_order: int = 0,
    ) -> int:
        """Insert or update a certification type. Returns its ID."""
        with self._transaction() as conn:
            if is_default:
                conn.execute("UPDATE certification_types SET is_default = 0 WHERE code != ?", (code,))
            conn.execute(
                """
                INSERT INTO certification_types (code, name, price, is_default, is_active, sort_order)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(code) DO UPDATE SET
                    name = excluded.name, price = excluded.price, is_default = excluded.is_default,
                    is_active = excluded.is_active, sort_order = excluded.sort_order
            """,
                (code, name, str(price), int(is_default), int(is_active), sort_order),
            )
            row = conn.execute("SELECT id FROM certification_types WHERE code = ?", (code,)).fetchone()
            return row["id"]

    def get_certification_type(self, cert_id: int) -> CertificationTypeRecord | None:
        """Get a certification type by ID."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM certification_types WHERE id = ?", (cert_id,)
            ).fetchone()
            return CertificationTypeRecord.from_row(row) if row else None

    def get_default_certification_type(self) -> CertificationTypeRecord | None:
        """Default active certification, falling back to the first active one."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM certification_types
                WHERE is_active = 1
                ORDER BY is_default DESC, sort_order, id
                LIMIT 1
            """
            ).fetchone()
            return CertificationTypeRecord.from_row(row) if row else None

    def list_certification_types(self, active_only: bool = True) -> list[CertificationTypeRecord]:
        """List certification types in display order."""
        query = "SELECT * FROM certification_types"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY sort_order, id"
        with self._transaction() as conn:
            return [CertificationTypeRecord.from_row(r) for r in conn.execute(query).fetchall()]

    def upsert_language(self, code: str, name: str, tier: int = 1, multiplier: Decimal = Decimal("1.00")) -> int:
        """Insert or update a language. Returns its ID."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO languages (code, name, tier, multiplier) VALUES (?, ?, ?, ?)
                ON CONFLICT(code) DO UPDATE SET
                    name = excluded.name, tier = excluded.tier, multiplier = excluded.multiplier
            """,
                (code, name, tier, str(multiplier)),
            )
            row = conn.execute("SELECT id FROM languages WHERE code = ?", (code,)).fetchone()
            return row["id"]

    def get_language(self, language_id: int) -> LanguageRecord | None:
        """Get a language by ID."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM languages WHERE id = ?", (language_id,)).fetchone()
            return LanguageRecord.from_row(row) if row else None

    def get_language_by_code(self, code: str) -> LanguageRecord | None:
        """Get a language by code (e.g. 'it')."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM languages WHERE code = ?", (code,)).fetchone()
            return LanguageRecord.from_row(row) if row else None

    def upsert_document_type(
        self, code: str, name: str, default_certification_type_id: int | None = None
    ) -> int:
        """Insert or update a document type. Returns its ID."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO document_types (code, name, default_certification_type_id)
                VALUES (?, ?, ?)
                ON CONFLICT(code) DO UPDATE SET
                    name = excluded.name,
                    default_certification_type_id = excluded.default_certification_type_id
            """,
                (code, name, default_certification_type_id),
            )
            row = conn.execute("SELECT id FROM document_types WHERE code = ?", (code,)).fetchone()
            return row["id"]

    def get_document_type_by_code(self, code: str) -> DocumentTypeRecord | None:
        """Get a document type by code (e.g. 'passport')."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM document_types WHERE code = ?", (code,)).fetchone()
            return DocumentTypeRecord.from_row(row) if row else None

    def upsert_delivery_option(
        self, code: str, name: str, fee: Decimal = Decimal("0.00"), is_active: bool = True
    ) -> int:
        """Insert or update a delivery option. Returns its ID."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO delivery_options (code, name, fee, is_active) VALUES (?, ?, ?, ?)
                ON CONFLICT(code) DO UPDATE SET
                    name = excluded.name, fee = excluded.fee, is_active = excluded.is_active
            """,
                (code, name, str(fee), int(is_active)),
            )
            row = conn.execute("SELECT id FROM delivery_options WHERE code = ?", (code,)).fetchone()
            return row["id"]

    def get_delivery_option(self, option_id: int) -> DeliveryOptionRecord | None:
        """Get a delivery option by ID."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM delivery_options WHERE id = ?", (option_id,)
            ).fetchone()
            return DeliveryOptionRecord.from_row(row) if row else None

    def get_delivery_option_by_code(self, code: str) -> DeliveryOptionRecord | None:
        """Get a delivery option by code."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM delivery_options WHERE code = ?", (code,)
            ).fetchone()
            return DeliveryOptionRecord.from_row(row) if row else None

    def upsert_staff(
        self, email: str, full_name: str | None = None, role: str = "reviewer", is_active: bool = True
    ) -> int:
        """Insert or update a staff user. Returns its ID."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO staff_users (email, full_name, role, is_active) VALUES (?, ?, ?, ?)
                ON CONFLICT(email) DO UPDATE SET
                    full_name = excluded.full_name, role = excluded.role,
                    is_active = excluded.is_active
            """,
                (email, full_name, role, int(is_active)),
            )
            row = conn.execute("SELECT id FROM staff_users WHERE email = ?", (email,)).fetchone()
            return row["id"]

    def get_staff(self, staff_id: int) -> StaffRecord | None:
        """Get a staff user by ID."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM staff_users WHERE id = ?", (staff_id,)).fetchone()
            return StaffRecord.from_row(row) if row else None

    def load_reference_data(self, data: dict[str, Any]) -> dict[str, int]:
        """
        Seed reference data from a dictionary (typically parsed YAML).

        Expected keys (all optional): certification_types, languages,
        document_types, delivery_options, staff. Document types reference
        their default certification by code.

        Returns:
            Count of upserted rows per section
        """
        counts = {
            "certification_types": 0,
            "languages": 0,
            "document_types": 0,
            "delivery_options": 0,
            "staff": 0,
        }

        with self._transaction():
            for item in data.get("certification_types") or []:
                self.upsert_certification_type(
                    code=item["code"],
                    name=item.get("name", item["code"]),
                    price=Decimal(str(item.get("price", "0.00"))),
                    is_default=bool(item.get("is_default", False)),
                    is_active=bool(item.get("is_active", True)),
                    sort_order=int(item.get("sort_order", 0)),
                )
                counts["certification_types"] += 1

            for item in data.get("languages") or []:
                self.upsert_language(
                    code=item["code"],
                    name=item.get("name", item["code"]),
                    tier=int(item.get("tier", 1)),
                    multiplier=Decimal(str(item.get("multiplier", "1.00"))),
                )
                counts["languages"] += 1

            for item in data.get("document_types") or []:
                cert_id = None
                cert_code = item.get("default_certification")
                if cert_code:
                    with self._transaction() as conn:
                        row = conn.execute(
                            "SELECT id FROM certification_types WHERE code = ?", (cert_code,)
                        ).fetchone()
                    if row is None:
                        raise ValidationError(
                            f"Document type {item['code']!r} references unknown "
                            f"certification {cert_code!r}"
                        )
                    cert_id = row["id"]
                self.upsert_document_type(
                    code=item["code"],
                    name=item.get("name", item["code"]),
                    default_certification_type_id=cert_id,
                )
                counts["document_types"] += 1

            for item in data.get("delivery_options") or []:
                self.upsert_delivery_option(
                    code=item["code"],
                    name=item.get("name", item["code"]),
                    fee=Decimal(str(item.get("fee", "0.00"))),
                    is_active=bool(item.get("is_active", True)),
                )
                counts["delivery_options"] += 1

            for item in data.get("staff") or []:
                self.upsert_staff(
                    email=item["email"],
                    full_name=item.get("full_name"),
                    role=item.get("role", "reviewer"),
                    is_active=bool(item.get("is_active", True)),
                )
                counts["staff"] += 1

        logger.info(f"Loaded reference data: {counts}")
        return counts

    # -------------------------------------------------------------------------
    # Customers
    # -------------------------------------------------------------------------

    def create_customer(
        self, full_name: str | None, email: str | None = None, phone: str | None = None
    ) -> int:
        """Create a customer. Returns the customer ID."""
        now = _now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO customers (full_name, email, phone, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
            """,
                (full_name, email, phone, now, now),
            )
            return cursor.lastrowid or 0

    def get_customer(self, customer_id: int) -> CustomerRecord | None:
        """Get a customer by ID."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM customers WHERE id = ?", (customer_id,)).fetchone()
            return CustomerRecord.from_row(row) if row else None

    def find_customer(self, email: str | None = None, phone: str | None = None) -> CustomerRecord | None:
        """Find a customer by email first, then by phone."""
        with self._transaction() as conn:
            if email:
                row = conn.execute(
                    "SELECT * FROM customers WHERE lower(email) = lower(?) ORDER BY id LIMIT 1",
                    (email,),
                ).fetchone()
                if row:
                    return CustomerRecord.from_row(row)
            if phone:
                row = conn.execute(
                    "SELECT * FROM customers WHERE phone = ? ORDER BY id LIMIT 1", (phone,)
                ).fetchone()
                if row:
                    return CustomerRecord.from_row(row)
            return None

    def update_customer_field(self, customer_id: int, column: str, value: Any) -> None:
        """Update one customer contact field."""
        if column not in _CUSTOMER_COLUMNS:
            raise ValueError(f"Not an updatable customer column: {column}")
        with self._transaction() as conn:
            conn.execute(
                f"UPDATE customers SET {column} = ?, updated_at = ? WHERE id = ?",
                (_to_db(value), _now(), customer_id),
            )

    # -------------------------------------------------------------------------
    # Quotes
    # -------------------------------------------------------------------------

    def next_quote_number(self, year: int | None = None) -> str:
        """Next sequential quote number for the year: QT-YYYY-NNNNN."""
        year = year or datetime.now(timezone.utc).year
        prefix = f"QT-{year}-"
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT quote_number FROM quotes WHERE quote_number LIKE ? "
                "ORDER BY quote_number DESC LIMIT 1",
                (f"{prefix}%",),
            ).fetchone()
        next_num = 1
        if row:
            try:
                next_num = int(row["quote_number"].rsplit("-", 1)[1]) + 1
            except ValueError:
                logger.warning(f"Unparseable quote number {row['quote_number']!r}, restarting sequence")
        return f"{prefix}{next_num:05d}"

    def create_quote(
        self,
        customer_id: int | None = None,
        tax_rate: Decimal = Decimal("0"),
        quote_number: str | None = None,
        status: QuoteStatus = QuoteStatus.DRAFT,
        source_language_id: int | None = None,
        target_language_id: int | None = None,
        is_rush: bool = False,
        delivery_option_id: int | None = None,
        is_manual: bool = False,
        created_by_staff_id: int | None = None,
        staff_notes: str | None = None,
    ) -> int:
        """Create a quote. Returns the quote ID."""
        now = _now()
        with self._transaction() as conn:
            number = quote_number or self.next_quote_number()
            cursor = conn.execute(
                """
                INSERT INTO quotes
                (quote_number, customer_id, status, source_language_id, target_language_id,
                 is_rush, delivery_option_id, tax_rate, is_manual, created_by_staff_id,
                 staff_notes, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    number,
                    customer_id,
                    QuoteStatus(status).value,
                    source_language_id,
                    target_language_id,
                    int(is_rush),
                    delivery_option_id,
                    str(tax_rate),
                    int(is_manual),
                    created_by_staff_id,
                    staff_notes,
                    now,
                    now,
                ),
            )
            return cursor.lastrowid or 0

    def get_quote(self, quote_id: int) -> QuoteRecord | None:
        """Get a quote by ID."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM quotes WHERE id = ?", (quote_id,)).fetchone()
            return QuoteRecord.from_row(row) if row else None

    def require_quote(self, quote_id: int) -> QuoteRecord:
        """Get a quote or raise NotFoundError."""
        quote = self.get_quote(quote_id)
        if quote is None:
            raise NotFoundError("Quote", quote_id)
        return quote

    def list_quotes(self, status: QuoteStatus | None = None, limit: int = 100) -> list[QuoteRecord]:
        """List quotes, newest first."""
        with self._transaction() as conn:
            if status is not None:
                rows = conn.execute(
                    "SELECT * FROM quotes WHERE status = ? ORDER BY id DESC LIMIT ?",
                    (QuoteStatus(status).value, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM quotes ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            return [QuoteRecord.from_row(r) for r in rows]

    def update_quote_fields(self, quote_id: int, fields: dict[str, Any]) -> None:
        """Update selected quote columns (never the totals; see write_quote_totals)."""
        unknown = set(fields) - _QUOTE_COLUMNS
        if unknown:
            raise ValueError(f"Not updatable quote columns: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{column} = ?" for column in fields)
        params = [_to_db(v) for v in fields.values()] + [_now(), quote_id]
        with self._transaction() as conn:
            conn.execute(f"UPDATE quotes SET {assignments}, updated_at = ? WHERE id = ?", params)

    def write_quote_totals(
        self,
        quote_id: int,
        totals: QuoteTotals,
        balance_due: Decimal,
        overpayment_credit: Decimal,
        status: QuoteStatus | None = None,
    ) -> None:
        """Write flat total columns and the calculated_totals snapshot in ONE statement."""
        snapshot = json.dumps(totals.to_snapshot(), sort_keys=True)
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE quotes SET
                    subtotal = ?, certification_total = ?, rush_fee = ?, delivery_fee = ?,
                    tax_rate = ?, tax_amount = ?, total = ?, calculated_totals = ?,
                    balance_due = ?, overpayment_credit = ?,
                    status = COALESCE(?, status), updated_at = ?
                WHERE id = ?
            """,
                (
                    str(totals.subtotal),
                    str(totals.certification_total),
                    str(totals.rush_fee),
                    str(totals.delivery_fee),
                    str(totals.tax_rate),
                    str(totals.tax_amount),
                    str(totals.total),
                    snapshot,
                    str(balance_due),
                    str(overpayment_credit),
                    QuoteStatus(status).value if status is not None else None,
                    _now(),
                    quote_id,
                ),
            )

    # -------------------------------------------------------------------------
    # Files and pages
    # -------------------------------------------------------------------------

    def add_file(self, quote_id: int, filename: str) -> int:
        """Register an uploaded file. Returns the file ID."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO quote_files (quote_id, filename, created_at) VALUES (?, ?, ?)",
                (quote_id, filename, _now()),
            )
            return cursor.lastrowid or 0

    def get_file(self, file_id: int) -> QuoteFileRecord | None:
        """Get a file by ID."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM quote_files WHERE id = ?", (file_id,)).fetchone()
            return QuoteFileRecord.from_row(row) if row else None

    def list_files(self, quote_id: int) -> list[QuoteFileRecord]:
        """List a quote's files."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM quote_files WHERE quote_id = ? ORDER BY id", (quote_id,)
            ).fetchall()
            return [QuoteFileRecord.from_row(r) for r in rows]

    def add_page(self, file_id: int, page_number: int, word_count: int = 0) -> int:
        """Register a page of a file. Returns the page ID."""
        with self._transaction() as conn:
            file_row = conn.execute(
                "SELECT quote_id FROM quote_files WHERE id = ?", (file_id,)
            ).fetchone()
            if file_row is None:
                raise NotFoundError("File", file_id)
            cursor = conn.execute(
                """
                INSERT INTO quote_pages (file_id, quote_id, page_number, word_count, created_at)
                VALUES (?, ?, ?, ?, ?)
            """,
                (file_id, file_row["quote_id"], page_number, word_count, _now()),
            )
            return cursor.lastrowid or 0

    def get_page(self, page_id: int) -> QuotePageRecord | None:
        """Get a page by ID."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM quote_pages WHERE id = ?", (page_id,)).fetchone()
            return QuotePageRecord.from_row(row) if row else None

    def list_pages(self, quote_id: int, file_id: int | None = None) -> list[QuotePageRecord]:
        """List a quote's pages, optionally for one file."""
        with self._transaction() as conn:
            if file_id is not None:
                rows = conn.execute(
                    "SELECT * FROM quote_pages WHERE quote_id = ? AND file_id = ? "
                    "ORDER BY page_number",
                    (quote_id, file_id),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM quote_pages WHERE quote_id = ? ORDER BY file_id, page_number",
                    (quote_id,),
                ).fetchall()
            return [QuotePageRecord.from_row(r) for r in rows]

    def update_page_word_count(self, page_id: int, word_count: int) -> None:
        """Set a page's word count."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE quote_pages SET word_count = ? WHERE id = ?", (word_count, page_id)
            )

    # -------------------------------------------------------------------------
    # Analysis results
    # -------------------------------------------------------------------------

    def create_analysis(
        self,
        quote_id: int,
        base_rate: Decimal,
        file_id: int | None = None,
        manual_label: str | None = None,
        detected_language: str | None = None,
        detected_document_type: str | None = None,
        assessed_complexity: str = "easy",
        complexity_multiplier: Decimal = Decimal("1.00"),
        word_count: int = 0,
        page_count: int = 1,
        billable_pages: Decimal = Decimal("0.0"),
        line_total: Decimal = Decimal("0.00"),
        certification_type_id: int | None = None,
        certification_price: Decimal = Decimal("0.00"),
        is_staff_created: bool = False,
        created_by_staff_id: int | None = None,
    ) -> int:
        """Insert an analysis result. Returns the analysis ID."""
        now = _now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO analysis_results
                (quote_id, file_id, manual_label, detected_language, detected_document_type,
                 assessed_complexity, complexity_multiplier, word_count, page_count,
                 billable_pages, base_rate, line_total, certification_type_id,
                 certification_price, overridden_fields, is_staff_created,
                 created_by_staff_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    quote_id,
                    file_id,
                    manual_label,
                    detected_language,
                    detected_document_type,
                    assessed_complexity,
                    str(complexity_multiplier),
                    word_count,
                    page_count,
                    str(billable_pages),
                    str(base_rate),
                    str(line_total),
                    certification_type_id,
                    str(certification_price),
                    "[]",
                    int(is_staff_created),
                    created_by_staff_id,
                    now,
                    now,
                ),
            )
            return cursor.lastrowid or 0

    def get_analysis(self, analysis_id: int) -> AnalysisRecord | None:
        """Get an analysis result by ID."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM analysis_results WHERE id = ?", (analysis_id,)
            ).fetchone()
            return AnalysisRecord.from_row(row) if row else None

    def get_analysis_by_file(self, file_id: int) -> AnalysisRecord | None:
        """Get the analysis result for a file."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM analysis_results WHERE file_id = ?", (file_id,)
            ).fetchone()
            return AnalysisRecord.from_row(row) if row else None

    def list_analyses(self, quote_id: int) -> list[AnalysisRecord]:
        """List a quote's analysis results."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM analysis_results WHERE quote_id = ? ORDER BY id", (quote_id,)
            ).fetchall()
            return [AnalysisRecord.from_row(r) for r in rows]

    def update_analysis_fields(self, analysis_id: int, fields: dict[str, Any]) -> None:
        """Update selected analysis columns."""
        unknown = set(fields) - _ANALYSIS_COLUMNS
        if unknown:
            raise ValueError(f"Not updatable analysis columns: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{column} = ?" for column in fields)
        params = [_to_db(v) for v in fields.values()] + [_now(), analysis_id]
        with self._transaction() as conn:
            conn.execute(
                f"UPDATE analysis_results SET {assignments}, updated_at = ? WHERE id = ?", params
            )

    # -------------------------------------------------------------------------
    # Quote-level certifications
    # -------------------------------------------------------------------------

    def add_quote_certification(
        self, quote_id: int, certification_type_id: int, price: Decimal, quantity: int = 1
    ) -> int:
        """Attach a quote-level certification. Returns its ID."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO quote_certifications
                (quote_id, certification_type_id, price, quantity, created_at)
                VALUES (?, ?, ?, ?, ?)
            """,
                (quote_id, certification_type_id, str(price), quantity, _now()),
            )
            return cursor.lastrowid or 0

    def list_quote_certifications(self, quote_id: int) -> list[QuoteCertificationRecord]:
        """List quote-level certifications."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM quote_certifications WHERE quote_id = ? ORDER BY id", (quote_id,)
            ).fetchall()
            return [QuoteCertificationRecord.from_row(r) for r in rows]

    # -------------------------------------------------------------------------
    # Document groups
    # -------------------------------------------------------------------------

    def create_group(
        self,
        quote_id: int,
        group_label: str,
        complexity: str,
        complexity_multiplier: Decimal,
        document_type: str | None = None,
        certification_type_id: int | None = None,
        certification_price: Decimal = Decimal("0.00"),
        created_by: int | None = None,
    ) -> int:
        """Create a document group numbered after the quote's last group. Returns its ID."""
        now = _now()
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(group_number), 0) AS n FROM document_groups WHERE quote_id = ?",
                (quote_id,),
            ).fetchone()
            cursor = conn.execute(
                """
                INSERT INTO document_groups
                (quote_id, group_number, group_label, document_type, complexity,
                 complexity_multiplier, certification_type_id, certification_price,
                 created_by, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    quote_id,
                    row["n"] + 1,
                    group_label,
                    document_type,
                    complexity,
                    str(complexity_multiplier),
                    certification_type_id,
                    str(certification_price),
                    created_by,
                    now,
                    now,
                ),
            )
            return cursor.lastrowid or 0

    def get_group(self, group_id: int) -> DocumentGroupRecord | None:
        """Get a document group by ID."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM document_groups WHERE id = ?", (group_id,)).fetchone()
            return DocumentGroupRecord.from_row(row) if row else None

    def list_groups(self, quote_id: int) -> list[DocumentGroupRecord]:
        """List a quote's groups by group number."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM document_groups WHERE quote_id = ? ORDER BY group_number, id",
                (quote_id,),
            ).fetchall()
            return [DocumentGroupRecord.from_row(r) for r in rows]

    def update_group_fields(self, group_id: int, fields: dict[str, Any]) -> None:
        """Update selected group columns."""
        unknown = set(fields) - _GROUP_COLUMNS
        if unknown:
            raise ValueError(f"Not updatable group columns: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{column} = ?" for column in fields)
        params = [_to_db(v) for v in fields.values()] + [_now(), group_id]
        with self._transaction() as conn:
            conn.execute(
                f"UPDATE document_groups SET {assignments}, updated_at = ? WHERE id = ?", params
            )

    def delete_group(self, group_id: int) -> int:
        """Detach all assignments and delete the group. Returns detached count."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM group_assignments WHERE group_id = ?", (group_id,))
            detached = cursor.rowcount
            conn.execute("DELETE FROM document_groups WHERE id = ?", (group_id,))
            return detached

    def renumber_groups(self, quote_id: int) -> None:
        """Renumber a quote's groups 1..n in their current order."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT id FROM document_groups WHERE quote_id = ? ORDER BY group_number, id",
                (quote_id,),
            ).fetchall()
            for number, row in enumerate(rows, start=1):
                conn.execute(
                    "UPDATE document_groups SET group_number = ? WHERE id = ?", (number, row["id"])
                )

    # -------------------------------------------------------------------------
    # Assignments
    # -------------------------------------------------------------------------

    def create_assignment(
        self,
        group_id: int,
        quote_id: int,
        item_type: ItemType,
        item_id: int,
        word_count_override: int | None = None,
        assigned_by: int | None = None,
    ) -> int:
        """Insert an assignment. Returns its ID."""
        item_type = ItemType(item_type)
        file_id = item_id if item_type == ItemType.FILE else None
        page_id = item_id if item_type == ItemType.PAGE else None
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO group_assignments
                (group_id, quote_id, item_type, file_id, page_id, word_count_override,
                 assigned_by, assigned_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    group_id,
                    quote_id,
                    item_type.value,
                    file_id,
                    page_id,
                    word_count_override,
                    assigned_by,
                    _now(),
                ),
            )
            return cursor.lastrowid or 0

    def get_assignment(self, assignment_id: int) -> AssignmentRecord | None:
        """Get an assignment by ID."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM group_assignments WHERE id = ?", (assignment_id,)
            ).fetchone()
            return AssignmentRecord.from_row(row) if row else None

    def get_assignment_for_item(self, item_type: ItemType, item_id: int) -> AssignmentRecord | None:
        """Get the current assignment of a file or page, if any."""
        column = "file_id" if ItemType(item_type) == ItemType.FILE else "page_id"
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT * FROM group_assignments WHERE {column} = ?", (item_id,)
            ).fetchone()
            return AssignmentRecord.from_row(row) if row else None

    def list_assignments(self, group_id: int) -> list[AssignmentRecord]:
        """List a group's assignments."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM group_assignments WHERE group_id = ? ORDER BY id", (group_id,)
            ).fetchall()
            return [AssignmentRecord.from_row(r) for r in rows]

    def list_quote_assignments(self, quote_id: int) -> list[AssignmentRecord]:
        """List all assignments in a quote."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM group_assignments WHERE quote_id = ? ORDER BY id", (quote_id,)
            ).fetchall()
            return [AssignmentRecord.from_row(r) for r in rows]

    def delete_assignment(self, assignment_id: int) -> None:
        """Remove an assignment."""
        with self._transaction() as conn:
            conn.execute("DELETE FROM group_assignments WHERE id = ?", (assignment_id,))

    def delete_page_assignments_for_file(self, file_id: int) -> list[int]:
        """Remove page-level assignments of a file's pages. Returns affected group IDs."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT a.group_id FROM group_assignments a
                JOIN quote_pages p ON p.id = a.page_id
                WHERE p.file_id = ?
            """,
                (file_id,),
            ).fetchall()
            conn.execute(
                """
                DELETE FROM group_assignments
                WHERE page_id IN (SELECT id FROM quote_pages WHERE file_id = ?)
            """,
                (file_id,),
            )
            return [r["group_id"] for r in rows]

    # -------------------------------------------------------------------------
    # Adjustment ledger
    # -------------------------------------------------------------------------

    def insert_adjustment(
        self,
        quote_id: int,
        adjustment_type: str,
        value_type: str,
        value: Decimal,
        calculated_amount: Decimal,
        reason: str | None = None,
        created_by: int | None = None,
        method: str | None = None,
        reference: str | None = None,
        supersedes_id: int | None = None,
    ) -> int:
        """Append a ledger entry. Returns its ID."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO quote_adjustments
                (quote_id, adjustment_type, value_type, value, calculated_amount, reason,
                 method, reference, supersedes_id, created_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    quote_id,
                    _to_db(adjustment_type),
                    _to_db(value_type),
                    str(value),
                    str(calculated_amount),
                    reason,
                    method,
                    reference,
                    supersedes_id,
                    created_by,
                    _now(),
                ),
            )
            new_id = cursor.lastrowid or 0
            if supersedes_id is not None:
                conn.execute(
                    "UPDATE quote_adjustments SET superseded_by_id = ? WHERE id = ?",
                    (new_id, supersedes_id),
                )
            return new_id

    def get_adjustment(self, adjustment_id: int) -> AdjustmentRecord | None:
        """Get a ledger entry by ID."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM quote_adjustments WHERE id = ?", (adjustment_id,)
            ).fetchone()
            return AdjustmentRecord.from_row(row) if row else None

    def list_adjustments(self, quote_id: int, active_only: bool = False) -> list[AdjustmentRecord]:
        """List a quote's ledger entries in insertion order."""
        query = "SELECT * FROM quote_adjustments WHERE quote_id = ?"
        if active_only:
            query += " AND superseded_by_id IS NULL"
        query += " ORDER BY id"
        with self._transaction() as conn:
            records = [AdjustmentRecord.from_row(r) for r in conn.execute(query, (quote_id,)).fetchall()]
        if active_only:
            records = [r for r in records if not r.is_void]
        return records

    # -------------------------------------------------------------------------
    # Correction audit log
    # -------------------------------------------------------------------------

    def insert_correction(
        self,
        quote_id: int,
        field_name: str,
        ai_value: str | None,
        corrected_value: str | None,
        reason: str | None = None,
        staff_id: int | None = None,
        analysis_id: int | None = None,
        group_id: int | None = None,
        file_id: int | None = None,
        page_id: int | None = None,
        submit_to_knowledge_base: bool = False,
        knowledge_base_comment: str | None = None,
    ) -> int:
        """Write a correction audit record. Returns its ID."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO staff_corrections
                (quote_id, analysis_id, group_id, file_id, page_id, field_name, ai_value,
                 corrected_value, reason, submit_to_knowledge_base, knowledge_base_comment,
                 staff_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    quote_id,
                    analysis_id,
                    group_id,
                    file_id,
                    page_id,
                    field_name,
                    ai_value,
                    corrected_value,
                    reason,
                    int(submit_to_knowledge_base),
                    knowledge_base_comment,
                    staff_id,
                    _now(),
                ),
            )
            return cursor.lastrowid or 0

    def list_corrections(
        self,
        quote_id: int | None = None,
        field_name: str | None = None,
        knowledge_base_only: bool = False,
        limit: int = 500,
    ) -> list[CorrectionRecord]:
        """List corrections in commit order."""
        query = "SELECT * FROM staff_corrections WHERE 1=1"
        params: list[Any] = []
        if quote_id is not None:
            query += " AND quote_id = ?"
            params.append(quote_id)
        if field_name is not None:
            query += " AND field_name = ?"
            params.append(field_name)
        if knowledge_base_only:
            query += " AND submit_to_knowledge_base = 1"
        query += " ORDER BY id LIMIT ?"
        params.append(limit)
        with self._transaction() as conn:
            return [CorrectionRecord.from_row(r) for r in conn.execute(query, params).fetchall()]

    # -------------------------------------------------------------------------
    # Staff activity log
    # -------------------------------------------------------------------------

    def insert_activity(self, event: ActivityEvent) -> int:
        """Persist a staff activity event. Returns its ID."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO staff_activity_log
                (staff_id, activity_type, entity_type, entity_id, quote_id, details, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    event.staff_id,
                    event.activity_type.value,
                    event.entity_type,
                    event.entity_id,
                    event.quote_id,
                    json.dumps(event.details_json_safe(), sort_keys=True),
                    _now(),
                ),
            )
            return cursor.lastrowid or 0

    def list_activity(self, quote_id: int | None = None, limit: int = 200) -> list[ActivityRecord]:
        """List activity entries in insertion order."""
        with self._transaction() as conn:
            if quote_id is not None:
                rows = conn.execute(
                    "SELECT * FROM staff_activity_log WHERE quote_id = ? ORDER BY id LIMIT ?",
                    (quote_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM staff_activity_log ORDER BY id LIMIT ?", (limit,)
                ).fetchall()
            return [ActivityRecord.from_row(r) for r in rows]

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Get pipeline statistics."""
        with self._transaction() as conn:
            stats: dict[str, Any] = {}
            for table in (
                "quotes",
                "quote_files",
                "analysis_results",
                "document_groups",
                "group_assignments",
                "quote_adjustments",
                "staff_corrections",
                "staff_activity_log",
            ):
                stats[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

            stats["quotes_by_status"] = {
                row["status"]: row["n"]
                for row in conn.execute(
                    "SELECT status, COUNT(*) AS n FROM quotes GROUP BY status"
                ).fetchall()
            }
            stats["knowledge_base_corrections"] = conn.execute(
                "SELECT COUNT(*) FROM staff_corrections WHERE submit_to_knowledge_base = 1"
            ).fetchone()[0]
            return stats
