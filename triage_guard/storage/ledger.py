"""
Prepaid credit ledger.

Each caller has one account row holding a cached balance and an append-only
log of top-ups and debits. Every mutation is a single read-modify-write inside
an immediate SQLite transaction, so a concurrent debit can never observe a
stale balance.

Two operating modes exist:

* ``UsageLedger``: the persistent ledger.
* ``OfflineLedger``: the disabled mode for local and test runs. It reports a
  zero balance, credits nominally without persisting, and accepts every debit
  against an effectively unlimited balance without writing anything.

Use ``build_ledger`` to pick the mode from settings.
"""

import json
import logging
import sys
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Dict, List, Mapping, Optional

from ..core.errors import InsufficientCreditError
from .db import DEFAULT_DB_PATH, get_connection, write_transaction
from .models import LedgerAccount, LedgerTransaction, TransactionType


logger = logging.getLogger(__name__)


CREDIT_CONVERSION_RATE = Decimal("0.5")

SCALAR_TYPES = (str, int, float, bool)


@dataclass(frozen=True)
class BalanceSnapshot:
    balance_cents: int
    updated_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "balanceCents": self.balance_cents,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class TopUpResult:
    credited_cents: int
    previous_balance_cents: int
    new_balance_cents: int


@dataclass(frozen=True)
class DebitResult:
    previous_balance_cents: int
    new_balance_cents: int


@dataclass(frozen=True)
class LedgerAudit:
    """Comparison of the cached balance with a replay of the transaction log."""
    caller_id: str
    balance_cents: int
    replayed_balance_cents: int
    transaction_count: int

    @property
    def drift_cents(self) -> int:
        return self.balance_cents - self.replayed_balance_cents

    @property
    def consistent(self) -> bool:
        return self.drift_cents == 0


def convert_charge(charge_cents: int, rate: Decimal = CREDIT_CONVERSION_RATE) -> int:
    """Credits granted for a payment of ``charge_cents``, rounded down."""
    if charge_cents <= 0:
        return 0
    return int((Decimal(charge_cents) * rate).to_integral_value(rounding=ROUND_FLOOR))


def sanitize_metadata(metadata: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    """Keep only scalar or null values.

    Nested objects and arrays are dropped so the audit log stays flat.

    Returns:
        The filtered mapping, or None when nothing remains
    """
    if not metadata:
        return None
    cleaned = {
        str(key): value
        for key, value in metadata.items()
        if value is None or isinstance(value, SCALAR_TYPES)
    }
    return cleaned or None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Ledger(ABC):
    """Operations shared by both ledger modes."""

    @property
    @abstractmethod
    def is_active(self) -> bool:
        """False when the ledger is disabled and nothing is persisted."""

    @abstractmethod
    def balance(self, caller_id: str) -> BalanceSnapshot:
        pass

    @abstractmethod
    def credit(
        self,
        caller_id: str,
        charge_cents: int,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> TopUpResult:
        pass

    @abstractmethod
    def debit(
        self,
        caller_id: str,
        amount_cents: int,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> DebitResult:
        pass

    @abstractmethod
    def transactions(self, caller_id: str, limit: int = 100) -> List[LedgerTransaction]:
        pass

    @abstractmethod
    def account(self, caller_id: str) -> Optional[LedgerAccount]:
        pass

    @abstractmethod
    def merge_account_profile(
        self,
        caller_id: str,
        customer_id: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> bool:
        pass

    @abstractmethod
    def audit(self, caller_id: str) -> LedgerAudit:
        pass


class UsageLedger(Ledger):
    """SQLite-backed ledger.

    The cached ``balance_cents`` on the account row is the source of truth.
    ``audit`` replays the log to detect drift but never corrects it.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        conversion_rate: Decimal = CREDIT_CONVERSION_RATE,
    ):
        """Initialize the ledger.

        Args:
            db_path: Path to SQLite database file (schema must already exist)
            conversion_rate: Credits granted per cent charged
        """
        self.db_path = db_path
        self.conversion_rate = Decimal(conversion_rate)

    @property
    def is_active(self) -> bool:
        return True

    def balance(self, caller_id: str) -> BalanceSnapshot:
        """Current balance, zero with no timestamp for an unknown caller."""
        account = self.account(caller_id)
        if account is None:
            return BalanceSnapshot(balance_cents=0, updated_at=None)
        return BalanceSnapshot(balance_cents=account.balance_cents, updated_at=account.updated_at)

    def account(self, caller_id: str) -> Optional[LedgerAccount]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                """
                SELECT caller_id, balance_cents, updated_at, customer_id, customer_email
                FROM billing_accounts WHERE caller_id = ?
                """,
                (caller_id,),
            ).fetchone()
        finally:
            conn.close()

        if row is None:
            return None
        return LedgerAccount(
            caller_id=row["caller_id"],
            balance_cents=int(row["balance_cents"]),
            updated_at=_parse_timestamp(row["updated_at"]),
            customer_id=row["customer_id"],
            customer_email=row["customer_email"],
        )

    def credit(
        self,
        caller_id: str,
        charge_cents: int,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> TopUpResult:
        """Convert a payment into credits and add them to the balance.

        Args:
            caller_id: Account to credit
            charge_cents: Amount the caller paid, in cents
            metadata: Provenance for the top-up row; non-scalar values are dropped

        Returns:
            Credited amount with the balance before and after
        """
        credited = convert_charge(charge_cents, self.conversion_rate)
        timestamp = _now()

        with write_transaction(self.db_path) as conn:
            previous = self._read_balance(conn, caller_id)
            new_balance = previous + credited
            self._write_balance(conn, caller_id, new_balance, timestamp)
            if credited > 0:
                self._append(
                    conn, caller_id, TransactionType.TOPUP, credited, new_balance, timestamp, metadata
                )

        logger.info("Credited %d cents to %s (balance %d -> %d)", credited, caller_id, previous, new_balance)
        return TopUpResult(
            credited_cents=credited,
            previous_balance_cents=previous,
            new_balance_cents=new_balance,
        )

    def debit(
        self,
        caller_id: str,
        amount_cents: int,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> DebitResult:
        """Subtract ``amount_cents`` from the balance.

        A non-positive amount is a no-op that reports the current balance.

        Raises:
            InsufficientCreditError: If the balance read inside the transaction
                is below ``amount_cents``. Nothing is written in that case.
        """
        if amount_cents <= 0:
            current = self.balance(caller_id).balance_cents
            return DebitResult(previous_balance_cents=current, new_balance_cents=current)

        timestamp = _now()
        with write_transaction(self.db_path) as conn:
            previous = self._read_balance(conn, caller_id)
            if previous < amount_cents:
                raise InsufficientCreditError(
                    balance_cents=previous,
                    requested_cents=amount_cents,
                )
            new_balance = previous - amount_cents
            self._write_balance(conn, caller_id, new_balance, timestamp)
            self._append(
                conn, caller_id, TransactionType.DEBIT, amount_cents, new_balance, timestamp, metadata
            )

        logger.info("Debited %d cents from %s (balance %d -> %d)", amount_cents, caller_id, previous, new_balance)
        return DebitResult(previous_balance_cents=previous, new_balance_cents=new_balance)

    def transactions(self, caller_id: str, limit: int = 100) -> List[LedgerTransaction]:
        """Ledger entries for a caller, newest first."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                """
                SELECT id, caller_id, type, amount_cents, balance_after_cents,
                       created_at, metadata
                FROM billing_transactions
                WHERE caller_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (caller_id, limit),
            ).fetchall()
        finally:
            conn.close()

        return [
            LedgerTransaction(
                id=row["id"],
                caller_id=row["caller_id"],
                type=TransactionType(row["type"]),
                amount_cents=int(row["amount_cents"]),
                balance_after_cents=int(row["balance_after_cents"]),
                created_at=datetime.fromisoformat(row["created_at"]),
                metadata=json.loads(row["metadata"]) if row["metadata"] else None,
            )
            for row in rows
        ]

    def merge_account_profile(
        self,
        caller_id: str,
        customer_id: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> bool:
        """Record payment-provider identifiers without touching the balance.

        Fields passed as None keep their stored value.

        Returns:
            True if anything was written
        """
        if not customer_id and not customer_email:
            return False

        with write_transaction(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO billing_accounts (caller_id, balance_cents, customer_id, customer_email)
                VALUES (?, 0, ?, ?)
                ON CONFLICT (caller_id) DO UPDATE SET
                    customer_id = COALESCE(excluded.customer_id, customer_id),
                    customer_email = COALESCE(excluded.customer_email, customer_email)
                """,
                (caller_id, customer_id or None, customer_email or None),
            )
        return True

    def audit(self, caller_id: str) -> LedgerAudit:
        """Replay the transaction log and compare it with the cached balance."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                """
                SELECT
                    COALESCE(SUM(CASE WHEN type = 'topup' THEN amount_cents ELSE -amount_cents END), 0),
                    COUNT(*)
                FROM billing_transactions WHERE caller_id = ?
                """,
                (caller_id,),
            ).fetchone()
        finally:
            conn.close()

        audit = LedgerAudit(
            caller_id=caller_id,
            balance_cents=self.balance(caller_id).balance_cents,
            replayed_balance_cents=int(row[0]),
            transaction_count=int(row[1]),
        )
        if not audit.consistent:
            logger.warning(
                "Ledger drift for %s: balance %d, log replay %d",
                caller_id, audit.balance_cents, audit.replayed_balance_cents,
            )
        return audit

    @staticmethod
    def _read_balance(conn, caller_id: str) -> int:
        row = conn.execute(
            "SELECT balance_cents FROM billing_accounts WHERE caller_id = ?",
            (caller_id,),
        ).fetchone()
        return int(row["balance_cents"]) if row else 0

    @staticmethod
    def _write_balance(conn, caller_id: str, balance_cents: int, timestamp: datetime) -> None:
        conn.execute(
            """
            INSERT INTO billing_accounts (caller_id, balance_cents, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT (caller_id) DO UPDATE SET
                balance_cents = excluded.balance_cents,
                updated_at = excluded.updated_at
            """,
            (caller_id, balance_cents, timestamp.isoformat()),
        )

    @staticmethod
    def _append(
        conn,
        caller_id: str,
        kind: TransactionType,
        amount_cents: int,
        balance_after_cents: int,
        timestamp: datetime,
        metadata: Optional[Mapping[str, Any]],
    ) -> None:
        cleaned = sanitize_metadata(metadata)
        conn.execute(
            """
            INSERT INTO billing_transactions (
                id, caller_id, type, amount_cents, balance_after_cents, created_at, metadata
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                uuid.uuid4().hex,
                caller_id,
                kind.value,
                amount_cents,
                balance_after_cents,
                timestamp.isoformat(),
                json.dumps(cleaned) if cleaned is not None else None,
            ),
        )


class OfflineLedger(Ledger):
    """Disabled ledger mode.

    Nothing is read or written. Balances read as zero, credits are computed
    but not stored, and debits always succeed against ``sys.maxsize``.
    Callers check ``is_active`` to skip balance gating entirely.
    """

    def __init__(self, conversion_rate: Decimal = CREDIT_CONVERSION_RATE):
        self.conversion_rate = Decimal(conversion_rate)

    @property
    def is_active(self) -> bool:
        return False

    def balance(self, caller_id: str) -> BalanceSnapshot:
        return BalanceSnapshot(balance_cents=0, updated_at=None)

    def credit(
        self,
        caller_id: str,
        charge_cents: int,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> TopUpResult:
        credited = convert_charge(charge_cents, self.conversion_rate)
        return TopUpResult(credited_cents=credited, previous_balance_cents=0, new_balance_cents=credited)

    def debit(
        self,
        caller_id: str,
        amount_cents: int,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> DebitResult:
        return DebitResult(previous_balance_cents=sys.maxsize, new_balance_cents=sys.maxsize)

    def transactions(self, caller_id: str, limit: int = 100) -> List[LedgerTransaction]:
        return []

    def account(self, caller_id: str) -> Optional[LedgerAccount]:
        return None

    def merge_account_profile(
        self,
        caller_id: str,
        customer_id: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> bool:
        return False

    def audit(self, caller_id: str) -> LedgerAudit:
        return LedgerAudit(caller_id=caller_id, balance_cents=0, replayed_balance_cents=0, transaction_count=0)


def build_ledger(
    db_path: str = DEFAULT_DB_PATH,
    disabled: bool = False,
    conversion_rate: Decimal = CREDIT_CONVERSION_RATE,
) -> Ledger:
    """Return the ledger for the configured operating mode."""
    if disabled:
        logger.warning("Ledger disabled: balances are not enforced and nothing is persisted")
        return OfflineLedger(conversion_rate=conversion_rate)
    return UsageLedger(db_path=db_path, conversion_rate=conversion_rate)
