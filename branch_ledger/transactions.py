"""
Transaction Records Module

Immutable ledger entries and the store that persists them. The store enforces
global uniqueness of the UTR reference through a unique index and offers the
date-range and grouped reads used by dashboards and the daily aggregator.
"""

from decimal import Decimal
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Any, Tuple
from enum import Enum

from .money import ZERO, quantize
from .storage import StorageInterface, StorageRecord


class TransactionKind(Enum):
    """Direction of cash movement seen from the client"""
    CREDIT = "credit"  # Client deposits cash with staff
    DEBIT = "debit"    # Staff pays cash out to client


class TransactionStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"  # The engine only ever produces completed records
    FAILED = "failed"


@dataclass
class Transaction(StorageRecord):
    """
    Ledger entry. Never updated after creation; destroyed only by reversal.

    ``balance_before``/``balance_after`` are the staff party's balance around
    this transaction, so ``balance_after - balance_before`` is
    ``+final_amount`` for credits and ``-final_amount`` for debits.
    """
    client_id: str
    staff_id: str
    branch_id: str
    kind: TransactionKind
    amount: Decimal
    commission: Decimal
    final_amount: Decimal
    utr_id: str
    balance_before: Decimal
    balance_after: Decimal
    remark: str = ""
    status: TransactionStatus = TransactionStatus.COMPLETED

    @property
    def signed_amount(self) -> Decimal:
        """Effect of this transaction on the staff balance"""
        if self.kind == TransactionKind.CREDIT:
            return self.final_amount
        return -self.final_amount

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        data = dict(data)
        data['kind'] = TransactionKind(data['kind'])
        data['status'] = TransactionStatus(data['status'])
        for key in ('amount', 'commission', 'final_amount', 'balance_before', 'balance_after'):
            data[key] = Decimal(data[key])
        return super().from_dict(data)


@dataclass
class TransactionTotals:
    """Running totals over a set of transactions"""
    total_credit: Decimal = ZERO
    total_debit: Decimal = ZERO
    total_commission: Decimal = ZERO
    transaction_count: int = 0

    def add(self, transaction: Transaction) -> None:
        if transaction.kind == TransactionKind.CREDIT:
            self.total_credit = quantize(self.total_credit + transaction.final_amount)
        else:
            self.total_debit = quantize(self.total_debit + transaction.final_amount)
        self.total_commission = quantize(self.total_commission + transaction.commission)
        self.transaction_count += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_credits': str(self.total_credit),
            'total_debits': str(self.total_debit),
            'commission': str(self.total_commission),
            'transaction_count': self.transaction_count
        }


def local_day_bounds(day: date, tz: tzinfo) -> Tuple[datetime, datetime]:
    """
    Local midnight of ``day`` and of the following day, both in UTC

    Returns:
        (start, end) for the half-open interval [start, end)
    """
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


class TransactionStore:
    """Persistence for transaction records"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "transactions"
        self.storage.create_unique_index(self.table_name, "utr_id")

    def insert(self, transaction: Transaction) -> None:
        """
        Insert a new record

        Raises:
            DuplicateKeyError: If the id or UTR reference is already used
        """
        self.storage.insert(self.table_name, transaction.id, transaction.to_dict())

    def delete(self, transaction_id: str) -> bool:
        """Hard delete; returns False if the record was already gone"""
        return self.storage.delete(self.table_name, transaction_id)

    def find_by_id(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return Transaction.from_dict(data)
        return None

    def find(
        self,
        client_id: Optional[str] = None,
        staff_id: Optional[str] = None,
        branch_id: Optional[str] = None,
        kind: Optional[TransactionKind] = None,
        status: Optional[TransactionStatus] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[Transaction]:
        """
        Find transactions matching all given filters

        Args:
            start: Inclusive lower bound on created_at
            end: Exclusive upper bound on created_at

        Returns:
            Matching transactions, oldest first
        """
        filters: Dict[str, Any] = {}
        if client_id:
            filters['client_id'] = client_id
        if staff_id:
            filters['staff_id'] = staff_id
        if branch_id:
            filters['branch_id'] = branch_id
        if kind:
            filters['kind'] = kind.value
        if status:
            filters['status'] = status.value

        transactions = [Transaction.from_dict(data)
                        for data in self.storage.find(self.table_name, filters)]

        if start:
            transactions = [t for t in transactions if t.created_at >= start]
        if end:
            transactions = [t for t in transactions if t.created_at < end]

        transactions.sort(key=lambda t: t.created_at)
        return transactions

    def totals(self, transactions: Iterable[Transaction]) -> TransactionTotals:
        totals = TransactionTotals()
        for transaction in transactions:
            totals.add(transaction)
        return totals

    def aggregate(
        self,
        start: datetime,
        end: datetime,
        group_by: Tuple[str, ...] = ("client_id", "branch_id"),
        **filters: Any
    ) -> Dict[Tuple[str, ...], TransactionTotals]:
        """
        Group completed transactions in [start, end) and total each group

        Args:
            start: Inclusive lower bound on created_at
            end: Exclusive upper bound on created_at
            group_by: Transaction attributes forming the group key
            **filters: Extra filters accepted by ``find``

        Returns:
            Mapping of group key tuple -> totals
        """
        groups: Dict[Tuple[str, ...], TransactionTotals] = {}
        for transaction in self.find(status=TransactionStatus.COMPLETED,
                                     start=start, end=end, **filters):
            key = tuple(getattr(transaction, attr) for attr in group_by)
            groups.setdefault(key, TransactionTotals()).add(transaction)
        return groups
