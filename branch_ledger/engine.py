"""
Ledger Engine Module

Validates, executes and reverses staff cash transactions. Every operation
mutates exactly one staff balance and one transaction record inside a single
atomic unit; the audit entry is emitted afterwards and never affects the
outcome.

Balance math (staff party only):

- credit: commission = amount * deposit_deduction_rate / 100,
  final = amount - commission, balance_after = balance_before + final
- debit: commission = amount * commission_rate / 100,
  final = amount - commission, balance_after = balance_before - final

Staff balances may go negative. Reversal applies the inverse delta to the
live balance, not to the stored ``balance_before``.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union
import re
import uuid

from .atomic import AtomicUnit, UnitOfWork
from .audit import AuditAction, AuditRecorder, RequestMeta
from .directory import BranchDirectory, Party, PartyDirectory, PartyRole
from .errors import (
    InvalidAmountError, InvalidKindError, InvalidReferenceError, InvalidPartyError,
    InactiveBranchError, UnauthorizedBranchAccessError, InvalidTransactionKindError,
    ForbiddenError, ReversalWindowExpiredError, TransactionNotFoundError,
    DuplicateReferenceError
)
from .logging_config import get_logger, log_action
from .money import Amount, ZERO, quantize, percent_of, to_decimal
from .policy import Policy, PolicyStore
from .storage import DuplicateKeyError
from .transactions import (
    Transaction, TransactionKind, TransactionStatus, TransactionStore
)


UTR_PATTERN = re.compile(r'[A-Za-z0-9]{10,22}')

REVERSIBLE_KINDS = (TransactionKind.CREDIT, TransactionKind.DEBIT)


@dataclass
class ReversalResult:
    """Outcome of a compensating delete"""
    transaction_id: str
    kind: TransactionKind
    reversed_amount: Decimal
    old_balance: Decimal
    new_balance: Decimal
    staff_id: str
    reversed_by: str
    reversed_by_role: PartyRole


def calculate_effect(
    kind: TransactionKind,
    amount: Decimal,
    balance_before: Decimal,
    policy: Policy
) -> Tuple[Decimal, Decimal, Decimal]:
    """
    Apply the commission policy to a requested amount

    Returns:
        (commission, final_amount, balance_after), each rounded to cents
    """
    if kind == TransactionKind.CREDIT:
        commission = percent_of(amount, policy.deposit_deduction_rate)
        final_amount = quantize(amount - commission)
        balance_after = quantize(balance_before + final_amount)
    elif kind == TransactionKind.DEBIT:
        commission = percent_of(amount, policy.commission_rate)
        final_amount = quantize(amount - commission)
        balance_after = quantize(balance_before - final_amount)
    else:
        raise InvalidKindError(f"Invalid transaction type: {kind}")
    return commission, final_amount, balance_after


def reversal_balance(transaction: Transaction, current_balance: Decimal) -> Decimal:
    """Live balance after undoing a transaction's effect"""
    if transaction.kind == TransactionKind.CREDIT:
        return quantize(current_balance - transaction.final_amount)
    if transaction.kind == TransactionKind.DEBIT:
        return quantize(current_balance + transaction.final_amount)
    raise InvalidTransactionKindError(f"Invalid transaction type: {transaction.kind}")


class LedgerEngine:
    """
    Creates, reverses and reads ledger transactions
    """

    def __init__(
        self,
        transactions: TransactionStore,
        parties: PartyDirectory,
        branches: BranchDirectory,
        policy_store: PolicyStore,
        atomic_unit: AtomicUnit,
        audit_recorder: Optional[AuditRecorder] = None,
        staff_reversal_window: timedelta = timedelta(hours=24)
    ):
        self.transactions = transactions
        self.parties = parties
        self.branches = branches
        self.policy_store = policy_store
        self.atomic_unit = atomic_unit
        self.audit_recorder = audit_recorder
        self.staff_reversal_window = staff_reversal_window
        self.logger = get_logger("branch_ledger.engine")

    def create_transaction(
        self,
        client_id: str,
        staff_id: str,
        branch_id: str,
        kind: Union[TransactionKind, str],
        amount: Amount,
        utr_id: str,
        remark: str = "",
        policy: Optional[Policy] = None,
        request_meta: Optional[RequestMeta] = None
    ) -> Transaction:
        """
        Validate and apply a credit or debit against the staff balance

        Args:
            client_id: Client depositing or withdrawing cash
            staff_id: Staff party whose balance changes
            branch_id: Branch where the cash changed hands
            kind: "credit" or "debit"
            amount: Requested amount, must be positive
            utr_id: External reference, alphanumeric, 10-22 characters,
                unique across the whole ledger
            remark: Free text
            policy: Rates to apply; read from the policy store when omitted
            request_meta: Caller details for the audit entry

        Returns:
            The persisted Transaction

        Raises:
            InvalidKindError, InvalidAmountError, InvalidReferenceError,
            InvalidPartyError, InactiveBranchError,
            UnauthorizedBranchAccessError, DuplicateReferenceError,
            ConsistencyError, PartialWriteError
        """
        txn_kind = self._parse_kind(kind)
        value = self._parse_amount(amount)
        reference = self._validate_reference(utr_id)

        def work(uow: UnitOfWork) -> Transaction:
            self._resolve_client(client_id)
            self._resolve_branch(branch_id)
            staff = self._resolve_staff(staff_id, branch_id)
            current_policy = policy or self.policy_store.get_policy()

            balance_before = staff.balance
            commission, final_amount, balance_after = calculate_effect(
                txn_kind, value, balance_before, current_policy
            )

            now = datetime.now(timezone.utc)
            transaction = Transaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                client_id=client_id,
                staff_id=staff.id,
                branch_id=branch_id,
                kind=txn_kind,
                amount=value,
                commission=commission,
                final_amount=final_amount,
                utr_id=reference,
                balance_before=balance_before,
                balance_after=balance_after,
                remark=(remark or "").strip(),
                status=TransactionStatus.COMPLETED
            )

            # Record first: a duplicate reference then fails before any balance moves
            try:
                uow.write("insert_transaction", self.transactions.insert, transaction)
            except DuplicateKeyError as e:
                if e.field == "utr_id":
                    raise DuplicateReferenceError(reference) from e
                raise
            uow.write("save_balance", self.parties.save_balance, staff.id, balance_after)
            return transaction

        transaction = self.atomic_unit.run(work, operation="create_transaction")

        action = (AuditAction.TRANSACTION_CREDIT if txn_kind == TransactionKind.CREDIT
                  else AuditAction.TRANSACTION_DEBIT)
        self._audit(
            actor_id=staff_id,
            action=action,
            resource_id=transaction.id,
            details={
                'amount': transaction.amount,
                'final_amount': transaction.final_amount,
                'commission': transaction.commission,
                'staff_balance_after': transaction.balance_after
            },
            request_meta=request_meta
        )

        log_action(
            self.logger, "info",
            f"Transaction {txn_kind.value} completed: {transaction.id}, "
            f"staff balance: {transaction.balance_after}",
            actor_id=staff_id, action=action.value,
            resource=f"transaction:{transaction.id}",
            extra={
                "utr_id": transaction.utr_id,
                "amount": str(transaction.amount),
                "commission": str(transaction.commission),
                "final_amount": str(transaction.final_amount),
                "mode": self.atomic_unit.mode
            }
        )

        return transaction

    def reverse_transaction(
        self,
        transaction_id: str,
        requesting_role: Union[PartyRole, str],
        requesting_party_id: str,
        request_meta: Optional[RequestMeta] = None,
        now: Optional[datetime] = None
    ) -> ReversalResult:
        """
        Delete a transaction and apply the inverse delta to the live staff balance

        Admins may reverse anything. Staff may reverse only their own
        transactions, and only within the reversal window.

        Args:
            transaction_id: Transaction to reverse
            requesting_role: Role of the party asking
            requesting_party_id: ID of the party asking
            request_meta: Caller details for the audit entry
            now: Reference time for the age check (defaults to current time)

        Returns:
            ReversalResult with old and new staff balance

        Raises:
            ForbiddenError, TransactionNotFoundError, ReversalWindowExpiredError,
            InvalidTransactionKindError, InvalidPartyError, ConsistencyError,
            PartialWriteError
        """
        role = self._parse_role(requesting_role)
        if role not in (PartyRole.ADMIN, PartyRole.STAFF):
            raise ForbiddenError("Only admin or staff can delete transactions")
        reference_time = now or datetime.now(timezone.utc)
        if reference_time.tzinfo is None:
            reference_time = reference_time.replace(tzinfo=timezone.utc)

        def work(uow: UnitOfWork) -> ReversalResult:
            transaction = self.transactions.find_by_id(transaction_id)
            if not transaction:
                raise TransactionNotFoundError(transaction_id)

            self._authorize_reversal(transaction, role, requesting_party_id, reference_time)

            if transaction.kind not in REVERSIBLE_KINDS:
                raise InvalidTransactionKindError(f"Invalid transaction type: {transaction.kind}")

            staff = self.parties.find_party(transaction.staff_id)
            if not staff:
                raise InvalidPartyError(f"Staff member {transaction.staff_id} not found")

            old_balance = staff.balance
            new_balance = reversal_balance(transaction, old_balance)

            # Delete first: a concurrent reversal that already removed it writes nothing
            if not uow.write("delete_transaction", self.transactions.delete, transaction.id):
                raise TransactionNotFoundError(transaction_id)
            uow.write("save_balance", self.parties.save_balance, staff.id, new_balance)

            return ReversalResult(
                transaction_id=transaction.id,
                kind=transaction.kind,
                reversed_amount=transaction.final_amount,
                old_balance=old_balance,
                new_balance=new_balance,
                staff_id=staff.id,
                reversed_by=requesting_party_id,
                reversed_by_role=role
            )

        result = self.atomic_unit.run(work, operation="reverse_transaction")

        self._audit(
            actor_id=requesting_party_id,
            action=AuditAction.DELETE_TRANSACTION,
            resource_id=result.transaction_id,
            details={
                'deleted_by': role.value,
                'transaction_type': result.kind.value,
                'final_amount': result.reversed_amount,
                'old_staff_balance': result.old_balance,
                'new_staff_balance': result.new_balance,
                'reversal_amount': result.reversed_amount
            },
            request_meta=request_meta
        )

        log_action(
            self.logger, "info",
            f"Transaction deleted: {result.transaction_id} by {role.value} "
            f"{requesting_party_id}. Staff balance: {result.old_balance} -> {result.new_balance}",
            actor_id=requesting_party_id, action=AuditAction.DELETE_TRANSACTION.value,
            resource=f"transaction:{result.transaction_id}",
            extra={"mode": self.atomic_unit.mode}
        )

        return result

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Get transaction by ID"""
        return self.transactions.find_by_id(transaction_id)

    def list_transactions(
        self,
        client_id: Optional[str] = None,
        staff_id: Optional[str] = None,
        branch_id: Optional[str] = None,
        kind: Optional[Union[TransactionKind, str]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[Transaction]:
        """List transactions, most recent first"""
        transactions = self.transactions.find(
            client_id=client_id,
            staff_id=staff_id,
            branch_id=branch_id,
            kind=self._parse_kind(kind) if kind else None,
            start=start,
            end=end
        )
        transactions.reverse()
        if limit is not None:
            transactions = transactions[:limit]
        return transactions

    def _authorize_reversal(
        self,
        transaction: Transaction,
        role: PartyRole,
        requesting_party_id: str,
        now: datetime
    ) -> None:
        if role == PartyRole.ADMIN:
            return

        if transaction.staff_id != requesting_party_id:
            raise ForbiddenError("You can only delete your own transactions")

        age = now - transaction.created_at
        if age > self.staff_reversal_window:
            raise ReversalWindowExpiredError(age, self.staff_reversal_window)

    def _resolve_client(self, client_id: str) -> Party:
        client = self.parties.find_party(client_id)
        if not client or client.role != PartyRole.CLIENT or not client.is_active:
            raise InvalidPartyError("Invalid client")
        return client

    def _resolve_branch(self, branch_id: str) -> None:
        branch = self.branches.find_branch(branch_id)
        if not branch or not branch.is_active:
            raise InactiveBranchError("Invalid or inactive branch")

    def _resolve_staff(self, staff_id: str, branch_id: str) -> Party:
        staff = self.parties.find_party(staff_id)
        if not staff or staff.role != PartyRole.STAFF or not staff.is_active:
            raise InvalidPartyError("Invalid staff member")
        if not staff.can_access_branch(branch_id):
            raise UnauthorizedBranchAccessError("Staff does not have access to this branch")
        return staff

    def _audit(self, actor_id: str, action: AuditAction, resource_id: str,
               details: Dict[str, Any], request_meta: Optional[RequestMeta]) -> None:
        if not self.audit_recorder:
            return
        try:
            self.audit_recorder.record(
                actor_id=actor_id,
                action=action,
                resource_type="transaction",
                resource_id=resource_id,
                details=details,
                request_meta=request_meta
            )
        except Exception as e:
            self.logger.error(f"Audit log creation failed: {e}", exc_info=True)

    @staticmethod
    def _parse_kind(kind: Union[TransactionKind, str]) -> TransactionKind:
        try:
            return TransactionKind(kind)
        except ValueError:
            raise InvalidKindError(f"Invalid transaction type: {kind}")

    @staticmethod
    def _parse_role(role: Union[PartyRole, str]) -> PartyRole:
        try:
            return PartyRole(role)
        except ValueError:
            raise ForbiddenError(f"Unknown role: {role}")

    @staticmethod
    def _parse_amount(amount: Amount) -> Decimal:
        try:
            value = to_decimal(amount)
        except ValueError:
            raise InvalidAmountError(f"Amount must be a number, got {amount!r}")
        try:
            cents = quantize(value)
        except InvalidOperation:
            raise InvalidAmountError(f"Amount is out of range: {amount!r}")
        if cents != value:
            raise InvalidAmountError("Amount must have at most 2 decimal places")
        if cents <= ZERO:
            raise InvalidAmountError("Amount must be greater than 0")
        return cents

    @staticmethod
    def _validate_reference(utr_id: str) -> str:
        reference = (utr_id or "").strip() if isinstance(utr_id, str) else ""
        if not UTR_PATTERN.fullmatch(reference):
            raise InvalidReferenceError("UTR ID must be alphanumeric and 10-22 characters long")
        return reference
