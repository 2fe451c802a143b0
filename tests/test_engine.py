"""
Test suite for the ledger engine

Covers commission math, validation order, reversal authorization, reference
uniqueness and behaviour under concurrent use in both atomic modes.
"""

import pytest
import threading
from decimal import Decimal
from datetime import timedelta, timezone

from branch_ledger.atomic import BestEffortUnit, SessionUnit
from branch_ledger.audit import AuditAction, AuditRecorder, AuditTrail
from branch_ledger.directory import BranchDirectory, PartyDirectory, PartyRole
from branch_ledger.engine import LedgerEngine, calculate_effect
from branch_ledger.errors import (
    InvalidAmountError, InvalidKindError, InvalidReferenceError, InvalidPartyError,
    InactiveBranchError, UnauthorizedBranchAccessError, ForbiddenError,
    ReversalWindowExpiredError, TransactionNotFoundError, DuplicateReferenceError,
    ConsistencyError, PartialWriteError
)
from branch_ledger.policy import Policy, PolicyStore
from branch_ledger.storage import InMemoryStorage, SQLiteStorage
from branch_ledger.transactions import TransactionKind, TransactionStatus, TransactionStore


class LedgerTestBase:
    """Builds an engine over a fresh store with one branch and its parties"""

    def make_storage(self):
        return InMemoryStorage()

    def make_unit(self, storage):
        return SessionUnit(storage, timeout_seconds=5.0)

    def setup_method(self):
        self.storage = self.make_storage()
        self.recorder = AuditRecorder(AuditTrail(self.storage))
        self.parties = PartyDirectory(self.storage)
        self.branches = BranchDirectory(self.storage)
        self.transactions = TransactionStore(self.storage)
        self.policy_store = PolicyStore(self.storage, audit_recorder=self.recorder)
        self.engine = LedgerEngine(
            transactions=self.transactions,
            parties=self.parties,
            branches=self.branches,
            policy_store=self.policy_store,
            atomic_unit=self.make_unit(self.storage),
            audit_recorder=self.recorder
        )

        self.client = self.parties.register_party("Acme Traders", PartyRole.CLIENT)
        self.branch = self.branches.register_branch("BR001", "Main Street", self.client.id)
        self.other_branch = self.branches.register_branch("BR002", "Harbour", self.client.id)
        self.staff = self.parties.register_party(
            "Ravi", PartyRole.STAFF, branch_ids=[self.branch.id]
        )
        self.other_staff = self.parties.register_party(
            "Meena", PartyRole.STAFF, branch_ids=[self.branch.id]
        )
        self.admin = self.parties.register_party("Root", PartyRole.ADMIN)
        self._utr = 0

    def teardown_method(self):
        self.recorder.close()
        self.storage.close()

    def next_utr(self):
        self._utr += 1
        return f"UTR{self._utr:010d}"

    def create(self, kind="credit", amount="1000", staff_id=None, **kwargs):
        params = dict(
            client_id=self.client.id,
            staff_id=staff_id or self.staff.id,
            branch_id=self.branch.id,
            kind=kind,
            amount=amount,
            utr_id=self.next_utr()
        )
        params.update(kwargs)
        return self.engine.create_transaction(**params)

    def balance(self, party_id=None):
        return self.parties.find_party(party_id or self.staff.id).balance


class TestCalculateEffect:
    """Pure commission math"""

    def test_credit_uses_deposit_deduction_rate(self):
        policy = Policy.build(commission_rate="5", deposit_deduction_rate="3")
        commission, final, after = calculate_effect(
            TransactionKind.CREDIT, Decimal("1000.00"), Decimal("0.00"), policy
        )
        assert (commission, final, after) == (Decimal("30.00"), Decimal("970.00"), Decimal("970.00"))

    def test_debit_uses_commission_rate(self):
        policy = Policy.build(commission_rate="5", deposit_deduction_rate="3")
        commission, final, after = calculate_effect(
            TransactionKind.DEBIT, Decimal("500.00"), Decimal("100.00"), policy
        )
        assert (commission, final, after) == (Decimal("25.00"), Decimal("475.00"), Decimal("-375.00"))

    def test_half_up_rounding(self):
        policy = Policy.build(commission_rate="3", deposit_deduction_rate="3")
        commission, final, _ = calculate_effect(
            TransactionKind.CREDIT, Decimal("33.35"), Decimal("0.00"), policy
        )
        assert commission == Decimal("1.00")
        assert final == Decimal("32.35")


class TestCreateTransaction(LedgerTestBase):

    def test_credit_then_debit_then_reverse_both(self):
        credit = self.create("credit", "1000")
        assert credit.commission == Decimal("30.00")
        assert credit.final_amount == Decimal("970.00")
        assert credit.balance_before == Decimal("0.00")
        assert credit.balance_after == Decimal("970.00")
        assert self.balance() == Decimal("970.00")

        debit = self.create("debit", "500")
        assert debit.commission == Decimal("15.00")
        assert debit.final_amount == Decimal("485.00")
        assert debit.balance_after == Decimal("485.00")
        assert self.balance() == Decimal("485.00")

        result = self.engine.reverse_transaction(debit.id, PartyRole.STAFF, self.staff.id)
        assert result.old_balance == Decimal("485.00")
        assert result.new_balance == Decimal("970.00")
        assert self.balance() == Decimal("970.00")

        self.engine.reverse_transaction(credit.id, "staff", self.staff.id)
        assert self.balance() == Decimal("0.00")
        assert self.engine.get_transaction(credit.id) is None
        assert self.engine.get_transaction(debit.id) is None

    def test_record_fields(self):
        txn = self.create("credit", "250.5", remark="  cash drop  ")
        stored = self.engine.get_transaction(txn.id)

        assert stored.amount == Decimal("250.50")
        assert stored.client_id == self.client.id
        assert stored.branch_id == self.branch.id
        assert stored.kind == TransactionKind.CREDIT
        assert stored.status == TransactionStatus.COMPLETED
        assert stored.remark == "cash drop"
        assert stored.balance_after - stored.balance_before == stored.final_amount

    def test_debit_may_overdraw_staff(self):
        txn = self.create("debit", "100")
        assert txn.balance_after == Decimal("-97.00")

    def test_only_staff_balance_changes(self):
        self.create("credit", "1000")
        assert self.balance(self.client.id) == Decimal("0.00")
        assert self.balance(self.other_staff.id) == Decimal("0.00")

    def test_policy_change_applies_to_new_transactions_only(self):
        first = self.create("credit", "1000")
        self.policy_store.update_policy(deposit_deduction_rate="10", updated_by=self.admin.id)
        second = self.create("credit", "1000")

        assert self.engine.get_transaction(first.id).commission == Decimal("30.00")
        assert second.commission == Decimal("100.00")
        assert self.balance() == Decimal("1870.00")

    def test_injected_policy(self):
        txn = self.create("debit", "200", policy=Policy.build("0", "0"))
        assert txn.commission == Decimal("0.00")
        assert txn.final_amount == Decimal("200.00")

    def test_audit_entry_after_commit(self):
        txn = self.create("debit", "500")
        self.recorder.flush()

        events = self.recorder.trail.get_events_for_resource("transaction", txn.id)
        assert len(events) == 1
        assert events[0].action == AuditAction.TRANSACTION_DEBIT
        assert events[0].actor_id == self.staff.id
        assert events[0].details["final_amount"] == "485.00"
        assert events[0].details["staff_balance_after"] == "-485.00"

    def test_audit_failure_does_not_fail_transaction(self):
        def broken_record(**kwargs):
            raise RuntimeError("queue exploded")

        self.recorder.record = broken_record
        txn = self.create("credit", "100")
        assert self.engine.get_transaction(txn.id) is not None

    def test_list_transactions_newest_first(self):
        first = self.create("credit", "100")
        second = self.create("debit", "50")
        third = self.create("credit", "10", staff_id=self.other_staff.id)

        ids = [t.id for t in self.engine.list_transactions()]
        assert ids == [third.id, second.id, first.id]

        own = self.engine.list_transactions(staff_id=self.staff.id)
        assert [t.id for t in own] == [second.id, first.id]

        credits = self.engine.list_transactions(kind="credit", limit=1)
        assert [t.id for t in credits] == [third.id]

    def test_list_transactions_zero_limit(self):
        self.create("credit", "100")
        self.create("debit", "50")

        assert self.engine.list_transactions(limit=0) == []
        assert len(self.engine.list_transactions(limit=None)) == 2


class TestCreateValidation(LedgerTestBase):
    """First failing check wins and nothing is written"""

    def assert_nothing_written(self):
        assert self.storage.count("transactions") == 0
        assert self.balance() == Decimal("0.00")

    @pytest.mark.parametrize("kind", ["deposit", "", "CREDIT"])
    def test_invalid_kind(self, kind):
        with pytest.raises(InvalidKindError):
            self.create(kind, "100")
        self.assert_nothing_written()

    @pytest.mark.parametrize("amount", ["0", "-5", "abc", "0.004", "10.555", "1e30", None])
    def test_invalid_amount(self, amount):
        with pytest.raises(InvalidAmountError):
            self.create("credit", amount)
        self.assert_nothing_written()

    def test_sub_cent_amount_is_not_rounded(self):
        with pytest.raises(InvalidAmountError) as exc_info:
            self.create("debit", "10.555")
        assert "2 decimal places" in str(exc_info.value)
        self.assert_nothing_written()

    def test_amount_beyond_decimal_precision(self):
        with pytest.raises(InvalidAmountError) as exc_info:
            self.create("credit", "1e30")
        assert "out of range" in str(exc_info.value)
        self.assert_nothing_written()

    @pytest.mark.parametrize("amount", ["10.5", "10.50", "10.500", 10.5])
    def test_amount_with_two_places_accepted(self, amount):
        txn = self.create("credit", amount)
        assert txn.amount == Decimal("10.50")
        assert str(self.engine.get_transaction(txn.id).amount) == "10.50"

    @pytest.mark.parametrize("utr_id", ["SHORT123", "A" * 23, "UTR-000-0001", "", None, "UTR 0000001"])
    def test_invalid_reference(self, utr_id):
        with pytest.raises(InvalidReferenceError):
            self.create("credit", "100", utr_id=utr_id)
        self.assert_nothing_written()

    def test_reference_boundaries(self):
        self.create("credit", "1", utr_id="A" * 10)
        self.create("credit", "1", utr_id="B" * 22)
        self.create("credit", "1", utr_id="  abcDEF1234  ")
        assert self.storage.count("transactions") == 3

    def test_unknown_client(self):
        with pytest.raises(InvalidPartyError):
            self.create(client_id="nobody")
        self.assert_nothing_written()

    def test_client_id_of_wrong_role(self):
        with pytest.raises(InvalidPartyError):
            self.create(client_id=self.other_staff.id)

    def test_inactive_client(self):
        client = self.parties.register_party("Gone", PartyRole.CLIENT, is_active=False)
        with pytest.raises(InvalidPartyError):
            self.create(client_id=client.id)

    def test_inactive_branch(self):
        branch = self.branches.register_branch(
            "BR009", "Closed", self.client.id, is_active=False
        )
        with pytest.raises(InactiveBranchError):
            self.create(branch_id=branch.id)

    def test_missing_branch(self):
        with pytest.raises(InactiveBranchError):
            self.create(branch_id="no-such-branch")

    def test_staff_not_authorized_for_branch(self):
        with pytest.raises(UnauthorizedBranchAccessError):
            self.create(branch_id=self.other_branch.id)
        self.assert_nothing_written()

    def test_inactive_staff(self):
        staff = self.parties.register_party(
            "Former", PartyRole.STAFF, branch_ids=[self.branch.id], is_active=False
        )
        with pytest.raises(InvalidPartyError):
            self.create(staff_id=staff.id)

    def test_admin_is_not_staff(self):
        with pytest.raises(InvalidPartyError):
            self.create(staff_id=self.admin.id)

    def test_kind_checked_before_amount(self):
        with pytest.raises(InvalidKindError):
            self.create("refund", "-1")

    def test_amount_checked_before_reference(self):
        with pytest.raises(InvalidAmountError):
            self.create("credit", "0", utr_id="bad")

    def test_reference_checked_before_parties(self):
        with pytest.raises(InvalidReferenceError):
            self.create("credit", "10", utr_id="bad", client_id="nobody")

    def test_client_checked_before_branch(self):
        with pytest.raises(InvalidPartyError):
            self.create(client_id="nobody", branch_id="no-such-branch")

    def test_branch_checked_before_staff(self):
        with pytest.raises(InactiveBranchError):
            self.create(branch_id="no-such-branch", staff_id="nobody")


class TestDuplicateReference(LedgerTestBase):

    def test_duplicate_rejected_without_effects(self):
        self.create("credit", "1000", utr_id="DUPLICATE0001")
        with pytest.raises(DuplicateReferenceError) as exc_info:
            self.create("credit", "1000", utr_id="DUPLICATE0001")

        assert exc_info.value.utr_id == "DUPLICATE0001"
        assert self.storage.count("transactions") == 1
        assert self.balance() == Decimal("970.00")

    def test_reference_reusable_after_reversal(self):
        txn = self.create("credit", "100", utr_id="REUSABLE0001")
        self.engine.reverse_transaction(txn.id, PartyRole.ADMIN, self.admin.id)
        self.create("credit", "100", utr_id="REUSABLE0001")
        assert self.storage.count("transactions") == 1

    def test_concurrent_duplicates_one_winner(self):
        results = []
        errors = []
        barrier = threading.Barrier(8)

        def attempt():
            barrier.wait()
            try:
                results.append(self.create("credit", "100", utr_id="RACE00000001"))
            except DuplicateReferenceError as e:
                errors.append(e)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 1
        assert len(errors) == 7
        assert self.balance() == Decimal("97.00")


class TestReverseTransaction(LedgerTestBase):

    def test_unknown_transaction(self):
        with pytest.raises(TransactionNotFoundError):
            self.engine.reverse_transaction("missing", PartyRole.ADMIN, self.admin.id)

    def test_client_forbidden_before_lookup(self):
        with pytest.raises(ForbiddenError):
            self.engine.reverse_transaction("missing", PartyRole.CLIENT, self.client.id)

    def test_unknown_role_forbidden(self):
        txn = self.create()
        with pytest.raises(ForbiddenError):
            self.engine.reverse_transaction(txn.id, "auditor", self.admin.id)
        assert self.engine.get_transaction(txn.id) is not None

    def test_staff_cannot_reverse_others(self):
        txn = self.create()
        with pytest.raises(ForbiddenError):
            self.engine.reverse_transaction(txn.id, PartyRole.STAFF, self.other_staff.id)
        assert self.balance() == Decimal("970.00")

    def test_staff_within_window(self):
        txn = self.create()
        now = txn.created_at + timedelta(hours=24)
        result = self.engine.reverse_transaction(txn.id, PartyRole.STAFF, self.staff.id, now=now)
        assert result.new_balance == Decimal("0.00")

    def test_staff_window_expired(self):
        txn = self.create()
        now = txn.created_at + timedelta(hours=24, seconds=1)

        with pytest.raises(ReversalWindowExpiredError) as exc_info:
            self.engine.reverse_transaction(txn.id, PartyRole.STAFF, self.staff.id, now=now)

        assert exc_info.value.age == timedelta(hours=24, seconds=1)
        assert "24 hours" in str(exc_info.value)
        assert self.engine.get_transaction(txn.id) is not None
        assert self.balance() == Decimal("970.00")

    def test_naive_now_is_utc(self):
        txn = self.create()
        naive_created = txn.created_at.astimezone(timezone.utc).replace(tzinfo=None)

        with pytest.raises(ReversalWindowExpiredError):
            self.engine.reverse_transaction(
                txn.id, PartyRole.STAFF, self.staff.id,
                now=naive_created + timedelta(hours=24, seconds=1)
            )
        assert self.balance() == Decimal("970.00")

        result = self.engine.reverse_transaction(
            txn.id, PartyRole.STAFF, self.staff.id,
            now=naive_created + timedelta(hours=1)
        )
        assert result.new_balance == Decimal("0.00")

    def test_admin_any_age(self):
        txn = self.create()
        now = txn.created_at + timedelta(days=365)
        result = self.engine.reverse_transaction(txn.id, PartyRole.ADMIN, self.admin.id, now=now)
        assert result.reversed_by == self.admin.id
        assert result.reversed_by_role == PartyRole.ADMIN
        assert self.balance() == Decimal("0.00")

    def test_reversal_applies_to_live_balance(self):
        first = self.create("credit", "1000")
        self.create("credit", "100")

        result = self.engine.reverse_transaction(first.id, PartyRole.ADMIN, self.admin.id)
        assert result.old_balance == Decimal("1067.00")
        assert result.new_balance == Decimal("97.00")
        assert result.reversed_amount == Decimal("970.00")

    def test_reverse_twice(self):
        txn = self.create()
        self.engine.reverse_transaction(txn.id, PartyRole.ADMIN, self.admin.id)
        with pytest.raises(TransactionNotFoundError):
            self.engine.reverse_transaction(txn.id, PartyRole.ADMIN, self.admin.id)
        assert self.balance() == Decimal("0.00")

    def test_reversal_audit_entry(self):
        txn = self.create("debit", "500")
        self.engine.reverse_transaction(txn.id, PartyRole.ADMIN, self.admin.id)
        self.recorder.flush()

        events = self.recorder.trail.get_events_by_action(AuditAction.DELETE_TRANSACTION)
        assert len(events) == 1
        assert events[0].actor_id == self.admin.id
        assert events[0].details["old_staff_balance"] == "-485.00"
        assert events[0].details["new_staff_balance"] == "0.00"

    def test_configured_window(self):
        engine = LedgerEngine(
            transactions=self.transactions,
            parties=self.parties,
            branches=self.branches,
            policy_store=self.policy_store,
            atomic_unit=self.engine.atomic_unit,
            staff_reversal_window=timedelta(hours=1)
        )
        txn = self.create()
        with pytest.raises(ReversalWindowExpiredError):
            engine.reverse_transaction(
                txn.id, PartyRole.STAFF, self.staff.id,
                now=txn.created_at + timedelta(hours=2)
            )


class TestConcurrency(LedgerTestBase):

    def test_concurrent_mixed_operations_keep_balance_consistent(self):
        errors = []
        created = []
        lock = threading.Lock()

        def worker(index):
            try:
                kind = "credit" if index % 3 else "debit"
                txn = self.engine.create_transaction(
                    client_id=self.client.id,
                    staff_id=self.staff.id,
                    branch_id=self.branch.id,
                    kind=kind,
                    amount=str(100 + index),
                    utr_id=f"CONC{index:08d}"
                )
                with lock:
                    created.append(txn)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(60)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(created) == 60

        # Reverse a third of them concurrently
        to_reverse = created[::3]

        def reverser(txn):
            try:
                self.engine.reverse_transaction(txn.id, PartyRole.ADMIN, self.admin.id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=reverser, args=(t,)) for t in to_reverse]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        remaining = self.transactions.find()
        expected = sum((t.signed_amount for t in remaining), Decimal("0.00"))
        assert self.balance() == expected
        assert len(remaining) == 60 - len(to_reverse)

        # Each surviving record chains from some earlier balance by its own delta
        for txn in remaining:
            assert txn.balance_after - txn.balance_before == txn.signed_amount


class TestSQLiteEngine(LedgerTestBase):

    def make_storage(self):
        return SQLiteStorage(":memory:")

    def test_scenario_on_sqlite(self):
        credit = self.create("credit", "1000")
        debit = self.create("debit", "500")
        assert self.balance() == Decimal("485.00")

        self.engine.reverse_transaction(debit.id, PartyRole.ADMIN, self.admin.id)
        self.engine.reverse_transaction(credit.id, PartyRole.ADMIN, self.admin.id)
        assert self.balance() == Decimal("0.00")

    def test_duplicate_on_sqlite(self):
        self.create(utr_id="SQLITEDUP001")
        with pytest.raises(DuplicateReferenceError):
            self.create(utr_id="SQLITEDUP001")
        assert self.balance() == Decimal("970.00")

    def test_failed_balance_write_rolls_back_insert(self):
        def broken_save(party_id, new_balance):
            raise OSError("disk full")

        self.parties.save_balance = broken_save
        with pytest.raises(ConsistencyError):
            self.create()
        assert self.storage.count("transactions") == 0


class TestSessionRollback(LedgerTestBase):

    def test_failed_balance_write_rolls_back_insert(self):
        def broken_save(party_id, new_balance):
            raise OSError("disk full")

        self.parties.save_balance = broken_save
        with pytest.raises(ConsistencyError):
            self.create()
        assert self.storage.count("transactions") == 0

    def test_failed_balance_write_rolls_back_delete(self):
        txn = self.create()

        def broken_save(party_id, new_balance):
            raise OSError("disk full")

        self.parties.save_balance = broken_save
        with pytest.raises(ConsistencyError):
            self.engine.reverse_transaction(txn.id, PartyRole.ADMIN, self.admin.id)
        assert self.engine.get_transaction(txn.id) is not None


class TestBestEffortMode(LedgerTestBase):

    def make_storage(self):
        return InMemoryStorage(transactional=False)

    def make_unit(self, storage):
        return BestEffortUnit()

    def test_scenario_in_best_effort_mode(self):
        credit = self.create("credit", "1000")
        self.create("debit", "500")
        self.engine.reverse_transaction(credit.id, PartyRole.ADMIN, self.admin.id)
        assert self.balance() == Decimal("-485.00")

    def test_partial_write_surfaced(self):
        def broken_save(party_id, new_balance):
            raise OSError("disk full")

        self.parties.save_balance = broken_save
        with pytest.raises(PartialWriteError) as exc_info:
            self.create()

        assert exc_info.value.completed_steps == ["insert_transaction"]
        # The record is left behind for manual reconciliation
        assert self.storage.count("transactions") == 1
        assert self.balance() == Decimal("0.00")

    def test_duplicate_leaves_no_partial_write(self):
        self.create(utr_id="BESTEFFORT01")
        with pytest.raises(DuplicateReferenceError):
            self.create(utr_id="BESTEFFORT01")
        assert self.balance() == Decimal("970.00")
