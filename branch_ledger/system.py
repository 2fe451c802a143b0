"""
System Wiring Module

Builds every ledger component from configuration.
"""

from datetime import timedelta
from typing import Optional

from .aggregation import AggregationScheduler, DailyAggregator
from .atomic import select_atomic_unit
from .audit import AuditRecorder, AuditTrail
from .config import LedgerConfig, get_config
from .dashboard import DashboardService
from .directory import BranchDirectory, PartyDirectory
from .engine import LedgerEngine
from .logging_config import get_logger
from .policy import PolicyStore
from .storage import StorageInterface, create_storage
from .transactions import TransactionStore


class LedgerSystem:
    """Branch ledger with all components initialized"""

    def __init__(self, config: Optional[LedgerConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        self.logger = get_logger("branch_ledger.system")

        # Initialize storage
        self.storage = storage or create_storage(
            self.config.database_url, memory_transactions=self.config.memory_transactions
        )
        self.atomic_unit = select_atomic_unit(self.storage, self.config)

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage)
        self.audit_recorder = AuditRecorder(
            self.audit_trail,
            max_queue_size=self.config.audit_queue_size,
            enabled=self.config.enable_audit_logging
        )
        self.parties = PartyDirectory(self.storage)
        self.branches = BranchDirectory(self.storage)
        self.transactions = TransactionStore(self.storage)
        self.policy_store = PolicyStore(
            self.storage,
            audit_recorder=self.audit_recorder,
            default_commission_rate=self.config.default_commission_rate,
            default_deposit_deduction_rate=self.config.default_deposit_deduction_rate
        )
        self.engine = LedgerEngine(
            transactions=self.transactions,
            parties=self.parties,
            branches=self.branches,
            policy_store=self.policy_store,
            atomic_unit=self.atomic_unit,
            audit_recorder=self.audit_recorder,
            staff_reversal_window=timedelta(hours=self.config.staff_reversal_window_hours)
        )
        self.dashboard = DashboardService(
            self.transactions, self.parties, timezone_name=self.config.timezone
        )
        self.aggregator = DailyAggregator(
            self.storage, self.transactions, self.atomic_unit,
            timezone_name=self.config.timezone
        )
        self.scheduler = AggregationScheduler(
            self.aggregator,
            hour=self.config.aggregation_hour,
            minute=self.config.aggregation_minute,
            timezone_name=self.config.timezone
        )

    def start(self) -> None:
        """Start background workers"""
        if self.config.enable_audit_logging:
            self.audit_recorder.start()
        if self.config.aggregation_enabled:
            self.scheduler.start()
        self.logger.info(f"Branch ledger started ({self.atomic_unit.mode} mode)")

    def shutdown(self) -> None:
        """Stop background workers and close the store"""
        self.scheduler.shutdown(wait=False)
        self.audit_recorder.close()
        self.storage.close()
        self.logger.info("Branch ledger stopped")
