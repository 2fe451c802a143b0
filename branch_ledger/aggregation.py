"""
Daily Aggregation Module

Folds one local day of completed transactions into per (client, branch)
summary rows. Row ids are derived from (date, party, branch) and written as
upserts, and each finished day leaves a completion marker, so re-running a
day replaces its rows instead of duplicating them.

The scheduler runs the previous day's aggregation once a day. A run that is
still executing when the next one is due causes the new one to be skipped.
"""

from decimal import Decimal
from datetime import date, datetime, timedelta, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from .atomic import AtomicUnit, UnitOfWork
from .logging_config import get_logger, log_action
from .money import ZERO
from .storage import StorageInterface, StorageRecord
from .transactions import TransactionStore, local_day_bounds


def summary_id(day: date, party_id: str, branch_id: str) -> str:
    return f"{day.isoformat()}:{party_id}:{branch_id}"


@dataclass
class DailySummary(StorageRecord):
    """Totals for one client at one branch on one local day"""
    date: str
    party_id: str
    branch_id: str
    role: str = "client"
    total_credit: Decimal = ZERO
    total_debit: Decimal = ZERO
    total_commission: Decimal = ZERO
    transaction_count: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DailySummary':
        data = dict(data)
        for key in ('total_credit', 'total_debit', 'total_commission'):
            data[key] = Decimal(data[key])
        return super().from_dict(data)


@dataclass
class AggregationRun(StorageRecord):
    """Completion marker for one aggregated day"""
    date: str
    summary_count: int


class DailyAggregator:
    """Builds and reads daily summaries"""

    def __init__(
        self,
        storage: StorageInterface,
        transactions: TransactionStore,
        atomic_unit: AtomicUnit,
        timezone_name: str = "UTC"
    ):
        self.storage = storage
        self.transactions = transactions
        self.atomic_unit = atomic_unit
        self.tz = ZoneInfo(timezone_name)
        self.table_name = "daily_summaries"
        self.runs_table = "aggregation_runs"
        self.logger = get_logger("branch_ledger.aggregation")

    def is_aggregated(self, day: date) -> bool:
        return self.storage.exists(self.runs_table, day.isoformat())

    def run_for_date(self, day: date, force: bool = False) -> List[DailySummary]:
        """
        Aggregate completed transactions created during ``day`` (local time)

        Args:
            day: Local calendar day
            force: Recompute even if the day already carries a completion marker

        Returns:
            The summary rows stored for the day
        """
        if not force and self.is_aggregated(day):
            self.logger.info(f"Daily aggregation for {day} already completed, skipping")
            return self.get_summaries(day=day)

        start, end = local_day_bounds(day, self.tz)
        groups = self.transactions.aggregate(start, end, group_by=("client_id", "branch_id"))

        now = datetime.now(timezone.utc)
        summaries = []
        for (client_id, branch_id), totals in sorted(groups.items()):
            summaries.append(DailySummary(
                id=summary_id(day, client_id, branch_id),
                created_at=now,
                updated_at=now,
                date=day.isoformat(),
                party_id=client_id,
                branch_id=branch_id,
                role="client",
                total_credit=totals.total_credit,
                total_debit=totals.total_debit,
                total_commission=totals.total_commission,
                transaction_count=totals.transaction_count
            ))

        def work(uow: UnitOfWork) -> None:
            fresh = {summary.id for summary in summaries}
            # Groups emptied by reversals since the last run
            for stale in self.storage.find(self.table_name, {'date': day.isoformat()}):
                if stale['id'] not in fresh:
                    uow.write("delete_summary", self.storage.delete, self.table_name, stale['id'])
            for summary in summaries:
                uow.write("save_summary", self.storage.save,
                          self.table_name, summary.id, summary.to_dict())
            marker = AggregationRun(
                id=day.isoformat(),
                created_at=now,
                updated_at=now,
                date=day.isoformat(),
                summary_count=len(summaries)
            )
            uow.write("save_marker", self.storage.save,
                      self.runs_table, marker.id, marker.to_dict())

        self.atomic_unit.run(work, operation="daily_aggregation")

        log_action(
            self.logger, "info",
            f"Daily aggregation completed for {day}: {len(summaries)} summaries",
            action="daily_aggregation", resource=f"daily_summaries:{day.isoformat()}",
            extra={"forced": force, "summary_count": len(summaries)}
        )
        return summaries

    def run_previous_day(self, now: Optional[datetime] = None) -> Optional[List[DailySummary]]:
        """
        Aggregate yesterday in the configured timezone

        Failures are logged and swallowed so the next day's run is unaffected.
        """
        reference = now or datetime.now(timezone.utc)
        if reference.tzinfo is None:
            reference = reference.replace(tzinfo=timezone.utc)
        day = reference.astimezone(self.tz).date() - timedelta(days=1)
        try:
            return self.run_for_date(day)
        except Exception as e:
            self.logger.error(f"Daily aggregation for {day} failed: {e}", exc_info=True)
            return None

    def get_summaries(
        self,
        day: Optional[date] = None,
        party_id: Optional[str] = None,
        branch_id: Optional[str] = None
    ) -> List[DailySummary]:
        filters: Dict[str, Any] = {}
        if day:
            filters['date'] = day.isoformat()
        if party_id:
            filters['party_id'] = party_id
        if branch_id:
            filters['branch_id'] = branch_id

        summaries = [DailySummary.from_dict(data)
                     for data in self.storage.find(self.table_name, filters)]
        summaries.sort(key=lambda s: (s.date, s.party_id, s.branch_id))
        return summaries


class AggregationScheduler:
    """Runs the previous day's aggregation at a fixed local time every day"""

    job_id = "daily_aggregation"

    def __init__(
        self,
        aggregator: DailyAggregator,
        hour: int = 0,
        minute: int = 0,
        timezone_name: str = "UTC"
    ):
        self.aggregator = aggregator
        self.hour = hour
        self.minute = minute
        self.timezone_name = timezone_name
        self.logger = get_logger("branch_ledger.scheduler")
        self._scheduler = BackgroundScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60 * 5,
            },
            timezone=ZoneInfo(timezone_name)
        )
        self._scheduler.add_job(
            self.aggregator.run_previous_day,
            CronTrigger(hour=hour, minute=minute, timezone=ZoneInfo(timezone_name)),
            id=self.job_id,
            replace_existing=True
        )

    def start(self) -> None:
        if self._scheduler.running:
            return
        self._scheduler.start()
        self.logger.info(
            f"Daily aggregation scheduled at {self.hour:02d}:{self.minute:02d} "
            f"{self.timezone_name}"
        )

    def shutdown(self, wait: bool = True) -> None:
        if not self._scheduler.running:
            return
        self._scheduler.shutdown(wait=wait)
        self.logger.info("Aggregation scheduler stopped")

    @property
    def is_running(self) -> bool:
        return bool(self._scheduler.running)

    def next_run_time(self) -> Optional[datetime]:
        job = self._scheduler.get_job(self.job_id)
        if job is None:
            return None
        return getattr(job, "next_run_time", None)
