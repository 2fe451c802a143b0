"""
Dashboard Module

Read-only per-role rollups over one local day of completed transactions.
"""

from datetime import date, datetime, timezone
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

from .directory import PartyDirectory
from .errors import InvalidPartyError
from .transactions import TransactionStatus, TransactionStore, local_day_bounds


class DashboardService:
    """Totals for admins, clients and staff"""

    def __init__(
        self,
        transactions: TransactionStore,
        parties: PartyDirectory,
        timezone_name: str = "UTC"
    ):
        self.transactions = transactions
        self.parties = parties
        self.tz = ZoneInfo(timezone_name)

    def today(self) -> date:
        return datetime.now(timezone.utc).astimezone(self.tz).date()

    def _day_totals(self, day: Optional[date], **filters: Any) -> Dict[str, Any]:
        day = day or self.today()
        start, end = local_day_bounds(day, self.tz)
        transactions = self.transactions.find(
            status=TransactionStatus.COMPLETED, start=start, end=end, **filters
        )
        result = self.transactions.totals(transactions).to_dict()
        result['date'] = day.isoformat()
        return result

    def admin_dashboard(self, day: Optional[date] = None,
                        branch_id: Optional[str] = None) -> Dict[str, Any]:
        """Ledger-wide totals, optionally for one branch"""
        return self._day_totals(day, branch_id=branch_id)

    def client_dashboard(self, client_id: str, day: Optional[date] = None) -> Dict[str, Any]:
        """Totals of everything moved on behalf of one client"""
        return self._day_totals(day, client_id=client_id)

    def staff_dashboard(self, staff_id: str, day: Optional[date] = None,
                        branch_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Totals of one staff member's transactions plus their live wallet balance

        Raises:
            InvalidPartyError: If the staff member does not exist
        """
        staff = self.parties.find_party(staff_id)
        if not staff:
            raise InvalidPartyError(f"Staff member {staff_id} not found")

        result = self._day_totals(day, staff_id=staff_id, branch_id=branch_id)
        result['wallet_balance'] = str(staff.balance)
        return result
