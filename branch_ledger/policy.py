"""
Rate & Commission Policy Module

Holds the commission rate (applied to debits) and the deposit deduction rate
(applied to credits). The engine reads the policy once per operation; a
transaction keeps the amounts computed at creation time forever.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Optional

from .audit import AuditAction, AuditRecorder, RequestMeta
from .errors import InvalidRateError
from .logging_config import get_logger, log_action
from .money import Amount, HUNDRED, to_decimal
from .storage import DuplicateKeyError, StorageInterface, StorageRecord


POLICY_ID = "current"


def _validate_rate(name: str, value: Amount) -> Decimal:
    try:
        rate = to_decimal(value)
    except ValueError:
        raise InvalidRateError(f"{name} must be a number, got {value!r}")
    if rate < Decimal('0') or rate > HUNDRED:
        raise InvalidRateError(f"{name} must be between 0 and 100, got {rate}")
    return rate


@dataclass
class Policy(StorageRecord):
    """Singleton rate policy; both rates are percentages in [0, 100]"""
    commission_rate: Decimal
    deposit_deduction_rate: Decimal
    updated_by: Optional[str] = None

    def __post_init__(self):
        self.commission_rate = _validate_rate("Commission rate", self.commission_rate)
        self.deposit_deduction_rate = _validate_rate(
            "Deposit deduction rate", self.deposit_deduction_rate
        )

    @classmethod
    def build(cls, commission_rate: Amount, deposit_deduction_rate: Amount) -> 'Policy':
        """Create an unsaved policy value, e.g. to pass straight to the engine"""
        now = datetime.now(timezone.utc)
        return cls(
            id=POLICY_ID,
            created_at=now,
            updated_at=now,
            commission_rate=commission_rate,
            deposit_deduction_rate=deposit_deduction_rate
        )


class PolicyStore:
    """Reads, bootstraps and updates the current policy"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_recorder: Optional[AuditRecorder] = None,
        default_commission_rate: Amount = "3",
        default_deposit_deduction_rate: Amount = "3"
    ):
        self.storage = storage
        self.audit_recorder = audit_recorder
        self.table_name = "settings"
        self.default_commission_rate = _validate_rate("Commission rate", default_commission_rate)
        self.default_deposit_deduction_rate = _validate_rate(
            "Deposit deduction rate", default_deposit_deduction_rate
        )
        self.logger = get_logger("branch_ledger.policy")

    def get_policy(self) -> Policy:
        """
        Get the current policy, creating the default one if none exists yet

        The default is written once; concurrent first reads converge on the
        single stored record.
        """
        data = self.storage.load(self.table_name, POLICY_ID)
        if data:
            return Policy.from_dict(data)

        policy = Policy.build(self.default_commission_rate, self.default_deposit_deduction_rate)
        try:
            self.storage.insert(self.table_name, policy.id, policy.to_dict())
            self.logger.info(
                f"Created default policy: commission {policy.commission_rate}%, "
                f"deposit deduction {policy.deposit_deduction_rate}%"
            )
            return policy
        except DuplicateKeyError:
            return Policy.from_dict(self.storage.load(self.table_name, POLICY_ID))

    def update_policy(
        self,
        commission_rate: Optional[Amount] = None,
        deposit_deduction_rate: Optional[Amount] = None,
        updated_by: Optional[str] = None,
        request_meta: Optional[RequestMeta] = None
    ) -> Policy:
        """
        Change one or both rates

        Raises:
            InvalidRateError: If a rate is outside [0, 100]
        """
        current = self.get_policy()
        previous = {
            'commission_rate': current.commission_rate,
            'deposit_deduction_rate': current.deposit_deduction_rate
        }

        updated = Policy(
            id=POLICY_ID,
            created_at=current.created_at,
            updated_at=datetime.now(timezone.utc),
            commission_rate=current.commission_rate if commission_rate is None else commission_rate,
            deposit_deduction_rate=(
                current.deposit_deduction_rate if deposit_deduction_rate is None
                else deposit_deduction_rate
            ),
            updated_by=updated_by
        )
        self.storage.save(self.table_name, updated.id, updated.to_dict())

        log_action(
            self.logger, "info", "Policy updated",
            actor_id=updated_by, action="update_settings", resource="settings:current",
            extra={
                "commission_rate": str(updated.commission_rate),
                "deposit_deduction_rate": str(updated.deposit_deduction_rate)
            }
        )

        if self.audit_recorder and updated_by:
            self.audit_recorder.record(
                actor_id=updated_by,
                action=AuditAction.UPDATE_SETTINGS,
                resource_type="settings",
                resource_id=POLICY_ID,
                details={
                    'previous': previous,
                    'commission_rate': updated.commission_rate,
                    'deposit_deduction_rate': updated.deposit_deduction_rate
                },
                request_meta=request_meta
            )

        return updated
