"""
Atomic Unit Module

One interface for "apply these writes together". Which implementation runs is
decided once at startup by probing the store:

- SessionUnit: the store supports multi-record transactions. All writes
  commit together or not at all, within a deadline.
- BestEffortUnit: no store atomicity. Writes are applied one after another;
  a failure after the first write leaves the store partially updated and is
  surfaced as PartialWriteError for manual reconciliation.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, List, TypeVar
import time

from .config import LedgerConfig
from .errors import LedgerError, ConsistencyError, AtomicTimeoutError, PartialWriteError
from .logging_config import get_logger
from .storage import StorageInterface, StorageTimeoutError

T = TypeVar("T")

logger = get_logger("branch_ledger.atomic")


class UnitOfWork:
    """Tracks the writes applied inside one atomic unit"""

    def __init__(self):
        self.completed: List[str] = []

    def write(self, name: str, func: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Apply one write and remember that it happened

        A write function returning ``False`` reports that nothing was
        written (e.g. deleting an already-deleted record) and is not recorded.
        """
        result = func(*args, **kwargs)
        if result is not False:
            self.completed.append(name)
        return result


class AtomicUnit(ABC):
    """Runs a unit of work with a fixed consistency guarantee"""

    mode = "abstract"

    @abstractmethod
    def run(self, work: Callable[[UnitOfWork], T], operation: str) -> T:
        """
        Execute work

        Args:
            work: Callable receiving the UnitOfWork; performs reads and writes
            operation: Name used in logs and errors

        Returns:
            Whatever work returns
        """
        pass


class SessionUnit(AtomicUnit):
    """Wraps the work in a store transaction with a deadline"""

    mode = "session"

    def __init__(self, storage: StorageInterface, timeout_seconds: float = 5.0):
        if not storage.supports_transactions:
            raise ValueError("SessionUnit requires a store with transaction support")
        self.storage = storage
        self.timeout_seconds = timeout_seconds

    def run(self, work: Callable[[UnitOfWork], T], operation: str) -> T:
        uow = UnitOfWork()
        deadline = time.monotonic() + self.timeout_seconds
        try:
            with self.storage.atomic(timeout=self.timeout_seconds):
                result = work(uow)
                if time.monotonic() > deadline:
                    raise AtomicTimeoutError(
                        f"{operation} exceeded {self.timeout_seconds}s and was rolled back"
                    )
            return result
        except StorageTimeoutError as e:
            logger.warning(f"{operation} could not start within {self.timeout_seconds}s")
            raise AtomicTimeoutError(
                f"{operation} could not start within {self.timeout_seconds}s"
            ) from e
        except LedgerError:
            raise
        except Exception as e:
            logger.error(f"{operation} aborted and rolled back: {e}", exc_info=True)
            raise ConsistencyError(f"{operation} aborted and rolled back: {e}") from e


class BestEffortUnit(AtomicUnit):
    """Applies writes sequentially without a shared rollback"""

    mode = "best_effort"

    def run(self, work: Callable[[UnitOfWork], T], operation: str) -> T:
        uow = UnitOfWork()
        try:
            return work(uow)
        except Exception as e:
            if not uow.completed:
                raise
            logger.critical(
                f"{operation} partially applied: completed {uow.completed}, failed with {e}"
            )
            raise PartialWriteError(operation, uow.completed, e) from e


def select_atomic_unit(storage: StorageInterface, config: LedgerConfig) -> AtomicUnit:
    """Probe the store once and pick the matching atomic unit"""
    if storage.supports_transactions and not config.force_best_effort:
        logger.info("Store supports transactions; ledger writes run in session mode")
        return SessionUnit(storage, timeout_seconds=config.atomic_timeout_seconds)

    logger.warning(
        "Ledger writes run in best-effort mode: balance and record writes are not "
        "atomic, and a crash between them needs manual reconciliation"
    )
    return BestEffortUnit()
