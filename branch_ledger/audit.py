"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection, plus a
fire-and-forget recorder so ledger operations never wait on (or fail because
of) audit persistence.
"""

import hashlib
import json
import queue
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .logging_config import get_logger
from .storage import StorageInterface, StorageRecord, to_storage_value


class AuditAction(Enum):
    """Mutating operations that leave an audit entry"""
    TRANSACTION_CREDIT = "transaction_credit"
    TRANSACTION_DEBIT = "transaction_debit"
    DELETE_TRANSACTION = "delete_transaction"
    UPDATE_SETTINGS = "update_settings"


@dataclass
class RequestMeta:
    """Caller details captured by the HTTP layer"""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    action: AuditAction
    actor_id: str
    resource_type: str
    resource_id: Optional[str]
    details: Dict[str, Any]
    previous_hash: str
    current_hash: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def __post_init__(self):
        # Decimals, datetimes and enums in details are stored as plain JSON values
        self.details = to_storage_value(self.details or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'action': self.action.value,
            'actor_id': self.actor_id,
            'resource_type': self.resource_type,
            'resource_id': self.resource_id,
            'details': self.details,
            'previous_hash': self.previous_hash,
            'ip_address': self.ip_address,
            'user_agent': self.user_agent
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['action'] = AuditAction(data['action'])
        return super().from_dict(data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()
        self._last_hash: Optional[str] = None
        self._load_last_hash()

    def _load_last_hash(self) -> None:
        """Load the hash of the most recent audit event"""
        events = self.storage.load_all(self.table_name)
        if events:
            latest = max(events, key=lambda x: x.get('created_at', ''))
            self._last_hash = latest.get('current_hash')

    def log_event(
        self,
        action: AuditAction,
        actor_id: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        request_meta: Optional[RequestMeta] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            action: What was done
            actor_id: Party that initiated the action
            resource_type: Type of entity affected
            resource_id: ID of the entity
            details: Additional action-specific data
            request_meta: IP address and user agent of the caller

        Returns:
            Created AuditEvent
        """
        meta = request_meta or RequestMeta()
        with self._lock:
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                action=action,
                actor_id=actor_id,
                resource_type=resource_type,
                resource_id=resource_id,
                details=details or {},
                previous_hash=self._last_hash or "",
                current_hash="",  # Calculated below
                ip_address=meta.ip_address,
                user_agent=meta.user_agent
            )
            event.current_hash = event.calculate_hash()

            self.storage.insert(self.table_name, event.id, event.to_dict())
            self._last_hash = event.current_hash

            return event

    def get_events_for_resource(self, resource_type: str, resource_id: str) -> List[AuditEvent]:
        """Get all audit events for one resource, oldest first"""
        events_data = self.storage.find(self.table_name, {
            'resource_type': resource_type,
            'resource_id': resource_id
        })
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda x: x.created_at)
        return events

    def get_events_by_action(self, action: AuditAction) -> List[AuditEvent]:
        """Get all audit events for one action, oldest first"""
        events_data = self.storage.find(self.table_name, {'action': action.value})
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda x: x.created_at)
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda x: x.created_at)
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({'event_id': event.id, 'position': position})
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({'event_id': event.id, 'position': position})
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)


_STOP = object()


class AuditRecorder:
    """
    Fire-and-forget front of the audit trail

    ``record`` only enqueues; a single worker thread writes entries to the
    trail. A full queue drops the entry with a warning, and a failed write is
    logged, so audit problems never reach the caller.
    """

    def __init__(self, trail: AuditTrail, max_queue_size: int = 1000, enabled: bool = True):
        self.trail = trail
        self.enabled = enabled
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max_queue_size)
        self._worker: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()
        self.logger = get_logger("branch_ledger.audit")
        self.dropped = 0
        self.failed = 0

    def start(self) -> None:
        """Start the worker thread if it is not running"""
        with self._start_lock:
            if self._worker and self._worker.is_alive():
                return
            self._worker = threading.Thread(
                target=self._run, name="audit-recorder", daemon=True
            )
            self._worker.start()

    def record(
        self,
        actor_id: str,
        action: AuditAction,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        request_meta: Optional[RequestMeta] = None
    ) -> bool:
        """
        Queue an audit entry without waiting for it to be written

        Returns:
            True if the entry was queued, False if it was dropped
        """
        if not self.enabled:
            return False
        self.start()
        entry = {
            'action': action,
            'actor_id': actor_id,
            'resource_type': resource_type,
            'resource_id': resource_id,
            'details': details or {},
            'request_meta': request_meta
        }
        try:
            self._queue.put_nowait(entry)
        except queue.Full:
            self.dropped += 1
            self.logger.warning(
                f"Audit queue full, dropped {action.value} on {resource_type} {resource_id}"
            )
            return False
        return True

    def _run(self) -> None:
        while True:
            entry = self._queue.get()
            try:
                if entry is _STOP:
                    return
                self.trail.log_event(**entry)
                self.logger.info(
                    f"Audit: {entry['action'].value} on {entry['resource_type']} "
                    f"by {entry['actor_id']}"
                )
            except Exception as e:
                self.failed += 1
                self.logger.error(f"Audit log creation failed: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        """Block until every queued entry has been handled"""
        if self._worker and self._worker.is_alive():
            self._queue.join()

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Drain the queue and stop the worker"""
        with self._start_lock:
            worker = self._worker
            self._worker = None
        if worker and worker.is_alive():
            self._queue.put(_STOP)
            worker.join(timeout)
