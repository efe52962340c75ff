"""
Audit Trail Module

Hash-chained append-only audit log with SHA-256 for tamper detection.
Every state change in the engine is logged here.
"""

import hashlib
import json
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .clock import Clock, SystemClock
from .currency import Money
from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Loan lifecycle
    LOAN_CREATED = "loan_created"
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_CLOSED = "loan_closed"
    LOAN_WRITTEN_OFF = "loan_written_off"
    REPAYMENT_PROCESSED = "repayment_processed"

    # Delinquency
    DELINQUENCY_CHECKED = "delinquency_checked"
    PENALTY_APPLIED = "penalty_applied"
    CLASSIFICATION_CHANGED = "classification_changed"

    # Guarantors and equity
    MEMBER_CREATED = "member_created"
    EQUITY_DEPOSITED = "equity_deposited"
    GUARANTOR_ADDED = "guarantor_added"
    GUARANTOR_CONSENT = "guarantor_consent"
    GUARANTOR_REMOVED = "guarantor_removed"
    EQUITY_LOCKED = "equity_locked"
    EQUITY_UNLOCKED = "equity_unlocked"

    # Applications and monthly thresholds
    APPLICATION_CREATED = "application_created"
    APPLICATION_APPROVED = "application_approved"
    APPLICATION_REJECTED = "application_rejected"
    THRESHOLD_SET = "threshold_set"
    THRESHOLD_ALLOCATED = "threshold_allocated"
    THRESHOLD_RELEASED = "threshold_released"
    APPLICATION_PROMOTED = "application_promoted"

    # Register
    LOAN_REGISTERED = "loan_registered"

    # Batch
    BATCH_ITEM_FAILED = "batch_item_failed"


def _serialize(value: Any) -> Any:
    """Convert metadata values to a JSON-serializable form"""
    if isinstance(value, Money):
        return str(value.amount)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, 'isoformat'):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str
    entity_id: str
    sequence: int
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    session_id: Optional[str] = None

    def __post_init__(self):
        if self.metadata:
            self.metadata = _serialize(self.metadata)

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event.
        Covers every field except current_hash.
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'session_id': self.session_id,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()


class AuditTrail:
    """
    Hash-chained audit trail.

    Events are ordered by a strictly increasing sequence number so the chain
    does not depend on timestamp resolution.
    """

    def __init__(self, storage: StorageInterface, clock: Optional[Clock] = None,
                 table_name: str = "audit_events"):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.table_name = table_name
        self._lock = threading.Lock()

    def _last_event(self) -> Optional[Dict[str, Any]]:
        events = self.storage.load_all(self.table_name)
        if not events:
            return None
        return max(events, key=lambda e: e.get('sequence', 0))

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited (loan, member, ...)
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of user who initiated the action
            session_id: Session identifier

        Returns:
            Created AuditEvent
        """
        # Storage transaction first, then the chain lock
        with self.storage.atomic():
            with self._lock:
                last = self._last_event()
                now = self.clock.now()
                event = AuditEvent(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    event_type=event_type,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    sequence=(last['sequence'] + 1) if last else 1,
                    previous_hash=last['current_hash'] if last else "",
                    current_hash="",
                    metadata=metadata or {},
                    user_id=user_id,
                    session_id=session_id,
                )
                event.current_hash = event.calculate_hash()
                self.storage.save(self.table_name, event.id, event.to_dict())
                return event

    def _load_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Get all audit events for a specific entity, oldest first"""
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = sorted((AuditEvent.from_dict(data) for data in events_data),
                        key=lambda e: e.sequence)
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(
        self,
        event_type: AuditEventType,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Get audit events by type within an inclusive time range"""
        events = [e for e in self._load_events() if e.event_type == event_type]
        if start_time:
            events = [e for e in events if e.created_at >= start_time]
        if end_time:
            events = [e for e in events if e.created_at <= end_time]
        if limit:
            events = events[-limit:]
        return events

    def get_all_events(self, limit: Optional[int] = None) -> List[AuditEvent]:
        events = self._load_events()
        if limit:
            events = events[-limit:]
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
            'chain_breaks': [],
        }

        events = self._load_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def get_event_by_id(self, event_id: str) -> Optional[AuditEvent]:
        """Get a specific audit event by ID"""
        event_data = self.storage.load(self.table_name, event_id)
        if event_data:
            return AuditEvent.from_dict(event_data)
        return None

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)
