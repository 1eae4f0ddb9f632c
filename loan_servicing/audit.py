"""
Audit Trail Module

Hash-chained append-only log of every servicing mutation. Each event stores
the SHA-256 of its predecessor so any edit to history breaks the chain.
"""

import hashlib
import json
import threading
import uuid
from datetime import datetime, timezone
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Any

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    CREDIT_CREATED = "credit_created"
    CREDIT_UPDATED = "credit_updated"
    PAYMENT_APPLIED = "payment_applied"
    CREDIT_CANCELLED = "credit_cancelled"
    CREDIT_REFINANCED = "credit_refinanced"
    CREDIT_VOIDED = "credit_voided"
    INSTALLMENTS_SWEPT = "installments_swept"
    SCORE_UPDATED = "score_updated"


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """Immutable audit event chained to its predecessor"""
    event_type: AuditEventType
    entity_type: str  # credit, installment, client
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    actor_role: Optional[str] = None

    def __post_init__(self):
        self.metadata = _jsonable(self.metadata or {})

    def calculate_hash(self) -> str:
        """SHA-256 over every field except current_hash"""
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'actor_role': self.actor_role,
            'metadata': self.metadata
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()

    def _last_hash(self) -> str:
        # read from storage so a rolled-back transaction cannot leave a dangling link
        events = self.storage.load_all(self.table_name)
        if not events:
            return ""
        latest = max(events, key=lambda e: (e.get('created_at', ''), e.get('sequence', 0)))
        return latest.get('current_hash', "")

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        actor_role: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an event linked to the previous event's hash

        Args:
            event_type: What happened
            entity_type: credit, installment or client
            entity_id: Affected record
            metadata: Amounts, ids and states recorded with the event
            actor_role: Role of the requester, when known

        Returns:
            Created AuditEvent
        """
        with self._lock:
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash(),
                current_hash="",
                metadata=metadata or {},
                actor_role=actor_role
            )
            event.current_hash = event.calculate_hash()

            record = event.to_dict()
            record['sequence'] = self.storage.count(self.table_name)
            self.storage.save(self.table_name, event.id, record)
            return event

    def _ordered(self) -> List[Dict[str, Any]]:
        records = self.storage.load_all(self.table_name)
        records.sort(key=lambda e: (e.get('created_at', ''), e.get('sequence', 0)))
        for record in records:
            record.pop('sequence', None)
        return records

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """All events for one entity, oldest first"""
        return [
            AuditEvent.from_dict(record) for record in self._ordered()
            if record['entity_type'] == entity_type and record['entity_id'] == entity_id
        ]

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        """All events of one type, oldest first"""
        return [
            AuditEvent.from_dict(record) for record in self._ordered()
            if record['event_type'] == event_type.value
        ]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify every hash and every chain link

        Returns:
            Dictionary with 'valid', 'total_events', 'hash_errors', 'chain_breaks'
        """
        result = {'valid': True, 'total_events': 0, 'hash_errors': [], 'chain_breaks': []}
        events = [AuditEvent.from_dict(record) for record in self._ordered()]
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
