"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every loan lifecycle change and every ledger mutation is logged here,
inside the same storage transaction as the change itself.
"""

import hashlib
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .storage import StorageInterface, StorageRecord, to_storable


HEAD_ID = "head"


class AuditEventType(Enum):
    """Types of audit events"""
    # Loan lifecycle
    LOAN_SUBMITTED = "loan_submitted"
    LOAN_VERIFICATION_REQUIRED = "loan_verification_required"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_PAID_IN_FULL = "loan_paid_in_full"

    # Scheduling
    SCHEDULE_GENERATED = "schedule_generated"

    # Ledger
    PAYMENT_RECORDED = "payment_recorded"
    PAYMENT_EDITED = "payment_edited"
    PAYMENT_DELETED = "payment_deleted"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = _serialize(self.metadata or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            event_type=AuditEventType(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
            metadata=data.get('metadata') or {},
            user_id=data.get('user_id'),
        )


def _serialize(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return to_storable(value)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.head_table = f"{table_name}_head"
        self.enabled = enabled

    def _chain_head(self) -> Dict[str, Any]:
        """Hash and sequence number of the newest event"""
        head = self.storage.load(self.head_table, HEAD_ID)
        if head:
            return head
        if self.storage.count(self.table_name) == 0:
            return {'current_hash': "", 'next_sequence': 0}

        # Chains written before the head record existed
        events = self.storage.load_all(self.table_name)
        latest = max(events, key=lambda e: e.get('sequence', 0))
        return {
            'current_hash': latest.get('current_hash', ""),
            'next_sequence': latest.get('sequence', 0) + 1,
        }

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Log an audit event with hash chaining

        The chain head is a stored record updated in the same transaction as
        the event, so an event rolled back with its enclosing transaction
        never becomes a parent.
        """
        if not self.enabled:
            return None

        # Joins the caller's transaction when there is one
        with self.storage.atomic():
            head = self._chain_head()
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=head['current_hash'],
                current_hash="",
                metadata=metadata or {},
                user_id=user_id,
            )
            event.current_hash = event.calculate_hash()

            record = event.to_dict()
            record['sequence'] = head['next_sequence']
            self.storage.save(self.table_name, event.id, record)
            self.storage.save(self.head_table, HEAD_ID, {
                'id': HEAD_ID,
                'current_hash': event.current_hash,
                'next_sequence': record['sequence'] + 1,
            })
            return event

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """All audit events for an entity, oldest first"""
        data = self.storage.find(self.table_name, {'entity_type': entity_type, 'entity_id': entity_id})
        data.sort(key=lambda e: e.get('sequence', 0))
        return [AuditEvent.from_dict(d) for d in data]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the whole chain and report broken links or tampered events

        Returns:
            {"valid": bool, "total_events": int, "errors": [...]}
        """
        data = self.storage.load_all(self.table_name)
        data.sort(key=lambda e: e.get('sequence', 0))
        events = [AuditEvent.from_dict(d) for d in data]

        errors = []
        previous = ""
        for event in events:
            if not event.verify_hash():
                errors.append(f"Event {event.id} hash mismatch")
            if event.previous_hash != previous:
                errors.append(f"Event {event.id} breaks the chain")
            previous = event.current_hash

        return {"valid": not errors, "total_events": len(events), "errors": errors}
