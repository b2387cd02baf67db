"""
Audit Recorder.

Append-only audit log with hash-chaining for tamper evidence. Each entry stores the
entry_hash of its predecessor in previous_hash, and its own entry_hash is a SHA-256
digest over its content fields plus that previous hash, so editing any stored row
breaks the chain for every later entry.

The recorder writes into the caller's session: the audit row commits or rolls back
together with the mutation it describes. A failed audit write is raised as
DependencyError, which aborts the enclosing unit of work.
"""

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.reporting.database import lock_audit_log
from src.reporting.engine.errors import DependencyError
from src.reporting.logging_config import get_logger
from src.reporting.models.orm_models import AuditEntry, utcnow

logger = get_logger(__name__)


def canonical_json(payload: Optional[Dict[str, Any]]) -> str:
    return json.dumps(payload or {}, sort_keys=True, separators=(",", ":"), default=str)


def compute_entry_hash(
    user_id: Optional[int],
    action: str,
    target_table: Optional[str],
    target_id: Optional[int],
    details: Optional[Dict[str, Any]],
    created_at,
    previous_hash: Optional[str],
) -> str:
    """
    SHA-256 over the pipe-joined content fields.
    None values are represented as the empty string in the hash input.
    """
    parts = [
        "" if user_id is None else str(user_id),
        action,
        target_table or "",
        "" if target_id is None else str(target_id),
        canonical_json(details),
        created_at.isoformat(),
        previous_hash or "",
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


@dataclass
class ChainVerification:
    valid: bool
    entries_checked: int
    first_invalid_id: Optional[int] = None
    reason: Optional[str] = None


class AuditRecorder:
    """Writes and verifies the audit chain within a session."""

    def __init__(self, session: Session):
        self.session = session

    def _latest_hash(self) -> Optional[str]:
        return (
            self.session.query(AuditEntry.entry_hash)
            .order_by(AuditEntry.id.desc())
            .limit(1)
            .scalar()
        )

    def _lock_chain_head(self) -> None:
        # Two concurrent writers reading the same head would fork the chain.
        # Snapshot transactions must already hold this lock from their first statement.
        lock_audit_log(self.session)

    def record(
        self,
        user_id: Optional[int],
        action,
        target_table: Optional[str],
        target_id: Optional[int],
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """
        Append one audit entry to the chain inside the current transaction.

        Raises:
            DependencyError: the entry could not be written; the caller's transaction must roll back.
        """
        action_name = getattr(action, "value", action)
        # Store exactly what was hashed
        stored_details = json.loads(canonical_json(details))
        try:
            self._lock_chain_head()
            previous_hash = self._latest_hash()
            created_at = utcnow()
            entry = AuditEntry(
                user_id=user_id,
                action=action_name,
                target_table=target_table,
                target_id=target_id,
                details=stored_details,
                created_at=created_at,
                previous_hash=previous_hash,
                entry_hash=compute_entry_hash(
                    user_id, action_name, target_table, target_id, stored_details, created_at, previous_hash
                ),
            )
            self.session.add(entry)
            self.session.flush()
        except SQLAlchemyError as exc:
            logger.error("audit_write_failed", action=action_name, target_table=target_table,
                         target_id=target_id, error=str(exc))
            raise DependencyError(
                "Audit write failed",
                details={"action": action_name, "target_table": target_table, "target_id": target_id},
            ) from exc

        logger.info("audit_recorded", audit_id=entry.id, user_id=user_id, action=action_name,
                    target_table=target_table, target_id=target_id)
        return entry

    def verify_chain(self) -> ChainVerification:
        """Recompute every hash in id order and report the first broken link."""
        previous_hash = None
        checked = 0
        for entry in self.session.query(AuditEntry).order_by(AuditEntry.id).yield_per(500):
            checked += 1
            if entry.previous_hash != previous_hash:
                return ChainVerification(False, checked, entry.id, "previous_hash does not match predecessor")
            expected = compute_entry_hash(
                entry.user_id, entry.action, entry.target_table, entry.target_id,
                entry.details, entry.created_at, entry.previous_hash,
            )
            if expected != entry.entry_hash:
                return ChainVerification(False, checked, entry.id, "entry_hash does not match content")
            previous_hash = entry.entry_hash
        return ChainVerification(True, checked)
