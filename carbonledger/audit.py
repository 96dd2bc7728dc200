"""Audit trail for ledger mutations."""

import logging
from dataclasses import dataclass
from typing import Optional

from .database import AuditEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestOrigin:
    """Where a request came from, as reported by the surrounding service."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


SYSTEM = RequestOrigin()


class AuditRecorder:
    """
    Writes AuditEntry rows into the caller's session.

    Entries share the unit of work of the mutation they describe, so they
    are persisted exactly when that mutation commits.
    """

    def __init__(self, session):
        self.session = session

    def record(self, actor_id, action, entity_type, entity_id,
               before=None, after=None, origin: Optional[RequestOrigin] = None):
        origin = origin or SYSTEM
        entry = AuditEntry(
            user_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            old_values=before,
            new_values=after,
            ip_address=origin.ip_address,
            user_agent=origin.user_agent,
        )
        self.session.add(entry)
        logger.debug("Audit %s on %s %s by %s", action, entity_type, entity_id, actor_id or "system")
        return entry
