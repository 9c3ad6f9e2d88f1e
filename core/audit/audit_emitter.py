"""
Aether Audit Emitter - immutable trail of governance transitions.

Every state-changing operation (create, vote, approve, reject, deploy)
appends one audit record to the audit stream. Refused attempts are recorded
too: a duplicate vote or an over-cap admin activation is a misuse signal
worth keeping.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

import redis

from bus.python.aether_bus import EventBus
from core.clock import Clock, parse_timestamp, utc_now
from core.errors import ApplyFailed, GovernanceError, InvalidArgument


logger = logging.getLogger(__name__)


class AuditEmitter:
    """
    Builds and publishes audit contracts.

    Invariants:
    - Append-only (records are never updated or deleted)
    - Every record validates against audit.schema.json
    - A record emitted on a transaction commits with that transaction
    - A failed standalone publish is logged, never raised over the domain outcome
    """

    def __init__(
        self,
        event_bus: EventBus,
        source_name: str = "aether-governance",
        clock: Optional[Clock] = None,
    ):
        """
        Initialize audit emitter.

        Args:
            event_bus: Event bus carrying the audit stream
            source_name: Default source identifier for records
            clock: Timestamp source (UTC)
        """
        self.bus = event_bus
        self.source_name = source_name
        self._clock = clock or utc_now

    def _create_record(
        self,
        event_type: str,
        entity_type: str,
        entity_id: str,
        actor: str,
        outcome: str,
        source: Optional[str],
        details: Optional[Dict[str, Any]],
        error: Optional[GovernanceError],
    ) -> Dict[str, Any]:
        record = {
            "version": "1.0",
            "audit_id": str(uuid.uuid4()),
            "timestamp": self._clock().isoformat(),
            "source": source or self.source_name,
            "event_type": event_type,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "actor": actor or "unknown",
            "outcome": outcome,
        }

        if details:
            record["details"] = details

        if error is not None:
            record["error"] = error.to_dict()

        return record

    def emit(
        self,
        event_type: str,
        entity_type: str,
        entity_id: str,
        actor: str,
        outcome: str = "success",
        details: Optional[Dict[str, Any]] = None,
        error: Optional[GovernanceError] = None,
        source: Optional[str] = None,
        pipe: Optional[redis.client.Pipeline] = None,
    ) -> Dict[str, Any]:
        """
        Emit one audit record.

        Args:
            event_type: Transition name (e.g. "vote_cast")
            entity_type: "proposal", "invitation", "account" or "principal"
            entity_id: Id of the entity the transition concerns
            actor: Principal or operator responsible
            outcome: "success", "refused" or "failed"
            details: Extra structured context
            error: Domain error for refused or failed attempts
            source: Component source name, defaults to the emitter's
            pipe: Pipeline in MULTI mode to commit the record with

        Returns:
            The audit record
        """
        record = self._create_record(
            event_type, entity_type, entity_id, actor, outcome, source, details, error
        )

        if pipe is not None:
            # Part of the caller's transaction: any failure must abort it
            self.bus.publish(record, "audit", pipe=pipe)
            return record

        try:
            self.bus.publish(record, "audit")
            logger.debug(f"Audit {event_type} {entity_type}={entity_id} outcome={outcome}")
        except Exception as e:
            logger.error(
                f"Failed to publish audit record {record['audit_id']} "
                f"({event_type} {entity_id}): {e}",
                exc_info=True,
            )

        return record

    def refused(
        self,
        event_type: str,
        entity_type: str,
        entity_id: str,
        actor: str,
        error: GovernanceError,
        details: Optional[Dict[str, Any]] = None,
        source: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Record an attempt the core refused, with the rule that refused it."""
        outcome = "failed" if isinstance(error, ApplyFailed) else "refused"
        logger.warning(
            f"{event_type}: {entity_type} {entity_id} by {actor} refused "
            f"({error.code}, rule={error.rule}): {error.message}"
        )
        return self.emit(
            event_type,
            entity_type,
            entity_id,
            actor,
            outcome=outcome,
            details=details,
            error=error,
            source=source,
        )

    def read(
        self,
        limit: Optional[int] = None,
        entity_id: Optional[str] = None,
        event_type: Optional[str] = None,
        since: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Read audit records, oldest first.

        Args:
            limit: Maximum records to return (most recent ones), None for all
            entity_id: Only records about this entity
            event_type: Only records of this transition
            since: ISO timestamp to filter from (inclusive)

        Returns:
            List of audit records

        Raises:
            InvalidArgument: If limit is negative or since is not a timestamp
        """
        if limit is not None and limit < 0:
            raise InvalidArgument(f"limit must be >= 0, got {limit}", rule="limit_non_negative")
        since_at = None
        if since is not None:
            try:
                since_at = parse_timestamp(since)
            except (AttributeError, TypeError, ValueError):
                raise InvalidArgument(
                    f"since must be an ISO timestamp, got {since!r}", rule="since_timestamp"
                )

        records = self.bus.read_stream("audit", count=None)

        if entity_id is not None:
            records = [r for r in records if r["entity_id"] == entity_id]
        if event_type is not None:
            records = [r for r in records if r["event_type"] == event_type]
        if since_at is not None:
            records = [r for r in records if parse_timestamp(r["timestamp"]) >= since_at]

        if limit is not None:
            records = records[-limit:] if limit else []

        return records
