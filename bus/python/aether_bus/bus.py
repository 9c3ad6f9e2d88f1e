"""
Redis Streams-based event bus implementation.

Carries governance audit records to viewers outside the core.
Enforces contract validation and fail-fast semantics.
"""

import json
import logging
from typing import Dict, Any, Iterable, List, Optional, Callable
from pathlib import Path

import redis

from .validator import ContractValidator


logger = logging.getLogger(__name__)


# The audit trail is a forensic log: its stream is never trimmed
UNTRIMMED_CONTRACTS = frozenset({"audit"})


def _message_data(fields: Dict[Any, Any]) -> Dict[str, Any]:
    """Decode the JSON payload of a stream entry (bytes or str field names)."""
    raw = fields.get(b"data", fields.get("data"))
    return json.loads(raw)


class EventBus:
    """
    Redis Streams-based event bus with contract validation.

    Invariants:
    - All messages MUST validate against contracts before publish
    - Invalid messages are rejected (fail fast)
    - A message published on an open transaction commits with it, or not at all
    - Bounded memory usage (maxlen) except for untrimmed contracts
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        contracts_dir: Path,
        stream_prefix: str = "aether",
        max_stream_length: int = 10000,
        untrimmed_contracts: Iterable[str] = UNTRIMMED_CONTRACTS,
    ):
        """
        Initialize event bus.

        Args:
            redis_client: Redis client instance
            contracts_dir: Path to contracts directory
            stream_prefix: Prefix for Redis stream names
            max_stream_length: Maximum entries per trimmed stream
            untrimmed_contracts: Contract types whose streams keep every entry
        """
        self.redis = redis_client
        self.validator = ContractValidator(contracts_dir)
        self.stream_prefix = stream_prefix
        self.max_stream_length = max_stream_length
        self.untrimmed_contracts = frozenset(untrimmed_contracts)

    def stream_maxlen(self, contract_type: str) -> Optional[int]:
        """Trim length for a contract's stream, None when it is never trimmed."""
        if contract_type in self.untrimmed_contracts:
            return None
        return self.max_stream_length

    def _get_stream_name(self, contract_type: str) -> str:
        """
        Get Redis stream name for contract type.

        Args:
            contract_type: Contract type (audit, proposal, ...)

        Returns:
            Stream name (e.g., "aether:audits")
        """
        return f"{self.stream_prefix}:{contract_type}s"

    def publish(
        self,
        message: Dict[str, Any],
        contract_type: str,
        pipe: Optional[redis.client.Pipeline] = None,
    ) -> Optional[str]:
        """
        Publish message to event bus after validation.

        Args:
            message: Message to publish
            contract_type: Contract type (audit, ...)
            pipe: Optional pipeline in MULTI mode. The XADD is queued on it
                and only lands if the caller's transaction executes.

        Returns:
            Message ID from Redis, or None when queued on a pipeline

        Raises:
            ValidationError: If message doesn't match contract
            ValueError: If contract type unknown
            redis.RedisError: If Redis operation fails
        """
        # Validate against contract (fail fast)
        schema_name = f"{contract_type}.schema"
        self.validator.validate(message, schema_name)

        stream_name = self._get_stream_name(contract_type)
        target = pipe if pipe is not None else self.redis
        message_id = target.xadd(
            stream_name,
            {"data": json.dumps(message)},
            maxlen=self.stream_maxlen(contract_type),
            approximate=True,  # Allow approximate trimming for performance
        )

        if pipe is not None:
            logger.debug(f"Queued {contract_type} on transaction for {stream_name}")
            return None

        logger.debug(
            f"Published {contract_type} to {stream_name}: {message_id}",
            extra={"contract_type": contract_type, "message_id": message_id},
        )

        return message_id.decode("utf-8") if isinstance(message_id, bytes) else message_id

    def subscribe(
        self,
        contract_type: str,
        handler: Callable[[Dict[str, Any]], None],
        consumer_group: str,
        consumer_name: str,
        block_ms: int = 1000,
        count: int = 10,
    ) -> None:
        """
        Subscribe to contract type and process messages.

        Args:
            contract_type: Contract type to subscribe to
            handler: Callback function to handle each message
            consumer_group: Redis consumer group name
            consumer_name: Consumer name within group
            block_ms: Block timeout in milliseconds
            count: Maximum messages to read per call

        Note:
            This is a blocking call that processes messages in a loop.
            Consumer must handle exceptions within handler.
        """
        stream_name = self._get_stream_name(contract_type)

        # Create consumer group if it doesn't exist
        try:
            self.redis.xgroup_create(stream_name, consumer_group, id="0", mkstream=True)
            logger.info(f"Created consumer group {consumer_group} for {stream_name}")
        except redis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
            logger.debug(f"Consumer group {consumer_group} already exists for {stream_name}")

        logger.info(
            f"Starting subscription: {stream_name} (group={consumer_group}, consumer={consumer_name})"
        )

        while True:
            try:
                messages = self.redis.xreadgroup(
                    consumer_group,
                    consumer_name,
                    {stream_name: ">"},
                    count=count,
                    block=block_ms,
                )

                if not messages:
                    continue

                for stream, entries in messages:
                    for message_id, fields in entries:
                        try:
                            data = _message_data(fields)
                            handler(data)
                            self.redis.xack(stream_name, consumer_group, message_id)

                        except Exception as e:
                            logger.error(
                                f"Error processing message {message_id}: {e}",
                                exc_info=True,
                                extra={"message_id": message_id, "stream": stream_name},
                            )
                            # Audit records are never replayed into a viewer twice
                            self.redis.xack(stream_name, consumer_group, message_id)

            except KeyboardInterrupt:
                logger.info(f"Stopping subscription to {stream_name}")
                break
            except Exception as e:
                logger.error(f"Error in subscription loop: {e}", exc_info=True)

    def read_stream(
        self,
        contract_type: str,
        start_id: str = "0",
        count: Optional[int] = 100,
    ) -> List[Dict[str, Any]]:
        """
        Read messages from stream, oldest first.

        Args:
            contract_type: Contract type to read
            start_id: Start reading from this ID
            count: Maximum messages to read, None for the whole stream

        Returns:
            List of messages
        """
        stream_name = self._get_stream_name(contract_type)
        entries = self.redis.xrange(stream_name, min=start_id, max="+", count=count)

        return [_message_data(fields) for _, fields in entries]

    def stream_length(self, contract_type: str) -> int:
        """Number of entries currently held in a contract stream."""
        return self.redis.xlen(self._get_stream_name(contract_type))
