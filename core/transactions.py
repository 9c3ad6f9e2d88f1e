"""
Optimistic per-entity transactions over Redis WATCH/MULTI/EXEC.

A transaction body reads through the pipeline while the watched keys are
held, then calls ``pipe.multi()`` and queues its writes. If any watched key
changes before EXEC, Redis refuses the whole write and the body is re-run
against fresh state.
"""

import logging
from typing import Callable, Sequence, TypeVar

import redis

from .errors import ContentionError


logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5

T = TypeVar("T")


def run_transaction(
    client: redis.Redis,
    watch_keys: Sequence[str],
    body: Callable[[redis.client.Pipeline], T],
    max_retries: int = DEFAULT_MAX_RETRIES,
    entity_id: str = "",
) -> T:
    """
    Run ``body`` atomically with respect to other writers of ``watch_keys``.

    Args:
        client: Redis client
        watch_keys: Keys whose modification must abort this write
        body: Callable receiving the watching pipeline. Must call
            ``pipe.multi()`` before queueing writes. Domain errors it raises
            propagate immediately and are never retried.
        max_retries: Attempts before giving up on a contended entity
        entity_id: Label used in logs and the ContentionError

    Returns:
        Whatever ``body`` returned on the attempt that committed

    Raises:
        ContentionError: If every attempt lost the race
    """
    label = entity_id or watch_keys[0]

    for attempt in range(1, max_retries + 1):
        with client.pipeline() as pipe:
            try:
                pipe.watch(*watch_keys)
                result = body(pipe)
                pipe.execute()
                return result
            except redis.WatchError:
                logger.warning(
                    f"Write contention on {label} "
                    f"(attempt {attempt}/{max_retries}), retrying"
                )

    logger.error(f"Giving up on {label} after {max_retries} contended attempts")
    raise ContentionError(label, max_retries)


def decode(value) -> str:
    """Decode a Redis reply that may be bytes (decode_responses=False)."""
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value
