"""
Watermark Tracker

Per-stream monotonic "last processed block", checkpointed to Redis so a
restarted indexer does not re-admit replays it already committed.
"""

import logging
from typing import Optional, Dict, Union

from .types import EventType, StaleEvent
from .database import RedisManager

logger = logging.getLogger(__name__)

UNSET = -1


def stream_key(chain_id: int, event_type: Union[EventType, str]) -> str:
    """Logical stream name; streams are ordered independently of each other"""
    value = event_type.value if isinstance(event_type, EventType) else str(event_type)
    return f"{chain_id}:{value}"


class WatermarkTracker:
    """Owns the watermark of every stream; never shared as module state"""

    def __init__(self, redis_manager: Optional[RedisManager] = None, namespace: str = "watermark"):
        self.redis = redis_manager
        self.namespace = namespace
        self._marks: Dict[str, int] = {}

    def _checkpoint_key(self, stream: str) -> str:
        return f"{self.namespace}:{stream}"

    def current(self, stream: str) -> int:
        """Watermark for a stream, UNSET (-1) if nothing was ever committed"""
        if stream not in self._marks:
            self._marks[stream] = self._load_checkpoint(stream)
        return self._marks[stream]

    def is_stale(self, stream: str, block_number: int) -> bool:
        return block_number <= self.current(stream)

    def ensure_fresh(self, stream: str, block_number: int):
        """
        Raises:
            StaleEvent: block_number is at or below the stream watermark
        """
        current = self.current(stream)
        if block_number <= current:
            raise StaleEvent(f"{stream} block {block_number} is at or below watermark {current}")

    def advance(self, stream: str, block_number: int) -> int:
        """Raise the watermark to block_number; lower values are ignored"""
        current = self.current(stream)
        if block_number <= current:
            return current

        self._marks[stream] = block_number
        self._save_checkpoint(stream, block_number)
        logger.debug(f"Watermark {stream} advanced {current} -> {block_number}")
        return block_number

    def streams(self) -> Dict[str, int]:
        return dict(self._marks)

    def lowest(self, streams) -> int:
        """Lowest watermark across the given streams"""
        return min((self.current(s) for s in streams), default=UNSET)

    def _load_checkpoint(self, stream: str) -> int:
        if self.redis is None:
            return UNSET
        value = self.redis.get(self._checkpoint_key(stream))
        if value is None:
            return UNSET
        try:
            block_number = int(value)
        except ValueError:
            logger.error(f"Corrupt watermark checkpoint for {stream}: {value!r}")
            return UNSET
        logger.info(f"Restored watermark {stream} at block {block_number}")
        return block_number

    def _save_checkpoint(self, stream: str, block_number: int):
        if self.redis is None:
            return
        self.redis.set(self._checkpoint_key(stream), str(block_number), persist=True)
