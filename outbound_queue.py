#!/usr/bin/env python3
"""
Outbound Correction Queue
Thread-safe FIFO between the RTCM producer and the NTRIP upload loop
"""

import logging
import threading
from collections import deque
from typing import List, Optional

logger = logging.getLogger(__name__)

DROP_OLDEST = 'drop_oldest'
BLOCK = 'block'
ERROR = 'error'
OVERFLOW_POLICIES = (DROP_OLDEST, BLOCK, ERROR)


class QueueFullError(Exception):
    """Raised by put() under the 'error' overflow policy"""


class OutboundQueue:
    """Bounded FIFO of correction chunks awaiting transmission"""

    def __init__(self, capacity: Optional[int] = 1024, overflow: str = DROP_OLDEST,
                 block_timeout: Optional[float] = 1.0):
        """
        Initialize outbound queue

        Args:
            capacity: Maximum queued chunks (None for unbounded)
            overflow: What put() does when full: 'drop_oldest', 'block' or 'error'
            block_timeout: Longest a 'block' put() waits before giving up
                           (None waits forever)
        """
        if overflow not in OVERFLOW_POLICIES:
            raise ValueError(f"Unknown overflow policy: {overflow}")
        if capacity is not None and capacity < 1:
            raise ValueError(f"Queue capacity must be positive, got {capacity}")

        self.capacity = capacity
        self.overflow = overflow
        self.block_timeout = block_timeout
        self._chunks = deque()
        self._lock = threading.Lock()
        self._not_full = threading.Condition(self._lock)
        self.dropped = 0

    def put(self, data: bytes) -> bool:
        """
        Append a chunk to the queue

        Args:
            data: Complete, ready-to-send correction data

        Returns:
            True if queued; False if it was dropped after a 'block' timeout

        Raises:
            QueueFullError: Queue is full under the 'error' policy
        """
        if not data:
            return False

        chunk = bytes(data)

        with self._not_full:
            if self._is_full():
                if self.overflow == DROP_OLDEST:
                    self._chunks.popleft()
                    self.dropped += 1
                    logger.debug("Outbound queue full, dropped oldest chunk")
                elif self.overflow == ERROR:
                    raise QueueFullError(f"Outbound queue full ({self.capacity} chunks)")
                else:
                    if not self._not_full.wait_for(lambda: not self._is_full(),
                                                   timeout=self.block_timeout):
                        self.dropped += 1
                        logger.warning("Outbound queue still full after waiting, chunk dropped")
                        return False

            self._chunks.append(chunk)
            return True

    def get(self) -> Optional[bytes]:
        """Pop the oldest chunk, or None if empty"""
        with self._not_full:
            if not self._chunks:
                return None
            chunk = self._chunks.popleft()
            self._not_full.notify()
            return chunk

    def drain(self) -> List[bytes]:
        """Remove and return every queued chunk, oldest first"""
        with self._not_full:
            chunks = list(self._chunks)
            self._chunks.clear()
            self._not_full.notify_all()
            return chunks

    def clear(self):
        """Discard all queued chunks"""
        with self._not_full:
            count = len(self._chunks)
            self._chunks.clear()
            self._not_full.notify_all()
        if count:
            logger.debug(f"Discarded {count} queued chunks")

    def _is_full(self) -> bool:
        return self.capacity is not None and len(self._chunks) >= self.capacity

    def __len__(self):
        with self._lock:
            return len(self._chunks)
