"""Host port allocation for container port bindings.

Every exposed container port is published on a host port leased from a
fixed range.  Leases are process-wide: a port is never handed to two
callers at once, and releasing returns it to the free set.
"""

from __future__ import annotations

import random
import threading

from sandpool.errors import ExhaustedError
from sandpool.logger import logger


class PortAllocator:
    """Tracks which host ports in ``[range_start, range_end]`` are leased.

    Guarded by a ``threading.Lock`` so acquire/release are atomic whether
    called from the event loop or from worker threads.
    """

    def __init__(self, range_start: int, range_end: int) -> None:
        if range_start > range_end:
            raise ValueError(f"Empty port range {range_start}-{range_end}")
        self._range = range(range_start, range_end + 1)
        self._leased: set[int] = set()
        self._lock = threading.Lock()

    def acquire(self) -> int:
        """Lease a free port.  Raises ExhaustedError when none is left."""
        with self._lock:
            if len(self._leased) >= len(self._range):
                raise ExhaustedError(
                    f"No free host port in {self._range.start}-{self._range.stop - 1}"
                )
            # Random probing keeps acquisition O(1) while the range is sparse.
            for _ in range(8):
                port = random.choice(self._range)
                if port not in self._leased:
                    break
            else:
                port = next(p for p in self._range if p not in self._leased)
            self._leased.add(port)
        logger.debug("Port leased", port=port)
        return port

    def release(self, port: int) -> None:
        """Return *port* to the free set.  Releasing a free port is a no-op."""
        with self._lock:
            if port not in self._leased:
                return
            self._leased.discard(port)
        logger.debug("Port released", port=port)

    @property
    def leased(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._leased)

    @property
    def available(self) -> int:
        with self._lock:
            return len(self._range) - len(self._leased)

    def __contains__(self, port: object) -> bool:
        with self._lock:
            return port in self._leased
