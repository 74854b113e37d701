"""Host-driven block height and timestamp source."""

from __future__ import annotations

from dataclasses import dataclass

from settlement.fixed_point import require_uint


@dataclass
class ChainClock:
    """Injectable chain clock; the host advances it in block order.

    ``height`` drives policy expiration and role expiry, ``timestamp`` (unix
    seconds) drives price freshness and staleness.
    """

    height: int = 0
    timestamp: int = 0

    def current_height(self) -> int:
        return self.height

    def current_time(self) -> int:
        return self.timestamp

    def advance(self, blocks: int = 1, seconds: int = 0) -> None:
        """Move forward; the clock never runs backwards."""
        require_uint(blocks, "blocks")
        require_uint(seconds, "seconds")
        self.height += blocks
        self.timestamp += seconds

    def set(self, height: int, timestamp: int) -> None:
        require_uint(height, "height")
        require_uint(timestamp, "timestamp")
        if height < self.height or timestamp < self.timestamp:
            raise ValueError("ChainClock cannot move backwards.")
        self.height = height
        self.timestamp = timestamp
