"""ChainClock: Chain time estimate robust to host clock skew.

TWAP weights and freshness bounds are expressed in block timestamps. The host
clock may disagree with the chain, so "now" is derived from the newest block
timestamp observed plus the monotonic time elapsed since it was observed.

.. code-block:: python

    >>> clock = ChainClock()
    >>> clock.observe(1_700_000_000)
    >>> clock.now()
    1700000000
"""

from __future__ import annotations

import time


class ChainClock:
    """Estimates the current chain time in whole seconds.

    :ivar last_timestamp: Newest block timestamp observed, or None.
    """

    def __init__(self) -> None:
        self.last_timestamp: int | None = None
        self._observed_at = 0.0

    def observe(self, block_timestamp: int) -> None:
        """Feed a block timestamp. Older timestamps are ignored.

        :param block_timestamp: Block timestamp in unix seconds.
        """
        if self.last_timestamp is None or block_timestamp > self.last_timestamp:
            self.last_timestamp = block_timestamp
            self._observed_at = time.monotonic()

    def now(self) -> int:
        """Return the estimated chain time.

        Falls back to the host clock until a block has been observed.
        """
        if self.last_timestamp is None:
            return int(time.time())
        return self.last_timestamp + int(time.monotonic() - self._observed_at)

    def __call__(self) -> int:
        return self.now()
