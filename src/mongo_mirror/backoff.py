# src/mongo_mirror/backoff.py
"""Idle and retry backoff for the sync loop."""

import logging

logger: logging.Logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base_s: float = 10.0, max_s: float = 60.0) -> float:
    """
    Compute the delay after `attempt` consecutive empty or failed polls.

    Args:
        attempt (int): Number of consecutive empty polls before this one (0-based).
        base_s (float): The first delay in seconds.
        max_s (float): The ceiling in seconds.

    Returns:
        float: `min(base_s * 2**attempt, max_s)`.
    """
    # Cap the exponent so long idle periods cannot overflow the float.
    return min(base_s * 2 ** min(attempt, 32), max_s)


class Backoff:
    """
    Per-loop backoff state.

    Each call to `next_delay` returns the delay for the current streak of
    empty polls and lengthens the streak; `reset` is called on any batch
    that yielded documents.
    """

    def __init__(self, base_s: float = 10.0, max_s: float = 60.0) -> None:
        """
        Initialize the backoff state.

        Args:
            base_s (float): The first delay in seconds.
            max_s (float): The ceiling in seconds.
        """
        self._base_s: float = base_s
        self._max_s: float = max_s
        self._attempt: int = 0

    @property
    def attempt(self) -> int:
        return self._attempt

    def next_delay(self) -> float:
        delay: float = backoff_delay(self._attempt, self._base_s, self._max_s)
        self._attempt += 1
        return delay

    def reset(self) -> None:
        if self._attempt:
            logger.debug("Backoff reset after a non-empty batch.")
        self._attempt = 0
