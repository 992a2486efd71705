"""Injectable time and randomness sources.

Production code uses ``SystemClock`` and ``SecretsRandom``; tests swap in
fakes so expiry and token values are deterministic.
"""

import secrets
import time
from typing import Protocol


class Clock(Protocol):
    """Source of the current time."""

    def now(self) -> float:
        """Return the current Unix time in seconds."""
        ...


class RandomSource(Protocol):
    """Source of unguessable tokens."""

    def token_urlsafe(self, nbytes: int) -> str: ...


class SystemClock:
    """Wall-clock time."""

    def now(self) -> float:
        return time.time()


class SecretsRandom:
    """Cryptographically secure randomness from the ``secrets`` module."""

    def token_urlsafe(self, nbytes: int) -> str:
        return secrets.token_urlsafe(nbytes)


def now_ms(clock: Clock) -> int:
    """Return the clock's current time as integer epoch milliseconds."""
    return int(clock.now() * 1000)
