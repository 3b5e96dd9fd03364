"""
Wall-clock budget for a single chat request.
"""
import time
from typing import Optional

from django.conf import settings

from apps.rag.errors import DeadlineExceeded


class RequestDeadline:
    """
    Tracks the time left before a request must have started streaming.

    Each stage asks for ``remaining()`` and uses it as its network timeout,
    so a slow embedding call eats into the budget of the completion call.
    """

    def __init__(self, seconds: Optional[float] = None, clock=time.monotonic):
        if seconds is None:
            seconds = getattr(settings, 'REQUEST_DEADLINE_SECONDS', 30.0)
        self.seconds = float(seconds)
        self._clock = clock
        self._expires_at = clock() + self.seconds

    def remaining(self) -> float:
        """Seconds left; raises DeadlineExceeded once the budget is spent."""
        left = self._expires_at - self._clock()
        if left <= 0:
            raise DeadlineExceeded(
                f"Request exceeded {self.seconds:.0f}s before output started"
            )
        return left

    @property
    def expired(self) -> bool:
        return self._clock() >= self._expires_at
