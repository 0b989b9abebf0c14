# timer.py
"""
Deadline authority.

Only the persisted `started_at` and the exam's duration decide when an attempt
expires. Countdown displays recompute `deadline - now` on every tick instead of
decrementing a counter, so a suspended tab catches up on resume.
"""

import os
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

DEADLINE_GRACE_SECONDS = int(os.getenv("EXAM_DEADLINE_GRACE_SECONDS") or 30)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(ts: datetime) -> datetime:
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def deadline_for(started_at: Optional[datetime], duration_minutes: Optional[int]) -> Optional[datetime]:
    """None for untimed exams and for attempts whose timer has not started."""
    if started_at is None or not duration_minutes:
        return None
    return _aware(started_at) + timedelta(minutes=int(duration_minutes))


def remaining_seconds(deadline: Optional[datetime], now: Optional[datetime] = None) -> Optional[float]:
    if deadline is None:
        return None
    return (_aware(deadline) - _aware(now or utcnow())).total_seconds()


def is_expired(deadline: Optional[datetime], now: Optional[datetime] = None, grace_seconds: float = 0) -> bool:
    left = remaining_seconds(deadline, now)
    return left is not None and left + grace_seconds <= 0


class DeadlineWatch:
    """
    Periodic check against one authoritative deadline.

    `tick()` may be called as often as the caller likes (a UI timer, a resume
    handler, both at once); `on_expire` runs at most once.
    """

    def __init__(self, deadline: Optional[datetime], on_expire: Callable[[], None],
                 clock: Callable[[], datetime] = utcnow):
        self.deadline = _aware(deadline) if deadline else None
        self._on_expire = on_expire
        self._clock = clock
        self._fired = False
        self._lock = threading.Lock()

    @property
    def fired(self) -> bool:
        return self._fired

    def remaining(self, now: Optional[datetime] = None) -> Optional[float]:
        return remaining_seconds(self.deadline, now or self._clock())

    def tick(self, now: Optional[datetime] = None) -> Optional[float]:
        left = self.remaining(now)
        if left is None or left > 0:
            return left
        with self._lock:
            if self._fired:
                return left
            self._fired = True
        self._on_expire()
        return left


def format_remaining(seconds: Optional[float]) -> str:
    if seconds is None:
        return "untimed"
    s = max(0, int(seconds))
    h, rem = divmod(s, 3600)
    m, s = divmod(rem, 60)
    return f"{h}:{m:02d}:{s:02d}" if h else f"{m:02d}:{s:02d}"
