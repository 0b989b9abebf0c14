# lockout.py
"""
Focus-loss lockout.

Visibility and focus events feed one reducer. Losing either locks the view;
regaining them does not unlock. Only a proctor/administrator unlock, delivered
out of band, returns to UNLOCKED. The attempt itself is never touched.
"""

import enum
import threading
from datetime import datetime
from typing import Callable, List, Optional

from timer import utcnow


class LockState(str, enum.Enum):
    UNLOCKED = "unlocked"
    LOCKED = "locked"


class LockEvent(str, enum.Enum):
    VISIBILITY_HIDDEN = "visibility_hidden"
    VISIBILITY_VISIBLE = "visibility_visible"
    BLUR = "blur"
    FOCUS = "focus"
    PROCTOR_UNLOCK = "proctor_unlock"


_LOCKING = {LockEvent.VISIBILITY_HIDDEN, LockEvent.BLUR}


def reduce(state: LockState, event: LockEvent) -> LockState:
    if event in _LOCKING:
        return LockState.LOCKED
    if event is LockEvent.PROCTOR_UNLOCK:
        return LockState.UNLOCKED
    return state


class Lockout:
    def __init__(self, on_change: Optional[Callable[[LockState], None]] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.state = LockState.UNLOCKED
        self.locked_at: Optional[datetime] = None
        self.lock_count = 0
        self.history: List[LockEvent] = []
        self._on_change = on_change
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def is_locked(self) -> bool:
        return self.state is LockState.LOCKED

    def dispatch(self, event: LockEvent) -> LockState:
        with self._lock:
            before = self.state
            self.state = reduce(before, LockEvent(event))
            self.history.append(LockEvent(event))
            changed = self.state is not before
            if changed and self.state is LockState.LOCKED:
                self.locked_at = self._clock()
                self.lock_count += 1
            elif changed:
                self.locked_at = None
        if changed and self._on_change:
            self._on_change(self.state)
        return self.state
