# exam_session.py
"""
Learner-side state for one open exam view.

Ties together the local answer map, the autosave channel, the focus-loss
lockout and the deadline watch. The browser page (templates/exam.html) runs
the same logic in JavaScript; this class is what a Python client (kiosk app,
load test, integration test) drives.

View states: "editable" -> "locked" (focus lost) and/or "submitted" (terminal).
"""

import threading
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional

from autosave import AutosaveChannel
from errors import AlreadySubmitted, Locked, ValidationFailed
from lockout import LockEvent, LockState, Lockout
from questions import Question, validate_answer
from timer import DeadlineWatch, utcnow

REASON_LEARNER = "learner"
REASON_DEADLINE = "deadline"


class ExamSession:
    def __init__(
        self,
        questions: Iterable[Question],
        save: Callable[[Dict[str, Any]], Any],
        submit: Callable[[Dict[str, Any], str], Any],
        answers: Optional[Dict[str, Any]] = None,
        deadline: Optional[datetime] = None,
        clock: Callable[[], datetime] = utcnow,
        on_notice: Optional[Callable[[str], None]] = None,
        char_limit: int = 2000,
    ):
        self.questions = {q.id: q for q in questions}
        self.answers: Dict[str, Any] = dict(answers or {})
        self.result: Any = None
        self.notice: Optional[str] = None
        self._submit = submit
        self._on_notice = on_notice
        self._char_limit = char_limit
        self._submitted = False
        self._submit_lock = threading.Lock()
        self.lockout = Lockout(clock=clock)
        self.autosave = AutosaveChannel(save, on_error=self._save_failed)
        self.watch = DeadlineWatch(deadline, on_expire=self._deadline_reached, clock=clock)

    # ---- state ------------------------------------------------------------
    @property
    def submitted(self) -> bool:
        return self._submitted

    @property
    def view_state(self) -> str:
        if self._submitted:
            return "submitted"
        if self.lockout.is_locked:
            return "locked"
        return "editable"

    def _notify(self, message: str) -> None:
        self.notice = message
        if self._on_notice:
            self._on_notice(message)

    def _save_failed(self, exc: Exception) -> None:
        self._notify("Progress not saved. Your answer is kept and will be saved with your next change.")

    # ---- learner input ----------------------------------------------------
    def edit(self, question_id: str, value: Any) -> bool:
        """Apply one answer change locally and queue it for saving. False if the view is locked."""
        if self._submitted:
            raise Locked("This exam has already been submitted.")
        if self.lockout.is_locked:
            return False
        q = self.questions.get(str(question_id))
        if q is None:
            raise ValidationFailed(f"Unknown question '{question_id}'.", field=str(question_id))
        normalized = validate_answer(q, value, self._char_limit)
        self.answers[q.id] = normalized
        self.autosave.push(q.id, normalized)
        return True

    def visibility_changed(self, hidden: bool) -> LockState:
        return self.lockout.dispatch(LockEvent.VISIBILITY_HIDDEN if hidden else LockEvent.VISIBILITY_VISIBLE)

    def focus_changed(self, focused: bool) -> LockState:
        return self.lockout.dispatch(LockEvent.FOCUS if focused else LockEvent.BLUR)

    def proctor_unlock(self) -> LockState:
        return self.lockout.dispatch(LockEvent.PROCTOR_UNLOCK)

    # ---- time -------------------------------------------------------------
    def tick(self, now: Optional[datetime] = None) -> Optional[float]:
        if self._submitted:
            return None
        return self.watch.tick(now)

    def _deadline_reached(self) -> None:
        self.submit(reason=REASON_DEADLINE)

    # ---- submission -------------------------------------------------------
    def submit(self, reason: str = REASON_LEARNER) -> Any:
        if reason == REASON_LEARNER and self.lockout.is_locked:
            return None
        with self._submit_lock:
            if self._submitted:
                return self.result
            self.autosave.flush(timeout=10)
            try:
                self.result = self._submit(dict(self.answers), reason)
            except AlreadySubmitted as e:
                print(f"[exam] submit ({reason}) rejected: {e.message}")
                self._notify("Exam already submitted.")
            except Exception as e:
                # the server finalizes expired attempts itself on the next visit
                if reason != REASON_DEADLINE:
                    raise
                print(f"[exam] deadline submit failed: {e}")
                self._notify("Exam already submitted.")
            self._submitted = True
        self.autosave.close(timeout=5)
        return self.result

    def close(self) -> None:
        self.autosave.close(timeout=5)
