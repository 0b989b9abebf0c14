# autosave.py
"""
Autosave channel: every answer edit becomes one message, and a single consumer
thread writes them to the attempt store in the order they were pushed. That
gives last-write-wins per question without depending on request timing.

A failed write is reported through `on_error` and its keys ride along with the
next message, so the next successful save carries them forward. There is no
retry loop; the next edit is the retry.
"""

import threading
import time
from queue import Queue
from typing import Any, Callable, Dict, Optional

_STOP = object()


class AutosaveChannel:
    def __init__(
        self,
        send: Callable[[Dict[str, Any]], Any],
        on_error: Optional[Callable[[Exception], None]] = None,
        on_saved: Optional[Callable[[Dict[str, Any]], None]] = None,
        name: str = "autosave",
    ):
        self._send = send
        self._on_error = on_error
        self._on_saved = on_saved
        self._queue: "Queue[Any]" = Queue()
        self._unsaved: Dict[str, Any] = {}
        self._outstanding = 0
        self._cond = threading.Condition()
        self._closed = False
        self.last_error: Optional[Exception] = None
        self.saved_count = 0
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    # ---- producer side ----------------------------------------------------
    def push(self, question_id: Any, answer: Any) -> None:
        """Enqueue one edit and return immediately."""
        if self._closed:
            raise RuntimeError("autosave channel is closed")
        with self._cond:
            self._outstanding += 1
        self._queue.put((str(question_id), answer))

    @property
    def unsaved(self) -> Dict[str, Any]:
        with self._cond:
            return dict(self._unsaved)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every pushed edit has been attempted. False on timeout."""
        end = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._outstanding:
                left = None if end is None else end - time.monotonic()
                if left is not None and left <= 0:
                    return False
                self._cond.wait(left)
        return True

    def close(self, timeout: Optional[float] = None) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put(_STOP)
        self._thread.join(timeout)

    # ---- consumer side ----------------------------------------------------
    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            qid, answer = item
            with self._cond:
                payload = dict(self._unsaved)
            payload[qid] = answer
            try:
                self._send(payload)
            except Exception as e:
                with self._cond:
                    self._unsaved = payload
                self.last_error = e
                print(f"[autosave] save failed, {len(payload)} answer(s) pending: {e}")
                self._notify(self._on_error, e)
            else:
                with self._cond:
                    self._unsaved = {}
                self.last_error = None
                self.saved_count += 1
                self._notify(self._on_saved, payload)
            finally:
                with self._cond:
                    self._outstanding -= 1
                    self._cond.notify_all()

    @staticmethod
    def _notify(callback: Optional[Callable[[Any], None]], arg: Any) -> None:
        if callback is None:
            return
        try:
            callback(arg)
        except Exception as e:
            print(f"[autosave] callback failed: {e}")
