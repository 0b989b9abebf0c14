# attempts.py
"""
Attempt store: one row per (learner, exam) in public.exam_attempts.

Lifecycle: NOT_STARTED -> IN_PROGRESS -> SUBMITTED (terminal). The only way
back is delete_attempt(), which removes the row so the next visit starts over.

Writes that must not race are single conditional UPDATEs:
  - start_timer:  started_at = COALESCE(started_at, now)
  - save_answers: answers || payload   WHERE is_submitted = FALSE
  - finalize:     ... is_submitted = TRUE WHERE is_submitted = FALSE
                  AND answers = <the map that was scored>
so a learner submit and a deadline submit landing together produce exactly one
winner; the other gets AlreadySubmitted.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from psycopg.types.json import Jsonb

from errors import AlreadySubmitted, Locked, NotFound
from grading import score_answers
from questions import Question

FINALIZE_RETRIES = 5

_COLUMNS = "id, learner_id, exam_id, answers, started_at, submitted_at, is_submitted, score"

SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS public.exam_attempts (
        id           BIGSERIAL PRIMARY KEY,
        learner_id   BIGINT      NOT NULL,
        exam_id      TEXT        NOT NULL REFERENCES public.exams(id) ON DELETE CASCADE,
        answers      JSONB       NOT NULL DEFAULT '{}'::jsonb,
        started_at   TIMESTAMPTZ,
        submitted_at TIMESTAMPTZ,
        is_submitted BOOLEAN     NOT NULL DEFAULT FALSE,
        score        INTEGER,
        created_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (learner_id, exam_id)
    );
"""


class AttemptState(str, enum.Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"


def _as_answers(raw: Any) -> Dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, (str, bytes)):
        data = json.loads(raw)
        return dict(data) if isinstance(data, dict) else {}
    obj = getattr(raw, "obj", None)  # psycopg Jsonb wrapper
    return dict(obj) if isinstance(obj, dict) else {}


@dataclass
class Attempt:
    id: int
    learner_id: int
    exam_id: str
    answers: Dict[str, Any] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    is_submitted: bool = False
    score: Optional[int] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Attempt":
        return cls(
            id=int(row["id"]),
            learner_id=int(row["learner_id"]),
            exam_id=str(row["exam_id"]),
            answers=_as_answers(row.get("answers")),
            started_at=row.get("started_at"),
            submitted_at=row.get("submitted_at"),
            is_submitted=bool(row.get("is_submitted")),
            score=row.get("score") if row.get("is_submitted") else None,
        )

    @property
    def state(self) -> AttemptState:
        if self.is_submitted:
            return AttemptState.SUBMITTED
        if self.started_at is None:
            return AttemptState.NOT_STARTED
        return AttemptState.IN_PROGRESS

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "id": self.id,
            "learner_id": self.learner_id,
            "exam_id": self.exam_id,
            "answers": dict(self.answers),
            "state": self.state.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "is_submitted": self.is_submitted,
        }
        # scores of open attempts are undefined; never expose them
        if self.is_submitted:
            out["score"] = self.score
        return out


class AttemptStore:
    def __init__(self, fetch_one: Callable, fetch_all: Callable, execute: Callable,
                 execute_returning: Callable):
        self._fetch_one = fetch_one
        self._fetch_all = fetch_all
        self._execute = execute
        self._execute_returning = execute_returning

    def ensure_schema(self) -> None:
        self._execute(SCHEMA_SQL)

    # ------------------------------------------------------------ reads
    def get_attempt(self, learner_id: int, exam_id: str) -> Optional[Attempt]:
        row = self._fetch_one(f"""
            SELECT {_COLUMNS}
              FROM public.exam_attempts
             WHERE learner_id = %s AND exam_id = %s;
        """, (learner_id, exam_id))
        return Attempt.from_row(row) if row else None

    def get_attempt_by_id(self, attempt_id: int) -> Attempt:
        row = self._fetch_one(f"""
            SELECT {_COLUMNS}
              FROM public.exam_attempts
             WHERE id = %s;
        """, (attempt_id,))
        if not row:
            raise NotFound(f"Attempt {attempt_id} not found.")
        return Attempt.from_row(row)

    def list_submitted(self, exam_id: str) -> List[Dict[str, Any]]:
        rows = self._fetch_all("""
            SELECT a.id, a.learner_id, a.exam_id, a.answers, a.started_at,
                   a.submitted_at, a.is_submitted, a.score,
                   u.email AS learner_email, u.full_name AS learner_name
              FROM public.exam_attempts a
              LEFT JOIN public.users u ON u.id = a.learner_id
             WHERE a.exam_id = %s AND a.is_submitted = TRUE
             ORDER BY a.score DESC, a.submitted_at ASC;
        """, (exam_id,))
        return list(rows or [])

    # ----------------------------------------------------------- writes
    def get_or_create_attempt(self, learner_id: int, exam_id: str) -> Attempt:
        created = self._execute_returning(f"""
            INSERT INTO public.exam_attempts (learner_id, exam_id)
            VALUES (%s, %s)
            ON CONFLICT (learner_id, exam_id) DO NOTHING
            RETURNING {_COLUMNS};
        """, (learner_id, exam_id))
        if created:
            print(f"[attempts] created attempt {created[0]['id']} learner={learner_id} exam={exam_id}")
            return Attempt.from_row(created[0])
        existing = self.get_attempt(learner_id, exam_id)
        if existing is None:
            # deleted between our insert and select; one more try settles it
            return self.get_or_create_attempt(learner_id, exam_id)
        return existing

    def start_timer(self, attempt_id: int, now: datetime) -> Attempt:
        rows = self._execute_returning(f"""
            UPDATE public.exam_attempts
               SET started_at = COALESCE(started_at, %s)
             WHERE id = %s
            RETURNING {_COLUMNS};
        """, (now, attempt_id))
        if not rows:
            raise NotFound(f"Attempt {attempt_id} not found.")
        return Attempt.from_row(rows[0])

    def save_answers(self, attempt_id: int, answers: Dict[str, Any]) -> Attempt:
        """Key-wise merge; keys absent from `answers` are left alone."""
        rows = self._execute_returning(f"""
            UPDATE public.exam_attempts
               SET answers = answers || %s
             WHERE id = %s AND is_submitted = FALSE
            RETURNING {_COLUMNS};
        """, (Jsonb(dict(answers or {})), attempt_id))
        if rows:
            return Attempt.from_row(rows[0])
        current = self.get_attempt_by_id(attempt_id)
        if current.is_submitted:
            raise Locked("This exam has already been submitted; answers can no longer change.")
        raise NotFound(f"Attempt {attempt_id} not found.")

    def finalize(self, attempt_id: int, answers: Optional[Dict[str, Any]], now: datetime,
                 questions: List[Question]) -> Attempt:
        """
        Merge `answers` over the stored map, score, and mark submitted.

        The UPDATE only lands if the stored answers still equal the snapshot we
        scored, so a save committed in between is re-read and graded too.
        """
        for _ in range(FINALIZE_RETRIES):
            current = self.get_attempt_by_id(attempt_id)
            if current.is_submitted:
                raise AlreadySubmitted("Exam already submitted.")

            merged = dict(current.answers)
            merged.update(answers or {})
            score = score_answers(questions, merged)

            rows = self._execute_returning(f"""
                UPDATE public.exam_attempts
                   SET answers = %s,
                       score = %s,
                       submitted_at = %s,
                       is_submitted = TRUE
                 WHERE id = %s AND is_submitted = FALSE AND answers = %s
                RETURNING {_COLUMNS};
            """, (Jsonb(merged), score, now, attempt_id, Jsonb(dict(current.answers))))
            if rows:
                return Attempt.from_row(rows[0])
            print(f"[attempts] answers changed under finalize of attempt {attempt_id}; re-reading")
        raise Locked(f"Attempt {attempt_id} kept changing during submit; try again.")

    def delete_attempt(self, learner_id: int, exam_id: str) -> bool:
        rows = self._execute_returning("""
            DELETE FROM public.exam_attempts
             WHERE learner_id = %s AND exam_id = %s
            RETURNING id;
        """, (learner_id, exam_id))
        return bool(rows)
