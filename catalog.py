# catalog.py
"""
Exam catalog: the read-only view of exams and their questions that the
assessment engine consumes, plus the few admin writes the engine cares about
(seeding from disk, saving a re-indexed question).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from psycopg.types.json import Jsonb

from errors import NotFound, ValidationFailed
from grading import gradable_count
from questions import Question, parse_question, question_to_dict

EXAM_ACTIVE = "active"
EXAM_INACTIVE = "inactive"

SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS public.exams (
        id               TEXT PRIMARY KEY,
        course_id        TEXT        NOT NULL,
        title            TEXT        NOT NULL,
        duration_minutes INTEGER,
        status           TEXT        NOT NULL DEFAULT 'active',
        created_at       TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    CREATE TABLE IF NOT EXISTS public.exam_questions (
        exam_id   TEXT    NOT NULL REFERENCES public.exams(id) ON DELETE CASCADE,
        id        TEXT    NOT NULL,
        position  INTEGER NOT NULL DEFAULT 0,
        kind      TEXT    NOT NULL,
        prompt    TEXT    NOT NULL DEFAULT '',
        options   JSONB   NOT NULL DEFAULT '[]'::jsonb,
        correct   JSONB   NOT NULL DEFAULT '[]'::jsonb,
        rationale TEXT,
        PRIMARY KEY (exam_id, id)
    );
"""


@dataclass(frozen=True)
class Exam:
    id: str
    course_id: str
    title: str
    questions: Tuple[Question, ...] = field(default_factory=tuple)
    duration_minutes: Optional[int] = None
    status: str = EXAM_ACTIVE

    @property
    def is_timed(self) -> bool:
        return bool(self.duration_minutes)

    @property
    def is_active(self) -> bool:
        return self.status != EXAM_INACTIVE

    @property
    def gradable_count(self) -> int:
        return gradable_count(list(self.questions))

    def question(self, question_id: str) -> Question:
        for q in self.questions:
            if q.id == str(question_id):
                return q
        raise NotFound(f"Question {question_id} not found in exam {self.id}.")

    def unkeyed_questions(self) -> List[str]:
        return [q.id for q in self.questions if q.needs_answer_key]


def exam_from_definition(data: Dict[str, Any]) -> Exam:
    duration = data.get("duration_minutes", data.get("duration"))
    try:
        duration = int(duration) if duration not in (None, "", 0, "0") else None
    except (TypeError, ValueError):
        raise ValidationFailed(f"Exam {data.get('id')}: invalid duration '{duration}'.", field="duration_minutes") from None
    if duration is not None and duration < 0:
        raise ValidationFailed(f"Exam {data.get('id')}: duration must be positive.", field="duration_minutes")
    status = str(data.get("status") or EXAM_ACTIVE).lower()
    if status not in (EXAM_ACTIVE, EXAM_INACTIVE):
        raise ValidationFailed(f"Exam {data.get('id')}: unknown status '{status}'.", field="status")
    return Exam(
        id=str(data["id"]),
        course_id=str(data.get("course_id") or data.get("courseId") or ""),
        title=str(data.get("title") or data["id"]),
        questions=tuple(parse_question(q) for q in (data.get("questions") or [])),
        duration_minutes=duration,
        status=status,
    )


class ExamCatalog:
    def __init__(self, fetch_one: Callable, fetch_all: Callable, execute: Callable,
                 execute_returning: Callable):
        self._fetch_one = fetch_one
        self._fetch_all = fetch_all
        self._execute = execute
        self._execute_returning = execute_returning

    def ensure_schema(self) -> None:
        self._execute(SCHEMA_SQL)

    def get_exam_by_id(self, course_id: str, exam_id: str) -> Exam:
        row = self._fetch_one("""
            SELECT id, course_id, title, duration_minutes, status
              FROM public.exams
             WHERE id = %s AND course_id = %s;
        """, (str(exam_id), str(course_id)))
        if not row:
            raise NotFound("Exam could not be found.")
        return self._exam_from_row(row)

    def get_exam(self, exam_id: str) -> Exam:
        """Lookup without the course; used by admin screens."""
        row = self._fetch_one("""
            SELECT id, course_id, title, duration_minutes, status
              FROM public.exams
             WHERE id = %s;
        """, (str(exam_id),))
        if not row:
            raise NotFound("Exam could not be found.")
        return self._exam_from_row(row)

    def _exam_from_row(self, row: Dict[str, Any]) -> Exam:
        qrows = self._fetch_all("""
            SELECT id, kind, prompt, options, correct, rationale
              FROM public.exam_questions
             WHERE exam_id = %s
             ORDER BY position, id;
        """, (row["id"],)) or []
        return Exam(
            id=str(row["id"]),
            course_id=str(row["course_id"]),
            title=row.get("title") or str(row["id"]),
            questions=tuple(parse_question(dict(q)) for q in qrows),
            duration_minutes=row.get("duration_minutes") or None,
            status=(row.get("status") or EXAM_ACTIVE),
        )

    def save_question(self, exam_id: str, question: Question) -> None:
        data = question_to_dict(question)
        rows = self._execute_returning("""
            UPDATE public.exam_questions
               SET kind = %s, prompt = %s, options = %s, correct = %s, rationale = %s
             WHERE exam_id = %s AND id = %s
            RETURNING id;
        """, (data["kind"], data["prompt"], Jsonb(data["options"]), Jsonb(data["correct"]),
              data["rationale"], str(exam_id), question.id))
        if not rows:
            raise NotFound(f"Question {question.id} not found in exam {exam_id}.")

    def seed_exams_if_missing(self, definitions: List[Dict[str, Any]]) -> List[str]:
        """Insert exams from disk definitions that are not in the database yet."""
        seeded: List[str] = []
        for data in definitions:
            try:
                exam = exam_from_definition(data)
            except (KeyError, ValidationFailed) as e:
                print(f"[catalog] skipping exam definition {data.get('id')!r}: {e}")
                continue
            created = self._execute_returning("""
                INSERT INTO public.exams (id, course_id, title, duration_minutes, status)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (id) DO NOTHING
                RETURNING id;
            """, (exam.id, exam.course_id, exam.title, exam.duration_minutes, exam.status))
            if not created:
                continue
            for pos, q in enumerate(exam.questions):
                d = question_to_dict(q)
                self._execute("""
                    INSERT INTO public.exam_questions
                        (exam_id, id, position, kind, prompt, options, correct, rationale)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (exam_id, id) DO NOTHING;
                """, (exam.id, q.id, pos, d["kind"], d["prompt"], Jsonb(d["options"]),
                      Jsonb(d["correct"]), d["rationale"]))
            print(f"[catalog] seeded exam {exam.id} ({len(exam.questions)} questions)")
            seeded.append(exam.id)
        return seeded
