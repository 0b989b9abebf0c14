import copy
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from attempts import AttemptStore  # noqa: E402
from catalog import ExamCatalog  # noqa: E402


def _plain(value):
    # psycopg's Jsonb keeps the python object on .obj
    return copy.deepcopy(getattr(value, "obj", value))


class FakeDB:
    """In-memory stand-in answering the SQL issued by AttemptStore, ExamCatalog and main.ensure_user_row."""

    def __init__(self):
        self.attempts = {}
        self.exams = {}
        self.questions = {}
        self.users = {}
        self.executed = []
        self.fail_saves = 0
        self.before_finalize_update = None
        self._next_id = 1
        self._lock = threading.RLock()

    # ------------------------------------------------------------ helpers
    def add_user(self, user_id, email, role="learner", full_name=None):
        self.users[email] = {"id": user_id, "email": email, "role": role, "full_name": full_name}

    def _attempt_row(self, row):
        return dict(row, answers=copy.deepcopy(row["answers"]))

    def _find_attempt(self, learner_id, exam_id):
        for row in self.attempts.values():
            if row["learner_id"] == learner_id and row["exam_id"] == exam_id:
                return row
        return None

    # ------------------------------------------------------------- reads
    def fetch_one(self, sql, params=()):
        with self._lock:
            if "FROM public.exam_attempts" in sql and "WHERE learner_id = %s AND exam_id = %s" in sql:
                row = self._find_attempt(*params)
                return self._attempt_row(row) if row else None
            if "FROM public.exam_attempts" in sql and "WHERE id = %s;" in sql:
                row = self.attempts.get(params[0])
                return self._attempt_row(row) if row else None
            if "FROM public.exams" in sql:
                row = self.exams.get(params[0])
                if row and len(params) > 1 and row["course_id"] != params[1]:
                    return None
                return dict(row) if row else None
            if "SELECT role FROM users" in sql:
                user = self.users.get(params[0])
                return {"role": user["role"]} if user else None
            if "SELECT id FROM users" in sql:
                user = self.users.get(params[0])
                return {"id": user["id"]} if user else None
            return None

    def fetch_all(self, sql, params=()):
        with self._lock:
            if "FROM public.exam_questions" in sql:
                rows = self.questions.get(params[0], [])
                return [copy.deepcopy(r) for r in sorted(rows, key=lambda r: (r["position"], r["id"]))]
            if "LEFT JOIN public.users" in sql:
                rows = [r for r in self.attempts.values() if r["exam_id"] == params[0] and r["is_submitted"]]
                rows.sort(key=lambda r: (-(r["score"] or 0), r["submitted_at"]))
                out = []
                for r in rows:
                    user = next((u for u in self.users.values() if u["id"] == r["learner_id"]), {})
                    out.append(dict(self._attempt_row(r), learner_email=user.get("email"),
                                    learner_name=user.get("full_name")))
                return out
            return []

    # ------------------------------------------------------------ writes
    def execute(self, sql, params=()):
        with self._lock:
            self.executed.append((sql, params))
            if "INSERT INTO public.exam_questions" in sql:
                exam_id, qid, pos, kind, prompt, options, correct, rationale = params
                self.questions.setdefault(exam_id, []).append({
                    "id": qid, "position": pos, "kind": kind, "prompt": prompt,
                    "options": _plain(options), "correct": _plain(correct), "rationale": rationale,
                })

    def execute_returning(self, sql, params=()):
        with self._lock:
            self.executed.append((sql, params))
            if "INSERT INTO public.exam_attempts" in sql:
                learner_id, exam_id = params
                if self._find_attempt(learner_id, exam_id):
                    return []
                row = {
                    "id": self._next_id, "learner_id": learner_id, "exam_id": exam_id,
                    "answers": {}, "started_at": None, "submitted_at": None,
                    "is_submitted": False, "score": None,
                }
                self._next_id += 1
                self.attempts[row["id"]] = row
                return [self._attempt_row(row)]
            if "SET started_at = COALESCE" in sql:
                now, attempt_id = params
                row = self.attempts.get(attempt_id)
                if not row:
                    return []
                if row["started_at"] is None:
                    row["started_at"] = now
                return [self._attempt_row(row)]
            if "SET answers = answers || %s" in sql:
                if self.fail_saves:
                    self.fail_saves -= 1
                    raise ConnectionError("database unavailable")
                answers, attempt_id = params
                row = self.attempts.get(attempt_id)
                if not row or row["is_submitted"]:
                    return []
                row["answers"].update(_plain(answers))
                return [self._attempt_row(row)]
            if "is_submitted = TRUE" in sql and "UPDATE public.exam_attempts" in sql:
                if self.before_finalize_update:
                    self.before_finalize_update()
                answers, score, now, attempt_id, expected = params
                row = self.attempts.get(attempt_id)
                if not row or row["is_submitted"] or row["answers"] != _plain(expected):
                    return []
                row.update(answers=_plain(answers), score=score, submitted_at=now, is_submitted=True)
                return [self._attempt_row(row)]
            if "DELETE FROM public.exam_attempts" in sql:
                row = self._find_attempt(*params)
                if not row:
                    return []
                del self.attempts[row["id"]]
                return [{"id": row["id"]}]
            if "INSERT INTO public.exams" in sql:
                exam_id, course_id, title, duration, status = params
                if exam_id in self.exams:
                    return []
                self.exams[exam_id] = {"id": exam_id, "course_id": course_id, "title": title,
                                       "duration_minutes": duration, "status": status}
                return [{"id": exam_id}]
            if "UPDATE public.exam_questions" in sql:
                kind, prompt, options, correct, rationale, exam_id, qid = params
                for row in self.questions.get(exam_id, []):
                    if row["id"] == qid:
                        row.update(kind=kind, prompt=prompt, options=_plain(options),
                                   correct=_plain(correct), rationale=rationale)
                        return [{"id": qid}]
                return []
            if "INSERT INTO users" in sql:
                email, full_name = params
                user_id = len(self.users) + 100
                self.add_user(user_id, email, full_name=full_name)
                return [{"id": user_id}]
            return []

    def deps(self):
        return {
            "fetch_one": self.fetch_one,
            "fetch_all": self.fetch_all,
            "execute": self.execute,
            "execute_returning": self.execute_returning,
        }


def sample_exam(duration_minutes=60, status="active"):
    return {
        "id": "safety-final",
        "course_id": "safety",
        "title": "Safety Final",
        "duration_minutes": duration_minutes,
        "status": status,
        "questions": [
            {"id": "q1", "type": "mcq", "text": "Pick B", "options": ["A", "B", "C"],
             "correctAnswers": [1], "rationale": "B is right."},
            {"id": "q2", "type": "checkbox", "text": "Pick A and C", "options": ["A", "B", "C"],
             "correctAnswers": [0, 2]},
            {"id": "q3", "type": "short-answer", "text": "Capital of France?", "correctAnswers": ["Paris"]},
            {"id": "q4", "type": "paragraph", "text": "Describe a hazard."},
        ],
    }


class Clock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def db():
    return FakeDB()


@pytest.fixture
def store(db):
    return AttemptStore(**db.deps())


@pytest.fixture
def catalog(db):
    cat = ExamCatalog(**db.deps())
    cat.seed_exams_if_missing([sample_exam()])
    return cat


@pytest.fixture
def exam(catalog):
    return catalog.get_exam_by_id("safety", "safety-final")


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def exam_definition():
    return sample_exam
