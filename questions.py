# questions.py
"""
Question model for timed exams.

Four closed variants, each carrying only what its grading rule needs:
  - SingleSelect: options + one correct index
  - MultiSelect:  options + set of correct indices (exact-set match, no partial credit)
  - ShortText:    one correct string, compared case-insensitively, whitespace-trimmed
  - FreeText:     never auto-graded

Every function that branches on the variant ends with `_unknown_variant(q)` so a
new kind cannot slip through grading unnoticed.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

from errors import ValidationFailed

KIND_SINGLE = "single"
KIND_MULTI = "multi"
KIND_SHORT = "short"
KIND_FREE = "free"

KINDS = (KIND_SINGLE, KIND_MULTI, KIND_SHORT, KIND_FREE)

# Tags accepted from stored/imported data (the admin builder uses the left-hand names)
_KIND_ALIASES = {
    "mcq": KIND_SINGLE,
    "radio": KIND_SINGLE,
    "single": KIND_SINGLE,
    "single-select": KIND_SINGLE,
    "checkbox": KIND_MULTI,
    "multi": KIND_MULTI,
    "multi-select": KIND_MULTI,
    "short-answer": KIND_SHORT,
    "short": KIND_SHORT,
    "short-text": KIND_SHORT,
    "paragraph": KIND_FREE,
    "free": KIND_FREE,
    "free-text": KIND_FREE,
}

MIN_OPTIONS = 2


def _check_options(qid: str, options: Tuple[str, ...]) -> None:
    if len(options) < MIN_OPTIONS:
        raise ValidationFailed(f"Question {qid}: at least {MIN_OPTIONS} options are required.", field="options")
    if any(not str(o).strip() for o in options):
        raise ValidationFailed(f"Question {qid}: options must not be empty.", field="options")


@dataclass(frozen=True)
class SingleSelect:
    id: str
    prompt: str
    options: Tuple[str, ...]
    correct: Optional[int]  # None only after the keyed option was removed
    rationale: Optional[str] = None

    kind = KIND_SINGLE

    def __post_init__(self):
        _check_options(self.id, self.options)
        if self.correct is not None and not (0 <= self.correct < len(self.options)):
            raise ValidationFailed(f"Question {self.id}: correct index {self.correct} out of range.", field="correct")

    @property
    def needs_answer_key(self) -> bool:
        return self.correct is None


@dataclass(frozen=True)
class MultiSelect:
    id: str
    prompt: str
    options: Tuple[str, ...]
    correct: FrozenSet[int] = field(default_factory=frozenset)
    rationale: Optional[str] = None

    kind = KIND_MULTI

    def __post_init__(self):
        _check_options(self.id, self.options)
        bad = [i for i in self.correct if not (0 <= i < len(self.options))]
        if bad:
            raise ValidationFailed(f"Question {self.id}: correct indices {sorted(bad)} out of range.", field="correct")

    @property
    def needs_answer_key(self) -> bool:
        return not self.correct


@dataclass(frozen=True)
class ShortText:
    id: str
    prompt: str
    correct: str
    rationale: Optional[str] = None

    kind = KIND_SHORT

    @property
    def needs_answer_key(self) -> bool:
        return not (self.correct or "").strip()


@dataclass(frozen=True)
class FreeText:
    id: str
    prompt: str
    rationale: Optional[str] = None

    kind = KIND_FREE

    @property
    def needs_answer_key(self) -> bool:
        return False


Question = Union[SingleSelect, MultiSelect, ShortText, FreeText]


def _unknown_variant(q: Any):
    raise TypeError(f"Unhandled question variant: {type(q).__name__}")


# ------------------------------------------------------------------ parsing

def normalize_kind(raw: Any) -> str:
    kind = _KIND_ALIASES.get(str(raw or "").strip().lower())
    if not kind:
        raise ValidationFailed(f"Unknown question type '{raw}'.", field="kind")
    return kind


def _as_index(value: Any) -> Optional[int]:
    """Accepts ints and digit strings; rejects bools and everything else."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def parse_question(data: Dict[str, Any]) -> Question:
    """
    Build a question from a stored row or an imported JSON object.
    Accepts both this engine's field names (kind/prompt/correct) and the
    builder's (type/text/correctAnswers).
    """
    qid = str(data.get("id") or data.get("question_id") or "").strip()
    if not qid:
        raise ValidationFailed("Question id is required.", field="id")
    kind = normalize_kind(data.get("kind") or data.get("type"))
    prompt = str(data.get("prompt") or data.get("text") or "").strip()
    rationale = (data.get("rationale") or None)

    raw_correct = data.get("correct")
    if raw_correct is None:
        raw_correct = data.get("correctAnswers")
    if raw_correct is None:
        raw_correct = data.get("correctAnswer")

    if kind in (KIND_SINGLE, KIND_MULTI):
        options = tuple(str(o) for o in (data.get("options") or []))
        values = raw_correct if isinstance(raw_correct, (list, tuple, set, frozenset)) else (
            [] if raw_correct is None else [raw_correct])
        indices = []
        for v in values:
            idx = _as_index(v)
            if idx is None:
                # builder sometimes stores the option text instead of its index
                try:
                    idx = options.index(str(v))
                except ValueError:
                    raise ValidationFailed(f"Question {qid}: invalid correct answer '{v}'.", field="correct") from None
            indices.append(idx)
        if kind == KIND_SINGLE:
            if len(set(indices)) > 1:
                raise ValidationFailed(f"Question {qid}: single-select needs exactly one correct option.", field="correct")
            return SingleSelect(qid, prompt, options, indices[0] if indices else None, rationale)
        return MultiSelect(qid, prompt, options, frozenset(indices), rationale)

    if kind == KIND_SHORT:
        if isinstance(raw_correct, (list, tuple)):
            raw_correct = raw_correct[0] if raw_correct else ""
        return ShortText(qid, prompt, str(raw_correct or ""), rationale)

    return FreeText(qid, prompt, rationale)


def question_to_dict(q: Question) -> Dict[str, Any]:
    """Storage shape (includes the answer key)."""
    out: Dict[str, Any] = {"id": q.id, "kind": q.kind, "prompt": q.prompt, "rationale": q.rationale}
    if isinstance(q, SingleSelect):
        out["options"] = list(q.options)
        out["correct"] = [] if q.correct is None else [q.correct]
    elif isinstance(q, MultiSelect):
        out["options"] = list(q.options)
        out["correct"] = sorted(q.correct)
    elif isinstance(q, ShortText):
        out["options"] = []
        out["correct"] = [q.correct]
    elif isinstance(q, FreeText):
        out["options"] = []
        out["correct"] = []
    else:
        _unknown_variant(q)
    return out


def public_view(q: Question) -> Dict[str, Any]:
    """What the learner sees while the attempt is open: no key, no rationale."""
    out: Dict[str, Any] = {"id": q.id, "kind": q.kind, "prompt": q.prompt}
    if isinstance(q, (SingleSelect, MultiSelect)):
        out["options"] = list(q.options)
    return out


# ------------------------------------------------------------------ grading

def is_gradable(q: Question) -> bool:
    if isinstance(q, (SingleSelect, MultiSelect, ShortText)):
        return True
    if isinstance(q, FreeText):
        return False
    return _unknown_variant(q)


def is_correct(q: Question, answer: Any) -> bool:
    """Kind-specific correctness. A missing answer is never correct."""
    if answer is None:
        return False
    if isinstance(q, SingleSelect):
        idx = answer if isinstance(answer, int) and not isinstance(answer, bool) else None
        return q.correct is not None and idx == q.correct
    if isinstance(q, MultiSelect):
        if not isinstance(answer, (list, tuple, set, frozenset)):
            return False
        if any(isinstance(a, bool) or not isinstance(a, int) for a in answer):
            return False
        return bool(q.correct) and set(answer) == set(q.correct)
    if isinstance(q, ShortText):
        if not isinstance(answer, str) or q.needs_answer_key:
            return False
        return answer.strip().casefold() == q.correct.strip().casefold()
    if isinstance(q, FreeText):
        return False
    return _unknown_variant(q)


def is_attempted(q: Question, answer: Any) -> bool:
    if answer is None:
        return False
    if isinstance(q, (ShortText, FreeText)):
        return bool(str(answer).strip())
    if isinstance(q, MultiSelect):
        return bool(answer)
    if isinstance(q, SingleSelect):
        return True
    return _unknown_variant(q)


# --------------------------------------------------------------- validation

def validate_answer(q: Question, value: Any, char_limit: int = 2000) -> Any:
    """Normalize one payload value to its stored shape or raise ValidationFailed."""
    if value is None:
        raise ValidationFailed(f"Question {q.id}: answer is missing.", field=q.id)
    if isinstance(q, SingleSelect):
        idx = _as_index(value)
        if idx is None or not (0 <= idx < len(q.options)):
            raise ValidationFailed(f"Question {q.id}: option index {value!r} out of range.", field=q.id)
        return idx
    if isinstance(q, MultiSelect):
        if not isinstance(value, (list, tuple)):
            raise ValidationFailed(f"Question {q.id}: expected a list of option indices.", field=q.id)
        out = set()
        for v in value:
            idx = _as_index(v)
            if idx is None or not (0 <= idx < len(q.options)):
                raise ValidationFailed(f"Question {q.id}: option index {v!r} out of range.", field=q.id)
            out.add(idx)
        return sorted(out)
    if isinstance(q, (ShortText, FreeText)):
        if not isinstance(value, str):
            raise ValidationFailed(f"Question {q.id}: expected text.", field=q.id)
        if len(value) > char_limit:
            raise ValidationFailed(f"Question {q.id}: answer exceeds {char_limit} characters.", field=q.id)
        return value
    return _unknown_variant(q)


def validate_answer_map(questions: List[Question], payload: Any, char_limit: int = 2000) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValidationFailed("answers must be an object keyed by question id.", field="answers")
    by_id = {q.id: q for q in questions}
    out: Dict[str, Any] = {}
    for k, v in payload.items():
        q = by_id.get(str(k))
        if q is None:
            raise ValidationFailed(f"Unknown question '{k}'.", field=str(k))
        out[q.id] = validate_answer(q, v, char_limit)
    return out


# ------------------------------------------------------------ admin editing

def remove_option(q: Question, index: int) -> Question:
    """
    Drop one option and keep the answer key pointing at the same option texts.
    A key that pointed only at the removed option is cleared (needs_answer_key).
    """
    if not isinstance(q, (SingleSelect, MultiSelect)):
        raise ValidationFailed(f"Question {q.id}: only select questions have options.", field="options")
    if not (0 <= index < len(q.options)):
        raise ValidationFailed(f"Question {q.id}: option {index} does not exist.", field="options")
    if len(q.options) <= MIN_OPTIONS:
        raise ValidationFailed(f"Question {q.id}: a select question needs at least {MIN_OPTIONS} options.", field="options")

    options = q.options[:index] + q.options[index + 1:]

    def _shift(i: int) -> int:
        return i - 1 if i > index else i

    if isinstance(q, SingleSelect):
        correct = None if q.correct in (None, index) else _shift(q.correct)
        return replace(q, options=options, correct=correct)
    return replace(q, options=options, correct=frozenset(_shift(i) for i in q.correct if i != index))


__all__ = [
    "KIND_SINGLE", "KIND_MULTI", "KIND_SHORT", "KIND_FREE", "KINDS",
    "SingleSelect", "MultiSelect", "ShortText", "FreeText", "Question",
    "normalize_kind", "parse_question", "question_to_dict", "public_view",
    "is_gradable", "is_correct", "is_attempted",
    "validate_answer", "validate_answer_map", "remove_option",
]
