# grading.py
"""
Scoring and certificate eligibility.

Everything here is a pure function of (questions, answers) so a finalized
attempt can be re-scored for audits and get the same number.
"""

import os
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from questions import (
    Question, SingleSelect, MultiSelect, ShortText, FreeText,
    is_gradable, is_correct, is_attempted,
)

CERTIFICATE_THRESHOLD = int(os.getenv("EXAM_CERTIFICATE_THRESHOLD") or 80)


def gradable_count(questions: List[Question]) -> int:
    return sum(1 for q in questions if is_gradable(q))


def score_answers(questions: List[Question], answers: Optional[Dict[str, Any]]) -> int:
    """Number of gradable questions answered correctly. Free-text never counts."""
    answers = answers or {}
    return sum(1 for q in questions if is_gradable(q) and is_correct(q, answers.get(q.id)))


def percentage(score: int, total_gradable: int) -> int:
    if not total_gradable:
        return 0
    # half-up, so 2/3 -> 67 and 1/8 -> 13 (Python's round() would give banker's rounding)
    pct = Decimal(100 * int(score)) / Decimal(int(total_gradable))
    return int(pct.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def is_certificate_eligible(score: int, total_gradable: int, threshold: Optional[int] = None) -> bool:
    limit = CERTIFICATE_THRESHOLD if threshold is None else int(threshold)
    return percentage(score, total_gradable) >= limit


def result_summary(score: int, questions: List[Question], threshold: Optional[int] = None) -> Dict[str, Any]:
    total = gradable_count(questions)
    pct = percentage(score, total)
    limit = CERTIFICATE_THRESHOLD if threshold is None else int(threshold)
    return {
        "score": int(score),
        "gradable_count": total,
        "percentage": pct,
        "certificate_threshold": limit,
        "certificate_eligible": pct >= limit,
    }


def review_rows(questions: List[Question], answers: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Per-question review for the results page; only shown after submission."""
    answers = answers or {}
    rows: List[Dict[str, Any]] = []
    for n, q in enumerate(questions, start=1):
        given = answers.get(q.id)
        row: Dict[str, Any] = {
            "number": n,
            "id": q.id,
            "kind": q.kind,
            "prompt": q.prompt,
            "rationale": q.rationale,
            "answer": given,
            "attempted": is_attempted(q, given),
            "gradable": is_gradable(q),
            "correct": is_correct(q, given) if is_gradable(q) else None,
        }
        if isinstance(q, SingleSelect):
            row["options"] = list(q.options)
            row["correct_answer"] = [] if q.correct is None else [q.correct]
        elif isinstance(q, MultiSelect):
            row["options"] = list(q.options)
            row["correct_answer"] = sorted(q.correct)
        elif isinstance(q, ShortText):
            row["options"] = []
            row["correct_answer"] = q.correct
        elif isinstance(q, FreeText):
            row["options"] = []
            row["correct_answer"] = None
        else:
            raise TypeError(f"Unhandled question variant: {type(q).__name__}")
        rows.append(row)
    return rows
