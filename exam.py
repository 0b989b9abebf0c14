# exam.py
# -----------------------------------------------------------------------------
# Timed exam engine blueprint.
# - Start/resume: one attempt per (learner, exam); timer starts on first open
# - Autosave endpoint merges answers key-wise until the attempt is submitted
# - Submit (learner or deadline) finalizes exactly once; duplicates get 409
# - Server is the deadline authority: expired attempts are finalized on visit
# - Results page with per-question review, percentage and certificate gate
# -----------------------------------------------------------------------------

import os
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from flask import (
    Blueprint, request, jsonify, render_template, redirect, abort, g
)

from attempts import Attempt, AttemptStore
from catalog import Exam, ExamCatalog
from errors import AlreadySubmitted, ExamError, ExamInactive, Locked, NotFound, ValidationFailed
from grading import result_summary, review_rows
from questions import public_view, validate_answer, validate_answer_map
from timer import DEADLINE_GRACE_SECONDS, deadline_for, is_expired, remaining_seconds, utcnow

REASON_LEARNER = "learner"
REASON_DEADLINE = "deadline"
SUBMIT_REASONS = (REASON_LEARNER, REASON_DEADLINE)


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def _deadline_answers(questions: List, payload: Any, char_limit: int) -> Dict[str, Any]:
    """Keep the well-formed answers of a deadline submit; the rest are dropped, not rejected."""
    if not isinstance(payload, dict):
        print("[exam] deadline submit carried a non-object answers payload; ignoring it")
        return {}
    by_id = {q.id: q for q in questions}
    out: Dict[str, Any] = {}
    for k, v in payload.items():
        q = by_id.get(str(k))
        if q is None:
            print(f"[exam] deadline submit dropped unknown question '{k}'")
            continue
        try:
            out[q.id] = validate_answer(q, v, char_limit)
        except ValidationFailed as e:
            print(f"[exam] deadline submit dropped answer for '{q.id}': {e.message}")
    return out


def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Factory that returns a Blueprint mounted at <base_path>/learn.
    Required deps: catalog (ExamCatalog), attempts (AttemptStore)
    Optional deps: clock () -> aware datetime
    """
    url_prefix = (base_path or "").rstrip("/") + "/learn"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    # ---- Required deps -------------------------------------------------------
    catalog: ExamCatalog = deps["catalog"]
    attempts: AttemptStore = deps["attempts"]
    clock: Callable[[], datetime] = deps.get("clock") or utcnow

    # ---- Config --------------------------------------------------------------
    ANSWER_CHAR_LIMIT = int(os.getenv("EXAM_ANSWER_CHAR_LIMIT") or 2000)
    AUTOSAVE_ENABLED  = os.getenv("EXAM_AUTOSAVE_ENABLED", "1").lower() in ("1", "true", "yes")
    GRACE_SECONDS     = int(deps.get("grace_seconds", DEADLINE_GRACE_SECONDS))

    # ------------------------------- helpers ----------------------------------
    def _learner_id() -> int:
        uid = getattr(g, "user_id", None)
        if uid is None:
            abort(401)
        return int(uid)

    def _urls(course_id: str, exam_id: str) -> Dict[str, str]:
        root = f"{url_prefix}/{course_id}/exam/{exam_id}"
        return {
            "exam_url": root,
            "status_url": root + "/status",
            "save_url": root + "/save",
            "submit_url": root + "/submit",
            "results_url": root + "/results",
        }

    def _wants_json() -> bool:
        if request.method != "GET" or request.path.endswith("/status"):
            return True
        return request.accept_mimetypes.best == "application/json"

    def _load_exam(course_id: str, exam_id: str) -> Exam:
        return catalog.get_exam_by_id(course_id, exam_id)

    def _open_attempt(learner_id: int, exam: Exam) -> Attempt:
        attempt = attempts.get_attempt(learner_id, exam.id)
        if attempt is None:
            raise NotFound("No attempt has been started for this exam.")
        return attempt

    def _force_finalize(attempt: Attempt, exam: Exam, now: datetime) -> None:
        """Deadline passed with the attempt still open: grade what was saved."""
        try:
            done = attempts.finalize(attempt.id, None, now, list(exam.questions))
            print(f"[exam] forced deadline finalize attempt={attempt.id} exam={exam.id} score={done.score}")
        except AlreadySubmitted:
            print(f"[exam] forced finalize skipped, attempt {attempt.id} already submitted")

    # ------------------------------- errors -----------------------------------
    @bp.errorhandler(ExamError)
    def _exam_error(e: ExamError):
        if _wants_json():
            return jsonify(e.to_dict()), e.status_code
        return render_template("exam_error.html", message=e.message, code=e.code), e.status_code

    # ------------------------------- routes -----------------------------------
    @bp.get("/<course_id>/exam/<exam_id>")
    def exam_start(course_id: str, exam_id: str):
        learner_id = _learner_id()
        exam = _load_exam(course_id, exam_id)
        if not exam.is_active:
            raise ExamInactive("This exam is not currently available.")
        unkeyed = exam.unkeyed_questions()
        if unkeyed:
            print(f"[exam] exam {exam.id} has questions without an answer key: {unkeyed}")
            raise ValidationFailed("This exam is not ready yet. Please check back later.", questions=unkeyed)

        urls = _urls(course_id, exam.id)
        attempt = attempts.get_or_create_attempt(learner_id, exam.id)
        if attempt.is_submitted:
            return redirect(urls["results_url"])

        now = clock()
        was_started = attempt.started_at is not None
        attempt = attempts.start_timer(attempt.id, now)
        if not was_started:
            print(f"[exam] timer started attempt={attempt.id} exam={exam.id} learner={learner_id}")

        deadline = deadline_for(attempt.started_at, exam.duration_minutes)
        if is_expired(deadline, now):
            _force_finalize(attempt, exam, now)
            return redirect(urls["results_url"])

        context = {
            "exam": exam,
            "course_id": course_id,
            "questions": [public_view(q) for q in exam.questions],
            "saved_answers": attempt.answers,
            "deadline": _iso(deadline),
            "server_time": now.isoformat(),
            "remaining_seconds": remaining_seconds(deadline, now),
            "answer_char_limit": ANSWER_CHAR_LIMIT,
            "autosave_enabled": AUTOSAVE_ENABLED,
            **urls,
        }
        return render_template("exam.html", **context)

    @bp.get("/<course_id>/exam/<exam_id>/status")
    def exam_status(course_id: str, exam_id: str):
        learner_id = _learner_id()
        exam = _load_exam(course_id, exam_id)
        now = clock()
        attempt = attempts.get_attempt(learner_id, exam.id)
        if attempt is None:
            return jsonify({"ok": True, "state": "not_started", "server_time": now.isoformat(),
                            "deadline": None, "remaining_seconds": None})

        deadline = deadline_for(attempt.started_at, exam.duration_minutes)
        if not attempt.is_submitted and is_expired(deadline, now, GRACE_SECONDS):
            _force_finalize(attempt, exam, now)
            attempt = attempts.get_attempt_by_id(attempt.id)

        out = {
            "ok": True,
            "state": attempt.state.value,
            "server_time": now.isoformat(),
            "started_at": _iso(attempt.started_at),
            "deadline": _iso(deadline),
            "remaining_seconds": remaining_seconds(deadline, now),
        }
        if attempt.is_submitted:
            out["results_url"] = _urls(course_id, exam.id)["results_url"]
        return jsonify(out)

    @bp.post("/<course_id>/exam/<exam_id>/save")
    def exam_save(course_id: str, exam_id: str):
        learner_id = _learner_id()
        exam = _load_exam(course_id, exam_id)
        payload = request.get_json(silent=True) or {}
        answers = validate_answer_map(list(exam.questions), payload.get("answers"), ANSWER_CHAR_LIMIT)

        attempt = _open_attempt(learner_id, exam)
        if attempt.is_submitted:
            raise Locked("This exam has already been submitted; answers can no longer change.")

        now = clock()
        deadline = deadline_for(attempt.started_at, exam.duration_minutes)
        if is_expired(deadline, now, GRACE_SECONDS):
            _force_finalize(attempt, exam, now)
            raise Locked("Time is up. Your saved answers have been submitted.",
                         results_url=_urls(course_id, exam.id)["results_url"])

        saved = attempts.save_answers(attempt.id, answers)
        return jsonify({
            "ok": True,
            "saved": sorted(answers.keys()),
            "answers_count": len(saved.answers),
            "server_time": now.isoformat(),
            "remaining_seconds": remaining_seconds(deadline, now),
        })

    @bp.post("/<course_id>/exam/<exam_id>/submit")
    def exam_submit(course_id: str, exam_id: str):
        learner_id = _learner_id()
        exam = _load_exam(course_id, exam_id)
        payload = request.get_json(silent=True) or {}
        reason = str(payload.get("reason") or REASON_LEARNER).lower()
        if reason not in SUBMIT_REASONS:
            raise ValidationFailed(f"Unknown submit reason '{reason}'.", field="reason")
        if reason == REASON_DEADLINE:
            answers = _deadline_answers(list(exam.questions), payload.get("answers") or {}, ANSWER_CHAR_LIMIT)
        else:
            answers = validate_answer_map(list(exam.questions), payload.get("answers") or {}, ANSWER_CHAR_LIMIT)

        urls = _urls(course_id, exam.id)
        attempt = _open_attempt(learner_id, exam)
        now = clock()
        deadline = deadline_for(attempt.started_at, exam.duration_minutes)
        if answers and is_expired(deadline, now, GRACE_SECONDS):
            # late edits are not accepted; grade what was saved in time
            print(f"[exam] dropping {len(answers)} late answer(s) on attempt {attempt.id}")
            answers = {}

        try:
            done = attempts.finalize(attempt.id, answers, now, list(exam.questions))
        except AlreadySubmitted as e:
            print(f"[exam] duplicate finalize rejected attempt={attempt.id} reason={reason}")
            body = e.to_dict()
            body["results_url"] = urls["results_url"]
            return jsonify(body), e.status_code

        summary = result_summary(done.score or 0, list(exam.questions))
        print(f"[exam] finalized attempt={done.id} exam={exam.id} reason={reason} "
              f"score={done.score}/{summary['gradable_count']} ({summary['percentage']}%)")
        return jsonify({"ok": True, "reason": reason, "results_url": urls["results_url"], **summary})

    @bp.get("/<course_id>/exam/<exam_id>/results")
    def exam_results(course_id: str, exam_id: str):
        learner_id = _learner_id()
        exam = _load_exam(course_id, exam_id)
        attempt = attempts.get_attempt(learner_id, exam.id)
        if attempt is None or not attempt.is_submitted:
            raise NotFound("Results are available once the exam has been submitted.")

        questions: List = list(exam.questions)
        summary = result_summary(attempt.score or 0, questions)
        if _wants_json():
            return jsonify({"ok": True, "submitted_at": _iso(attempt.submitted_at), **summary})
        return render_template(
            "exam_results.html",
            exam=exam,
            course_id=course_id,
            attempt=attempt,
            summary=summary,
            review=review_rows(questions, attempt.answers),
            **_urls(course_id, exam.id),
        )

    return bp
