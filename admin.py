import os
from typing import Any, Dict, Optional

from flask import Blueprint, jsonify, abort, request, g

from attempts import AttemptStore
from catalog import ExamCatalog
from errors import ExamError, NotFound, ValidationFailed
from grading import gradable_count, is_certificate_eligible, percentage
from questions import question_to_dict, remove_option

# =========================
# Admin gating / constants
# =========================
AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "1").lower() in ("1", "true", "yes")
_ADMIN_EMAILS_RAW = os.getenv("ADMIN_EMAILS", "")
ADMIN_EMAILS = {
    e.strip().lower()
    for part in _ADMIN_EMAILS_RAW.split(";")
    for e in part.split(",")
    if e.strip()
}
ADMIN_ROLES = ("admin", "instructor")


def create_admin_blueprint(
    url_prefix: str,
    deps: Dict[str, Any],
    name: str = "admin",
) -> Blueprint:
    """
    Admin blueprint for exam operations:
      • submitted results per exam (score, percentage, certificate eligibility)
      • attempt deletion so a learner can retake
      • option removal with answer-key re-indexing
    deps:
      - catalog: ExamCatalog
      - attempts: AttemptStore
      - fetch_one(sql, params)
    """
    catalog: ExamCatalog = deps["catalog"]
    attempts: AttemptStore = deps["attempts"]
    fetch_one = deps["fetch_one"]

    # Mount at /<BASE_PATH>/admin or /admin if url_prefix=""
    mount_prefix = (url_prefix.rstrip("/") + "/admin") if url_prefix else "/admin"
    bp = Blueprint(name, __name__, url_prefix=mount_prefix)

    def _user_role(email: str) -> Optional[str]:
        row = fetch_one("SELECT role FROM users WHERE email=%s;", (email,))
        return (row or {}).get("role")

    def require_admin():
        email = (getattr(g, "user_email", None) or "").lower().strip()
        if not email:
            if AUTH_REQUIRED:
                abort(403)
            return
        if ADMIN_EMAILS and email in ADMIN_EMAILS:
            return
        role = (_user_role(email) or "").lower()
        if role in ADMIN_ROLES:
            return
        abort(403)

    @bp.errorhandler(ExamError)
    def _exam_error(e: ExamError):
        return jsonify(e.to_dict()), e.status_code

    @bp.get("/whoami")
    def admin_whoami():
        return jsonify({
            "auth_required": AUTH_REQUIRED,
            "current_user_email": getattr(g, "user_email", None),
            "admin_emails_enforced": bool(ADMIN_EMAILS),
        })

    # ---------- Results ----------
    @bp.get("/exams/<exam_id>/results")
    def admin_exam_results(exam_id: str):
        require_admin()
        exam = catalog.get_exam(exam_id)
        total = gradable_count(list(exam.questions))
        rows = []
        for r in attempts.list_submitted(exam.id):
            score = int(r.get("score") or 0)
            submitted_at = r.get("submitted_at")
            rows.append({
                "attempt_id": r["id"],
                "learner_id": r["learner_id"],
                "learner_email": r.get("learner_email"),
                "learner_name": r.get("learner_name"),
                "score": score,
                "gradable_count": total,
                "percentage": percentage(score, total),
                "certificate_eligible": is_certificate_eligible(score, total),
                "submitted_at": submitted_at.isoformat() if submitted_at else None,
            })
        return jsonify({
            "ok": True,
            "exam": {"id": exam.id, "course_id": exam.course_id, "title": exam.title,
                     "status": exam.status, "gradable_count": total},
            "attempts": rows,
        })

    # ---------- Retake ----------
    @bp.post("/exams/<exam_id>/attempts/<int:learner_id>/delete")
    def admin_delete_attempt(exam_id: str, learner_id: int):
        require_admin()
        if not attempts.delete_attempt(learner_id, exam_id):
            raise NotFound(f"No attempt for learner {learner_id} on exam {exam_id}.")
        print(f"[admin] {getattr(g, 'user_email', None)} deleted attempt learner={learner_id} exam={exam_id}")
        return jsonify({"ok": True, "exam_id": exam_id, "learner_id": learner_id})

    # ---------- Question editing ----------
    @bp.post("/courses/<course_id>/exams/<exam_id>/questions/<question_id>/remove-option")
    def admin_remove_option(course_id: str, exam_id: str, question_id: str):
        require_admin()
        payload = request.get_json(silent=True) or request.form
        raw = payload.get("index")
        try:
            index = int(raw)
        except (TypeError, ValueError):
            raise ValidationFailed(f"Option index '{raw}' is not a number.", field="index") from None

        exam = catalog.get_exam_by_id(course_id, exam_id)
        updated = remove_option(exam.question(question_id), index)
        catalog.save_question(exam.id, updated)
        print(f"[admin] removed option {index} from {exam.id}/{updated.id}"
              + (" (answer key cleared)" if updated.needs_answer_key else ""))
        return jsonify({
            "ok": True,
            "question": question_to_dict(updated),
            "needs_answer_key": updated.needs_answer_key,
        })

    return bp
