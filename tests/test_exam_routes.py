import sys
from datetime import timedelta
from pathlib import Path

import pytest
from flask import Flask, g

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import exam as exam_module  # noqa: E402
from catalog import ExamCatalog  # noqa: E402
from exam import create_exam_blueprint  # noqa: E402

ROOT = "/learn/safety/exam/safety-final"


@pytest.fixture
def rendered(monkeypatch):
    calls = []

    def fake_render_template(template_name, **context):
        calls.append((template_name, context))
        return f"rendered {template_name}"

    monkeypatch.setattr(exam_module, "render_template", fake_render_template)
    return calls


def _client(store, catalog, clock, user_id=7):
    app = Flask(__name__)
    app.testing = True

    @app.before_request
    def _set_user():
        g.user_id = user_id
        g.user_email = "user@example.com"

    deps = {"catalog": catalog, "attempts": store, "clock": clock, "grace_seconds": 30}
    app.register_blueprint(create_exam_blueprint("", deps))
    return app.test_client()


def test_start_creates_attempt_and_starts_timer(store, catalog, clock, rendered, db):
    client = _client(store, catalog, clock)
    resp = client.get(ROOT)
    assert resp.status_code == 200
    assert resp.get_data(as_text=True) == "rendered exam.html"

    name, ctx = rendered[-1]
    assert ctx["deadline"] == (clock.now + timedelta(minutes=60)).isoformat()
    assert ctx["save_url"] == ROOT + "/save"
    assert all("correct" not in q for q in ctx["questions"])
    assert len(db.attempts) == 1

    # reopening later resumes the same timer
    clock.now += timedelta(minutes=10)
    client.get(ROOT)
    _, ctx2 = rendered[-1]
    assert ctx2["deadline"] == ctx["deadline"]
    assert ctx2["remaining_seconds"] == 50 * 60
    assert len(db.attempts) == 1


def test_save_then_resume_shows_saved_answers(store, catalog, clock, rendered):
    client = _client(store, catalog, clock)
    client.get(ROOT)
    resp = client.post(ROOT + "/save", json={"answers": {"q1": 1, "q3": "Paris"}})
    assert resp.status_code == 200
    assert resp.get_json()["saved"] == ["q1", "q3"]

    client.get(ROOT)
    _, ctx = rendered[-1]
    assert ctx["saved_answers"] == {"q1": 1, "q3": "Paris"}


def test_save_rejects_invalid_payload(store, catalog, clock, rendered):
    client = _client(store, catalog, clock)
    client.get(ROOT)
    resp = client.post(ROOT + "/save", json={"answers": {"q1": 9}})
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "validation_failed"

    resp = client.post(ROOT + "/save", json={"answers": {"nope": 1}})
    assert resp.status_code == 400


def test_save_without_attempt_is_not_found(store, catalog, clock):
    client = _client(store, catalog, clock)
    resp = client.post(ROOT + "/save", json={"answers": {"q1": 1}})
    assert resp.status_code == 404


def test_submit_scores_and_second_submit_conflicts(store, catalog, clock, rendered):
    client = _client(store, catalog, clock)
    client.get(ROOT)
    client.post(ROOT + "/save", json={"answers": {"q1": 1}})
    resp = client.post(ROOT + "/submit", json={"answers": {"q2": [0, 2], "q4": "essay"}})
    body = resp.get_json()
    assert resp.status_code == 200
    assert body["score"] == 2
    assert body["gradable_count"] == 3
    assert body["percentage"] == 67
    assert body["certificate_eligible"] is False
    assert body["results_url"] == ROOT + "/results"

    again = client.post(ROOT + "/submit", json={"answers": {"q3": "Paris"}, "reason": "deadline"})
    assert again.status_code == 409
    assert again.get_json()["error"] == "Exam already submitted."
    assert again.get_json()["results_url"] == ROOT + "/results"

    locked = client.post(ROOT + "/save", json={"answers": {"q3": "Paris"}})
    assert locked.status_code == 409
    assert locked.get_json()["code"] == "locked"


def test_submit_rejects_unknown_reason(store, catalog, clock, rendered):
    client = _client(store, catalog, clock)
    client.get(ROOT)
    resp = client.post(ROOT + "/submit", json={"reason": "bored"})
    assert resp.status_code == 400


def test_deadline_submit_drops_malformed_answers(store, catalog, clock, rendered):
    client = _client(store, catalog, clock)
    client.get(ROOT)
    client.post(ROOT + "/save", json={"answers": {"q1": 1}})
    clock.now += timedelta(minutes=60)
    resp = client.post(ROOT + "/submit", json={
        "reason": "deadline",
        "answers": {"q3": "Paris", "q2": [9], "q4": "x" * 5000, "nope": 1},
    })
    assert resp.status_code == 200
    assert resp.get_json()["score"] == 2
    attempt = store.get_attempt(7, "safety-final")
    assert attempt.is_submitted
    assert attempt.answers == {"q1": 1, "q3": "Paris"}


def test_learner_submit_still_rejects_malformed_answers(store, catalog, clock, rendered):
    client = _client(store, catalog, clock)
    client.get(ROOT)
    resp = client.post(ROOT + "/submit", json={"answers": {"q2": [9]}})
    assert resp.status_code == 400
    assert not store.get_attempt(7, "safety-final").is_submitted


def test_submitted_attempt_redirects_to_results(store, catalog, clock, rendered):
    client = _client(store, catalog, clock)
    client.get(ROOT)
    client.post(ROOT + "/submit", json={"answers": {"q1": 1}})
    resp = client.get(ROOT)
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith(ROOT + "/results")


def test_resume_after_deadline_finalizes(store, catalog, clock, rendered, db):
    client = _client(store, catalog, clock)
    client.get(ROOT)
    client.post(ROOT + "/save", json={"answers": {"q1": 1}})

    clock.now += timedelta(minutes=61)
    resp = client.get(ROOT)
    assert resp.status_code == 302
    attempt = store.get_attempt(7, "safety-final")
    assert attempt.is_submitted
    assert attempt.score == 1
    assert attempt.submitted_at == clock.now


def test_late_save_inside_grace_is_accepted(store, catalog, clock, rendered):
    client = _client(store, catalog, clock)
    client.get(ROOT)
    clock.now += timedelta(minutes=60, seconds=10)
    resp = client.post(ROOT + "/save", json={"answers": {"q1": 1}})
    assert resp.status_code == 200


def test_save_past_grace_forces_finalize(store, catalog, clock, rendered):
    client = _client(store, catalog, clock)
    client.get(ROOT)
    client.post(ROOT + "/save", json={"answers": {"q1": 1}})
    clock.now += timedelta(minutes=62)
    resp = client.post(ROOT + "/save", json={"answers": {"q3": "Paris"}})
    assert resp.status_code == 409
    assert resp.get_json()["results_url"] == ROOT + "/results"
    attempt = store.get_attempt(7, "safety-final")
    assert attempt.is_submitted
    assert attempt.answers == {"q1": 1}


def test_status_reports_deadline(store, catalog, clock, rendered):
    client = _client(store, catalog, clock)
    assert client.get(ROOT + "/status").get_json()["state"] == "not_started"
    client.get(ROOT)
    body = client.get(ROOT + "/status").get_json()
    assert body["state"] == "in_progress"
    assert body["remaining_seconds"] == 3600


def test_results_only_after_submit(store, catalog, clock, rendered):
    client = _client(store, catalog, clock)
    client.get(ROOT)
    assert client.get(ROOT + "/results").status_code == 404

    client.post(ROOT + "/submit", json={"answers": {"q1": 1, "q2": [0, 2], "q3": "paris"}})
    resp = client.get(ROOT + "/results")
    assert resp.status_code == 200
    name, ctx = rendered[-1]
    assert name == "exam_results.html"
    assert ctx["summary"]["percentage"] == 100
    assert ctx["summary"]["certificate_eligible"] is True
    assert [r["id"] for r in ctx["review"]] == ["q1", "q2", "q3", "q4"]


def test_unknown_exam_renders_error_page(store, catalog, clock, rendered):
    client = _client(store, catalog, clock)
    resp = client.get("/learn/safety/exam/missing")
    assert resp.status_code == 404
    assert rendered[-1][0] == "exam_error.html"
    assert rendered[-1][1]["message"] == "Exam could not be found."


def test_inactive_exam_is_forbidden(store, db, clock, rendered, exam_definition):
    inactive = ExamCatalog(**db.deps())
    inactive.seed_exams_if_missing([exam_definition(status="inactive")])
    client = _client(store, inactive, clock)
    resp = client.get(ROOT)
    assert resp.status_code == 403
    assert db.attempts == {}


def test_exam_with_cleared_answer_key_cannot_start(store, db, clock, rendered, exam_definition):
    definition = exam_definition()
    definition["questions"][0]["correctAnswers"] = []
    cat = ExamCatalog(**db.deps())
    cat.seed_exams_if_missing([definition])
    client = _client(store, cat, clock)
    resp = client.get(ROOT)
    assert resp.status_code == 400
    assert db.attempts == {}


def test_untimed_exam_never_expires(store, db, clock, rendered, exam_definition):
    cat = ExamCatalog(**db.deps())
    cat.seed_exams_if_missing([exam_definition(duration_minutes=None)])
    client = _client(store, cat, clock)
    client.get(ROOT)
    assert rendered[-1][1]["deadline"] is None
    clock.now += timedelta(days=3)
    assert client.post(ROOT + "/save", json={"answers": {"q1": 0}}).status_code == 200
