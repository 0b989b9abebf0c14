# main.py - exam engine service, BASE_PATH-aware (psycopg3 + pooling)
# Identity comes from the upstream auth layer (session or IAP header); this app trusts it.

import os
from contextlib import contextmanager
from urllib.parse import urlparse, parse_qs, unquote
from typing import Any, Dict, Optional

from flask import Flask, abort, request, g, session, jsonify

# Database (psycopg 3)
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from admin import create_admin_blueprint
from attempts import AttemptStore
from catalog import ExamCatalog
from exam import create_exam_blueprint
from exam_content_loader import load_default_exam_definitions
from rich_text import render_rich

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")
STATIC_URL_PATH = (BASE_PATH + "/static") if BASE_PATH else "/static"

app = Flask(
    __name__,
    static_folder="static",
    static_url_path=STATIC_URL_PATH,
    template_folder="templates",
)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=True,  # HTTPS on Render/production
)

# =============================================================================
# Auth mode
# =============================================================================
AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "1").lower() in {"1", "true", "yes"}
DEV_USER_EMAIL = (os.getenv("DEV_USER_EMAIL") or "").strip().lower()
SEED_ON_START = os.getenv("EXAM_SEED_ON_START", "0").lower() in {"1", "true", "yes"}

def _bp(path: str = "") -> str:
    """Prefix a path with BASE_PATH (if set)."""
    p = path or "/"
    if not p.startswith("/"):
        p = "/" + p
    if BASE_PATH and (p == BASE_PATH or p.startswith(BASE_PATH + "/")):
        return p
    return (BASE_PATH + p) if BASE_PATH else p

# =============================================================================
# DB configuration
# =============================================================================
# EXAM_DATABASE_URL (or DATABASE_URL) wins; otherwise TCP from DB_* parts.
DATABASE_URL = os.getenv("EXAM_DATABASE_URL") or os.getenv("DATABASE_URL")
DB_HOST = os.getenv("DB_HOST") or "127.0.0.1"
DB_PORT = int(os.getenv("DB_PORT") or "5432")
DB_NAME = os.getenv("DB_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS")

_SA_PREFIXES = ("postgresql+psycopg://", "postgres+psycopg://", "postgresql+psycopg2://", "postgres+psycopg2://")

def _parse_database_url(url: str) -> dict:
    if not url:
        raise ValueError("Empty DATABASE_URL")
    for pref in _SA_PREFIXES:
        if url.startswith(pref):
            url = "postgresql://" + url.split("://", 1)[1]
            break

    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "", keep_blank_values=True)
    host = qs["host"][0] if qs.get("host") else p.hostname
    dbname = (p.path or "").lstrip("/") or (qs["dbname"][0] if qs.get("dbname") else "")
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")
    kwargs = {
        "dbname": dbname,
        "user": unquote(p.username or ""),
        "password": unquote(p.password or ""),
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }
    if host:
        kwargs["host"] = host
    if p.port and not (isinstance(host, str) and host.startswith("/")):
        kwargs["port"] = p.port
    if qs.get("sslmode"):
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs

def _connection_kwargs() -> dict:
    if DATABASE_URL:
        kwargs = _parse_database_url(DATABASE_URL)
        print(f"[DB] using DATABASE_URL -> {kwargs.get('host', 'localhost')}/{kwargs['dbname']}")
        return kwargs
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("Set EXAM_DATABASE_URL, or DB_NAME, DB_USER and DB_PASS.")
    print(f"[DB] using TCP -> {DB_HOST}:{DB_PORT}/{DB_NAME}")
    return {
        "host": DB_HOST,
        "port": DB_PORT,
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None

def _to_conninfo(kwargs: dict) -> str:
    # Build libpq conninfo string from kwargs dict
    parts = []
    for k, v in kwargs.items():
        if v is None:
            continue
        s = str(v)
        if any(ch.isspace() for ch in s) or "'" in s or '"' in s:
            s = "'" + s.replace("'", r"\'") + "'"
        parts.append(f"{k}={s}")
    return " ".join(parts)

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    conninfo = _to_conninfo(_connection_kwargs())
    _pg_pool = ConnectionPool(conninfo=conninfo, min_size=1, max_size=6)

@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn

def _run(q, params=None, returning: bool = False, commit: bool = True):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall() if returning else None
        if commit:
            conn.commit()
        return rows

def fetch_all(q, params=None):
    return _run(q, params, returning=True, commit=False)

def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None

def execute(q, params=None):
    _run(q, params)

def execute_returning(q, params=None):
    return _run(q, params, returning=True)

# =============================================================================
# Identity helpers
# =============================================================================
def _session_email() -> Optional[str]:
    u = session.get("user") or {}
    e = (u.get("email") or "").strip().lower()
    return e or None

def _iap_email() -> Optional[str]:
    h = (
        request.headers.get("X-Goog-Authenticated-User-Email")
        or request.headers.get("X-Appengine-User-Email")
    )
    if not h:
        return None
    return h.split(":", 1)[-1].strip().lower()

def current_user_email() -> Optional[str]:
    email = _session_email() or _iap_email()
    if not email and not AUTH_REQUIRED:
        return DEV_USER_EMAIL or None
    return email

def ensure_user_row(email: str) -> int:
    row = fetch_one("SELECT id FROM users WHERE email = %s;", (email,))
    if row:
        return row["id"]
    display = email.split("@", 1)[0].replace(".", " ").title()
    rows = execute_returning("""
        INSERT INTO users (email, full_name, role)
        VALUES (%s, %s, 'learner')
        ON CONFLICT (email) DO UPDATE SET full_name = EXCLUDED.full_name
        RETURNING id;
    """, (email, display))
    return rows[0]["id"]

# =============================================================================
# Request gate
# =============================================================================
def _is_public_path(path: str) -> bool:
    if path.startswith(STATIC_URL_PATH):
        return True
    public_exact = {"/healthz", _bp("/healthz"), "/favicon.ico", _bp("/favicon.ico")}
    return path in public_exact

@app.before_request
def attach_identity():
    if _is_public_path(request.path):
        return
    email = current_user_email()
    if not email:
        if AUTH_REQUIRED:
            abort(401)
        return
    g.user_email = email
    try:
        g.user_id = ensure_user_row(email)
    except Exception as e:
        # pages degrade to 401 below rather than 500
        print(f"[Auth] ensure_user_row failed for {email}: {e}")

@app.context_processor
def inject_user_and_base():
    return {
        "current_user_email": getattr(g, "user_email", None),
        "base_path": BASE_PATH,
        "bp": _bp,
    }

app.jinja_env.filters["rich"] = render_rich

@app.get("/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)

@app.get("/favicon.ico")
def favicon():
    return ("", 204)

@app.errorhandler(401)
def unauthorized(_e):
    return jsonify({"ok": False, "error": "unauthorized"}), 401

# =============================================================================
# Exam engine wiring
# =============================================================================
_db_deps: Dict[str, Any] = {
    "fetch_one": fetch_one,
    "fetch_all": fetch_all,
    "execute": execute,
    "execute_returning": execute_returning,
}
catalog = ExamCatalog(**_db_deps)
attempt_store = AttemptStore(**_db_deps)

def ensure_schema():
    execute("""
        CREATE TABLE IF NOT EXISTS users (
            id         BIGSERIAL PRIMARY KEY,
            email      TEXT UNIQUE NOT NULL,
            full_name  TEXT,
            role       TEXT NOT NULL DEFAULT 'learner',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """)
    catalog.ensure_schema()
    attempt_store.ensure_schema()

_engine_deps = {"catalog": catalog, "attempts": attempt_store, "fetch_one": fetch_one}

app.register_blueprint(create_exam_blueprint(BASE_PATH, _engine_deps))
app.register_blueprint(create_admin_blueprint(BASE_PATH, _engine_deps))

if SEED_ON_START:
    try:
        ensure_schema()
        catalog.seed_exams_if_missing(load_default_exam_definitions())
    except Exception as e:
        print(f"[catalog] seed on start failed: {e}", flush=True)

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
