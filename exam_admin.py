"""
School Exam Records Admin Panel

A Flask web application for managing pupils, classes, exams and scores, with
class/term statistics, the OTM national-exam scoring workflow and the WM
subject scoring workflow.
"""

from flask import Flask, render_template, request, redirect, url_for, session, flash, Response, abort
from flask_wtf import FlaskForm
from flask_wtf.csrf import CSRFProtect, CSRFError
from flask_migrate import Migrate
from wtforms import StringField, PasswordField, validators
import csv
import re
from io import StringIO
from datetime import datetime, timedelta, date
from werkzeug.security import generate_password_hash, check_password_hash

import os
import secrets
from contextlib import contextmanager

import logging
import psycopg2
from psycopg2.extras import DictCursor
from dotenv import load_dotenv

import exam_import
import exam_stats
from exam_stats import fmt1, fmt2, fmt_pct, DASH, PASS_THRESHOLD, GOOD_THRESHOLD, EXCELLENT_THRESHOLD

load_dotenv()

app = Flask(__name__, template_folder='frontend/templates', static_folder='static')
ALLOW_INSECURE_DEFAULTS = os.environ.get('ALLOW_INSECURE_DEFAULTS', '').strip().lower() in ('1', 'true', 'yes')
secret_key = os.environ.get('SECRET_KEY')
if not secret_key:
    if ALLOW_INSECURE_DEFAULTS:
        secret_key = 'dev-secret-key-change-me'
    else:
        raise RuntimeError("SECRET_KEY is required in production. Set SECRET_KEY or enable ALLOW_INSECURE_DEFAULTS for local development.")
if not ALLOW_INSECURE_DEFAULTS and len(secret_key) < 32:
    raise RuntimeError("SECRET_KEY is too short. Use at least 32 characters in production.")
app.secret_key = secret_key
app.config['WTF_CSRF_TIME_LIMIT'] = None
app.config['MAX_CONTENT_LENGTH'] = exam_import.MAX_UPLOAD_BYTES + 1_000_000

csrf = CSRFProtect(app)
migrate = Migrate(app, directory='migrations')

DATABASE_URL = os.environ.get('DATABASE_URL', '').strip()
if not DATABASE_URL.startswith(('postgres://', 'postgresql://')):
    raise RuntimeError("PostgreSQL is required. Set DATABASE_URL to a postgresql:// connection string.")
BOOTSTRAP_ADMIN_LOGIN = os.environ.get('BOOTSTRAP_ADMIN_LOGIN', 'admin').strip().lower()
BOOTSTRAP_ADMIN_PASSWORD = os.environ.get('BOOTSTRAP_ADMIN_PASSWORD', '').strip()
RUN_STARTUP_DDL = os.environ.get('RUN_STARTUP_DDL', '1').strip().lower() in ('1', 'true', 'yes')
RUN_STARTUP_BOOTSTRAP = os.environ.get('RUN_STARTUP_BOOTSTRAP', '1').strip().lower() in ('1', 'true', 'yes')
if RUN_STARTUP_BOOTSTRAP:
    if not BOOTSTRAP_ADMIN_PASSWORD:
        raise RuntimeError("BOOTSTRAP_ADMIN_PASSWORD is required. Set it in environment variables.")
    if len(BOOTSTRAP_ADMIN_PASSWORD) < 12:
        raise RuntimeError("BOOTSTRAP_ADMIN_PASSWORD is too short. Use at least 12 characters.")
try:
    SESSION_IDLE_HOURS = float(os.environ.get('SESSION_IDLE_HOURS', '6'))
except ValueError:
    SESSION_IDLE_HOURS = 6.0

LOGIN_MAX_ATTEMPTS = 4
LOGIN_LOCK_MINUTES = 15
ROLE_LEVELS = {'superadmin': 1, 'admin': 2, 'viewer': 3}
TRACK_OPTIONS = exam_import.TRACK_OPTIONS
PUBLIC_ENDPOINTS = {'static', 'login', 'logout', 'public_results', 'public_otm_result'}


def _adapt_query(query):
    return query.replace('?', '%s')


def db_execute(cursor, query, params=None):
    if params is None:
        return cursor.execute(_adapt_query(query))
    return cursor.execute(_adapt_query(query), params)


def get_db():
    """Create a PostgreSQL DB connection."""
    return psycopg2.connect(DATABASE_URL, cursor_factory=DictCursor, connect_timeout=10)


@contextmanager
def db_connection(commit=False):
    """Context manager for DB connections with optional commit."""
    conn = get_db()
    try:
        yield conn
        if commit:
            conn.commit()
    finally:
        conn.close()


logging.basicConfig(filename='app.log', level=logging.INFO,
                    format='%(asctime)s - %(levelname)s - %(message)s')
if ALLOW_INSECURE_DEFAULTS:
    logging.warning("ALLOW_INSECURE_DEFAULTS is enabled. Development-only fallbacks may be active.")

# Short-lived in-memory stores: parsed import files and unsaved grid drafts.
# They are per process, so the app must run as a single worker process.
IMPORT_CONTEXTS = {}
GRID_DRAFTS = {}
IMPORT_CONTEXT_TTL_MINUTES = 60
IMPORT_CONTEXT_LIMIT = 10
GRID_DRAFT_TTL_MINUTES = 120
GRID_DRAFT_LIMIT = 200


def _cleanup_store(store, ttl_minutes, limit):
    cutoff = datetime.now() - timedelta(minutes=ttl_minutes)
    stale = [key for key, item in store.items() if item.get('created_at') and item['created_at'] < cutoff]
    for key in stale:
        store.pop(key, None)
    if len(store) > limit:
        oldest = sorted(store.items(), key=lambda kv: kv[1].get('created_at', datetime.min))
        for key, _item in oldest[:len(store) - limit]:
            store.pop(key, None)


def store_import_context(kind, filename, headers, rows, meta=None):
    _cleanup_store(IMPORT_CONTEXTS, IMPORT_CONTEXT_TTL_MINUTES, IMPORT_CONTEXT_LIMIT)
    token = secrets.token_urlsafe(18)
    IMPORT_CONTEXTS[token] = {
        'kind': kind,
        'admin_id': session.get('admin_id'),
        'filename': filename,
        'headers': headers,
        'rows': rows,
        'meta': meta or {},
        'created_at': datetime.now(),
    }
    session.setdefault('import_tokens', {})
    tokens = dict(session['import_tokens'])
    tokens[kind] = token
    session['import_tokens'] = tokens
    return token


def load_import_context(kind):
    _cleanup_store(IMPORT_CONTEXTS, IMPORT_CONTEXT_TTL_MINUTES, IMPORT_CONTEXT_LIMIT)
    token = (session.get('import_tokens') or {}).get(kind)
    item = IMPORT_CONTEXTS.get(token) if token else None
    if not item or item.get('kind') != kind or item.get('admin_id') != session.get('admin_id'):
        return None
    return item


def clear_import_context(kind):
    tokens = dict(session.get('import_tokens') or {})
    token = tokens.pop(kind, None)
    if token:
        IMPORT_CONTEXTS.pop(token, None)
    session['import_tokens'] = tokens


def _draft_key(kind, *parts):
    return (session.get('admin_id'), kind) + tuple(parts)


def save_draft(kind, parts, data):
    _cleanup_store(GRID_DRAFTS, GRID_DRAFT_TTL_MINUTES, GRID_DRAFT_LIMIT)
    GRID_DRAFTS[_draft_key(kind, *parts)] = {'data': data, 'created_at': datetime.now()}


def pop_draft(kind, parts):
    _cleanup_store(GRID_DRAFTS, GRID_DRAFT_TTL_MINUTES, GRID_DRAFT_LIMIT)
    item = GRID_DRAFTS.pop(_draft_key(kind, *parts), None)
    return item['data'] if item else None


SCHEMA_STATEMENTS = [
    '''CREATE TABLE IF NOT EXISTS admins (
        id SERIAL PRIMARY KEY,
        login VARCHAR(64) UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        role VARCHAR(16) NOT NULL DEFAULT 'admin' CHECK (role IN ('viewer', 'admin', 'superadmin')),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        last_login_at TIMESTAMP,
        last_login_ip VARCHAR(64),
        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
    )''',
    '''CREATE TABLE IF NOT EXISTS login_attempts (
        id SERIAL PRIMARY KEY,
        endpoint VARCHAR(32) NOT NULL,
        username VARCHAR(64) NOT NULL,
        ip_address VARCHAR(64) NOT NULL,
        failures INTEGER NOT NULL DEFAULT 0,
        first_failed_at TIMESTAMP,
        last_failed_at TIMESTAMP,
        locked_until TIMESTAMP,
        UNIQUE (endpoint, username, ip_address)
    )''',
    '''CREATE TABLE IF NOT EXISTS classes (
        id SERIAL PRIMARY KEY,
        class_code VARCHAR(20) UNIQUE NOT NULL,
        grade SMALLINT NOT NULL CHECK (grade BETWEEN 1 AND 12),
        section VARCHAR(5),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
    )''',
    '''CREATE TABLE IF NOT EXISTS pupils (
        id SERIAL PRIMARY KEY,
        surname VARCHAR(50) NOT NULL,
        name VARCHAR(40) NOT NULL,
        middle_name VARCHAR(40),
        class_code VARCHAR(30) NOT NULL,
        class_id INTEGER REFERENCES classes(id) ON DELETE SET NULL,
        track VARCHAR(30) NOT NULL,
        student_login VARCHAR(20) UNIQUE NOT NULL,
        class_group SMALLINT NOT NULL DEFAULT 1 CHECK (class_group IN (1, 2)),
        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
    )''',
    '''CREATE TABLE IF NOT EXISTS subjects (
        id SERIAL PRIMARY KEY,
        code VARCHAR(30) UNIQUE NOT NULL,
        name VARCHAR(120) NOT NULL,
        max_points SMALLINT NOT NULL DEFAULT 40 CHECK (max_points BETWEEN 1 AND 40)
    )''',
    '''CREATE TABLE IF NOT EXISTS exams (
        id SERIAL PRIMARY KEY,
        academic_year VARCHAR(9) NOT NULL,
        term SMALLINT CHECK (term IS NULL OR term BETWEEN 1 AND 6),
        exam_name VARCHAR(120) NOT NULL,
        exam_date DATE
    )''',
    '''CREATE TABLE IF NOT EXISTS results (
        id SERIAL PRIMARY KEY,
        pupil_id INTEGER NOT NULL REFERENCES pupils(id) ON DELETE CASCADE,
        subject_id INTEGER NOT NULL REFERENCES subjects(id) ON DELETE RESTRICT,
        exam_id INTEGER NOT NULL REFERENCES exams(id) ON DELETE RESTRICT,
        score NUMERIC(4,1) NOT NULL CHECK (score >= 0 AND score <= 40),
        UNIQUE (pupil_id, subject_id, exam_id)
    )''',
    '''CREATE TABLE IF NOT EXISTS study_year (
        id SERIAL PRIMARY KEY,
        year_code VARCHAR(9) UNIQUE NOT NULL,
        start_date DATE NOT NULL,
        end_date DATE NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    )''',
    '''CREATE TABLE IF NOT EXISTS otm_subjects (
        id SERIAL PRIMARY KEY,
        code VARCHAR(30) UNIQUE NOT NULL,
        name VARCHAR(120) NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        sort_order INTEGER NOT NULL DEFAULT 0
    )''',
    '''CREATE TABLE IF NOT EXISTS otm_major (
        id SERIAL PRIMARY KEY,
        pupil_id INTEGER UNIQUE NOT NULL REFERENCES pupils(id) ON DELETE CASCADE,
        major1_subject_id INTEGER NOT NULL REFERENCES otm_subjects(id) ON DELETE RESTRICT,
        major2_subject_id INTEGER NOT NULL REFERENCES otm_subjects(id) ON DELETE RESTRICT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_by INTEGER,
        updated_by INTEGER,
        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
    )''',
    '''CREATE TABLE IF NOT EXISTS otm_exams (
        id SERIAL PRIMARY KEY,
        study_year_id INTEGER NOT NULL REFERENCES study_year(id) ON DELETE RESTRICT,
        otm_kind VARCHAR(12) NOT NULL CHECK (otm_kind IN ('mock', 'repetition')),
        exam_title VARCHAR(120) NOT NULL,
        exam_date DATE NOT NULL,
        attempt_no SMALLINT NOT NULL DEFAULT 1 CHECK (attempt_no BETWEEN 1 AND 20),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
    )''',
    '''CREATE TABLE IF NOT EXISTS otm_results (
        id SERIAL PRIMARY KEY,
        pupil_id INTEGER NOT NULL REFERENCES pupils(id) ON DELETE CASCADE,
        otm_exam_id INTEGER NOT NULL REFERENCES otm_exams(id) ON DELETE RESTRICT,
        study_year_id INTEGER REFERENCES study_year(id) ON DELETE SET NULL,
        otm_kind VARCHAR(12),
        exam_title VARCHAR(120),
        exam_date DATE,
        attempt_no SMALLINT,
        major1_subject_id INTEGER REFERENCES otm_subjects(id) ON DELETE SET NULL,
        major2_subject_id INTEGER REFERENCES otm_subjects(id) ON DELETE SET NULL,
        major1_correct SMALLINT NOT NULL DEFAULT 0,
        major2_correct SMALLINT NOT NULL DEFAULT 0,
        mandatory_ona_tili_correct SMALLINT NOT NULL DEFAULT 0,
        mandatory_matematika_correct SMALLINT NOT NULL DEFAULT 0,
        mandatory_uzb_tarix_correct SMALLINT NOT NULL DEFAULT 0,
        major1_certificate_percent NUMERIC(5,2),
        major2_certificate_percent NUMERIC(5,2),
        mandatory_ona_tili_certificate_percent NUMERIC(5,2),
        mandatory_matematika_certificate_percent NUMERIC(5,2),
        mandatory_uzb_tarix_certificate_percent NUMERIC(5,2),
        major1_score NUMERIC(6,2) NOT NULL DEFAULT 0,
        major2_score NUMERIC(6,2) NOT NULL DEFAULT 0,
        mandatory_ona_tili_score NUMERIC(6,2) NOT NULL DEFAULT 0,
        mandatory_matematika_score NUMERIC(6,2) NOT NULL DEFAULT 0,
        mandatory_uzb_tarix_score NUMERIC(6,2) NOT NULL DEFAULT 0,
        major1_certificate_score NUMERIC(6,2),
        major2_certificate_score NUMERIC(6,2),
        mandatory_ona_tili_certificate_score NUMERIC(6,2),
        mandatory_matematika_certificate_score NUMERIC(6,2),
        mandatory_uzb_tarix_certificate_score NUMERIC(6,2),
        total_score NUMERIC(6,2) NOT NULL DEFAULT 0,
        total_score_withcert NUMERIC(6,2),
        created_by INTEGER,
        updated_by INTEGER,
        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (pupil_id, otm_exam_id)
    )''',
    '''CREATE TABLE IF NOT EXISTS wm_subjects (
        id SERIAL PRIMARY KEY,
        code VARCHAR(30) UNIQUE NOT NULL,
        name VARCHAR(120) NOT NULL,
        max_points SMALLINT NOT NULL DEFAULT 100 CHECK (max_points BETWEEN 1 AND 100)
    )''',
    '''CREATE TABLE IF NOT EXISTS wm_exams (
        id SERIAL PRIMARY KEY,
        study_year_id INTEGER NOT NULL REFERENCES study_year(id) ON DELETE RESTRICT,
        cycle_no SMALLINT CHECK (cycle_no IS NULL OR cycle_no BETWEEN 1 AND 60),
        exam_name VARCHAR(120) NOT NULL,
        exam_date DATE NOT NULL,
        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
    )''',
    '''CREATE TABLE IF NOT EXISTS wm_results (
        id SERIAL PRIMARY KEY,
        pupil_id INTEGER NOT NULL REFERENCES pupils(id) ON DELETE CASCADE,
        subject_id INTEGER NOT NULL REFERENCES wm_subjects(id) ON DELETE RESTRICT,
        exam_id INTEGER NOT NULL REFERENCES wm_exams(id) ON DELETE RESTRICT,
        score NUMERIC(5,2) NOT NULL CHECK (score >= 0),
        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (pupil_id, subject_id, exam_id)
    )''',
]

SCHEMA_INDEXES = [
    'CREATE INDEX IF NOT EXISTS idx_pupils_class_code ON pupils(class_code)',
    'CREATE INDEX IF NOT EXISTS idx_pupils_class_id ON pupils(class_id)',
    'CREATE INDEX IF NOT EXISTS idx_results_exam ON results(exam_id)',
    'CREATE INDEX IF NOT EXISTS idx_results_subject ON results(subject_id)',
    'CREATE INDEX IF NOT EXISTS idx_exams_year ON exams(academic_year)',
    'CREATE INDEX IF NOT EXISTS idx_otm_results_exam ON otm_results(otm_exam_id)',
    'CREATE INDEX IF NOT EXISTS idx_wm_results_exam_subject ON wm_results(exam_id, subject_id)',
    'CREATE INDEX IF NOT EXISTS idx_wm_exams_study_year ON wm_exams(study_year_id)',
]


def init_db():
    """Create every table and index when missing."""
    conn = get_db()
    c = conn.cursor()

    def safe_exec_ignore(sql):
        """
        Execute DDL that may fail if the object already exists, without
        poisoning the whole PostgreSQL transaction.
        """
        db_execute(c, 'SAVEPOINT ddl_ignore')
        try:
            db_execute(c, sql)
        except psycopg2.Error:
            db_execute(c, 'ROLLBACK TO SAVEPOINT ddl_ignore')
        finally:
            db_execute(c, 'RELEASE SAVEPOINT ddl_ignore')

    try:
        for statement in SCHEMA_STATEMENTS:
            db_execute(c, statement)
        for statement in SCHEMA_INDEXES:
            safe_exec_ignore(statement)
        conn.commit()
    finally:
        conn.close()


if RUN_STARTUP_DDL:
    init_db()
else:
    logging.warning("RUN_STARTUP_DDL is disabled. Ensure schema is already migrated before startup.")


def create_bootstrap_admin():
    """Ensure the bootstrap superadmin exists; never reset or escalate an existing account."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id, role FROM admins WHERE login = ?', (BOOTSTRAP_ADMIN_LOGIN,))
        row = c.fetchone()
        if not row:
            db_execute(
                c,
                '''INSERT INTO admins (login, password_hash, role, is_active)
                   VALUES (?, ?, 'superadmin', TRUE)''',
                (BOOTSTRAP_ADMIN_LOGIN, generate_password_hash(BOOTSTRAP_ADMIN_PASSWORD)),
            )
            logging.info("Bootstrap admin created: %s", BOOTSTRAP_ADMIN_LOGIN)
        elif row['role'] != 'superadmin':
            logging.warning(
                "BOOTSTRAP_ADMIN_LOGIN '%s' exists with role '%s'; skipping automatic role escalation.",
                BOOTSTRAP_ADMIN_LOGIN,
                row['role'],
            )


if RUN_STARTUP_BOOTSTRAP:
    create_bootstrap_admin()


# ==================== AUTH ====================

class LoginForm(FlaskForm):
    login = StringField('Login', [validators.DataRequired(), validators.Length(max=64)])
    password = PasswordField('Password', [validators.DataRequired()])


def role_level(role):
    return ROLE_LEVELS.get((role or '').strip().lower(), 99)


def can_write():
    return role_level(session.get('role')) <= 2


def require_admin():
    return bool(session.get('admin_id')) and role_level(session.get('role')) <= 3


def is_safe_next(url):
    """Only same-site absolute paths are accepted as login redirect targets."""
    if not url:
        return False
    if not url.startswith('/') or url.startswith('//'):
        return False
    if '\\' in url:
        return False
    return not any(ord(ch) < 32 or ord(ch) == 127 for ch in url)


def login_redirect():
    return redirect(url_for('login', next=request.full_path.rstrip('?')))


def get_admin(login):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            'SELECT id, login, password_hash, role, is_active FROM admins WHERE login = ? LIMIT 1',
            ((login or '').strip().lower(),),
        )
        row = c.fetchone()
    return dict(row) if row else None


def update_login_info(admin_id, ip_address):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            'UPDATE admins SET last_login_at = CURRENT_TIMESTAMP, last_login_ip = ? WHERE id = ?',
            (ip_address, admin_id),
        )


def get_client_ip():
    """Best-effort client IP extraction."""
    trust_proxy = os.environ.get('TRUST_PROXY_HEADERS', '').strip().lower() in ('1', 'true', 'yes')
    xff = (request.headers.get('X-Forwarded-For') or '').strip()
    if trust_proxy and xff:
        for part in xff.split(','):
            ip = (part or '').strip()
            if ip:
                return ip
    return (request.remote_addr or '').strip() or 'unknown'


def is_login_blocked(endpoint, username, ip_address):
    """Return (blocked, wait_minutes)."""
    purge_old_login_attempts()
    endpoint = (endpoint or '').strip().lower()
    username = (username or '').strip().lower()
    ip_address = (ip_address or '').strip()
    now = datetime.now()
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT failures, locked_until
               FROM login_attempts
               WHERE endpoint = ? AND username = ? AND ip_address = ?
               LIMIT 1''',
            (endpoint, username, ip_address),
        )
        row = c.fetchone()
    if not row:
        return False, 0
    locked_until = row[1]
    if locked_until and locked_until > now:
        remaining = (locked_until - now).total_seconds()
        wait_minutes = max(1, int(remaining // 60) + (1 if remaining % 60 else 0))
        return True, wait_minutes
    return False, 0


def register_failed_login(endpoint, username, ip_address):
    """Track a failed login and lock after max attempts within the window."""
    purge_old_login_attempts()
    endpoint = (endpoint or '').strip().lower()
    username = (username or '').strip().lower()
    ip_address = (ip_address or '').strip()
    now = datetime.now()
    window_start = now - timedelta(minutes=LOGIN_LOCK_MINUTES)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT failures, last_failed_at, locked_until
               FROM login_attempts
               WHERE endpoint = ? AND username = ? AND ip_address = ?
               LIMIT 1''',
            (endpoint, username, ip_address),
        )
        row = c.fetchone()
        if not row:
            db_execute(
                c,
                '''INSERT INTO login_attempts
                   (endpoint, username, ip_address, failures, first_failed_at, last_failed_at, locked_until)
                   VALUES (?, ?, ?, 1, ?, ?, NULL)''',
                (endpoint, username, ip_address, now, now),
            )
            return
        failures = int(row[0] or 0)
        last_failed_at = row[1]
        if row[2] and row[2] > now:
            return
        if not last_failed_at or last_failed_at < window_start:
            failures = 1
            db_execute(
                c,
                '''UPDATE login_attempts
                   SET failures = 1, first_failed_at = ?, last_failed_at = ?, locked_until = NULL
                   WHERE endpoint = ? AND username = ? AND ip_address = ?''',
                (now, now, endpoint, username, ip_address),
            )
            return
        failures += 1
        locked_until = now + timedelta(minutes=LOGIN_LOCK_MINUTES) if failures >= LOGIN_MAX_ATTEMPTS else None
        db_execute(
            c,
            '''UPDATE login_attempts
               SET failures = ?, last_failed_at = ?, locked_until = ?
               WHERE endpoint = ? AND username = ? AND ip_address = ?''',
            (failures, now, locked_until, endpoint, username, ip_address),
        )
        if locked_until:
            logging.warning("Login locked for %s from %s until %s", username, ip_address, locked_until)


def clear_failed_login(endpoint, username, ip_address):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            'DELETE FROM login_attempts WHERE endpoint = ? AND username = ? AND ip_address = ?',
            ((endpoint or '').strip().lower(), (username or '').strip().lower(), (ip_address or '').strip()),
        )


def purge_old_login_attempts():
    """Delete stale login-attempt rows to keep table size small."""
    cutoff = datetime.now() - timedelta(days=7)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''DELETE FROM login_attempts
               WHERE (locked_until IS NOT NULL AND locked_until < ?)
                  OR (locked_until IS NULL AND last_failed_at IS NOT NULL AND last_failed_at < ?)''',
            (cutoff, cutoff),
        )


# ==================== HELPERS ====================

CLASS_CODE_RE = re.compile(r'^[A-Z0-9][A-Z0-9._-]{0,19}$')
SECTION_RE = re.compile(r'^[A-Z0-9]{1,5}$')
SECTION_FROM_CODE_RE = re.compile(r'^\s*[0-9]{1,2}[-_]?([A-Z0-9]{1,5})\s*$')
LOGIN_RE = re.compile(r'^[a-z0-9][a-z0-9._-]{0,19}$')
SUBJECT_CODE_RE = re.compile(r'^[A-Z0-9][A-Z0-9_\-.]{0,29}$')


def safe_int(value, default):
    """Parse integer safely while preserving valid zero values."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(default)


def format_timestamp(ts):
    if not ts:
        return DASH
    try:
        return ts.strftime('%Y-%m-%d %H:%M')
    except AttributeError:
        return str(ts)


def parse_iso_date(value):
    text = (value or '').strip()
    if not re.match(r'^[0-9]{4}-[0-9]{2}-[0-9]{2}$', text):
        return None
    try:
        return datetime.strptime(text, '%Y-%m-%d').date()
    except ValueError:
        return None


def normalize_class_code(value):
    return re.sub(r'\s+', '', (value or '')).upper()


def derive_grade(class_code, grade_lookup=None):
    grade = exam_stats.extract_grade(class_code, grade_lookup)
    return grade if grade is not None and 1 <= grade <= 12 else None


def derive_section(class_code):
    match = SECTION_FROM_CODE_RE.match(class_code or '')
    return match.group(1) if match else None


def paginate(total, page, per_page):
    pages = max(1, (total + per_page - 1) // per_page)
    page = min(max(1, page), pages)
    return {'page': page, 'pages': pages, 'total': total, 'per_page': per_page, 'offset': (page - 1) * per_page}


def clean_params(**params):
    return {k: v for k, v in params.items() if v not in (None, '', 0, '0')}


def csv_response(rows, filename):
    output = StringIO()
    writer = csv.writer(output)
    writer.writerows(rows)
    return Response(
        output.getvalue(),
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename={filename}'},
    )


def flash_db_error(scope, exc, message='Database error.'):
    logging.error("[%s] %s", scope, exc)
    flash(message, 'error')


def error_reference(scope):
    return f"{scope}-{datetime.now().strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(3).upper()}"


def fetch_all(query, params=None):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, params)
        return [dict(r) for r in c.fetchall()]


def fetch_one(query, params=None):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, params)
        row = c.fetchone()
    return dict(row) if row else None


def fetch_value(query, params=None, default=0):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, params)
        row = c.fetchone()
    if not row or row[0] is None:
        return default
    return row[0]


def list_class_codes():
    rows = fetch_all(
        '''SELECT class_code FROM pupils
           UNION SELECT class_code FROM classes
           ORDER BY class_code'''
    )
    return [r['class_code'] for r in rows if r['class_code']]


def list_academic_years():
    rows = fetch_all('SELECT DISTINCT academic_year FROM exams ORDER BY academic_year DESC')
    return [r['academic_year'] for r in rows]


def list_study_years():
    return fetch_all('SELECT id, year_code, start_date, end_date, is_active FROM study_year ORDER BY start_date DESC')


@app.context_processor
def inject_helpers():
    return {
        'fmt1': fmt1,
        'fmt2': fmt2,
        'fmt_pct': fmt_pct,
        'fmt_score': exam_stats.fmt_score,
        'score_badge_class': exam_stats.score_badge_class,
        'delta_badge': exam_stats.delta_badge,
        'otm_score_color': exam_stats.otm_score_color,
        'can_write': can_write(),
        'role_level': role_level(session.get('role')),
        'current_admin': session.get('admin_login'),
    }


# ==================== ROUTES ====================

@app.errorhandler(CSRFError)
def csrf_error(error):
    """Handle CSRF token errors."""
    if session.get('admin_id'):
        flash('Form token expired/invalid. Please retry your last action.', 'error')
        return redirect(request.referrer or url_for('dashboard'))
    flash('Your session has expired. Please login again.', 'error')
    return redirect(url_for('login'))


@app.before_request
def enforce_admin_session():
    """Idle timeout for admin sessions and read-only access for viewers."""
    endpoint = request.endpoint or ''
    if endpoint in PUBLIC_ENDPOINTS or not session.get('admin_id'):
        return None
    now = datetime.now().timestamp()
    last_seen = session.get('last_seen')
    if last_seen and now - float(last_seen) > SESSION_IDLE_HOURS * 3600:
        session.clear()
        flash('Session expired. Please login again.', 'error')
        return redirect(url_for('login'))
    session['last_seen'] = now
    if request.method == 'POST' and not can_write():
        abort(403)
    return None


@app.route('/login', methods=['GET', 'POST'])
def login():
    form = LoginForm()
    next_url = request.values.get('next', '')
    if request.method == 'POST':
        if not form.validate_on_submit():
            flash('Please enter login and password.', 'error')
            return render_template('login.html', form=form, next_url=next_url)
        username = form.login.data.strip().lower()
        password = form.password.data
        client_ip = get_client_ip()
        blocked, wait_minutes = is_login_blocked('admin_login', username, client_ip)
        if blocked:
            flash(f'Too many failed login attempts. Try again in about {wait_minutes} minute(s).', 'error')
            return render_template('login.html', form=form, next_url=next_url)

        admin = get_admin(username)
        if admin and admin.get('is_active') and check_password_hash(admin['password_hash'], password):
            clear_failed_login('admin_login', username, client_ip)
            update_login_info(admin['id'], client_ip)
            session.clear()
            session['admin_id'] = admin['id']
            session['admin_login'] = admin['login']
            session['role'] = admin['role']
            session['last_seen'] = datetime.now().timestamp()
            logging.info("Admin login: %s from %s", admin['login'], client_ip)
            if is_safe_next(next_url):
                return redirect(next_url)
            return redirect(url_for('dashboard'))
        register_failed_login('admin_login', username, client_ip)
        logging.info("Failed admin login for %s from %s", username, client_ip)
        flash('Invalid credentials.', 'error')
    return render_template('login.html', form=form, next_url=next_url)


@app.route('/logout')
def logout():
    session.clear()
    return redirect(url_for('login'))


# ==================== DASHBOARD ====================

def dashboard_filter_values(args):
    track = (args.get('track') or '').strip()
    date_from = parse_iso_date(args.get('date_from'))
    date_to = parse_iso_date(args.get('date_to'))
    return {
        'academic_year': exam_import.normalize_academic_year(args.get('academic_year')),
        'exam_id': max(0, safe_int(args.get('exam_id'), 0)),
        'subject_id': max(0, safe_int(args.get('subject_id'), 0)),
        'class_code': (args.get('class_code') or '').strip(),
        'track': track if track in TRACK_OPTIONS else '',
        'date_from': date_from.isoformat() if date_from else '',
        'date_to': date_to.isoformat() if date_to else '',
    }


def build_result_filters(filters):
    clauses = []
    params = []
    if filters.get('academic_year'):
        clauses.append('e.academic_year = ?')
        params.append(filters['academic_year'])
    if filters.get('term'):
        clauses.append('e.term = ?')
        params.append(filters['term'])
    if filters.get('exam_id'):
        clauses.append('r.exam_id = ?')
        params.append(filters['exam_id'])
    if filters.get('subject_id'):
        clauses.append('r.subject_id = ?')
        params.append(filters['subject_id'])
    if filters.get('class_code'):
        clauses.append('p.class_code = ?')
        params.append(filters['class_code'])
    if filters.get('track'):
        clauses.append('p.track = ?')
        params.append(filters['track'])
    if filters.get('date_from'):
        clauses.append('e.exam_date >= ?')
        params.append(filters['date_from'])
    if filters.get('date_to'):
        clauses.append('e.exam_date <= ?')
        params.append(filters['date_to'])
    where = ('WHERE ' + ' AND '.join(clauses)) if clauses else ''
    return where, params


def load_result_rows(filters):
    where, params = build_result_filters(filters)
    return fetch_all(
        f'''SELECT r.pupil_id, r.subject_id, r.exam_id, r.score,
                   p.surname, p.name, p.class_code, p.track, p.student_login,
                   s.code AS subject_code, s.name AS subject_name,
                   e.exam_name, e.exam_date, e.term, e.academic_year
            FROM results r
            JOIN pupils p ON p.id = r.pupil_id
            JOIN subjects s ON s.id = r.subject_id
            JOIN exams e ON e.id = r.exam_id
            {where}
            ORDER BY e.exam_date NULLS LAST, e.id, p.class_code, p.surname, p.name, s.name''',
        params,
    )


def load_entity_counts():
    row = fetch_one(
        '''SELECT (SELECT COUNT(*) FROM pupils) AS pupils,
                  (SELECT COUNT(*) FROM classes) AS classes,
                  (SELECT COUNT(*) FROM exams) AS exams,
                  (SELECT COUNT(*) FROM subjects) AS subjects'''
    )
    return row or {'pupils': 0, 'classes': 0, 'exams': 0, 'subjects': 0}


def dashboard_csv_rows(rows):
    out = [['Academic year', 'Term', 'Exam', 'Exam date', 'Class', 'Track', 'Login',
            'Surname', 'Name', 'Subject code', 'Subject', 'Score']]
    for r in rows:
        out.append([
            r['academic_year'],
            '' if r.get('term') is None else r['term'],
            r['exam_name'],
            r.get('exam_date') or '',
            r['class_code'],
            r['track'],
            r['student_login'],
            r['surname'],
            r['name'],
            r['subject_code'],
            r['subject_name'],
            fmt1(r['score']),
        ])
    return out


@app.route('/')
def dashboard():
    if not require_admin():
        return login_redirect()
    filters = dashboard_filter_values(request.args)
    try:
        rows = load_result_rows(filters)
        if request.args.get('export') == '1':
            stamp = datetime.now().strftime('%Y%m%d_%H%M')
            return csv_response(dashboard_csv_rows(rows), f'results_{stamp}.csv')
        counts = load_entity_counts()
        exams = fetch_all('SELECT id, academic_year, term, exam_name, exam_date FROM exams ORDER BY exam_date DESC NULLS LAST, id DESC')
        subjects = fetch_all('SELECT id, code, name FROM subjects ORDER BY name')
        years = list_academic_years()
        class_codes = list_class_codes()
    except psycopg2.Error as exc:
        logging.exception("[DASHBOARD] %s", exc)
        flash('Database error.', 'error')
        rows, counts, exams, subjects, years, class_codes = [], {}, [], [], [], []
    summary = exam_stats.dashboard_summary(rows)
    return render_template(
        'dashboard.html',
        filters=filters,
        summary=summary,
        counts=counts,
        exams=exams,
        subjects=subjects,
        years=years,
        class_codes=class_codes,
        tracks=TRACK_OPTIONS,
        pass_mark=PASS_THRESHOLD,
        good_mark=GOOD_THRESHOLD,
        excellent_mark=EXCELLENT_THRESHOLD,
    )


# ==================== CLASS REPORT ====================

def load_class_report_data(academic_year, class_code, track):
    track_clause = ' AND p.track = ?' if track else ''
    track_params = [track] if track else []
    exams = fetch_all(
        'SELECT id, exam_name, exam_date, term FROM exams WHERE academic_year = ?',
        (academic_year,),
    )
    subjects = fetch_all('SELECT id, code, name FROM subjects ORDER BY name')
    score_rows = fetch_all(
        f'''SELECT r.exam_id, r.subject_id, r.score
            FROM results r
            JOIN pupils p ON p.id = r.pupil_id
            JOIN exams e ON e.id = r.exam_id
            WHERE e.academic_year = ? AND p.class_code = ?{track_clause}''',
        [academic_year, class_code] + track_params,
    )
    pupil_count = fetch_value(
        f'SELECT COUNT(*) FROM pupils p WHERE p.class_code = ?{track_clause}',
        [class_code] + track_params,
    )
    return exams, subjects, score_rows, int(pupil_count or 0)


@app.route('/class-report')
def class_report():
    if not require_admin():
        return login_redirect()
    try:
        years = list_academic_years()
        class_codes = list_class_codes()
    except psycopg2.Error as exc:
        flash_db_error('CLASS_REPORT', exc)
        years, class_codes = [], []
    academic_year = exam_import.normalize_academic_year(request.args.get('academic_year')) or (years[0] if years else '')
    class_code = (request.args.get('class_code') or '').strip() or (class_codes[0] if class_codes else '')
    track = (request.args.get('track') or '').strip()
    if track.lower() == 'all' or track not in TRACK_OPTIONS:
        track = ''

    report = None
    pupil_count = 0
    if academic_year and class_code:
        try:
            exams, subjects, score_rows, pupil_count = load_class_report_data(academic_year, class_code, track)
        except psycopg2.Error as exc:
            flash_db_error('CLASS_REPORT', exc)
            exams, subjects, score_rows = [], [], []
        report = exam_stats.build_class_report(exams, subjects, score_rows, PASS_THRESHOLD)
        if request.args.get('export') == '1':
            rows = exam_stats.class_report_csv_rows(report, class_code, academic_year, track)
            safe_code = re.sub(r'[^A-Za-z0-9_-]+', '_', class_code)
            return csv_response(rows, f'class_report_{safe_code}_{academic_year}.csv')
    return render_template(
        'class_report.html',
        years=years,
        class_codes=class_codes,
        tracks=TRACK_OPTIONS,
        academic_year=academic_year,
        class_code=class_code,
        track=track,
        report=report,
        pupil_count=pupil_count,
        pass_mark=PASS_THRESHOLD,
    )


# ==================== ANALYSIS REPORTS ====================

REPORT_EXPORTS = ('subject', 'pupils', 'classes', 'raw')


def parse_threshold(value):
    text = (value or '').strip().replace(',', '.')
    if not re.match(r'^[0-9]+(?:\.[0-9]+)?$', text):
        return None
    number = float(text)
    return number if 0 <= number <= 40 else None


def report_filter_values(args):
    filters = dashboard_filter_values(args)
    term = safe_int(args.get('term'), 0)
    filters['term'] = term if 1 <= term <= 4 else 0
    return filters


@app.route('/reports')
def reports():
    if not require_admin():
        return login_redirect()
    filters = report_filter_values(request.args)
    pass_mark, good_mark, excellent_mark = exam_stats.clamp_thresholds(
        parse_threshold(request.args.get('pass')),
        parse_threshold(request.args.get('good')),
        parse_threshold(request.args.get('excellent')),
    )
    export = (request.args.get('export') or '').strip()
    try:
        rows = load_result_rows(filters)
        if export in REPORT_EXPORTS:
            stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
            if export == 'raw':
                return csv_response(dashboard_csv_rows(rows), f'raw_results_{stamp}.csv')
            report = exam_stats.analysis_report(rows, pass_mark)
            names = {'subject': 'subject_summary', 'pupils': 'pupil_summary', 'classes': 'class_summary'}
            return csv_response(exam_stats.analysis_csv_rows(report, export), f'{names[export]}_{stamp}.csv')
        exam_where, exam_params = '', []
        if filters['academic_year']:
            exam_where, exam_params = 'WHERE academic_year = ?', [filters['academic_year']]
        exams = fetch_all(
            f'''SELECT id, academic_year, term, exam_name, exam_date FROM exams {exam_where}
                ORDER BY exam_date DESC NULLS LAST, id DESC''',
            exam_params,
        )
        subjects = fetch_all('SELECT id, code, name FROM subjects ORDER BY name')
        years = list_academic_years()
        class_codes = list_class_codes()
    except psycopg2.Error as exc:
        flash_db_error('REPORTS', exc)
        rows, exams, subjects, years, class_codes = [], [], [], [], []
    report = exam_stats.analysis_report(rows, pass_mark)
    return render_template(
        'reports.html',
        filters=filters,
        report=report,
        exams=exams,
        subjects=subjects,
        years=years,
        class_codes=class_codes,
        tracks=TRACK_OPTIONS,
        pass_mark=pass_mark,
        good_mark=good_mark,
        excellent_mark=excellent_mark,
    )


# ==================== CLASS PUPILS MATRIX ====================

@app.route('/class-pupils')
def class_pupils():
    if not require_admin():
        return login_redirect()
    term_mode = (request.args.get('term_mode') or 'all').strip().lower()
    if term_mode not in ('all', 'one'):
        term_mode = 'all'
    term_one = safe_int(request.args.get('term'), 0)
    sort = (request.args.get('sort') or 'surname').strip()
    if sort not in exam_stats.TERM_MATRIX_SORTS:
        sort = 'surname'
    direction = 'desc' if (request.args.get('dir') or '').strip().lower() == 'desc' else 'asc'

    matrix = None
    message = None
    try:
        years = list_academic_years()
        class_codes = list_class_codes()
        academic_year = exam_import.normalize_academic_year(request.args.get('academic_year')) or (years[0] if years else '')
        class_code = (request.args.get('class_code') or '').strip() or (class_codes[0] if class_codes else '')
        if not academic_year or not class_code:
            message = 'Missing class or academic year. Import pupils and exams first.'
        else:
            term_exams = exam_stats.representative_term_exams(fetch_all(
                'SELECT id, term, exam_name, exam_date FROM exams WHERE academic_year = ? AND term IS NOT NULL',
                (academic_year,),
            ))
            pupils = fetch_all(
                '''SELECT id, surname, name, middle_name, class_code, track, student_login
                   FROM pupils WHERE class_code = ? ORDER BY surname, name, middle_name, id''',
                (class_code,),
            )
            if not term_exams:
                message = f'No exams with a term found for academic year {academic_year}.'
            elif not pupils:
                message = f'No pupils found for class {class_code}.'
            else:
                exam_ids = [int(e['id']) for e in term_exams.values()]
                score_rows = fetch_all(
                    '''SELECT r.pupil_id, r.subject_id, r.exam_id, r.score
                       FROM results r
                       WHERE r.exam_id = ANY(?) AND r.pupil_id = ANY(?)''',
                    (exam_ids, [int(p['id']) for p in pupils]),
                )
                subjects = fetch_all('SELECT id, code, name, max_points FROM subjects ORDER BY id')
                matrix = exam_stats.build_term_matrix(term_exams, pupils, subjects, score_rows,
                                                      term_mode, term_one, sort, direction)
                if not matrix['subjects']:
                    message = f'No results found for {class_code} in {academic_year}.'
                    matrix = None
    except psycopg2.Error as exc:
        flash_db_error('CLASS_PUPILS', exc)
        years, class_codes, academic_year, class_code = [], [], '', ''
    return render_template(
        'class_pupils.html',
        years=years,
        class_codes=class_codes,
        academic_year=academic_year,
        class_code=class_code,
        term_mode=term_mode,
        sort=sort,
        direction=direction,
        matrix=matrix,
        message=message,
    )


# ==================== CLASSES ====================

def parse_class_form(form):
    """Return (values, error) for the class create/update form."""
    code = normalize_class_code(form.get('class_code'))
    if not CLASS_CODE_RE.match(code):
        return None, 'Invalid class code (A-Z, 0-9, dot, dash, underscore; max 20 chars).'
    grade = safe_int(form.get('grade'), 0)
    if not 1 <= grade <= 12:
        grade = derive_grade(code)
    if grade is None:
        return None, 'Grade must be 1..12 (or start the class code with the grade).'
    section = re.sub(r'\s+', '', form.get('section') or '').upper()
    if not SECTION_RE.match(section):
        section = derive_section(code)
    return {
        'class_code': code,
        'grade': grade,
        'section': section,
        'is_active': (form.get('is_active') or '1') == '1',
    }, None


def run_class_action(action, form):
    """Apply one POST action on the classes page; returns the success message."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        if action == 'create':
            values, error = parse_class_form(form)
            if error:
                raise ValueError(error)
            db_execute(
                c,
                '''INSERT INTO classes (class_code, grade, section, is_active)
                   VALUES (?, ?, ?, ?) RETURNING id''',
                (values['class_code'], values['grade'], values['section'], values['is_active']),
            )
            class_id = c.fetchone()[0]
            message = f"Class {values['class_code']} created."
            if form.get('link_existing') == '1':
                db_execute(
                    c,
                    'UPDATE pupils SET class_id = ?, updated_at = CURRENT_TIMESTAMP WHERE class_code = ?',
                    (class_id, values['class_code']),
                )
                message += f' Linked pupils: {c.rowcount}.'
            return message
        if action == 'update':
            class_id = safe_int(form.get('id'), 0)
            values, error = parse_class_form(form)
            if error:
                raise ValueError(error)
            db_execute(c, 'SELECT class_code FROM classes WHERE id = ?', (class_id,))
            row = c.fetchone()
            if not row:
                raise ValueError('Class not found.')
            old_code = row['class_code']
            db_execute(
                c,
                '''UPDATE classes
                   SET class_code = ?, grade = ?, section = ?, is_active = ?, updated_at = CURRENT_TIMESTAMP
                   WHERE id = ?''',
                (values['class_code'], values['grade'], values['section'], values['is_active'], class_id),
            )
            message = f"Class {values['class_code']} updated."
            if form.get('propagate_code') == '1' and old_code != values['class_code']:
                db_execute(
                    c,
                    'UPDATE pupils SET class_code = ?, updated_at = CURRENT_TIMESTAMP WHERE class_code = ?',
                    (values['class_code'], old_code),
                )
                message += f' Renamed on pupils: {c.rowcount}.'
            if form.get('relink_by_code') == '1':
                db_execute(
                    c,
                    'UPDATE pupils SET class_id = ?, updated_at = CURRENT_TIMESTAMP WHERE class_code = ?',
                    (class_id, values['class_code']),
                )
                message += f' Relinked pupils: {c.rowcount}.'
            return message
        if action == 'toggle_active':
            class_id = safe_int(form.get('id'), 0)
            db_execute(
                c,
                'UPDATE classes SET is_active = NOT is_active, updated_at = CURRENT_TIMESTAMP WHERE id = ?',
                (class_id,),
            )
            if c.rowcount == 0:
                raise ValueError('Class not found.')
            return 'Class status updated.'
        if action == 'sync_links':
            db_execute(
                c,
                '''UPDATE pupils p
                   SET class_id = c.id, updated_at = CURRENT_TIMESTAMP
                   FROM classes c
                   WHERE p.class_code = c.class_code AND p.class_id IS DISTINCT FROM c.id''',
            )
            return f'Pupil links synced: {c.rowcount}.'
        if action == 'delete':
            class_id = safe_int(form.get('id'), 0)
            db_execute(c, 'DELETE FROM classes WHERE id = ?', (class_id,))
            if c.rowcount == 0:
                raise ValueError('Class not found.')
            return 'Class deleted. Pupils were unlinked.'
    raise ValueError('Unknown action.')


@app.route('/classes', methods=['GET', 'POST'])
def classes_page():
    if not require_admin():
        return login_redirect()
    q = (request.values.get('q') or '').strip()
    active = (request.values.get('active') or 'all').strip()
    if active not in ('all', '1', '0'):
        active = 'all'
    page = safe_int(request.values.get('page'), 1)
    back = url_for('classes_page', **clean_params(q=q, active='' if active == 'all' else active, page=page))

    if request.method == 'POST':
        action = (request.form.get('action') or '').strip()
        try:
            flash(run_class_action(action, request.form), 'success')
        except ValueError as exc:
            flash(str(exc), 'error')
        except psycopg2.IntegrityError as exc:
            flash_db_error('CLASSES', exc, 'Constraint error (duplicate class code?).')
        except psycopg2.Error as exc:
            flash_db_error('CLASSES', exc)
        return redirect(back)

    clauses = []
    params = []
    if q:
        clauses.append('c.class_code ILIKE ?')
        params.append(f'%{q}%')
    if active == '1':
        clauses.append('c.is_active')
    elif active == '0':
        clauses.append('NOT c.is_active')
    where = ('WHERE ' + ' AND '.join(clauses)) if clauses else ''
    try:
        total = int(fetch_value(f'SELECT COUNT(*) FROM classes c {where}', params))
        pager = paginate(total, page, 20)
        rows = fetch_all(
            f'''SELECT c.id, c.class_code, c.grade, c.section, c.is_active, c.updated_at,
                       (SELECT COUNT(*) FROM pupils p WHERE p.class_id = c.id) AS linked_count,
                       (SELECT COUNT(*) FROM pupils p WHERE p.class_code = c.class_code) AS code_count
                FROM classes c {where}
                ORDER BY c.grade, c.class_code
                LIMIT ? OFFSET ?''',
            params + [pager['per_page'], pager['offset']],
        )
        stats = fetch_one(
            '''SELECT (SELECT COUNT(*) FROM classes) AS total,
                      (SELECT COUNT(*) FROM classes WHERE is_active) AS active,
                      (SELECT COUNT(*) FROM pupils WHERE class_id IS NOT NULL) AS linked,
                      (SELECT COUNT(*) FROM pupils p JOIN classes c ON c.class_code = p.class_code
                        WHERE p.class_id IS DISTINCT FROM c.id) AS linkable'''
        )
    except psycopg2.Error as exc:
        flash_db_error('CLASSES', exc)
        rows, stats, pager = [], {}, paginate(0, 1, 20)
    return render_template(
        'classes.html',
        rows=rows,
        stats=stats,
        pager=pager,
        q=q,
        active=active,
        format_timestamp=format_timestamp,
    )


# ==================== CLASS GROUPS ====================

def parse_group(value):
    group = safe_int(value, 0)
    if group not in (1, 2):
        raise ValueError('Group must be 1 or 2.')
    return group


def run_class_group_action(action, class_code, form):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        if action == 'bulk_class':
            if form.get('confirm_bulk') != '1':
                raise ValueError('Confirm the whole-class change first.')
            group = parse_group(form.get('group'))
            db_execute(
                c,
                'UPDATE pupils SET class_group = ?, updated_at = CURRENT_TIMESTAMP WHERE class_code = ?',
                (group, class_code),
            )
            return f'Group {group} set for {c.rowcount} pupil(s) in {class_code}.'
        if action == 'bulk_selected':
            if form.get('confirm_selected') != '1':
                raise ValueError('Confirm the selected-pupils change first.')
            group = parse_group(form.get('group'))
            ids = sorted({safe_int(v, 0) for v in form.getlist('pupil_ids')} - {0})
            if not ids:
                raise ValueError('Select at least one pupil.')
            db_execute(c, 'SELECT COUNT(*) FROM pupils WHERE id = ANY(?) AND class_code = ?', (ids, class_code))
            if int(c.fetchone()[0]) != len(ids):
                raise ValueError('Selected pupils must all belong to the chosen class.')
            db_execute(
                c,
                'UPDATE pupils SET class_group = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ANY(?)',
                (group, ids),
            )
            return f'Group {group} set for {c.rowcount} selected pupil(s).'
        if action == 'single':
            group = parse_group(form.get('group'))
            pupil_id = safe_int(form.get('pupil_id'), 0)
            db_execute(
                c,
                'UPDATE pupils SET class_group = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ? AND class_code = ?',
                (group, pupil_id, class_code),
            )
            if c.rowcount == 0:
                raise ValueError('Pupil not found in this class.')
            return 'Pupil group updated.'
    raise ValueError('Unknown action.')


@app.route('/class-groups', methods=['GET', 'POST'])
def class_groups():
    if not require_admin():
        return login_redirect()
    class_code = (request.values.get('class_code') or '').strip()
    q = (request.values.get('q') or '').strip()
    track = (request.values.get('track') or '').strip()
    group_filter = safe_int(request.values.get('group'), 0)
    back = url_for('class_groups', **clean_params(class_code=class_code, q=q, track=track, group=group_filter))
    can_edit = role_level(session.get('role')) == 1

    if request.method == 'POST':
        if not can_edit:
            flash('View-only access: only level 1 admins can modify class groups.', 'warning')
            return redirect(back)
        if not class_code:
            flash('Choose a class first.', 'error')
            return redirect(back)
        try:
            flash(run_class_group_action((request.form.get('action') or '').strip(), class_code, request.form), 'success')
        except ValueError as exc:
            flash(str(exc), 'error')
        except psycopg2.Error as exc:
            flash_db_error('CLASS_GROUPS', exc)
        return redirect(back)

    overview = []
    pupils = []
    class_stats = None
    try:
        overview = fetch_all(
            '''SELECT class_code, COUNT(*) AS total,
                      SUM(CASE WHEN class_group = 1 THEN 1 ELSE 0 END) AS g1,
                      SUM(CASE WHEN class_group = 2 THEN 1 ELSE 0 END) AS g2
               FROM pupils GROUP BY class_code ORDER BY class_code'''
        )
        if class_code:
            clauses = ['class_code = ?']
            params = [class_code]
            if q:
                clauses.append('(surname ILIKE ? OR name ILIKE ? OR student_login ILIKE ?)')
                params += [f'%{q}%'] * 3
            if track in TRACK_OPTIONS:
                clauses.append('track = ?')
                params.append(track)
            if group_filter in (1, 2):
                clauses.append('class_group = ?')
                params.append(group_filter)
            pupils = fetch_all(
                f'''SELECT id, surname, name, middle_name, student_login, track, class_group
                    FROM pupils WHERE {' AND '.join(clauses)}
                    ORDER BY surname, name''',
                params,
            )
            class_stats = fetch_one(
                '''SELECT COUNT(*) AS total,
                          SUM(CASE WHEN class_group = 1 THEN 1 ELSE 0 END) AS g1,
                          SUM(CASE WHEN class_group = 2 THEN 1 ELSE 0 END) AS g2,
                          SUM(CASE WHEN track = ? THEN 1 ELSE 0 END) AS aniq,
                          SUM(CASE WHEN track = ? THEN 1 ELSE 0 END) AS tabiiy
                   FROM pupils WHERE class_code = ?''',
                (TRACK_OPTIONS[0], TRACK_OPTIONS[1], class_code),
            )
    except psycopg2.Error as exc:
        flash_db_error('CLASS_GROUPS', exc)
    visible_stats = {
        'total': len(pupils),
        'g1': sum(1 for p in pupils if p['class_group'] == 1),
        'g2': sum(1 for p in pupils if p['class_group'] == 2),
    }
    if not can_edit:
        flash('View-only access: only level 1 admins can modify class groups.', 'warning')
    return render_template(
        'class_groups.html',
        overview=overview,
        pupils=pupils,
        class_code=class_code,
        q=q,
        track=track,
        group_filter=group_filter,
        tracks=TRACK_OPTIONS,
        visible_stats=visible_stats,
        class_stats=class_stats,
        can_edit=can_edit,
    )


# ==================== PUPILS ====================

def parse_pupil_form(form):
    row = {key: (form.get(key) or '') for key in
           ('surname', 'name', 'middle_name', 'class_code', 'track', 'student_login')}
    row['__rownum'] = 1
    clean, errors = exam_import.validate_pupil_rows([row])
    if errors:
        return None, '; '.join(errors[0]['errors'])
    return clean[0], None


def run_pupil_action(action, form):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        if action in ('create', 'update'):
            values, error = parse_pupil_form(form)
            if error:
                raise ValueError(error)
            params = (
                values['surname'], values['name'], values['middle_name'], values['class_code'],
                values['class_code'], values['track'], values['student_login'],
            )
            if action == 'create':
                db_execute(
                    c,
                    '''INSERT INTO pupils (surname, name, middle_name, class_code, class_id, track, student_login)
                       VALUES (?, ?, ?, ?, (SELECT id FROM classes WHERE class_code = UPPER(REPLACE(?, ' ', ''))), ?, ?)''',
                    params,
                )
                return f"Pupil {values['student_login']} created."
            pupil_id = safe_int(form.get('id'), 0)
            db_execute(
                c,
                '''UPDATE pupils
                   SET surname = ?, name = ?, middle_name = ?, class_code = ?,
                       class_id = (SELECT id FROM classes WHERE class_code = UPPER(REPLACE(?, ' ', ''))),
                       track = ?, student_login = ?, updated_at = CURRENT_TIMESTAMP
                   WHERE id = ?''',
                params + (pupil_id,),
            )
            if c.rowcount == 0:
                raise ValueError('Pupil not found.')
            return f"Pupil {values['student_login']} updated."
        if action == 'delete':
            db_execute(c, 'DELETE FROM pupils WHERE id = ?', (safe_int(form.get('id'), 0),))
            if c.rowcount == 0:
                raise ValueError('Pupil not found.')
            return 'Pupil deleted together with their results.'
    raise ValueError('Unknown action.')


@app.route('/pupils', methods=['GET', 'POST'])
def pupils_page():
    if not require_admin():
        return login_redirect()
    q = (request.values.get('q') or '').strip()
    class_code = (request.values.get('class_code') or '').strip()
    track = (request.values.get('track') or '').strip()
    page = safe_int(request.values.get('page'), 1)
    back = url_for('pupils_page', **clean_params(q=q, class_code=class_code, track=track, page=page))

    if request.method == 'POST':
        try:
            flash(run_pupil_action((request.form.get('action') or '').strip(), request.form), 'success')
        except ValueError as exc:
            flash(str(exc), 'error')
        except psycopg2.IntegrityError as exc:
            flash_db_error('PUPILS', exc, 'Duplicate pupil login.')
        except psycopg2.Error as exc:
            flash_db_error('PUPILS', exc)
        return redirect(back)

    clauses = []
    params = []
    if q:
        clauses.append('''(p.student_login ILIKE ? OR p.surname ILIKE ? OR p.name ILIKE ?
                          OR p.middle_name ILIKE ? OR p.class_code ILIKE ?)''')
        params += [f'%{q}%'] * 5
    if class_code:
        clauses.append('p.class_code = ?')
        params.append(class_code)
    if track in TRACK_OPTIONS:
        clauses.append('p.track = ?')
        params.append(track)
    where = ('WHERE ' + ' AND '.join(clauses)) if clauses else ''
    try:
        total = int(fetch_value(f'SELECT COUNT(*) FROM pupils p {where}', params))
        pager = paginate(total, page, 25)
        rows = fetch_all(
            f'''SELECT p.id, p.surname, p.name, p.middle_name, p.class_code, p.class_id, p.track,
                       p.student_login, p.class_group,
                       (SELECT COUNT(*) FROM results r WHERE r.pupil_id = p.id) AS results_count
                FROM pupils p {where}
                ORDER BY p.class_code, p.surname, p.name
                LIMIT ? OFFSET ?''',
            params + [pager['per_page'], pager['offset']],
        )
        class_codes = list_class_codes()
    except psycopg2.Error as exc:
        flash_db_error('PUPILS', exc)
        rows, class_codes, pager = [], [], paginate(0, 1, 25)
    return render_template(
        'pupils.html',
        rows=rows,
        pager=pager,
        q=q,
        class_code=class_code,
        track=track,
        tracks=TRACK_OPTIONS,
        class_codes=class_codes,
    )


# ==================== PUPIL REPORT ====================

def load_pupil_result_rows(pupil_id):
    return fetch_all(
        '''SELECT r.exam_id, r.subject_id, r.score, s.name AS subject_name,
                  e.exam_name, e.exam_date, e.term, e.academic_year
           FROM results r
           JOIN subjects s ON s.id = r.subject_id
           JOIN exams e ON e.id = r.exam_id
           WHERE r.pupil_id = ?''',
        (pupil_id,),
    )


@app.route('/pupil-report')
def pupil_report():
    if not require_admin():
        return login_redirect()
    class_code = (request.args.get('class_code') or '').strip()
    pupil_id = safe_int(request.args.get('pupil_id'), 0)
    class_codes, pupils, pupil, report = [], [], None, None
    try:
        class_codes = list_class_codes()
        if class_code:
            pupils = fetch_all(
                'SELECT id, surname, name, student_login FROM pupils WHERE class_code = ? ORDER BY surname, name',
                (class_code,),
            )
        if pupil_id:
            pupil = fetch_one(
                'SELECT id, surname, name, middle_name, class_code, track, student_login FROM pupils WHERE id = ?',
                (pupil_id,),
            )
            if pupil and class_code and pupil['class_code'] != class_code:
                pupil = None
            if pupil:
                report = exam_stats.build_pupil_report(load_pupil_result_rows(pupil_id))
            else:
                flash('Pupil not found in this class.', 'error')
    except psycopg2.Error as exc:
        flash_db_error('PUPIL_REPORT', exc)
    return render_template(
        'pupil_report.html',
        class_codes=class_codes,
        class_code=class_code,
        pupils=pupils,
        pupil=pupil,
        report=report,
    )


# ==================== SUBJECTS ====================

# table -> (results table, max_points limit, default max_points)
SUBJECT_TABLES = {
    'subjects': ('results', 40, 40),
    'wm_subjects': ('wm_results', 100, 100),
}


def parse_subject_form(form, max_limit, default_max):
    code = re.sub(r'\s+', '', form.get('code') or '').upper()
    name = ' '.join((form.get('name') or '').split())
    if not SUBJECT_CODE_RE.match(code):
        return None, 'Invalid code (A-Z, 0-9, _ - . up to 30 chars).'
    if not name or len(name) > 120:
        return None, 'Name is required (max 120 chars).'
    raw_max = (form.get('max_points') or '').strip()
    max_points = safe_int(raw_max, 0) if raw_max else default_max
    if not 1 <= max_points <= max_limit:
        return None, f'Max points must be 1..{max_limit}.'
    return {'code': code, 'name': name, 'max_points': max_points}, None


def run_subject_action(table, action, form):
    results_table, max_limit, default_max = SUBJECT_TABLES[table]
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        if action in ('create', 'update'):
            values, error = parse_subject_form(form, max_limit, default_max)
            if error:
                raise ValueError(error)
            if action == 'create':
                db_execute(
                    c,
                    f'INSERT INTO {table} (code, name, max_points) VALUES (?, ?, ?)',
                    (values['code'], values['name'], values['max_points']),
                )
                return f"Subject {values['code']} created."
            db_execute(
                c,
                f'UPDATE {table} SET code = ?, name = ?, max_points = ? WHERE id = ?',
                (values['code'], values['name'], values['max_points'], safe_int(form.get('id'), 0)),
            )
            if c.rowcount == 0:
                raise ValueError('Subject not found.')
            return f"Subject {values['code']} updated."
        if action == 'delete':
            subject_id = safe_int(form.get('id'), 0)
            db_execute(c, f'SELECT COUNT(*) FROM {results_table} WHERE subject_id = ?', (subject_id,))
            if int(c.fetchone()[0]):
                raise ValueError('Unable to delete subject: results reference it.')
            db_execute(c, f'DELETE FROM {table} WHERE id = ?', (subject_id,))
            if c.rowcount == 0:
                raise ValueError('Subject not found.')
            return 'Subject deleted.'
    raise ValueError('Unknown action.')


def subject_catalog_page(table, endpoint, title):
    q = (request.values.get('q') or '').strip()
    page = safe_int(request.values.get('page'), 1)
    back = url_for(endpoint, **clean_params(q=q, page=page))
    results_table, max_limit, default_max = SUBJECT_TABLES[table]
    if request.method == 'POST':
        try:
            flash(run_subject_action(table, (request.form.get('action') or '').strip(), request.form), 'success')
        except ValueError as exc:
            flash(str(exc), 'error')
        except psycopg2.IntegrityError as exc:
            flash_db_error(table.upper(), exc, 'Duplicate subject code.')
        except psycopg2.Error as exc:
            flash_db_error(table.upper(), exc)
        return redirect(back)

    where = ''
    params = []
    if q:
        where = 'WHERE s.code ILIKE ? OR s.name ILIKE ?'
        params = [f'%{q}%', f'%{q}%']
    try:
        total = int(fetch_value(f'SELECT COUNT(*) FROM {table} s {where}', params))
        pager = paginate(total, page, 25)
        rows = fetch_all(
            f'''SELECT s.id, s.code, s.name, s.max_points,
                       (SELECT COUNT(*) FROM {results_table} r WHERE r.subject_id = s.id) AS results_count
                FROM {table} s {where}
                ORDER BY s.name, s.code
                LIMIT ? OFFSET ?''',
            params + [pager['per_page'], pager['offset']],
        )
    except psycopg2.Error as exc:
        flash_db_error(table.upper(), exc)
        rows, pager = [], paginate(0, 1, 25)
    return render_template(
        'subjects.html',
        title=title,
        endpoint=endpoint,
        rows=rows,
        pager=pager,
        q=q,
        max_limit=max_limit,
        default_max=default_max,
    )


@app.route('/subjects', methods=['GET', 'POST'])
def subjects_page():
    if not require_admin():
        return login_redirect()
    return subject_catalog_page('subjects', 'subjects_page', 'Subjects')


# ==================== EXAMS ====================

EXAM_SORTS = {
    'date_desc': 'e.exam_date DESC NULLS LAST, e.id DESC',
    'date_asc': 'e.exam_date ASC NULLS LAST, e.id ASC',
    'name_asc': 'e.exam_name ASC, e.id ASC',
    'name_desc': 'e.exam_name DESC, e.id DESC',
    'year_desc': 'e.academic_year DESC, e.term ASC NULLS LAST, e.exam_date ASC NULLS LAST, e.id DESC',
    'year_asc': 'e.academic_year ASC, e.term ASC NULLS LAST, e.exam_date ASC NULLS LAST, e.id ASC',
    'id_desc': 'e.id DESC',
    'id_asc': 'e.id ASC',
}


def parse_exam_form(form):
    academic_year = exam_import.normalize_academic_year(form.get('academic_year'))
    if not exam_import.is_valid_academic_year(academic_year):
        return None, 'Academic year must look like 2025-2026 (consecutive years).'
    raw_term = (form.get('term') or '').strip()
    term = None
    if raw_term:
        term = safe_int(raw_term, 0)
        if not 1 <= term <= 6:
            return None, 'Term must be 1..6.'
    exam_name = ' '.join((form.get('exam_name') or '').split())
    if not exam_name or len(exam_name) > 120:
        return None, 'Exam name is required (max 120 chars).'
    raw_date = (form.get('exam_date') or '').strip()
    exam_date = None
    if raw_date:
        exam_date = parse_iso_date(raw_date)
        if exam_date is None:
            return None, 'Exam date must be a valid YYYY-MM-DD date.'
    return {'academic_year': academic_year, 'term': term, 'exam_name': exam_name, 'exam_date': exam_date}, None


def run_exam_action(action, form):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        if action in ('create', 'update'):
            values, error = parse_exam_form(form)
            if error:
                raise ValueError(error)
            params = (values['academic_year'], values['term'], values['exam_name'], values['exam_date'])
            if action == 'create':
                db_execute(
                    c,
                    'INSERT INTO exams (academic_year, term, exam_name, exam_date) VALUES (?, ?, ?, ?)',
                    params,
                )
                return 'Exam created.'
            db_execute(
                c,
                'UPDATE exams SET academic_year = ?, term = ?, exam_name = ?, exam_date = ? WHERE id = ?',
                params + (safe_int(form.get('id'), 0),),
            )
            if c.rowcount == 0:
                raise ValueError('Exam not found.')
            return 'Exam updated.'
        if action == 'delete':
            exam_id = safe_int(form.get('id'), 0)
            db_execute(c, 'SELECT COUNT(*) FROM results WHERE exam_id = ?', (exam_id,))
            if int(c.fetchone()[0]):
                raise ValueError('Unable to delete exam: results reference it.')
            db_execute(c, 'DELETE FROM exams WHERE id = ?', (exam_id,))
            if c.rowcount == 0:
                raise ValueError('Exam not found.')
            return 'Exam deleted.'
    raise ValueError('Unknown action.')


@app.route('/exams', methods=['GET', 'POST'])
def exams_page():
    if not require_admin():
        return login_redirect()
    q = (request.values.get('q') or '').strip()
    year = exam_import.normalize_academic_year(request.values.get('year'))
    term = safe_int(request.values.get('term'), 0)
    sort = (request.values.get('sort') or 'date_desc').strip()
    if sort not in EXAM_SORTS:
        sort = 'date_desc'
    page = safe_int(request.values.get('page'), 1)
    back = url_for('exams_page', **clean_params(
        q=q, year=year, term=term, sort='' if sort == 'date_desc' else sort, page=page))

    if request.method == 'POST':
        try:
            flash(run_exam_action((request.form.get('action') or '').strip(), request.form), 'success')
        except ValueError as exc:
            flash(str(exc), 'error')
        except psycopg2.IntegrityError as exc:
            flash_db_error('EXAMS', exc, 'Unable to delete exam: results reference it.')
        except psycopg2.Error as exc:
            flash_db_error('EXAMS', exc)
        return redirect(back)

    clauses = []
    params = []
    if q:
        clauses.append('e.exam_name ILIKE ?')
        params.append(f'%{q}%')
    if year:
        clauses.append('e.academic_year = ?')
        params.append(year)
    if term:
        clauses.append('e.term = ?')
        params.append(term)
    where = ('WHERE ' + ' AND '.join(clauses)) if clauses else ''
    try:
        total = int(fetch_value(f'SELECT COUNT(*) FROM exams e {where}', params))
        pager = paginate(total, page, 20)
        rows = fetch_all(
            f'''SELECT e.id, e.academic_year, e.term, e.exam_name, e.exam_date,
                       (SELECT COUNT(*) FROM results r WHERE r.exam_id = e.id) AS results_count
                FROM exams e {where}
                ORDER BY {EXAM_SORTS[sort]}
                LIMIT ? OFFSET ?''',
            params + [pager['per_page'], pager['offset']],
        )
        years = list_academic_years()
    except psycopg2.Error as exc:
        flash_db_error('EXAMS', exc)
        rows, years, pager = [], [], paginate(0, 1, 20)
    return render_template(
        'exams.html',
        rows=rows,
        pager=pager,
        q=q,
        year=year,
        term=term,
        sort=sort,
        sorts=list(EXAM_SORTS),
        years=years,
    )


# ==================== SPREADSHEET IMPORTS ====================

class ImportBlocked(Exception):
    """Raised when rows reference records that do not exist."""

    def __init__(self, errors):
        super().__init__(f'{len(errors)} row(s) could not be resolved')
        self.errors = errors


def apply_pupil_import(c, rows):
    inserted = updated = 0
    for row in rows:
        db_execute(
            c,
            '''INSERT INTO pupils (surname, name, middle_name, class_code, class_id, track, student_login)
               VALUES (?, ?, ?, ?, (SELECT id FROM classes WHERE class_code = UPPER(REPLACE(?, ' ', ''))), ?, ?)
               ON CONFLICT (student_login) DO UPDATE
               SET surname = EXCLUDED.surname, name = EXCLUDED.name, middle_name = EXCLUDED.middle_name,
                   class_code = EXCLUDED.class_code, class_id = EXCLUDED.class_id, track = EXCLUDED.track,
                   updated_at = CURRENT_TIMESTAMP
               RETURNING (xmax = 0) AS inserted''',
            (row['surname'], row['name'], row['middle_name'], row['class_code'], row['class_code'],
             row['track'], row['student_login']),
        )
        if c.fetchone()[0]:
            inserted += 1
        else:
            updated += 1
    return inserted, updated


def apply_subject_import(c, rows):
    inserted = updated = 0
    for row in rows:
        db_execute(
            c,
            '''INSERT INTO subjects (code, name, max_points) VALUES (?, ?, ?)
               ON CONFLICT (code) DO UPDATE SET name = EXCLUDED.name, max_points = EXCLUDED.max_points
               RETURNING (xmax = 0) AS inserted''',
            (row['code'], row['name'], row['max_points']),
        )
        if c.fetchone()[0]:
            inserted += 1
        else:
            updated += 1
    return inserted, updated


def find_or_create_exam(c, academic_year, term, exam_name, exam_date):
    """Return (exam_id, created)."""
    db_execute(
        c,
        '''SELECT id FROM exams
           WHERE academic_year = ? AND term IS NOT DISTINCT FROM ? AND exam_name = ?
             AND exam_date IS NOT DISTINCT FROM ?
           ORDER BY id LIMIT 1''',
        (academic_year, term, exam_name, exam_date),
    )
    row = c.fetchone()
    if row:
        return row[0], False
    db_execute(
        c,
        'INSERT INTO exams (academic_year, term, exam_name, exam_date) VALUES (?, ?, ?, ?) RETURNING id',
        (academic_year, term, exam_name, exam_date),
    )
    return c.fetchone()[0], True


def apply_result_import(c, rows):
    ids = sorted({r['pupil_id'] for r in rows if r['pupil_id']})
    logins = sorted({r['student_login'] for r in rows if r['student_login']})
    db_execute(
        c,
        'SELECT id, student_login FROM pupils WHERE id = ANY(?) OR student_login = ANY(?)',
        (ids, logins),
    )
    pupil_ids = set()
    pupil_by_login = {}
    for row in c.fetchall():
        pupil_ids.add(row['id'])
        pupil_by_login[row['student_login']] = row['id']
    db_execute(c, 'SELECT id, code, max_points FROM subjects')
    subjects = {row['id']: row for row in c.fetchall()}
    subject_by_code = {row['code']: row for row in subjects.values()}

    errors = []
    resolved = []
    seen = {}
    for row in rows:
        row_errors = []
        pupil_id = row['pupil_id'] if row['pupil_id'] in pupil_ids else pupil_by_login.get(row['student_login'])
        if not pupil_id:
            row_errors.append('pupil not found')
        subject = subjects.get(row['subject_id']) if row['subject_id'] else subject_by_code.get(row['subject_code'])
        if not subject:
            row_errors.append('subject not found')
        elif row['score'] > float(subject['max_points']):
            row_errors.append(f"score exceeds subject max_points ({subject['max_points']})")
        if not row_errors:
            key = (pupil_id, subject['id']) + exam_import.exam_key(row)
            if key in seen:
                row_errors.append(f'duplicate result for pupil {pupil_id} (first seen at row {seen[key]})')
            else:
                seen[key] = row['__row']
        if row_errors:
            errors.append({'row': row['__row'], 'errors': row_errors, 'data': row})
            continue
        resolved.append((row, pupil_id, subject['id']))
    if errors:
        raise ImportBlocked(errors)

    exam_ids = {}
    inserted = updated = created_exams = 0
    for row, pupil_id, subject_id in resolved:
        key = exam_import.exam_key(row)
        if key not in exam_ids:
            exam_ids[key], created = find_or_create_exam(c, *key)
            created_exams += int(created)
        db_execute(
            c,
            '''INSERT INTO results (pupil_id, subject_id, exam_id, score) VALUES (?, ?, ?, ?)
               ON CONFLICT (pupil_id, subject_id, exam_id) DO UPDATE SET score = EXCLUDED.score
               RETURNING (xmax = 0) AS inserted''',
            (pupil_id, subject_id, exam_ids[key], row['score']),
        )
        if c.fetchone()[0]:
            inserted += 1
        else:
            updated += 1
    if created_exams:
        logging.info("[IMPORT_RESULTS] created %s exam(s)", created_exams)
    return inserted, updated


IMPORT_KINDS = {
    'pupils': {
        'title': 'Import pupils',
        'validate': exam_import.validate_pupil_rows,
        'apply': apply_pupil_import,
        'columns': 'surname, name, middle_name, class_code, track, student_login',
    },
    'subjects': {
        'title': 'Import subjects',
        'validate': exam_import.validate_subject_rows,
        'apply': apply_subject_import,
        'columns': 'code, name, max_points',
    },
    'results': {
        'title': 'Import results',
        'validate': exam_import.validate_result_rows,
        'apply': apply_result_import,
        'columns': 'pupil_id or student_login, subject_id or subject_code, academic_year, term, exam_name, exam_date, score',
    },
}


def run_import(kind, dry_run):
    """Validate the stored file and upsert it in one transaction."""
    config = IMPORT_KINDS[kind]
    ctx = load_import_context(kind)
    if not ctx:
        flash('No file loaded. Upload and preview the file first.', 'error')
        return
    clean, errors = config['validate'](ctx['rows'])
    if errors:
        flash(f'Import blocked: {len(errors)} invalid row(s). Fix the file and preview again.', 'error')
        return
    if not clean:
        flash('Nothing to import.', 'warning')
        return
    try:
        with db_connection(commit=not dry_run) as conn:
            inserted, updated = config['apply'](conn.cursor(), clean)
    except ImportBlocked as exc:
        shown = '; '.join(f"row {e['row']}: {', '.join(e['errors'])}" for e in exc.errors[:10])
        flash(f'Import blocked: {shown}', 'error')
        return
    except psycopg2.IntegrityError as exc:
        flash_db_error(f'IMPORT_{kind.upper()}', exc, 'Constraint error during import. Nothing was saved.')
        return
    except psycopg2.Error as exc:
        flash_db_error(f'IMPORT_{kind.upper()}', exc, 'Database error during import. Nothing was saved.')
        return
    if dry_run:
        flash(f'Dry run OK. Would insert {inserted}, update {updated}.', 'success')
        return
    logging.info("[IMPORT_%s] %s inserted=%s updated=%s by %s",
                 kind.upper(), ctx['filename'], inserted, updated, session.get('admin_login'))
    clear_import_context(kind)
    flash(f'Import complete. Inserted {inserted}, updated {updated}.', 'success')


@app.route('/import/<kind>', methods=['GET', 'POST'])
def import_page(kind):
    if not require_admin():
        return login_redirect()
    if kind not in IMPORT_KINDS:
        abort(404)
    config = IMPORT_KINDS[kind]
    if request.method == 'POST':
        action = (request.form.get('action') or '').strip()
        if action == 'preview':
            upload = request.files.get('file')
            if not upload or not upload.filename:
                flash('Choose a CSV or XLSX file.', 'error')
                return redirect(url_for('import_page', kind=kind))
            try:
                headers, rows = exam_import.read_sheet(upload.filename, upload.read())
            except exam_import.ImportFileError as exc:
                flash(str(exc), 'error')
                return redirect(url_for('import_page', kind=kind))
            store_import_context(kind, upload.filename, headers, rows)
            flash(f'File loaded: {len(rows)} row(s). Review the preview below.', 'success')
        elif action in ('import', 'dry_run'):
            run_import(kind, dry_run=(action == 'dry_run'))
        elif action == 'clear':
            clear_import_context(kind)
            flash('Import context cleared.', 'success')
        else:
            flash('Unknown action.', 'error')
        return redirect(url_for('import_page', kind=kind))

    ctx = load_import_context(kind)
    preview = None
    if ctx:
        clean, errors = config['validate'](ctx['rows'])
        preview = {
            'filename': ctx['filename'],
            'headers': ctx['headers'],
            'total': len(ctx['rows']),
            'valid': len(clean),
            'invalid': len(errors),
            'errors': errors[:25],
            'sample': ctx['rows'][:50],
        }
    return render_template('import.html', kind=kind, config=config, preview=preview, kinds=list(IMPORT_KINDS))


# ==================== STUDY YEARS ====================

def parse_study_year_form(form):
    start = parse_iso_date(form.get('start_date'))
    end = parse_iso_date(form.get('end_date'))
    if not start or not end:
        return None, 'Start and end dates must be valid YYYY-MM-DD dates.'
    if (start.month, start.day) != (9, 1) or (end.month, end.day) != (8, 31) or end.year != start.year + 1:
        return None, 'Study year window must be Sep 1 to Aug 31 of consecutive years.'
    return {
        'year_code': f'{start.year}/{end.year}',
        'start_date': start,
        'end_date': end,
        'is_active': (form.get('is_active') or '1') == '1',
    }, None


def run_study_year_action(action, form):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        if action in ('sy_create', 'sy_update'):
            values, error = parse_study_year_form(form)
            if error:
                raise ValueError(error)
            params = (values['year_code'], values['start_date'], values['end_date'], values['is_active'])
            if action == 'sy_create':
                db_execute(
                    c,
                    'INSERT INTO study_year (year_code, start_date, end_date, is_active) VALUES (?, ?, ?, ?)',
                    params,
                )
                return f"Study year {values['year_code']} created."
            db_execute(
                c,
                'UPDATE study_year SET year_code = ?, start_date = ?, end_date = ?, is_active = ? WHERE id = ?',
                params + (safe_int(form.get('study_year_id'), 0),),
            )
            if c.rowcount == 0:
                raise ValueError('Study year not found.')
            return f"Study year {values['year_code']} updated."
        if action == 'sy_toggle':
            db_execute(c, 'UPDATE study_year SET is_active = NOT is_active WHERE id = ?',
                       (safe_int(form.get('study_year_id'), 0),))
            if c.rowcount == 0:
                raise ValueError('Study year not found.')
            return 'Study year status updated.'
        if action == 'sy_delete':
            study_year_id = safe_int(form.get('study_year_id'), 0)
            db_execute(
                c,
                '''SELECT (SELECT COUNT(*) FROM wm_exams WHERE study_year_id = ?)
                        + (SELECT COUNT(*) FROM otm_exams WHERE study_year_id = ?)''',
                (study_year_id, study_year_id),
            )
            if int(c.fetchone()[0]):
                raise ValueError('Unable to delete study year: WM or OTM exams reference it.')
            db_execute(c, 'DELETE FROM study_year WHERE id = ?', (study_year_id,))
            if c.rowcount == 0:
                raise ValueError('Study year not found.')
            return 'Study year deleted.'
    raise ValueError('Unknown action.')


# ==================== OTM SETUP ====================

OTM_SCORE_COLUMNS = [
    f'{key}_{suffix}'
    for key in exam_stats.OTM_SLOT_KEYS
    for suffix in ('correct', 'certificate_percent', 'score', 'certificate_score')
] + ['total_score', 'total_score_withcert']


def load_otm_exams(active_only=False):
    where = 'WHERE x.is_active' if active_only else ''
    rows = fetch_all(
        f'''SELECT x.id, x.study_year_id, sy.year_code, x.otm_kind, x.exam_title, x.exam_date,
                   x.attempt_no, x.is_active,
                   (SELECT COUNT(*) FROM otm_results r WHERE r.otm_exam_id = x.id) AS results_count
            FROM otm_exams x
            JOIN study_year sy ON sy.id = x.study_year_id
            {where}
            ORDER BY x.exam_date DESC, x.id DESC'''
    )
    for row in rows:
        row['label'] = exam_stats.otm_exam_label(row)
    return rows


def load_otm_exam(exam_id):
    row = fetch_one(
        '''SELECT x.id, x.study_year_id, sy.year_code, x.otm_kind, x.exam_title, x.exam_date,
                  x.attempt_no, x.is_active
           FROM otm_exams x JOIN study_year sy ON sy.id = x.study_year_id
           WHERE x.id = ?''',
        (exam_id,),
    )
    if row:
        row['label'] = exam_stats.otm_exam_label(row)
    return row


def load_otm_subjects(active_only=False):
    where = 'WHERE is_active' if active_only else ''
    return fetch_all(f'SELECT id, code, name, is_active, sort_order FROM otm_subjects {where} ORDER BY sort_order, name')


def parse_otm_subject_form(form):
    code = re.sub(r'\s+', '', form.get('code') or '').upper()
    name = ' '.join((form.get('name') or '').split())
    if not SUBJECT_CODE_RE.match(code):
        return None, 'Invalid code (A-Z, 0-9, _ - . up to 30 chars).'
    if not name or len(name) > 120:
        return None, 'Name is required (max 120 chars).'
    raw_order = (form.get('sort_order') or '').strip()
    if raw_order and not re.match(r'^-?[0-9]+$', raw_order):
        return None, 'Sort order must be an integer.'
    return {'code': code, 'name': name, 'sort_order': int(raw_order or 0)}, None


def parse_otm_exam_form(form):
    study_year_id = safe_int(form.get('study_year_id'), 0)
    if study_year_id <= 0:
        return None, 'Choose a study year.'
    kind = (form.get('otm_kind') or '').strip().lower()
    if kind not in exam_stats.OTM_KINDS:
        return None, 'Kind must be mock or repetition.'
    title = ' '.join((form.get('exam_title') or '').split())
    if not title or len(title) > 120:
        return None, 'Exam title is required (max 120 chars).'
    exam_date = parse_iso_date(form.get('exam_date'))
    if exam_date is None:
        return None, 'Exam date must be a valid YYYY-MM-DD date.'
    raw_attempt = (form.get('attempt_no') or '1').strip()
    attempt = safe_int(raw_attempt, 0)
    if not 1 <= attempt <= 20:
        return None, 'Attempt must be 1..20.'
    return {
        'study_year_id': study_year_id,
        'otm_kind': kind,
        'exam_title': title,
        'exam_date': exam_date,
        'attempt_no': attempt,
    }, None


def run_otm_setup_action(action, form):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        if action in ('subj_create', 'subj_update'):
            values, error = parse_otm_subject_form(form)
            if error:
                raise ValueError(error)
            params = (values['code'], values['name'], values['sort_order'])
            if action == 'subj_create':
                db_execute(c, 'INSERT INTO otm_subjects (code, name, sort_order) VALUES (?, ?, ?)', params)
                return f"OTM subject {values['code']} created."
            db_execute(c, 'UPDATE otm_subjects SET code = ?, name = ?, sort_order = ? WHERE id = ?',
                       params + (safe_int(form.get('id'), 0),))
            if c.rowcount == 0:
                raise ValueError('OTM subject not found.')
            return f"OTM subject {values['code']} updated."
        if action == 'subj_toggle':
            db_execute(c, 'UPDATE otm_subjects SET is_active = NOT is_active WHERE id = ?', (safe_int(form.get('id'), 0),))
            if c.rowcount == 0:
                raise ValueError('OTM subject not found.')
            return 'OTM subject status updated.'
        if action == 'subj_delete':
            subject_id = safe_int(form.get('id'), 0)
            db_execute(
                c,
                '''SELECT (SELECT COUNT(*) FROM otm_major WHERE major1_subject_id = ? OR major2_subject_id = ?)
                        + (SELECT COUNT(*) FROM otm_results WHERE major1_subject_id = ? OR major2_subject_id = ?)''',
                (subject_id,) * 4,
            )
            if int(c.fetchone()[0]):
                raise ValueError('Unable to delete OTM subject: majors or results reference it.')
            db_execute(c, 'DELETE FROM otm_subjects WHERE id = ?', (subject_id,))
            if c.rowcount == 0:
                raise ValueError('OTM subject not found.')
            return 'OTM subject deleted.'
        if action in ('exam_create', 'exam_update'):
            values, error = parse_otm_exam_form(form)
            if error:
                raise ValueError(error)
            db_execute(c, 'SELECT 1 FROM study_year WHERE id = ?', (values['study_year_id'],))
            if not c.fetchone():
                raise ValueError('Study year not found.')
            params = (values['study_year_id'], values['otm_kind'], values['exam_title'],
                      values['exam_date'], values['attempt_no'])
            if action == 'exam_create':
                db_execute(
                    c,
                    '''INSERT INTO otm_exams (study_year_id, otm_kind, exam_title, exam_date, attempt_no)
                       VALUES (?, ?, ?, ?, ?)''',
                    params,
                )
                return 'OTM exam created.'
            db_execute(
                c,
                '''UPDATE otm_exams
                   SET study_year_id = ?, otm_kind = ?, exam_title = ?, exam_date = ?, attempt_no = ?
                   WHERE id = ?''',
                params + (safe_int(form.get('id'), 0),),
            )
            if c.rowcount == 0:
                raise ValueError('OTM exam not found.')
            return 'OTM exam updated.'
        if action == 'exam_toggle':
            db_execute(c, 'UPDATE otm_exams SET is_active = NOT is_active WHERE id = ?', (safe_int(form.get('id'), 0),))
            if c.rowcount == 0:
                raise ValueError('OTM exam not found.')
            return 'OTM exam status updated.'
        if action == 'exam_delete':
            exam_id = safe_int(form.get('id'), 0)
            db_execute(c, 'SELECT COUNT(*) FROM otm_results WHERE otm_exam_id = ?', (exam_id,))
            if int(c.fetchone()[0]):
                raise ValueError('Unable to delete OTM exam: results reference it.')
            db_execute(c, 'DELETE FROM otm_exams WHERE id = ?', (exam_id,))
            if c.rowcount == 0:
                raise ValueError('OTM exam not found.')
            return 'OTM exam deleted.'
    raise ValueError('Unknown action.')


@app.route('/otm/setup', methods=['GET', 'POST'])
def otm_setup():
    if not require_admin():
        return login_redirect()
    if request.method == 'POST':
        try:
            flash(run_otm_setup_action((request.form.get('action') or '').strip(), request.form), 'success')
        except ValueError as exc:
            flash(str(exc), 'error')
        except psycopg2.IntegrityError as exc:
            flash_db_error('OTM_SETUP', exc, 'Constraint error (duplicate code?).')
        except psycopg2.Error as exc:
            flash_db_error('OTM_SETUP', exc)
        return redirect(url_for('otm_setup'))
    try:
        subjects = load_otm_subjects()
        exams = load_otm_exams()
        study_years = list_study_years()
    except psycopg2.Error as exc:
        flash_db_error('OTM_SETUP', exc)
        subjects, exams, study_years = [], [], []
    return render_template(
        'otm_setup.html',
        subjects=subjects,
        exams=exams,
        study_years=study_years,
        kinds=exam_stats.OTM_KINDS,
    )


# ==================== OTM MAJORS ====================

@app.route('/otm/majors', methods=['GET', 'POST'])
def otm_majors():
    if not require_admin():
        return login_redirect()
    class_code = (request.values.get('class_code') or '').strip()
    back = url_for('otm_majors', **clean_params(class_code=class_code))

    if request.method == 'POST':
        if (request.form.get('action') or 'save') != 'save':
            flash('Unknown action.', 'error')
            return redirect(back)
        if not class_code:
            flash('Choose a class first.', 'error')
            return redirect(back)
        try:
            with db_connection(commit=True) as conn:
                c = conn.cursor()
                db_execute(c, 'SELECT id FROM otm_subjects')
                valid_ids = {row[0] for row in c.fetchall()}
                db_execute(c, 'SELECT id FROM pupils WHERE class_code = ?', (class_code,))
                class_ids = {row[0] for row in c.fetchall()}
                saved = blank = failed = 0
                draft = {}
                for pupil_id in sorted({safe_int(v, 0) for v in request.form.getlist('pupil_ids')} & class_ids):
                    raw1 = request.form.get(f'major1_{pupil_id}', '')
                    raw2 = request.form.get(f'major2_{pupil_id}', '')
                    status, major1, major2, errors = exam_stats.evaluate_major_pair(raw1, raw2, valid_ids)
                    draft[pupil_id] = {'major1': raw1, 'major2': raw2, 'errors': errors}
                    if status == 'blank':
                        blank += 1
                    elif status == 'error':
                        failed += 1
                    else:
                        db_execute(
                            c,
                            '''INSERT INTO otm_major
                               (pupil_id, major1_subject_id, major2_subject_id, is_active, created_by, updated_by)
                               VALUES (?, ?, ?, TRUE, ?, ?)
                               ON CONFLICT (pupil_id) DO UPDATE
                               SET major1_subject_id = EXCLUDED.major1_subject_id,
                                   major2_subject_id = EXCLUDED.major2_subject_id,
                                   is_active = TRUE, updated_by = EXCLUDED.updated_by,
                                   updated_at = CURRENT_TIMESTAMP''',
                            (pupil_id, major1, major2, session.get('admin_id'), session.get('admin_id')),
                        )
                        saved += 1
        except psycopg2.Error as exc:
            flash_db_error('OTM_MAJORS', exc)
            return redirect(back)
        if failed:
            save_draft('otm_majors', (class_code,), draft)
        flash(f'Saved: {saved}. Skipped (blank): {blank}. Rows with errors: {failed}.',
              'warning' if failed else 'success')
        return redirect(back)

    rows, subjects, class_codes = [], [], []
    try:
        class_codes = list_class_codes()
        subjects = load_otm_subjects(active_only=True)
        if class_code:
            rows = fetch_all(
                '''SELECT p.id, p.surname, p.name, p.track, m.major1_subject_id, m.major2_subject_id,
                          m.is_active AS major_active, s1.name AS major1_name, s2.name AS major2_name
                   FROM pupils p
                   LEFT JOIN otm_major m ON m.pupil_id = p.id
                   LEFT JOIN otm_subjects s1 ON s1.id = m.major1_subject_id
                   LEFT JOIN otm_subjects s2 ON s2.id = m.major2_subject_id
                   WHERE p.class_code = ?
                   ORDER BY p.surname, p.name''',
                (class_code,),
            )
    except psycopg2.Error as exc:
        flash_db_error('OTM_MAJORS', exc)
    draft = pop_draft('otm_majors', (class_code,)) or {}
    for row in rows:
        row['pair_code'] = exam_stats.major_pair_code(row.get('major1_name'), row.get('major2_name'))
        posted = draft.get(row['id'])
        row['value1'] = posted['major1'] if posted else (row.get('major1_subject_id') or '')
        row['value2'] = posted['major2'] if posted else (row.get('major2_subject_id') or '')
        row['errors'] = posted['errors'] if posted else []
    return render_template(
        'otm_majors.html',
        class_codes=class_codes,
        class_code=class_code,
        rows=rows,
        subjects=subjects,
        has_draft=bool(draft),
    )


# ==================== OTM RESULTS ====================

def load_otm_scope(exam_id, class_code='', q=''):
    """Pupils of a class (or all) with their majors and their result for one OTM exam."""
    clauses = []
    params = [exam_id]
    if class_code:
        clauses.append('p.class_code = ?')
        params.append(class_code)
    if q:
        clauses.append('(p.surname ILIKE ? OR p.name ILIKE ? OR p.student_login ILIKE ? OR CAST(p.id AS TEXT) = ?)')
        params += [f'%{q}%', f'%{q}%', f'%{q}%', q]
    where = ('WHERE ' + ' AND '.join(clauses)) if clauses else ''
    result_columns = ', '.join(f'r.{col}' for col in OTM_SCORE_COLUMNS)
    rows = fetch_all(
        f'''SELECT p.id AS pupil_id, p.surname, p.name, p.class_code, p.track,
                   m.major1_subject_id AS m1_id, m.major2_subject_id AS m2_id,
                   COALESCE(m.is_active, FALSE) AS major_active,
                   s1.name AS major1_name, s2.name AS major2_name,
                   r.id AS result_id, r.updated_at AS result_updated_at, {result_columns}
            FROM pupils p
            LEFT JOIN otm_major m ON m.pupil_id = p.id
            LEFT JOIN otm_subjects s1 ON s1.id = m.major1_subject_id
            LEFT JOIN otm_subjects s2 ON s2.id = m.major2_subject_id
            LEFT JOIN otm_results r ON r.pupil_id = p.id AND r.otm_exam_id = ?
            {where}
            ORDER BY p.class_code, p.surname, p.name''',
        params,
    )
    for row in rows:
        row['has_majors'] = bool(row['major_active'] and row['m1_id'] and row['m2_id'])
        row['invalid_majors'] = row['has_majors'] and row['m1_id'] == row['m2_id']
        row['pair_code'] = exam_stats.major_pair_code(row.get('major1_name'), row.get('major2_name'))
    return rows


def upsert_otm_result(c, pupil_id, exam, major1_id, major2_id, scores, admin_id):
    columns = ['pupil_id', 'otm_exam_id', 'study_year_id', 'otm_kind', 'exam_title', 'exam_date',
               'attempt_no', 'major1_subject_id', 'major2_subject_id'] + OTM_SCORE_COLUMNS + ['created_by', 'updated_by']
    values = [pupil_id, exam['id'], exam['study_year_id'], exam['otm_kind'], exam['exam_title'],
              exam['exam_date'], exam['attempt_no'], major1_id, major2_id]
    values += [scores[col] for col in OTM_SCORE_COLUMNS]
    values += [admin_id, admin_id]
    updates = ', '.join(f'{col} = EXCLUDED.{col}' for col in columns
                        if col not in ('pupil_id', 'otm_exam_id', 'created_by'))
    db_execute(
        c,
        f'''INSERT INTO otm_results ({', '.join(columns)})
            VALUES ({', '.join('?' for _ in columns)})
            ON CONFLICT (pupil_id, otm_exam_id) DO UPDATE
            SET {updates}, updated_at = CURRENT_TIMESTAMP''',
        values,
    )


def collect_otm_entry(form, pupil_id):
    return {
        key: {
            'correct': form.get(f'{key}_correct_{pupil_id}', ''),
            'cert': form.get(f'{key}_cert_{pupil_id}', ''),
        }
        for key in exam_stats.OTM_SLOT_KEYS
    }


@app.route('/otm/results', methods=['GET', 'POST'])
def otm_results_entry():
    if not require_admin():
        return login_redirect()
    class_code = (request.values.get('class_code') or '').strip()
    exam_id = safe_int(request.values.get('otm_exam_id'), 0)
    q = (request.values.get('q') or '').strip()
    back = url_for('otm_results_entry', **clean_params(class_code=class_code, otm_exam_id=exam_id, q=q))

    if request.method == 'POST':
        if (request.form.get('action') or 'save') != 'save':
            flash('Unknown action.', 'error')
            return redirect(back)
        if not class_code or not exam_id:
            flash('Choose class and OTM exam first.', 'error')
            return redirect(back)
        counts = {'ok': 0, 'blank': 0, 'no_majors': 0, 'invalid_majors': 0, 'error': 0}
        draft = {}
        try:
            exam = load_otm_exam(exam_id)
            if not exam:
                flash('OTM exam not found.', 'error')
                return redirect(back)
            scope = {row['pupil_id']: row for row in load_otm_scope(exam_id, class_code)}
            with db_connection(commit=True) as conn:
                c = conn.cursor()
                for pupil_id in sorted({safe_int(v, 0) for v in request.form.getlist('pupil_ids')}):
                    pupil = scope.get(pupil_id)
                    if not pupil:
                        continue
                    raw = collect_otm_entry(request.form, pupil_id)
                    status, scores, errors = exam_stats.evaluate_otm_entry(
                        raw, pupil['m1_id'], pupil['m2_id'], pupil['major_active'])
                    counts[status] += 1
                    if status == 'error':
                        draft[pupil_id] = {'raw': raw, 'errors': errors}
                    elif status == 'ok':
                        upsert_otm_result(c, pupil_id, exam, pupil['m1_id'], pupil['m2_id'],
                                          scores, session.get('admin_id'))
        except psycopg2.Error as exc:
            flash_db_error('OTM_RESULTS', exc)
            return redirect(back)
        if draft:
            save_draft('otm_results', (class_code, exam_id), draft)
        flash(
            f"Saved: {counts['ok']}. Blank: {counts['blank']}. No majors: {counts['no_majors']}. "
            f"Invalid majors: {counts['invalid_majors']}. Errors: {counts['error']}.",
            'warning' if counts['error'] else 'success',
        )
        return redirect(back)

    exams, class_codes, rows, recent, exam = [], [], [], [], None
    try:
        exams = load_otm_exams(active_only=True)
        class_codes = list_class_codes()
        if exam_id:
            exam = load_otm_exam(exam_id)
        if exam and class_code:
            rows = load_otm_scope(exam_id, class_code, q)
        recent = fetch_all(
            '''SELECT r.otm_exam_id, p.class_code, COUNT(*) AS rows_count, MAX(r.updated_at) AS last_saved
               FROM otm_results r JOIN pupils p ON p.id = r.pupil_id
               GROUP BY r.otm_exam_id, p.class_code
               ORDER BY MAX(r.updated_at) DESC
               LIMIT 15'''
        )
    except psycopg2.Error as exc:
        flash_db_error('OTM_RESULTS', exc)
    labels = {e['id']: e['label'] for e in exams}
    for item in recent:
        item['label'] = labels.get(item['otm_exam_id'], f"#{item['otm_exam_id']}")
    draft = pop_draft('otm_results', (class_code, exam_id)) or {}
    for row in rows:
        posted = draft.get(row['pupil_id'])
        row['errors'] = posted['errors'] if posted else {}
        row['inputs'] = {}
        for key in exam_stats.OTM_SLOT_KEYS:
            if posted:
                row['inputs'][key] = posted['raw'][key]
            elif row['result_id']:
                percent = row.get(f'{key}_certificate_percent')
                row['inputs'][key] = {
                    'correct': row.get(f'{key}_correct'),
                    'cert': '' if percent is None else f'{float(percent):g}',
                }
            else:
                row['inputs'][key] = {'correct': '', 'cert': ''}
    return render_template(
        'otm_results_entry.html',
        exams=exams,
        exam=exam,
        class_codes=class_codes,
        class_code=class_code,
        exam_id=exam_id,
        q=q,
        rows=rows,
        recent=recent,
        slots=exam_stats.OTM_SUBJECT_SLOTS,
        has_draft=bool(draft),
        fmt_timestamp=format_timestamp,
    )


# ==================== OTM IMPORT ====================

def validate_otm_paste_rows(rows, default_exam_id):
    """Cell checks plus pupil, exam and major lookups for every pasted row."""
    checked = [exam_import.validate_paste_row(row, default_exam_id) for row in rows]
    pupil_ids = sorted({r['pupil_id'] for r in checked if r['pupil_id']})
    exam_ids = sorted({r['exam_id'] for r in checked if r['exam_id']})
    pupils = {}
    exams = {}
    if pupil_ids:
        for row in fetch_all(
            '''SELECT p.id, p.surname, p.name, p.class_code,
                      m.major1_subject_id, m.major2_subject_id, COALESCE(m.is_active, FALSE) AS major_active
               FROM pupils p LEFT JOIN otm_major m ON m.pupil_id = p.id
               WHERE p.id = ANY(?)''',
            (pupil_ids,),
        ):
            pupils[row['id']] = row
    if exam_ids:
        for row in fetch_all(
            '''SELECT x.id, x.study_year_id, sy.year_code, x.otm_kind, x.exam_title, x.exam_date, x.attempt_no
               FROM otm_exams x JOIN study_year sy ON sy.id = x.study_year_id
               WHERE x.id = ANY(?)''',
            (exam_ids,),
        ):
            exams[row['id']] = row
    for item in checked:
        pupil = pupils.get(item['pupil_id'])
        item['pupil'] = pupil
        item['exam'] = exams.get(item['exam_id'])
        if item['pupil_id'] and not pupil:
            item['errors'].append('pupil not found')
        if item['exam_id'] and not item['exam']:
            item['errors'].append('exam_id not found in otm_exams')
        if pupil:
            if not pupil['major_active'] or not pupil['major1_subject_id'] or not pupil['major2_subject_id']:
                item['errors'].append('otm_major (active) not assigned for pupil')
            elif pupil['major1_subject_id'] == pupil['major2_subject_id']:
                item['errors'].append('otm_major invalid: major1 and major2 are same')
        if not item['errors']:
            item['scores'] = exam_stats.compute_otm_scores(item['correct'])
    return checked


@app.route('/otm/import', methods=['GET', 'POST'])
def otm_import():
    if not require_admin():
        return login_redirect()
    if request.method == 'POST':
        action = (request.form.get('action') or '').strip()
        if action in ('preview', 'preview_file'):
            default_exam_id = safe_int(request.form.get('default_exam_id'), 0)
            if action == 'preview':
                source = 'paste'
                has_header = request.form.get('has_header') == '1'
                headers, rows, error = exam_import.parse_paste_grid(request.form.get('paste', ''), has_header)
            else:
                upload = request.files.get('file')
                source = upload.filename if upload and upload.filename else ''
                has_header = True
                headers, rows, error = [], [], None
                if not source:
                    error = 'Choose a CSV or XLSX file.'
                else:
                    try:
                        headers, rows = exam_import.otm_rows_from_sheet(
                            *exam_import.read_sheet(source, upload.read()))
                    except exam_import.ImportFileError as exc:
                        error = str(exc)
                    if not error and not rows:
                        error = 'The file has no data rows.'
            if error:
                flash(error, 'error')
                return redirect(url_for('otm_import'))
            missing = exam_import.missing_paste_columns(headers)
            if missing:
                for column in missing:
                    flash(f'Missing required column: {column}', 'error')
                return redirect(url_for('otm_import'))
            store_import_context('otm_paste', source, headers, rows,
                                 meta={'has_header': has_header, 'default_exam_id': default_exam_id})
            flash(f'Parsed {len(rows)} row(s). Review the preview below.', 'success')
        elif action == 'import':
            ctx = load_import_context('otm_paste')
            if not ctx:
                flash('Nothing to import. Paste data or upload a file and preview first.', 'error')
                return redirect(url_for('otm_import'))
            try:
                checked = validate_otm_paste_rows(ctx['rows'], ctx['meta'].get('default_exam_id', 0))
                if any(item['errors'] for item in checked):
                    flash('Import blocked: fix invalid rows first.', 'error')
                    return redirect(url_for('otm_import'))
                with db_connection(commit=True) as conn:
                    c = conn.cursor()
                    for item in checked:
                        pupil = item['pupil']
                        upsert_otm_result(c, item['pupil_id'], item['exam'], pupil['major1_subject_id'],
                                          pupil['major2_subject_id'], item['scores'], session.get('admin_id'))
            except psycopg2.Error as exc:
                flash_db_error('OTM_IMPORT', exc, 'Database error during import. Nothing was saved.')
                return redirect(url_for('otm_import'))
            clear_import_context('otm_paste')
            logging.info("[OTM_IMPORT] %s row(s) by %s", len(checked), session.get('admin_login'))
            flash(f'Imported: {len(checked)} row(s).', 'success')
        elif action == 'clear':
            clear_import_context('otm_paste')
            flash('Import context cleared.', 'success')
        else:
            flash('Unknown action.', 'error')
        return redirect(url_for('otm_import'))

    exams = []
    preview = None
    try:
        exams = load_otm_exams(active_only=True)
        ctx = load_import_context('otm_paste')
        if ctx:
            checked = validate_otm_paste_rows(ctx['rows'], ctx['meta'].get('default_exam_id', 0))
            preview = {
                'rows': checked,
                'total': len(checked),
                'invalid': sum(1 for item in checked if item['errors']),
                'source': ctx['filename'],
                'has_header': ctx['meta'].get('has_header'),
                'default_exam_id': ctx['meta'].get('default_exam_id'),
            }
    except psycopg2.Error as exc:
        flash_db_error('OTM_IMPORT', exc)
    return render_template(
        'otm_import.html',
        exams=exams,
        preview=preview,
        columns=exam_import.OTM_POSITIONAL_COLUMNS,
        slots=exam_import.OTM_PASTE_SLOTS,
    )


# ==================== OTM VIEWS ====================

def otm_scope_request():
    return {
        'exam_id': safe_int(request.args.get('otm_exam_id'), 0),
        'class_code': (request.args.get('class_code') or '').strip(),
        'q': (request.args.get('q') or '').strip(),
    }


@app.route('/otm/view')
def otm_view():
    if not require_admin():
        return login_redirect()
    scope = otm_scope_request()
    missing_only = request.args.get('missing_only') == '1'
    exams, class_codes, ranked, missing, exam = [], [], [], [], None
    try:
        exams = load_otm_exams()
        class_codes = list_class_codes()
        if scope['exam_id']:
            exam = load_otm_exam(scope['exam_id'])
        if exam:
            rows = load_otm_scope(scope['exam_id'], scope['class_code'], scope['q'])
            ranked = exam_stats.rank_otm_rows([r for r in rows if r['result_id']])
            missing = [r for r in rows if not r['result_id']]
    except psycopg2.Error as exc:
        flash_db_error('OTM_VIEW', exc)
    totals = [float(r['total_score']) for r in ranked]
    with_cert = [exam_stats.otm_effective_total(r) for r in ranked]
    summary = {
        'with_results': len(ranked),
        'missing_results': len(missing),
        'missing_majors': sum(1 for r in ranked + missing if not r['has_majors']),
        'invalid_majors': sum(1 for r in ranked + missing if r['invalid_majors']),
        'avg_total': exam_stats.mean(totals),
        'avg_withcert': exam_stats.mean(with_cert),
    }
    return render_template(
        'otm_view.html',
        exams=exams,
        exam=exam,
        class_codes=class_codes,
        scope=scope,
        missing_only=missing_only,
        ranked=[] if missing_only else ranked,
        missing=missing,
        summary=summary,
        slots=exam_stats.OTM_SUBJECT_SLOTS,
        max_total=exam_stats.OTM_MAX_TOTAL,
    )


@app.route('/otm/certificates')
def otm_certificates():
    if not require_admin():
        return login_redirect()
    scope = otm_scope_request()
    only_cert = request.args.get('only_cert') == '1'
    exams, class_codes, rows, exam = [], [], [], None
    try:
        exams = load_otm_exams()
        class_codes = list_class_codes()
        if scope['exam_id']:
            exam = load_otm_exam(scope['exam_id'])
        if exam:
            rows = exam_stats.rank_otm_rows(
                [r for r in load_otm_scope(scope['exam_id'], scope['class_code'], scope['q']) if r['result_id']])
    except psycopg2.Error as exc:
        flash_db_error('OTM_CERTIFICATES', exc)
    for row in rows:
        row['any_cert'] = exam_stats.has_any_cert(row)
        row['cert_total'] = exam_stats.cert_total(row)
        row['cert_count'] = exam_stats.cert_applied_count(row)
    cert_totals = [r['cert_total'] for r in rows if r['cert_total'] is not None]
    summary = {
        'rows': len(rows),
        'with_any_cert': sum(1 for r in rows if r['any_cert']),
        'avg_cert_total': exam_stats.mean(cert_totals),
        'max_cert_total': max(cert_totals) if cert_totals else None,
    }
    if only_cert:
        rows = [r for r in rows if r['any_cert']]
    return render_template(
        'otm_certificates.html',
        exams=exams,
        exam=exam,
        class_codes=class_codes,
        scope=scope,
        only_cert=only_cert,
        rows=rows,
        summary=summary,
        slots=exam_stats.OTM_SUBJECT_SLOTS,
    )


# ==================== WM SUBJECTS ====================

@app.route('/wm/subjects', methods=['GET', 'POST'])
def wm_subjects():
    if not require_admin():
        return login_redirect()
    return subject_catalog_page('wm_subjects', 'wm_subjects', 'WM subjects')


# ==================== WM EXAMS ====================

WM_EXAM_SORTS = {
    'date_desc': 'x.exam_date DESC, x.id DESC',
    'date_asc': 'x.exam_date ASC, x.id ASC',
    'name_asc': 'x.exam_name ASC, x.id ASC',
    'name_desc': 'x.exam_name DESC, x.id DESC',
    'year_desc': 'sy.start_date DESC, x.exam_date ASC, x.id DESC',
    'year_asc': 'sy.start_date ASC, x.exam_date ASC, x.id ASC',
    'cycle_desc': 'x.cycle_no DESC NULLS LAST, x.exam_date DESC, x.id DESC',
    'cycle_asc': 'x.cycle_no ASC NULLS LAST, x.exam_date ASC, x.id ASC',
    'id_desc': 'x.id DESC',
    'id_asc': 'x.id ASC',
}


def parse_wm_exam_form(form):
    study_year_id = safe_int(form.get('study_year_id'), 0)
    if study_year_id <= 0:
        return None, 'Choose a study year.'
    raw_cycle = (form.get('cycle_no') or '').strip()
    cycle_no = None
    if raw_cycle:
        cycle_no = safe_int(raw_cycle, 0)
        if not 1 <= cycle_no <= 60:
            return None, 'Cycle must be 1..60.'
    exam_name = ' '.join((form.get('exam_name') or '').split())
    if not exam_name or len(exam_name) > 120:
        return None, 'Exam name is required (max 120 chars).'
    exam_date = parse_iso_date(form.get('exam_date'))
    if exam_date is None:
        return None, 'Exam date must be a valid YYYY-MM-DD date.'
    return {'study_year_id': study_year_id, 'cycle_no': cycle_no, 'exam_name': exam_name, 'exam_date': exam_date}, None


def run_wm_exam_action(action, form):
    """Returns (message, category)."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        if action in ('create', 'update'):
            values, error = parse_wm_exam_form(form)
            if error:
                raise ValueError(error)
            db_execute(c, 'SELECT start_date, end_date FROM study_year WHERE id = ?', (values['study_year_id'],))
            window = c.fetchone()
            if not window:
                raise ValueError('Study year not found.')
            if not window['start_date'] <= values['exam_date'] <= window['end_date']:
                raise ValueError(
                    f"Exam date must be within the study year window ({window['start_date']} .. {window['end_date']}).")
            exam_id = safe_int(form.get('id'), 0) if action == 'update' else 0
            db_execute(
                c,
                '''SELECT COUNT(*) FROM wm_exams
                   WHERE study_year_id = ? AND exam_date = ? AND LOWER(exam_name) = LOWER(?) AND id <> ?''',
                (values['study_year_id'], values['exam_date'], values['exam_name'], exam_id),
            )
            duplicate = int(c.fetchone()[0]) > 0
            params = (values['study_year_id'], values['cycle_no'], values['exam_name'], values['exam_date'])
            if action == 'create':
                db_execute(
                    c,
                    'INSERT INTO wm_exams (study_year_id, cycle_no, exam_name, exam_date) VALUES (?, ?, ?, ?)',
                    params,
                )
                message = 'WM exam created.'
            else:
                db_execute(
                    c,
                    'UPDATE wm_exams SET study_year_id = ?, cycle_no = ?, exam_name = ?, exam_date = ? WHERE id = ?',
                    params + (exam_id,),
                )
                if c.rowcount == 0:
                    raise ValueError('WM exam not found.')
                message = 'WM exam updated.'
            if duplicate:
                return message + ' Note: an exam with the same study year, date and name already exists.', 'warning'
            return message, 'success'
        if action == 'delete':
            exam_id = safe_int(form.get('id'), 0)
            db_execute(c, 'SELECT COUNT(*) FROM wm_results WHERE exam_id = ?', (exam_id,))
            if int(c.fetchone()[0]):
                raise ValueError('Unable to delete WM exam: results reference it.')
            db_execute(c, 'DELETE FROM wm_exams WHERE id = ?', (exam_id,))
            if c.rowcount == 0:
                raise ValueError('WM exam not found.')
            return 'WM exam deleted.', 'success'
    raise ValueError('Unknown action.')


@app.route('/wm/exams', methods=['GET', 'POST'])
def wm_exams():
    if not require_admin():
        return login_redirect()
    q = (request.values.get('q') or '').strip()
    study_year_id = safe_int(request.values.get('study_year_id'), 0)
    sort = (request.values.get('sort') or 'date_desc').strip()
    if sort not in WM_EXAM_SORTS:
        sort = 'date_desc'
    page = safe_int(request.values.get('page'), 1)
    back = url_for('wm_exams', **clean_params(
        q=q, study_year_id=study_year_id, sort='' if sort == 'date_desc' else sort, page=page))

    if request.method == 'POST':
        action = (request.form.get('action') or '').strip()
        try:
            if action.startswith('sy_'):
                flash(run_study_year_action(action, request.form), 'success')
            else:
                message, category = run_wm_exam_action(action, request.form)
                flash(message, category)
        except ValueError as exc:
            flash(str(exc), 'error')
        except psycopg2.IntegrityError as exc:
            ref = error_reference('WMEX-SAVE')
            logging.error("[WM_EXAMS] %s %s", ref, exc)
            flash(f'Constraint error (duplicate study year?). Reference: {ref}', 'error')
        except psycopg2.Error as exc:
            ref = error_reference('WMEX-SAVE')
            logging.exception("[WM_EXAMS] %s %s", ref, exc)
            flash(f'Database error. Reference: {ref}', 'error')
        return redirect(back)

    clauses = []
    params = []
    if q:
        clauses.append('x.exam_name ILIKE ?')
        params.append(f'%{q}%')
    if study_year_id:
        clauses.append('x.study_year_id = ?')
        params.append(study_year_id)
    where = ('WHERE ' + ' AND '.join(clauses)) if clauses else ''
    try:
        total = int(fetch_value(f'SELECT COUNT(*) FROM wm_exams x {where}', params))
        pager = paginate(total, page, 20)
        rows = fetch_all(
            f'''SELECT x.id, x.study_year_id, sy.year_code AS study_year_code, x.cycle_no, x.exam_name, x.exam_date,
                       (SELECT COUNT(*) FROM wm_results r WHERE r.exam_id = x.id) AS results_count
                FROM wm_exams x JOIN study_year sy ON sy.id = x.study_year_id
                {where}
                ORDER BY {WM_EXAM_SORTS[sort]}
                LIMIT ? OFFSET ?''',
            params + [pager['per_page'], pager['offset']],
        )
        study_years = list_study_years()
    except psycopg2.Error as exc:
        flash_db_error('WM_EXAMS', exc)
        rows, study_years, pager = [], [], paginate(0, 1, 20)
    return render_template(
        'wm_exams.html',
        rows=rows,
        pager=pager,
        q=q,
        study_year_id=study_year_id,
        sort=sort,
        sorts=list(WM_EXAM_SORTS),
        study_years=study_years,
    )


def load_wm_exams():
    rows = fetch_all(
        '''SELECT x.id, x.cycle_no, x.exam_name, x.exam_date, sy.year_code AS study_year_code
           FROM wm_exams x JOIN study_year sy ON sy.id = x.study_year_id
           ORDER BY x.exam_date DESC, x.id DESC'''
    )
    for row in rows:
        row['label'] = exam_stats.wm_exam_label(row)
    return rows


# ==================== WM RESULTS ====================

@app.route('/wm/results', methods=['GET', 'POST'])
def wm_results():
    if not require_admin():
        return login_redirect()
    class_code = (request.values.get('class_code') or '').strip()
    exam_id = safe_int(request.values.get('exam_id'), 0)
    subject_id = safe_int(request.values.get('subject_id'), 0)
    q = (request.values.get('q') or '').strip()
    back = url_for('wm_results', **clean_params(class_code=class_code, exam_id=exam_id, subject_id=subject_id, q=q))

    if request.method == 'POST':
        if (request.form.get('action') or 'save') != 'save':
            flash('Unknown action.', 'error')
            return redirect(back)
        if not class_code or not exam_id or not subject_id:
            flash('Choose class, exam, and subject first.', 'error')
            return redirect(back)
        clear_empty = (request.form.getlist('clear_empty') or ['1'])[-1] == '1'
        try:
            with db_connection() as conn:
                c = conn.cursor()
                db_execute(c, 'SELECT max_points FROM wm_subjects WHERE id = ?', (subject_id,))
                subject = c.fetchone()
                db_execute(c, 'SELECT 1 FROM wm_exams WHERE id = ?', (exam_id,))
                exam_exists = c.fetchone() is not None
                if not subject or not exam_exists:
                    flash('WM exam or subject not found.', 'error')
                    return redirect(back)
                max_points = int(subject['max_points'])
                db_execute(c, 'SELECT id, surname, name FROM pupils WHERE class_code = ?', (class_code,))
                class_pupils = {row['id']: row for row in c.fetchall()}

                to_save = []
                to_clear = []
                errors = []
                for pupil_id in sorted({safe_int(v, 0) for v in request.form.getlist('pupil_ids')}):
                    pupil = class_pupils.get(pupil_id)
                    if not pupil:
                        continue
                    blank, value, error = exam_stats.parse_wm_score(request.form.get(f'score_{pupil_id}'), max_points)
                    if error:
                        errors.append(f"{pupil['surname']} {pupil['name']}: {error}")
                    elif blank:
                        if clear_empty:
                            to_clear.append(pupil_id)
                    else:
                        to_save.append((pupil_id, value))
                if errors:
                    conn.rollback()
                    more = f' (+{len(errors) - 10} more)' if len(errors) > 10 else ''
                    flash('Validation failed: ' + '; '.join(errors[:10]) + more, 'error')
                    return redirect(back)

                for pupil_id, value in to_save:
                    db_execute(
                        c,
                        '''INSERT INTO wm_results (pupil_id, subject_id, exam_id, score) VALUES (?, ?, ?, ?)
                           ON CONFLICT (pupil_id, subject_id, exam_id) DO UPDATE
                           SET score = EXCLUDED.score, updated_at = CURRENT_TIMESTAMP''',
                        (pupil_id, subject_id, exam_id, value),
                    )
                cleared = 0
                if to_clear:
                    db_execute(
                        c,
                        'DELETE FROM wm_results WHERE subject_id = ? AND exam_id = ? AND pupil_id = ANY(?)',
                        (subject_id, exam_id, to_clear),
                    )
                    cleared = c.rowcount
                conn.commit()
        except psycopg2.Error as exc:
            flash_db_error('WM_RESULTS', exc)
            return redirect(back)
        flash(f'Saved scores: {len(to_save)}. Cleared: {cleared}.', 'success')
        return redirect(back)

    class_codes, exams, subjects, rows, subject = [], [], [], [], None
    try:
        class_codes = list_class_codes()
        exams = load_wm_exams()
        subjects = fetch_all('SELECT id, code, name, max_points FROM wm_subjects ORDER BY name')
        subject = next((s for s in subjects if s['id'] == subject_id), None)
        if class_code and exam_id and subject:
            params = [exam_id, subject_id, class_code]
            search = ''
            if q:
                search = ' AND (p.surname ILIKE ? OR p.name ILIKE ? OR p.student_login ILIKE ?)'
                params += [f'%{q}%'] * 3
            rows = fetch_all(
                f'''SELECT p.id, p.surname, p.name, p.student_login, r.score
                    FROM pupils p
                    LEFT JOIN wm_results r ON r.pupil_id = p.id AND r.exam_id = ? AND r.subject_id = ?
                    WHERE p.class_code = ?{search}
                    ORDER BY p.surname, p.name''',
                params,
            )
    except psycopg2.Error as exc:
        flash_db_error('WM_RESULTS', exc)
    return render_template(
        'wm_results.html',
        class_codes=class_codes,
        exams=exams,
        subjects=subjects,
        subject=subject,
        class_code=class_code,
        exam_id=exam_id,
        subject_id=subject_id,
        q=q,
        rows=rows,
    )


# ==================== WM REPORTS ====================

WM_REPORT_SORTS = {
    'score_desc': 'r.score DESC, p.surname ASC, p.name ASC',
    'score_asc': 'r.score ASC, p.surname ASC, p.name ASC',
    'name_asc': 'p.surname ASC, p.name ASC, p.id ASC',
    'name_desc': 'p.surname DESC, p.name DESC, p.id DESC',
    'class_asc': 'p.class_code ASC, p.surname ASC, p.name ASC',
    'class_desc': 'p.class_code DESC, p.surname ASC, p.name ASC',
    'latest': 'r.updated_at DESC, r.id DESC',
}


@app.route('/wm/reports')
def wm_reports():
    if not require_admin():
        return login_redirect()
    exam_id = safe_int(request.args.get('exam_id'), 0)
    subject_id = safe_int(request.args.get('subject_id'), 0)
    class_code = (request.args.get('class_code') or '').strip()
    q = (request.args.get('q') or '').strip()
    sort = (request.args.get('sort') or 'score_desc').strip()
    if sort not in WM_REPORT_SORTS:
        sort = 'score_desc'
    page = safe_int(request.args.get('page'), 1)

    class_codes, exams, subjects, rows, summary = [], [], [], [], None
    pager = paginate(0, 1, 50)
    try:
        class_codes = list_class_codes()
        exams = load_wm_exams()
        subjects = fetch_all('SELECT id, code, name, max_points FROM wm_subjects ORDER BY name')
        if exam_id and subject_id:
            clauses = ['r.exam_id = ?', 'r.subject_id = ?']
            params = [exam_id, subject_id]
            if class_code:
                clauses.append('p.class_code = ?')
                params.append(class_code)
            if q:
                clauses.append('(p.surname ILIKE ? OR p.name ILIKE ? OR p.student_login ILIKE ?)')
                params += [f'%{q}%'] * 3
            where = ' AND '.join(clauses)
            summary = fetch_one(
                f'''SELECT COUNT(*) AS total, AVG(r.score) AS avg, MIN(r.score) AS min, MAX(r.score) AS max
                    FROM wm_results r JOIN pupils p ON p.id = r.pupil_id WHERE {where}''',
                params,
            )
            pager = paginate(int(summary['total'] or 0), page, 50)
            rows = fetch_all(
                f'''SELECT p.id AS pupil_id, p.surname, p.name, p.class_code, p.student_login,
                           r.score, r.updated_at
                    FROM wm_results r JOIN pupils p ON p.id = r.pupil_id
                    WHERE {where}
                    ORDER BY {WM_REPORT_SORTS[sort]}
                    LIMIT ? OFFSET ?''',
                params + [pager['per_page'], pager['offset']],
            )
        elif request.args:
            flash('Choose an exam and a subject.', 'warning')
    except psycopg2.Error as exc:
        flash_db_error('WM_REPORTS', exc)
    return render_template(
        'wm_reports.html',
        class_codes=class_codes,
        exams=exams,
        subjects=subjects,
        exam_id=exam_id,
        subject_id=subject_id,
        class_code=class_code,
        q=q,
        sort=sort,
        sorts=list(WM_REPORT_SORTS),
        rows=rows,
        summary=summary,
        pager=pager,
        fmt_timestamp=format_timestamp,
    )


# ==================== PUBLIC LOOKUPS ====================

def class_exam_rank(pupil_id, class_code, exam_id):
    """(position, class size) of a pupil by average score on one exam."""
    rows = fetch_all(
        '''SELECT r.pupil_id, AVG(r.score) AS avg
           FROM results r JOIN pupils p ON p.id = r.pupil_id
           WHERE p.class_code = ? AND r.exam_id = ?
           GROUP BY r.pupil_id''',
        (class_code, exam_id),
    )
    position = exam_stats.rank_position(rows, pupil_id, lambda r: (-float(r['avg']), int(r['pupil_id'])))
    return position, len(rows)


@app.route('/results')
def public_results():
    login_value = (request.args.get('login') or '').strip().lower()
    pupil, report, rank = None, None, None
    if login_value:
        try:
            pupil = fetch_one(
                'SELECT id, surname, name, class_code, track FROM pupils WHERE student_login = ?',
                (login_value,),
            )
            if not pupil:
                flash('Pupil not found.', 'error')
            else:
                report = exam_stats.build_pupil_report(load_pupil_result_rows(pupil['id']))
                if report['exams']:
                    latest = report['exams'][-1]['exam']
                    position, size = class_exam_rank(pupil['id'], pupil['class_code'], latest['id'])
                    rank = {'exam': latest, 'position': position, 'size': size}
        except psycopg2.Error as exc:
            flash_db_error('PUBLIC_RESULTS', exc, 'Could not load results. Please try again later.')
            pupil, report = None, None
    return render_template('public_results.html', login_value=login_value, pupil=pupil, report=report, rank=rank)


def otm_result_card(result):
    subjects = []
    for key, label, questions, _weight in exam_stats.OTM_SUBJECT_SLOTS:
        if key == 'major1':
            label = result.get('major1_name') or label
        elif key == 'major2':
            label = result.get('major2_name') or label
        subjects.append({
            'label': label,
            'correct': result.get(f'{key}_correct'),
            'questions': questions,
            'score': result.get(f'{key}_score'),
            'max_score': exam_stats.otm_slot_max(key),
            'cert_percent': result.get(f'{key}_certificate_percent'),
            'cert_score': result.get(f'{key}_certificate_score'),
        })
    return {
        'subjects': subjects,
        'total': result.get('total_score'),
        'total_withcert': exam_stats.otm_effective_total(result),
        'cert_total': exam_stats.cert_total(result),
        'cert_count': exam_stats.cert_applied_count(result),
        'color': exam_stats.otm_score_color(exam_stats.otm_effective_total(result)),
    }


@app.route('/otm-result')
def public_otm_result():
    raw_id = (request.args.get('id') or '').strip()
    context = {'raw_id': raw_id, 'pupil': None, 'result': None, 'card': None, 'rank': None, 'error': None}
    if 'id' not in request.args:
        return render_template('public_otm_result.html', **context)
    pupil_id = safe_int(raw_id, 0) if exam_stats.is_uint(raw_id) else 0
    if pupil_id <= 0:
        context['error'] = "O'quvchi ID kiriting."
        return render_template('public_otm_result.html', **context)
    try:
        pupil = fetch_one('SELECT id, surname, name, class_code FROM pupils WHERE id = ?', (pupil_id,))
        if not pupil:
            context['error'] = 'Bunday ID bilan o\'quvchi topilmadi.'
            return render_template('public_otm_result.html', **context)
        context['pupil'] = pupil
        result_columns = ', '.join(f'r.{col}' for col in OTM_SCORE_COLUMNS)
        result = fetch_one(
            f'''SELECT r.otm_exam_id, r.otm_kind, r.exam_title, r.exam_date, r.attempt_no, sy.year_code,
                       s1.name AS major1_name, s2.name AS major2_name, {result_columns}
                FROM otm_results r
                LEFT JOIN study_year sy ON sy.id = r.study_year_id
                LEFT JOIN otm_subjects s1 ON s1.id = r.major1_subject_id
                LEFT JOIN otm_subjects s2 ON s2.id = r.major2_subject_id
                WHERE r.pupil_id = ?
                ORDER BY r.exam_date DESC NULLS LAST, r.id DESC
                LIMIT 1''',
            (pupil_id,),
        )
        if not result:
            context['error'] = 'Bu o\'quvchi uchun OTM natijasi topilmadi.'
            return render_template('public_otm_result.html', **context)
        result['label'] = exam_stats.otm_exam_label(result)
        peers = fetch_all(
            '''SELECT r.pupil_id, r.total_score, r.total_score_withcert
               FROM otm_results r JOIN pupils p ON p.id = r.pupil_id
               WHERE r.otm_exam_id = ? AND p.class_code = ?''',
            (result['otm_exam_id'], pupil['class_code']),
        )
        ranked = exam_stats.rank_otm_rows(peers)
        position = next((i for i, row in enumerate(ranked, start=1) if int(row['pupil_id']) == pupil_id), None)
        context.update(result=result, card=otm_result_card(result), rank={'position': position, 'size': len(ranked)})
    except psycopg2.Error as exc:
        logging.exception("[OTM_PUBLIC] %s", exc)
        context['error'] = 'Sahifani yuklashda xatolik yuz berdi.'
        context['pupil'] = None
    return render_template('public_otm_result.html', **context)


# ==================== MAIN ====================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    debug = os.environ.get('FLASK_DEBUG', '0').strip().lower() in ('1', 'true', 'yes')
    app.run(host='0.0.0.0', port=port, debug=debug)
