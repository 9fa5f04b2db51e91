"""Initial schema for the exam records admin panel.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op


# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create all tables and indexes."""

    # Admin accounts: viewer (read-only), admin, superadmin
    op.execute('''CREATE TABLE IF NOT EXISTS admins (
                    id SERIAL PRIMARY KEY,
                    login VARCHAR(64) UNIQUE NOT NULL,
                    password_hash TEXT NOT NULL,
                    role VARCHAR(16) NOT NULL DEFAULT 'admin' CHECK (role IN ('viewer', 'admin', 'superadmin')),
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    last_login_at TIMESTAMP,
                    last_login_ip VARCHAR(64),
                    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                )''')

    # Failed login tracking for lockout
    op.execute('''CREATE TABLE IF NOT EXISTS login_attempts (
                    id SERIAL PRIMARY KEY,
                    endpoint VARCHAR(32) NOT NULL,
                    username VARCHAR(64) NOT NULL,
                    ip_address VARCHAR(64) NOT NULL,
                    failures INTEGER NOT NULL DEFAULT 0,
                    first_failed_at TIMESTAMP,
                    last_failed_at TIMESTAMP,
                    locked_until TIMESTAMP,
                    UNIQUE (endpoint, username, ip_address)
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS classes (
                    id SERIAL PRIMARY KEY,
                    class_code VARCHAR(20) UNIQUE NOT NULL,
                    grade SMALLINT NOT NULL CHECK (grade BETWEEN 1 AND 12),
                    section VARCHAR(5),
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                )''')

    # Pupils keep the class code text; class_id is a soft link
    op.execute('''CREATE TABLE IF NOT EXISTS pupils (
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
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS subjects (
                    id SERIAL PRIMARY KEY,
                    code VARCHAR(30) UNIQUE NOT NULL,
                    name VARCHAR(120) NOT NULL,
                    max_points SMALLINT NOT NULL DEFAULT 40 CHECK (max_points BETWEEN 1 AND 40)
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS exams (
                    id SERIAL PRIMARY KEY,
                    academic_year VARCHAR(9) NOT NULL,
                    term SMALLINT CHECK (term IS NULL OR term BETWEEN 1 AND 6),
                    exam_name VARCHAR(120) NOT NULL,
                    exam_date DATE
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS results (
                    id SERIAL PRIMARY KEY,
                    pupil_id INTEGER NOT NULL REFERENCES pupils(id) ON DELETE CASCADE,
                    subject_id INTEGER NOT NULL REFERENCES subjects(id) ON DELETE RESTRICT,
                    exam_id INTEGER NOT NULL REFERENCES exams(id) ON DELETE RESTRICT,
                    score NUMERIC(4,1) NOT NULL CHECK (score >= 0 AND score <= 40),
                    UNIQUE (pupil_id, subject_id, exam_id)
                )''')

    # Sep 1 .. Aug 31 windows shared by WM and OTM exams
    op.execute('''CREATE TABLE IF NOT EXISTS study_year (
                    id SERIAL PRIMARY KEY,
                    year_code VARCHAR(9) UNIQUE NOT NULL,
                    start_date DATE NOT NULL,
                    end_date DATE NOT NULL,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS otm_subjects (
                    id SERIAL PRIMARY KEY,
                    code VARCHAR(30) UNIQUE NOT NULL,
                    name VARCHAR(120) NOT NULL,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    sort_order INTEGER NOT NULL DEFAULT 0
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS otm_major (
                    id SERIAL PRIMARY KEY,
                    pupil_id INTEGER UNIQUE NOT NULL REFERENCES pupils(id) ON DELETE CASCADE,
                    major1_subject_id INTEGER NOT NULL REFERENCES otm_subjects(id) ON DELETE RESTRICT,
                    major2_subject_id INTEGER NOT NULL REFERENCES otm_subjects(id) ON DELETE RESTRICT,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    created_by INTEGER,
                    updated_by INTEGER,
                    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS otm_exams (
                    id SERIAL PRIMARY KEY,
                    study_year_id INTEGER NOT NULL REFERENCES study_year(id) ON DELETE RESTRICT,
                    otm_kind VARCHAR(12) NOT NULL CHECK (otm_kind IN ('mock', 'repetition')),
                    exam_title VARCHAR(120) NOT NULL,
                    exam_date DATE NOT NULL,
                    attempt_no SMALLINT NOT NULL DEFAULT 1 CHECK (attempt_no BETWEEN 1 AND 20),
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                )''')

    # Exam metadata and majors are copied onto each result row
    op.execute('''CREATE TABLE IF NOT EXISTS otm_results (
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
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS wm_subjects (
                    id SERIAL PRIMARY KEY,
                    code VARCHAR(30) UNIQUE NOT NULL,
                    name VARCHAR(120) NOT NULL,
                    max_points SMALLINT NOT NULL DEFAULT 100 CHECK (max_points BETWEEN 1 AND 100)
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS wm_exams (
                    id SERIAL PRIMARY KEY,
                    study_year_id INTEGER NOT NULL REFERENCES study_year(id) ON DELETE RESTRICT,
                    cycle_no SMALLINT CHECK (cycle_no IS NULL OR cycle_no BETWEEN 1 AND 60),
                    exam_name VARCHAR(120) NOT NULL,
                    exam_date DATE NOT NULL,
                    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS wm_results (
                    id SERIAL PRIMARY KEY,
                    pupil_id INTEGER NOT NULL REFERENCES pupils(id) ON DELETE CASCADE,
                    subject_id INTEGER NOT NULL REFERENCES wm_subjects(id) ON DELETE RESTRICT,
                    exam_id INTEGER NOT NULL REFERENCES wm_exams(id) ON DELETE RESTRICT,
                    score NUMERIC(5,2) NOT NULL CHECK (score >= 0),
                    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (pupil_id, subject_id, exam_id)
                )''')

    # Create indexes
    op.execute('CREATE INDEX IF NOT EXISTS idx_pupils_class_code ON pupils(class_code)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_pupils_class_id ON pupils(class_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_results_exam ON results(exam_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_results_subject ON results(subject_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_exams_year ON exams(academic_year)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_otm_results_exam ON otm_results(otm_exam_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_wm_results_exam_subject ON wm_results(exam_id, subject_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_wm_exams_study_year ON wm_exams(study_year_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_login_attempts_locked_until ON login_attempts(locked_until)')


def downgrade() -> None:
    """Drop all tables (destructive)."""
    op.execute('DROP TABLE IF EXISTS wm_results CASCADE')
    op.execute('DROP TABLE IF EXISTS wm_exams CASCADE')
    op.execute('DROP TABLE IF EXISTS wm_subjects CASCADE')
    op.execute('DROP TABLE IF EXISTS otm_results CASCADE')
    op.execute('DROP TABLE IF EXISTS otm_exams CASCADE')
    op.execute('DROP TABLE IF EXISTS otm_major CASCADE')
    op.execute('DROP TABLE IF EXISTS otm_subjects CASCADE')
    op.execute('DROP TABLE IF EXISTS study_year CASCADE')
    op.execute('DROP TABLE IF EXISTS results CASCADE')
    op.execute('DROP TABLE IF EXISTS exams CASCADE')
    op.execute('DROP TABLE IF EXISTS subjects CASCADE')
    op.execute('DROP TABLE IF EXISTS pupils CASCADE')
    op.execute('DROP TABLE IF EXISTS classes CASCADE')
    op.execute('DROP TABLE IF EXISTS login_attempts CASCADE')
    op.execute('DROP TABLE IF EXISTS admins CASCADE')
