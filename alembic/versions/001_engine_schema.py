"""001 – Engine schema: roster + ledger, attendance, approvals, notifications.

Revision ID: 001_engine_schema
Revises:
Create Date: 2026-03-02 10:00:00.000000+05:30
"""

from alembic import op
import sqlalchemy as sa  # noqa: F401

# Revision identifiers
revision = "001_engine_schema"
down_revision = None
branch_labels = None
depends_on = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

ENUM_TYPES: list[tuple[str, list[str]]] = [
    ("login_type", ["Employee", "HOD", "Admin", "CEO"]),
    ("employee_type", ["Intern", "Confirmed", "Contractual", "Probation"]),
    ("compensatory_status", ["Available", "Consumed", "Expired"]),
    ("compensatory_source", ["overtime_claim", "overtime_sweep", "manual"]),
    ("punch_direction", ["in", "out"]),
    ("attendance_status", ["Present", "Absent"]),
    ("request_kind", ["leave", "overtime_claim", "outdoor_duty"]),
    ("stage_status", ["Pending", "Approved", "Rejected", "Acknowledged"]),
    (
        "request_state",
        [
            "created",
            "stage1_pending",
            "stage2_pending",
            "stage3_pending",
            "approved",
            "rejected",
            "acknowledged",
        ],
    ),
    ("leave_type", ["Casual", "Compensatory", "LeaveWithoutPay"]),
    ("half_day_session", ["forenoon", "afternoon"]),
    ("overtime_track", ["compensatory", "payment"]),
    ("notification_type", ["info", "action_required", "approval", "alert"]),
]

TABLES = [
    "notifications",
    "audit_trail",
    "approval_requests",
    "compensatory_entries",
    "job_leases",
    "sync_metadata",
    "attendance_records",
    "raw_punches",
    "employees",
    "departments",
]


def _create_enum(name: str, values: list[str]) -> None:
    vals = ", ".join(f"'{v}'" for v in values)
    op.execute(f"CREATE TYPE {name} AS ENUM ({vals})")


def _drop_enum(name: str) -> None:
    op.execute(f"DROP TYPE IF EXISTS {name}")


# ---------------------------------------------------------------------------
# UPGRADE
# ---------------------------------------------------------------------------


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    for name, values in ENUM_TYPES:
        _create_enum(name, values)

    # ── 1. departments ────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE departments (
            id          UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            name        VARCHAR(150) NOT NULL UNIQUE,
            code        VARCHAR(20) UNIQUE,
            is_active   BOOLEAN DEFAULT TRUE,
            created_at  TIMESTAMPTZ DEFAULT NOW(),
            updated_at  TIMESTAMPTZ DEFAULT NOW()
        )
    """)

    # ── 2. employees (roster + leave ledger) ──────────────────────────────
    op.execute("""
        CREATE TABLE employees (
            id                            UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            employee_code                 VARCHAR(20) NOT NULL UNIQUE,
            biometric_user_id             VARCHAR(50) UNIQUE,
            email                         VARCHAR(255) NOT NULL UNIQUE,
            first_name                    VARCHAR(100) NOT NULL,
            last_name                     VARCHAR(100) NOT NULL,
            login_type                    login_type NOT NULL DEFAULT 'Employee',
            employee_type                 employee_type NOT NULL DEFAULT 'Confirmed',
            department_id                 UUID REFERENCES departments(id),
            reporting_manager_id          UUID REFERENCES employees(id),
            date_of_joining               DATE,
            is_active                     BOOLEAN DEFAULT TRUE,
            paid_leave_balance            NUMERIC(5,1) NOT NULL DEFAULT 0,
            unpaid_leave_taken            NUMERIC(5,1) NOT NULL DEFAULT 0,
            compensatory_balance_hours    NUMERIC(5,1) NOT NULL DEFAULT 0,
            last_paid_leave_reset_at      DATE,
            last_monthly_leave_credit_at  DATE,
            version_id                    INTEGER NOT NULL DEFAULT 1,
            created_at                    TIMESTAMPTZ DEFAULT NOW(),
            updated_at                    TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT ck_paid_balance_non_negative CHECK (paid_leave_balance >= 0),
            CONSTRAINT ck_unpaid_taken_non_negative CHECK (unpaid_leave_taken >= 0),
            CONSTRAINT ck_comp_balance_non_negative CHECK (compensatory_balance_hours >= 0)
        )
    """)
    op.execute("CREATE INDEX ix_employees_department ON employees (department_id)")

    # ── 3. raw_punches ────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE raw_punches (
            id                UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            external_user_id  VARCHAR(50) NOT NULL,
            log_date          DATE NOT NULL,
            log_time          VARCHAR(8) NOT NULL,
            direction         punch_direction NOT NULL DEFAULT 'out',
            processed         BOOLEAN NOT NULL DEFAULT FALSE,
            created_at        TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT uq_raw_punch_event
                UNIQUE (external_user_id, log_date, log_time, direction)
        )
    """)
    op.execute(
        "CREATE INDEX ix_raw_punches_unprocessed "
        "ON raw_punches (processed, external_user_id, log_date)"
    )

    # ── 4. attendance_records ─────────────────────────────────────────────
    op.execute("""
        CREATE TABLE attendance_records (
            id                  UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            employee_id         UUID NOT NULL REFERENCES employees(id),
            work_date           DATE NOT NULL,
            time_in             TIME,
            time_out            TIME,
            total_work_minutes  INTEGER NOT NULL DEFAULT 0,
            ot_minutes          INTEGER NOT NULL DEFAULT 0,
            status              attendance_status NOT NULL DEFAULT 'Present',
            source              VARCHAR(50) DEFAULT 'biometric',
            ot_evaluated_at     TIMESTAMPTZ,
            created_at          TIMESTAMPTZ DEFAULT NOW(),
            updated_at          TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT uq_attendance_emp_date UNIQUE (employee_id, work_date),
            CONSTRAINT ck_attendance_ot_non_negative CHECK (ot_minutes >= 0)
        )
    """)
    op.execute(
        "CREATE INDEX ix_attendance_unevaluated_ot ON attendance_records (work_date) "
        "WHERE ot_evaluated_at IS NULL AND ot_minutes > 0"
    )

    # ── 5. sync_metadata ──────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE sync_metadata (
            name            VARCHAR(50) PRIMARY KEY,
            last_synced_at  TIMESTAMPTZ,
            last_status     VARCHAR(20),
            last_error      TEXT,
            updated_at      TIMESTAMPTZ DEFAULT NOW()
        )
    """)

    # ── 5b. job_leases (cross-process single-flight for engine jobs) ──────
    op.execute("""
        CREATE TABLE job_leases (
            name         VARCHAR(50) PRIMARY KEY,
            holder       VARCHAR(120),
            job          VARCHAR(50),
            acquired_at  TIMESTAMPTZ,
            expires_at   TIMESTAMPTZ
        )
    """)
    op.execute("INSERT INTO job_leases (name) VALUES ('engineJobs')")

    # ── 6. compensatory_entries ───────────────────────────────────────────
    op.execute("""
        CREATE TABLE compensatory_entries (
            id                      UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            employee_id             UUID NOT NULL REFERENCES employees(id),
            work_date               DATE NOT NULL,
            hours                   NUMERIC(4,1) NOT NULL,
            status                  compensatory_status NOT NULL DEFAULT 'Available',
            source                  compensatory_source NOT NULL,
            source_request_id       UUID,
            consumed_by_request_id  UUID,
            consumed_at             TIMESTAMPTZ,
            expired_at              TIMESTAMPTZ,
            created_at              TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT ck_comp_entry_hours_positive CHECK (hours > 0)
        )
    """)
    op.execute(
        "CREATE INDEX ix_comp_entries_employee_status "
        "ON compensatory_entries (employee_id, status)"
    )

    # ── 7. approval_requests (single table for all request kinds) ─────────
    op.execute("""
        CREATE TABLE approval_requests (
            id                     UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            kind                   request_kind NOT NULL,
            employee_id            UUID NOT NULL REFERENCES employees(id),
            submitted_by           UUID NOT NULL REFERENCES employees(id),
            department_id          UUID REFERENCES departments(id),
            hod_status             stage_status NOT NULL DEFAULT 'Pending',
            admin_status           stage_status NOT NULL DEFAULT 'Pending',
            ceo_status             stage_status NOT NULL DEFAULT 'Pending',
            state                  request_state NOT NULL DEFAULT 'created',
            ledger_applied_at      TIMESTAMPTZ,
            decided_at             TIMESTAMPTZ,
            decided_by             UUID REFERENCES employees(id),
            remarks                TEXT,
            version_id             INTEGER NOT NULL DEFAULT 1,
            created_at             TIMESTAMPTZ DEFAULT NOW(),
            updated_at             TIMESTAMPTZ DEFAULT NOW(),

            -- leave
            leave_type             leave_type,
            half_day_session       half_day_session,
            start_date             DATE,
            end_date               DATE,
            total_days             NUMERIC(4,1),
            reason                 TEXT,
            charge_given_to        VARCHAR(150),
            emergency_contact      VARCHAR(50),
            compensatory_entry_id  UUID REFERENCES compensatory_entries(id),

            -- overtime claim
            ot_date                DATE,
            ot_hours               NUMERIC(4,2),
            project_details        TEXT,
            track                  overtime_track,
            attendance_record_id   UUID REFERENCES attendance_records(id),
            compensatory_hours     NUMERIC(4,1),
            payment_amount         NUMERIC(10,2),

            -- outdoor duty
            date_out               DATE,
            time_out               TIME,
            date_in                DATE,
            time_in                TIME,
            purpose                TEXT,
            place_visited          VARCHAR(255)
        )
    """)
    op.execute(
        "CREATE INDEX ix_approval_requests_employee_kind "
        "ON approval_requests (employee_id, kind)"
    )
    op.execute("CREATE INDEX ix_approval_requests_state ON approval_requests (state)")
    op.execute(
        "CREATE INDEX ix_approval_requests_department ON approval_requests (department_id)"
    )
    # One live overtime claim per employee per day
    op.execute(
        "CREATE UNIQUE INDEX uq_live_overtime_claim ON approval_requests (employee_id, ot_date) "
        "WHERE kind = 'overtime_claim' AND state <> 'rejected'"
    )

    # ── 8. audit_trail ────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE audit_trail (
            id           UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            actor_id     UUID REFERENCES employees(id),
            action       VARCHAR(50) NOT NULL,
            entity_type  VARCHAR(50) NOT NULL,
            entity_id    UUID NOT NULL,
            old_values   JSONB,
            new_values   JSONB,
            created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX ix_audit_trail_entity ON audit_trail (entity_type, entity_id)")
    op.execute("CREATE INDEX ix_audit_trail_created_at ON audit_trail (created_at)")

    # ── 9. notifications ──────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE notifications (
            id            UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            recipient_id  UUID NOT NULL REFERENCES employees(id) ON DELETE CASCADE,
            type          notification_type DEFAULT 'info',
            title         VARCHAR(200) NOT NULL,
            message       TEXT NOT NULL,
            entity_type   VARCHAR(50),
            entity_id     UUID,
            is_read       BOOLEAN DEFAULT FALSE,
            created_at    TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute(
        "CREATE INDEX ix_notifications_recipient_read ON notifications (recipient_id, is_read)"
    )


# ---------------------------------------------------------------------------
# DOWNGRADE
# ---------------------------------------------------------------------------


def downgrade() -> None:
    for table in TABLES:
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE")
    for name, _ in reversed(ENUM_TYPES):
        _drop_enum(name)
