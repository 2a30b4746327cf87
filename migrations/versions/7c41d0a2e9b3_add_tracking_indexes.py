"""Add lookup indexes and unique constraints for tracking tables"""

from alembic import op
import sqlalchemy as sa


revision = '7c41d0a2e9b3'
down_revision = None
branch_labels = None
depends_on = None


UNIQUE_CONSTRAINTS = [
    ('uq_users_email', 'Users', 'email'),
    ('uq_users_phone', 'Users', 'phone'),
    ('uq_students_index_number', 'Students', 'index_number'),
    ('uq_exam_sessions_batch_qr', 'ExamSessions', 'batch_qr_code'),
    ('uq_incidents_number', 'Incidents', 'incident_number'),
    ('uq_attendance_links_token', 'AttendanceLinks', 'link_token'),
    ('uq_registration_sessions_token', 'RegistrationSessions', 'qr_token'),
]

INDEXES = [
    ('ix_batch_transfers_to_handler', 'BatchTransfers', 'to_handler_id, status'),
    ('ix_batch_transfers_from_handler', 'BatchTransfers', 'from_handler_id'),
    ('ix_incidents_status_severity', 'Incidents', 'status, severity'),
    ('ix_class_records_user_status', 'ClassAttendanceRecords', 'user_id, status'),
    ('ix_blacklisted_tokens_expires', 'BlacklistedTokens', 'expires_at'),
]


def _already_exists(error):
    message = str(error)
    return "Duplicate key name" in message or "already exists" in message


def _missing(error):
    message = str(error)
    return "check that column/key exists" in message or "no such index" in message


def upgrade():
    conn = op.get_bind()

    for name, table, column in UNIQUE_CONSTRAINTS:
        try:
            conn.execute(sa.text(f"ALTER TABLE `{table}` ADD CONSTRAINT {name} UNIQUE ({column})"))
        except Exception as e:
            if _already_exists(e):
                print(f"Skipping {name}, already exists.")
            else:
                raise

    for name, table, columns in INDEXES:
        try:
            conn.execute(sa.text(f"CREATE INDEX {name} ON `{table}` ({columns})"))
        except Exception as e:
            if _already_exists(e):
                print(f"Skipping {name}, already exists.")
            else:
                raise


def downgrade():
    conn = op.get_bind()

    for name, table, _ in INDEXES + UNIQUE_CONSTRAINTS:
        try:
            conn.execute(sa.text(f"ALTER TABLE `{table}` DROP INDEX {name}"))
        except Exception as e:
            if _missing(e):
                print(f"Skipping drop for {name}, not found.")
            else:
                raise
