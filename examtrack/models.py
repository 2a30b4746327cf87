# examtrack/models.py
import json
import uuid
from datetime import datetime, timezone

from flask_login import UserMixin

from examtrack import db


def utcnow():
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uuid():
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


# ==========================================================
# Enumerations (stored as plain strings)
# ==========================================================
ROLES = (
    'ADMIN',
    'INVIGILATOR',
    'DEPARTMENT_HEAD',
    'FACULTY_OFFICER',
    'LECTURER',
    'CLASS_REP',
)
HANDLER_ROLES = ('INVIGILATOR', 'LECTURER', 'DEPARTMENT_HEAD', 'FACULTY_OFFICER')

BATCH_STATUSES = (
    'NOT_STARTED',
    'IN_PROGRESS',
    'SUBMITTED',
    'IN_TRANSIT',
    'WITH_LECTURER',
    'UNDER_GRADING',
    'GRADED',
    'RETURNED',
    'COMPLETED',
)
ATTENDANCE_STATUSES = ('PRESENT', 'SUBMITTED', 'LEFT_WITHOUT_SUBMITTING', 'ABSENT')
TRANSFER_STATUSES = ('PENDING', 'CONFIRMED', 'DISCREPANCY_REPORTED', 'RESOLVED')

INCIDENT_TYPES = (
    'MISSING_SCRIPT',
    'DAMAGED_SCRIPT',
    'MALPRACTICE',
    'STUDENT_ILLNESS',
    'VENUE_ISSUE',
    'COUNT_DISCREPANCY',
    'LATE_SUBMISSION',
    'PROCEDURAL_VIOLATION',
    'OTHER',
)
INCIDENT_SEVERITIES = ('LOW', 'MEDIUM', 'HIGH', 'CRITICAL')
INCIDENT_STATUSES = ('REPORTED', 'UNDER_INVESTIGATION', 'ESCALATED', 'RESOLVED', 'CLOSED')

RECORDING_STATUSES = ('IN_PROGRESS', 'COMPLETED', 'CANCELLED')
CLASS_ATTENDANCE_STATUSES = ('PRESENT', 'LATE', 'EXCUSED')
ATTENDANCE_METHODS = ('QR_CODE', 'MANUAL_INDEX', 'LINK')


# ==========================================================
# Users and access
# ==========================================================
class Role(db.Model):
    __tablename__ = 'Roles'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)


def seed_roles():
    existing = {r.name for r in Role.query.all()}
    missing = [name for name in ROLES if name not in existing]
    for name in missing:
        db.session.add(Role(name=name))
    if missing:
        db.session.commit()


def get_role(name):
    return Role.query.filter_by(name=name).first()


class User(db.Model, UserMixin):
    __tablename__ = 'Users'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    email = db.Column(db.String(150), unique=True, nullable=False)
    phone = db.Column(db.String(20), unique=True, nullable=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False, default='')
    department = db.Column(db.String(150), nullable=True)

    password_hash = db.Column(db.String(255), nullable=False)
    password_changed = db.Column(db.Boolean, nullable=False, default=False)

    is_super_admin = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    role_id = db.Column(db.Integer, db.ForeignKey('Roles.id'), nullable=False)
    role = db.relationship('Role', backref='users', lazy='joined')

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=utcnow)

    @property
    def role_name(self):
        return self.role.name if self.role else None

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()

    def summary(self, with_email=False):
        data = {
            "id": self.id,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "role": self.role_name,
        }
        if with_email:
            data["email"] = self.email
        return data

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "phone": self.phone,
            "name": self.full_name,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "department": self.department or "",
            "role": self.role_name,
            "isSuperAdmin": self.is_super_admin,
            "isActive": self.is_active,
            "passwordChanged": self.password_changed,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<User {self.email} ({self.role_name})>"


class BlacklistedToken(db.Model):
    __tablename__ = 'BlacklistedTokens'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    jti = db.Column(db.String(64), unique=True, nullable=False)
    user_id = db.Column(db.String(36), db.ForeignKey('Users.id'), nullable=True)
    expires_at = db.Column(db.DateTime, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)


class AuditLog(db.Model):
    __tablename__ = 'AuditLogs'
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey('Users.id'), nullable=True)
    action = db.Column(db.String(80), nullable=False, index=True)
    entity = db.Column(db.String(80), nullable=False)
    entity_id = db.Column(db.String(64), nullable=True)
    details = db.Column(db.JSON, nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    user = db.relationship('User')

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "user": self.user.summary(with_email=True) if self.user else None,
            "action": self.action,
            "entity": self.entity,
            "entityId": self.entity_id,
            "details": self.details,
            "ipAddress": self.ip_address,
            "createdAt": _iso(self.created_at),
        }


# ==========================================================
# Students
# ==========================================================
class Student(db.Model):
    __tablename__ = 'Students'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    index_number = db.Column(db.String(30), unique=True, nullable=False)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    program = db.Column(db.String(150), nullable=False)
    option = db.Column(db.String(150), nullable=True)
    department = db.Column(db.String(150), nullable=True)
    level = db.Column(db.Integer, nullable=False)
    qr_code = db.Column(db.String(512), unique=True, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=utcnow)

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()

    def refresh_qr_code(self):
        """Rebuild the JSON payload printed on the student's QR card."""
        if not self.id:
            self.id = _uuid()
        self.qr_code = json.dumps({
            "type": "STUDENT",
            "id": self.id,
            "indexNumber": self.index_number,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "program": self.program,
            "level": self.level,
        }, separators=(",", ":"))

    def summary(self):
        return {
            "id": self.id,
            "indexNumber": self.index_number,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "program": self.program,
            "level": self.level,
        }

    def to_dict(self):
        data = self.summary()
        data.update({
            "option": self.option,
            "department": self.department,
            "qrCode": self.qr_code,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        })
        return data


# ==========================================================
# Exam sessions and exam attendance
# ==========================================================
class ExamSession(db.Model):
    __tablename__ = 'ExamSessions'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    batch_qr_code = db.Column(db.String(120), unique=True, nullable=False)
    course_code = db.Column(db.String(30), nullable=False, index=True)
    course_name = db.Column(db.String(200), nullable=False)
    lecturer_id = db.Column(db.String(64), nullable=False)
    lecturer_name = db.Column(db.String(150), nullable=False)
    department = db.Column(db.String(150), nullable=False)
    faculty = db.Column(db.String(150), nullable=False)
    venue = db.Column(db.String(150), nullable=False)
    exam_date = db.Column(db.DateTime, nullable=False, index=True)
    status = db.Column(db.String(30), nullable=False, default='NOT_STARTED')

    is_archived = db.Column(db.Boolean, nullable=False, default=False)
    archived_at = db.Column(db.DateTime, nullable=True)

    created_by_id = db.Column(db.String(36), db.ForeignKey('Users.id'), nullable=False)
    created_by = db.relationship('User', foreign_keys=[created_by_id])

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=utcnow)

    attendances = db.relationship(
        'ExamAttendance', backref='exam_session', lazy='dynamic', cascade='all, delete-orphan'
    )
    expected_students = db.relationship(
        'ExamSessionStudent', backref='exam_session', lazy='dynamic', cascade='all, delete-orphan'
    )
    transfers = db.relationship(
        'BatchTransfer', backref='exam_session', lazy='dynamic', cascade='all, delete-orphan'
    )

    def summary(self):
        return {
            "id": self.id,
            "batchQrCode": self.batch_qr_code,
            "courseCode": self.course_code,
            "courseName": self.course_name,
            "venue": self.venue,
            "examDate": _iso(self.exam_date),
            "status": self.status,
        }

    def to_dict(self):
        data = self.summary()
        data.update({
            "lecturerId": self.lecturer_id,
            "lecturerName": self.lecturer_name,
            "department": self.department,
            "faculty": self.faculty,
            "isArchived": self.is_archived,
            "archivedAt": _iso(self.archived_at),
            "createdById": self.created_by_id,
            "createdBy": self.created_by.summary(with_email=True) if self.created_by else None,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        })
        return data


class ExamSessionStudent(db.Model):
    __tablename__ = 'ExamSessionStudents'
    __table_args__ = (
        db.UniqueConstraint('exam_session_id', 'student_id', name='uq_session_student'),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    exam_session_id = db.Column(db.String(36), db.ForeignKey('ExamSessions.id'), nullable=False)
    student_id = db.Column(db.String(36), db.ForeignKey('Students.id'), nullable=False)
    added_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    student = db.relationship('Student')


class ExamAttendance(db.Model):
    __tablename__ = 'ExamAttendances'
    __table_args__ = (
        db.UniqueConstraint('student_id', 'exam_session_id', name='uq_attendance_student_session'),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    student_id = db.Column(db.String(36), db.ForeignKey('Students.id'), nullable=False)
    exam_session_id = db.Column(db.String(36), db.ForeignKey('ExamSessions.id'), nullable=False)
    entry_time = db.Column(db.DateTime, nullable=False, default=utcnow)
    exit_time = db.Column(db.DateTime, nullable=True)
    submission_time = db.Column(db.DateTime, nullable=True)
    status = db.Column(db.String(30), nullable=False, default='PRESENT')
    discrepancy_note = db.Column(db.Text, nullable=True)
    recorded_by_id = db.Column(db.String(36), db.ForeignKey('Users.id'), nullable=True)

    student = db.relationship('Student', backref=db.backref('exam_attendances', lazy='dynamic'))

    def to_dict(self):
        return {
            "id": self.id,
            "studentId": self.student_id,
            "examSessionId": self.exam_session_id,
            "entryTime": _iso(self.entry_time),
            "exitTime": _iso(self.exit_time),
            "submissionTime": _iso(self.submission_time),
            "status": self.status,
            "discrepancyNote": self.discrepancy_note,
            "student": self.student.summary() if self.student else None,
            "examSession": self.exam_session.summary() if self.exam_session else None,
        }


# ==========================================================
# Batch transfers (chain of custody)
# ==========================================================
class BatchTransfer(db.Model):
    __tablename__ = 'BatchTransfers'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    exam_session_id = db.Column(db.String(36), db.ForeignKey('ExamSessions.id'), nullable=False, index=True)
    from_handler_id = db.Column(db.String(36), db.ForeignKey('Users.id'), nullable=False)
    to_handler_id = db.Column(db.String(36), db.ForeignKey('Users.id'), nullable=False)
    scripts_expected = db.Column(db.Integer, nullable=False)
    scripts_received = db.Column(db.Integer, nullable=True)
    location = db.Column(db.String(200), nullable=True)
    status = db.Column(db.String(30), nullable=False, default='PENDING')
    discrepancy_note = db.Column(db.Text, nullable=True)
    requested_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    confirmed_at = db.Column(db.DateTime, nullable=True)

    from_handler = db.relationship('User', foreign_keys=[from_handler_id])
    to_handler = db.relationship('User', foreign_keys=[to_handler_id])

    @property
    def has_discrepancy(self):
        return self.scripts_received is not None and self.scripts_received != self.scripts_expected

    def to_dict(self, with_session=True):
        data = {
            "id": self.id,
            "examSessionId": self.exam_session_id,
            "fromHandlerId": self.from_handler_id,
            "toHandlerId": self.to_handler_id,
            "scriptsExpected": self.scripts_expected,
            "scriptsReceived": self.scripts_received,
            "location": self.location,
            "status": self.status,
            "discrepancyNote": self.discrepancy_note,
            "requestedAt": _iso(self.requested_at),
            "confirmedAt": _iso(self.confirmed_at),
            "fromHandler": self.from_handler.summary() if self.from_handler else None,
            "toHandler": self.to_handler.summary() if self.to_handler else None,
        }
        if with_session and self.exam_session:
            data["examSession"] = self.exam_session.summary()
        return data


# ==========================================================
# Incidents
# ==========================================================
class Incident(db.Model):
    __tablename__ = 'Incidents'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    incident_number = db.Column(db.String(30), unique=True, nullable=False)
    type = db.Column(db.String(40), nullable=False)
    severity = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(30), nullable=False, default='REPORTED')
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    location = db.Column(db.String(200), nullable=True)

    reporter_id = db.Column(db.String(36), db.ForeignKey('Users.id'), nullable=False)
    assignee_id = db.Column(db.String(36), db.ForeignKey('Users.id'), nullable=True)
    student_id = db.Column(db.String(36), db.ForeignKey('Students.id'), nullable=True)
    exam_session_id = db.Column(db.String(36), db.ForeignKey('ExamSessions.id'), nullable=True)
    attendance_id = db.Column(db.String(36), db.ForeignKey('ExamAttendances.id'), nullable=True)
    transfer_id = db.Column(db.String(36), db.ForeignKey('BatchTransfers.id', ondelete='SET NULL'), nullable=True)

    incident_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    is_confidential = db.Column(db.Boolean, nullable=False, default=False)
    auto_created = db.Column(db.Boolean, nullable=False, default=False)
    # "metadata" is reserved on declarative models
    extra = db.Column('metadata', db.JSON, nullable=True)
    resolution_notes = db.Column(db.Text, nullable=True)

    reported_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    assigned_at = db.Column(db.DateTime, nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    closed_at = db.Column(db.DateTime, nullable=True)

    reporter = db.relationship('User', foreign_keys=[reporter_id])
    assignee = db.relationship('User', foreign_keys=[assignee_id])
    student = db.relationship('Student')
    exam_session = db.relationship('ExamSession')

    comments = db.relationship(
        'IncidentComment', backref='incident', lazy='dynamic',
        cascade='all, delete-orphan', order_by='IncidentComment.created_at'
    )
    status_history = db.relationship(
        'IncidentStatusHistory', backref='incident', lazy='dynamic',
        cascade='all, delete-orphan', order_by='IncidentStatusHistory.changed_at.desc()'
    )

    def to_dict(self, detail=False, include_internal=False):
        data = {
            "id": self.id,
            "incidentNumber": self.incident_number,
            "type": self.type,
            "severity": self.severity,
            "status": self.status,
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "reporterId": self.reporter_id,
            "assigneeId": self.assignee_id,
            "studentId": self.student_id,
            "examSessionId": self.exam_session_id,
            "attendanceId": self.attendance_id,
            "transferId": self.transfer_id,
            "incidentDate": _iso(self.incident_date),
            "isConfidential": self.is_confidential,
            "autoCreated": self.auto_created,
            "metadata": self.extra,
            "resolutionNotes": self.resolution_notes,
            "reportedAt": _iso(self.reported_at),
            "assignedAt": _iso(self.assigned_at),
            "resolvedAt": _iso(self.resolved_at),
            "closedAt": _iso(self.closed_at),
            "reporter": self.reporter.summary(with_email=True) if self.reporter else None,
            "assignee": self.assignee.summary(with_email=True) if self.assignee else None,
            "student": self.student.summary() if self.student else None,
            "examSession": self.exam_session.summary() if self.exam_session else None,
        }
        comments = self.comments.all()
        if not include_internal:
            comments = [c for c in comments if not c.is_internal]
        if detail:
            data["comments"] = [c.to_dict() for c in comments]
            data["statusHistory"] = [h.to_dict() for h in self.status_history]
        else:
            data["_count"] = {"comments": len(comments)}
        return data


class IncidentStatusHistory(db.Model):
    __tablename__ = 'IncidentStatusHistory'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    incident_id = db.Column(db.String(36), db.ForeignKey('Incidents.id'), nullable=False)
    from_status = db.Column(db.String(30), nullable=True)
    to_status = db.Column(db.String(30), nullable=False)
    changed_by_id = db.Column(db.String(36), db.ForeignKey('Users.id'), nullable=False)
    reason = db.Column(db.Text, nullable=True)
    changed_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    changed_by = db.relationship('User')

    def to_dict(self):
        return {
            "id": self.id,
            "fromStatus": self.from_status,
            "toStatus": self.to_status,
            "reason": self.reason,
            "changedAt": _iso(self.changed_at),
            "user": self.changed_by.summary() if self.changed_by else None,
        }


class IncidentComment(db.Model):
    __tablename__ = 'IncidentComments'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    incident_id = db.Column(db.String(36), db.ForeignKey('Incidents.id'), nullable=False)
    user_id = db.Column(db.String(36), db.ForeignKey('Users.id'), nullable=False)
    comment = db.Column(db.Text, nullable=False)
    is_internal = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    user = db.relationship('User')

    def to_dict(self):
        return {
            "id": self.id,
            "incidentId": self.incident_id,
            "comment": self.comment,
            "isInternal": self.is_internal,
            "createdAt": _iso(self.created_at),
            "user": self.user.summary() if self.user else None,
        }


class IncidentTemplate(db.Model):
    __tablename__ = 'IncidentTemplates'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    type = db.Column(db.String(40), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by_id = db.Column(db.String(36), db.ForeignKey('Users.id'), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "description": self.description,
            "isActive": self.is_active,
            "createdById": self.created_by_id,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


# ==========================================================
# Class attendance
# ==========================================================
class ClassAttendanceRecord(db.Model):
    __tablename__ = 'ClassAttendanceRecords'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    device_id = db.Column(db.String(120), nullable=False, index=True)
    device_name = db.Column(db.String(120), nullable=True)
    user_id = db.Column(db.String(36), db.ForeignKey('Users.id'), nullable=False)
    course_code = db.Column(db.String(30), nullable=False, index=True)
    course_name = db.Column(db.String(200), nullable=False)
    lecturer_name = db.Column(db.String(150), nullable=True)
    start_time = db.Column(db.DateTime, nullable=False, default=utcnow)
    end_time = db.Column(db.DateTime, nullable=True)
    status = db.Column(db.String(20), nullable=False, default='IN_PROGRESS')
    total_students = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=True, onupdate=utcnow)

    user = db.relationship('User')
    students = db.relationship(
        'ClassAttendance', backref='record', lazy='dynamic',
        cascade='all, delete-orphan', order_by='ClassAttendance.scan_time'
    )
    links = db.relationship(
        'AttendanceLink', backref='record', lazy='dynamic', cascade='all, delete-orphan'
    )

    @property
    def duration_minutes(self):
        if not self.end_time:
            return 0
        return round((self.end_time - self.start_time).total_seconds() / 60)

    def to_dict(self, with_students=False):
        data = {
            "id": self.id,
            "deviceId": self.device_id,
            "deviceName": self.device_name,
            "userId": self.user_id,
            "user": self.user.summary(with_email=True) if self.user else None,
            "courseCode": self.course_code,
            "courseName": self.course_name,
            "lecturerName": self.lecturer_name,
            "startTime": _iso(self.start_time),
            "endTime": _iso(self.end_time),
            "status": self.status,
            "totalStudents": self.total_students,
            "attendedCount": self.students.count(),
            "notes": self.notes,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }
        if with_students:
            data["students"] = [s.to_dict() for s in self.students]
        return data


class ClassAttendance(db.Model):
    __tablename__ = 'ClassAttendances'
    __table_args__ = (
        db.UniqueConstraint('record_id', 'student_id', name='uq_class_attendance_record_student'),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    record_id = db.Column(db.String(36), db.ForeignKey('ClassAttendanceRecords.id'), nullable=False)
    student_id = db.Column(db.String(36), db.ForeignKey('Students.id'), nullable=False)
    scan_time = db.Column(db.DateTime, nullable=False, default=utcnow)
    status = db.Column(db.String(20), nullable=False, default='PRESENT')
    verification_method = db.Column(db.String(30), nullable=False)
    lecturer_confirmed = db.Column(db.Boolean, nullable=False, default=False)
    device_id = db.Column(db.String(120), nullable=True)
    link_token_used = db.Column(db.String(64), nullable=True)

    student = db.relationship('Student', backref=db.backref('class_attendances', lazy='dynamic'))

    def to_dict(self):
        return {
            "id": self.id,
            "recordId": self.record_id,
            "studentId": self.student_id,
            "scanTime": _iso(self.scan_time),
            "status": self.status,
            "verificationMethod": self.verification_method,
            "lecturerConfirmed": self.lecturer_confirmed,
            "deviceId": self.device_id,
            "student": self.student.summary() if self.student else None,
        }


class AttendanceLink(db.Model):
    __tablename__ = 'AttendanceLinks'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    record_id = db.Column(db.String(36), db.ForeignKey('ClassAttendanceRecords.id'), nullable=False)
    link_token = db.Column(db.String(64), unique=True, nullable=False)
    created_by_id = db.Column(db.String(36), db.ForeignKey('Users.id'), nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    max_uses = db.Column(db.Integer, nullable=True)
    uses_count = db.Column(db.Integer, nullable=False, default=0)
    geolocation = db.Column(db.JSON, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    deactivated_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self, base_url=""):
        return {
            "id": self.id,
            "recordId": self.record_id,
            "token": self.link_token,
            "url": f"{base_url}/student-attendance?token={self.link_token}",
            "expiresAt": _iso(self.expires_at),
            "maxUses": self.max_uses,
            "usageCount": self.uses_count,
            "geolocation": self.geolocation,
            "isActive": self.is_active,
            "createdAt": _iso(self.created_at),
        }


# ==========================================================
# QR self-registration
# ==========================================================
class RegistrationSession(db.Model):
    __tablename__ = 'RegistrationSessions'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    qr_token = db.Column(db.String(64), unique=True, nullable=False)
    department = db.Column(db.String(150), nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    used = db.Column(db.Boolean, nullable=False, default=False)
    used_at = db.Column(db.DateTime, nullable=True)
    used_by_id = db.Column(db.String(36), db.ForeignKey('Users.id'), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by_id = db.Column(db.String(36), db.ForeignKey('Users.id'), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    used_by = db.relationship('User', foreign_keys=[used_by_id])

    @property
    def is_expired(self):
        return utcnow() > self.expires_at

    @property
    def state(self):
        if self.used:
            return 'USED'
        if not self.is_active:
            return 'DEACTIVATED'
        if self.is_expired:
            return 'EXPIRED'
        return 'ACTIVE'

    def qr_payload(self):
        return {
            "type": "REGISTRATION",
            "token": self.qr_token,
            "department": self.department,
            "expiresAt": _iso(self.expires_at),
        }

    def to_dict(self):
        return {
            "id": self.id,
            "qrToken": self.qr_token,
            "department": self.department,
            "expiresAt": _iso(self.expires_at),
            "used": self.used,
            "usedAt": _iso(self.used_at),
            "usedBy": self.used_by.summary() if self.used_by else None,
            "isActive": self.is_active,
            "status": self.state,
            "createdById": self.created_by_id,
            "createdAt": _iso(self.created_at),
            "qrCodeData": self.qr_payload(),
        }
