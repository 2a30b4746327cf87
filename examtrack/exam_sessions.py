# examtrack/exam_sessions.py
import logging
import random
import time

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required
from sqlalchemy import func, or_

from . import db, events
from .errors import ApiError, ValidationError
from .models import (
    BATCH_STATUSES,
    BatchTransfer,
    ExamAttendance,
    ExamSession,
    ExamSessionStudent,
    Incident,
    Student,
    utcnow,
)
from .security import roles_required
from .utils import (
    _clean,
    ensure_not_archived,
    get_or_404,
    json_body,
    log_audit,
    paginate,
    parse_bool,
    parse_datetime,
    qr_data_url,
    require_choice,
    require_fields,
)

exam_sessions = Blueprint('exam_sessions', __name__)
logger = logging.getLogger(__name__)

# --------------------------
# Batch status workflow
# --------------------------
STATUS_TRANSITIONS = {
    'NOT_STARTED': ('IN_PROGRESS',),
    'IN_PROGRESS': ('SUBMITTED',),
    'SUBMITTED': ('IN_TRANSIT',),
    'IN_TRANSIT': ('WITH_LECTURER', 'SUBMITTED'),
    'WITH_LECTURER': ('IN_TRANSIT', 'UNDER_GRADING'),
    'UNDER_GRADING': ('GRADED',),
    'GRADED': ('RETURNED',),
    'RETURNED': ('COMPLETED',),
    'COMPLETED': (),
}

CREATE_FIELDS = (
    ('courseCode', 'course_code'),
    ('courseName', 'course_name'),
    ('lecturerId', 'lecturer_id'),
    ('lecturerName', 'lecturer_name'),
    ('department', 'department'),
    ('faculty', 'faculty'),
    ('venue', 'venue'),
)


def can_transition(current, new):
    return new in STATUS_TRANSITIONS.get(current, ())


def check_transition(current, new):
    if not can_transition(current, new):
        allowed = ', '.join(STATUS_TRANSITIONS.get(current, ())) or 'none'
        raise ApiError(f"Cannot transition from {current} to {new}. Allowed transitions: {allowed}")


def generate_batch_code(course_code):
    millis = int(time.time() * 1000)
    return f"BATCH-{course_code}-{millis}-{random.randint(0, 999)}"


def batch_qr_payload(exam_session):
    return {
        "type": "EXAM_BATCH",
        "id": exam_session.id,
        "batchQrCode": exam_session.batch_qr_code,
        "courseCode": exam_session.course_code,
        "courseName": exam_session.course_name,
        "examDate": exam_session.exam_date.isoformat(),
        "venue": exam_session.venue,
        "timestamp": int(time.time() * 1000),
    }


def create_initial_custody(exam_session, handler, scripts):
    """Self-transfer recording who holds the scripts once they are collected."""
    now = utcnow()
    transfer = BatchTransfer(
        exam_session_id=exam_session.id,
        from_handler_id=handler.id,
        to_handler_id=handler.id,
        scripts_expected=scripts,
        scripts_received=scripts,
        location=exam_session.venue,
        status='CONFIRMED',
        requested_at=now,
        confirmed_at=now,
    )
    db.session.add(transfer)
    return transfer


def change_status(exam_session, new_status, audit_action='UPDATE_SESSION_STATUS', details=None):
    """Validate and apply a status change; the caller commits and emits."""
    previous = exam_session.status
    check_transition(previous, new_status)
    exam_session.status = new_status

    if new_status == 'SUBMITTED' and exam_session.transfers.count() == 0:
        scripts = exam_session.attendances.count()
        create_initial_custody(exam_session, current_user, scripts)

    log_audit(audit_action, 'ExamSession', exam_session.id, dict(
        details or {}, previousStatus=previous, newStatus=new_status,
    ))
    return previous


def attendance_counts(exam_session):
    rows = (
        db.session.query(ExamAttendance.status, func.count(ExamAttendance.id))
        .filter(ExamAttendance.exam_session_id == exam_session.id)
        .group_by(ExamAttendance.status)
        .all()
    )
    return {status: count for status, count in rows}


def _session_detail(exam_session):
    data = exam_session.to_dict()
    counts = attendance_counts(exam_session)
    data["attendanceCount"] = sum(counts.values())
    data["attendanceByStatus"] = counts
    data["expectedStudentsCount"] = exam_session.expected_students.count()
    data["transferCount"] = exam_session.transfers.count()
    return data


# ==========================================================
# Create / List
# ==========================================================
@exam_sessions.route('', methods=['POST'])
@login_required
@roles_required('ADMIN', 'LECTURER')
def create_exam_session():
    data = json_body()
    require_fields(data, *(key for key, _ in CREATE_FIELDS), 'examDate')
    values = {attr: _clean(data[key]) for key, attr in CREATE_FIELDS}
    values['course_code'] = values['course_code'].upper()
    values['exam_date'] = parse_datetime(data['examDate'], 'examDate')

    exam_session = ExamSession(
        batch_qr_code=generate_batch_code(values['course_code']),
        created_by_id=current_user.id,
        status='NOT_STARTED',
        **values,
    )
    db.session.add(exam_session)
    db.session.flush()

    log_audit('CREATE_EXAM_SESSION', 'ExamSession', exam_session.id, {
        "courseCode": exam_session.course_code,
        "batchQrCode": exam_session.batch_qr_code,
    })
    db.session.commit()
    logger.info("Exam session %s created for %s", exam_session.id, exam_session.course_code)
    events.batch_created(exam_session)

    return jsonify({
        "message": "Exam session created successfully",
        "examSession": exam_session.to_dict(),
        "qrCode": qr_data_url(batch_qr_payload(exam_session), border=2),
    }), 201


@exam_sessions.route('', methods=['GET'])
@login_required
def list_exam_sessions():
    args = request.args
    query = ExamSession.query
    if args.get('status'):
        query = query.filter(ExamSession.status == require_choice(args['status'], BATCH_STATUSES, 'status'))
    if args.get('department'):
        query = query.filter(ExamSession.department == args['department'])
    if args.get('faculty'):
        query = query.filter(ExamSession.faculty == args['faculty'])
    if args.get('courseCode'):
        query = query.filter(ExamSession.course_code == args['courseCode'].upper())
    if args.get('search'):
        like = f"%{_clean(args['search'])}%"
        query = query.filter(or_(
            ExamSession.course_code.ilike(like),
            ExamSession.course_name.ilike(like),
            ExamSession.venue.ilike(like),
            ExamSession.lecturer_name.ilike(like),
            ExamSession.batch_qr_code.ilike(like),
        ))
    if args.get('dateFrom'):
        query = query.filter(ExamSession.exam_date >= parse_datetime(args['dateFrom'], 'dateFrom'))
    if args.get('dateTo'):
        query = query.filter(ExamSession.exam_date <= parse_datetime(args['dateTo'], 'dateTo'))
    is_archived = parse_bool(args.get('isArchived'))
    if is_archived is not None:
        query = query.filter(ExamSession.is_archived == is_archived)

    query = query.order_by(ExamSession.exam_date.desc())
    return jsonify(paginate(query, 'examSessions'))


@exam_sessions.route('/departments', methods=['GET'])
@login_required
def list_departments():
    rows = db.session.query(ExamSession.department).distinct().order_by(ExamSession.department).all()
    return jsonify({"departments": [r[0] for r in rows]})


@exam_sessions.route('/faculties', methods=['GET'])
@login_required
def list_faculties():
    rows = db.session.query(ExamSession.faculty).distinct().order_by(ExamSession.faculty).all()
    return jsonify({"faculties": [r[0] for r in rows]})


# ==========================================================
# Single session
# ==========================================================
@exam_sessions.route('/<session_id>', methods=['GET'])
@login_required
def get_exam_session(session_id):
    exam_session = get_or_404(ExamSession, session_id, "Exam session not found")
    return jsonify({"examSession": _session_detail(exam_session)})


@exam_sessions.route('/<session_id>', methods=['PUT'])
@login_required
@roles_required('ADMIN', 'LECTURER')
def update_exam_session(session_id):
    exam_session = get_or_404(ExamSession, session_id, "Exam session not found")
    ensure_not_archived(exam_session, "Cannot modify archived exam sessions")

    data = json_body()
    changed = []
    for key, attr in CREATE_FIELDS:
        if key in data:
            value = _clean(data[key])
            if not value:
                raise ValidationError([{"field": key, "message": f"{key} cannot be empty"}])
            setattr(exam_session, attr, value.upper() if attr == 'course_code' else value)
            changed.append(key)
    if 'examDate' in data:
        exam_session.exam_date = parse_datetime(data['examDate'], 'examDate')
        changed.append('examDate')

    log_audit('UPDATE_EXAM_SESSION', 'ExamSession', exam_session.id, {"fields": changed})
    db.session.commit()
    return jsonify({"message": "Exam session updated successfully", "examSession": exam_session.to_dict()})


@exam_sessions.route('/<session_id>', methods=['DELETE'])
@login_required
@roles_required('ADMIN')
def delete_exam_session(session_id):
    exam_session = get_or_404(ExamSession, session_id, "Exam session not found")
    ensure_not_archived(exam_session, "Cannot delete archived exam sessions")
    if exam_session.attendances.count() > 0:
        raise ApiError("Cannot delete exam session with attendance records")

    Incident.query.filter_by(exam_session_id=exam_session.id).update(
        {Incident.exam_session_id: None}, synchronize_session=False
    )
    log_audit('DELETE_EXAM_SESSION', 'ExamSession', exam_session.id, {
        "batchQrCode": exam_session.batch_qr_code,
    })
    db.session.delete(exam_session)
    db.session.commit()
    return jsonify({"message": "Exam session deleted successfully"})


@exam_sessions.route('/<session_id>/status', methods=['PATCH'])
@login_required
@roles_required('ADMIN', 'INVIGILATOR', 'LECTURER')
def update_status(session_id):
    exam_session = get_or_404(ExamSession, session_id, "Exam session not found")
    ensure_not_archived(exam_session, "Cannot modify archived exam sessions")
    new_status = require_choice(json_body().get('status'), BATCH_STATUSES, 'status')

    previous = change_status(exam_session, new_status)
    db.session.commit()
    events.batch_status_updated(exam_session, previous)
    return jsonify({"message": "Status updated successfully", "examSession": exam_session.to_dict()})


@exam_sessions.route('/<session_id>/end', methods=['POST'])
@login_required
@roles_required('ADMIN', 'INVIGILATOR', 'LECTURER')
def end_exam_session(session_id):
    exam_session = get_or_404(ExamSession, session_id, "Exam session not found")
    ensure_not_archived(exam_session, "Cannot modify archived exam sessions")
    if exam_session.status != 'IN_PROGRESS':
        raise ApiError(
            f"Cannot end session. Current status is {exam_session.status}. "
            "Only IN_PROGRESS sessions can be ended."
        )

    from .incidents import create_system_incident

    now = utcnow()
    attendances = exam_session.attendances.all()
    auto_submitted = 0
    for att in attendances:
        if att.exit_time and att.status != 'SUBMITTED':
            att.status = 'SUBMITTED'
            att.submission_time = att.submission_time or now
            auto_submitted += 1
    submitted_count = sum(1 for att in attendances if att.status == 'SUBMITTED')

    previous = exam_session.status
    exam_session.status = 'SUBMITTED'
    custody = None
    if exam_session.transfers.count() == 0 and submitted_count > 0:
        custody = create_initial_custody(exam_session, current_user, submitted_count)

    incidents_created = []
    for att in attendances:
        if att.submission_time is None and att.exit_time is None:
            incident = create_system_incident(
                current_user.id,
                type='PROCEDURAL_VIOLATION',
                severity='LOW',
                title=f"Student entry recorded without submission - {att.student.index_number}",
                description=(
                    f"Student {att.student.full_name} ({att.student.index_number}) entered "
                    f"{exam_session.course_code} at {exam_session.venue} but no exit or script "
                    "submission was recorded before the session ended."
                ),
                location=exam_session.venue,
                student_id=att.student_id,
                exam_session_id=exam_session.id,
                attendance_id=att.id,
                extra={"source": "END_EXAM_SESSION", "entryTime": att.entry_time.isoformat()},
            )
            incidents_created.append(incident)

    log_audit('END_EXAM_SESSION', 'ExamSession', exam_session.id, {
        "previousStatus": previous,
        "submittedCount": submitted_count,
        "autoSubmitted": auto_submitted,
        "incidentsCreated": len(incidents_created),
    })
    db.session.commit()
    logger.info(
        "Exam session %s ended: %s submitted, %s incidents",
        exam_session.id, submitted_count, len(incidents_created),
    )

    events.batch_status_updated(exam_session, previous)
    for incident in incidents_created:
        events.incident_created(incident)

    return jsonify({
        "message": "Exam session ended successfully",
        "examSession": exam_session.to_dict(),
        "summary": {
            "totalAttendance": len(attendances),
            "submittedCount": submitted_count,
            "autoSubmitted": auto_submitted,
            "custodyTransferId": custody.id if custody else None,
            "incidentsCreated": [i.incident_number for i in incidents_created],
        },
    })


@exam_sessions.route('/<session_id>/qr-code', methods=['GET'])
@login_required
def batch_qr_code(session_id):
    exam_session = get_or_404(ExamSession, session_id, "Exam session not found")
    payload = batch_qr_payload(exam_session)
    return jsonify({"qrCode": qr_data_url(payload, border=2), "qrData": payload})


@exam_sessions.route('/<session_id>/manifest', methods=['GET'])
@login_required
def manifest(session_id):
    exam_session = get_or_404(ExamSession, session_id, "Exam session not found")
    return jsonify(build_manifest(exam_session))


def build_manifest(exam_session):
    attendances = (
        exam_session.attendances.join(Student)
        .order_by(Student.index_number)
        .all()
    )
    return {
        "examSession": exam_session.to_dict(),
        "statistics": {
            "totalStudents": len(attendances),
            "submitted": sum(1 for a in attendances if a.submission_time),
            "entryOnly": sum(1 for a in attendances if not a.exit_time and not a.submission_time),
            "exitWithoutSubmission": sum(1 for a in attendances if a.exit_time and not a.submission_time),
        },
        "attendances": [a.to_dict() for a in attendances],
        "transfers": [
            t.to_dict(with_session=False)
            for t in exam_session.transfers.order_by(BatchTransfer.requested_at)
        ],
        "generatedAt": utcnow().isoformat(),
    }


@exam_sessions.route('/<session_id>/attendance-summary', methods=['GET'])
@login_required
def attendance_summary(session_id):
    exam_session = get_or_404(ExamSession, session_id, "Exam session not found")
    counts = attendance_counts(exam_session)
    expected_ids = {e.student_id for e in exam_session.expected_students}
    present_ids = {a.student_id for a in exam_session.attendances}
    return jsonify({
        "examSessionId": exam_session.id,
        "status": exam_session.status,
        "expected": len(expected_ids),
        "present": len(present_ids),
        "absent": len(expected_ids - present_ids),
        "unexpected": len(present_ids - expected_ids) if expected_ids else 0,
        "submitted": counts.get('SUBMITTED', 0),
        "leftWithoutSubmitting": counts.get('LEFT_WITHOUT_SUBMITTING', 0),
        "stillPresent": counts.get('PRESENT', 0),
    })


# ==========================================================
# Expected students
# ==========================================================
@exam_sessions.route('/<session_id>/students', methods=['POST'])
@login_required
@roles_required('ADMIN', 'LECTURER')
def add_expected_students(session_id):
    exam_session = get_or_404(ExamSession, session_id, "Exam session not found")
    ensure_not_archived(exam_session, "Cannot modify archived exam sessions")

    data = json_body()
    entries = data.get('students')
    if entries is None and isinstance(data.get('indexNumbers'), list):
        entries = [{"indexNumber": n} for n in data['indexNumbers']]
    if not isinstance(entries, list) or not entries:
        raise ValidationError([{"field": "students", "message": "students must be a non-empty list"}])

    result = {"added": [], "alreadyAdded": [], "created": [], "notFound": []}
    existing = {e.student_id for e in exam_session.expected_students}
    for entry in entries:
        if not isinstance(entry, dict):
            entry = {"indexNumber": entry}
        index_number = _clean(entry.get('indexNumber'))
        if not index_number:
            continue
        student = Student.query.filter_by(index_number=index_number).first()
        if student is None:
            if all(_clean(entry.get(k)) for k in ('firstName', 'lastName', 'program')) and entry.get('level'):
                from .students import _create_student
                student = _create_student(entry)
                result["created"].append(index_number)
            else:
                result["notFound"].append(index_number)
                continue
        if student.id in existing:
            result["alreadyAdded"].append(index_number)
            continue
        db.session.add(ExamSessionStudent(exam_session_id=exam_session.id, student_id=student.id))
        existing.add(student.id)
        result["added"].append(index_number)

    log_audit('ADD_EXPECTED_STUDENTS', 'ExamSession', exam_session.id, {
        "added": len(result["added"]),
        "created": len(result["created"]),
        "notFound": len(result["notFound"]),
    })
    db.session.commit()
    return jsonify(dict(result, message=f"{len(result['added'])} students added to exam session"))


@exam_sessions.route('/<session_id>/students', methods=['GET'])
@login_required
def list_expected_students(session_id):
    exam_session = get_or_404(ExamSession, session_id, "Exam session not found")
    attendance_by_student = {a.student_id: a for a in exam_session.attendances}
    rows = (
        exam_session.expected_students.join(Student)
        .order_by(Student.index_number)
        .all()
    )
    students = []
    for row in rows:
        att = attendance_by_student.get(row.student_id)
        students.append(dict(
            row.student.summary(),
            addedAt=row.added_at.isoformat(),
            attendanceStatus=att.status if att else 'ABSENT',
        ))
    return jsonify({"examSessionId": exam_session.id, "students": students, "total": len(students)})


@exam_sessions.route('/<session_id>/students/<student_id>', methods=['DELETE'])
@login_required
@roles_required('ADMIN', 'LECTURER')
def remove_expected_student(session_id, student_id):
    exam_session = get_or_404(ExamSession, session_id, "Exam session not found")
    ensure_not_archived(exam_session, "Cannot modify archived exam sessions")
    row = ExamSessionStudent.query.filter_by(
        exam_session_id=exam_session.id, student_id=student_id
    ).first()
    if not row:
        raise ApiError("Student is not on this exam session's list", 404)
    db.session.delete(row)
    log_audit('REMOVE_EXPECTED_STUDENT', 'ExamSession', exam_session.id, {"studentId": student_id})
    db.session.commit()
    return jsonify({"message": "Student removed from exam session"})


# ==========================================================
# Archive
# ==========================================================
@exam_sessions.route('/<session_id>/archive', methods=['POST'])
@login_required
@roles_required('ADMIN')
def archive_exam_session(session_id):
    exam_session = get_or_404(ExamSession, session_id, "Exam session not found")
    if exam_session.is_archived:
        raise ApiError("Exam session is already archived")
    exam_session.is_archived = True
    exam_session.archived_at = utcnow()
    log_audit('ARCHIVE_EXAM_SESSION', 'ExamSession', exam_session.id, {"reason": json_body().get('reason')})
    db.session.commit()
    return jsonify({"message": "Exam session archived", "examSession": exam_session.to_dict()})


@exam_sessions.route('/<session_id>/unarchive', methods=['POST'])
@login_required
@roles_required('ADMIN')
def unarchive_exam_session(session_id):
    exam_session = get_or_404(ExamSession, session_id, "Exam session not found")
    if not exam_session.is_archived:
        raise ApiError("Exam session is not archived")
    exam_session.is_archived = False
    exam_session.archived_at = None
    log_audit('UNARCHIVE_EXAM_SESSION', 'ExamSession', exam_session.id)
    db.session.commit()
    return jsonify({"message": "Exam session unarchived", "examSession": exam_session.to_dict()})
