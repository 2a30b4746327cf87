# examtrack/attendance.py
import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from . import db, events
from .errors import ApiError
from .models import ATTENDANCE_STATUSES, ExamAttendance, ExamSession, Student, utcnow
from .security import roles_required
from .utils import ensure_not_archived, get_or_404, json_body, log_audit, paginate, require_choice, require_fields

attendance = Blueprint('attendance', __name__)
logger = logging.getLogger(__name__)

ARCHIVED_MESSAGE = "Cannot modify attendance for archived exam sessions"


def _load(data):
    require_fields(data, 'studentId', 'examSessionId')
    student = get_or_404(Student, data['studentId'], "Student not found")
    exam_session = get_or_404(ExamSession, data['examSessionId'], "Exam session not found")
    ensure_not_archived(exam_session, ARCHIVED_MESSAGE)
    return student, exam_session


def _existing(student, exam_session):
    return ExamAttendance.query.filter_by(
        student_id=student.id, exam_session_id=exam_session.id
    ).first()


@attendance.route('/entry', methods=['POST'])
@login_required
@roles_required('ADMIN', 'INVIGILATOR')
def record_entry():
    student, exam_session = _load(json_body())
    if exam_session.status not in ('NOT_STARTED', 'IN_PROGRESS'):
        raise ApiError("Cannot record attendance. Exam session has already ended or is not active")
    if _existing(student, exam_session):
        raise ApiError("Student has already entered this exam session")

    record = ExamAttendance(
        student_id=student.id,
        exam_session_id=exam_session.id,
        entry_time=utcnow(),
        status='PRESENT',
        recorded_by_id=current_user.id,
    )
    db.session.add(record)

    previous = exam_session.status
    if previous == 'NOT_STARTED':
        exam_session.status = 'IN_PROGRESS'
        log_audit('AUTO_UPDATE_SESSION_STATUS', 'ExamSession', exam_session.id, {
            "previousStatus": previous,
            "newStatus": 'IN_PROGRESS',
            "reason": "First student entry recorded",
        })

    db.session.flush()
    log_audit('RECORD_ENTRY', 'ExamAttendance', record.id, {
        "studentId": student.id,
        "indexNumber": student.index_number,
        "examSessionId": exam_session.id,
    })
    db.session.commit()

    events.attendance_recorded(record, 'entry')
    if previous != exam_session.status:
        events.batch_status_updated(exam_session, previous)
    return jsonify({"message": "Entry recorded successfully", "attendance": record.to_dict()}), 201


@attendance.route('/exit', methods=['POST'])
@login_required
@roles_required('ADMIN', 'INVIGILATOR')
def record_exit():
    student, exam_session = _load(json_body())
    record = _existing(student, exam_session)
    if not record:
        raise ApiError("No entry record found for this student", 404)
    if record.exit_time:
        raise ApiError("Student exit already recorded")

    record.exit_time = utcnow()
    record.status = 'SUBMITTED' if record.submission_time else 'LEFT_WITHOUT_SUBMITTING'
    log_audit('RECORD_EXIT', 'ExamAttendance', record.id, {
        "indexNumber": student.index_number,
        "status": record.status,
    })
    db.session.commit()
    events.attendance_recorded(record, 'exit')
    return jsonify({"message": "Exit recorded successfully", "attendance": record.to_dict()})


@attendance.route('/submission', methods=['POST'])
@login_required
@roles_required('ADMIN', 'INVIGILATOR')
def record_submission():
    student, exam_session = _load(json_body())
    record = _existing(student, exam_session)
    if not record:
        raise ApiError("No entry record found for this student", 404)
    if record.submission_time:
        raise ApiError("Script submission already recorded")

    record.submission_time = utcnow()
    record.status = 'SUBMITTED'
    log_audit('RECORD_SUBMISSION', 'ExamAttendance', record.id, {"indexNumber": student.index_number})
    db.session.commit()
    events.attendance_recorded(record, 'submission')
    return jsonify({"message": "Script submission recorded successfully", "attendance": record.to_dict()})


@attendance.route('/discrepancy', methods=['PATCH'])
@login_required
@roles_required('ADMIN', 'INVIGILATOR')
def update_discrepancy():
    data = json_body()
    require_fields(data, 'attendanceId', 'discrepancyNote')
    record = get_or_404(ExamAttendance, data['attendanceId'], "Attendance record not found")
    ensure_not_archived(record.exam_session, ARCHIVED_MESSAGE)

    record.discrepancy_note = data['discrepancyNote']
    log_audit('UPDATE_ATTENDANCE_DISCREPANCY', 'ExamAttendance', record.id, {
        "discrepancyNote": record.discrepancy_note,
    })
    db.session.commit()
    return jsonify({"message": "Discrepancy note updated", "attendance": record.to_dict()})


@attendance.route('', methods=['GET'])
@login_required
def list_attendance():
    query = ExamAttendance.query
    if request.args.get('examSessionId'):
        query = query.filter(ExamAttendance.exam_session_id == request.args['examSessionId'])
    if request.args.get('studentId'):
        query = query.filter(ExamAttendance.student_id == request.args['studentId'])
    if request.args.get('status'):
        status = require_choice(request.args['status'], ATTENDANCE_STATUSES, 'status')
        query = query.filter(ExamAttendance.status == status)
    query = query.order_by(ExamAttendance.entry_time.desc())
    return jsonify(paginate(query, 'attendances', default_limit=100))
