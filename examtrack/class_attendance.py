# examtrack/class_attendance.py
import json
import logging
import math
import secrets
from datetime import timedelta

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required
from sqlalchemy import func

from . import db, events
from .errors import ApiError, ValidationError
from .models import (
    CLASS_ATTENDANCE_STATUSES,
    RECORDING_STATUSES,
    AttendanceLink,
    ClassAttendance,
    ClassAttendanceRecord,
    Student,
    utcnow,
)
from .security import is_admin, roles_required
from .utils import (
    _clean,
    get_or_404,
    json_body,
    log_audit,
    paginate,
    parse_datetime,
    parse_int,
    require_choice,
    require_fields,
)

class_attendance = Blueprint('class_attendance', __name__)
logger = logging.getLogger(__name__)

RECORDER_ROLES = ('ADMIN', 'LECTURER', 'CLASS_REP')
EARTH_RADIUS_M = 6371000


def haversine_m(lat1, lng1, lat2, lng2):
    """Great-circle distance in metres."""
    p1, p2 = math.radians(lat1), math.radians(lat2)
    dp = math.radians(lat2 - lat1)
    dl = math.radians(lng2 - lng1)
    a = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _float(value, field, limit):
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError([{"field": field, "message": f"{field} must be a number"}])
    if not math.isfinite(number) or abs(number) > limit:
        raise ValidationError([{"field": field, "message": f"{field} must be between -{limit} and {limit}"}])
    return number


def _recording(record_id):
    return get_or_404(ClassAttendanceRecord, record_id, "Attendance session not found")


def _owner_or_admin(record):
    if record.user_id != current_user.id and not is_admin(current_user):
        raise ApiError("Only the session owner or an admin can do this", 403)


def _add_attendance(record, student, method, status='PRESENT', lecturer_confirmed=False, link_token=None):
    """Shared checks for every way a student gets marked present."""
    if record.status != 'IN_PROGRESS':
        raise ApiError("Session is not in progress")
    existing = ClassAttendance.query.filter_by(record_id=record.id, student_id=student.id).first()
    if existing:
        raise ApiError(
            f"Student {student.index_number} has already been recorded for this session",
            409,
            code="ALREADY_RECORDED",
            attendance=existing.to_dict(),
        )
    if record.total_students and record.students.count() >= record.total_students:
        raise ApiError(
            f"Attendance limit reached. Maximum {record.total_students} students expected for this session"
        )

    attendance = ClassAttendance(
        record_id=record.id,
        student_id=student.id,
        scan_time=utcnow(),
        status=status,
        verification_method=method,
        lecturer_confirmed=lecturer_confirmed,
        device_id=record.device_id,
        link_token_used=link_token,
    )
    db.session.add(attendance)
    db.session.flush()
    return attendance


def student_from_qr(raw):
    """Resolve a scanned payload: the student QR JSON, or a stored payload verbatim."""
    raw = _clean(raw)
    if not raw:
        raise ValidationError([{"field": "qrCode", "message": "qrCode is required"}])
    student = None
    try:
        payload = json.loads(raw)
    except ValueError:
        payload = None
    if isinstance(payload, dict) and payload.get('type') == 'STUDENT':
        if payload.get('id'):
            student = db.session.get(Student, payload['id'])
        if student is None and payload.get('indexNumber'):
            student = Student.query.filter_by(index_number=payload['indexNumber']).first()
    if student is None:
        student = Student.query.filter_by(qr_code=raw).first()
    if student is None:
        raise ApiError("Student not found with this QR code", 404)
    return student


# ==========================================================
# Recording sessions
# ==========================================================
@class_attendance.route('/sessions/start', methods=['POST'])
@login_required
@roles_required(*RECORDER_ROLES)
def start_recording():
    data = json_body()
    require_fields(data, 'deviceId', 'courseCode', 'courseName')
    device_id = _clean(data['deviceId'])
    if ClassAttendanceRecord.query.filter_by(device_id=device_id, status='IN_PROGRESS').first():
        raise ApiError("Device already has an active session")

    record = ClassAttendanceRecord(
        device_id=device_id,
        device_name=_clean(data.get('deviceName')) or None,
        user_id=current_user.id,
        course_code=_clean(data['courseCode']).upper(),
        course_name=_clean(data['courseName']),
        lecturer_name=_clean(data.get('lecturerName')) or current_user.full_name,
        notes=_clean(data.get('notes')) or None,
        total_students=parse_int(data.get('totalRegisteredStudents'), 'totalRegisteredStudents', minimum=0, default=0),
        start_time=utcnow(),
        status='IN_PROGRESS',
    )
    db.session.add(record)
    db.session.flush()
    log_audit('START_CLASS_ATTENDANCE', 'ClassAttendanceRecord', record.id, {
        "courseCode": record.course_code,
        "deviceId": device_id,
    })
    db.session.commit()
    events.recording_started(record)
    return jsonify({"message": "Attendance session started", "session": record.to_dict()}), 201


@class_attendance.route('/sessions/<record_id>/end', methods=['POST'])
@login_required
@roles_required(*RECORDER_ROLES)
def end_recording(record_id):
    record = _recording(record_id)
    _owner_or_admin(record)
    if record.status != 'IN_PROGRESS':
        raise ApiError("Session is not in progress")

    record.status = 'COMPLETED'
    record.end_time = utcnow()
    if 'notes' in json_body():
        record.notes = _clean(json_body()['notes']) or record.notes
    deactivated = 0
    for link in record.links.filter_by(is_active=True):
        link.is_active = False
        link.deactivated_at = record.end_time
        deactivated += 1

    summary = {
        "totalAttended": record.students.count(),
        "expected": record.total_students,
        "durationMinutes": record.duration_minutes,
        "linksDeactivated": deactivated,
    }
    log_audit('END_CLASS_ATTENDANCE', 'ClassAttendanceRecord', record.id, summary)
    db.session.commit()
    events.recording_ended(record, summary)
    return jsonify({"message": "Attendance session ended", "session": record.to_dict(), "summary": summary})


@class_attendance.route('/sessions/active', methods=['GET'])
@login_required
@roles_required(*RECORDER_ROLES)
def active_recordings():
    query = ClassAttendanceRecord.query.filter_by(status='IN_PROGRESS')
    if not is_admin(current_user):
        query = query.filter_by(user_id=current_user.id)
    if request.args.get('deviceId'):
        query = query.filter_by(device_id=request.args['deviceId'])
    rows = query.order_by(ClassAttendanceRecord.start_time.desc()).all()
    return jsonify({"sessions": [r.to_dict() for r in rows]})


@class_attendance.route('/sessions/<record_id>', methods=['GET'])
@login_required
@roles_required(*RECORDER_ROLES)
def get_recording(record_id):
    record = _recording(record_id)
    return jsonify({"session": record.to_dict(with_students=True)})


@class_attendance.route('/sessions/<record_id>/live-stats', methods=['GET'])
@login_required
@roles_required(*RECORDER_ROLES)
def live_stats(record_id):
    record = _recording(record_id)
    rows = (
        db.session.query(ClassAttendance.verification_method, func.count(ClassAttendance.id))
        .filter(ClassAttendance.record_id == record.id)
        .group_by(ClassAttendance.verification_method)
        .all()
    )
    by_method = {method: count for method, count in rows}
    attended = sum(by_method.values())
    elapsed = ((record.end_time or utcnow()) - record.start_time).total_seconds() / 60
    latest = record.students.order_by(ClassAttendance.scan_time.desc()).first()
    return jsonify({
        "sessionId": record.id,
        "status": record.status,
        "attended": attended,
        "expected": record.total_students,
        "attendanceRate": round(attended / record.total_students * 100, 2) if record.total_students else None,
        "byMethod": by_method,
        "elapsedMinutes": round(elapsed),
        "lastScan": latest.to_dict() if latest else None,
    })


# ==========================================================
# Marking attendance
# ==========================================================
@class_attendance.route('/sessions/<record_id>/scan', methods=['POST'])
@login_required
@roles_required(*RECORDER_ROLES)
def record_by_qr(record_id):
    record = _recording(record_id)
    student = student_from_qr(json_body().get('qrCode'))
    attendance = _add_attendance(record, student, 'QR_CODE', lecturer_confirmed=True)
    log_audit('RECORD_CLASS_ATTENDANCE', 'ClassAttendanceRecord', record.id, {
        "studentId": student.id,
        "method": 'QR_CODE',
    })
    db.session.commit()
    events.student_scanned(record, attendance)
    return jsonify({"message": "Attendance recorded", "attendance": attendance.to_dict()}), 201


@class_attendance.route('/sessions/<record_id>/manual', methods=['POST'])
@login_required
@roles_required(*RECORDER_ROLES)
def record_by_index(record_id):
    record = _recording(record_id)
    data = json_body()
    require_fields(data, 'indexNumber')
    student = Student.query.filter_by(index_number=_clean(data['indexNumber'])).first()
    if not student:
        raise ApiError("Student not found", 404)
    status = require_choice(data.get('status') or 'PRESENT', CLASS_ATTENDANCE_STATUSES, 'status')
    attendance = _add_attendance(record, student, 'MANUAL_INDEX', status=status, lecturer_confirmed=True)
    log_audit('RECORD_CLASS_ATTENDANCE', 'ClassAttendanceRecord', record.id, {
        "studentId": student.id,
        "method": 'MANUAL_INDEX',
    })
    db.session.commit()
    events.student_scanned(record, attendance)
    return jsonify({"message": "Attendance recorded", "attendance": attendance.to_dict()}), 201


# ==========================================================
# History and statistics
# ==========================================================
@class_attendance.route('/history', methods=['GET'])
@login_required
@roles_required(*RECORDER_ROLES)
def recording_history():
    args = request.args
    query = ClassAttendanceRecord.query
    if not is_admin(current_user):
        query = query.filter_by(user_id=current_user.id)
    if args.get('courseCode'):
        query = query.filter(ClassAttendanceRecord.course_code == args['courseCode'].upper())
    if args.get('status'):
        query = query.filter(ClassAttendanceRecord.status == require_choice(
            args['status'], RECORDING_STATUSES, 'status'))
    if args.get('deviceId'):
        query = query.filter(ClassAttendanceRecord.device_id == args['deviceId'])
    if args.get('dateFrom'):
        query = query.filter(ClassAttendanceRecord.start_time >= parse_datetime(args['dateFrom'], 'dateFrom'))
    if args.get('dateTo'):
        query = query.filter(ClassAttendanceRecord.start_time <= parse_datetime(args['dateTo'], 'dateTo'))
    query = query.order_by(ClassAttendanceRecord.start_time.desc())
    return jsonify(paginate(query, 'sessions'))


@class_attendance.route('/students/<student_id>/history', methods=['GET'])
@login_required
@roles_required(*RECORDER_ROLES)
def student_history(student_id):
    student = get_or_404(Student, student_id, "Student not found")
    rows = student.class_attendances.order_by(ClassAttendance.scan_time.desc()).all()
    return jsonify({
        "student": student.summary(),
        "totalSessions": len(rows),
        "attendances": [
            dict(a.to_dict(), session={
                "id": a.record.id,
                "courseCode": a.record.course_code,
                "courseName": a.record.course_name,
                "startTime": a.record.start_time.isoformat(),
            })
            for a in rows
        ],
    })


@class_attendance.route('/stats', methods=['GET'])
@login_required
@roles_required(*RECORDER_ROLES)
def attendance_stats():
    records = ClassAttendanceRecord.query
    if not is_admin(current_user):
        records = records.filter_by(user_id=current_user.id)
    records = records.all()
    completed = [r for r in records if r.status == 'COMPLETED']
    attended = [r.students.count() for r in records]
    by_course = {}
    for record, count in zip(records, attended):
        course = by_course.setdefault(record.course_code, {
            "courseCode": record.course_code,
            "courseName": record.course_name,
            "sessions": 0,
            "totalAttendance": 0,
        })
        course["sessions"] += 1
        course["totalAttendance"] += count
    return jsonify({
        "totalSessions": len(records),
        "activeSessions": sum(1 for r in records if r.status == 'IN_PROGRESS'),
        "completedSessions": len(completed),
        "totalAttendance": sum(attended),
        "averageAttendance": round(sum(attended) / len(records), 2) if records else 0,
        "averageDurationMinutes": (
            round(sum(r.duration_minutes for r in completed) / len(completed), 2) if completed else 0
        ),
        "byCourse": sorted(by_course.values(), key=lambda c: c["courseCode"]),
    })


# ==========================================================
# Attendance links
# ==========================================================
def _link_url_base():
    return current_app.config['APP_URL'].rstrip('/')


@class_attendance.route('/sessions/<record_id>/links', methods=['POST'])
@login_required
@roles_required('ADMIN', 'LECTURER')
def generate_link(record_id):
    record = _recording(record_id)
    _owner_or_admin(record)
    if record.status != 'IN_PROGRESS':
        raise ApiError("Session is not in progress")

    data = json_body()
    minutes = parse_int(data.get('expiresInMinutes'), 'expiresInMinutes', minimum=5, maximum=120, default=30)
    max_uses = None
    if data.get('maxUses') is not None:
        max_uses = parse_int(data['maxUses'], 'maxUses', minimum=1)

    geolocation = None
    geo = data.get('geolocation')
    if isinstance(geo, dict) and geo:
        radius = parse_int(geo.get('radius'), 'geolocation.radius', minimum=10, maximum=5000, default=100)
        geolocation = {
            "lat": _float(geo.get('lat', geo.get('latitude')), 'geolocation.lat', 90),
            "lng": _float(geo.get('lng', geo.get('longitude')), 'geolocation.lng', 180),
            "radius": radius,
        }

    now = utcnow()
    for old in record.links.filter_by(is_active=True):
        old.is_active = False
        old.deactivated_at = now

    link = AttendanceLink(
        record_id=record.id,
        link_token=secrets.token_hex(16),
        created_by_id=current_user.id,
        expires_at=now + timedelta(minutes=minutes),
        max_uses=max_uses,
        geolocation=geolocation,
        is_active=True,
    )
    db.session.add(link)
    db.session.flush()
    log_audit('GENERATE_ATTENDANCE_LINK', 'AttendanceLink', link.id, {
        "recordId": record.id,
        "expiresInMinutes": minutes,
        "maxUses": max_uses,
        "geofenced": geolocation is not None,
    })
    db.session.commit()
    return jsonify({"message": "Attendance link generated", "link": link.to_dict(_link_url_base())}), 201


@class_attendance.route('/sessions/<record_id>/links', methods=['GET'])
@login_required
@roles_required(*RECORDER_ROLES)
def list_links(record_id):
    record = _recording(record_id)
    now = utcnow()
    links = (
        record.links
        .filter(AttendanceLink.is_active.is_(True), AttendanceLink.expires_at > now)
        .order_by(AttendanceLink.created_at.desc())
        .all()
    )
    return jsonify({"links": [link.to_dict(_link_url_base()) for link in links]})


@class_attendance.route('/links/<link_id>', methods=['DELETE'])
@login_required
@roles_required('ADMIN', 'LECTURER')
def deactivate_link(link_id):
    link = get_or_404(AttendanceLink, link_id, "Attendance link not found")
    _owner_or_admin(link.record)
    link.is_active = False
    link.deactivated_at = utcnow()
    log_audit('DEACTIVATE_ATTENDANCE_LINK', 'AttendanceLink', link.id)
    db.session.commit()
    return jsonify({"message": "Attendance link deactivated"})


def check_link(token, latitude=None, longitude=None):
    """Validate a public link; returns ``(link, distance_m)``."""
    link = AttendanceLink.query.filter_by(link_token=_clean(token)).first() if token else None
    if link is None or not link.is_active:
        raise ApiError("Invalid or expired attendance link", 404)
    if utcnow() > link.expires_at:
        raise ApiError("This attendance link has expired")
    if link.max_uses is not None and link.uses_count >= link.max_uses:
        raise ApiError("This attendance link has reached its maximum usage limit")
    if link.record.status != 'IN_PROGRESS':
        raise ApiError("This attendance session has ended")

    distance = None
    fence = link.geolocation
    if fence:
        if latitude in (None, '') or longitude in (None, ''):
            raise ApiError("Location validation is required for this attendance session", requiresLocation=True)
        distance = haversine_m(
            fence['lat'], fence['lng'],
            _float(latitude, 'latitude', 90), _float(longitude, 'longitude', 180),
        )
        if distance > fence['radius']:
            raise ApiError(
                f"You must be within {fence['radius']}m of the venue to mark attendance",
                403,
                distance=round(distance),
            )
    return link, distance


@class_attendance.route('/links/<token>/validate', methods=['GET'])
def validate_link(token):
    link, distance = check_link(token, request.args.get('latitude'), request.args.get('longitude'))
    record = link.record
    return jsonify({
        "valid": True,
        "session": {
            "id": record.id,
            "courseCode": record.course_code,
            "courseName": record.course_name,
            "lecturerName": record.lecturer_name,
            "startTime": record.start_time.isoformat(),
        },
        "expiresAt": link.expires_at.isoformat(),
        "requiresLocation": bool(link.geolocation),
        "distance": round(distance) if distance is not None else None,
    })


@class_attendance.route('/self-mark', methods=['POST'])
def self_mark():
    data = json_body()
    require_fields(data, 'token', 'indexNumber')
    link, _ = check_link(data['token'], data.get('latitude'), data.get('longitude'))
    student = Student.query.filter_by(index_number=_clean(data['indexNumber'])).first()
    if not student:
        raise ApiError("Student not found", 404)

    record = link.record
    attendance = _add_attendance(record, student, 'LINK', link_token=link.link_token)
    link.uses_count += 1
    log_audit('SELF_MARK_ATTENDANCE', 'ClassAttendanceRecord', record.id, {
        "studentId": student.id,
        "linkId": link.id,
    })
    db.session.commit()
    logger.info("Student %s self-marked on %s", student.index_number, record.id)
    events.student_scanned(record, attendance)
    return jsonify({
        "message": "Attendance marked successfully",
        "attendance": attendance.to_dict(),
        "session": {"courseCode": record.course_code, "courseName": record.course_name},
    }), 201
