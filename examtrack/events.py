# examtrack/events.py
"""Socket.IO server: authenticated rooms plus the domain event emitters."""
import logging

from flask import request, session
from flask_socketio import emit, join_room, leave_room

from . import socketio
from .errors import ApiError

logger = logging.getLogger(__name__)

ALL_STAFF_ROLES = ('ADMIN', 'FACULTY_OFFICER', 'DEPARTMENT_HEAD', 'LECTURER', 'INVIGILATOR')
OVERSIGHT_ROLES = ('DEPARTMENT_HEAD', 'FACULTY_OFFICER', 'ADMIN')


def user_room(user_id):
    return f"user:{user_id}"


def role_room(role):
    return f"role:{role}"


def recording_room(record_id):
    return f"attendance:session:{record_id}"


# ==========================================================
# Connection handling
# ==========================================================
@socketio.on('connect')
def on_connect(auth=None):
    from .security import user_from_token

    token = (auth or {}).get('token') if isinstance(auth, dict) else None
    if not token:
        logger.info("Socket %s refused: no token", request.sid)
        return False
    try:
        user, _ = user_from_token(token)
    except ApiError as err:
        logger.info("Socket %s refused: %s", request.sid, err.message)
        return False

    session['user_id'] = user.id
    session['role'] = user.role_name
    join_room(user_room(user.id))
    join_room(role_room(user.role_name))
    logger.info("Socket connected: user %s (%s)", user.id, user.role_name)
    emit('connected', {"userId": user.id, "role": user.role_name})


@socketio.on('disconnect')
def on_disconnect(*args):
    logger.debug("Socket disconnected: user %s", session.get('user_id'))


def _record_id(data):
    if isinstance(data, dict):
        return data.get('sessionId') or data.get('recordId')
    return data


@socketio.on('attendance:joinSession')
def on_join_recording(data):
    record_id = _record_id(data)
    if not record_id:
        return
    join_room(recording_room(record_id))
    emit('attendance:joinedSession', {"sessionId": record_id})


@socketio.on('attendance:leaveSession')
def on_leave_recording(data):
    record_id = _record_id(data)
    if record_id:
        leave_room(recording_room(record_id))


@socketio.on('ping')
def on_ping(*args):
    emit('pong')


# ==========================================================
# Emit helpers
# ==========================================================
def _emit(event, data, room=None):
    try:
        if room is None:
            socketio.emit(event, data)
        else:
            socketio.emit(event, data, to=room)
    except Exception:
        logger.exception("Failed to emit %s to %s", event, room or "all")


def emit_to_user(user_id, event, data):
    if user_id:
        _emit(event, data, user_room(user_id))


def emit_to_role(role, event, data):
    _emit(event, data, role_room(role))


def emit_to_roles(roles, event, data):
    for role in roles:
        emit_to_role(role, event, data)


def emit_to_all(event, data):
    _emit(event, data)


def emit_to_recording(record_id, event, data):
    _emit(event, data, recording_room(record_id))


# --------------------------
# Batch transfers
# --------------------------
def transfer_requested(transfer):
    data = transfer.to_dict()
    emit_to_user(transfer.to_handler_id, 'transfer:requested', data)
    emit_to_role('ADMIN', 'transfer:requested', data)


def transfer_confirmed(transfer):
    data = transfer.to_dict()
    emit_to_user(transfer.from_handler_id, 'transfer:confirmed', data)
    emit_to_role('ADMIN', 'transfer:confirmed', data)


def transfer_rejected(transfer_data, reason=None):
    data = dict(transfer_data, reason=reason)
    emit_to_user(transfer_data.get('fromHandlerId'), 'transfer:rejected', data)


def transfer_updated(transfer):
    data = transfer.to_dict()
    emit_to_user(transfer.from_handler_id, 'transfer:updated', data)
    emit_to_user(transfer.to_handler_id, 'transfer:updated', data)


# --------------------------
# Exam sessions and attendance
# --------------------------
def batch_created(exam_session):
    emit_to_roles(('ADMIN', 'FACULTY_OFFICER'), 'batch:created', exam_session.to_dict())


def batch_status_updated(exam_session, previous_status):
    data = dict(exam_session.summary(), previousStatus=previous_status)
    emit_to_roles(ALL_STAFF_ROLES, 'batch:status_updated', data)


def attendance_recorded(attendance, kind):
    data = dict(attendance.to_dict(), kind=kind)
    emit_to_roles(('ADMIN', 'INVIGILATOR'), 'attendance:recorded', data)


# --------------------------
# Incidents
# --------------------------
def incident_created(incident):
    data = incident.to_dict()
    emit_to_role('ADMIN', 'incident:created', data)
    if incident.assignee_id:
        emit_to_user(incident.assignee_id, 'incident:assigned', data)


def incident_assigned(incident):
    emit_to_user(incident.assignee_id, 'incident:assigned', incident.to_dict())


def _incident_parties(incident, event, data):
    for user_id in {incident.reporter_id, incident.assignee_id}:
        emit_to_user(user_id, event, data)


def incident_updated(incident):
    _incident_parties(incident, 'incident:updated', incident.to_dict())


def incident_status_changed(incident, previous_status):
    data = dict(incident.to_dict(), previousStatus=previous_status)
    _incident_parties(incident, 'incident:status_changed', data)
    if incident.status == 'ESCALATED':
        emit_to_roles(OVERSIGHT_ROLES, 'incident:escalated', data)
    elif incident.status == 'RESOLVED':
        emit_to_user(incident.reporter_id, 'incident:resolved', data)


def incident_comment_added(incident, comment):
    data = {"incidentId": incident.id, "comment": comment.to_dict()}
    for user_id in {incident.reporter_id, incident.assignee_id} - {comment.user_id}:
        emit_to_user(user_id, 'incident:comment_added', data)


# --------------------------
# Class attendance
# --------------------------
def recording_started(record):
    data = record.to_dict()
    emit_to_user(record.user_id, 'class_attendance:recording_started', data)
    emit_to_role('ADMIN', 'class_attendance:recording_started', data)


def recording_ended(record, summary):
    data = dict(record.to_dict(), summary=summary)
    emit_to_recording(record.id, 'class_attendance:recording_ended', data)
    emit_to_user(record.user_id, 'class_attendance:recording_ended', data)


def student_scanned(record, attendance):
    data = {
        "recordId": record.id,
        "attendance": attendance.to_dict(),
        "attendedCount": record.students.count(),
    }
    emit_to_recording(record.id, 'class_attendance:student_scanned', data)
