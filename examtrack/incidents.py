# examtrack/incidents.py
import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required
from sqlalchemy import or_

from . import db, events
from .errors import ApiError, ValidationError
from .models import (
    INCIDENT_SEVERITIES,
    INCIDENT_STATUSES,
    INCIDENT_TYPES,
    ExamAttendance,
    ExamSession,
    Incident,
    IncidentComment,
    IncidentStatusHistory,
    IncidentTemplate,
    Student,
    User,
    utcnow,
)
from .security import is_admin, roles_required
from .utils import (
    _clean,
    ensure_not_archived,
    get_or_404,
    json_body,
    log_audit,
    paginate,
    parse_bool,
    parse_datetime,
    require_choice,
    require_fields,
)

incidents = Blueprint('incidents', __name__)
logger = logging.getLogger(__name__)

OVERSIGHT_ROLES = ('DEPARTMENT_HEAD', 'FACULTY_OFFICER')
CLOSED_STATUSES = ('RESOLVED', 'CLOSED')

DEFAULT_TEMPLATES = (
    ('MALPRACTICE', "Student caught cheating during examination",
     "A student was seen copying from another candidate or using unauthorised material during the paper."),
    ('MALPRACTICE', "Unauthorized communication between students",
     "Candidates were observed talking or passing notes to each other while the examination was in progress."),
    ('MALPRACTICE', "Student using mobile phone during examination",
     "A candidate was found with a mobile phone in use inside the examination venue."),
    ('MALPRACTICE', "Student impersonation suspected",
     "The person sitting the paper may not be the registered candidate; identity could not be confirmed."),
    ('STUDENT_ILLNESS', "Student taken ill during examination",
     "A candidate became unwell during the paper and needed attention or had to leave the venue."),
    ('STUDENT_ILLNESS', "Student reports illness before examination",
     "A candidate reported being unwell before the start of the paper and asked for accommodation or deferral."),
    ('DAMAGED_SCRIPT', "Examination script damaged by student",
     "A candidate's script was torn, soiled or otherwise damaged so that parts are hard to read."),
    ('DAMAGED_SCRIPT', "Script damaged during transport",
     "Scripts were damaged while being moved between the venue, storage and the marking office."),
    ('MISSING_SCRIPT', "Script missing from batch",
     "A script recorded as submitted could not be found in the batch at hand-over."),
    ('VENUE_ISSUE', "Power outage during examination",
     "Power failed in the venue during the paper and the examination was paused."),
    ('VENUE_ISSUE', "External noise disrupting examination",
     "Noise from outside the venue disturbed candidates while the paper was being written."),
    ('LATE_SUBMISSION', "Script submitted after time was called",
     "A candidate handed in the script after the invigilator announced the end of the paper."),
    ('PROCEDURAL_VIOLATION', "Incorrect examination procedures followed",
     "Examination procedures were not followed as required, which may affect the validity of the paper."),
    ('PROCEDURAL_VIOLATION', "Timing irregularities in examination",
     "The paper started late or ended early without authorisation."),
    ('OTHER', "Technical issue during examination",
     "A technical problem affected the smooth conduct of the examination."),
)


def next_incident_number():
    prefix = f"INC-{utcnow().strftime('%Y%m%d')}-"
    latest = (
        Incident.query
        .filter(Incident.incident_number.like(f"{prefix}%"))
        .order_by(Incident.incident_number.desc())
        .first()
    )
    sequence = int(latest.incident_number.rsplit('-', 1)[1]) + 1 if latest else 1
    return f"{prefix}{sequence:04d}"


def _open_incident(reporter_id, **fields):
    incident = Incident(
        incident_number=next_incident_number(),
        status='REPORTED',
        reporter_id=reporter_id,
        **fields
    )
    db.session.add(incident)
    db.session.flush()
    db.session.add(IncidentStatusHistory(
        incident_id=incident.id,
        from_status=None,
        to_status='REPORTED',
        changed_by_id=reporter_id,
        reason="Incident created",
    ))
    return incident


def create_system_incident(reporter_id, **fields):
    """
    Raise an incident on behalf of the system (session end, count mismatch).
    The caller commits and emits events.
    """
    return _open_incident(reporter_id, auto_created=True, **fields)


# ==========================================================
# Access control
# ==========================================================
def visible_incidents(user):
    query = Incident.query
    if is_admin(user):
        return query
    if user.role_name in OVERSIGHT_ROLES:
        return query.filter(or_(
            Incident.is_confidential.is_(False),
            Incident.reporter_id == user.id,
            Incident.assignee_id == user.id,
        ))
    return query.filter(or_(Incident.reporter_id == user.id, Incident.assignee_id == user.id))


def can_view(user, incident):
    if is_admin(user) or user.id in (incident.reporter_id, incident.assignee_id):
        return True
    return user.role_name in OVERSIGHT_ROLES and not incident.is_confidential


def can_modify(user, incident):
    return (
        is_admin(user)
        or user.id in (incident.reporter_id, incident.assignee_id)
        or user.role_name in OVERSIGHT_ROLES
    )


def get_viewable(incident_id):
    incident = get_or_404(Incident, incident_id, "Incident not found")
    if not can_view(current_user, incident):
        raise ApiError("You do not have access to this incident", 403)
    return incident


def _modifiable(incident_id):
    incident = get_viewable(incident_id)
    if not can_modify(current_user, incident):
        raise ApiError("You do not have permission to modify this incident", 403)
    return incident


def _text(data, field, minimum):
    value = _clean(data.get(field))
    if len(value) < minimum:
        raise ValidationError([{"field": field, "message": f"{field} must be at least {minimum} characters"}])
    return value


def _history(incident, from_status, to_status, reason):
    db.session.add(IncidentStatusHistory(
        incident_id=incident.id,
        from_status=from_status,
        to_status=to_status,
        changed_by_id=current_user.id,
        reason=reason,
    ))


def _active_user(user_id, message="Assignee not found"):
    user = db.session.get(User, user_id) if user_id else None
    if not user or not user.is_active:
        raise ApiError(message, 404)
    return user


# ==========================================================
# Create / List
# ==========================================================
@incidents.route('', methods=['POST'])
@login_required
def create_incident():
    data = json_body()
    require_fields(data, 'type', 'title', 'description')
    incident_type = require_choice(data.get('type'), INCIDENT_TYPES, 'type')
    severity = require_choice(data.get('severity') or 'MEDIUM', INCIDENT_SEVERITIES, 'severity')
    title = _text(data, 'title', 3)
    description = _text(data, 'description', 10)

    exam_session = None
    if data.get('examSessionId'):
        exam_session = get_or_404(ExamSession, data['examSessionId'], "Exam session not found")
        ensure_not_archived(exam_session, "Cannot report incidents for archived exam sessions")
    if data.get('studentId'):
        get_or_404(Student, data['studentId'], "Student not found")
    if data.get('attendanceId'):
        get_or_404(ExamAttendance, data['attendanceId'], "Attendance record not found")
    assignee = _active_user(data['assigneeId']) if data.get('assigneeId') else None

    confidential = parse_bool(data.get('isConfidential'))
    if confidential is None:
        confidential = incident_type == 'MALPRACTICE'

    incident = _open_incident(
        current_user.id,
        type=incident_type,
        severity=severity,
        title=title,
        description=description,
        location=_clean(data.get('location')) or None,
        student_id=data.get('studentId') or None,
        exam_session_id=exam_session.id if exam_session else None,
        attendance_id=data.get('attendanceId') or None,
        incident_date=parse_datetime(data['incidentDate'], 'incidentDate') if data.get('incidentDate') else utcnow(),
        is_confidential=confidential,
        extra=data.get('metadata') if isinstance(data.get('metadata'), dict) else None,
    )

    if assignee:
        incident.assignee_id = assignee.id
        incident.assigned_at = utcnow()
        incident.status = 'UNDER_INVESTIGATION'
        _history(incident, 'REPORTED', 'UNDER_INVESTIGATION', "Initial assignment")

    log_audit('CREATE_INCIDENT', 'Incident', incident.id, {
        "incidentNumber": incident.incident_number,
        "type": incident_type,
        "severity": severity,
    })
    db.session.commit()
    logger.info("Incident %s reported by %s", incident.incident_number, current_user.id)
    events.incident_created(incident)
    return jsonify({"message": "Incident reported successfully", "incident": incident.to_dict(detail=True)}), 201


def apply_filters(query, args):
    for arg, column, choices in (
        ('type', Incident.type, INCIDENT_TYPES),
        ('severity', Incident.severity, INCIDENT_SEVERITIES),
        ('status', Incident.status, INCIDENT_STATUSES),
    ):
        if args.get(arg):
            query = query.filter(column == require_choice(args[arg], choices, arg))
    for arg, column in (
        ('reporterId', Incident.reporter_id),
        ('assigneeId', Incident.assignee_id),
        ('examSessionId', Incident.exam_session_id),
        ('studentId', Incident.student_id),
    ):
        if args.get(arg):
            query = query.filter(column == args[arg])
    if args.get('search'):
        like = f"%{_clean(args['search'])}%"
        query = query.filter(or_(
            Incident.title.ilike(like),
            Incident.description.ilike(like),
            Incident.incident_number.ilike(like),
        ))
    if args.get('dateFrom'):
        query = query.filter(Incident.reported_at >= parse_datetime(args['dateFrom'], 'dateFrom'))
    if args.get('dateTo'):
        query = query.filter(Incident.reported_at <= parse_datetime(args['dateTo'], 'dateTo'))
    confidential = parse_bool(args.get('isConfidential'))
    if confidential is not None:
        query = query.filter(Incident.is_confidential == confidential)
    return query


@incidents.route('', methods=['GET'])
@login_required
def list_incidents():
    query = apply_filters(visible_incidents(current_user), request.args)
    query = query.order_by(Incident.reported_at.desc())
    return jsonify(paginate(query, 'incidents'))


@incidents.route('/statistics', methods=['GET'])
@login_required
def statistics():
    base = apply_filters(visible_incidents(current_user), request.args)
    rows = base.all()
    today = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)

    def tally(attr):
        counts = {}
        for row in rows:
            key = getattr(row, attr)
            counts[key] = counts.get(key, 0) + 1
        return counts

    resolved = [r for r in rows if r.resolved_at]
    avg_hours = 0
    if resolved:
        total = sum((r.resolved_at - r.reported_at).total_seconds() for r in resolved)
        avg_hours = round(total / len(resolved) / 3600, 2)

    return jsonify({
        "total": len(rows),
        "byType": tally('type'),
        "bySeverity": tally('severity'),
        "byStatus": tally('status'),
        "openIncidents": sum(1 for r in rows if r.status not in CLOSED_STATUSES),
        "resolvedToday": sum(1 for r in resolved if r.resolved_at >= today),
        "avgResolutionTime": avg_hours,
    })


# ==========================================================
# Templates
# ==========================================================
def seed_default_templates(created_by_id=None):
    existing = {t.title for t in IncidentTemplate.query.all()}
    added = 0
    for incident_type, title, description in DEFAULT_TEMPLATES:
        if title in existing:
            continue
        db.session.add(IncidentTemplate(
            type=incident_type,
            title=title,
            description=description,
            created_by_id=created_by_id,
        ))
        added += 1
    db.session.commit()
    return added


@incidents.route('/templates', methods=['GET'])
@login_required
def list_templates():
    query = IncidentTemplate.query.filter_by(is_active=True)
    if request.args.get('type'):
        query = query.filter(IncidentTemplate.type == request.args['type'])
    rows = query.order_by(IncidentTemplate.type, IncidentTemplate.title).all()
    return jsonify({"templates": [t.to_dict() for t in rows]})


@incidents.route('/templates/<template_id>', methods=['GET'])
@login_required
def get_template(template_id):
    template = get_or_404(IncidentTemplate, template_id, "Template not found")
    return jsonify({"template": template.to_dict()})


@incidents.route('/templates', methods=['POST'])
@login_required
@roles_required('ADMIN', 'FACULTY_OFFICER')
def create_template():
    data = json_body()
    require_fields(data, 'type', 'title', 'description')
    template = IncidentTemplate(
        type=require_choice(data['type'], INCIDENT_TYPES, 'type'),
        title=_text(data, 'title', 3),
        description=_text(data, 'description', 10),
        created_by_id=current_user.id,
    )
    db.session.add(template)
    db.session.flush()
    log_audit('CREATE_INCIDENT_TEMPLATE', 'IncidentTemplate', template.id, {"title": template.title})
    db.session.commit()
    return jsonify({"message": "Template created", "template": template.to_dict()}), 201


@incidents.route('/templates/<template_id>', methods=['PATCH'])
@login_required
@roles_required('ADMIN', 'FACULTY_OFFICER')
def update_template(template_id):
    template = get_or_404(IncidentTemplate, template_id, "Template not found")
    data = json_body()
    if 'type' in data:
        template.type = require_choice(data['type'], INCIDENT_TYPES, 'type')
    if 'title' in data:
        template.title = _text(data, 'title', 3)
    if 'description' in data:
        template.description = _text(data, 'description', 10)
    if 'isActive' in data:
        template.is_active = bool(parse_bool(data['isActive']))
    log_audit('UPDATE_INCIDENT_TEMPLATE', 'IncidentTemplate', template.id)
    db.session.commit()
    return jsonify({"message": "Template updated", "template": template.to_dict()})


@incidents.route('/templates/<template_id>', methods=['DELETE'])
@login_required
@roles_required('ADMIN', 'FACULTY_OFFICER')
def delete_template(template_id):
    template = get_or_404(IncidentTemplate, template_id, "Template not found")
    log_audit('DELETE_INCIDENT_TEMPLATE', 'IncidentTemplate', template.id, {"title": template.title})
    db.session.delete(template)
    db.session.commit()
    return jsonify({"message": "Template deleted"})


# ==========================================================
# Single incident
# ==========================================================
@incidents.route('/<incident_id>', methods=['GET'])
@login_required
def get_incident(incident_id):
    incident = get_viewable(incident_id)
    return jsonify({"incident": incident.to_dict(
        detail=True, include_internal=can_modify(current_user, incident),
    )})


@incidents.route('/<incident_id>', methods=['PATCH'])
@login_required
def update_incident(incident_id):
    incident = _modifiable(incident_id)
    data = json_body()
    changed = []
    if 'title' in data:
        incident.title = _text(data, 'title', 3)
        changed.append('title')
    if 'description' in data:
        incident.description = _text(data, 'description', 10)
        changed.append('description')
    if 'severity' in data:
        incident.severity = require_choice(data['severity'], INCIDENT_SEVERITIES, 'severity')
        changed.append('severity')
    if 'type' in data:
        incident.type = require_choice(data['type'], INCIDENT_TYPES, 'type')
        changed.append('type')
    if 'location' in data:
        incident.location = _clean(data['location']) or None
        changed.append('location')
    if 'isConfidential' in data:
        incident.is_confidential = bool(parse_bool(data['isConfidential']))
        changed.append('isConfidential')
    if 'metadata' in data and (data['metadata'] is None or isinstance(data['metadata'], dict)):
        incident.extra = data['metadata']
        changed.append('metadata')

    log_audit('UPDATE_INCIDENT', 'Incident', incident.id, {"fields": changed})
    db.session.commit()
    events.incident_updated(incident)
    return jsonify({"message": "Incident updated", "incident": incident.to_dict(detail=True, include_internal=True)})


@incidents.route('/<incident_id>', methods=['DELETE'])
@login_required
@roles_required('ADMIN')
def delete_incident(incident_id):
    incident = get_or_404(Incident, incident_id, "Incident not found")
    log_audit('DELETE_INCIDENT', 'Incident', incident.id, {"incidentNumber": incident.incident_number})
    db.session.delete(incident)
    db.session.commit()
    return jsonify({"message": "Incident deleted"})


@incidents.route('/<incident_id>/status', methods=['PATCH'])
@login_required
@roles_required('ADMIN', 'DEPARTMENT_HEAD', 'FACULTY_OFFICER', 'INVIGILATOR', 'LECTURER')
def update_incident_status(incident_id):
    incident = _modifiable(incident_id)
    data = json_body()
    status = require_choice(data.get('status'), INCIDENT_STATUSES, 'status')
    previous = incident.status
    if status == previous:
        raise ApiError(f"Incident is already {status}")

    now = utcnow()
    if status == 'UNDER_INVESTIGATION' and not incident.assigned_at:
        incident.assigned_at = now
    elif status == 'RESOLVED':
        incident.resolved_at = now
        incident.resolution_notes = _clean(data.get('resolutionNotes')) or incident.resolution_notes
    elif status == 'CLOSED':
        incident.closed_at = now
    incident.status = status
    _history(incident, previous, status, _clean(data.get('reason')) or None)

    log_audit('UPDATE_INCIDENT_STATUS', 'Incident', incident.id, {
        "previousStatus": previous,
        "newStatus": status,
    })
    db.session.commit()
    events.incident_status_changed(incident, previous)
    return jsonify({"message": "Incident status updated", "incident": incident.to_dict(detail=True, include_internal=True)})


@incidents.route('/<incident_id>/assign', methods=['PATCH'])
@login_required
@roles_required('ADMIN', 'DEPARTMENT_HEAD', 'FACULTY_OFFICER')
def assign_incident(incident_id):
    incident = _modifiable(incident_id)
    data = json_body()
    require_fields(data, 'assigneeId')
    assignee = _active_user(data['assigneeId'])

    previous = incident.status
    incident.assignee_id = assignee.id
    incident.assigned_at = utcnow()
    incident.status = 'UNDER_INVESTIGATION'
    reason = _clean(data.get('reason')) or f"Assigned to {assignee.full_name}"
    _history(incident, previous, 'UNDER_INVESTIGATION', reason)

    log_audit('ASSIGN_INCIDENT', 'Incident', incident.id, {"assigneeId": assignee.id})
    db.session.commit()
    events.incident_assigned(incident)
    return jsonify({"message": "Incident assigned", "incident": incident.to_dict(detail=True, include_internal=True)})


# ==========================================================
# Comments
# ==========================================================
@incidents.route('/<incident_id>/comments', methods=['POST'])
@login_required
def add_comment(incident_id):
    incident = get_viewable(incident_id)
    data = json_body()
    text = _clean(data.get('comment'))
    if not text:
        raise ValidationError([{"field": "comment", "message": "comment is required"}])
    internal = bool(parse_bool(data.get('isInternal')))
    if internal and not can_modify(current_user, incident):
        raise ApiError("You do not have permission to add internal comments", 403)

    comment = IncidentComment(
        incident_id=incident.id,
        user_id=current_user.id,
        comment=text,
        is_internal=internal,
    )
    db.session.add(comment)
    db.session.flush()
    log_audit('ADD_INCIDENT_COMMENT', 'Incident', incident.id, {"commentId": comment.id})
    db.session.commit()
    events.incident_comment_added(incident, comment)
    return jsonify({"message": "Comment added", "comment": comment.to_dict()}), 201


@incidents.route('/<incident_id>/comments', methods=['GET'])
@login_required
def list_comments(incident_id):
    incident = get_viewable(incident_id)
    query = incident.comments
    if not can_modify(current_user, incident):
        query = query.filter(IncidentComment.is_internal.is_(False))
    return jsonify({"comments": [c.to_dict() for c in query]})

