# examtrack/registration.py
import logging
import re
import secrets
from datetime import timedelta

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required
from werkzeug.security import generate_password_hash

from . import db
from .errors import ApiError, ValidationError
from .models import RegistrationSession, User, get_role, utcnow
from .security import roles_required, token_pair
from .utils import _clean, get_or_404, json_body, log_audit, parse_int, qr_data_url, require_fields

registration = Blueprint('registration', __name__)
logger = logging.getLogger(__name__)

PHONE_RE = re.compile(r'^(\+233|0)[0-9]{9}$')
EMAIL_DOMAIN = 'examtrack.local'
MAX_BULK_SESSIONS = 50


def _new_session(department, minutes):
    session = RegistrationSession(
        qr_token=secrets.token_hex(32),
        department=department,
        expires_at=utcnow() + timedelta(minutes=minutes),
        created_by_id=current_user.id,
    )
    db.session.add(session)
    db.session.flush()
    return session


def _session_body(session):
    data = session.to_dict()
    data["qrCode"] = qr_data_url(session.qr_payload())
    return data


def _session_config(data, field_prefix=''):
    department = _clean(data.get('department'))
    if not department:
        raise ValidationError([{"field": f"{field_prefix}department", "message": "department is required"}])
    minutes = parse_int(
        data.get('expiresInMinutes'), f"{field_prefix}expiresInMinutes",
        minimum=1, maximum=1440, default=60,
    )
    return department, minutes


def _slug(value):
    return re.sub(r'[^a-z0-9]', '', value.lower()) or 'user'


def unique_email(first_name, last_name):
    base = f"{_slug(first_name)}.{_slug(last_name)}"
    email = f"{base}@{EMAIL_DOMAIN}"
    n = 1
    while User.query.filter_by(email=email).first():
        email = f"{base}.{n}@{EMAIL_DOMAIN}"
        n += 1
    return email


def cleanup_expired_sessions():
    """Delete expired sessions nobody used; returns how many went."""
    count = RegistrationSession.query.filter(
        RegistrationSession.used.is_(False),
        RegistrationSession.expires_at < utcnow(),
    ).delete(synchronize_session=False)
    db.session.commit()
    return count


# ==========================================================
# Admin: session management
# ==========================================================
@registration.route('/create-session', methods=['POST'])
@login_required
@roles_required('ADMIN')
def create_session():
    department, minutes = _session_config(json_body())
    session = _new_session(department, minutes)
    log_audit('CREATE_REGISTRATION_SESSION', 'RegistrationSession', session.id, {
        "department": department,
        "expiresInMinutes": minutes,
    })
    db.session.commit()
    return jsonify({"message": "Registration session created", "session": _session_body(session)}), 201


@registration.route('/bulk-create', methods=['POST'])
@login_required
@roles_required('ADMIN')
def bulk_create_sessions():
    configs = json_body().get('sessions')
    if not isinstance(configs, list) or not configs:
        raise ValidationError([{"field": "sessions", "message": "sessions must be a non-empty list"}])
    if len(configs) > MAX_BULK_SESSIONS:
        raise ValidationError([{
            "field": "sessions",
            "message": f"At most {MAX_BULK_SESSIONS} sessions can be created at once",
        }])

    parsed = [
        _session_config(c if isinstance(c, dict) else {}, f"sessions[{i}].")
        for i, c in enumerate(configs)
    ]
    created = [_new_session(department, minutes) for department, minutes in parsed]
    log_audit('BULK_CREATE_REGISTRATION_SESSIONS', 'RegistrationSession', None, {"count": len(created)})
    db.session.commit()
    return jsonify({
        "message": f"Successfully created {len(created)} registration sessions",
        "sessions": [_session_body(s) for s in created],
    }), 201


@registration.route('/sessions', methods=['GET'])
@login_required
@roles_required('ADMIN')
def list_sessions():
    query = RegistrationSession.query
    if request.args.get('department'):
        query = query.filter(RegistrationSession.department == request.args['department'])
    sessions = query.order_by(RegistrationSession.created_at.desc()).all()
    status = request.args.get('status')
    if status:
        sessions = [s for s in sessions if s.state == status.upper()]
    return jsonify({"sessions": [s.to_dict() for s in sessions]})


@registration.route('/sessions/<session_id>/deactivate', methods=['PATCH'])
@login_required
@roles_required('ADMIN')
def deactivate_session(session_id):
    session = get_or_404(RegistrationSession, session_id, "Registration session not found")
    if session.used:
        raise ApiError("Cannot deactivate a session that has already been used")
    session.is_active = False
    log_audit('DEACTIVATE_REGISTRATION_SESSION', 'RegistrationSession', session.id)
    db.session.commit()
    return jsonify({"message": "Registration session deactivated successfully"})


@registration.route('/sessions/<session_id>/extend', methods=['PATCH'])
@login_required
@roles_required('ADMIN')
def extend_session(session_id):
    session = get_or_404(RegistrationSession, session_id, "Registration session not found")
    if session.used:
        raise ApiError("Cannot extend a session that has already been used")
    minutes = parse_int(json_body().get('additionalMinutes'), 'additionalMinutes', minimum=1, maximum=1440)
    session.expires_at = session.expires_at + timedelta(minutes=minutes)
    log_audit('EXTEND_REGISTRATION_SESSION', 'RegistrationSession', session.id, {"additionalMinutes": minutes})
    db.session.commit()
    return jsonify({
        "message": "Session expiration extended successfully",
        "expiresAt": session.expires_at.isoformat(),
    })


@registration.route('/analytics', methods=['GET'])
@login_required
@roles_required('ADMIN')
def session_analytics():
    sessions = RegistrationSession.query.all()
    now = utcnow()

    def bucket(s):
        if s.used:
            return 'used'
        if s.expires_at <= now:
            return 'expired'
        return 'active'

    departments = {}
    totals = {"active": 0, "used": 0, "expired": 0}
    for s in sessions:
        key = bucket(s)
        totals[key] += 1
        dept = departments.setdefault(s.department, {"total": 0, "active": 0, "used": 0, "expired": 0})
        dept["total"] += 1
        dept[key] += 1

    finished = sorted(
        (s for s in sessions if s.used or s.expires_at <= now),
        key=lambda s: s.used_at or s.expires_at,
        reverse=True,
    )[:10]
    return jsonify(dict(
        totals,
        total=len(sessions),
        departments=departments,
        recentActivity=[{
            "id": s.id,
            "department": s.department,
            "status": bucket(s),
            "timestamp": (s.used_at or s.expires_at).isoformat(),
        } for s in finished],
    ))


@registration.route('/cleanup', methods=['DELETE'])
@login_required
@roles_required('ADMIN')
def cleanup_sessions():
    count = cleanup_expired_sessions()
    return jsonify({"message": f"Cleaned up {count} expired registration sessions", "count": count})


# ==========================================================
# Public: self-registration
# ==========================================================
@registration.route('/register', methods=['POST'])
def register_with_qr():
    data = json_body()
    require_fields(data, 'qrToken', 'firstName', 'lastName', 'phone', 'password')
    phone = _clean(data['phone'])
    errors = []
    if not PHONE_RE.match(phone):
        errors.append({"field": "phone", "message": "Phone must be +233 or 0 followed by 9 digits"})
    if not isinstance(data['password'], str) or len(data['password']) < 8:
        errors.append({"field": "password", "message": "Password must be at least 8 characters"})
    if errors:
        raise ValidationError(errors)

    session = RegistrationSession.query.filter_by(qr_token=_clean(data['qrToken'])).first()
    if not session or not session.is_active:
        raise ApiError("Invalid QR code")
    if session.used:
        raise ApiError("QR code has already been used")
    if session.is_expired:
        raise ApiError("QR code has expired")
    if User.query.filter_by(phone=phone).first():
        raise ApiError("Phone number is already registered")

    first_name = _clean(data['firstName'])
    last_name = _clean(data['lastName'])
    user = User(
        email=unique_email(first_name, last_name),
        phone=phone,
        first_name=first_name,
        last_name=last_name,
        department=session.department,
        role_id=get_role('INVIGILATOR').id,
        password_hash=generate_password_hash(data['password']),
        password_changed=True,
    )
    db.session.add(user)
    db.session.flush()

    session.used = True
    session.used_at = utcnow()
    session.used_by_id = user.id
    log_audit('USER_REGISTERED_QR', 'User', user.id, {
        "registrationSessionId": session.id,
        "department": session.department,
    }, user_id=user.id)
    db.session.commit()
    logger.info("User %s registered through QR session %s", user.id, session.id)

    body = token_pair(user)
    body.update({"message": "Registration successful", "user": user.to_dict()})
    return jsonify(body), 201
