# examtrack/auth.py
import logging

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required
from sqlalchemy import or_
from werkzeug.security import check_password_hash, generate_password_hash

from . import db
from .errors import ApiError, ValidationError
from .models import AuditLog, BlacklistedToken, User
from .security import (
    current_token,
    make_reset_token,
    password_problems,
    read_reset_token,
    roles_required,
    token_expiry,
    token_pair,
    user_from_token,
)
from .utils import _clean, _email_lower, json_body, log_audit, paginate, require_fields

auth = Blueprint('auth', __name__)
logger = logging.getLogger(__name__)


def _check_new_password(password):
    problems = password_problems(password)
    if problems:
        raise ValidationError([{"field": "newPassword", "message": p} for p in problems])


def _blacklist(payload, user_id):
    if not BlacklistedToken.query.filter_by(jti=payload["jti"]).first():
        db.session.add(BlacklistedToken(
            jti=payload["jti"],
            user_id=user_id,
            expires_at=token_expiry(payload),
        ))


# ==========================================================
# Login / Logout
# ==========================================================
@auth.route('/login', methods=['POST'])
def login():
    data = json_body()
    identifier = _email_lower(data.get('identifier') or data.get('email'))
    password = data.get('password') or ''
    if not identifier or not password:
        raise ValidationError([
            {"field": "identifier", "message": "Email or phone and password are required"}
        ])

    user = User.query.filter(
        or_(User.email == identifier, User.phone == identifier)
    ).first()
    if not user or not check_password_hash(user.password_hash, password):
        logger.info("Failed login for %s", identifier)
        raise ApiError("Invalid credentials", 401)
    if not user.is_active:
        logger.info("Login attempt on deactivated account %s", user.id)
        raise ApiError("Account has been deactivated. Contact administrator.", 403)

    log_audit('LOGIN', 'User', user.id, {"email": user.email}, user_id=user.id)
    db.session.commit()

    body = token_pair(user)
    body.update({"message": "Login successful", "user": user.to_dict()})
    return jsonify(body)


@auth.route('/logout', methods=['POST'])
@login_required
def logout():
    _blacklist(current_token(), current_user.id)
    log_audit('LOGOUT', 'User', current_user.id)
    db.session.commit()
    logger.info("Token revoked for user %s", current_user.id)
    return jsonify({"message": "Logout successful"})


@auth.route('/refresh-token', methods=['POST'])
def refresh_token():
    token = _clean(json_body().get('refreshToken'))
    if not token:
        raise ApiError("Refresh token is required", 401)
    user, payload = user_from_token(token, token_type="refresh")

    # refresh tokens are single use
    _blacklist(payload, user.id)
    db.session.commit()
    return jsonify(token_pair(user))


# ==========================================================
# Passwords
# ==========================================================
@auth.route('/change-password', methods=['POST'])
@login_required
def change_password():
    data = json_body()
    require_fields(data, 'currentPassword', 'newPassword')
    if not check_password_hash(current_user.password_hash, data['currentPassword']):
        raise ApiError("Current password is incorrect", 401)
    if data['currentPassword'] == data['newPassword']:
        raise ApiError("New password must be different from current password")
    _check_new_password(data['newPassword'])

    current_user.password_hash = generate_password_hash(data['newPassword'])
    current_user.password_changed = True
    log_audit('PASSWORD_CHANGE', 'User', current_user.id)
    db.session.commit()
    return jsonify({"message": "Password changed successfully"})


@auth.route('/first-time-password', methods=['POST'])
@login_required
def first_time_password():
    data = json_body()
    require_fields(data, 'newPassword')
    if current_user.password_changed:
        raise ApiError("Password already changed. Use change password endpoint.")
    _check_new_password(data['newPassword'])

    current_user.password_hash = generate_password_hash(data['newPassword'])
    current_user.password_changed = True
    log_audit('FIRST_TIME_PASSWORD_CHANGE', 'User', current_user.id)
    db.session.commit()

    body = token_pair(current_user)
    body.update({"message": "Password set successfully", "user": current_user.to_dict()})
    return jsonify(body)


@auth.route('/request-password-reset', methods=['POST'])
def request_password_reset():
    email = _email_lower(json_body().get('email'))
    body = {"message": "If that email exists, a reset link has been sent."}
    user = User.query.filter_by(email=email).first() if email else None

    # Always respond the same for privacy (whether or not user exists)
    if user and user.is_active:
        token = make_reset_token(user.email)
        log_audit('PASSWORD_RESET_REQUESTED', 'User', user.id, user_id=user.id)
        db.session.commit()
        logger.info("Password reset requested for user %s", user.id)
        if current_app.testing or current_app.debug:
            body["resetToken"] = token
    return jsonify(body)


@auth.route('/reset-password', methods=['POST'])
def reset_password():
    data = json_body()
    require_fields(data, 'token', 'newPassword')
    email = read_reset_token(data['token'])
    if not email:
        raise ApiError("The reset link is invalid or has expired.")
    user = User.query.filter_by(email=email).first()
    if not user or not user.is_active:
        raise ApiError("User not found", 404)
    _check_new_password(data['newPassword'])

    user.password_hash = generate_password_hash(data['newPassword'])
    user.password_changed = True
    log_audit('PASSWORD_RESET', 'User', user.id, user_id=user.id)
    db.session.commit()
    return jsonify({"message": "Your password has been reset. Please log in."})


# ==========================================================
# Profile / Audit
# ==========================================================
@auth.route('/profile', methods=['GET'])
@login_required
def profile():
    return jsonify({"user": current_user.to_dict()})


@auth.route('/audit-logs', methods=['GET'])
@login_required
@roles_required('ADMIN')
def audit_logs():
    query = AuditLog.query
    if request.args.get('action'):
        query = query.filter(AuditLog.action == request.args['action'])
    if request.args.get('entity'):
        query = query.filter(AuditLog.entity == request.args['entity'])
    if request.args.get('userId'):
        query = query.filter(AuditLog.user_id == request.args['userId'])
    query = query.order_by(AuditLog.created_at.desc())
    return jsonify(paginate(query, 'logs', default_limit=50))
