# examtrack/users.py
import logging
import re

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from werkzeug.security import generate_password_hash

from . import db
from .errors import ApiError, ValidationError
from .models import HANDLER_ROLES, ROLES, Role, User, get_role
from .security import generate_temporary_password, roles_required
from .utils import _clean, _email_lower, get_or_404, json_body, log_audit, paginate, parse_bool, require_choice

users = Blueprint('users', __name__)
logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


def _split_name(name):
    parts = _clean(name).split(None, 1)
    if not parts:
        raise ValidationError([{"field": "name", "message": "name is required"}])
    return parts[0], parts[1] if len(parts) > 1 else ''


@users.route('', methods=['POST'])
@login_required
@roles_required('ADMIN')
def create_user():
    data = json_body()
    email = _email_lower(data.get('email'))
    if not EMAIL_RE.match(email):
        raise ValidationError([{"field": "email", "message": "Invalid email address"}])
    first_name, last_name = _split_name(data.get('name'))
    department = _clean(data.get('department'))
    role_name = require_choice(_clean(data.get('role')), ROLES, 'role')

    if User.query.filter_by(email=email).first():
        raise ApiError("Email already exists", 409)

    temporary_password = generate_temporary_password()
    user = User(
        email=email,
        first_name=first_name,
        last_name=last_name,
        department=department or None,
        role_id=get_role(role_name).id,
        password_hash=generate_password_hash(temporary_password),
        password_changed=False,
    )
    db.session.add(user)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise ApiError("Email already exists", 409)

    log_audit('CREATE_USER', 'User', user.id, {"email": email, "role": role_name})
    db.session.commit()
    logger.info("User %s created by %s", user.id, current_user.id)

    return jsonify({
        "message": "User created successfully",
        "user": user.to_dict(),
        "email": email,
        "temporaryPassword": temporary_password,
    }), 201


@users.route('', methods=['GET'])
@login_required
@roles_required('ADMIN')
def list_users():
    query = User.query.join(Role)
    if request.args.get('role'):
        query = query.filter(Role.name == request.args['role'])
    is_active = parse_bool(request.args.get('isActive'))
    if is_active is not None:
        query = query.filter(User.is_active == is_active)
    search = _clean(request.args.get('search'))
    if search:
        like = f"%{search}%"
        query = query.filter(or_(
            User.email.ilike(like),
            User.first_name.ilike(like),
            User.last_name.ilike(like),
            User.department.ilike(like),
        ))
    query = query.order_by(User.created_at.desc())
    return jsonify(paginate(query, 'users'))


@users.route('/handlers', methods=['GET'])
@login_required
def list_handlers():
    handlers = (
        User.query.join(Role)
        .filter(User.is_active.is_(True), Role.name.in_(HANDLER_ROLES))
        .order_by(Role.name, User.first_name)
        .all()
    )
    return jsonify({"handlers": [
        dict(h.summary(with_email=True), department=h.department) for h in handlers
    ]})


@users.route('/<user_id>', methods=['GET'])
@login_required
@roles_required('ADMIN')
def get_user(user_id):
    user = get_or_404(User, user_id, "User not found")
    return jsonify({"user": user.to_dict()})


@users.route('/<user_id>', methods=['PUT'])
@login_required
@roles_required('ADMIN')
def update_user(user_id):
    user = get_or_404(User, user_id, "User not found")
    if user.is_super_admin and not current_user.is_super_admin:
        raise ApiError("Cannot modify super admin account", 403)

    data = json_body()
    changes = {}
    if 'name' in data:
        user.first_name, user.last_name = _split_name(data['name'])
        changes['name'] = user.full_name
    if 'department' in data:
        user.department = _clean(data['department']) or None
        changes['department'] = user.department
    if 'role' in data:
        role_name = require_choice(_clean(data['role']), ROLES, 'role')
        if user.is_super_admin and role_name != user.role_name:
            raise ApiError("Cannot change the role of a super admin account", 403)
        user.role_id = get_role(role_name).id
        changes['role'] = role_name
    if 'email' in data:
        email = _email_lower(data['email'])
        if not EMAIL_RE.match(email):
            raise ValidationError([{"field": "email", "message": "Invalid email address"}])
        other = User.query.filter(User.email == email, User.id != user.id).first()
        if other:
            raise ApiError("Email already exists", 409)
        user.email = email
        changes['email'] = email

    log_audit('UPDATE_USER', 'User', user.id, changes)
    db.session.commit()
    return jsonify({"message": "User updated successfully", "user": user.to_dict()})


@users.route('/<user_id>/deactivate', methods=['PATCH'])
@login_required
@roles_required('ADMIN')
def deactivate_user(user_id):
    user = get_or_404(User, user_id, "User not found")
    if user.is_super_admin:
        raise ApiError("Cannot deactivate super admin account", 403)
    if user.id == current_user.id:
        raise ApiError("Cannot deactivate your own account")

    user.is_active = False
    log_audit('DEACTIVATE_USER', 'User', user.id, {"email": user.email})
    db.session.commit()
    logger.info("User %s deactivated by %s", user.id, current_user.id)
    return jsonify({"message": "User deactivated successfully", "user": user.to_dict()})


@users.route('/<user_id>/reactivate', methods=['PATCH'])
@login_required
@roles_required('ADMIN')
def reactivate_user(user_id):
    user = get_or_404(User, user_id, "User not found")
    user.is_active = True
    log_audit('REACTIVATE_USER', 'User', user.id, {"email": user.email})
    db.session.commit()
    return jsonify({"message": "User reactivated successfully", "user": user.to_dict()})
