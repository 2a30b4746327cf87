# examtrack/security.py
"""Bearer-token authentication on top of Flask-Login, and role guards."""
import logging
import re
import secrets
import string
import uuid
from datetime import datetime, timedelta, timezone
from functools import wraps

import jwt
from flask import current_app, g, jsonify
from flask_login import current_user
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from . import db
from .errors import ApiError

logger = logging.getLogger(__name__)

PASSWORD_SPECIALS = "!@#$%^&*"


# ==========================================================
# JWT helpers
# ==========================================================
def _encode(user, token_type, lifetime):
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user.id,
        "email": user.email,
        "role": user.role_name,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "isSuperAdmin": user.is_super_admin,
        "type": token_type,
        "jti": uuid.uuid4().hex,
        "iat": now,
        "exp": now + lifetime,
    }
    return jwt.encode(payload, current_app.config['JWT_SECRET'], algorithm="HS256")


def generate_token(user):
    return _encode(user, "access", timedelta(hours=current_app.config['JWT_EXPIRES_HOURS']))


def generate_refresh_token(user):
    return _encode(user, "refresh", timedelta(days=current_app.config['JWT_REFRESH_EXPIRES_DAYS']))


def token_pair(user):
    return {"token": generate_token(user), "refreshToken": generate_refresh_token(user)}


def decode_token(token):
    """Return the payload, or None when the token is malformed or expired."""
    try:
        return jwt.decode(token, current_app.config['JWT_SECRET'], algorithms=["HS256"])
    except jwt.PyJWTError:
        return None


def token_expiry(payload):
    return datetime.fromtimestamp(payload["exp"], tz=timezone.utc).replace(tzinfo=None)


def is_blacklisted(jti):
    from .models import BlacklistedToken
    return BlacklistedToken.query.filter_by(jti=jti).first() is not None


def user_from_token(token, token_type="access"):
    """Resolve an active user from a raw JWT; raises ApiError(401) otherwise."""
    from .models import User

    payload = decode_token(token)
    if not payload or payload.get("type") != token_type:
        raise ApiError("Invalid or expired token", 401)
    if is_blacklisted(payload.get("jti")):
        raise ApiError("Token has been revoked", 401)
    user = db.session.get(User, payload.get("sub"))
    if not user or not user.is_active:
        raise ApiError("User not found or inactive", 401)
    return user, payload


# ==========================================================
# Flask-Login wiring
# ==========================================================
def init_login_manager(login_manager):

    @login_manager.request_loader
    def load_user_from_request(request):
        header = request.headers.get("Authorization", "")
        if not header.startswith("Bearer "):
            g.auth_error = "No token provided"
            return None
        try:
            user, payload = user_from_token(header[7:].strip())
        except ApiError as err:
            g.auth_error = err.message
            return None
        g.token_payload = payload
        return user

    @login_manager.unauthorized_handler
    def unauthorized():
        message = g.get("auth_error", "No token provided")
        logger.info("Unauthorized request: %s", message)
        return jsonify({"error": message}), 401


def current_token():
    return g.get("token_payload")


def roles_required(*roles):
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if current_user.role_name not in roles:
                logger.warning(
                    "Forbidden: user %s (%s) needs one of %s",
                    current_user.id, current_user.role_name, roles,
                )
                raise ApiError(
                    "Forbidden: Insufficient permissions",
                    403,
                    required=list(roles),
                    current=current_user.role_name,
                )
            return view(*args, **kwargs)
        return wrapped
    return decorator


def super_admin_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not current_user.is_super_admin:
            raise ApiError("Forbidden: Super admin access required", 403)
        return view(*args, **kwargs)
    return wrapped


def is_admin(user):
    return user.role_name == 'ADMIN' or user.is_super_admin


# ==========================================================
# Passwords
# ==========================================================
def password_problems(password):
    problems = []
    if len(password or "") < 8:
        problems.append("Password must be at least 8 characters")
    if not re.search(r"[A-Z]", password or ""):
        problems.append("Password must contain an uppercase letter")
    if not re.search(r"[a-z]", password or ""):
        problems.append("Password must contain a lowercase letter")
    if not re.search(r"\d", password or ""):
        problems.append("Password must contain a number")
    if not re.search(r"[^A-Za-z0-9]", password or ""):
        problems.append("Password must contain a special character")
    return problems


def generate_temporary_password(length=12):
    rng = secrets.SystemRandom()
    chars = [
        rng.choice(string.ascii_uppercase),
        rng.choice(string.ascii_lowercase),
        rng.choice(string.digits),
        rng.choice(PASSWORD_SPECIALS),
    ]
    pool = string.ascii_letters + string.digits + PASSWORD_SPECIALS
    chars += [rng.choice(pool) for _ in range(length - len(chars))]
    rng.shuffle(chars)
    return "".join(chars)


# ==========================================================
# Password reset tokens
# ==========================================================
def _serializer():
    return URLSafeTimedSerializer(current_app.config['SECRET_KEY'])


def make_reset_token(email):
    return _serializer().dumps(email, salt='password-reset-salt')


def read_reset_token(token, max_age=None):
    max_age = max_age or current_app.config['PASSWORD_RESET_MAX_AGE']
    try:
        return _serializer().loads(token, salt='password-reset-salt', max_age=max_age)
    except (SignatureExpired, BadSignature):
        return None
