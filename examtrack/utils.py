# examtrack/utils.py
import base64
import io
import json
import math
from datetime import date, datetime, timezone

import qrcode
from flask import request
from flask_login import current_user

from . import db
from .errors import ApiError, ValidationError
from .models import AuditLog


def _clean(s) -> str:
    if s is None:
        return ''
    return str(s).strip()


def _email_lower(s) -> str:
    return _clean(s).lower()


def json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return {}
    return data


def require_fields(data, *fields):
    missing = [
        {"field": f, "message": f"{f} is required"}
        for f in fields
        if data.get(f) is None or (isinstance(data.get(f), str) and not data.get(f).strip())
    ]
    if missing:
        raise ValidationError(missing)


def require_choice(value, choices, field):
    if value not in choices:
        raise ValidationError([{
            "field": field,
            "message": f"{field} must be one of: {', '.join(choices)}",
        }])
    return value


def parse_int(value, field, minimum=None, maximum=None, default=None):
    if value is None or value == '':
        if default is not None:
            return default
        raise ValidationError([{"field": field, "message": f"{field} is required"}])
    if isinstance(value, bool):
        raise ValidationError([{"field": field, "message": f"{field} must be an integer"}])
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError([{"field": field, "message": f"{field} must be an integer"}])
    if isinstance(value, float) and value != number:
        raise ValidationError([{"field": field, "message": f"{field} must be an integer"}])
    if minimum is not None and number < minimum:
        raise ValidationError([{"field": field, "message": f"{field} must be at least {minimum}"}])
    if maximum is not None and number > maximum:
        raise ValidationError([{"field": field, "message": f"{field} must be at most {maximum}"}])
    return number


def parse_datetime(value, field="date"):
    """Parse an ISO date/datetime string into naive UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        text = _clean(value)
        if not text:
            raise ValidationError([{"field": field, "message": f"{field} is required"}])
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError([{"field": field, "message": f"{field} must be an ISO date"}])
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_bool(value):
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes')


def page_args(default_limit=20, max_limit=200):
    page = parse_int(request.args.get('page'), 'page', minimum=1, default=1)
    limit = parse_int(request.args.get('limit'), 'limit', minimum=1, maximum=max_limit, default=default_limit)
    return page, limit


def paginate(query, key, serializer=None, default_limit=20):
    """Apply page/limit query args and build ``{key: [...], "pagination": {...}}``."""
    page, limit = page_args(default_limit)
    total = query.order_by(None).count()
    rows = query.offset((page - 1) * limit).limit(limit).all()
    serializer = serializer or (lambda row: row.to_dict())
    return {
        key: [serializer(row) for row in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": math.ceil(total / limit) if total else 0,
        },
    }


def get_or_404(model, ident, message):
    obj = db.session.get(model, ident) if ident else None
    if obj is None:
        raise ApiError(message, 404)
    return obj


# ==========================================================
# Audit trail
# ==========================================================
def log_audit(action, entity, entity_id=None, details=None, user_id=None):
    """Add an audit row to the current session; the caller commits."""
    if user_id is None and current_user and current_user.is_authenticated:
        user_id = current_user.id
    db.session.add(AuditLog(
        user_id=user_id,
        action=action,
        entity=entity,
        entity_id=entity_id,
        details=details,
        ip_address=request.remote_addr if request else None,
    ))


def ensure_not_archived(exam_session, message):
    if exam_session is not None and exam_session.is_archived:
        raise ApiError(message, 403)


# ==========================================================
# QR codes
# ==========================================================
def qr_data_url(payload, box_size=10, border=2):
    """Render ``payload`` (dict or str) as a PNG data URL."""
    if not isinstance(payload, str):
        payload = json.dumps(payload, separators=(",", ":"))
    qr = qrcode.QRCode(box_size=box_size, border=border)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")
