# examtrack/analytics.py
import logging
from datetime import timedelta

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required
from sqlalchemy import func, or_

from . import db
from .models import HANDLER_ROLES, AuditLog, BatchTransfer, ExamAttendance, ExamSession, Role, User, utcnow
from .security import roles_required
from .transfers import current_custodian
from .utils import parse_datetime, parse_int

analytics = Blueprint('analytics', __name__)
logger = logging.getLogger(__name__)


def _date_range():
    start = request.args.get('startDate')
    end = request.args.get('endDate')
    return (
        parse_datetime(start, 'startDate') if start else None,
        parse_datetime(end, 'endDate') if end else None,
    )


def _between(query, column, start, end):
    if start:
        query = query.filter(column >= start)
    if end:
        query = query.filter(column <= end)
    return query


def _hours(delta):
    return delta.total_seconds() / 3600


def _avg(values, digits=2):
    values = list(values)
    return round(sum(values) / len(values), digits) if values else 0


# ==========================================================
# Overview
# ==========================================================
@analytics.route('/overview', methods=['GET'])
@login_required
@roles_required('ADMIN')
def overview():
    start, end = _date_range()
    now = utcnow()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    total_exams = _between(ExamSession.query, ExamSession.exam_date, start, end).count()
    exams_this_month = ExamSession.query.filter(ExamSession.created_at >= month_start).count()
    active_batches = ExamSession.query.filter(ExamSession.status != 'COMPLETED').count()
    total_handlers = (
        User.query.join(Role)
        .filter(User.is_active.is_(True), Role.name.in_(HANDLER_ROLES))
        .count()
    )

    transfers = _between(BatchTransfer.query, BatchTransfer.requested_at, start, end)
    total_transfers = transfers.count()
    discrepancies = transfers.filter(BatchTransfer.discrepancy_note.isnot(None)).count()
    confirmed = transfers.filter(
        BatchTransfer.status == 'CONFIRMED',
        BatchTransfer.confirmed_at.isnot(None),
    ).all()

    thirty_days_ago = now - timedelta(days=30)
    exams_by_day = {}
    for (exam_date,) in db.session.query(ExamSession.exam_date).filter(ExamSession.exam_date >= thirty_days_ago):
        key = exam_date.date().isoformat()
        exams_by_day[key] = exams_by_day.get(key, 0) + 1

    return jsonify({
        "overview": {
            "totalExams": total_exams,
            "examsThisMonth": exams_this_month,
            "activeBatches": active_batches,
            "totalHandlers": total_handlers,
            "totalTransfers": total_transfers,
            "totalDiscrepancies": discrepancies,
            "discrepancyRate": round(discrepancies / total_transfers * 100, 2) if total_transfers else 0,
            "avgTransferTimeHours": _avg(_hours(t.confirmed_at - t.requested_at) for t in confirmed),
        },
        "trends": {"examsByDay": dict(sorted(exams_by_day.items()))},
    })


# ==========================================================
# Handlers
# ==========================================================
@analytics.route('/handler-performance', methods=['GET'])
@login_required
@roles_required('ADMIN')
def handler_performance():
    start, end = _date_range()
    handlers = (
        User.query.join(Role)
        .filter(User.is_active.is_(True), Role.name.in_(HANDLER_ROLES))
        .all()
    )

    custody_counts = {}
    for exam_session in ExamSession.query.filter(ExamSession.status != 'COMPLETED'):
        latest = current_custodian(exam_session)
        if latest:
            custody_counts[latest.to_handler_id] = custody_counts.get(latest.to_handler_id, 0) + 1

    results = []
    for handler in handlers:
        transfers = _between(BatchTransfer.query, BatchTransfer.requested_at, start, end)
        received = transfers.filter(BatchTransfer.to_handler_id == handler.id).all()
        sent = transfers.filter(BatchTransfer.from_handler_id == handler.id).count()
        discrepancies = transfers.filter(
            or_(BatchTransfer.from_handler_id == handler.id, BatchTransfer.to_handler_id == handler.id),
            BatchTransfer.discrepancy_note.isnot(None),
        ).count()
        confirmed = [t for t in received if t.confirmed_at]
        total = len(received) + sent
        results.append({
            "handler": dict(handler.summary(with_email=True), department=handler.department),
            "metrics": {
                "totalTransfers": total,
                "transfersReceived": len(received),
                "transfersSent": sent,
                "confirmedTransfers": len(confirmed),
                "pendingTransfers": sum(1 for t in received if t.status == 'PENDING'),
                "discrepancies": discrepancies,
                "discrepancyRate": round(discrepancies / total * 100, 2) if total else 0,
                "avgResponseTimeHours": _avg(_hours(t.confirmed_at - t.requested_at) for t in confirmed),
                "currentCustody": custody_counts.get(handler.id, 0),
            },
        })
    results.sort(key=lambda r: r["metrics"]["totalTransfers"], reverse=True)
    return jsonify({"handlers": results})


# ==========================================================
# Discrepancies
# ==========================================================
@analytics.route('/discrepancies', methods=['GET'])
@login_required
@roles_required('ADMIN')
def discrepancies():
    start, end = _date_range()
    query = (
        BatchTransfer.query.join(ExamSession)
        .filter(BatchTransfer.discrepancy_note.isnot(None))
    )
    query = _between(query, BatchTransfer.requested_at, start, end)
    if request.args.get('department'):
        query = query.filter(ExamSession.department == request.args['department'])
    if request.args.get('faculty'):
        query = query.filter(ExamSession.faculty == request.args['faculty'])
    rows = query.order_by(BatchTransfer.requested_at.desc()).all()

    by_status, by_department, trend = {}, {}, {}
    for t in rows:
        by_status[t.status] = by_status.get(t.status, 0) + 1
        dept = t.exam_session.department
        by_department[dept] = by_department.get(dept, 0) + 1
        day = t.requested_at.date().isoformat()
        trend[day] = trend.get(day, 0) + 1

    resolved = by_status.get('RESOLVED', 0)
    return jsonify({
        "summary": {
            "total": len(rows),
            "resolved": resolved,
            "unresolved": len(rows) - resolved,
            "resolutionRate": round(resolved / len(rows) * 100, 2) if rows else 0,
        },
        "byStatus": by_status,
        "byDepartment": by_department,
        "trend": dict(sorted(trend.items())),
        "recentDiscrepancies": [t.to_dict() for t in rows[:20]],
    })


# ==========================================================
# Exams
# ==========================================================
@analytics.route('/exam-stats', methods=['GET'])
@login_required
@roles_required('ADMIN')
def exam_stats():
    start, end = _date_range()
    base = _between(ExamSession.query, ExamSession.exam_date, start, end)

    def grouped(column):
        rows = base.with_entities(column, func.count(ExamSession.id)).group_by(column).all()
        return {key: count for key, count in rows}

    total = base.count()
    by_status = grouped(ExamSession.status)
    session_ids = [s.id for s in base.with_entities(ExamSession.id)]
    attendance = (
        ExamAttendance.query.filter(ExamAttendance.exam_session_id.in_(session_ids))
        if session_ids else None
    )
    total_attendance = attendance.count() if attendance is not None else 0
    submitted = (
        attendance.filter(ExamAttendance.submission_time.isnot(None)).count()
        if attendance is not None else 0
    )

    return jsonify({
        "summary": {
            "totalExams": total,
            "completedExams": by_status.get('COMPLETED', 0),
            "completionRate": round(by_status.get('COMPLETED', 0) / total * 100, 2) if total else 0,
            "totalAttendance": total_attendance,
            "submittedScripts": submitted,
            "submissionRate": round(submitted / total_attendance * 100, 2) if total_attendance else 0,
            "avgStudentsPerExam": round(total_attendance / total, 1) if total else 0,
        },
        "byStatus": by_status,
        "byDepartment": grouped(ExamSession.department),
        "byFaculty": grouped(ExamSession.faculty),
    })


@analytics.route('/user-activity', methods=['GET'])
@login_required
def user_activity():
    days = parse_int(request.args.get('days'), 'days', minimum=1, maximum=365, default=30)
    since = utcnow() - timedelta(days=days)
    rows = (
        db.session.query(AuditLog.action, func.count(AuditLog.id))
        .filter(AuditLog.user_id == current_user.id, AuditLog.created_at >= since)
        .group_by(AuditLog.action)
        .all()
    )
    recent = (
        AuditLog.query.filter(AuditLog.user_id == current_user.id)
        .order_by(AuditLog.created_at.desc())
        .limit(10)
        .all()
    )
    actions = {action: count for action, count in rows}
    return jsonify({
        "userId": current_user.id,
        "periodDays": days,
        "totalActions": sum(actions.values()),
        "byAction": actions,
        "recentActivity": [
            {"action": r.action, "entity": r.entity, "entityId": r.entity_id, "createdAt": r.created_at.isoformat()}
            for r in recent
        ],
    })
