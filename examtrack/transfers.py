# examtrack/transfers.py
import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required
from sqlalchemy import or_

from . import db, events
from .errors import ApiError
from .exam_sessions import can_transition
from .incidents import create_system_incident
from .models import (
    TRANSFER_STATUSES,
    BatchTransfer,
    ExamSession,
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
    parse_int,
    require_choice,
    require_fields,
)

transfers = Blueprint('transfers', __name__)
logger = logging.getLogger(__name__)

RECEIVER_STATUS = {
    'LECTURER': 'WITH_LECTURER',
    'DEPARTMENT_HEAD': 'UNDER_GRADING',
    'FACULTY_OFFICER': 'UNDER_GRADING',
}


def _auto_status(exam_session, new_status, trigger):
    """Move the batch along when a transfer event allows it; returns the old status or None."""
    previous = exam_session.status
    if previous == new_status or not can_transition(previous, new_status):
        return None
    exam_session.status = new_status
    log_audit('AUTO_UPDATE_SESSION_STATUS', 'ExamSession', exam_session.id, {
        "previousStatus": previous,
        "newStatus": new_status,
        "triggeredBy": trigger,
    })
    return previous


def _discrepancy_incident(transfer):
    missing = transfer.scripts_expected - transfer.scripts_received
    return create_system_incident(
        transfer.to_handler_id,
        type='COUNT_DISCREPANCY',
        severity='HIGH' if missing > 0 else 'MEDIUM',
        title=f"Script count discrepancy - {transfer.exam_session.course_code}",
        description=(
            f"Transfer of {transfer.exam_session.batch_qr_code} expected "
            f"{transfer.scripts_expected} scripts but {transfer.scripts_received} were received."
        ),
        location=transfer.location,
        exam_session_id=transfer.exam_session_id,
        transfer_id=transfer.id,
        extra={
            "scriptsExpected": transfer.scripts_expected,
            "scriptsReceived": transfer.scripts_received,
            "discrepancyNote": transfer.discrepancy_note,
        },
    )


def _party_or_admin(transfer):
    if is_admin(current_user):
        return
    if current_user.id not in (transfer.from_handler_id, transfer.to_handler_id):
        raise ApiError("You do not have access to this transfer", 403)


# ==========================================================
# Create
# ==========================================================
@transfers.route('', methods=['POST'])
@login_required
@roles_required('ADMIN', 'INVIGILATOR', 'LECTURER')
def create_transfer():
    data = json_body()
    require_fields(data, 'examSessionId', 'toHandlerId', 'scriptsExpected')
    exam_session = get_or_404(ExamSession, data['examSessionId'], "Exam session not found")
    ensure_not_archived(exam_session, "Cannot create transfers for archived exam sessions")
    scripts_expected = parse_int(data['scriptsExpected'], 'scriptsExpected', minimum=1)

    receiver = db.session.get(User, data['toHandlerId'])
    if not receiver or not receiver.is_active:
        raise ApiError("Receiver handler not found", 404)
    if receiver.id == current_user.id:
        raise ApiError("Cannot transfer to yourself")

    transfer = BatchTransfer(
        exam_session_id=exam_session.id,
        from_handler_id=current_user.id,
        to_handler_id=receiver.id,
        scripts_expected=scripts_expected,
        location=_clean(data.get('location')) or None,
        status='PENDING',
    )
    db.session.add(transfer)
    db.session.flush()

    previous = None
    if exam_session.status == 'SUBMITTED':
        previous = _auto_status(exam_session, 'IN_TRANSIT', 'transfer_initiated')

    log_audit('INITIATE_TRANSFER', 'BatchTransfer', transfer.id, {
        "examSessionId": exam_session.id,
        "toHandlerId": receiver.id,
        "scriptsExpected": scripts_expected,
    })
    db.session.commit()
    logger.info("Transfer %s initiated %s -> %s", transfer.id, current_user.id, receiver.id)

    events.transfer_requested(transfer)
    if previous:
        events.batch_status_updated(exam_session, previous)
    return jsonify({"message": "Transfer initiated successfully", "transfer": transfer.to_dict()}), 201


# ==========================================================
# Receiver actions
# ==========================================================
def _pending_for_receiver(transfer_id):
    transfer = get_or_404(BatchTransfer, transfer_id, "Transfer not found")
    if transfer.to_handler_id != current_user.id:
        raise ApiError("Only the designated receiver can confirm this transfer", 403)
    if transfer.status != 'PENDING':
        raise ApiError(f"Transfer already {transfer.status.lower()}")
    return transfer


@transfers.route('/<transfer_id>/confirm', methods=['PATCH'])
@login_required
def confirm_transfer(transfer_id):
    transfer = _pending_for_receiver(transfer_id)
    data = json_body()
    require_fields(data, 'scriptsReceived')
    transfer.scripts_received = parse_int(data['scriptsReceived'], 'scriptsReceived', minimum=0)
    transfer.confirmed_at = utcnow()
    if _clean(data.get('discrepancyNote')):
        transfer.discrepancy_note = _clean(data['discrepancyNote'])

    incident = None
    if transfer.has_discrepancy:
        transfer.status = 'DISCREPANCY_REPORTED'
        if not transfer.discrepancy_note:
            transfer.discrepancy_note = (
                f"Expected {transfer.scripts_expected} scripts, received {transfer.scripts_received}"
            )
        incident = _discrepancy_incident(transfer)
        action = 'CONFIRM_TRANSFER_WITH_DISCREPANCY'
        logger.warning(
            "Discrepancy on transfer %s: expected %s, received %s",
            transfer.id, transfer.scripts_expected, transfer.scripts_received,
        )
    else:
        transfer.status = 'CONFIRMED'
        action = 'CONFIRM_TRANSFER'

    previous = None
    target = RECEIVER_STATUS.get(current_user.role_name)
    if target:
        previous = _auto_status(transfer.exam_session, target, 'transfer_confirmed')

    log_audit(action, 'BatchTransfer', transfer.id, {
        "scriptsExpected": transfer.scripts_expected,
        "scriptsReceived": transfer.scripts_received,
        "incidentId": incident.id if incident else None,
    })
    db.session.commit()

    events.transfer_confirmed(transfer)
    if previous:
        events.batch_status_updated(transfer.exam_session, previous)
    if incident:
        events.incident_created(incident)

    body = {"message": "Transfer confirmed successfully", "transfer": transfer.to_dict()}
    if incident:
        body["incident"] = {"id": incident.id, "incidentNumber": incident.incident_number}
    return jsonify(body)


@transfers.route('/<transfer_id>/reject', methods=['PATCH'])
@login_required
def reject_transfer(transfer_id):
    transfer = _pending_for_receiver(transfer_id)
    reason = _clean(json_body().get('reason')) or None
    snapshot = transfer.to_dict()

    log_audit('REJECT_TRANSFER', 'BatchTransfer', transfer.id, {
        "examSessionId": transfer.exam_session_id,
        "fromHandlerId": transfer.from_handler_id,
        "scriptsExpected": transfer.scripts_expected,
        "reason": reason,
    })
    db.session.delete(transfer)
    db.session.commit()

    events.transfer_rejected(snapshot, reason)
    return jsonify({"message": "Transfer rejected", "transferId": snapshot["id"], "reason": reason})


@transfers.route('/<transfer_id>/status', methods=['PATCH'])
@login_required
@roles_required('ADMIN')
def update_transfer_status(transfer_id):
    transfer = get_or_404(BatchTransfer, transfer_id, "Transfer not found")
    data = json_body()
    status = require_choice(data.get('status'), TRANSFER_STATUSES, 'status')
    previous = transfer.status
    transfer.status = status
    if 'discrepancyNote' in data:
        transfer.discrepancy_note = _clean(data['discrepancyNote']) or None

    log_audit('UPDATE_TRANSFER_STATUS', 'BatchTransfer', transfer.id, {
        "previousStatus": previous,
        "newStatus": status,
        "discrepancyNote": transfer.discrepancy_note,
    })
    db.session.commit()
    events.transfer_updated(transfer)
    return jsonify({"message": "Transfer status updated", "transfer": transfer.to_dict()})


# ==========================================================
# Read
# ==========================================================
@transfers.route('', methods=['GET'])
@login_required
def list_transfers():
    query = BatchTransfer.query
    handler_id = request.args.get('handlerId')
    if not is_admin(current_user):
        handler_id = current_user.id
    if handler_id:
        query = query.filter(or_(
            BatchTransfer.from_handler_id == handler_id,
            BatchTransfer.to_handler_id == handler_id,
        ))
    if request.args.get('fromHandlerId'):
        query = query.filter(BatchTransfer.from_handler_id == request.args['fromHandlerId'])
    if request.args.get('toHandlerId'):
        query = query.filter(BatchTransfer.to_handler_id == request.args['toHandlerId'])
    if request.args.get('status'):
        query = query.filter(BatchTransfer.status == require_choice(
            request.args['status'], TRANSFER_STATUSES, 'status'))
    if request.args.get('examSessionId'):
        query = query.filter(BatchTransfer.exam_session_id == request.args['examSessionId'])
    query = query.order_by(BatchTransfer.requested_at.desc())
    return jsonify(paginate(query, 'transfers', default_limit=50))


@transfers.route('/history/<session_id>', methods=['GET'])
@login_required
def transfer_history(session_id):
    exam_session = get_or_404(ExamSession, session_id, "Exam session not found")
    rows = exam_session.transfers.order_by(BatchTransfer.requested_at.asc()).all()
    return jsonify({
        "examSession": exam_session.summary(),
        "transfers": [t.to_dict(with_session=False) for t in rows],
    })


def current_custodian(exam_session):
    return (
        exam_session.transfers
        .filter(BatchTransfer.confirmed_at.isnot(None))
        .order_by(BatchTransfer.confirmed_at.desc(), BatchTransfer.requested_at.desc())
        .first()
    )


@transfers.route('/custody/<session_id>', methods=['GET'])
@login_required
def custody(session_id):
    exam_session = get_or_404(ExamSession, session_id, "Exam session not found")
    latest = current_custodian(exam_session)
    pending = exam_session.transfers.filter(BatchTransfer.status == 'PENDING').count()
    return jsonify({
        "examSession": exam_session.summary(),
        "custodian": latest.to_handler.summary(with_email=True) if latest else None,
        "since": latest.confirmed_at.isoformat() if latest else None,
        "scriptsHeld": latest.scripts_received if latest else None,
        "pendingTransfers": pending,
    })


@transfers.route('/<transfer_id>', methods=['GET'])
@login_required
def get_transfer(transfer_id):
    transfer = get_or_404(BatchTransfer, transfer_id, "Transfer not found")
    _party_or_admin(transfer)
    return jsonify({"transfer": transfer.to_dict()})
