# examtrack/exports.py
import io
import logging
from xml.sax.saxutils import escape

from flask import Blueprint, request, send_file
from flask_login import current_user, login_required
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .exam_sessions import build_manifest
from .incidents import apply_filters, can_modify, get_viewable, visible_incidents
from .models import BatchTransfer, ExamAttendance, ExamSession, Incident, utcnow
from .security import roles_required
from .utils import get_or_404, log_audit, parse_datetime
from . import db
from .workbooks import build_workbook

exports = Blueprint('exports', __name__)
logger = logging.getLogger(__name__)

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _fmt(value):
    return value.strftime("%Y-%m-%d %H:%M") if value else ""


def _stamp():
    return utcnow().strftime("%Y%m%d-%H%M%S")


def _xlsx(buf, name):
    return send_file(buf, mimetype=XLSX_MIMETYPE, as_attachment=True, download_name=name)


def _audit_export(kind, entity_id=None, details=None):
    log_audit('EXPORT_' + kind, 'Export', entity_id, details)
    db.session.commit()
    logger.info("User %s exported %s", current_user.id, kind.lower())


# ==========================================================
# Excel exports
# ==========================================================
@exports.route('/batch-manifest/<session_id>', methods=['GET'])
@login_required
@roles_required('ADMIN', 'INVIGILATOR', 'FACULTY_OFFICER', 'DEPARTMENT_HEAD', 'LECTURER')
def batch_manifest(session_id):
    exam_session = get_or_404(ExamSession, session_id, "Exam session not found")
    manifest = build_manifest(exam_session)
    stats = manifest["statistics"]

    rows = [
        (
            n,
            a["student"]["indexNumber"],
            f"{a['student']['firstName']} {a['student']['lastName']}",
            a["student"]["program"],
            a["entryTime"] or "",
            a["exitTime"] or "",
            a["submissionTime"] or "",
            a["status"],
            a["discrepancyNote"] or "",
        )
        for n, a in enumerate(manifest["attendances"], start=1)
    ]
    preamble = [
        ("Batch", exam_session.batch_qr_code),
        ("Course", f"{exam_session.course_code} - {exam_session.course_name}"),
        ("Lecturer", exam_session.lecturer_name),
        ("Venue", exam_session.venue),
        ("Exam date", _fmt(exam_session.exam_date)),
        ("Status", exam_session.status),
        ("Total students", stats["totalStudents"]),
        ("Submitted", stats["submitted"]),
        ("Entry only", stats["entryOnly"]),
        ("Exit without submission", stats["exitWithoutSubmission"]),
    ]
    buf = build_workbook([(
        "Manifest",
        ["#", "Index Number", "Name", "Program", "Entry", "Exit", "Submission", "Status", "Note"],
        rows,
        preamble,
    )])
    _audit_export('BATCH_MANIFEST', exam_session.id)
    return _xlsx(buf, f"manifest-{exam_session.course_code}-{_stamp()}.xlsx")


@exports.route('/attendance-report', methods=['GET'])
@login_required
@roles_required('ADMIN', 'INVIGILATOR', 'FACULTY_OFFICER', 'DEPARTMENT_HEAD', 'LECTURER')
def attendance_report():
    query = ExamAttendance.query.join(ExamSession)
    if request.args.get('startDate'):
        query = query.filter(ExamSession.exam_date >= parse_datetime(request.args['startDate'], 'startDate'))
    if request.args.get('endDate'):
        query = query.filter(ExamSession.exam_date <= parse_datetime(request.args['endDate'], 'endDate'))
    if request.args.get('department'):
        query = query.filter(ExamSession.department == request.args['department'])
    records = query.order_by(ExamSession.exam_date, ExamAttendance.entry_time).all()

    rows = [
        (
            a.exam_session.course_code,
            a.exam_session.venue,
            _fmt(a.exam_session.exam_date),
            a.student.index_number,
            a.student.full_name,
            _fmt(a.entry_time),
            _fmt(a.exit_time),
            _fmt(a.submission_time),
            a.status,
        )
        for a in records
    ]
    by_session = {}
    for a in records:
        entry = by_session.setdefault(a.exam_session_id, [a.exam_session, 0, 0])
        entry[1] += 1
        if a.submission_time:
            entry[2] += 1
    summary = [
        (s.course_code, s.department, _fmt(s.exam_date), total, submitted,
         round(submitted / total * 100, 2) if total else 0)
        for s, total, submitted in by_session.values()
    ]
    buf = build_workbook([
        ("Attendance",
         ["Course", "Venue", "Exam Date", "Index Number", "Name", "Entry", "Exit", "Submission", "Status"],
         rows, None),
        ("Summary",
         ["Course", "Department", "Exam Date", "Attended", "Submitted", "Submission Rate (%)"],
         summary, None),
    ])
    _audit_export('ATTENDANCE_REPORT', None, {"rows": len(rows)})
    return _xlsx(buf, f"attendance-report-{_stamp()}.xlsx")


@exports.route('/incidents-summary', methods=['GET'])
@login_required
def incidents_summary():
    query = apply_filters(visible_incidents(current_user), request.args)
    records = query.order_by(Incident.reported_at.desc()).all()
    rows = [
        (
            i.incident_number,
            i.type,
            i.severity,
            i.status,
            i.title,
            i.reporter.full_name if i.reporter else "",
            i.assignee.full_name if i.assignee else "",
            i.exam_session.course_code if i.exam_session else "",
            _fmt(i.reported_at),
            _fmt(i.resolved_at),
            "Yes" if i.is_confidential else "No",
        )
        for i in records
    ]
    buf = build_workbook([(
        "Incidents",
        ["Number", "Type", "Severity", "Status", "Title", "Reporter", "Assignee",
         "Course", "Reported", "Resolved", "Confidential"],
        rows,
        [("Generated", _fmt(utcnow())), ("Total incidents", len(rows))],
    )])
    _audit_export('INCIDENTS_SUMMARY', None, {"rows": len(rows)})
    return _xlsx(buf, f"incidents-{_stamp()}.xlsx")


@exports.route('/custody-chain/<session_id>', methods=['GET'])
@login_required
@roles_required('ADMIN', 'INVIGILATOR', 'FACULTY_OFFICER', 'DEPARTMENT_HEAD', 'LECTURER')
def custody_chain(session_id):
    exam_session = get_or_404(ExamSession, session_id, "Exam session not found")
    transfers = exam_session.transfers.order_by(BatchTransfer.requested_at.asc()).all()
    rows = [
        (
            n,
            t.from_handler.full_name,
            t.from_handler.role_name,
            t.to_handler.full_name,
            t.to_handler.role_name,
            t.scripts_expected,
            t.scripts_received if t.scripts_received is not None else "",
            t.status,
            t.location or "",
            _fmt(t.requested_at),
            _fmt(t.confirmed_at),
            t.discrepancy_note or "",
        )
        for n, t in enumerate(transfers, start=1)
    ]
    buf = build_workbook([(
        "Chain of Custody",
        ["#", "From", "From Role", "To", "To Role", "Expected", "Received",
         "Status", "Location", "Requested", "Confirmed", "Discrepancy"],
        rows,
        [
            ("Batch", exam_session.batch_qr_code),
            ("Course", f"{exam_session.course_code} - {exam_session.course_name}"),
            ("Current status", exam_session.status),
        ],
    )])
    _audit_export('CUSTODY_CHAIN', exam_session.id)
    return _xlsx(buf, f"custody-{exam_session.course_code}-{_stamp()}.xlsx")


# ==========================================================
# PDF export
# ==========================================================
def incident_pdf(incident, include_internal):
    buffer = io.BytesIO()
    pdf = SimpleDocTemplate(buffer, pagesize=A4, rightMargin=36, leftMargin=36, topMargin=48, bottomMargin=40)
    styles = getSampleStyleSheet()
    title_style = ParagraphStyle('ReportTitle', parent=styles['Title'], fontSize=16, spaceAfter=6)
    body = styles['BodyText']

    elements = [
        Paragraph(f"Incident Report {incident.incident_number}", title_style),
        Paragraph(escape(incident.title), styles['Heading2']),
        Spacer(1, 8),
    ]
    details = [
        ["Type", incident.type, "Severity", incident.severity],
        ["Status", incident.status, "Confidential", "Yes" if incident.is_confidential else "No"],
        ["Reported", _fmt(incident.reported_at), "Resolved", _fmt(incident.resolved_at)],
        ["Reporter", incident.reporter.full_name if incident.reporter else "",
         "Assignee", incident.assignee.full_name if incident.assignee else ""],
        ["Location", incident.location or "",
         "Course", incident.exam_session.course_code if incident.exam_session else ""],
    ]
    if incident.student:
        details.append(["Student", incident.student.full_name, "Index", incident.student.index_number])
    table = Table(details, colWidths=[70, 180, 80, 180])
    table.setStyle(TableStyle([
        ('GRID', (0, 0), (-1, -1), 0.6, colors.grey),
        ('BACKGROUND', (0, 0), (0, -1), colors.HexColor("#e8eef7")),
        ('BACKGROUND', (2, 0), (2, -1), colors.HexColor("#e8eef7")),
        ('FONTNAME', (0, 0), (0, -1), 'Helvetica-Bold'),
        ('FONTNAME', (2, 0), (2, -1), 'Helvetica-Bold'),
        ('FONTSIZE', (0, 0), (-1, -1), 9),
        ('VALIGN', (0, 0), (-1, -1), 'TOP'),
    ]))
    elements += [table, Spacer(1, 12), Paragraph("Description", styles['Heading3']),
                 Paragraph(escape(incident.description), body)]
    if incident.resolution_notes:
        elements += [Paragraph("Resolution", styles['Heading3']), Paragraph(escape(incident.resolution_notes), body)]

    history = [["When", "From", "To", "By", "Reason"]]
    for h in incident.status_history:
        history.append([
            _fmt(h.changed_at), h.from_status or "-", h.to_status,
            h.changed_by.full_name if h.changed_by else "", h.reason or "",
        ])
    if len(history) > 1:
        history_table = Table(history, repeatRows=1)
        history_table.setStyle(TableStyle([
            ('BACKGROUND', (0, 0), (-1, 0), colors.HexColor("#003366")),
            ('TEXTCOLOR', (0, 0), (-1, 0), colors.white),
            ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
            ('GRID', (0, 0), (-1, -1), 0.6, colors.grey),
            ('FONTSIZE', (0, 0), (-1, -1), 8),
        ]))
        elements += [Spacer(1, 12), Paragraph("Status history", styles['Heading3']), history_table]

    comments = [c for c in incident.comments if include_internal or not c.is_internal]
    if comments:
        elements += [Spacer(1, 12), Paragraph("Comments", styles['Heading3'])]
        for c in comments:
            who = escape(c.user.full_name) if c.user else ""
            tag = " (internal)" if c.is_internal else ""
            elements.append(Paragraph(f"<b>{who}</b> {_fmt(c.created_at)}{tag}: {escape(c.comment)}", body))

    def add_page_number(canvas, doc):
        canvas.setFont("Helvetica", 8)
        canvas.drawRightString(A4[0] - 36, 20, f"Page {canvas.getPageNumber()}")
        canvas.drawString(36, 20, f"Generated {_fmt(utcnow())} UTC")

    pdf.build(elements, onFirstPage=add_page_number, onLaterPages=add_page_number)
    buffer.seek(0)
    return buffer


@exports.route('/incidents/<incident_id>/pdf', methods=['GET'])
@login_required
def incident_report_pdf(incident_id):
    incident = get_viewable(incident_id)
    buffer = incident_pdf(incident, include_internal=can_modify(current_user, incident))
    _audit_export('INCIDENT_PDF', incident.id)
    return send_file(
        buffer,
        mimetype="application/pdf",
        as_attachment=True,
        download_name=f"{incident.incident_number}.pdf",
    )
