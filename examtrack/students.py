# examtrack/students.py
import io
import logging

from flask import Blueprint, jsonify, request
from flask_login import login_required
from sqlalchemy import or_

from . import db
from .errors import ApiError, ValidationError
from .models import ClassAttendance, ExamAttendance, Student, utcnow
from .security import roles_required
from .utils import _clean, get_or_404, json_body, log_audit, paginate, parse_int, qr_data_url
from .workbooks import read_student_rows

students = Blueprint('students', __name__)
logger = logging.getLogger(__name__)


def _student_fields(data, partial=False):
    """Validate a student payload; returns model attribute values."""
    errors = []
    values = {}
    for key, attr in (
        ('indexNumber', 'index_number'),
        ('firstName', 'first_name'),
        ('lastName', 'last_name'),
        ('program', 'program'),
    ):
        if partial and key not in data:
            continue
        value = _clean(data.get(key))
        if not value:
            errors.append({"field": key, "message": f"{key} is required"})
        values[attr] = value
    for key, attr in (('option', 'option'), ('department', 'department')):
        if key in data:
            values[attr] = _clean(data.get(key)) or None

    if not partial or 'level' in data:
        try:
            values['level'] = parse_int(data.get('level'), 'level', minimum=1)
        except ValidationError as e:
            errors.extend(e.extra['details'])
    if errors:
        raise ValidationError(errors)
    return values


def _create_student(data):
    values = _student_fields(data)
    if Student.query.filter_by(index_number=values['index_number']).first():
        raise ApiError("Student with this index number already exists", 409)
    student = Student(**values)
    student.refresh_qr_code()
    db.session.add(student)
    db.session.flush()
    return student


# ==========================================================
# Create
# ==========================================================
@students.route('', methods=['POST'])
@login_required
@roles_required('ADMIN')
def create_student():
    student = _create_student(json_body())
    log_audit('CREATE_STUDENT', 'Student', student.id, {"indexNumber": student.index_number})
    db.session.commit()
    return jsonify({"message": "Student created successfully", "student": student.to_dict()}), 201


def _bulk_create(rows):
    result = {"success": [], "failed": []}
    for row in rows:
        try:
            student = _create_student(row if isinstance(row, dict) else {})
            result["success"].append(student.summary())
        except ApiError as e:
            result["failed"].append({
                "indexNumber": row.get('indexNumber') if isinstance(row, dict) else None,
                "error": e.message,
                "details": e.extra.get('details'),
            })
    return result


@students.route('/bulk', methods=['POST'])
@login_required
@roles_required('ADMIN')
def bulk_create_students():
    rows = json_body().get('students')
    if not isinstance(rows, list) or not rows:
        raise ValidationError([{"field": "students", "message": "students must be a non-empty list"}])

    result = _bulk_create(rows)
    log_audit('BULK_CREATE_STUDENTS', 'Student', None, {
        "success": len(result["success"]),
        "failed": len(result["failed"]),
    })
    db.session.commit()
    return jsonify(dict(result, message=f"{len(result['success'])} students created"))


@students.route('/import', methods=['POST'])
@login_required
@roles_required('ADMIN')
def import_students():
    upload = request.files.get('file')
    if upload is None or not upload.filename:
        raise ValidationError([{"field": "file", "message": "An .xlsx file is required"}])
    if not upload.filename.lower().endswith('.xlsx'):
        raise ValidationError([{"field": "file", "message": "Only .xlsx files are supported"}])

    rows = read_student_rows(io.BytesIO(upload.read()))
    result = _bulk_create(rows)
    log_audit('IMPORT_STUDENTS', 'Student', None, {
        "file": upload.filename,
        "success": len(result["success"]),
        "failed": len(result["failed"]),
    })
    db.session.commit()
    logger.info("Imported %s students from %s", len(result["success"]), upload.filename)
    return jsonify(dict(result, message=f"{len(result['success'])} students imported"))


# ==========================================================
# Read
# ==========================================================
@students.route('', methods=['GET'])
@login_required
def list_students():
    query = Student.query
    if request.args.get('program'):
        query = query.filter(Student.program == request.args['program'])
    if request.args.get('level'):
        query = query.filter(Student.level == parse_int(request.args['level'], 'level'))
    search = _clean(request.args.get('search'))
    if search:
        like = f"%{search}%"
        query = query.filter(or_(
            Student.index_number.ilike(like),
            Student.first_name.ilike(like),
            Student.last_name.ilike(like),
        ))
    query = query.order_by(Student.index_number)
    return jsonify(paginate(query, 'students', default_limit=50))


@students.route('/programs', methods=['GET'])
@login_required
def list_programs():
    rows = db.session.query(Student.program).distinct().order_by(Student.program).all()
    return jsonify({"programs": [r[0] for r in rows]})


@students.route('/levels', methods=['GET'])
@login_required
def list_levels():
    rows = db.session.query(Student.level).distinct().order_by(Student.level).all()
    return jsonify({"levels": [r[0] for r in rows]})


@students.route('/index/<path:index_number>', methods=['GET'])
@login_required
def get_by_index(index_number):
    student = Student.query.filter_by(index_number=index_number).first()
    if not student:
        raise ApiError("Student not found", 404)
    return jsonify({"student": student.to_dict()})


@students.route('/<student_id>', methods=['GET'])
@login_required
def get_student(student_id):
    student = get_or_404(Student, student_id, "Student not found")
    body = student.to_dict()
    body["examAttendanceCount"] = student.exam_attendances.count()
    body["classAttendanceCount"] = student.class_attendances.count()
    return jsonify({"student": body})


@students.route('/<student_id>/qr-code', methods=['GET'])
@login_required
def student_qr_code(student_id):
    student = get_or_404(Student, student_id, "Student not found")
    if not student.qr_code:
        student.refresh_qr_code()
        db.session.commit()
    return jsonify({
        "student": student.summary(),
        "qrCode": qr_data_url(student.qr_code),
        "qrData": student.qr_code,
        "generatedAt": utcnow().isoformat(),
    })


# ==========================================================
# Update / Delete
# ==========================================================
@students.route('/<student_id>', methods=['PUT'])
@login_required
@roles_required('ADMIN')
def update_student(student_id):
    student = get_or_404(Student, student_id, "Student not found")
    values = _student_fields(json_body(), partial=True)

    new_index = values.get('index_number')
    if new_index and new_index != student.index_number:
        if Student.query.filter(Student.index_number == new_index, Student.id != student.id).first():
            raise ApiError("Student with this index number already exists", 409)

    for attr, value in values.items():
        setattr(student, attr, value)
    if {'index_number', 'first_name', 'last_name', 'program', 'level'} & set(values):
        student.refresh_qr_code()

    log_audit('UPDATE_STUDENT', 'Student', student.id, {"fields": sorted(values)})
    db.session.commit()
    return jsonify({"message": "Student updated successfully", "student": student.to_dict()})


@students.route('/<student_id>', methods=['DELETE'])
@login_required
@roles_required('ADMIN')
def delete_student(student_id):
    student = get_or_404(Student, student_id, "Student not found")
    has_exam = ExamAttendance.query.filter_by(student_id=student.id).first() is not None
    has_class = ClassAttendance.query.filter_by(student_id=student.id).first() is not None
    if has_exam or has_class:
        raise ApiError("Cannot delete student with existing attendance records")

    log_audit('DELETE_STUDENT', 'Student', student.id, {"indexNumber": student.index_number})
    db.session.delete(student)
    db.session.commit()
    return jsonify({"message": "Student deleted successfully"})
