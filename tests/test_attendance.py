from examtrack import db
from examtrack.models import AuditLog, ExamSession


def test_first_entry_starts_session(app, client, invigilator, make_student, make_exam_session, record_entry):
    """The first recorded entry moves the batch to IN_PROGRESS"""
    session = make_exam_session()
    response = record_entry(invigilator, make_student(), session["id"])

    assert response.status_code == 201
    assert response.get_json()["attendance"]["status"] == "PRESENT"
    with app.app_context():
        assert db.session.get(ExamSession, session["id"]).status == 'IN_PROGRESS'
        assert AuditLog.query.filter_by(action='AUTO_UPDATE_SESSION_STATUS').count() == 1


def test_duplicate_entry_rejected(client, invigilator, make_student, make_exam_session, record_entry):
    session = make_exam_session()
    student_id = make_student()
    record_entry(invigilator, student_id, session["id"])

    response = record_entry(invigilator, student_id, session["id"])
    assert response.status_code == 400
    assert response.get_json()["error"] == "Student has already entered this exam session"


def test_entry_rejected_after_session_ends(app, client, invigilator, make_student, make_exam_session, record_entry):
    session = make_exam_session()
    with app.app_context():
        db.session.get(ExamSession, session["id"]).status = 'SUBMITTED'
        db.session.commit()

    response = record_entry(invigilator, make_student(), session["id"])
    assert response.status_code == 400


def test_exit_then_submission(client, invigilator, make_student, make_exam_session, record_entry):
    """Leaving without a script is recorded, and a late submission corrects it"""
    session = make_exam_session()
    student_id = make_student()
    record_entry(invigilator, student_id, session["id"])
    body = {"studentId": student_id, "examSessionId": session["id"]}

    response = client.post('/api/attendance/exit', headers=invigilator.headers, json=body)
    assert response.status_code == 200
    assert response.get_json()["attendance"]["status"] == "LEFT_WITHOUT_SUBMITTING"

    response = client.post('/api/attendance/exit', headers=invigilator.headers, json=body)
    assert response.status_code == 400

    response = client.post('/api/attendance/submission', headers=invigilator.headers, json=body)
    assert response.status_code == 200
    assert response.get_json()["attendance"]["status"] == "SUBMITTED"

    response = client.post('/api/attendance/submission', headers=invigilator.headers, json=body)
    assert response.status_code == 400


def test_exit_without_entry(client, invigilator, make_student, make_exam_session):
    session = make_exam_session()
    response = client.post('/api/attendance/exit', headers=invigilator.headers, json={
        "studentId": make_student(),
        "examSessionId": session["id"],
    })

    assert response.status_code == 404


def test_lecturer_cannot_record(client, lecturer, make_student, make_exam_session, record_entry):
    session = make_exam_session()
    response = record_entry(lecturer, make_student(), session["id"])

    assert response.status_code == 403


def test_discrepancy_note_and_listing(client, invigilator, make_student, make_exam_session, record_entry):
    session = make_exam_session()
    attendance = record_entry(invigilator, make_student(), session["id"]).get_json()["attendance"]

    response = client.patch('/api/attendance/discrepancy', headers=invigilator.headers, json={
        "attendanceId": attendance["id"],
        "discrepancyNote": "Script pages missing",
    })
    assert response.status_code == 200
    assert response.get_json()["attendance"]["discrepancyNote"] == "Script pages missing"

    response = client.get(f'/api/attendance?examSessionId={session["id"]}', headers=invigilator.headers)
    data = response.get_json()
    assert data["pagination"]["total"] == 1
    assert data["attendances"][0]["student"]["id"] == attendance["studentId"]


def test_unknown_student(client, invigilator, make_exam_session, record_entry):
    session = make_exam_session()
    response = record_entry(invigilator, "missing", session["id"])

    assert response.status_code == 404
    assert response.get_json()["error"] == "Student not found"
