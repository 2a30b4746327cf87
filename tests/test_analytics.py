import pytest
from conftest import TEST_PASSWORD

from examtrack import db
from examtrack.models import ExamSession


@pytest.fixture
def handed_over(app, client, invigilator, lecturer, make_exam_session):
    """One clean handover and one short count, on two different batches"""
    sessions = [make_exam_session(), make_exam_session(courseCode="MTH201", department="Mathematics")]
    with app.app_context():
        for s in sessions:
            db.session.get(ExamSession, s["id"]).status = 'SUBMITTED'
        db.session.commit()

    for session, received in zip(sessions, (30, 28)):
        transfer = client.post('/api/batch-transfers', headers=invigilator.headers, json={
            "examSessionId": session["id"],
            "toHandlerId": lecturer.id,
            "scriptsExpected": 30,
        }).get_json()["transfer"]
        client.patch(f'/api/batch-transfers/{transfer["id"]}/confirm', headers=lecturer.headers,
                     json={"scriptsReceived": received})
    return sessions


def test_overview(client, admin, handed_over):
    response = client.get('/api/analytics/overview', headers=admin.headers)

    assert response.status_code == 200
    overview = response.get_json()["overview"]
    assert overview["totalExams"] == 2
    assert overview["totalTransfers"] == 2
    assert overview["totalDiscrepancies"] == 1
    assert overview["discrepancyRate"] == 50.0
    assert overview["totalHandlers"] == 2


def test_analytics_admin_only(client, lecturer):
    for path in ('overview', 'handler-performance', 'discrepancies', 'exam-stats'):
        response = client.get(f'/api/analytics/{path}', headers=lecturer.headers)
        assert response.status_code == 403


def test_handler_performance(client, admin, invigilator, lecturer, handed_over):
    response = client.get('/api/analytics/handler-performance', headers=admin.headers)
    handlers = {h["handler"]["id"]: h["metrics"] for h in response.get_json()["handlers"]}

    assert handlers[invigilator.id]["transfersSent"] == 2
    assert handlers[lecturer.id]["transfersReceived"] == 2
    assert handlers[lecturer.id]["confirmedTransfers"] == 2
    assert handlers[lecturer.id]["discrepancies"] == 1
    assert handlers[lecturer.id]["currentCustody"] == 2


def test_discrepancies(client, admin, handed_over):
    """Short counts are reported even without a typed note"""
    response = client.get('/api/analytics/discrepancies', headers=admin.headers)
    data = response.get_json()

    assert data["summary"]["total"] == 1
    assert data["summary"]["unresolved"] == 1
    assert data["byStatus"] == {"DISCREPANCY_REPORTED": 1}
    assert data["byDepartment"] == {"Mathematics": 1}

    response = client.get('/api/analytics/discrepancies', headers=admin.headers,
                          query_string={"department": "Computer Science"})
    assert response.get_json()["summary"]["total"] == 0


def test_exam_stats(client, admin, invigilator, make_student, make_exam_session, record_entry):
    session = make_exam_session()
    student_id = make_student()
    record_entry(invigilator, student_id, session["id"])
    client.post('/api/attendance/submission', headers=invigilator.headers,
                json={"studentId": student_id, "examSessionId": session["id"]})
    record_entry(invigilator, make_student(), session["id"])

    response = client.get('/api/analytics/exam-stats', headers=admin.headers)
    data = response.get_json()
    assert data["summary"]["totalExams"] == 1
    assert data["summary"]["totalAttendance"] == 2
    assert data["summary"]["submittedScripts"] == 1
    assert data["summary"]["submissionRate"] == 50.0
    assert data["byStatus"] == {"IN_PROGRESS": 1}
    assert data["byDepartment"] == {"Computer Science": 1}


def test_exam_stats_empty(client, admin):
    summary = client.get('/api/analytics/exam-stats', headers=admin.headers).get_json()["summary"]

    assert summary["totalExams"] == 0
    assert summary["totalAttendance"] == 0


def test_user_activity(client, invigilator):
    response = client.post('/api/auth/login', json={"email": invigilator.email, "password": TEST_PASSWORD})
    assert response.status_code == 200

    response = client.get('/api/analytics/user-activity?days=7', headers=invigilator.headers)
    data = response.get_json()
    assert data["periodDays"] == 7
    assert data["byAction"] == {"LOGIN": 1}
    assert data["totalActions"] == 1
    assert data["recentActivity"][0]["entityId"] == invigilator.id


def test_user_activity_days_bounds(client, invigilator):
    for days in ('1000000', '0', 'week'):
        response = client.get('/api/analytics/user-activity', headers=invigilator.headers, query_string={"days": days})
        assert response.status_code == 400
        assert response.get_json()["details"][0]["field"] == "days"

    response = client.get('/api/analytics/user-activity', headers=invigilator.headers)
    assert response.get_json()["periodDays"] == 30
