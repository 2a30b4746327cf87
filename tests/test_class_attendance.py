import json
from datetime import timedelta

import pytest

from examtrack import db
from examtrack.class_attendance import haversine_m
from examtrack.models import AttendanceLink, Student, utcnow

VENUE = {"lat": 5.6506, "lng": -0.1962}


@pytest.fixture
def recording(client, lecturer):
    """An in-progress class attendance session owned by the lecturer"""
    response = client.post('/api/class-attendance/sessions/start', headers=lecturer.headers, json={
        "deviceId": "tablet-01",
        "deviceName": "Front desk tablet",
        "courseCode": "csm205",
        "courseName": "Operating Systems",
        "totalRegisteredStudents": 2,
    })
    assert response.status_code == 201
    return response.get_json()["session"]


def _index_number(app, student_id):
    with app.app_context():
        return db.session.get(Student, student_id).index_number


def _qr(app, student_id):
    with app.app_context():
        return db.session.get(Student, student_id).qr_code


def test_start_session(recording, lecturer):
    assert recording["status"] == "IN_PROGRESS"
    assert recording["courseCode"] == "CSM205"
    assert recording["userId"] == lecturer.id
    assert recording["attendedCount"] == 0


def test_one_active_session_per_device(client, lecturer, recording):
    response = client.post('/api/class-attendance/sessions/start', headers=lecturer.headers, json={
        "deviceId": "tablet-01",
        "courseCode": "CSM206",
        "courseName": "Networks",
    })

    assert response.status_code == 400


def test_invigilator_cannot_record(client, invigilator):
    response = client.post('/api/class-attendance/sessions/start', headers=invigilator.headers, json={
        "deviceId": "d", "courseCode": "C", "courseName": "N",
    })

    assert response.status_code == 403


def test_scan_qr_and_duplicate(app, client, lecturer, recording, make_student):
    """A student can only be counted once per session"""
    student_id = make_student()
    url = f'/api/class-attendance/sessions/{recording["id"]}/scan'

    response = client.post(url, headers=lecturer.headers, json={"qrCode": _qr(app, student_id)})
    assert response.status_code == 201
    attendance = response.get_json()["attendance"]
    assert attendance["verificationMethod"] == "QR_CODE"
    assert attendance["lecturerConfirmed"] is True

    response = client.post(url, headers=lecturer.headers, json={"qrCode": _qr(app, student_id)})
    assert response.status_code == 409
    assert response.get_json()["code"] == "ALREADY_RECORDED"


def test_scan_accepts_partial_payload(app, client, lecturer, recording, make_student):
    student_id = make_student()
    payload = json.dumps({"type": "STUDENT", "indexNumber": _index_number(app, student_id)})

    response = client.post(f'/api/class-attendance/sessions/{recording["id"]}/scan',
                           headers=lecturer.headers, json={"qrCode": payload})
    assert response.status_code == 201
    assert response.get_json()["attendance"]["studentId"] == student_id


def test_scan_unknown_qr(client, lecturer, recording):
    response = client.post(f'/api/class-attendance/sessions/{recording["id"]}/scan',
                           headers=lecturer.headers, json={"qrCode": "not-a-student"})

    assert response.status_code == 404


def test_attendance_limit(app, client, lecturer, recording, make_student):
    url = f'/api/class-attendance/sessions/{recording["id"]}/manual'
    for _ in range(2):
        response = client.post(url, headers=lecturer.headers,
                               json={"indexNumber": _index_number(app, make_student())})
        assert response.status_code == 201

    response = client.post(url, headers=lecturer.headers, json={"indexNumber": _index_number(app, make_student())})
    assert response.status_code == 400
    assert "Attendance limit reached" in response.get_json()["error"]


def test_manual_entry_with_status(app, client, lecturer, recording, make_student):
    response = client.post(f'/api/class-attendance/sessions/{recording["id"]}/manual', headers=lecturer.headers,
                           json={"indexNumber": _index_number(app, make_student()), "status": "LATE"})

    assert response.status_code == 201
    assert response.get_json()["attendance"]["status"] == "LATE"
    assert response.get_json()["attendance"]["verificationMethod"] == "MANUAL_INDEX"


def test_end_session(app, client, lecturer, recording, make_student, make_account):
    client.post(f'/api/class-attendance/sessions/{recording["id"]}/manual', headers=lecturer.headers,
                json={"indexNumber": _index_number(app, make_student())})
    client.post(f'/api/class-attendance/sessions/{recording["id"]}/links', headers=lecturer.headers, json={})

    other = make_account('LECTURER')
    response = client.post(f'/api/class-attendance/sessions/{recording["id"]}/end', headers=other.headers)
    assert response.status_code == 403

    response = client.post(f'/api/class-attendance/sessions/{recording["id"]}/end', headers=lecturer.headers)
    assert response.status_code == 200
    data = response.get_json()
    assert data["session"]["status"] == "COMPLETED"
    assert data["summary"]["totalAttended"] == 1
    assert data["summary"]["linksDeactivated"] == 1

    response = client.post(f'/api/class-attendance/sessions/{recording["id"]}/manual', headers=lecturer.headers,
                           json={"indexNumber": _index_number(app, make_student())})
    assert response.status_code == 400


def test_live_stats_and_history(app, client, lecturer, recording, make_student):
    student_id = make_student()
    client.post(f'/api/class-attendance/sessions/{recording["id"]}/scan', headers=lecturer.headers,
                json={"qrCode": _qr(app, student_id)})

    response = client.get(f'/api/class-attendance/sessions/{recording["id"]}/live-stats', headers=lecturer.headers)
    stats = response.get_json()
    assert stats["attended"] == 1
    assert stats["attendanceRate"] == 50.0
    assert stats["byMethod"] == {"QR_CODE": 1}

    response = client.get('/api/class-attendance/history', headers=lecturer.headers)
    assert response.get_json()["pagination"]["total"] == 1

    response = client.get(f'/api/class-attendance/students/{student_id}/history', headers=lecturer.headers)
    history = response.get_json()
    assert history["totalSessions"] == 1
    assert history["attendances"][0]["session"]["courseCode"] == "CSM205"

    response = client.get('/api/class-attendance/stats', headers=lecturer.headers)
    assert response.get_json()["byCourse"][0]["totalAttendance"] == 1


def test_self_mark_with_link(app, client, lecturer, recording, make_student):
    """Students mark themselves present through a shared link"""
    response = client.post(f'/api/class-attendance/sessions/{recording["id"]}/links', headers=lecturer.headers,
                           json={"expiresInMinutes": 15, "maxUses": 1})
    assert response.status_code == 201
    link = response.get_json()["link"]
    assert link["url"] == f"http://frontend.test/student-attendance?token={link['token']}"

    response = client.get(f'/api/class-attendance/links/{link["token"]}/validate')
    assert response.status_code == 200
    assert response.get_json()["session"]["courseCode"] == "CSM205"

    response = client.post('/api/class-attendance/self-mark', json={
        "token": link["token"],
        "indexNumber": _index_number(app, make_student()),
    })
    assert response.status_code == 201
    assert response.get_json()["attendance"]["verificationMethod"] == "LINK"

    response = client.post('/api/class-attendance/self-mark', json={
        "token": link["token"],
        "indexNumber": _index_number(app, make_student()),
    })
    assert response.status_code == 400
    assert "maximum usage" in response.get_json()["error"]


def test_new_link_replaces_old(client, lecturer, recording):
    url = f'/api/class-attendance/sessions/{recording["id"]}/links'
    first = client.post(url, headers=lecturer.headers, json={}).get_json()["link"]
    second = client.post(url, headers=lecturer.headers, json={}).get_json()["link"]

    response = client.get(url, headers=lecturer.headers)
    assert [l["id"] for l in response.get_json()["links"]] == [second["id"]]

    response = client.get(f'/api/class-attendance/links/{first["token"]}/validate')
    assert response.status_code == 404


def test_expired_link(app, client, lecturer, recording):
    link = client.post(f'/api/class-attendance/sessions/{recording["id"]}/links', headers=lecturer.headers,
                       json={}).get_json()["link"]
    with app.app_context():
        row = db.session.get(AttendanceLink, link["id"])
        row.expires_at = utcnow() - timedelta(minutes=1)
        db.session.commit()

    response = client.get(f'/api/class-attendance/links/{link["token"]}/validate')
    assert response.status_code == 400
    assert response.get_json()["error"] == "This attendance link has expired"


def test_geofenced_link(app, client, lecturer, recording, make_student):
    link = client.post(f'/api/class-attendance/sessions/{recording["id"]}/links', headers=lecturer.headers,
                       json={"geolocation": dict(VENUE, radius=100)}).get_json()["link"]
    index_number = _index_number(app, make_student())

    response = client.post('/api/class-attendance/self-mark', json={"token": link["token"], "indexNumber": index_number})
    assert response.status_code == 400
    assert response.get_json()["requiresLocation"] is True

    response = client.post('/api/class-attendance/self-mark', json={
        "token": link["token"], "indexNumber": index_number,
        "latitude": 5.6600, "longitude": -0.1962,
    })
    assert response.status_code == 403
    assert response.get_json()["distance"] > 100

    response = client.post('/api/class-attendance/self-mark', json={
        "token": link["token"], "indexNumber": index_number,
        "latitude": 5.6507, "longitude": -0.1962,
    })
    assert response.status_code == 201


def test_geofence_rejects_bad_coordinates(app, client, lecturer, recording, make_student):
    link = client.post(f'/api/class-attendance/sessions/{recording["id"]}/links', headers=lecturer.headers,
                       json={"geolocation": dict(VENUE, radius=100)}).get_json()["link"]
    index_number = _index_number(app, make_student())

    for latitude, longitude in (("nan", "nan"), ("inf", 10.0), (91, -0.1962), (5.6506, -181)):
        response = client.post('/api/class-attendance/self-mark', json={
            "token": link["token"], "indexNumber": index_number,
            "latitude": latitude, "longitude": longitude,
        })
        assert response.status_code == 400, (latitude, longitude)
        assert response.get_json()["details"][0]["field"] in ("latitude", "longitude")

    response = client.get(f'/api/class-attendance/links/{link["token"]}/validate',
                          query_string={"latitude": "nan", "longitude": "nan"})
    assert response.status_code == 400


def test_link_centre_must_be_a_real_position(client, lecturer, recording):
    for geo in ({"lat": "nan", "lng": 0}, {"lat": 120, "lng": 0}, {"lat": 0, "lng": "-inf"}):
        response = client.post(f'/api/class-attendance/sessions/{recording["id"]}/links', headers=lecturer.headers,
                               json={"geolocation": dict(geo, radius=100)})
        assert response.status_code == 400


def test_deactivate_link(client, lecturer, recording):
    link = client.post(f'/api/class-attendance/sessions/{recording["id"]}/links', headers=lecturer.headers,
                       json={}).get_json()["link"]

    response = client.delete(f'/api/class-attendance/links/{link["id"]}', headers=lecturer.headers)
    assert response.status_code == 200

    response = client.get(f'/api/class-attendance/links/{link["token"]}/validate')
    assert response.status_code == 404


def test_haversine():
    assert haversine_m(5.6506, -0.1962, 5.6506, -0.1962) == 0
    # one hundredth of a degree of latitude is roughly 1.1 km
    assert 1100 < haversine_m(5.65, -0.19, 5.66, -0.19) < 1120
