from datetime import timedelta

import pytest

from examtrack import db
from examtrack.models import RegistrationSession, utcnow
from examtrack.registration import unique_email


@pytest.fixture
def qr_session(client, admin):
    response = client.post('/api/registration/create-session', headers=admin.headers,
                           json={"department": "Computer Science", "expiresInMinutes": 30})
    assert response.status_code == 201
    return response.get_json()["session"]


def _register(client, qr_token, **fields):
    body = {
        "qrToken": qr_token,
        "firstName": "Kofi",
        "lastName": "Boateng",
        "phone": "0241234567",
        "password": "invigilate123",
    }
    body.update(fields)
    return client.post('/api/registration/register', json=body)


def _expire(app, session_id):
    with app.app_context():
        db.session.get(RegistrationSession, session_id).expires_at = utcnow() - timedelta(minutes=1)
        db.session.commit()


def test_create_session(qr_session):
    assert qr_session["status"] == "ACTIVE"
    assert qr_session["department"] == "Computer Science"
    assert qr_session["qrCode"].startswith("data:image/png;base64,")
    assert qr_session["qrCodeData"]["token"] == qr_session["qrToken"]


def test_create_session_admin_only(client, lecturer):
    response = client.post('/api/registration/create-session', headers=lecturer.headers,
                           json={"department": "Computer Science"})

    assert response.status_code == 403


def test_create_session_validation(client, admin):
    response = client.post('/api/registration/create-session', headers=admin.headers,
                           json={"department": "Physics", "expiresInMinutes": 2000})

    assert response.status_code == 400
    assert response.get_json()["details"][0]["field"] == "expiresInMinutes"


def test_register_invigilator(app, client, qr_session):
    """A QR session admits exactly one invigilator"""
    response = _register(client, qr_session["qrToken"])

    assert response.status_code == 201
    data = response.get_json()
    assert data["token"] and data["refreshToken"]
    assert data["user"]["role"] == "INVIGILATOR"
    assert data["user"]["email"] == "kofi.boateng@examtrack.local"
    assert data["user"]["department"] == "Computer Science"

    with app.app_context():
        session = db.session.get(RegistrationSession, qr_session["id"])
        assert session.used is True
        assert session.used_by_id == data["user"]["id"]

    response = _register(client, qr_session["qrToken"], phone="0209876543")
    assert response.status_code == 400
    assert response.get_json()["error"] == "QR code has already been used"


def test_register_token_works(client, qr_session):
    token = _register(client, qr_session["qrToken"]).get_json()["token"]

    response = client.get('/api/auth/profile', headers={'Authorization': f'Bearer {token}'})
    assert response.status_code == 200


def test_register_rejects_bad_input(client, qr_session):
    response = _register(client, qr_session["qrToken"], phone="12345", password="short")

    assert response.status_code == 400
    fields = {d["field"] for d in response.get_json()["details"]}
    assert fields == {"phone", "password"}


def test_register_password_must_be_text(client, qr_session):
    response = _register(client, qr_session["qrToken"], password=123456789)

    assert response.status_code == 400
    assert response.get_json()["details"] == [
        {"field": "password", "message": "Password must be at least 8 characters"},
    ]


def test_register_unknown_token(client):
    response = _register(client, "nope")

    assert response.status_code == 400
    assert response.get_json()["error"] == "Invalid QR code"


def test_register_expired_session(app, client, qr_session):
    _expire(app, qr_session["id"])

    response = _register(client, qr_session["qrToken"])
    assert response.get_json()["error"] == "QR code has expired"


def test_register_duplicate_phone(client, admin, qr_session):
    _register(client, qr_session["qrToken"])
    second = client.post('/api/registration/create-session', headers=admin.headers,
                         json={"department": "Computer Science"}).get_json()["session"]

    response = _register(client, second["qrToken"], firstName="Yaw")
    assert response.status_code == 400
    assert response.get_json()["error"] == "Phone number is already registered"


def test_unique_email(app, make_account):
    make_account('INVIGILATOR', email='kofi.boateng@examtrack.local')
    with app.app_context():
        assert unique_email('Kofi', 'Boateng') == 'kofi.boateng.1@examtrack.local'
        assert unique_email("Ama", "O'Neil") == 'ama.oneil@examtrack.local'


def test_deactivate_and_extend(client, admin, qr_session):
    url = f'/api/registration/sessions/{qr_session["id"]}'
    response = client.patch(f'{url}/extend', headers=admin.headers, json={"additionalMinutes": 30})
    assert response.status_code == 200
    assert response.get_json()["expiresAt"] > qr_session["expiresAt"]

    response = client.patch(f'{url}/deactivate', headers=admin.headers)
    assert response.status_code == 200

    response = _register(client, qr_session["qrToken"])
    assert response.get_json()["error"] == "Invalid QR code"


def test_used_session_cannot_be_changed(client, admin, qr_session):
    _register(client, qr_session["qrToken"])
    url = f'/api/registration/sessions/{qr_session["id"]}'

    assert client.patch(f'{url}/deactivate', headers=admin.headers).status_code == 400
    response = client.patch(f'{url}/extend', headers=admin.headers, json={"additionalMinutes": 5})
    assert response.status_code == 400


def test_bulk_create(client, admin):
    response = client.post('/api/registration/bulk-create', headers=admin.headers, json={
        "sessions": [{"department": "Physics"}, {"department": "Chemistry", "expiresInMinutes": 120}],
    })
    assert response.status_code == 201
    assert len(response.get_json()["sessions"]) == 2

    response = client.post('/api/registration/bulk-create', headers=admin.headers, json={
        "sessions": [{"department": "Physics"}] * 51,
    })
    assert response.status_code == 400


def test_list_analytics_and_cleanup(app, client, admin, qr_session):
    """Sessions are bucketed as active, used or expired"""
    used = client.post('/api/registration/create-session', headers=admin.headers,
                       json={"department": "Mathematics"}).get_json()["session"]
    _register(client, used["qrToken"])
    stale = client.post('/api/registration/create-session', headers=admin.headers,
                        json={"department": "Mathematics"}).get_json()["session"]
    _expire(app, stale["id"])

    response = client.get('/api/registration/sessions?status=active', headers=admin.headers)
    assert [s["id"] for s in response.get_json()["sessions"]] == [qr_session["id"]]

    analytics = client.get('/api/registration/analytics', headers=admin.headers).get_json()
    assert (analytics["active"], analytics["used"], analytics["expired"]) == (1, 1, 1)
    assert analytics["total"] == 3
    assert analytics["departments"]["Mathematics"]["total"] == 2
    assert len(analytics["recentActivity"]) == 2

    response = client.delete('/api/registration/cleanup', headers=admin.headers)
    assert response.get_json()["count"] == 1
    with app.app_context():
        assert db.session.get(RegistrationSession, stale["id"]) is None
