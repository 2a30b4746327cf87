from examtrack.models import AuditLog, BlacklistedToken
from examtrack.security import generate_temporary_password, password_problems

from conftest import TEST_PASSWORD


def test_login_success(client, invigilator):
    """Valid credentials return an access and refresh token pair"""
    response = client.post('/api/auth/login', json={
        "email": invigilator.email,
        "password": TEST_PASSWORD,
    })

    assert response.status_code == 200
    data = response.get_json()
    assert data["token"]
    assert data["refreshToken"]
    assert data["user"]["role"] == 'INVIGILATOR'
    assert "passwordHash" not in data["user"]


def test_login_with_phone_identifier(client, make_account):
    """Phone numbers are accepted as the login identifier"""
    account = make_account('INVIGILATOR', phone='0241234567')
    response = client.post('/api/auth/login', json={
        "identifier": "0241234567",
        "password": TEST_PASSWORD,
    })

    assert response.status_code == 200
    assert response.get_json()["user"]["id"] == account.id


def test_login_invalid_credentials(client, invigilator):
    """Wrong password is rejected without revealing which part was wrong"""
    response = client.post('/api/auth/login', json={
        "email": invigilator.email,
        "password": "wrongpassword",
    })

    assert response.status_code == 401
    assert response.get_json()["error"] == "Invalid credentials"


def test_login_deactivated_account(client, make_account):
    """Deactivated accounts cannot log in"""
    account = make_account('LECTURER', is_active=False)
    response = client.post('/api/auth/login', json={
        "email": account.email,
        "password": TEST_PASSWORD,
    })

    assert response.status_code == 403


def test_login_writes_audit_log(app, client, invigilator):
    client.post('/api/auth/login', json={"email": invigilator.email, "password": TEST_PASSWORD})

    with app.app_context():
        log = AuditLog.query.filter_by(action='LOGIN').first()
        assert log is not None
        assert log.user_id == invigilator.id


def test_unauthorized_access(client):
    """Protected routes reject requests without a token"""
    response = client.get('/api/auth/profile')

    assert response.status_code == 401
    assert response.get_json()["error"] == "No token provided"


def test_invalid_token_rejected(client):
    response = client.get('/api/auth/profile', headers={'Authorization': 'Bearer not-a-jwt'})

    assert response.status_code == 401
    assert response.get_json()["error"] == "Invalid or expired token"


def test_profile(client, lecturer):
    response = client.get('/api/auth/profile', headers=lecturer.headers)

    assert response.status_code == 200
    assert response.get_json()["user"]["email"] == lecturer.email


def test_logout_revokes_token(app, client, lecturer):
    """A logged-out token can no longer be used"""
    response = client.post('/api/auth/logout', headers=lecturer.headers)
    assert response.status_code == 200

    response = client.get('/api/auth/profile', headers=lecturer.headers)
    assert response.status_code == 401
    assert response.get_json()["error"] == "Token has been revoked"

    with app.app_context():
        assert BlacklistedToken.query.count() == 1


def test_refresh_token_is_single_use(client, lecturer):
    """Refreshing returns a new pair and revokes the refresh token used"""
    response = client.post('/api/auth/refresh-token', json={"refreshToken": lecturer.refresh})
    assert response.status_code == 200
    assert response.get_json()["token"]

    response = client.post('/api/auth/refresh-token', json={"refreshToken": lecturer.refresh})
    assert response.status_code == 401


def test_access_token_cannot_refresh(client, lecturer):
    response = client.post('/api/auth/refresh-token', json={"refreshToken": lecturer.token})

    assert response.status_code == 401


def test_refresh_token_cannot_authenticate(client, lecturer):
    response = client.get('/api/auth/profile', headers={'Authorization': f'Bearer {lecturer.refresh}'})

    assert response.status_code == 401


def test_change_password(client, lecturer):
    response = client.post('/api/auth/change-password', headers=lecturer.headers, json={
        "currentPassword": TEST_PASSWORD,
        "newPassword": "N3w-Secret!",
    })
    assert response.status_code == 200

    response = client.post('/api/auth/login', json={"email": lecturer.email, "password": "N3w-Secret!"})
    assert response.status_code == 200


def test_change_password_wrong_current(client, lecturer):
    response = client.post('/api/auth/change-password', headers=lecturer.headers, json={
        "currentPassword": "not-my-password",
        "newPassword": "N3w-Secret!",
    })

    assert response.status_code == 401


def test_change_password_weak_password(client, lecturer):
    """Password policy failures come back as field-level details"""
    response = client.post('/api/auth/change-password', headers=lecturer.headers, json={
        "currentPassword": TEST_PASSWORD,
        "newPassword": "short",
    })

    assert response.status_code == 400
    details = response.get_json()["details"]
    assert all(d["field"] == "newPassword" for d in details)
    assert len(details) >= 3


def test_first_time_password(client, make_account):
    """Accounts created with a temporary password set their own once"""
    account = make_account('INVIGILATOR', password_changed=False)
    response = client.post('/api/auth/first-time-password', headers=account.headers, json={
        "newPassword": "Fresh-Start1",
    })
    assert response.status_code == 200
    data = response.get_json()
    assert data["user"]["passwordChanged"] is True
    assert data["token"]

    response = client.post('/api/auth/first-time-password', headers=account.headers, json={
        "newPassword": "Another-One2",
    })
    assert response.status_code == 400


def test_password_reset_flow(client, lecturer):
    response = client.post('/api/auth/request-password-reset', json={"email": lecturer.email})
    assert response.status_code == 200
    token = response.get_json()["resetToken"]

    response = client.post('/api/auth/reset-password', json={"token": token, "newPassword": "Reset-Pass9"})
    assert response.status_code == 200

    response = client.post('/api/auth/login', json={"email": lecturer.email, "password": "Reset-Pass9"})
    assert response.status_code == 200


def test_password_reset_unknown_email(client):
    """Unknown emails get the same answer and no token"""
    response = client.post('/api/auth/request-password-reset', json={"email": "nobody@examtrack.test"})

    assert response.status_code == 200
    assert "resetToken" not in response.get_json()


def test_reset_password_bad_token(client):
    response = client.post('/api/auth/reset-password', json={"token": "garbage", "newPassword": "Reset-Pass9"})

    assert response.status_code == 400


def test_audit_logs_admin_only(client, admin, lecturer):
    response = client.get('/api/auth/audit-logs', headers=lecturer.headers)
    assert response.status_code == 403
    assert response.get_json()["current"] == 'LECTURER'

    response = client.get('/api/auth/audit-logs', headers=admin.headers)
    assert response.status_code == 200
    assert "logs" in response.get_json()
    assert "pagination" in response.get_json()


def test_password_policy_helpers():
    assert password_problems("Good-Pass1") == []
    assert "Password must contain a number" in password_problems("No-Digits-Here")
    for _ in range(20):
        assert password_problems(generate_temporary_password()) == []


def test_health(client):
    response = client.get('/health')

    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


def test_unknown_route_returns_json(client):
    response = client.get('/api/does-not-exist')

    assert response.status_code == 404
    assert "error" in response.get_json()
