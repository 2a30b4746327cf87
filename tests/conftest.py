"""
Exam Script Tracking - test configuration and fixtures
"""
from collections import namedtuple

import pytest
from werkzeug.security import generate_password_hash

from examtrack import create_app, db
from examtrack.models import Student, User, get_role
from examtrack.security import generate_refresh_token, generate_token

TEST_PASSWORD = 'Passw0rd!'

TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SECRET_KEY': 'test-secret-key-for-testing-only',
    'JWT_SECRET': 'test-jwt-secret-for-testing-only',
    'APP_URL': 'http://frontend.test',
    'CORS_ORIGIN': '*',
    'LOG_LEVEL': 'WARNING',
}

# Plain values only: ORM instances must not leak out of an app context.
Account = namedtuple('Account', 'id email role token refresh headers')


@pytest.fixture
def app():
    """Fresh application with an in-memory database per test"""
    app = create_app(dict(TEST_CONFIG))
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_account(app):
    """Factory creating an active user of the given role and returning its tokens"""
    counter = {'n': 0}

    def _make(role, **overrides):
        counter['n'] += 1
        with app.app_context():
            user = User(
                email=overrides.pop('email', f"{role.lower()}{counter['n']}@examtrack.test"),
                first_name=overrides.pop('first_name', role.title()),
                last_name=overrides.pop('last_name', f"User{counter['n']}"),
                password_hash=generate_password_hash(overrides.pop('password', TEST_PASSWORD)),
                password_changed=overrides.pop('password_changed', True),
                role_id=get_role(role).id,
                **overrides,
            )
            db.session.add(user)
            db.session.commit()
            token = generate_token(user)
            return Account(
                id=user.id,
                email=user.email,
                role=role,
                token=token,
                refresh=generate_refresh_token(user),
                headers={'Authorization': f'Bearer {token}'},
            )

    return _make


@pytest.fixture
def admin(make_account):
    return make_account('ADMIN')


@pytest.fixture
def super_admin(make_account):
    return make_account('ADMIN', is_super_admin=True)


@pytest.fixture
def invigilator(make_account):
    return make_account('INVIGILATOR')


@pytest.fixture
def lecturer(make_account):
    return make_account('LECTURER')


@pytest.fixture
def department_head(make_account):
    return make_account('DEPARTMENT_HEAD')


@pytest.fixture
def faculty_officer(make_account):
    return make_account('FACULTY_OFFICER')


@pytest.fixture
def class_rep(make_account):
    return make_account('CLASS_REP')


@pytest.fixture
def make_student(app):
    """Factory inserting a student with a generated QR payload; returns its id"""
    counter = {'n': 0}

    def _make(**fields):
        counter['n'] += 1
        with app.app_context():
            student = Student(
                index_number=fields.get('index_number', f"UEB{counter['n']:07d}"),
                first_name=fields.get('first_name', 'Ama'),
                last_name=fields.get('last_name', f"Mensah{counter['n']}"),
                program=fields.get('program', 'BSc Computer Science'),
                level=fields.get('level', 300),
                department=fields.get('department', 'Computer Science'),
            )
            student.refresh_qr_code()
            db.session.add(student)
            db.session.commit()
            return student.id

    return _make


@pytest.fixture
def exam_payload():
    return {
        "courseCode": "csm301",
        "courseName": "Data Structures",
        "lecturerId": "LEC-001",
        "lecturerName": "Dr. Kwame Asante",
        "department": "Computer Science",
        "faculty": "Science",
        "venue": "Great Hall",
        "examDate": "2026-05-12T09:00:00Z",
    }


@pytest.fixture
def make_exam_session(client, admin, exam_payload):
    """Factory creating an exam session through the API; returns its JSON"""
    def _make(**fields):
        response = client.post(
            '/api/exam-sessions',
            json=dict(exam_payload, **fields),
            headers=admin.headers,
        )
        assert response.status_code == 201, response.get_json()
        return response.get_json()["examSession"]

    return _make


@pytest.fixture
def record_entry(client):
    """Record an exam entry for a student as the given account"""
    def _record(account, student_id, session_id):
        return client.post(
            '/api/attendance/entry',
            json={"studentId": student_id, "examSessionId": session_id},
            headers=account.headers,
        )

    return _record
