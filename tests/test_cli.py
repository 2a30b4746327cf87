from datetime import timedelta

from conftest import TEST_CONFIG

from examtrack import create_app, db, run_options
from examtrack.models import BlacklistedToken, IncidentTemplate, User, utcnow


def test_seed_admin(app):
    runner = app.test_cli_runner()
    result = runner.invoke(args=[
        'seed-admin', '--email', 'Registrar@Examtrack.test', '--password', 'Str0ng!Secret',
    ])

    assert result.exit_code == 0, result.output
    assert "Created super admin registrar@examtrack.test" in result.output
    with app.app_context():
        user = User.query.filter_by(email='registrar@examtrack.test').one()
        assert user.is_super_admin is True
        assert user.role_name == 'ADMIN'

    result = runner.invoke(args=[
        'seed-admin', '--email', 'registrar@examtrack.test', '--password', 'Str0ng!Secret',
    ])
    assert "already exists" in result.output


def test_seed_admin_weak_password(app):
    result = app.test_cli_runner().invoke(args=['seed-admin', '--email', 'a@b.test', '--password', 'weak'])

    assert result.exit_code != 0
    with app.app_context():
        assert User.query.filter_by(email='a@b.test').first() is None


def test_seed_templates(app):
    runner = app.test_cli_runner()
    result = runner.invoke(args=['seed-templates'])

    assert result.exit_code == 0
    with app.app_context():
        count = IncidentTemplate.query.count()
    assert f"Added {count} incident templates" in result.output
    assert "Added 0 incident templates" in runner.invoke(args=['seed-templates']).output


def test_cleanup_tokens(app):
    now = utcnow()
    with app.app_context():
        db.session.add_all([
            BlacklistedToken(jti='old', expires_at=now - timedelta(hours=1)),
            BlacklistedToken(jti='live', expires_at=now + timedelta(hours=1)),
        ])
        db.session.commit()

    result = app.test_cli_runner().invoke(args=['cleanup-tokens'])

    assert "Removed 1 expired blacklisted tokens" in result.output
    with app.app_context():
        assert [t.jti for t in BlacklistedToken.query.all()] == ['live']


def test_cleanup_registrations(app):
    result = app.test_cli_runner().invoke(args=['cleanup-registrations'])

    assert result.exit_code == 0
    assert "Removed 0 expired registration sessions" in result.output


def test_run_options_only_allow_werkzeug_in_debug():
    options = run_options(create_app(dict(TEST_CONFIG, DEBUG=False)))
    assert options["debug"] is False
    assert options["allow_unsafe_werkzeug"] is False

    options = run_options(create_app(dict(TEST_CONFIG, DEBUG=True)))
    assert options["debug"] is True
    assert options["allow_unsafe_werkzeug"] is True
