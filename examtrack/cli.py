# examtrack/cli.py
import logging

import click
from werkzeug.security import generate_password_hash

from . import db
from .models import BlacklistedToken, User, get_role, utcnow
from .security import password_problems

logger = logging.getLogger(__name__)


def cleanup_blacklisted_tokens():
    """Drop revoked-token rows whose token would have expired anyway."""
    count = BlacklistedToken.query.filter(
        BlacklistedToken.expires_at < utcnow()
    ).delete(synchronize_session=False)
    db.session.commit()
    return count


def register_commands(app):

    @app.cli.command("seed-admin")
    @click.option("--email", prompt=True, help="Login email of the administrator.")
    @click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
    @click.option("--first-name", default="System")
    @click.option("--last-name", default="Administrator")
    def seed_admin(email, password, first_name, last_name):
        """Create the super admin account: flask --app app seed-admin"""
        email = email.strip().lower()
        if User.query.filter_by(email=email).first():
            click.echo(f"User {email} already exists.")
            return
        problems = password_problems(password)
        if problems:
            raise click.BadParameter("; ".join(problems), param_hint="--password")

        user = User(
            email=email,
            first_name=first_name,
            last_name=last_name,
            password_hash=generate_password_hash(password),
            password_changed=True,
            is_super_admin=True,
            role_id=get_role('ADMIN').id,
        )
        db.session.add(user)
        db.session.commit()
        logger.info("Created super admin %s", user.id)
        click.echo(f"Created super admin {email}")

    @app.cli.command("seed-templates")
    def seed_templates():
        """Load the default incident templates."""
        from .incidents import seed_default_templates
        added = seed_default_templates()
        click.echo(f"Added {added} incident templates")

    @app.cli.command("cleanup-tokens")
    def cleanup_tokens():
        count = cleanup_blacklisted_tokens()
        click.echo(f"Removed {count} expired blacklisted tokens")

    @app.cli.command("cleanup-registrations")
    def cleanup_registrations():
        from .registration import cleanup_expired_sessions
        count = cleanup_expired_sessions()
        click.echo(f"Removed {count} expired registration sessions")
