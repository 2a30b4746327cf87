# examtrack/__init__.py
import logging
import os

from dotenv import load_dotenv
from flask import Flask
from flask_cors import CORS
from flask_login import LoginManager
from flask_migrate import Migrate
from flask_socketio import SocketIO
from flask_sqlalchemy import SQLAlchemy

# ==========================================================
#  Initialize extensions
# ==========================================================
db = SQLAlchemy()
login_manager = LoginManager()
migrate = Migrate()
cors = CORS()
socketio = SocketIO()

logger = logging.getLogger(__name__)


def _database_uri():
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    return (
        f"mysql+pymysql://{os.getenv('MYSQL_USER', 'root')}:{os.getenv('MYSQL_PASSWORD', '')}"
        f"@{os.getenv('MYSQL_HOST', '127.0.0.1')}/{os.getenv('MYSQL_DB', 'examtrack')}?charset=utf8mb4"
    )


# ==========================================================
#  Application Factory
# ==========================================================
def create_app(config_overrides=None):
    app = Flask(__name__)

    # --------------------------
    # Load environment variables
    # --------------------------
    load_dotenv()

    # --------------------------
    # Basic Config
    # --------------------------
    app.config['DEBUG'] = os.getenv("FLASK_DEBUG") == "1"
    app.config['SECRET_KEY'] = os.getenv("SECRET_KEY", "dev-secret-key")
    app.config['JWT_SECRET'] = os.getenv("JWT_SECRET", app.config['SECRET_KEY'])
    app.config['JWT_EXPIRES_HOURS'] = int(os.getenv("JWT_EXPIRES_HOURS", "168"))
    app.config['JWT_REFRESH_EXPIRES_DAYS'] = int(os.getenv("JWT_REFRESH_EXPIRES_DAYS", "30"))
    app.config['PASSWORD_RESET_MAX_AGE'] = 3600

    app.config['SQLALCHEMY_DATABASE_URI'] = _database_uri()
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

    app.config['CORS_ORIGIN'] = os.getenv("CORS_ORIGIN", "http://localhost:5173")
    app.config['APP_URL'] = os.getenv("APP_URL", "http://localhost:5173")
    app.config['LOG_LEVEL'] = os.getenv("LOG_LEVEL", "INFO")
    app.config['JSON_SORT_KEYS'] = False

    if config_overrides:
        app.config.update(config_overrides)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    # --------------------------
    # Initialize extensions
    # --------------------------
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    cors.init_app(
        app,
        resources={r"/api/*": {"origins": app.config['CORS_ORIGIN']}},
        supports_credentials=True,
    )
    # Socket handlers must be declared before init_app so every app gets them
    from . import events  # noqa: F401
    socketio.init_app(app, cors_allowed_origins=app.config['CORS_ORIGIN'])

    # --------------------------
    # Token-based user loading
    # --------------------------
    from . import security
    security.init_login_manager(login_manager)

    from .errors import register_error_handlers
    register_error_handlers(app)

    # --------------------------
    # Create database tables
    # --------------------------
    from .models import User, Role, seed_roles

    with app.app_context():
        db.create_all()
        seed_roles()

    # --------------------------
    # Register Blueprints
    # --------------------------
    from .auth import auth
    from .users import users
    from .students import students
    from .exam_sessions import exam_sessions
    from .attendance import attendance
    from .transfers import transfers
    from .incidents import incidents
    from .class_attendance import class_attendance
    from .registration import registration
    from .analytics import analytics
    from .exports import exports

    app.register_blueprint(auth, url_prefix="/api/auth")
    app.register_blueprint(users, url_prefix="/api/users")
    app.register_blueprint(students, url_prefix="/api/students")
    app.register_blueprint(exam_sessions, url_prefix="/api/exam-sessions")
    app.register_blueprint(attendance, url_prefix="/api/attendance")
    app.register_blueprint(transfers, url_prefix="/api/batch-transfers")
    app.register_blueprint(incidents, url_prefix="/api/incidents")
    app.register_blueprint(class_attendance, url_prefix="/api/class-attendance")
    app.register_blueprint(registration, url_prefix="/api/registration")
    app.register_blueprint(analytics, url_prefix="/api/analytics")
    app.register_blueprint(exports, url_prefix="/api/export")
    logger.debug("Registered blueprints: %s", list(app.blueprints.keys()))

    # --------------------------
    # CLI commands
    # --------------------------
    from .cli import register_commands
    register_commands(app)

    @app.route("/health", methods=["GET"])
    def health():
        return {"status": "ok", "message": "Exam Script Tracking API is running"}

    @app.shell_context_processor
    def make_shell_context():
        return {"db": db, "User": User, "Role": Role}

    return app


def run_options(app):
    """Arguments for ``socketio.run``. The Werkzeug server is only allowed in debug."""
    return {
        "host": os.getenv("HOST", "0.0.0.0"),
        "port": int(os.getenv("PORT", "5000")),
        "debug": app.debug,
        "allow_unsafe_werkzeug": app.debug,
    }
