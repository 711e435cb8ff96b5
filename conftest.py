# conftest.py

import os
import tempfile

import pytest

# Set testing environment BEFORE importing app so app.py picks TestingConfig
os.environ["FLASK_ENV"] = "testing"

from app import app as flask_app  # noqa: E402
from zone_admin.models import db  # noqa: E402
from zone_admin.navio import NAVIO_EXTENSION_KEY  # noqa: E402


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create and configure a test Flask application"""
    import uuid

    db_fd, temp_db = tempfile.mkstemp(suffix=f"_{uuid.uuid4().hex[:8]}.db")

    try:
        flask_app.config.update(
            {
                "TESTING": True,
                "SQLALCHEMY_DATABASE_URI": f"sqlite:///{temp_db}",
                "SQLALCHEMY_ECHO": False,
                "SECRET_KEY": "test-secret-key-for-testing-only",
                "MONITORING_ENABLED": False,
                "ENABLE_FILE_LOGGING": False,
                "ENABLE_CONSOLE_LOGGING": True,
                "LOG_LEVEL": "DEBUG",
                "LOG_FORMAT": "text",
                "NAVIO_ENABLED": True,
                "NAVIO_WORKER_ENABLED": False,
                "NAVIO_CLASSIFIER": "hints",
                "NAVIO_API_TOKEN": "test-token",
                "NAVIO_RETRY_MAX_ATTEMPTS": 3,
                "NAVIO_RETRY_BASE_DELAY": 0.0,
                "NAVIO_RETRY_JITTER": 0.0,
                "NAVIO_CACHE_DIR": str(tmp_path / "navio_cache"),
            }
        )

        # Collaborator overrides must not leak between tests
        state = flask_app.extensions.get(NAVIO_EXTENSION_KEY)
        if state is not None:
            state.update({"enabled": True, "worker_enabled": False, "client": None, "classifier": None, "sleep": None})

        from zone_admin.utils.logging_config import setup_logging

        setup_logging(flask_app)

        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            yield flask_app
            db.session.remove()
            db.session.close()
            db.drop_all()
    finally:
        try:
            os.close(db_fd)
        except OSError:
            pass
        try:
            if os.path.exists(temp_db):
                os.unlink(temp_db)
        except OSError:
            pass


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()
