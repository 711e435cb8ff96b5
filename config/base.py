# config/base.py
import os


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _env_int(name, default, *, minimum=None):
    try:
        value = int(os.environ.get(name, default))
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


def _env_float(name, default, *, minimum=None):
    try:
        value = float(os.environ.get(name, default))
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


class Config:
    # SECRET_KEY must be set via environment variable in production
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Navio pipeline
    NAVIO_ENABLED = _coerce_bool(os.environ.get("NAVIO_ENABLED"), default=True)
    NAVIO_API_URL = os.environ.get("NAVIO_API_URL")
    NAVIO_API_TOKEN = os.environ.get("NAVIO_API_TOKEN")
    NAVIO_API_TIMEOUT = _env_float("NAVIO_API_TIMEOUT", 30.0, minimum=1.0)

    # Zone classifier ("ai" uses the gateway when a key is present, "hints" never calls out)
    NAVIO_CLASSIFIER = os.environ.get("NAVIO_CLASSIFIER", "ai")
    NAVIO_AI_GATEWAY_URL = os.environ.get("NAVIO_AI_GATEWAY_URL")
    NAVIO_AI_API_KEY = os.environ.get("NAVIO_AI_API_KEY")
    NAVIO_AI_MODEL = os.environ.get("NAVIO_AI_MODEL")
    NAVIO_AI_TIMEOUT = _env_float("NAVIO_AI_TIMEOUT", 60.0, minimum=1.0)
    NAVIO_CLASSIFIER_MIN_CONFIDENCE = _env_float("NAVIO_CLASSIFIER_MIN_CONFIDENCE", 0.5, minimum=0.0)
    NAVIO_PROCESS_CHUNK_SIZE = _env_int("NAVIO_PROCESS_CHUNK_SIZE", 30, minimum=1)

    NAVIO_RETRY_MAX_ATTEMPTS = _env_int("NAVIO_RETRY_MAX_ATTEMPTS", 5, minimum=1)
    NAVIO_RETRY_BASE_DELAY = _env_float("NAVIO_RETRY_BASE_DELAY", 1.5, minimum=0.0)
    NAVIO_RETRY_JITTER = _env_float("NAVIO_RETRY_JITTER", 0.5, minimum=0.0)
    NAVIO_RETRY_MAX_DELAY = _env_float("NAVIO_RETRY_MAX_DELAY", 60.0, minimum=0.0)

    NAVIO_COVERAGE_UNCOVERED_WARNING = _env_int("NAVIO_COVERAGE_UNCOVERED_WARNING", 5, minimum=0)
    NAVIO_COVERAGE_UNCOVERED_CRITICAL = _env_int("NAVIO_COVERAGE_UNCOVERED_CRITICAL", 25, minimum=0)
    NAVIO_COVERAGE_ORPHANED_WARNING = _env_int("NAVIO_COVERAGE_ORPHANED_WARNING", 0, minimum=0)
    NAVIO_COVERAGE_ORPHANED_CRITICAL = _env_int("NAVIO_COVERAGE_ORPHANED_CRITICAL", 10, minimum=0)
    NAVIO_COVERAGE_MISSING_GEOFENCE_WARNING = _env_int("NAVIO_COVERAGE_MISSING_GEOFENCE_WARNING", 0, minimum=0)
    NAVIO_SNAPSHOT_MAX_AGE_HOURS = _env_int("NAVIO_SNAPSHOT_MAX_AGE_HOURS", 24, minimum=1)

    NAVIO_CACHE_DIR = os.environ.get("NAVIO_CACHE_DIR")

    # Background worker
    NAVIO_WORKER_ENABLED = _coerce_bool(os.environ.get("NAVIO_WORKER_ENABLED"), default=False)
    NAVIO_TASK_TIME_LIMIT = _env_int("NAVIO_TASK_TIME_LIMIT", 60 * 60, minimum=60)
    NAVIO_TASK_SOFT_TIME_LIMIT = _env_int("NAVIO_TASK_SOFT_TIME_LIMIT", 55 * 60, minimum=60)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")


class DevelopmentConfig(Config):
    DEBUG = True
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URIs need forward slashes on Windows
    db_path_normalized = os.path.join(instance_path, "zone_admin_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path_normalized}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    NAVIO_WORKER_ENABLED = False
    NAVIO_CLASSIFIER = "hints"


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
