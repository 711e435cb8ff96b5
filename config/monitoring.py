# config/monitoring.py

import os


def _flag(name, default):
    return os.environ.get(name, default).lower() in {"1", "true", "yes", "on"}


class MonitoringConfig:
    """Logging and /metrics settings shared by every environment."""

    APP_NAME = os.environ.get("APP_NAME", "zone-admin")
    APP_VERSION = os.environ.get("APP_VERSION", "0.1.0")

    MONITORING_ENABLED = _flag("MONITORING_ENABLED", "false")
    METRICS_ENDPOINT = os.environ.get("METRICS_ENDPOINT", "/metrics")

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")  # json | text
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_MAX_BYTES = int(os.environ.get("LOG_FILE_MAX_BYTES", 10 * 1024 * 1024))
    LOG_FILE_BACKUP_COUNT = int(os.environ.get("LOG_FILE_BACKUP_COUNT", 10))
    ENABLE_FILE_LOGGING = _flag("ENABLE_FILE_LOGGING", "true")
    ENABLE_CONSOLE_LOGGING = _flag("ENABLE_CONSOLE_LOGGING", "true")


class DevelopmentMonitoringConfig(MonitoringConfig):
    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"


class ProductionMonitoringConfig(MonitoringConfig):
    LOG_FORMAT = "json"
    # stdout is collected by the container runtime
    ENABLE_CONSOLE_LOGGING = _flag("ENABLE_CONSOLE_LOGGING", "false")


class TestingMonitoringConfig(MonitoringConfig):
    MONITORING_ENABLED = False
    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False
