# config/monitoring.py

import os

from prometheus_client import Counter, Histogram


class MonitoringConfig:
    """Monitoring and logging configuration"""

    MONITORING_ENABLED = os.environ.get("MONITORING_ENABLED", "false").lower() == "true"
    METRICS_ENDPOINT = os.environ.get("METRICS_ENDPOINT", "/metrics")

    # Logging Configuration
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")  # 'json' or 'text'
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_MAX_BYTES = int(os.environ.get("LOG_FILE_MAX_BYTES", 10485760))  # 10MB
    LOG_FILE_BACKUP_COUNT = int(os.environ.get("LOG_FILE_BACKUP_COUNT", 10))

    # Console and File Logging
    ENABLE_FILE_LOGGING = os.environ.get("ENABLE_FILE_LOGGING", "true").lower() == "true"
    ENABLE_CONSOLE_LOGGING = os.environ.get("ENABLE_CONSOLE_LOGGING", "true").lower() == "true"

    # Application Info
    APP_NAME = os.environ.get("APP_NAME", "Directory Sync")


class DevelopmentMonitoringConfig(MonitoringConfig):
    """Development-specific monitoring configuration"""

    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"  # More readable in development
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = True


class ProductionMonitoringConfig(MonitoringConfig):
    """Production-specific monitoring configuration"""

    LOG_LEVEL = "INFO"
    LOG_FORMAT = "json"  # Structured logging for production
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = False  # Usually handled by container orchestration


class TestingMonitoringConfig(MonitoringConfig):
    """Testing-specific monitoring configuration"""

    MONITORING_ENABLED = False
    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False


class DirectoryMonitoring:
    """Prometheus metric helpers for directory API endpoints."""

    REQUEST_COUNTER = Counter(
        "directory_api_requests_total",
        "Total directory API requests by endpoint and outcome.",
        labelnames=("endpoint", "status"),
    )
    REQUEST_LATENCY = Histogram(
        "directory_api_request_seconds",
        "Latency histogram for directory API endpoints.",
        labelnames=("endpoint", "status"),
        buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
    )
    APPROVALS_LIST_RESULT_SIZE = Histogram(
        "directory_approvals_list_result_size",
        "Number of approvals returned by the list endpoint.",
        labelnames=("status",),
        buckets=(0, 1, 5, 10, 25, 50, 100, 200),
    )

    @classmethod
    def record_request(cls, *, endpoint: str, duration_seconds: float, status: str):
        cls.REQUEST_COUNTER.labels(endpoint=endpoint, status=status).inc()
        cls.REQUEST_LATENCY.labels(endpoint=endpoint, status=status).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_approvals_list(cls, *, duration_seconds: float, status: str, result_count: int):
        cls.record_request(endpoint="approvals_list", duration_seconds=duration_seconds, status=status)
        cls.APPROVALS_LIST_RESULT_SIZE.labels(status=status).observe(float(max(result_count, 0)))
