"""
Controller settings and logging setup

All settings are read once from environment variables when the module is
imported, so the controller can be configured entirely from its Deployment
manifest.
"""

import os
import sys
import logging

# ANSI color codes
BLUE = "\033[94m"
RED = "\033[91m"
WHITE = "\033[97m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RESET = "\033[0m"

LOG_FORMAT = '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}'

logger = logging.getLogger("postgres-controller")


# ============================================================================
# CONFIGURATION
# ============================================================================

class Config:
    """Controller configuration loaded from environment variables"""

    # Kubernetes settings
    NAMESPACE = os.getenv("NAMESPACE", "")
    CRD_GROUP = os.getenv("CRD_GROUP", "postgrescontroller.kubeplus")
    CRD_VERSION = os.getenv("CRD_VERSION", "v1")
    CRD_PLURAL = os.getenv("CRD_PLURAL", "postgreses")
    CRD_KIND = os.getenv("CRD_KIND", "Postgres")
    USE_STATUS_SUBRESOURCE = os.getenv("USE_STATUS_SUBRESOURCE", "false").lower() == "true"
    COMPONENT_NAME = os.getenv("COMPONENT_NAME", "postgres-controller")

    # Workload settings
    POSTGRES_PORT = int(os.getenv("POSTGRES_PORT", "5432"))
    SERVICE_TYPE = os.getenv("SERVICE_TYPE", "NodePort")
    NODE_IP = os.getenv("NODE_IP", "192.168.99.100")
    READINESS_INITIAL_DELAY = float(os.getenv("READINESS_INITIAL_DELAY", "5"))
    READINESS_POLL_INTERVAL = float(os.getenv("READINESS_POLL_INTERVAL", "4"))
    READINESS_SETTLE_DELAY = float(os.getenv("READINESS_SETTLE_DELAY", "2"))

    # PostgreSQL settings
    DB_USER = os.getenv("DB_USER", "postgres")
    DB_PASS = os.getenv("DB_PASS", "mysecretpassword")
    DB_ADMIN_DATABASE = os.getenv("DB_ADMIN_DATABASE", "postgres")
    DB_CONNECT_TIMEOUT = int(os.getenv("DB_CONNECT_TIMEOUT", "10"))
    VERIFY_CLIENT = os.getenv("VERIFY_CLIENT", "psql")

    # Controller settings
    WORKERS = int(os.getenv("WORKERS", "2"))
    MAX_RETRIES = int(os.getenv("MAX_RETRIES", "15"))
    RETRY_BACKOFF_BASE = float(os.getenv("RETRY_BACKOFF_BASE", "0.005"))
    RETRY_BACKOFF_MAX = float(os.getenv("RETRY_BACKOFF_MAX", "1000"))
    METRICS_PORT = int(os.getenv("METRICS_PORT", "9090"))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def configure_logging(level: str = None):
    """Configure structured logging for the whole process"""
    logging.basicConfig(
        level=getattr(logging, level or Config.LOG_LEVEL, logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)]
    )
