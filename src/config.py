# src/config.py
"""
Runtime configuration for the Bitor scan engine, read from the environment.
"""
import os


def env_bool(key: str, default: bool = False) -> bool:
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _absolute_sqlite_url(url: str) -> str:
    # sqlite:///relative.db is resolved once here so persistence never depends on the cwd
    prefix = "sqlite:///"
    if not url.startswith(prefix) or url == "sqlite:///:memory:":
        return url
    path = url[len(prefix):]
    if os.path.isabs(path):
        return url
    return prefix + os.path.abspath(path)


# Record store
DATABASE_URL = _absolute_sqlite_url(os.getenv("DATABASE_URL", "sqlite:///./bitor.db"))

# Automation
ANSIBLE_BASE_PATH = os.path.abspath(os.getenv("ANSIBLE_BASE_PATH", "./ansible"))
SHOW_ANSIBLE_LOGS = env_bool("SHOW_ANSIBLE_LOGS", False)
AUTOMATION_TIMEOUT_SECONDS = int(os.getenv("AUTOMATION_TIMEOUT_SECONDS", "7200"))

# Secrets
API_ENCRYPTION_KEY = os.getenv("API_ENCRYPTION_KEY", "")

# Background jobs
PROGRESS_RETENTION_SECONDS = int(os.getenv("PROGRESS_RETENTION_SECONDS", "3600"))
COST_SWEEP_INTERVAL_SECONDS = int(os.getenv("COST_SWEEP_INTERVAL_SECONDS", "3600"))
SCHEDULER_INTERVAL_SECONDS = int(os.getenv("SCHEDULER_INTERVAL_SECONDS", "60"))

# Pricing
PRICING_API_URL = os.getenv("PRICING_API_URL", "https://api.digitalocean.com/v2")

# Notifications
WEBHOOK_FILE_PATH = os.path.abspath(os.getenv("WEBHOOK_FILE_PATH", "./webhook.txt"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# HTTP server
APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
APP_PORT = int(os.getenv("APP_PORT", "8000"))
