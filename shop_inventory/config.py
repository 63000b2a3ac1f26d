import os


def _bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_DIR = None if DATABASE_URL else os.path.join(BASE_DIR, "database")
    DB_PATH = DATABASE_URL or os.environ.get("DB_PATH") or os.path.join(DATABASE_DIR, "shop_inventory.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", True)

    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    TRANSFER_POSTING_ENABLED = _bool_env("TRANSFER_POSTING_ENABLED", True)
    TRANSFER_POSTING_INTERVAL_SECONDS = _int_env("TRANSFER_POSTING_INTERVAL_SECONDS", 10)
    TRANSFER_POSTING_WARMUP_SECONDS = _int_env("TRANSFER_POSTING_WARMUP_SECONDS", 7)
    TRANSFER_POSTING_BATCH_SIZE = _int_env("TRANSFER_POSTING_BATCH_SIZE", 5)
    TRANSFER_POSTING_MAX_CONSECUTIVE_ERRORS = _int_env("TRANSFER_POSTING_MAX_CONSECUTIVE_ERRORS", 10)
    TRANSFER_POSTING_ERROR_BACKOFF_SECONDS = _int_env("TRANSFER_POSTING_ERROR_BACKOFF_SECONDS", 60)
    TRANSFER_RETRY_BASE_SECONDS = _int_env("TRANSFER_RETRY_BASE_SECONDS", 10)
    TRANSFER_QUEUE_DEFAULT_MAX_RETRIES = _int_env("TRANSFER_QUEUE_DEFAULT_MAX_RETRIES", 3)
    TRANSFER_QUEUE_STALE_PROCESSING_SECONDS = _int_env("TRANSFER_QUEUE_STALE_PROCESSING_SECONDS", 900)
    TRANSFER_QUEUE_CRITICAL_PENDING = _int_env("TRANSFER_QUEUE_CRITICAL_PENDING", 50)

    ERP_MODE = os.environ.get("ERP_MODE", "simulator")
    ERP_SIMULATOR_SEED = _int_env("ERP_SIMULATOR_SEED", 42)
    ERP_BASE_URL = os.environ.get("ERP_BASE_URL")
    ERP_COMPANY_DB = os.environ.get("ERP_COMPANY_DB")
    ERP_USERNAME = os.environ.get("ERP_USERNAME")
    ERP_PASSWORD = os.environ.get("ERP_PASSWORD")
    ERP_TIMEOUT_SECONDS = _int_env("ERP_TIMEOUT_SECONDS", 20)
    ERP_VERIFY_SSL = _bool_env("ERP_VERIFY_SSL", True)

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is not set for the production environment.")
        if env == "production" and str(self.ERP_MODE).strip().lower() == "service_layer" and not self.ERP_BASE_URL:
            raise RuntimeError("ERP_BASE_URL is required when ERP_MODE=service_layer.")
