import logging
import os
import secrets
from pathlib import Path
from typing import List

BASE_DIR = Path(__file__).resolve().parent

_config_logger = logging.getLogger("sharespace.config")


def _resolve_env_path(env_key: str, default: Path) -> Path:
    raw = os.environ.get(env_key)
    return (Path(raw).expanduser() if raw else default).resolve()


def _env_int(key: str, default: int, minimum: int = 1) -> int:
    raw = os.environ.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        _config_logger.warning("config_invalid_int key=%s value=%r default=%d", key, raw, default)
        return default


def _env_flag(key: str) -> bool:
    return os.environ.get(key, "").strip().lower() in {"1", "true", "yes", "on"}


def env_list(key: str) -> List[str]:
    """Split a comma separated variable, dropping blank items."""

    return [item for item in (part.strip() for part in os.environ.get(key, "").split(",")) if item]


STORAGE_ROOT = _resolve_env_path("SHARESPACE_STORAGE_ROOT", BASE_DIR)
DATA_DIR = _resolve_env_path("SHARESPACE_DATA_DIR", STORAGE_ROOT / "data")
LOGS_DIR = _resolve_env_path("SHARESPACE_LOGS_DIR", STORAGE_ROOT / "logs")
DB_PATH = DATA_DIR / "sharespace.db"

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3

BYTES_PER_MB = 1024 * 1024
CHUNK_SIZE_BYTES = 1024 * 1024

MAX_FILE_SIZE = _env_int("MAX_FILE_SIZE", 104857600)
MAX_REQUEST_SIZE = _env_int(
    "SHARESPACE_MAX_REQUEST_SIZE_MB", max(1, (MAX_FILE_SIZE * 4) // BYTES_PER_MB)
) * BYTES_PER_MB
MAX_EXPIRY_HOURS = _env_int("SHARESPACE_MAX_EXPIRY_HOURS", 720)

BASE_URL = os.environ.get("SHARESPACE_BASE_URL", "").rstrip("/")

S3_BUCKET = os.environ.get("SHARESPACE_S3_BUCKET", "")
S3_ENDPOINT_URL = os.environ.get("SHARESPACE_S3_ENDPOINT_URL") or None
S3_REGION = os.environ.get("SHARESPACE_S3_REGION", "us-east-1")

REDIS_URL = os.environ.get("REDIS_URL", "")
TOKEN_CACHE_TTL_SECONDS = 24 * 60 * 60

RATE_LIMIT_STORAGE = os.environ.get(
    "SHARESPACE_RATE_LIMIT_STORAGE", REDIS_URL or "memory://"
)
UPLOAD_RATE_LIMIT = os.environ.get("SHARESPACE_UPLOAD_RATE_LIMIT", "20 per hour")
DOWNLOAD_RATE_LIMIT = os.environ.get("SHARESPACE_DOWNLOAD_RATE_LIMIT", "120 per minute")
CHAT_RATE_LIMIT = os.environ.get("SHARESPACE_CHAT_RATE_LIMIT", "60 per minute")

VIRUS_SCAN_URL = os.environ.get("VIRUS_SCAN_URL", "")
VIRUS_SCAN_API_KEY = os.environ.get("VIRUS_SCAN_API_KEY", "")
VIRUS_SCAN_TIMEOUT = _env_int("VIRUS_SCAN_TIMEOUT", 30)

HCAPTCHA_SECRET_KEY = os.environ.get("HCAPTCHA_SECRET_KEY", "")
HCAPTCHA_VERIFY_URL = "https://hcaptcha.com/siteverify"

CLEANUP_INTERVAL_MINUTES = _env_int("SHARESPACE_CLEANUP_INTERVAL_MINUTES", 60)
SCHEDULER_DISABLED = _env_flag("SHARESPACE_DISABLE_SCHEDULER")

GRANT_TTL_SECONDS = _env_int("SHARESPACE_GRANT_TTL_SECONDS", 600)
CHAT_GRANT_TTL_SECONDS = _env_int("SHARESPACE_CHAT_GRANT_TTL_SECONDS", 24 * 60 * 60)

CHAT_MESSAGE_MAX_LENGTH = _env_int("SHARESPACE_CHAT_MESSAGE_MAX_LENGTH", 2000)
CHAT_DEFAULT_ROOM_HOURS = _env_int("SHARESPACE_CHAT_ROOM_HOURS", 24)
CHAT_MESSAGE_LIMIT = 100
CHAT_MESSAGE_LIMIT_MAX = 500

CORS_ORIGINS = env_list("SHARESPACE_CORS_ORIGINS") or None


def ensure_directories() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


def load_secret_key() -> str:
    """Return ``SECRET_KEY`` or a key persisted in the data directory."""

    env_secret = os.environ.get("SECRET_KEY")
    if env_secret:
        return env_secret

    secret_path = DATA_DIR / ".secret_key"
    try:
        ensure_directories()
        try:
            fd = os.open(secret_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            existing = secret_path.read_text(encoding="utf-8").strip()
            if existing:
                return existing
            fd = os.open(secret_path, os.O_WRONLY | os.O_TRUNC, 0o600)
        generated = secrets.token_hex(32)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(generated)
            handle.flush()
            os.fsync(handle.fileno())
        _config_logger.warning("Generated new secret key - stored in %s", secret_path)
        return generated
    except OSError as error:
        _config_logger.critical(
            "SECURITY WARNING: Using in-memory secret key. Download grants will not "
            "survive restarts. Set SECRET_KEY for production use. Error: %s",
            error,
        )
        return secrets.token_hex(32)
