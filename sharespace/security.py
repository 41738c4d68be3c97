import logging
import mimetypes
import re
import secrets
import uuid
from pathlib import PurePosixPath
from typing import Any, Iterable, List, Optional

import requests
from flask import has_request_context, request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from werkzeug.security import check_password_hash, generate_password_hash

from . import config

logger = logging.getLogger("sharespace.security")

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")
_DOWNLOAD_GRANT_SALT = "sharespace.download-grant"
_ROOM_GRANT_SALT = "sharespace.room-grant"
MAX_FILENAME_LENGTH = 255

DEFAULT_ALLOWED_TYPES = (
    "image/*",
    "video/*",
    "audio/*",
    "text/*",
    "application/pdf",
    "application/json",
    "application/zip",
    "application/x-zip-compressed",
    "application/x-7z-compressed",
    "application/x-rar-compressed",
    "application/vnd.rar",
    "application/x-tar",
    "application/gzip",
    "application/x-gzip",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/rtf",
    "application/epub+zip",
)

_DANGEROUS_TYPES = {
    "application/x-executable",
    "application/x-msdownload",
    "application/x-msdos-program",
    "application/x-sh",
    "application/x-csh",
    "application/x-bat",
    "application/x-apple-diskimage",
    "application/vnd.microsoft.portable-executable",
    "application/x-sharedlib",
    "application/x-elf",
    "application/x-dosexec",
}


def sanitize_log_value(value: Any) -> Any:
    """Escape control characters so user input cannot forge log lines."""

    if not isinstance(value, str):
        return value
    return _CONTROL_CHAR_PATTERN.sub(lambda match: repr(match.group())[1:-1], value)


def generate_id() -> str:
    return uuid.uuid4().hex


def generate_secure_id() -> str:
    return secrets.token_urlsafe(32)


_ROOM_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_room_code(length: int = 8) -> str:
    return "".join(secrets.choice(_ROOM_CODE_ALPHABET) for _ in range(length))


def allowed_types() -> List[str]:
    """Return the configured allow-list of MIME types and extensions."""

    configured = config.env_list("SHARESPACE_ALLOWED_TYPES")
    return [entry.lower() for entry in configured] or list(DEFAULT_ALLOWED_TYPES)


def blocked_extensions() -> set:
    return {
        entry.lower().lstrip(".")
        for entry in config.env_list("SHARESPACE_BLOCKED_EXTENSIONS")
    }


def _extension(filename: str) -> str:
    return filename.rsplit(".", 1)[-1].lower() if "." in filename else ""


def _mime_matches(mime_type: str, pattern: str) -> bool:
    if pattern.endswith("/*"):
        return mime_type.split("/", 1)[0] == pattern[:-2]
    return mime_type == pattern


def is_dangerous_content_type(content_type: Optional[str]) -> bool:
    """Check if content type is potentially dangerous (executable content)."""

    if not content_type:
        return False
    return content_type.lower().split(";")[0].strip() in _DANGEROUS_TYPES


def filename_error(filename: str) -> Optional[str]:
    """Return why *filename* cannot be stored, or None when it is acceptable."""

    if not filename or not filename.strip():
        return "Filename cannot be empty"
    if len(filename) > MAX_FILENAME_LENGTH:
        return f"Filename exceeds {MAX_FILENAME_LENGTH} characters"
    if "/" in filename or "\\" in filename or _CONTROL_CHAR_PATTERN.search(filename):
        return "Filename contains invalid characters"
    extension = _extension(filename)
    if extension and extension in blocked_extensions():
        return f"File extension '.{extension}' is not allowed"
    return None


def normalize_relative_path(value: Optional[str]) -> Optional[str]:
    """Return *value* as a clean ``dir/name`` path, or None when it is unsafe.

    Absolute paths, ``..`` segments, control characters and any segment that
    fails :func:`filename_error` are rejected; ``.`` segments are dropped.
    """

    raw = (value or "").replace("\\", "/").strip()
    if not raw or raw.startswith("/") or _CONTROL_CHAR_PATTERN.search(raw):
        return None
    parts = PurePosixPath(raw).parts
    if not parts or ".." in parts:
        return None
    if any(filename_error(part) for part in parts):
        return None
    return "/".join(parts)


def validate_file_type(
    filename: str, mime_type: Optional[str], allowed: Iterable[str]
) -> bool:
    """Return True when the file's type is on the allow-list.

    Entries starting with ``.`` match extensions, everything else matches the
    MIME type (``type/*`` wildcards allowed). A missing or generic
    ``application/octet-stream`` type falls back to the type guessed from the
    filename.
    """

    if filename_error(filename):
        return False

    declared = (mime_type or "").lower().split(";")[0].strip()
    if is_dangerous_content_type(declared):
        return False

    if declared in ("", "application/octet-stream"):
        guessed, _ = mimetypes.guess_type(filename)
        declared = (guessed or "").lower()

    extension = _extension(filename)
    for pattern in allowed:
        if pattern.startswith("."):
            if extension and extension == pattern[1:]:
                return True
        elif declared and _mime_matches(declared, pattern):
            return True
    return False


def validate_file_size(size: int, max_size: int) -> bool:
    return 0 < size <= max_size


def get_client_ip() -> str:
    if not has_request_context():
        return "unknown"
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("X-Real-IP", "").strip()
    if real_ip:
        return real_ip
    return request.remote_addr or "unknown"


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password_hash: Optional[str], candidate: Optional[str]) -> bool:
    if not password_hash or not candidate:
        return False
    return check_password_hash(password_hash, candidate)


def _grant_serializer(secret_key: str, salt: str) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(secret_key, salt=salt)


def _issue_grant(secret_key: str, salt: str, subject: str) -> str:
    return _grant_serializer(secret_key, salt).dumps({"sub": subject})


def _verify_grant(
    secret_key: str, salt: str, token: Optional[str], subject: str, max_age: int
) -> bool:
    if not token:
        return False
    try:
        payload = _grant_serializer(secret_key, salt).loads(token, max_age=max_age)
    except SignatureExpired:
        logger.info("grant_expired salt=%s subject=%s", salt, subject)
        return False
    except BadSignature:
        logger.warning("grant_invalid salt=%s subject=%s", salt, subject)
        return False
    return isinstance(payload, dict) and payload.get("sub") == subject


def issue_download_grant(secret_key: str, file_id: str) -> str:
    """Sign a short-lived token proving the share password was supplied."""

    return _issue_grant(secret_key, _DOWNLOAD_GRANT_SALT, file_id)


def verify_download_grant(
    secret_key: str, token: Optional[str], file_id: str, max_age: int
) -> bool:
    return _verify_grant(secret_key, _DOWNLOAD_GRANT_SALT, token, file_id, max_age)


def issue_room_grant(secret_key: str, room_id: str) -> str:
    """Sign a token proving the room password was supplied."""

    return _issue_grant(secret_key, _ROOM_GRANT_SALT, room_id)


def verify_room_grant(secret_key: str, token: Optional[str], room_id: str, max_age: int) -> bool:
    return _verify_grant(secret_key, _ROOM_GRANT_SALT, token, room_id, max_age)


def verify_captcha(token: Optional[str], remote_ip: Optional[str] = None) -> bool:
    """Verify an hCaptcha response token against the siteverify endpoint."""

    if not token:
        return False
    data = {"secret": config.HCAPTCHA_SECRET_KEY, "response": token}
    if remote_ip:
        data["remoteip"] = remote_ip
    try:
        response = requests.post(config.HCAPTCHA_VERIFY_URL, data=data, timeout=10)
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as error:
        logger.warning("captcha_verify_failed error=%s", error)
        return False
    return bool(payload.get("success"))
