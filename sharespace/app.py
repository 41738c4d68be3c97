import atexit
import io
import json
import mimetypes
import os
import sqlite3
import tempfile
import time
import uuid
import zipfile
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional, Tuple

import click
from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, Response, g, jsonify, request, send_file
from werkzeug.datastructures import FileStorage

from . import cache, config, storage
from .chat import chat_bp
from .extensions import limiter, socketio
from .logging_setup import configure_logging, get_logger
from .objectstore import ObjectStore, ObjectStoreError, entry_key, primary_key
from .scanner import ScanResult, ScannerUnavailableError, VirusScanner
from .security import (
    allowed_types,
    generate_id,
    generate_secure_id,
    get_client_ip,
    hash_password,
    issue_download_grant,
    normalize_relative_path,
    sanitize_log_value,
    validate_file_size,
    validate_file_type,
    verify_captcha,
    verify_download_grant,
    verify_password,
)
from .validation import ValidationError, parse_expiry, parse_max_downloads

UPLOAD_RATE_LIMIT_MESSAGE = "Too many upload attempts. Please try again later."
DOWNLOAD_RATE_LIMIT_MESSAGE = "Too many download attempts. Please try again later."
MAX_ARCHIVE_ENTRIES = 1000
BUNDLE_SPOOL_BYTES = 32 * 1024 * 1024

APP_LOG_PATH = configure_logging()
lifecycle_logger = get_logger("sharespace.lifecycle")
security_logger = get_logger("sharespace.security")

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = config.MAX_REQUEST_SIZE
app.config["SECRET_KEY"] = config.load_secret_key()

limiter.init_app(app)
app.register_blueprint(chat_bp)
socketio.init_app(
    app,
    cors_allowed_origins=config.CORS_ORIGINS,
    message_queue=config.REDIS_URL or None,
    async_mode="threading",
)

object_store = ObjectStore.from_env()
virus_scanner = VirusScanner.from_env()


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(ValidationError)
def handle_validation_error(error: ValidationError):
    return jsonify(error.to_payload()), error.status


@app.errorhandler(404)
def handle_not_found(error):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(405)
def handle_method_not_allowed(error):
    return jsonify({"error": "Method not allowed"}), 405


@app.errorhandler(413)
def handle_file_too_large(error):
    return jsonify({"error": "File too large"}), 413


@app.errorhandler(429)
def handle_rate_limit(error):
    description = getattr(error, "description", None) or "Too many requests"
    return jsonify({"error": str(description)}), 429


def _json_error(message: str, status: int, **extra: Any):
    payload: Dict[str, Any] = {"error": message}
    payload.update(extra)
    return jsonify(payload), status


def _base_url() -> str:
    return config.BASE_URL or request.host_url.rstrip("/")


def _audit(action: str, file_id: str, metadata: Optional[Dict[str, Any]] = None) -> None:
    storage.record_audit_event(
        action,
        "file",
        file_id,
        ip_address=get_client_ip(),
        user_agent=request.headers.get("User-Agent"),
        metadata=metadata,
    )


# --- upload validation ---------------------------------------------------------


def _client_filename(upload: FileStorage) -> str:
    raw = (upload.filename or "").replace("\\", "/")
    return PurePosixPath(raw).name.strip()


def _read_validated_upload(upload: FileStorage) -> Tuple[str, str, bytes]:
    """Validate type and size of an uploaded file and return its bytes."""

    filename = _client_filename(upload)
    mime_type = (upload.mimetype or "").lower()
    if not validate_file_type(filename, mime_type, allowed_types()):
        lifecycle_logger.warning(
            "upload_rejected reason=type filename=%s mime=%s",
            sanitize_log_value(filename),
            sanitize_log_value(mime_type),
        )
        raise ValidationError("File type not allowed")

    chunks: List[bytes] = []
    written = 0
    while True:
        chunk = upload.stream.read(config.CHUNK_SIZE_BYTES)
        if not chunk:
            break
        written += len(chunk)
        if written > config.MAX_FILE_SIZE:
            lifecycle_logger.warning(
                "upload_rejected reason=size filename=%s", sanitize_log_value(filename)
            )
            raise ValidationError("File size exceeds limit")
        chunks.append(chunk)
    data = b"".join(chunks)
    if not validate_file_size(len(data), config.MAX_FILE_SIZE):
        raise ValidationError("File is empty")

    if not mime_type or mime_type == "application/octet-stream":
        mime_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
    return filename, mime_type, data


def _scan_or_reject(data: bytes, filename: str, file_id: str) -> ScanResult:
    try:
        result = virus_scanner.scan_buffer(data, filename)
    except ScannerUnavailableError as error:
        raise ValidationError("Virus scan unavailable. Please try again later.", status=503) from error
    if not result.is_clean:
        security_logger.warning(
            "virus_detected file_id=%s filename=%s signature=%s",
            file_id,
            sanitize_log_value(filename),
            result.signature,
        )
        try:
            _audit(
                "virus_detected",
                file_id,
                {"filename": filename, "signature": result.signature, "message": result.message},
            )
        except sqlite3.Error:
            security_logger.exception("virus_audit_failed file_id=%s", file_id)
        raise ValidationError("File contains malicious content and cannot be uploaded")
    return result


def _list_archive_entries(filename: str, data: bytes) -> List[Dict[str, Any]]:
    """List the members of a ZIP upload as archive entries."""

    if not filename.lower().endswith(".zip"):
        return []
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            members = [info for info in archive.infolist() if not info.is_dir()]
    except zipfile.BadZipFile:
        lifecycle_logger.warning("archive_unreadable filename=%s", sanitize_log_value(filename))
        return []

    entries = []
    for info in members[:MAX_ARCHIVE_ENTRIES]:
        if normalize_relative_path(info.filename) != info.filename:
            security_logger.warning(
                "archive_member_skipped filename=%s member=%s",
                sanitize_log_value(filename),
                sanitize_log_value(info.filename),
            )
            continue
        name = PurePosixPath(info.filename).name
        entries.append(
            {
                "file_token": generate_secure_id(),
                "file_name": name,
                "file_path": info.filename,
                "size": info.file_size,
                "mime_type": mimetypes.guess_type(name)[0] or "application/octet-stream",
                "storage_key": None,
                "extracted": True,
            }
        )
    return entries


# --- serialization -----------------------------------------------------------------


def serialize_entry(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "file_name": row["file_name"],
        "file_path": row["file_path"],
        "size": row["size"],
        "mime_type": row["mime_type"],
        "file_token": row["file_token"],
        "extracted": bool(row["extracted"]),
        "downloaded_at": storage.isoformat_utc(row["downloaded_at"]),
    }


def _downloads_remaining(record: sqlite3.Row) -> Optional[int]:
    if record["max_downloads"] is None:
        return None
    return max(record["max_downloads"] - record["download_count"], 0)


def serialize_file_info(record: sqlite3.Row) -> Dict[str, Any]:
    entries = storage.list_file_entries(record["id"])
    added_size = sum(row["size"] for row in entries if not row["extracted"])
    return {
        "id": record["id"],
        "name": record["original_name"],
        "size": record["size"],
        "totalSize": record["size"] + added_size,
        "type": record["mime_type"],
        "uploadDate": storage.isoformat_utc(record["uploaded_at"]),
        "downloadCount": record["download_count"],
        "maxDownloads": record["max_downloads"],
        "downloadsRemaining": _downloads_remaining(record),
        "expiryDate": storage.isoformat_utc(record["expires_at"]),
        "isPasswordProtected": bool(record["password_hash"]),
        "virusScanStatus": record["virus_scan_status"],
        "files": [serialize_entry(row) for row in entries],
        "isActive": bool(record["is_active"]),
        "downloadUrl": f"{_base_url()}/files/{record['download_token']}",
    }


def serialize_public_info(record: sqlite3.Row) -> Dict[str, Any]:
    entries = storage.list_file_entries(record["id"])
    return {
        "name": record["original_name"],
        "size": record["size"],
        "type": record["mime_type"],
        "uploadDate": storage.isoformat_utc(record["uploaded_at"]),
        "expiryDate": storage.isoformat_utc(record["expires_at"]),
        "downloadCount": record["download_count"],
        "downloadsRemaining": _downloads_remaining(record),
        "isPasswordProtected": bool(record["password_hash"]),
        "virusScanStatus": record["virus_scan_status"],
        "files": [
            {
                "file_name": row["file_name"],
                "file_path": row["file_path"],
                "size": row["size"],
                "mime_type": row["mime_type"],
                "file_token": row["file_token"],
            }
            for row in entries
        ],
    }


# --- token resolution and access checks ------------------------------------------


def _resolve_download_token(token: str) -> Optional[sqlite3.Row]:
    cached = cache.get_json(cache.RedisKeys.file_upload(token))
    if cached and cached.get("fileId"):
        record = storage.get_file(str(cached["fileId"]))
        if record is not None and record["download_token"] == token:
            return record
    return storage.get_file_by_download_token(token)


def _resolve_edit_token(token: str) -> sqlite3.Row:
    record = storage.get_file_by_edit_token(token)
    if record is None:
        security_logger.warning("edit_token_rejected ip=%s", get_client_ip())
        raise ValidationError("File not found or has been deleted.", status=404)
    return record


def _availability_error(record: sqlite3.Row, now: Optional[float] = None) -> Optional[Tuple[str, int]]:
    now = time.time() if now is None else now
    if record["expires_at"] is not None and record["expires_at"] < now:
        return "File has expired", 410
    if record["max_downloads"] is not None and record["download_count"] >= record["max_downloads"]:
        return "Download limit reached", 410
    if not record["is_active"]:
        return "File is no longer available", 410
    return None


def _require_available(token: str) -> sqlite3.Row:
    record = _resolve_download_token(token)
    if record is None:
        raise ValidationError("File not found", status=404)
    unavailable = _availability_error(record)
    if unavailable is not None:
        message, status = unavailable
        raise ValidationError(message, status=status)
    return record


def _supplied_password() -> Optional[str]:
    candidate = request.form.get("password") or request.headers.get("X-File-Password")
    if candidate:
        return candidate
    payload = request.get_json(silent=True)
    if isinstance(payload, dict) and payload.get("password"):
        return str(payload["password"])
    return None


def _require_password(record: sqlite3.Row) -> None:
    if not record["password_hash"]:
        return
    grant = request.args.get("grant") or request.form.get("grant")
    if grant and verify_download_grant(
        app.config["SECRET_KEY"], grant, record["id"], config.GRANT_TTL_SECONDS
    ):
        return
    candidate = _supplied_password()
    if not candidate:
        raise ValidationError("Password required", status=401)
    if not verify_password(record["password_hash"], candidate):
        security_logger.warning(
            "download_password_rejected file_id=%s ip=%s", record["id"], get_client_ip()
        )
        raise ValidationError("Incorrect password", status=403)


def _claim_or_reject(record: sqlite3.Row) -> None:
    if storage.claim_download(record["id"]):
        return
    refreshed = storage.get_file(record["id"])
    message, status = (
        _availability_error(refreshed) if refreshed is not None else None
    ) or ("File is no longer available", 410)
    raise ValidationError(message, status=status)


# --- routes --------------------------------------------------------------------------


@app.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True

    try:
        with storage.get_db() as conn:
            conn.execute("SELECT COUNT(*) FROM files").fetchone()
        checks["database"] = "ok"
    except sqlite3.Error as error:
        checks["database"] = f"error: {str(error)[:100]}"
        healthy = False

    if object_store.configured:
        try:
            object_store.ping()
            checks["object_store"] = "ok"
        except ObjectStoreError as error:
            checks["object_store"] = f"error: {str(error)[:100]}"
            healthy = False
    else:
        checks["object_store"] = "not_configured"
        healthy = False

    checks["cache"] = cache.ping()
    checks["virus_scanner"] = "enabled" if virus_scanner.enabled else "disabled"

    if scheduler is not None:
        job = scheduler.get_job("cleanup_expired_files")
        checks["cleanup"] = "scheduled" if job and job.next_run_time else "not_scheduled"
        if job and job.next_run_time:
            checks["cleanup_next_run"] = job.next_run_time.isoformat()
        checks["scheduler_running"] = bool(scheduler.running)
    else:
        checks["cleanup"] = "disabled"
        checks["scheduler_running"] = False

    return jsonify(
        {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": time.time(),
            "checks": checks,
        }
    ), 200 if healthy else 503


@app.route("/api/files/upload", methods=["POST"])
@limiter.limit(lambda: config.UPLOAD_RATE_LIMIT, error_message=UPLOAD_RATE_LIMIT_MESSAGE)
def upload_file():
    if not object_store.configured:
        lifecycle_logger.error("upload_rejected reason=not_configured")
        return _json_error("Service not properly configured", 503)

    upload = request.files.get("file")
    if upload is None or not upload.filename:
        lifecycle_logger.warning("upload_failed reason=no_file")
        return _json_error("No file provided", 400)

    if config.HCAPTCHA_SECRET_KEY:
        captcha_token = request.form.get("captchaToken")
        if not captcha_token:
            return _json_error("CAPTCHA verification required", 400)
        if not verify_captcha(captcha_token, get_client_ip()):
            return _json_error("CAPTCHA verification failed", 400)

    filename, mime_type, data = _read_validated_upload(upload)
    expires_at = parse_expiry(request.form.get("expiresIn"), config.MAX_EXPIRY_HOURS)
    max_downloads = parse_max_downloads(request.form.get("maxDownloads"))
    password = request.form.get("password") or None

    file_id = generate_id()
    download_token = generate_secure_id()
    edit_token = generate_secure_id()

    scan_result = _scan_or_reject(data, filename, file_id)

    storage_key = primary_key(file_id, generate_id())
    try:
        object_store.put_bytes(storage_key, data, mime_type)
    except ObjectStoreError:
        lifecycle_logger.error("upload_failed reason=object_store file_id=%s", file_id)
        return _json_error("Storage upload failed", 500)

    try:
        storage.register_file(
            file_id=file_id,
            original_name=filename,
            size=len(data),
            mime_type=mime_type,
            storage_key=storage_key,
            download_token=download_token,
            edit_token=edit_token,
            password_hash=hash_password(password) if password else None,
            expires_at=expires_at,
            max_downloads=max_downloads,
            virus_scan_status=scan_result.status,
            uploaded_by=get_client_ip(),
            entries=_list_archive_entries(filename, data),
        )
    except sqlite3.Error as error:
        lifecycle_logger.exception("upload_failed reason=metadata file_id=%s", file_id)
        object_store.rollback_upload(storage_key)
        return _json_error("Failed to save file metadata", 500, details=str(error))

    _audit("file_upload", file_id, {"filename": filename, "size": len(data), "mimeType": mime_type})
    cache.set_with_expiry(
        cache.RedisKeys.file_upload(download_token),
        json.dumps({"fileId": file_id, "editToken": edit_token}),
        config.TOKEN_CACHE_TTL_SECONDS,
    )

    lifecycle_logger.info(
        "file_uploaded file_id=%s filename=%s size=%d scan=%s",
        file_id,
        sanitize_log_value(filename),
        len(data),
        scan_result.status,
    )
    base_url = _base_url()
    return jsonify(
        {
            "success": True,
            "fileId": file_id,
            "downloadUrl": f"{base_url}/files/{download_token}",
            "editUrl": f"{base_url}/files/manage/{edit_token}",
            "file": {"name": filename, "size": len(data), "type": mime_type},
        }
    ), 201


@app.route("/files/<download_token>", methods=["GET"])
@app.route("/api/files/<download_token>", methods=["GET"])
@limiter.limit(lambda: config.DOWNLOAD_RATE_LIMIT, error_message=DOWNLOAD_RATE_LIMIT_MESSAGE)
def file_info(download_token: str):
    record = _require_available(download_token)
    _audit("file_view", record["id"])
    return jsonify({"success": True, "file": serialize_public_info(record)})


@app.route("/api/files/<download_token>/unlock", methods=["POST"])
@limiter.limit(lambda: config.DOWNLOAD_RATE_LIMIT, error_message=DOWNLOAD_RATE_LIMIT_MESSAGE)
def unlock_file(download_token: str):
    record = _require_available(download_token)
    _require_password(record)
    grant = issue_download_grant(app.config["SECRET_KEY"], record["id"])
    return jsonify({"success": True, "grant": grant, "expiresIn": config.GRANT_TTL_SECONDS})


def _send_bundle(record: sqlite3.Row, entries: List[sqlite3.Row]):
    """Stream the primary content plus added entries as one ZIP archive."""

    bundle = tempfile.SpooledTemporaryFile(max_size=BUNDLE_SPOOL_BYTES)
    try:
        with zipfile.ZipFile(bundle, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            archive.writestr(record["original_name"], object_store.get_bytes(record["storage_key"]))
            for entry in entries:
                arcname = normalize_relative_path(entry["file_path"]) or entry["file_name"]
                archive.writestr(arcname, object_store.get_bytes(entry["storage_key"]))
    except Exception:
        bundle.close()
        raise
    bundle.seek(0)
    stem = PurePosixPath(record["original_name"]).stem or "download"
    return send_file(
        bundle,
        mimetype="application/zip",
        as_attachment=True,
        download_name=f"{stem}.zip",
    )


@app.route("/api/files/<download_token>/download", methods=["GET", "POST"])
@limiter.limit(lambda: config.DOWNLOAD_RATE_LIMIT, error_message=DOWNLOAD_RATE_LIMIT_MESSAGE)
def download_file(download_token: str):
    record = _require_available(download_token)
    _require_password(record)

    added_entries = [
        row for row in storage.list_file_entries(record["id"]) if not row["extracted"]
    ]
    try:
        if added_entries:
            response = _send_bundle(record, added_entries)
        else:
            body = object_store.open_stream(record["storage_key"])
            response = send_file(
                body,
                mimetype=record["mime_type"] or "application/octet-stream",
                as_attachment=True,
                download_name=record["original_name"],
            )
    except ObjectStoreError:
        lifecycle_logger.error("file_download_failed file_id=%s", record["id"])
        return _json_error("File content unavailable", 502)

    try:
        _claim_or_reject(record)
    except ValidationError:
        response.close()
        raise

    _audit(
        "file_download",
        record["id"],
        {"filename": record["original_name"], "bundle": bool(added_entries)},
    )
    lifecycle_logger.info("file_downloaded file_id=%s bundle=%s", record["id"], bool(added_entries))
    return response


@app.route("/api/files/<download_token>/entries/<file_token>", methods=["GET", "POST"])
@limiter.limit(lambda: config.DOWNLOAD_RATE_LIMIT, error_message=DOWNLOAD_RATE_LIMIT_MESSAGE)
def download_entry(download_token: str, file_token: str):
    record = _require_available(download_token)
    entry = storage.get_file_entry(record["id"], file_token)
    if entry is None:
        raise ValidationError("File not found", status=404)
    _require_password(record)

    try:
        if entry["extracted"]:
            with zipfile.ZipFile(io.BytesIO(object_store.get_bytes(record["storage_key"]))) as archive:
                content = archive.read(entry["file_path"])
            body: Any = io.BytesIO(content)
        else:
            body = object_store.open_stream(entry["storage_key"])
    except ObjectStoreError:
        lifecycle_logger.error("entry_download_failed file_id=%s", record["id"])
        return _json_error("File content unavailable", 502)
    except (KeyError, zipfile.BadZipFile):
        lifecycle_logger.error(
            "entry_missing_from_archive file_id=%s path=%s",
            record["id"],
            sanitize_log_value(entry["file_path"]),
        )
        return _json_error("File content unavailable", 502)

    try:
        _claim_or_reject(record)
    except ValidationError:
        body.close()
        raise
    storage.mark_entry_downloaded(file_token)
    _audit(
        "file_download",
        record["id"],
        {"filename": entry["file_name"], "path": entry["file_path"]},
    )
    return send_file(
        body,
        mimetype=entry["mime_type"] or "application/octet-stream",
        as_attachment=True,
        download_name=entry["file_name"],
    )


@app.route("/files/manage/<edit_token>", methods=["GET"])
@app.route("/api/files/manage/<edit_token>", methods=["GET"])
@app.route("/api/files/metadata/<edit_token>", methods=["GET"])
def file_metadata(edit_token: str):
    record = _resolve_edit_token(edit_token)
    return jsonify(serialize_file_info(record))


@app.route("/api/files/manage/<edit_token>/logs", methods=["GET"])
def file_access_logs(edit_token: str):
    record = _resolve_edit_token(edit_token)
    logs = storage.list_access_logs(record["id"])
    return jsonify({"success": True, "logs": logs})


def _parse_files_to_delete(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except ValueError as error:
        raise ValidationError("Invalid filesToDelete value") from error
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValidationError("Invalid filesToDelete value")
    return value


@app.route("/api/files/manage/<edit_token>", methods=["POST"])
@limiter.limit(lambda: config.UPLOAD_RATE_LIMIT, error_message=UPLOAD_RATE_LIMIT_MESSAGE)
def update_file(edit_token: str):
    record = _resolve_edit_token(edit_token)
    if not object_store.configured:
        return _json_error("Service not properly configured", 503)

    new_files = [upload for upload in request.files.getlist("files") if upload and upload.filename]
    relative_paths = request.form.getlist("relativePaths")
    replacement = request.files.get("file")
    if replacement is not None and not replacement.filename:
        replacement = None
    files_to_delete = _parse_files_to_delete(request.form.get("filesToDelete"))
    if not new_files and not files_to_delete and replacement is None:
        raise ValidationError("No changes requested")

    # Validate and scan everything before any object is written.
    prepared = []
    for index, upload in enumerate(new_files):
        filename, mime_type, data = _read_validated_upload(upload)
        relative = relative_paths[index].strip() if index < len(relative_paths) else ""
        if relative:
            relative = normalize_relative_path(relative)
            if relative is None:
                raise ValidationError("Invalid relative path")
        _scan_or_reject(data, filename, record["id"])
        prepared.append((filename, relative or filename, mime_type, data))

    replacement_prepared = None
    if replacement is not None:
        filename, mime_type, data = _read_validated_upload(replacement)
        scan_result = _scan_or_reject(data, filename, record["id"])
        replacement_prepared = (filename, mime_type, data, scan_result)

    stored_keys: List[str] = []
    added_entries: List[Dict[str, Any]] = []
    new_primary_key = None
    try:
        for filename, relative, mime_type, data in prepared:
            token = generate_secure_id()
            key = entry_key(record["id"], token)
            object_store.put_bytes(key, data, mime_type)
            stored_keys.append(key)
            added_entries.append(
                {
                    "file_token": token,
                    "file_name": filename,
                    "file_path": relative,
                    "size": len(data),
                    "mime_type": mime_type,
                    "storage_key": key,
                    "extracted": False,
                }
            )
        if replacement_prepared is not None:
            new_primary_key = primary_key(record["id"], generate_id())
            object_store.put_bytes(new_primary_key, replacement_prepared[2], replacement_prepared[1])
            stored_keys.append(new_primary_key)
    except ObjectStoreError:
        for key in stored_keys:
            object_store.rollback_upload(key)
        return _json_error("Storage upload failed", 500)

    try:
        removed = storage.apply_entry_changes(record["id"], added_entries, files_to_delete)
        if replacement_prepared is not None:
            filename, mime_type, data, scan_result = replacement_prepared
            storage.replace_primary_content(
                record["id"],
                original_name=filename,
                size=len(data),
                mime_type=mime_type,
                storage_key=new_primary_key,
                virus_scan_status=scan_result.status,
                entries=_list_archive_entries(filename, data),
            )
    except sqlite3.Error as error:
        lifecycle_logger.exception("file_update_failed file_id=%s", record["id"])
        for key in stored_keys:
            object_store.rollback_upload(key)
        return _json_error("Failed to update file metadata", 500, details=str(error))

    obsolete = [row["storage_key"] for row in removed if row["storage_key"]]
    if replacement_prepared is not None:
        obsolete.append(record["storage_key"])
    for key in obsolete:
        try:
            object_store.delete(key)
        except ObjectStoreError:
            lifecycle_logger.warning("obsolete_object_left key=%s", key)

    _audit(
        "file_updated",
        record["id"],
        {
            "added": len(added_entries),
            "removed": len(removed),
            "replaced": replacement_prepared is not None,
        },
    )
    updated = storage.get_file(record["id"])
    return jsonify(
        {
            "success": True,
            "added": len(added_entries),
            "removed": len(removed),
            "replaced": replacement_prepared is not None,
            "file": serialize_file_info(updated),
        }
    )


@app.route("/api/files/manage/<edit_token>", methods=["DELETE"])
def delete_file(edit_token: str):
    record = _resolve_edit_token(edit_token)
    keys = [record["storage_key"]] + [
        row["storage_key"] for row in storage.list_file_entries(record["id"]) if row["storage_key"]
    ]
    # The share stops serving before any object is removed.
    storage.deactivate_file(record["id"])
    cache.delete_keys(cache.RedisKeys.file_upload(record["download_token"]))

    failed_keys = []
    for key in keys:
        try:
            object_store.delete(key)
        except ObjectStoreError as error:
            lifecycle_logger.warning(
                "file_delete_object_failed file_id=%s key=%s error=%s", record["id"], key, error
            )
            failed_keys.append(key)

    cleanup_pending = bool(failed_keys)
    if not cleanup_pending:
        storage.delete_file_record(record["id"])
    _audit(
        "file_deleted",
        record["id"],
        {"filename": record["original_name"], "cleanupPending": cleanup_pending},
    )
    lifecycle_logger.info(
        "file_deleted file_id=%s cleanup_pending=%s", record["id"], cleanup_pending
    )
    payload: Dict[str, Any] = {"success": True}
    if cleanup_pending:
        payload["cleanupPending"] = True
    return jsonify(payload)


# --- cleanup ----------------------------------------------------------------------------


def run_cleanup() -> int:
    if not object_store.configured:
        lifecycle_logger.warning("cleanup_skipped reason=not_configured")
        return 0
    return storage.cleanup_expired_files(object_store)


@app.cli.command("cleanup-expired")
@click.option("--dry-run", is_flag=True, help="Show what would be deleted without deleting")
def cleanup_expired_command(dry_run: bool) -> None:
    """Delete expired and exhausted shares from storage."""

    if dry_run:
        now = time.time()
        candidates = storage.list_cleanup_candidates(now)
        for record in candidates:
            click.echo(
                f"Would delete: {record['original_name']} "
                f"(id: {record['id']}, reason: {storage.cleanup_reason(record, now)})"
            )
        click.echo(f"Would remove {len(candidates)} files")
        return
    removed = run_cleanup()
    click.echo(f"Removed {removed} expired files")


scheduler: Optional[BackgroundScheduler] = None
if not config.SCHEDULER_DISABLED:
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        func=run_cleanup,
        trigger="interval",
        minutes=config.CLEANUP_INTERVAL_MINUTES,
        id="cleanup_expired_files",
        name="Clean up expired files",
        replace_existing=True,
    )
    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))

    # Run a single cleanup on startup to enforce expiry before serving traffic.
    run_cleanup()


if __name__ == "__main__":
    socketio.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
