"""Chat rooms: HTTP routes plus the Socket.IO change feed."""

import sqlite3
import time
from typing import Any, Dict, Optional, Tuple

from flask import Blueprint, current_app, jsonify, request
from flask_socketio import emit, join_room, leave_room

from . import config, storage
from .extensions import limiter, socketio
from .logging_setup import get_logger
from .security import (
    generate_room_code,
    hash_password,
    issue_room_grant,
    sanitize_log_value,
    verify_password,
    verify_room_grant,
)
from .validation import ValidationError, clean_username, parse_expiry, parse_limit

chat_bp = Blueprint("chat", __name__, url_prefix="/api/chat")
chat_logger = get_logger("sharespace.chat")

MESSAGE_TYPES = ("text", "system", "file")

EVENT_MESSAGE_CREATED = "message_created"
EVENT_PARTICIPANT_JOINED = "participant_joined"
EVENT_PARTICIPANT_UPDATED = "participant_updated"


def room_channel(room_id: str) -> str:
    return f"chat:{room_id}"


def serialize_message(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "roomId": row["room_id"],
        "username": row["username"],
        "message": row["message"],
        "messageType": row["message_type"],
        "createdAt": storage.isoformat_utc(row["created_at"]),
        "userId": row["user_id"],
    }


def serialize_participant(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "roomId": row["room_id"],
        "username": row["username"],
        "joinedAt": storage.isoformat_utc(row["joined_at"]),
        "lastSeen": storage.isoformat_utc(row["last_seen"]),
        "isOnline": bool(row["is_online"]),
        "userId": row["user_id"],
    }


def serialize_room(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "roomId": row["room_id"],
        "name": row["name"],
        "isPasswordProtected": bool(row["password_hash"]),
        "fileId": row["file_id"],
        "expiresAt": storage.isoformat_utc(row["expires_at"]),
        "isActive": bool(row["is_active"]) and not _room_expired(row),
    }


def _room_expired(row: sqlite3.Row, now: Optional[float] = None) -> bool:
    now = time.time() if now is None else now
    return row["expires_at"] is not None and row["expires_at"] < now


def _payload() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _active_room(room_id: Any) -> sqlite3.Row:
    if not room_id:
        raise ValidationError("Room ID is required")
    room = storage.get_room(str(room_id))
    if room is None:
        raise ValidationError("Room not found", status=404)
    if not room["is_active"] or _room_expired(room):
        raise ValidationError("Room has expired", status=410)
    return room


def _broadcast(event: str, room_id: str, payload: Dict[str, Any]) -> None:
    socketio.emit(event, payload, to=room_channel(room_id))


def _room_access_error(room: sqlite3.Row, data: Dict[str, Any]) -> Optional[Tuple[str, int]]:
    """Check the caller may read or write a password protected room.

    A signed room grant (``X-Room-Grant`` header or ``grant`` field) or the
    room password itself is accepted.
    """

    if not room["password_hash"]:
        return None
    grant = request.headers.get("X-Room-Grant") or data.get("grant")
    if verify_room_grant(
        current_app.config["SECRET_KEY"], grant, room["room_id"], config.CHAT_GRANT_TTL_SECONDS
    ):
        return None
    password = data.get("password")
    if not password:
        return "Room password required", 401
    if not verify_password(room["password_hash"], password):
        chat_logger.warning("chat_room_password_rejected room_id=%s", room["room_id"])
        return "Incorrect password", 403
    return None


def _require_room_access(room: sqlite3.Row, data: Dict[str, Any]) -> None:
    error = _room_access_error(room, data)
    if error is not None:
        raise ValidationError(error[0], status=error[1])


def _access_payload(room: sqlite3.Row) -> Dict[str, Any]:
    if not room["password_hash"]:
        return {}
    return {
        "grant": issue_room_grant(current_app.config["SECRET_KEY"], room["room_id"]),
        "grantExpiresIn": config.CHAT_GRANT_TTL_SECONDS,
    }


@chat_bp.errorhandler(ValidationError)
def handle_validation_error(error: ValidationError):
    return jsonify({"success": False, "error": str(error)}), error.status


@chat_bp.route("/rooms", methods=["POST"])
@limiter.limit(lambda: config.CHAT_RATE_LIMIT)
def create_room():
    data = _payload()
    name = str(data.get("name") or "").strip() or "Chat room"
    if len(name) > 100:
        raise ValidationError("Room name cannot exceed 100 characters")

    file_id = None
    file_expires_at = None
    file_token = data.get("fileToken")
    if file_token:
        record = storage.get_file_by_download_token(str(file_token))
        if record is None or not record["is_active"]:
            raise ValidationError("File not found", status=404)
        file_id = record["id"]
        file_expires_at = record["expires_at"]

    expiry_value = data.get("expiryTime")
    if expiry_value in (None, "") and file_id is not None:
        expires_at = file_expires_at
    elif expiry_value in (None, ""):
        expires_at = time.time() + config.CHAT_DEFAULT_ROOM_HOURS * 3600
    else:
        expires_at = parse_expiry(expiry_value, config.MAX_EXPIRY_HOURS)
    if file_expires_at is not None and (expires_at is None or expires_at > file_expires_at):
        expires_at = file_expires_at

    password = data.get("password") or None
    room = storage.create_room(
        name=name,
        password_hash=hash_password(password) if password else None,
        file_id=file_id,
        expires_at=expires_at,
        code_factory=generate_room_code,
    )
    chat_logger.info(
        "chat_room_created room_id=%s file_id=%s protected=%s",
        room["room_id"],
        file_id,
        bool(password),
    )
    return jsonify({"success": True, "room": serialize_room(room)}), 201


@chat_bp.route("/rooms/<room_id>", methods=["GET"])
def get_room(room_id: str):
    room = storage.get_room(room_id)
    if room is None:
        raise ValidationError("Room not found", status=404)
    return jsonify({"success": True, "room": serialize_room(room)})


@chat_bp.route("/rooms/<room_id>/verify", methods=["POST"])
@limiter.limit(lambda: config.CHAT_RATE_LIMIT)
def verify_room_password(room_id: str):
    room = _active_room(room_id)
    data = _payload()
    if room["password_hash"] and not verify_password(room["password_hash"], data.get("password")):
        chat_logger.warning("chat_room_password_rejected room_id=%s", room_id)
        raise ValidationError("Incorrect password", status=403)
    return jsonify({"success": True, "room": serialize_room(room), **_access_payload(room)})


@chat_bp.route("/messages", methods=["GET"])
def list_messages():
    room_id = request.args.get("roomId")
    if not room_id:
        raise ValidationError("Room ID is required")
    room = storage.get_room(room_id)
    if room is None:
        raise ValidationError("Room not found", status=404)
    _require_room_access(room, request.args)
    limit = parse_limit(
        request.args.get("limit"), config.CHAT_MESSAGE_LIMIT, config.CHAT_MESSAGE_LIMIT_MAX
    )
    messages = [serialize_message(row) for row in storage.list_messages(room_id, limit)]
    return jsonify({"success": True, "messages": messages})


@chat_bp.route("/messages", methods=["POST"])
@limiter.limit(lambda: config.CHAT_RATE_LIMIT)
def send_message():
    data = _payload()
    room = _active_room(data.get("roomId"))
    _require_room_access(room, data)
    username = clean_username(data.get("username"))
    text = str(data.get("message") or "").strip()
    if not text:
        raise ValidationError("Message cannot be empty")
    if len(text) > config.CHAT_MESSAGE_MAX_LENGTH:
        raise ValidationError(
            f"Message cannot exceed {config.CHAT_MESSAGE_MAX_LENGTH} characters"
        )
    message_type = data.get("messageType") or "text"
    if message_type not in MESSAGE_TYPES:
        raise ValidationError("Invalid message type")
    if storage.get_participant(room["room_id"], username) is None:
        raise ValidationError("Join the room before sending messages", status=403)

    row = storage.insert_message(
        room["room_id"], username, text, message_type, data.get("userId")
    )
    message = serialize_message(row)
    _broadcast(EVENT_MESSAGE_CREATED, room["room_id"], message)
    chat_logger.info(
        "chat_message_sent room_id=%s username=%s type=%s",
        room["room_id"],
        sanitize_log_value(username),
        message_type,
    )
    return jsonify({"success": True, "message": message}), 201


@chat_bp.route("/participants", methods=["GET"])
def list_participants():
    room_id = request.args.get("roomId")
    if not room_id:
        raise ValidationError("Room ID is required")
    room = storage.get_room(room_id)
    if room is None:
        raise ValidationError("Room not found", status=404)
    _require_room_access(room, request.args)
    participants = [serialize_participant(row) for row in storage.list_participants(room_id)]
    return jsonify({"success": True, "participants": participants})


@chat_bp.route("/participants", methods=["POST"])
@limiter.limit(lambda: config.CHAT_RATE_LIMIT)
def join_chat_room():
    data = _payload()
    room = _active_room(data.get("roomId"))
    username = clean_username(data.get("username"))
    _require_room_access(room, data)

    row, created = storage.upsert_participant(room["room_id"], username, data.get("userId"))
    participant = serialize_participant(row)
    _broadcast(
        EVENT_PARTICIPANT_JOINED if created else EVENT_PARTICIPANT_UPDATED,
        room["room_id"],
        participant,
    )
    chat_logger.info(
        "chat_participant_joined room_id=%s username=%s rejoin=%s",
        room["room_id"],
        sanitize_log_value(username),
        not created,
    )
    return (
        jsonify({"success": True, "participant": participant, **_access_payload(room)}),
        201 if created else 200,
    )


@chat_bp.route("/participants", methods=["PUT"])
@limiter.limit(lambda: config.CHAT_RATE_LIMIT)
def update_participant():
    data = _payload()
    room = _active_room(data.get("roomId"))
    _require_room_access(room, data)
    username = clean_username(data.get("username"))
    is_online = data.get("isOnline")
    if isinstance(is_online, str):
        is_online = is_online.strip().lower() in {"1", "true", "yes", "on"}
    row = storage.update_participant_status(room["room_id"], username, bool(is_online))
    if row is None:
        raise ValidationError("Participant not found", status=404)
    participant = serialize_participant(row)
    _broadcast(EVENT_PARTICIPANT_UPDATED, room["room_id"], participant)
    return jsonify({"success": True, "participant": participant})


@socketio.on("subscribe")
def handle_subscribe(data):
    room_id = (data or {}).get("roomId") if isinstance(data, dict) else None
    room = storage.get_room(str(room_id)) if room_id else None
    if room is None or not room["is_active"] or _room_expired(room):
        emit("subscription_error", {"roomId": room_id, "error": "Room not found"})
        return
    access_error = _room_access_error(room, data)
    if access_error is not None:
        emit("subscription_error", {"roomId": room_id, "error": access_error[0]})
        return
    join_room(room_channel(room["room_id"]))
    chat_logger.info("chat_subscribed room_id=%s sid=%s", room["room_id"], request.sid)
    emit("subscribed", {"roomId": room["room_id"]})


@socketio.on("unsubscribe")
def handle_unsubscribe(data):
    room_id = (data or {}).get("roomId") if isinstance(data, dict) else None
    if room_id:
        leave_room(room_channel(str(room_id)))
        emit("unsubscribed", {"roomId": room_id})
