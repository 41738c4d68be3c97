import json
import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Generator, Iterable, List, Optional, Tuple

from . import cache
from .config import DB_PATH, ensure_directories
from .objectstore import ObjectStore, ObjectStoreError

logger = logging.getLogger("sharespace.storage")

ACCESS_LOG_ACTIONS = {"file_download": "download", "file_view": "view"}


def isoformat_utc(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


@contextmanager
def get_db() -> Generator[sqlite3.Connection, None, None]:
    ensure_directories()
    conn = sqlite3.connect(DB_PATH, timeout=30.0)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        if conn.in_transaction:
            conn.commit()
    except Exception:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        conn.close()


def init_db() -> None:
    with get_db() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS files (
                id TEXT PRIMARY KEY,
                original_name TEXT NOT NULL,
                size INTEGER NOT NULL,
                mime_type TEXT,
                storage_key TEXT NOT NULL,
                download_token TEXT NOT NULL UNIQUE,
                edit_token TEXT NOT NULL UNIQUE,
                password_hash TEXT,
                expires_at REAL,
                max_downloads INTEGER,
                download_count INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1,
                virus_scan_status TEXT NOT NULL DEFAULT 'skipped',
                uploaded_at REAL NOT NULL,
                uploaded_by TEXT,
                last_downloaded_at REAL,
                updated_at REAL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS file_entries (
                file_token TEXT PRIMARY KEY,
                file_id TEXT NOT NULL,
                file_name TEXT NOT NULL,
                file_path TEXT NOT NULL,
                size INTEGER NOT NULL,
                mime_type TEXT,
                storage_key TEXT,
                extracted INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL,
                downloaded_at REAL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                action TEXT NOT NULL,
                resource_type TEXT NOT NULL,
                resource_id TEXT,
                ip_address TEXT,
                user_agent TEXT,
                metadata TEXT,
                created_at REAL NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS chat_rooms (
                id TEXT PRIMARY KEY,
                room_id TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                password_hash TEXT,
                file_id TEXT,
                expires_at REAL,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at REAL NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS chat_messages (
                id TEXT PRIMARY KEY,
                room_id TEXT NOT NULL,
                username TEXT NOT NULL,
                message TEXT NOT NULL,
                message_type TEXT NOT NULL DEFAULT 'text',
                user_id TEXT,
                created_at REAL NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS chat_participants (
                id TEXT PRIMARY KEY,
                room_id TEXT NOT NULL,
                username TEXT NOT NULL,
                user_id TEXT,
                joined_at REAL NOT NULL,
                last_seen REAL NOT NULL,
                is_online INTEGER NOT NULL DEFAULT 1,
                UNIQUE (room_id, username)
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_files_expires_at ON files(expires_at)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_file_entries_file_id ON file_entries(file_id)")
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_audit_logs_resource ON audit_logs(resource_id, created_at)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_chat_messages_room ON chat_messages(room_id, created_at)"
        )
        conn.commit()


# --- files -----------------------------------------------------------------


def register_file(
    *,
    file_id: str,
    original_name: str,
    size: int,
    mime_type: Optional[str],
    storage_key: str,
    download_token: str,
    edit_token: str,
    password_hash: Optional[str],
    expires_at: Optional[float],
    max_downloads: Optional[int],
    virus_scan_status: str,
    uploaded_by: Optional[str],
    entries: Iterable[Dict[str, Any]] = (),
) -> str:
    """Insert a file record and its listed archive entries in one transaction."""

    uploaded_at = time.time()
    with get_db() as conn:
        conn.execute("BEGIN IMMEDIATE")
        conn.execute(
            """
            INSERT INTO files (
                id, original_name, size, mime_type, storage_key,
                download_token, edit_token, password_hash, expires_at,
                max_downloads, download_count, is_active, virus_scan_status,
                uploaded_at, uploaded_by, last_downloaded_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 1, ?, ?, ?, NULL, ?)
            """,
            (
                file_id,
                original_name,
                size,
                mime_type,
                storage_key,
                download_token,
                edit_token,
                password_hash,
                expires_at,
                max_downloads,
                virus_scan_status,
                uploaded_at,
                uploaded_by,
                uploaded_at,
            ),
        )
        _insert_entries(conn, file_id, entries, uploaded_at)
    logger.info(
        "file_registered file_id=%s size=%d expires_at=%s max_downloads=%s",
        file_id,
        size,
        expires_at,
        max_downloads,
    )
    return file_id


def _insert_entries(
    conn: sqlite3.Connection,
    file_id: str,
    entries: Iterable[Dict[str, Any]],
    created_at: float,
) -> None:
    for entry in entries:
        conn.execute(
            """
            INSERT INTO file_entries (
                file_token, file_id, file_name, file_path, size,
                mime_type, storage_key, extracted, created_at, downloaded_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL)
            """,
            (
                entry["file_token"],
                file_id,
                entry["file_name"],
                entry.get("file_path") or entry["file_name"],
                int(entry["size"]),
                entry.get("mime_type"),
                entry.get("storage_key"),
                1 if entry.get("extracted") else 0,
                created_at,
            ),
        )


def get_file(file_id: str) -> Optional[sqlite3.Row]:
    with get_db() as conn:
        return conn.execute("SELECT * FROM files WHERE id = ?", (file_id,)).fetchone()


def get_file_by_download_token(token: str) -> Optional[sqlite3.Row]:
    with get_db() as conn:
        return conn.execute(
            "SELECT * FROM files WHERE download_token = ?", (token,)
        ).fetchone()


def get_file_by_edit_token(token: str) -> Optional[sqlite3.Row]:
    with get_db() as conn:
        return conn.execute("SELECT * FROM files WHERE edit_token = ?", (token,)).fetchone()


def replace_primary_content(
    file_id: str,
    *,
    original_name: str,
    size: int,
    mime_type: Optional[str],
    storage_key: str,
    virus_scan_status: str,
    entries: Iterable[Dict[str, Any]] = (),
) -> List[sqlite3.Row]:
    """Point a file at new primary content.

    Listed entries of the previous archive are replaced by *entries*. Returns
    the removed entry rows.
    """

    now = time.time()
    with get_db() as conn:
        conn.execute("BEGIN IMMEDIATE")
        removed = conn.execute(
            "SELECT * FROM file_entries WHERE file_id = ? AND extracted = 1", (file_id,)
        ).fetchall()
        conn.execute(
            "DELETE FROM file_entries WHERE file_id = ? AND extracted = 1", (file_id,)
        )
        conn.execute(
            """
            UPDATE files
            SET original_name = ?, size = ?, mime_type = ?, storage_key = ?,
                virus_scan_status = ?, updated_at = ?
            WHERE id = ?
            """,
            (original_name, size, mime_type, storage_key, virus_scan_status, now, file_id),
        )
        _insert_entries(conn, file_id, entries, now)
    return removed


def claim_download(file_id: str, now: Optional[float] = None) -> bool:
    """Atomically count one download if the file may still be downloaded.

    The file is deactivated by the same statement when the download limit is
    reached.
    """

    now = time.time() if now is None else now
    with get_db() as conn:
        cursor = conn.execute(
            """
            UPDATE files
            SET download_count = download_count + 1,
                last_downloaded_at = ?,
                is_active = CASE
                    WHEN max_downloads IS NOT NULL AND download_count + 1 >= max_downloads THEN 0
                    ELSE is_active
                END
            WHERE id = ?
              AND is_active = 1
              AND (expires_at IS NULL OR expires_at > ?)
              AND (max_downloads IS NULL OR download_count < max_downloads)
            """,
            (now, file_id, now),
        )
        return cursor.rowcount == 1


def deactivate_file(file_id: str) -> bool:
    """Stop serving a share; cleanup removes its objects and row later."""

    with get_db() as conn:
        cursor = conn.execute(
            "UPDATE files SET is_active = 0, updated_at = ? WHERE id = ?",
            (time.time(), file_id),
        )
        return cursor.rowcount == 1


def delete_file_record(file_id: str) -> bool:
    with get_db() as conn:
        conn.execute("BEGIN IMMEDIATE")
        conn.execute("DELETE FROM file_entries WHERE file_id = ?", (file_id,))
        cursor = conn.execute("DELETE FROM files WHERE id = ?", (file_id,))
        return cursor.rowcount == 1


# --- archive entries ---------------------------------------------------------


def list_file_entries(file_id: str) -> List[sqlite3.Row]:
    with get_db() as conn:
        return conn.execute(
            "SELECT * FROM file_entries WHERE file_id = ? ORDER BY extracted DESC, created_at, file_path",
            (file_id,),
        ).fetchall()


def get_file_entry(file_id: str, file_token: str) -> Optional[sqlite3.Row]:
    with get_db() as conn:
        return conn.execute(
            "SELECT * FROM file_entries WHERE file_id = ? AND file_token = ?",
            (file_id, file_token),
        ).fetchone()


def apply_entry_changes(
    file_id: str,
    added: Iterable[Dict[str, Any]] = (),
    removed_tokens: Iterable[str] = (),
) -> List[sqlite3.Row]:
    """Add and remove archive entries in one transaction.

    Returns the rows that were removed so their objects can be deleted.
    """

    tokens = [token for token in removed_tokens if token]
    now = time.time()
    rows: List[sqlite3.Row] = []
    with get_db() as conn:
        conn.execute("BEGIN IMMEDIATE")
        if tokens:
            placeholders = ",".join("?" for _ in tokens)
            rows = conn.execute(
                f"SELECT * FROM file_entries WHERE file_id = ? AND file_token IN ({placeholders})",
                (file_id, *tokens),
            ).fetchall()
            conn.execute(
                f"DELETE FROM file_entries WHERE file_id = ? AND file_token IN ({placeholders})",
                (file_id, *tokens),
            )
        _insert_entries(conn, file_id, added, now)
        conn.execute("UPDATE files SET updated_at = ? WHERE id = ?", (now, file_id))
    return rows


def mark_entry_downloaded(file_token: str) -> None:
    with get_db() as conn:
        conn.execute(
            "UPDATE file_entries SET downloaded_at = ? WHERE file_token = ?",
            (time.time(), file_token),
        )


# --- audit log ---------------------------------------------------------------


def record_audit_event(
    action: str,
    resource_type: str,
    resource_id: Optional[str],
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO audit_logs (
                action, resource_type, resource_id, ip_address, user_agent, metadata, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                action,
                resource_type,
                resource_id,
                ip_address,
                user_agent,
                json.dumps(metadata or {}),
                time.time(),
            ),
        )


def list_audit_events(resource_id: str, limit: int = 100) -> List[sqlite3.Row]:
    with get_db() as conn:
        return conn.execute(
            "SELECT * FROM audit_logs WHERE resource_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
            (resource_id, limit),
        ).fetchall()


def list_access_logs(file_id: str, limit: int = 100) -> List[Dict[str, Any]]:
    actions = tuple(ACCESS_LOG_ACTIONS)
    with get_db() as conn:
        rows = conn.execute(
            """
            SELECT * FROM audit_logs
            WHERE resource_id = ? AND action IN (?, ?)
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (file_id, *actions, limit),
        ).fetchall()
    return [
        {
            "id": str(row["id"]),
            "ip": row["ip_address"] or "unknown",
            "timestamp": isoformat_utc(row["created_at"]),
            "action": ACCESS_LOG_ACTIONS[row["action"]],
            "userAgent": row["user_agent"] or "",
        }
        for row in rows
    ]


# --- cleanup -----------------------------------------------------------------


def cleanup_reason(record: sqlite3.Row, now: float) -> Optional[str]:
    if record["expires_at"] is not None and record["expires_at"] < now:
        return "expired"
    if record["max_downloads"] is not None and record["download_count"] >= record["max_downloads"]:
        return "download_limit"
    if not record["is_active"]:
        return "inactive"
    return None


def list_cleanup_candidates(now: Optional[float] = None) -> List[sqlite3.Row]:
    now = time.time() if now is None else now
    with get_db() as conn:
        return conn.execute(
            """
            SELECT * FROM files
            WHERE (expires_at IS NOT NULL AND expires_at < ?)
               OR is_active = 0
               OR (max_downloads IS NOT NULL AND download_count >= max_downloads)
            ORDER BY uploaded_at
            """,
            (now,),
        ).fetchall()


def cleanup_expired_files(object_store: ObjectStore, now: Optional[float] = None) -> int:
    now = time.time() if now is None else now
    removed = 0
    for record in list_cleanup_candidates(now):
        keys = [record["storage_key"]] + [
            entry["storage_key"]
            for entry in list_file_entries(record["id"])
            if entry["storage_key"]
        ]
        deletion_failed = False
        for key in keys:
            try:
                object_store.delete(key)
            except ObjectStoreError as error:
                logger.warning(
                    "cleanup_object_delete_failed file_id=%s key=%s error=%s",
                    record["id"],
                    key,
                    error,
                )
                deletion_failed = True
                break
        if deletion_failed:
            continue

        delete_file_record(record["id"])
        cache.delete_keys(cache.RedisKeys.file_upload(record["download_token"]))
        record_audit_event(
            "file_expired",
            "file",
            record["id"],
            metadata={
                "filename": record["original_name"],
                "reason": cleanup_reason(record, now),
            },
        )
        removed += 1

    expired_rooms = expire_chat_rooms(now)
    if removed or expired_rooms:
        logger.info("cleanup_completed removed=%d rooms_expired=%d", removed, expired_rooms)
    return removed


# --- chat ----------------------------------------------------------------------


def create_room(
    *,
    name: str,
    password_hash: Optional[str],
    file_id: Optional[str],
    expires_at: Optional[float],
    code_factory: Callable[[], str],
) -> sqlite3.Row:
    max_attempts = 5
    room_pk = uuid.uuid4().hex
    for attempt in range(max_attempts):
        room_code = code_factory()
        try:
            with get_db() as conn:
                conn.execute(
                    """
                    INSERT INTO chat_rooms (
                        id, room_id, name, password_hash, file_id, expires_at, is_active, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, 1, ?)
                    """,
                    (room_pk, room_code, name, password_hash, file_id, expires_at, time.time()),
                )
            break
        except sqlite3.IntegrityError:
            logger.warning("room_code_collision attempt=%d", attempt + 1)
    else:
        raise RuntimeError("Unable to allocate a unique room code")
    return get_room(room_code)


def get_room(room_id: str) -> Optional[sqlite3.Row]:
    with get_db() as conn:
        return conn.execute("SELECT * FROM chat_rooms WHERE room_id = ?", (room_id,)).fetchone()


def expire_chat_rooms(now: Optional[float] = None) -> int:
    now = time.time() if now is None else now
    with get_db() as conn:
        cursor = conn.execute(
            """
            UPDATE chat_rooms SET is_active = 0
            WHERE is_active = 1 AND expires_at IS NOT NULL AND expires_at < ?
            """,
            (now,),
        )
        conn.execute(
            """
            UPDATE chat_participants SET is_online = 0
            WHERE room_id IN (SELECT room_id FROM chat_rooms WHERE is_active = 0)
            """
        )
        return cursor.rowcount


def insert_message(
    room_id: str,
    username: str,
    message: str,
    message_type: str = "text",
    user_id: Optional[str] = None,
) -> sqlite3.Row:
    message_pk = uuid.uuid4().hex
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO chat_messages (id, room_id, username, message, message_type, user_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (message_pk, room_id, username, message, message_type, user_id, time.time()),
        )
        return conn.execute("SELECT * FROM chat_messages WHERE id = ?", (message_pk,)).fetchone()


def list_messages(room_id: str, limit: int) -> List[sqlite3.Row]:
    """Return the newest *limit* messages of a room, oldest first."""

    with get_db() as conn:
        rows = conn.execute(
            """
            SELECT * FROM chat_messages
            WHERE room_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (room_id, limit),
        ).fetchall()
    return list(reversed(rows))


def get_participant(room_id: str, username: str) -> Optional[sqlite3.Row]:
    with get_db() as conn:
        return conn.execute(
            "SELECT * FROM chat_participants WHERE room_id = ? AND username = ?",
            (room_id, username),
        ).fetchone()


def upsert_participant(
    room_id: str, username: str, user_id: Optional[str] = None
) -> Tuple[sqlite3.Row, bool]:
    """Join *username* to a room; an existing participant is marked online."""

    now = time.time()
    with get_db() as conn:
        conn.execute("BEGIN IMMEDIATE")
        existing = conn.execute(
            "SELECT id FROM chat_participants WHERE room_id = ? AND username = ?",
            (room_id, username),
        ).fetchone()
        if existing:
            conn.execute(
                "UPDATE chat_participants SET is_online = 1, last_seen = ? WHERE id = ?",
                (now, existing["id"]),
            )
            participant_pk = existing["id"]
            created = False
        else:
            participant_pk = uuid.uuid4().hex
            conn.execute(
                """
                INSERT INTO chat_participants (id, room_id, username, user_id, joined_at, last_seen, is_online)
                VALUES (?, ?, ?, ?, ?, ?, 1)
                """,
                (participant_pk, room_id, username, user_id, now, now),
            )
            created = True
        row = conn.execute(
            "SELECT * FROM chat_participants WHERE id = ?", (participant_pk,)
        ).fetchone()
    return row, created


def update_participant_status(
    room_id: str, username: str, is_online: bool
) -> Optional[sqlite3.Row]:
    with get_db() as conn:
        cursor = conn.execute(
            """
            UPDATE chat_participants SET is_online = ?, last_seen = ?
            WHERE room_id = ? AND username = ?
            """,
            (1 if is_online else 0, time.time(), room_id, username),
        )
        if cursor.rowcount == 0:
            return None
        return conn.execute(
            "SELECT * FROM chat_participants WHERE room_id = ? AND username = ?",
            (room_id, username),
        ).fetchone()


def list_participants(room_id: str) -> List[sqlite3.Row]:
    with get_db() as conn:
        return conn.execute(
            "SELECT * FROM chat_participants WHERE room_id = ? ORDER BY joined_at, id",
            (room_id,),
        ).fetchall()


ensure_directories()
init_db()
