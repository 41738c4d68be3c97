"""Client-side chat synchronization.

``ChatSession`` keeps a local view of one chat room consistent with the
server: it loads the message history and participant list over HTTP, then
follows the Socket.IO change feed and folds every event into the same state.
Messages are deduplicated by id and ordered by ``(createdAt, id)`` so an
event that races a refetch never shows up twice or out of order.
"""

import functools
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import requests
import socketio
from socketio.exceptions import ConnectionError as RealtimeConnectionError

logger = logging.getLogger("sharespace.chat_client")

RETRY_ATTEMPTS = 3
RETRY_DELAY = 1.0
MESSAGE_LIMIT = 100
RECONNECT_DELAY = 5.0
MAX_RECONNECT_DELAY = 300.0
DEBOUNCE_DELAY = 0.3
REQUEST_TIMEOUT = 10

STATUS_IDLE = "idle"
STATUS_CONNECTING = "connecting"
STATUS_SUBSCRIBED = "subscribed"
STATUS_RECONNECTING = "reconnecting"
STATUS_CLOSED = "closed"

FETCH_MESSAGES_FAILED = "FETCH_MESSAGES_FAILED"
FETCH_PARTICIPANTS_FAILED = "FETCH_PARTICIPANTS_FAILED"
SEND_MESSAGE_FAILED = "SEND_MESSAGE_FAILED"
JOIN_ROOM_FAILED = "JOIN_ROOM_FAILED"
UPDATE_STATUS_FAILED = "UPDATE_STATUS_FAILED"
REALTIME_SETUP_FAILED = "REALTIME_SETUP_FAILED"
RECONNECT_FAILED = "RECONNECT_FAILED"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return _EPOCH
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ChatAPIError(Exception):
    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass(frozen=True)
class ChatError:
    code: str
    message: str
    timestamp: float


@dataclass(frozen=True)
class ChatMessage:
    id: str
    room_id: str
    username: str
    message: str
    message_type: str = "text"
    created_at: Optional[str] = None
    user_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ChatMessage":
        return cls(
            id=str(payload["id"]),
            room_id=str(payload.get("roomId", "")),
            username=str(payload.get("username", "")),
            message=str(payload.get("message", "")),
            message_type=payload.get("messageType") or "text",
            created_at=payload.get("createdAt"),
            user_id=payload.get("userId"),
        )

    @property
    def sort_key(self):
        return (parse_timestamp(self.created_at), self.id)


@dataclass(frozen=True)
class ChatParticipant:
    id: str
    room_id: str
    username: str
    is_online: bool = False
    joined_at: Optional[str] = None
    last_seen: Optional[str] = None
    user_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ChatParticipant":
        return cls(
            id=str(payload["id"]),
            room_id=str(payload.get("roomId", "")),
            username=str(payload.get("username", "")),
            is_online=bool(payload.get("isOnline")),
            joined_at=payload.get("joinedAt"),
            last_seen=payload.get("lastSeen"),
            user_id=payload.get("userId"),
        )


@dataclass
class ChatState:
    messages: List[ChatMessage] = field(default_factory=list)
    participants: List[ChatParticipant] = field(default_factory=list)
    is_connected: bool = False
    is_loading: bool = False
    error: Optional[ChatError] = None
    last_message_id: Optional[str] = None
    status: str = STATUS_IDLE


class ChatAPIClient:
    """Thin wrapper over the ``/api/chat`` routes with linear retry."""

    #: Room grant returned by a password protected join, sent on later calls.
    grant: Optional[str] = None

    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        retry_attempts: int = RETRY_ATTEMPTS,
        retry_delay: float = RETRY_DELAY,
        timeout: float = REQUEST_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._sleep = sleep

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = f"{self.base_url}/api/chat{path}"
        if self.grant:
            kwargs["headers"] = {**kwargs.get("headers", {}), "X-Room-Grant": self.grant}
        last_error: Optional[str] = None
        for attempt in range(self.retry_attempts):
            try:
                response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            except requests.RequestException as error:
                last_error = str(error)
                logger.warning(
                    "chat_request_failed method=%s path=%s attempt=%d error=%s",
                    method, path, attempt + 1, error,
                )
            else:
                if response.status_code < 500:
                    try:
                        payload = response.json()
                    except ValueError as error:
                        raise ChatAPIError("Invalid response from server", response.status_code) from error
                    if not isinstance(payload, dict) or not payload.get("success"):
                        message = payload.get("error") if isinstance(payload, dict) else None
                        raise ChatAPIError(message or "Request failed", response.status_code)
                    return payload
                last_error = f"Server error ({response.status_code})"
                logger.warning(
                    "chat_request_failed method=%s path=%s attempt=%d status=%d",
                    method, path, attempt + 1, response.status_code,
                )
            if attempt < self.retry_attempts - 1:
                self._sleep(self.retry_delay * (attempt + 1))
        raise ChatAPIError(last_error or "Request failed")

    def get_messages(self, room_id: str, limit: int = MESSAGE_LIMIT) -> List[ChatMessage]:
        payload = self._request("GET", "/messages", params={"roomId": room_id, "limit": limit})
        return [ChatMessage.from_payload(item) for item in payload.get("messages", [])]

    def get_participants(self, room_id: str) -> List[ChatParticipant]:
        payload = self._request("GET", "/participants", params={"roomId": room_id})
        return [ChatParticipant.from_payload(item) for item in payload.get("participants", [])]

    def send_message(
        self,
        room_id: str,
        username: str,
        message: str,
        message_type: str = "text",
        user_id: Optional[str] = None,
    ) -> ChatMessage:
        payload = self._request(
            "POST",
            "/messages",
            json={
                "roomId": room_id,
                "username": username,
                "message": message,
                "messageType": message_type,
                "userId": user_id,
            },
        )
        return ChatMessage.from_payload(payload["message"])

    def join_room(
        self,
        room_id: str,
        username: str,
        password: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> ChatParticipant:
        body: Dict[str, Any] = {"roomId": room_id, "username": username, "userId": user_id}
        if password:
            body["password"] = password
        payload = self._request("POST", "/participants", json=body)
        if payload.get("grant"):
            self.grant = payload["grant"]
        return ChatParticipant.from_payload(payload["participant"])

    def update_participant(self, room_id: str, username: str, is_online: bool) -> ChatParticipant:
        payload = self._request(
            "PUT",
            "/participants",
            json={"roomId": room_id, "username": username, "isOnline": is_online},
        )
        return ChatParticipant.from_payload(payload["participant"])


class ChatSession:
    """Live, deduplicated view of one chat room."""

    def __init__(
        self,
        room_id: str,
        base_url: str = "",
        api: Optional[ChatAPIClient] = None,
        max_messages: int = MESSAGE_LIMIT,
        client_factory: Optional[Callable[[], Any]] = None,
        timer_factory: Callable[..., Any] = threading.Timer,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.room_id = room_id
        self.base_url = base_url.rstrip("/")
        self.api = api or ChatAPIClient(self.base_url)
        self.max_messages = max_messages
        self._client_factory = client_factory or (lambda: socketio.Client(reconnection=False))
        self._timer_factory = timer_factory
        self._clock = clock

        self._lock = threading.RLock()
        self._state = ChatState()
        self._messages: Dict[str, ChatMessage] = {}
        self._participants: Dict[str, ChatParticipant] = {}
        self._listeners: List[Callable[[ChatState], None]] = []
        self._client: Any = None
        self._reconnect_timer: Any = None
        self._reconnect_attempt = 0
        self._presence_timer: Any = None
        self._pending_presence: Optional[tuple] = None
        self._presence_generation = 0

    # --- state -------------------------------------------------------------

    @property
    def state(self) -> ChatState:
        with self._lock:
            return self._snapshot()

    @property
    def reconnect_attempt(self) -> int:
        return self._reconnect_attempt

    def _snapshot(self) -> ChatState:
        return replace(
            self._state,
            messages=list(self._state.messages),
            participants=list(self._state.participants),
        )

    def add_listener(self, callback: Callable[[ChatState], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(callback)

        def remove() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return remove

    def _update(self, **changes: Any) -> None:
        with self._lock:
            for key, value in changes.items():
                setattr(self._state, key, value)
        self._notify()

    def _notify(self) -> None:
        # Listeners are called with the lock released.
        with self._lock:
            snapshot = self._snapshot()
            listeners = list(self._listeners)
        for callback in listeners:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("chat_listener_failed room_id=%s", self.room_id)

    def _fail(self, code: str, message: str) -> None:
        logger.warning("chat_error room_id=%s code=%s message=%s", self.room_id, code, message)
        self._update(error=ChatError(code, message, self._clock()), is_loading=False)

    def clear_error(self) -> None:
        self._update(error=None)

    # --- merging -----------------------------------------------------------

    def _merge_messages(self, incoming: List[ChatMessage]) -> None:
        with self._lock:
            for message in incoming:
                if message.room_id and message.room_id != self.room_id:
                    continue
                self._messages[message.id] = message
            ordered = sorted(self._messages.values(), key=lambda item: item.sort_key)
            if len(ordered) > self.max_messages:
                ordered = ordered[-self.max_messages:]
                self._messages = {message.id: message for message in ordered}
            self._state.messages = ordered
            self._state.last_message_id = ordered[-1].id if ordered else None
        self._notify()

    def _merge_participants(self, incoming: List[ChatParticipant]) -> None:
        with self._lock:
            for participant in incoming:
                if participant.room_id and participant.room_id != self.room_id:
                    continue
                current = self._participants.get(participant.id)
                if current is not None and parse_timestamp(participant.last_seen) < parse_timestamp(
                    current.last_seen
                ):
                    continue
                self._participants[participant.id] = participant
            ordered = sorted(
                self._participants.values(),
                key=lambda item: (parse_timestamp(item.joined_at), item.id),
            )
            self._state.participants = ordered
        self._notify()

    # --- HTTP operations ---------------------------------------------------

    def fetch_messages(self, limit: Optional[int] = None) -> bool:
        self._update(is_loading=True)
        try:
            messages = self.api.get_messages(self.room_id, limit or self.max_messages)
        except ChatAPIError as error:
            self._fail(FETCH_MESSAGES_FAILED, str(error))
            return False
        self._merge_messages(messages)
        self._update(is_loading=False)
        return True

    def fetch_participants(self) -> bool:
        try:
            participants = self.api.get_participants(self.room_id)
        except ChatAPIError as error:
            self._fail(FETCH_PARTICIPANTS_FAILED, str(error))
            return False
        self._merge_participants(participants)
        return True

    def send_message(
        self,
        username: str,
        message: str,
        message_type: str = "text",
        user_id: Optional[str] = None,
    ) -> Optional[ChatMessage]:
        try:
            sent = self.api.send_message(self.room_id, username, message, message_type, user_id)
        except ChatAPIError as error:
            self._fail(SEND_MESSAGE_FAILED, str(error))
            return None
        self._merge_messages([sent])
        return sent

    def join_room(
        self, username: str, password: Optional[str] = None, user_id: Optional[str] = None
    ) -> Optional[ChatParticipant]:
        try:
            participant = self.api.join_room(self.room_id, username, password, user_id)
        except ChatAPIError as error:
            self._fail(JOIN_ROOM_FAILED, str(error))
            return None
        self._merge_participants([participant])
        return participant

    def update_participant_status(self, username: str, is_online: bool) -> Optional[ChatParticipant]:
        try:
            participant = self.api.update_participant(self.room_id, username, is_online)
        except ChatAPIError as error:
            self._fail(UPDATE_STATUS_FAILED, str(error))
            return None
        self._merge_participants([participant])
        return participant

    def set_presence(self, username: str, is_online: bool) -> None:
        """Debounce presence changes; only the last one in the window is sent."""

        with self._lock:
            if self._state.status == STATUS_CLOSED:
                return
            self._pending_presence = (username, is_online)
            self._presence_generation += 1
            if self._presence_timer is not None:
                self._presence_timer.cancel()
            self._presence_timer = self._timer_factory(
                DEBOUNCE_DELAY, functools.partial(self._flush_presence, self._presence_generation)
            )
            self._presence_timer.daemon = True
            self._presence_timer.start()

    def _flush_presence(self, generation: int) -> None:
        with self._lock:
            # A timer that was cancelled after it began firing must not send.
            if generation != self._presence_generation:
                return
            pending = self._pending_presence
            self._pending_presence = None
            self._presence_timer = None
            if pending is None or self._state.status == STATUS_CLOSED:
                return
        self.update_participant_status(*pending)

    # --- realtime channel --------------------------------------------------

    def start(self) -> None:
        with self._lock:
            if self._state.status not in (STATUS_IDLE, STATUS_CLOSED):
                return
        self._update(status=STATUS_CONNECTING)
        self.fetch_messages()
        self.fetch_participants()
        self._open_channel()

    def _bind(self, client: Any) -> None:
        def is_current() -> bool:
            with self._lock:
                return client is self._client

        def on_connect() -> None:
            if is_current():
                subscription: Dict[str, Any] = {"roomId": self.room_id}
                if self.api.grant:
                    subscription["grant"] = self.api.grant
                client.emit("subscribe", subscription)

        def on_subscribed(data: Any) -> None:
            if not is_current() or not isinstance(data, dict) or data.get("roomId") != self.room_id:
                return
            with self._lock:
                self._reconnect_attempt = 0
            logger.info("chat_subscribed room_id=%s", self.room_id)
            self._update(status=STATUS_SUBSCRIBED, is_connected=True)

        def on_subscription_error(data: Any) -> None:
            if is_current():
                message = data.get("error") if isinstance(data, dict) else None
                self._fail(REALTIME_SETUP_FAILED, message or "Subscription rejected")

        def on_disconnect(*args: Any) -> None:
            if is_current():
                logger.warning("chat_channel_lost room_id=%s", self.room_id)
                self._update(is_connected=False)
                self._schedule_reconnect()

        def on_connect_error(data: Any = None) -> None:
            if is_current():
                self._update(is_connected=False)
                self._schedule_reconnect()

        def on_message(data: Any) -> None:
            if is_current() and isinstance(data, dict) and data.get("id"):
                self._merge_messages([ChatMessage.from_payload(data)])

        def on_participant(data: Any) -> None:
            if is_current() and isinstance(data, dict) and data.get("id"):
                self._merge_participants([ChatParticipant.from_payload(data)])

        client.on("connect", on_connect)
        client.on("disconnect", on_disconnect)
        client.on("connect_error", on_connect_error)
        client.on("subscribed", on_subscribed)
        client.on("subscription_error", on_subscription_error)
        client.on("message_created", on_message)
        client.on("participant_joined", on_participant)
        client.on("participant_updated", on_participant)

    def _open_channel(self) -> bool:
        with self._lock:
            if self._state.status == STATUS_CLOSED:
                return False
            client = self._client_factory()
            self._client = client
        self._bind(client)
        try:
            client.connect(self.base_url)
        except (RealtimeConnectionError, ValueError) as error:
            with self._lock:
                if client is self._client:
                    self._client = None
            self._fail(REALTIME_SETUP_FAILED, str(error))
            self._schedule_reconnect()
            return False
        return True

    def _teardown_channel(self) -> None:
        with self._lock:
            client = self._client
            self._client = None
        if client is None:
            return
        try:
            client.disconnect()
        except Exception:
            logger.debug("chat_channel_disconnect_failed room_id=%s", self.room_id, exc_info=True)

    def _schedule_reconnect(self) -> None:
        with self._lock:
            if self._state.status == STATUS_CLOSED or self._reconnect_timer is not None:
                return
            delay = min(RECONNECT_DELAY * (2 ** self._reconnect_attempt), MAX_RECONNECT_DELAY)
            self._reconnect_attempt += 1
            self._reconnect_timer = self._timer_factory(delay, self._run_scheduled_reconnect)
            self._reconnect_timer.daemon = True
            self._reconnect_timer.start()
        logger.info(
            "chat_reconnect_scheduled room_id=%s attempt=%d delay=%.1f",
            self.room_id, self._reconnect_attempt, delay,
        )
        self._update(status=STATUS_RECONNECTING, is_connected=False)

    def _run_scheduled_reconnect(self) -> None:
        with self._lock:
            self._reconnect_timer = None
        self.reconnect()

    def reconnect(self) -> bool:
        """Rebuild the channel and reconcile state fetched in the meantime."""

        with self._lock:
            if self._state.status == STATUS_CLOSED:
                return False
        self._teardown_channel()
        self._update(status=STATUS_RECONNECTING, is_connected=False)
        try:
            messages = self.api.get_messages(self.room_id, self.max_messages)
            participants = self.api.get_participants(self.room_id)
        except ChatAPIError as error:
            self._fail(RECONNECT_FAILED, str(error))
            self._schedule_reconnect()
            return False
        self._merge_messages(messages)
        self._merge_participants(participants)
        return self._open_channel()

    def close(self) -> None:
        with self._lock:
            timers = [self._reconnect_timer, self._presence_timer]
            self._reconnect_timer = None
            self._presence_timer = None
            self._pending_presence = None
        for timer in timers:
            if timer is not None:
                timer.cancel()
        self._update(status=STATUS_CLOSED, is_connected=False)
        self._teardown_channel()
