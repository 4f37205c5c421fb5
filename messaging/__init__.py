import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

LOCAL_ID_PREFIX = "local-"

PENDING = "pending"
SENT = "sent"
FAILED = "failed"


def conversation_key(user_a: str, user_b: str) -> tuple[str, str]:
    """Order-independent key for the thread between two users."""
    return tuple(sorted((str(user_a), str(user_b))))


def new_local_id() -> str:
    return LOCAL_ID_PREFIX + uuid.uuid4().hex[:12]


def is_local_id(value: str) -> bool:
    return str(value).startswith(LOCAL_ID_PREFIX)


def parse_timestamp(value) -> datetime:
    """Parse a server ISO timestamp (e.g. '2026-02-18T10:00:00.000Z') into an aware datetime."""
    if isinstance(value, datetime):
        dt = value
    elif value:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    else:
        dt = datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _ref_id(value) -> str | None:
    """Server references arrive either populated ({_id, ...}) or as a bare id."""
    if isinstance(value, dict):
        ref = value.get("_id") or value.get("id")
        return str(ref) if ref else None
    return str(value) if value else None


@dataclass
class User:
    id: str
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    role: str = ""      # "admin" | "user" as reported by the server

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or self.id

    @classmethod
    def from_api(cls, data) -> "User":
        if not isinstance(data, dict):
            return cls(id=str(data))
        return cls(
            id=_ref_id(data) or "",
            first_name=data.get("firstName", ""),
            last_name=data.get("lastName", ""),
            email=data.get("email", ""),
            role=data.get("role", ""),
        )


@dataclass
class Attachment:
    id: str             # local id while pending, server id once persisted
    original_name: str
    mime_type: str      # e.g. "application/pdf", "image/png"
    size_bytes: int
    payload: bytes | Path | None = None

    @classmethod
    def from_api(cls, data: dict) -> "Attachment":
        return cls(
            id=_ref_id(data) or "",
            original_name=data.get("originalName") or data.get("filename", ""),
            mime_type=data.get("mimetype") or data.get("mimeType", ""),
            size_bytes=int(data.get("size") or 0),
        )


@dataclass
class OutgoingFile:
    """A file the user picked for an outgoing message, before it has any id."""
    name: str
    mime_type: str
    size_bytes: int
    payload: bytes | Path

    @classmethod
    def from_path(cls, path: str | Path, mime_type: str | None = None) -> "OutgoingFile":
        import mimetypes
        path = Path(path)
        guessed, _ = mimetypes.guess_type(path.name)
        return cls(
            name=path.name,
            mime_type=mime_type or guessed or "application/octet-stream",
            size_bytes=path.stat().st_size,
            payload=path,
        )

    @classmethod
    def from_bytes(cls, name: str, mime_type: str, data: bytes) -> "OutgoingFile":
        return cls(name=name, mime_type=mime_type, size_bytes=len(data), payload=data)

    def as_pending_attachment(self) -> Attachment:
        return Attachment(
            id=new_local_id(),
            original_name=self.name,
            mime_type=self.mime_type,
            size_bytes=self.size_bytes,
            payload=self.payload,
        )


@dataclass
class PendingMessage:
    local_id: str
    conversation_key: tuple[str, str]
    sender: User
    receiver: User
    content: str
    attachments: list[Attachment] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    delivery_state: str = PENDING   # "pending" | "failed"
    is_read: bool = False

    @property
    def key(self) -> str:
        return self.local_id


@dataclass
class ConfirmedMessage:
    server_id: str
    conversation_key: tuple[str, str]
    sender: User
    receiver: User
    content: str
    attachments: list[Attachment] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_read: bool = False
    delivery_state: str = SENT

    @property
    def key(self) -> str:
        return self.server_id

    @classmethod
    def from_api(cls, data: dict, fallback: PendingMessage | None = None) -> "ConfirmedMessage":
        """Build a confirmed message from a server payload.

        The send endpoint may answer with a sparse record ({id, createdAt});
        sender, receiver and content then come from the pending message it confirms.
        """
        sender = User.from_api(data["sender"]) if data.get("sender") else None
        receiver = User.from_api(data["receiver"]) if data.get("receiver") else None
        if fallback is not None:
            sender = sender or fallback.sender
            receiver = receiver or fallback.receiver
        if sender is None or receiver is None:
            raise ValueError(f"Message {data.get('_id') or data.get('id')} has no sender/receiver")

        if "attachments" in data:
            attachments = [Attachment.from_api(a) for a in data.get("attachments") or []]
        elif fallback is not None:
            attachments = list(fallback.attachments)
        else:
            attachments = []

        content = data.get("content")
        if content is None and fallback is not None:
            content = fallback.content

        return cls(
            server_id=_ref_id(data) or "",
            conversation_key=conversation_key(sender.id, receiver.id),
            sender=sender,
            receiver=receiver,
            content=content or "",
            attachments=attachments,
            created_at=parse_timestamp(data.get("createdAt")),
            is_read=bool(data.get("isRead", False)),
        )


Message = PendingMessage | ConfirmedMessage


@dataclass
class UnreadIndex:
    total: int = 0
    per_user: dict[str, int] = field(default_factory=dict)

    def for_user(self, user_id: str) -> int:
        return self.per_user.get(str(user_id), 0)


@dataclass
class Notification:
    id: str
    type: str           # e.g. "report_rejected", "meeting_created", "new_message"
    title: str
    message: str
    is_read: bool
    created_at: datetime
    related_report: str | None = None
    related_meeting: str | None = None
    related_message: str | None = None

    @classmethod
    def from_api(cls, data: dict) -> "Notification":
        return cls(
            id=_ref_id(data) or "",
            type=data.get("type", ""),
            title=data.get("title", ""),
            message=data.get("message", ""),
            is_read=bool(data.get("isRead", False)),
            created_at=parse_timestamp(data.get("createdAt")),
            related_report=_ref_id(data.get("relatedReport")),
            related_meeting=_ref_id(data.get("relatedMeeting")),
            related_message=_ref_id(data.get("relatedMessage")),
        )


@dataclass
class Snapshot:
    """What the broadcast hands to every subscribed surface after a poll cycle."""
    unread: UnreadIndex
    notifications_unread: int = 0
    notifications: list[Notification] = field(default_factory=list)
