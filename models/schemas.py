"""
Core data models for the BotFlow platform.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


DEFAULT_SESSION_TIMEOUT_MS = 300_000


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelType(str, Enum):
    LINE = "line"
    TEAMS = "teams"
    TELEGRAM = "telegram"
    WEB = "web"


class EventKind(str, Enum):
    TEXT = "text"
    ACTION = "action"               # button / postback click
    RAW = "raw"                     # non-text channel payload (image, sticker, file, …)
    LIFECYCLE = "lifecycle"


class LifecycleType(str, Enum):
    FOLLOW = "follow"
    UNFOLLOW = "unfollow"
    START = "start"


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    CHOICE = "choice"               # structured choice (buttons / quick replies)


# ──────────────────────────────────────────────────────────────
#  Session: per-user conversation state
# ──────────────────────────────────────────────────────────────

def session_key(tenant_id: str, user_id: str) -> str:
    return f"{tenant_id}:{user_id}"


class Session(BaseModel):
    """
    Conversation state for one user of one tenant.

    Persisted with camelCase keys:
    {tenantId, userId, dialogState, attributes, createdAt, lastActivity, expiryMs}
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    tenant_id: str
    user_id: str
    dialog_state: str
    attributes: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=_utcnow)
    last_activity: datetime = Field(default_factory=_utcnow)
    expiry_ms: int = DEFAULT_SESSION_TIMEOUT_MS

    @property
    def key(self) -> str:
        return session_key(self.tenant_id, self.user_id)

    @property
    def expires_at(self) -> datetime:
        return self.last_activity + timedelta(milliseconds=self.expiry_ms)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) >= self.expires_at

    def touch(self) -> None:
        self.last_activity = _utcnow()

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Session":
        return cls.model_validate(record)


# ──────────────────────────────────────────────────────────────
#  Dialog Event: normalized inbound event (transient)
# ──────────────────────────────────────────────────────────────

class DialogEvent(BaseModel):
    """
    A channel-agnostic inbound event.

    The payload fields in use depend on ``kind``:
      text       → text (raw holds the channel message when available)
      action     → action + params
      raw        → raw (the verbatim channel message dict)
      lifecycle  → lifecycle
    """
    kind: EventKind
    text: str = ""
    action: str = ""
    params: dict[str, str] = {}
    raw: dict[str, Any] = {}
    lifecycle: Optional[LifecycleType] = None

    @classmethod
    def text_event(cls, text: str, raw: Optional[dict[str, Any]] = None) -> "DialogEvent":
        return cls(kind=EventKind.TEXT, text=text, raw=raw or {})

    @classmethod
    def action_event(cls, action: str, params: Optional[dict[str, str]] = None,
                     raw: Optional[dict[str, Any]] = None) -> "DialogEvent":
        return cls(kind=EventKind.ACTION, action=action, params=params or {}, raw=raw or {})

    @classmethod
    def raw_event(cls, raw: dict[str, Any]) -> "DialogEvent":
        return cls(kind=EventKind.RAW, raw=raw)

    @classmethod
    def lifecycle_event(cls, lifecycle: LifecycleType) -> "DialogEvent":
        return cls(kind=EventKind.LIFECYCLE, lifecycle=lifecycle)

    @property
    def is_unfollow(self) -> bool:
        return self.kind == EventKind.LIFECYCLE and self.lifecycle == LifecycleType.UNFOLLOW

    def forward_payload(self) -> dict[str, Any]:
        """The message object relayed verbatim to a live agent."""
        if self.raw:
            return self.raw
        if self.kind == EventKind.TEXT:
            return {"type": "text", "text": self.text}
        if self.kind == EventKind.ACTION:
            return {"type": "action", "action": self.action, "params": self.params}
        return {"type": self.kind.value}


# ──────────────────────────────────────────────────────────────
#  Outbound messages & dialog response
# ──────────────────────────────────────────────────────────────

class ChoiceOption(BaseModel):
    label: str
    action: str
    params: dict[str, str] = {}
    display_text: str = ""


class OutboundMessage(BaseModel):
    """Channel-agnostic message descriptor; adapters render it."""
    type: MessageType
    text: str = ""
    image_url: str = ""
    preview_url: str = ""
    alt_text: str = ""
    options: list[ChoiceOption] = []

    @classmethod
    def text_message(cls, text: str) -> "OutboundMessage":
        return cls(type=MessageType.TEXT, text=text)

    @classmethod
    def image_message(cls, url: str, preview_url: str = "") -> "OutboundMessage":
        return cls(type=MessageType.IMAGE, image_url=url, preview_url=preview_url or url)

    @classmethod
    def choice_message(cls, text: str, options: list[ChoiceOption],
                       alt_text: str = "") -> "OutboundMessage":
        return cls(type=MessageType.CHOICE, text=text, options=options, alt_text=alt_text or text)


class DialogResponse(BaseModel):
    """What a handler returns: messages, optional transition, optional attribute patch."""
    messages: list[OutboundMessage] = []
    next_state: Optional[str] = None
    attributes: Optional[dict[str, Any]] = None     # shallow-merged into the session
    clear_attributes: bool = False                  # replace attributes with {} instead
    end_session: bool = False                       # delete the session after this turn

    @classmethod
    def say(cls, *texts: str, next_state: Optional[str] = None, **kwargs: Any) -> "DialogResponse":
        return cls(
            messages=[OutboundMessage.text_message(t) for t in texts],
            next_state=next_state,
            **kwargs,
        )


# ──────────────────────────────────────────────────────────────
#  Envelopes & results
# ──────────────────────────────────────────────────────────────

class InboundEnvelope(BaseModel):
    """Channel Adapter → Orchestrator."""
    tenant_id: str
    user_id: str
    channel: ChannelType = ChannelType.WEB
    event: DialogEvent
    display_name_hint: Optional[str] = None
    reply_token: Optional[str] = None


class TurnResult(BaseModel):
    """Outcome of processing one inbound envelope."""
    tenant_id: str
    user_id: str
    messages: list[OutboundMessage] = []
    previous_state: Optional[str] = None
    dialog_state: Optional[str] = None
    live_chat: bool = False
    session_ended: bool = False


class ServiceResult(BaseModel):
    """Uniform result of a backend service call."""
    success: bool
    data: Any = None
    message: str = ""
    status_code: Optional[int] = None


class BridgeResult(BaseModel):
    """Uniform result of a live-chat bridge call."""
    success: bool
    data: Any = None
    error: str = ""
    status_code: Optional[int] = None
