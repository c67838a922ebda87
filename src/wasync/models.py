"""
Typed records flowing through the sync pipeline.

Source-side records (``SourceChat``, ``SourceMessage``) are parsed from
UAZAPI JSON payloads.  Destination-side records mirror the Chatwoot rows
the sync creates or references.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

MESSAGE_TYPE_INCOMING = 0
MESSAGE_TYPE_OUTGOING = 1
SENDER_TYPE_CONTACT = "Contact"


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


# ---------------------------------------------------------------------------
# Source (UAZAPI)
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class SourceChat:
    """One entry of ``/chat/find``."""

    id: str
    wa_chatid: str = ""
    wa_chatlid: str = ""
    wa_contact_name: str = ""
    wa_name: str = ""
    name: str = ""
    phone: str = ""
    is_group: bool = False
    last_message_at: int = 0

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SourceChat":
        return cls(
            id=_as_str(payload.get("id")),
            wa_chatid=_as_str(payload.get("wa_chatid")),
            wa_chatlid=_as_str(payload.get("wa_chatlid")),
            wa_contact_name=_as_str(payload.get("wa_contactName")),
            wa_name=_as_str(payload.get("wa_name")),
            name=_as_str(payload.get("name")),
            phone=_as_str(payload.get("phone")),
            is_group=bool(payload.get("wa_isGroup", False)),
            last_message_at=_as_int(payload.get("wa_lastMsgTimestamp")),
        )


@dataclass(slots=True)
class SourceMessage:
    """One entry of ``/message/find``."""

    external_message_id: str
    chat_id: str = ""
    from_me: bool = False
    text: str = ""
    message_type: str = ""
    timestamp: int = 0
    sender_name: str = ""

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SourceMessage":
        return cls(
            external_message_id=_as_str(payload.get("messageid") or payload.get("id")),
            chat_id=_as_str(payload.get("chatid")),
            from_me=bool(payload.get("fromMe", False)),
            text=_as_str(payload.get("text")),
            message_type=_as_str(payload.get("messageType")),
            timestamp=_as_int(payload.get("messageTimestamp")),
            sender_name=_as_str(payload.get("senderName")),
        )


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class ExternalChatIdentity:
    """A distinct external chat, ready to be mapped onto Chatwoot rows.

    ``phone_number`` is already normalized (``+`` prefixed); activity
    timestamps are already epoch seconds.
    """

    phone_number: str
    display_name: str
    first_activity_at: int
    last_activity_at: int


@dataclass(frozen=True, slots=True)
class ConversationRef:
    """Durable Chatwoot keys for one external chat."""

    phone_number: str
    contact_id: int
    conversation_id: int


@dataclass(slots=True)
class NonCriticalOutcome:
    """Result of an enrichment step whose failure must not block the pass."""

    step: str
    ok: bool = True
    affected: int = 0
    error: Optional[str] = None


@dataclass(slots=True)
class ReconciliationResult:
    """Output of :meth:`ContactReconciler.reconcile`.

    ``conversations`` covers every input phone that resolved to a
    conversation, whether through the bulk statement or the repair path.
    """

    conversations: Dict[str, ConversationRef] = field(default_factory=dict)
    repaired: List[str] = field(default_factory=list)
    unresolved: List[str] = field(default_factory=list)
    name_backfill: NonCriticalOutcome = field(
        default_factory=lambda: NonCriticalOutcome(step="name_backfill")
    )


# ---------------------------------------------------------------------------
# Destination (Chatwoot)
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Inbox:
    id: int
    name: str
    channel_type: str


@dataclass(frozen=True, slots=True)
class DestinationUser:
    """Owner of the destination API token; sender of outgoing messages."""

    user_type: str
    user_id: int


@dataclass(slots=True)
class OutgoingMessage:
    """A message row ready for insertion.

    ``timestamp`` is normalized epoch seconds.  ``message_type``,
    ``sender_type`` and ``sender_id`` are written exactly as given.
    """

    content: str
    conversation_id: int
    message_type: int
    sender_type: str
    sender_id: int
    source_id: str
    timestamp: int
