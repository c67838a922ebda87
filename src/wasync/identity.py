"""
Helpers that derive Chatwoot-side identity from UAZAPI records.

Chatwoot's WhatsApp channels key contacts by ``<digits>@s.whatsapp.net``;
the sync uses the same identifier so contacts created here line up with
contacts the live channel creates later.
"""

from __future__ import annotations

import re
from typing import Optional

from wasync.models import SourceChat, SourceMessage

WHATSAPP_IDENTIFIER_SUFFIX = "@s.whatsapp.net"
SOURCE_ID_PREFIX = "WAID:"
DEFAULT_COUNTRY_CODE = "55"
_MIN_NATIONAL_DIGITS = 10
_PHONE_NOISE = re.compile(r"[\s\-()]")


def normalize_phone_number(raw: str) -> Optional[str]:
    """Return ``raw`` as ``+<country><number>``, or ``None`` if unusable.

    Numbers without ``+`` are assumed Brazilian: a leading ``55`` is kept,
    otherwise ``55`` is prepended when at least ten digits remain.

    >>> normalize_phone_number("11987654321")
    '+5511987654321'
    >>> normalize_phone_number("+1 (415) 555-0100")
    '+14155550100'
    """
    phone = _PHONE_NOISE.sub("", raw or "")
    if not phone:
        return None
    if phone.startswith("+"):
        return phone
    if phone.startswith(DEFAULT_COUNTRY_CODE):
        return "+" + phone
    if len(phone) >= _MIN_NATIONAL_DIGITS:
        return "+" + DEFAULT_COUNTRY_CODE + phone
    return None


def build_identifier(phone_number: str) -> str:
    return phone_number.lstrip("+") + WHATSAPP_IDENTIFIER_SUFFIX


def contact_display_name(chat: SourceChat) -> str:
    """Best available name for a chat, falling back to the raw phone."""
    for candidate in (chat.wa_contact_name, chat.wa_name, chat.name):
        if candidate and candidate.strip():
            return candidate.strip()
    return chat.phone


def chat_jid(chat: SourceChat) -> Optional[str]:
    """Chat id accepted by ``/message/find`` (phone JID, else LID)."""
    return chat.wa_chatid or chat.wa_chatlid or None


def source_id_for(external_message_id: str) -> str:
    return f"{SOURCE_ID_PREFIX}{external_message_id}"


def message_content(msg: SourceMessage) -> str:
    """Text body, or the media type label for non-text messages."""
    if msg.text:
        return msg.text
    return msg.message_type
