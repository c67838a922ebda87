"""
UAZAPI client — read-only access to the WhatsApp gateway.

Only the two listing endpoints are used:

- ``POST /chat/find``     — chats, paginated by ``limit``/``offset``
  until ``pagination.hasNextPage`` is false.
- ``POST /message/find``  — messages of one chat, paginated by
  ``limit``/``offset`` following ``nextOffset`` while ``hasMore``.

Every request authenticates with the instance token in the ``token``
header.  Failures surface as :class:`wasync.errors.SourceAPIError`.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from wasync.errors import SourceAPIError
from wasync.models import SourceChat, SourceMessage

logger = logging.getLogger("wasync.source_client")

DEFAULT_BASE_URL = "https://free.uazapi.com"
DEFAULT_PAGE_SIZE = 1000
DEFAULT_TIMEOUT_SECONDS = 60.0


class UazapiClient:
    """Async UAZAPI client.

    Args:
        base_url: Instance base URL.
        token: Instance token.
        chat_page_size: ``limit`` sent to ``/chat/find``.
        message_page_size: ``limit`` sent to ``/message/find``.
        timeout_seconds: Per-request timeout.
        http_client: Optional pre-built client (tests inject one backed by
            ``httpx.MockTransport``).  Injected clients are not closed by
            :meth:`aclose`.
    """

    def __init__(
        self,
        *,
        base_url: str,
        token: str,
        chat_page_size: int = DEFAULT_PAGE_SIZE,
        message_page_size: int = DEFAULT_PAGE_SIZE,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self._token = token
        self._chat_page_size = max(1, int(chat_page_size))
        self._message_page_size = max(1, int(message_page_size))
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client
            if http_client is not None
            else httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds, connect=10.0))
        )

    async def __aenter__(self) -> "UazapiClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # Raw endpoints
    # ------------------------------------------------------------------

    async def find_chats(self, *, limit: int, offset: int, is_group: bool) -> Dict[str, Any]:
        """One page of ``/chat/find``, newest activity first."""
        return await self._post(
            "/chat/find",
            {
                "operator": "LIKE",
                "sort": "-wa_lastMsgTimestamp",
                "limit": limit,
                "offset": offset,
                "wa_isGroup": is_group,
            },
        )

    async def find_messages(self, chat_id: str, *, limit: int, offset: int) -> Dict[str, Any]:
        """One page of ``/message/find`` for ``chat_id``."""
        return await self._post(
            "/message/find",
            {"chatid": chat_id, "limit": limit, "offset": offset},
        )

    # ------------------------------------------------------------------
    # Paginated iteration
    # ------------------------------------------------------------------

    async def iter_chats(self, is_group: bool = False) -> AsyncIterator[SourceChat]:
        offset = 0
        while True:
            payload = await self.find_chats(
                limit=self._chat_page_size, offset=offset, is_group=is_group
            )
            items = _list_field(payload, "chats")
            for item in items:
                yield SourceChat.from_payload(item)

            pagination = payload.get("pagination")
            has_next = isinstance(pagination, dict) and bool(pagination.get("hasNextPage"))
            if not has_next or not items:
                break
            offset += len(items)
            logger.debug("Fetched %d chats so far...", offset)

    async def iter_messages(self, chat_id: str) -> AsyncIterator[SourceMessage]:
        offset = 0
        seen = 0
        while True:
            payload = await self.find_messages(
                chat_id, limit=self._message_page_size, offset=offset
            )
            items = _list_field(payload, "messages")
            for item in items:
                yield SourceMessage.from_payload(item)
            seen += len(items)

            if not payload.get("hasMore") or not items:
                break
            next_offset = payload.get("nextOffset")
            if not isinstance(next_offset, int) or next_offset <= offset:
                # Guard against a gateway that repeats the same offset.
                next_offset = offset + len(items)
            offset = next_offset
            logger.debug("Fetched %d messages for chat %s so far...", seen, chat_id)

    async def list_chats(self, is_group: bool = False) -> List[SourceChat]:
        chats = [chat async for chat in self.iter_chats(is_group)]
        logger.info("Fetched %d chats from UAZAPI (is_group=%s)", len(chats), is_group)
        return chats

    async def list_messages(self, chat_id: str) -> List[SourceMessage]:
        return [msg async for msg in self.iter_messages(chat_id)]

    async def has_messages(self, chat_id: str) -> bool:
        """Presence check: a single page of size one."""
        payload = await self.find_messages(chat_id, limit=1, offset=0)
        return bool(_list_field(payload, "messages"))

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._http_client.post(
                f"{self._base_url}{path}",
                json=body,
                headers={
                    "Accept": "application/json",
                    "token": self._token,
                },
            )
        except httpx.HTTPError as exc:
            raise SourceAPIError(status_code=0, message=f"{path}: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise SourceAPIError(
                status_code=response.status_code,
                message=_safe_error_message(response),
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise SourceAPIError(
                status_code=response.status_code,
                message=f"Invalid JSON payload from {path}",
            ) from exc

        if not isinstance(payload, dict):
            raise SourceAPIError(
                status_code=response.status_code,
                message=f"{path} payload must be a JSON object",
            )
        return payload


def _list_field(payload: Dict[str, Any], key: str) -> List[Dict[str, Any]]:
    value = payload.get(key)
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _safe_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        message = payload.get("error") or payload.get("message")
        if isinstance(message, str) and message.strip():
            return " ".join(message.split())[:200]

    text = response.text.strip()
    if text:
        return " ".join(text.split())[:200]
    return "unknown error"
