"""
Chat client abstraction.

Sends the conversation history to the streaming chat-completion service and
exposes the reply as it arrives. The service answers with a line protocol
(``0:"text"`` for text deltas, ``3:"message"`` for errors) and reports the
conversation identity in the ``X-Conversation-Id`` response header.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, AsyncIterator, Callable

import httpx
from pydantic import BaseModel, ConfigDict, Field

from vbot_voice.config import get_settings
from vbot_voice.errors import ChatError

logger = logging.getLogger(__name__)

CONVERSATION_ID_HEADER = "X-Conversation-Id"


class Role(str, Enum):
    """Role of the speaker in a conversation turn."""

    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    """A message in a conversation."""

    model_config = ConfigDict(frozen=True)

    role: Role = Field(..., description="Role of the speaker (user, assistant)")
    content: str = Field(..., description="Message content")


class ChatReply(BaseModel):
    """A fully received chat reply."""

    text: str = Field(..., description="Aggregated reply text")
    conversation_id: str | None = Field(default=None, description="Conversation identity reported by the service")
    deltas: int = Field(default=0, description="Number of streamed fragments")


def parse_stream_line(line: str) -> str | None:
    """
    Decode one line of the chat stream.

    Args:
        line: A single line without its trailing newline.

    Returns:
        The text delta carried by the line, or None for non-text lines.

    Raises:
        ChatError: If the line is an error part.
    """
    line = line.strip()
    if line.startswith("0:"):
        try:
            value = json.loads(line[2:])
        except ValueError:
            return None
        return value if isinstance(value, str) else None
    if line.startswith("3:"):
        try:
            detail = json.loads(line[2:])
        except ValueError:
            detail = line[2:]
        raise ChatError(f"Chat error: {detail}")
    return None


class ChatStream:
    """
    One streamed chat reply.

    Use as an async context manager, then iterate for text deltas. ``text`` is
    the aggregate so far; ``done`` becomes true only once the body is exhausted.
    """

    def __init__(self, client: httpx.AsyncClient, url: str, payload: dict[str, Any]) -> None:
        self._client = client
        self._url = url
        self._payload = payload
        self._cm = None
        self._response: httpx.Response | None = None
        self._parts: list[str] = []
        self._done = False
        self._started = 0.0
        self.conversation_id: str | None = None

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def done(self) -> bool:
        return self._done

    @property
    def deltas(self) -> int:
        return len(self._parts)

    async def __aenter__(self) -> "ChatStream":
        self._started = time.perf_counter()
        self._cm = self._client.stream("POST", self._url, json=self._payload)
        try:
            response = await self._cm.__aenter__()
        except httpx.TimeoutException as e:
            raise ChatError("Chat request timed out") from e
        except httpx.HTTPError as e:
            raise ChatError(f"Chat request failed: {e}") from e

        if response.status_code >= 400:
            try:
                body = (await response.aread()).decode("utf-8", errors="replace")
            finally:
                await self._cm.__aexit__(None, None, None)
            raise ChatError(f"Chat error: {response.status_code} - {body[:200]}", status_code=response.status_code)

        self._response = response
        self.conversation_id = response.headers.get(CONVERSATION_ID_HEADER) or None
        logger.debug(
            f"[VOICE][CHAT] headers after {time.perf_counter() - self._started:.2f}s conversation={self.conversation_id}"
        )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        if self._cm is not None:
            await self._cm.__aexit__(exc_type, exc, tb)
            self._cm = None

    def __aiter__(self) -> AsyncIterator[str]:
        return self._deltas()

    async def _deltas(self) -> AsyncIterator[str]:
        if self._response is None:
            raise ChatError("Chat stream used outside its context")
        buffer = ""
        first_at: float | None = None
        try:
            async for piece in self._response.aiter_text():
                if first_at is None:
                    first_at = time.perf_counter() - self._started
                buffer += piece
                *lines, buffer = buffer.split("\n")
                for line in lines:
                    delta = parse_stream_line(line)
                    if delta:
                        self._parts.append(delta)
                        yield delta
            if buffer:
                delta = parse_stream_line(buffer)
                if delta:
                    self._parts.append(delta)
                    yield delta
        except httpx.TimeoutException as e:
            raise ChatError("Chat stream timed out") from e
        except httpx.HTTPError as e:
            raise ChatError(f"Chat stream failed: {e}") from e

        self._done = True
        total = time.perf_counter() - self._started
        logger.info(
            f"[VOICE][CHAT] stream complete deltas={len(self._parts)} chars={len(self.text)} "
            f"first={first_at or 0.0:.2f}s dur={total:.2f}s"
        )


class ChatClientBase(ABC):
    """Abstract base class for chat clients."""

    @abstractmethod
    def stream(self, messages: list[Message], conversation_id: str | None = None) -> ChatStream:
        """
        Open a streamed reply for ``messages``.

        Args:
            messages: Conversation history, oldest first, ending with the user turn.
            conversation_id: Identity of the conversation, if one exists yet.

        Returns:
            A ChatStream to be entered with ``async with``.
        """
        ...

    async def complete(
        self,
        messages: list[Message],
        conversation_id: str | None = None,
        on_delta: Callable[[str], None] | None = None,
    ) -> ChatReply:
        """
        Drive a stream to completion.

        Args:
            messages: Conversation history.
            conversation_id: Existing conversation identity, if any.
            on_delta: Called with the aggregate text after each fragment.

        Returns:
            The final aggregated reply. Never returned before the stream ends.
        """
        async with self.stream(messages, conversation_id) as chat:
            async for _ in chat:
                if on_delta is not None:
                    on_delta(chat.text)
            return ChatReply(
                text=chat.text,
                conversation_id=chat.conversation_id or conversation_id,
                deltas=chat.deltas,
            )

    async def close(self) -> None:
        """Close the client and release resources."""
        pass


class ChatClient(ChatClientBase):
    """HTTP client for the streaming chat-completion service."""

    def __init__(
        self,
        url: str | None = None,
        *,
        auth_token: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize the chat client.

        Args:
            url: Chat endpoint (uses config if not provided).
            auth_token: Bearer token (uses config if not provided).
            timeout: Request timeout in seconds (uses config if not provided).
            client: Pre-built HTTP client, mainly for tests.
        """
        settings = get_settings()
        self._url = url or settings.chat_url
        self._auth_token = auth_token if auth_token is not None else settings.auth_token
        self._timeout = timeout or settings.chat_timeout
        self._client = client
        self._owns_client = client is None

    @property
    def url(self) -> str:
        return self._url

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self._auth_token:
                headers["Authorization"] = f"Bearer {self._auth_token}"
            self._client = httpx.AsyncClient(timeout=self._timeout, headers=headers)
        return self._client

    def stream(self, messages: list[Message], conversation_id: str | None = None) -> ChatStream:
        payload = {
            "messages": [m.model_dump(mode="json") for m in messages],
            "conversationId": conversation_id,
        }
        last = messages[-1].content if messages else ""
        logger.info(f"[VOICE][CHAT] request messages={len(messages)} last=\"{last[:50]}\"")
        return ChatStream(self._get_client(), self._url, payload)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
