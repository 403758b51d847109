#!/usr/bin/env python3
"""Model invocation port and the `opencode serve` HTTP adapter.

The engine only depends on `ModelClient.invoke`. `OpencodeModelClient` talks
to a running `opencode serve` process over its HTTP API:
create a session, post one message, read the text parts of the reply.
"""

from __future__ import annotations

import base64
import inspect
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol, Sequence, Union

import httpx

from logging_utils import EventLogger, NullLogger, preview
from team_errors import ModelClientError
from team_models import Usage

if TYPE_CHECKING:
    from agent_tools import AgentTool
    from cancellation import CancelSignal


ApiKeyProvider = Callable[[str], Union[str, None, Awaitable[Union[str, None]]]]

STOP_REASONS = ("stop", "tool_use", "length", "error")


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ModelMessage:
    role: str  # user | assistant | tool
    content: str
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    is_error: bool = False


@dataclass(frozen=True)
class ModelResponse:
    text: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    usage: Usage = field(default_factory=Usage)
    stop_reason: str = "stop"
    error: str | None = None


class ModelClient(Protocol):
    async def invoke(
        self,
        *,
        model: str,
        system_prompt: str,
        messages: Sequence[ModelMessage],
        tools: Sequence["AgentTool"],
        sampling: dict[str, Any],
        api_key: str | None,
        signal: "CancelSignal | None",
    ) -> ModelResponse: ...


async def resolve_api_key(provider_fn: ApiKeyProvider | None, provider: str) -> str | None:
    """Call a sync or async key provider; no provider means no key."""
    if provider_fn is None:
        return None
    value = provider_fn(provider)
    if inspect.isawaitable(value):
        value = await value
    return value or None


def extract_text_parts(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    parts = payload.get("parts")
    if not isinstance(parts, list):
        return ""
    chunks: list[str] = []
    for part in parts:
        if not isinstance(part, dict):
            continue
        text = part.get("text")
        if not isinstance(text, str) or not text.strip():
            continue
        if str(part.get("type") or "") == "text":
            chunks.append(text.strip())
    return "\n".join(chunks).strip()


def extract_usage(payload: Any) -> Usage:
    info = payload.get("info") if isinstance(payload, dict) else None
    if not isinstance(info, dict):
        return Usage()
    tokens = info.get("tokens") if isinstance(info.get("tokens"), dict) else {}
    try:
        return Usage(
            input_tokens=int(tokens.get("input") or 0),
            output_tokens=int(tokens.get("output") or 0) + int(tokens.get("reasoning") or 0),
            cost=float(info.get("cost") or 0.0),
        )
    except (TypeError, ValueError):
        return Usage()


def extract_human_error(raw: str, max_len: int = 280) -> str:
    if not raw:
        return ""
    for pattern in (r"Error:\s*[^\n\r<]+", r"\"message\"\s*:\s*\"([^\"]+)\""):
        match = re.search(pattern, raw, flags=re.IGNORECASE)
        if match:
            token = match.group(match.lastindex or 0)
            return token.strip()[:max_len]
    return re.sub(r"\s+", " ", raw).strip()[:max_len]


def render_transcript(messages: Sequence[ModelMessage]) -> str:
    """Flatten a transcript into one prompt for servers that keep no history for us."""
    if len(messages) == 1 and messages[0].role == "user":
        return messages[0].content
    lines: list[str] = []
    for message in messages:
        if message.role == "tool":
            label = "Tool error" if message.is_error else "Tool result"
            lines.append(f"[{label} {message.tool_call_id or ''}]\n{message.content}")
        else:
            lines.append(f"[{message.role}]\n{message.content}")
    return "\n\n".join(lines)


class OpencodeModelClient:
    """`ModelClient` backed by an `opencode serve` HTTP endpoint.

    The server runs its own tool loop and holds provider credentials, so the
    `tools` and `api_key` arguments are not forwarded and responses never carry
    tool calls. Each invocation gets a fresh session so concurrent agents never
    share history.
    """

    def __init__(
        self,
        base_url: str,
        username: str = "opencode",
        password: str = "",
        timeout: float = 300.0,
        logger: EventLogger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.logger = logger or NullLogger()
        self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    def _auth_headers(self) -> dict[str, str]:
        if not self.password:
            return {}
        token = base64.b64encode(f"{self.username}:{self.password}".encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {token}"}

    async def _post(self, path: str, payload: dict[str, Any]) -> Any:
        try:
            resp = await self.client.post(path, headers=self._auth_headers(), json=payload)
        except httpx.HTTPError as exc:
            self.logger.event("error", "model.http.error", path=path, error=str(exc))
            raise ModelClientError(f"POST {path} failed: {exc}") from exc
        if resp.status_code >= 400:
            decoded = extract_human_error(resp.text)
            self.logger.event(
                "error",
                "model.http.status",
                path=path,
                error_code=f"HTTP_{resp.status_code}",
                error=decoded,
            )
            raise ModelClientError(
                f"POST {path} failed status={resp.status_code}; body={decoded or '<empty>'}",
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise ModelClientError(f"POST {path} returned invalid JSON: {preview(resp.text, 200)}") from exc

    async def create_session(self, title: str) -> str:
        data = await self._post("/session", {"title": title})
        session_id = data.get("id") if isinstance(data, dict) else None
        if not session_id:
            raise ModelClientError(f"/session response has no id: {preview(str(data), 200)}")
        return str(session_id)

    async def invoke(
        self,
        *,
        model: str,
        system_prompt: str,
        messages: Sequence[ModelMessage],
        tools: Sequence["AgentTool"] = (),
        sampling: dict[str, Any] | None = None,
        api_key: str | None = None,
        signal: "CancelSignal | None" = None,
    ) -> ModelResponse:
        if signal is not None:
            signal.raise_if_cancelled()
        session_id = await self.create_session(title=model or "team-agent")
        payload: dict[str, Any] = {"parts": [{"type": "text", "text": render_transcript(messages)}]}
        if system_prompt.strip():
            payload["system"] = system_prompt.strip()
        provider, sep, model_id = model.partition("/")
        if sep:
            payload["model"] = {"providerID": provider, "modelID": model_id}

        self.logger.event("debug", "model.invoke.begin", session_id=session_id, model=model)
        data = await self._post(f"/session/{session_id}/message", payload)
        info = data.get("info") if isinstance(data, dict) else None
        error = info.get("error") if isinstance(info, dict) else None
        usage = extract_usage(data)
        if error:
            details = error.get("data") if isinstance(error, dict) else None
            message = details.get("message") if isinstance(details, dict) else details
            return ModelResponse(
                text=extract_text_parts(data),
                usage=usage,
                stop_reason="error",
                error=str(message or error),
            )
        text = extract_text_parts(data)
        self.logger.event(
            "debug",
            "model.invoke.end",
            session_id=session_id,
            model=model,
            output_preview=preview(text, 120),
        )
        return ModelResponse(text=text, usage=usage, stop_reason="stop")

    async def aclose(self) -> None:
        await self.client.aclose()
