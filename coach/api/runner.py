"""Coach runner -- answers a chat turn via the Anthropic Messages API.

Calls the API directly over httpx in streaming mode and manages the tool
use loop internally (no external SDK). Text deltas are relayed as they
arrive; card and call-to-action tools turn into structured events between
stream segments.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from typing import Any
from uuid import UUID

import httpx

from coach.api.models import ApiResponse, CoachEvent, StreamEvent
from coach.api.prompts import AGENT_PROMPTS, COACH_TOOLS
from coach.chat.cards import IgnoredCard, parse_card, split_content
from coach.chat.schemas import MessageDetail
from coach.chat.threads import ThreadManager
from coach.config import Settings

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

MAX_CTA_LENGTH = 80


def _parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse Anthropic SSE event dict into StreamEvent.

    Ping keepalives are skipped. stop_reason arrives in message_delta.delta.
    In-stream errors (HTTP 200 with an error body) become error events.
    """
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error", {})
        return StreamEvent(
            type="error",
            text=f"{error.get('type', 'unknown')}: {error.get('message', '')}",
        )

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        block_index = data.get("index", 0)
        if block.get("type") == "tool_use":
            return StreamEvent(
                type="tool_start",
                tool_name=block.get("name", ""),
                tool_id=block.get("id", ""),
                block_index=block_index,
            )
        return StreamEvent(type="text_block_start", block_index=block_index)

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        if delta.get("type") == "text_delta":
            return StreamEvent(type="text_delta", text=delta.get("text", ""))
        if delta.get("type") == "input_json_delta":
            return StreamEvent(
                type="tool_input_delta",
                text=delta.get("partial_json", ""),
                block_index=data.get("index", 0),
            )
        return None

    if event_type == "content_block_stop":
        return StreamEvent(type="block_stop", block_index=data.get("index", 0))

    if event_type == "message_delta":
        return StreamEvent(
            type="done",
            stop_reason=data.get("delta", {}).get("stop_reason", ""),
        )

    if event_type == "message_stop":
        return StreamEvent(type="message_stop")

    return None


def format_history(messages: list[MessageDetail]) -> list[dict[str, Any]]:
    """Turn stored messages into an Anthropic messages array.

    Card payloads are stripped to their text part. System messages (card
    actions such as "Optimization applied") are folded in as bracketed user
    notes. Consecutive same-role entries are merged and leading assistant
    turns dropped, since the API wants a user turn first.
    """
    formatted: list[dict[str, Any]] = []
    for m in messages:
        if m.role == "assistant":
            role = "assistant"
            text, payload = split_content(m.content)
            if payload is not None:
                card_type = payload.get("type") if isinstance(payload, dict) else None
                text = f"{text}\n[showed {card_type or 'a'} card]".strip()
        elif m.role == "system":
            role = "user"
            text = f"[{m.content}]"
        else:
            role = "user"
            text = m.content
        if not text:
            continue
        if formatted and formatted[-1]["role"] == role:
            formatted[-1]["content"] += f"\n\n{text}"
        else:
            formatted.append({"role": role, "content": text})

    while formatted and formatted[0]["role"] != "user":
        formatted.pop(0)
    return formatted


class CoachRunner:
    """Runs coach turns against the Anthropic Messages API.

    Uses direct httpx calls with an internal tool dispatch loop. The two
    tools never leave the process: show_card validates a card and emits
    it, suggest_next_step emits a call-to-action label.
    """

    def __init__(self, threads: ThreadManager, settings: Settings) -> None:
        self._threads = threads
        self._settings = settings
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings

        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }

        # Explicit auth token uses Bearer; a plain API key uses x-api-key
        api_key = settings.anthropic_api_key or ""
        auth_token = settings.anthropic_auth_token or ""
        if auth_token:
            headers["authorization"] = f"Bearer {auth_token}"
        elif api_key:
            headers["x-api-key"] = api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "coach replies will fail"
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        )

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        logger.info("httpx client initialized (auth: %s)", "Bearer token" if auth_token else "API key")

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    # ------------------------------------------------------------------
    # API calls
    # ------------------------------------------------------------------

    def _build_api_payload(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        """Build Anthropic Messages API request payload.

        Shared by _call_api and _call_api_stream to avoid divergence.
        """
        payload: dict[str, Any] = {
            "model": self._settings.model,
            "max_tokens": self._settings.max_tokens,
            "system": [
                {
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ],
            "messages": messages,
        }
        if tools:
            payload["tools"] = tools
        if stream:
            payload["stream"] = True
        return payload

    async def _call_api(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> ApiResponse:
        """Call Anthropic Messages API with one retry for 429/500/529.

        Raises RuntimeError on persistent errors.
        """
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = self._build_api_payload(system_prompt, messages, tools)

        last_error: Exception | None = None
        for attempt in range(2):
            try:
                response = await self._http.post("/v1/messages", json=payload)

                if response.status_code == 200:
                    data = response.json()
                    return ApiResponse(
                        content=data["content"],
                        stop_reason=data["stop_reason"],
                        usage=data.get("usage"),
                    )

                try:
                    error_data = response.json()
                    error_type = error_data.get("error", {}).get("type", "unknown")
                    error_msg = error_data.get("error", {}).get("message", "unknown error")
                except ValueError:
                    error_type = "http_error"
                    error_msg = f"HTTP {response.status_code}: {response.text[:500]}"

                if response.status_code in (429, 500, 529) and attempt == 0:
                    retry_after = min(float(response.headers.get("retry-after", "1")), 30.0)
                    logger.warning(
                        "API error %d (%s), retrying in %.1fs: %s",
                        response.status_code,
                        error_type,
                        retry_after,
                        error_msg,
                    )
                    await asyncio.sleep(retry_after)
                    continue

                last_error = RuntimeError(
                    f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}"
                )
                break

            except httpx.TimeoutException as e:
                last_error = RuntimeError(f"API request timed out: {e}")
                if attempt == 0:
                    logger.warning("API timeout, retrying: %s", e)
                    await asyncio.sleep(1)
                    continue
            except httpx.HTTPError as e:
                last_error = RuntimeError(f"HTTP error: {e}")
                break  # Don't retry connection errors

        raise last_error or RuntimeError("API call failed with unknown error")

    async def _call_api_stream(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Call Anthropic API with streaming enabled.

        Yields an error event on HTTP errors or in-stream errors. Only
        data: lines are processed.
        """
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = self._build_api_payload(system_prompt, messages, tools, stream=True)

        async with self._http.stream("POST", "/v1/messages", json=payload) as response:
            if response.status_code != 200:
                error_body = await response.aread()
                yield StreamEvent(type="error", text=error_body.decode(errors="replace")[:500])
                return

            async for line in response.aiter_lines():
                if not line.startswith("data: "):
                    continue
                event = _parse_sse_event(json.loads(line[6:]))
                if event:
                    yield event
                    if event.type == "error":
                        return

    # ------------------------------------------------------------------
    # Streaming reply
    # ------------------------------------------------------------------

    async def stream_reply(
        self,
        thread_id: UUID,
        user_id: str,
        agent_type: str = "master",
    ) -> AsyncGenerator[CoachEvent, None]:
        """Answer the latest user message of a thread.

        The user message must already be persisted; history is read back
        from the thread. Yields delta/cta/structured_data events, and a
        single error event (then stops) if the API fails.
        """
        history = await self._threads.get_messages(
            thread_id, user_id, limit=self._settings.history_messages
        )
        messages = format_history(history)
        if not messages:
            yield CoachEvent(type="error", message="Nothing to respond to")
            return

        system_prompt = AGENT_PROMPTS.get(agent_type, AGENT_PROMPTS["master"])
        logger.debug("Thread %s answered by %s agent (%d history messages)", thread_id, agent_type, len(messages))

        for _ in range(self._settings.max_turns):
            text_parts: list[str] = []
            tool_calls: list[dict[str, Any]] = []
            block_accumulators: dict[int, dict[str, Any]] = {}
            stop_reason = ""

            async for event in self._call_api_stream(
                system_prompt=system_prompt,
                messages=messages,
                tools=COACH_TOOLS,
            ):
                if event.type == "error":
                    logger.error("Coach stream error on thread %s: %s", thread_id, event.text)
                    yield CoachEvent(type="error", message=event.text)
                    return

                elif event.type == "text_delta":
                    text_parts.append(event.text)
                    yield CoachEvent(type="delta", content=event.text)

                elif event.type == "tool_start":
                    block_accumulators[event.block_index] = {
                        "id": event.tool_id,
                        "name": event.tool_name,
                        "input_parts": [],
                    }

                elif event.type == "tool_input_delta":
                    acc = block_accumulators.get(event.block_index)
                    if acc:
                        acc["input_parts"].append(event.text)

                elif event.type == "block_stop":
                    acc = block_accumulators.pop(event.block_index, None)
                    if acc:
                        input_json = "".join(acc["input_parts"])
                        try:
                            acc["input"] = json.loads(input_json) if input_json else {}
                        except json.JSONDecodeError:
                            acc["input"] = {}
                        tool_calls.append(acc)

                elif event.type == "done":
                    stop_reason = event.stop_reason

            if stop_reason == "end_turn" or not tool_calls:
                return

            # Assistant message with tool_use content blocks
            content_blocks: list[dict[str, Any]] = []
            if text_parts:
                content_blocks.append({"type": "text", "text": "".join(text_parts)})
            for tc in tool_calls:
                content_blocks.append({
                    "type": "tool_use",
                    "id": tc["id"],
                    "name": tc["name"],
                    "input": tc["input"],
                })
            messages.append({"role": "assistant", "content": content_blocks})

            # All tool results go back in a single user message
            tool_results: list[dict[str, Any]] = []
            for tc in tool_calls:
                coach_event, result_text, is_error = self._run_tool(tc["name"], tc["input"])
                if coach_event:
                    yield coach_event
                tool_results.append({
                    "type": "tool_result",
                    "tool_use_id": tc["id"],
                    "content": result_text,
                    "is_error": is_error,
                })
            messages.append({"role": "user", "content": tool_results})

        # Max turns reached -- one final call without tools
        logger.warning("Coach tool loop reached max_turns=%d", self._settings.max_turns)
        final = await self._call_api(system_prompt=system_prompt, messages=messages, tools=None)
        text = self._extract_text(final.content)
        if text:
            yield CoachEvent(type="delta", content=text)

    def _run_tool(self, name: str, tool_input: dict[str, Any]) -> tuple[CoachEvent | None, str, bool]:
        """Execute a coach tool. Returns (event to relay, result text, is_error)."""
        if name == "show_card":
            card = parse_card(tool_input)
            if isinstance(card, IgnoredCard):
                logger.info("Model produced unusable %s card (%s)", card.type or "untyped", card.reason)
                return None, f"Card rejected ({card.reason}). Check the card type and required fields.", True
            data = card.model_dump(mode="json", by_alias=True, exclude_none=True)
            return CoachEvent(type="structured_data", data=data), "Card shown to the user.", False

        if name == "suggest_next_step":
            label = str(tool_input.get("label") or "").strip()
            if not label:
                return None, "label is required", True
            return CoachEvent(type="cta", label=label[:MAX_CTA_LENGTH]), "Next step offered.", False

        return None, f"Unknown tool: {name}", True

    @staticmethod
    def _extract_text(content_blocks: list[dict[str, Any]]) -> str:
        """Concatenate text blocks from an API response."""
        return "".join(b.get("text", "") for b in content_blocks if b.get("type") == "text")
