"""Completion service client -- direct httpx calls to the Anthropic Messages API.

Turns are passed in as generic (role, content) messages; system-role
turns are lifted into the API's ``system`` field and consecutive
same-role turns are merged so the request alternates user/assistant.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any

import httpx

from colloquy.config import Settings
from colloquy.core.schemas import Role, Turn

logger = logging.getLogger(__name__)

_API_VERSION = "2023-06-01"
_RETRYABLE_STATUS = (429, 500, 529)
_MAX_RETRY_AFTER = 30.0


class CompletionError(RuntimeError):
    """The completion service failed or returned nothing usable."""


@dataclass(frozen=True)
class CompletionProfile:
    """Sampling preset for one kind of call."""

    temperature: float
    max_tokens: int


# Short yes/no style classification
DETERMINISTIC = CompletionProfile(temperature=0.1, max_tokens=10)
# Query / prompt extraction
EXTRACTION = CompletionProfile(temperature=0.3, max_tokens=100)
SUMMARY = CompletionProfile(temperature=0.7, max_tokens=500)
CREATIVE = CompletionProfile(temperature=0.7, max_tokens=1024)


def build_anthropic_headers(settings: Settings) -> dict[str, str]:
    """Build auth headers for Anthropic API calls."""
    headers: dict[str, str] = {"anthropic-version": _API_VERSION}
    api_key = settings.anthropic_auth_token or settings.anthropic_api_key
    if api_key and "sk-ant-oat" in api_key:
        headers["Authorization"] = f"Bearer {api_key}"
        headers["anthropic-beta"] = "oauth-2025-04-20"
    else:
        headers["x-api-key"] = api_key or ""
    return headers


def build_payload(model: str, messages: list[Turn], profile: CompletionProfile) -> dict[str, Any]:
    """Translate turns into a Messages API request body."""
    system_parts: list[str] = []
    api_messages: list[dict[str, str]] = []
    for turn in messages:
        if turn.role == Role.SYSTEM:
            system_parts.append(turn.content)
            continue
        if api_messages and api_messages[-1]["role"] == turn.role.value:
            api_messages[-1]["content"] += "\n\n" + turn.content
        else:
            api_messages.append({"role": turn.role.value, "content": turn.content})

    # The API requires the first message to come from the user
    if api_messages and api_messages[0]["role"] == Role.ASSISTANT.value:
        api_messages.insert(0, {"role": Role.USER.value, "content": "(conversation continues)"})

    payload: dict[str, Any] = {
        "model": model,
        "max_tokens": profile.max_tokens,
        "temperature": profile.temperature,
        "messages": api_messages,
    }
    if system_parts:
        payload["system"] = "\n\n".join(system_parts)
    return payload


class CompletionClient:
    """Async client for the completion service."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Create the pooled httpx client."""
        self._http = httpx.AsyncClient(
            base_url=self._settings.api_base_url,
            headers=build_anthropic_headers(self._settings),
            timeout=httpx.Timeout(
                connect=self._settings.api_timeout_connect,
                read=self._settings.api_timeout_read,
                write=30,
                pool=10,
            ),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    async def complete(self, messages: list[Turn], profile: CompletionProfile = CREATIVE) -> str:
        """Return the text of one completion for ``messages``.

        Retries once on 429/500/529 and on timeouts. Raises
        CompletionError on persistent errors or an empty reply. Reply
        completions are capped at the configured ``max_tokens``.
        """
        if not self._http:
            raise CompletionError("httpx client not initialized -- call start() first")

        if profile == CREATIVE:
            profile = replace(profile, max_tokens=self._settings.max_tokens)
        payload = build_payload(self._settings.model, messages, profile)
        data = await self._post_with_retry(payload)
        text = _extract_text(data.get("content", []))
        if not text:
            raise CompletionError(f"Empty completion (stop_reason={data.get('stop_reason')})")
        return text

    async def _post_with_retry(self, payload: dict[str, Any]) -> dict[str, Any]:
        assert self._http is not None
        last_error: Exception | None = None
        for attempt in range(2):  # initial + 1 retry
            try:
                response = await self._http.post("/v1/messages", json=payload)

                if response.status_code == 200:
                    return response.json()

                try:
                    error_data = response.json()
                    error_type = error_data.get("error", {}).get("type", "unknown")
                    error_msg = error_data.get("error", {}).get("message", "unknown error")
                except ValueError:
                    error_type = "http_error"
                    error_msg = f"HTTP {response.status_code}: {response.text[:500]}"

                if response.status_code in _RETRYABLE_STATUS and attempt == 0:
                    retry_after = min(float(response.headers.get("retry-after", "1")), _MAX_RETRY_AFTER)
                    logger.warning(
                        "API error %d (%s), retrying in %.1fs: %s",
                        response.status_code,
                        error_type,
                        retry_after,
                        error_msg,
                    )
                    await asyncio.sleep(retry_after)
                    continue

                last_error = CompletionError(
                    f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}"
                )
                break

            except httpx.TimeoutException as e:
                last_error = CompletionError(f"API request timed out: {e}")
                if attempt == 0:
                    logger.warning("API timeout, retrying: %s", e)
                    await asyncio.sleep(1)
                    continue
            except httpx.HTTPError as e:
                last_error = CompletionError(f"HTTP error: {e}")
                break  # Don't retry connection errors

        raise last_error or CompletionError("API call failed with unknown error")


def _extract_text(content: list[dict[str, Any]]) -> str:
    """Join the text blocks of a Messages API response."""
    parts = [block.get("text", "") for block in content if block.get("type") == "text"]
    return "".join(parts).strip()
