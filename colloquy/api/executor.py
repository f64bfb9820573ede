"""Action executor: web search (Brave) and image generation (OpenAI).

Uses its own httpx client, separate from the completion client that
carries Anthropic credentials.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from colloquy.config import Settings

logger = logging.getLogger(__name__)

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
OPENAI_IMAGES_URL = "https://api.openai.com/v1/images/generations"

_STYLE_HINTS = {
    "realistic": "photorealistic, natural lighting",
    "cartoon": "cartoon style, bold outlines, flat colors",
    "anime": "anime style illustration",
    "painting": "oil painting, visible brush strokes",
    "sketch": "pencil sketch, monochrome",
    "pixel": "pixel art, 16-bit",
}


class ActionExecutionError(RuntimeError):
    """A search or generation job failed."""


class ActionExecutor:
    """Runs the side-effecting jobs the approval flow gates."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http or httpx.AsyncClient(timeout=httpx.Timeout(connect=10, read=60, write=10, pool=10))

    async def close(self) -> None:
        await self._http.aclose()

    async def run_search(self, query: str) -> str:
        """Search the web and return results formatted for the model."""
        if not self._settings.brave_search_api_key:
            raise ActionExecutionError("BRAVE_SEARCH_API_KEY not configured")

        count = min(self._settings.search_result_count, 10)
        try:
            response = await self._http.get(
                BRAVE_SEARCH_URL,
                params={"q": query, "count": count},
                headers={
                    "Accept": "application/json",
                    "Accept-Encoding": "gzip",
                    "X-Subscription-Token": self._settings.brave_search_api_key,
                },
                timeout=10,
            )
        except httpx.TimeoutException as e:
            raise ActionExecutionError(f"Web search timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ActionExecutionError(f"Could not reach search service: {e}") from e

        if response.status_code != 200:
            raise ActionExecutionError(f"Search failed (HTTP {response.status_code})")

        results = response.json().get("web", {}).get("results", [])[:count]
        if not results:
            return f"No results found for: {query}"

        lines = [f"Search results for: {query}\n"]
        for i, item in enumerate(results, 1):
            lines.append(f"{i}. {item.get('title', '')}")
            lines.append(f"   URL: {item.get('url', '')}")
            lines.append(f"   {item.get('description', '')}\n")
        logger.info("Search for %r returned %d results", query, len(results))
        return "\n".join(lines)

    async def run_generation(self, prompt: str, kind: str = "image", style: str | None = None) -> str:
        """Generate an artifact and return a reference (URL) to it."""
        if kind != "image":
            raise ActionExecutionError(f"Unsupported generation kind: {kind}")
        if not self._settings.openai_api_key:
            raise ActionExecutionError("OPENAI_API_KEY not configured")

        full_prompt = prompt
        hint = _STYLE_HINTS.get((style or "").lower())
        if hint:
            full_prompt = f"{prompt}, {hint}"

        payload: dict[str, Any] = {
            "model": self._settings.image_model,
            "prompt": full_prompt,
            "n": 1,
            "size": self._settings.image_size,
        }
        try:
            response = await self._http.post(
                OPENAI_IMAGES_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self._settings.openai_api_key}"},
                timeout=120,
            )
        except httpx.TimeoutException as e:
            raise ActionExecutionError(f"Image generation timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ActionExecutionError(f"Could not reach image service: {e}") from e

        if response.status_code != 200:
            raise ActionExecutionError(f"Image generation failed (HTTP {response.status_code})")

        data = response.json().get("data") or []
        url = data[0].get("url") if data else None
        if not url:
            raise ActionExecutionError("Image service returned no artifact")
        return url
