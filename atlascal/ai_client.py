from __future__ import annotations

import json
import re
from typing import Any

import requests

from atlascal.errors import PlannerUnreachable
from atlascal.models import AIConfig


JSON_BLOCK_PATTERN = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)


def extract_json_object(content: str) -> dict[str, Any] | None:
    """Best-effort parse of a model reply into a JSON object, or None."""
    text = str(content or "").strip()
    if not text:
        return None
    candidates = [text]
    block = JSON_BLOCK_PATTERN.search(text)
    if block:
        candidates.append(block.group(1))
    start = text.find("{")
    end = text.rfind("}")
    if start >= 0 and end > start:
        candidates.append(text[start : end + 1])
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


class OpenAICompatibleClient:
    def __init__(self, config: AIConfig) -> None:
        self.config = config

    def is_configured(self) -> bool:
        return bool(self.config.base_url and self.config.model)

    def _chat_endpoint(self) -> str:
        base = self.config.base_url.rstrip("/")
        if base.endswith("/chat/completions"):
            return base
        return f"{base}/chat/completions"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def complete(self, *, messages: list[dict[str, str]]) -> str:
        """Returns the raw assistant content for a chat completion.

        Raises PlannerUnreachable when the model endpoint cannot be reached
        (503) or answers with an HTTP error (502).
        """
        if not self.is_configured():
            raise PlannerUnreachable("Planning model is not configured.")
        try:
            response = requests.post(
                self._chat_endpoint(),
                headers=self._headers(),
                json={
                    "model": self.config.model,
                    "messages": messages,
                    "temperature": self.config.temperature,
                    "response_format": {"type": "json_object"},
                },
                timeout=self.config.timeout_seconds,
            )
        except requests.Timeout as exc:
            raise PlannerUnreachable(
                f"Planning model timed out after {self.config.timeout_seconds}s."
            ) from exc
        except requests.RequestException as exc:
            raise PlannerUnreachable(f"Unable to reach planning model at {self.config.base_url}.") from exc
        if not response.ok:
            raise PlannerUnreachable(
                f"Planning model returned HTTP {response.status_code}: {response.text[:250]}",
                status_code=502,
            )
        try:
            payload = response.json()
            return str(payload["choices"][0]["message"]["content"] or "")
        except (ValueError, KeyError, IndexError, TypeError):
            return ""

    def generate_plan(self, *, messages: list[dict[str, str]]) -> dict[str, Any] | None:
        return extract_json_object(self.complete(messages=messages))
