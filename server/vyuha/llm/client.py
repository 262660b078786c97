from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from json import JSONDecodeError, JSONDecoder
from typing import Any, Protocol

from openai import OpenAI

from vyuha.env import env_bool, env_float, env_int, env_str


LOGGER = logging.getLogger("vyuha.llm.client")


class DecisionOracle(Protocol):
    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ) -> str | None: ...


def strip_code_fences(content: str) -> str:
    normalized = content.strip()
    if "```" not in normalized:
        return normalized
    lines = [line for line in normalized.splitlines() if not line.strip().startswith("```")]
    return "\n".join(lines).strip()


def extract_json_object(content: str | None) -> dict[str, Any] | None:
    if not content:
        return None
    normalized = strip_code_fences(content)
    if not normalized:
        return None

    try:
        parsed = json.loads(normalized)
    except JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    start = normalized.find("{")
    if start < 0:
        return None
    decoder = JSONDecoder()
    try:
        parsed, _idx = decoder.raw_decode(normalized[start:])
    except JSONDecodeError as exc:
        LOGGER.debug(
            "JSON decode failed msg=%r pos=%s len=%s prefix=%r",
            exc.msg,
            exc.pos,
            len(normalized),
            normalized[:180],
        )
        return None
    return parsed if isinstance(parsed, dict) else None


@dataclass
class LLMClient:
    enabled: bool
    base_url: str
    model: str
    api_key: str | None
    timeout_sec: float = 60.0
    max_retries: int = 1
    debug: bool = False
    _sdk_client: OpenAI | None = None

    @classmethod
    def from_env(cls) -> "LLMClient":
        base_url = env_str("LLM_BASE_URL", "https://api.openai.com/v1")
        model = env_str("LLM_MODEL", "gpt-4o")
        api_key = env_str("LLM_API_KEY") or env_str("OPENAI_API_KEY") or None
        enabled = env_bool("LLM_ENABLED", True)

        return cls(
            enabled=enabled and bool(base_url) and bool(model) and bool(api_key),
            base_url=base_url.rstrip("/"),
            model=model,
            api_key=api_key,
            timeout_sec=env_float("LLM_TIMEOUT_SEC", 60.0, 1.0, 300.0),
            max_retries=env_int("LLM_MAX_RETRIES", 1, 0, 5),
            debug=env_bool("LLM_DEBUG", False),
        )

    def _get_sdk_client(self) -> OpenAI:
        if self._sdk_client is None:
            self._sdk_client = OpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout_sec,
                max_retries=self.max_retries,
            )
        return self._sdk_client

    def _debug(self, message: str) -> None:
        if self.debug:
            LOGGER.warning(message)

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float = 0.7,
        max_tokens: int = 1024,
    ) -> str | None:
        if not self.enabled:
            self._debug("LLM client disabled: set LLM_API_KEY and LLM_MODEL to enable")
            return None

        try:
            response = self._get_sdk_client().chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=max(0.0, min(float(temperature), 2.0)),
                max_tokens=max_tokens,
            )
        except Exception as exc:
            LOGGER.warning("LLM chat.completions error type=%s detail=%r", type(exc).__name__, exc)
            return None

        content = self._extract_message_content(response)
        if content is None:
            self._debug("LLM response has no assistant text content")
        else:
            self._debug(f"LLM response prefix={content[:280]!r}")
        return content

    def _extract_message_content(self, response_obj: Any) -> str | None:
        choices = getattr(response_obj, "choices", None)
        if not choices:
            return None
        message = getattr(choices[0], "message", None)
        content = getattr(message, "content", None) if message is not None else None

        if isinstance(content, str):
            trimmed = content.strip()
            return trimmed if trimmed else None

        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                text = item.get("text") if isinstance(item, dict) else getattr(item, "text", None)
                if isinstance(text, str):
                    parts.append(text)
            merged = "".join(parts).strip()
            return merged if merged else None

        return None
