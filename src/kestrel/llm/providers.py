from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from openai import OpenAI

from kestrel.config import Settings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProviderConfig:
    name: str
    base_url: str
    api_key: str
    timeout_sec: int


@dataclass(slots=True)
class Completion:
    content: str
    api_path: str
    raw: dict[str, Any] = field(default_factory=dict)


class LLMProvider:
    def __init__(self, config: ProviderConfig):
        self.config = config
        self.client = OpenAI(
            base_url=config.base_url,
            api_key=config.api_key,
            timeout=float(config.timeout_sec),
        )

    def complete_text(self, *, model: str, prompt: str) -> Completion:
        try:
            return self._complete_via_responses(model=model, prompt=prompt)
        except Exception as exc:
            if not is_missing_endpoint(exc):
                raise
            # local OpenAI-compatible servers usually only implement chat.completions
            logger.info(
                "Responses API unavailable provider=%s base_url=%s; using chat.completions",
                self.config.name,
                self.config.base_url,
            )
            return self._complete_via_chat(model=model, prompt=prompt)

    def complete_json(self, *, model: str, prompt: str, list_key: str | None = None) -> dict[str, Any]:
        return parse_json(self.complete_text(model=model, prompt=prompt).content, list_key=list_key)

    def _complete_via_responses(self, *, model: str, prompt: str) -> Completion:
        response = self.client.responses.create(
            model=model,
            input=[{"role": "user", "content": [{"type": "input_text", "text": prompt}]}],
        )
        return Completion(
            content=getattr(response, "output_text", "") or "",
            api_path="responses",
            raw=_dump(response),
        )

    def _complete_via_chat(self, *, model: str, prompt: str) -> Completion:
        response = self.client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": prompt}],
            temperature=0.1,
        )
        return Completion(content=chat_text(response), api_path="chat_completions", raw=_dump(response))


def _dump(response: Any) -> dict[str, Any]:
    raw = response.model_dump() if hasattr(response, "model_dump") else {}
    return raw if isinstance(raw, dict) else {"raw": raw}


def chat_text(response: Any) -> str:
    choices = getattr(response, "choices", None) or []
    if not choices:
        return ""
    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None) if message is not None else None
    if content is None:
        return ""
    return content if isinstance(content, str) else str(content)


def is_missing_endpoint(exc: Exception) -> bool:
    if getattr(exc, "status_code", None) == 404:
        return True
    message = str(exc).strip().lower()
    return bool(message) and ("not found" in message or "404" in message)


def parse_json(content: str, *, list_key: str | None = None) -> dict[str, Any]:
    """Pull the JSON payload out of a model reply.

    Fenced code blocks are unwrapped. A bare top-level array is wrapped as
    ``{list_key: [...]}`` when ``list_key`` is given.
    """
    candidate = content.strip()
    if not candidate:
        return {}

    if "```" in candidate:
        for part in candidate.split("```"):
            part = part.strip()
            if part.startswith("json"):
                part = part[4:].strip()
            if part[:1] in "{[" and part[-1:] in "}]":
                candidate = part
                break

    try:
        value = json.loads(candidate)
    except json.JSONDecodeError:
        logger.warning("Failed to parse JSON model output")
        return {}

    if isinstance(value, dict):
        return value
    if isinstance(value, list) and list_key:
        return {list_key: value}
    return {}


class ProviderPool:
    def __init__(self, settings: Settings):
        self.settings = settings
        self._providers: dict[str, LLMProvider] = {}

    def get(self, name: str) -> LLMProvider | None:
        if name == "openai" and not self.settings.openai_api_key:
            return None
        if name == "local" and not self.settings.local_llm_enabled:
            return None
        if name not in self._providers:
            self._providers[name] = LLMProvider(self._config_for(name))
        return self._providers[name]

    def model_for(self, name: str, task: str) -> str:
        if name == "local":
            return self.settings.local_llm_model
        if task == "rank":
            return self.settings.openai_model_ranker
        return self.settings.openai_model_analyst

    def _config_for(self, name: str) -> ProviderConfig:
        if name == "openai":
            return ProviderConfig(
                name="openai",
                base_url=self.settings.openai_base_url,
                api_key=self.settings.openai_api_key,
                timeout_sec=self.settings.openai_timeout_sec,
            )
        return ProviderConfig(
            name="local",
            base_url=self.settings.local_llm_base_url,
            api_key=self.settings.local_llm_api_key,
            timeout_sec=self.settings.local_llm_timeout_sec,
        )
