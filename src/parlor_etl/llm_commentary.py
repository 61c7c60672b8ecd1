"""parlor_etl.llm_commentary

Optional LLM commentary for score analyses.

The engine's numbers are authoritative.  When a commentator is configured the
analysis is sent to the Anthropic Messages API; a well-formed reply replaces
only the comment text.  Any failure falls back to the engine's own analysis.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import replace
from typing import Any, Protocol

import requests

from parlor_etl.models import ScoreAnalysis, Store

log = logging.getLogger(__name__)

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MODEL = "claude-3-haiku-20240307"
DEFAULT_API_KEY_ENV = "ANTHROPIC_API_KEY"

REQUIRED_FIELDS = (
    "total_score",
    "base_score",
    "event_bonus",
    "machine_popularity",
    "access_score",
    "personal_adjustment",
    "predicted_win_rate",
    "confidence",
    "recommended_machines",
    "play_strategy",
    "comment",
)

REPLY_FORMAT_INSTRUCTION = (
    "Reply with exactly one JSON object inside a ```json fenced block. "
    "It must contain these fields: " + ", ".join(REQUIRED_FIELDS) + ". "
    "Keep the numeric fields as given in the analysis; write the comment in Japanese."
)

_FENCED_JSON = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL)
_BARE_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class LlmUnavailableError(RuntimeError):
    """The LLM could not produce a usable analysis."""


class Commentator(Protocol):
    def comment(self, store: Store, analysis: ScoreAnalysis) -> dict[str, Any]: ...


# ---------------------------------------------------------------------------
# Reply handling
# ---------------------------------------------------------------------------

def parse_llm_reply(text: str) -> dict[str, Any]:
    """Extract the JSON object from a reply (fenced ```json block or bare object)."""
    match = _FENCED_JSON.search(text)
    candidate = match.group(1) if match else None
    if candidate is None:
        bare = _BARE_OBJECT.search(text)
        if bare is None:
            raise LlmUnavailableError("reply contains no JSON object")
        candidate = bare.group(0)
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise LlmUnavailableError(f"reply JSON is malformed: {exc}") from exc
    if not isinstance(data, dict):
        raise LlmUnavailableError("reply JSON is not an object")
    return data


def reply_text(body: Any) -> str:
    """Join the text blocks of a Messages API response body."""
    if not isinstance(body, dict):
        raise LlmUnavailableError(f"response body is {type(body).__name__}, not an object")
    blocks = body.get("content")
    if not isinstance(blocks, list):
        raise LlmUnavailableError("response has no content blocks")
    parts: list[str] = []
    for block in blocks:
        if not isinstance(block, dict) or block.get("type", "text") != "text":
            continue
        text = block.get("text")
        if not isinstance(text, str):
            raise LlmUnavailableError("content block text is not a string")
        parts.append(text)
    return "".join(parts)


def validate_llm_analysis(data: dict[str, Any]) -> None:
    missing = [f for f in REQUIRED_FIELDS if f not in data]
    if missing:
        raise LlmUnavailableError(f"reply is missing fields: {', '.join(missing)}")
    if not isinstance(data["comment"], str) or not data["comment"].strip():
        raise LlmUnavailableError("reply comment is empty")
    if not isinstance(data["recommended_machines"], list):
        raise LlmUnavailableError("reply recommended_machines is not a list")
    if not isinstance(data["play_strategy"], dict):
        raise LlmUnavailableError("reply play_strategy is not an object")


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

class ClaudeCommentator:
    """Anthropic Messages API client.

    ``session`` may be any object with a requests-compatible ``post``; tests
    pass a fake.
    """

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        session: Any = None,
        url: str = ANTHROPIC_URL,
        timeout: float = 30.0,
        max_tokens: int = 2048,
        temperature: float = 0.3,
    ) -> None:
        if not api_key:
            raise LlmUnavailableError("no API key configured")
        self.api_key = api_key
        self.model = model
        self.session = session or requests.Session()
        self.url = url
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature

    @classmethod
    def from_env(cls, env_var: str = DEFAULT_API_KEY_ENV, **kwargs: Any) -> "ClaudeCommentator":
        return cls(os.environ.get(env_var, ""), **kwargs)

    def _request_body(self, store: Store, analysis: ScoreAnalysis) -> dict[str, Any]:
        payload = {
            "store": {
                "store_id": store.store_id,
                "store_name": store.store_name,
                "prefecture": store.prefecture,
                "nearest_station": store.nearest_station,
            },
            "analysis": analysis.to_dict(),
            "required_fields": list(REQUIRED_FIELDS),
        }
        return {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "system": REPLY_FORMAT_INSTRUCTION,
            "messages": [{
                "role": "user",
                "content": json.dumps(payload, ensure_ascii=False, default=str),
            }],
        }

    def comment(self, store: Store, analysis: ScoreAnalysis) -> dict[str, Any]:
        """Return the validated analysis object from the LLM reply."""
        try:
            resp = self.session.post(
                self.url,
                headers={
                    "Content-Type": "application/json",
                    "x-api-key": self.api_key,
                    "anthropic-version": ANTHROPIC_VERSION,
                },
                json=self._request_body(store, analysis),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise LlmUnavailableError(f"request failed: {exc}") from exc
        if resp.status_code != 200:
            raise LlmUnavailableError(f"HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise LlmUnavailableError("response body is not JSON") from exc
        data = parse_llm_reply(reply_text(body))
        validate_llm_analysis(data)
        return data


# ---------------------------------------------------------------------------
# Fallback
# ---------------------------------------------------------------------------

def apply_commentary(
    commentator: Commentator | None,
    store: Store,
    analysis: ScoreAnalysis,
) -> ScoreAnalysis:
    """Attach LLM commentary, or return the engine's analysis unchanged on any failure."""
    if commentator is None:
        return analysis
    try:
        data = commentator.comment(store, analysis)
    except LlmUnavailableError as exc:
        log.warning("LLM commentary unavailable for store %s: %s", store.store_id, exc)
        return analysis
    comment = data.get("comment") if isinstance(data, dict) else None
    if not isinstance(comment, str) or not comment.strip():
        log.warning("LLM commentary for store %s has no usable comment", store.store_id)
        return analysis
    return replace(analysis, comment=comment.strip(), comment_source="llm")
