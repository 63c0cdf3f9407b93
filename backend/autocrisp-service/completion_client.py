"""
Text-completion client used by the planner and the task planner.

Supports runtime modes:
- off: disabled, every call raises CompletionError so callers take their fallback
- http: OpenAI-compatible `POST {base_url}/chat/completions`
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

import httpx

from env_loader import load_service_env
from models import ChatMessage, CompletionRequest

logger = logging.getLogger(__name__)

load_service_env()

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL_NAME = "gpt-4o-mini"


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


class CompletionError(RuntimeError):
    """
    Completion service was unavailable or returned no usable text.
    """


class CompletionClient:
    def __init__(
        self,
        mode: Optional[str] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model_name: Optional[str] = None,
    ) -> None:
        self.api_key = (
            api_key
            or os.getenv("AUTOCRISP_COMPLETION_API_KEY")
            or os.getenv("OPENAI_API_KEY")
            or ""
        ).strip()
        default_mode = "http" if self.api_key else "off"
        self.mode = (mode or os.getenv("AUTOCRISP_COMPLETION_MODE", default_mode) or default_mode).strip().lower()
        if self.mode not in {"off", "http"}:
            logger.warning("Unsupported AUTOCRISP_COMPLETION_MODE=%s; defaulting to off.", self.mode)
            self.mode = "off"
        self.base_url = (
            base_url or os.getenv("AUTOCRISP_COMPLETION_BASE_URL", DEFAULT_BASE_URL) or DEFAULT_BASE_URL
        ).strip()
        self.model_name = (
            model_name or os.getenv("AUTOCRISP_MODEL_NAME", DEFAULT_MODEL_NAME) or DEFAULT_MODEL_NAME
        ).strip()
        self.timeout_seconds = max(1.0, _env_float("AUTOCRISP_COMPLETION_TIMEOUT_SECONDS", 30.0))
        if self.mode == "http" and not self.api_key:
            logger.warning(
                "AUTOCRISP_COMPLETION_MODE=http without an API key; requests will likely be rejected."
            )

    @property
    def enabled(self) -> bool:
        return self.mode != "off"

    def build_request(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
    ) -> CompletionRequest:
        return CompletionRequest(
            model=self.model_name,
            messages=[
                ChatMessage(role="system", content=system_prompt),
                ChatMessage(role="user", content=user_prompt),
            ],
            temperature=temperature,
            max_tokens=max_tokens,
            json_mode=json_mode,
        )

    def complete(self, request: CompletionRequest) -> str:
        """
        Sends one chat completion and returns the raw text of the first choice.
        """
        if self.mode == "off":
            raise CompletionError("Completion service is disabled (AUTOCRISP_COMPLETION_MODE=off).")

        url = self.base_url.rstrip("/") + "/chat/completions"
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                resp = client.post(url, json=self._payload(request), headers=self._headers())
                resp.raise_for_status()
                body = resp.json()
        except httpx.HTTPError as exc:
            raise CompletionError(f"Completion request failed: {exc}") from exc
        except ValueError as exc:
            raise CompletionError("Completion response was not a JSON document.") from exc

        content = self._extract_content(body)
        if not content or not content.strip():
            raise CompletionError("Completion response contained no text.")
        return content

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _payload(request: CompletionRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": [m.model_dump() for m in request.messages],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        if request.json_mode:
            payload["response_format"] = {"type": "json_object"}
        return payload

    @staticmethod
    def _extract_content(body: Any) -> Optional[str]:
        if not isinstance(body, dict):
            return None
        choices: List[Any] = body.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return None
        message = choices[0].get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        return content if isinstance(content, str) else None
