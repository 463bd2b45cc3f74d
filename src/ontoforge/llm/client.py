"""
LLM client for a local Ollama service.

The pipeline only depends on the `generate(prompt, system_prompt) -> text`
contract; tests substitute any object with the same method.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

import requests

from ontoforge.config import LLMConfig
from ontoforge.errors import OntoforgeError, TransientError

logger = logging.getLogger(__name__)


class LLMClient(Protocol):
    """Anything that turns a prompt into text."""

    def generate(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        ...


class OllamaClient:
    """
    Client for a local Ollama LLM service.

    Provides connection checks and JSON-mode generation. Timeouts, dropped
    connections and 5xx responses raise TransientError so the caller's retry
    policy applies.
    """

    def __init__(
        self,
        model: str = "llama3.1:8b",
        base_url: str = "http://localhost:11434",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize Ollama client.

        Args:
            model: Model name
            base_url: Ollama service URL
            timeout: Request timeout in seconds
            session: Optional requests session (connection pooling)
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    @classmethod
    def from_config(cls, config: LLMConfig) -> OllamaClient:
        return cls(model=config.model, base_url=config.base_url, timeout=config.timeout_seconds)

    def is_available(self) -> bool:
        """
        Check if Ollama service is running.

        Returns:
            True if the service answers, False otherwise
        """
        try:
            response = self._session.get(f"{self.base_url}/api/tags", timeout=self.timeout)
            return response.status_code == 200
        except requests.RequestException as e:
            logger.warning(f"Ollama not reachable at {self.base_url}: {e}")
            return False

    def generate(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        """
        Generate a JSON-mode completion.

        Args:
            prompt: User prompt
            system_prompt: Optional system prompt

        Returns:
            Raw response text

        Raises:
            TransientError: On timeout, connection failure or server error
            OntoforgeError: On any other non-200 response
        """
        payload: Dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
        }
        if system_prompt:
            payload["system"] = system_prompt

        try:
            response = self._session.post(
                f"{self.base_url}/api/generate",
                json=payload,
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise TransientError(f"Ollama request timed out after {self.timeout}s") from e
        except requests.ConnectionError as e:
            raise TransientError(f"Ollama connection failed: {e}") from e

        if response.status_code >= 500:
            raise TransientError(f"Ollama server error {response.status_code}")
        if response.status_code != 200:
            raise OntoforgeError(
                f"Ollama request failed with status {response.status_code}: {response.text[:200]}"
            )

        try:
            return response.json().get("response") or ""
        except ValueError as e:
            raise OntoforgeError("Ollama returned a non-JSON envelope") from e
