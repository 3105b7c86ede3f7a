"""
LLM Client

One completion interface over Anthropic, OpenAI and Google Gemini. The
client satisfies the ``LanguageModel`` protocol through ``complete``; SDK
failures surface as ``TransportError`` so the shared retry policy can act on
them.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .errors import LLMUnavailableError, TransportError

logger = logging.getLogger("knowwhy.common.llm_client")

SUPPORTED_PROVIDERS = ("anthropic", "openai", "google")


class LLMClient:
    """Completion client for the configured provider.

    Construction never raises: a missing key, a missing SDK or an unknown
    provider leaves the client unavailable, and ``complete`` then raises
    ``LLMUnavailableError``.
    """

    def __init__(
        self,
        provider: str = "anthropic",
        model: str = "",
        anthropic_api_key: Optional[str] = None,
        openai_api_key: Optional[str] = None,
        google_api_key: Optional[str] = None,
        max_tokens: int = 2048,
        timeout: float = 60.0,
    ) -> None:
        self.provider = (provider or "anthropic").lower()
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._client: Any = None
        self._gemini_models: Dict[tuple, Any] = {}

        keys = {
            "anthropic": anthropic_api_key,
            "openai": openai_api_key,
            "google": google_api_key,
        }
        if self.provider not in SUPPORTED_PROVIDERS:
            logger.warning("Unsupported LLM provider: %s", self.provider)
            return
        api_key = keys[self.provider]
        if not api_key:
            logger.info("%s API key not provided, LLM client unavailable", self.provider)
            return

        connect = getattr(self, f"_connect_{self.provider}")
        try:
            self._client = connect(api_key)
        except ImportError as e:
            logger.warning("SDK for %s is not installed: %s", self.provider, e)
        except Exception as e:
            logger.warning("Failed to initialize %s client: %s", self.provider, e)

    @classmethod
    def from_config(cls, llm_config) -> "LLMClient":
        """Build a client from an ``LLMConfig`` section."""
        provider = (llm_config.provider or "anthropic").lower()
        return cls(
            provider=provider,
            model=getattr(llm_config, f"{provider}_model", ""),
            anthropic_api_key=llm_config.anthropic_api_key or None,
            openai_api_key=llm_config.openai_api_key or None,
            google_api_key=llm_config.google_api_key or None,
            max_tokens=llm_config.max_tokens,
            timeout=llm_config.timeout,
        )

    # ------------------------------------------------------------------
    # Provider setup
    # ------------------------------------------------------------------

    @staticmethod
    def _connect_anthropic(api_key: str):
        import anthropic

        return anthropic.Anthropic(api_key=api_key)

    @staticmethod
    def _connect_openai(api_key: str):
        from openai import OpenAI

        return OpenAI(api_key=api_key)

    @staticmethod
    def _connect_google(api_key: str):
        import google.generativeai as genai

        genai.configure(api_key=api_key)
        # Gemini binds the system instruction to the model object
        return genai

    @property
    def is_available(self) -> bool:
        return self._client is not None

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def complete(self, prompt: str, model: Optional[str] = None) -> str:
        """Single-prompt completion; SDK errors are raised as ``TransportError``."""
        if not self.is_available:
            raise LLMUnavailableError("LLM client is not available")
        try:
            return self.generate(prompt, model=model)
        except LLMUnavailableError:
            raise
        except Exception as e:
            raise TransportError(f"{self.provider} completion failed: {e}") from e

    def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> str:
        if not self.is_available:
            raise LLMUnavailableError("LLM client is not available")
        send = getattr(self, f"_send_{self.provider}")
        reply = send(
            prompt,
            system,
            model or self.model,
            max_tokens or self.max_tokens,
            timeout or self.timeout,
        )
        return (reply or "").strip()

    def _send_anthropic(self, prompt, system, model, max_tokens, timeout) -> str:
        extra = {"system": system} if system else {}
        response = self._client.messages.create(
            model=model,
            max_tokens=max_tokens,
            messages=[{"role": "user", "content": prompt}],
            timeout=timeout,
            **extra,
        )
        return response.content[0].text

    def _send_openai(self, prompt, system, model, max_tokens, timeout) -> str:
        messages = [{"role": "system", "content": system}] if system else []
        messages.append({"role": "user", "content": prompt})
        response = self._client.chat.completions.create(
            model=model,
            max_tokens=max_tokens,
            messages=messages,
            timeout=timeout,
        )
        return response.choices[0].message.content

    def _send_google(self, prompt, system, model, max_tokens, timeout) -> str:
        key = (model, system or "")
        gemini = self._gemini_models.get(key)
        if gemini is None:
            options = {"model_name": model}
            if system:
                options["system_instruction"] = system
            gemini = self._client.GenerativeModel(**options)
            self._gemini_models[key] = gemini
        response = gemini.generate_content(
            prompt,
            generation_config={"max_output_tokens": max_tokens},
            request_options={"timeout": timeout},
        )
        return response.text
