from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import google.generativeai as genai
import openai
from dotenv import load_dotenv
from jinja2 import Environment, FileSystemLoader, Template
from openai import AsyncOpenAI

from manager.telemetry import GenerationContext
from parsing.json_repair import MalformedOutputError, parse_direct

logger = logging.getLogger(__name__)

_DOTENV_LOADED = False

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"


def load_env_once() -> None:
    global _DOTENV_LOADED

    if _DOTENV_LOADED:
        return
    env_path = Path(__file__).resolve().parents[1] / ".env"
    if env_path.exists():
        load_dotenv(dotenv_path=env_path, override=False)
        logger.info("Loaded environment variables from %s", env_path)
    _DOTENV_LOADED = True


def _gemini_key() -> Optional[str]:
    return os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")


class ConfigurationError(RuntimeError):
    """No usable API key for any provider."""


class UpstreamAPIError(RuntimeError):
    """The LLM provider failed; keeps the provider's status code."""

    def __init__(self, message: str, status_code: int = 502, provider: str = "openai") -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.provider = provider


@dataclass
class LLMConfig:
    provider: str = "openai"
    model: str = field(default_factory=lambda: os.getenv("PRESENTATION_MODEL", "gpt-4.1-mini"))
    # Caller-supplied key wins, then PRESENTATION_API_KEY, then OPENAI_API_KEY
    api_key: Optional[str] = field(
        default_factory=lambda: os.getenv("PRESENTATION_API_KEY") or os.getenv("OPENAI_API_KEY")
    )
    fallback_model: str = field(default_factory=lambda: os.getenv("GEMINI_MODEL", "gemini-2.0-flash"))
    timeout: float = 90.0


@dataclass(frozen=True)
class ModelConfig:
    max_tokens: int
    temperature: float
    model: Optional[str] = None


MODEL_CONFIGS: Dict[str, ModelConfig] = {
    "outline": ModelConfig(max_tokens=2500, temperature=0.3),
    "validation": ModelConfig(max_tokens=512, temperature=0.1),
    "analysis": ModelConfig(max_tokens=1024, temperature=0.3),
    "generation": ModelConfig(max_tokens=4096, temperature=0.4),
}


@dataclass
class Completion:
    text: str
    tokens_used: int
    model: str = ""
    provider: str = "openai"


class LLMClient:
    """Completion capability bound to one API key. Built per request."""

    def __init__(self, config: LLMConfig | None = None) -> None:
        load_env_once()
        self.config = config or LLMConfig()
        self._client: AsyncOpenAI | None = None
        if self.config.provider == "openai" and self.config.api_key:
            self._client = AsyncOpenAI(api_key=self.config.api_key, timeout=self.config.timeout, max_retries=0)

    async def complete(self, prompt: str, model_config: ModelConfig) -> Completion:
        if self.config.provider == "gemini":
            return await self._complete_gemini(prompt, model_config)

        if self.config.provider != "openai":
            raise NotImplementedError(f"LLM provider '{self.config.provider}' is not supported.")

        if self._client is None:
            if _gemini_key():
                logger.info("OpenAI key missing. Falling back to Gemini.")
                return await self._complete_gemini(prompt, model_config)
            raise ConfigurationError("API key not configured")

        model = model_config.model or self.config.model
        logger.info("Calling LLM provider=%s model=%s", self.config.provider, model)
        try:
            completion = await self._client.chat.completions.create(
                model=model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=model_config.max_tokens,
                temperature=model_config.temperature,
            )
        except openai.RateLimitError as exc:
            if _gemini_key():
                logger.warning("OpenAI quota/rate limit exceeded: %s. Attempting fallback to Gemini.", exc)
                return await self._complete_gemini(prompt, model_config)
            raise UpstreamAPIError(str(exc), status_code=429) from exc
        except openai.APIStatusError as exc:
            raise UpstreamAPIError(exc.message, status_code=exc.status_code) from exc
        except openai.APITimeoutError as exc:
            raise UpstreamAPIError("LLM request timed out", status_code=504) from exc
        except openai.APIConnectionError as exc:
            raise UpstreamAPIError(f"LLM connection failed: {exc}", status_code=502) from exc

        text = completion.choices[0].message.content or ""
        usage = getattr(completion, "usage", None)
        tokens = usage.total_tokens if usage is not None else model_config.max_tokens
        return Completion(text=text, tokens_used=tokens, model=getattr(completion, "model", model))

    async def _complete_gemini(self, prompt: str, model_config: ModelConfig) -> Completion:
        api_key = _gemini_key()
        if not api_key:
            raise ConfigurationError("No GEMINI_API_KEY or GOOGLE_API_KEY found for fallback.")

        model_name = self.config.fallback_model
        logger.info("Calling LLM provider=gemini model=%s", model_name)

        def _generate() -> Any:
            genai.configure(api_key=api_key, transport="rest")
            model = genai.GenerativeModel(model_name)
            return model.generate_content(
                prompt,
                generation_config={
                    "max_output_tokens": model_config.max_tokens,
                    "temperature": model_config.temperature,
                },
            )

        try:
            response = await asyncio.to_thread(_generate)
            text = response.text
        except Exception as exc:
            raise UpstreamAPIError(f"Gemini generation failed: {exc}", status_code=502, provider="gemini") from exc

        usage = getattr(response, "usage_metadata", None)
        tokens = getattr(usage, "total_token_count", None) or model_config.max_tokens
        return Completion(text=text, tokens_used=tokens, model=model_name, provider="gemini")


class BaseAgent:
    name: str = "base"

    def __init__(self, llm_client: Any | None = None, template_dir: Path | None = None) -> None:
        base_dir = template_dir or TEMPLATE_DIR
        self._template_env = Environment(
            loader=FileSystemLoader(str(base_dir)),
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.llm_client = llm_client or LLMClient()

    async def call_llm(
        self,
        prompt: str,
        model_config: ModelConfig | str = "generation",
        context: GenerationContext | None = None,
    ) -> Completion:
        config = MODEL_CONFIGS[model_config] if isinstance(model_config, str) else model_config
        model_name = config.model or getattr(getattr(self.llm_client, "config", None), "model", "") or ""
        start = time.perf_counter()
        try:
            completion = await self.llm_client.complete(prompt, config)
        except Exception as exc:
            if context is not None:
                context.record_llm_call(
                    self.name,
                    model_name,
                    0,
                    int((time.perf_counter() - start) * 1000),
                    False,
                    prompt_chars=len(prompt),
                    error=str(exc),
                )
            raise
        if context is not None:
            context.record_llm_call(
                self.name,
                completion.model or model_name,
                completion.tokens_used,
                int((time.perf_counter() - start) * 1000),
                True,
                prompt_chars=len(prompt),
            )
        return completion

    def load_template(self, name: str) -> Template:
        return self._template_env.get_template(name)

    def render_prompt(self, name: str, **values: Any) -> str:
        return self.load_template(name).render(**values).strip()

    def validate_json(self, json_data: str | Dict[str, Any]) -> Dict[str, Any]:
        if isinstance(json_data, dict):
            return json_data
        try:
            parsed = parse_direct(json_data)
        except MalformedOutputError:
            logger.debug("Failed to decode LLM JSON. Raw text: %s", (json_data or "")[:500])
            raise ValueError("Invalid JSON returned from LLM") from None
        if not isinstance(parsed, dict):
            raise ValueError("Invalid JSON returned from LLM")
        return parsed
