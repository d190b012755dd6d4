"""
LLM Adapter for Questline.

Unified text-completion interface used by the planner/coach.
Supports: OpenAI-compatible APIs, Ollama (local), and a rule-based placeholder.
"""
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx
import yaml

from core.exceptions import (
    ConfigError,
    LLMAuthError,
    LLMConnectionError,
    LLMError,
    LLMRateLimitError,
    LLMTimeoutError,
)
from core.logger import get_logger
from core.paths import CONFIG_DIR

logger = get_logger("llm_adapter")

MODEL_CONFIG_PATH = CONFIG_DIR / "model.yaml"
LOCAL_MODEL_CONFIG_PATH = CONFIG_DIR / "local_model.yaml"


@dataclass
class LLMResponse:
    """Structured response from LLM."""
    content: str
    model: str
    usage: Optional[Dict[str, int]] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


class LLMProvider(Protocol):
    """Protocol defining the LLM provider interface."""

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 2000
    ) -> LLMResponse:
        ...

    def get_model_name(self) -> str:
        ...


class BaseLLMAdapter(ABC):
    """Base class for LLM adapters."""

    provider = "unknown"

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.model_name = config.get("model_name", "unknown")
        self.timeout_seconds = float(config.get("timeout_seconds", 60.0))

    @abstractmethod
    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 2000
    ) -> LLMResponse:
        """Generate text completion."""

    def get_model_name(self) -> str:
        return self.model_name

    def _post(self, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None):
        """POST with the adapter timeout, mapping transport failures to LLMError subclasses."""
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 401:
                raise LLMAuthError(self.provider, self.model_name, url) from e
            if status == 429:
                retry_after = e.response.headers.get("retry-after")
                raise LLMRateLimitError(
                    self.provider,
                    self.model_name,
                    url,
                    retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
                ) from e
            raise LLMError(
                f"HTTP {status}: {e.response.text[:200]}",
                self.provider,
                self.model_name,
                url,
            ) from e
        except httpx.ConnectError as e:
            raise LLMConnectionError(self.provider, self.model_name, url) from e
        except httpx.TimeoutException as e:
            raise LLMTimeoutError(
                self.provider, self.model_name, url, timeout_seconds=self.timeout_seconds
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise LLMError(f"request failed: {e}", self.provider, self.model_name, url) from e


class OpenAIAdapter(BaseLLMAdapter):
    """Adapter for OpenAI API (also compatible with other OpenAI-compatible APIs)."""

    provider = "openai"

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.api_key = config.get("api_key") or os.environ.get("OPENAI_API_KEY")
        self.base_url = config.get("base_url", "https://api.openai.com/v1")
        self.model_name = config.get("model_name", "gpt-4o-mini")

        if not self.api_key:
            raise ConfigError(
                "OpenAI API key not found. Set OPENAI_API_KEY or add 'api_key' to the profile",
                config_path=str(MODEL_CONFIG_PATH),
            )

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 2000
    ) -> LLMResponse:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        data = self._post(
            f"{self.base_url}/chat/completions",
            {
                "model": self.model_name,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
            },
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError("malformed completion payload", self.provider, self.model_name) from e
        return LLMResponse(
            content=content,
            model=data.get("model", self.model_name),
            usage=data.get("usage"),
        )


class OllamaAdapter(BaseLLMAdapter):
    """Adapter for local Ollama models."""

    provider = "ollama"

    def __init__(self, config: Dict[str, Any]):
        config = {"timeout_seconds": 120.0, **config}
        super().__init__(config)
        self.base_url = config.get("base_url", "http://localhost:11434")
        self.model_name = config.get("model_name", "qwen2.5:7b")

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 2000
    ) -> LLMResponse:
        full_prompt = f"{system_prompt}\n\n{prompt}" if system_prompt else prompt
        data = self._post(
            f"{self.base_url}/api/generate",
            {
                "model": self.model_name,
                "prompt": full_prompt,
                "stream": False,
                "options": {"temperature": temperature, "num_predict": max_tokens},
            },
        )
        return LLMResponse(
            content=data.get("response", ""),
            model=data.get("model", self.model_name),
            usage={
                "prompt_tokens": data.get("prompt_eval_count", 0),
                "completion_tokens": data.get("eval_count", 0),
            },
        )


class RuleBasedAdapter(BaseLLMAdapter):
    """
    Placeholder adapter used when no model is configured.
    Always answers with an error so generation is recorded as degraded, not faked.
    """

    provider = "rule_based"

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.model_name = "rule_based"

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 2000
    ) -> LLMResponse:
        return LLMResponse(
            content="",
            model=self.model_name,
            usage={"prompt_tokens": 0, "completion_tokens": 0},
            error="no LLM profile configured (rule_based mode)",
        )


def load_model_config(profile_name: Optional[str] = None) -> Dict[str, Any]:
    """
    Load model configuration from YAML file.
    Priority: local_model.yaml > model.yaml

    Supports a ``profiles`` mapping with ``active_profile`` and ${ENV_VAR} expansion.
    """
    raw_config: Dict[str, Any] = {}
    for path in (LOCAL_MODEL_CONFIG_PATH, MODEL_CONFIG_PATH):
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    raw_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid model config: {e}", config_path=str(path)) from e
            break

    if "profiles" in raw_config:
        profiles = raw_config["profiles"] or {}
        active_profile = profile_name or raw_config.get("active_profile", "planner")
        if active_profile not in profiles:
            logger.warning(f"Profile '{active_profile}' not found, using rule_based mode")
            return {"provider": "rule_based"}
        return _expand_env_vars(profiles[active_profile])

    if raw_config:
        return _expand_env_vars(raw_config)

    return {"provider": "rule_based"}


def _expand_env_vars(config: Dict[str, Any]) -> Dict[str, Any]:
    """Expand ${VAR} placeholders in config values with environment variables."""
    result: Dict[str, Any] = {}
    pattern = re.compile(r"^\$\{([^}]+)\}$")

    for key, value in config.items():
        if isinstance(value, str):
            match = pattern.match(value)
            if match:
                env_value = os.environ.get(match.group(1))
                if not env_value:
                    raise ConfigError(
                        f"'{key}' refers to unset environment variable {match.group(1)}",
                        config_path=str(LOCAL_MODEL_CONFIG_PATH),
                    )
                result[key] = env_value
            else:
                result[key] = value
        elif isinstance(value, dict):
            result[key] = _expand_env_vars(value)
        else:
            result[key] = value

    return result


def create_llm_adapter(
    config: Optional[Dict[str, Any]] = None,
    profile_name: Optional[str] = None,
) -> BaseLLMAdapter:
    """Factory function to create the adapter for a config dict or profile."""
    if config is None:
        config = load_model_config(profile_name)

    provider = str(config.get("provider", "rule_based")).lower()

    if provider == "openai":
        return OpenAIAdapter(config)
    if provider == "ollama":
        return OllamaAdapter(config)
    if provider == "rule_based":
        return RuleBasedAdapter(config)
    raise ConfigError(f"Unknown LLM provider '{provider}' (profile: {profile_name})")


# Profile name -> adapter instance
_llm_registry: Dict[str, BaseLLMAdapter] = {}


def get_llm(profile_name: str = "planner") -> BaseLLMAdapter:
    """Get or create the cached adapter for a profile."""
    if profile_name not in _llm_registry:
        logger.info(f"Initializing LLM profile: {profile_name}")
        _llm_registry[profile_name] = create_llm_adapter(profile_name=profile_name)
    return _llm_registry[profile_name]


def reset_llm() -> None:
    """Reset the adapter cache (config changes, tests)."""
    _llm_registry.clear()
