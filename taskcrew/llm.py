"""Async chat completions through litellm."""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import litellm

litellm.suppress_debug_info = True

Messages = List[Dict[str, Any]]


@dataclass
class LLMResponse:
    content: Optional[str] = None
    usage: Optional[Dict[str, int]] = None

    @property
    def total_tokens(self) -> int:
        return (self.usage or {}).get("total_tokens", 0)

    @classmethod
    def from_completion(cls, response) -> "LLMResponse":
        raw = getattr(response, "usage", None)
        usage = None
        if raw:
            usage = {key: getattr(raw, key, 0) or 0
                     for key in ("prompt_tokens", "completion_tokens", "total_tokens")}
        return cls(content=response.choices[0].message.content, usage=usage)


@dataclass
class LLMAdapter:
    """One model endpoint. Credentials travel with each request, so
    presets pointing at different providers can share a process."""

    model: str
    temperature: float = 0.0
    max_tokens: int = 4096
    api_base: Optional[str] = None
    api_key: Optional[str] = None

    def request(self, messages: Messages, temperature: Optional[float] = None,
                json_mode: bool = False) -> Dict[str, Any]:
        """Keyword arguments for ``litellm.acompletion``."""
        params: Dict[str, Any] = dict(
            model=self.model,
            messages=messages,
            max_tokens=self.max_tokens,
            temperature=self.temperature if temperature is None else temperature,
        )
        extras = {"api_base": self.api_base, "api_key": self.api_key}
        params.update((k, v) for k, v in extras.items() if v)
        if json_mode:
            params["response_format"] = {"type": "json_object"}
        return params

    def describe_failure(self, exc: Exception) -> ConnectionError:
        if isinstance(exc, litellm.exceptions.AuthenticationError):
            reason = "authentication rejected, check the API key"
        elif isinstance(exc, litellm.exceptions.APIConnectionError):
            reason = f"endpoint unreachable ({self.api_base or 'provider default'})"
        else:
            reason = type(exc).__name__
        return ConnectionError(f"{self.model}: {reason}: {exc}")

    async def achat(self, messages: Messages, temperature: Optional[float] = None,
                    json_mode: bool = False) -> LLMResponse:
        try:
            completion = await litellm.acompletion(**self.request(messages, temperature, json_mode))
        except Exception as exc:
            raise self.describe_failure(exc) from exc
        return LLMResponse.from_completion(completion)
