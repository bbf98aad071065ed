"""
Language-model collaborator.

The agent only depends on the narrow ``chat`` contract below; provider
selection and transport live in ``LiteLLMCollaborator``.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from loguru import logger


def estimate_tokens(text: str) -> int:
    # Heuristic: ~4 chars/token.
    return max(0, int(len(text or "") / 4))


@dataclass
class ChatResult:
    success: bool
    message: str = ""
    error: Optional[str] = None
    tokens_used: Optional[int] = None


class LLMCollaborator(Protocol):
    async def chat(
        self,
        message: str,
        history: Optional[List[Dict[str, str]]] = None,
        system_prompt: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> ChatResult:
        ...


ProviderCall = Callable[[List[Dict[str, str]]], Awaitable[Any]]


def build_messages(
    message: str,
    history: Optional[List[Dict[str, str]]] = None,
    system_prompt: Optional[str] = None,
) -> List[Dict[str, str]]:
    # Stable instructions in system, variable content in user.
    messages: List[Dict[str, str]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt.strip()})
    for turn in history or []:
        role = turn.get("role")
        content = turn.get("content")
        if role in ("user", "assistant", "system") and content:
            messages.append({"role": role, "content": content})
    messages.append({"role": "user", "content": message})
    return messages


async def acompletion_single(
    *,
    model: str,
    messages: List[Dict[str, str]],
    timeout_seconds: float,
    provider_call: Optional[ProviderCall] = None,
    temperature: float = 0.0,
    max_tokens: Optional[int] = None,
) -> Tuple[Any, int]:
    """One completion with latency measurement.

    If provider_call is provided, it is used (for tests); otherwise expects LiteLLM-like call.
    """

    start = time.time()

    if provider_call is None:
        import litellm  # local import for testability

        async def _call() -> Any:
            kwargs: Dict[str, Any] = {"model": model, "messages": messages, "temperature": temperature}
            if max_tokens:
                kwargs["max_tokens"] = max_tokens
            return await litellm.acompletion(**kwargs)

        resp = await asyncio.wait_for(_call(), timeout=timeout_seconds)
    else:
        resp = await asyncio.wait_for(provider_call(messages), timeout=timeout_seconds)

    latency_ms = int((time.time() - start) * 1000)
    return resp, latency_ms


def _response_text(resp: Any) -> str:
    if isinstance(resp, str):
        return resp
    if isinstance(resp, dict):
        choices = resp.get("choices") or []
        if choices:
            return ((choices[0] or {}).get("message") or {}).get("content") or ""
        return str(resp.get("content") or "")
    choices = getattr(resp, "choices", None) or []
    if choices:
        return getattr(choices[0].message, "content", None) or ""
    return ""


def _usage_tokens(resp: Any) -> Optional[int]:
    usage = resp.get("usage") if isinstance(resp, dict) else getattr(resp, "usage", None)
    if usage is None:
        return None
    total = usage.get("total_tokens") if isinstance(usage, dict) else getattr(usage, "total_tokens", None)
    return int(total) if total is not None else None


class LiteLLMCollaborator:
    """
    ``chat`` over LiteLLM with a fallback model chain.

    Errors never raise; they come back as ``ChatResult(success=False)``.
    """

    def __init__(
        self,
        model: str,
        fallback_models: Sequence[str] = (),
        timeout_seconds: float = 120,
        temperature: float = 0.2,
        max_tokens: Optional[int] = 4096,
        provider_call: Optional[ProviderCall] = None,
    ):
        self.model = model
        self.fallback_models = [m for m in fallback_models if m and m != model]
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.provider_call = provider_call

    async def chat(
        self,
        message: str,
        history: Optional[List[Dict[str, str]]] = None,
        system_prompt: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> ChatResult:
        options = options or {}
        messages = build_messages(message, history, system_prompt)
        models = [options.get("model") or self.model] + self.fallback_models
        timeout = float(options.get("timeout_seconds") or self.timeout_seconds)

        last_error = "No model configured"
        for model in models:
            try:
                resp, latency_ms = await acompletion_single(
                    model=model,
                    messages=messages,
                    timeout_seconds=timeout,
                    provider_call=self.provider_call,
                    temperature=float(options.get("temperature", self.temperature)),
                    max_tokens=options.get("max_tokens", self.max_tokens),
                )
            except asyncio.TimeoutError:
                last_error = f"{model} timed out after {timeout}s"
                logger.warning(f"LLM call failed: {last_error}")
                continue
            except Exception as e:
                last_error = f"{model}: {e}"
                logger.warning(f"LLM call failed: {last_error}")
                continue

            text = _response_text(resp)
            if not text.strip():
                last_error = f"{model} returned an empty response"
                logger.warning(f"LLM call failed: {last_error}")
                continue

            tokens = _usage_tokens(resp)
            if tokens is None:
                tokens = estimate_tokens(" ".join(m["content"] for m in messages)) + estimate_tokens(text)

            session_id = (context or {}).get("session_id")
            logger.debug(f"LLM {model} replied in {latency_ms}ms ({tokens} tokens, session {session_id})")
            return ChatResult(success=True, message=text, tokens_used=tokens)

        return ChatResult(success=False, error=last_error)
