import json
import logging
import secrets
import time
from typing import Any, Dict, List, Optional

import httpx

import config
from errors import ServiceError


logger = logging.getLogger("tissue.providers")


class UpstreamError(ServiceError):
    status_code = 502


def _approx_tokens(text: str) -> int:
    # ~4 chars per token; only used for mock responses.
    if not text:
        return 0
    return max(1, (len(text) + 3) // 4)


def require_key(provider: str) -> None:
    keys = {
        "openai": ("OPENAI_API_KEY", config.OPENAI_API_KEY),
        "openrouter": ("OPENROUTER_API_KEY", config.OPENROUTER_API_KEY),
        "gemini": ("GEMINI_API_KEY", config.GEMINI_API_KEY),
    }
    if provider not in keys:
        raise UpstreamError(f"unknown provider: {provider}", status_code=500)
    env_name, value = keys[provider]
    if not value:
        raise UpstreamError(f"{env_name} not configured", status_code=500)


def _error_message(resp: httpx.Response, default: str) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:500] or default
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and isinstance(err.get("message"), str):
            return err["message"]
        if isinstance(err, str) and err:
            return err
    return default


async def _post_json(
    tag: str,
    url: str,
    *,
    headers: Dict[str, str],
    payload: Dict[str, Any],
    default_error: str,
    params: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    try:
        async with httpx.AsyncClient(timeout=config.UPSTREAM_TIMEOUT_SECONDS) as client:
            resp = await client.post(url, headers=headers, json=payload, params=params)
    except httpx.HTTPError as e:
        logger.warning("[%s] request failed: %r", tag, e)
        raise UpstreamError(f"{default_error}: {e.__class__.__name__}")

    if resp.status_code >= 400:
        message = _error_message(resp, default_error)
        logger.warning("[%s] upstream %s: %s", tag, resp.status_code, message)
        raise UpstreamError(message, status_code=resp.status_code)

    try:
        data = resp.json()
    except ValueError:
        raise UpstreamError(f"{default_error}: invalid JSON from upstream")
    if not isinstance(data, dict):
        raise UpstreamError(f"{default_error}: unexpected response shape")
    return data


def _mock_completion(model: str, messages: List[Dict[str, Any]], *, response_format: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    prompt = "\n".join(str(m.get("content") or "") for m in messages)
    last = str(messages[-1].get("content") or "") if messages else ""
    if response_format and response_format.get("type") == "json_schema":
        content = json.dumps(
            {
                "name": "MockAnimation",
                "duration": 1.0,
                "rigType": "R15",
                "loop": False,
                "keyframes": [
                    {"time": 0, "poses": [{"part": "UpperTorso", "rotation": [0, 0, 0]}]},
                    {"time": 1.0, "poses": [{"part": "UpperTorso", "rotation": [0, 15, 0]}]},
                ],
            }
        )
    else:
        content = f"[MOCK:{model}] {last}"
    prompt_tokens = _approx_tokens(prompt)
    completion_tokens = _approx_tokens(content)
    return {
        "id": f"chatcmpl_{secrets.token_hex(12)}",
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [{"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


async def call_openai(
    *,
    model: str,
    messages: List[Dict[str, Any]],
    max_tokens: int,
    temperature: Optional[float] = None,
    response_format: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    if config.MOCK_MODE:
        return _mock_completion(model, messages, response_format=response_format)
    require_key("openai")

    payload: Dict[str, Any] = {"model": model, "messages": messages}
    # gpt-5 family only accepts max_completion_tokens and the default temperature.
    if model.startswith("gpt-5"):
        payload["max_completion_tokens"] = int(max_tokens)
    else:
        payload["max_tokens"] = int(max_tokens)
        if isinstance(temperature, (int, float)):
            payload["temperature"] = float(temperature)
    if response_format:
        payload["response_format"] = response_format

    logger.info("[OpenAI] model=%s max_tokens=%s", model, max_tokens)
    return await _post_json(
        "OpenAI",
        f"{config.OPENAI_BASE_URL}/chat/completions",
        headers={
            "Authorization": f"Bearer {config.OPENAI_API_KEY}",
            "Content-Type": "application/json",
        },
        payload=payload,
        default_error="OpenAI API error",
    )


async def call_openrouter(
    *,
    model: str,
    messages: List[Dict[str, Any]],
    max_tokens: int,
    temperature: Optional[float] = None,
) -> Dict[str, Any]:
    if config.MOCK_MODE:
        return _mock_completion(model, messages)
    require_key("openrouter")

    payload: Dict[str, Any] = {
        "model": model,
        "messages": messages,
        "max_tokens": int(max_tokens),
        "temperature": float(temperature) if isinstance(temperature, (int, float)) else 0.7,
    }
    logger.info("[OpenRouter] model=%s max_tokens=%s", model, max_tokens)
    return await _post_json(
        "OpenRouter",
        f"{config.OPENROUTER_BASE_URL}/chat/completions",
        headers={
            "Authorization": f"Bearer {config.OPENROUTER_API_KEY}",
            "Content-Type": "application/json",
            "HTTP-Referer": config.OPENROUTER_REFERER,
            "X-Title": config.OPENROUTER_TITLE,
        },
        payload=payload,
        default_error="OpenRouter API error",
    )


async def call_gemini(
    *,
    prompt: str,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
) -> Dict[str, Any]:
    temperature = float(temperature) if isinstance(temperature, (int, float)) else 0.8
    max_tokens = int(max_tokens) if isinstance(max_tokens, int) and max_tokens > 0 else 8192

    if config.MOCK_MODE:
        text = f"[MOCK:{config.GEMINI_MODEL}] {prompt}"
        return {
            "candidates": [{"content": {"role": "model", "parts": [{"text": text}]}, "finishReason": "STOP"}],
            "usageMetadata": {
                "promptTokenCount": _approx_tokens(prompt),
                "candidatesTokenCount": _approx_tokens(text),
                "totalTokenCount": _approx_tokens(prompt) + _approx_tokens(text),
            },
            "modelVersion": config.GEMINI_MODEL,
        }
    require_key("gemini")

    payload = {
        "contents": [{"parts": [{"text": prompt}]}],
        "generationConfig": {
            "temperature": temperature,
            "maxOutputTokens": max_tokens,
            "topP": 0.95,
        },
    }
    logger.info("[Gemini] model=%s max_tokens=%s", config.GEMINI_MODEL, max_tokens)
    return await _post_json(
        "Gemini",
        f"{config.GEMINI_BASE_URL}/models/{config.GEMINI_MODEL}:generateContent",
        headers={"Content-Type": "application/json"},
        params={"key": config.GEMINI_API_KEY},
        payload=payload,
        default_error="Gemini API error",
    )


def extract_text(completion: Dict[str, Any]) -> str:
    choices = completion.get("choices")
    if not isinstance(choices, list) or not choices:
        raise UpstreamError("upstream response has no choices")
    c0 = choices[0] if isinstance(choices[0], dict) else {}
    msg = c0.get("message") or {}
    content = msg.get("content")
    if isinstance(content, str):
        return content
    # Refusals and tool calls come back with content=null.
    refusal = msg.get("refusal")
    if isinstance(refusal, str) and refusal:
        raise UpstreamError(f"model refused: {refusal}")
    return ""


def extract_usage(completion: Dict[str, Any]) -> Dict[str, int]:
    usage = completion.get("usage") or {}
    prompt_tokens = int(usage.get("prompt_tokens") or 0)
    completion_tokens = int(usage.get("completion_tokens") or 0)
    total_tokens = int(usage.get("total_tokens") or (prompt_tokens + completion_tokens))
    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": total_tokens,
    }
