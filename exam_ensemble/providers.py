from __future__ import annotations
import asyncio
import base64
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import httpx

from .errors import ErrorKind, backoff_delay, classify_error, describe_error, next_step
from .extraction import extract_answer
from .models import ProviderResult

logger = logging.getLogger(__name__)

GOOGLE_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models"
OPENAI_ENDPOINT = "https://api.openai.com/v1/chat/completions"
ANTHROPIC_ENDPOINT = "https://api.anthropic.com/v1/messages"
OPENROUTER_ENDPOINT = "https://openrouter.ai/api/v1/chat/completions"

# backend -> (environment variables, key file next to the package)
KEY_SOURCES = {
    "google": (("GEMINI_API_KEY", "GOOGLE_API_KEY"), "GoogleAPIKey.txt"),
    "openai": (("OPENAI_API_KEY",), "OpenAIAPIKey.txt"),
    "anthropic": (("ANTHROPIC_API_KEY",), "AnthropicAPIKey.txt"),
    "openrouter": (("OPENROUTER_API_KEY",), "OpenRouterAPIKey.txt"),
}

SAFETY_CATEGORIES = [
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
]


def _load_key(env_vars: tuple, file_name: str) -> str | None:
    """Load API key from the first set environment variable, else from a key file."""
    for env_var in env_vars:
        key = os.environ.get(env_var)
        if key and key.strip():
            return key.strip()

    key_file = Path(__file__).parent.parent / file_name
    if key_file.exists():
        return key_file.read_text().strip() or None

    return None


def load_api_keys() -> dict[str, str]:
    """Collect the keys of every backend that has one configured."""
    keys = {}
    for backend, (env_vars, file_name) in KEY_SOURCES.items():
        key = _load_key(env_vars, file_name)
        if key:
            keys[backend] = key
    return keys


def _is_google_model(model_id: str) -> bool:
    """Check if model should use Google API directly."""
    return model_id.startswith("google/") or model_id.startswith("gemini")


def _is_openai_model(model_id: str) -> bool:
    """Check if model should use OpenAI API directly."""
    return model_id.startswith("openai/") or model_id.startswith("gpt-")


def _is_anthropic_model(model_id: str) -> bool:
    """Check if model should use Anthropic API directly."""
    return model_id.startswith("anthropic/") or model_id.startswith("claude-")


def resolve_backend(provider_id: str, api_keys: dict[str, str]) -> Optional[str]:
    """
    Pick the API that serves a provider id:
    - Google models (google/*, gemini*) -> Google Generative Language API
    - OpenAI models (openai/*, gpt-*) -> OpenAI API
    - Anthropic models (anthropic/*, claude-*) -> Anthropic API
    - Everything else, or a direct key that is missing -> OpenRouter
    Returns None when no usable credential exists.
    """
    if _is_google_model(provider_id) and "google" in api_keys:
        return "google"
    if _is_openai_model(provider_id) and "openai" in api_keys:
        return "openai"
    if _is_anthropic_model(provider_id) and "anthropic" in api_keys:
        return "anthropic"
    if "openrouter" in api_keys:
        return "openrouter"
    return None


def image_mime(data: bytes) -> str:
    """Guess the image MIME type from magic bytes, JPEG if unknown."""
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data.startswith(b"GIF8"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


def _model_name(provider_id: str) -> str:
    """Strip the vendor prefix used by OpenRouter ids."""
    # "google/gemini-2.0-flash-001" -> "gemini-2.0-flash-001"
    return provider_id.split("/")[-1] if "/" in provider_id else provider_id


RequestParts = tuple[str, dict, dict]
ParsedBody = tuple[Optional[str], Optional[dict], Optional[str]]


def _google_request(
    provider_id: str,
    prompt: str,
    image: Optional[bytes],
    api_key: str,
    temperature: float,
    max_tokens: int,
) -> RequestParts:
    """Build URL, headers and body for the Google Generative Language API."""
    parts = [{"text": prompt}]
    if image is not None:
        parts.append({
            "inline_data": {
                "mime_type": image_mime(image),
                "data": base64.b64encode(image).decode("ascii"),
            }
        })
    body = {
        "contents": [{"role": "user", "parts": parts}],
        "generationConfig": {
            "temperature": temperature,
            "maxOutputTokens": max_tokens,
        },
        "safetySettings": [
            {"category": category, "threshold": "BLOCK_NONE"} for category in SAFETY_CATEGORIES
        ],
    }
    url = f"{GOOGLE_ENDPOINT}/{_model_name(provider_id)}:generateContent"
    headers = {"Content-Type": "application/json", "x-goog-api-key": api_key}
    return url, headers, body


def _parse_google(data: dict) -> ParsedBody:
    """Extract text and usage from a generateContent response."""
    candidates = data.get("candidates") or []
    if not candidates:
        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            return None, None, f"SAFETY: prompt blocked ({block_reason})"
        return None, None, "No candidates in response"

    candidate = candidates[0]
    parts = (candidate.get("content") or {}).get("parts") or []
    text = "".join(p.get("text", "") for p in parts)
    if not text.strip():
        if candidate.get("finishReason") == "SAFETY":
            return None, None, "SAFETY: response blocked"
        return None, None, f"Empty response content (finishReason={candidate.get('finishReason')})"

    usage_metadata = data.get("usageMetadata", {})
    usage = {
        "prompt_tokens": usage_metadata.get("promptTokenCount"),
        "completion_tokens": usage_metadata.get("candidatesTokenCount"),
        "total_tokens": usage_metadata.get("totalTokenCount"),
    }
    return text, usage, None


def _chat_messages(prompt: str, image: Optional[bytes]) -> list[dict]:
    """OpenAI-style messages, with the image as a data URL part."""
    if image is None:
        return [{"role": "user", "content": prompt}]
    data_url = f"data:{image_mime(image)};base64,{base64.b64encode(image).decode('ascii')}"
    return [{
        "role": "user",
        "content": [
            {"type": "text", "text": prompt},
            {"type": "image_url", "image_url": {"url": data_url}},
        ],
    }]


def _openai_request(
    provider_id: str,
    prompt: str,
    image: Optional[bytes],
    api_key: str,
    temperature: float,
    max_tokens: int,
) -> RequestParts:
    """Build URL, headers and body for the OpenAI chat completions API."""
    body = {
        "model": _model_name(provider_id),
        "messages": _chat_messages(prompt, image),
        "max_completion_tokens": max_tokens,
        "temperature": temperature,
    }
    headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
    return OPENAI_ENDPOINT, headers, body


def _openrouter_request(
    provider_id: str,
    prompt: str,
    image: Optional[bytes],
    api_key: str,
    temperature: float,
    max_tokens: int,
) -> RequestParts:
    """Build URL, headers and body for OpenRouter."""
    body = {
        "model": provider_id,
        "messages": _chat_messages(prompt, image),
        "max_tokens": max_tokens,
        "temperature": temperature,
        "usage": {"include": True},
    }
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
        "HTTP-Referer": "http://localhost",
        "X-Title": "Exam Ensemble",
    }
    return OPENROUTER_ENDPOINT, headers, body


def _parse_chat(data: dict) -> ParsedBody:
    """Extract text and usage from a chat completions response (OpenAI, OpenRouter)."""
    choices = data.get("choices") or [{}]
    content = (choices[0].get("message") or {}).get("content") or ""
    if isinstance(content, list):
        content = "".join(part.get("text", "") for part in content if isinstance(part, dict))
    if not content.strip():
        if choices[0].get("finish_reason") == "content_filter":
            return None, None, "SAFETY: response blocked (content_filter)"
        return None, None, "Empty response content"

    usage = data.get("usage", {})
    return content, {
        "prompt_tokens": usage.get("prompt_tokens"),
        "completion_tokens": usage.get("completion_tokens"),
        "total_tokens": usage.get("total_tokens"),
    }, None


def _anthropic_request(
    provider_id: str,
    prompt: str,
    image: Optional[bytes],
    api_key: str,
    temperature: float,
    max_tokens: int,
) -> RequestParts:
    """Build URL, headers and body for the Anthropic messages API."""
    content: list[dict] = []
    if image is not None:
        content.append({
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": image_mime(image),
                "data": base64.b64encode(image).decode("ascii"),
            },
        })
    content.append({"type": "text", "text": prompt})
    body = {
        "model": _model_name(provider_id),
        "messages": [{"role": "user", "content": content}],
        "max_tokens": max_tokens,
        "temperature": min(temperature, 1.0),
    }
    headers = {
        "x-api-key": api_key,
        "Content-Type": "application/json",
        "anthropic-version": "2023-06-01",
    }
    return ANTHROPIC_ENDPOINT, headers, body


def _parse_anthropic(data: dict) -> ParsedBody:
    """Extract text and usage from a messages API response."""
    blocks = data.get("content", [])
    text = "".join(block.get("text", "") for block in blocks if block.get("type") == "text")
    if not text.strip():
        return None, None, "Empty response content"

    usage = data.get("usage", {})
    return text, {
        "prompt_tokens": usage.get("input_tokens"),
        "completion_tokens": usage.get("output_tokens"),
        "total_tokens": (usage.get("input_tokens") or 0) + (usage.get("output_tokens") or 0),
    }, None


BACKENDS = {
    "google": (_google_request, _parse_google),
    "openai": (_openai_request, _parse_chat),
    "anthropic": (_anthropic_request, _parse_anthropic),
    "openrouter": (_openrouter_request, _parse_chat),
}


def _now() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


class ProviderClient:
    """
    Sends one prompt (plus optional image) to one provider and returns a
    uniform ProviderResult, retrying transient failures internally.
    """

    def __init__(
        self,
        api_keys: Optional[dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout_s: float = 60.0,
        temperature: float = 0.4,
        max_output_tokens: int = 8192,
        backoff_s: float = 1.0,
        overload_backoff_s: float = 2.0,
        sleep: Callable = asyncio.sleep,
        on_attempt: Optional[Callable[[dict], None]] = None,
    ):
        self.api_keys = load_api_keys() if api_keys is None else dict(api_keys)
        self.timeout_s = timeout_s
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.backoff_s = backoff_s
        self.overload_backoff_s = overload_backoff_s
        self.on_attempt = on_attempt
        self._transport = transport
        self._sleep = sleep

    @classmethod
    def from_config(cls, config, **kwargs) -> "ProviderClient":
        return cls(
            timeout_s=config.timeout_s,
            temperature=config.temperature,
            max_output_tokens=config.max_output_tokens,
            backoff_s=config.backoff_s,
            overload_backoff_s=config.overload_backoff_s,
            **kwargs,
        )

    async def _post(self, backend: str, provider_id: str, api_key: str, prompt: str, image: Optional[bytes]) -> dict:
        """Make one HTTP call and return a result dict (status, text, latency, usage)."""
        build_request, parse_response = BACKENDS[backend]
        url, headers, body = build_request(
            provider_id, prompt, image, api_key, self.temperature, self.max_output_tokens
        )

        start_ms = time.perf_counter() * 1000
        result = {
            "status": "error",
            "response_text": None,
            "latency_ms": 0,
            "http_status": None,
            "error_message": None,
            "usage": None,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
                resp = await client.post(url, headers=headers, json=body)
            result["latency_ms"] = time.perf_counter() * 1000 - start_ms
            result["http_status"] = resp.status_code

            if resp.status_code != 200:
                result["error_message"] = resp.text
                return result

            try:
                text, usage, error = parse_response(resp.json())
            except (ValueError, AttributeError, TypeError) as e:
                # Non-JSON body on a 200, or JSON that is not the expected object shape
                result["error_message"] = f"Empty response or parse failure: {e}"
                return result
            if error:
                result["error_message"] = error
                return result

            result["status"] = "ok"
            result["response_text"] = text
            result["usage"] = usage

        except httpx.TimeoutException:
            result["latency_ms"] = time.perf_counter() * 1000 - start_ms
            result["status"] = "timeout"
            result["error_message"] = f"Request timed out after {self.timeout_s}s"

        except httpx.RequestError as e:
            result["latency_ms"] = time.perf_counter() * 1000 - start_ms
            result["status"] = "network_error"
            result["error_message"] = f"Network error: {e}"

        return result

    @staticmethod
    def _classify(result: dict) -> Optional[ErrorKind]:
        """Error kind of one attempt, or None when it produced a usable answer."""
        if result["status"] == "ok":
            if extract_answer(result["response_text"]).is_empty:
                result["error_message"] = "Empty response or parse failure"
                return ErrorKind.EMPTY_OR_UNPARSEABLE
            return None
        if result["status"] == "timeout":
            return ErrorKind.TIMEOUT
        if result["status"] == "network_error":
            return ErrorKind.NETWORK_ERROR
        return classify_error(result["http_status"], result["error_message"])

    def _emit(self, record: dict) -> None:
        if self.on_attempt:
            self.on_attempt(record)

    async def invoke(
        self,
        provider_id: str,
        prompt: str,
        image: Optional[bytes] = None,
        max_attempts: int = 3,
        stage: str = "worker",
    ) -> ProviderResult:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        backend = resolve_backend(provider_id, self.api_keys)
        if backend is None:
            detail = f"No API key configured for {provider_id}"
            logger.error("%s: %s", provider_id, detail)
            now = _now()
            self._emit(_build_attempt_record(
                stage, provider_id, 0, now, now, 0, "error", None,
                ErrorKind.MISSING_CREDENTIAL, detail, None, None,
            ))
            return ProviderResult(
                provider_id=provider_id,
                succeeded=False,
                error_kind=ErrorKind.MISSING_CREDENTIAL,
                error_detail=detail,
            )

        api_key = self.api_keys[backend]
        start_ms = time.perf_counter() * 1000
        kind: Optional[ErrorKind] = None
        result: dict = {}

        for attempt in range(1, max_attempts + 1):
            started_at = _now()
            result = await self._post(backend, provider_id, api_key, prompt, image)
            kind = self._classify(result)

            self._emit(_build_attempt_record(
                stage, provider_id, attempt, started_at, _now(), result["latency_ms"],
                "ok" if kind is None else "error", result["http_status"], kind,
                result["error_message"], result["response_text"], result["usage"],
            ))

            step = next_step(kind, attempt, max_attempts)
            if step == "success":
                logger.debug("%s answered on attempt %d", provider_id, attempt)
                return ProviderResult(
                    provider_id=provider_id,
                    succeeded=True,
                    raw_text=result["response_text"],
                    attempts=attempt,
                    latency_ms=time.perf_counter() * 1000 - start_ms,
                )
            if step == "stop":
                break

            delay = backoff_delay(kind, attempt, self.backoff_s, self.overload_backoff_s)
            logger.warning(
                "%s: %s -> retry %d/%d in %.1fs",
                provider_id, describe_error(kind), attempt + 1, max_attempts, delay,
            )
            await self._sleep(delay)

        logger.warning("%s failed after %d attempt(s): %s", provider_id, attempt, describe_error(kind))
        return ProviderResult(
            provider_id=provider_id,
            succeeded=False,
            raw_text=result.get("response_text"),
            error_kind=kind,
            error_detail=(result.get("error_message") or "")[:500] or None,
            attempts=attempt,
            latency_ms=time.perf_counter() * 1000 - start_ms,
        )


def _build_attempt_record(
    stage: str,
    provider_id: str,
    attempt: int,
    started_at: str,
    ended_at: str,
    latency_ms: float,
    status: str,
    http_status: Optional[int],
    error_kind: Optional[ErrorKind],
    error_message: Optional[str],
    response_text: Optional[str],
    usage: Optional[dict],
) -> dict:
    """Build one call-log record for a single provider attempt."""
    return {
        "stage": stage,
        "provider_id": provider_id,
        "attempt": attempt,
        "started_at": started_at,
        "ended_at": ended_at,
        "latency_ms": latency_ms,
        "status": status,
        "http_status": http_status,
        "error_kind": error_kind.value if error_kind else None,
        "error_message": error_message,
        "response_text": response_text,
        "usage": usage,
    }
