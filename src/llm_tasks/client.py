"""OpenAI-compatible chat-completions transport.

``ChatCompletionsClient`` implements the ``LLMClient`` protocol over
``POST {base_url}/chat/completions`` using ``httpx``. It fills request
defaults, extracts text from plain or rich message content, and reports the
choice's ``finish_reason`` on every response. An empty message that stopped
on the output cap raises ``LengthLimitedError`` so callers can classify
truncation without matching on error text.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from llm_tasks.errors import LengthLimitedError, TransportError
from llm_tasks.models import LENGTH_FINISH_REASON, LLMRequest, LLMResponse

logger = logging.getLogger(__name__)

_BODY_PREVIEW = 512
_DETAIL_PREVIEW = 240


def _preview(text: str, limit: int = _BODY_PREVIEW) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "…"


def _flatten_text(value: Any) -> list[str]:
    """Collect text fragments from rich message content.

    Objects are searched for ``text``, then ``content``, then ``value``
    keys before falling back to all nested values.
    """
    if isinstance(value, str):
        stripped = value.strip()
        return [stripped] if stripped else []
    if isinstance(value, list):
        return [fragment for item in value for fragment in _flatten_text(item)]
    if isinstance(value, dict):
        for key in ("text", "content", "value"):
            if key in value:
                return _flatten_text(value[key])
        return [fragment for nested in value.values() for fragment in _flatten_text(nested)]
    return []


def _rich_text(value: Any) -> str:
    return "\n".join(_flatten_text(value)).strip()


def _decode_refusal(refusal: Any) -> str:
    if refusal is None:
        return ""
    if isinstance(refusal, str):
        return refusal.strip()
    text = _rich_text(refusal)
    if text:
        return text
    return _preview(json.dumps(refusal), 200).strip()


def extract_message_content(message: dict[str, Any]) -> str:
    """Extract the assistant text from a chat-completion ``message`` object.

    Args:
        message: The ``choices[0].message`` object.

    Returns:
        The message text (possibly empty).

    Raises:
        TransportError: On a refusal, tool calls, or unsupported content.
    """
    content = message.get("content")
    refusal = _decode_refusal(message.get("refusal"))
    if content is None:
        if refusal:
            msg = f"chat completion refusal: {refusal}"
            raise TransportError(msg)
        return ""
    if isinstance(content, str):
        return content

    text = _rich_text(content)
    if text:
        return text
    if refusal:
        msg = f"chat completion refusal: {refusal}"
        raise TransportError(msg)
    tool_calls = message.get("tool_calls")
    if tool_calls:
        detail = _preview(json.dumps(tool_calls), _DETAIL_PREVIEW)
        msg = f"chat completion produced tool_calls: {detail}"
        raise TransportError(msg)
    detail = _preview(json.dumps(content), _DETAIL_PREVIEW)
    msg = f"unsupported message content: {detail}"
    raise TransportError(msg)


class ChatCompletionsClient:
    """Async client for an OpenAI-compatible chat-completions endpoint.

    Request values of zero (tokens, temperature) or empty (model) fall back
    to the client defaults. A resolved temperature of 0 or 1 is omitted from
    the payload so the server default applies.

    Attributes:
        base_url: Endpoint root, e.g. ``https://api.openai.com/v1``.
        default_model: Model used when the request names none.
        default_temperature: Temperature used when the request sets none.
        default_max_tokens: Output cap used when the request sets none.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        default_model: str,
        default_temperature: float = 0.0,
        default_max_tokens: int = 0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Endpoint root without the ``/chat/completions`` suffix.
            api_key: Bearer token sent with every request.
            default_model: Model used when a request names none.
            default_temperature: Fallback sampling temperature.
            default_max_tokens: Fallback output token cap (0 = server default).
            http_client: Optional preconfigured ``httpx.AsyncClient``; when
                given, the caller owns its lifecycle.
        """
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.default_temperature = default_temperature
        self.default_max_tokens = default_max_tokens
        self._api_key = api_key
        self._owns_http = http_client is None
        self._http = http_client if http_client is not None else httpx.AsyncClient()

    async def __aenter__(self) -> ChatCompletionsClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_http:
            await self._http.aclose()

    def build_payload(self, request: LLMRequest) -> dict[str, Any]:
        """Translate an ``LLMRequest`` into a chat-completions JSON payload."""
        payload: dict[str, Any] = {
            "model": request.model.strip() or self.default_model,
            "messages": [
                {"role": "system", "content": request.system_prompt.strip()},
                {"role": "user", "content": request.user_prompt.strip()},
            ],
        }
        max_tokens = request.max_tokens if request.max_tokens > 0 else self.default_max_tokens
        if max_tokens > 0:
            payload["max_completion_tokens"] = max_tokens

        temperature = (
            request.temperature if request.temperature > 0 else self.default_temperature
        )
        if temperature not in (0, 1):
            payload["temperature"] = temperature

        if request.json_schema is not None:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": request.schema_name,
                    "schema": request.json_schema,
                    "strict": True,
                },
            }
        return payload

    async def chat(self, request: LLMRequest) -> LLMResponse:
        """Send *request* and return the first choice's text and finish reason.

        Args:
            request: The request to send.

        Returns:
            ``LLMResponse`` with stripped text and the choice's finish reason.

        Raises:
            LengthLimitedError: If the message is empty and the finish
                reason is ``length``.
            TransportError: On HTTP, decoding, refusal, or empty-message
                failures.
        """
        payload = self.build_payload(request)
        try:
            response = await self._http.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
            )
        except httpx.HTTPError as exc:
            msg = f"llm request failed: {exc}"
            raise TransportError(msg) from exc

        body = response.text
        body_preview = _preview(body)
        if not response.is_success:
            msg = f"llm http error {response.status_code}: {body_preview}"
            raise TransportError(msg)

        try:
            completion = json.loads(body)
        except json.JSONDecodeError as exc:
            msg = f"decode chat completion: {exc} (body={body_preview})"
            raise TransportError(msg) from exc

        choices = completion.get("choices") if isinstance(completion, dict) else None
        choice = choices[0] if isinstance(choices, list) and choices else None
        if not isinstance(choice, dict):
            msg = (
                "chat completion returned no choices "
                f"(status={response.status_code} body={body_preview})"
            )
            raise TransportError(msg)

        finish_reason = str(choice.get("finish_reason") or "").strip() or None
        message = choice.get("message")
        try:
            content = extract_message_content(message if isinstance(message, dict) else {})
        except TransportError as exc:
            msg = f"chat completion parse error: {exc} (body={body_preview})"
            raise TransportError(msg) from exc

        text = content.strip()
        if not text:
            if (finish_reason or "").lower() == LENGTH_FINISH_REASON:
                msg = (
                    "chat completion returned empty message at output token limit "
                    f"(status={response.status_code} body={body_preview})"
                )
                raise LengthLimitedError(
                    msg,
                    diagnostics={
                        "finish_reason": finish_reason,
                        "max_tokens": payload.get("max_completion_tokens"),
                    },
                )
            msg = (
                "chat completion returned empty message "
                f"(status={response.status_code} body={body_preview})"
            )
            raise TransportError(msg)

        if (finish_reason or "").lower() == LENGTH_FINISH_REASON:
            logger.warning(
                "Response from %s truncated at %s tokens",
                payload["model"],
                payload.get("max_completion_tokens", "default"),
            )
        return LLMResponse(raw_text=text, finish_reason=finish_reason)
