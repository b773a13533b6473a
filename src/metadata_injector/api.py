"""
Client for an OpenAI-compatible API: credential verification and metadata completions.

Both calls go through a shared ``httpx.AsyncClient`` that carries the base URL and the
bearer credential, so nothing in here ever sees or logs the raw API key.
"""

import time
from typing import Any

import httpx
from loguru import logger
from pydantic import ValidationError

from metadata_injector.config import (
    DEFAULT_API_BASE_URL,
    DEFAULT_MAX_TOKENS,
    DEFAULT_PROMPT,
    DEFAULT_TIMEOUT,
    NON_VISION_MODEL_MARKERS,
    VISION_MODEL_MARKERS,
    VISION_MODEL_PREFIXES,
)
from metadata_injector.errors import CredentialError, ParseError, RequestError
from metadata_injector.models import GeneratedMetadata


def build_client(
    api_key: str,
    *,
    base_url: str = DEFAULT_API_BASE_URL,
    timeout: float = DEFAULT_TIMEOUT,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create the HTTP client used for every call of a session."""
    return httpx.AsyncClient(
        base_url=base_url.rstrip("/") + "/",
        headers={
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
        },
        timeout=timeout,
        transport=transport,
    )


def _service_error_message(response: httpx.Response) -> str | None:
    """
    Extract ``error.message`` from an OpenAI-style error body, if there is one.

    Examples:
        >>> _service_error_message(httpx.Response(401, json={"error": {"message": "Bad key"}}))
        'Bad key'
        >>> _service_error_message(httpx.Response(500, text="oops")) is None
        True

    """
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str) and error:
        return error
    return None


def is_vision_model(model_id: str) -> bool:
    """
    Tell whether a model id looks like a chat model that accepts images.

    Examples:
        >>> is_vision_model("gpt-4o-mini")
        True
        >>> is_vision_model("gpt-4o-realtime-preview")
        False
        >>> is_vision_model("text-embedding-3-small")
        False

    """
    lowered = model_id.lower()
    if any(marker in lowered for marker in NON_VISION_MODEL_MARKERS):
        return False
    return lowered.startswith(VISION_MODEL_PREFIXES) or any(
        marker in lowered for marker in VISION_MODEL_MARKERS
    )


async def fetch_vision_models(client: httpx.AsyncClient) -> list[str]:
    """
    List the models available to the credential and keep the vision-capable ones.

    Returns:
        Sorted model ids.

    Raises:
        CredentialError: The service rejected the key or could not be reached.

    """
    try:
        response = await client.get("models")
    except httpx.HTTPError as exc:
        logger.error("model_listing_error", error=str(exc))
        msg = f"Could not reach the API: {exc}"
        raise CredentialError(msg) from exc

    if response.is_error:
        message = _service_error_message(response) or "Failed to verify API key."
        logger.error("model_listing_failed", status=response.status_code, message=message)
        raise CredentialError(message)

    try:
        listing = response.json()
    except ValueError as exc:
        logger.error("model_listing_invalid_json", error=str(exc))
        msg = "Failed to verify API key."
        raise CredentialError(msg) from exc

    entries = listing.get("data") if isinstance(listing, dict) else None
    if not isinstance(entries, list):
        logger.error("model_listing_unexpected_shape", body_type=type(listing).__name__)
        msg = "Failed to verify API key."
        raise CredentialError(msg)
    models = [
        str(entry["id"])
        for entry in entries
        if isinstance(entry, dict) and "id" in entry
    ]
    vision_models = sorted(model for model in models if is_vision_model(model))
    logger.debug("model_listing_filtered", total=len(models), vision=len(vision_models))
    return vision_models


def build_payload(
    image_uri: str,
    *,
    prompt: str = DEFAULT_PROMPT,
    model: str,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> dict[str, Any]:
    """
    Build the chat-completion body for one image.

    Examples:
        >>> body = build_payload("data:image/png;base64,AA==", prompt="Go", model="gpt-4o")
        >>> body["response_format"]
        {'type': 'json_object'}
        >>> [part["type"] for part in body["messages"][0]["content"]]
        ['text', 'image_url']

    """
    return {
        "model": model,
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": image_uri}},
                ],
            },
        ],
        "max_tokens": max_tokens,
        "response_format": {"type": "json_object"},
    }


def parse_completion(body: Any) -> GeneratedMetadata:  # noqa: ANN401
    """
    Validate the first choice's message content as a GeneratedMetadata JSON object.

    Raises:
        ParseError: The body has no message content, or the content is not valid JSON
            matching ``{title, description, keywords}``.

    """
    try:
        content = body["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        msg = "Could not parse metadata: completion has no message content."
        raise ParseError(msg) from exc
    if not isinstance(content, str):
        msg = "Could not parse metadata: completion has no message content."
        raise ParseError(msg)

    try:
        return GeneratedMetadata.model_validate_json(content)
    except ValidationError as exc:
        first = exc.errors()[0]
        msg = f"Could not parse metadata: {first['msg']}"
        raise ParseError(msg) from exc


async def request_metadata(
    client: httpx.AsyncClient,
    image_uri: str,
    *,
    prompt: str = DEFAULT_PROMPT,
    model: str,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> GeneratedMetadata:
    """
    Generate title, description and keywords for one encoded image.

    Args:
        client: Client created by build_client
        image_uri: Image as a data URI
        prompt: Instruction text sent alongside the image
        model: Vision-capable model id
        max_tokens: Maximum tokens to generate in the response

    Returns:
        The parsed metadata. Field lengths and keyword counts are not checked.

    Raises:
        RequestError: Transport failure or a non-success status from the service.
        ParseError: The service answered but its completion is not the expected JSON.

    """
    payload = build_payload(image_uri, prompt=prompt, model=model, max_tokens=max_tokens)
    logger.info("requesting_metadata", model=model, max_tokens=max_tokens)
    _t0 = time.perf_counter()

    try:
        response = await client.post("chat/completions", json=payload)
    except httpx.HTTPError as exc:
        msg = f"Request failed: {exc}"
        raise RequestError(msg) from exc

    _elapsed = time.perf_counter() - _t0
    if response.is_error:
        message = _service_error_message(response) or (
            f"Request failed with status {response.status_code} {response.reason_phrase}".rstrip()
        )
        logger.warning("metadata_request_failed", status=response.status_code, message=message)
        raise RequestError(message, status_code=response.status_code)

    try:
        body = response.json()
    except ValueError as exc:
        msg = "Could not parse metadata: response body is not JSON."
        raise ParseError(msg) from exc

    metadata = parse_completion(body)
    logger.info("metadata_received", seconds=round(_elapsed, 3), keywords=len(metadata.keywords))
    logger.debug(
        "ai_generated_metadata",
        title=metadata.title,
        description=metadata.description,
        keywords=metadata.keywords,
    )
    return metadata
