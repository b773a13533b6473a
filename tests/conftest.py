"""Shared fixtures: an in-process fake of the OpenAI-compatible API."""

import base64
import json
from typing import Any

import httpx
import litellm
import pytest

from metadata_injector.api import build_client


def completion_response(content: str, *, model: str = "gpt-4o-mini") -> httpx.Response:
    """Wrap LiteLLM's mock completion text in an OpenAI chat.completion body."""
    response = litellm.mock_completion(
        model=model,
        messages=[{"role": "user", "content": "stub"}],
        mock_response=content,
    )
    text = response.choices[0].message["content"]  # type: ignore[union-attr]
    return httpx.Response(
        200,
        json={
            "id": "chatcmpl-test",
            "object": "chat.completion",
            "model": model,
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": text},
                    "finish_reason": "stop",
                },
            ],
        },
    )


def metadata_json(title: str = "Forest Companions", keywords: list[str] | None = None) -> str:
    return json.dumps(
        {
            "title": title,
            "description": "Two marmosets share a quiet branch in the canopy.",
            "keywords": keywords if keywords is not None else ["Animal", "Forest", "Primate"],
        },
    )


class FakeOpenAI:
    """Records every request and answers completions from a FIFO of canned responses."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.models_status = 200
        self.models_payload: dict[str, Any] = {
            "data": [
                {"id": "whisper-1"},
                {"id": "gpt-4o-mini"},
                {"id": "gpt-4o"},
                {"id": "text-embedding-3-small"},
            ],
        }
        self.completions: list[httpx.Response] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/models"):
            return httpx.Response(self.models_status, json=self.models_payload)
        if request.url.path.endswith("/chat/completions"):
            if not self.completions:
                return completion_response(metadata_json())
            return self.completions.pop(0)
        return httpx.Response(404, json={"error": {"message": "not found"}})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self, api_key: str = "sk-test") -> httpx.AsyncClient:
        return build_client(api_key, base_url="https://api.test/v1", transport=self.transport)

    def completion_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/chat/completions")]

    def sent_images(self) -> list[bytes]:
        """Decode the image bytes of each completion request, in send order."""
        images: list[bytes] = []
        for request in self.completion_requests():
            body: dict[str, Any] = json.loads(request.content)
            url = body["messages"][0]["content"][1]["image_url"]["url"]
            images.append(base64.b64decode(url.split(";base64,", 1)[1]))
        return images


@pytest.fixture
def fake_api() -> FakeOpenAI:
    return FakeOpenAI()
