"""Builders shared by the test modules."""

import io
from typing import Dict, Iterable, List, Optional

import httpx
from PIL import Image

from aquaforum.config import Settings


def jpeg_bytes(size=(64, 48), color=(20, 120, 200)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="JPEG")
    return buf.getvalue()


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        UPLOAD_DIR=str(tmp_path / "uploads"),
        REDIS_URL="",
        JOBS_BACKEND="inline",
        MEDIA_SERVICE_PROVIDER="local",
        MEDIA_RETRY_DELAY=0,
        LLM_BASE_URL="http://llm.test",
        LLM_PROVIDER="openai",
        LLM_MODEL_ID="llava-1.5-7b-4096",
        LLM_MAX_RETRIES=2,
        LLM_RETRY_DELAY=0,
        QUEUE_RETRY_ATTEMPTS=3,
        QUEUE_RETRY_DELAY=0,
        VISION_JOB_TIMEOUT=5,
        VISION_MAX_TAGS=15,
        VISION_MIN_CONFIDENCE=0.5,
    )
    values.update(overrides)
    return Settings(**values)


class FakeLLM:
    """httpx.MockTransport handler standing in for an OpenAI-compatible server and an image CDN."""

    def __init__(self, content: str = "", models: Iterable[str] = ("llava-1.5-7b-4096", "llama3.2")):
        self.content = content
        self.models = list(models)
        self.unreachable = False
        self.images: Dict[str, bytes] = {}
        self.requests: List[httpx.Request] = []

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "images.test":
            data: Optional[bytes] = self.images.get(request.url.path)
            if data is None:
                return httpx.Response(404, content=b"missing")
            return httpx.Response(200, content=data, headers={"content-type": "image/jpeg"})
        if self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)
        if request.url.path == "/v1/models":
            return httpx.Response(200, json={"data": [{"id": m} for m in self.models]})
        if request.url.path == "/v1/chat/completions":
            return httpx.Response(200, json={"choices": [{"message": {"content": self.content}}]})
        return httpx.Response(404, json={"error": {"message": "not found"}})


