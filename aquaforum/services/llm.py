"""
HTTP client for self-hosted or OpenAI-compatible language model endpoints.

Two wire protocols are supported and chosen by configuration (LLM_PROVIDER):

* ``ollama``  - single-turn ``/api/generate`` with an ``images`` array
* ``openai``  - ``/v1/chat/completions`` with a data-URL ``image_url`` block
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from aquaforum.services.errors import LLMRequestError

log = logging.getLogger("aquaforum.llm")

MIME_TYPES = {
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
}


def mime_for(path: str) -> str:
    for ext, mime in MIME_TYPES.items():
        if path.lower().endswith(ext):
            return mime
    return "image/jpeg"


_DECODER = json.JSONDecoder()


def embedded_json(raw: str) -> Any:
    """
    Pull the tag payload out of model output that may wrap it in prose.

    Every ``{`` or ``[`` is tried as the start of a JSON value. The first object
    carrying a ``tags`` list wins, otherwise the first array. Returns None
    when neither is present.
    """
    first_array = None
    i = 0
    while i < len(raw):
        if raw[i] not in "{[":
            i += 1
            continue
        try:
            value, end = _DECODER.raw_decode(raw, i)
        except (ValueError, RecursionError):
            i += 1
            continue
        if isinstance(value, dict) and isinstance(value.get("tags"), list):
            return value
        if isinstance(value, list):
            if first_array is None:
                first_array = value
            i = end
        else:
            i += 1
    return first_array


class OllamaProtocol:
    name = "ollama"
    models_endpoint = "/api/tags"
    generate_endpoint = "/api/generate"

    def model_ids(self, listing: Dict[str, Any]) -> List[str]:
        return [m.get("name", "") for m in listing.get("models") or []]

    def vision_payload(self, model: str, system: str, prompt: str, image_b64: str, mime: str) -> dict:
        return {
            "model": model,
            "prompt": prompt,
            "images": [image_b64],
            "stream": False,
            "options": {"temperature": 0.2, "num_predict": 200},
        }

    def text_payload(self, model: str, system: str, prompt: str) -> dict:
        return {
            "model": model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": 0.3, "num_predict": 200},
        }

    def extract_text(self, response: Dict[str, Any]) -> str:
        return response.get("response") or ""


class OpenAIProtocol:
    name = "openai"
    models_endpoint = "/v1/models"
    generate_endpoint = "/v1/chat/completions"

    def model_ids(self, listing: Dict[str, Any]) -> List[str]:
        return [m.get("id", "") for m in listing.get("data") or []]

    def vision_payload(self, model: str, system: str, prompt: str, image_b64: str, mime: str) -> dict:
        return {
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": f"data:{mime};base64,{image_b64}"}},
                    ],
                },
            ],
            "temperature": 0.2,
            "max_tokens": 500,
        }

    def text_payload(self, model: str, system: str, prompt: str) -> dict:
        return {
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.3,
            "max_tokens": 500,
        }

    def extract_text(self, response: Dict[str, Any]) -> str:
        choices = response.get("choices") or []
        if not choices:
            return ""
        return (choices[0].get("message") or {}).get("content") or ""


PROTOCOLS = {p.name: p for p in (OllamaProtocol(), OpenAIProtocol())}


def get_protocol(name: str):
    try:
        return PROTOCOLS[name]
    except KeyError:
        raise ValueError(f"Unknown LLM provider: {name!r} (expected one of {sorted(PROTOCOLS)})")


class LLMClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str,
        *,
        api_key: str = "",
        provider: str = "openai",
        timeout: float = 60.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.protocol = get_protocol(provider)
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    @property
    def provider(self) -> str:
        return self.protocol.name

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def request(
        self,
        method: str,
        endpoint: str,
        payload: Optional[dict] = None,
        retries: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Send one JSON request, retrying transport errors and timeouts.

        ``retries`` extra attempts are made after the first one, sleeping
        ``retry_delay * attempt`` in between. HTTP error statuses and
        non-JSON bodies are not retried here.
        """
        retries = self.max_retries if retries is None else retries
        url = f"{self.base_url}{endpoint}"
        attempt = 0
        while True:
            attempt += 1
            try:
                response = await self.http.request(
                    method, url, json=payload, headers=self._headers(), timeout=self.timeout
                )
                break
            except httpx.TransportError as exc:
                if attempt > retries:
                    raise LLMRequestError(f"{method} {endpoint} failed after {attempt} attempts: {exc}") from exc
                delay = self.retry_delay * attempt
                log.warning("LLM request %s %s failed (%s); retry %s/%s in %.1fs", method, endpoint, exc, attempt, retries, delay)
                await asyncio.sleep(delay)

        try:
            body = response.json()
        except ValueError as exc:
            raise LLMRequestError(f"Invalid JSON response: {response.text[:200]}") from exc
        if not response.is_success:
            message = None
            if isinstance(body, dict) and isinstance(body.get("error"), dict):
                message = body["error"].get("message")
            raise LLMRequestError(message or f"HTTP {response.status_code}")
        return body

    async def is_available(self, model_id: Optional[str] = None) -> bool:
        """Probe the model listing; fall back to a bare connectivity check."""
        try:
            listing = await self.request("GET", self.protocol.models_endpoint, retries=1)
            if not model_id:
                return True
            prefix = model_id.split(":")[0]
            return any(prefix in mid or mid == model_id for mid in self.protocol.model_ids(listing))
        except LLMRequestError as exc:
            log.info("Model listing failed (%s); trying connectivity check", exc)
        try:
            await self.request("GET", "/v1/models", retries=1)
            return True
        except LLMRequestError:
            return False

    async def generate(self, payload: dict) -> str:
        response = await self.request("POST", self.protocol.generate_endpoint, payload)
        return self.protocol.extract_text(response)
