"""
Literature / LLM Provider — Abstract Base Class

The insight engine reaches language-model services only through this
interface. Every caller keeps a deterministic fallback, so a provider may
be absent, slow, or failing without breaking insight generation.
"""

from abc import ABC, abstractmethod

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import Settings

logger = structlog.get_logger()


class LiteratureProvider(ABC):
    """Base class for text-generation and embedding services."""

    name: str = "provider"

    @abstractmethod
    async def answer_query(self, prompt: str) -> str:
        """Free-text completion for `prompt`."""

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Dense embedding vector for `text`."""


class HttpLiteratureProvider(LiteratureProvider):
    """
    JSON-over-HTTP provider.

    POST {base_url}/completions  {"prompt": ...}  -> {"text": ...}
    POST {base_url}/embeddings   {"input": ...}   -> {"embedding": [...]}
    """

    name = "http"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        self.headers = {"Content-Type": "application/json"}
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpLiteratureProvider | None":
        if not settings.literature_provider_url:
            return None
        return cls(
            settings.literature_provider_url,
            api_key=settings.literature_provider_api_key,
            timeout_seconds=settings.literature_provider_timeout_seconds,
        )

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        reraise=True,
    )
    async def _post(self, path: str, payload: dict) -> dict:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            response = await client.post(f"{self.base_url}{path}", headers=self.headers, json=payload)
            response.raise_for_status()
            return response.json()

    async def answer_query(self, prompt: str) -> str:
        body = await self._post("/completions", {"prompt": prompt})
        text = body.get("text")
        if not isinstance(text, str) or not text.strip():
            raise ValueError("Provider returned no completion text")
        return text.strip()

    async def embed(self, text: str) -> list[float]:
        body = await self._post("/embeddings", {"input": text})
        vector = body.get("embedding")
        if not isinstance(vector, list) or not vector:
            raise ValueError("Provider returned no embedding")
        return [float(v) for v in vector]
