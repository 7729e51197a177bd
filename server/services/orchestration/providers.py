"""Boundary contracts for external collaborators and the HTTP gateway adapter.

The orchestration core only sees these protocols. Request and response
schemas belong to the collaborators; the gateway adapter forwards opaque JSON
payloads and wraps transport errors in ProviderFailure.
"""

import time
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import httpx

from core.config import Settings
from core.logging import get_logger, log_api_call
from .exceptions import ProviderFailure

logger = get_logger(__name__)


@runtime_checkable
class DocumentExtractor(Protocol):
    async def extract_text(self, document: Any) -> str:
        ...


@runtime_checkable
class CompletionModel(Protocol):
    async def generate(self, prompt: str) -> str:
        ...

    async def generate_json(self, prompt: str) -> Any:
        ...


@runtime_checkable
class EmbeddingModel(Protocol):
    async def embed(self, text: str) -> List[float]:
        ...


@runtime_checkable
class JobIndex(Protocol):
    async def find_similar(self, embedding: List[float], limit: int = 10) -> List[Dict[str, Any]]:
        ...


@runtime_checkable
class VideoAnalyzer(Protocol):
    async def analyze_video(self, video_uri: str, prompt: str) -> Dict[str, Any]:
        ...


@runtime_checkable
class DataStore(Protocol):
    """Key/value persistence surface."""

    async def persist(self, key: str, record: Dict[str, Any]) -> bool:
        ...

    async def fetch(self, key: str) -> Optional[Dict[str, Any]]:
        ...


@runtime_checkable
class Notifier(Protocol):
    """Best-effort delivery of an event to one user."""

    async def deliver(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        ...


class HttpAIGateway:
    """JSON-over-HTTP adapter for the AI gateway fronting all providers.

    Implements DocumentExtractor, CompletionModel, EmbeddingModel, JobIndex
    and VideoAnalyzer against one base URL.
    """

    PROVIDER = "ai_gateway"

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.base_url = settings.ai_gateway_url.rstrip("/")
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {}
            if self.settings.ai_gateway_api_key:
                headers["Authorization"] = f"Bearer {self.settings.ai_gateway_api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.settings.ai_timeout,
            )
        return self._client

    async def shutdown(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _post(self, service: str, path: str, payload: Dict[str, Any]) -> Any:
        start_time = time.time()
        try:
            response = await self._get_client().post(path, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            log_api_call(logger, self.PROVIDER, service, path, False, error="timeout")
            raise ProviderFailure(service, f"Request timeout after {self.settings.ai_timeout}s") from e
        except httpx.HTTPStatusError as e:
            log_api_call(logger, self.PROVIDER, service, path, False,
                         status_code=e.response.status_code)
            raise ProviderFailure(service, f"HTTP {e.response.status_code}: {e.response.text}") from e
        except httpx.HTTPError as e:
            log_api_call(logger, self.PROVIDER, service, path, False, error=str(e))
            raise ProviderFailure(service, str(e)) from e

        log_api_call(logger, self.PROVIDER, service, path, True,
                     duration_seconds=round(time.time() - start_time, 4))
        return data

    async def extract_text(self, document: Any) -> str:
        data = await self._post("documentai", "/v1/documents:extract", {"document": document})
        return data.get("text", "")

    async def generate(self, prompt: str) -> str:
        data = await self._post("gemini", "/v1/completions", {"prompt": prompt})
        return data.get("text", "")

    async def generate_json(self, prompt: str) -> Any:
        data = await self._post("gemini", "/v1/completions",
                                {"prompt": prompt, "response_format": "json"})
        return data.get("result")

    async def embed(self, text: str) -> List[float]:
        data = await self._post("embeddings", "/v1/embeddings",
                                {"text": text, "dimensions": self.settings.embedding_dimensions})
        return data.get("embedding", [])

    async def find_similar(self, embedding: List[float], limit: int = 10) -> List[Dict[str, Any]]:
        data = await self._post("matching", "/v1/jobs:search",
                                {"embedding": embedding, "limit": limit})
        return data.get("matches", [])

    async def analyze_video(self, video_uri: str, prompt: str) -> Dict[str, Any]:
        data = await self._post("video", "/v1/video:analyze",
                                {"video_uri": video_uri, "prompt": prompt})
        return data.get("result", {})
