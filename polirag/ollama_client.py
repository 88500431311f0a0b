"""Minimal async client for the Ollama embedding API."""
from typing import Any, Dict, List, Optional

import httpx
import structlog

logger = structlog.get_logger()


class OllamaClient:
    """Talks to a local Ollama server over HTTP."""

    def __init__(self, base_url: str, timeout: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _call(
        self, method: str, path: str, timeout: Optional[float] = None, **kwargs
    ) -> Dict[str, Any]:
        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout or self.timeout
        ) as client:
            response = await client.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json()

    async def embed(self, text: str, model: str) -> List[float]:
        """Embedding vector for one text (empty if the server returned none).

        Raises:
            httpx.HTTPError: On transport or API errors
        """
        try:
            data = await self._call(
                "POST", "/api/embeddings", json={"model": model, "prompt": text}
            )
        except httpx.HTTPError as e:
            logger.error("ollama_embedding_error", model=model, error=str(e))
            raise

        vector = data.get("embedding") or []
        logger.debug(
            "ollama_embedding_response",
            model=model,
            text_length=len(text),
            dimension=len(vector),
        )
        return vector

    async def list_models(self) -> List[str]:
        """Names of the models installed on the server."""
        try:
            data = await self._call("GET", "/api/tags", timeout=5.0)
        except httpx.HTTPError as e:
            logger.error("ollama_list_models_error", error=str(e))
            raise
        return [m["name"] for m in data.get("models", [])]

    async def has_model(self, model: str) -> bool:
        models = await self.list_models()
        return model in models or f"{model}:latest" in models
