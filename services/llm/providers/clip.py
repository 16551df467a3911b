import logging

import httpx

from config.settings import settings

log = logging.getLogger(__name__)


class ClipEmbeddingsClient:
    """Client for the self-hosted CLIP image embeddings service."""

    provider_name = "clip"

    def __init__(self, base_url: str | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = (base_url or settings.clip_base_url).rstrip("/")
        self._transport = transport

    async def embed_images(self, items: list[dict]) -> dict[int, list[float]]:
        """Embed ``[{"id": ..., "base64": ...}]`` payloads. Returns photo id -> vector."""
        async with httpx.AsyncClient(timeout=300.0, transport=self._transport) as client:
            resp = await client.post(f"{self.base_url}/embeddings/images", json={"images": items})
            resp.raise_for_status()
            data = resp.json()
        return {int(item["id"]): item["embedding"] for item in data.get("embeddings", [])}

    async def is_available(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=5.0, transport=self._transport) as client:
                resp = await client.get(f"{self.base_url}/health")
                return resp.status_code == 200
        except httpx.HTTPError:
            return False
