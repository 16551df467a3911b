import json
import logging

import httpx

from config.settings import settings
from services.llm.base import BatchResult, BatchStatus, ImagePayload, LLMProvider, LLMResponse

log = logging.getLogger(__name__)

CHAT_COMPLETIONS = "/v1/chat/completions"


class OpenAIProvider(LLMProvider):
    """OpenAI provider over plain HTTP, including the asynchronous Batch API.

    Batch flow: upload the JSONL requests as a file, create a batch over it,
    poll its status, then download the output file once it is completed.
    """

    provider_name = "openai"
    supports_batch = True

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key or settings.openai_api_key
        self.default_model = model or settings.openai_model
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")
        self._transport = transport

    def _client(self, timeout: float = 120.0) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=timeout,
            transport=self._transport,
        )

    def _messages(self, prompt: str, system: str, images: list[ImagePayload] | None) -> list[dict]:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        if images:
            content = [
                {"type": "image_url", "image_url": {"url": image.data_url, "detail": image.detail}}
                for image in images
            ]
            content.insert(0, {"type": "text", "text": prompt})
            messages.append({"role": "user", "content": content})
        else:
            messages.append({"role": "user", "content": prompt})
        return messages

    async def complete(
        self,
        prompt: str,
        system: str = "",
        model: str | None = None,
        images: list[ImagePayload] | None = None,
        temperature: float = 0.1,
        max_tokens: int = 4096,
    ) -> LLMResponse:
        model = model or self.default_model
        async with self._client() as client:
            resp = await client.post(
                "/chat/completions",
                json={
                    "model": model,
                    "temperature": temperature,
                    "max_tokens": max_tokens,
                    "messages": self._messages(prompt, system, images),
                },
            )
            resp.raise_for_status()
            data = resp.json()

        return LLMResponse(
            content=data["choices"][0]["message"]["content"],
            model=model,
            provider=self.provider_name,
            usage=data.get("usage", {}),
            raw=data,
        )

    async def embed(self, texts: list[str], model: str | None = None) -> list[list[float]]:
        async with self._client() as client:
            resp = await client.post(
                "/embeddings",
                json={"model": model or settings.openai_embedding_model, "input": texts},
            )
            resp.raise_for_status()
            data = resp.json()["data"]
        return [item["embedding"] for item in sorted(data, key=lambda d: d["index"])]

    # --- Batch API ---

    def batch_request(
        self,
        custom_id: str,
        prompt: str,
        images: list[ImagePayload],
        model: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 15000,
    ) -> dict:
        return {
            "custom_id": custom_id,
            "method": "POST",
            "url": CHAT_COMPLETIONS,
            "body": {
                "model": model or self.default_model,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "messages": [
                    {"role": "system", "content": prompt},
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "image_url",
                                "image_url": {"url": image.data_url, "detail": image.detail},
                            }
                            for image in images
                        ],
                    },
                ],
            },
        }

    async def submit_batch(self, requests: list[dict]) -> str:
        jsonl = "\n".join(json.dumps(r) for r in requests).encode()
        async with self._client(timeout=300.0) as client:
            upload = await client.post(
                "/files",
                data={"purpose": "batch"},
                files={"file": ("batch.jsonl", jsonl, "application/jsonl")},
            )
            upload.raise_for_status()
            resp = await client.post(
                "/batches",
                json={
                    "input_file_id": upload.json()["id"],
                    "endpoint": CHAT_COMPLETIONS,
                    "completion_window": "24h",
                },
            )
            resp.raise_for_status()
            batch_id = resp.json()["id"]
        log.info(f"Submitted OpenAI batch {batch_id} with {len(requests)} requests")
        return batch_id

    async def batch_status(self, batch_id: str) -> BatchStatus:
        async with self._client() as client:
            resp = await client.get(f"/batches/{batch_id}")
            resp.raise_for_status()
            status = resp.json()["status"]
        if status == "cancelling":
            return BatchStatus.CANCELLED
        try:
            return BatchStatus(status)
        except ValueError:
            log.warning(f"Unknown batch status {status!r} for {batch_id}")
            return BatchStatus.FAILED

    async def batch_results(self, batch_id: str) -> list[BatchResult]:
        async with self._client(timeout=300.0) as client:
            resp = await client.get(f"/batches/{batch_id}")
            resp.raise_for_status()
            output_file_id = resp.json().get("output_file_id")
            if not output_file_id:
                return []
            content = await client.get(f"/files/{output_file_id}/content")
            content.raise_for_status()
            lines = content.text.splitlines()

        results = []
        for line in lines:
            if not line.strip():
                continue
            entry = json.loads(line)
            response = entry.get("response") or {}
            body = response.get("body") or {}
            choices = body.get("choices") or []
            if choices:
                results.append(BatchResult(entry["custom_id"], choices[0]["message"]["content"]))
            else:
                error = entry.get("error") or body.get("error") or "empty response"
                results.append(BatchResult(entry["custom_id"], None, error=str(error)))
        return results

    async def is_available(self) -> bool:
        return bool(self.api_key)
