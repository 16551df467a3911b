import logging
from typing import Any

from config.settings import ModelFamily, settings
from services.errors import AnalyzerError, TransientGatewayError
from services.llm.base import BatchResult, BatchStatus, ImagePayload, LLMProvider, LLMResponse
from services.llm.parsing import parse_model_json, unwrap_result
from services.llm.providers.claude import ClaudeProvider
from services.llm.providers.clip import ClipEmbeddingsClient
from services.llm.providers.gemini import GeminiProvider
from services.llm.providers.ollama import OllamaProvider
from services.llm.providers.openai import OpenAIProvider

log = logging.getLogger(__name__)

FAMILY_PROVIDERS = {
    ModelFamily.GPT: "openai",
    ModelFamily.GEMINI: "gemini",
    ModelFamily.CLAUDE: "claude",
    ModelFamily.OLLAMA: "ollama",
}


class ModelGateway:
    """Single entry point to every external model.

    Tasks talk in model families; the gateway picks the configured provider,
    converts provider failures into ``TransientGatewayError`` and parses
    answers into JSON.
    """

    def __init__(
        self,
        providers: dict[str, LLMProvider] | None = None,
        clip: ClipEmbeddingsClient | None = None,
    ):
        self._providers: dict[str, LLMProvider] = providers if providers is not None else {}
        if providers is None:
            self._init_providers()
        self.clip = clip or ClipEmbeddingsClient()

    def _init_providers(self):
        self._providers["ollama"] = OllamaProvider()
        if settings.openai_api_key:
            self._providers["openai"] = OpenAIProvider()
        if settings.claude_api_key:
            self._providers["claude"] = ClaudeProvider()
        if settings.gemini_api_key:
            self._providers["gemini"] = GeminiProvider()

    def get_provider(self, family: ModelFamily | str) -> LLMProvider:
        name = FAMILY_PROVIDERS.get(ModelFamily(family))
        if name is None or name not in self._providers:
            available = list(self._providers.keys())
            raise TransientGatewayError(
                f"No provider for model family '{family}'. Available: {available}"
            )
        return self._providers[name]

    async def complete(
        self,
        family: ModelFamily | str,
        prompt: str,
        images: list[ImagePayload] | None = None,
        model: str | None = None,
        system: str = "",
        temperature: float = 0.1,
        max_tokens: int = 4096,
    ) -> LLMResponse:
        p = self.get_provider(family)
        log.debug(f"Routing to {p.provider_name} (model={model or 'default'}, images={len(images or [])})")
        try:
            return await p.complete(
                prompt=prompt,
                system=system,
                model=model,
                images=images,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except AnalyzerError:
            raise
        except Exception as e:
            raise TransientGatewayError(f"{p.provider_name} call failed: {e}") from e

    async def infer_direct(
        self,
        family: ModelFamily | str,
        prompt: str,
        images: list[ImagePayload] | None = None,
        model: str | None = None,
        **kwargs,
    ) -> Any:
        """Synchronous inference: call the model once and return its parsed JSON payload."""
        response = await self.complete(family, prompt, images=images, model=model, **kwargs)
        return unwrap_result(parse_model_json(response.content))

    # --- Batch API ---

    def build_batch_request(
        self,
        family: ModelFamily | str,
        custom_id: str,
        prompt: str,
        images: list[ImagePayload],
        model: str | None = None,
    ) -> dict:
        return self.get_provider(family).batch_request(custom_id, prompt, images, model=model)

    async def submit_batch(self, family: ModelFamily | str, requests: list[dict]) -> str:
        p = self.get_provider(family)
        try:
            return await p.submit_batch(requests)
        except AnalyzerError:
            raise
        except Exception as e:
            raise TransientGatewayError(f"{p.provider_name} batch submission failed: {e}") from e

    async def poll_batch_status(self, family: ModelFamily | str, batch_id: str) -> BatchStatus:
        p = self.get_provider(family)
        try:
            return await p.batch_status(batch_id)
        except AnalyzerError:
            raise
        except Exception as e:
            raise TransientGatewayError(f"{p.provider_name} batch status failed: {e}") from e

    async def fetch_batch_results(self, family: ModelFamily | str, batch_id: str) -> list[BatchResult]:
        p = self.get_provider(family)
        try:
            return await p.batch_results(batch_id)
        except AnalyzerError:
            raise
        except Exception as e:
            raise TransientGatewayError(f"{p.provider_name} batch results failed: {e}") from e

    # --- Embeddings ---

    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        name = settings.embedding_provider
        if name not in self._providers:
            raise TransientGatewayError(f"Embedding provider '{name}' not available")
        try:
            embeddings = await self._providers[name].embed(texts)
        except Exception as e:
            raise TransientGatewayError(f"Text embeddings failed: {e}") from e
        if len(embeddings) != len(texts):
            raise TransientGatewayError(f"Asked {len(texts)} embeddings, got {len(embeddings)}")
        return embeddings

    async def embed_images(self, items: list[dict]) -> dict[int, list[float]]:
        try:
            return await self.clip.embed_images(items)
        except Exception as e:
            raise TransientGatewayError(f"Image embeddings failed: {e}") from e

    async def health(self) -> dict:
        result = {}
        for name, provider in self._providers.items():
            result[name] = await provider.is_available()
        result[self.clip.provider_name] = await self.clip.is_available()
        return result


# Singleton instance
model_gateway = ModelGateway()
