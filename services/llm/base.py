from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import StrEnum


@dataclass
class LLMResponse:
    content: str
    model: str
    provider: str
    usage: dict = field(default_factory=dict)
    raw: dict | None = None


@dataclass
class ImagePayload:
    """A base64-encoded image attached to a model request."""

    base64: str
    mime_type: str = "image/jpeg"
    detail: str = "low"  # "low" | "high" | "medium"

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"


class BatchStatus(StrEnum):
    QUEUED = "queued"
    VALIDATING = "validating"
    IN_PROGRESS = "in_progress"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


ACTIVE_BATCH_STATUSES = {
    BatchStatus.QUEUED,
    BatchStatus.VALIDATING,
    BatchStatus.IN_PROGRESS,
    BatchStatus.FINALIZING,
}


@dataclass
class BatchResult:
    """Raw output of one sub-request of a submitted batch."""

    custom_id: str
    content: str | None
    error: str | None = None


class LLMProvider(ABC):
    """Base class for all model providers.

    Direct completion is mandatory. Batch submission and embeddings are optional
    capabilities; providers that lack them keep the defaults below.
    """

    provider_name: str = "base"
    supports_batch: bool = False

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        system: str = "",
        model: str | None = None,
        images: list[ImagePayload] | None = None,
        temperature: float = 0.1,
        max_tokens: int = 4096,
    ) -> LLMResponse: ...

    @abstractmethod
    async def is_available(self) -> bool: ...

    async def embed(self, texts: list[str], model: str | None = None) -> list[list[float]]:
        raise NotImplementedError(f"{self.provider_name} does not provide embeddings")

    def batch_request(
        self,
        custom_id: str,
        prompt: str,
        images: list[ImagePayload],
        model: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 15000,
    ) -> dict:
        raise NotImplementedError(f"{self.provider_name} does not support batch requests")

    async def submit_batch(self, requests: list[dict]) -> str:
        raise NotImplementedError(f"{self.provider_name} does not support batch requests")

    async def batch_status(self, batch_id: str) -> BatchStatus:
        raise NotImplementedError(f"{self.provider_name} does not support batch requests")

    async def batch_results(self, batch_id: str) -> list[BatchResult]:
        raise NotImplementedError(f"{self.provider_name} does not support batch requests")
