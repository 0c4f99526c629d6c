"""Embedding batcher: one retried embedding request per file."""

import logging
from typing import Protocol, Sequence

from docsync.config import get_settings
from docsync.core.retry import with_backoff
from docsync.exceptions import TransientExternalError
from docsync.services.chunker import Chunk

logger = logging.getLogger(__name__)
settings = get_settings()


class EmbeddingBackend(Protocol):
    embedding_model: str

    async def create_embeddings_batch(self, texts: list[str]) -> list[list[float]]: ...


class EmbeddingService:
    """Embeds the chunks of one file in a single batched call."""

    def __init__(
        self,
        llm_service: EmbeddingBackend,
        attempts: int | None = None,
        base_delay: float | None = None,
    ):
        self.llm_service = llm_service
        self.attempts = attempts or settings.retry_attempts
        self.base_delay = settings.retry_base_delay if base_delay is None else base_delay

    @property
    def model_tag(self) -> str:
        """Model name stored alongside every chunk."""
        return self.llm_service.embedding_model

    async def embed(self, chunks: Sequence[Chunk]) -> list[list[float]]:
        """Return one vector per chunk, in order.

        The request is retried with exponential backoff; the final error
        propagates to the caller.
        """
        if not chunks:
            return []

        texts = [chunk.content for chunk in chunks]
        path = chunks[0].path

        vectors = await with_backoff(
            lambda: self.llm_service.create_embeddings_batch(texts),
            attempts=self.attempts,
            base_delay=self.base_delay,
            description=f"embed {path}",
        )

        if len(vectors) != len(texts):
            raise TransientExternalError(
                "Embedding response length mismatch",
                path=path,
                expected=len(texts),
                received=len(vectors),
            )

        logger.debug(f"Embedded {len(vectors)} chunks for {path}")
        return vectors
