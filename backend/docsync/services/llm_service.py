"""Gemini client used for documentation review text and chunk embeddings."""

import asyncio
import logging

from google import genai
from google.genai import types

from docsync.config import get_settings
from docsync.exceptions import TransientExternalError

logger = logging.getLogger(__name__)
settings = get_settings()

# Task type tells the embedding model the vectors index stored passages
DOCUMENT_TASK_TYPE = "RETRIEVAL_DOCUMENT"


class LLMService:
    """Thin async wrapper over the synchronous google-genai client."""

    def __init__(
        self,
        api_key: str | None = None,
        client: genai.Client | None = None,
    ):
        self.client = client or genai.Client(api_key=api_key or settings.gemini_api_key)
        self.model = settings.gemini_model
        self.embedding_model = settings.gemini_embedding_model
        self.embedding_dimensions = settings.embedding_dimensions

    async def generate(
        self,
        prompt: str,
        max_tokens: int = 1500,
        temperature: float = 0.3,
        system_prompt: str | None = None,
    ) -> str:
        """Generate a review paragraph. Returns "" when the model declines."""
        config = types.GenerateContentConfig(
            max_output_tokens=max_tokens,
            temperature=temperature,
            system_instruction=system_prompt,
        )
        try:
            response = await asyncio.to_thread(
                self.client.models.generate_content,
                model=self.model,
                contents=prompt,
                config=config,
            )
        except Exception as e:
            logger.error(f"Gemini generation with {self.model} failed: {e}")
            raise TransientExternalError(f"Gemini generation failed: {e}", model=self.model) from e
        return (response.text or "").strip()

    async def create_embeddings_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed chunk texts in one request; vectors come back in input order."""
        if not texts:
            return []
        try:
            response = await asyncio.to_thread(
                self.client.models.embed_content,
                model=self.embedding_model,
                contents=texts,
                config=types.EmbedContentConfig(
                    task_type=DOCUMENT_TASK_TYPE,
                    output_dimensionality=self.embedding_dimensions,
                ),
            )
        except Exception as e:
            logger.error(f"Embedding {len(texts)} chunks with {self.embedding_model} failed: {e}")
            raise TransientExternalError(
                f"Gemini embedding failed: {e}", model=self.embedding_model, batch=len(texts)
            ) from e
        return [list(embedding.values or []) for embedding in response.embeddings or []]
