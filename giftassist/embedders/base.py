import re
import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass

import structlog
from ddtrace.trace import tracer

from ..errors import GiftAssistError
from ..models import EmbeddingVector

logger = structlog.get_logger()

_WHITESPACE = re.compile(r"\s+")


class EmbeddingProviderError(GiftAssistError):
    """
    Raised when an embedding provider API request fails.
    """

    msg = "embedding provider failed"


class BatchingError(GiftAssistError):
    """
    Raised when a single input is larger than one provider request allows.
    """

    msg = "input too large for one embedding request"


@dataclass
class Usage:
    """The number of tokens used in an embedding request"""

    prompt_tokens: int
    total_tokens: int


@dataclass
class EmbeddingResponse:
    """A generic embedding response"""

    embeddings: list[EmbeddingVector]
    usage: Usage


def normalize_whitespace(text: str) -> str:
    """Collapses every whitespace run to one space and trims both ends."""
    return _WHITESPACE.sub(" ", text).strip()


def batch_indices(
    token_lengths: Sequence[float],
    max_inputs_per_batch: int,
    max_tokens_per_batch: float | None,
) -> list[tuple[int, int]]:
    """
    Given the token length of every input, determines how to batch them,
    adhering to 'max_inputs_per_batch' and 'max_tokens_per_batch'.

    Returns a list of (start, end) slices, in input order.
    """
    batches: list[tuple[int, int]] = []
    start = 0
    token_count = 0.0
    for idx, tokens in enumerate(token_lengths):
        if max_tokens_per_batch is not None and tokens > max_tokens_per_batch:
            raise BatchingError(
                f"input length {tokens} greater than max_tokens_per_batch {max_tokens_per_batch}"  # noqa
            )
        max_tokens_reached = (
            max_tokens_per_batch is not None
            and token_count + tokens > max_tokens_per_batch
        )
        max_inputs_reached = idx - start + 1 > max_inputs_per_batch
        if max_tokens_reached or max_inputs_reached:
            batches.append((start, idx))
            start = idx
            token_count = 0.0
        token_count += tokens
    if start < len(token_lengths):
        batches.append((start, len(token_lengths)))
    return batches


class Embedder(ABC):
    """
    Abstract base class for an Embedder.

    Subclasses talk to one provider through :meth:`call_embed_api`. The base
    class normalizes whitespace, splits large inputs into provider-sized
    batches and reassembles the vectors in input order, so callers always see
    one logical call. Nothing here retries: a failed request surfaces as
    :class:`EmbeddingProviderError` and the caller decides about backoff.
    """

    model: str

    @abstractmethod
    def _max_inputs_per_batch(self) -> int:
        """
        The maximum number of inputs that can be embedded per API call
        :return: int: the max input count
        """

    def _max_tokens_per_batch(self) -> float | None:
        """
        The maximum number of tokens that can be embedded per API call
        :return: the max token count, or None when unbounded
        """
        return None

    def _estimate_token_length(self, text: str) -> float:  # noqa: ARG002
        return 0

    @abstractmethod
    async def call_embed_api(self, texts: list[str]) -> EmbeddingResponse:
        """
        Call the embed API
        :param texts: already normalized inputs, at most one batch
        :return: one vector per input, in order
        """

    async def embed_many(self, texts: Sequence[str]) -> list[EmbeddingVector]:
        """
        Embeds every text, preserving order and length.

        Raises:
            EmbeddingProviderError: If any provider request fails.
        """
        if not texts:
            return []
        documents = [normalize_whitespace(text) for text in texts]
        token_counts = [self._estimate_token_length(doc) for doc in documents]
        batches = batch_indices(
            token_counts,
            max_inputs_per_batch=self._max_inputs_per_batch(),
            max_tokens_per_batch=self._max_tokens_per_batch(),
        )
        num_batches = len(batches)

        vectors: list[EmbeddingVector] = []
        with tracer.trace("embeddings.do"):
            current_span = tracer.current_span()
            if current_span:
                current_span.set_tag("batches.total", num_batches)
                current_span.set_metric("inputs.total", len(documents))
            for batch_num, (start, end) in enumerate(batches, 1):
                batch = documents[start:end]
                await logger.adebug(
                    "embedding batch",
                    batch=batch_num,
                    batches=num_batches,
                    inputs=len(batch),
                )
                start_time = time.perf_counter()
                try:
                    response = await self.call_embed_api(batch)
                except EmbeddingProviderError:
                    raise
                except Exception as e:
                    raise EmbeddingProviderError(
                        f"{self.model}: {e.__class__.__name__}: {e}"
                    ) from e
                if len(response.embeddings) != len(batch):
                    raise EmbeddingProviderError(
                        f"{self.model} returned {len(response.embeddings)} "
                        f"vectors for {len(batch)} inputs"
                    )
                await logger.adebug(
                    "embedding batch done",
                    batch=batch_num,
                    duration=time.perf_counter() - start_time,
                    total_tokens=response.usage.total_tokens,
                )
                vectors.extend(response.embeddings)
        return vectors

    async def embed_one(self, text: str) -> EmbeddingVector:
        vectors = await self.embed_many([text])
        return vectors[0]
