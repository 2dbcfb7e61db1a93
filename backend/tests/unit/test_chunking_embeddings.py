"""
Unit Tests — retrieval chunking and the embedding pipeline
══════════════════════════════════════════════════════════
Tests for:
  • RetrievalChunker         — page attribution, contiguous indexes, determinism
  • ChunkResult.chunk_id     — stable ids per (material, version, index)
  • EmbeddingPipeline        — batching, bounded concurrency, in-process retry,
                               dimension checks, partial failure accounting
  • OpenAIEmbeddingProvider  — SDK error → ProviderError / TransientProviderError
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from materialflow.core.exceptions import ProviderError, TransientProviderError
from materialflow.processing.chunking import ChunkResult, RetrievalChunker
from materialflow.processing.embeddings import (
    EmbeddingPipeline,
    EmbeddingProvider,
    OpenAIEmbeddingProvider,
)
from fakes import FakeEmbeddingProvider
from samples import BIOLOGY_PAGES


def _chunks(n: int) -> list[ChunkResult]:
    return [
        ChunkResult(chunk_index=i, text=f"mitochondria note {i}", page_number=1, token_count=5)
        for i in range(n)
    ]


class _Collector:
    def __init__(self) -> None:
        self.batches: list[list[tuple[ChunkResult, list[float]]]] = []

    async def __call__(self, batch) -> None:
        self.batches.append(batch)


# ─────────────────────────────────────────────────────────────────────────────
# Chunking
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestRetrievalChunker:

    def test_one_chunk_per_short_page(self):
        chunks = RetrievalChunker(chunk_size=1000, chunk_overlap=200).chunk(BIOLOGY_PAGES)
        assert [c.chunk_index for c in chunks] == [0, 1, 2]
        assert [c.page_number for c in chunks] == [1, 2, 3]
        assert "mitochondria" in chunks[1].text

    def test_long_pages_split_with_contiguous_indexes(self):
        page = "\n\n".join(f"Paragraph {i} talks about volcano activity." for i in range(40))
        chunks = RetrievalChunker(chunk_size=200, chunk_overlap=0).chunk([page, "Short second page."])

        assert len(chunks) > 2
        assert [c.chunk_index for c in chunks] == list(range(len(chunks)))
        assert all(len(c.text) <= 200 for c in chunks)
        assert chunks[-1].page_number == 2
        assert chunks[-1].text == "Short second page."

    def test_blank_pages_are_skipped_but_numbering_is_kept(self):
        chunks = RetrievalChunker().chunk(["", "Second page text", "  "])
        assert [(c.chunk_index, c.page_number) for c in chunks] == [(0, 2)]

    def test_unpaged_input_has_no_page_numbers(self):
        chunks = RetrievalChunker().chunk(["Plain text notes"], paged=False)
        assert chunks[0].page_number is None

    def test_same_input_yields_same_chunks(self):
        page = " ".join(["tectonics plates move"] * 200)
        a = RetrievalChunker(chunk_size=300, chunk_overlap=50).chunk([page])
        b = RetrievalChunker(chunk_size=300, chunk_overlap=50).chunk([page])
        assert a == b


@pytest.mark.unit
class TestChunkId:

    def test_stable_and_scoped_by_version(self):
        chunk = ChunkResult(chunk_index=3, text="x", page_number=1, token_count=1)
        first = chunk.chunk_id("mat-1", 1)

        assert first == chunk.chunk_id("mat-1", 1)
        assert len(first) == 32
        assert first != chunk.chunk_id("mat-1", 2)
        assert first != chunk.chunk_id("mat-2", 1)


# ─────────────────────────────────────────────────────────────────────────────
# Embedding pipeline
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestEmbeddingPipeline:

    async def test_batches_are_delivered_as_they_finish(self, provider):
        collector = _Collector()
        result = await EmbeddingPipeline(provider, batch_size=2, max_concurrency=2).embed_chunks(
            _chunks(5), collector,
        )

        assert result.complete
        assert result.embedded == 5
        assert sorted(len(b) for b in collector.batches) == [1, 2, 2]
        assert sorted(len(call) for call in provider.calls) == [1, 2, 2]
        for batch in collector.batches:
            for chunk, vector in batch:
                assert vector == provider.vector(chunk.text)

    async def test_empty_input(self, provider):
        result = await EmbeddingPipeline(provider).embed_chunks([], _Collector())
        assert result.total_chunks == 0
        assert result.complete
        assert provider.calls == []

    async def test_concurrency_is_bounded(self):
        class CountingProvider(FakeEmbeddingProvider):
            def __init__(self) -> None:
                super().__init__()
                self.active = 0
                self.peak = 0

            async def embed(self, texts):
                self.active += 1
                self.peak = max(self.peak, self.active)
                await asyncio.sleep(0.01)
                self.active -= 1
                return await super().embed(texts)

        counting = CountingProvider()
        await EmbeddingPipeline(counting, batch_size=1, max_concurrency=3).embed_chunks(
            _chunks(10), _Collector(),
        )
        assert counting.peak == 3

    async def test_transient_error_is_retried_in_process(self):
        flaky = FakeEmbeddingProvider(errors=[TransientProviderError("rate limited")])
        result = await EmbeddingPipeline(flaky, batch_size=10).embed_chunks(_chunks(3), _Collector())

        assert result.complete
        assert len(flaky.calls) == 2

    async def test_transient_errors_beyond_retries_fail_the_batch(self):
        flaky = FakeEmbeddingProvider(errors=[TransientProviderError("timeout")] * 3)
        result = await EmbeddingPipeline(flaky, batch_size=10).embed_chunks(_chunks(3), _Collector())

        assert not result.complete
        assert result.failed_chunks == [0, 1, 2]
        assert result.transient_only
        assert len(flaky.calls) == 3
        assert isinstance(result.errors[0], TransientProviderError)

    async def test_permanent_error_is_not_retried(self):
        broken = FakeEmbeddingProvider(errors=[ProviderError("bad request")])
        collector = _Collector()
        result = await EmbeddingPipeline(broken, batch_size=10).embed_chunks(_chunks(2), collector)

        assert len(broken.calls) == 1
        assert result.failed_chunks == [0, 1]
        assert not result.transient_only
        assert collector.batches == []

    async def test_partial_failure_keeps_delivered_batches(self):
        flaky = FakeEmbeddingProvider(errors=[ProviderError("boom")])
        collector = _Collector()
        result = await EmbeddingPipeline(flaky, batch_size=2, max_concurrency=1).embed_chunks(
            _chunks(4), collector,
        )

        assert result.embedded == 2
        assert result.failed_chunks == [0, 1]
        assert [c.chunk_index for c, _ in collector.batches[0]] == [2, 3]

    async def test_wrong_dimension_is_rejected(self):
        class ShortVectors(EmbeddingProvider):
            dimensions = 4

            async def embed(self, texts):
                return [[0.1, 0.2] for _ in texts]

        collector = _Collector()
        result = await EmbeddingPipeline(ShortVectors()).embed_chunks(_chunks(2), collector)

        assert result.failed_chunks == [0, 1]
        assert isinstance(result.errors[0], ProviderError)
        assert "dims" in str(result.errors[0])
        assert collector.batches == []

    async def test_embed_query_returns_single_vector(self, provider):
        vector = await provider.embed_query("mitochondria")
        assert vector == provider.vector("mitochondria")


# ─────────────────────────────────────────────────────────────────────────────
# OpenAI provider error mapping
# ─────────────────────────────────────────────────────────────────────────────

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/embeddings")


def _status_error(cls, status: int):
    return cls("provider said no", response=httpx.Response(status, request=_REQUEST), body=None)


@pytest.mark.unit
class TestOpenAIEmbeddingProvider:

    def _provider(self, side_effect=None, return_value=None) -> OpenAIEmbeddingProvider:
        provider = OpenAIEmbeddingProvider(api_key="sk-test", dimensions=3)
        provider._client = MagicMock()
        provider._client.embeddings.create = AsyncMock(side_effect=side_effect, return_value=return_value)
        return provider

    async def test_vectors_are_returned_in_input_order(self):
        response = MagicMock(usage=None)
        response.data = [
            MagicMock(index=1, embedding=[0.0, 1.0, 0.0]),
            MagicMock(index=0, embedding=[1.0, 0.0, 0.0]),
        ]
        provider = self._provider(return_value=response)

        vectors = await provider.embed(["first", "second"])

        assert vectors == [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]
        kwargs = provider._client.embeddings.create.call_args.kwargs
        assert kwargs["dimensions"] == 3
        assert kwargs["input"] == ["first", "second"]

    @pytest.mark.parametrize("error", [
        _status_error(openai.RateLimitError, 429),
        _status_error(openai.InternalServerError, 503),
        openai.APIConnectionError(request=_REQUEST),
        openai.APITimeoutError(request=_REQUEST),
    ])
    async def test_retryable_errors_are_transient(self, error):
        with pytest.raises(TransientProviderError):
            await self._provider(side_effect=error).embed(["x"])

    @pytest.mark.parametrize("error", [
        _status_error(openai.BadRequestError, 400),
        _status_error(openai.AuthenticationError, 401),
    ])
    async def test_client_errors_are_permanent(self, error):
        with pytest.raises(ProviderError) as exc_info:
            await self._provider(side_effect=error).embed(["x"])
        assert not isinstance(exc_info.value, TransientProviderError)
        assert exc_info.value.provider_name == "openai"
