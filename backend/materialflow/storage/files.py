"""
Raw File Fetch

Resolves a material's file_url to bytes inside the worker. Supported
schemes:

  http(s)://host/path   httpx streaming GET
  s3://bucket/key       aioboto3 get_object

Missing objects (404 / NoSuchKey) and oversized files raise FileFetchError
and fail the material. Timeouts, connection errors, throttling and 5xx
responses raise TransientProviderError so the queue retries the job.

Job payloads only ever carry the URL; raw bytes never travel through the
broker.
"""

from __future__ import annotations

import logging
from urllib.parse import urlparse

import aioboto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from materialflow.core.config import settings
from materialflow.core.exceptions import FileFetchError, TransientProviderError

logger = logging.getLogger(__name__)

_MISSING_CODES   = {"NoSuchKey", "404", "NoSuchBucket", "NotFound"}
_THROTTLE_CODES  = {"SlowDown", "Throttling", "ThrottlingException", "RequestTimeout", "InternalError", "ServiceUnavailable"}


class FileFetcher:

    def __init__(
        self,
        timeout_seconds: float | None = None,
        max_bytes:       int | None = None,
        http_client:     httpx.AsyncClient | None = None,
    ) -> None:
        self._timeout = timeout_seconds or settings.file_fetch_timeout_seconds
        self._max_bytes = max_bytes or settings.max_file_size_bytes
        self._http = http_client
        self._session = aioboto3.Session()

    async def fetch(self, file_url: str) -> bytes:
        scheme = urlparse(file_url).scheme.lower()
        if scheme in ("http", "https"):
            data = await self._fetch_http(file_url)
        elif scheme == "s3":
            data = await self._fetch_s3(file_url)
        else:
            raise FileFetchError(f"Unsupported file URL scheme: '{scheme or file_url}'")

        logger.info("File fetched | url=%s size=%d", _redact(file_url), len(data))
        return data

    # ------------------------------------------------------------------

    async def _fetch_http(self, url: str) -> bytes:
        client = self._http or httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        try:
            async with client.stream("GET", url) as response:
                if response.status_code == 404:
                    raise FileFetchError(f"File not found: {_redact(url)}")
                if response.status_code == 429 or response.status_code >= 500:
                    raise TransientProviderError(
                        f"File host returned {response.status_code}", provider_name="storage",
                    )
                if response.status_code >= 400:
                    raise FileFetchError(f"File host returned {response.status_code} for {_redact(url)}")

                buffer = bytearray()
                async for piece in response.aiter_bytes():
                    buffer.extend(piece)
                    if len(buffer) > self._max_bytes:
                        raise FileFetchError(f"File exceeds {self._max_bytes} bytes")
                return bytes(buffer)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientProviderError(f"File download failed: {exc}", provider_name="storage") from exc
        finally:
            if self._http is None:
                await client.aclose()

    async def _fetch_s3(self, url: str) -> bytes:
        parsed = urlparse(url)
        bucket, key = parsed.netloc, parsed.path.lstrip("/")
        if not bucket or not key:
            raise FileFetchError(f"Malformed S3 URL: {url}")

        async with self._session.client("s3", region_name=settings.aws_region) as s3:
            try:
                resp = await s3.get_object(Bucket=bucket, Key=key)
                if resp.get("ContentLength", 0) > self._max_bytes:
                    raise FileFetchError(f"File exceeds {self._max_bytes} bytes")
                return await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in _MISSING_CODES:
                    raise FileFetchError(f"Object not found: s3://{bucket}/{key}") from exc
                if code in _THROTTLE_CODES:
                    raise TransientProviderError(f"S3 {code}", provider_name="s3") from exc
                raise FileFetchError(f"S3 error {code} for s3://{bucket}/{key}") from exc
            except BotoCoreError as exc:
                raise TransientProviderError(f"S3 unreachable: {exc}", provider_name="s3") from exc


def _redact(url: str) -> str:
    """Drop query strings (presigned signatures) before logging."""
    return url.split("?", 1)[0]
