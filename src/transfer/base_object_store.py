# src/transfer/base_object_store.py — v1
"""Abstract object store with the shared chunked-upload algorithm.

Backends only implement the five primitive calls (single put, and create /
upload part / commit / abort for multipart). Every primitive runs in a
worker thread under the retry policy, so a failed chunk is retried at the
transport level and only an exhausted or non-retryable failure aborts the
whole upload.
"""

from __future__ import annotations

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable

from imagebuilder.core.errors import UploadFailed
from imagebuilder.core.models import UploadResult
from imagebuilder.transfer.retry import RetryPolicy, Sleep, with_retry

logger = logging.getLogger(__name__)

DEFAULT_PART_SIZE = 64 * 1024 * 1024

# (part number, total parts, percent of total bytes)
ProgressCallback = Callable[[int, int, float], None]


def chunk_percent(bytes_sent: int, total_bytes: int, part_num: int, total_parts: int) -> float:
    """Percent complete after a chunk; the last chunk is always exactly 100."""
    if part_num >= total_parts or total_bytes <= 0:
        return 100.0
    return bytes_sent / total_bytes * 100


class BaseObjectStore(ABC):
    """Unified upload interface for object storage backends."""

    backend = "base"

    def __init__(
        self,
        bucket: str,
        part_size: int = DEFAULT_PART_SIZE,
        retry: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._bucket = bucket
        self._part_size = part_size
        self._retry = retry or RetryPolicy()
        self._sleep = sleep

    @property
    def bucket(self) -> str:
        return self._bucket

    # --- Backend primitives (blocking SDK calls) ---

    @abstractmethod
    def _put_object(self, object_name: str, data: bytes) -> None:
        """Store a whole object in one request."""

    @abstractmethod
    def _create_multipart(self, object_name: str) -> str:
        """Start a multipart upload and return its upload id."""

    @abstractmethod
    def _upload_part(self, object_name: str, upload_id: str, part_num: int, data: bytes) -> str:
        """Upload one part and return its etag."""

    @abstractmethod
    def _commit_multipart(self, object_name: str, upload_id: str, etags: list[tuple[int, str]]) -> None:
        """Assemble the uploaded parts into the final object."""

    @abstractmethod
    def _abort_multipart(self, object_name: str, upload_id: str) -> None:
        """Discard a multipart upload and its parts."""

    # --- Shared algorithm ---

    async def _prepare(self) -> None:
        """Resolve anything the primitives need before the first request."""

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        return await with_retry(
            asyncio.to_thread, fn, *args,
            operation=operation, policy=self._retry, sleep=self._sleep,
        )

    async def upload_file(
        self,
        path: Path,
        object_name: str,
        image_name: str,
        progress: ProgressCallback | None = None,
    ) -> UploadResult:
        """Upload a local file as object_name.

        Files no larger than one part go up in a single request; larger
        files use a multipart upload of fixed-size parts, sent in order.

        Raises:
            UploadFailed: The transfer could not be completed. A started
                multipart upload is aborted first.
            asyncio.CancelledError: The calling task was cancelled; a started
                multipart upload is aborted before the cancellation propagates.
        """
        try:
            await self._prepare()
        except Exception as e:
            raise UploadFailed(image_name, e) from e

        total_bytes = path.stat().st_size
        total_parts = max(1, math.ceil(total_bytes / self._part_size))
        report = progress or (lambda *_: None)

        if total_parts == 1:
            try:
                data = await asyncio.to_thread(path.read_bytes)
                await self._call(f"put {object_name}", self._put_object, object_name, data)
            except Exception as e:
                raise UploadFailed(image_name, e) from e
            report(1, 1, 100.0)
            return UploadResult(
                image_name=image_name, object_name=object_name,
                size_bytes=total_bytes, parts=1, multipart=False,
            )

        try:
            upload_id = await self._call(
                f"create multipart upload {object_name}", self._create_multipart, object_name
            )
        except Exception as e:
            raise UploadFailed(image_name, e) from e

        etags: list[tuple[int, str]] = []
        bytes_sent = 0
        try:
            with path.open("rb") as fh:
                for part_num in range(1, total_parts + 1):
                    data = await asyncio.to_thread(fh.read, self._part_size)
                    try:
                        etag = await self._call(
                            f"upload part {part_num}/{total_parts} of {object_name}",
                            self._upload_part, object_name, upload_id, part_num, data,
                        )
                    except Exception as e:
                        logger.error("Part %d/%d error: %s", part_num, total_parts, e)
                        raise
                    etags.append((part_num, etag))
                    bytes_sent += len(data)
                    report(
                        part_num, total_parts,
                        chunk_percent(bytes_sent, total_bytes, part_num, total_parts),
                    )
            await self._call(
                f"commit multipart upload {object_name}",
                self._commit_multipart, object_name, upload_id, etags,
            )
        except asyncio.CancelledError:
            await self._abort(object_name, upload_id)
            raise
        except Exception as e:
            await self._abort(object_name, upload_id)
            raise UploadFailed(image_name, e) from e

        return UploadResult(
            image_name=image_name, object_name=object_name,
            size_bytes=total_bytes, parts=total_parts, multipart=True,
        )

    async def _abort(self, object_name: str, upload_id: str) -> None:
        """Best-effort abort of a failed multipart upload."""
        try:
            await asyncio.to_thread(self._abort_multipart, object_name, upload_id)
        except Exception as e:
            logger.warning("Failed to abort multipart upload %s for %s: %s", upload_id, object_name, e)
        else:
            logger.info("Aborted multipart upload %s for %s", upload_id, object_name)
