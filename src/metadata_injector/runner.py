"""Sequential batch runner: one encode + one completion request per pending image."""

import time
from typing import TYPE_CHECKING

from loguru import logger

from metadata_injector.api import request_metadata
from metadata_injector.config import DEFAULT_JPEG_QUALITY, DEFAULT_MAX_TOKENS, DEFAULT_PROMPT
from metadata_injector.encoder import encode_image
from metadata_injector.errors import (
    BatchInProgressError,
    CredentialError,
    EncodingError,
    ParseError,
    RequestError,
)
from metadata_injector.models import BatchStatus, BatchSummary, ItemStatus, QueueItem


if TYPE_CHECKING:
    from collections.abc import Callable

    import httpx

    from metadata_injector.intake import ImageQueue
    from metadata_injector.session import Session


class BatchRunner:
    """
    Walk the queue in order and generate metadata for every pending item.

    Items are processed strictly one at a time. A failure on one item is recorded on that
    item and the run moves on; it never aborts the batch. Items that are already completed
    or failed are left untouched, so running twice without adding files does nothing the
    second time. The queue is locked for the duration of a run.
    """

    def __init__(
        self,
        queue: "ImageQueue",
        client: "httpx.AsyncClient",
        *,
        prompt: str = DEFAULT_PROMPT,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        max_dimension: int | None = None,
        jpeg_quality: int = DEFAULT_JPEG_QUALITY,
        on_update: "Callable[[QueueItem], None] | None" = None,
    ) -> None:
        self.queue = queue
        self.client = client
        self.prompt = prompt
        self.max_tokens = max_tokens
        self.max_dimension = max_dimension
        self.jpeg_quality = jpeg_quality
        self.on_update = on_update
        self.status = BatchStatus.IDLE

    def _notify(self, item: QueueItem) -> None:
        if self.on_update is not None:
            self.on_update(item)

    async def _process_item(self, item: QueueItem, model: str) -> None:
        item.mark_processing()
        self._notify(item)
        try:
            image_uri = await encode_image(
                item.path,
                item.media_type,
                max_dimension=self.max_dimension,
                jpeg_quality=self.jpeg_quality,
            )
            metadata = await request_metadata(
                self.client,
                image_uri,
                prompt=self.prompt,
                model=model,
                max_tokens=self.max_tokens,
            )
        except (EncodingError, RequestError, ParseError) as exc:
            logger.error("processing_failed", kind=type(exc).__name__, error=str(exc))
            item.mark_error(str(exc))
        except BaseException as exc:
            logger.exception("processing_aborted", kind=type(exc).__name__)
            item.mark_error(f"Unexpected error: {exc}")
            self._notify(item)
            raise
        else:
            logger.info("processing_success")
            item.mark_completed(metadata)
        self._notify(item)

    async def run(self, session: "Session") -> BatchSummary:
        """
        Process every item that is pending when the run starts.

        Raises:
            CredentialError: The session has no verified key or no selected model. Nothing
                in the queue is changed and no request is sent.
            BatchInProgressError: Another run is still processing this queue.

        """
        if self.status is BatchStatus.PROCESSING or self.queue.locked:
            msg = "A batch run is already in progress."
            raise BatchInProgressError(msg)
        if not session.is_ready or session.model is None:
            msg = "Verify your API key and select a model before processing."
            raise CredentialError(msg)

        model = session.model
        pending = self.queue.pending()
        summary = BatchSummary(total=len(self.queue), skipped=len(self.queue) - len(pending))
        logger.info("batch_started", pending=len(pending), skipped=summary.skipped, model=model)

        self.status = BatchStatus.PROCESSING
        self.queue.lock()
        _t0 = time.perf_counter()
        try:
            for idx, item in enumerate(pending, start=1):
                with logger.contextualize(file=item.name, index=f"{idx}/{len(pending)}"):
                    await self._process_item(item, model)
                summary.processed += 1
                if item.status is ItemStatus.COMPLETED:
                    summary.completed += 1
                else:
                    summary.failed += 1
                    summary.failed_files.append(item.name)
        finally:
            self.queue.unlock()
            self.status = BatchStatus.DONE
            summary.seconds = round(time.perf_counter() - _t0, 3)

        logger.info(
            "batch_done",
            processed=summary.processed,
            completed=summary.completed,
            failed=summary.failed,
            seconds=summary.seconds,
        )
        return summary
