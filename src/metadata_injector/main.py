#!/usr/bin/env python3
"""
Metadata Injector: CLI app to generate stock-photo metadata for a batch of images using AI.

For every image it sends one request to an OpenAI-compatible vision model and receives a
commercially optimized title, description and ordered keyword list (Adobe Stock style).

The API key is asked for interactively and only kept in memory for the current session;
it is never read from the environment, accepted as an option or written to the logs.

Requirements:
 - An API key for an OpenAI-compatible provider with access to a vision-capable model.

"""
# ruff: noqa: PLR0913

import asyncio
import contextlib
import getpass
import json
import sys
from datetime import UTC, datetime
from itertools import chain
from pathlib import Path
from typing import Annotated, Literal

import httpx
from cyclopts import App, Parameter, validators
from loguru import logger

from metadata_injector import __version__
from metadata_injector.api import build_client
from metadata_injector.config import (
    DEFAULT_API_BASE_URL,
    DEFAULT_IMAGE_EXTENSIONS,
    DEFAULT_JPEG_QUALITY,
    DEFAULT_MAX_TOKENS,
    DEFAULT_PROMPT,
    DEFAULT_TIMEOUT,
)
from metadata_injector.errors import CredentialError
from metadata_injector.intake import ImageQueue
from metadata_injector.models import BatchSummary, ItemStatus, QueueItem
from metadata_injector.runner import BatchRunner
from metadata_injector.session import Session


LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "OFF"]


# Cyclopts app
app = App(
    name="metadata-injector",
    version=__version__,
)


def setup_logging(
    file_log_level: LogLevel = "DEBUG",
    console_log_level: LogLevel = "INFO",
    log_folder: Path = Path("logs"),
) -> None:
    """
    Configure Loguru for both console and file logging.

    Args:
        file_log_level: Log level for file (use 'OFF' to disable)
        console_log_level: Log level for console (use 'OFF' to disable)
        log_folder: Directory where log files are stored

    """
    logger.remove()

    if file_log_level != "OFF":
        log_folder.mkdir(parents=True, exist_ok=True)
        log_file = log_folder / Path(
            datetime.now(tz=UTC).strftime("%Y%m%d%H%M%S-metadata_injector.log"),
        )
        logger.add(
            log_file,
            level=file_log_level,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{name:<8}:{function:<25}:{line:>4} | "
                "{message:<40} | "
                "{extra}"
            ),
            rotation="500 MB",
            retention="10 days",
            compression="zip",
        )

    if console_log_level != "OFF":
        logger.add(
            sys.stderr,
            level=console_log_level,
            colorize=True,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <7}</level> | "
                "<level>{message:<40.50}</level> | "
                "<yellow>{extra}</yellow>"
            ),
        )


def _parse_extensions(image_extensions: str) -> set[str]:
    """
    Normalize comma-separated extensions into a lowercase set like {".jpg", ".png"}.

    Examples:
        >>> sorted(_parse_extensions("jpg, PNG ,.webp"))
        ['.jpg', '.png', '.webp']

    """
    return {
        f".{ext.strip().lstrip('.').lower()}"
        for ext in image_extensions.split(",")
        if ext.strip().lstrip(".")
    }


def _resolve_candidate_files(
    inputs: list[Path],
    ext_set: set[str],
    *,
    recursive: bool,
) -> list[Path]:
    """
    Resolve provided inputs into a list of candidate files.

    - Directories are expanded by extension (honoring --recursive), sorted by path
    - Explicit files are accepted as-is (extension filter not applied)
    - Order is preserved and duplicate paths removed; intake then drops duplicate names
    """
    pattern = "**/*" if recursive else "*"

    files_from_dirs: list[Path] = []
    files_explicit: list[Path] = []

    for path in inputs:
        path_resolved = path
        with contextlib.suppress(OSError):
            path_resolved = path.resolve()
        if path_resolved.is_dir():
            files_from_dirs.extend(
                sorted(
                    candidate
                    for candidate in path_resolved.glob(pattern)
                    if candidate.is_file() and candidate.suffix.lower() in ext_set
                ),
            )
        elif path_resolved.is_file():
            files_explicit.append(path_resolved)
        else:
            logger.warning("input_not_file_or_dir", path=str(path))

    combined: list[Path] = []
    seen = set()
    for f in chain(files_explicit, files_from_dirs):
        key = str(f)
        if key not in seen:
            combined.append(f)
            seen.add(key)

    return combined


def _build_queue(
    inputs: list[Path] | None,
    image_extensions: str,
    *,
    recursive: bool,
) -> ImageQueue:
    ext_set = _parse_extensions(image_extensions)
    if not ext_set:
        logger.error("no_valid_extensions_provided", raw_input=image_extensions)
        raise SystemExit(1)

    if not inputs:
        logger.error(
            "no_inputs_provided",
            hint="Pass one or more --input/-i paths (files or directories)",
        )
        raise SystemExit(1)

    candidates = _resolve_candidate_files(inputs, ext_set, recursive=recursive)
    queue = ImageQueue()
    queue.add_files(candidates)
    if not len(queue):
        logger.error(
            "no_image_files_found",
            inputs=[str(p) for p in inputs],
            recursive=recursive,
            extensions=sorted(ext_set),
        )
        raise SystemExit(1)

    logger.info("image_files_queued", count=len(queue), candidates=len(candidates))
    return queue


def _prompt_api_key() -> str:
    try:
        return getpass.getpass("API key: ").strip()
    except (EOFError, KeyboardInterrupt):
        return ""


def _choose_model(models: list[str], requested: str | None) -> str:
    """Return the requested model, or ask the user to pick one of the verified models."""
    if requested:
        return requested

    print("Available models:")  # noqa: T201
    for idx, name in enumerate(models, start=1):
        print(f"  {idx:>2}. {name}")  # noqa: T201

    while True:
        try:
            answer = input(f"Select a model [1-{len(models)}]: ").strip()
        except EOFError as exc:
            msg = "No model selected."
            raise CredentialError(msg) from exc
        if answer.isdigit() and 1 <= int(answer) <= len(models):
            return models[int(answer) - 1]
        if answer in models:
            return answer
        print(f"Please enter a number between 1 and {len(models)}.")  # noqa: T201


def render_item(item: QueueItem) -> str:
    """
    Format one queue item for the terminal, with its metadata or error inline.

    Examples:
        >>> print(render_item(QueueItem(3, Path("a.jpg"), "image/jpeg")))
        [Pending] a.jpg

    """
    lines = [f"[{item.status.label}] {item.name}"]
    if item.status is ItemStatus.COMPLETED and item.metadata is not None:
        lines.append(f"    Title:       {item.metadata.title}")
        lines.append(f"    Description: {item.metadata.description}")
        lines.append(f"    Keywords:    {', '.join(item.metadata.keywords)}")
    elif item.status is ItemStatus.ERROR and item.error_message:
        lines.append(f"    Error: {item.error_message}")
    return "\n".join(lines)


def _log_item_update(item: QueueItem) -> None:
    logger.debug("item_status_changed", file=item.name, id=item.id, status=item.status.label)


async def _verify_session(
    session: Session,
    *,
    api_base_url: str,
    timeout: float,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[str]:
    """Check the session's key against the service and return its vision models."""
    async with build_client(
        session.api_key,
        base_url=api_base_url,
        timeout=timeout,
        transport=transport,
    ) as client:
        return await session.verify(client)


async def _run_batch(
    queue: ImageQueue,
    session: Session,
    *,
    api_base_url: str,
    timeout: float,
    max_tokens: int,
    max_dimension: int | None,
    jpeg_quality: int,
    transport: httpx.AsyncBaseTransport | None = None,
) -> BatchSummary:
    """Run one batch over the queue with a verified session and selected model."""
    async with build_client(
        session.api_key,
        base_url=api_base_url,
        timeout=timeout,
        transport=transport,
    ) as client:
        runner = BatchRunner(
            queue,
            client,
            prompt=DEFAULT_PROMPT,
            max_tokens=max_tokens,
            max_dimension=max_dimension,
            jpeg_quality=jpeg_quality,
            on_update=_log_item_update,
        )
        return await runner.run(session)


@app.default
def generate(
    inputs: Annotated[
        list[Path] | None,
        Parameter(
            name=("--input", "-i"),
            validator=validators.Path(exists=True),
            help="One or more paths: files and/or directories (repeat this option)",
        ),
    ] = None,
    *,
    image_extensions: Annotated[
        str,
        Parameter(
            name=("--ext", "--extensions"),
            help="Comma-separated extensions used when expanding directories",
        ),
    ] = DEFAULT_IMAGE_EXTENSIONS,
    recursive: Annotated[
        bool,
        Parameter(
            name=("--recursive", "-r"),
            help="Process files in subdirectories recursively",
        ),
    ] = False,
    model_name: Annotated[
        str | None,
        Parameter(
            name=("--model", "-m"),
            help="Vision-capable model id. Prompted for after key verification if not set",
        ),
    ] = None,
    api_base_url: Annotated[
        str,
        Parameter(name=("--url", "-u"), help="OpenAI-compatible API base URL"),
    ] = DEFAULT_API_BASE_URL,
    max_tokens: Annotated[
        int,
        Parameter(
            name=("--max-tokens",),
            help="Maximum tokens to generate per image",
        ),
    ] = DEFAULT_MAX_TOKENS,
    timeout: Annotated[
        float,
        Parameter(
            name=("--timeout",),
            help="HTTP timeout in seconds for each request",
        ),
    ] = DEFAULT_TIMEOUT,
    max_dimension: Annotated[
        int | None,
        Parameter(
            name=("--max-dimension",),
            help="Downscale images to this many pixels (longest side) and send as JPEG",
        ),
    ] = None,
    jpeg_quality: Annotated[
        int,
        Parameter(
            name=("--jpeg-quality",),
            help="JPEG quality (1-100) used together with --max-dimension",
        ),
    ] = DEFAULT_JPEG_QUALITY,
    as_json: Annotated[
        bool,
        Parameter(
            name=("--json",),
            help="Print results as a JSON array instead of a readable listing",
        ),
    ] = False,
    file_log_level: Annotated[
        LogLevel,
        Parameter(
            name="--file-log-level",
            help="Log level for file (use 'OFF' to disable)",
        ),
    ] = "DEBUG",
    log_folder: Annotated[
        Path,
        Parameter(
            name=("--log-folder",),
            help="Folder where log files are stored",
        ),
    ] = Path("logs"),
    console_log_level: Annotated[
        LogLevel,
        Parameter(
            name="--console-log-level",
            help="Log level for console (use 'OFF' to disable)",
        ),
    ] = "INFO",
) -> None:
    """
    Generate a title, description and keywords for each image with a vision model.

    Inputs:
    - One or more --input/-i paths (files and/or directories; repeatable).
    - Only image files are queued; a file whose name is already queued is skipped.

    Behavior:
    - Asks for the API key, verifies it and lists the vision-capable models.
    - Processes images one at a time, in order, with a single attempt per image.
    - A failed image is reported inline and does not stop the batch.

    Exit status: returns 1 if no images were queued, the key could not be verified,
    or any image failed.

    Examples:
        metadata-injector -i ./photos
        metadata-injector -i ./photos -r --model gpt-4o-mini --json

    """
    setup_logging(
        file_log_level=file_log_level,
        console_log_level=console_log_level,
        log_folder=log_folder,
    )
    logger.info(
        "starting_metadata_injector",
        inputs=[str(p) for p in (inputs or [])],
        extensions=image_extensions,
        model=model_name,
        api_base_url=api_base_url,
        recursive=recursive,
        max_tokens=max_tokens,
        max_dimension=max_dimension,
    )

    queue = _build_queue(inputs, image_extensions, recursive=recursive)
    api_key = _prompt_api_key()
    logger.debug("api_key_entered", api_key_present=bool(api_key))

    session = Session(api_key=api_key)
    try:
        models = asyncio.run(
            _verify_session(session, api_base_url=api_base_url, timeout=timeout),
        )
        session.select_model(_choose_model(models, model_name))
    except CredentialError as exc:
        logger.error("credential_error", error=str(exc))
        raise SystemExit(1) from exc

    summary = asyncio.run(
        _run_batch(
            queue,
            session,
            api_base_url=api_base_url,
            timeout=timeout,
            max_tokens=max_tokens,
            max_dimension=max_dimension,
            jpeg_quality=jpeg_quality,
        ),
    )

    if as_json:
        print(json.dumps([item.to_dict() for item in queue], ensure_ascii=False, indent=2))  # noqa: T201
    else:
        for item in queue:
            print(render_item(item))  # noqa: T201

    logger.info(
        "processing_summary",
        total_files=summary.total,
        successful=summary.completed,
        failed=summary.failed,
        seconds=summary.seconds,
    )
    if summary.failed_files:
        logger.error("files_failed", files=summary.failed_files)
        raise SystemExit(1)


if __name__ == "__main__":
    app()
