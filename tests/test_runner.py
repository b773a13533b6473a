"""Tests for the sequential batch runner and its per-item state machine."""

import asyncio
from io import BytesIO
from pathlib import Path

import httpx
import pytest
from conftest import FakeOpenAI, completion_response, metadata_json
from PIL import Image

import metadata_injector.runner as runner_module
from metadata_injector.errors import BatchInProgressError, CredentialError
from metadata_injector.intake import ImageQueue
from metadata_injector.models import BatchStatus, BatchSummary, ItemStatus, QueueItem
from metadata_injector.runner import BatchRunner
from metadata_injector.session import Session


def _ready_session() -> Session:
    session = Session(api_key="sk-test", models=["gpt-4o-mini"], verified=True)
    session.select_model("gpt-4o-mini")
    return session


def _queue_with_files(tmp_path: Path, *names: str) -> ImageQueue:
    queue = ImageQueue()
    paths = []
    for name in names:
        path = tmp_path / name
        path.write_bytes(name.encode())
        paths.append(path)
    queue.add_files(paths)
    return queue


def _run(runner: BatchRunner, fake_api: FakeOpenAI, session: Session) -> BatchSummary:
    async def run() -> BatchSummary:
        async with fake_api.client() as client:
            runner.client = client
            return await runner.run(session)

    return asyncio.run(run())


def _assert_exclusive(item: QueueItem) -> None:
    if item.status is ItemStatus.COMPLETED:
        assert item.metadata is not None
        assert item.error_message is None
    elif item.status is ItemStatus.ERROR:
        assert item.metadata is None
        assert item.error_message
    else:
        assert item.metadata is None
        assert item.error_message is None


def test_run_processes_items_in_queue_order(tmp_path: Path, fake_api: FakeOpenAI) -> None:
    """A, B and C are sent and resolved in insertion order."""
    queue = _queue_with_files(tmp_path, "a.jpg", "b.jpg", "c.jpg")
    resolved: list[str] = []

    def on_update(item: QueueItem) -> None:
        if item.status in (ItemStatus.COMPLETED, ItemStatus.ERROR):
            resolved.append(item.name)

    runner = BatchRunner(queue, None, on_update=on_update)  # type: ignore[arg-type]
    summary = _run(runner, fake_api, _ready_session())

    assert fake_api.sent_images() == [b"a.jpg", b"b.jpg", b"c.jpg"]
    assert resolved == ["a.jpg", "b.jpg", "c.jpg"]
    assert [item.status for item in queue] == [ItemStatus.COMPLETED] * 3
    assert (summary.processed, summary.completed, summary.failed) == (3, 3, 0)
    assert runner.status is BatchStatus.DONE


def test_partial_failure_does_not_abort_batch(tmp_path: Path, fake_api: FakeOpenAI) -> None:
    """The second item fails on the service side; the first and third still complete."""
    queue = _queue_with_files(tmp_path, "a.jpg", "b.jpg", "c.jpg")
    fake_api.completions.extend(
        [
            completion_response(metadata_json(title="First")),
            httpx.Response(500, json={"error": {"message": "The server had an error"}}),
            completion_response(metadata_json(title="Third")),
        ],
    )

    runner = BatchRunner(queue, None)  # type: ignore[arg-type]
    summary = _run(runner, fake_api, _ready_session())

    item_a, item_b, item_c = queue.items
    assert item_a.status is ItemStatus.COMPLETED
    assert item_a.metadata is not None
    assert item_a.metadata.title == "First"
    assert item_b.status is ItemStatus.ERROR
    assert item_b.error_message == "The server had an error"
    assert item_c.status is ItemStatus.COMPLETED
    assert summary.failed_files == ["b.jpg"]
    assert runner.status is BatchStatus.DONE
    assert not queue.locked
    for item in queue:
        _assert_exclusive(item)


def test_malformed_completion_marks_item_error(tmp_path: Path, fake_api: FakeOpenAI) -> None:
    """Transport success with non-JSON content ends in error, not empty metadata."""
    queue = _queue_with_files(tmp_path, "a.jpg")
    fake_api.completions.append(completion_response("Sure! Here is your metadata."))

    _run(BatchRunner(queue, None), fake_api, _ready_session())  # type: ignore[arg-type]

    (item,) = queue.items
    assert item.status is ItemStatus.ERROR
    assert item.metadata is None
    assert item.error_message is not None
    assert item.error_message.startswith("Could not parse metadata")


def test_unreadable_file_is_recorded_and_batch_continues(
    tmp_path: Path,
    fake_api: FakeOpenAI,
) -> None:
    """An encoding failure is attached to the item and no request is sent for it."""
    queue = _queue_with_files(tmp_path, "a.jpg", "b.jpg")
    (tmp_path / "a.jpg").unlink()

    _run(BatchRunner(queue, None), fake_api, _ready_session())  # type: ignore[arg-type]

    item_a, item_b = queue.items
    assert item_a.status is ItemStatus.ERROR
    assert item_a.error_message is not None
    assert "a.jpg" in item_a.error_message
    assert item_b.status is ItemStatus.COMPLETED
    assert fake_api.sent_images() == [b"b.jpg"]


def test_second_run_processes_nothing(tmp_path: Path, fake_api: FakeOpenAI) -> None:
    """After a run every item is completed or failed, so a rerun sends no requests."""
    queue = _queue_with_files(tmp_path, "a.jpg", "b.jpg")
    fake_api.completions.append(httpx.Response(400, json={"error": {"message": "bad image"}}))
    runner = BatchRunner(queue, None)  # type: ignore[arg-type]
    session = _ready_session()

    _run(runner, fake_api, session)
    sent_after_first = len(fake_api.completion_requests())
    summary = _run(runner, fake_api, session)

    assert sent_after_first == 2
    assert len(fake_api.completion_requests()) == 2
    assert (summary.processed, summary.skipped) == (0, 2)
    assert [item.status for item in queue] == [ItemStatus.ERROR, ItemStatus.COMPLETED]


def test_new_files_after_a_run_are_picked_up(tmp_path: Path, fake_api: FakeOpenAI) -> None:
    """Only the newly added pending file is processed by the next run."""
    queue = _queue_with_files(tmp_path, "a.jpg")
    runner = BatchRunner(queue, None)  # type: ignore[arg-type]
    session = _ready_session()
    _run(runner, fake_api, session)

    extra = tmp_path / "b.jpg"
    extra.write_bytes(b"b.jpg")
    queue.add_files([extra])
    summary = _run(runner, fake_api, session)

    assert summary.processed == 1
    assert fake_api.sent_images() == [b"a.jpg", b"b.jpg"]


@pytest.mark.parametrize(
    "session",
    [
        Session(),
        Session(api_key="sk-test"),
        Session(api_key="sk-test", models=["gpt-4o"], verified=True),
    ],
)
def test_run_without_credential_changes_nothing(
    tmp_path: Path,
    fake_api: FakeOpenAI,
    session: Session,
) -> None:
    """Missing key, unverified key or no model: refused up front, no calls, queue unchanged."""
    queue = _queue_with_files(tmp_path, "a.jpg", "b.jpg")
    runner = BatchRunner(queue, None)  # type: ignore[arg-type]

    with pytest.raises(CredentialError):
        _run(runner, fake_api, session)

    assert fake_api.requests == []
    assert [item.status for item in queue] == [ItemStatus.PENDING] * 2
    assert runner.status is BatchStatus.IDLE
    assert not queue.locked


def test_queue_is_locked_while_running(tmp_path: Path, fake_api: FakeOpenAI) -> None:
    """During a run the queue refuses changes and a second run is rejected."""
    queue = _queue_with_files(tmp_path, "a.jpg", "b.jpg")
    observed: list[tuple[str, ItemStatus, bool]] = []
    runner = BatchRunner(queue, None)  # type: ignore[arg-type]
    session = _ready_session()
    nested_errors: list[Exception] = []

    def on_update(item: QueueItem) -> None:
        observed.append((item.name, item.status, queue.locked))
        _assert_exclusive(item)

    runner.on_update = on_update

    async def run() -> None:
        async with fake_api.client() as client:
            runner.client = client
            task = asyncio.create_task(runner.run(session))
            await asyncio.sleep(0)
            try:
                await runner.run(session)
            except BatchInProgressError as exc:
                nested_errors.append(exc)
            await task

    asyncio.run(run())

    assert len(nested_errors) == 1
    assert observed == [
        ("a.jpg", ItemStatus.PROCESSING, True),
        ("a.jpg", ItemStatus.COMPLETED, True),
        ("b.jpg", ItemStatus.PROCESSING, True),
        ("b.jpg", ItemStatus.COMPLETED, True),
    ]
    assert not queue.locked


def test_second_runner_on_locked_queue_is_rejected(tmp_path: Path, fake_api: FakeOpenAI) -> None:
    """A different runner cannot start on a queue another run has locked."""
    queue = _queue_with_files(tmp_path, "a.jpg", "b.jpg")
    first = BatchRunner(queue, None)  # type: ignore[arg-type]
    second = BatchRunner(queue, None)  # type: ignore[arg-type]
    session = _ready_session()
    rejected: list[Exception] = []

    async def run() -> None:
        async with fake_api.client() as client:
            first.client = client
            second.client = client
            task = asyncio.create_task(first.run(session))
            await asyncio.sleep(0)
            assert queue.locked
            try:
                await second.run(session)
            except BatchInProgressError as exc:
                rejected.append(exc)
            await task

    asyncio.run(run())

    assert len(rejected) == 1
    assert second.status is BatchStatus.IDLE
    assert len(fake_api.completion_requests()) == 2
    assert [item.status for item in queue] == [ItemStatus.COMPLETED] * 2


def _write_png(path: Path, size: int) -> None:
    buf = BytesIO()
    Image.new("RGB", (size, size), (10, 120, 200)).save(buf, format="PNG")
    path.write_bytes(buf.getvalue())


def test_oversized_image_fails_alone(
    tmp_path: Path,
    fake_api: FakeOpenAI,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """An image Pillow refuses to decode is an item error; the next image still completes."""
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
    _write_png(tmp_path / "huge.png", 200)
    _write_png(tmp_path / "tiny.png", 5)
    queue = ImageQueue()
    queue.add_files([tmp_path / "huge.png", tmp_path / "tiny.png"])

    runner = BatchRunner(queue, None, max_dimension=50)  # type: ignore[arg-type]
    summary = _run(runner, fake_api, _ready_session())

    huge, tiny = queue.items
    assert huge.status is ItemStatus.ERROR
    assert huge.error_message is not None
    assert huge.error_message.startswith("Could not decode huge.png")
    assert tiny.status is ItemStatus.COMPLETED
    assert summary.failed_files == ["huge.png"]
    assert len(fake_api.completion_requests()) == 1


def test_unexpected_error_does_not_leave_item_processing(
    tmp_path: Path,
    fake_api: FakeOpenAI,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """An unforeseen exception propagates, but the item ends in error and the queue unlocks."""
    queue = _queue_with_files(tmp_path, "a.jpg", "b.jpg")

    async def explode(*_args: object, **_kwargs: object) -> str:
        msg = "disk vanished"
        raise RuntimeError(msg)

    monkeypatch.setattr(runner_module, "encode_image", explode)
    runner = BatchRunner(queue, None)  # type: ignore[arg-type]

    with pytest.raises(RuntimeError, match="disk vanished"):
        _run(runner, fake_api, _ready_session())

    item_a, item_b = queue.items
    assert item_a.status is ItemStatus.ERROR
    assert item_a.error_message == "Unexpected error: disk vanished"
    assert item_b.status is ItemStatus.PENDING
    assert not queue.locked
    assert runner.status is BatchStatus.DONE
    assert fake_api.requests == []
