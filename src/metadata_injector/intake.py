"""In-memory queue of images waiting for metadata generation."""

import itertools
import mimetypes
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

from metadata_injector.errors import QueueLockedError
from metadata_injector.models import ItemStatus, QueueItem


if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator


def guess_media_type(path: Path) -> str | None:
    """
    Guess a file's media type from its name.

    Examples:
        >>> guess_media_type(Path("beach.JPG"))
        'image/jpeg'
        >>> guess_media_type(Path("notes.txt"))
        'text/plain'

    """
    media_type, _ = mimetypes.guess_type(path.name)
    return media_type


def is_image_media_type(media_type: str | None) -> bool:
    return media_type is not None and media_type.startswith("image/")


class ImageQueue:
    """
    Ordered queue of QueueItems, owned by the caller and passed to the batch runner.

    Filenames are unique within the queue: a candidate whose name is already queued is
    dropped, as is any candidate that is not an image. While a batch run holds the lock,
    adding and removing items is refused.
    """

    def __init__(self) -> None:
        self._items: list[QueueItem] = []
        self._ids = itertools.count(1)
        self._locked = False

    @property
    def items(self) -> list[QueueItem]:
        return list(self._items)

    @property
    def locked(self) -> bool:
        return self._locked

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> "Iterator[QueueItem]":
        return iter(list(self._items))

    def lock(self) -> None:
        self._locked = True

    def unlock(self) -> None:
        self._locked = False

    def _ensure_unlocked(self, action: str) -> None:
        if self._locked:
            msg = f"Cannot {action} while a batch run is in progress."
            raise QueueLockedError(msg)

    def get(self, item_id: int) -> QueueItem:
        for item in self._items:
            if item.id == item_id:
                return item
        raise KeyError(item_id)

    def pending(self) -> list[QueueItem]:
        return [item for item in self._items if item.status is ItemStatus.PENDING]

    def add_files(self, candidates: "Iterable[Path]") -> list[QueueItem]:
        """
        Append new image files to the end of the queue, preserving their order.

        Args:
            candidates: Paths to candidate files (any type; non-images are dropped)

        Returns:
            The QueueItems that were created, in insertion order.

        """
        self._ensure_unlocked("add files")

        seen = {item.name for item in self._items}
        added: list[QueueItem] = []
        for candidate in candidates:
            path = Path(candidate)
            media_type = guess_media_type(path)
            if not is_image_media_type(media_type):
                logger.debug("intake_skipped_non_image", file=path.name, media_type=media_type)
                continue
            if path.name in seen:
                logger.debug("intake_skipped_duplicate", file=path.name)
                continue

            item = QueueItem(id=next(self._ids), path=path, media_type=str(media_type))
            self._items.append(item)
            seen.add(path.name)
            added.append(item)

        logger.debug("intake_completed", added=len(added), queued=len(self._items))
        return added

    def remove(self, item_id: int) -> QueueItem:
        """Remove an item by id. Not allowed during a run or while the item is processing."""
        self._ensure_unlocked("remove files")
        item = self.get(item_id)
        if item.status is ItemStatus.PROCESSING:
            msg = f"Cannot remove {item.name} while it is being processed."
            raise QueueLockedError(msg)
        self._items.remove(item)
        logger.debug("intake_item_removed", file=item.name, id=item_id)
        return item

    def clear(self) -> None:
        self._ensure_unlocked("clear the queue")
        self._items.clear()
