"""Read-through cache in front of the clipboard store.

Metadata for every item stays resident and is reloaded once it is older
than the refresh interval. Image payloads are kept in a small LRU cache.
The store stays the source of truth: on any doubt, re-query it.
"""

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable
from datetime import datetime

from cliptrail.config import IMAGE_CACHE_SIZE, META_REFRESH_INTERVAL
from cliptrail.models import CacheStats, ClipboardItem, ClipboardItemMeta, ContentType, copy_meta
from cliptrail.storage import StorageManager

logger = logging.getLogger(__name__)


class ItemCache:
    def __init__(
        self,
        storage: StorageManager,
        max_image_cache: int = IMAGE_CACHE_SIZE,
        refresh_interval: float = META_REFRESH_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._storage = storage
        self._max_image_cache = max_image_cache if max_image_cache > 0 else IMAGE_CACHE_SIZE
        self._refresh_interval = refresh_interval
        self._clock = clock
        self._lock = threading.RLock()

        self._meta_items: list[ClipboardItemMeta] = []
        self._refreshed_at: float | None = None
        self._last_refresh: datetime | None = None
        # id -> payload; order is recency, most recent last
        self._images: OrderedDict[int, bytes] = OrderedDict()

        self.force_refresh()

    def force_refresh(self) -> None:
        """Reload metadata and drop cached images of items no longer stored."""
        items = self._storage.get_all_meta()
        with self._lock:
            self._meta_items = items
            self._refreshed_at = self._clock()
            self._last_refresh = datetime.now()
            live_ids = {item.id for item in items}
            for item_id in [i for i in self._images if i not in live_ids]:
                del self._images[item_id]

    def _is_stale(self) -> bool:
        return self._refreshed_at is None or self._clock() - self._refreshed_at > self._refresh_interval

    def get_all_meta(self) -> list[ClipboardItemMeta]:
        """All item metadata in display order, as a copy the caller may modify."""
        with self._lock:
            if self._is_stale():
                logger.debug("Metadata cache stale, reloading")
                self.force_refresh()
            return copy_meta(self._meta_items)

    def item_count(self) -> int:
        with self._lock:
            return len(self._meta_items)

    def get_image_data(self, item_id: int) -> bytes | None:
        """Image payload for an item, from the LRU or the store.

        A payload deleted from the store is served until the next metadata
        refresh; callers deleting items should call ``evict_image_data``.
        """
        with self._lock:
            if self._is_stale():
                self.force_refresh()
            data = self._images.get(item_id)
            if data is not None:
                self._images.move_to_end(item_id)
                return data

            data = self._storage.get_image_data(item_id)
            if data is not None:
                self._put_image(item_id, data)
            return data

    def _put_image(self, item_id: int, data: bytes) -> None:
        self._images[item_id] = data
        self._images.move_to_end(item_id)
        while len(self._images) > self._max_image_cache:
            evicted_id, _ = self._images.popitem(last=False)
            logger.debug("Evicted image %d from cache", evicted_id)

    def get_full_item(self, item_id: int) -> ClipboardItem | None:
        with self._lock:
            if self._is_stale():
                self.force_refresh()
            meta = next((m for m in self._meta_items if m.id == item_id), None)
        if meta is None:
            # not seen since the last refresh; ask the store directly
            return self._storage.get_by_id(item_id)

        item = ClipboardItem.from_meta(meta)
        if meta.content_type == ContentType.IMAGE:
            item.image_data = self.get_image_data(item_id)
        return item

    def preload_image_data(self, item_ids: Iterable[int]) -> None:
        for item_id in item_ids:
            with self._lock:
                cached = item_id in self._images
            if not cached:
                self.get_image_data(item_id)

    def evict_image_data(self, item_id: int) -> None:
        with self._lock:
            self._images.pop(item_id, None)

    def cached_image_ids(self) -> list[int]:
        """Cached ids from least to most recently used."""
        with self._lock:
            return list(self._images)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                total_items=len(self._meta_items),
                cached_images=len(self._images),
                max_image_cache=self._max_image_cache,
                utilization=len(self._images) / self._max_image_cache,
                last_refresh=self._last_refresh,
            )
