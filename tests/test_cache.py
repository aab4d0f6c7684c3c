import threading

import pytest

from cliptrail.cache import ItemCache

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def _image(n: int) -> bytes:
    return PNG + bytes([n])


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def image_ids(storage):
    return [storage.add_image(_image(i), f"Image {i}") for i in range(3)]


class TestMetadata:
    def test_loaded_on_construction(self, storage):
        storage.add_text("hello")
        cache = ItemCache(storage)
        assert [m.content for m in cache.get_all_meta()] == ["hello"]
        assert cache.item_count() == 1

    def test_fresh_metadata_not_reloaded(self, storage, clock):
        cache = ItemCache(storage, refresh_interval=5.0, clock=clock)
        storage.add_text("hello")
        clock.now = 4.0
        assert cache.get_all_meta() == []

    def test_stale_metadata_reloaded(self, storage, clock):
        cache = ItemCache(storage, refresh_interval=5.0, clock=clock)
        storage.add_text("hello")
        clock.now = 5.5
        assert [m.content for m in cache.get_all_meta()] == ["hello"]

    def test_force_refresh(self, storage, clock):
        cache = ItemCache(storage, clock=clock)
        storage.add_text("hello")
        cache.force_refresh()
        assert cache.item_count() == 1

    def test_returns_copy(self, storage):
        storage.add_text("hello")
        cache = ItemCache(storage)
        cache.get_all_meta()[0].content = "changed"
        assert cache.get_all_meta()[0].content == "hello"


class TestImageCache:
    def test_miss_loads_from_storage(self, storage, image_ids):
        cache = ItemCache(storage)
        assert cache.get_image_data(image_ids[0]) == _image(0)
        assert cache.cached_image_ids() == [image_ids[0]]

    def test_least_recently_used_evicted(self, storage, image_ids):
        cache = ItemCache(storage, max_image_cache=2)
        first, second, third = image_ids
        cache.get_image_data(first)
        cache.get_image_data(second)
        cache.get_image_data(first)
        cache.get_image_data(third)
        assert cache.cached_image_ids() == [first, third]

    def test_capacity_never_exceeded(self, storage, image_ids):
        cache = ItemCache(storage, max_image_cache=2)
        for item_id in image_ids:
            cache.get_image_data(item_id)
        assert len(cache.cached_image_ids()) == 2

    def test_text_item_not_cached(self, storage):
        item_id = storage.add_text("hello")
        cache = ItemCache(storage)
        assert cache.get_image_data(item_id) is None
        assert cache.cached_image_ids() == []

    def test_invalid_capacity_uses_default(self, storage):
        cache = ItemCache(storage, max_image_cache=0)
        assert cache.stats().max_image_cache > 0

    def test_preload(self, storage, image_ids):
        cache = ItemCache(storage)
        cache.preload_image_data(image_ids[:2])
        assert cache.cached_image_ids() == image_ids[:2]

    def test_evict(self, storage, image_ids):
        cache = ItemCache(storage)
        cache.get_image_data(image_ids[0])
        cache.evict_image_data(image_ids[0])
        cache.evict_image_data(999)
        assert cache.cached_image_ids() == []

    def test_deleted_item_dropped_on_refresh(self, storage, image_ids):
        cache = ItemCache(storage)
        cache.get_image_data(image_ids[0])
        storage.delete(image_ids[0])
        cache.force_refresh()
        assert cache.cached_image_ids() == []
        assert cache.get_image_data(image_ids[0]) is None

    def test_deleted_item_dropped_once_stale(self, storage, image_ids, clock):
        cache = ItemCache(storage, refresh_interval=5.0, clock=clock)
        cache.get_image_data(image_ids[0])
        storage.delete(image_ids[0])
        clock.now = 6.0
        assert cache.get_image_data(image_ids[0]) is None


class TestConcurrentAccess:
    def test_capacity_holds_under_concurrent_use(self, storage):
        ids = [storage.add_image(_image(i), f"Image {i}") for i in range(12)]
        cache = ItemCache(storage, max_image_cache=3)
        workers = 6
        barrier = threading.Barrier(workers)
        errors = []
        oversize = []

        def worker(n):
            barrier.wait()
            try:
                for round_ in range(50):
                    item_id = ids[(n + round_) % len(ids)]
                    assert cache.get_image_data(item_id) == _image(ids.index(item_id))
                    if round_ % 3 == 0:
                        cache.evict_image_data(ids[(n * 2 + round_) % len(ids)])
                    if len(cache.cached_image_ids()) > 3:
                        oversize.append(n)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10.0)

        assert errors == []
        assert oversize == []
        assert len(cache.cached_image_ids()) <= 3
        assert cache.stats().cached_images <= 3


class TestFullItem:
    def test_image_item_has_payload(self, storage, image_ids):
        cache = ItemCache(storage)
        item = cache.get_full_item(image_ids[1])
        assert item.image_data == _image(1)
        assert image_ids[1] in cache.cached_image_ids()

    def test_text_item(self, storage):
        item_id = storage.add_text("hello")
        cache = ItemCache(storage)
        item = cache.get_full_item(item_id)
        assert item.content == "hello"
        assert item.image_data is None

    def test_item_added_after_refresh(self, storage, clock):
        cache = ItemCache(storage, clock=clock)
        item_id = storage.add_text("late")
        assert cache.get_full_item(item_id).content == "late"

    def test_missing_item(self, storage):
        cache = ItemCache(storage)
        assert cache.get_full_item(12345) is None


class TestStats:
    def test_stats(self, storage, image_ids):
        cache = ItemCache(storage, max_image_cache=4)
        cache.get_image_data(image_ids[0])
        stats = cache.stats()
        assert stats.total_items == 3
        assert stats.cached_images == 1
        assert stats.max_image_cache == 4
        assert stats.utilization == 0.25
        assert stats.last_refresh is not None
