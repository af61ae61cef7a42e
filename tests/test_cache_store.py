"""Cache store reads, scope isolation, and incremental patches."""

from __future__ import annotations

import pytest

from bucketdock.cache import CacheStore, Database
from bucketdock.events import CACHE_UPDATED, PATHS_CREATED, PATHS_REMOVED, EventBus
from bucketdock.providers import StorageObject


def _obj(key: str, size: int = 1, stamp: str = "2024-01-01T00:00:00Z") -> StorageObject:
    return StorageObject(key=key, size=size, last_modified=stamp)


@pytest.fixture
def store(database: Database, events: EventBus) -> CacheStore:
    cache = CacheStore(database, events=events)
    cache.store_all_files(
        "acc",
        "photos",
        [
            _obj("readme.md", 5),
            _obj("trips/rome/colosseum.jpg", 300),
            _obj("trips/rome/forum.jpg", 200),
            _obj("trips/paris.jpg", 100),
            _obj("docs/100%_done.txt", 7),
        ],
    )
    cache.build_directory_tree("acc", "photos")
    return cache


def test_folder_contents_lists_direct_children_only(store: CacheStore) -> None:
    root = store.get_folder_contents("acc", "photos", "")
    trips = store.get_folder_contents("acc", "photos", "trips/")

    assert [item.key for item in root.files] == ["readme.md"]
    assert root.folders == ["docs/", "trips/"]
    assert [item.name for item in trips.files] == ["paris.jpg"]
    assert trips.folders == ["trips/rome/"]


def test_scopes_are_isolated(store: CacheStore) -> None:
    store.store_all_files("acc", "videos", [_obj("trips/rome/clip.mp4", 9000)])
    store.store_all_files("other", "photos", [_obj("secret.txt", 1)])

    assert store.calculate_folder_size("acc", "photos", "trips/") == 600
    assert store.calculate_folder_size("acc", "videos", "trips/") == 9000
    assert store.search_files("acc", "photos", "secret").total_count == 0
    assert store.last_sync_time("other", "photos") is not None
    assert store.last_sync_time("other", "videos") is None


def test_search_requires_every_term_and_escapes_wildcards(store: CacheStore) -> None:
    both = store.search_files("acc", "photos", "ROME jpg")
    literal = store.search_files("acc", "photos", "100%")
    underscore = store.search_files("acc", "photos", "o_d")
    limited = store.search_files("acc", "photos", "jpg", limit=1)

    assert [item.key for item in both.files] == ["trips/rome/colosseum.jpg", "trips/rome/forum.jpg"]
    assert [item.key for item in literal.files] == ["docs/100%_done.txt"]
    assert underscore.total_count == 0
    assert limited.total_count == 3
    assert len(limited.files) == 1
    assert store.search_files("acc", "photos", "   ").total_count == 0


def test_directory_nodes_carry_totals(store: CacheStore) -> None:
    trips = store.get_directory_node("acc", "photos", "trips/")

    assert trips is not None
    assert (trips.file_count, trips.total_file_count, trips.total_size) == (1, 3, 600)
    assert {node.path for node in store.get_all_directory_nodes("acc", "photos")} == {
        "",
        "docs/",
        "trips/",
        "trips/rome/",
    }


def test_apply_delete_refreshes_ancestors_and_drops_empty_folders(
    store: CacheStore, events: EventBus
) -> None:
    received: list[tuple[str, object]] = []
    events.subscribe("*", lambda name, payload: received.append((name, payload)))

    delta = store.apply_delete("acc", "photos", ["trips/rome/colosseum.jpg", "trips/rome/forum.jpg"])

    assert delta.removed_paths == ["trips/rome/"]
    assert store.get_directory_node("acc", "photos", "trips/rome/") is None
    trips = store.get_directory_node("acc", "photos", "trips/")
    assert trips is not None and trips.total_size == 100
    root = store.get_directory_node("acc", "photos", "")
    assert root is not None and root.total_file_count == 3
    names = [name for name, _ in received]
    assert names == [PATHS_REMOVED, CACHE_UPDATED]


def test_apply_move_keeps_size_and_creates_folders(store: CacheStore, events: EventBus) -> None:
    received: list[str] = []
    events.subscribe(PATHS_CREATED, lambda name, payload: received.extend(payload.created_paths))

    delta = store.apply_move("acc", "photos", [("trips/paris.jpg", "archive/2023/paris.jpg")])

    moved = store.get_cached_file("acc", "photos", "archive/2023/paris.jpg")
    assert moved is not None and moved.size == 100
    assert store.get_cached_file("acc", "photos", "trips/paris.jpg") is None
    assert sorted(delta.created_paths) == ["archive/", "archive/2023/"]
    assert sorted(received) == ["archive/", "archive/2023/"]
    node = store.get_directory_node("acc", "photos", "archive/")
    assert node is not None and node.total_size == 100


def test_apply_upsert_overwrites_existing_rows(store: CacheStore) -> None:
    store.apply_upsert("acc", "photos", [_obj("readme.md", 50, "2025-01-01T00:00:00Z")])

    root = store.get_directory_node("acc", "photos", "")
    assert root is not None
    assert root.size == 50
    assert root.last_modified == "2025-01-01T00:00:00Z"
    assert store.calculate_folder_size("acc", "photos", "") == 50 + 600 + 7


def test_folder_prefixes_are_case_sensitive(database: Database) -> None:
    cache = CacheStore(database)
    cache.store_all_files("acc", "mixed", [_obj("Docs/a.txt", 10), _obj("docs/b.txt", 20)])
    cache.build_directory_tree("acc", "mixed")

    assert cache.calculate_folder_size("acc", "mixed", "Docs/") == 10
    assert cache.calculate_folder_size("acc", "mixed", "docs/") == 20

    cache.apply_upsert("acc", "mixed", [_obj("Docs/c.txt", 5)])
    upper = cache.get_directory_node("acc", "mixed", "Docs/")
    assert (upper.total_file_count, upper.total_size) == (2, 15)

    delta = cache.apply_delete("acc", "mixed", ["docs/b.txt"])
    assert delta.removed_paths == ["docs/"]
    assert cache.get_directory_node("acc", "mixed", "docs/") is None
    assert cache.get_directory_node("acc", "mixed", "Docs/").total_size == 15


def test_staged_listing_is_invisible_until_published(store: CacheStore) -> None:
    store.stage_files("acc", "photos", [_obj("fresh.txt", 3)])

    assert store.get_cached_file("acc", "photos", "fresh.txt") is None

    count = store.publish_staged("acc", "photos", completed_at=1234)

    assert count == 1
    assert store.get_cached_file("acc", "photos", "fresh.txt") is not None
    assert store.get_cached_file("acc", "photos", "readme.md") is None
    assert store.last_sync_time("acc", "photos") == 1234
    assert store.get_staged_files("acc", "photos") == []


def test_clear_cache_forgets_scope(store: CacheStore) -> None:
    store.clear_cache("acc", "photos")

    assert store.get_all_cached_files("acc", "photos") == []
    assert store.get_all_directory_nodes("acc", "photos") == []
    assert store.last_sync_time("acc", "photos") is None


def test_failed_session_rolls_back_and_file_database_persists(tmp_path) -> None:
    path = tmp_path / "cache.db"
    database = Database(path)
    cache = CacheStore(database)

    with pytest.raises(RuntimeError):
        with database.session():
            cache.store_all_files("acc", "photos", [_obj("lost.txt")])
            raise RuntimeError("abort")

    assert cache.get_all_cached_files("acc", "photos") == []
    assert cache.last_sync_time("acc", "photos") is None

    cache.store_all_files("acc", "photos", [_obj("kept.txt", 4)])
    database.close()

    reopened = Database(path)
    try:
        assert [item.key for item in CacheStore(reopened).get_all_cached_files("acc", "photos")] == ["kept.txt"]
    finally:
        reopened.close()
