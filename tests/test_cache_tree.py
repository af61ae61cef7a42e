"""Key parsing and directory aggregation."""

from bucketdock.cache import ancestor_paths, build_directory_tree, get_unique_parent_paths, parse_key
from bucketdock.providers import StorageObject


def test_parse_key_keeps_trailing_slash_on_parent() -> None:
    assert parse_key("a/b/c.txt") == ("a/b/", "c.txt")
    assert parse_key("root.txt") == ("", "root.txt")


def test_ancestor_paths_are_shallowest_first() -> None:
    assert ancestor_paths("a/b/c.txt") == ["", "a/", "a/b/"]
    assert ancestor_paths("top.txt") == [""]


def test_get_unique_parent_paths_merges_keys() -> None:
    paths = get_unique_parent_paths(["a/b/1.txt", "a/2.txt", "c/3.txt"])

    assert paths == ["", "a/", "a/b/", "c/"]


def test_build_directory_tree_aggregates_bottom_up() -> None:
    files = [
        StorageObject(key="root.txt", size=1, last_modified="2024-01-01T00:00:00Z"),
        StorageObject(key="docs/a.txt", size=10, last_modified="2024-02-01T00:00:00Z"),
        StorageObject(key="docs/deep/b.txt", size=100, last_modified="2024-03-01T00:00:00Z"),
        StorageObject(key="media/c.png", size=1000, last_modified="2023-12-01T00:00:00Z"),
    ]
    reports: list[tuple[int, int]] = []

    nodes = build_directory_tree(
        files, bucket="b", account_id="acc", progress=lambda *args: reports.append(args), now=42
    )
    by_path = {node.path: node for node in nodes}

    assert nodes[-1].path == ""
    assert set(by_path) == {"", "docs/", "docs/deep/", "media/"}
    docs = by_path["docs/"]
    assert (docs.file_count, docs.total_file_count) == (1, 2)
    assert (docs.size, docs.total_size) == (10, 110)
    assert docs.last_modified == "2024-03-01T00:00:00Z"
    assert docs.parent_path == ""
    root = by_path[""]
    assert root.parent_path is None
    assert (root.total_file_count, root.total_size) == (4, 1111)
    assert by_path["docs/deep/"].last_updated == 42
    assert reports[0] == (0, 4)
    assert reports[-1] == (4, 4)


def test_build_directory_tree_of_empty_bucket_has_root_only() -> None:
    nodes = build_directory_tree([])

    assert [node.path for node in nodes] == [""]
    assert nodes[0].total_file_count == 0
    assert nodes[0].last_modified is None
