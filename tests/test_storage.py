import datetime as dt
import uuid

import pytest

from foldly.exceptions import StorageError
from foldly.services.storage_service import (
    LocalStorage,
    link_storage_path,
    workspace_storage_path,
    user_storage_prefixes,
    sanitize_segment,
    sanitize_filename,
)
from foldly.utils.files import generate_unique_name, split_extension

NOW = dt.datetime(2024, 3, 5, 12, 30, tzinfo=dt.timezone.utc)


async def test_upload_and_read(storage):
    path = await storage.upload("links/u/x/a.txt", b"data", "text/plain")

    assert path == "links/u/x/a.txt"
    assert await storage.read(path) == b"data"


async def test_upload_never_overwrites(storage):
    await storage.upload("a/b.txt", b"first", "text/plain")

    with pytest.raises(StorageError):
        await storage.upload("a/b.txt", b"second", "text/plain")

    assert await storage.read("a/b.txt") == b"first"


@pytest.mark.parametrize("path", ["../escape.txt", "/etc/passwd", "a/../../b"])
async def test_paths_cannot_escape_root(storage, path):
    with pytest.raises(StorageError):
        await storage.upload(path, b"x", "text/plain")


async def test_delete_missing_object_counts_as_deleted(storage):
    await storage.upload("a/b.txt", b"x", "text/plain")

    assert await storage.delete(["a/b.txt", "a/missing.txt"]) == [True, True]
    assert await storage.delete([]) == []

    with pytest.raises(StorageError):
        await storage.read("a/b.txt")


async def test_delete_results_line_up_with_paths(storage):
    await storage.upload("a/b.txt", b"x", "text/plain")
    await storage.upload("a/c.txt", b"y", "text/plain")

    assert await storage.delete(["a/b.txt", "../escape.txt", "a/c.txt"]) == [True, False, True]
    assert await storage.list("a") == []


async def test_list_under_prefix(storage):
    await storage.upload("links/u1/a.txt", b"12", "text/plain")
    await storage.upload("links/u1/sub/b.txt", b"345", "text/plain")
    await storage.upload("links/u2/c.txt", b"6", "text/plain")

    found = sorted((o.path, o.size) for o in await storage.list("links/u1"))

    assert found == [("links/u1/a.txt", 2), ("links/u1/sub/b.txt", 3)]
    assert await storage.list("links/nobody") == []


async def test_root_is_created_lazily(tmp_path):
    storage = LocalStorage(tmp_path / "nested" / "root")

    await storage.upload("x/y.bin", b"\x00", "application/octet-stream")

    assert (tmp_path / "nested" / "root" / "x" / "y.bin").read_bytes() == b"\x00"


def test_link_storage_path_layout():
    link_id = uuid.UUID("00000000-0000-0000-0000-000000000001")

    path = link_storage_path("user_ABC", link_id, "Ada Lovelace!", "My Report.PDF", now=NOW)

    assert path == (
        "links/user_abc/00000000-0000-0000-0000-000000000001/2024-03-05/"
        f"ada-lovelace/{int(NOW.timestamp() * 1000)}_My_Report.pdf"
    )


def test_workspace_storage_path_layout():
    ws = uuid.UUID("00000000-0000-0000-0000-00000000000a")
    folder = uuid.UUID("00000000-0000-0000-0000-00000000000b")

    assert workspace_storage_path("u1", ws, None, "a.txt", now=NOW).startswith(f"workspaces/u1/{ws}/files/")
    assert workspace_storage_path("u1", ws, folder, "a.txt", now=NOW).startswith(
        f"workspaces/u1/{ws}/folders/{folder}/")


def test_user_storage_prefixes():
    assert user_storage_prefixes("User_1") == ["links/user_1", "workspaces/user_1"]


def test_sanitize_segment():
    assert sanitize_segment("  Jane   Doe ") == "jane-doe"
    assert sanitize_segment("émigré/../etc") == "migretc"
    assert sanitize_segment("!!!") == "anonymous"
    assert len(sanitize_segment("x" * 80)) == 50


def test_sanitize_filename():
    assert sanitize_filename("../../etc/passwd") == "passwd"
    assert sanitize_filename("hello world.TXT") == "hello_world.txt"
    assert sanitize_filename(".hidden") == "hidden"


def test_split_extension():
    assert split_extension("report.pdf") == ("report", "pdf")
    assert split_extension("archive.tar.gz") == ("archive.tar", "gz")
    assert split_extension("README") == ("README", "")


def test_generate_unique_name():
    assert generate_unique_name("a.txt", []) == "a.txt"
    assert generate_unique_name("a.txt", ["a.txt"]) == "a (1).txt"
    assert generate_unique_name("a.txt", ["a.txt", "a (1).txt"]) == "a (2).txt"
    assert generate_unique_name("notes", ["notes"]) == "notes (1)"


def test_generate_unique_name_gives_up_on_counters():
    taken = ["a.txt"] + [f"a ({i}).txt" for i in range(1, 4)]

    name = generate_unique_name("a.txt", taken, max_attempts=3)

    assert name.startswith("a-")
    assert name.endswith(".txt")
    assert name not in taken
