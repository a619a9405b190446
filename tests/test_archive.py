import io
import os
import tarfile
import tempfile
from pathlib import Path

import pytest
from hypothesis import given, settings, strategies as st

from appbackup.archive import ARCHIVE_MTIME, build_archive, extract_archive, stage_app
from appbackup.catalog import CHROME, TERMIUS
from appbackup.errors import NoFilesFound, PathTraversalError, RestoreExtractionError

from .conftest import read_tree, write_tree

file_trees = st.dictionaries(
    keys=st.from_regex(r"[A-Za-z0-9 _-]{1,12}", fullmatch=True).map(lambda n: f"Default/{n}"),
    values=st.binary(max_size=512),
    min_size=1,
    max_size=6,
)


@settings(max_examples=30, deadline=None)
@given(files=file_trees)
def test_archive_bytes_depend_only_on_contents(files):
    with tempfile.TemporaryDirectory() as tmp:
        tmp = Path(tmp)
        first, second = tmp / "first", tmp / "second"
        write_tree(first, files)
        # Reverse creation order and skew mtimes for the second copy.
        write_tree(second, dict(reversed(list(files.items()))))
        for p in second.rglob("*"):
            if p.is_file():
                os.utime(p, (1_000_000, 1_000_000))
        a = build_archive(first, tmp / "a.tar.gz").read_bytes()
        b = build_archive(second, tmp / "b.tar.gz").read_bytes()
        assert a == b

def test_archive_normalizes_metadata(tmp_path):
    write_tree(tmp_path / "s", {"Local State": b"{}", "Default/Cookies": b"c"})
    archive = build_archive(tmp_path / "s", tmp_path / "out.tar.gz")
    with tarfile.open(archive, "r:gz") as tar:
        members = tar.getmembers()
    assert [m.name for m in members] == ["Default/Cookies", "Local State"]
    assert all(m.mtime == ARCHIVE_MTIME and m.uid == 0 and m.mode == 0o600 for m in members)

def test_stage_app_without_files(tmp_path):
    with pytest.raises(NoFilesFound, match="No Chrome files found"):
        stage_app(CHROME, tmp_path / "home", tmp_path / "staging")

def test_stage_app_copies_trees_without_symlinks(tmp_path):
    live = tmp_path / "Termius"
    write_tree(live, {
        "Cookies": b"c",
        "Local Storage/leveldb/000003.log": b"log",
        "Local Storage/leveldb/CURRENT": b"MANIFEST-1",
        "Cache/data_0": b"skip me",
    })
    (live / "Local Storage/leveldb/LINK").symlink_to(tmp_path)
    staging = tmp_path / "staging"
    staged = stage_app(TERMIUS, live, staging)
    assert staged == ["Cookies", "Local Storage/leveldb/000003.log", "Local Storage/leveldb/CURRENT"]
    assert read_tree(staging) == {
        "Cookies": b"c",
        "Local Storage/leveldb/000003.log": b"log",
        "Local Storage/leveldb/CURRENT": b"MANIFEST-1",
    }

def test_extract_returns_relative_paths(tmp_path):
    files = {"profiles.ini": b"[General]\n", "abc.default/logins.json": b"{}"}
    write_tree(tmp_path / "s", files)
    archive = build_archive(tmp_path / "s", tmp_path / "a.tar.gz")
    assert extract_archive(archive, tmp_path / "out") == sorted(files)
    assert read_tree(tmp_path / "out") == files

def _raw_tar(path: Path, member: tarfile.TarInfo, data: bytes = b"") -> Path:
    with tarfile.open(path, "w:gz") as tar:
        member.size = len(data)
        tar.addfile(member, io.BytesIO(data))
    return path

def test_extract_rejects_traversal(tmp_path):
    archive = _raw_tar(tmp_path / "evil.tar.gz", tarfile.TarInfo("../escaped"), b"boom")
    with pytest.raises(PathTraversalError):
        extract_archive(archive, tmp_path / "out")
    assert not (tmp_path / "escaped").exists()

def test_extract_rejects_links(tmp_path):
    link = tarfile.TarInfo("Cookies")
    link.type = tarfile.SYMTYPE
    link.linkname = "/etc/passwd"
    archive = _raw_tar(tmp_path / "link.tar.gz", link)
    with pytest.raises(PathTraversalError, match="non-regular"):
        extract_archive(archive, tmp_path / "out")

def test_extract_corrupt_archive(tmp_path):
    bad = tmp_path / "bad.tar.gz"
    bad.write_bytes(b"not a gzip stream")
    with pytest.raises(RestoreExtractionError):
        extract_archive(bad, tmp_path / "out")
