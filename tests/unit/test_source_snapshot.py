"""
Unit tests for build context snapshots.
"""
import os

import pytest

from dockship.BUILDERS.source_snapshot import SnapshotBuilder, matches
from dockship.errors import UnsupportedFileType
from dockship.MODELS.source_snapshot import SourceSnapshot


def write(root, files):
    for path, content in files.items():
        full = root / path
        full.parent.mkdir(parents=True, exist_ok=True)
        full.write_text(content)


def test_snapshot_independent_of_creation_order(tmp_path):
    first = tmp_path / "first"
    second = tmp_path / "second"
    first.mkdir()
    second.mkdir()
    write(first, {"a.txt": "x"})
    write(first, {"b.txt": "y"})
    write(second, {"b.txt": "y"})
    write(second, {"a.txt": "x"})

    builder = SnapshotBuilder()
    assert builder.snapshot(str(first)).digest == builder.snapshot(str(second)).digest


def test_snapshot_independent_of_timestamps(tmp_path):
    write(tmp_path, {"a.txt": "x", "b.txt": "y"})
    builder = SnapshotBuilder()
    before = builder.snapshot(str(tmp_path)).digest

    os.utime(tmp_path / "a.txt", (1000000, 1000000))
    os.utime(tmp_path / "b.txt", (2000000, 2000000))

    assert builder.snapshot(str(tmp_path)).digest == before


def test_digest_independent_of_entry_order(tmp_path):
    write(tmp_path, {"a.txt": "x", "b.txt": "y"})
    snapshot = SnapshotBuilder().snapshot(str(tmp_path))
    reversed_snapshot = SourceSnapshot.from_entries(snapshot.root, reversed(snapshot.entries))
    assert reversed_snapshot.digest == snapshot.digest
    assert reversed_snapshot.paths == ("a.txt", "b.txt")


def test_content_change_changes_digest(tmp_path):
    write(tmp_path, {"a.txt": "x"})
    builder = SnapshotBuilder()
    before = builder.snapshot(str(tmp_path)).digest
    write(tmp_path, {"a.txt": "z"})
    assert builder.snapshot(str(tmp_path)).digest != before


def test_excludes_and_dockerignore(tmp_path):
    write(tmp_path, {
        "app.py": "print('hi')",
        "build/out.bin": "binary",
        "logs/debug.log": "log",
        "src/pkg/mod.py": "x = 1",
        ".dockerignore": "# comments are skipped\n*.log\nlogs/\n",
    })
    snapshot = SnapshotBuilder(exclude=["build"]).snapshot(str(tmp_path))
    assert snapshot.paths == (".dockerignore", "app.py", "src/pkg/mod.py")


def test_dockerignore_can_be_disabled(tmp_path):
    write(tmp_path, {"a.log": "x", ".dockerignore": "*.log\n"})
    snapshot = SnapshotBuilder(use_dockerignore=False).snapshot(str(tmp_path))
    assert "a.log" in snapshot.paths


def test_include_patterns(tmp_path):
    write(tmp_path, {"app.py": "", "README.md": "", "pkg/util.py": ""})
    snapshot = SnapshotBuilder(include=["*.py", "pkg"]).snapshot(str(tmp_path))
    assert snapshot.paths == ("app.py", "pkg/util.py")


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
def test_symlink_rejected(tmp_path):
    write(tmp_path, {"target.txt": "x"})
    os.symlink("target.txt", tmp_path / "link.txt")
    with pytest.raises(UnsupportedFileType) as exc:
        SnapshotBuilder().snapshot(str(tmp_path))
    assert exc.value.path == "link.txt"
    assert exc.value.kind == "symlink"


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
def test_symlink_allowed_hashes_target(tmp_path):
    write(tmp_path, {"target.txt": "x"})
    os.symlink("target.txt", tmp_path / "link.txt")
    snapshot = SnapshotBuilder(allow_symlinks=True).snapshot(str(tmp_path))
    assert snapshot.get("link.txt").link_target == "target.txt"


@pytest.mark.skipif(not hasattr(os, "mkfifo"), reason="fifos unavailable")
def test_fifo_rejected(tmp_path):
    os.mkfifo(tmp_path / "pipe")
    with pytest.raises(UnsupportedFileType) as exc:
        SnapshotBuilder().snapshot(str(tmp_path))
    assert exc.value.kind == "fifo"


def test_missing_root(tmp_path):
    with pytest.raises(NotADirectoryError):
        SnapshotBuilder().snapshot(str(tmp_path / "missing"))


def test_matches():
    assert matches("build/x/y.o", ["build/"])
    assert matches("build/x/y.o", ["build/**"])
    assert matches("a/b/c.pyc", ["**/*.pyc"])
    assert not matches("src/build.py", ["build"])


def make_undecodable_file(root):
    try:
        with open(os.path.join(os.fsencode(str(root)), b"bad\xffname"), "wb") as f:
            f.write(b"x")
    except OSError:
        pytest.skip("filesystem rejects non-UTF-8 file names")


def test_non_utf8_file_name_rejected(tmp_path):
    make_undecodable_file(tmp_path)
    with pytest.raises(UnsupportedFileType) as exc:
        SnapshotBuilder().snapshot(str(tmp_path))
    assert exc.value.kind == "non-UTF-8 file name"
    assert exc.value.path == "bad\\xffname"


def test_non_utf8_file_name_can_be_excluded(tmp_path):
    make_undecodable_file(tmp_path)
    write(tmp_path, {"app.py": "x"})
    snapshot = SnapshotBuilder(exclude=["bad*"]).snapshot(str(tmp_path))
    assert snapshot.paths == ("app.py",)


def test_non_utf8_dockerignore_rejected(tmp_path):
    (tmp_path / ".dockerignore").write_bytes(b"build\n\xff\xfe\n")
    with pytest.raises(UnsupportedFileType) as exc:
        SnapshotBuilder().snapshot(str(tmp_path))
    assert exc.value.path == ".dockerignore"
