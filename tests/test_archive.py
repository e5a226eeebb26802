from __future__ import annotations

import os
import zipfile
from pathlib import Path

import pytest

from cds_layer.archive import ENTRY_DATE_TIME, create_jar
from cds_layer.errors import ArchiveError


def _write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def _sample_app(root: Path) -> Path:
    _write(root / "META-INF" / "MANIFEST.MF", "Manifest-Version: 1.0\nStart-Class: com.example.App\n")
    _write(root / "BOOT-INF" / "classes" / "com" / "example" / "App.class", "class-bytes")
    _write(root / "BOOT-INF" / "lib" / "a.jar", "jar-a")
    (root / "BOOT-INF" / "empty").mkdir(parents=True)
    return root


def test_create_jar_round_trips_files_and_paths(tmp_path):
    app = _sample_app(tmp_path / "app")
    target = create_jar(app, tmp_path / "runner.jar")

    out = tmp_path / "out"
    with zipfile.ZipFile(target) as archive:
        archive.extractall(out)

    original = sorted(p.relative_to(app).as_posix() for p in app.rglob("*"))
    restored = sorted(p.relative_to(out).as_posix() for p in out.rglob("*"))
    assert restored == original
    for path in app.rglob("*"):
        if path.is_file():
            assert (out / path.relative_to(app)).read_bytes() == path.read_bytes()


def test_create_jar_entries_are_stored_sorted_and_directories_are_empty(tmp_path):
    app = _sample_app(tmp_path / "app")
    target = create_jar(app, tmp_path / "runner.jar")

    with zipfile.ZipFile(target) as archive:
        infos = archive.infolist()

    names = [info.filename for info in infos]
    assert names == [
        "BOOT-INF/",
        "BOOT-INF/classes/",
        "BOOT-INF/classes/com/",
        "BOOT-INF/classes/com/example/",
        "BOOT-INF/classes/com/example/App.class",
        "BOOT-INF/empty/",
        "BOOT-INF/lib/",
        "BOOT-INF/lib/a.jar",
        "META-INF/",
        "META-INF/MANIFEST.MF",
    ]
    for info in infos:
        assert info.compress_type == zipfile.ZIP_STORED
        assert info.date_time == ENTRY_DATE_TIME
        if info.is_dir():
            assert info.filename.endswith("/")
            assert info.file_size == 0


def test_create_jar_is_byte_identical_regardless_of_mtimes(tmp_path):
    app = _sample_app(tmp_path / "app")
    first = create_jar(app, tmp_path / "first.jar")

    for path in app.rglob("*"):
        os.utime(path, (1_700_000_000, 1_700_000_000))
    second = create_jar(app, tmp_path / "second.jar")

    assert first.read_bytes() == second.read_bytes()


def test_create_jar_resolves_file_symlinks(tmp_path):
    app = _sample_app(tmp_path / "app")
    real = _write(tmp_path / "shared" / "real.jar", "shared-content")
    (app / "BOOT-INF" / "lib" / "linked.jar").symlink_to(real)

    target = create_jar(app, tmp_path / "runner.jar")

    with zipfile.ZipFile(target) as archive:
        info = archive.getinfo("BOOT-INF/lib/linked.jar")
        assert archive.read(info) == b"shared-content"
        assert not info.is_dir()
        mode = info.external_attr >> 16
        assert not (mode & 0o170000 == 0o120000)


def test_create_jar_writes_directory_symlinks_as_directories(tmp_path):
    app = _sample_app(tmp_path / "app")
    (tmp_path / "elsewhere").mkdir()
    _write(tmp_path / "elsewhere" / "inside.txt", "x")
    (app / "linked-dir").symlink_to(tmp_path / "elsewhere")

    target = create_jar(app, tmp_path / "runner.jar")

    with zipfile.ZipFile(target) as archive:
        names = archive.namelist()
    assert "linked-dir/" in names
    assert "linked-dir/inside.txt" not in names


def test_create_jar_fails_on_dangling_symlink(tmp_path):
    app = _sample_app(tmp_path / "app")
    (app / "broken").symlink_to(tmp_path / "missing")

    with pytest.raises(ArchiveError) as excinfo:
        create_jar(app, tmp_path / "runner.jar")

    assert excinfo.value.path == str(app / "broken")
    assert excinfo.value.step == "archive"


def test_create_jar_rejects_missing_source(tmp_path):
    with pytest.raises(ArchiveError):
        create_jar(tmp_path / "nope", tmp_path / "runner.jar")


def test_create_jar_does_not_modify_source(tmp_path):
    app = _sample_app(tmp_path / "app")
    before = {p.relative_to(app).as_posix(): p.stat().st_mtime for p in app.rglob("*")}

    create_jar(app, tmp_path / "runner.jar")

    after = {p.relative_to(app).as_posix(): p.stat().st_mtime for p in app.rglob("*")}
    assert after == before
