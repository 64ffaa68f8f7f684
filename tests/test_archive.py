import io
import stat
import threading
import zipfile
import zlib

import pytest

from spgill.zipbackup import archive, errors


def test_entries_use_fixed_settings(tmp_path):
    output = tmp_path / "out.zip"
    with archive.ArchiveWriter(output) as writer:
        writer.write_entry("meta.yaml", b"a: 1\n")
        writer.write_entry_from("data/f.bin", io.BytesIO(b"payload"), 0o100755, 7)

    with zipfile.ZipFile(output) as result:
        for info in result.infolist():
            assert info.date_time == archive.ENTRY_DATE_TIME
            assert info.compress_type == zipfile.ZIP_DEFLATED
        assert result.read("data/f.bin") == b"payload"
        assert archive.entry_mode(result.getinfo("data/f.bin")) == 0o755
        assert archive.entry_mode(result.getinfo("meta.yaml")) == 0o644


def test_identical_inputs_produce_identical_bytes(tmp_path):
    for name in ("one.zip", "two.zip"):
        with archive.ArchiveWriter(tmp_path / name) as writer:
            writer.write_entry("a.txt", b"same contents" * 100)
            writer.write_entry_from("b.txt", io.BytesIO(b"more"), None, 4)

    assert (tmp_path / "one.zip").read_bytes() == (tmp_path / "two.zip").read_bytes()


def test_duplicate_entry_is_rejected(tmp_path):
    with archive.ArchiveWriter(tmp_path / "out.zip") as writer:
        writer.write_entry("data/a", b"first")
        with pytest.raises(errors.ArchiveError):
            writer.write_entry_from("data/a", io.BytesIO(b"second"))

    with zipfile.ZipFile(tmp_path / "out.zip") as result:
        assert result.namelist() == ["data/a"]
        assert result.read("data/a") == b"first"


def test_concurrent_writers_produce_intact_entries(tmp_path):
    output = tmp_path / "out.zip"
    payloads = {f"data/{index}": bytes([index]) * 50_000 for index in range(32)}

    with archive.ArchiveWriter(output) as writer:
        threads = [
            threading.Thread(
                target=writer.write_entry_from,
                args=(name, io.BytesIO(data), None, len(data)),
            )
            for name, data in payloads.items()
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    with zipfile.ZipFile(output) as result:
        assert result.testzip() is None
        assert {name: result.read(name) for name in result.namelist()} == payloads


def test_creates_missing_output_directory(tmp_path):
    output = tmp_path / "nested" / "dir" / "out.zip"
    with archive.ArchiveWriter(output):
        pass

    assert output.exists()


def test_unusable_output_directory_is_fatal(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")

    with pytest.raises(errors.ArchiveError):
        archive.ArchiveWriter(blocker / "out.zip")


def test_open_archive_rejects_garbage(tmp_path):
    garbage = tmp_path / "garbage.zip"
    garbage.write_bytes(b"definitely not a zip file")

    with pytest.raises(errors.ArchiveError):
        archive.open_archive(garbage)
    with pytest.raises(errors.ArchiveError):
        archive.open_archive(tmp_path / "missing.zip")


def test_read_entry(tmp_path):
    output = tmp_path / "out.zip"
    with archive.ArchiveWriter(output) as writer:
        writer.write_entry(archive.CONFIG_ENTRY_NAME, b"backup_paths: []\n")

    with archive.open_archive(output) as source:
        assert archive.read_entry(source, archive.CONFIG_ENTRY_NAME) == b"backup_paths: []\n"
        assert archive.read_entry(source, archive.FILE_MAP_ENTRY_NAME) is None

    with pytest.raises(errors.ArchiveError):
        archive.read_entry_from_path(output, archive.FILE_MAP_ENTRY_NAME)


def test_replace_entry_keeps_other_entries(tmp_path):
    output = tmp_path / "out.zip"
    with archive.ArchiveWriter(output) as writer:
        writer.write_entry(archive.CONFIG_ENTRY_NAME, b"old")
        writer.write_entry_from("data/a/x.txt", io.BytesIO(b"x"), stat.S_IFREG | 0o600, 1)
        writer.write_entry(archive.FILE_MAP_ENTRY_NAME, b"data/a/x.txt: /a/x.txt\n")

    archive.replace_entry(output, archive.CONFIG_ENTRY_NAME, b"new")

    with zipfile.ZipFile(output) as result:
        assert result.namelist() == [
            archive.CONFIG_ENTRY_NAME,
            "data/a/x.txt",
            archive.FILE_MAP_ENTRY_NAME,
        ]
        assert result.read(archive.CONFIG_ENTRY_NAME) == b"new"
        assert result.read("data/a/x.txt") == b"x"
        assert archive.entry_mode(result.getinfo("data/a/x.txt")) == 0o600
    assert [path.name for path in tmp_path.iterdir()] == ["out.zip"]


def test_replace_missing_entry_fails(tmp_path):
    output = tmp_path / "out.zip"
    with archive.ArchiveWriter(output) as writer:
        writer.write_entry("only", b"1")

    with pytest.raises(errors.ArchiveError):
        archive.replace_entry(output, archive.CONFIG_ENTRY_NAME, b"new")


def test_metadata_entries_use_the_archive_level(tmp_path):
    payload = b"key: value\n" * 500
    with archive.ArchiveWriter(tmp_path / "out.zip") as writer:
        writer.write_entry(archive.FILE_MAP_ENTRY_NAME, payload)

    compressor = zlib.compressobj(archive.COMPRESS_LEVEL, zlib.DEFLATED, -15)
    expected = compressor.compress(payload) + compressor.flush()
    with zipfile.ZipFile(tmp_path / "out.zip") as result:
        assert result.getinfo(archive.FILE_MAP_ENTRY_NAME).compress_size == len(expected)


def test_unencodable_name_is_rejected_and_released(tmp_path):
    bad_name = "data/bad\udcff.txt"
    with archive.ArchiveWriter(tmp_path / "out.zip") as writer:
        with pytest.raises(errors.ArchiveError):
            writer.write_entry_from(bad_name, io.BytesIO(b"x"), None, 1)
        with pytest.raises(errors.ArchiveError):
            writer.write_entry(bad_name, b"x")
        writer.write_entry("data/good.txt", b"still writable")

    with zipfile.ZipFile(tmp_path / "out.zip") as result:
        assert result.namelist() == ["data/good.txt"]
        assert result.read("data/good.txt") == b"still writable"
