### stdlib imports
import os
import pathlib
import shutil
import stat
import tempfile
import threading
import typing
import zipfile

### local imports
from . import errors

# Metadata entries stored next to the data folder
CONFIG_ENTRY_NAME = "backup_config.yaml"
FILE_MAP_ENTRY_NAME = "file_map.yaml"
METADATA_ENTRY_NAMES = frozenset({CONFIG_ENTRY_NAME, FILE_MAP_ENTRY_NAME})

# Fixed entry settings so identical inputs produce identical archives
COMPRESS_TYPE = zipfile.ZIP_DEFLATED
COMPRESS_LEVEL = 9
ENTRY_DATE_TIME = (1980, 1, 1, 0, 0, 0)
DEFAULT_ENTRY_MODE = 0o644

COPY_CHUNK_SIZE = 1024 * 1024


def _entry_info(name: str, mode: typing.Optional[int]) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(name, date_time=ENTRY_DATE_TIME)
    info.compress_type = COMPRESS_TYPE
    # ZipFile.open(..., "w") takes no level before 3.13, so the level has to
    # ride on the ZipInfo itself, under its private name on older versions
    if hasattr(info, "compress_level"):
        info.compress_level = COMPRESS_LEVEL
    else:
        info._compresslevel = COMPRESS_LEVEL

    # Only permission bits are kept, owner and timestamps are not
    permissions = DEFAULT_ENTRY_MODE if mode is None else stat.S_IMODE(mode)
    info.external_attr = (stat.S_IFREG | permissions) << 16
    info.create_system = 3
    return info


def entry_mode(info: zipfile.ZipInfo) -> typing.Optional[int]:
    permissions = stat.S_IMODE(info.external_attr >> 16)
    return permissions or None


class ArchiveWriter:
    """The single zip file a backup run writes into.

    Every entry, metadata and content alike, is written whole while holding
    one lock, because a zip stream can only have one entry open at a time.
    Callers never see a partially written entry handle.
    """

    def __init__(self, output_path: typing.Union[str, pathlib.Path]):
        self.output_path = pathlib.Path(output_path)
        self._lock = threading.Lock()
        self._names: set[str] = set()

        try:
            self.output_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise errors.ArchiveError(
                f"Unable to create output directory '{self.output_path.parent}': {err}"
            ) from err

        try:
            self._zip = zipfile.ZipFile(
                self.output_path,
                "w",
                compression=COMPRESS_TYPE,
                compresslevel=COMPRESS_LEVEL,
            )
        except OSError as err:
            raise errors.ArchiveError(
                f"Unable to create output file '{self.output_path}': {err}"
            ) from err

    def __enter__(self) -> "ArchiveWriter":
        return self

    def __exit__(self, *exc_info):
        self.close()

    @property
    def names(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._names)

    def _claim(self, name: str):
        if name in self._names:
            raise errors.ArchiveError(f"Duplicate archive entry '{name}'")
        self._names.add(name)

    def write_entry(
        self, name: str, data: bytes, mode: typing.Optional[int] = None
    ):
        with self._lock:
            self._claim(name)
            try:
                self._zip.writestr(
                    _entry_info(name, mode), data, compresslevel=COMPRESS_LEVEL
                )
            except (UnicodeEncodeError, ValueError) as err:
                self._names.discard(name)
                raise errors.ArchiveError(
                    f"Unable to write entry {name!r}: {err}"
                ) from err

    def write_entry_from(
        self,
        name: str,
        stream: typing.BinaryIO,
        mode: typing.Optional[int] = None,
        size: int = 0,
    ):
        with self._lock:
            self._claim(name)
            info = _entry_info(name, mode)
            try:
                with self._zip.open(
                    info, "w", force_zip64=size > zipfile.ZIP64_LIMIT
                ) as dest:
                    shutil.copyfileobj(stream, dest, COPY_CHUNK_SIZE)
            except (UnicodeEncodeError, ValueError) as err:
                self._names.discard(name)
                raise errors.ArchiveError(
                    f"Unable to write entry {name!r}: {err}"
                ) from err

    def close(self):
        with self._lock:
            self._zip.close()


def open_archive(archive_path: typing.Union[str, pathlib.Path]) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(archive_path, "r")
    except (OSError, zipfile.BadZipFile) as err:
        raise errors.ArchiveError(
            f"Unable to open archive '{archive_path}': {err}"
        ) from err


def read_entry(archive: zipfile.ZipFile, name: str) -> typing.Optional[bytes]:
    try:
        info = archive.getinfo(name)
    except KeyError:
        return None
    try:
        return archive.read(info)
    except (OSError, zipfile.BadZipFile) as err:
        raise errors.ArchiveError(f"Unable to read entry '{name}': {err}") from err


def read_entry_from_path(
    archive_path: typing.Union[str, pathlib.Path], name: str
) -> bytes:
    with open_archive(archive_path) as archive:
        data = read_entry(archive, name)
    if data is None:
        raise errors.ArchiveError(f"Entry '{name}' not found in '{archive_path}'")
    return data


def list_entries(archive: zipfile.ZipFile) -> list[zipfile.ZipInfo]:
    return [info for info in archive.infolist() if not info.is_dir()]


def replace_entry(
    archive_path: typing.Union[str, pathlib.Path], name: str, data: bytes
):
    """Rewrite an archive with one entry's contents swapped out."""
    archive_path = pathlib.Path(archive_path)

    with open_archive(archive_path) as source:
        if name not in source.namelist():
            raise errors.ArchiveError(f"Entry '{name}' not found in '{archive_path}'")

        handle, temp_name = tempfile.mkstemp(
            prefix=archive_path.name + ".", suffix=".tmp", dir=archive_path.parent
        )
        os.close(handle)
        try:
            with ArchiveWriter(temp_name) as writer:
                for info in source.infolist():
                    if info.filename == name:
                        writer.write_entry(name, data, entry_mode(info))
                        continue
                    with source.open(info) as stream:
                        writer.write_entry_from(
                            info.filename, stream, entry_mode(info), info.file_size
                        )
        except BaseException:
            os.unlink(temp_name)
            raise

    os.replace(temp_name, archive_path)
