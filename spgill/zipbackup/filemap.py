### stdlib imports
import os
import pathlib
import re
import threading
import typing

### vendor imports
import yaml

### local imports
from . import errors

_WINDOWS_DRIVE = re.compile(r"^[A-Za-z]:[\\/]|^\\\\")


def rebase(original: str, root_dir: typing.Union[str, pathlib.Path]) -> str:
    """Place an original absolute path underneath ``root_dir``.

    The anchor of the original path is dropped and its remaining components
    are joined onto the new root. Windows paths lose their drive as well, so
    ``C:\\data\\a.txt`` under ``/sandbox`` becomes ``/sandbox/data/a.txt``.
    """
    if _WINDOWS_DRIVE.match(original):
        path = pathlib.PureWindowsPath(original)
    else:
        path = pathlib.PurePosixPath(original)
    parts = path.parts[1:] if path.anchor else path.parts

    # Recorded paths are normalized, so a parent reference means tampering
    if ".." in parts:
        raise errors.RestoreError(f"Refusing to rebase path outside its root: '{original}'")
    return os.path.join(os.fspath(root_dir), *parts)


class FileMap:
    """Archive path -> original absolute path, shared by the backup workers."""

    def __init__(self, entries: typing.Optional[typing.Mapping[str, str]] = None):
        self._entries: dict[str, str] = dict(entries or {})
        self._lock = threading.Lock()

    def add(self, archive_path: str, source_path: str):
        with self._lock:
            self._entries[archive_path] = source_path

    def get(self, archive_path: str) -> typing.Optional[str]:
        return self._entries.get(archive_path)

    def __contains__(self, archive_path: object) -> bool:
        return archive_path in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def to_dict(self) -> dict[str, str]:
        with self._lock:
            return dict(self._entries)

    def rebased(self, root_dir: typing.Union[str, pathlib.Path]) -> "FileMap":
        return FileMap(
            {key: rebase(value, root_dir) for key, value in self.to_dict().items()}
        )

    def dump(self) -> bytes:
        serialized: str = yaml.safe_dump(
            self.to_dict(), allow_unicode=True, sort_keys=True
        )
        return serialized.encode("utf-8")

    @classmethod
    def load(cls, data: bytes) -> "FileMap":
        try:
            parsed = yaml.load(data, yaml.SafeLoader)
        except yaml.YAMLError as err:
            raise errors.RestoreError(f"Unable to parse file map: {err}") from err

        if parsed is None:
            parsed = {}
        if not isinstance(parsed, dict) or not all(
            isinstance(key, str) and isinstance(value, str)
            for key, value in parsed.items()
        ):
            raise errors.RestoreError(
                "File map must be a mapping of archive paths to absolute paths"
            )
        return cls(parsed)
