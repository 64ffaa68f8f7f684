### stdlib imports
import dataclasses
import enum
import pathlib
import typing

### vendor imports
import pydantic


class BackupConfiguration(pydantic.BaseModel):
    backup_paths: list[str] = []

    # Directory names are matched exactly, file names as glob patterns
    exclude_dirs: list[str] = []
    exclude_files: list[str] = []

    before_script: typing.Optional[str] = None
    after_script: typing.Optional[str] = None

    # Systemd units to stop while the archive is being written or restored
    services: list[str] = []

    ### Daemon fields ###
    schedule: typing.Optional[str] = None
    output_dir: typing.Optional[str] = None
    keep_last: typing.Optional[int] = None


class ErrorPolicy(str, enum.Enum):
    SKIP = "skip"
    ABORT = "abort"


class FileTask(typing.NamedTuple):
    source_path: str
    archive_path: str


@dataclasses.dataclass(frozen=True)
class ItemFailure:
    path: str
    message: str


@dataclasses.dataclass
class BackupResult:
    output_path: pathlib.Path
    processed_files: int = 0
    skipped_files: int = 0
    skipped_dirs: int = 0
    failures: list[ItemFailure] = dataclasses.field(default_factory=list)
    root_failures: list[ItemFailure] = dataclasses.field(default_factory=list)

    @property
    def failed_files(self) -> int:
        return len(self.failures)

    @property
    def failed_roots(self) -> int:
        return len(self.root_failures)


@dataclasses.dataclass
class RestoreResult:
    archive_path: pathlib.Path
    root_dir: typing.Optional[pathlib.Path] = None
    restored_files: int = 0
    unmapped_entries: int = 0
    snapshot_path: typing.Optional[pathlib.Path] = None
    failures: list[ItemFailure] = dataclasses.field(default_factory=list)

    @property
    def failed_files(self) -> int:
        return len(self.failures)
