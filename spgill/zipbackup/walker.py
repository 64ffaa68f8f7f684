### stdlib imports
import dataclasses
import os
import pathlib
import stat
import threading
import typing

### local imports
from . import errors, model
from .exclude import ExclusionFilter

# Top-level folder that holds every content entry inside the archive
DATA_DIR_NAME = "data"

# Used in place of the basename when a filesystem root itself is configured
ROOT_PLACEHOLDER_NAME = "root"


@dataclasses.dataclass
class WalkStats:
    skipped_files: int = 0
    skipped_dirs: int = 0
    root_failures: list[model.ItemFailure] = dataclasses.field(
        default_factory=list
    )


def root_name(path: str) -> str:
    return os.path.basename(path) or ROOT_PLACEHOLDER_NAME


def archive_path_for(root: str, path: typing.Optional[str] = None) -> str:
    """Archive path of ``path`` beneath the configured ``root``.

    With no ``path`` the root itself is a single file and sits directly
    under the data folder.
    """
    if path is None:
        return f"{DATA_DIR_NAME}/{root_name(root)}"
    relative = pathlib.PurePath(os.path.relpath(path, root)).as_posix()
    return f"{DATA_DIR_NAME}/{root_name(root)}/{relative}"


def check_roots(config: model.BackupConfiguration) -> list[str]:
    """Resolve every configured path, failing if any of them is unreachable."""
    roots = []
    for entry in config.backup_paths:
        absolute = os.path.abspath(os.path.expanduser(entry))
        try:
            os.stat(absolute)
        except OSError as err:
            raise errors.ConfigurationError(
                f"Backup path '{entry}' is not accessible: {err}"
            ) from err
        roots.append(absolute)
    return roots


def _raise_walk_error(err: OSError):
    raise err


def _is_regular_file(path: str) -> bool:
    """Regular files and symlinks to regular files are archived.

    Anything else that lives outside the directory tree (FIFOs, sockets,
    device nodes) is not. A path that cannot be stat'ed is kept so the
    failure is reported when the file is opened.
    """
    try:
        return stat.S_ISREG(os.stat(path).st_mode)
    except OSError:
        return True


def _walk_directory(
    root: str,
    exclusion: ExclusionFilter,
    stats: WalkStats,
    cancel: typing.Optional[threading.Event],
) -> typing.Iterator[model.FileTask]:
    # The root is visited like any other directory, so its own name counts
    if exclusion.should_exclude_dir(root_name(root)):
        stats.skipped_dirs += 1
        return

    for dirpath, dirnames, filenames in os.walk(
        root, onerror=_raise_walk_error
    ):
        if cancel is not None and cancel.is_set():
            return

        # Pruning in place stops os.walk from descending. Symlinked
        # directories are never followed, so they count as skipped too.
        kept = []
        for name in sorted(dirnames):
            if exclusion.should_exclude_dir(name) or os.path.islink(
                os.path.join(dirpath, name)
            ):
                stats.skipped_dirs += 1
            else:
                kept.append(name)
        dirnames[:] = kept

        for name in sorted(filenames):
            path = os.path.join(dirpath, name)
            if exclusion.should_exclude_file(name) or not _is_regular_file(path):
                stats.skipped_files += 1
                continue
            yield model.FileTask(path, archive_path_for(root, path))


def walk_file_tasks(
    roots: typing.Iterable[str],
    exclusion: ExclusionFilter,
    stats: typing.Optional[WalkStats] = None,
    cancel: typing.Optional[threading.Event] = None,
    error_policy: model.ErrorPolicy = model.ErrorPolicy.SKIP,
) -> typing.Iterator[model.FileTask]:
    """Lazily yield a FileTask for every file that survives the exclusion rules."""
    if stats is None:
        stats = WalkStats()

    for root in roots:
        if cancel is not None and cancel.is_set():
            return

        try:
            root_mode = os.stat(root).st_mode
            if stat.S_ISDIR(root_mode):
                yield from _walk_directory(root, exclusion, stats, cancel)
            elif exclusion.should_exclude_file(root_name(root)) or not stat.S_ISREG(
                root_mode
            ):
                stats.skipped_files += 1
            else:
                yield model.FileTask(root, archive_path_for(root))
        except OSError as err:
            # The rest of this root is abandoned, other roots carry on
            failure = model.ItemFailure(root, f"traversal failed: {err}")
            if error_policy is model.ErrorPolicy.ABORT:
                raise errors.BackupError(
                    f"Traversal of '{root}' failed: {err}"
                ) from err
            stats.root_failures.append(failure)


def count_file_tasks(
    roots: typing.Iterable[str], exclusion: ExclusionFilter
) -> int:
    """Size the progress bar by running the very same walk with throwaway stats."""
    return sum(1 for _ in walk_file_tasks(list(roots), exclusion))
