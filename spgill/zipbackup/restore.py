# Stdlib imports
import concurrent.futures
import os
import pathlib
import shutil
import threading
import typing
import zipfile

# Local imports
from . import (
    archive,
    backup,
    config as applicationConfig,
    errors,
    helper,
    model,
    retention,
    script,
)
from .filemap import FileMap, rebase

# Where pre-restore snapshots go unless told otherwise, and how many to keep
default_snapshot_dir = pathlib.Path("~/.backup_restore")
DEFAULT_SNAPSHOT_KEEP = 3


def load_metadata(
    source: zipfile.ZipFile,
) -> tuple[model.BackupConfiguration, FileMap]:
    config_bytes = archive.read_entry(source, archive.CONFIG_ENTRY_NAME)
    if config_bytes is None:
        raise errors.RestoreError(
            f"Archive is missing '{archive.CONFIG_ENTRY_NAME}', cannot restore"
        )
    try:
        config = applicationConfig.parse_config_bytes(
            config_bytes, archive.CONFIG_ENTRY_NAME
        )
    except errors.ConfigurationError as err:
        raise errors.RestoreError(str(err)) from err

    map_bytes = archive.read_entry(source, archive.FILE_MAP_ENTRY_NAME)
    if map_bytes is None:
        raise errors.RestoreError(
            f"Archive is missing '{archive.FILE_MAP_ENTRY_NAME}', cannot restore"
        )
    file_map = FileMap.load(map_bytes)
    if not len(file_map):
        raise errors.RestoreError(
            f"Archive has an empty '{archive.FILE_MAP_ENTRY_NAME}', cannot restore"
        )

    return config, file_map


def snapshot_before_restore(
    config: model.BackupConfiguration,
    root_dir: typing.Optional[typing.Union[str, pathlib.Path]],
    snapshot_dir: typing.Union[str, pathlib.Path],
    keep: int = DEFAULT_SNAPSHOT_KEEP,
    quiet: bool = False,
) -> typing.Optional[pathlib.Path]:
    """Back up whatever currently sits where the restore is about to write."""
    snapshot_dir = pathlib.Path(snapshot_dir).expanduser()

    targets = []
    for entry in config.backup_paths:
        path = os.path.abspath(os.path.expanduser(entry))
        if root_dir is not None:
            path = rebase(path, root_dir)
        if os.path.exists(path):
            targets.append(path)

    if not targets:
        helper.print_warning("Nothing exists at the restore destination yet, skipping snapshot")
        return None

    output_path = snapshot_dir / f"restore_{helper.timestamp()}.zip"
    helper.print_line(f"Snapshotting current files to {output_path}")
    backup.run_backup(
        config.model_copy(update={"backup_paths": targets}),
        None,
        output_path,
        quiet=quiet,
    )
    retention.cleanup_old_backups(snapshot_dir, keep)
    return output_path


class _ArchiveReaders:
    """One read handle on the archive per extraction thread."""

    def __init__(self, archive_path: pathlib.Path):
        self.archive_path = archive_path
        self._local = threading.local()
        self._handles: list[zipfile.ZipFile] = []
        self._lock = threading.Lock()

    def get(self) -> zipfile.ZipFile:
        handle = getattr(self._local, "handle", None)
        if handle is None:
            handle = archive.open_archive(self.archive_path)
            self._local.handle = handle
            with self._lock:
                self._handles.append(handle)
        return handle

    def close(self):
        with self._lock:
            for handle in self._handles:
                handle.close()
            self._handles.clear()


def extract_entry(source: zipfile.ZipFile, info: zipfile.ZipInfo, target: str):
    """Write one archive entry to ``target``, replacing any existing file."""
    os.makedirs(os.path.dirname(target) or ".", exist_ok=True)
    with source.open(info) as stream, open(target, "wb") as dest:
        shutil.copyfileobj(stream, dest, archive.COPY_CHUNK_SIZE)

    if (mode := archive.entry_mode(info)) is not None:
        os.chmod(target, mode)


class _RestoreRun:
    def __init__(
        self,
        readers: _ArchiveReaders,
        result: model.RestoreResult,
        error_policy: model.ErrorPolicy,
        cancel: typing.Optional[threading.Event],
    ):
        self.readers = readers
        self.result = result
        self.error_policy = error_policy
        self.cancel = cancel
        self.stop = threading.Event()
        self.result_lock = threading.Lock()

    def stopping(self) -> bool:
        if self.cancel is not None and self.cancel.is_set():
            self.stop.set()
        return self.stop.is_set()

    def restore_one(
        self,
        info: zipfile.ZipInfo,
        target: str,
        advance: typing.Callable[[], None],
    ):
        if self.stopping():
            return

        try:
            extract_entry(self.readers.get(), info, target)
        except (OSError, zipfile.BadZipFile, errors.ArchiveError) as err:
            helper.print_warning(f"Failed to restore '{target}': {err}")
            with self.result_lock:
                self.result.failures.append(model.ItemFailure(target, str(err)))
            if self.error_policy is model.ErrorPolicy.ABORT:
                self.stop.set()
            return

        with self.result_lock:
            self.result.restored_files += 1
        advance()

    def extract_all(
        self,
        plan: list[tuple[zipfile.ZipInfo, str]],
        workers: int,
        quiet: bool,
    ):
        # The semaphore keeps at most ``workers`` extractions in flight, so
        # submission itself waits rather than queueing the whole archive
        slots = threading.BoundedSemaphore(workers)
        futures = []

        with helper.progress_bar(
            len(plan), "Restoring", quiet
        ) as advance, concurrent.futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="restore-worker"
        ) as executor:
            for info, target in plan:
                if self.stopping():
                    break
                slots.acquire()
                future = executor.submit(self.restore_one, info, target, advance)
                future.add_done_callback(lambda _: slots.release())
                futures.append(future)

            for future in concurrent.futures.as_completed(futures):
                future.result()


def run_restore(
    archive_path: typing.Union[str, pathlib.Path],
    root_dir: typing.Optional[typing.Union[str, pathlib.Path]] = None,
    workers: typing.Optional[int] = None,
    error_policy: model.ErrorPolicy = model.ErrorPolicy.SKIP,
    quiet: bool = False,
    cancel: typing.Optional[threading.Event] = None,
    snapshot_dir: typing.Optional[typing.Union[str, pathlib.Path]] = None,
    snapshot_keep: int = DEFAULT_SNAPSHOT_KEEP,
    run_scripts: bool = True,
) -> model.RestoreResult:
    """Extract every file of a backup archive to the location it came from.

    With ``root_dir`` each original absolute path is re-anchored beneath that
    directory instead. Entries that the file map does not know about are
    skipped. Extraction failures are collected in the result unless
    ``error_policy`` is ABORT, which turns the first one into a RestoreError.
    """
    archive_path = pathlib.Path(archive_path)
    workers = workers or helper.default_worker_count()
    if workers < 1:
        raise errors.RestoreError(f"Worker count must be at least 1, not {workers}")

    # All metadata is parsed before anything touches the filesystem
    with archive.open_archive(archive_path) as source:
        config, file_map = load_metadata(source)
        entries = [
            info
            for info in archive.list_entries(source)
            if info.filename not in archive.METADATA_ENTRY_NAMES
        ]

    if not entries:
        raise errors.RestoreError(f"Archive '{archive_path}' contains no files to restore")

    if root_dir is not None:
        root_dir = pathlib.Path(root_dir).expanduser().absolute()
        file_map = file_map.rebased(root_dir)

    result = model.RestoreResult(archive_path=archive_path, root_dir=root_dir)

    plan = []
    for info in entries:
        target = file_map.get(info.filename)
        if target is None:
            helper.print_warning(f"Skipping unknown archive entry '{info.filename}'")
            result.unmapped_entries += 1
            continue
        plan.append((info, target))

    if snapshot_dir is not None:
        result.snapshot_path = snapshot_before_restore(
            config, root_dir, snapshot_dir, snapshot_keep, quiet
        )

    if run_scripts and config.before_script:
        script.run_script(config.before_script, "before")

    readers = _ArchiveReaders(archive_path)
    run = _RestoreRun(readers, result, error_policy, cancel)
    try:
        run.extract_all(plan, workers, quiet)
    finally:
        readers.close()
        if run_scripts and config.after_script:
            try:
                script.run_script(config.after_script, "after")
            except errors.ScriptError as err:
                helper.print_warning(str(err))

    if cancel is not None and cancel.is_set():
        raise errors.RestoreCancelled("Restore cancelled")
    if error_policy is model.ErrorPolicy.ABORT and result.failures:
        first = result.failures[0]
        raise errors.RestoreError(
            f"Restore aborted, '{first.path}' failed: {first.message}"
        )

    return result
