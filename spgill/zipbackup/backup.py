# Stdlib imports
import os
import pathlib
import queue
import shutil
import stat
import tempfile
import threading
import typing

# Local imports
from . import archive, config as applicationConfig, errors, helper, model, walker
from .exclude import ExclusionFilter
from .filemap import FileMap

# Pending tasks; large enough that the walk rarely waits on the workers
TASK_QUEUE_SIZE = 1000

# Files are staged in memory up to this size before spilling to disk
SPOOL_MAX_SIZE = 8 * 1024 * 1024

# One of these is queued per worker once the walk is finished
_STOP = object()


def _open_regular_file(path: str) -> typing.BinaryIO:
    # Non-blocking open so a FIFO swapped in after the walk cannot stall us
    descriptor = os.open(path, os.O_RDONLY | getattr(os, "O_NONBLOCK", 0))
    try:
        mode = os.fstat(descriptor).st_mode
        if not stat.S_ISREG(mode):
            raise errors.ArchiveError(f"'{path}' is not a regular file")
        return os.fdopen(descriptor, "rb")
    except BaseException:
        os.close(descriptor)
        raise


def _archive_file(writer: archive.ArchiveWriter, task: model.FileTask):
    # Reading happens outside the writer lock, so a read error never leaves
    # a half-written entry behind
    with _open_regular_file(
        task.source_path
    ) as source, tempfile.SpooledTemporaryFile(SPOOL_MAX_SIZE) as spool:
        mode = os.fstat(source.fileno()).st_mode
        shutil.copyfileobj(source, spool, archive.COPY_CHUNK_SIZE)
        size = spool.tell()
        spool.seek(0)
        writer.write_entry_from(task.archive_path, spool, mode, size)


class _BackupRun:
    def __init__(
        self,
        writer: archive.ArchiveWriter,
        result: model.BackupResult,
        error_policy: model.ErrorPolicy,
        cancel: typing.Optional[threading.Event],
    ):
        self.writer = writer
        self.result = result
        self.error_policy = error_policy
        self.cancel = cancel
        self.file_map = FileMap()
        self.tasks: queue.Queue = queue.Queue(maxsize=TASK_QUEUE_SIZE)
        self.stop = threading.Event()
        self.result_lock = threading.Lock()

    def stopping(self) -> bool:
        if self.cancel is not None and self.cancel.is_set():
            self.stop.set()
        return self.stop.is_set()

    def work(self, advance: typing.Callable[[], None]):
        while True:
            task = self.tasks.get()
            if task is _STOP:
                return

            # Once stopped, the rest of the queue is drained without work
            if self.stopping():
                continue

            try:
                _archive_file(self.writer, task)
            except Exception as err:
                # Any failure stays confined to its own task
                helper.print_warning(
                    f"Failed to back up '{task.source_path}': {err}"
                )
                with self.result_lock:
                    self.result.failures.append(
                        model.ItemFailure(task.source_path, str(err))
                    )
                if self.error_policy is model.ErrorPolicy.ABORT:
                    self.stop.set()
                continue

            self.file_map.add(task.archive_path, task.source_path)
            with self.result_lock:
                self.result.processed_files += 1
            advance()

    def feed(
        self,
        roots: list[str],
        exclusion: ExclusionFilter,
        stats: walker.WalkStats,
    ):
        for task in walker.walk_file_tasks(
            roots, exclusion, stats, self.stop, self.error_policy
        ):
            if self.stopping():
                return
            self.tasks.put(task)


def run_backup(
    config: model.BackupConfiguration,
    config_bytes: typing.Optional[bytes],
    output_path: typing.Union[str, pathlib.Path],
    workers: typing.Optional[int] = None,
    error_policy: model.ErrorPolicy = model.ErrorPolicy.SKIP,
    quiet: bool = False,
    cancel: typing.Optional[threading.Event] = None,
) -> model.BackupResult:
    """Archive every configured path into a single zip file.

    ``config_bytes`` is stored verbatim as the configuration entry; when it
    is None the configuration model is serialized instead. Files that cannot
    be read or written are recorded in the result and skipped, unless
    ``error_policy`` is ABORT, in which case the first failure ends the run
    with a BackupError and no archive is left behind. Setting ``cancel``
    stops the walk, drains the queue and raises BackupCancelled.
    """
    workers = workers or helper.default_worker_count()
    if workers < 1:
        raise errors.BackupError(f"Worker count must be at least 1, not {workers}")

    # Every root must be reachable before anything is written
    roots = walker.check_roots(config)
    exclusion = ExclusionFilter.from_config(config)

    if config_bytes is None:
        config_bytes = applicationConfig.dump_config(config)

    result = model.BackupResult(output_path=pathlib.Path(output_path))
    stats = walker.WalkStats()
    fatal: typing.Optional[errors.BackupError] = None

    with archive.ArchiveWriter(output_path) as writer:
        writer.write_entry(archive.CONFIG_ENTRY_NAME, config_bytes)

        total = walker.count_file_tasks(roots, exclusion)
        if not quiet:
            helper.print_line(f"{total} files to back up")

        run = _BackupRun(writer, result, error_policy, cancel)
        with helper.progress_bar(total, "Backing up", quiet) as advance:
            threads = [
                threading.Thread(
                    target=run.work,
                    args=(advance,),
                    name=f"backup-worker-{index}",
                    daemon=True,
                )
                for index in range(workers)
            ]
            for thread in threads:
                thread.start()

            try:
                run.feed(roots, exclusion, stats)
            except errors.BackupError as err:
                run.stop.set()
                fatal = err
            except BaseException:
                run.stop.set()
                raise
            finally:
                for _ in threads:
                    run.tasks.put(_STOP)
                for thread in threads:
                    thread.join()

        result.skipped_files = stats.skipped_files
        result.skipped_dirs = stats.skipped_dirs
        result.root_failures = stats.root_failures

        if fatal is None and run.stop.is_set():
            if cancel is not None and cancel.is_set():
                fatal = errors.BackupCancelled("Backup cancelled")
            elif result.failures:
                first = result.failures[0]
                fatal = errors.BackupError(
                    f"Backup aborted, '{first.path}' failed: {first.message}"
                )

        # The file map is only written once every content entry is in place
        if fatal is None:
            writer.write_entry(archive.FILE_MAP_ENTRY_NAME, run.file_map.dump())

    if fatal is not None:
        result.output_path.unlink(missing_ok=True)
        raise fatal

    return result
