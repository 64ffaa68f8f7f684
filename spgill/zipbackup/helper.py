# Stdlib imports
import contextlib
import datetime
import os
import sys
import typing

# Vendor imports
import humanize
import rich
import rich.console
import rich.markup
import rich.progress
import yaml

# Local imports
from . import model


def print(*args, file=None):
    console = rich.get_console() if file is None else rich.console.Console(file=file)
    console.print(*args, soft_wrap=True)


def print_line(*args, file=None):
    print("-" * 8, *args, file=file)


def print_nested_line(*args):
    print("-" * 12, *args)


def printable(text: str) -> str:
    """Replace undecodable file name bytes with backslash escapes."""
    return text.encode("utf-8", "backslashreplace").decode("utf-8")


def print_warning(message: str):
    print_line(f"[yellow]{rich.markup.escape(printable(message))}", file=sys.stderr)


def print_error(message: str):
    print("-" * 8, f"[red]{rich.markup.escape(printable(message))}", file=sys.stderr)
    sys.exit(1)


def print_kv(key: str, value: str = ""):
    print(f"[yellow]{rich.markup.escape(key)}[/]: {rich.markup.escape(value)}")


def print_config_data(data: typing.Any):
    serialized: str = yaml.safe_dump(data, allow_unicode=True)
    print("\n".join("|  " + rich.markup.escape(line) for line in serialized.splitlines()))


def human_readable(num):
    return humanize.naturalsize(num, binary=True)


def timestamp() -> str:
    return datetime.datetime.now().strftime(r"%Y%m%d%H%M%S")


def default_worker_count() -> int:
    return os.cpu_count() or 1


@contextlib.contextmanager
def progress_bar(
    total: int, description: str, quiet: bool = False
) -> typing.Iterator[typing.Callable[[], None]]:
    """Yield a thread-safe callable that advances a rich progress bar by one."""
    with rich.progress.Progress(
        rich.progress.TextColumn("[progress.description]{task.description}"),
        rich.progress.BarColumn(),
        rich.progress.MofNCompleteColumn(),
        rich.progress.TimeElapsedColumn(),
        disable=quiet,
        transient=False,
    ) as progress:
        task_id = progress.add_task(description, total=total)

        def advance():
            progress.advance(task_id)

        yield advance


def print_backup_summary(result: model.BackupResult):
    size = (
        human_readable(result.output_path.stat().st_size)
        if result.output_path.exists()
        else "?"
    )
    print_line(
        f"[green]Backup complete:[/] {rich.markup.escape(str(result.output_path))} ({size}) "
        f"archived {result.processed_files} files, "
        f"skipped {result.skipped_files} files and {result.skipped_dirs} directories, "
        f"failed {result.failed_files} files"
    )
    for failure in result.root_failures:
        print_warning(f"Root not fully archived: {failure.path} ({failure.message})")


def print_restore_summary(result: model.RestoreResult):
    destination = result.root_dir or "original locations"
    print_line(
        f"[green]Restore complete:[/] {rich.markup.escape(str(result.archive_path))} -> {rich.markup.escape(str(destination))} "
        f"restored {result.restored_files} files, "
        f"skipped {result.unmapped_entries} unmapped entries, "
        f"failed {result.failed_files} files"
    )
    if result.snapshot_path:
        print_line(f"Pre-restore snapshot: {rich.markup.escape(str(result.snapshot_path))}")
