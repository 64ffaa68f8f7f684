### stdlib imports
import pathlib
import typing

### local imports
from . import helper


def cleanup_old_backups(
    directory: typing.Union[str, pathlib.Path], keep: int
) -> list[pathlib.Path]:
    """Delete all but the newest ``keep`` archives in a directory.

    Archive names embed a sortable timestamp, so name order is age order.
    Returns the paths that were removed.
    """
    directory = pathlib.Path(directory)
    try:
        backups = sorted(
            entry
            for entry in directory.iterdir()
            if entry.is_file() and entry.suffix == ".zip"
        )
    except OSError as err:
        helper.print_warning(f"Unable to list backup directory '{directory}': {err}")
        return []

    if len(backups) <= keep:
        return []

    removed = []
    for old in backups[: len(backups) - keep]:
        try:
            old.unlink()
        except OSError as err:
            helper.print_warning(f"Unable to delete old backup '{old}': {err}")
            continue
        helper.print_nested_line(f"Deleted old backup {old}")
        removed.append(old)
    return removed
