# Stdlib imports
import dataclasses
import datetime
import json
import pathlib
import sys
import typer
import typing

# Vendor imports
import apscheduler.executors.pool
import apscheduler.schedulers.blocking
import apscheduler.triggers.cron
import yaml

# Local imports
from . import (
    archive,
    backup,
    config as applicationConfig,
    errors,
    helper,
    model,
    restore,
    retention,
    script,
    service,
)


# Options from the main callback, shared with every subcommand through ctx.obj
@dataclasses.dataclass
class BackupCLIState:
    config_path: pathlib.Path
    verbose: bool = False


# Create a subclass of the context with correct typing of the CLI state
class BackupCLIContext(typer.Context):
    obj: BackupCLIState


# Initialize the typer app
cli = typer.Typer()
config_cli = typer.Typer(help="View or replace the metadata stored in a backup archive.")
cli.add_typer(config_cli, name="config")


def load_config(ctx: BackupCLIContext) -> tuple[model.BackupConfiguration, bytes]:
    try:
        return applicationConfig.load_config_values(ctx.obj.config_path)
    except errors.ConfigurationError as err:
        helper.print_error(f"Error: {err}")


def default_output_path() -> pathlib.Path:
    return pathlib.Path(f"backup_{helper.timestamp()}.zip")


# Main method that records where the configuration lives
@cli.callback()
def cli_main(
    ctx: BackupCLIContext,
    config: pathlib.Path = typer.Option(
        applicationConfig.default_config_path,
        "--config",
        "-c",
        envvar="SPGILL_ZIPBACKUP_CONFIG",
        help="Path to backup configuration file.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose/",
        "-v/",
        envvar="SPGILL_ZIPBACKUP_VERBOSE",
        help="Print verbose information when executing commands.",
    ),
):
    ctx.obj = BackupCLIState(config_path=config, verbose=verbose)


@cli.command(name="backup", help="Archive the configured paths into a zip file.")
def cli_backup(
    ctx: BackupCLIContext,
    output: typing.Optional[pathlib.Path] = typer.Option(
        None,
        "--output",
        "-o",
        help="Path of the archive to create. Defaults to 'backup_<timestamp>.zip'.",
    ),
    workers: typing.Optional[int] = typer.Option(
        None,
        "--workers",
        "-w",
        min=1,
        help="Number of files archived in parallel. Defaults to the CPU count.",
    ),
    on_error: model.ErrorPolicy = typer.Option(
        model.ErrorPolicy.SKIP,
        "--on-error",
        help="Skip files that cannot be read, or abort the whole backup.",
    ),
    quiet: bool = typer.Option(
        False, "--quiet/", "-q/", help="Hide the progress bar."
    ),
):
    config, config_bytes = load_config(ctx)
    output_path = output or default_output_path()

    helper.print_line(f"Starting at {datetime.datetime.now()}")
    if ctx.obj.verbose:
        helper.print_config_data(config.model_dump())

    try:
        with service.services_paused(config.services):
            result = backup.run_backup(
                config,
                config_bytes,
                output_path,
                workers=workers,
                error_policy=on_error,
                quiet=quiet,
            )
    except errors.ZipBackupError as err:
        helper.print_error(f"Error: {err}")
    except KeyboardInterrupt:
        helper.print_line("Keyboard interrupt detected")
        sys.exit(130)

    helper.print_backup_summary(result)
    helper.print_line(f"Finished at {datetime.datetime.now()}")


@cli.command(name="restore", help="Restore the files stored in a backup archive.")
def cli_restore(
    ctx: BackupCLIContext,
    input: pathlib.Path = typer.Option(
        ..., "--input", "-i", help="Path of the backup archive."
    ),
    root_dir: typing.Optional[pathlib.Path] = typer.Option(
        None,
        "--root-dir",
        "-r",
        help="Restore beneath this directory instead of the original absolute locations.",
    ),
    backup_before_restore: bool = typer.Option(
        False,
        "--backup-before-restore/",
        "-b/",
        help="Snapshot the files about to be overwritten first. The newest 3 snapshots are kept.",
    ),
    snapshot_dir: pathlib.Path = typer.Option(
        restore.default_snapshot_dir,
        "--snapshot-dir",
        help="Directory that receives pre-restore snapshots.",
    ),
    no_scripts: bool = typer.Option(
        False,
        "--no-scripts/",
        "-s/",
        help="Do not run the before and after scripts stored in the archive.",
    ),
    workers: typing.Optional[int] = typer.Option(
        None,
        "--workers",
        "-w",
        min=1,
        help="Number of files extracted in parallel. Defaults to the CPU count.",
    ),
    on_error: model.ErrorPolicy = typer.Option(
        model.ErrorPolicy.SKIP,
        "--on-error",
        help="Skip files that cannot be written, or abort the whole restore.",
    ),
    quiet: bool = typer.Option(
        False, "--quiet/", "-q/", help="Hide the progress bar."
    ),
):
    helper.print_line(f"Starting at {datetime.datetime.now()}")
    helper.print_line(f"Restoring from {input}")

    try:
        with archive.open_archive(input) as source:
            archived_config, _ = restore.load_metadata(source)

        with service.services_paused(archived_config.services):
            result = restore.run_restore(
                input,
                root_dir=root_dir,
                workers=workers,
                error_policy=on_error,
                quiet=quiet,
                snapshot_dir=snapshot_dir if backup_before_restore else None,
                run_scripts=not no_scripts,
            )
    except errors.ZipBackupError as err:
        helper.print_error(f"Error: {err}")
    except KeyboardInterrupt:
        helper.print_line("Keyboard interrupt detected")
        sys.exit(130)

    helper.print_restore_summary(result)
    helper.print_line(f"Finished at {datetime.datetime.now()}")


@cli.command(name="inspect", help="List the entries stored in a backup archive.")
def cli_inspect(
    ctx: BackupCLIContext,
    input: pathlib.Path = typer.Option(
        ..., "--input", "-i", help="Path of the backup archive."
    ),
):
    try:
        with archive.open_archive(input) as source:
            _, file_map = restore.load_metadata(source)
            entries = archive.list_entries(source)
    except errors.ZipBackupError as err:
        helper.print_error(f"Error: {err}")

    total_size = 0
    for info in entries:
        total_size += info.file_size
        original = file_map.get(info.filename)
        helper.print_kv(
            info.filename,
            f"{helper.human_readable(info.file_size)}"
            + (f" <- {original}" if original else ""),
        )

    helper.print_line(
        f"{len(entries)} entries, {helper.human_readable(total_size)} uncompressed"
    )


@config_cli.command(name="view", help="Print a metadata entry of a backup archive.")
def cli_config_view(
    input: pathlib.Path = typer.Option(
        ..., "--input", "-i", help="Path of the backup archive."
    ),
    name: str = typer.Option(
        archive.CONFIG_ENTRY_NAME,
        "--name",
        "-n",
        help=f"Entry to show ({archive.CONFIG_ENTRY_NAME} or {archive.FILE_MAP_ENTRY_NAME}).",
    ),
):
    try:
        data = archive.read_entry_from_path(input, name)
    except errors.ZipBackupError as err:
        helper.print_error(f"Error: {err}")

    helper.print_line(name)
    try:
        helper.print_config_data(yaml.load(data, yaml.SafeLoader))
    except yaml.YAMLError:
        sys.stdout.write(data.decode("utf-8", errors="replace"))


@config_cli.command(name="export", help="Write a metadata entry of a backup archive to a file.")
def cli_config_export(
    input: pathlib.Path = typer.Option(
        ..., "--input", "-i", help="Path of the backup archive."
    ),
    name: str = typer.Option(
        archive.CONFIG_ENTRY_NAME,
        "--name",
        "-n",
        help=f"Entry to export ({archive.CONFIG_ENTRY_NAME} or {archive.FILE_MAP_ENTRY_NAME}).",
    ),
    output: typing.Optional[pathlib.Path] = typer.Option(
        None,
        "--output",
        "-o",
        help="Destination file. Defaults to the entry name in the working directory.",
    ),
):
    output_path = output or pathlib.Path(name).name

    try:
        data = archive.read_entry_from_path(input, name)
        pathlib.Path(output_path).write_bytes(data)
    except errors.ZipBackupError as err:
        helper.print_error(f"Error: {err}")
    except OSError as err:
        helper.print_error(f"Error: Unable to write '{output_path}': {err}")

    helper.print_line(f"Exported '{name}' to {output_path}")


def validate_import_data(path: pathlib.Path, data: bytes):
    if path.suffix in (".yaml", ".yml"):
        try:
            parsed = yaml.load(data, yaml.SafeLoader)
        except yaml.YAMLError as err:
            raise errors.ConfigurationError(f"Invalid YAML in '{path}': {err}") from err
    elif path.suffix == ".json":
        try:
            parsed = json.loads(data)
        except ValueError as err:
            raise errors.ConfigurationError(f"Invalid JSON in '{path}': {err}") from err
    else:
        return

    if not isinstance(parsed, dict):
        raise errors.ConfigurationError(f"'{path}' must contain a mapping")


@config_cli.command(name="import", help="Replace a metadata entry of a backup archive.")
def cli_config_import(
    input: pathlib.Path = typer.Option(
        ..., "--input", "-i", help="Path of the backup archive to modify."
    ),
    source: pathlib.Path = typer.Option(
        ..., "--file", "-f", help="File whose contents replace the entry."
    ),
    name: str = typer.Option(
        archive.CONFIG_ENTRY_NAME,
        "--name",
        "-n",
        help=f"Entry to replace ({archive.CONFIG_ENTRY_NAME} or {archive.FILE_MAP_ENTRY_NAME}).",
    ),
    force: bool = typer.Option(
        False,
        "--force/",
        help="Skip validating the replacement file before importing it.",
    ),
):
    try:
        data = source.read_bytes()
    except OSError as err:
        helper.print_error(f"Error: Unable to read '{source}': {err}")

    try:
        if not force:
            validate_import_data(source, data)
        archive.replace_entry(input, name, data)
    except errors.ZipBackupError as err:
        helper.print_error(f"Error: {err}")

    helper.print_line(f"Imported '{source}' into {input} as '{name}'")


@cli.command(
    name="script",
    help="Run the before or after script from a configuration file or a backup archive.",
)
def cli_script(
    kind: str = typer.Option(
        ..., "--type", "-t", help="Which script to run: 'before' or 'after'."
    ),
    config_path: typing.Optional[pathlib.Path] = typer.Option(
        None, "--config", "-c", help="Read the script from this configuration file."
    ),
    input: typing.Optional[pathlib.Path] = typer.Option(
        None, "--input", "-i", help="Read the script from this backup archive."
    ),
):
    if (config_path is None) == (input is None):
        helper.print_error("Error: Provide exactly one of '--config' or '--input'")

    try:
        if config_path is not None:
            config, _ = applicationConfig.load_config_values(config_path)
        else:
            config = applicationConfig.parse_config_bytes(
                archive.read_entry_from_path(input, archive.CONFIG_ENTRY_NAME),
                archive.CONFIG_ENTRY_NAME,
            )

        content = script.get_script(config, kind)
        if not content:
            helper.print_warning(f"No {kind} script defined")
            return

        script.run_script(content, kind)
    except errors.ZipBackupError as err:
        helper.print_error(f"Error: {err}")

    helper.print_line(f"The {kind} script finished")


def scheduled_backup(config_path: pathlib.Path):
    """Job body for the daemon; failures are reported and the schedule goes on."""
    try:
        config, config_bytes = applicationConfig.load_config_values(config_path)
        assert config.output_dir
        output_dir = pathlib.Path(config.output_dir).expanduser()
        output_path = output_dir / f"backup_{helper.timestamp()}.zip"

        helper.print_line(f"Scheduled backup starting at {datetime.datetime.now()}")
        with service.services_paused(config.services):
            result = backup.run_backup(config, config_bytes, output_path, quiet=True)
        helper.print_backup_summary(result)

        if config.keep_last:
            retention.cleanup_old_backups(output_dir, config.keep_last)
    except errors.ZipBackupError as err:
        helper.print_warning(f"Scheduled backup failed: {err}")


@cli.command(
    name="daemon", help="Run in daemon mode and execute backups on a schedule."
)
def cli_daemon(
    ctx: BackupCLIContext,
):
    config, _ = load_config(ctx)

    if not config.schedule:
        helper.print_error("Error: No 'schedule' defined in the configuration")
    if not config.output_dir:
        helper.print_error("Error: No 'output_dir' defined in the configuration")

    helper.print_line(f"Scheduling backups: {config.schedule}")
    scheduler = apscheduler.schedulers.blocking.BlockingScheduler(
        executors={
            "default": apscheduler.executors.pool.ThreadPoolExecutor(1)
        },
        job_defaults={
            "misfire_grace_time": None,
            "coalesce": True,
        },
    )

    try:
        trigger = apscheduler.triggers.cron.CronTrigger.from_crontab(
            config.schedule
        )
    except ValueError as err:
        helper.print_error(f"Error: Invalid schedule '{config.schedule}': {err}")

    scheduler.add_job(
        id="backup",
        trigger=trigger,
        func=scheduled_backup,
        args=[ctx.obj.config_path],
    )

    try:
        helper.print_warning("Starting scheduler...")
        scheduler.start()
    except KeyboardInterrupt:
        helper.print_warning("Scheduler stopping...")
        sys.exit()
