# Stdlib imports
import pathlib
import typing

# Vendor imports
import pydantic
import yaml

# Local imports
from . import errors, model

# Default configuration file path is relative to the working directory
default_config_path = pathlib.Path("config.yaml")

_default_config_contents = (
    """
# Files and directories to capture. Directories are archived recursively.
backup_paths: []

# Directory names to prune from the walk (exact match on the directory name)
exclude_dirs: []

# File name patterns to leave out (shell-style wildcards, e.g. "*.log")
exclude_files: []

# Shell snippets executed before and after a restore
# before_script: ""
# after_script: ""

# Systemd units stopped while a backup or restore is running
services: []
""".strip()
    + "\n"
)


def parse_config_bytes(
    data: bytes, source: typing.Union[str, pathlib.Path] = "<bytes>"
) -> model.BackupConfiguration:
    try:
        parsed = yaml.load(data, yaml.SafeLoader)
    except yaml.YAMLError as err:
        raise errors.ConfigurationError(
            f"Unable to parse YAML configuration '{source}': {err}"
        ) from err

    # An empty document is an empty configuration
    if parsed is None:
        parsed = {}
    if not isinstance(parsed, dict):
        raise errors.ConfigurationError(
            f"Configuration '{source}' must be a mapping, not {type(parsed).__name__}"
        )

    try:
        return model.BackupConfiguration(**parsed)
    except pydantic.ValidationError as err:
        raise errors.ConfigurationError(
            f"Invalid configuration '{source}': {err}"
        ) from err


# Return the config values in the config file, along with the raw bytes
def load_config_values(
    config_path: pathlib.Path, create: bool = False
) -> tuple[model.BackupConfiguration, bytes]:
    # Resolve the path string to a path object
    config_path = config_path.expanduser()

    # Optionally seed a commented starter file
    if create and not config_path.exists():
        with config_path.open("w") as handle:
            handle.write(_default_config_contents)

    try:
        data = config_path.read_bytes()
    except OSError as err:
        raise errors.ConfigurationError(
            f"Unable to read configuration '{config_path}': {err}"
        ) from err

    return parse_config_bytes(data, config_path), data


def dump_config(config: model.BackupConfiguration) -> bytes:
    serialized: str = yaml.safe_dump(
        config.model_dump(exclude_defaults=True),
        allow_unicode=True,
        sort_keys=False,
    )
    return serialized.encode("utf-8")
