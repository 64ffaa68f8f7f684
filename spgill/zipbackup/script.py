### stdlib imports
import typing

### vendor imports
import rich.markup
import sh

### local imports
from . import command, errors, helper, model

SCRIPT_KINDS = ("before", "after")


def get_script(
    config: model.BackupConfiguration, kind: str
) -> typing.Optional[str]:
    if kind not in SCRIPT_KINDS:
        raise errors.ScriptError(
            f"Script type must be one of {', '.join(SCRIPT_KINDS)}, not '{kind}'"
        )
    return config.before_script if kind == "before" else config.after_script


def run_script(content: str, kind: str) -> str:
    """Run a shell snippet and return its combined stdout and stderr."""
    try:
        output = command.shell("-c", content, _err_to_out=True)
    except sh.ErrorReturnCode as err:
        raise errors.ScriptError(
            f"The {kind} script exited with status {err.exit_code}: "
            f"{err.stdout.decode(errors='replace').strip()}"
        ) from err

    helper.print_line(f"Output of {kind} script:")
    for line in str(output).splitlines():
        helper.print_nested_line(rich.markup.escape(line))
    return str(output)
