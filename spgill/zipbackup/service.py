### stdlib imports
import contextlib
import typing

### vendor imports
import sh

### local imports
from . import command, errors, helper


def _systemctl(action: str, service_name: str):
    if command.sudo is None or command.systemctl is None:
        raise errors.ServiceError(
            f"Cannot {action} service '{service_name}': 'sudo' and 'systemctl' must be available on PATH"
        )
    try:
        command.sudo("systemctl", action, service_name)
    except sh.ErrorReturnCode as err:
        raise errors.ServiceError(
            f"Failed to {action} service '{service_name}': "
            f"{err.stderr.decode(errors='replace').strip()}"
        ) from err


def pause_services(service_names: typing.Iterable[str]):
    for service_name in service_names:
        _systemctl("stop", service_name)
        helper.print_line(f"Service '{service_name}' paused")


def resume_services(service_names: typing.Iterable[str]):
    for service_name in service_names:
        _systemctl("start", service_name)
        helper.print_line(f"Service '{service_name}' resumed")


@contextlib.contextmanager
def services_paused(service_names: list[str]) -> typing.Iterator[None]:
    """Stop the given services for the duration of the block."""
    if not service_names:
        yield
        return

    pause_services(service_names)
    try:
        yield
    finally:
        resume_services(service_names)
