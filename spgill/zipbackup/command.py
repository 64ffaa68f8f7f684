### stdlib imports
import typing

### vendor imports
import sh

# Scripts are always run through the POSIX shell
shell = sh.Command("sh")

# These two commands are only needed for pausing services
sudo: typing.Optional[sh.Command] = None
systemctl: typing.Optional[sh.Command] = None
try:
    sudo = sh.Command("sudo")
    systemctl = sh.Command("systemctl")
except sh.CommandNotFound:
    pass
