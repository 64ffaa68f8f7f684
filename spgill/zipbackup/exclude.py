### stdlib imports
import fnmatch
import re
import typing

### local imports
from . import model


class ExclusionFilter:
    """Name predicates applied to each path segment during traversal.

    Directory names are compared exactly. File names are compared against
    shell-style patterns (``*``, ``?``, ``[...]``), case-sensitively on every
    platform. A pattern that cannot be compiled never matches.
    """

    def __init__(
        self,
        exclude_dirs: typing.Iterable[str] = (),
        exclude_files: typing.Iterable[str] = (),
    ):
        self.exclude_dirs = frozenset(exclude_dirs)
        self.exclude_files = tuple(exclude_files)

    @classmethod
    def from_config(
        cls, config: model.BackupConfiguration
    ) -> "ExclusionFilter":
        return cls(config.exclude_dirs, config.exclude_files)

    def should_exclude_dir(self, name: str) -> bool:
        return name in self.exclude_dirs

    def should_exclude_file(self, name: str) -> bool:
        for pattern in self.exclude_files:
            try:
                if fnmatch.fnmatchcase(name, pattern):
                    return True
            except re.error:
                continue
        return False
