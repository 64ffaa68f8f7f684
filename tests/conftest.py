import pathlib
import zipfile

import pytest

from spgill.zipbackup import model


@pytest.fixture
def source_tree(tmp_path: pathlib.Path) -> pathlib.Path:
    """A small directory tree rooted at ``<tmp>/src/a``."""
    root = tmp_path / "src" / "a"
    (root / "tmp").mkdir(parents=True)
    (root / "nested" / "deeper").mkdir(parents=True)
    (root / "x.txt").write_text("x contents")
    (root / "tmp" / "y.txt").write_text("y contents")
    (root / "z.log").write_text("z contents")
    (root / "nested" / "n.bin").write_bytes(bytes(range(256)) * 64)
    (root / "nested" / "deeper" / "d.txt").write_text("deep")
    return root


@pytest.fixture
def make_config():
    def factory(*paths, **kwargs) -> model.BackupConfiguration:
        return model.BackupConfiguration(
            backup_paths=[str(path) for path in paths], **kwargs
        )

    return factory


def entry_names(archive_path: pathlib.Path) -> set[str]:
    with zipfile.ZipFile(archive_path) as archive:
        return set(archive.namelist())
