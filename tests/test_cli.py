import pathlib
import zipfile

import pytest
import yaml
from typer.testing import CliRunner

from spgill.zipbackup import archive, cli
from spgill.zipbackup.filemap import rebase

runner = CliRunner()


@pytest.fixture
def config_file(source_tree, tmp_path) -> pathlib.Path:
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "backup_paths": [str(source_tree)],
                "exclude_dirs": ["tmp"],
                "exclude_files": ["*.log"],
                "before_script": "echo restoring",
            }
        )
    )
    return path


@pytest.fixture
def archive_path(config_file, tmp_path) -> pathlib.Path:
    output = tmp_path / "out" / "backup.zip"
    result = runner.invoke(
        cli, ["-c", str(config_file), "backup", "-o", str(output), "-q", "-w", "2"]
    )
    assert result.exit_code == 0, result.output
    return output


def test_backup_writes_archive(archive_path, config_file):
    with zipfile.ZipFile(archive_path) as source:
        names = set(source.namelist())
        assert source.read(archive.CONFIG_ENTRY_NAME) == config_file.read_bytes()

    assert names == {
        archive.CONFIG_ENTRY_NAME,
        archive.FILE_MAP_ENTRY_NAME,
        "data/a/x.txt",
        "data/a/nested/n.bin",
        "data/a/nested/deeper/d.txt",
    }


def test_backup_reports_summary(config_file, tmp_path):
    result = runner.invoke(
        cli, ["-c", str(config_file), "backup", "-o", str(tmp_path / "b.zip"), "-q"]
    )

    assert result.exit_code == 0
    assert "archived 3 files" in result.output


def test_backup_with_missing_config_fails(tmp_path):
    result = runner.invoke(cli, ["-c", str(tmp_path / "nope.yaml"), "backup", "-q"])

    assert result.exit_code == 1


def test_backup_with_missing_path_fails(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text(f"backup_paths: ['{tmp_path / 'missing'}']\n")

    result = runner.invoke(
        cli, ["-c", str(config), "backup", "-o", str(tmp_path / "b.zip"), "-q"]
    )

    assert result.exit_code == 1
    assert not (tmp_path / "b.zip").exists()


def test_restore_into_root_dir(archive_path, source_tree, tmp_path):
    sandbox = tmp_path / "sandbox"

    result = runner.invoke(
        cli, ["restore", "-i", str(archive_path), "-r", str(sandbox), "-q", "-s"]
    )

    assert result.exit_code == 0, result.output
    restored = pathlib.Path(rebase(str(source_tree / "x.txt"), sandbox))
    assert restored.read_text() == "x contents"


def test_restore_runs_before_script(archive_path, tmp_path):
    result = runner.invoke(
        cli, ["restore", "-i", str(archive_path), "-r", str(tmp_path / "sandbox"), "-q"]
    )

    assert result.exit_code == 0, result.output
    assert "restoring" in result.output


def test_restore_of_missing_archive_fails(tmp_path):
    result = runner.invoke(cli, ["restore", "-i", str(tmp_path / "missing.zip"), "-q"])

    assert result.exit_code == 1


def test_inspect_lists_entries(archive_path, source_tree):
    result = runner.invoke(cli, ["inspect", "-i", str(archive_path)])

    assert result.exit_code == 0, result.output
    assert "data/a/x.txt" in result.output
    assert "5 entries" in result.output


def test_config_view(archive_path):
    result = runner.invoke(
        cli, ["config", "view", "-i", str(archive_path), "-n", archive.FILE_MAP_ENTRY_NAME]
    )

    assert result.exit_code == 0, result.output
    assert "data/a/x.txt" in result.output


def test_config_export_and_import(archive_path, config_file, tmp_path):
    exported = tmp_path / "exported.yaml"
    result = runner.invoke(
        cli, ["config", "export", "-i", str(archive_path), "-o", str(exported)]
    )
    assert result.exit_code == 0, result.output
    assert exported.read_bytes() == config_file.read_bytes()

    replacement = tmp_path / "replacement.yaml"
    replacement.write_text("backup_paths: []\nafter_script: echo done\n")
    result = runner.invoke(
        cli, ["config", "import", "-i", str(archive_path), "-f", str(replacement)]
    )
    assert result.exit_code == 0, result.output

    with zipfile.ZipFile(archive_path) as source:
        assert source.read(archive.CONFIG_ENTRY_NAME) == replacement.read_bytes()
        assert "data/a/x.txt" in source.namelist()


def test_config_import_validates_unless_forced(archive_path, tmp_path):
    broken = tmp_path / "broken.yaml"
    broken.write_text("backup_paths: [unclosed\n")

    result = runner.invoke(
        cli, ["config", "import", "-i", str(archive_path), "-f", str(broken)]
    )
    assert result.exit_code == 1

    result = runner.invoke(
        cli, ["config", "import", "-i", str(archive_path), "-f", str(broken), "--force"]
    )
    assert result.exit_code == 0, result.output


def test_script_from_config(config_file):
    result = runner.invoke(cli, ["script", "-t", "before", "-c", str(config_file)])

    assert result.exit_code == 0, result.output
    assert "restoring" in result.output


def test_script_from_archive_without_after_script(archive_path):
    result = runner.invoke(cli, ["script", "-t", "after", "-i", str(archive_path)])

    assert result.exit_code == 0, result.output
    assert "No after script defined" in result.output


def test_script_requires_exactly_one_source(config_file, archive_path):
    result = runner.invoke(
        cli,
        ["script", "-t", "before", "-c", str(config_file), "-i", str(archive_path)],
    )

    assert result.exit_code == 1


def test_daemon_requires_schedule(config_file):
    result = runner.invoke(cli, ["-c", str(config_file), "daemon"])

    assert result.exit_code == 1
