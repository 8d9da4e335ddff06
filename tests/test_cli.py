# tests/test_cli.py
import pytest

from usher.cli import EXIT_INVALID_TARGET, EXIT_OK, main, write_install_revision
from usher.core.errors import InvalidTargetVersionError


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'usher.db'}"


def _run(settings, db_url, *argv):
    return main(["--database-url", db_url, *argv], settings=settings)


def test_status_up_and_plan(settings, db_url, capsys):
    assert _run(settings, db_url, "status") == EXIT_OK
    assert "Installed version: 0" in capsys.readouterr().out

    assert _run(settings, db_url, "up", "--to", "3") == EXIT_OK
    out = capsys.readouterr().out
    assert "up(1)" in out and "up(3)" in out

    assert _run(settings, db_url, "up") == EXIT_OK
    assert _run(settings, db_url, "status") == EXIT_OK
    out = capsys.readouterr().out
    assert "Installed version: 5" in out
    assert "up-to-date" in out

    assert _run(settings, db_url, "plan", "--to", "3") == EXIT_OK
    out = capsys.readouterr().out
    assert "down(5)" in out and "down(4)" in out


def test_up_again_takes_no_action(settings, db_url, capsys):
    _run(settings, db_url, "up")
    capsys.readouterr()

    assert _run(settings, db_url, "up") == EXIT_OK
    assert "No action taken." in capsys.readouterr().out


def test_down(settings, db_url, capsys):
    _run(settings, db_url, "up")

    assert _run(settings, db_url, "down", "--to", "2") == EXIT_OK
    assert _run(settings, db_url, "status") == EXIT_OK
    assert "Installed version: 2" in capsys.readouterr().out


@pytest.mark.parametrize("argv", [["up", "--to", "9"], ["down", "--to", "0"], ["plan", "--to", "6"]])
def test_invalid_targets_exit_2(settings, db_url, argv, capsys):
    _run(settings, db_url, "up")

    assert _run(settings, db_url, *argv) == EXIT_INVALID_TARGET
    assert "Error" in capsys.readouterr().err


def test_wrong_direction_exit_2(settings, db_url):
    _run(settings, db_url, "up", "--to", "2")

    assert _run(settings, db_url, "down", "--to", "4") == EXIT_INVALID_TARGET
    _run(settings, db_url, "up")
    assert _run(settings, db_url, "up", "--to", "2") == EXIT_INVALID_TARGET


def test_install_writes_alembic_revision(settings, tmp_path, capsys):
    directory = tmp_path / "versions"

    assert main(["install", "--directory", str(directory), "--down-revision", "abc123"], settings=settings) == EXIT_OK

    [path] = directory.glob("*_install_usher_v05.py")
    source = path.read_text(encoding="utf-8")
    assert "migrate_to_version(5, bind=op.get_bind())" in source
    assert "migrate_to_version(1, bind=op.get_bind())" in source
    assert "down_revision = 'abc123'" in source
    assert str(path) in capsys.readouterr().out


def test_install_rejects_unknown_version(tmp_path):
    with pytest.raises(InvalidTargetVersionError):
        write_install_revision(str(tmp_path), version=9)
