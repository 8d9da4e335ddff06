# tests/test_migration_path.py
import pytest

from usher.core.errors import UnknownSchemaVersionError
from usher.migrations import (
    STEPS,
    MigrationStep,
    PlannedStep,
    check_contiguous,
    get_migration_path,
    latest_version,
    normalize_version,
    valid_versions,
)
from usher.migrations.annotation import format_version_tag, parse_version_tag

up, down = PlannedStep.up, PlannedStep.down


@pytest.mark.parametrize(
    "current, target, expected",
    [
        (0, 3, [up(1), up(2), up(3)]),
        (3, 1, [down(3), down(2)]),
        (2, 2, []),
        ("legacy", 3, [up(2), up(3)]),
        (None, 2, [up(1), up(2)]),
        ("v05", 3, [down(5), down(4)]),
        (5, 1, [down(5), down(4), down(3), down(2)]),
    ],
)
def test_migration_path(current, target, expected):
    assert get_migration_path(current, target) == expected


def test_planned_step_str():
    assert str(up(3)) == "up(3)"
    assert str(down(2)) == "down(2)"


def test_known_versions():
    assert latest_version() == 5
    assert valid_versions() == [1, 2, 3, 4, 5]
    assert [s.version for s in STEPS] == [1, 2, 3, 4, 5]
    assert all(s.description for s in STEPS)


def test_normalize_version():
    assert normalize_version(None) == 0
    assert normalize_version("legacy") == 1
    assert normalize_version("v04") == 4
    assert normalize_version("4") == 4
    assert normalize_version(4) == 4
    with pytest.raises(TypeError):
        normalize_version(True)


@pytest.mark.parametrize("version, tag", [(1, "v01"), (5, "v05"), (12, "v12"), (123, "v123")])
def test_version_tags(version, tag):
    assert format_version_tag(version) == tag
    assert parse_version_tag(tag) == version


@pytest.mark.parametrize("tag", ["", "vv1", "version 3", "v1.2", "x05"])
def test_unparseable_tags(tag):
    with pytest.raises(UnknownSchemaVersionError):
        parse_version_tag(tag)


def _noop(ctx):
    pass


def test_steps_must_be_contiguous():
    steps = [MigrationStep(v, f"step {v}", _noop, _noop) for v in (1, 2, 4)]
    with pytest.raises(RuntimeError):
        check_contiguous(steps)

    duplicated = [MigrationStep(v, f"step {v}", _noop, _noop) for v in (1, 1, 2)]
    with pytest.raises(RuntimeError):
        check_contiguous(duplicated)

    shuffled = [MigrationStep(v, f"step {v}", _noop, _noop) for v in (2, 1)]
    assert [s.version for s in check_contiguous(shuffled)] == [1, 2]
