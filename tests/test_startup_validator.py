from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from rtspmic import startup_validator as sv


def _fake_import_factory(responses):
    """Create a fake importer that can raise exceptions for specific modules."""

    def _fake_import(module_path):
        behavior = responses.get(module_path)
        if isinstance(behavior, Exception):
            raise behavior
        return behavior or object()

    return _fake_import


def _fake_which_factory(missing=()):
    def _fake_which(name):
        return None if name in missing else f"/usr/bin/{name}"

    return _fake_which


def test_collect_dependency_statuses_marks_missing():
    fake_import = _fake_import_factory({"pyudev": ModuleNotFoundError("no module named pyudev")})
    statuses = sv.collect_dependency_statuses(include_tools=False, importer=fake_import)
    status_map = {status.definition.key: status for status in statuses}

    assert status_map["pyudev"].state == "missing"
    assert status_map["psutil"].state == "ok"
    assert status_map["tabulate"].state == "ok"
    assert "ffmpeg" not in status_map


def test_tools_are_looked_up_in_path():
    statuses = sv.collect_dependency_statuses(importer=_fake_import_factory({}),
                                              which=_fake_which_factory({"arecord"}))
    status_map = {status.definition.key: status for status in statuses}

    assert status_map["ffmpeg"].state == "ok"
    assert status_map["ffmpeg"].detail == "/usr/bin/ffmpeg"
    assert status_map["arecord"].state == "missing"
    assert "was not found in PATH" in status_map["arecord"].describe()
    assert "alsa-utils" in status_map["arecord"].describe()


def test_broken_library_is_distinguished():
    fake_import = _fake_import_factory({"pyudev": RuntimeError("libudev.so.1 not found")})
    with pytest.raises(sv.BrokenDependencyError) as excinfo:
        sv.ensure_runtime_dependencies(include_tools=False, importer=fake_import)

    assert "libudev.so.1 not found" in str(excinfo.value)


def test_ensure_runtime_dependencies_raises_missing():
    fake_import = _fake_import_factory({"tabulate": ModuleNotFoundError("tabulate missing")})
    with pytest.raises(sv.MissingDependencyError) as excinfo:
        sv.ensure_runtime_dependencies(importer=fake_import, which=_fake_which_factory({"ffmpeg"}))

    assert "tabulate is not installed" in excinfo.value.user_message
    assert "ffmpeg was not found in PATH" in excinfo.value.user_message


def test_ensure_runtime_dependencies_passes():
    statuses = sv.ensure_runtime_dependencies(importer=_fake_import_factory({}),
                                              which=_fake_which_factory())
    assert len(statuses) == len(sv.DEPENDENCIES)


def test_run_self_check_reports_statuses(capsys):
    success = sv.run_self_check(importer=_fake_import_factory({}), which=_fake_which_factory())

    out = capsys.readouterr().out
    assert success is True
    assert "dependency self-check" in out
    assert "[OK" in out


def test_run_self_check_reports_missing_tool(capsys):
    success = sv.run_self_check(importer=_fake_import_factory({}), which=_fake_which_factory({"udevadm"}))

    out = capsys.readouterr().out
    assert success is False
    assert "[MISSING] udevadm" in out
