import json

import pytest

from fms_backend.features.launcher import FileAssociations, LauncherService, load_associations
from fms_shared import ErrorCode


class _Runner:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    def __call__(self, command):
        self.calls.append(command)
        if command[0] in self.failing or tuple(command[:2]) in self.failing:
            raise FileNotFoundError(command[0])


@pytest.fixture
def target(tmp_path):
    path = tmp_path / "report.pdf"
    path.write_bytes(b"%PDF")
    return str(path)


def _launcher(platform, runner, associations=None):
    return LauncherService(FileAssociations(associations or {}), runner=runner, platform=platform)


def test_reveal_on_macos_selects_the_file(target):
    runner = _Runner()
    res = _launcher("darwin", runner).reveal(target)
    assert res.ok
    assert runner.calls == [["open", "-R", target]]
    assert res.data == {"opened": True, "command": "open", "fallback": False, "selected": True}


def test_reveal_falls_back_to_opening_the_folder(target, tmp_path):
    runner = _Runner(failing={("open", "-R")})
    res = _launcher("darwin", runner).reveal(target)
    assert res.ok
    assert runner.calls[-1] == ["open", str(tmp_path)]
    assert res.data["fallback"] is True
    assert res.data["selected"] is False


def test_reveal_on_windows_and_linux(target, tmp_path):
    runner = _Runner()
    assert _launcher("windows", runner).reveal(target).ok
    assert runner.calls[-1] == ["explorer.exe", f"/select,{target}"]

    res = _launcher("linux", runner).reveal(target)
    assert runner.calls[-1] == ["xdg-open", str(tmp_path)]
    assert res.data["selected"] is False


def test_open_uses_the_associated_application(target):
    runner = _Runner()
    res = _launcher("darwin", runner, {"pdf": "Preview"}).open_file(target)
    assert res.ok
    assert runner.calls == [["open", "-a", "Preview", target]]
    assert res.data["app"] == "Preview"


def test_open_falls_back_to_the_system_default(target):
    runner = _Runner(failing={"okular"})
    res = _launcher("linux", runner, {"pdf": "okular"}).open_file(target)
    assert res.ok
    assert runner.calls == [["okular", target], ["xdg-open", target]]
    assert res.data["fallback"] is True


def test_open_without_association(target):
    runner = _Runner()
    assert _launcher("darwin", runner).open_file(target).data["app"] is None
    assert runner.calls == [["open", target]]


def test_every_command_failing_is_degraded(target):
    runner = _Runner(failing={"open"})
    res = _launcher("darwin", runner).open_file(target)
    assert not res.ok
    assert res.code == ErrorCode.DEGRADED.value


def test_missing_path_is_not_found(tmp_path):
    runner = _Runner()
    launcher = _launcher("darwin", runner)
    assert launcher.reveal(str(tmp_path / "nope")).code == ErrorCode.NOT_FOUND.value
    assert launcher.open_file("").code == ErrorCode.NOT_FOUND.value
    assert runner.calls == []


def test_load_associations_normalizes_extensions(tmp_path):
    config = tmp_path / "apps.json"
    config.write_text(json.dumps({".PDF": "Preview", "psd": " Photoshop ", "bad": 3, "": "x"}), encoding="utf-8")
    assert load_associations(config) == {"pdf": "Preview", "psd": "Photoshop"}


@pytest.mark.parametrize("content", ["{not json", "[1, 2]", b"\xff\xfe"])
def test_load_associations_ignores_invalid_files(tmp_path, content):
    config = tmp_path / "apps.json"
    if isinstance(content, bytes):
        config.write_bytes(content)
    else:
        config.write_text(content, encoding="utf-8")
    assert load_associations(config) == {}


def test_associations_reload(tmp_path):
    config = tmp_path / "apps.json"
    assocs = FileAssociations(config_path=config)
    assert assocs.app_for("/x/a.pdf") is None
    config.write_text(json.dumps({"pdf": "Preview"}), encoding="utf-8")
    assert assocs.reload() == 1
    assert assocs.app_for("/x/A.PDF") == "Preview"
    assert assocs.to_dict() == {"pdf": "Preview"}
