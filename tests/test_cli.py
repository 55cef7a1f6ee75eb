"""Tests for the command line entry point."""

import pytest

from conftest import FakeRobotAPI
from opentrons_sequencer import cli
from opentrons_sequencer.runner.http_handler import RobotAPI

SEQUENCE = """\
defaults: {delay_seconds: 30}
items:
  - name: first
    template: "set($temperature, $delay_seconds)"
    params: {temperature: 20}
  - name: second
    template: "set($temperature, $delay_seconds)"
    params: {temperature: 25}
"""


def raise_temperature(previous, item):
    return item.with_params(temperature=item.params["temperature"] + 1)


@pytest.fixture
def sequence_file(tmp_path):
    path = tmp_path / "sequence.yaml"
    path.write_text(SEQUENCE)
    return path


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch):
    monkeypatch.setenv("OT_SEQ_POLL_INTERVAL", "0.01")
    cli.get_settings.cache_clear()
    yield
    cli.get_settings.cache_clear()


@pytest.fixture
def install_robot(monkeypatch):
    def install(statuses=None, reachable=True):
        fake = FakeRobotAPI(statuses=statuses)
        fake.reachable = reachable
        monkeypatch.setattr(RobotAPI, "from_settings",
                            classmethod(lambda cls, settings, robot_url=None: fake))
        return fake
    return install


def test_run_success(sequence_file, install_robot, capsys):
    robot = install_robot()
    assert cli.main(["run", str(sequence_file), "--robot", "http://robot:31950"]) == 0

    assert [content for _, content in robot.uploads] == ["set(20, 30)", "set(25, 30)"]
    assert robot.closed
    out = capsys.readouterr().out.splitlines()
    assert out == ["0\tfirst\trun-0\tsucceeded", "1\tsecond\trun-1\tsucceeded"]


def test_run_failure_exits_non_zero_and_names_item(sequence_file, install_robot, capsys):
    robot = install_robot(statuses=[["succeeded"], ["failed"]])
    assert cli.main(["run", str(sequence_file)]) == 1

    assert "item 1" in capsys.readouterr().err
    assert robot.closed


def test_run_with_hook(sequence_file, install_robot):
    robot = install_robot()
    assert cli.main(["run", str(sequence_file), "--hook", "test_cli:raise_temperature"]) == 0
    assert [content for _, content in robot.uploads] == ["set(21, 30)", "set(26, 30)"]


def test_bad_hook_is_bad_input(sequence_file, install_robot):
    install_robot()
    assert cli.main(["run", str(sequence_file), "--hook", "no_colon"]) == 2
    assert cli.main(["run", str(sequence_file), "--hook", "not_a_module_xyz:f"]) == 2


def test_bad_sequence_is_bad_input(tmp_path, install_robot, capsys):
    install_robot()
    path = tmp_path / "broken.yaml"
    path.write_text("items: []\n")
    assert cli.main(["run", str(path)]) == 2
    assert "Invalid sequence" in capsys.readouterr().err


def test_render_prints_item(sequence_file, capsys):
    assert cli.main(["render", str(sequence_file), "--item", "1"]) == 0
    assert capsys.readouterr().out == "set(25, 30)"


def test_render_out_of_range(sequence_file):
    assert cli.main(["render", str(sequence_file), "--item", "5"]) == 2


def test_unreachable_robot_uploads_nothing(sequence_file, install_robot, capsys):
    robot = install_robot(reachable=False)
    assert cli.main(["run", str(sequence_file)]) == 1

    assert "Robot not reachable" in capsys.readouterr().err
    assert robot.uploads == []
    assert robot.closed


def test_delete_protocols_can_be_turned_off_on_command_line(sequence_file, install_robot, monkeypatch):
    monkeypatch.setenv("OT_SEQ_DELETE_PROTOCOLS", "true")
    cli.get_settings.cache_clear()

    robot = install_robot()
    assert cli.main(["run", str(sequence_file)]) == 0
    assert ("delete", "protocol-0") in robot.calls

    robot = install_robot()
    assert cli.main(["run", str(sequence_file), "--no-delete-protocols"]) == 0
    assert not any(c[0] == "delete" for c in robot.calls)
