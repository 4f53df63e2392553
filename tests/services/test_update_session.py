from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Sequence

import pytest

from services.updater import session as session_module
from services.updater import synchronizer
from services.updater.cli import parse_arguments
from services.updater.exclusivity import get_lock_file_path
from services.updater.models import ExitCode, SessionState, UpdateSession
from services.updater.recovery import get_failure_marker_path
from tests.services.updater_test_utils import (
    HOST_EXECUTABLE,
    RecordingElevator,
    RecordingHostLauncher,
    make_controller,
    make_guard,
    snapshot,
    write_tree,
)


@pytest.fixture
def lock_dir(tmp_path: Path) -> Path:
    path = tmp_path / "locks"
    path.mkdir()
    return path


def _session(source: Path, target: Path, **kwargs) -> UpdateSession:
    return UpdateSession(source_dir=source, target_dir=target, **kwargs)


def _stub_probe(monkeypatch: pytest.MonkeyPatch, results: Sequence[bool]) -> list[bool]:
    remaining = list(results)
    seen: list[bool] = []

    def _can_write(*_args, **_kwargs) -> bool:
        value = remaining.pop(0)
        seen.append(value)
        return value

    monkeypatch.setattr(session_module, "can_write", _can_write)
    return seen


def test_full_update_scenario(tmp_path: Path, lock_dir: Path) -> None:
    source = write_tree(tmp_path / "src", {"A.dll": "new", "Resources/icon.png": "staged icon"})
    target = write_tree(
        tmp_path / "tgt",
        {"A.dll": "old", "B.dll": "stale", "Resources/icon.png": "installed icon"},
    )
    launcher = RecordingHostLauncher()
    controller = make_controller(lock_dir, launcher=launcher)
    session = _session(source, target)

    outcome = controller.run(session)

    assert outcome.success
    assert outcome.files_updated and outcome.host_launched
    assert snapshot(target) == {"A.dll": "new", "Resources/icon.png": "installed icon"}
    assert list(source.iterdir()) == []
    assert launcher.launched == [(target / HOST_EXECUTABLE, target)]
    assert session.history == [
        SessionState.WAITING_FOR_EXCLUSIVITY,
        SessionState.VALIDATING_PATHS,
        SessionState.PROBING_WRITABILITY,
        SessionState.MERGING_RESOURCES,
        SessionState.SYNCHRONIZING,
        SessionState.RELAUNCHING,
        SessionState.DONE,
    ]


def test_new_resources_are_merged_into_target(tmp_path: Path, lock_dir: Path) -> None:
    source = write_tree(tmp_path / "src", {"Resources/new.png": "n", "Resources/sub/a.txt": "a"})
    target = write_tree(tmp_path / "tgt", {"resources/old.png": "o"})

    outcome = make_controller(lock_dir).run(_session(source, target))

    assert outcome.success
    assert snapshot(target) == {
        "resources/new.png": "n",
        "resources/old.png": "o",
        "resources/sub/a.txt": "a",
    }


def test_missing_resources_in_staging_skips_merge(tmp_path: Path, lock_dir: Path) -> None:
    source = write_tree(tmp_path / "src", {"A.dll": "new"})
    target = write_tree(tmp_path / "tgt", {"Resources/a.txt": "keep"})

    outcome = make_controller(lock_dir).run(_session(source, target))

    assert outcome.success
    assert snapshot(target) == {"A.dll": "new", "Resources/a.txt": "keep"}


def test_missing_source_aborts_and_releases_token(tmp_path: Path, lock_dir: Path) -> None:
    target = write_tree(tmp_path / "tgt", {"A.dll": "old"})
    launcher = RecordingHostLauncher()
    session = _session(tmp_path / "missing", target)

    outcome = make_controller(lock_dir, launcher=launcher).run(session)

    assert outcome.exit_code is ExitCode.SOURCE_MISSING
    assert session.token is None
    assert launcher.launched == []
    assert snapshot(target) == {"A.dll": "old"}
    token = make_guard(lock_dir).try_acquire()
    assert token is not None
    token.release()


def test_missing_target_aborts_and_releases_token(tmp_path: Path, lock_dir: Path) -> None:
    source = write_tree(tmp_path / "src", {"A.dll": "new"})

    outcome = make_controller(lock_dir).run(_session(source, tmp_path / "missing"))

    assert outcome.exit_code is ExitCode.TARGET_MISSING
    assert (source / "A.dll").exists()
    token = make_guard(lock_dir).try_acquire()
    assert token is not None
    token.release()


def test_session_waits_for_host_process(
    tmp_path: Path, lock_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    source = write_tree(tmp_path / "src", {"A.dll": "new"})
    target = write_tree(tmp_path / "tgt", {"A.dll": "old"})
    answers = iter([True, False])
    queried: list[int] = []

    def _exists(pid: int) -> bool:
        queried.append(pid)
        return next(answers)

    monkeypatch.setattr("services.updater.exclusivity.process_exists", _exists)
    controller = make_controller(lock_dir)
    controller._guard._sleep = lambda _seconds: None  # type: ignore[attr-defined]

    outcome = controller.run(_session(source, target, host_process_id=1234))

    assert outcome.success
    assert queried == [1234, 1234]


def test_concurrent_updater_is_reported_as_already_running(
    tmp_path: Path, lock_dir: Path
) -> None:
    source = write_tree(tmp_path / "src", {"A.dll": "new"})
    target = write_tree(tmp_path / "tgt", {"A.dll": "old"})
    holder = make_guard(lock_dir).acquire()
    controller = make_controller(lock_dir)
    controller._guard = make_guard(lock_dir, ceiling_seconds=0)  # type: ignore[attr-defined]

    try:
        outcome = controller.run(_session(source, target))
    finally:
        holder.release()

    assert outcome.exit_code is ExitCode.ALREADY_RUNNING
    assert snapshot(target) == {"A.dll": "old"}


def test_exhausted_retries_are_critical_and_host_is_not_relaunched(
    tmp_path: Path,
    lock_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    source = write_tree(tmp_path / "src", {"A.dll": "new"})
    target = write_tree(tmp_path / "tgt", {"A.dll": "old"})
    launcher = RecordingHostLauncher()
    acknowledged: list[bool] = []
    attempts: list[str] = []

    def _always_locked(path: Path) -> None:
        attempts.append(path.name)
        raise PermissionError("The process cannot access the file because it is in use")

    monkeypatch.setattr(synchronizer, "_remove_file", _always_locked)
    controller = make_controller(
        lock_dir,
        launcher=launcher,
        pause_on_failure=True,
        acknowledge=lambda: acknowledged.append(True),
    )

    outcome = controller.run(_session(source, target))

    assert outcome.exit_code is ExitCode.SYNC_FAILED
    assert not outcome.host_launched
    assert launcher.launched == []
    assert len(attempts) == 10
    assert acknowledged == [True]
    critical = [r.getMessage() for r in caplog.records if r.levelno == logging.CRITICAL]
    assert any("log file" in message for message in critical)
    assert any("critical failure" in message for message in critical)
    marker = json.loads(get_failure_marker_path(target).read_text(encoding="utf-8"))
    assert "in use" in marker["reason"]
    assert "Close any other programs" in marker["advice"]


def test_successful_update_clears_stale_failure_marker(tmp_path: Path, lock_dir: Path) -> None:
    source = write_tree(tmp_path / "src", {"A.dll": "new"})
    target = write_tree(tmp_path / "tgt", {"A.dll": "old"})
    marker = get_failure_marker_path(target)
    marker.write_text(json.dumps({"reason": "old failure"}), encoding="utf-8")

    outcome = make_controller(lock_dir).run(_session(source, target))

    assert outcome.success
    assert not marker.exists()


def test_merge_failure_is_fatal(
    tmp_path: Path, lock_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    source = write_tree(tmp_path / "src", {"A.dll": "new", "Resources/a.png": "a"})
    target = write_tree(tmp_path / "tgt", {"A.dll": "old"})
    launcher = RecordingHostLauncher()

    def _broken_move(*_args, **_kwargs):
        raise PermissionError("denied")

    monkeypatch.setattr("services.updater.merge.shutil.move", _broken_move)

    outcome = make_controller(lock_dir, launcher=launcher).run(_session(source, target))

    assert outcome.exit_code is ExitCode.MERGE_FAILED
    assert snapshot(target) == {"A.dll": "old"}
    assert launcher.launched == []


def test_relaunch_failure_is_reported_after_files_were_updated(
    tmp_path: Path, lock_dir: Path
) -> None:
    source = write_tree(tmp_path / "src", {"A.dll": "new"})
    target = write_tree(tmp_path / "tgt", {"A.dll": "old"})
    launcher = RecordingHostLauncher(error="not found")

    outcome = make_controller(lock_dir, launcher=launcher).run(_session(source, target))

    assert outcome.exit_code is ExitCode.RELAUNCH_FAILED
    assert outcome.files_updated
    assert not outcome.host_launched
    assert snapshot(target) == {"A.dll": "new"}


def test_unwritable_target_escalates_once_and_parent_relaunches(
    tmp_path: Path, lock_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    source = write_tree(tmp_path / "src", {"A.dll": "new"})
    target = write_tree(tmp_path / "tgt", {"A.dll": "old"})
    probes = _stub_probe(monkeypatch, [False, True])
    parent_launcher = RecordingHostLauncher()
    child_launcher = RecordingHostLauncher()
    children: list[UpdateSession] = []

    def _child(command: Sequence[str]) -> int:
        arguments = parse_arguments(command[-4:])
        child_session = UpdateSession.from_arguments(arguments)
        children.append(child_session)
        child_controller = make_controller(lock_dir, elevator=elevator, launcher=child_launcher)
        return int(child_controller.run(child_session).exit_code)

    elevator = RecordingElevator(child=_child)
    parent = _session(source, target)

    outcome = make_controller(lock_dir, elevator=elevator, launcher=parent_launcher).run(parent)

    assert outcome.success
    assert probes == [False, True]
    assert len(elevator.commands) == 1
    assert elevator.commands[0] == ["updater", str(source), str(target), "0", "true"]
    assert children[0].elevated is True
    assert snapshot(target) == {"A.dll": "new"}
    assert child_launcher.launched == []
    assert parent_launcher.launched == [(target / HOST_EXECUTABLE, target)]
    assert SessionState.ESCALATING in parent.history
    assert SessionState.SYNCHRONIZING not in parent.history


def test_elevated_child_that_still_cannot_write_does_not_escalate_again(
    tmp_path: Path, lock_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    source = write_tree(tmp_path / "src", {"A.dll": "new"})
    target = write_tree(tmp_path / "tgt", {"A.dll": "old"})
    _stub_probe(monkeypatch, [False, False])
    launcher = RecordingHostLauncher()

    def _child(command: Sequence[str]) -> int:
        child_session = UpdateSession.from_arguments(parse_arguments(command[-4:]))
        child_controller = make_controller(lock_dir, elevator=elevator, launcher=launcher)
        return int(child_controller.run(child_session).exit_code)

    elevator = RecordingElevator(child=_child)

    outcome = make_controller(lock_dir, elevator=elevator, launcher=launcher).run(
        _session(source, target)
    )

    assert outcome.exit_code is ExitCode.PERMISSION_DENIED
    assert len(elevator.commands) == 1
    assert launcher.launched == []
    assert snapshot(target) == {"A.dll": "old"}


def test_elevated_session_never_escalates(
    tmp_path: Path, lock_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    source = write_tree(tmp_path / "src", {"A.dll": "new"})
    target = write_tree(tmp_path / "tgt", {"A.dll": "old"})
    _stub_probe(monkeypatch, [False])
    elevator = RecordingElevator()

    outcome = make_controller(lock_dir, elevator=elevator).run(
        _session(source, target, elevated=True)
    )

    assert outcome.exit_code is ExitCode.PERMISSION_DENIED
    assert elevator.commands == []


def test_declined_elevation_is_fatal(
    tmp_path: Path, lock_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    source = write_tree(tmp_path / "src", {"A.dll": "new"})
    target = write_tree(tmp_path / "tgt", {"A.dll": "old"})
    _stub_probe(monkeypatch, [False])
    launcher = RecordingHostLauncher()
    elevator = RecordingElevator(error="The elevation prompt was declined")

    outcome = make_controller(lock_dir, elevator=elevator, launcher=launcher).run(
        _session(source, target)
    )

    assert outcome.exit_code is ExitCode.ESCALATION_FAILED
    assert launcher.launched == []
    assert snapshot(target) == {"A.dll": "old"}
    token = make_guard(lock_dir).try_acquire()
    assert token is not None
    token.release()


def test_failed_elevated_child_outcome_is_mirrored(
    tmp_path: Path, lock_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    source = write_tree(tmp_path / "src", {"A.dll": "new"})
    target = write_tree(tmp_path / "tgt", {"A.dll": "old"})
    _stub_probe(monkeypatch, [False])
    launcher = RecordingHostLauncher()
    elevator = RecordingElevator(exit_code=int(ExitCode.SYNC_FAILED))

    outcome = make_controller(lock_dir, elevator=elevator, launcher=launcher).run(
        _session(source, target)
    )

    assert outcome.exit_code is ExitCode.SYNC_FAILED
    assert launcher.launched == []


def test_unopenable_lock_file_ends_the_session_cleanly(tmp_path: Path, lock_dir: Path) -> None:
    source = write_tree(tmp_path / "src", {"A.dll": "new"})
    target = write_tree(tmp_path / "tgt", {"A.dll": "old"})
    get_lock_file_path("UpdaterTests", lock_dir).mkdir()
    launcher = RecordingHostLauncher()
    session = _session(source, target)

    outcome = make_controller(lock_dir, launcher=launcher).run(session)

    assert outcome.exit_code is ExitCode.ALREADY_RUNNING
    assert "Unable to open updater lock file" in outcome.reason
    assert session.history[-1] is SessionState.DONE
    assert launcher.launched == []
    assert snapshot(target) == {"A.dll": "old"}


def test_escalation_from_relative_paths_hands_child_absolute_paths(
    tmp_path: Path, lock_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    write_tree(tmp_path / "src", {"A.dll": "new"})
    target = write_tree(tmp_path / "tgt", {"A.dll": "old"})
    _stub_probe(monkeypatch, [False, True])
    monkeypatch.chdir(tmp_path)
    launcher = RecordingHostLauncher()

    def _child(command: Sequence[str]) -> int:
        # An elevation helper may start the child somewhere else.
        monkeypatch.chdir(lock_dir)
        child_session = UpdateSession.from_arguments(parse_arguments(command[-4:]))
        child_controller = make_controller(lock_dir, elevator=elevator, launcher=launcher)
        return int(child_controller.run(child_session).exit_code)

    elevator = RecordingElevator(child=_child)

    outcome = make_controller(lock_dir, elevator=elevator, launcher=launcher).run(
        _session(Path("src"), Path("tgt"))
    )

    assert outcome.success
    assert elevator.commands[0][1:3] == [str(tmp_path / "src"), str(tmp_path / "tgt")]
    assert snapshot(target) == {"A.dll": "new"}
