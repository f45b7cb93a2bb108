"""Tests for the runner entry point and its exit code protocol."""

import logging

import pytest

from wu_runner import service_runner
from wu_runner.models import EXIT_FATAL, EXIT_OK, EXIT_REBOOT_REQUIRED
from wu_runner.orchestrator import UpdateOrchestrator
from wu_runner.reboot import RebootDetector


real_check_host = service_runner.check_host


@pytest.fixture(autouse=True)
def isolated(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("SEARCH_CRITERIA", "FILTERS", "UPDATE_LIMIT", "SENTRY_DSN"):
        monkeypatch.delenv(f"WU_RUNNER_{name}", raising=False)
    monkeypatch.setattr(service_runner, "check_host", lambda: None)
    root = logging.getLogger()
    before = list(root.handlers)
    yield
    # main() reconfigures the root logger; drop what it installed
    for handler in list(root.handlers):
        if handler not in before:
            root.removeHandler(handler)
            handler.close()


@pytest.fixture
def wire(monkeypatch, clock):
    """Replace the Windows collaborators with fakes."""

    def _wire(service, reboot_state, probe):
        detector = RebootDetector(reboot_state, probe, clock=clock, sleep=clock.sleep)
        monkeypatch.setattr(service_runner, "build_detector", lambda: detector)
        monkeypatch.setattr(
            service_runner,
            "build_orchestrator",
            lambda config, det: UpdateOrchestrator(
                service,
                det,
                config.filter_rules(),
                search_criteria=config.search_criteria,
                update_limit=config.update_limit,
                sleep=clock.sleep,
            ),
        )

    return _wire


def test_completed_run_exits_zero(
    wire, fake_service_cls, reboot_state, probe, make_update, capsys
) -> None:
    wire(fake_service_cls([make_update("Update A")]), reboot_state, probe)

    with pytest.raises(SystemExit) as exc:
        service_runner.main([])

    assert exc.value.code == EXIT_OK
    out = capsys.readouterr().out
    assert "Found Windows update" in out
    assert "Installed Windows update (Succeeded): Update A" in out


def test_reboot_required_exits_101(
    wire, fake_service_cls, fake_reboot_state_cls, probe, make_update
) -> None:
    wire(fake_service_cls([make_update()]), fake_reboot_state_cls(True), probe)

    with pytest.raises(SystemExit) as exc:
        service_runner.main([])

    assert exc.value.code == EXIT_REBOOT_REQUIRED


def test_only_check_for_reboot_required(
    wire, fake_service_cls, reboot_state, probe, make_update, capsys
) -> None:
    service = fake_service_cls([make_update()])
    wire(service, reboot_state, probe)

    with pytest.raises(SystemExit) as exc:
        service_runner.main(["--only-check-for-reboot-required"])

    assert exc.value.code == EXIT_OK
    assert service.search_calls == 0
    assert "No reboot is required." in capsys.readouterr().out


def test_fatal_error_exits_one_with_trail(
    wire, fake_service_cls, reboot_state, probe, make_update, capsys
) -> None:
    service = fake_service_cls([make_update()])

    def broken_install(updates):
        raise RuntimeError("installer crashed")

    service.install = broken_install
    wire(service, reboot_state, probe)

    with pytest.raises(SystemExit) as exc:
        service_runner.main([])

    assert exc.value.code == EXIT_FATAL
    out = capsys.readouterr().out
    assert "ERROR: installer crashed" in out
    assert "ERROR EXCEPTION: Traceback (most recent call last):" in out
    assert "ERROR EXCEPTION: RuntimeError: installer crashed" in out


def test_bad_filter_is_fatal(capsys) -> None:
    with pytest.raises(SystemExit) as exc:
        service_runner.main(["--filter", "maybe:True"])

    assert exc.value.code == EXIT_FATAL
    assert "ERROR: Filter 'maybe:True' has unknown action" in capsys.readouterr().out


def test_log_file_receives_progress(
    wire, fake_service_cls, reboot_state, probe, tmp_path
) -> None:
    wire(fake_service_cls([]), reboot_state, probe)
    log_file = tmp_path / "logs" / "wu.log"

    with pytest.raises(SystemExit):
        service_runner.main(["--log-file", str(log_file)])

    service_runner.flush_logs()
    assert "No Windows updates found" in log_file.read_text(encoding="utf-8")


def test_check_host_rejects_non_windows(monkeypatch) -> None:
    monkeypatch.setattr(service_runner.os, "name", "posix")

    with pytest.raises(RuntimeError, match="only supported on Windows"):
        real_check_host()


def test_bad_command_line_value_is_fatal(capsys) -> None:
    with pytest.raises(SystemExit) as exc:
        service_runner.main(["--update-limit", "abc"])

    assert exc.value.code == EXIT_FATAL
    out = capsys.readouterr().out
    assert "ERROR: Invalid command line:" in out
    assert "invalid int value: 'abc'" in out


def test_logging_makes_stdout_line_buffered(capsys) -> None:
    service_runner.configure_logging()

    assert service_runner.sys.stdout.line_buffering is True
