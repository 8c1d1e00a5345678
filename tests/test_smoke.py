from __future__ import annotations

from pathlib import Path

import pytest

from testnet_smoke.compose_adapter import ComposeAdapter
from testnet_smoke.config import ServiceCheck, SmokeConfig
from testnet_smoke.errors import ReadinessTimeout, StreamEnded
from testnet_smoke.readiness import ReadinessOutcome
from testnet_smoke.smoke import SmokeRunner
from tests.compose_utils import FakeOpener, FakeStreamProcess, HangingLines, completed


def _ready_processes() -> dict[str, FakeStreamProcess]:
    return {
        "up": FakeStreamProcess(HangingLines()),
        "validator": FakeStreamProcess(HangingLines(["validator_1  | Aptos is running, press ctrl-c to exit"])),
        "faucet": FakeStreamProcess(HangingLines(["faucet_1  | Faucet is running on 0.0.0.0:8000"])),
    }


def _runner(config: SmokeConfig, opener: FakeOpener, *, runner=None, sleeps: list[float] | None = None):
    adapter = ComposeAdapter(
        config.compose_dir,
        compose_command=config.compose_command,
        opener=opener,
        runner=runner,
    )
    record = sleeps if sleeps is not None else []
    return SmokeRunner(config, adapter=adapter, sleep=record.append)


def test_smoke_passes_when_both_services_report_ready() -> None:
    processes = _ready_processes()
    opener = FakeOpener(processes)
    sleeps: list[float] = []

    report = _runner(SmokeConfig(), opener, sleeps=sleeps).run()

    assert report.passed is True
    assert [c.check.service for c in report.checks] == ["validator", "faucet"]
    assert all(c.result.outcome is ReadinessOutcome.MATCHED for c in report.checks)
    assert sleeps == [10.0, 5.0]
    assert [cmd for cmd, _ in opener.calls] == [
        ["docker-compose", "up", "--remove-orphans"],
        ["docker-compose", "logs", "-f", "validator"],
        ["docker-compose", "logs", "-f", "faucet"],
    ]
    assert all(cwd == Path("validator-testnet") for _, cwd in opener.calls)
    assert all(p.terminated for p in processes.values())


def test_smoke_times_out_and_skips_later_checks() -> None:
    processes = _ready_processes()
    processes["validator"] = FakeStreamProcess(HangingLines(["validator_1  | syncing"]))
    opener = FakeOpener(processes)
    config = SmokeConfig(step_timeout=0.1)

    with pytest.raises(ReadinessTimeout) as exc_info:
        _runner(config, opener).run()

    assert exc_info.value.service == "validator"
    assert exc_info.value.result.outcome is ReadinessOutcome.TIMEOUT
    assert [cmd[-1] for cmd, _ in opener.calls] == ["--remove-orphans", "validator"]
    assert processes["up"].terminated is True
    assert processes["validator"].terminated is True


def test_smoke_reports_eof_when_log_stream_ends() -> None:
    processes = _ready_processes()
    processes["faucet"] = FakeStreamProcess(["faucet_1  | exited with code 1"])
    opener = FakeOpener(processes)

    with pytest.raises(StreamEnded) as exc_info:
        _runner(SmokeConfig(), opener).run()

    assert exc_info.value.service == "faucet"
    assert "log stream ended" in str(exc_info.value)
    assert processes["up"].terminated is True


def test_smoke_tears_down_when_enabled() -> None:
    down_calls: list[list[str]] = []

    def runner(cmd, cwd):
        down_calls.append(cmd)
        return completed(args=cmd, returncode=0)

    config = SmokeConfig(teardown=True, compose_command=("docker", "compose"))
    report = _runner(config, FakeOpener(_ready_processes()), runner=runner).run()

    assert report.passed is True
    assert down_calls == [["docker", "compose", "down", "--remove-orphans"]]


def test_smoke_teardown_failure_does_not_fail_run() -> None:
    def runner(cmd, cwd):
        return completed(args=cmd, returncode=1, stderr="network in use")

    report = _runner(SmokeConfig(teardown=True), FakeOpener(_ready_processes()), runner=runner).run()

    assert report.passed is True


def test_smoke_uses_custom_checks() -> None:
    processes = {
        "up": FakeStreamProcess(HangingLines()),
        "indexer": FakeStreamProcess(HangingLines(["indexer-1  | indexer ready"])),
    }
    config = SmokeConfig(checks=(ServiceCheck(service="indexer", pattern="indexer-1*ready"),))

    report = _runner(config, FakeOpener(processes)).run()

    assert [c.check.service for c in report.checks] == ["indexer"]


def test_smoke_drains_up_output_while_checking() -> None:
    processes = _ready_processes()
    up_output = HangingLines([f"validator_1  | {'block ' * 200}" for _ in range(300)])
    processes["up"] = FakeStreamProcess(up_output)

    report = _runner(SmokeConfig(), FakeOpener(processes)).run()

    assert report.passed is True
    assert up_output.consumed == 300
    assert up_output.closed is True


def test_smoke_gives_up_longer_grace_than_followers() -> None:
    processes = _ready_processes()

    _runner(SmokeConfig(), FakeOpener(processes)).run()

    assert processes["up"].wait_timeouts == [30.0]
    assert processes["validator"].wait_timeouts == [5.0]


def test_smoke_retries_teardown_after_transient_error() -> None:
    calls: list[list[str]] = []

    def runner(cmd, cwd):
        calls.append(cmd)
        if len(calls) == 1:
            return completed(args=cmd, returncode=1, stderr="Cannot connect to the Docker daemon: i/o timeout")
        return completed(args=cmd, returncode=0)

    report = _runner(SmokeConfig(teardown=True), FakeOpener(_ready_processes()), runner=runner).run()

    assert report.passed is True
    assert len(calls) == 2


def test_smoke_does_not_retry_fatal_teardown_error() -> None:
    calls: list[list[str]] = []

    def runner(cmd, cwd):
        calls.append(cmd)
        return completed(args=cmd, returncode=1, stderr="no such service: indexer")

    _runner(SmokeConfig(teardown=True), FakeOpener(_ready_processes()), runner=runner).run()

    assert len(calls) == 1
