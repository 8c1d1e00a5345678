from __future__ import annotations

from pathlib import Path

import pytest

from testnet_smoke.compose_adapter import ComposeAdapter
from testnet_smoke.proc import CommandError
from tests.compose_utils import FakeOpener, FakeStreamProcess, HangingLines, completed


def test_up_spawns_compose_up_in_project_dir() -> None:
    opener = FakeOpener()
    adapter = ComposeAdapter(Path("validator-testnet"), opener=opener)

    stack = adapter.up()

    assert opener.calls == [(["docker-compose", "up", "--remove-orphans"], Path("validator-testnet"))]
    assert stack.running is True


def test_follow_logs_uses_configured_compose_command() -> None:
    opener = FakeOpener({"faucet": FakeStreamProcess(["faucet_1  | running\n", "more\r\n"])})
    adapter = ComposeAdapter(Path("vt"), compose_command=("docker", "compose"), opener=opener)

    follower = adapter.follow_logs("faucet")

    assert opener.calls[0][0] == ["docker", "compose", "logs", "-f", "faucet"]
    assert list(follower.lines()) == ["faucet_1  | running", "more"]


def test_stop_terminates_then_is_idempotent() -> None:
    process = FakeStreamProcess()
    opener = FakeOpener({"up": process})
    stack = ComposeAdapter(Path("vt"), opener=opener).up()

    assert stack.stop() == -15
    assert stack.stop() == -15
    assert process.terminated is True
    assert process.killed is False
    assert stack.running is False


def test_stop_kills_process_that_ignores_terminate() -> None:
    process = FakeStreamProcess(exits_on_terminate=False)
    stack = ComposeAdapter(Path("vt"), opener=FakeOpener({"up": process})).up()

    assert stack.stop(grace=0.01) == -9
    assert process.killed is True


def test_stop_skips_already_exited_process() -> None:
    process = FakeStreamProcess()
    process.returncode = 0
    stack = ComposeAdapter(Path("vt"), opener=FakeOpener({"up": process})).up()

    assert stack.stop() == 0
    assert process.terminated is False


def test_down_runs_compose_down() -> None:
    calls: list[tuple[list[str], Path | None]] = []

    def runner(cmd, cwd):
        calls.append((cmd, cwd))
        return completed(args=cmd, returncode=0)

    out = ComposeAdapter(Path("vt"), runner=runner).down()

    assert out.changed is True
    assert out.action == "down"
    assert calls == [(["docker-compose", "down", "--remove-orphans"], Path("vt"))]


def test_ps_lists_running_services() -> None:
    def runner(cmd, cwd):
        assert cmd == ["docker-compose", "ps", "--services", "--filter", "status=running"]
        return completed(args=cmd, returncode=0, stdout="validator\n\nfaucet\n")

    assert ComposeAdapter(Path("vt"), runner=runner).ps() == ["validator", "faucet"]


def test_down_failure_raises_command_error() -> None:
    def runner(cmd, cwd):
        return completed(args=cmd, returncode=1, stderr="no configuration file provided: not found")

    with pytest.raises(CommandError) as exc_info:
        ComposeAdapter(Path("vt"), runner=runner).down()
    assert "no configuration file provided" in str(exc_info.value)


def test_stop_closes_output_stream() -> None:
    output = HangingLines(["validator_1  | booting"])
    follower = ComposeAdapter(Path("vt"), opener=FakeOpener({"validator": FakeStreamProcess(output)})).follow_logs(
        "validator"
    )

    follower.stop()

    assert output.closed is True


def test_drain_reads_all_output_before_stop_returns() -> None:
    output = HangingLines([f"validator_1  | {'x' * 1024}\n" for _ in range(300)])
    stack = ComposeAdapter(Path("vt"), opener=FakeOpener({"up": FakeStreamProcess(output)})).up()
    seen: list[str] = []

    drainer = stack.drain(seen.append)
    assert stack.drain(seen.append) is drainer
    stack.stop()

    assert drainer.is_alive() is False
    assert output.consumed == 300
    assert len(seen) == 300
    assert seen[0].endswith("x") and not seen[0].endswith("\n")
    assert output.closed is True
