from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import subprocess
import threading
from typing import Callable, Iterator, Sequence

from testnet_smoke.proc import (
    CommandRunner,
    StreamOpener,
    StreamProcess,
    open_stream,
    run_command,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ComposeOperationResult:
    project_dir: Path
    action: str
    changed: bool


class ComposeProcess:
    """A long-running compose command whose merged output is read line by line."""

    def __init__(self, *, name: str, command: list[str], process: StreamProcess) -> None:
        self.name = name
        self.command = command
        self._process = process
        self._stopped = False
        self._drainer: threading.Thread | None = None

    def lines(self) -> Iterator[str]:
        stream = self._process.stdout
        if stream is None:
            return
        for line in stream:
            yield line.rstrip("\r\n")

    def drain(self, on_line: Callable[[str], None]) -> threading.Thread:
        """Hand every output line to `on_line` on a daemon thread.

        The output pipe must be read for as long as the process runs, or it
        blocks once the pipe buffer fills.
        """
        if self._drainer is None:
            self._drainer = threading.Thread(
                target=self._drain,
                args=(on_line,),
                name=f"drain {self.name}",
                daemon=True,
            )
            self._drainer.start()
        return self._drainer

    def _drain(self, on_line: Callable[[str], None]) -> None:
        try:
            for line in self.lines():
                on_line(line)
        except (OSError, ValueError) as exc:
            logger.debug("Output of %s closed while draining: %s", self.name, exc)

    @property
    def running(self) -> bool:
        return not self._stopped and self._process.poll() is None

    def stop(self, grace: float = 5.0) -> int | None:
        if self._stopped:
            return self._process.poll()
        self._stopped = True
        try:
            return self._terminate(grace)
        finally:
            self._release_output(grace)

    def _terminate(self, grace: float) -> int | None:
        if self._process.poll() is not None:
            return self._process.poll()

        logger.debug("Stopping %s (grace=%ss)", self.name, grace)
        self._process.terminate()
        try:
            return self._process.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            logger.warning("%s did not exit within %ss, killing it", self.name, grace)
            self._process.kill()
            return self._process.wait(timeout=grace)

    def _release_output(self, grace: float) -> None:
        if self._drainer is not None:
            self._drainer.join(timeout=grace)
        # A reader may still be blocked on the pipe of a process that outlived kill().
        if self._process.poll() is None:
            return
        close = getattr(self._process.stdout, "close", None)
        if close is not None:
            close()


class ComposeAdapter:
    """Adapter for the docker-compose project lifecycle."""

    def __init__(
        self,
        project_dir: Path,
        *,
        compose_command: Sequence[str] = ("docker-compose",),
        runner: CommandRunner | None = None,
        opener: StreamOpener | None = None,
    ) -> None:
        self.project_dir = Path(project_dir)
        self._compose = list(compose_command)
        self._runner = runner
        self._opener = opener

    def up(self, *, remove_orphans: bool = True) -> ComposeProcess:
        cmd = [*self._compose, "up"]
        if remove_orphans:
            cmd.append("--remove-orphans")
        logger.info("Starting compose project in %s", self.project_dir)
        process = open_stream(
            cmd,
            cwd=self.project_dir,
            opener=self._opener,
            error_message=f"Failed to start compose project in {self.project_dir}",
        )
        return ComposeProcess(name="compose up", command=cmd, process=process)

    def follow_logs(self, service: str) -> ComposeProcess:
        cmd = [*self._compose, "logs", "-f", service]
        logger.info("Following logs of service '%s'", service)
        process = open_stream(
            cmd,
            cwd=self.project_dir,
            opener=self._opener,
            error_message=f"Failed to follow logs of service {service}",
        )
        return ComposeProcess(name=f"logs {service}", command=cmd, process=process)

    def down(self, *, remove_orphans: bool = True) -> ComposeOperationResult:
        cmd = [*self._compose, "down"]
        if remove_orphans:
            cmd.append("--remove-orphans")
        logger.info("Tearing down compose project in %s", self.project_dir)
        run_command(
            cmd,
            cwd=self.project_dir,
            runner=self._runner,
            error_message=f"Failed to tear down compose project in {self.project_dir}",
        )
        return ComposeOperationResult(project_dir=self.project_dir, action="down", changed=True)

    def ps(self) -> list[str]:
        result = run_command(
            [*self._compose, "ps", "--services", "--filter", "status=running"],
            cwd=self.project_dir,
            runner=self._runner,
            error_message=f"Failed to list services in {self.project_dir}",
        )
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]
