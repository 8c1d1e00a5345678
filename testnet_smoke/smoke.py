from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Callable

from testnet_smoke.compose_adapter import ComposeAdapter, ComposeProcess
from testnet_smoke.config import ServiceCheck, SmokeConfig
from testnet_smoke.errors import ReadinessTimeout, StreamEnded
from testnet_smoke.logging_config import SERVICE_OUTPUT_LOGGER
from testnet_smoke.proc import CommandError
from testnet_smoke.readiness import (
    ReadinessOutcome,
    ReadinessPattern,
    ReadinessResult,
    wait_for_pattern,
)

logger = logging.getLogger(__name__)
service_output = logging.getLogger(SERVICE_OUTPUT_LOGGER)


@dataclass(frozen=True)
class CheckResult:
    check: ServiceCheck
    result: ReadinessResult


@dataclass
class SmokeReport:
    passed: bool = False
    checks: list[CheckResult] = field(default_factory=list)


class SmokeRunner:
    """Start the compose project and wait for every service to report ready, in order."""

    def __init__(
        self,
        config: SmokeConfig,
        *,
        adapter: ComposeAdapter | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.adapter = adapter or ComposeAdapter(
            config.compose_dir,
            compose_command=config.compose_command,
        )
        self._sleep = sleep
        self._patterns = {
            check.service: ReadinessPattern.from_glob(check.pattern) for check in config.checks
        }

    def run(self) -> SmokeReport:
        report = SmokeReport()
        stack = self.adapter.up()
        stack.drain(lambda line: service_output.debug(line, extra={"service": "up"}))
        try:
            logger.info("Waiting %ss for the stack to start", self.config.startup_delay)
            self._sleep(self.config.startup_delay)
            for check in self.config.checks:
                report.checks.append(self._check_service(check))
            self._sleep(self.config.settle_delay)
        finally:
            self._shutdown(stack)

        report.passed = True
        logger.info("All %d readiness checks passed", len(report.checks))
        return report

    def _check_service(self, check: ServiceCheck) -> CheckResult:
        follower = self.adapter.follow_logs(check.service)
        try:
            result = wait_for_pattern(
                follower.lines(),
                self._patterns[check.service],
                timeout=self.config.step_timeout,
                on_line=lambda line: service_output.debug(line, extra={"service": check.service}),
            )
        finally:
            follower.stop()

        if result.outcome is ReadinessOutcome.TIMEOUT:
            raise ReadinessTimeout(check.service, result)
        if result.outcome is ReadinessOutcome.EOF:
            raise StreamEnded(check.service, result)

        matched_lines = (result.matched_text or "").splitlines()
        logger.info(
            "Service '%s' is ready after %.1fs: %s",
            check.service,
            result.elapsed,
            matched_lines[-1] if matched_lines else "",
        )
        return CheckResult(check=check, result=result)

    def _shutdown(self, stack: ComposeProcess) -> None:
        stack.stop(grace=self.config.stop_grace)
        if self.config.teardown:
            self._teardown()

    def _teardown(self, attempts: int = 2) -> None:
        for attempt in range(1, attempts + 1):
            try:
                self.adapter.down()
                return
            except CommandError as exc:
                if exc.retryable and attempt < attempts:
                    logger.info("Teardown hit a transient error, retrying: %s", exc)
                    continue
                logger.warning("Teardown failed, containers may still be running: %s", exc)
                return
