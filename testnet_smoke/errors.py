from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from testnet_smoke.readiness import ReadinessResult


class SmokeException(Exception):
    pass


class ConfigError(SmokeException):
    pass


class ManifestError(SmokeException):
    pass


class ReadinessFailure(SmokeException):
    """A service did not log its readiness pattern."""

    reason = "failed"

    def __init__(self, service: str, result: ReadinessResult) -> None:
        self.service = service
        self.result = result
        super().__init__(
            f"Service {service!r} {self.reason} after {result.elapsed:.1f}s "
            f"({result.lines_seen} log lines seen)"
        )


class ReadinessTimeout(ReadinessFailure):
    reason = "timed out waiting for readiness"


class StreamEnded(ReadinessFailure):
    reason = "log stream ended before readiness"
