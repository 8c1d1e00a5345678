from __future__ import annotations

from dataclasses import dataclass, replace
import math
import os
from pathlib import Path
import shlex
from typing import Any, Mapping

from testnet_smoke.errors import ConfigError

DEFAULT_COMPOSE_DIR = Path("validator-testnet")
DEFAULT_COMPOSE_COMMAND = ("docker-compose",)
DEFAULT_STEP_TIMEOUT = 10.0
DEFAULT_STARTUP_DELAY = 10.0
DEFAULT_SETTLE_DELAY = 5.0
# Longer than compose's own 10s container stop timeout.
DEFAULT_STOP_GRACE = 30.0

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class ServiceCheck:
    service: str
    pattern: str


DEFAULT_CHECKS = (
    ServiceCheck(service="validator", pattern="validator_1*Aptos is running"),
    ServiceCheck(service="faucet", pattern="faucet_1*running*"),
)


@dataclass(frozen=True)
class SmokeConfig:
    compose_dir: Path = DEFAULT_COMPOSE_DIR
    compose_command: tuple[str, ...] = DEFAULT_COMPOSE_COMMAND
    step_timeout: float = DEFAULT_STEP_TIMEOUT
    startup_delay: float = DEFAULT_STARTUP_DELAY
    settle_delay: float = DEFAULT_SETTLE_DELAY
    stop_grace: float = DEFAULT_STOP_GRACE
    teardown: bool = False
    checks: tuple[ServiceCheck, ...] = DEFAULT_CHECKS

    def __post_init__(self) -> None:
        if not self.compose_command:
            raise ConfigError("compose_command must not be empty")
        for name in ("step_timeout", "startup_delay", "settle_delay", "stop_grace"):
            value = getattr(self, name)
            if not math.isfinite(value):
                raise ConfigError(f"{name} must be a finite number of seconds (got {value})")
            if value < 0:
                raise ConfigError(f"{name} must not be negative (got {value})")
        if self.step_timeout == 0:
            raise ConfigError("step_timeout must be positive")
        if not self.checks:
            raise ConfigError("at least one service check is required")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> SmokeConfig:
        env = os.environ if environ is None else environ
        kwargs: dict[str, Any] = {}
        if "TESTNET_SMOKE_COMPOSE_DIR" in env:
            kwargs["compose_dir"] = Path(env["TESTNET_SMOKE_COMPOSE_DIR"])
        if "TESTNET_SMOKE_COMPOSE_COMMAND" in env:
            kwargs["compose_command"] = parse_compose_command(env["TESTNET_SMOKE_COMPOSE_COMMAND"])
        for env_name, attr in (
            ("TESTNET_SMOKE_TIMEOUT", "step_timeout"),
            ("TESTNET_SMOKE_STARTUP_DELAY", "startup_delay"),
            ("TESTNET_SMOKE_SETTLE_DELAY", "settle_delay"),
            ("TESTNET_SMOKE_STOP_GRACE", "stop_grace"),
        ):
            if env_name in env:
                kwargs[attr] = _parse_seconds(env_name, env[env_name])
        if "TESTNET_SMOKE_TEARDOWN" in env:
            kwargs["teardown"] = _parse_bool("TESTNET_SMOKE_TEARDOWN", env["TESTNET_SMOKE_TEARDOWN"])
        return cls(**kwargs)

    def with_overrides(self, **overrides: Any) -> SmokeConfig:
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def parse_compose_command(text: str) -> tuple[str, ...]:
    parts = tuple(shlex.split(text))
    if not parts:
        raise ConfigError("compose command must not be empty")
    return parts


def _parse_seconds(name: str, raw: str) -> float:
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number of seconds (got {raw!r})") from exc


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean (got {raw!r})")
