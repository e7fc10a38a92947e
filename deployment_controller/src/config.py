from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

DEFAULT_WORKERS = 3
DEFAULT_CONTROLLER_NAME = "advanced-deployment-controller"


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded once at startup.

    Attributes:
        workers:          Number of reconcile worker threads.
        gate_enabled:     Whether the advanced deployment controller runs at all.
        controller_name:  Component name stamped on recorded events.
        log_level:        Root logger level name.
    """

    workers: int = DEFAULT_WORKERS
    gate_enabled: bool = True
    controller_name: str = DEFAULT_CONTROLLER_NAME
    log_level: str = "INFO"


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Environment variables (with defaults):
        ``DEPLOYMENT_WORKERS``       : Max concurrent reconciles (``3``).
        ``ADVANCED_DEPLOYMENT_GATE`` : Feature gate for the controller (``true``).
        ``CONTROLLER_NAME``          : Event source component (``advanced-deployment-controller``).
        ``LOG_LEVEL``                : Root log level (``INFO``).
    """
    values = env if env is not None else os.environ

    workers = env_int(values, "DEPLOYMENT_WORKERS", DEFAULT_WORKERS, minimum=1)

    controller_name = values.get("CONTROLLER_NAME", DEFAULT_CONTROLLER_NAME)
    if not controller_name.strip():
        raise ConfigError("CONTROLLER_NAME must be a non-empty string")

    return ControllerConfig(
        workers=workers,
        gate_enabled=parse_bool(values.get("ADVANCED_DEPLOYMENT_GATE"), default=True),
        controller_name=controller_name.strip(),
        log_level=values.get("LOG_LEVEL", "INFO").upper(),
    )
