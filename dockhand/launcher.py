"""Workload entry point: validate runtime config before the process listens.

``prepare_launch`` merges the config layers, resolves every ``${NAME}`` the
merged config references through a ``SecretProvider`` (all missing names
are reported at once), substitutes them, and validates the listen address.
Only then does ``exec_workload`` replace the current process with the
workload command. A missing or malformed value therefore stops the process
before it binds, instead of reaching the listener as a not-a-number port.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any, NoReturn

from pydantic import BaseModel, ConfigDict

from dockhand.secrets.layered_config import (
    ConfigValidationError,
    find_placeholders,
    get_path,
    interpolate,
    load_layers,
    require_port,
)
from dockhand.secrets.provider import SecretProvider, SecretSet

logger = logging.getLogger(__name__)


class LaunchPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    host: str
    port: int
    config: dict[str, Any]
    secrets: SecretSet = SecretSet()


def prepare_launch(
    config_paths: Sequence[Path],
    provider: SecretProvider,
    *,
    listen_path: str = "backend.listen",
    numeric_paths: Iterable[str] = (),
) -> LaunchPlan:
    """Resolve and validate the runtime configuration.

    ``listen_path`` points at either a mapping with ``host``/``port`` keys
    or a bare port. Every dotted path in ``numeric_paths`` must hold a port
    number as well.

    Raises
    ------
    MissingSecret
        Naming every placeholder without a non-empty value.
    InvalidSecretValue
        If a port-like name resolves to a non-port.
    ConfigValidationError
        For unreadable layers or a malformed listen address.
    """
    if not config_paths:
        raise ConfigValidationError("At least one config layer is required")
    merged = load_layers(config_paths)
    secrets = provider.resolve(find_placeholders(merged))
    config = interpolate(merged, secrets)

    listen = get_path(config, listen_path)
    if isinstance(listen, Mapping):
        host = str(listen.get("host") or "0.0.0.0")
        port = require_port(config, f"{listen_path}.port")
    else:
        host = "0.0.0.0"
        port = require_port(config, listen_path)
    for dotted in numeric_paths:
        require_port(config, dotted)

    logger.info(
        "Runtime config valid: %d layer(s), %d secret(s), listening on %s:%d",
        len(config_paths), len(secrets.names), host, port,
    )
    return LaunchPlan(host=host, port=port, config=config, secrets=secrets)


def launch_environment(plan: LaunchPlan, base: Mapping[str, str] | None = None) -> dict[str, str]:
    """The environment the workload process starts with."""
    env = dict(os.environ if base is None else base)
    env.update(plan.secrets.as_env())
    env["DOCKHAND_LISTEN_HOST"] = plan.host
    env["DOCKHAND_LISTEN_PORT"] = str(plan.port)
    return env


def exec_workload(plan: LaunchPlan, command: Sequence[str]) -> NoReturn:
    """Replace this process with *command*."""
    if not command:
        raise ValueError("No workload command given")
    logger.info("Starting workload: %s", " ".join(command))
    os.execvpe(command[0], list(command), launch_environment(plan))
