"""Layered YAML runtime configuration with fail-closed interpolation.

Layers are read in order and deep-merged: mappings merge key by key, any
other value in a later layer replaces the earlier one. ``${NAME}``
placeholders are substituted from a ``SecretSet``; ``$${NAME}`` escapes to
a literal ``${NAME}``. Interpolation refuses to run with any placeholder
unresolved, so a missing value can never become a malformed number.
"""

from __future__ import annotations

import copy
import re
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import yaml

from dockhand.secrets.provider import MissingSecret, SecretSet

_PLACEHOLDER = re.compile(r"(\$?)\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigValidationError(RuntimeError):
    """Raised for unreadable layers or values of the wrong shape."""


def load_layer(path: Path) -> dict[str, Any]:
    path = Path(path)
    if not path.is_file():
        raise ConfigValidationError(f"Config layer {path} does not exist")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"Config layer {path} is not valid YAML: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigValidationError(
            f"Config layer {path} must be a mapping, got {type(data).__name__}"
        )
    return data


def merge_layers(layers: Iterable[Mapping[str, Any]]) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for layer in layers:
        merged = _deep_merge(merged, layer)
    return merged


def _deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    result = copy.deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(result.get(key), Mapping):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def load_layers(paths: Iterable[Path]) -> dict[str, Any]:
    """Read and merge config layers; later paths override earlier ones."""
    return merge_layers(load_layer(p) for p in paths)


def find_placeholders(config: Any) -> set[str]:
    """Every ``${NAME}`` referenced anywhere in *config* (escapes excluded)."""
    found: set[str] = set()
    if isinstance(config, str):
        for escape, name in _PLACEHOLDER.findall(config):
            if not escape:
                found.add(name)
    elif isinstance(config, Mapping):
        for value in config.values():
            found |= find_placeholders(value)
    elif isinstance(config, list):
        for item in config:
            found |= find_placeholders(item)
    return found


def interpolate(config: Any, secrets: SecretSet) -> Any:
    """Substitute placeholders from *secrets*.

    Raises ``MissingSecret`` naming every unresolved placeholder before any
    substitution happens.
    """
    missing = sorted(n for n in find_placeholders(config) if n not in secrets)
    if missing:
        raise MissingSecret(missing)
    return _substitute(config, secrets)


def _substitute(value: Any, secrets: SecretSet) -> Any:
    if isinstance(value, str):
        def _replace(match: re.Match[str]) -> str:
            escape, name = match.groups()
            if escape:
                return "${" + name + "}"
            return secrets[name]

        return _PLACEHOLDER.sub(_replace, value)
    if isinstance(value, Mapping):
        return {k: _substitute(v, secrets) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute(v, secrets) for v in value]
    return value


def get_path(config: Mapping[str, Any], dotted: str, default: Any = None) -> Any:
    """Look up ``a.b.c`` in nested mappings."""
    node: Any = config
    for part in dotted.split("."):
        if not isinstance(node, Mapping) or part not in node:
            return default
        node = node[part]
    return node


def require_port(config: Mapping[str, Any], dotted: str) -> int:
    """Read an integer port in ``[0, 65536)`` at *dotted*, or fail."""
    value = get_path(config, dotted)
    if value is None:
        raise ConfigValidationError(f"Config value {dotted} is required")
    if isinstance(value, bool):
        raise ConfigValidationError(f"Config value {dotted} must be a port number, got {value!r}")
    if isinstance(value, int):
        port = value
    elif isinstance(value, str) and value.strip().isascii() and value.strip().isdigit():
        port = int(value.strip())
    else:
        raise ConfigValidationError(f"Config value {dotted} must be a port number, got {value!r}")
    if not 0 <= port < 65536:
        raise ConfigValidationError(f"Config value {dotted}={port} is outside [0, 65536)")
    return port
