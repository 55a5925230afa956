"""Secret provider — resolves every required name or fails, never half-way.

``SecretProvider.resolve`` either returns a ``SecretSet`` in which every
required name has a non-empty value, or raises ``MissingSecret`` listing
every name that did not resolve. Port-like names are checked to be
integers in ``[0, 65536)`` at resolve time, so a missing or malformed port
can never reach the workload as a not-a-number.

Sources are consulted in order; later sources override earlier ones.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import Protocol, runtime_checkable

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)


class MissingSecret(RuntimeError):
    """Raised when required names do not resolve to non-empty values."""

    def __init__(self, names: Iterable[str]) -> None:
        self.names: tuple[str, ...] = tuple(sorted(set(names)))
        super().__init__(
            "Missing required secret(s): " + ", ".join(self.names)
        )


class InvalidSecretValue(RuntimeError):
    """Raised when a resolved value has the wrong shape (e.g. a bad port)."""

    def __init__(self, name: str, value: str, reason: str) -> None:
        self.name = name
        self.value = value
        super().__init__(f"Secret {name} has invalid value {value!r}: {reason}")


def is_port_name(name: str) -> bool:
    return name == "PORT" or name.endswith("_PORT")


def parse_port(name: str, value: str) -> int:
    """Parse a port number strictly: base-10 digits in ``[0, 65536)``."""
    text = value.strip()
    if not (text.isascii() and text.isdigit()):
        raise InvalidSecretValue(name, value, "not an integer port number")
    port = int(text)
    if not 0 <= port < 65536:
        raise InvalidSecretValue(name, value, "port out of range [0, 65536)")
    return port


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


@runtime_checkable
class SecretSource(Protocol):
    """Anything with a ``lookup(name) -> str | None`` method."""

    def lookup(self, name: str) -> str | None:
        ...


class MappingSource:
    """Values from an in-memory mapping (cluster Secret data, tests)."""

    def __init__(self, values: Mapping[str, str]) -> None:
        self._values = dict(values)

    def lookup(self, name: str) -> str | None:
        return self._values.get(name)


class EnvironmentSource:
    """Values from process environment variables, optionally prefixed."""

    def __init__(self, prefix: str = "", environ: Mapping[str, str] | None = None) -> None:
        self._prefix = prefix
        self._environ = environ

    def lookup(self, name: str) -> str | None:
        environ = os.environ if self._environ is None else self._environ
        return environ.get(f"{self._prefix}{name}")


class DotenvSource:
    """Values from a ``.env`` style file. A missing file supplies nothing."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._values: dict[str, str | None] | None = None

    def lookup(self, name: str) -> str | None:
        if self._values is None:
            self._values = dict(dotenv_values(self._path)) if self._path.is_file() else {}
        return self._values.get(name)


# ---------------------------------------------------------------------------
# Secret set
# ---------------------------------------------------------------------------


class SecretSet(BaseModel):
    """Immutable mapping of resolved names to non-empty values."""

    model_config = ConfigDict(frozen=True)

    values: dict[str, str] = {}

    def __getitem__(self, name: str) -> str:
        return self.values[name]

    def __contains__(self, name: object) -> bool:
        return name in self.values

    @property
    def names(self) -> list[str]:
        return sorted(self.values)

    def get(self, name: str, default: str | None = None) -> str | None:
        return self.values.get(name, default)

    def port(self, name: str) -> int:
        return parse_port(name, self.values[name])

    def integer(self, name: str) -> int:
        value = self.values[name]
        try:
            return int(value.strip(), 10)
        except ValueError:
            raise InvalidSecretValue(name, value, "not an integer") from None

    def as_env(self) -> dict[str, str]:
        return dict(self.values)

    def __repr__(self) -> str:
        return f"SecretSet(names={sorted(self.values)})"


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class SecretProvider:
    """Resolves required names against layered sources.

    Parameters
    ----------
    sources:
        Consulted in order; a later source's non-empty value overrides an
        earlier one. Defaults to the process environment.
    """

    def __init__(self, sources: Sequence[SecretSource] | None = None) -> None:
        self._sources: list[SecretSource] = (
            list(sources) if sources is not None else [EnvironmentSource()]
        )

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> SecretProvider:
        return cls([MappingSource(values)])

    def lookup(self, name: str) -> str | None:
        value: str | None = None
        for source in self._sources:
            found = source.lookup(name)
            if found is not None and found.strip() != "":
                value = found
        return value

    def resolve(self, required_names: Iterable[str]) -> SecretSet:
        """Resolve every required name or raise.

        Raises
        ------
        MissingSecret
            Listing every name that is absent or blank in all sources.
        InvalidSecretValue
            If a port-like name resolves to something that is not a port.
        """
        names = sorted(set(required_names))
        values: dict[str, str] = {}
        missing: list[str] = []
        for name in names:
            value = self.lookup(name)
            if value is None:
                missing.append(name)
            else:
                values[name] = value
        if missing:
            logger.error("Unresolved required secret(s): %s", ", ".join(missing))
            raise MissingSecret(missing)

        for name, value in values.items():
            if is_port_name(name):
                parse_port(name, value)

        logger.debug("Resolved %d secret(s)", len(values))
        return SecretSet(values=values)
