"""Secret resolution and layered runtime configuration."""

from dockhand.secrets.layered_config import (
    ConfigValidationError,
    find_placeholders,
    interpolate,
    load_layers,
)
from dockhand.secrets.provider import (
    DotenvSource,
    EnvironmentSource,
    InvalidSecretValue,
    MappingSource,
    MissingSecret,
    SecretProvider,
    SecretSet,
)

__all__ = [
    "ConfigValidationError",
    "DotenvSource",
    "EnvironmentSource",
    "InvalidSecretValue",
    "MappingSource",
    "MissingSecret",
    "SecretProvider",
    "SecretSet",
    "find_placeholders",
    "interpolate",
    "load_layers",
]
