"""Tests for the workload launcher: config must be valid before the process listens."""

from __future__ import annotations

from pathlib import Path

import pytest

from dockhand.launcher import exec_workload, launch_environment, prepare_launch
from dockhand.secrets.layered_config import ConfigValidationError
from dockhand.secrets.provider import InvalidSecretValue, MissingSecret, SecretProvider


@pytest.fixture
def layers(tmp_path: Path) -> list[Path]:
    base = tmp_path / "app-config.yaml"
    base.write_text(
        "backend:\n"
        "  listen:\n"
        "    port: ${PORT}\n"
        "  database:\n"
        "    client: pg\n"
        "    connection:\n"
        "      host: ${POSTGRES_HOST}\n"
        "      port: ${POSTGRES_PORT}\n"
    )
    production = tmp_path / "app-config.production.yaml"
    production.write_text("backend:\n  listen:\n    host: 127.0.0.1\n")
    return [base, production]


def _provider(**values: str) -> SecretProvider:
    return SecretProvider.from_mapping(values)


class TestPrepareLaunch:
    def test_valid_config(self, layers: list[Path]):
        plan = prepare_launch(
            layers,
            _provider(PORT="7007", POSTGRES_HOST="db", POSTGRES_PORT="5432"),
            numeric_paths=["backend.database.connection.port"],
        )
        assert plan.host == "127.0.0.1"
        assert plan.port == 7007
        assert plan.config["backend"]["database"]["connection"]["host"] == "db"
        assert plan.secrets.names == ["PORT", "POSTGRES_HOST", "POSTGRES_PORT"]

    def test_every_missing_value_reported(self, layers: list[Path]):
        with pytest.raises(MissingSecret) as exc_info:
            prepare_launch(layers, _provider(POSTGRES_HOST="db"))
        assert exc_info.value.names == ("PORT", "POSTGRES_PORT")

    def test_malformed_port_secret(self, layers: list[Path]):
        with pytest.raises(InvalidSecretValue):
            prepare_launch(layers, _provider(PORT="7007", POSTGRES_HOST="db", POSTGRES_PORT="NaN"))

    def test_bare_port_listen_value(self, tmp_path: Path):
        config = tmp_path / "c.yaml"
        config.write_text("listen: 8080\n")
        plan = prepare_launch([config], _provider(), listen_path="listen")
        assert (plan.host, plan.port) == ("0.0.0.0", 8080)

    def test_listen_port_required(self, tmp_path: Path):
        config = tmp_path / "c.yaml"
        config.write_text("backend:\n  baseUrl: http://localhost\n")
        with pytest.raises(ConfigValidationError, match="backend.listen"):
            prepare_launch([config], _provider())

    def test_non_numeric_listen_port(self, tmp_path: Path):
        config = tmp_path / "c.yaml"
        config.write_text("backend:\n  listen:\n    port: ${LISTEN}\n")
        with pytest.raises(ConfigValidationError):
            prepare_launch([config], _provider(LISTEN="seven"))

    def test_needs_a_layer(self):
        with pytest.raises(ConfigValidationError):
            prepare_launch([], _provider())


class TestEnvironment:
    def test_launch_environment(self, layers: list[Path]):
        plan = prepare_launch(layers, _provider(PORT="7007", POSTGRES_HOST="db", POSTGRES_PORT="5432"))
        env = launch_environment(plan, base={"PATH": "/bin"})
        assert env["PATH"] == "/bin"
        assert env["POSTGRES_HOST"] == "db"
        assert env["DOCKHAND_LISTEN_HOST"] == "127.0.0.1"
        assert env["DOCKHAND_LISTEN_PORT"] == "7007"

    def test_exec_without_command(self, layers: list[Path]):
        plan = prepare_launch(layers, _provider(PORT="7007", POSTGRES_HOST="db", POSTGRES_PORT="5432"))
        with pytest.raises(ValueError):
            exec_workload(plan, [])

    def test_exec_replaces_process(self, layers: list[Path], monkeypatch: pytest.MonkeyPatch):
        calls = []
        monkeypatch.setattr("os.execvpe", lambda file, args, env: calls.append((file, args, env)))
        plan = prepare_launch(layers, _provider(PORT="7007", POSTGRES_HOST="db", POSTGRES_PORT="5432"))
        exec_workload(plan, ["node", "packages/backend"])
        assert calls[0][0] == "node"
        assert calls[0][1] == ["node", "packages/backend"]
        assert calls[0][2]["DOCKHAND_LISTEN_PORT"] == "7007"
