"""Shared test fixtures for Dockhand."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from dockhand.core.build_ledger import BuildLedger
from dockhand.core.cache_store import ArtifactCacheStore
from dockhand.core.executor import StageExecutor
from dockhand.core.pipeline import BuildPipeline
from dockhand.core.registry import ImageRegistry, RuntimeImageStore
from dockhand.models.images import ImageRef
from dockhand.models.stages import BaseEnvironment, BuildStage, StageInput, TransformStep


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test state."""
    return tmp_path


@pytest.fixture
def cache_store(tmp_dir: Path) -> ArtifactCacheStore:
    return ArtifactCacheStore(tmp_dir / "cache")


@pytest.fixture
def executor(cache_store: ArtifactCacheStore, tmp_dir: Path) -> StageExecutor:
    return StageExecutor(cache_store, work_dir=tmp_dir / "work", step_timeout=30)


@pytest.fixture
def registry(tmp_dir: Path) -> ImageRegistry:
    return ImageRegistry(tmp_dir / "registry")


@pytest.fixture
def runtime_store(tmp_dir: Path) -> RuntimeImageStore:
    return RuntimeImageStore(tmp_dir / "runtime")


@pytest.fixture
def ledger(tmp_dir: Path) -> BuildLedger:
    """Provide a fresh BuildLedger backed by a temp SQLite database."""
    return BuildLedger(tmp_dir / "ledger.db")


@pytest.fixture
def pipeline(
    cache_store: ArtifactCacheStore,
    executor: StageExecutor,
    registry: ImageRegistry,
    ledger: BuildLedger,
) -> BuildPipeline:
    return BuildPipeline(cache_store, executor, registry, ledger=ledger)


@pytest.fixture
def shell_env() -> BaseEnvironment:
    """A base environment with no root: steps run with the host's /bin/sh."""
    return BaseEnvironment(name="shell", version="1")


# ---------------------------------------------------------------------------
# A small monorepo source tree and the three-stage pipeline that builds it
# ---------------------------------------------------------------------------


def write_files(root: Path, files: dict[str, str]) -> Path:
    for rel, text in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    return root


@pytest.fixture
def source_tree(tmp_dir: Path) -> Path:
    """A workspace monorepo: root manifests plus one package with source."""
    return write_files(
        tmp_dir / "src",
        {
            "package.json": '{"name": "root", "workspaces": ["packages/*"]}\n',
            "yarn.lock": "# lockfile v1\nleft-pad@1.3.0\n",
            "packages/app/package.json": '{"name": "app", "version": "1.0.0"}\n',
            "packages/app/src/index.js": "console.log('hello');\n",
            "README.md": "not part of any stage\n",
            "app-config.yaml": "backend:\n  listen:\n    port: ${PORT}\n",
        },
    )


@pytest.fixture
def make_stages(shell_env: BaseEnvironment) -> Callable[..., list[BuildStage]]:
    """Factory fixture: skeleton -> deps -> build, optionally with a custom build step."""

    def _factory(build_command: str | None = None) -> list[BuildStage]:
        skeleton = BuildStage(
            name="skeleton",
            base_env=shell_env,
            inputs=["package.json", "yarn.lock", "packages"],
            steps=[TransformStep(kind="prune", keep=["package.json", "yarn.lock"])],
            outputs=["*"],
        )
        deps = BuildStage(
            name="deps",
            base_env=shell_env,
            inputs=[StageInput(path="*", from_stage="skeleton")],
            steps=[
                TransformStep(
                    name="install",
                    argv=["sh", "-c", "mkdir -p node_modules && cat yarn.lock > node_modules/.stamp"],
                )
            ],
            outputs=["node_modules", "package.json", "yarn.lock", "packages"],
        )
        build = BuildStage(
            name="build",
            base_env=shell_env,
            inputs=[StageInput(path="*", from_stage="deps"), "packages"],
            steps=[
                TransformStep(
                    name="compile",
                    argv=[
                        "sh",
                        "-c",
                        build_command
                        or "mkdir -p dist && cat packages/app/src/index.js > dist/bundle.js",
                    ],
                )
            ],
            outputs=["dist", "node_modules", "package.json", "yarn.lock", "packages/app/package.json"],
        )
        return [skeleton, deps, build]

    return _factory


# ---------------------------------------------------------------------------
# Published images for deployment tests
# ---------------------------------------------------------------------------


@pytest.fixture
def publish_image(
    registry: ImageRegistry, runtime_store: RuntimeImageStore
) -> Callable[..., ImageRef]:
    """Factory fixture: publish an image under *tag*, loading it unless told not to."""

    def _factory(tag: str, payload: bytes | None = None, *, load: bool = True) -> ImageRef:
        image = registry.publish(
            BaseEnvironment(name="node", version="20"),
            b"skeleton",
            payload if payload is not None else f"payload {tag}".encode(),
            {"app-config.yaml": b"backend:\n  listen:\n    port: ${PORT}\n"},
            tag,
        )
        if load:
            registry.load(image, runtime_store)
        return image

    return _factory


# ---------------------------------------------------------------------------
# A pipeline file describing the same build plus a deployment
# ---------------------------------------------------------------------------

PIPELINE_YAML = """\
environments:
  shell:
    version: "1"
image:
  repository: app
  runtime: shell
  config_files: [app-config.yaml]
stages:
  - name: skeleton
    base_env: shell
    inputs: [package.json, yarn.lock, packages]
    steps:
      - {kind: prune, keep: [package.json, yarn.lock]}
    outputs: ["*"]
  - name: deps
    base_env: shell
    inputs: [{path: "*", from_stage: skeleton}]
    steps:
      - name: install
        argv: [sh, -c, "mkdir -p node_modules && cat yarn.lock > node_modules/.stamp"]
    outputs: [node_modules, package.json, yarn.lock, packages]
  - name: build
    base_env: shell
    inputs: [{path: "*", from_stage: deps}, packages]
    steps:
      - name: compile
        argv: [sh, -c, "mkdir -p dist && cat packages/app/src/index.js > dist/bundle.js"]
    outputs: [dist, node_modules, package.json, yarn.lock, packages/app/package.json]
deployment:
  name: backend
  namespace: apps
  replicas: 2
  ports: [{container_port: 7007, service_port: 80}]
  secret_name: backend-env
  secret_refs: [PORT]
"""


@pytest.fixture
def pipeline_file(tmp_dir: Path) -> Path:
    path = tmp_dir / "dockhand.yaml"
    path.write_text(PIPELINE_YAML, encoding="utf-8")
    return path
