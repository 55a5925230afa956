"""Load a ``dockhand.yaml`` pipeline file into a ``PipelineDefinition``.

Example::

    environments:
      node:
        version: "20"
        root: envs/node          # relative to this file
    image:
      repository: backstage
      runtime: node
      config_files: [app-config.yaml, app-config.production.yaml]
    stages:
      - name: skeleton
        base_env: node
        inputs: [package.json, yarn.lock, "packages/*/package.json"]
        steps:
          - {kind: prune, keep: [package.json, yarn.lock]}
        outputs: ["*"]
    deployment:
      name: backstage
      namespace: backstage
      ports: [{container_port: 7007}]
      secret_name: backstage-secrets
      secret_refs: [POSTGRES_HOST, POSTGRES_PORT]

Stages and the image refer to environments by name; an inline mapping is
accepted too.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from dockhand.models.config import PipelineDefinition

logger = logging.getLogger(__name__)

DEFAULT_PIPELINE_FILE = "dockhand.yaml"


class PipelineFileError(RuntimeError):
    """Raised when a pipeline file cannot be read or does not validate."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


def _environment(
    ref: Any,
    environments: dict[str, dict[str, Any]],
    base_dir: Path,
    path: Path,
    where: str,
) -> dict[str, Any]:
    if isinstance(ref, str):
        if ref not in environments:
            raise PipelineFileError(path, f"{where} names unknown environment {ref!r}")
        env = dict(environments[ref])
        env.setdefault("name", ref)
    elif isinstance(ref, dict):
        env = dict(ref)
    else:
        raise PipelineFileError(path, f"{where} must name an environment")
    root = env.get("root")
    if root is not None and not Path(root).is_absolute():
        env["root"] = str(base_dir / root)
    return env


def load_pipeline_file(path: Path) -> PipelineDefinition:
    path = Path(path)
    if not path.is_file():
        raise PipelineFileError(path, "file does not exist")
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise PipelineFileError(path, f"invalid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise PipelineFileError(path, "top level must be a mapping")

    base_dir = path.parent.resolve()
    environments = raw.get("environments") or {}
    if not isinstance(environments, dict):
        raise PipelineFileError(path, "'environments' must be a mapping")

    image = dict(raw.get("image") or {})
    if "runtime" not in image:
        raise PipelineFileError(path, "'image.runtime' is required")
    image["runtime"] = _environment(image["runtime"], environments, base_dir, path, "image.runtime")

    stages = []
    for index, stage in enumerate(raw.get("stages") or []):
        if not isinstance(stage, dict):
            raise PipelineFileError(path, f"stage #{index} must be a mapping")
        stage = dict(stage)
        where = f"stage {stage.get('name', index)!r}"
        if "base_env" not in stage:
            raise PipelineFileError(path, f"{where} has no base_env")
        stage["base_env"] = _environment(stage["base_env"], environments, base_dir, path, where)
        stages.append(stage)

    try:
        definition = PipelineDefinition.model_validate({
            "image": image,
            "stages": stages,
            "deployment": raw.get("deployment"),
        })
    except ValidationError as exc:
        raise PipelineFileError(path, str(exc)) from exc

    logger.debug("Loaded %d stage(s) from %s", len(definition.stages), path)
    return definition
