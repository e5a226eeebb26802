"""Build/launch layer model and the metadata-keyed layer contributor.

A layer is a directory under the layers root plus a ``<name>.json`` record
holding its types and metadata. The contributor compares the metadata it
expects against the stored record and only recomputes the layer on mismatch.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from cds_layer.errors import LayerError
from cds_layer.runtime import read_json, utc_now_iso, write_json

logger = logging.getLogger(__name__)


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class Environment(dict):
    """Environment entries keyed by ``<NAME>.<action>`` as written to ``env.*`` directories."""

    def default(self, name: str, value: Any) -> None:
        self[f"{name}.default"] = _format_value(value)

    def override(self, name: str, value: Any) -> None:
        self[f"{name}.override"] = _format_value(value)

    def defaults(self) -> dict[str, str]:
        return {key[: -len(".default")]: value for key, value in self.items() if key.endswith(".default")}


@dataclass
class Layer:
    name: str
    path: Path
    build: bool = False
    launch: bool = False
    cache: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    launch_environment: Environment = field(default_factory=Environment)

    @classmethod
    def open(cls, layers_dir: Path, name: str) -> "Layer":
        layers_dir = Path(layers_dir)
        layer = cls(name=name, path=layers_dir / name)
        record_path = layer.record_path
        if record_path.exists():
            try:
                record = read_json(record_path)
            except (OSError, json.JSONDecodeError):
                logger.warning("ignoring unreadable layer record %s", record_path)
                record = {}
            types = record.get("types") or {}
            layer.build = bool(types.get("build", False))
            layer.launch = bool(types.get("launch", False))
            layer.cache = bool(types.get("cache", False))
            layer.metadata = dict(record.get("metadata") or {})
        env_dir = layer.path / "env.launch"
        if env_dir.is_dir():
            for entry in sorted(env_dir.iterdir(), key=lambda item: item.name):
                if entry.is_file():
                    layer.launch_environment[entry.name] = entry.read_text(encoding="utf-8")
        return layer

    @property
    def record_path(self) -> Path:
        return self.path.parent / f"{self.name}.json"

    def reset(self) -> None:
        if self.path.exists():
            shutil.rmtree(self.path)
        self.path.mkdir(parents=True, exist_ok=True)
        self.metadata = {}
        self.launch_environment = Environment()

    def write(self) -> None:
        env_dir = self.path / "env.launch"
        if self.launch_environment:
            env_dir.mkdir(parents=True, exist_ok=True)
            for key, value in sorted(self.launch_environment.items()):
                (env_dir / key).write_text(value, encoding="utf-8")
        write_json(
            self.record_path,
            {
                "metadata": self.metadata,
                "types": {"build": self.build, "cache": self.cache, "launch": self.launch},
                "written_at": utc_now_iso(),
            },
        )


def cache_key(metadata: dict[str, Any]) -> str:
    stable = json.dumps(metadata, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(stable.encode("utf-8")).hexdigest()


class LayerContributor:
    def __init__(
        self,
        name: str,
        expected_metadata: dict[str, Any],
        *,
        build: bool = False,
        launch: bool = False,
        cache: bool = False,
    ) -> None:
        self.name = name
        self.expected_metadata = dict(expected_metadata)
        self.build = build
        self.launch = launch
        self.cache = cache

    @property
    def key(self) -> str:
        return cache_key(self.expected_metadata)

    def _is_fresh(self, layer: Layer) -> bool:
        return layer.metadata.get("cache_key") == self.key and layer.path.exists()

    def contribute(self, layer: Layer, compute: Callable[[Layer], Layer]) -> Layer:
        """Run ``compute`` unless ``layer`` already holds output for the same metadata."""
        if self._is_fresh(layer):
            logger.info("%s: reusing cached layer", self.name)
            layer.build, layer.launch, layer.cache = self.build, self.launch, self.cache
            return layer

        logger.info("%s: contributing to layer", self.name)
        try:
            layer.reset()
        except OSError as exc:
            raise LayerError(f"unable to reset layer {layer.path}", path=layer.path) from exc

        layer = compute(layer)

        layer.build, layer.launch, layer.cache = self.build, self.launch, self.cache
        layer.metadata = {**self.expected_metadata, "cache_key": self.key}
        try:
            layer.write()
        except OSError as exc:
            raise LayerError(f"unable to write layer {layer.path}", path=layer.path) from exc
        return layer
