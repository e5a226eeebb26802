from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

MANIFEST_PATH = Path("META-INF") / "MANIFEST.MF"
TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off", ""}


class TrainingConfiguration(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    app_path: Path = Field(..., description="Exploded application directory")
    aot_enabled: bool = Field(False, description="Run the training with Spring AOT enabled")
    training_run: bool = Field(False, description="Perform the CDS training run at all")
    classpath: str = Field("", description="Classpath passed to the training JVM via -cp")
    rezip: bool = Field(False, description="Rebuild the application directory into runner.jar first")
    manifest: dict[str, str] = Field(default_factory=dict, description="Application manifest entries")

    @property
    def start_class(self) -> str:
        return self.manifest.get("Start-Class", "")


def get_env_with_default(name: str, default: str, environ: Mapping[str, str] | None = None) -> str:
    env = os.environ if environ is None else environ
    value = env.get(name)
    return value if value is not None else default


def parse_bool(value: str | bool | None, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    normalized = value.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    raise ValueError(f"invalid boolean value {value!r}")


def resolve_bool(name: str, default: bool = False, environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    try:
        return parse_bool(env.get(name), default=default)
    except ValueError as exc:
        raise ValueError(f"{name}: {exc}") from exc


def parse_manifest(text: str) -> dict[str, str]:
    """Parse JAR manifest text; lines starting with a single space continue the previous value."""
    entries: dict[str, str] = {}
    current: str | None = None
    for raw in text.splitlines():
        if raw.startswith(" ") and current is not None:
            entries[current] += raw[1:]
            continue
        if not raw.strip():
            current = None
            continue
        key, sep, value = raw.partition(":")
        if not sep:
            logger.debug("skipping malformed manifest line %r", raw)
            current = None
            continue
        current = key.strip()
        entries[current] = value.strip()
    return entries


def read_manifest(app_path: Path) -> dict[str, str]:
    path = Path(app_path) / MANIFEST_PATH
    if not path.exists():
        logger.debug("no manifest at %s", path)
        return {}
    return parse_manifest(path.read_text(encoding="utf-8", errors="replace"))


def load_configuration(
    app_path: Path,
    *,
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> TrainingConfiguration:
    """Build the configuration from ``BP_*`` variables, with explicit overrides winning."""
    env = os.environ if environ is None else environ
    values: dict[str, Any] = {
        "app_path": Path(app_path),
        "aot_enabled": resolve_bool("BP_SPRING_AOT_ENABLED", environ=env),
        "training_run": resolve_bool("BP_JVM_CDS_ENABLED", environ=env),
        "classpath": get_env_with_default("BP_CDS_CLASSPATH", "", env),
        "rezip": resolve_bool("BP_CDS_REZIP", environ=env),
    }
    for key, value in (overrides or {}).items():
        if value is not None:
            values[key] = value
    if "manifest" not in values:
        values["manifest"] = read_manifest(values["app_path"])
    return TrainingConfiguration(**values)
