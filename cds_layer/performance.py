"""Spring performance layer: CDS training run for an exploded Boot application.

The contribution optionally rebuilds the application directory into
``runner.jar``, extracts it with the Boot jarmode tools, pins every file time
and runs the application once with ``-XX:ArchiveClassesAtExit`` so the JVM
writes ``application.jsa`` next to the application.
"""

from __future__ import annotations

import contextlib
import logging
import shutil
import tempfile
from collections.abc import Mapping
from enum import Enum
from pathlib import Path

from cds_layer.archive import create_jar
from cds_layer.config import TrainingConfiguration, get_env_with_default
from cds_layer.errors import CommandError, ContributionError, ExtractionError, LayerError, TrainingRunError
from cds_layer.layer import Layer, LayerContributor
from cds_layer.runtime import Execution, Executor, LogWriter, SubprocessExecutor, copy_file, remove_path, unix_millis
from cds_layer.walk import fingerprint_tree, reset_file_times

logger = logging.getLogger(__name__)

LAYER_NAME = "spring-performance"
CONTRIBUTOR_NAME = "Performance"
AOT_ENABLED_ENV = "BPL_SPRING_AOT_ENABLED"
CDS_ENABLED_ENV = "BPL_JVM_CDS_ENABLED"
TRAINING_TOOL_OPTIONS_ENV = "CDS_TRAINING_JAVA_TOOL_OPTIONS"
TOOL_OPTIONS_ENV = "JAVA_TOOL_OPTIONS"
CDS_ARCHIVE_NAME = "application.jsa"
RUNNER_JAR_NAME = "runner.jar"
JAVA_COMMAND = "java"


class TrainingOutcome(str, Enum):
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REUSED = "reused"


def training_run_args(config: TrainingConfiguration) -> list[str]:
    args: list[str] = []
    if config.aot_enabled:
        args.append("-Dspring.aot.enabled=true")
    args.extend(
        [
            "-Dspring.context.exit=onRefresh",
            f"-XX:ArchiveClassesAtExit={CDS_ARCHIVE_NAME}",
            "-cp",
            config.classpath,
            config.start_class,
        ]
    )
    return args


def training_run_env(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    tool_options = get_env_with_default(
        TRAINING_TOOL_OPTIONS_ENV, get_env_with_default(TOOL_OPTIONS_ENV, "", environ), environ
    )
    if not tool_options:
        return {}
    logger.info("Training run will use this value as %s: %s", TOOL_OPTIONS_ENV, tool_options)
    return {TOOL_OPTIONS_ENV: tool_options}


def expected_metadata(config: TrainingConfiguration, app_fingerprint: str) -> dict[str, object]:
    return {
        "aot_enabled": config.aot_enabled,
        "app_fingerprint": app_fingerprint,
        "classpath": config.classpath,
        "rezip": config.rezip,
        "start_class": config.start_class,
        "training_run": config.training_run,
    }


class SpringPerformance:
    def __init__(
        self,
        config: TrainingConfiguration,
        *,
        contributor: LayerContributor | None = None,
        executor: Executor | None = None,
        environ: Mapping[str, str] | None = None,
        temp_root: Path | None = None,
    ) -> None:
        self.config = config
        self.contributor = contributor
        self.executor = executor or SubprocessExecutor()
        self.environ = environ
        self.temp_root = temp_root
        self.outcome: TrainingOutcome | None = None

    @property
    def name(self) -> str:
        return self.contributor.name if self.contributor is not None else CONTRIBUTOR_NAME

    @property
    def app_path(self) -> Path:
        return Path(self.config.app_path)

    def _layer_contributor(self) -> LayerContributor:
        if self.contributor is not None:
            return self.contributor
        try:
            fingerprint = fingerprint_tree(self.app_path, exclude=frozenset({CDS_ARCHIVE_NAME}))
        except OSError as exc:
            raise LayerError(f"unable to fingerprint {self.app_path}", path=self.app_path) from exc
        return LayerContributor(
            CONTRIBUTOR_NAME, expected_metadata(self.config, fingerprint), build=True, launch=True
        )

    def contribute(self, layer: Layer) -> Layer:
        self.outcome = None
        try:
            layer = self._layer_contributor().contribute(layer, self._contribute)
            if self.outcome is None:
                self.outcome = TrainingOutcome.REUSED
                self._restore_cds_archive(layer)
        except ContributionError as exc:
            self.outcome = TrainingOutcome.FAILED
            error = ContributionError("unable to contribute spring-cds layer", path=exc.path)
            error.step = exc.step
            raise error from exc
        return layer

    def _restore_cds_archive(self, layer: Layer) -> None:
        cached = layer.path / CDS_ARCHIVE_NAME
        target = self.app_path / CDS_ARCHIVE_NAME
        if not self.config.training_run or target.exists() or not cached.exists():
            return
        logger.info("restoring %s from cached layer", CDS_ARCHIVE_NAME)
        try:
            copy_file(cached, target)
        except OSError as exc:
            raise LayerError(f"error restoring {CDS_ARCHIVE_NAME} into {self.app_path}", path=cached) from exc

    def _contribute(self, layer: Layer) -> Layer:
        layer.launch_environment.default(AOT_ENABLED_ENV, self.config.aot_enabled)

        if not self.config.training_run:
            logger.debug("CDS training run not requested")
            self.outcome = TrainingOutcome.SKIPPED
            return layer

        with contextlib.ExitStack() as stack:
            jar_path = self.app_path
            backup: Path | None = None
            if self.config.rezip:
                work_dir = self._make_work_dir()
                stack.callback(shutil.rmtree, work_dir, ignore_errors=True)
                jar_path, backup = self._rezip(layer, work_dir)

            try:
                self._extract(jar_path)
            except ExtractionError:
                if backup is not None:
                    try:
                        self._restore(backup)
                    except OSError:
                        logger.exception("unable to restore %s, original kept at %s", self.app_path, backup)
                        stack.pop_all()
                raise
            if backup is not None:
                try:
                    remove_path(backup)
                except OSError as exc:
                    raise LayerError(f"error removing {backup}", path=backup) from exc

        reset_file_times(self.app_path)
        self._train()

        produced = self.app_path / CDS_ARCHIVE_NAME
        if produced.exists():
            try:
                copy_file(produced, layer.path / CDS_ARCHIVE_NAME)
            except OSError as exc:
                raise LayerError(f"error copying {CDS_ARCHIVE_NAME} to {layer.path}", path=produced) from exc

        layer.launch_environment.default(CDS_ENABLED_ENV, True)
        self.outcome = TrainingOutcome.SUCCEEDED
        return layer

    def _make_work_dir(self) -> Path:
        try:
            work_dir = Path(tempfile.mkdtemp(prefix=f"{unix_millis()}-", dir=self.temp_root))
            (work_dir / "jar-dest").mkdir()
        except OSError as exc:
            raise LayerError("error creating temp directory for jar", path=self.temp_root) from exc
        return work_dir

    def _rezip(self, layer: Layer, work_dir: Path) -> tuple[Path, Path]:
        jar_path = create_jar(self.app_path, work_dir / "jar-dest" / RUNNER_JAR_NAME)
        try:
            copy_file(jar_path, layer.path / RUNNER_JAR_NAME)
        except OSError as exc:
            raise LayerError(f"error copying jar to {layer.path}", path=jar_path) from exc

        backup = work_dir / "app-backup"
        try:
            shutil.move(str(self.app_path), str(backup))
        except OSError as exc:
            raise LayerError(f"error moving {self.app_path} aside", path=self.app_path) from exc
        return jar_path, backup

    def _restore(self, backup: Path) -> None:
        logger.warning("restoring %s after failed extraction", self.app_path)
        if self.app_path.exists() or self.app_path.is_symlink():
            remove_path(self.app_path)
        shutil.move(str(backup), str(self.app_path))

    def _extract(self, jar_path: Path) -> None:
        logger.info("Extracting Jar")
        execution = Execution(
            command=JAVA_COMMAND,
            args=["-Djarmode=tools", "-jar", str(jar_path), "extract", "--destination", str(self.app_path)],
            cwd=jar_path.parent,
            stdout=LogWriter(logger),
            stderr=LogWriter(logger),
        )
        try:
            self.executor.execute(execution)
        except CommandError as exc:
            raise ExtractionError(f"error extracting Boot jar at {jar_path}", path=jar_path) from exc

    def _train(self) -> None:
        execution = Execution(
            command=JAVA_COMMAND,
            args=training_run_args(self.config),
            env=training_run_env(self.environ),
            cwd=self.app_path,
            stdout=LogWriter(logger),
            stderr=LogWriter(logger),
        )
        logger.info("Running CDS training run")
        try:
            self.executor.execute(execution)
        except CommandError as exc:
            raise TrainingRunError(f"error running build in {self.app_path}", path=self.app_path) from exc

        if not (self.app_path / CDS_ARCHIVE_NAME).exists():
            logger.warning("training run finished but %s was not written", CDS_ARCHIVE_NAME)
