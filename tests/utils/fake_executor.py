from __future__ import annotations

import zipfile
from pathlib import Path

from cds_layer.errors import CommandError
from cds_layer.runtime import Execution


class RecordingExecutor:
    """Records executions and plays the part of the jarmode extractor and the training JVM."""

    def __init__(self, *, fail_extract: bool = False, fail_training: bool = False) -> None:
        self.fail_extract = fail_extract
        self.fail_training = fail_training
        self.executions: list[Execution] = []

    @property
    def extractions(self) -> list[Execution]:
        return [item for item in self.executions if "extract" in item.args]

    @property
    def training_runs(self) -> list[Execution]:
        return [item for item in self.executions if "extract" not in item.args]

    def execute(self, execution: Execution) -> None:
        self.executions.append(execution)
        if "extract" in execution.args:
            self._extract(execution)
        else:
            self._train(execution)

    def _extract(self, execution: Execution) -> None:
        if self.fail_extract:
            raise CommandError(execution.cmd, exit_code=1)
        source = Path(execution.args[execution.args.index("-jar") + 1])
        destination = Path(execution.args[execution.args.index("--destination") + 1])
        destination.mkdir(parents=True, exist_ok=True)
        if source.is_file():
            with zipfile.ZipFile(source) as archive:
                archive.extractall(destination)
        (destination / "extracted.marker").write_text("ok\n", encoding="utf-8")

    def _train(self, execution: Execution) -> None:
        if self.fail_training:
            raise CommandError(execution.cmd, exit_code=2)
        assert execution.cwd is not None
        (Path(execution.cwd) / "application.jsa").write_bytes(b"CDS")
