from __future__ import annotations

from pathlib import Path


class ContributionError(RuntimeError):
    """Base failure for a layer contribution; `step` names the stage that failed."""

    step = "contribute"

    def __init__(self, message: str, *, path: Path | str | None = None) -> None:
        self.path = str(path) if path is not None else None
        super().__init__(message)


class ArchiveError(ContributionError):
    step = "archive"


class LayerError(ContributionError):
    step = "layer"


class ExtractionError(ContributionError):
    step = "extract"


class TimestampError(ContributionError):
    step = "timestamps"


class TrainingRunError(ContributionError):
    step = "training_run"


class CommandError(ContributionError):
    step = "command"

    def __init__(self, cmd: list[str], *, exit_code: int | None, detail: str | None = None) -> None:
        self.cmd = list(cmd)
        self.exit_code = exit_code
        if exit_code is None:
            message = f"unable to start `{' '.join(self.cmd)}`: {detail or 'spawn failed'}"
        else:
            message = f"`{' '.join(self.cmd)}` exited with status {exit_code}"
        super().__init__(message, path=self.cmd[0] if self.cmd else None)


def cause_chain(exc: BaseException) -> list[str]:
    chain: list[str] = []
    current: BaseException | None = exc
    while current is not None:
        chain.append(str(current) or type(current).__name__)
        if current.__cause__ is not None:
            current = current.__cause__
        elif current.__suppress_context__:
            current = None
        else:
            current = current.__context__
    return chain
