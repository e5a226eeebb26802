from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Protocol

from cds_layer.errors import CommandError

logger = logging.getLogger(__name__)

COPY_CHUNK_SIZE = 64 * 1024


def utc_now_iso() -> str:
    return datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat()


def unix_millis() -> str:
    return str(int(time.time() * 1000))


def write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")


def read_json(path: Path) -> dict[str, Any]:
    return json.loads(path.read_text(encoding="utf-8"))


def copy_file(src: Path, dst: Path) -> None:
    dst.parent.mkdir(parents=True, exist_ok=True)
    with open(src, "rb") as reader, open(dst, "wb") as writer:
        shutil.copyfileobj(reader, writer, COPY_CHUNK_SIZE)


def remove_path(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


class LogWriter:
    """File-like sink that forwards each complete line to a logger."""

    def __init__(self, target: logging.Logger, level: int = logging.INFO) -> None:
        self._logger = target
        self._level = level
        self._buffer = ""

    def write(self, text: str) -> int:
        self._buffer += text
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            self._logger.log(self._level, "%s", line.rstrip("\r"))
        return len(text)

    def flush(self) -> None:
        if self._buffer:
            self._logger.log(self._level, "%s", self._buffer.rstrip("\r"))
            self._buffer = ""


@dataclass
class Execution:
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    cwd: Path | None = None
    stdout: IO[str] | LogWriter | None = None
    stderr: IO[str] | LogWriter | None = None

    @property
    def cmd(self) -> list[str]:
        return [self.command, *self.args]


class Executor(Protocol):
    def execute(self, execution: Execution) -> None:
        """Run the execution to completion, raising CommandError on failure."""
        ...


def _pump(stream: IO[str], sink: IO[str] | LogWriter | None) -> None:
    for line in stream:
        if sink is not None:
            sink.write(line)
    if sink is not None:
        sink.flush()


class SubprocessExecutor:
    """Blocking executor; the child's output is streamed to the sinks as it arrives."""

    def execute(self, execution: Execution) -> None:
        env = dict(os.environ)
        env.update(execution.env)
        cmd = execution.cmd
        logger.debug("executing %s in %s", " ".join(cmd), execution.cwd)
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(execution.cwd) if execution.cwd is not None else None,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
        except OSError as exc:
            raise CommandError(cmd, exit_code=None, detail=str(exc)) from exc

        with proc:
            err_thread = threading.Thread(target=_pump, args=(proc.stderr, execution.stderr), daemon=True)
            err_thread.start()
            _pump(proc.stdout, execution.stdout)
            err_thread.join()
            exit_code = proc.wait()

        if exit_code != 0:
            raise CommandError(cmd, exit_code=exit_code)
