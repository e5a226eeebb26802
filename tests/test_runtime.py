from __future__ import annotations

import logging
import sys

import pytest

from cds_layer.errors import CommandError, ContributionError, cause_chain
from cds_layer.runtime import Execution, LogWriter, SubprocessExecutor, copy_file


def test_log_writer_emits_complete_lines(caplog):
    target = logging.getLogger("tests.log_writer")
    writer = LogWriter(target)

    with caplog.at_level(logging.INFO, logger="tests.log_writer"):
        writer.write("first\nsec")
        writer.write("ond\r\n")
        writer.write("tail")
        writer.flush()

    assert [record.getMessage() for record in caplog.records] == ["first", "second", "tail"]


def test_subprocess_executor_streams_output_and_passes_env(tmp_path, caplog):
    target = logging.getLogger("tests.executor")
    script = "import os, sys; print(os.environ['CDS_TEST_VALUE']); print('err', file=sys.stderr)"
    execution = Execution(
        command=sys.executable,
        args=["-c", script],
        env={"CDS_TEST_VALUE": "hello"},
        cwd=tmp_path,
        stdout=LogWriter(target),
        stderr=LogWriter(target),
    )

    with caplog.at_level(logging.INFO, logger="tests.executor"):
        SubprocessExecutor().execute(execution)

    messages = sorted(record.getMessage() for record in caplog.records)
    assert messages == ["err", "hello"]


def test_subprocess_executor_raises_on_non_zero_exit(tmp_path):
    execution = Execution(command=sys.executable, args=["-c", "raise SystemExit(3)"], cwd=tmp_path)

    with pytest.raises(CommandError) as excinfo:
        SubprocessExecutor().execute(execution)

    assert excinfo.value.exit_code == 3


def test_subprocess_executor_raises_on_spawn_failure(tmp_path):
    execution = Execution(command=str(tmp_path / "no-such-binary"), cwd=tmp_path)

    with pytest.raises(CommandError) as excinfo:
        SubprocessExecutor().execute(execution)

    assert excinfo.value.exit_code is None
    assert "unable to start" in str(excinfo.value)


def test_copy_file_creates_parent(tmp_path):
    src = tmp_path / "src.bin"
    src.write_bytes(b"payload")

    copy_file(src, tmp_path / "nested" / "dst.bin")

    assert (tmp_path / "nested" / "dst.bin").read_bytes() == b"payload"


def test_cause_chain_follows_explicit_causes():
    try:
        try:
            raise OSError("disk full")
        except OSError as inner:
            raise ContributionError("outer") from inner
    except ContributionError as exc:
        assert cause_chain(exc) == ["outer", "disk full"]
