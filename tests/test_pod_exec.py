from __future__ import annotations

import io
import itertools
from unittest.mock import Mock, patch

import pytest

from common import PodExecError, execute_in_pod


def _response(stdout: str = "", stderr: str = "", returncode: int = 0) -> Mock:
    resp = Mock()
    resp.is_open.side_effect = [True, False]
    resp.peek_stdout.return_value = bool(stdout)
    resp.read_stdout.return_value = stdout
    resp.peek_stderr.return_value = bool(stderr)
    resp.read_stderr.return_value = stderr
    resp.returncode = returncode
    return resp


def test_output_is_copied_to_writers() -> None:
    resp = _response(stdout="stanza created\n", stderr="warn\n")
    stdout, stderr = io.StringIO(), io.StringIO()

    with patch("common.pod_exec.stream", return_value=resp) as stream:
        execute_in_pod(Mock(), "postgres", "hippo-instance1-abcd-0", "database",
                       None, stdout, stderr, "pgbackrest", "info")

    kwargs = stream.call_args.kwargs
    assert kwargs["command"] == ["pgbackrest", "info"]
    assert kwargs["container"] == "database"
    assert kwargs["stdin"] is False
    assert stdout.getvalue() == "stanza created\n"
    assert stderr.getvalue() == "warn\n"
    resp.close.assert_called_once()


def test_stdin_is_written_before_reading() -> None:
    resp = _response()

    with patch("common.pod_exec.stream", return_value=resp):
        execute_in_pod(Mock(), "postgres", "pod-0", None, io.StringIO("input"), None, None, "cat")

    resp.write_stdin.assert_called_once_with("input")


def test_nonzero_exit_raises_with_code() -> None:
    resp = _response(stderr="boom", returncode=2)
    stderr = io.StringIO()

    with patch("common.pod_exec.stream", return_value=resp):
        with pytest.raises(PodExecError) as exc_info:
            execute_in_pod(Mock(), "postgres", "pod-0", "database", None, None, stderr, "false")

    assert exc_info.value.exit_code == 2
    assert stderr.getvalue() == "boom"


def test_failed_session_raises_without_code() -> None:
    with patch("common.pod_exec.stream", side_effect=RuntimeError("handshake failed")):
        with pytest.raises(PodExecError) as exc_info:
            execute_in_pod(Mock(), "postgres", "pod-0", "database", None, None, None, "true")

    assert exc_info.value.exit_code is None
    assert "handshake failed" in str(exc_info.value)


def test_command_running_past_timeout_is_closed() -> None:
    resp = _response()
    resp.is_open.side_effect = None
    resp.is_open.return_value = True

    with patch("common.pod_exec.stream", return_value=resp) as stream, \
            patch("common.pod_exec.time.monotonic", side_effect=itertools.count(0, 0.6)):
        with pytest.raises(PodExecError) as exc_info:
            execute_in_pod(Mock(), "postgres", "pod-0", "database", None, None, None,
                           "pgbackrest", "stanza-create", timeout=1)

    assert exc_info.value.exit_code is None
    assert "timed out" in str(exc_info.value)
    assert stream.call_args.kwargs["_request_timeout"] == 1
    assert resp.update.call_count == 1
    resp.close.assert_called_once()


def test_no_timeout_leaves_request_unbounded() -> None:
    resp = _response()

    with patch("common.pod_exec.stream", return_value=resp) as stream:
        execute_in_pod(Mock(), "postgres", "pod-0", "database", None, None, None, "true")

    assert "_request_timeout" not in stream.call_args.kwargs
