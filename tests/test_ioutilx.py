import io
import subprocess
from unittest import mock

from limaagent.ioutilx import (
    canonical_windows_path,
    from_utf16le,
    from_utf16le_to_string,
    read_at_maximum,
)


class _TrickleReader:
    """Returns at most two bytes per read."""

    def __init__(self, data):
        self._data = data

    def read(self, size=-1):
        chunk, self._data = self._data[:min(size, 2)], self._data[min(size, 2):]
        return chunk


def test_read_at_maximum_truncates():
    data = b"hello world"
    assert read_at_maximum(io.BytesIO(data), 5) == data[:5]


def test_read_at_maximum_shorter_stream():
    data = b"abc"
    assert read_at_maximum(io.BytesIO(data), 100) == data


def test_read_at_maximum_zero():
    assert read_at_maximum(io.BytesIO(b"abc"), 0) == b""


def test_read_at_maximum_short_reads():
    data = b"0123456789"
    assert read_at_maximum(_TrickleReader(data), 7) == data[:7]


def test_utf16le_round_trip():
    text = "héllo wörld\r\nline two"
    assert from_utf16le_to_string(io.BytesIO(text.encode("utf-16-le"))) == text


def test_utf16le_bom_is_dropped():
    text = "abc"
    data = b"\xff\xfe" + text.encode("utf-16-le")
    assert from_utf16le_to_string(io.BytesIO(data)) == text


def test_utf16_big_endian_bom():
    text = "big endian"
    data = b"\xfe\xff" + text.encode("utf-16-be")
    assert from_utf16le_to_string(io.BytesIO(data)) == text


def test_utf16le_streaming_reader():
    text = "x" * 5000 + "end"
    reader = from_utf16le(_TrickleReader(text.encode("utf-16-le")))
    assert reader.read() == text


def test_utf16le_odd_byte_is_replaced():
    text = "ok"
    result = from_utf16le_to_string(io.BytesIO(text.encode("utf-16-le") + b"A"))
    assert result.startswith(text)
    assert result.endswith("\ufffd")


def test_utf16le_empty():
    assert from_utf16le_to_string(io.BytesIO(b"")) == ""


def test_canonical_windows_path_converted():
    converted = "C:/Users/someone/file"
    completed = subprocess.CompletedProcess(args=[], returncode=0, stdout=(converted + "\r\n").encode())
    with mock.patch("limaagent.ioutilx.subprocess.run", return_value=completed) as run:
        assert canonical_windows_path("C:\\Users\\someone\\file") == converted
    assert run.call_args.args[0][:2] == ["cygpath", "-m"]


def test_canonical_windows_path_missing_tool():
    orig = "C:\\Users\\someone"
    with mock.patch("limaagent.ioutilx.subprocess.run", side_effect=FileNotFoundError("cygpath")):
        assert canonical_windows_path(orig) == orig


def test_canonical_windows_path_failure():
    orig = "C:\\temp"
    error = subprocess.CalledProcessError(1, ["cygpath"])
    with mock.patch("limaagent.ioutilx.subprocess.run", side_effect=error):
        assert canonical_windows_path(orig) == orig