"""Tests for vmm.utils module."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from vmm.exceptions import ExternalToolFailure, ManagerError
from vmm.utils import (
    atomic_write_text,
    copy_file,
    deterministic_mac,
    directory_size,
    expand_user_path,
    log,
    mib_ceil,
    run,
    set_verbose,
    succeeds,
    wait_for_path,
)


class TestLog:
    def test_info_level(self, capsys):
        log("INFO", "test message")
        captured = capsys.readouterr()
        assert "[INFO]" in captured.out
        assert "test message" in captured.out

    def test_warn_goes_to_stderr(self, capsys):
        log("WARN", "careful")
        captured = capsys.readouterr()
        assert captured.out == ""
        assert "careful" in captured.err

    def test_debug_suppressed_by_default(self, capsys):
        log("DEBUG", "should not appear")
        assert capsys.readouterr().out == ""

    def test_debug_when_verbose(self, capsys):
        set_verbose(True)
        log("DEBUG", "visible")
        assert "visible" in capsys.readouterr().out


class TestRun:
    def test_returns_completed_process(self):
        completed = subprocess.CompletedProcess(["true"], 0, stdout="ok", stderr="")
        with patch("vmm.utils.subprocess.run", return_value=completed) as mock_run:
            assert run(["true"]) is completed
        assert mock_run.call_args.kwargs["capture_output"] is True

    def test_non_zero_exit_raises(self):
        completed = subprocess.CompletedProcess(["ip"], 2, stdout="", stderr="RTNETLINK answers: File exists\n")
        with patch("vmm.utils.subprocess.run", return_value=completed):
            with pytest.raises(ExternalToolFailure) as exc:
                run(["ip", "link", "add", "br0", "type", "bridge"])
        assert exc.value.tool == "ip"
        assert exc.value.returncode == 2
        assert "File exists" in str(exc.value)

    def test_non_zero_exit_without_check(self):
        completed = subprocess.CompletedProcess(["false"], 1, stdout="", stderr="")
        with patch("vmm.utils.subprocess.run", return_value=completed):
            assert run(["false"], check=False).returncode == 1

    def test_missing_binary(self):
        with patch("vmm.utils.subprocess.run", side_effect=FileNotFoundError(2, "No such file", "iptables")):
            with pytest.raises(ExternalToolFailure, match="command not found"):
                run(["iptables", "-L"])

    def test_succeeds_swallows_missing_binary(self):
        with patch("vmm.utils.subprocess.run", side_effect=FileNotFoundError(2, "No such file", "iptables")):
            assert succeeds(["iptables", "-C", "FORWARD"]) is False


class TestDeterministicMac:
    def test_uses_first_three_characters(self):
        assert deterministic_mac("abc12345") == "AA:FC:00:61:62:63"

    def test_same_id_same_mac(self):
        assert deterministic_mac("f00dbeef") == deterministic_mac("f00d0000")

    def test_short_id(self):
        with pytest.raises(ManagerError):
            deterministic_mac("ab")


class TestAtomicWriteText:
    def test_writes_and_sets_mode(self, tmp_path):
        target = tmp_path / "nested" / "file.txt"
        atomic_write_text(target, "hello\n", mode=0o600)
        assert target.read_text() == "hello\n"
        assert target.stat().st_mode & 0o777 == 0o600

    def test_no_temp_files_left_behind(self, tmp_path):
        atomic_write_text(tmp_path / "a.txt", "1")
        atomic_write_text(tmp_path / "a.txt", "2")
        assert [p.name for p in tmp_path.iterdir()] == ["a.txt"]


class TestCopyFile:
    def test_copies_bytes(self, tmp_path):
        source = tmp_path / "src.bin"
        source.write_bytes(b"\x00\x01" * 1000)
        copy_file(source, tmp_path / "out" / "dst.bin", chunk_size=7)
        assert (tmp_path / "out" / "dst.bin").read_bytes() == source.read_bytes()

    def test_failed_copy_leaves_nothing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            copy_file(tmp_path / "missing", tmp_path / "dst.bin")
        assert list(tmp_path.iterdir()) == []


class TestSizes:
    def test_directory_size(self, tmp_path):
        (tmp_path / "a").write_bytes(b"x" * 10)
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "b").write_bytes(b"x" * 5)
        assert directory_size(tmp_path) == 15

    @pytest.mark.parametrize(("size", "expected"), [(0, 0), (1, 1), (1024 * 1024, 1), (1024 * 1024 + 1, 2)])
    def test_mib_ceil(self, size, expected):
        assert mib_ceil(size) == expected


class TestExpandUserPath:
    def test_tilde_uses_given_home(self):
        assert expand_user_path("~/.ssh/id.pub", Path("/home/alice")) == Path("/home/alice/.ssh/id.pub")

    def test_absolute_path_untouched(self):
        assert expand_user_path("/etc/key.pub", Path("/home/alice")) == Path("/etc/key.pub")


class TestWaitForPath:
    def test_existing_path(self, tmp_path):
        assert wait_for_path(tmp_path, timeout=0.1) is True

    def test_times_out(self, tmp_path):
        assert wait_for_path(tmp_path / "never", timeout=0.05, interval=0.01) is False
