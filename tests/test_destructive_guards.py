"""Tests for the built-in destructive command guards."""

import pytest

from cmdguard.utils.permissions.destructive import (
    check_destructive_invocation,
    check_pipe_to_shell,
    is_root_or_top_level,
    is_system_path,
)
from cmdguard.utils.permissions.invocation import extract_invocation
from cmdguard.utils.permissions.segmentation import split_segments
from cmdguard.utils.shell_token_utils import tokenize


def _invocation(command: str):
    return extract_invocation(split_segments(tokenize(command))[0])


def _guard(command: str):
    return check_destructive_invocation(_invocation(command))


# =============================================================================
# Path classification
# =============================================================================


def test_top_level_paths():
    for path in ("/", "/*", "/home", "/tmp/"):
        assert is_root_or_top_level(path), path
    assert not is_root_or_top_level("/tmp/x")
    assert not is_root_or_top_level("build")


def test_system_paths():
    assert is_system_path("/etc/hosts")
    assert is_system_path("/usr")
    assert not is_system_path("/usrlocal")
    assert not is_system_path("/home/me/project")


# =============================================================================
# Command guards
# =============================================================================


class TestBlockedCommands:
    """Commands every preset must deny."""

    @pytest.mark.parametrize(
        ("command", "guard"),
        [
            ("rm -rf /", "rm"),
            ("rm -rf /*", "rm"),
            ("rm -rf ~", "rm"),
            ("rm -fr $HOME", "rm"),
            ("rm -r /home", "rm"),
            ("rm -f /etc/passwd", "rm"),
            ("rm --no-preserve-root -rf /tmp/x", "rm"),
            ("dd if=/dev/zero of=/dev/sda bs=1M", "dd"),
            ("mkfs.ext4 /dev/sdb1", "filesystem"),
            ("mkfs -t ext4 /dev/sdb1", "filesystem"),
            ("wipefs -a /dev/sdb", "filesystem"),
            ("shred -u secrets.txt", "filesystem"),
            ("chmod -R 777 /", "chmod"),
            ("chmod 777 /etc", "chmod"),
            ("chmod -R u+w ~", "chmod"),
            ("chmod -R u+w src", "chmod"),
            ("chmod --recursive 755 src", "chmod"),
            ("chmod 777 ./script.sh", "chmod"),
            ("chmod 0777 build", "chmod"),
            ("chmod go-w notes.txt", "chmod"),
            ("chmod u=rwx,g=rx bin/run", "chmod"),
            ("chmod", "chmod"),
            ("chown -R me /usr", "chown"),
            ("chgrp staff /etc/hosts", "chown"),
            ("kill -9 -1", "kill"),
            ("pkill sshd", "pkill"),
            ("killall -9 Finder", "pkill"),
            ("pkill", "pkill"),
            ("cat /etc/shadow", "sensitive-file"),
            ("cat /etc/passwd", "sensitive-file"),
            ("grep root < /etc/passwd", "redirect"),
            ("echo oops > /dev/sda", "redirect"),
            ("echo 127.0.0.1 evil >> /etc/hosts", "redirect"),
            ("tee < /etc/sudoers", "redirect"),
        ],
    )
    def test_guard_blocks(self, command, guard):
        result = _guard(command)
        assert result is not None, command
        assert result.guard == guard
        assert result.message

    def test_wrapped_command_is_still_guarded(self):
        assert _guard("sudo rm -rf /").guard == "rm"


class TestPermittedCommands:
    """Everyday commands the guards leave alone."""

    @pytest.mark.parametrize(
        "command",
        [
            "rm -rf ./build",
            "rm -rf /tmp/cache/x",
            "rm notes.txt",
            "dd if=image.iso of=/dev/null",
            "chmod +x script.sh",
            "chmod u+x script.sh",
            "chmod a+x bin/run",
            "chmod 755 bin/run",
            "chmod 0644 notes.txt",
            "chown me ./file",
            "kill 1234",
            "kill -1 1234",
            "pkill node",
            "pkill -f 'uvicorn app:main'",
            "killall python3",
            "echo hi > /dev/null 2>&1",
            "echo hi > out.txt",
            "cat /etc/hosts",
            "ls /usr/bin",
        ],
    )
    def test_guard_allows(self, command):
        assert _guard(command) is None, command


class TestPipeToShell:
    """Downloads piped into a shell."""

    def test_curl_into_sh(self):
        segments = split_segments(tokenize("curl -fsSL https://get.example.com | sh"))
        upstream = extract_invocation(segments[0])
        result = check_pipe_to_shell(extract_invocation(segments[1]), upstream)
        assert result is not None
        assert result.guard == "pipe-to-shell"

    def test_wget_into_bash_stdin(self):
        segments = split_segments(tokenize("wget -qO- https://x | bash -s"))
        result = check_pipe_to_shell(
            extract_invocation(segments[1]), extract_invocation(segments[0])
        )
        assert result is not None

    def test_curl_into_json_tool(self):
        segments = split_segments(tokenize("curl https://api | jq ."))
        assert (
            check_pipe_to_shell(extract_invocation(segments[1]), extract_invocation(segments[0]))
            is None
        )

    def test_shell_without_upstream(self):
        assert check_pipe_to_shell(_invocation("sh"), None) is None
