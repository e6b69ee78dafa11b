"""Destructive command detection helpers.

These guards run before any user rule and deny commands that can cause
irreversible damage to the machine regardless of the active preset.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from cmdguard.utils.permissions.interpreter import SHELL_INTERPRETERS, inline_scripts
from cmdguard.utils.permissions.invocation import AtomicInvocation

# =============================================================================
# Path classification
# =============================================================================

_SYSTEM_DIRS: Tuple[str, ...] = (
    "/etc",
    "/usr",
    "/bin",
    "/sbin",
    "/var",
    "/boot",
    "/lib",
    "/lib64",
    "/opt",
    "/root",
    "/sys",
    "/proc",
    "/dev",
)
_HOME_TARGETS = frozenset({"~", "~/", "$HOME", "${HOME}", "$HOME/", "${HOME}/", "~/*", "$HOME/*"})
_SENSITIVE_FILES = frozenset({"/etc/passwd", "/etc/shadow", "/etc/gshadow", "/etc/sudoers"})
_BLOCK_DEVICE_RE = re.compile(r"^/dev/(sd|hd|vd|xvd|nvme|mmcblk|disk|rdisk|md|dm-|mapper/)")
_HARMLESS_DEVICES = frozenset({"/dev/null", "/dev/zero", "/dev/stdout", "/dev/stderr", "/dev/stdin", "/dev/tty"})
_CHMOD_EXECUTABLE_RE = re.compile(r"^[ugoa]*\+x$")
_CHMOD_NUMERIC_RE = re.compile(r"^[0-7]{3,4}$")

# Process names that pkill/killall may target.
ALLOWED_KILL_TARGETS = frozenset(
    {
        "node", "npm", "npx", "yarn", "pnpm", "bun", "vite", "next", "webpack",
        "flask", "uvicorn", "gunicorn", "python", "python3", "pytest",
        "cargo", "go", "tsc",
    }
)

_PIPE_SOURCES = frozenset({"curl", "wget"})


def _normalize_path(value: str) -> str:
    stripped = value.rstrip("/")
    return stripped or "/"


def is_root_or_top_level(path: str) -> bool:
    """``/``, ``/*``, ``/home`` and other single-component absolute paths."""
    if path in ("/", "/*", "/."):
        return True
    normalized = _normalize_path(path)
    return normalized.startswith("/") and normalized.count("/") == 1


def is_system_path(path: str) -> bool:
    normalized = _normalize_path(path)
    return any(normalized == d or normalized.startswith(d + "/") for d in _SYSTEM_DIRS)


def _is_harmless_device(path: str) -> bool:
    return path in _HARMLESS_DEVICES or path.startswith("/dev/fd/")


def is_home_target(path: str) -> bool:
    return path in _HOME_TARGETS


@dataclass(frozen=True)
class DestructiveCheckResult:
    guard: str
    message: str


def _split_flags(args: Tuple[str, ...]) -> Tuple[List[str], List[str]]:
    flags: List[str] = []
    operands: List[str] = []
    end_of_options = False
    for arg in args:
        if end_of_options or not arg.startswith("-") or arg == "-":
            operands.append(arg)
        elif arg == "--":
            end_of_options = True
        else:
            flags.append(arg)
    return flags, operands


def _has_short_flag(flags: List[str], letters: str) -> bool:
    return any(not f.startswith("--") and any(ch in f[1:] for ch in letters) for f in flags)


# =============================================================================
# Individual guards
# =============================================================================


def _check_rm(invocation: AtomicInvocation) -> Optional[str]:
    flags, operands = _split_flags(invocation.args)
    if "--no-preserve-root" in flags:
        return "rm --no-preserve-root can delete the whole filesystem"
    recursive = _has_short_flag(flags, "rR") or "--recursive" in flags
    force = _has_short_flag(flags, "f") or "--force" in flags
    for operand in operands:
        if (recursive or force) and (is_root_or_top_level(operand) or is_home_target(operand)):
            return f"rm -rf on root, home or a top-level directory ({operand}) is not allowed"
        if is_system_path(operand):
            return f"rm on system directory {operand} is not allowed"
    return None


def _check_dd(invocation: AtomicInvocation) -> Optional[str]:
    for arg in invocation.args:
        if arg.startswith("of=/dev/") and not _is_harmless_device(arg[3:]):
            return f"dd writing to device {arg[3:]} is not allowed"
    return None


def _check_filesystem_wipe(invocation: AtomicInvocation) -> Optional[str]:
    name = invocation.name
    if name == "mkfs" or name.startswith("mkfs.") or name in ("mke2fs", "mkswap"):
        return f"{name} formats storage devices"
    if name == "wipefs":
        return "wipefs erases filesystem signatures"
    if name == "shred":
        return "shred irreversibly destroys file data"
    return None


def _check_chmod(invocation: AtomicInvocation) -> Optional[str]:
    flags, operands = _split_flags(invocation.args)
    if _has_short_flag(flags, "R") or "--recursive" in flags:
        return "chmod -R (recursive) is not allowed"
    if not operands:
        return "chmod requires a mode"
    mode = operands[0]
    if _CHMOD_EXECUTABLE_RE.match(mode):
        return None
    if _CHMOD_NUMERIC_RE.match(mode):
        if mode in ("777", "0777"):
            return "chmod 777 makes files writable by everyone"
        return None
    return f"chmod only accepts +x or numeric modes, got {mode}"


def _check_chown(invocation: AtomicInvocation) -> Optional[str]:
    _, operands = _split_flags(invocation.args)
    for target in operands[1:]:
        if is_root_or_top_level(target) or is_system_path(target):
            return f"{invocation.name} on system path {target} is not allowed"
    return None


def _check_kill(invocation: AtomicInvocation) -> Optional[str]:
    args = invocation.args
    if "-1" in args[1:]:
        return "kill -1 signals every process the user owns"
    return None


def _check_pkill(invocation: AtomicInvocation) -> Optional[str]:
    _, operands = _split_flags(invocation.args)
    if not operands:
        return f"{invocation.name} requires a process name"
    target = operands[-1]
    process_name = target.split()[0] if target.split() else target
    if process_name in ALLOWED_KILL_TARGETS:
        return None
    return f"{invocation.name} is only allowed for development processes, not '{process_name}'"


def _check_sensitive_files(invocation: AtomicInvocation) -> Optional[str]:
    for arg in invocation.args:
        if arg in _SENSITIVE_FILES:
            return f"Access to {arg} is not allowed"
    return None


def _check_redirects(invocation: AtomicInvocation) -> Optional[str]:
    for redirect in invocation.redirects:
        target = redirect.target
        if target in _SENSITIVE_FILES:
            return f"Access to {target} is not allowed"
        if not redirect.is_output:
            continue
        if _BLOCK_DEVICE_RE.match(target):
            return f"Writing to block device {target} is not allowed"
        if is_system_path(target) and not _is_harmless_device(target):
            return f"Writing to system path {target} is not allowed"
    return None


_COMMAND_GUARDS: Tuple[Tuple[str, Callable[[AtomicInvocation], Optional[str]], Tuple[str, ...]], ...] = (
    ("rm", _check_rm, ("rm",)),
    ("dd", _check_dd, ("dd",)),
    ("chmod", _check_chmod, ("chmod",)),
    ("chown", _check_chown, ("chown", "chgrp")),
    ("kill", _check_kill, ("kill",)),
    ("pkill", _check_pkill, ("pkill", "killall")),
)

_GENERIC_GUARDS: Tuple[Tuple[str, Callable[[AtomicInvocation], Optional[str]]], ...] = (
    ("filesystem", _check_filesystem_wipe),
    ("sensitive-file", _check_sensitive_files),
    ("redirect", _check_redirects),
)


def check_destructive_invocation(invocation: AtomicInvocation) -> Optional[DestructiveCheckResult]:
    """Return the first guard that rejects ``invocation``, if any."""
    for guard, check, names in _COMMAND_GUARDS:
        if invocation.name in names:
            message = check(invocation)
            if message:
                return DestructiveCheckResult(guard, message)
    for guard, check in _GENERIC_GUARDS:
        message = check(invocation)
        if message:
            return DestructiveCheckResult(guard, message)
    return None


def check_pipe_to_shell(
    invocation: AtomicInvocation, upstream: Optional[AtomicInvocation]
) -> Optional[DestructiveCheckResult]:
    """Detect downloads piped straight into a shell (``curl ... | sh``)."""
    if upstream is None or upstream.name not in _PIPE_SOURCES:
        return None
    if invocation.name not in SHELL_INTERPRETERS or inline_scripts(invocation):
        return None
    return DestructiveCheckResult(
        "pipe-to-shell",
        f"Piping {upstream.name} output into {invocation.name} runs unreviewed code",
    )


__all__ = [
    "ALLOWED_KILL_TARGETS",
    "DestructiveCheckResult",
    "check_destructive_invocation",
    "check_pipe_to_shell",
    "is_home_target",
    "is_root_or_top_level",
    "is_system_path",
]
