"""Best-effort cleanup for stale agent CLI processes.

Targets agent processes that a previous relay server spawned for a turn
but that outlived it (server crash, SIGKILL, laptop sleep).
"""

from __future__ import annotations

import os
import re
import signal
import subprocess
from dataclasses import dataclass
from typing import Callable

# Command lines the relay builds for each provider.
_MANAGED_PATTERNS = (
    r"\bcodex\b.*\bexec\b.*--json\b",
    r"\bgemini\b.*(?:--allowed-tools|--yolo)\b",
    r"\bollama\b\s+run\b",
)

_SERVER_SIGNATURES = (
    "clirelay serve",
    "clirelay.app serve",
)


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    ppid: int
    args: str


def _list_processes() -> dict[int, ProcessInfo]:
    """Return process table keyed by PID using `ps` output."""
    out = subprocess.check_output(
        ["ps", "-eo", "pid=,ppid=,args="],
        text=True,
        stderr=subprocess.DEVNULL,
    )
    table: dict[int, ProcessInfo] = {}
    for line in out.splitlines():
        parts = line.strip().split(maxsplit=2)
        if len(parts) < 3:
            continue
        try:
            pid = int(parts[0])
            ppid = int(parts[1])
        except ValueError:
            continue
        table[pid] = ProcessInfo(pid=pid, ppid=ppid, args=parts[2])
    return table


def _has_server_ancestor(
    proc: ProcessInfo,
    table: dict[int, ProcessInfo],
    current_pid: int,
) -> bool:
    """True when a live relay server (or this process) is up the tree."""
    cur = proc
    for _ in range(32):
        if cur.pid == current_pid:
            return True
        if any(sig in cur.args for sig in _SERVER_SIGNATURES):
            return True
        parent = table.get(cur.ppid)
        if parent is None:
            return False
        cur = parent
    return False


def is_managed_candidate(args: str, include_claude: bool = False) -> bool:
    """Match agent command lines the relay may have spawned."""
    patterns = list(_MANAGED_PATTERNS)
    if include_claude:
        # claude -p is common outside the relay too; opt-in only.
        patterns.append(r"\bclaude\b\s+-p\b")
    return any(re.search(pat, args) for pat in patterns)


def cleanup_stale_runtime_processes(
    *,
    current_pid: int | None = None,
    include_claude: bool = False,
    log: Callable[[str], None] | None = None,
) -> int:
    """SIGTERM orphaned agent processes and return how many were signalled.

    A process is stale only when:
    - its command line matches a managed agent signature, and
    - it is orphaned (parent is PID 1 or missing), and
    - no relay server is among its ancestors.
    """
    pid = current_pid or os.getpid()
    emit = log or (lambda _: None)
    table = _list_processes()
    killed = 0

    for proc in table.values():
        if proc.pid == pid:
            continue
        if not is_managed_candidate(proc.args, include_claude):
            continue
        if proc.ppid != 1 and proc.ppid in table:
            continue
        if _has_server_ancestor(proc, table, pid):
            continue

        try:
            os.kill(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            continue
        except OSError as exc:
            emit(
                f"Failed to reap stale process pid={proc.pid}: "
                f"{type(exc).__name__}: {exc}"
            )
            continue
        killed += 1
        emit(
            f"Reaped stale agent process pid={proc.pid} "
            f"ppid={proc.ppid} cmd={proc.args[:180]}"
        )

    return killed
