from __future__ import annotations
from dataclasses import dataclass
from typing import Optional
import psutil


def is_process_alive(pid: Optional[int]) -> bool:
    """True while ``pid`` runs; exited-but-unreaped (zombie) processes count as dead."""
    if pid is None or pid <= 0:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return False
    except psutil.AccessDenied:
        # Exists but owned by another user.
        return True


@dataclass
class KillOutcome:
    pid: int
    signal: str
    killed: bool
    message: str


def terminate_process(pid: int, force: bool = False, grace: float = 0.5) -> KillOutcome:
    """SIGTERM, escalating to SIGKILL if the process outlives ``grace`` seconds.

    With ``force`` the process gets SIGKILL straight away.
    """
    try:
        proc = psutil.Process(pid)
    except psutil.NoSuchProcess:
        if force:
            return KillOutcome(pid, "SIGKILL", True, "Process was already gone")
        return KillOutcome(pid, "none", False, "Process not found or not running")

    if force:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            return KillOutcome(pid, "SIGKILL", True, "Process was already gone")
        return KillOutcome(pid, "SIGKILL", True, "Process killed")

    if not is_process_alive(pid):
        return KillOutcome(pid, "none", False, "Process not found or not running")
    try:
        proc.terminate()
        proc.wait(timeout=grace)
        return KillOutcome(pid, "SIGTERM", True, "Process terminated")
    except psutil.NoSuchProcess:
        return KillOutcome(pid, "SIGTERM", True, "Process terminated")
    except psutil.TimeoutExpired:
        if not is_process_alive(pid):
            return KillOutcome(pid, "SIGTERM", True, "Process terminated")

    try:
        proc.kill()
        proc.wait(timeout=grace)
    except psutil.NoSuchProcess:
        pass
    except psutil.TimeoutExpired:
        if is_process_alive(pid):
            return KillOutcome(pid, "SIGKILL", False, "Process did not stop")
    return KillOutcome(pid, "SIGKILL", True, "Process killed")
