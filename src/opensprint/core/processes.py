"""Agent subprocess spawning and process tracking.

The registry remembers every agent process the orchestrator started so that
shutdown can signal them all. Agents are started in their own session, which
makes the pid a process-group leader; signalling the group also reaches any
children the agent started.
"""

import logging
import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentProcessHandle:
    pid: int
    is_process_group: bool = False

    @property
    def signal_target(self) -> int:
        """The id os.kill expects: negative for a process group."""
        return -self.pid if self.is_process_group else self.pid


def send_signal(handle: AgentProcessHandle, sig: int = signal.SIGTERM) -> bool:
    """Signal a process or process group without waiting for it to exit.

    Returns False when the process is already gone.
    """
    try:
        if handle.is_process_group:
            os.killpg(handle.pid, sig)
        else:
            os.kill(handle.pid, sig)
        return True
    except ProcessLookupError:
        logger.debug("Process %s already exited", handle.signal_target)
        return False


def terminate(handle: AgentProcessHandle) -> bool:
    """Send a single SIGTERM and return immediately."""
    return send_signal(handle, signal.SIGTERM)


def force_kill(handle: AgentProcessHandle) -> bool:
    """SIGKILL for processes that ignored SIGTERM."""
    return send_signal(handle, signal.SIGKILL)


class AgentProcessRegistry:
    """Tracks live agent processes, keyed separately for pids and process groups."""

    def __init__(self):
        self._pids: dict[int, str | None] = {}
        self._groups: dict[int, str | None] = {}
        self._lock = threading.Lock()

    def _table(self, process_group: bool) -> dict[int, str | None]:
        return self._groups if process_group else self._pids

    def register(self, pid: int, process_group: bool = False, task_id: str | None = None) -> None:
        if process_group and pid <= 0:
            raise ValueError(f"Invalid process group leader pid: {pid}")
        with self._lock:
            self._table(process_group)[pid] = task_id

    def unregister(self, pid: int, process_group: bool = False) -> None:
        with self._lock:
            self._table(process_group).pop(pid, None)

    def handles(self) -> list[AgentProcessHandle]:
        with self._lock:
            return [AgentProcessHandle(pid, True) for pid in self._groups] + [
                AgentProcessHandle(pid, False) for pid in self._pids
            ]

    def tracked_task_ids(self) -> set[str]:
        with self._lock:
            return {
                task_id
                for task_id in list(self._groups.values()) + list(self._pids.values())
                if task_id
            }

    def is_tracking_task(self, task_id: str) -> bool:
        return task_id in self.tracked_task_ids()

    def __len__(self) -> int:
        with self._lock:
            return len(self._pids) + len(self._groups)

    def kill_all(self, sig: int = signal.SIGTERM) -> int:
        """Signal every tracked process and clear the registry.

        Failures for individual processes are logged and skipped; the registry
        is emptied regardless. Returns how many signals were delivered.
        """
        with self._lock:
            handles = [AgentProcessHandle(pid, True) for pid in self._groups] + [
                AgentProcessHandle(pid, False) for pid in self._pids
            ]
            self._groups.clear()
            self._pids.clear()

        delivered = 0
        for handle in handles:
            try:
                if send_signal(handle, sig):
                    delivered += 1
            except OSError as e:
                logger.warning("Could not signal agent process %s: %s", handle.signal_target, e)
        if handles:
            logger.info("Signalled %d of %d tracked agent process(es)", delivered, len(handles))
        return delivered


def spawn_agent_process(
    cmd: list[str],
    cwd: str | Path,
    output_file: str | Path,
    env: dict[str, str] | None = None,
) -> subprocess.Popen:
    """Start an agent detached in its own session with output sent to a log file."""
    out_path = Path(output_file)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with open(out_path, "w") as f:
        proc = subprocess.Popen(
            cmd,
            cwd=str(cwd),
            stdout=f,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            env={**os.environ, **(env or {})},
            start_new_session=True,
        )
    logger.info("Spawned agent PID %s in %s (log: %s)", proc.pid, cwd, out_path)
    return proc
