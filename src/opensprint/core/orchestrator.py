"""Task dispatch and agent supervision.

The orchestrator runs one logical control loop per project. A dispatch cycle
claims a ready task, checks out its branch and starts a coding agent on it.
Agents work in the repository's own working tree, so a project runs one agent
at a time. A single monitor thread then watches the running agents: it
streams their output as events, terminates agents that stop producing output
(escalating to SIGKILL when SIGTERM is ignored) and settles each task once its
agent exits. Success merges the branch and failure goes through backoff.

Nudges never stack. While a cycle is running, any number of nudges collapse
into a single follow-up cycle.
"""

import logging
import signal
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from opensprint.core.branches import BranchManager, task_branch
from opensprint.core.processes import (
    AgentProcessHandle,
    AgentProcessRegistry,
    force_kill,
    spawn_agent_process,
    terminate,
)
from opensprint.core.prompts import build_agent_prompt
from opensprint.core.recovery import OrphanRecoveryService
from opensprint.core.store import StoreUnavailableError
from opensprint.core.summary import build_execution_summary, describe_decision, evaluate_failure
from opensprint.db.models import Project, Task, TaskStatus
from opensprint.integrations.git import GitError, MergeConflictError

logger = logging.getLogger(__name__)

EXECUTE_PHASE = "coding"
OUTPUT_TAIL_BYTES = 4000


@dataclass
class ActiveAgent:
    """A running agent process and what it is working on."""

    id: str
    task_id: str
    project_id: str
    repo_path: str
    attempt: int
    process: object
    handle: AgentProcessHandle
    output_file: Path
    phase: str = EXECUTE_PHASE
    started_at: datetime = field(default_factory=datetime.now)
    last_output_at: float = 0.0
    output_offset: int = 0
    killed: bool = False
    stalled: bool = False
    terminated_at: float | None = None
    force_killed_at: float | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "taskId": self.task_id,
            "phase": self.phase,
            "pid": self.handle.pid,
            "attempt": self.attempt,
            "branch": task_branch(self.task_id),
            "outputFile": str(self.output_file),
            "startedAt": self.started_at.isoformat(),
            "killed": self.killed,
            "stalled": self.stalled,
        }


@dataclass
class ProjectState:
    project_id: str
    running: bool = False
    paused: bool = False
    cycle_running: bool = False
    nudge_pending: bool = False
    cycles: int = 0
    total_done: int = 0
    total_failed: int = 0
    last_error: str | None = None
    last_orphan_check: float = 0.0
    agents: dict[str, ActiveAgent] = field(default_factory=dict)
    idle: threading.Event = field(default_factory=threading.Event)
    # Held from claim to registration, around exit handling and during
    # recovery, so recovery never sees a task between those steps.
    guard: threading.RLock = field(default_factory=threading.RLock)

    def __post_init__(self):
        self.idle.set()


@dataclass
class OrchestratorStatus:
    project_id: str
    running: bool
    paused: bool
    cycle_running: bool
    active_agents: list[dict]
    queue_depth: int
    cycles: int
    total_done: int
    total_failed: int
    last_error: str | None = None

    def to_dict(self) -> dict:
        return {
            "projectId": self.project_id,
            "running": self.running,
            "paused": self.paused,
            "cycleRunning": self.cycle_running,
            "activeAgents": self.active_agents,
            "queueDepth": self.queue_depth,
            "cycles": self.cycles,
            "totalDone": self.total_done,
            "totalFailed": self.total_failed,
            "lastError": self.last_error,
        }


class Orchestrator:
    """Dispatches ready tasks to coding agents and supervises them.

    poll_interval=None disables the monitor thread; the owner then drives
    supervision by calling poll_agents() itself.
    """

    def __init__(
        self,
        store,
        branch_manager: BranchManager | None = None,
        registry: AgentProcessRegistry | None = None,
        events=None,
        agent_command: list[str] | None = None,
        agent_model: str | None = "sonnet",
        agent_identity: str = "opensprint-coder",
        output_dir: str = ".opensprint/sessions",
        max_agents: int = 1,
        poll_interval: float | None = 5.0,
        inactivity_timeout: float = 300.0,
        kill_grace: float = 30.0,
        orphan_check_interval: float | None = 300.0,
        spawner=spawn_agent_process,
        clock=time.monotonic,
    ):
        self.store = store
        self.branches = branch_manager or BranchManager()
        self.registry = registry if registry is not None else AgentProcessRegistry()
        self.events = events
        self.agent_command = list(agent_command or ["claude", "-p"])
        self.agent_model = agent_model
        self.agent_identity = agent_identity
        self.output_dir = output_dir
        if max_agents != 1:
            raise ValueError(
                f"max_agents must be 1, agents share the repository working tree (got {max_agents})"
            )
        self.max_agents = max_agents
        self.poll_interval = poll_interval
        self.inactivity_timeout = inactivity_timeout
        self.kill_grace = kill_grace
        self.orphan_check_interval = orphan_check_interval
        self.spawner = spawner
        self.clock = clock
        self.recovery = OrphanRecoveryService(store, self.branches, self.registry, events)

        self._states: dict[str, ProjectState] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._monitor: threading.Thread | None = None

    @classmethod
    def from_config(cls, config, store, events=None, **kwargs) -> "Orchestrator":
        branches = BranchManager(
            lock_retries=config.git_lock_retries, lock_delay=config.git_lock_delay
        )
        return cls(
            store,
            branch_manager=branches,
            events=events,
            agent_command=config.agent_command,
            agent_model=config.agent_model,
            agent_identity=config.agent_identity,
            output_dir=config.agent_output_dir,
            max_agents=config.max_agents,
            poll_interval=config.poll_interval,
            inactivity_timeout=config.inactivity_timeout,
            kill_grace=config.kill_grace,
            orphan_check_interval=config.orphan_check_interval,
            **kwargs,
        )

    # ── Control ──────────────────────────────────────────────────────────────

    def _state(self, project_id: str) -> ProjectState:
        # Caller holds self._lock.
        state = self._states.get(project_id)
        if state is None:
            state = ProjectState(project_id)
            self._states[project_id] = state
        return state

    def _require_project(self, project_id: str) -> Project:
        project = self.store.get_project(project_id)
        if not project:
            raise ValueError(f"Project not found: {project_id}")
        return project

    def start(self, project_id: str) -> OrchestratorStatus:
        """Start (or resume) dispatching for a project.

        Orphans left behind by an earlier run are recovered before the first
        cycle.
        """
        project = self._require_project(project_id)
        with self._lock:
            state = self._state(project_id)
            was_running = state.running
            state.running = True
            state.paused = False

        if not was_running:
            self._recover_orphans(state, project)
        self._ensure_monitor()
        logger.info("Orchestrator started for project %s", project_id)
        self._publish_status(project_id)
        self.nudge(project_id)
        return self.get_status(project_id)

    def pause(self, project_id: str) -> OrchestratorStatus:
        """Stop claiming new tasks. Running agents are left alone."""
        with self._lock:
            state = self._state(project_id)
            state.paused = True
        logger.info("Orchestrator paused for project %s", project_id)
        self._publish_status(project_id)
        return self.get_status(project_id)

    def nudge(self, project_id: str) -> bool:
        """Request a dispatch cycle in the background.

        Returns True when a new cycle was started and False when the request
        was folded into a pending one (or the project is not running).
        """
        with self._lock:
            state = self._state(project_id)
            if not state.running or state.paused:
                return False
            if state.cycle_running:
                state.nudge_pending = True
                return False
            state.cycle_running = True
            state.idle.clear()

        thread = threading.Thread(
            target=self._cycle_loop,
            args=(project_id,),
            name=f"dispatch-{project_id}",
            daemon=True,
        )
        thread.start()
        return True

    def run_cycle(self, project_id: str) -> bool:
        """Run dispatch in the calling thread, including any cycles nudged meanwhile.

        Raises StoreUnavailableError when the task store cannot be reached.
        Returns False without doing anything if a cycle is already running;
        the request is then picked up by that cycle.
        """
        with self._lock:
            state = self._state(project_id)
            if state.cycle_running:
                state.nudge_pending = True
                return False
            state.cycle_running = True
            state.idle.clear()
        self._cycle_loop(project_id, raise_errors=True)
        return True

    def recover_orphans(self, project_id: str) -> list[str]:
        """Run an orphan recovery pass now. Returns the ids of recovered tasks."""
        project = self._require_project(project_id)
        with self._lock:
            state = self._state(project_id)
        return self._recover_orphans(state, project)

    def wait_idle(self, project_id: str, timeout: float | None = None) -> bool:
        """Block until no dispatch cycle is running for the project."""
        with self._lock:
            state = self._state(project_id)
        return state.idle.wait(timeout)

    def shutdown(self) -> int:
        """Stop the monitor and signal every tracked agent process.

        Tasks of agents that were still running stay in progress; the next
        start recovers them as orphans. Returns the number of signals delivered.
        """
        self._stop_event.set()
        if self._monitor and self._monitor is not threading.current_thread():
            self._monitor.join(timeout=10)
        with self._lock:
            for state in self._states.values():
                state.running = False
                state.agents.clear()
        killed = self.registry.kill_all()
        logger.info("Orchestrator shut down (%d agent process(es) signalled)", killed)
        return killed

    # ── Queries ──────────────────────────────────────────────────────────────

    def get_status(self, project_id: str) -> OrchestratorStatus:
        """Current loop state plus queue depth. Raises StoreUnavailableError."""
        queue_depth = len(self.store.list_ready(project_id))
        with self._lock:
            state = self._state(project_id)
            return OrchestratorStatus(
                project_id=project_id,
                running=state.running,
                paused=state.paused,
                cycle_running=state.cycle_running,
                active_agents=[a.to_dict() for a in state.agents.values()],
                queue_depth=queue_depth,
                cycles=state.cycles,
                total_done=state.total_done,
                total_failed=state.total_failed,
                last_error=state.last_error,
            )

    def get_active_agents(self, project_id: str) -> list[dict]:
        with self._lock:
            state = self._states.get(project_id)
            if not state:
                return []
            return [a.to_dict() for a in state.agents.values()]

    def kill_agent(self, project_id: str, agent_id: str) -> bool:
        """Send SIGTERM to a running coding agent without waiting for it.

        Returns False when no such agent is running. The exit is settled by
        the monitor like any other exit, requeueing the task.
        """
        with self._lock:
            state = self._states.get(project_id)
            agent = state.agents.get(agent_id) if state else None
            if agent is None or agent.phase != EXECUTE_PHASE:
                return False
            agent.killed = True
            agent.terminated_at = self.clock()
        logger.info("Killing agent %s (pid %s)", agent_id, agent.handle.pid)
        try:
            terminate(agent.handle)
        except OSError as e:
            logger.warning("Could not signal agent %s: %s", agent_id, e)
        return True

    # ── Dispatch ─────────────────────────────────────────────────────────────

    def _cycle_loop(self, project_id: str, raise_errors: bool = False) -> None:
        with self._lock:
            state = self._state(project_id)
        finished = False
        try:
            while True:
                try:
                    self._dispatch(state)
                    state.last_error = None
                except StoreUnavailableError as e:
                    state.last_error = str(e)
                    if raise_errors:
                        raise
                    logger.error("Dispatch cycle for %s aborted: %s", project_id, e)
                except Exception as e:
                    state.last_error = str(e)
                    if raise_errors:
                        raise
                    logger.exception("Dispatch cycle for %s failed", project_id)

                with self._lock:
                    if state.nudge_pending and state.running and not state.paused:
                        state.nudge_pending = False
                        continue
                    self._finish_cycle(state)
                    finished = True
                    return
        finally:
            if not finished:
                with self._lock:
                    self._finish_cycle(state)

    def _finish_cycle(self, state: ProjectState) -> None:
        state.nudge_pending = False
        state.cycle_running = False
        state.idle.set()

    def _dispatch(self, state: ProjectState) -> None:
        with self._lock:
            state.cycles += 1
            if not state.running or state.paused:
                return
        project = self._require_project(state.project_id)

        for task in self.store.list_ready(project.id):
            with self._lock:
                if not state.running or state.paused:
                    return
                if len(state.agents) >= self.max_agents:
                    return
                if task.id in state.agents:
                    continue
            with state.guard:
                if not self.store.claim(project.id, task.id, self.agent_identity):
                    logger.debug("Task %s was claimed elsewhere, trying next", task.id)
                    continue
                self._launch(state, project, task)

    def _launch(self, state: ProjectState, project: Project, task: Task) -> None:
        repo = project.repo_path
        try:
            self.branches.checkout(repo, task_branch(task.id), default_branch=project.default_branch)
            attempt = self.store.next_attempt(project.id, task.id)
            dependencies = [
                dep for dep in (self.store.get(project.id, d) for d in task.depends_on) if dep
            ]
            prompt = build_agent_prompt(task, project, dependencies, attempt)
            output_file = Path(repo) / self.output_dir / f"{task.id}-attempt-{attempt}.log"
            cmd = list(self.agent_command)
            if self.agent_model:
                cmd += ["--model", self.agent_model]
            cmd.append(prompt)
            env = {
                "OPENSPRINT_PROJECT_ID": project.id,
                "OPENSPRINT_TASK_ID": task.id,
                "OPENSPRINT_ATTEMPT": str(attempt),
            }
            process = self.spawner(cmd, repo, output_file, env)
        except (GitError, OSError) as e:
            logger.error("Failed to launch agent for task %s: %s", task.id, e)
            self._release_claim(project, task, str(e))
            return

        self.registry.register(process.pid, process_group=True, task_id=task.id)
        agent = ActiveAgent(
            id=task.id,
            task_id=task.id,
            project_id=project.id,
            repo_path=repo,
            attempt=attempt,
            process=process,
            handle=AgentProcessHandle(process.pid, is_process_group=True),
            output_file=output_file,
            last_output_at=self.clock(),
        )
        with self._lock:
            state.agents[task.id] = agent

        logger.info(
            "Started agent for task %s (attempt %d, pid %s)", task.id, attempt, process.pid
        )
        self._publish(
            project.id,
            {
                "type": "task.updated",
                "taskId": task.id,
                "status": TaskStatus.IN_PROGRESS.value,
                "assignee": self.agent_identity,
            },
        )
        self._publish(project.id, {"type": "agent.started", **agent.to_dict()})

    def _release_claim(self, project: Project, task: Task, reason: str) -> None:
        try:
            self.branches.ensure_on_main(project.repo_path, project.default_branch)
        except GitError as e:
            logger.warning("Could not return %s to the default branch: %s", project.repo_path, e)
        self.store.update(project.id, task.id, status=TaskStatus.OPEN, assignee="")
        self._publish(
            project.id,
            {
                "type": "task.updated",
                "taskId": task.id,
                "status": TaskStatus.OPEN.value,
                "assignee": "",
                "reason": f"launch_failed: {reason}",
            },
        )

    # ── Supervision ──────────────────────────────────────────────────────────

    def _ensure_monitor(self) -> None:
        if self.poll_interval is None:
            return
        if self._monitor and self._monitor.is_alive():
            return
        self._stop_event.clear()
        self._monitor = threading.Thread(target=self._run_monitor, name="agent-monitor", daemon=True)
        self._monitor.start()
        logger.info("Agent monitor started")

    def _run_monitor(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.poll_agents()
            except Exception:
                logger.exception("Error in agent monitor loop")
            self._stop_event.wait(self.poll_interval)
        logger.info("Agent monitor stopped")

    def poll_agents(self) -> None:
        """One supervision pass over every running agent.

        Publishes new output, terminates agents that have been silent for
        longer than the inactivity timeout, and settles agents that exited.
        An agent still alive kill_grace seconds after SIGTERM gets SIGKILL; one
        still alive kill_grace seconds after that is settled as if it exited.
        Also runs the periodic orphan check for running projects.
        """
        now = self.clock()
        with self._lock:
            agents = [a for s in self._states.values() for a in s.agents.values()]

        for agent in agents:
            exit_code = agent.process.poll()
            self._read_output(agent, now)
            if exit_code is not None:
                self._handle_exit(agent, exit_code)
                continue
            if agent.terminated_at is not None:
                self._escalate(agent, now)
                continue
            if now - agent.last_output_at < self.inactivity_timeout:
                continue
            agent.stalled = True
            agent.terminated_at = now
            logger.warning(
                "Agent for task %s produced no output for %.0fs, terminating",
                agent.task_id, now - agent.last_output_at,
            )
            try:
                terminate(agent.handle)
            except OSError as e:
                logger.warning("Could not signal stalled agent %s: %s", agent.task_id, e)

        self._check_orphans(now)

    def _escalate(self, agent: ActiveAgent, now: float) -> None:
        if agent.force_killed_at is None:
            if now - agent.terminated_at < self.kill_grace:
                return
            agent.force_killed_at = now
            logger.warning(
                "Agent for task %s ignored SIGTERM for %.0fs, sending SIGKILL",
                agent.task_id, now - agent.terminated_at,
            )
            try:
                force_kill(agent.handle)
            except OSError as e:
                logger.warning("Could not kill agent %s: %s", agent.task_id, e)
            return
        if now - agent.force_killed_at < self.kill_grace:
            return
        logger.error(
            "Agent for task %s (pid %s) survived SIGKILL, releasing its task",
            agent.task_id, agent.handle.pid,
        )
        self._handle_exit(agent, -signal.SIGKILL)

    def _read_output(self, agent: ActiveAgent, now: float) -> None:
        try:
            size = agent.output_file.stat().st_size
            if size <= agent.output_offset:
                return
            with open(agent.output_file, "rb") as f:
                f.seek(agent.output_offset)
                chunk = f.read(size - agent.output_offset)
        except OSError:
            return
        agent.output_offset += len(chunk)
        agent.last_output_at = now
        self._publish(
            agent.project_id,
            {
                "type": "agent.output",
                "agentId": agent.id,
                "taskId": agent.task_id,
                "chunk": chunk.decode("utf-8", errors="replace"),
            },
        )

    def _check_orphans(self, now: float) -> None:
        if not self.orphan_check_interval:
            return
        with self._lock:
            due = [
                s
                for s in self._states.values()
                if s.running
                and not s.cycle_running
                and now - s.last_orphan_check >= self.orphan_check_interval
            ]
        for state in due:
            try:
                project = self._require_project(state.project_id)
            except (ValueError, StoreUnavailableError) as e:
                logger.warning("Skipping orphan check for %s: %s", state.project_id, e)
                continue
            self._recover_orphans(state, project)

    def _recover_orphans(self, state: ProjectState, project: Project) -> list[str]:
        state.last_orphan_check = self.clock()
        with state.guard:
            with self._lock:
                tree_in_use = bool(state.agents)
            try:
                recovered = self.recovery.recover_orphaned_tasks(
                    project.id,
                    project.repo_path,
                    default_branch=project.default_branch,
                    touch_git=not tree_in_use,
                )
            except StoreUnavailableError as e:
                logger.error("Orphan recovery for %s failed: %s", project.id, e)
                return []
        if recovered:
            self.nudge(project.id)
        return recovered

    def _handle_exit(self, agent: ActiveAgent, exit_code: int) -> None:
        with self._lock:
            state = self._state(agent.project_id)
        with state.guard:
            self.registry.unregister(agent.handle.pid, process_group=agent.handle.is_process_group)
            with self._lock:
                state.agents.pop(agent.task_id, None)
            tail = _read_tail(agent.output_file)
            logger.info(
                "Agent for task %s exited with code %s", agent.task_id, exit_code
            )
            try:
                if agent.killed:
                    self._on_killed(agent, tail)
                elif exit_code == 0 and not agent.stalled:
                    self._on_success(state, agent, tail)
                else:
                    failure_type = "timeout" if agent.stalled else "agent_crash"
                    detail = f"exit code {exit_code}: {tail}" if tail else f"exit code {exit_code}"
                    self._on_failure(state, agent, failure_type, detail)
            except Exception:
                logger.exception(
                    "Could not record the exit of task %s; orphan recovery will reset it",
                    agent.task_id,
                )
        self.nudge(agent.project_id)

    def _default_branch(self, project_id: str) -> str | None:
        project = self.store.get_project(project_id)
        return project.default_branch if project else None

    def _save_work(self, agent: ActiveAgent) -> None:
        """WIP-commit leftovers on the task branch and go back to the default branch."""
        try:
            self.branches.commit_wip(agent.repo_path, agent.task_id)
        except GitError as e:
            logger.warning("WIP commit failed for %s: %s", agent.task_id, e)
        try:
            self.branches.ensure_on_main(agent.repo_path, self._default_branch(agent.project_id))
        except GitError as e:
            logger.warning("Could not return %s to the default branch: %s", agent.repo_path, e)

    def _on_success(self, state: ProjectState, agent: ActiveAgent, tail: str) -> None:
        task = self.store.get(agent.project_id, agent.task_id)
        if task is None:
            logger.warning("Task %s vanished while its agent was running", agent.task_id)
            return
        try:
            self.branches.commit_wip(agent.repo_path, agent.task_id)
            self.branches.merge_to_main(
                agent.repo_path,
                task_branch(agent.task_id),
                f"Closed {task.id}: {task.title}",
                default_branch=self._default_branch(agent.project_id),
            )
        except GitError as e:
            failure_type = "merge_conflict" if isinstance(e, MergeConflictError) else "git_error"
            self._on_failure(state, agent, failure_type, str(e))
            return

        summary = build_execution_summary(
            agent.attempt, "success", tail or "Agent completed without output"
        )
        self.store.update(
            agent.project_id,
            agent.task_id,
            status=TaskStatus.DONE,
            assignee="",
            failure_count=0,
            block_reason=None,
        )
        self.store.record_attempt(agent.project_id, agent.task_id, summary.to_dict())
        with self._lock:
            state.total_done += 1
        logger.info("Task %s done after attempt %d", agent.task_id, agent.attempt)

        self._publish(
            agent.project_id,
            {"type": "task.updated", "taskId": agent.task_id, "status": TaskStatus.DONE.value, "assignee": ""},
        )
        self._publish_completed(agent, "success", summary.summary)

    def _on_failure(self, state: ProjectState, agent: ActiveAgent, failure_type: str, detail: str) -> None:
        self._save_work(agent)
        task = self.store.get(agent.project_id, agent.task_id)
        if task is None:
            logger.warning("Task %s vanished while its agent was running", agent.task_id)
            return

        decision = evaluate_failure(task.priority, task.failure_count)
        summary = build_execution_summary(
            agent.attempt,
            decision.outcome,
            f"Attempt {agent.attempt} failed [{failure_type}] ({detail})",
            failure_type=failure_type,
            block_reason=decision.block_reason,
        )
        self.store.update(agent.project_id, agent.task_id, **decision.task_fields())
        self.store.record_attempt(agent.project_id, agent.task_id, summary.to_dict())
        with self._lock:
            state.total_failed += 1
        logger.warning(
            "Task %s failed [%s]: %s",
            agent.task_id, failure_type, describe_decision(decision, agent.attempt),
        )

        self._publish(
            agent.project_id,
            {
                "type": "task.updated",
                "taskId": agent.task_id,
                "status": decision.status.value,
                "priority": decision.priority,
                "assignee": "",
                "blockReason": decision.block_reason,
            },
        )
        if decision.status == TaskStatus.BLOCKED:
            self._publish(
                agent.project_id,
                {
                    "type": "task.blocked",
                    "taskId": agent.task_id,
                    "title": task.title,
                    "blockReason": decision.block_reason,
                    "summary": summary.summary,
                },
            )
        self._publish_completed(agent, decision.outcome, summary.summary, failure_type)

    def _on_killed(self, agent: ActiveAgent, tail: str) -> None:
        self._save_work(agent)
        summary = build_execution_summary(
            agent.attempt,
            "requeued",
            f"Killed by operator. {tail}",
            failure_type="killed",
        )
        self.store.update(agent.project_id, agent.task_id, status=TaskStatus.OPEN, assignee="")
        self.store.record_attempt(agent.project_id, agent.task_id, summary.to_dict())
        logger.info("Task %s requeued after its agent was killed", agent.task_id)

        self._publish(
            agent.project_id,
            {"type": "task.updated", "taskId": agent.task_id, "status": TaskStatus.OPEN.value, "assignee": ""},
        )
        self._publish_completed(agent, "requeued", summary.summary, "killed")

    # ── Events ───────────────────────────────────────────────────────────────

    def _publish(self, project_id: str, event: dict) -> None:
        if self.events:
            self.events.publish(project_id, event)

    def _publish_completed(
        self, agent: ActiveAgent, outcome: str, summary: str, failure_type: str | None = None
    ) -> None:
        self._publish(
            agent.project_id,
            {
                "type": "agent.completed",
                "agentId": agent.id,
                "taskId": agent.task_id,
                "attempt": agent.attempt,
                "outcome": outcome,
                "failureType": failure_type,
                "summary": summary,
            },
        )

    def _publish_status(self, project_id: str) -> None:
        with self._lock:
            state = self._state(project_id)
            event = {
                "type": "orchestrator.status",
                "running": state.running,
                "paused": state.paused,
                "activeAgents": len(state.agents),
            }
        self._publish(project_id, event)


def _read_tail(path: Path, max_bytes: int = OUTPUT_TAIL_BYTES) -> str:
    try:
        with open(path, "rb") as f:
            f.seek(0, 2)
            size = f.tell()
            f.seek(max(0, size - max_bytes))
            return f.read().decode("utf-8", errors="replace").strip()
    except OSError:
        return ""
