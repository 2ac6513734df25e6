"""Ordered, fail-fast execution of installation steps.

A step is a name plus an action. Actions are either external bash scripts
from the scripts directory or built-in callables. Every action receives the
immutable :class:`RunContext` and the :class:`FactStore` built up by earlier
steps, and may return new facts for later steps.
"""

import json
import logging
import os
import subprocess
import tempfile
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from dotenv import dotenv_values

from homelab_installer.config import InstallPaths, NodeRole, Settings
from homelab_installer.credentials import env_var_for
from homelab_installer.exceptions import InstallerError, StepActionError

logger = logging.getLogger(__name__)

FACTS_FILE_VAR = "HOMELAB_FACTS_FILE"


@dataclass(frozen=True)
class RunContext:
    """Effective configuration for one installer invocation. Never mutated."""

    settings: Settings
    paths: InstallPaths
    scripts_dir: Path
    credentials: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def build(
        cls,
        settings: Settings,
        paths: InstallPaths,
        scripts_dir: Optional[Path] = None,
        credentials: Optional[Mapping[str, str]] = None,
    ) -> "RunContext":
        if settings.role is None:
            raise InstallerError("Cannot build a run context without a node role")
        return cls(
            settings=settings,
            paths=paths,
            scripts_dir=scripts_dir or paths.scripts_dir,
            credentials=MappingProxyType(dict(credentials or {})),
        )

    @property
    def role(self) -> NodeRole:
        return self.settings.role

    @property
    def node_name(self) -> str:
        return self.settings.effective_node_name

    @property
    def master_ip(self) -> Optional[str]:
        return self.settings.master_ip

    @property
    def auto_confirm(self) -> bool:
        return self.settings.auto_confirm

    @property
    def factory_reset_done(self) -> bool:
        return self.settings.factory_reset_done

    def exported_env(self) -> Dict[str, str]:
        """Variables handed to every external step action."""
        s = self.settings
        env = {
            "HOMELAB_DIR": str(self.paths.home),
            "LOG_DIR": str(self.paths.logs_dir),
            "SCRIPTS_DIR": str(self.scripts_dir),
            "INSTALLED_CSV": str(self.paths.installed_csv),
            "NODE_TYPE": self.role.value,
            "NODE_NAME": self.node_name,
            "MASTER_IP": self.master_ip or "",
            "AUTO_CONFIRM": str(s.auto_confirm).lower(),
            "GITHUB_KEYS_URL": s.github_keys_url,
            "ENABLE_SSH_KEY_SYNC": str(s.ssh_key_sync_enabled).lower(),
            "SSH_KEY_SYNC_HOUR": str(s.ssh_key_sync_hour),
            "HOMELAB_RESET": str(s.factory_reset_requested).lower(),
            "HOMELAB_FACTORY_RESET_DONE": str(s.factory_reset_done).lower(),
            "SERVICE_USER": s.service_user,
            "SSH_USER": s.ssh_user,
        }
        for service, secret in self.credentials.items():
            env[env_var_for(service)] = secret
        return env


@dataclass(frozen=True)
class Fact:
    step: str
    key: str
    value: str


class FactStore:
    """Append-only record of facts learned by steps; the latest value wins."""

    def __init__(self) -> None:
        self._entries: List[Fact] = []

    def record(self, step: str, key: str, value: str) -> None:
        self._entries.append(Fact(step, key, value))
        logger.debug(f"Fact from {step}: {key}={value}")

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        for fact in reversed(self._entries):
            if fact.key == key:
                return fact.value
        return default

    def as_env(self) -> Dict[str, str]:
        env: Dict[str, str] = {}
        for fact in self._entries:
            env[fact.key] = fact.value
        return env

    @property
    def entries(self) -> Tuple[Fact, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


# Action contract: (context, facts) -> new facts or None
Action = Callable[[RunContext, FactStore], Optional[Mapping[str, str]]]
SkipPredicate = Callable[[RunContext, FactStore], Optional[str]]


class SkipStep(Exception):
    """Raised by an action that finds it has nothing to run."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ScriptAction:
    """Runs ``bash <scripts_dir>/<script>`` with the context and facts exported."""

    def __init__(self, script: str):
        self.script = script

    def __call__(self, context: RunContext, facts: FactStore) -> Dict[str, str]:
        path = context.scripts_dir / self.script
        if not path.is_file():
            raise SkipStep(f"script {path} not found")

        fd, facts_path = tempfile.mkstemp(prefix="homelab-facts-", suffix=".env")
        os.close(fd)
        env = os.environ.copy()
        env.update(context.exported_env())
        env.update(facts.as_env())
        env[FACTS_FILE_VAR] = facts_path

        try:
            returncode = self._run(path, env, context.scripts_dir)
            if returncode != 0:
                raise StepActionError(self.script, f"exited with status {returncode}", returncode)
            return {k: v for k, v in dotenv_values(facts_path).items() if v is not None}
        finally:
            Path(facts_path).unlink(missing_ok=True)

    def _run(self, path: Path, env: Dict[str, str], cwd: Path) -> int:
        """Stream the script's combined output into the log."""
        process = subprocess.Popen(
            ["bash", str(path)],
            cwd=str(cwd),
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
        try:
            for line in process.stdout:
                logger.info(line.rstrip())
            return process.wait()
        finally:
            if process.stdout:
                process.stdout.close()

    def __repr__(self) -> str:
        return f"ScriptAction({self.script!r})"


@dataclass(frozen=True)
class Step:
    name: str
    action: Action
    skip_if: Optional[SkipPredicate] = None


class StepStatus(Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class StepOutcome:
    name: str
    status: StepStatus
    reason: str = ""
    duration: float = 0.0


@dataclass
class PipelineResult:
    """Summary of one pipeline run."""

    completed_steps: List[str] = field(default_factory=list)
    skipped_steps: List[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    reason: Optional[str] = None
    log_dir: Optional[Path] = None
    outcomes: List[StepOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed_step is None


@dataclass
class RunState:
    """Resume marker persisted as ``run-state.json``."""

    run_id: str
    role: str
    completed: List[str] = field(default_factory=list)
    started: str = ""

    @classmethod
    def fresh(cls, role: NodeRole) -> "RunState":
        return cls(
            run_id=uuid.uuid4().hex[:12],
            role=role.value,
            started=datetime.now().astimezone().isoformat(timespec="seconds"),
        )

    @classmethod
    def load(cls, path: Path) -> Optional["RunState"]:
        if not path.is_file():
            return None
        try:
            data = json.loads(path.read_text())
            return cls(
                run_id=str(data["run_id"]),
                role=str(data["role"]),
                completed=[str(name) for name in data.get("completed", [])],
                started=str(data.get("started", "")),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable run state {path}: {e}")
            return None

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(asdict(self), indent=2) + "\n")


class Pipeline:
    """Runs steps in order; the first failure aborts the run."""

    def __init__(self, steps: Sequence[Step], state_path: Optional[Path] = None):
        """
        Args:
            steps: Steps in execution order.
            state_path: Where the resume marker is kept. No marker is written
                when None.
        """
        self.steps = list(steps)
        self.state_path = state_path

    def _initial_state(self, context: RunContext, resume: bool) -> Optional[RunState]:
        if self.state_path is None:
            return None
        if resume:
            previous = RunState.load(self.state_path)
            if previous and previous.role == context.role.value:
                logger.info(f"Resuming run {previous.run_id}: {len(previous.completed)} steps already completed")
                return previous
            logger.info("No previous run to resume for this role, starting fresh")
        state = RunState.fresh(context.role)
        state.save(self.state_path)
        return state

    def run(self, context: RunContext, resume: bool = False, facts: Optional[FactStore] = None) -> PipelineResult:
        """Execute every step for the context's role.

        Args:
            context: Immutable run configuration.
            resume: Skip steps the resume marker lists as completed.
            facts: Pre-seeded fact store (a new one by default).

        Returns:
            PipelineResult naming the failed step and reason on failure.
        """
        facts = facts if facts is not None else FactStore()
        result = PipelineResult(log_dir=context.paths.logs_dir)
        state = self._initial_state(context, resume)
        already_done = set(state.completed) if (state and resume) else set()
        total = len(self.steps)

        for index, step in enumerate(self.steps, 1):
            if step.name in already_done:
                self._skip(result, step.name, "completed in a previous run")
                continue

            reason = step.skip_if(context, facts) if step.skip_if else None
            if reason:
                self._skip(result, step.name, reason)
                continue

            logger.info(f"[{index}/{total}] Running step: {step.name}")
            started = datetime.now()
            try:
                new_facts = step.action(context, facts)
            except SkipStep as e:
                logger.warning(f"Skipping {step.name}: {e.reason}")
                result.skipped_steps.append(step.name)
                result.outcomes.append(StepOutcome(step.name, StepStatus.SKIPPED, e.reason))
                continue
            except InstallerError as e:
                return self._fail(result, step.name, str(e), started)
            except (OSError, RuntimeError, ValueError) as e:
                return self._fail(result, step.name, f"{type(e).__name__}: {e}", started)

            for key, value in (new_facts or {}).items():
                facts.record(step.name, key, value)
            duration = (datetime.now() - started).total_seconds()
            result.completed_steps.append(step.name)
            result.outcomes.append(StepOutcome(step.name, StepStatus.COMPLETED, duration=duration))
            logger.info(f"Step {step.name} completed")

            if state is not None:
                state.completed.append(step.name)
                state.save(self.state_path)

        logger.info(f"All {len(result.completed_steps)} steps completed")
        return result

    def _skip(self, result: PipelineResult, name: str, reason: str) -> None:
        logger.info(f"Skipping {name}: {reason}")
        result.skipped_steps.append(name)
        result.outcomes.append(StepOutcome(name, StepStatus.SKIPPED, reason))

    def _fail(self, result: PipelineResult, name: str, reason: str, started: datetime) -> PipelineResult:
        duration = (datetime.now() - started).total_seconds()
        logger.error(f"Step {name} failed: {reason}")
        logger.error(f"Check logs in {result.log_dir}")
        result.failed_step = name
        result.reason = reason
        result.outcomes.append(StepOutcome(name, StepStatus.FAILED, reason, duration))
        return result
