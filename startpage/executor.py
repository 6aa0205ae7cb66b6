# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 The Startpage Authors

"""
Startpage Update Executor

Checks for, applies and activates updates of a git-deployed start page.

Update flow:
  1. check: read local version, fetch latest tag, compare, classify diff
  2. pull: git pull from the upstream branch
  3. install: run the dependency installer in each dependency root
  4. restart: respawn the service and terminate this process

Each step is exposed on its own so an operator can run a partial update;
full_update() composes them from the flags of a previous check. Failures
are returned as OperationResult values, never raised to the caller.
"""

import asyncio
import logging
import os
import signal
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .classifier import ChangeSet, ClassificationRules, classify_update
from .registry import ReleaseRegistry
from .respawn import ProcessRespawner, RespawnError
from .versioning import VersionIdentifier, has_update, read_current_version

logger = logging.getLogger(__name__)

INSTALL_TIMEOUT = 300  # 5 minutes per install call
GIT_CHECK_TIMEOUT = 10  # git presence checks


# =============================================================================
# COMMAND EXECUTION
# =============================================================================

class CommandTimeoutError(Exception):
    """Raised when a command exceeds its timeout."""
    pass


@dataclass
class CommandResult:
    """Outcome of an external command."""
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(
    args: Sequence[str],
    cwd: Path,
    timeout: Optional[float] = None,
) -> CommandResult:
    """Run a command and capture its output.

    On POSIX the command runs in its own session and a timeout kills the
    whole process group, including children such as npm's node workers.

    Raises:
        CommandTimeoutError: If timeout elapses; the process tree is killed.
        OSError: If the executable cannot be started.
    """
    proc = await asyncio.create_subprocess_exec(
        *args,
        cwd=str(cwd),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=os.name != "nt",
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill_process_tree(proc)
        await proc.wait()
        raise CommandTimeoutError(f"{args[0]} timed out after {timeout:.0f}s")

    return CommandResult(
        returncode=proc.returncode,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )


async def _kill_process_tree(proc: asyncio.subprocess.Process) -> None:
    if os.name == "nt":
        try:
            killer = await asyncio.create_subprocess_exec(
                "taskkill", "/F", "/T", "/PID", str(proc.pid),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await killer.wait()
        except OSError as e:
            logger.debug("taskkill unavailable: %s", e)
        if proc.returncode is None:
            proc.kill()
        return

    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


CommandRunner = Callable[..., Awaitable[CommandResult]]


# =============================================================================
# DATA MODELS
# =============================================================================

class UpdateStage(str, Enum):
    """What the executor is currently doing."""
    IDLE = "idle"
    CHECKING = "checking"
    CLASSIFYING = "classifying"
    PULLING = "pulling"
    INSTALLING = "installing"
    RESTARTING = "restarting"


@dataclass
class UpdatePlan:
    """Result of a check. Transient; rebuilt on every check."""
    current: VersionIdentifier
    latest: VersionIdentifier
    has_update: bool
    changes: ChangeSet = field(default_factory=ChangeSet)
    release_notes: str = ""
    release_date: Optional[str] = None
    has_git: bool = False


@dataclass
class OperationResult:
    """Structured outcome of a mutating operation."""
    ok: bool
    message: str
    output: Optional[str] = None
    status_code: int = 200

    @classmethod
    def success(cls, message: str, output: Optional[str] = None) -> "OperationResult":
        return cls(ok=True, message=message, output=output)

    @classmethod
    def failure(cls, message: str, status_code: int = 500, output: Optional[str] = None) -> "OperationResult":
        return cls(ok=False, message=message, output=output, status_code=status_code)


@dataclass
class UpdateStatus:
    """Current executor status."""
    stage: UpdateStage = UpdateStage.IDLE
    last_check: Optional[str] = None
    last_plan: Optional[UpdatePlan] = None
    error: Optional[str] = None
    restart_pending: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "stage": self.stage.value,
            "last_check": self.last_check,
            "error": self.error,
            "restart_pending": self.restart_pending,
        }
        if self.last_plan:
            d["current_version"] = self.last_plan.current.version
            d["latest_version"] = self.last_plan.latest.version
            d["update_available"] = self.last_plan.has_update
        return d


# =============================================================================
# UPDATE EXECUTOR
# =============================================================================

class UpdateExecutor:
    """Runs the check, pull, install and restart operations.

    Usage:
        executor = UpdateExecutor(deployment_dir, registry, respawner)
        plan = await executor.check()
        if plan.has_update:
            await executor.full_update(
                needs_deps=plan.changes.needs_dependency_install,
                needs_restart=plan.changes.needs_process_restart,
            )
    """

    def __init__(
        self,
        deployment_dir: Path,
        registry: ReleaseRegistry,
        respawner: ProcessRespawner,
        rules: ClassificationRules = ClassificationRules(),
        manifest_file: str = "package.json",
        patch_key: str = "patchVersion",
        git_remote: str = "origin",
        git_branch: str = "main",
        dependency_roots: Sequence[str] = ("backend", "frontend"),
        install_command: Sequence[str] = ("npm", "install"),
        install_timeout: float = INSTALL_TIMEOUT,
        check_interval: float = 0,
        runner: CommandRunner = run_command,
    ):
        self.deployment_dir = Path(deployment_dir)
        self.registry = registry
        self.respawner = respawner
        self.rules = rules
        self.manifest_file = manifest_file
        self.patch_key = patch_key
        self.git_remote = git_remote
        self.git_branch = git_branch
        self.dependency_roots: List[str] = list(dependency_roots)
        self.install_command: List[str] = list(install_command)
        self.install_timeout = install_timeout
        self.check_interval = check_interval
        self.runner = runner

        self._status = UpdateStatus()
        self._operation_lock = asyncio.Lock()
        # Guards _status.restart_pending: at most one respawn per process
        self._restart_lock = threading.Lock()
        self._restart_task: Optional[asyncio.Task] = None
        self._check_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, cfg) -> "UpdateExecutor":
        """Build an executor from an UpdateConfig."""
        deployment_dir = Path(cfg.deployment_dir).resolve()
        registry = ReleaseRegistry(
            owner=cfg.github_owner,
            repo=cfg.github_repo,
            api_base=cfg.api_base,
            raw_base=cfg.raw_base,
            token=cfg.github_token,
            timeout=cfg.request_timeout,
            tag_prefix=cfg.tag_prefix,
            manifest_file=cfg.manifest_file,
            patch_key=cfg.patch_key,
        )
        respawner = ProcessRespawner(
            working_directory=cfg.restart_directory or deployment_dir,
            command=cfg.restart_command,
            restart_delay=cfg.restart_delay,
            exit_delay=cfg.exit_delay,
        )
        return cls(
            deployment_dir=deployment_dir,
            registry=registry,
            respawner=respawner,
            rules=ClassificationRules.from_config(cfg.classification),
            manifest_file=cfg.manifest_file,
            patch_key=cfg.patch_key,
            git_remote=cfg.git_remote,
            git_branch=cfg.git_branch,
            dependency_roots=cfg.dependency_roots,
            install_command=cfg.install_command,
            install_timeout=cfg.install_timeout,
            check_interval=cfg.check_interval,
        )

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    @property
    def status(self) -> UpdateStatus:
        """Get current update status."""
        return self._status

    @property
    def restart_task(self) -> Optional[asyncio.Task]:
        """The pending respawn sequence, if a restart was scheduled."""
        return self._restart_task

    async def start(self) -> None:
        """Start the executor (begins periodic checking if enabled)."""
        if self.check_interval > 0:
            self._check_task = asyncio.create_task(self._periodic_check())
            logger.info("Update executor started (check interval: %gs)", self.check_interval)
        else:
            logger.info("Update executor started (auto-check disabled)")

    async def stop(self) -> None:
        """Stop periodic checking."""
        if self._check_task:
            self._check_task.cancel()
            try:
                await self._check_task
            except asyncio.CancelledError:
                pass
            self._check_task = None
        logger.info("Update executor stopped")

    async def has_version_control(self) -> bool:
        """Check that git is installed and the deployment is a repository."""
        try:
            version = await self.runner(["git", "--version"], self.deployment_dir, timeout=GIT_CHECK_TIMEOUT)
            if not version.ok:
                return False
            repo = await self.runner(["git", "rev-parse", "--git-dir"], self.deployment_dir, timeout=GIT_CHECK_TIMEOUT)
            return repo.ok
        except (OSError, CommandTimeoutError) as e:
            logger.debug("git unavailable: %s", e)
            return False

    async def check(self) -> UpdatePlan:
        """Compare the deployed version with the latest release.

        Has no side effects on the deployment.
        """
        self._set_stage(UpdateStage.CHECKING)
        try:
            current = read_current_version(self.deployment_dir, self.manifest_file, self.patch_key)
            git_available = await self.has_version_control()
            release = await self.registry.latest_release()

            if release is None:
                latest = VersionIdentifier(version=current.version, patch=0)
            else:
                latest = VersionIdentifier(version=release.version, patch=release.patch)

            update = has_update(current, latest)
            changes = ChangeSet()
            if update:
                logger.info("Update available: %s -> %s", current, latest)
                self._set_stage(UpdateStage.CLASSIFYING)
                changes = await classify_update(self.registry, current.version, latest.version, self.rules)
            else:
                logger.debug("Already up to date (%s)", current)

            plan = UpdatePlan(
                current=current,
                latest=latest,
                has_update=update,
                changes=changes,
                release_notes=release.notes if release else "",
                release_date=release.published_at if release else None,
                has_git=git_available,
            )
            self._status.last_plan = plan
            self._status.last_check = datetime.now(timezone.utc).isoformat()
            return plan
        finally:
            self._set_stage(UpdateStage.IDLE)

    async def pull(self) -> OperationResult:
        """Synchronize the deployment with the upstream branch."""
        rejected = self._rejection()
        if rejected:
            return rejected
        async with self._operation_lock:
            return await self._pull()

    async def install_dependencies(self) -> OperationResult:
        """Install dependencies in every dependency root."""
        rejected = self._rejection()
        if rejected:
            return rejected
        async with self._operation_lock:
            return await self._install_dependencies()

    async def restart(self) -> OperationResult:
        """Schedule the respawn sequence and return immediately.

        The sequence runs as a background task after a delay, so the caller
        can deliver this result before the process goes away. Refused with
        409 while a pull or install holds the operation lock.
        """
        with self._restart_lock:
            if self._status.restart_pending:
                logger.info("Restart already scheduled, ignoring request")
                return OperationResult.success("Restart already scheduled")
            if self._operation_lock.locked():
                return OperationResult.failure(
                    "Cannot restart while an update operation is in progress", status_code=409,
                )
            self._status.restart_pending = True

        self._status.stage = UpdateStage.RESTARTING
        self._restart_task = asyncio.create_task(self._respawn())
        logger.info("Service restart scheduled")
        return OperationResult.success("Service will restart shortly, refresh the page in a moment")

    async def full_update(self, needs_deps: bool = False, needs_restart: bool = False) -> OperationResult:
        """Pull, then install dependencies and restart as requested.

        Stops at the first failing step.
        """
        rejected = self._rejection()
        if rejected:
            return rejected

        logger.info("Starting full update (deps=%s, restart=%s)", needs_deps, needs_restart)
        async with self._operation_lock:
            pulled = await self._pull()
            if not pulled.ok:
                return pulled

            if needs_deps:
                installed = await self._install_dependencies()
                if not installed.ok:
                    return installed

        if needs_restart:
            await self.restart()
            return OperationResult.success("Update complete, service will restart shortly", output=pulled.output)

        logger.info("Full update complete, no restart needed")
        return OperationResult.success("Update complete, no restart needed", output=pulled.output)

    # =========================================================================
    # STEPS
    # =========================================================================

    async def _pull(self) -> OperationResult:
        if not await self.has_version_control():
            return self._failure("No version control available, cannot pull updates", status_code=400)

        self._set_stage(UpdateStage.PULLING)
        logger.info("Pulling updates from %s/%s", self.git_remote, self.git_branch)
        try:
            result = await self.runner(["git", "pull", self.git_remote, self.git_branch], self.deployment_dir)
        except OSError as e:
            return self._failure(f"git pull failed: {e}")
        finally:
            self._set_stage(UpdateStage.IDLE)

        if not result.ok:
            detail = result.stderr.strip() or result.stdout.strip()
            return self._failure(f"git pull failed: {detail}", output=result.stdout)

        logger.info("git pull complete: %s", result.stdout.strip())
        self._status.error = None
        return OperationResult.success("Code updated", output=result.stdout)

    async def _install_dependencies(self) -> OperationResult:
        self._set_stage(UpdateStage.INSTALLING)
        failed = []
        try:
            for root in self.dependency_roots:
                if not await self._install_root(root):
                    failed.append(root)
        finally:
            self._set_stage(UpdateStage.IDLE)

        if failed:
            # Roots that did install keep their changes
            return self._failure(f"Dependency installation failed for: {', '.join(failed)}")

        logger.info("Dependencies installed")
        self._status.error = None
        return OperationResult.success("Dependencies installed")

    async def _install_root(self, root: str) -> bool:
        directory = self.deployment_dir / root
        if not directory.is_dir():
            logger.error("Dependency root %s does not exist", directory)
            return False

        logger.info("Installing dependencies in %s", directory)
        try:
            result = await self.runner(self.install_command, directory, timeout=self.install_timeout)
        except (OSError, CommandTimeoutError) as e:
            logger.error("Dependency install in %s failed: %s", root, e)
            return False

        if not result.ok:
            logger.error(
                "Dependency install in %s returned %d: %s",
                root, result.returncode, result.stderr.strip(),
            )
            return False
        return True

    async def _respawn(self) -> None:
        try:
            await self.respawner.respawn()
        except RespawnError as e:
            logger.error("Restart failed, service keeps running: %s", e)
            self._clear_restart(str(e))
        except Exception as e:
            logger.exception("Unexpected error during restart: %s", e)
            self._clear_restart(str(e))

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _clear_restart(self, error: str) -> None:
        with self._restart_lock:
            self._status.restart_pending = False
        self._status.error = error
        self._status.stage = UpdateStage.IDLE

    def _set_stage(self, stage: UpdateStage) -> None:
        # A pending restart owns the stage until the process exits
        if not self._status.restart_pending:
            self._status.stage = stage

    def _failure(self, message: str, status_code: int = 500, output: Optional[str] = None) -> OperationResult:
        logger.error(message)
        self._status.error = message
        return OperationResult.failure(message, status_code=status_code, output=output)

    def _rejection(self) -> Optional[OperationResult]:
        """409 result if a mutating operation may not start now."""
        if self._status.restart_pending:
            return OperationResult.failure("A restart is in progress", status_code=409)
        if self._operation_lock.locked():
            return OperationResult.failure("Another update operation is in progress", status_code=409)
        return None

    async def _periodic_check(self) -> None:
        """Background task for periodic update checking."""
        while True:
            try:
                await asyncio.sleep(self.check_interval)
            except asyncio.CancelledError:
                break

            try:
                await self.check()
            except Exception as e:
                logger.debug("Periodic update check failed: %s", e)


# =============================================================================
# MODULE-LEVEL INSTANCE
# =============================================================================

# Singleton instance, initialized during app startup
_update_executor: Optional[UpdateExecutor] = None


def get_update_executor() -> Optional[UpdateExecutor]:
    """Get the global UpdateExecutor instance."""
    return _update_executor


async def init_update_executor(cfg) -> UpdateExecutor:
    """Initialize and start the global UpdateExecutor from an UpdateConfig."""
    global _update_executor
    _update_executor = UpdateExecutor.from_config(cfg)
    await _update_executor.start()
    return _update_executor


async def shutdown_update_executor() -> None:
    """Stop and clean up the global UpdateExecutor."""
    global _update_executor
    if _update_executor:
        await _update_executor.stop()
        _update_executor = None
