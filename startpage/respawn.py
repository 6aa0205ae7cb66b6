# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 The Startpage Authors

"""
Startpage Process Respawner

Replaces the running service with a fresh process after an update:

  1. Wait restart_delay so the HTTP response reaches the operator
  2. Launch the service command detached from this process
  3. Wait exit_delay, then check the new process did not die at startup
  4. Terminate this process so it releases the listening port

The new process is started with STARTPAGE_RESPAWNED=1 and waits for the
port to become free before binding (see wait_for_port_release). There is a
short window of unavailability between the old process exiting and the new
one listening.
"""

import asyncio
import logging
import os
import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

RESPAWN_ENV_VAR = "STARTPAGE_RESPAWNED"


class RespawnError(Exception):
    """Raised when the replacement process could not be started."""
    pass


def default_command() -> List[str]:
    """Command that starts this service with the running interpreter."""
    return [sys.executable, "-m", "startpage.main"]


_shutdown_handler: Optional[Callable[[], None]] = None


def set_shutdown_handler(handler: Optional[Callable[[], None]]) -> None:
    """Register how the running server is asked to stop.

    main.run() installs a handler that sets uvicorn's should_exit flag, so
    the server shuts down gracefully and the process exits with status 0.
    """
    global _shutdown_handler
    _shutdown_handler = handler


def terminate_self() -> None:
    """Exit the current process with a success status.

    Without a registered shutdown handler (e.g. the app is served by an
    external uvicorn command) the process exits directly after flushing the
    log handlers.
    """
    if _shutdown_handler is not None:
        logger.info("Stopping server")
        _shutdown_handler()
        return

    for handler in logging.getLogger().handlers:
        handler.flush()
    os._exit(0)


def _ps_quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted string."""
    return "'" + value.replace("'", "''") + "'"


def _win_quote(arg: str) -> str:
    """Quote one argument for a Windows command line."""
    return subprocess.list2cmdline([arg])


class ProcessRespawner:
    """Launches a detached replacement process and terminates this one."""

    def __init__(
        self,
        working_directory: Path,
        command: Optional[List[str]] = None,
        restart_delay: float = 1.0,
        exit_delay: float = 0.5,
        terminate: Optional[Callable[[], None]] = None,
    ):
        self.working_directory = Path(working_directory)
        self.command = list(command) if command else default_command()
        self.restart_delay = restart_delay
        self.exit_delay = exit_delay
        self.terminate = terminate or terminate_self
        self.windows = sys.platform == "win32"

    def spawn(self) -> subprocess.Popen:
        """Start the service command detached from this process.

        Raises:
            RespawnError: If the process could not be launched.
        """
        env = dict(os.environ)
        env[RESPAWN_ENV_VAR] = "1"

        try:
            if self.windows:
                # No process-group detachment on Windows: go through a hidden
                # PowerShell Start-Process so no console window appears.
                return subprocess.Popen(
                    self._windows_launcher(),
                    cwd=str(self.working_directory),
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
                )

            return subprocess.Popen(
                self.command,
                cwd=str(self.working_directory),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                close_fds=True,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            raise RespawnError(f"Failed to launch {self.command[0]}: {e}") from e

    def _windows_launcher(self) -> List[str]:
        """PowerShell command line that starts self.command hidden."""
        executable, *args = self.command
        script = (
            f"Start-Process -WindowStyle Hidden -FilePath {_ps_quote(executable)} "
            f"-WorkingDirectory {_ps_quote(str(self.working_directory))}"
        )
        if args:
            # Start-Process joins the list with spaces without quoting
            script += " -ArgumentList " + ",".join(_ps_quote(_win_quote(a)) for a in args)
        return ["powershell", "-NoProfile", "-NonInteractive", "-WindowStyle", "Hidden", "-Command", script]

    async def respawn(self) -> None:
        """Run the delay, spawn, delay, verify, terminate sequence.

        Raises:
            RespawnError: If the new process failed to launch or exited with
                an error before this process would terminate. This process is
                left running in that case.
        """
        await asyncio.sleep(self.restart_delay)

        logger.info("Launching replacement process: %s", " ".join(self.command))
        proc = self.spawn()

        await asyncio.sleep(self.exit_delay)

        # On Windows proc is the PowerShell launcher, which exits immediately.
        if not self.windows:
            returncode = proc.poll()
            if returncode is not None and returncode != 0:
                raise RespawnError(f"Replacement process exited with code {returncode}")

        logger.info("Replacement process started (pid %s), terminating current process", proc.pid)
        self.terminate()


def wait_for_port_release(
    host: str,
    port: int,
    timeout: float = 30.0,
    interval: float = 0.25,
) -> bool:
    """Wait until host:port can be bound.

    Used by a respawned process while its predecessor still holds the
    listening socket.

    Returns:
        True if the port became free, False on timeout.
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    deadline = time.monotonic() + timeout

    while True:
        with socket.socket(family, socket.SOCK_STREAM) as sock:
            if os.name != "nt":
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((host, port))
                return True
            except OSError:
                pass

        if time.monotonic() >= deadline:
            logger.warning("Port %s:%d still in use after %.1fs", host, port, timeout)
            return False
        time.sleep(interval)
