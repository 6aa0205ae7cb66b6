# SPDX-License-Identifier: GPL-3.0-only
# Copyright (C) 2026 The Startpage Authors

"""
Shared test doubles for the update executor.
"""

import json
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from startpage.classifier import ClassificationRules
from startpage.executor import CommandResult, UpdateExecutor
from startpage.registry import RegistryError, ReleaseInfo


class FakeRunner:
    """Command runner returning canned results.

    Results are looked up by (command, directory name) first, then by
    command alone; unknown commands succeed with empty output.
    """

    def __init__(self, results: Optional[Dict] = None):
        self.results = results or {}
        self.calls: List[tuple] = []

    async def __call__(self, args, cwd, timeout=None):
        command = " ".join(args)
        self.calls.append((command, Path(cwd).name, timeout))
        outcome = self.results.get((command, Path(cwd).name), self.results.get(command))
        if outcome is None:
            return CommandResult(returncode=0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def commands(self) -> List[str]:
        return [call[0] for call in self.calls]


class FakeRegistry:
    """In-memory release registry."""

    def __init__(self, release: Optional[ReleaseInfo] = None, files=None):
        self.release = release
        self.files = files
        self.compared: List[tuple] = []

    def tag_for(self, version: str) -> str:
        return f"v{version}"

    async def latest_release(self):
        return self.release

    async def changed_files(self, base_tag, head_tag):
        self.compared.append((base_tag, head_tag))
        if self.files is None:
            raise RegistryError("compare unavailable")
        return list(self.files)


class RecordingRespawner:
    """Respawner that records calls instead of replacing the process."""

    def __init__(self, events: Optional[List[str]] = None, error: Optional[Exception] = None):
        self.events = events if events is not None else []
        self.error = error
        self.calls = 0

    async def respawn(self):
        self.calls += 1
        if self.error:
            raise self.error
        self.events.append("spawn")
        self.events.append("exit")


def write_manifest(directory: Path, version: str, patch: Optional[int] = None) -> None:
    data = {"name": "start", "version": version}
    if patch is not None:
        data["patchVersion"] = patch
    (directory / "package.json").write_text(json.dumps(data))


@pytest.fixture
def deployment(tmp_path):
    """Deployment directory at version 1.0.0 with backend and frontend roots."""
    write_manifest(tmp_path, "1.0.0")
    (tmp_path / "backend").mkdir()
    (tmp_path / "frontend").mkdir()
    return tmp_path


@pytest.fixture
def make_executor(deployment):
    """Factory building an UpdateExecutor around test doubles."""

    def _make(registry=None, runner=None, respawner=None, **kwargs):
        return UpdateExecutor(
            deployment_dir=deployment,
            registry=registry or FakeRegistry(),
            respawner=respawner or RecordingRespawner(),
            rules=ClassificationRules(),
            runner=runner or FakeRunner(),
            **kwargs,
        )

    return _make
