# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 The Startpage Authors

"""
Startpage Pydantic Schemas

Request/response models for the administrative update API. Field names
are serialized in camelCase to match the dashboard frontend.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ConfigDict

from .executor import OperationResult, UpdatePlan


# =============================================================================
# REQUEST MODELS
# =============================================================================

class FullUpdateRequest(BaseModel):
    """Flags for a full update, normally copied from a previous check."""
    needs_deps: bool = Field(default=False, alias="needsDeps")
    needs_restart: bool = Field(default=False, alias="needsRestart")

    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class UpdateCheckData(BaseModel):
    """Result of an update check."""
    current: str
    current_patch: int = Field(default=0, alias="currentPatch")
    latest: str
    latest_patch: int = Field(default=0, alias="latestPatch")
    has_update: bool = Field(default=False, alias="hasUpdate")
    release_notes: str = Field(default="", alias="releaseNotes")
    release_date: str = Field(default="", alias="releaseDate")
    needs_restart: bool = Field(default=False, alias="needsRestart")
    needs_deps: bool = Field(default=False, alias="needsDeps")
    needs_migration: bool = Field(default=False, alias="needsMigration")
    frontend_only: bool = Field(default=False, alias="frontendOnly")
    has_git: bool = Field(default=False, alias="hasGit")
    changed_files: List[str] = Field(default_factory=list, alias="changedFiles")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_plan(cls, plan: UpdatePlan) -> "UpdateCheckData":
        return cls(
            current=plan.current.version,
            current_patch=plan.current.patch,
            latest=plan.latest.version,
            latest_patch=plan.latest.patch,
            has_update=plan.has_update,
            release_notes=plan.release_notes,
            release_date=plan.release_date or "",
            needs_restart=plan.changes.needs_process_restart,
            needs_deps=plan.changes.needs_dependency_install,
            needs_migration=plan.changes.needs_data_migration,
            frontend_only=plan.changes.frontend_only,
            has_git=plan.has_git,
            changed_files=plan.changes.changed_files,
        )


class UpdateCheckResponse(BaseModel):
    """Envelope for the check endpoint."""
    ok: bool = True
    data: UpdateCheckData


class OperationData(BaseModel):
    """Payload of a successful operation."""
    message: str
    output: Optional[str] = None


class OperationResponse(BaseModel):
    """Envelope for pull, deps, restart and full update."""
    ok: bool
    data: Optional[OperationData] = None
    message: Optional[str] = None

    @classmethod
    def from_result(cls, result: OperationResult) -> "OperationResponse":
        if result.ok:
            return cls(ok=True, data=OperationData(message=result.message, output=result.output))
        return cls(ok=False, message=result.message)


class StatusResponse(BaseModel):
    """Envelope for the status endpoint."""
    ok: bool = True
    data: Dict[str, Any]


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(..., description="Service status: ok")
    version: str = Field(..., description="Service version")
    uptime: float = Field(..., description="Seconds since startup")
    restart_pending: bool = Field(default=False, alias="restartPending")

    model_config = ConfigDict(populate_by_name=True)
