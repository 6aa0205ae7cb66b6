# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 The Startpage Authors

"""
Startpage Change Classifier

Decides what an update needs (dependency install, restart, data migration)
from the list of files changed between the running and the latest tag.
When the diff cannot be fetched the maximal classification is assumed.
"""

import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Iterable, List, Tuple

from .registry import ReleaseRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassificationRules:
    """Path prefix/suffix rules applied to each changed file."""
    dependency_manifests: Tuple[str, ...] = (
        "package.json",
        "package-lock.json",
        "backend/package.json",
        "backend/package-lock.json",
        "frontend/package.json",
        "frontend/package-lock.json",
    )
    backend_prefix: str = "backend/"
    frontend_prefix: str = "frontend/"
    schema_prefix: str = "backend/prisma/"
    schema_suffix: str = ".prisma"
    migrations_marker: str = "/migrations/"
    doc_suffixes: Tuple[str, ...] = (".md", ".txt")

    @classmethod
    def from_config(cls, cfg) -> "ClassificationRules":
        """Build rules from a ClassificationConfig."""
        return cls(
            dependency_manifests=tuple(cfg.dependency_manifests),
            backend_prefix=cfg.backend_prefix,
            frontend_prefix=cfg.frontend_prefix,
            schema_prefix=cfg.schema_prefix,
            schema_suffix=cfg.schema_suffix,
            migrations_marker=cfg.migrations_marker,
            doc_suffixes=tuple(cfg.doc_suffixes),
        )

    def is_documentation(self, path: str) -> bool:
        return path.endswith(self.doc_suffixes)


@dataclass
class ChangeSet:
    """Classification of the files changed between two versions."""
    changed_files: List[str] = field(default_factory=list)
    needs_dependency_install: bool = False
    needs_process_restart: bool = False
    needs_data_migration: bool = False
    frontend_only: bool = False

    @classmethod
    def conservative(cls) -> "ChangeSet":
        """Maximal classification used when the diff is unavailable."""
        return cls(
            needs_dependency_install=True,
            needs_process_restart=True,
            needs_data_migration=True,
            frontend_only=False,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def classify_paths(paths: Iterable[str], rules: ClassificationRules = ClassificationRules()) -> ChangeSet:
    """Classify a list of changed paths.

    Each path is checked against every rule, so one file may set several
    flags. Dependency manifests are handled by the install step and do not
    on their own count as backend source changes.
    """
    changes = ChangeSet(changed_files=list(paths))
    has_backend_changes = False
    has_frontend_changes = False

    for path in changes.changed_files:
        is_manifest = path in rules.dependency_manifests
        if is_manifest:
            changes.needs_dependency_install = True

        if path.startswith(rules.schema_prefix) and (
            path.endswith(rules.schema_suffix) or rules.migrations_marker in path
        ):
            changes.needs_data_migration = True

        if rules.is_documentation(path) or is_manifest:
            continue

        if path.startswith(rules.backend_prefix):
            changes.needs_process_restart = True
            has_backend_changes = True
        if path.startswith(rules.frontend_prefix):
            has_frontend_changes = True

    changes.frontend_only = (
        has_frontend_changes
        and not has_backend_changes
        and not changes.needs_dependency_install
        and not changes.needs_data_migration
    )
    return changes


async def classify_update(
    registry: ReleaseRegistry,
    current_version: str,
    latest_version: str,
    rules: ClassificationRules = ClassificationRules(),
) -> ChangeSet:
    """Fetch the diff between two versions from the registry and classify it.

    Any failure to obtain the diff yields ChangeSet.conservative().
    """
    base_tag = registry.tag_for(current_version)
    head_tag = registry.tag_for(latest_version)

    try:
        files = await registry.changed_files(base_tag, head_tag)
    except Exception as e:
        logger.warning(
            "Could not compare %s...%s, assuming a full update: %s",
            base_tag, head_tag, e,
        )
        return ChangeSet.conservative()

    changes = classify_paths(files, rules)
    logger.info(
        "Classified %d changed files (%s -> %s): deps=%s restart=%s migration=%s frontend_only=%s",
        len(changes.changed_files),
        current_version,
        latest_version,
        changes.needs_dependency_install,
        changes.needs_process_restart,
        changes.needs_data_migration,
        changes.frontend_only,
    )
    return changes
