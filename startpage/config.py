# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 The Startpage Authors

"""
Startpage Configuration Module

Handles loading and managing service configuration from YAML files.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field

from .classifier import ClassificationRules

logger = logging.getLogger(__name__)

_DEFAULT_RULES = ClassificationRules()


class ServerConfig(BaseModel):
    """Server configuration settings."""
    host: str = Field(default="0.0.0.0", description="Server bind address")
    port: int = Field(default=3100, description="Server port")
    root_token: Optional[str] = Field(default=None, description="Bearer token granting root (update) access")
    api_key: Optional[str] = Field(default=None, description="Optional API key granting user access")


class ClassificationConfig(BaseModel):
    """Path rules used to classify the files changed between two releases.

    Defaults come from ClassificationRules.
    """
    dependency_manifests: List[str] = Field(
        default_factory=lambda: list(_DEFAULT_RULES.dependency_manifests),
        description="Exact paths whose change requires a dependency install",
    )
    backend_prefix: str = Field(default=_DEFAULT_RULES.backend_prefix, description="Backend source tree")
    frontend_prefix: str = Field(default=_DEFAULT_RULES.frontend_prefix, description="Frontend source tree")
    schema_prefix: str = Field(default=_DEFAULT_RULES.schema_prefix, description="Schema/migrations tree")
    schema_suffix: str = Field(default=_DEFAULT_RULES.schema_suffix, description="Schema file suffix")
    migrations_marker: str = Field(default=_DEFAULT_RULES.migrations_marker, description="Migrations sub-path marker")
    doc_suffixes: List[str] = Field(
        default_factory=lambda: list(_DEFAULT_RULES.doc_suffixes),
        description="Documentation files never requiring a restart",
    )


class UpdateConfig(BaseModel):
    """Self-update configuration."""
    github_owner: str = Field(default="LZZLHY", description="GitHub owner of the upstream repository")
    github_repo: str = Field(default="start", description="GitHub upstream repository name")
    github_token: Optional[str] = Field(default=None, description="GitHub token (falls back to GITHUB_TOKEN)")
    api_base: str = Field(default="https://api.github.com", description="GitHub REST API base URL")
    raw_base: str = Field(default="https://raw.githubusercontent.com", description="Raw file content base URL")
    request_timeout: float = Field(default=30.0, gt=0, description="Timeout for each registry request in seconds")
    tag_prefix: str = Field(default="v", description="Prefix stripped from tag names")
    deployment_dir: Path = Field(default=Path("."), description="Root of the deployed checkout")
    manifest_file: str = Field(default="package.json", description="Manifest holding version and patch counter")
    patch_key: str = Field(default="patchVersion", description="Manifest key of the patch counter")
    git_remote: str = Field(default="origin", description="Remote pulled from")
    git_branch: str = Field(default="main", description="Branch pulled from")
    dependency_roots: List[str] = Field(default=["backend", "frontend"], description="Directories receiving a dependency install")
    install_command: List[str] = Field(default=["npm", "install"], description="Dependency install command")
    install_timeout: float = Field(default=300.0, gt=0, description="Timeout for each install call in seconds")
    restart_command: Optional[List[str]] = Field(default=None, description="Command starting the service (null = this interpreter)")
    restart_directory: Optional[Path] = Field(default=None, description="Working directory of the respawned service (null = deployment_dir)")
    restart_delay: float = Field(default=1.0, ge=0, description="Delay before spawning the replacement process")
    exit_delay: float = Field(default=0.5, ge=0, description="Delay between spawn and self-termination")
    handoff_timeout: float = Field(default=30.0, ge=0, description="How long a respawned process waits for its port")
    check_interval: int = Field(default=0, ge=0, description="Seconds between automatic update checks (0 = disabled)")
    classification: ClassificationConfig = Field(default_factory=ClassificationConfig)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Log level (WARNING, INFO, DEBUG)")
    file: Optional[Path] = Field(default=None, description="Log file path (null = console only)")
    max_size_mb: int = Field(default=10, ge=1, description="Max log file size in MB")
    backup_count: int = Field(default=5, ge=0, description="Number of backup log files")


class Config(BaseModel):
    """Main configuration container."""
    server: ServerConfig = Field(default_factory=ServerConfig)
    update: UpdateConfig = Field(default_factory=UpdateConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(path: Optional[str] = None) -> Config:
    """
    Load configuration from YAML file.

    Args:
        path: Path to config file. If None, uses STARTPAGE_CONFIG env var
              or defaults to ./config.yaml

    Returns:
        Config object with loaded settings
    """
    if path is None:
        path = os.environ.get("STARTPAGE_CONFIG", "./config.yaml")

    config_path = Path(path)

    if config_path.exists():
        logger.info("Loading configuration from: %s", config_path)
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}

            return Config(
                server=ServerConfig(**(data.get("server") or {})),
                update=UpdateConfig(**(data.get("update") or {})),
                logging=LoggingConfig(**(data.get("logging") or {})),
            )
        except Exception as e:
            logger.warning("Failed to load config file: %s. Using defaults.", e)
            return Config()
    else:
        logger.info("Config file not found at %s. Using defaults.", config_path)
        return Config()


def setup_logging(config: LoggingConfig) -> None:
    """
    Configure logging based on configuration.

    Args:
        config: Logging configuration settings
    """
    level = getattr(logging, config.level.upper(), logging.INFO)

    handlers: List[logging.Handler] = [logging.StreamHandler()]

    if config.file:
        try:
            config.file.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(RotatingFileHandler(
                config.file,
                maxBytes=config.max_size_mb * 1024 * 1024,
                backupCount=config.backup_count,
            ))
        except Exception as e:
            # If file logging fails, continue with console-only logging
            print(f"Warning: Could not setup file logging: {e}", file=sys.stderr)

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )

    logging.getLogger("uvicorn").setLevel(level)
    logging.getLogger("uvicorn.access").setLevel(level)

    if config.file:
        logger.info("Logging configured: level=%s, file=%s", config.level, config.file)
    else:
        logger.info("Logging configured: level=%s (console only)", config.level)


# Global config instance - loaded on import
config = load_config()
