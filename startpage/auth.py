# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 The Startpage Authors

"""
Startpage Authentication

Token checks guarding the administrative endpoints. Supports three access
levels:
- root: May check for, pull, install and restart updates
- user: Authenticated, but not allowed to administer updates
- anonymous: Health checks only
"""

import hashlib
import hmac
import logging
from enum import Enum
from threading import Lock
from typing import Optional

logger = logging.getLogger(__name__)

# Placeholder tokens shipped in sample configs
INSECURE_TOKENS = frozenset({
    "please-change-me",
    "please-change-me-to-random-string",
    "dev-secret-please-change-1234",
    "changeme",
})

_insecure_warning_lock = Lock()
_insecure_warning_emitted = False


class AccessLevel(str, Enum):
    """Access levels."""
    ANONYMOUS = "anonymous"
    USER = "user"
    ROOT = "root"


def hash_key(key: str) -> str:
    """Hash a token for constant-length comparison."""
    return hashlib.sha256(key.encode()).hexdigest()


def verify_key(key: str, expected: str) -> bool:
    """Compare a presented token with the configured one in constant time."""
    return hmac.compare_digest(hash_key(key), hash_key(expected))


def extract_token(authorization: Optional[str], x_api_key: Optional[str]) -> Optional[str]:
    """Get the token from an 'Authorization: Bearer' or 'X-Api-Key' header."""
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:].strip() or None
    if x_api_key:
        return x_api_key.strip() or None
    return None


def resolve_access_level(
    token: Optional[str],
    root_token: Optional[str],
    api_key: Optional[str] = None,
) -> AccessLevel:
    """Map a presented token to an access level."""
    if not token:
        return AccessLevel.ANONYMOUS
    if root_token and verify_key(token, root_token):
        return AccessLevel.ROOT
    if api_key and verify_key(token, api_key):
        return AccessLevel.USER
    return AccessLevel.ANONYMOUS


def warn_if_insecure_token(root_token: Optional[str]) -> bool:
    """Log a warning, once per process, if root_token is a known placeholder.

    Returns:
        True if the warning was emitted by this call.
    """
    global _insecure_warning_emitted
    if not root_token or root_token not in INSECURE_TOKENS:
        return False

    with _insecure_warning_lock:
        if _insecure_warning_emitted:
            return False
        _insecure_warning_emitted = True

    logger.warning(
        "server.root_token is set to a placeholder value. Anyone who knows it "
        "can pull code and restart this service; set a random token."
    )
    return True
