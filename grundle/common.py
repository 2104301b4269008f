"""
Common utilities shared across grundle modules.
"""

from __future__ import annotations

import os
import re
import sys


# Package names double as file names under the install root
_PACKAGE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*$")


class GrundleError(Exception):
    """
    Base exception for grundle errors.

    Attributes:
        message: Human-readable error message
        remediation: Suggested fix for the error
    """
    def __init__(self, message: str, remediation: str | None = None):
        self.message = message
        self.remediation = remediation
        super().__init__(message)


def is_debug_enabled() -> bool:
    """Check whether GRUNDLE_DEBUG forces verbose output."""
    return os.environ.get("GRUNDLE_DEBUG", "0") == "1"


def resolve_home() -> str:
    """
    Resolve the invoking user's home directory.

    Returns:
        Absolute home directory path

    Raises:
        GrundleError: If the home directory cannot be determined
    """
    home = os.path.expanduser("~")
    if not home or home == "~" or not os.path.isabs(home):
        raise GrundleError(
            "Cannot resolve home directory",
            remediation="Set the HOME environment variable or pass --root",
        )
    return home


def is_valid_package_name(name: str) -> bool:
    """
    Check that a package name is safe to use as a file name.

    Args:
        name: Package name

    Returns:
        True if the name contains no path separators or leading dots
    """
    return bool(name) and bool(_PACKAGE_NAME_RE.match(name))


def sanitize_tag(tag: str) -> str:
    """
    Make a release tag usable as a file name suffix.

    Args:
        tag: Raw release tag (e.g., "v1.2.3", "release/24.03")

    Returns:
        Tag with path separators replaced (e.g., "release_24.03")

    Raises:
        ValueError: If the tag is empty or a relative path component
    """
    cleaned = tag.strip().replace("/", "_").replace("\\", "_")
    if cleaned in ("", ".", ".."):
        raise ValueError(f"Unusable release tag: {tag!r}")
    return cleaned


def vlog(msg: str, verbose: bool = False) -> None:
    """
    Log verbose message using structured logging.

    Args:
        msg: Message to log
        verbose: Whether verbose mode is enabled
    """
    if verbose or is_debug_enabled():
        try:
            from .logging_config import get_logger
            logger = get_logger()
            logger.info(msg)
        except Exception:
            # Fallback to stderr if logging fails
            try:
                print(f"[grundle] {msg}", file=sys.stderr)
            except Exception:
                pass
