"""
Artifact selection for a release's asset list.
"""

from __future__ import annotations

import logging
import platform
import re
from typing import Sequence

from .release_source import Asset

logger = logging.getLogger(__name__)

DEFAULT_SUFFIX = ".AppImage"

# Spellings of each architecture found in asset names
ARCH_ALIASES: dict[str, tuple[str, ...]] = {
    "x86_64": ("x86_64", "amd64", "x64"),
    "aarch64": ("aarch64", "arm64"),
    "armv7l": ("armv7l", "armhf", "armv7"),
    "i686": ("i686", "i386", "x86"),
}


def _arch_tokens(machine: str) -> tuple[str, ...]:
    machine = machine.lower()
    for canonical, aliases in ARCH_ALIASES.items():
        if machine == canonical or machine in aliases:
            return aliases
    return (machine,)


def _mentions(name: str, token: str) -> bool:
    # Token must stand alone: "x86" must not match inside "x86_64"
    return re.search(rf"(?<![a-z0-9]){re.escape(token)}(?![a-z0-9_])", name.lower()) is not None


def matching_assets(assets: Sequence[Asset], suffix: str = DEFAULT_SUFFIX) -> list[Asset]:
    """
    Assets whose file name ends with suffix (case-insensitive).

    Args:
        assets: Release assets
        suffix: Packaging suffix, e.g. ".AppImage"

    Returns:
        Matching assets in input order
    """
    suffix = suffix.lower()
    return [a for a in assets if a.name.lower().endswith(suffix)]


def pick_artifact(
    assets: Sequence[Asset],
    suffix: str = DEFAULT_SUFFIX,
    machine: str | None = None,
    match_architecture: bool = True,
) -> Asset | None:
    """
    Select the single installable asset.

    When several assets carry the suffix and match_architecture is set,
    only those naming this machine's architecture are considered.
    Anything but exactly one candidate is treated as "not installable"
    rather than guessing.

    Args:
        assets: Release assets
        suffix: Packaging suffix
        machine: Architecture name (defaults to platform.machine())
        match_architecture: Narrow several matches by architecture

    Returns:
        The selected Asset, or None if there is no unambiguous match
    """
    candidates = matching_assets(assets, suffix)
    if len(candidates) <= 1:
        return candidates[0] if candidates else None
    if not match_architecture:
        logger.debug(f"Ambiguous artifacts for suffix {suffix}: {[a.name for a in candidates]}")
        return None

    tokens = _arch_tokens(machine or platform.machine())
    narrowed = [a for a in candidates if any(_mentions(a.name, t) for t in tokens)]
    if len(narrowed) == 1:
        return narrowed[0]

    logger.debug(
        f"Ambiguous artifacts for suffix {suffix}: {[a.name for a in candidates]}"
    )
    return None
