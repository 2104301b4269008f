"""
Package registry: the known packages and what is installed of them.

The registry is a read-through view. Installed state always comes from
the stable links under <root>/bin; the in-memory entries only cache it
for presentation between refreshes.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .common import is_valid_package_name
from .config import Config

logger = logging.getLogger(__name__)

SOURCE_FILE = ".grundle-source.yml"


@dataclass
class Package:
    """
    A package known to grundle.

    Attributes:
        name: Unique package name (also the link name under bin/)
        repo: GitHub repository as "owner/repo" ("" if unknown)
        description: Short description for listings
        installed_version: Tag of the linked artifact, if installed
        install_path: Path of the stable link, if installed
    """
    name: str
    repo: str = ""
    description: str = ""
    installed_version: str | None = None
    install_path: str | None = None

    @property
    def installed(self) -> bool:
        return self.installed_version is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "repo": self.repo,
            "description": self.description,
            "installed_version": self.installed_version,
            "install_path": self.install_path,
        }


def link_path(config: Config, name: str) -> str:
    return os.path.join(config.bin_dir, name)


def package_dir(config: Config, name: str) -> str:
    return os.path.join(config.packages_dir, name)


def read_source_file(config: Config, name: str) -> dict[str, str]:
    """
    Read the repo/description recorded for an installed package.

    Returns:
        Dictionary with "repo" and "description" keys (empty if absent or unreadable)
    """
    path = os.path.join(package_dir(config, name), SOURCE_FILE)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        return {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Ignoring unreadable {path}: {e}")
        return {}
    if not isinstance(data, dict):
        return {}
    return {
        "repo": str(data.get("repo") or ""),
        "description": str(data.get("description") or ""),
    }


def read_installed_version(config: Config, name: str) -> str | None:
    """
    Determine the installed tag by resolving bin/<name>.

    The link must point at an existing file named <name>.<tag>; anything
    else (missing, dangling, foreign target) reads as not installed.

    Returns:
        Installed tag, or None
    """
    link = link_path(config, name)
    if not os.path.islink(link):
        return None
    target = os.readlink(link)
    if not os.path.isabs(target):
        target = os.path.join(os.path.dirname(link), target)
    if not os.path.isfile(target):
        logger.debug(f"Dangling link {link} -> {target}")
        return None
    prefix = f"{name}."
    basename = os.path.basename(target)
    if not basename.startswith(prefix) or len(basename) == len(prefix):
        return None
    return basename[len(prefix):]


class PackageRegistry:
    """Known packages merged from the catalog and the install root."""

    def __init__(self, config: Config):
        self.config = config
        self._packages: dict[str, Package] = {}

    def _discover_names(self) -> set[str]:
        names: set[str] = set()
        for directory in (self.config.bin_dir, self.config.packages_dir):
            try:
                entries = os.listdir(directory)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Cannot list {directory}: {e}")
                continue
            names.update(e for e in entries if is_valid_package_name(e))
        return names

    def refresh(self, name: str) -> Package | None:
        """
        Re-read one package's state from the catalog and the filesystem.

        Returns:
            Updated Package, or None if the package is neither in the
            catalog nor present on disk
        """
        entry = self.config.get_package_config(name)
        recorded = read_source_file(self.config, name)
        version = read_installed_version(self.config, name)

        if entry is None and not recorded and version is None:
            self._packages.pop(name, None)
            return None

        package = self._packages.get(name) or Package(name=name)
        package.repo = entry.repo if entry else recorded.get("repo", "")
        package.description = (entry.description if entry else "") or recorded.get("description", "")
        package.installed_version = version
        package.install_path = link_path(self.config, name) if version is not None else None
        self._packages[name] = package
        return package

    def list_known_packages(self) -> list[Package]:
        """
        All catalog and on-disk packages with their current installed state.

        Returns:
            Packages sorted by name
        """
        names = set(self.config.catalog()) | self._discover_names()
        packages = []
        for name in sorted(names):
            package = self.refresh(name)
            if package is not None:
                packages.append(package)
        for stale in set(self._packages) - names:
            del self._packages[stale]
        return packages

    def get(self, name: str) -> Package | None:
        """Get a package by name, refreshed from disk."""
        return self.refresh(name)

    def installed_packages(self) -> list[Package]:
        return [p for p in self.list_known_packages() if p.installed]

    def mark_installed(
        self,
        name: str,
        version: str,
        path: str,
        repo: str | None = None,
    ) -> Package:
        """
        Record a successful install.

        Args:
            name: Package name
            version: Installed tag
            path: Stable link path
            repo: Repository, if known

        Returns:
            The updated Package
        """
        package = self._packages.get(name) or Package(name=name)
        if repo:
            package.repo = repo
        package.installed_version = version
        package.install_path = path
        self._packages[name] = package
        return package

    def mark_removed(self, name: str) -> None:
        """Clear installed state; drop the entry if it is not in the catalog."""
        if self.config.get_package_config(name) is None:
            self._packages.pop(name, None)
            return
        package = self._packages.get(name)
        if package is not None:
            package.installed_version = None
            package.install_path = None
