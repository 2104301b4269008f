"""
Configuration file parsing and management.

Loads YAML configuration files and merges them from multiple sources
(explicit path → project → user → defaults).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

import yaml

from .common import GrundleError, is_valid_package_name, resolve_home, vlog


# Configuration file locations (in priority order)
CONFIG_LOCATIONS = [
    ".grundle.yml",
    ".grundle.yaml",
    os.path.join("~", ".config", "grundle", "config.yml"),
    os.path.join("~", ".config", "grundle", "config.yaml"),
]

DEFAULT_ROOT = os.path.join("~", ".grundle")

# Packages known without any configuration
DEFAULT_PACKAGES: dict[str, dict[str, str]] = {
    "helix": {
        "repo": "helix-editor/helix",
        "description": "A post-modern modal text editor",
    },
    "nvim": {
        "repo": "neovim/neovim",
        "description": "Vim-fork focused on extensibility and usability",
    },
    "obsidian": {
        "repo": "obsidianmd/obsidian-releases",
        "description": "Markdown knowledge base",
    },
}


class ConfigError(GrundleError):
    """Raised when configuration cannot be loaded or is invalid."""
    pass


@dataclass(frozen=True)
class PackageConfig:
    """
    Catalog entry for a package.

    Attributes:
        repo: GitHub repository as "owner/repo"
        description: Short description shown in listings
    """
    repo: str
    description: str = ""

    def __post_init__(self):
        parts = self.repo.split("/")
        if len(parts) != 2 or not all(parts):
            raise ValueError(f"Invalid repo: {self.repo!r}. Expected 'owner/repo'")

    @property
    def owner(self) -> str:
        return self.repo.split("/")[0]

    @property
    def repo_name(self) -> str:
        return self.repo.split("/")[1]

    @staticmethod
    def from_dict(data: dict[str, Any]) -> PackageConfig:
        """Create PackageConfig from dictionary."""
        return PackageConfig(
            repo=str(data.get("repo", "")),
            description=str(data.get("description", "")),
        )


@dataclass(frozen=True)
class Preferences:
    """
    User preferences for installation behavior.

    Attributes:
        timeout_seconds: Timeout for network operations
        artifact_suffix: File name suffix of installable assets
        release_policy: Which releases are eligible ('stable' or 'any')
        per_page: Releases requested per API page
        max_pages: Maximum API pages scanned for an eligible release
        retain_versions: Artifacts kept per package, the linked one included
        owner_only: Restrict artifact permissions to the owner
        match_architecture: Narrow several matching assets to this machine's architecture
    """
    timeout_seconds: int = 30
    artifact_suffix: str = ".AppImage"
    release_policy: str = "stable"
    per_page: int = 30
    max_pages: int = 3
    retain_versions: int = 2
    owner_only: bool = True
    match_architecture: bool = True

    def __post_init__(self):
        """Validate preferences after initialization."""
        if self.timeout_seconds < 1 or self.timeout_seconds > 600:
            raise ValueError(
                f"Invalid timeout_seconds: {self.timeout_seconds}. "
                "Must be between 1 and 600"
            )

        if not self.artifact_suffix:
            raise ValueError("artifact_suffix must not be empty")

        if self.release_policy not in {"stable", "any"}:
            raise ValueError(
                f"Invalid release_policy: {self.release_policy}. "
                "Must be 'stable' or 'any'"
            )

        if self.per_page < 1 or self.per_page > 100:
            raise ValueError(
                f"Invalid per_page: {self.per_page}. Must be between 1 and 100"
            )

        if self.max_pages < 1 or self.max_pages > 10:
            raise ValueError(
                f"Invalid max_pages: {self.max_pages}. Must be between 1 and 10"
            )

        if self.retain_versions < 1 or self.retain_versions > 20:
            raise ValueError(
                f"Invalid retain_versions: {self.retain_versions}. "
                "Must be between 1 and 20"
            )

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Preferences:
        """Create Preferences from dictionary."""
        return Preferences(
            timeout_seconds=data.get("timeout_seconds", 30),
            artifact_suffix=data.get("artifact_suffix", ".AppImage"),
            release_policy=data.get("release_policy", "stable"),
            per_page=data.get("per_page", 30),
            max_pages=data.get("max_pages", 3),
            retain_versions=data.get("retain_versions", 2),
            owner_only=data.get("owner_only", True),
            match_architecture=data.get("match_architecture", True),
        )


@dataclass(frozen=True)
class Config:
    """
    Complete configuration for grundle.

    Attributes:
        version: Config schema version
        root: Install root (unexpanded; see root_dir)
        preferences: Global preferences
        packages: Catalog of packages by name
        source: Path to the configuration file that was loaded
    """
    version: int = 1
    root: str = ""
    preferences: Preferences = field(default_factory=Preferences)
    packages: dict[str, PackageConfig] = field(default_factory=dict)
    source: str = ""

    def __post_init__(self):
        """Validate config after initialization."""
        if self.version != 1:
            raise ValueError(f"Unsupported config version: {self.version}. Expected version 1")

        for name in self.packages:
            if not is_valid_package_name(name):
                raise ValueError(f"Invalid package name: {name!r}")

    @staticmethod
    def from_dict(data: dict[str, Any], source: str = "") -> Config:
        """Create Config from dictionary."""
        packages_data = data.get("packages") or {}
        packages = {
            str(name): PackageConfig.from_dict(entry or {})
            for name, entry in packages_data.items()
        }

        return Config(
            version=data.get("version", 1),
            root=str(data.get("root", "") or ""),
            preferences=Preferences.from_dict(data.get("preferences") or {}),
            packages=packages,
            source=source,
        )

    @property
    def root_dir(self) -> str:
        """
        Absolute install root.

        GRUNDLE_ROOT overrides the configured value, which overrides the
        default ~/.grundle.

        Raises:
            ConfigError: If a home-relative root cannot be resolved
        """
        root = os.environ.get("GRUNDLE_ROOT") or self.root or DEFAULT_ROOT
        if root.startswith("~"):
            try:
                home = resolve_home()
            except GrundleError as e:
                raise ConfigError(e.message, remediation=e.remediation) from e
            root = home + root[1:]
        return os.path.abspath(root)

    @property
    def packages_dir(self) -> str:
        return os.path.join(self.root_dir, "packages")

    @property
    def bin_dir(self) -> str:
        return os.path.join(self.root_dir, "bin")

    def catalog(self) -> dict[str, PackageConfig]:
        """
        Built-in packages overlaid with configured ones.

        Returns:
            Mapping of package name to PackageConfig
        """
        merged = {
            name: PackageConfig.from_dict(entry)
            for name, entry in DEFAULT_PACKAGES.items()
        }
        merged.update(self.packages)
        return merged

    def get_package_config(self, name: str) -> PackageConfig | None:
        """
        Get catalog entry for a package.

        Args:
            name: Package name

        Returns:
            PackageConfig, or None if the package is not in the catalog
        """
        return self.catalog().get(name)

    def merge_with(self, other: Config) -> Config:
        """
        Merge this config with another, preferring values from this config.

        Args:
            other: Other config to merge (lower priority)

        Returns:
            New merged Config object
        """
        merged_packages = dict(other.packages)
        merged_packages.update(self.packages)

        defaults = Preferences()
        ours, theirs = self.preferences, other.preferences

        def pick(attr: str):
            value = getattr(ours, attr)
            return value if value != getattr(defaults, attr) else getattr(theirs, attr)

        merged_preferences = Preferences(
            timeout_seconds=pick("timeout_seconds"),
            artifact_suffix=pick("artifact_suffix"),
            release_policy=pick("release_policy"),
            per_page=pick("per_page"),
            max_pages=pick("max_pages"),
            retain_versions=pick("retain_versions"),
            owner_only=pick("owner_only"),
            match_architecture=pick("match_architecture"),
        )

        return Config(
            version=self.version,
            root=self.root or other.root,
            preferences=merged_preferences,
            packages=merged_packages,
            source=self.source or other.source,
        )


def _load_yaml(file_path: str) -> dict[str, Any] | None:
    """
    Load YAML configuration file.

    Args:
        file_path: Path to YAML file

    Returns:
        Parsed configuration dictionary, or None if the file is unreadable or invalid
    """
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        return None


def load_config_file(file_path: str, verbose: bool = False) -> Config | None:
    """
    Load configuration from a single file.

    Args:
        file_path: Path to configuration file
        verbose: Enable verbose logging

    Returns:
        Config object, or None if the file does not exist

    Raises:
        ConfigError: If the file exists but is invalid
    """
    file_path = os.path.expanduser(file_path)
    if not os.path.exists(file_path):
        return None

    vlog(f"Loading config from: {file_path}", verbose)

    data = _load_yaml(file_path)
    if data is None:
        raise ConfigError(f"Invalid config file: {file_path}")

    try:
        config = Config.from_dict(data, source=file_path)
    except (ValueError, TypeError, AttributeError) as e:
        raise ConfigError(
            f"Config validation failed for {file_path}: {e}",
            remediation="Fix the file or remove it",
        ) from e

    vlog(f"Loaded config successfully: {file_path}", verbose)
    return config


def load_config(
    custom_path: str | None = None,
    verbose: bool = False,
) -> Config:
    """
    Load and merge configuration from all sources.

    Configuration precedence (highest to lowest):
    1. Custom path (if provided)
    2. Project .grundle.yml
    3. User ~/.config/grundle/config.yml
    4. Default configuration

    Args:
        custom_path: Optional path to custom configuration file
        verbose: Enable verbose logging

    Returns:
        Merged Config object (defaults if no config found)

    Raises:
        ConfigError: If custom_path cannot be loaded or any file is invalid
    """
    configs: list[Config] = []

    if custom_path:
        config = load_config_file(custom_path, verbose)
        if config is None:
            raise ConfigError(f"Could not load config from specified path: {custom_path}")
        configs.append(config)

    for location in CONFIG_LOCATIONS:
        config = load_config_file(location, verbose)
        if config is not None:
            configs.append(config)

    if not configs:
        vlog("No config files found, using defaults", verbose)
        return Config()

    merged = configs[0]
    for config in configs[1:]:
        merged = merged.merge_with(config)

    vlog(f"Merged {len(configs)} config files", verbose)
    return merged
