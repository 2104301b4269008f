"""
grundle - install and update AppImage releases from GitHub.

Core Modules:
- Release lookup: GitHub releases API client and release selection
- Artifact selection: picking the one installable asset of a release
- Download: streaming, staged artifact download
- Installation: versioned artifacts behind a stable symlink, upgrade, rollback
- Registry and UI: known packages and the terminal browser
"""

__version__ = "0.3.0"

VERSION = __version__

from .common import GrundleError, vlog
from .config import (
    Config,
    ConfigError,
    PackageConfig,
    Preferences,
    load_config,
    load_config_file,
)
from .release_source import (
    Asset,
    Release,
    ReleaseSource,
    GitHubReleaseSource,
    SourceUnavailable,
    ReleaseNotFound,
    select_release,
)
from .selector import pick_artifact, matching_assets
from .downloader import DownloadFailed, DownloadCancelled, fetch
from .registry import Package, PackageRegistry
from .installer import (
    InstallManager,
    InstallResult,
    InstallStage,
    Outcome,
    FilesystemError,
    ResolutionError,
    compare_versions,
)
from .logging_config import setup_logging, get_logger

__all__ = [
    "__version__",
    "VERSION",
    "GrundleError",
    "vlog",
    # Configuration
    "Config",
    "ConfigError",
    "PackageConfig",
    "Preferences",
    "load_config",
    "load_config_file",
    # Releases
    "Asset",
    "Release",
    "ReleaseSource",
    "GitHubReleaseSource",
    "SourceUnavailable",
    "ReleaseNotFound",
    "select_release",
    # Selection and download
    "pick_artifact",
    "matching_assets",
    "DownloadFailed",
    "DownloadCancelled",
    "fetch",
    # Installation
    "Package",
    "PackageRegistry",
    "InstallManager",
    "InstallResult",
    "InstallStage",
    "Outcome",
    "FilesystemError",
    "ResolutionError",
    "compare_versions",
    # Logging
    "setup_logging",
    "get_logger",
]
