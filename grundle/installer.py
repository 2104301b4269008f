"""
Installation, upgrade, removal and rollback of packages.

InstallManager owns everything under the install root:

    <root>/packages/<name>/<name>.<tag>   versioned artifacts
    <root>/bin/<name>                     stable link to the current artifact

A link is only ever swapped to an artifact that was downloaded
completely and made executable; every failure before that point leaves
the previous installation untouched.
"""

from __future__ import annotations

import enum
import os
import shutil
import stat
import tempfile
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

import yaml
from packaging import version as pkg_version

from .common import GrundleError, is_valid_package_name, sanitize_tag, vlog
from .config import Config, PackageConfig
from .downloader import DownloadFailed, fetch
from .registry import (
    SOURCE_FILE,
    PackageRegistry,
    link_path,
    package_dir,
    read_installed_version,
    read_source_file,
)
from .release_source import (
    GitHubReleaseSource,
    Release,
    ReleaseNotFound,
    ReleaseSource,
    SourceUnavailable,
)
from .selector import matching_assets, pick_artifact


class InstallStage(enum.Enum):
    """Progress of a single operation."""
    IDLE = "idle"
    RESOLVING = "resolving"
    SELECTING = "selecting"
    DOWNLOADING = "downloading"
    LINKING = "linking"
    DONE = "done"
    FAILED = "failed"


class Outcome(str, enum.Enum):
    """Final state of an operation."""
    INSTALLED = "installed"
    UP_TO_DATE = "up_to_date"
    NO_ARTIFACT = "no_artifact"
    REMOVED = "removed"
    ROLLED_BACK = "rolled_back"
    RESOLUTION_FAILED = "resolution_failed"
    DOWNLOAD_FAILED = "download_failed"
    FILESYSTEM_ERROR = "filesystem_error"
    NOT_INSTALLED = "not_installed"
    NO_PREVIOUS_VERSION = "no_previous_version"
    BUSY = "busy"


# Outcomes that are not errors; NO_ARTIFACT means "nothing to install here"
SUCCESS_OUTCOMES = frozenset({
    Outcome.INSTALLED,
    Outcome.UP_TO_DATE,
    Outcome.NO_ARTIFACT,
    Outcome.REMOVED,
    Outcome.ROLLED_BACK,
})

LINKED_OUTCOMES = frozenset({Outcome.INSTALLED, Outcome.UP_TO_DATE, Outcome.ROLLED_BACK})

ProgressCallback = Callable[[str, InstallStage], None]


class ResolutionError(GrundleError):
    """Raised when a package name cannot be mapped to a repository."""
    pass


class FilesystemError(GrundleError):
    """Raised when staging, permission or link operations fail."""
    pass


@dataclass(frozen=True)
class InstallResult:
    """
    Result of one install/upgrade/remove/rollback call.

    Attributes:
        package_name: Package the operation ran for
        action: "install", "upgrade", "remove" or "rollback"
        outcome: Final Outcome
        tag_name: Release tag involved (if resolved)
        artifact_path: Versioned artifact path (if any)
        link_path: Stable link path (if any)
        previous_version: Tag linked before the operation
        reason: Human-readable explanation
        duration_seconds: Time taken
    """
    package_name: str
    action: str
    outcome: Outcome
    tag_name: str | None = None
    artifact_path: str | None = None
    link_path: str | None = None
    previous_version: str | None = None
    reason: str | None = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.outcome in SUCCESS_OUTCOMES

    @property
    def installed(self) -> bool:
        """Whether the package is linked to tag_name after the operation."""
        return self.outcome in LINKED_OUTCOMES

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def message(self) -> str:
        """One-line summary for users."""
        name = self.package_name
        if self.outcome == Outcome.INSTALLED:
            if self.previous_version and self.previous_version != self.tag_name:
                text = f"{name}: {self.previous_version} → {self.tag_name}"
            else:
                text = f"{name}: installed {self.tag_name}"
        elif self.outcome == Outcome.UP_TO_DATE:
            text = f"{name}: {self.tag_name} is current"
        elif self.outcome == Outcome.REMOVED:
            text = f"{name}: removed"
        elif self.outcome == Outcome.ROLLED_BACK:
            text = f"{name}: rolled back {self.previous_version} → {self.tag_name}"
        else:
            text = f"{name}: {self.outcome.value.replace('_', ' ')}"
        if self.reason and self.outcome not in (Outcome.INSTALLED, Outcome.REMOVED):
            text += f" ({self.reason})"
        return text

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "package_name": self.package_name,
            "action": self.action,
            "outcome": self.outcome.value,
            "installed": self.installed,
            "tag_name": self.tag_name,
            "artifact_path": self.artifact_path,
            "link_path": self.link_path,
            "previous_version": self.previous_version,
            "reason": self.reason,
            "duration_seconds": self.duration_seconds,
        }


def compare_versions(v1: str, v2: str) -> int:
    """
    Compare two release tags.

    Args:
        v1: First tag
        v2: Second tag

    Returns:
        -1 if v1 < v2, 0 if v1 == v2, 1 if v1 > v2
    """
    a, b = v1.lstrip("vV"), v2.lstrip("vV")
    try:
        ver1 = pkg_version.parse(a)
        ver2 = pkg_version.parse(b)
    except pkg_version.InvalidVersion:
        # Fallback to string comparison
        ver1, ver2 = a, b  # type: ignore[assignment]

    if ver1 < ver2:
        return -1
    elif ver1 > ver2:
        return 1
    return 0


class InstallManager:
    """Resolves, downloads and links packages under the install root."""

    def __init__(
        self,
        config: Config,
        source: ReleaseSource | None = None,
        registry: PackageRegistry | None = None,
        fetcher: Callable[..., int] | None = None,
        verbose: bool = False,
    ):
        prefs = config.preferences
        self.config = config
        self.source = source or GitHubReleaseSource(
            policy=prefs.release_policy,
            per_page=prefs.per_page,
            max_pages=prefs.max_pages,
            timeout=prefs.timeout_seconds,
        )
        self.registry = registry or PackageRegistry(config)
        self.fetcher = fetcher or fetch
        self.verbose = verbose
        self._lock = threading.Lock()
        self._in_progress: set[str] = set()
        self._cancel = threading.Event()

    # -- paths -------------------------------------------------------------

    def artifact_path(self, name: str, tag: str) -> str:
        return os.path.join(package_dir(self.config, name), f"{name}.{tag}")

    def link_path(self, name: str) -> str:
        return link_path(self.config, name)

    def installed_version(self, name: str) -> str | None:
        return read_installed_version(self.config, name)

    def list_artifacts(self, name: str) -> list[str]:
        """
        Retained artifacts of a package, most recently linked first.

        Returns:
            Absolute artifact paths
        """
        directory = package_dir(self.config, name)
        prefix = f"{name}."
        try:
            entries = os.listdir(directory)
        except FileNotFoundError:
            return []
        paths = [
            os.path.join(directory, e) for e in entries
            if e.startswith(prefix) and len(e) > len(prefix)
        ]
        paths = [p for p in paths if os.path.isfile(p) and not os.path.islink(p)]
        paths.sort(key=lambda p: (os.path.getmtime(p), p), reverse=True)
        return paths

    # -- resolution --------------------------------------------------------

    def package_name(self, name: str) -> str:
        """
        Package name for a user-supplied identifier.

        "owner/repo" maps to "repo"; plain names are returned unchanged.

        Raises:
            ResolutionError: If the identifier is not a valid name
        """
        parts = name.split("/")
        if len(parts) > 2 or not all(is_valid_package_name(p) for p in parts):
            raise ResolutionError(f"Invalid package name: {name!r}")
        return parts[-1]

    def resolve(self, name: str) -> tuple[str, PackageConfig]:
        """
        Map an identifier to (package name, repository).

        Lookup order: explicit "owner/repo", the catalog, then the source
        recorded on disk by an earlier install.

        Raises:
            ResolutionError: If the package is unknown
        """
        package = self.package_name(name)
        if "/" in name:
            try:
                entry = PackageConfig(repo=name)
            except ValueError as e:
                raise ResolutionError(str(e)) from e
            known = self.config.get_package_config(package)
            if known is not None and known.repo == entry.repo:
                return package, known
            return package, entry

        known = self.config.get_package_config(package)
        if known is not None:
            return package, known

        recorded = read_source_file(self.config, package)
        if recorded.get("repo"):
            try:
                return package, PackageConfig(
                    repo=recorded["repo"], description=recorded.get("description", "")
                )
            except ValueError as e:
                raise ResolutionError(f"Recorded source for {package} is invalid: {e}") from e

        raise ResolutionError(
            f"Unknown package: {package}",
            remediation=f"Add it under 'packages:' in the config or use owner/{package}",
        )

    # -- guard -------------------------------------------------------------

    def _claim(self, name: str) -> bool:
        with self._lock:
            if name in self._in_progress:
                return False
            self._in_progress.add(name)
            return True

    def _release(self, name: str) -> None:
        with self._lock:
            self._in_progress.discard(name)

    def _guarded(
        self,
        name: str,
        action: str,
        start: float,
        operation: Callable[[], InstallResult],
    ) -> InstallResult:
        if not self._claim(name):
            return self._result(
                name, action, Outcome.BUSY, start,
                reason=f"another operation on {name} is in progress",
            )
        try:
            return operation()
        finally:
            self._release(name)

    def cancel(self) -> None:
        """Abort the download currently in flight, if any."""
        self._cancel.set()

    # -- helpers -----------------------------------------------------------

    def _result(self, name: str, action: str, outcome: Outcome, start: float, **kwargs) -> InstallResult:
        result = InstallResult(
            package_name=name,
            action=action,
            outcome=outcome,
            duration_seconds=time.time() - start,
            **kwargs,
        )
        vlog(f"{action} {name}: {outcome.value} {result.reason or ''}".rstrip(), self.verbose)
        return result

    @staticmethod
    def _notifier(name: str, progress: ProgressCallback | None) -> Callable[[InstallStage], None]:
        def notify(stage: InstallStage) -> None:
            if progress is not None:
                progress(name, stage)
        return notify

    def _make_executable(self, path: str) -> None:
        if self.config.preferences.owner_only:
            mode = stat.S_IRWXU
        else:
            mode = stat.S_IRWXU | stat.S_IRGRP | stat.S_IXGRP | stat.S_IROTH | stat.S_IXOTH
        try:
            os.chmod(path, mode)
        except OSError as e:
            raise FilesystemError(f"Cannot set permissions on {path}: {e}") from e

    def _swap_link(self, target: str, link: str) -> None:
        """Point link at target by renaming a fresh link over it."""
        bin_dir = os.path.dirname(link)
        tmp_link = os.path.join(bin_dir, f".{os.path.basename(link)}.link-{os.getpid()}")
        try:
            os.makedirs(bin_dir, exist_ok=True)
            if os.path.isdir(link) and not os.path.islink(link):
                raise FilesystemError(
                    f"{link} is a directory, refusing to replace it",
                    remediation=f"Move {link} out of the way",
                )
            if os.path.lexists(tmp_link):
                os.unlink(tmp_link)
            os.symlink(target, tmp_link)
            os.replace(tmp_link, link)
        except OSError as e:
            if os.path.lexists(tmp_link):
                os.unlink(tmp_link)
            raise FilesystemError(f"Cannot link {link} -> {target}: {e}") from e

        # mtime orders retained artifacts by how recently they were linked
        try:
            os.utime(target)
        except OSError as e:
            vlog(f"Could not touch {target}: {e}", self.verbose)

    def _record_source(self, name: str, source: PackageConfig) -> None:
        path = os.path.join(package_dir(self.config, name), SOURCE_FILE)
        data = {"repo": source.repo, "description": source.description}
        try:
            fd, temp_path = tempfile.mkstemp(prefix=f"{SOURCE_FILE}.", dir=os.path.dirname(path))
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, sort_keys=True)
            os.replace(temp_path, path)
        except OSError as e:
            vlog(f"Could not record source for {name}: {e}", True)

    def _prune(self, name: str, keep: str) -> None:
        retain = self.config.preferences.retain_versions
        others = [p for p in self.list_artifacts(name) if p != keep]
        for path in others[retain - 1:]:
            try:
                os.unlink(path)
                vlog(f"Pruned old artifact: {path}", self.verbose)
            except OSError as e:
                vlog(f"Failed to prune {path}: {e}", self.verbose)

    # -- operations --------------------------------------------------------

    def install(
        self,
        name: str,
        force: bool = False,
        progress: ProgressCallback | None = None,
    ) -> InstallResult:
        """
        Install the latest release of a package and link it.

        Args:
            name: Package name or "owner/repo"
            force: Download again even if the artifact is already present
            progress: Called with (package, stage) on every stage change

        Returns:
            InstallResult; never raises for expected failures
        """
        start = time.time()
        try:
            package, source = self.resolve(name)
        except ResolutionError as e:
            self._notifier(name, progress)(InstallStage.FAILED)
            return self._result(name, "install", Outcome.RESOLUTION_FAILED, start, reason=e.message)

        return self._guarded(
            package, "install", start,
            lambda: self._install(package, source, "install", start, force, progress),
        )

    def _install(
        self,
        name: str,
        source: PackageConfig,
        action: str,
        start: float,
        force: bool,
        progress: ProgressCallback | None,
        release: Release | None = None,
    ) -> InstallResult:
        prefs = self.config.preferences
        notify = self._notifier(name, progress)
        previous = self.installed_version(name)
        link = self.link_path(name)
        self._cancel.clear()

        # 1. Resolve
        if release is None:
            notify(InstallStage.RESOLVING)
            try:
                release = self.source.latest_release(source.owner, source.repo_name)
            except (SourceUnavailable, ReleaseNotFound) as e:
                notify(InstallStage.FAILED)
                return self._result(
                    name, action, Outcome.RESOLUTION_FAILED, start,
                    previous_version=previous, reason=e.message,
                )
        vlog(f"{name}: release {release.tag_name} from {source.repo}", self.verbose)

        # 2. Select
        notify(InstallStage.SELECTING)
        asset = pick_artifact(
            release.assets, prefs.artifact_suffix,
            match_architecture=prefs.match_architecture,
        )
        if asset is None:
            matches = matching_assets(release.assets, prefs.artifact_suffix)
            if matches:
                reason = "ambiguous artifacts: " + ", ".join(a.name for a in matches)
            else:
                reason = f"release {release.tag_name} has no {prefs.artifact_suffix} artifact"
            notify(InstallStage.DONE)
            return self._result(
                name, action, Outcome.NO_ARTIFACT, start,
                tag_name=release.tag_name, previous_version=previous, reason=reason,
            )

        try:
            tag = sanitize_tag(release.tag_name)
        except ValueError as e:
            notify(InstallStage.FAILED)
            return self._result(
                name, action, Outcome.RESOLUTION_FAILED, start,
                previous_version=previous, reason=str(e),
            )
        artifact = self.artifact_path(name, tag)

        if previous == tag and not force:
            notify(InstallStage.DONE)
            return self._result(
                name, action, Outcome.UP_TO_DATE, start,
                tag_name=tag, artifact_path=artifact, link_path=link,
                previous_version=previous, reason="already installed",
            )

        # 3. Download (only complete downloads ever exist at the artifact path)
        notify(InstallStage.DOWNLOADING)
        if force or not os.path.isfile(artifact):
            try:
                self.fetcher(
                    asset.download_url,
                    artifact,
                    timeout=prefs.timeout_seconds,
                    cancel=self._cancel,
                )
            except DownloadFailed as e:
                notify(InstallStage.FAILED)
                return self._result(
                    name, action, Outcome.DOWNLOAD_FAILED, start,
                    tag_name=tag, previous_version=previous, reason=e.message,
                )
        else:
            vlog(f"Reusing downloaded artifact: {artifact}", self.verbose)

        # 4. Permissions and link
        notify(InstallStage.LINKING)
        try:
            self._make_executable(artifact)
            self._swap_link(artifact, link)
        except FilesystemError as e:
            notify(InstallStage.FAILED)
            return self._result(
                name, action, Outcome.FILESYSTEM_ERROR, start,
                tag_name=tag, artifact_path=artifact,
                previous_version=previous, reason=e.message,
            )

        self._record_source(name, source)
        self._prune(name, artifact)
        self.registry.mark_installed(name, tag, link, repo=source.repo)
        notify(InstallStage.DONE)
        return self._result(
            name, action, Outcome.INSTALLED, start,
            tag_name=tag, artifact_path=artifact, link_path=link,
            previous_version=previous, reason=f"from {asset.name}",
        )

    def upgrade(
        self,
        name: str,
        force: bool = False,
        progress: ProgressCallback | None = None,
    ) -> InstallResult:
        """
        Upgrade an installed package to its latest release.

        Args:
            name: Package name or "owner/repo"
            force: Reinstall even when current, allow downgrades
            progress: Called with (package, stage) on every stage change

        Returns:
            InstallResult
        """
        start = time.time()
        try:
            package, source = self.resolve(name)
        except ResolutionError as e:
            return self._result(name, "upgrade", Outcome.RESOLUTION_FAILED, start, reason=e.message)

        def operation() -> InstallResult:
            notify = self._notifier(package, progress)
            current = self.installed_version(package)
            if current is None:
                return self._result(
                    package, "upgrade", Outcome.NOT_INSTALLED, start,
                    reason=f"{package} is not installed",
                )

            notify(InstallStage.RESOLVING)
            try:
                release = self.source.latest_release(source.owner, source.repo_name)
            except (SourceUnavailable, ReleaseNotFound) as e:
                notify(InstallStage.FAILED)
                return self._result(
                    package, "upgrade", Outcome.RESOLUTION_FAILED, start,
                    previous_version=current, reason=e.message,
                )

            # Installed tags are stored sanitized; compare like with like
            try:
                latest = sanitize_tag(release.tag_name)
            except ValueError as e:
                notify(InstallStage.FAILED)
                return self._result(
                    package, "upgrade", Outcome.RESOLUTION_FAILED, start,
                    previous_version=current, reason=str(e),
                )

            if not force and compare_versions(current, latest) > 0:
                notify(InstallStage.DONE)
                return self._result(
                    package, "upgrade", Outcome.UP_TO_DATE, start,
                    tag_name=current, link_path=self.link_path(package),
                    previous_version=current,
                    reason=f"installed {current} is newer than {latest}, refusing downgrade",
                )

            return self._install(package, source, "upgrade", start, force, progress, release=release)

        return self._guarded(package, "upgrade", start, operation)

    def upgrade_all(self, progress: ProgressCallback | None = None) -> list[InstallResult]:
        """Upgrade every installed package, one after another."""
        return [
            self.upgrade(package.name, progress=progress)
            for package in self.registry.installed_packages()
        ]

    def remove(self, name: str) -> InstallResult:
        """
        Remove a package's link and all of its artifacts.

        Args:
            name: Package name or "owner/repo"

        Returns:
            InstallResult with REMOVED or NOT_INSTALLED
        """
        start = time.time()
        try:
            package = self.package_name(name)
        except ResolutionError as e:
            return self._result(name, "remove", Outcome.RESOLUTION_FAILED, start, reason=e.message)

        def operation() -> InstallResult:
            link = self.link_path(package)
            directory = package_dir(self.config, package)
            previous = self.installed_version(package)

            if not os.path.lexists(link) and not os.path.isdir(directory):
                return self._result(
                    package, "remove", Outcome.NOT_INSTALLED, start,
                    reason=f"{package} is not installed",
                )

            try:
                if os.path.lexists(link):
                    if os.path.isdir(link) and not os.path.islink(link):
                        raise FilesystemError(f"{link} is a directory, refusing to remove it")
                    os.unlink(link)
                if os.path.isdir(directory):
                    shutil.rmtree(directory)
            except FilesystemError as e:
                return self._result(
                    package, "remove", Outcome.FILESYSTEM_ERROR, start,
                    previous_version=previous, reason=e.message,
                )
            except OSError as e:
                return self._result(
                    package, "remove", Outcome.FILESYSTEM_ERROR, start,
                    previous_version=previous, reason=str(e),
                )

            self.registry.mark_removed(package)
            return self._result(
                package, "remove", Outcome.REMOVED, start,
                tag_name=previous, link_path=link, previous_version=previous,
            )

        return self._guarded(package, "remove", start, operation)

    def rollback(self, name: str) -> InstallResult:
        """
        Relink the most recently used retained artifact other than the current one.

        Args:
            name: Package name or "owner/repo"

        Returns:
            InstallResult with ROLLED_BACK, NOT_INSTALLED or NO_PREVIOUS_VERSION
        """
        start = time.time()
        try:
            package = self.package_name(name)
        except ResolutionError as e:
            return self._result(name, "rollback", Outcome.RESOLUTION_FAILED, start, reason=e.message)

        def operation() -> InstallResult:
            current = self.installed_version(package)
            if current is None:
                return self._result(
                    package, "rollback", Outcome.NOT_INSTALLED, start,
                    reason=f"{package} is not installed",
                )

            current_artifact = self.artifact_path(package, current)
            candidates = [p for p in self.list_artifacts(package) if p != current_artifact]
            if not candidates:
                return self._result(
                    package, "rollback", Outcome.NO_PREVIOUS_VERSION, start,
                    tag_name=current, previous_version=current,
                    reason="no previous version retained",
                )

            target = candidates[0]
            tag = os.path.basename(target)[len(package) + 1:]
            link = self.link_path(package)
            try:
                self._make_executable(target)
                self._swap_link(target, link)
            except FilesystemError as e:
                return self._result(
                    package, "rollback", Outcome.FILESYSTEM_ERROR, start,
                    previous_version=current, reason=e.message,
                )

            self.registry.mark_installed(package, tag, link)
            return self._result(
                package, "rollback", Outcome.ROLLED_BACK, start,
                tag_name=tag, artifact_path=target, link_path=link,
                previous_version=current,
            )

        return self._guarded(package, "rollback", start, operation)
