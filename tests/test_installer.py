"""
Tests for the install pipeline (grundle/installer.py).
"""

import http.client
import os
import stat
import time
from unittest.mock import MagicMock, patch

import pytest

from conftest import APPIMAGE_PAYLOAD, FakeFetcher, make_release, snapshot_tree
from grundle.config import Config, PackageConfig
from grundle.downloader import DownloadFailed, fetch
from grundle.installer import (
    InstallManager,
    InstallResult,
    InstallStage,
    Outcome,
    compare_versions,
)
from grundle.registry import SOURCE_FILE, PackageRegistry
from grundle.release_source import SourceUnavailable


@pytest.fixture
def manager(config, source, fetcher):
    return InstallManager(config, source=source, fetcher=fetcher)


def link_target(root, name):
    return os.path.realpath(root / "bin" / name)


class TestCompareVersions:
    """Tests for tag comparison."""

    def test_numeric(self):
        assert compare_versions("23.10", "24.03") == -1
        assert compare_versions("24.03", "23.10") == 1
        assert compare_versions("1.0", "1.0") == 0

    def test_v_prefix_ignored(self):
        assert compare_versions("v1.2.0", "1.10.0") == -1

    def test_non_pep440_falls_back_to_strings(self):
        assert compare_versions("nightly-b", "nightly-a") == 1


class TestInstallResult:
    """Tests for InstallResult."""

    def test_informational_outcomes_are_ok(self):
        for outcome in (Outcome.INSTALLED, Outcome.NO_ARTIFACT, Outcome.UP_TO_DATE):
            result = InstallResult(package_name="foo", action="install", outcome=outcome)
            assert result.ok is True
            assert result.exit_code == 0

    def test_failures_are_not_ok(self):
        result = InstallResult(
            package_name="foo", action="install",
            outcome=Outcome.DOWNLOAD_FAILED, reason="boom",
        )
        assert result.ok is False
        assert result.installed is False
        assert result.exit_code == 1
        assert "download failed" in result.message()
        assert "boom" in result.message()

    def test_to_dict(self):
        result = InstallResult(
            package_name="foo", action="install", outcome=Outcome.INSTALLED,
            tag_name="23.10", link_path="/x/bin/foo",
        )
        data = result.to_dict()
        assert data["outcome"] == "installed"
        assert data["installed"] is True
        assert data["tag_name"] == "23.10"

    def test_immutable(self):
        result = InstallResult(package_name="foo", action="install", outcome=Outcome.INSTALLED)
        with pytest.raises(AttributeError):
            result.outcome = Outcome.BUSY


class TestInstall:
    """Tests for InstallManager.install."""

    def test_example_scenario_links_appimage(self, manager, source, fetcher, root):
        """AppImage is picked over .deb, stored versioned and linked."""
        source.set("acme/foo", make_release("23.10", "foo.AppImage", "foo.deb"))

        result = manager.install("foo")

        assert result.outcome == Outcome.INSTALLED
        assert result.installed is True
        assert result.tag_name == "23.10"
        artifact = root / "packages" / "foo" / "foo.23.10"
        assert result.artifact_path == str(artifact)
        assert fetcher.calls == [("https://example.com/23.10/foo.AppImage", str(artifact))]

        link = root / "bin" / "foo"
        assert link.is_symlink()
        assert link_target(root, "foo") == str(artifact)
        assert artifact.read_bytes() == APPIMAGE_PAYLOAD
        assert os.access(artifact, os.X_OK)

    def test_no_installable_artifact_changes_nothing(self, manager, source, fetcher, root):
        source.set("acme/foo", make_release("23.10", "foo.tar.gz"))
        before = snapshot_tree(root)

        result = manager.install("foo")

        assert result.outcome == Outcome.NO_ARTIFACT
        assert result.ok is True
        assert result.installed is False
        assert ".AppImage" in result.reason
        assert fetcher.calls == []
        assert snapshot_tree(root) == before

    def test_ambiguous_artifacts_are_not_installed(self, manager, source, fetcher):
        source.set("acme/foo", make_release("1.0", "foo-a.AppImage", "foo-b.AppImage"))

        with patch("grundle.selector.platform.machine", return_value="x86_64"):
            result = manager.install("foo")

        assert result.outcome == Outcome.NO_ARTIFACT
        assert "ambiguous" in result.reason
        assert fetcher.calls == []

    def test_architecture_matching_can_be_disabled(self, make_config, source, fetcher, root):
        manager = InstallManager(make_config(match_architecture=False), source=source, fetcher=fetcher)
        source.set("acme/foo", make_release("1.0", "foo-x86_64.AppImage", "foo-aarch64.AppImage"))

        with patch("grundle.selector.platform.machine", return_value="x86_64"):
            result = manager.install("foo")

        assert result.outcome == Outcome.NO_ARTIFACT
        assert "ambiguous" in result.reason
        assert snapshot_tree(root) == set()

    def test_unknown_package_fails_resolution(self, manager, root):
        result = manager.install("nosuchthing")
        assert result.outcome == Outcome.RESOLUTION_FAILED
        assert "Unknown package" in result.reason
        assert not root.exists()

    def test_invalid_name_fails_resolution(self, manager):
        result = manager.install("../etc")
        assert result.outcome == Outcome.RESOLUTION_FAILED

    def test_source_unavailable_changes_nothing(self, manager, source, fetcher, root):
        source.set("acme/foo", SourceUnavailable("network down"))

        result = manager.install("foo")

        assert result.outcome == Outcome.RESOLUTION_FAILED
        assert result.reason == "network down"
        assert not root.exists()

    def test_install_twice_is_idempotent(self, manager, source, fetcher, root):
        source.set("acme/foo", make_release("23.10", "foo.AppImage"))

        first = manager.install("foo")
        target_after_first = link_target(root, "foo")
        second = manager.install("foo")

        assert first.outcome == Outcome.INSTALLED
        assert second.outcome == Outcome.UP_TO_DATE
        assert second.installed is True
        assert link_target(root, "foo") == target_after_first
        assert len(fetcher.calls) == 1

    def test_force_downloads_again(self, manager, source, fetcher, root):
        source.set("acme/foo", make_release("23.10", "foo.AppImage"))
        manager.install("foo")

        result = manager.install("foo", force=True)

        assert result.outcome == Outcome.INSTALLED
        assert len(fetcher.calls) == 2
        assert link_target(root, "foo") == str(root / "packages" / "foo" / "foo.23.10")

    def test_new_tag_relinks_only_new_artifact(self, manager, source, root):
        source.set("acme/foo", make_release("1.0", "foo.AppImage"))
        manager.install("foo")
        source.set("acme/foo", make_release("2.0", "foo.AppImage"))

        result = manager.install("foo")

        assert result.outcome == Outcome.INSTALLED
        assert result.previous_version == "1.0"
        assert link_target(root, "foo") == str(root / "packages" / "foo" / "foo.2.0")
        assert (root / "packages" / "foo" / "foo.1.0").exists()
        assert os.listdir(root / "bin") == ["foo"]

    def test_owner_only_permissions(self, manager, source, root):
        source.set("acme/foo", make_release("1.0", "foo.AppImage"))
        manager.install("foo")

        mode = stat.S_IMODE((root / "packages" / "foo" / "foo.1.0").stat().st_mode)
        assert mode == 0o700

    def test_permissive_permissions_when_configured(self, make_config, source, fetcher, root):
        manager = InstallManager(make_config(owner_only=False), source=source, fetcher=fetcher)
        source.set("acme/foo", make_release("1.0", "foo.AppImage"))
        manager.install("foo")

        mode = stat.S_IMODE((root / "packages" / "foo" / "foo.1.0").stat().st_mode)
        assert mode == 0o755

    def test_download_failure_keeps_previous_link(self, manager, source, fetcher, root):
        source.set("acme/foo", make_release("1.0", "foo.AppImage"))
        manager.install("foo")
        source.set("acme/foo", make_release("2.0", "foo.AppImage"))
        fetcher.error = DownloadFailed("Bad status downloading: 503", status=503)

        result = manager.install("foo")

        assert result.outcome == Outcome.DOWNLOAD_FAILED
        assert result.ok is False
        assert link_target(root, "foo") == str(root / "packages" / "foo" / "foo.1.0")
        assert not (root / "packages" / "foo" / "foo.2.0").exists()

    def test_interrupted_stream_is_never_linked(self, config, source, root):
        """A connection dropped mid-body must not produce a linked artifact."""
        manager = InstallManager(config, source=source, fetcher=fetch)
        source.set("acme/foo", make_release("2.0", "foo.AppImage"))

        response = MagicMock()
        response.status = 200
        response.headers = {"Content-Length": "1000"}
        response.read.side_effect = [b"partial bytes", ConnectionResetError("reset by peer")]
        response.__enter__.return_value = response
        response.__exit__.return_value = False

        with patch("grundle.downloader.urllib.request.urlopen", return_value=response):
            result = manager.install("foo")

        assert result.outcome == Outcome.DOWNLOAD_FAILED
        assert not (root / "bin" / "foo").exists()
        assert not (root / "bin" / "foo").is_symlink()
        assert os.listdir(root / "packages" / "foo") == []

    def test_truncated_chunked_body_is_download_failure(self, config, source, root):
        manager = InstallManager(config, source=source, fetcher=fetch)
        source.set("acme/foo", make_release("1.0", "foo.AppImage"))

        response = MagicMock()
        response.status = 200
        response.headers = {}
        response.read.side_effect = [b"partial", http.client.IncompleteRead(b"")]
        response.__enter__.return_value = response
        response.__exit__.return_value = False

        with patch("grundle.downloader.urllib.request.urlopen", return_value=response):
            result = manager.install("foo")

        assert result.outcome == Outcome.DOWNLOAD_FAILED
        assert result.reason
        assert not (root / "bin" / "foo").is_symlink()
        assert os.listdir(root / "packages" / "foo") == []

    def test_interrupted_upgrade_keeps_working_install(self, config, source, root):
        manager = InstallManager(config, source=source, fetcher=FakeFetcher())
        source.set("acme/foo", make_release("1.0", "foo.AppImage"))
        manager.install("foo")

        manager.fetcher = fetch
        source.set("acme/foo", make_release("2.0", "foo.AppImage"))
        response = MagicMock()
        response.status = 200
        response.headers = {}
        response.read.side_effect = [b"abc", OSError("disk full")]
        response.__enter__.return_value = response
        response.__exit__.return_value = False

        with patch("grundle.downloader.urllib.request.urlopen", return_value=response):
            result = manager.install("foo")

        assert result.outcome == Outcome.DOWNLOAD_FAILED
        assert manager.installed_version("foo") == "1.0"
        assert sorted(os.listdir(root / "packages" / "foo")) == sorted(["foo.1.0", SOURCE_FILE])

    def test_existing_file_at_link_path_is_replaced(self, manager, source, root):
        (root / "bin").mkdir(parents=True)
        (root / "bin" / "foo").write_text("old script")
        source.set("acme/foo", make_release("1.0", "foo.AppImage"))

        result = manager.install("foo")

        assert result.outcome == Outcome.INSTALLED
        assert (root / "bin" / "foo").is_symlink()

    def test_directory_at_link_path_is_filesystem_error(self, manager, source, root):
        (root / "bin" / "foo").mkdir(parents=True)
        source.set("acme/foo", make_release("1.0", "foo.AppImage"))

        result = manager.install("foo")

        assert result.outcome == Outcome.FILESYSTEM_ERROR
        assert (root / "bin" / "foo").is_dir()

    def test_no_temporary_links_left_behind(self, manager, source, root):
        source.set("acme/foo", make_release("1.0", "foo.AppImage"))
        manager.install("foo")
        source.set("acme/foo", make_release("2.0", "foo.AppImage"))
        manager.install("foo")

        assert os.listdir(root / "bin") == ["foo"]

    def test_tag_with_slash_is_sanitized(self, manager, source, root):
        source.set("acme/foo", make_release("release/24.03", "foo.AppImage"))

        result = manager.install("foo")

        assert result.outcome == Outcome.INSTALLED
        assert result.tag_name == "release_24.03"
        assert (root / "packages" / "foo" / "foo.release_24.03").is_file()

    def test_owner_repo_install_records_source(self, manager, source, root):
        source.set("someone/tool", make_release("0.9", "tool-x86_64.AppImage"))

        result = manager.install("someone/tool")

        assert result.outcome == Outcome.INSTALLED
        assert result.package_name == "tool"
        assert (root / "packages" / "tool" / SOURCE_FILE).exists()
        # later operations can use the bare name
        assert manager.resolve("tool")[1].repo == "someone/tool"

    def test_progress_reports_stages_in_order(self, manager, source):
        source.set("acme/foo", make_release("1.0", "foo.AppImage"))
        stages = []

        manager.install("foo", progress=lambda name, stage: stages.append(stage))

        assert stages == [
            InstallStage.RESOLVING,
            InstallStage.SELECTING,
            InstallStage.DOWNLOADING,
            InstallStage.LINKING,
            InstallStage.DONE,
        ]

    def test_progress_reports_failure(self, manager, source):
        source.set("acme/foo", SourceUnavailable("offline"))
        stages = []

        manager.install("foo", progress=lambda name, stage: stages.append(stage))

        assert stages == [InstallStage.RESOLVING, InstallStage.FAILED]

    def test_concurrent_operation_on_same_name_is_busy(self, manager, source, fetcher):
        source.set("acme/foo", make_release("1.0", "foo.AppImage"))
        assert manager._claim("foo") is True

        result = manager.install("foo")

        assert result.outcome == Outcome.BUSY
        assert fetcher.calls == []
        manager._release("foo")
        assert manager.install("foo").outcome == Outcome.INSTALLED

    def test_registry_updated(self, manager, source, root):
        source.set("acme/foo", make_release("1.0", "foo.AppImage"))
        manager.install("foo")

        package = manager.registry.get("foo")
        assert package.installed_version == "1.0"
        assert package.install_path == str(root / "bin" / "foo")

    def test_old_artifacts_pruned_beyond_retention(self, make_config, source, fetcher, root):
        manager = InstallManager(make_config(retain_versions=2), source=source, fetcher=fetcher)
        for tag in ("1.0", "2.0", "3.0"):
            source.set("acme/foo", make_release(tag, "foo.AppImage"))
            manager.install("foo")
            # distinct mtimes regardless of filesystem timestamp granularity
            artifact = root / "packages" / "foo" / f"foo.{tag}"
            stamp = time.time() + float(tag)
            os.utime(artifact, (stamp, stamp))

        artifacts = sorted(p for p in os.listdir(root / "packages" / "foo") if p.startswith("foo."))
        assert artifacts == ["foo.2.0", "foo.3.0"]


class TestUpgrade:
    """Tests for InstallManager.upgrade and upgrade_all."""

    def test_upgrade_not_installed(self, manager, source):
        source.set("acme/foo", make_release("1.0", "foo.AppImage"))
        result = manager.upgrade("foo")
        assert result.outcome == Outcome.NOT_INSTALLED
        assert result.ok is False

    def test_upgrade_to_new_tag(self, manager, source, root):
        source.set("acme/foo", make_release("1.0", "foo.AppImage"))
        manager.install("foo")
        source.set("acme/foo", make_release("2.0", "foo.AppImage"))

        result = manager.upgrade("foo")

        assert result.outcome == Outcome.INSTALLED
        assert result.action == "upgrade"
        assert result.previous_version == "1.0"
        assert link_target(root, "foo") == str(root / "packages" / "foo" / "foo.2.0")

    def test_upgrade_when_current(self, manager, source, fetcher):
        source.set("acme/foo", make_release("1.0", "foo.AppImage"))
        manager.install("foo")

        result = manager.upgrade("foo")

        assert result.outcome == Outcome.UP_TO_DATE
        assert len(fetcher.calls) == 1

    def test_upgrade_refuses_downgrade(self, manager, source, root):
        source.set("acme/foo", make_release("2.0", "foo.AppImage"))
        manager.install("foo")
        source.set("acme/foo", make_release("1.5", "foo.AppImage"))

        result = manager.upgrade("foo")

        assert result.outcome == Outcome.UP_TO_DATE
        assert "downgrade" in result.reason
        assert manager.installed_version("foo") == "2.0"

    def test_upgrade_between_tags_with_slash(self, manager, source, root):
        source.set("acme/foo", make_release("release/2.0", "foo.AppImage"))
        manager.install("foo")
        source.set("acme/foo", make_release("release/3.0", "foo.AppImage"))

        result = manager.upgrade("foo")

        assert result.outcome == Outcome.INSTALLED
        assert result.previous_version == "release_2.0"
        assert manager.installed_version("foo") == "release_3.0"

    def test_upgrade_same_tag_with_slash_is_current(self, manager, source, fetcher):
        source.set("acme/foo", make_release("release/2.0", "foo.AppImage"))
        manager.install("foo")

        result = manager.upgrade("foo")

        assert result.outcome == Outcome.UP_TO_DATE
        assert len(fetcher.calls) == 1

    def test_upgrade_to_unusable_tag(self, manager, source):
        source.set("acme/foo", make_release("1.0", "foo.AppImage"))
        manager.install("foo")
        source.set("acme/foo", make_release("..", "foo.AppImage"))

        result = manager.upgrade("foo")

        assert result.outcome == Outcome.RESOLUTION_FAILED
        assert manager.installed_version("foo") == "1.0"

    def test_forced_downgrade(self, manager, source):
        source.set("acme/foo", make_release("2.0", "foo.AppImage"))
        manager.install("foo")
        source.set("acme/foo", make_release("1.5", "foo.AppImage"))

        result = manager.upgrade("foo", force=True)

        assert result.outcome == Outcome.INSTALLED
        assert manager.installed_version("foo") == "1.5"

    def test_upgrade_all(self, manager, source):
        source.set("acme/foo", make_release("1.0", "foo.AppImage"))
        source.set("acme/bar", make_release("1.0", "bar.AppImage"))
        manager.install("foo")
        manager.install("bar")
        source.set("acme/foo", make_release("1.1", "foo.AppImage"))

        results = {r.package_name: r for r in manager.upgrade_all()}

        assert results["foo"].outcome == Outcome.INSTALLED
        assert results["bar"].outcome == Outcome.UP_TO_DATE


class TestRemove:
    """Tests for InstallManager.remove."""

    def test_remove_installed(self, manager, source, root):
        source.set("acme/foo", make_release("1.0", "foo.AppImage"))
        manager.install("foo")

        result = manager.remove("foo")

        assert result.outcome == Outcome.REMOVED
        assert result.previous_version == "1.0"
        assert not (root / "bin" / "foo").is_symlink()
        assert not (root / "packages" / "foo").exists()
        assert manager.registry.get("foo").installed_version is None

    def test_remove_not_installed(self, manager):
        result = manager.remove("foo")
        assert result.outcome == Outcome.NOT_INSTALLED

    def test_remove_dangling_link(self, manager, root):
        (root / "bin").mkdir(parents=True)
        os.symlink(str(root / "packages" / "foo" / "foo.1.0"), str(root / "bin" / "foo"))

        result = manager.remove("foo")

        assert result.outcome == Outcome.REMOVED
        assert not os.path.lexists(root / "bin" / "foo")


class TestRollback:
    """Tests for InstallManager.rollback."""

    def test_rollback_to_previous(self, manager, source, root):
        source.set("acme/foo", make_release("1.0", "foo.AppImage"))
        manager.install("foo")
        source.set("acme/foo", make_release("2.0", "foo.AppImage"))
        manager.install("foo")

        result = manager.rollback("foo")

        assert result.outcome == Outcome.ROLLED_BACK
        assert result.previous_version == "2.0"
        assert result.tag_name == "1.0"
        assert link_target(root, "foo") == str(root / "packages" / "foo" / "foo.1.0")
        assert manager.registry.get("foo").installed_version == "1.0"

    def test_rollback_without_previous(self, manager, source):
        source.set("acme/foo", make_release("1.0", "foo.AppImage"))
        manager.install("foo")

        result = manager.rollback("foo")

        assert result.outcome == Outcome.NO_PREVIOUS_VERSION
        assert result.ok is False

    def test_rollback_not_installed(self, manager):
        assert manager.rollback("foo").outcome == Outcome.NOT_INSTALLED

    def test_reinstall_after_rollback_reuses_artifact(self, manager, source, fetcher, root):
        source.set("acme/foo", make_release("1.0", "foo.AppImage"))
        manager.install("foo")
        source.set("acme/foo", make_release("2.0", "foo.AppImage"))
        manager.install("foo")
        manager.rollback("foo")

        result = manager.install("foo")

        assert result.outcome == Outcome.INSTALLED
        assert len(fetcher.calls) == 2
        assert manager.installed_version("foo") == "2.0"


class TestResolve:
    """Tests for name resolution."""

    def test_catalog_entry(self, manager):
        name, entry = manager.resolve("foo")
        assert name == "foo"
        assert entry.repo == "acme/foo"

    def test_builtin_catalog(self, manager):
        name, entry = manager.resolve("helix")
        assert entry.repo == "helix-editor/helix"

    def test_owner_repo(self, manager):
        name, entry = manager.resolve("someone/thing")
        assert name == "thing"
        assert entry.owner == "someone"
        assert entry.repo_name == "thing"

    def test_default_collaborators(self, config):
        manager = InstallManager(config)
        assert manager.source.policy == "stable"
        assert isinstance(manager.registry, PackageRegistry)
        assert manager.fetcher is fetch
