"""
Shared fixtures: an isolated install root plus release source and fetcher doubles.
"""

import os
from pathlib import Path

import pytest

from grundle.config import Config, PackageConfig, Preferences
from grundle.release_source import Asset, Release, ReleaseNotFound, ReleaseSource


APPIMAGE_PAYLOAD = b"\x7fELF-appimage-payload"


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep tests away from the real home directory and environment."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("GRUNDLE_ROOT", raising=False)
    monkeypatch.delenv("GRUNDLE_DEBUG", raising=False)
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    monkeypatch.chdir(tmp_path)
    return home


@pytest.fixture
def root(tmp_path) -> Path:
    return tmp_path / "grundle-root"


@pytest.fixture
def config(root) -> Config:
    return Config(
        root=str(root),
        packages={
            "foo": PackageConfig(repo="acme/foo", description="Foo editor"),
            "bar": PackageConfig(repo="acme/bar"),
        },
    )


def make_release(tag: str, *names: str, prerelease: bool = False, published_at: str = "") -> Release:
    return Release(
        tag_name=tag,
        assets=tuple(
            Asset(name=n, download_url=f"https://example.com/{tag}/{n}", size=len(APPIMAGE_PAYLOAD))
            for n in names
        ),
        prerelease=prerelease,
        published_at=published_at,
    )


class FakeReleaseSource(ReleaseSource):
    """Returns canned releases (or raises canned errors) per owner/repo."""

    def __init__(self, releases=None):
        self.releases = dict(releases or {})
        self.calls = []

    def set(self, repo: str, release_or_error) -> None:
        self.releases[repo] = release_or_error

    def latest_release(self, owner: str, repo: str) -> Release:
        key = f"{owner}/{repo}"
        self.calls.append(key)
        value = self.releases.get(key)
        if value is None:
            raise ReleaseNotFound(f"{key} has no releases")
        if isinstance(value, Exception):
            raise value
        return value


class FakeFetcher:
    """Writes a fixed payload to the destination, or raises."""

    def __init__(self, payload: bytes = APPIMAGE_PAYLOAD, error: Exception | None = None):
        self.payload = payload
        self.error = error
        self.calls = []

    def __call__(self, url, dest_path, timeout=30, cancel=None, **kwargs):
        self.calls.append((url, dest_path))
        if self.error is not None:
            raise self.error
        os.makedirs(os.path.dirname(dest_path), exist_ok=True)
        with open(dest_path, "wb") as f:
            f.write(self.payload)
        return len(self.payload)


@pytest.fixture
def source() -> FakeReleaseSource:
    return FakeReleaseSource()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


def snapshot_tree(path: Path) -> set[str]:
    """All paths below path (empty set if it does not exist)."""
    if not path.exists():
        return set()
    return {str(p.relative_to(path)) for p in path.rglob("*")}


@pytest.fixture
def make_config(root):
    def factory(**preferences) -> Config:
        return Config(
            root=str(root),
            preferences=Preferences(**preferences),
            packages={"foo": PackageConfig(repo="acme/foo")},
        )
    return factory
