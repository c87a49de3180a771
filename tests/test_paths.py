"""Tests for personal_infra.paths module."""

import pathlib

import pytest

import personal_infra.paths
from personal_infra.paths import Paths


def test_paths_root_with_infra_root_set(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that Paths.root returns PERSONAL_INFRA_ROOT when set."""
    test_path = "/custom/deployments/path"
    monkeypatch.setenv("PERSONAL_INFRA_ROOT", test_path)

    paths = Paths()
    assert paths.root == pathlib.Path(test_path)


def test_paths_root_default(monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path) -> None:
    """Test that Paths.root falls back to the deployments directory at the top of the repository."""
    monkeypatch.delenv("PERSONAL_INFRA_ROOT", raising=False)
    monkeypatch.setenv("PERSONAL_INFRA_TOP", str(tmp_path))

    paths = Paths()
    assert paths.root == tmp_path / "deployments"


def test_top_with_infra_top_set(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PERSONAL_INFRA_TOP", "/srv/personal-infra")

    assert personal_infra.paths.top() == pathlib.Path("/srv/personal-infra")


def test_paths_assets_default(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that the build contexts ship inside the package."""
    monkeypatch.delenv("PERSONAL_INFRA_ASSETS", raising=False)

    paths = Paths()
    assert paths.assets == personal_infra.paths.HERE / "assets"
    assert (paths.proxy_build_context / "Dockerfile").is_file()
    assert (paths.warp_build_context / "Dockerfile").is_file()
    assert paths.warp_buildspec.is_file()


def test_paths_assets_with_override(monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path) -> None:
    monkeypatch.setenv("PERSONAL_INFRA_ASSETS", str(tmp_path))

    paths = Paths()
    assert paths.proxy_build_context == tmp_path / "proxy"
    assert paths.warp_build_context == tmp_path / "proxy-with-warp"
    assert paths.warp_buildspec == tmp_path / "proxy-with-warp" / "buildspec.yml"
