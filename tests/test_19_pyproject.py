"""Tests for pyproject.toml and package installation."""
from __future__ import annotations

from pathlib import Path

import pytest

PYPROJECT = Path(__file__).parent.parent / "pyproject.toml"


class TestPackageInstallation:
    """Test that the package is properly installed."""

    def test_package_importable(self):
        import speechflow
        assert speechflow is not None

    def test_version_defined(self):
        import speechflow
        assert isinstance(speechflow.__version__, str)
        assert len(speechflow.__version__) > 0

    def test_core_modules_importable(self):
        from speechflow import context, errors
        from speechflow.audio import transcoder
        from speechflow.core import config, logging, metrics
        from speechflow.services import speech_service
        from speechflow.speech import cache, coordinator, gateway
        from speechflow.storage import store
        from speechflow.usage import ledger

        for module in (context, errors, transcoder, config, logging, metrics,
                       speech_service, cache, coordinator, gateway, store, ledger):
            assert module is not None


class TestPyprojectToml:
    """Test pyproject.toml configuration."""

    def test_pyproject_valid_toml(self):
        tomllib = pytest.importorskip("tomllib")
        data = tomllib.loads(PYPROJECT.read_text(encoding="utf-8"))

        assert data["project"]["name"] == "speechflow"
        assert "build-system" in data

    def test_pyproject_has_dependencies(self):
        tomllib = pytest.importorskip("tomllib")
        data = tomllib.loads(PYPROJECT.read_text(encoding="utf-8"))

        dep_names = [d.split(">=")[0].split("[")[0] for d in data["project"]["dependencies"]]
        for name in ("httpx", "numpy", "soundfile", "pyyaml", "prometheus_client"):
            assert name in dep_names
