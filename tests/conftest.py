"""Test configuration and fixtures."""

import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from memkeep.filters import FilterEngine
from memkeep.registry import ContextRegistry
from memkeep.service import MemoryService
from memkeep.versions import VersionStore


@pytest.fixture(autouse=True)
def isolated_xdg(tmp_path, monkeypatch):
    """Keep tests away from the real ~/.config and ~/.local/share."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg-config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "xdg-data"))
    monkeypatch.delenv("MEMKEEP_DATA_DIR", raising=False)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def store(temp_dir) -> VersionStore:
    return VersionStore(temp_dir / "versions")


@pytest.fixture
def registry(temp_dir) -> ContextRegistry:
    return ContextRegistry(temp_dir / "registry.json")


@pytest.fixture
def engine(store, registry) -> FilterEngine:
    return FilterEngine(store, registry)


@pytest.fixture
def service(store, registry) -> MemoryService:
    return MemoryService(store, registry)
