"""Shared fixtures for permit build tests."""

from pathlib import Path

import pytest

from permit_expediter.config.settings import PermitBuilderSettings
from permit_expediter.pipeline.orchestrator import PermitBuildOrchestrator
from permit_expediter.storage import FileObjectStorage, InMemoryPermitStore
from permit_test_helpers import seed_rows


@pytest.fixture
def rows():
    return seed_rows()


@pytest.fixture
def store(rows):
    return InMemoryPermitStore(rows)


@pytest.fixture
def settings(tmp_path: Path):
    return PermitBuilderSettings(workspace_dir=tmp_path, signing_secret="test-secret")


@pytest.fixture
def object_storage(settings):
    return FileObjectStorage(settings.workspace_dir, settings.signing_secret)


@pytest.fixture
def orchestrator(store, object_storage, settings):
    return PermitBuildOrchestrator(store=store, object_storage=object_storage, settings=settings)
