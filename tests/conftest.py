"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from azure_mock import MockCloudClient, make_config, make_context, write_cluster_template  # noqa: E402

from provisioner.config import Config  # noqa: E402
from provisioner.context import RunContext  # noqa: E402
from provisioner.security import FORBIDDEN_CREDENTIAL_ENV_VARS  # noqa: E402


@pytest.fixture(autouse=True)
def secretless_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Runs must never see credentials from the developer's shell."""
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        monkeypatch.delenv(env_var, raising=False)


@pytest.fixture
def templates_dir(tmp_path: Path) -> Path:
    """Templates directory holding a compiled cluster template."""
    directory = tmp_path / "templates"
    write_cluster_template(directory)
    return directory


@pytest.fixture
def config(templates_dir: Path) -> Config:
    return make_config(templates_dir)


@pytest.fixture
def context(config: Config) -> RunContext:
    return make_context(config)


@pytest.fixture
def cloud() -> MockCloudClient:
    return MockCloudClient()
