"""Pytest configuration and fixtures."""

import sys
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for cloud_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from cloud_mock import MockCloudState, build_mock_registry  # noqa: E402

from provisioner.blueprint import build_plan  # noqa: E402
from provisioner.config import Config  # noqa: E402
from provisioner.descriptors import DeploymentPlan  # noqa: E402
from provisioner.models import DeploymentSpec  # noqa: E402
from provisioner.provider import ProviderRegistry  # noqa: E402

MINIMAL_DEPLOYMENT: dict[str, Any] = {
    "projectId": "test-project",
    "region": "us-central1",
    "projectNumber": "123456789012",
}


@pytest.fixture
def fast_config() -> Config:
    """Config with zero backoff so retry tests run instantly."""
    return Config(
        retry_max_attempts=3,
        retry_backoff_base_seconds=0.0,
        retry_backoff_max_seconds=0.0,
        operation_poll_seconds=0.0,
    )


@pytest.fixture
def spec() -> DeploymentSpec:
    return DeploymentSpec.model_validate(MINIMAL_DEPLOYMENT)


@pytest.fixture
def plan(spec: DeploymentSpec) -> DeploymentPlan:
    return build_plan(spec)


@pytest.fixture
def state() -> MockCloudState:
    return MockCloudState()


@pytest.fixture
def registry(state: MockCloudState) -> ProviderRegistry:
    return build_mock_registry(state)


@pytest.fixture(autouse=True)
def _clear_secret_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer credentials and supplied secrets out of tests."""
    for var in (
        "GOOGLE_APPLICATION_CREDENTIALS",
        "ALLOW_SERVICE_ACCOUNT_KEYS",
        "N8N_ENCRYPTION_KEY",
        "DB_PASSWORD",
    ):
        monkeypatch.delenv(var, raising=False)
