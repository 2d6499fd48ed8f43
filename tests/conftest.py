"""Shared pytest fixtures."""

import pytest
from moto import mock_aws

from infra_reconciler.control_plane.local import LocalControlPlane
from infra_reconciler.settings import Settings, get_settings
from infra_reconciler.state import ObservedState


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Keep settings, state files and AWS credentials away from the developer's machine."""
    monkeypatch.setenv("DEPLOYMENT_MODE", "local")
    monkeypatch.setenv("STATE_FILE", str(tmp_path / "state.json"))
    monkeypatch.setenv("LOCAL_STORE_FILE", str(tmp_path / "local_store.json"))
    monkeypatch.setenv("RETRY_BASE_DELAY", "0")
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.delenv("AWS_PROFILE", raising=False)
    monkeypatch.delenv("AWS_ENDPOINT_URL", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        deployment_mode="local",
        max_workers=4,
        max_retries=3,
        retry_base_delay=0,
        retry_backoff=2.0,
        failure_policy="halt",
        state_file=str(tmp_path / "state.json"),
        local_store_file=str(tmp_path / "local_store.json"),
    )


@pytest.fixture
def aws_settings():
    return Settings(
        deployment_mode="aws-prod",
        aws_region="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
        aws_profile=None,
        max_workers=1,
        max_retries=3,
        retry_base_delay=0,
    )


@pytest.fixture
def local_plane():
    return LocalControlPlane()


@pytest.fixture
def observed():
    return ObservedState()


@pytest.fixture
def mocked_aws():
    """Route boto3 calls to moto's in-memory AWS."""
    with mock_aws():
        yield
