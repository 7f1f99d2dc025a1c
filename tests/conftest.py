import pytest

from inference_manager.schemas.job import Credentials

from fakes import FakeExecutor


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(host="login.cluster.test", username="alice", secret="hunter2")


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()
