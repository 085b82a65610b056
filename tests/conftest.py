import pytest

from fakes import REPO, FakeCompletion, FakeSourceControl


@pytest.fixture
def source_control():
    fake = FakeSourceControl()
    fake.add_repo(REPO)
    return fake


@pytest.fixture
def completion():
    return FakeCompletion()
