import pytest

from fakes import FakeProvider, make_dispatcher


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def dispatcher(fake_provider):
    return make_dispatcher(fake_provider)
