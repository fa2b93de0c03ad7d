import pytest

from fuel_dispatch.main import build_services
from fuel_dispatch.store import MemoryDriverStore, MemoryEventLedger, MemoryOrderStore

from support import Clock, FakeGateway, FakeIdentity, RecordingBroadcaster


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def identity():
    return FakeIdentity()


@pytest.fixture
def make_services(broadcaster, gateway, identity):
    def _make(orders=None, drivers=None, **options):
        return build_services(
            orders or MemoryOrderStore(),
            drivers or MemoryDriverStore(),
            MemoryEventLedger(),
            broadcaster=broadcaster,
            gateway=gateway,
            identity=identity,
            clock=Clock(),
            **options,
        )
    return _make


@pytest.fixture
def services(make_services):
    return make_services()
