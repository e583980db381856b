import pytest

from fluttery.errors import PortsExhaustedError
from fluttery.ports import PortAllocator


def test_acquire_hands_out_lowest_free_port() -> None:
    ports = PortAllocator(8080, 3)

    assert [ports.acquire(), ports.acquire()] == [8080, 8081]
    ports.release(8080)
    assert ports.acquire() == 8080
    assert ports.held == frozenset({8080, 8081})
    assert ports.available == 1


def test_exhausted_range_raises_retriable_error() -> None:
    ports = PortAllocator(9000, 2)
    ports.acquire()
    ports.acquire()

    with pytest.raises(PortsExhaustedError) as excinfo:
        ports.acquire()

    assert excinfo.value.retriable is True
    assert excinfo.value.code == "ports_exhausted"


def test_release_is_idempotent() -> None:
    ports = PortAllocator(8080, 2)
    port = ports.acquire()

    ports.release(port)
    ports.release(port)
    ports.release(1234)

    assert not ports.is_held(port)
    assert ports.available == 2


def test_empty_range_is_rejected() -> None:
    with pytest.raises(ValueError):
        PortAllocator(8080, 0)
