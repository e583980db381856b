from __future__ import annotations

from fluttery.errors import PortsExhaustedError


class PortAllocator:
    """Hands out preview ports from a fixed range, lowest free port first."""

    def __init__(self, base_port: int = 8080, size: int = 1000) -> None:
        if size < 1:
            raise ValueError("Port range size must be at least 1.")
        self.base_port = base_port
        self.size = size
        self._held: set[int] = set()

    @property
    def held(self) -> frozenset[int]:
        return frozenset(self._held)

    @property
    def available(self) -> int:
        return self.size - len(self._held)

    def is_held(self, port: int) -> bool:
        return port in self._held

    def acquire(self) -> int:
        for port in range(self.base_port, self.base_port + self.size):
            if port not in self._held:
                self._held.add(port)
                return port
        raise PortsExhaustedError(
            f"No available ports in range {self.base_port}-{self.base_port + self.size - 1}"
        )

    def release(self, port: int) -> None:
        # Releasing an unheld port is a no-op; error-cleanup paths may release twice.
        self._held.discard(port)
