"""Shared test helpers."""

import base64


def make_key(seed: int) -> str:
    """Deterministic, well-formed tunnel public key."""
    return base64.b64encode(bytes([seed % 256]) * 32).decode()


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds
