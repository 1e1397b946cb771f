"""Typed failures raised by the PRKE engine."""


class PRKEError(Exception):
    """Base class for every PRKE failure."""


class SessionNotFound(PRKEError):
    def __init__(self, local_id: str, peer_id: str):
        super().__init__(f"No session for {local_id!r} (peer {peer_id!r})")
        self.local_id = local_id
        self.peer_id = peer_id


class PatternVerificationFailed(PRKEError):
    def __init__(self, node_id: str):
        super().__init__(f"Resonance pattern does not match node {node_id!r}")
        self.node_id = node_id


class PrimeSearchExhausted(PRKEError):
    """A bounded prime search ran out of attempts."""

    def __init__(self, what: str, attempts: int):
        super().__init__(f"{what}: no prime found after {attempts} attempts")
        self.what = what
        self.attempts = attempts


class ArithmeticInvariantViolation(PRKEError):
    """
    Raised for a non-invertible value modulo the field prime.

    With a prime modulus this only happens for a multiple of the modulus,
    so it always indicates an implementation bug. Never caught by the engine.
    """


class WireFormatError(PRKEError, ValueError):
    pass
