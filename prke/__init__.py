"""Prime Resonance Key Exchange (PRKE): key agreement engine and session state."""

from .primitive import (
    b64e,
    b64d,
    hash_bytes,
    hash_string,
)

from .modmath import (
    is_prime,
    is_safe_prime,
    next_prime,
    generate_prime,
    mod_exp,
    mod_inverse,
    prime_factorize,
)

from .errors import (
    PRKEError,
    SessionNotFound,
    PatternVerificationFailed,
    PrimeSearchExhausted,
    ArithmeticInvariantViolation,
    WireFormatError,
)

from .config import PRKESettings, configure_logging

from .session import (
    FIELD_PRIME,
    GENERATOR,
    PrimeFieldElement,
    PRKESession,
    ExchangeOffer,
    RotationMessage,
    FragmentExchange,
)

from .fragments import (
    generate_holographic_fragments,
    reconstruct_secret,
)

from .keystore import SessionStore

from .protocol import PRKEProtocol, get_session_id

__all__ = [
    # Collaborators
    "b64e",
    "b64d",
    "hash_bytes",
    "hash_string",
    "is_prime",
    "is_safe_prime",
    "next_prime",
    "generate_prime",
    "mod_exp",
    "mod_inverse",
    "prime_factorize",
    # Errors
    "PRKEError",
    "SessionNotFound",
    "PatternVerificationFailed",
    "PrimeSearchExhausted",
    "ArithmeticInvariantViolation",
    "WireFormatError",
    # Config
    "PRKESettings",
    "configure_logging",
    # Session state
    "FIELD_PRIME",
    "GENERATOR",
    "PrimeFieldElement",
    "PRKESession",
    "ExchangeOffer",
    "RotationMessage",
    "FragmentExchange",
    # Fragments
    "generate_holographic_fragments",
    "reconstruct_secret",
    # Engine
    "SessionStore",
    "PRKEProtocol",
    "get_session_id",
]
