"""
Fixed-width big-endian encoding for PRKE public material.

Formats:
    field element: value (8 bytes) || modulus (8 bytes)
    pattern:       count (2 bytes) || prime_0 (8 bytes) || ... || prime_{n-1}
"""

from typing import List, Sequence, Tuple

from .errors import WireFormatError

U64_SIZE = 8
COUNT_SIZE = 2
FIELD_ELEMENT_SIZE = 2 * U64_SIZE


def _u64(n: int) -> bytes:
    try:
        return n.to_bytes(U64_SIZE, "big")
    except OverflowError as exc:
        raise WireFormatError(f"{n} does not fit in 64 bits") from exc


def encode_field_element(value: int, modulus: int) -> bytes:
    return _u64(value) + _u64(modulus)


def decode_field_element(raw: bytes) -> Tuple[int, int]:
    if len(raw) != FIELD_ELEMENT_SIZE:
        raise WireFormatError(
            f"Field element must be {FIELD_ELEMENT_SIZE} bytes, got {len(raw)}"
        )
    value = int.from_bytes(raw[:U64_SIZE], "big")
    modulus = int.from_bytes(raw[U64_SIZE:], "big")
    if modulus == 0 or value >= modulus:
        raise WireFormatError(f"Value {value} is not reduced modulo {modulus}")
    return value, modulus


def encode_pattern(pattern: Sequence[int]) -> bytes:
    if len(pattern) >= 1 << (8 * COUNT_SIZE):
        raise WireFormatError(f"Pattern too long: {len(pattern)}")
    out = len(pattern).to_bytes(COUNT_SIZE, "big")
    for prime in pattern:
        out += _u64(prime)
    return out


def decode_pattern(raw: bytes) -> List[int]:
    if len(raw) < COUNT_SIZE:
        raise WireFormatError("Pattern is missing its length prefix")
    count = int.from_bytes(raw[:COUNT_SIZE], "big")
    expected = COUNT_SIZE + count * U64_SIZE
    if len(raw) != expected:
        raise WireFormatError(f"Pattern of {count} primes must be {expected} bytes, got {len(raw)}")
    return [
        int.from_bytes(raw[off:off + U64_SIZE], "big")
        for off in range(COUNT_SIZE, expected, U64_SIZE)
    ]
