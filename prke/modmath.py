"""
Modular arithmetic collaborator for PRKE.

This module provides:
- is_prime: deterministic Miller-Rabin for 64-bit inputs
- generate_prime: bounded random prime search in a bit-length range
- mod_exp / mod_inverse: field operations
- next_prime: bounded upward prime search
- prime_factorize: trial division against a fixed small-prime list
- LCGStream: the linear congruential stream used for resonance patterns
"""

import secrets
from typing import List

from .errors import ArithmeticInvariantViolation, PrimeSearchExhausted

SMALL_PRIMES = (2, 3, 5, 7, 11, 13, 17, 19, 23, 29, 31)

# Deterministic for every n < 3.3e24, far above anything PRKE produces
_MR_WITNESSES = (2, 3, 5, 7, 11, 13, 17, 19, 23, 29, 31, 37)

DEFAULT_MAX_ATTEMPTS = 100_000

_system_rng = secrets.SystemRandom()


# ============================================
# Primality
# ============================================

def is_prime(n: int) -> bool:
    if n < 2:
        return False
    for p in _MR_WITNESSES:
        if n % p == 0:
            return n == p

    d = n - 1
    r = 0
    while d % 2 == 0:
        d //= 2
        r += 1

    for a in _MR_WITNESSES:
        x = pow(a, d, n)
        if x == 1 or x == n - 1:
            continue
        for _ in range(r - 1):
            x = x * x % n
            if x == n - 1:
                break
        else:
            return False
    return True


def is_safe_prime(p: int) -> bool:
    """p is prime and (p - 1) / 2 is prime."""
    if not is_prime(p):
        return False
    return is_prime((p - 1) // 2)


def next_prime(n: int, max_steps: int = DEFAULT_MAX_ATTEMPTS) -> int:
    """Smallest prime >= n (2 for n < 2)."""
    if n < 2:
        return 2
    candidate = n
    for _ in range(max_steps):
        if is_prime(candidate):
            return candidate
        candidate += 1
    raise PrimeSearchExhausted(f"next_prime({n})", max_steps)


def generate_prime(
    min_bits: int,
    max_bits: int,
    rng=None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> int:
    """
    Draw a random prime p with min_bits <= p.bit_length() < max_bits.

    Args:
        min_bits: Smallest allowed bit length (>= 2)
        max_bits: Exclusive upper bound on the bit length
        rng: Anything with randrange(start, stop); SystemRandom by default
        max_attempts: Number of candidates drawn before giving up

    Raises:
        PrimeSearchExhausted: no prime was drawn within max_attempts
    """
    if min_bits < 2 or max_bits <= min_bits:
        raise ValueError(f"Invalid bit range [{min_bits}, {max_bits})")
    rng = rng or _system_rng

    lo = 1 << (min_bits - 1)
    hi = 1 << (max_bits - 1)
    for _ in range(max_attempts):
        candidate = rng.randrange(lo, hi) | 1
        if is_prime(candidate):
            return candidate
    raise PrimeSearchExhausted(f"generate_prime({min_bits}, {max_bits})", max_attempts)


# ============================================
# Field operations
# ============================================

def mod_exp(base: int, exp: int, modulus: int) -> int:
    if modulus == 1:
        return 0
    return pow(base, exp, modulus)


def mod_inverse(value: int, modulus: int) -> int:
    try:
        return pow(value, -1, modulus)
    except ValueError as exc:
        raise ArithmeticInvariantViolation(
            f"{value} is not invertible modulo {modulus}"
        ) from exc


# ============================================
# Factorization
# ============================================

def prime_factorize(n: int) -> List[int]:
    """
    Factor n by trial division against SMALL_PRIMES.

    A remainder above 1 is appended as a single factor when it is prime,
    and dropped otherwise.
    """
    factors = []
    num = n
    if num <= 0:
        return factors
    for p in SMALL_PRIMES:
        while num % p == 0:
            factors.append(p)
            num //= p
    if num > 1 and is_prime(num):
        factors.append(num)
    return factors


# ============================================
# Deterministic stream
# ============================================

class LCGStream:
    """
    seed <- (seed * 1664525 + 1013904223) mod 2^32

    Exposes randrange() so it can stand in for a random source wherever
    the draw has to be reproducible from the seed alone.
    """

    MULTIPLIER = 1664525
    INCREMENT = 1013904223
    MASK = 0xFFFFFFFF

    def __init__(self, seed: int):
        self.state = seed

    def advance(self) -> int:
        self.state = (self.state * self.MULTIPLIER + self.INCREMENT) & self.MASK
        return self.state

    def randrange(self, start: int, stop: int) -> int:
        return start + self.advance() % (stop - start)