"""
Holographic key fragments (Shamir-style sharing over the PRKE field).

The secret is the constant term of a degree-(count-1) polynomial whose
other coefficients are fresh primes; fragment i is P(i) mod FIELD_PRIME.

reconstruct_secret() recovers P(0) by Lagrange interpolation. The
multi-party exchange never calls it: each fragment is only ever used as a
private prime for a pairwise exchange.
"""

from typing import List, Sequence, Tuple

from .modmath import generate_prime, mod_inverse, DEFAULT_MAX_ATTEMPTS
from .session import FIELD_PRIME

COEFFICIENT_MIN_BITS = 10
COEFFICIENT_MAX_BITS = 20


def evaluate_polynomial(coefficients: Sequence[int], x: int, modulus: int = FIELD_PRIME) -> int:
    result = 0
    x_power = 1
    for c in coefficients:
        result = (result + c * x_power) % modulus
        x_power = (x_power * x) % modulus
    return result


def generate_holographic_fragments(
    private_prime: int,
    count: int,
    rng=None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> List[int]:
    """
    Split private_prime into `count` fragments.

    Args:
        private_prime: Secret (constant term)
        count: Number of fragments (= participants), at least 1
        rng: Random source for the coefficients; SystemRandom by default

    Returns:
        [P(1), P(2), ..., P(count)] mod FIELD_PRIME
    """
    if count < 1:
        raise ValueError("Fragment count must be at least 1")

    coefficients = [private_prime]
    for _ in range(1, count):
        coefficients.append(generate_prime(
            COEFFICIENT_MIN_BITS, COEFFICIENT_MAX_BITS, rng=rng, max_attempts=max_attempts,
        ))

    return [evaluate_polynomial(coefficients, x) for x in range(1, count + 1)]


def reconstruct_secret(points: Sequence[Tuple[int, int]], modulus: int = FIELD_PRIME) -> int:
    """
    Lagrange interpolation of P(0) from (x, P(x)) points.

    All the points of the polynomial (its degree + 1) are needed; fewer
    points interpolate a different polynomial.
    """
    xs = [x for x, _ in points]
    if len(set(xs)) != len(xs):
        raise ValueError("Fragment x coordinates must be distinct")

    secret = 0
    for j, (xj, yj) in enumerate(points):
        num = 1
        den = 1
        for m, (xm, _) in enumerate(points):
            if m == j:
                continue
            num = (num * -xm) % modulus
            den = (den * (xj - xm)) % modulus
        secret = (secret + yj * num * mod_inverse(den, modulus)) % modulus
    return secret
