from decimal import Decimal
from math import isqrt

# Below this bound trial division is cheap; above it Miller-Rabin takes over.
TRIAL_DIVISION_LIMIT = 1_000_000

# Deterministic for every n < 3.3 * 10**24, which covers the 64-bit range.
MILLER_RABIN_WITNESSES = (2, 3, 5, 7, 11, 13, 17, 19, 23, 29, 31, 37)


def is_prime(n: int) -> bool:
    if n < 2:
        return False
    if n < TRIAL_DIVISION_LIMIT:
        return _trial_division(n)
    return _miller_rabin(n)


def _trial_division(n: int) -> bool:
    if n < 2:
        return False
    if n < 4:
        return True
    if n % 2 == 0 or n % 3 == 0:
        return False
    factor = 5
    while factor * factor <= n:
        if n % factor == 0 or n % (factor + 2) == 0:
            return False
        factor += 6
    return True


def _miller_rabin(n: int) -> bool:
    if n < 2:
        return False
    for witness in MILLER_RABIN_WITNESSES:
        if n == witness:
            return True
        if n % witness == 0:
            return False

    d = n - 1
    r = 0
    while d % 2 == 0:
        d //= 2
        r += 1

    for witness in MILLER_RABIN_WITNESSES:
        x = pow(witness, d, n)
        if x == 1 or x == n - 1:
            continue
        for _ in range(r - 1):
            x = pow(x, 2, n)
            if x == n - 1:
                break
        else:
            return False
    return True


def next_candidate(n: int) -> int:
    """Return the next integer after ``n`` worth testing, skipping evens past 2."""
    if n < 2:
        return 2
    if n == 2:
        return 3
    return n + 2 if n % 2 else n + 1


def prime_index(prime: int) -> int | None:
    """Ordinal position of ``prime`` among the primes (2 is 1); None if not prime.

    Sieves every integer up to ``prime``, so memory grows with it. Callers
    serving requests go through :func:`display_index`.
    """
    if not is_prime(prime):
        return None
    sieve = bytearray([1]) * (prime + 1)
    sieve[0] = sieve[1] = 0
    for factor in range(2, isqrt(prime) + 1):
        if sieve[factor]:
            start = factor * factor
            sieve[start::factor] = bytes(len(range(start, prime + 1, factor)))
    return sum(sieve)


def price(prime: int) -> Decimal:
    return Decimal(prime)


# Larger primes are shown without an index.
INDEX_DISPLAY_LIMIT = 1_000_000


def display_index(prime: int) -> int | None:
    if prime > INDEX_DISPLAY_LIMIT:
        return None
    return prime_index(prime)
