"""Number-theory helpers for textbook RSA: primality, prime sampling, gcd, inverse."""

import secrets
from typing import Optional


class ExhaustedAttempts(RuntimeError):
    """No prime was drawn within the allowed number of tries."""

    def __init__(self, prime_range: int, max_tries: int):
        super().__init__(
            f"No prime number found in range up to {prime_range} after {max_tries} attempts."
        )
        self.prime_range = prime_range
        self.max_tries = max_tries


def is_prime(num: int) -> bool:
    """
    Deterministic trial division using the 6k +/- 1 wheel.

    :param num: non-negative integer
    :return: True if num is prime
    """
    if num <= 1:
        return False
    if num <= 3:
        return True
    if num % 2 == 0 or num % 3 == 0:
        return False

    i = 5
    while i * i <= num:
        if num % i == 0 or num % (i + 2) == 0:
            return False
        i += 6
    return True


def generate_prime(prime_range: int = 5000, max_tries: int = 1000) -> int:
    """
    Draw uniformly from [1, prime_range] until a prime shows up.

    :param prime_range: inclusive upper bound
    :param max_tries: draws allowed before giving up
    :return: a prime
    :raises ExhaustedAttempts: caller should retry with a larger range
    """
    if prime_range < 1:
        raise ValueError("prime_range must be a positive integer")

    for _ in range(max_tries):
        num = secrets.randbelow(prime_range) + 1
        if is_prime(num):
            return num
    raise ExhaustedAttempts(prime_range, max_tries)


def gcd(a: int, b: int) -> int:
    """Euclid's algorithm; gcd(a, 0) == a."""
    while b != 0:
        a, b = b, a % b
    return a


def mod_inverse(e: int, m: int) -> Optional[int]:
    """
    Inverse of e modulo m via the extended Euclidean algorithm.

    :return: value in [0, m), 0 when m == 1, None if e and m are not coprime
    """
    if m == 1:
        return 0

    old_r, r = e, m
    old_s, s = 1, 0
    while r != 0:
        q = old_r // r
        old_r, r = r, old_r - q * r
        old_s, s = s, old_s - q * s

    if old_r != 1:
        return None
    return old_s % m
