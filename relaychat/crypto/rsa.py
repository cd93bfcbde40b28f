"""
Textbook RSA: key generation and per-character encrypt/decrypt.

No padding, no hardening. Every character code is raised to the key exponent
on its own, and the resulting integers travel as decimal strings.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from relaychat.crypto.numtheory import ExhaustedAttempts, gcd, generate_prime, mod_inverse


DEFAULT_PRIME_RANGE = 5000
RANGE_STEP = 500
MAX_KEYGEN_ATTEMPTS = 32


class KeyFormatError(ValueError):
    """Key material (or a ciphertext symbol) is not a usable integer."""


class SymbolRangeError(ValueError):
    """A character code does not fit below the modulus and could not be recovered."""


class KeyGenerationError(RuntimeError):
    """Key generation stayed degenerate for every allowed attempt."""


@dataclass(frozen=True)
class PublicKey:
    e: int
    n: int

    def to_wire(self) -> Dict[str, str]:
        return {"e": str(self.e), "n": str(self.n)}


@dataclass(frozen=True)
class PrivateKey:
    d: int
    n: int

    def to_wire(self) -> Dict[str, str]:
        return {"d": str(self.d), "n": str(self.n)}


@dataclass(frozen=True)
class KeyPair:
    public: PublicKey
    private: PrivateKey


def _parse_component(data: Mapping[str, Any], field: str) -> int:
    try:
        value = data[field]
    except (KeyError, TypeError) as exc:
        raise KeyFormatError(f"Key component '{field}' is missing") from exc

    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise KeyFormatError(f"Key component '{field}' must be a decimal string")
    try:
        return int(value)
    except ValueError as exc:
        raise KeyFormatError(f"Key component '{field}' is not numeric: {value!r}") from exc


def public_key_from_wire(data: Mapping[str, Any]) -> PublicKey:
    """Build a PublicKey from {"e": "...", "n": "..."}."""
    e = _parse_component(data, "e")
    n = _parse_component(data, "n")
    if n <= 0:
        raise KeyFormatError("Modulus must be positive")
    return PublicKey(e=e, n=n)


def private_key_from_wire(data: Mapping[str, Any]) -> PrivateKey:
    """Build a PrivateKey from {"d": "...", "n": "..."}."""
    d = _parse_component(data, "d")
    n = _parse_component(data, "n")
    if n <= 0:
        raise KeyFormatError("Modulus must be positive")
    return PrivateKey(d=d, n=n)


def _select_e(phi: int) -> Optional[int]:
    # Smallest e in [2, phi) coprime with phi.
    e = 2
    while e < phi:
        if gcd(e, phi) == 1:
            return e
        e += 1
    return None


def _sample_distinct_primes(prime_range: int):
    p = generate_prime(prime_range)
    q = generate_prime(prime_range)
    tries = 0
    while p == q:
        tries += 1
        if tries > 1000:
            # The range holds a single prime (e.g. prime_range == 2).
            raise ExhaustedAttempts(prime_range, tries)
        q = generate_prime(prime_range)
    return p, q


def generate_key_pair(
    prime_range: int = DEFAULT_PRIME_RANGE,
    range_step: int = RANGE_STEP,
    max_attempts: int = MAX_KEYGEN_ATTEMPTS,
    min_modulus: Optional[int] = None,
) -> KeyPair:
    """
    Generate a textbook RSA key pair from two distinct primes in [1, prime_range].

    Degenerate draws (no e coprime with phi, no inverse, no primes found, or a
    modulus below min_modulus) are retried with prime_range widened by
    range_step, at most max_attempts times.

    :raises KeyGenerationError: if every attempt was degenerate
    """
    current_range = prime_range
    for _attempt in range(max_attempts):
        try:
            p, q = _sample_distinct_primes(current_range)
        except ExhaustedAttempts as exc:
            print(f"[RSA] {exc} Retrying key generation.")
            current_range += range_step
            continue

        n = p * q
        phi = (p - 1) * (q - 1)

        if min_modulus is not None and n < min_modulus:
            print(f"[RSA] Modulus {n} below {min_modulus}, retrying key generation.")
            current_range += range_step
            continue

        e = _select_e(phi)
        if e is None:
            print("[RSA] Could not find suitable 'e' (phi too small), retrying key generation.")
            current_range += range_step
            continue

        d = mod_inverse(e, phi)
        if d is None:
            print("[RSA] Could not compute modular inverse for 'd', retrying key generation.")
            current_range += range_step
            continue

        return KeyPair(public=PublicKey(e=e, n=n), private=PrivateKey(d=d, n=n))

    raise KeyGenerationError(
        f"No usable key pair after {max_attempts} attempts (last prime range {current_range})"
    )


def encrypt_symbol(value: int, e: int, n: int) -> int:
    """value^e mod n. Values >= n give a result that does not decrypt back."""
    return pow(value, e, n)


def decrypt_symbol(cipher: int, d: int, n: int) -> int:
    """cipher^d mod n."""
    return pow(cipher, d, n)


def encrypt_message(text: str, public_key: PublicKey) -> List[str]:
    """
    Encrypt each character code separately, preserving order.

    :raises SymbolRangeError: a character code is not below the modulus
    """
    symbols = []
    for ch in text:
        code = ord(ch)
        if code >= public_key.n:
            raise SymbolRangeError(
                f"Character code {code} does not fit below modulus {public_key.n}"
            )
        symbols.append(str(encrypt_symbol(code, public_key.e, public_key.n)))
    return symbols


def decrypt_message(symbols: Iterable[Any], private_key: PrivateKey) -> str:
    """Inverse of encrypt_message, symbol by symbol."""
    chars = []
    for symbol in symbols:
        if isinstance(symbol, bool) or not isinstance(symbol, (int, str)):
            raise KeyFormatError(f"Ciphertext symbol must be a decimal string: {symbol!r}")
        try:
            cipher = int(symbol)
        except ValueError as exc:
            raise KeyFormatError(f"Ciphertext symbol is not numeric: {symbol!r}") from exc
        chars.append(chr(decrypt_symbol(cipher, private_key.d, private_key.n)))
    return "".join(chars)
