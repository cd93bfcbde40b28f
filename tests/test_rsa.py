import random

import pytest

from relaychat.crypto import rsa
from relaychat.crypto.rsa import (
    KeyFormatError,
    KeyGenerationError,
    KeyPair,
    PrivateKey,
    PublicKey,
    SymbolRangeError,
    decrypt_message,
    decrypt_symbol,
    encrypt_message,
    encrypt_symbol,
    generate_key_pair,
    private_key_from_wire,
    public_key_from_wire,
)

# p = 61, q = 53: phi = 3120, smallest coprime e = 7, d = 1783
KNOWN = KeyPair(public=PublicKey(e=7, n=3233), private=PrivateKey(d=1783, n=3233))


def test_known_key_symbol_round_trip():
    for v in range(KNOWN.public.n):
        c = encrypt_symbol(v, KNOWN.public.e, KNOWN.public.n)
        assert 0 <= c < KNOWN.public.n
        assert decrypt_symbol(c, KNOWN.private.d, KNOWN.private.n) == v


def test_textbook_values():
    assert encrypt_symbol(65, 7, 3233) == pow(65, 7, 3233)
    assert decrypt_symbol(pow(65, 7, 3233), 1783, 3233) == 65


def test_generated_keys_round_trip():
    for _ in range(5):
        keys = generate_key_pair(prime_range=500)
        n = keys.public.n
        assert keys.private.n == n
        assert keys.public.e >= 2
        assert 0 <= keys.private.d
        samples = list(range(min(n, 200))) + [random.randrange(n) for _ in range(50)]
        for v in samples:
            c = encrypt_symbol(v, keys.public.e, n)
            assert decrypt_symbol(c, keys.private.d, n) == v


def test_generate_key_pair_retries_degenerate_draws(monkeypatch):
    # 2 and 3 give phi = 2, which has no e in [2, phi); the retry gets 61 and 53.
    primes = iter([2, 3, 61, 53])
    ranges = []

    def fake_generate_prime(prime_range, max_tries=1000):
        ranges.append(prime_range)
        return next(primes)

    monkeypatch.setattr(rsa, "generate_prime", fake_generate_prime)
    keys = generate_key_pair(prime_range=100, range_step=500)

    assert keys == KNOWN
    assert ranges == [100, 100, 600, 600]


def test_generate_key_pair_respects_min_modulus(monkeypatch):
    primes = iter([5, 7, 61, 53])
    monkeypatch.setattr(rsa, "generate_prime", lambda prime_range, max_tries=1000: next(primes))
    keys = generate_key_pair(prime_range=10, min_modulus=256)
    assert keys.public.n == 3233


def test_generate_key_pair_gives_up(monkeypatch):
    monkeypatch.setattr(rsa, "generate_prime", lambda prime_range, max_tries=1000: 2)
    with pytest.raises(KeyGenerationError):
        generate_key_pair(prime_range=2, max_attempts=3)


def test_message_round_trip_preserves_order():
    text = "Hello, relay! \x00\x7f\xe9"
    symbols = encrypt_message(text, KNOWN.public)
    assert len(symbols) == len(text)
    assert all(isinstance(s, str) and s.isdigit() for s in symbols)
    assert decrypt_message(symbols, KNOWN.private) == text


def test_same_character_same_symbol():
    # Textbook RSA is deterministic.
    symbols = encrypt_message("aa", KNOWN.public)
    assert symbols[0] == symbols[1]


def test_encrypt_message_rejects_codes_above_modulus():
    small = PublicKey(e=5, n=91)
    with pytest.raises(SymbolRangeError):
        encrypt_message("z", small)    # ord('z') == 122


def test_decrypt_message_accepts_int_symbols():
    symbols = [int(s) for s in encrypt_message("ok", KNOWN.public)]
    assert decrypt_message(symbols, KNOWN.private) == "ok"


def test_decrypt_message_rejects_garbage():
    with pytest.raises(KeyFormatError):
        decrypt_message(["12", "abc"], KNOWN.private)
    with pytest.raises(KeyFormatError):
        decrypt_message([None], KNOWN.private)


def test_key_wire_format():
    wire = KNOWN.public.to_wire()
    assert wire == {"e": "7", "n": "3233"}
    assert public_key_from_wire(wire) == KNOWN.public
    assert public_key_from_wire({"e": 7, "n": 3233}) == KNOWN.public
    assert private_key_from_wire(KNOWN.private.to_wire()) == KNOWN.private


@pytest.mark.parametrize("data", [
    {"e": "7"},
    {"e": "seven", "n": "3233"},
    {"e": "7", "n": "0"},
    {"e": "7", "n": None},
    {"e": True, "n": "3233"},
    None,
])
def test_malformed_public_key(data):
    with pytest.raises(KeyFormatError):
        public_key_from_wire(data)
