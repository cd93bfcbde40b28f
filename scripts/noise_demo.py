"""
Run a message through the full pipeline with one flipped bit per codeword.

    python scripts/noise_demo.py "hello there"

Shows each step: Hamming units, corrupted units, ciphertext, recovered text.
"""

import argparse
import sys

from relaychat.codec.hamming import corrupt_units, decode_message_with_report, encode_message
from relaychat.common.utils import fingerprint_public_key
from relaychat.crypto.rsa import decrypt_message, encrypt_message, generate_key_pair


def bits(encoded: str) -> str:
    return " ".join(format(ord(c), "07b") for c in encoded)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Hamming(7,4) + textbook RSA noise demo")
    parser.add_argument("message", nargs="?", default="hi")
    parser.add_argument("--prime-range", type=int, default=5000)
    args = parser.parse_args(argv)

    keys = generate_key_pair(args.prime_range, min_modulus=256)
    print(f"[RSA] e={keys.public.e} n={keys.public.n} fingerprint {fingerprint_public_key(keys.public)}")

    encoded = encode_message(args.message)
    print(f"[FEC] encoded:   {bits(encoded)}")

    noisy = corrupt_units(encoded)
    print(f"[FEC] corrupted: {bits(noisy)}")

    symbols = encrypt_message(noisy, keys.public)
    print(f"[RSA] ciphertext: {' '.join(symbols)}")

    text, corrections = decode_message_with_report(decrypt_message(symbols, keys.private))
    print(f"[FEC] corrected {corrections} of {len(noisy)} codewords")
    print(f"[OK] recovered: {text!r} (match={text == args.message})")


if __name__ == "__main__":
    main(sys.argv[1:])
