"""Common utility helpers: key fingerprints, host:port parsing."""

from typing import Tuple

from cryptography.hazmat.primitives import hashes

from relaychat.crypto.rsa import PublicKey


def fingerprint_public_key(public_key: PublicKey) -> str:
    """
    SHA-256 over "e:n" (decimal), as colon-separated hex of the first 8 bytes.
    Short enough to read aloud when comparing keys out of band.
    """
    digest = hashes.Hash(hashes.SHA256())
    digest.update(f"{public_key.e}:{public_key.n}".encode("ascii"))
    h = digest.finalize()
    return ":".join(f"{b:02x}" for b in h[:8])


def parse_host_port(value: str) -> Tuple[str, int]:
    """
    Split "host:port" into (host, port).

    Raises ValueError on anything else.
    """
    host, sep, port = value.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"Expected HOST:PORT, got {value!r}")
    return host, int(port)
