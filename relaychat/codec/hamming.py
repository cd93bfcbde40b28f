"""
Hamming(7,4) forward error correction.

Codeword layout (1-indexed): [p1, p2, d3, p4, d5, d6, d7]

    p1 = d3 ^ d5 ^ d7
    p2 = d3 ^ d6 ^ d7
    p4 = d5 ^ d6 ^ d7

Each 8-bit character becomes two codewords (high nibble, then low nibble),
and each codeword is packed into one character with a code in [0, 127].
"""

import secrets
from typing import List, Sequence, Tuple


class InvalidNibbleSize(ValueError):
    """encode_nibble() needs exactly 4 bits."""


class InvalidWordSize(ValueError):
    """decode_nibble() needs exactly 7 bits."""


class MalformedEncoding(ValueError):
    """An encoded message must hold two units per character."""


class UnsupportedCharacter(ValueError):
    """Only 8-bit character codes can be encoded."""


def encode_nibble(nibble: Sequence[int]) -> List[int]:
    """
    Encode 4 data bits [d3, d5, d6, d7] into a 7-bit codeword.

    :raises InvalidNibbleSize: if nibble is not 4 bits long
    """
    if len(nibble) != 4:
        raise InvalidNibbleSize("Invalid nibble size")

    d3, d5, d6, d7 = nibble
    p1 = d3 ^ d5 ^ d7
    p2 = d3 ^ d6 ^ d7
    p4 = d5 ^ d6 ^ d7
    return [p1, p2, d3, p4, d5, d6, d7]


def syndrome(word: Sequence[int]) -> int:
    """1-indexed position of a single flipped bit, or 0 if the parity checks pass."""
    if len(word) != 7:
        raise InvalidWordSize("Invalid word size received.")

    p1, p2, d3, p4, d5, d6, d7 = word
    s1 = p1 ^ d3 ^ d5 ^ d7
    s2 = p2 ^ d3 ^ d6 ^ d7
    s4 = p4 ^ d5 ^ d6 ^ d7
    return 4 * s4 + 2 * s2 + s1


def _correct(word: Sequence[int]) -> Tuple[List[int], int]:
    position = syndrome(word)
    corrected = list(word)
    if position:
        corrected[position - 1] ^= 1
    return corrected, position


def decode_nibble(word: Sequence[int]) -> List[int]:
    """
    Decode a 7-bit word, repairing at most one flipped bit.

    Two flipped bits are "repaired" into the wrong nibble; Hamming(7,4)
    cannot tell them apart from a single error.

    :raises InvalidWordSize: if word is not 7 bits long
    """
    corrected, _ = _correct(word)
    return [corrected[2], corrected[4], corrected[5], corrected[6]]


def word_to_unit(word: Sequence[int]) -> int:
    """Pack a 7-bit word, most significant bit first."""
    unit = 0
    for bit in word:
        unit = (unit << 1) | bit
    return unit


def unit_to_word(unit: int) -> List[int]:
    return [(unit >> shift) & 1 for shift in range(6, -1, -1)]


def encode_message(text: str) -> str:
    """Encode each character into two 7-bit units; output is twice as long."""
    out = []
    for ch in text:
        code = ord(ch)
        if code > 0xFF:
            raise UnsupportedCharacter(f"Character {ch!r} is not an 8-bit code")

        high = [(code >> 7) & 1, (code >> 6) & 1, (code >> 5) & 1, (code >> 4) & 1]
        low = [(code >> 3) & 1, (code >> 2) & 1, (code >> 1) & 1, code & 1]
        out.append(chr(word_to_unit(encode_nibble(high))))
        out.append(chr(word_to_unit(encode_nibble(low))))
    return "".join(out)


def decode_message_with_report(encoded: str) -> Tuple[str, int]:
    """
    Decode an encoded message and count the codewords that needed a fix.

    :return: (text, corrections)
    :raises MalformedEncoding: if the length is odd
    """
    if len(encoded) % 2 != 0:
        raise MalformedEncoding(
            f"Encoded message length {len(encoded)} is not a multiple of two"
        )

    chars = []
    corrections = 0
    for i in range(0, len(encoded), 2):
        code = 0
        for unit_char in encoded[i:i + 2]:
            corrected, position = _correct(unit_to_word(ord(unit_char)))
            if position:
                corrections += 1
            nibble = word_to_unit([corrected[2], corrected[4], corrected[5], corrected[6]])
            code = (code << 4) | nibble
        chars.append(chr(code))
    return "".join(chars), corrections


def decode_message(encoded: str) -> str:
    """Inverse of encode_message(), fixing one flipped bit per unit."""
    text, _ = decode_message_with_report(encoded)
    return text


def generate_error(bit_string: str) -> str:
    """Flip one randomly chosen bit of a '0'/'1' string."""
    if not bit_string or set(bit_string) - {"0", "1"}:
        raise ValueError("Input must be a binary string.")

    index = secrets.randbelow(len(bit_string))
    flipped = "1" if bit_string[index] == "0" else "0"
    return bit_string[:index] + flipped + bit_string[index + 1:]


def corrupt_units(encoded: str) -> str:
    """Flip one random bit in every 7-bit unit of an encoded message."""
    out = []
    for unit_char in encoded:
        bits = format(ord(unit_char) & 0x7F, "07b")
        out.append(chr(int(generate_error(bits), 2)))
    return "".join(out)
