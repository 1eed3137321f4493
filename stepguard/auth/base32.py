"""
RFC 4648 base32 codec for TOTP shared secrets.

Authenticator apps exchange secrets as unpadded uppercase base32. Decoding
is lenient on purpose: users type secrets by hand, so characters outside
the alphabet are skipped instead of rejected.
"""
import logging

logger = logging.getLogger(__name__)

ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"
_LOOKUP = {symbol: index for index, symbol in enumerate(ALPHABET)}


def encode(data: bytes) -> str:
    """
    Encode bytes as unpadded uppercase base32.

    Args:
        data: Raw bytes (e.g. a 20-byte TOTP secret).

    Returns:
        Base32 string without '=' padding.
    """
    output = []
    buffer = 0
    bits = 0

    for byte in data:
        buffer = (buffer << 8) | byte
        bits += 8
        while bits >= 5:
            output.append(ALPHABET[(buffer >> (bits - 5)) & 31])
            bits -= 5
            buffer &= (1 << bits) - 1

    # Partial final group is filled with zero bits
    if bits > 0:
        output.append(ALPHABET[(buffer << (5 - bits)) & 31])

    return "".join(output)


def decode(text: str) -> bytes:
    """
    Decode a base32 string into bytes.

    The input is uppercased and trailing '=' padding is stripped. Unknown
    symbols are skipped and a trailing partial byte is discarded.

    Args:
        text: Base32 string, possibly lowercase or with stray characters.

    Returns:
        Decoded bytes.
    """
    cleaned = text.upper().rstrip("=")
    output = bytearray()
    buffer = 0
    bits = 0
    skipped = 0

    for symbol in cleaned:
        value = _LOOKUP.get(symbol)
        if value is None:
            skipped += 1
            continue

        buffer = (buffer << 5) | value
        bits += 5
        if bits >= 8:
            output.append((buffer >> (bits - 8)) & 0xFF)
            bits -= 8
            buffer &= (1 << bits) - 1

    if skipped:
        logger.debug(f"Skipped {skipped} non-base32 characters while decoding")

    return bytes(output)
