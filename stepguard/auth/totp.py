"""
TOTP (Time-based One-Time Password) engine for STEPGUARD.

Implements HOTP (RFC 4226) and TOTP (RFC 6238) with HMAC-SHA1, 6 digits
and a 30-second period. Compatible with Google Authenticator, Authy, and
other TOTP apps.

Also provides provisioning URIs and QR codes for enrollment.
"""
import base64
import hashlib
import hmac
import io
import os
import secrets
import struct
import time
from datetime import datetime
from typing import Optional, Union

import pyotp
import qrcode

from . import base32

SECRET_BYTES = 20          # 160 bits, the SHA-1 block strength
TOTP_PERIOD = 30
TOTP_DIGITS = 6
# Steps accepted either side of the current counter (4 = +-120 seconds)
TOTP_DRIFT_STEPS = int(os.getenv("MFA_TOTP_DRIFT_STEPS", "4"))
DEFAULT_ISSUER = os.getenv("MFA_ISSUER", "STEPGUARD")

_MAX_COUNTER = 2 ** 64


def generate_secret() -> bytes:
    """
    Generate a new TOTP secret for MFA enrollment.

    Returns:
        20 bytes of cryptographically secure random data.
    """
    return secrets.token_bytes(SECRET_BYTES)


def hotp(secret: bytes, counter: int) -> str:
    """
    Compute an HOTP code.

    Args:
        secret: Raw shared secret.
        counter: Moving factor, 0 <= counter < 2**64.

    Returns:
        6-digit, zero-padded code.
    """
    if counter < 0 or counter >= _MAX_COUNTER:
        raise ValueError(f"HOTP counter out of range: {counter}")

    digest = hmac.new(secret, struct.pack(">Q", counter), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    binary = struct.unpack(">I", digest[offset:offset + 4])[0] & 0x7FFFFFFF
    return str(binary % 10 ** TOTP_DIGITS).zfill(TOTP_DIGITS)


def totp_counter(unix_seconds: float) -> int:
    """Time step counter for a Unix timestamp."""
    return int(unix_seconds // TOTP_PERIOD)


def _unix_seconds(now: Optional[Union[datetime, float]]) -> float:
    if now is None:
        return time.time()
    if isinstance(now, datetime):
        return now.timestamp()
    return float(now)


def totp(secret: bytes, now: Optional[Union[datetime, float]] = None) -> str:
    """
    Get the TOTP code for a point in time (current time by default).

    Args:
        secret: Raw shared secret.
        now: Datetime or Unix timestamp.

    Returns:
        Current 6-digit TOTP code.
    """
    return hotp(secret, totp_counter(_unix_seconds(now)))


def verify(
    secret: bytes,
    code: str,
    now: Optional[Union[datetime, float]] = None,
    drift_steps: int = TOTP_DRIFT_STEPS,
) -> bool:
    """
    Verify a TOTP code against the secret.

    Every counter in [-drift_steps, +drift_steps] is checked with a
    constant-time comparison, and the loop never exits early, so response
    timing does not reveal which offset matched.

    Args:
        secret: Raw shared secret.
        code: 6-digit code entered by user.
        now: Datetime or Unix timestamp to verify against.
        drift_steps: Number of 30-second steps tolerated either side.

    Returns:
        True if code is valid, False otherwise.
    """
    if not secret or not code:
        return False

    submitted = code.encode("ascii", errors="replace")
    counter = totp_counter(_unix_seconds(now))

    matched = False
    for offset in range(-drift_steps, drift_steps + 1):
        candidate = counter + offset
        if candidate < 0:
            continue
        if hmac.compare_digest(hotp(secret, candidate).encode("ascii"), submitted):
            matched = True

    return matched


def get_totp_provisioning_uri(
    secret: bytes,
    account_name: str,
    issuer: str = DEFAULT_ISSUER,
) -> str:
    """
    Generate a provisioning URI for TOTP apps.

    This URI can be encoded as a QR code for easy scanning.

    Args:
        secret: Raw shared secret.
        account_name: Label displayed in the authenticator app.
        issuer: Application name (displayed in authenticator app).

    Returns:
        otpauth:// URI string.
    """
    totp_app = pyotp.TOTP(
        base32.encode(secret),
        digits=TOTP_DIGITS,
        digest=hashlib.sha1,
        interval=TOTP_PERIOD,
    )
    return totp_app.provisioning_uri(name=account_name, issuer_name=issuer)


def generate_qr_code(uri: str) -> bytes:
    """
    Generate a QR code image for the provisioning URI.

    Args:
        uri: otpauth:// provisioning URI.

    Returns:
        PNG image bytes.
    """
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(uri)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format='PNG')
    buffer.seek(0)
    return buffer.read()


def generate_qr_code_base64(uri: str) -> str:
    """
    Generate a base64-encoded QR code for embedding in HTML.

    Args:
        uri: otpauth:// provisioning URI.

    Returns:
        Base64-encoded PNG image string (data URI ready).
    """
    png_bytes = generate_qr_code(uri)
    b64 = base64.b64encode(png_bytes).decode('utf-8')
    return f"data:image/png;base64,{b64}"
