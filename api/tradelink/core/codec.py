"""
Base64 codec for credential values on the save/read API surface.

This is obfuscation for transport only. Anyone holding the encoded value can
decode it.
"""
import base64
import binascii


def encode_secure_data(value: str | None) -> str | None:
    """Encode a credential value, passing unset values through as None"""
    if not value:
        return None
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def decode_secure_data(value: str) -> str:
    """Decode a base64 credential value.

    Values that are not valid base64 of UTF-8 text are returned unchanged, so
    clients that send plain credentials keep working.
    """
    try:
        decoded = base64.b64decode(value, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return value
    if not decoded or not decoded.isprintable():
        return value
    return decoded
