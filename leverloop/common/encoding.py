from __future__ import annotations

import base64
import binascii
from typing import Any


class AccountDataError(ValueError):
    pass


def decode_account_data(raw: Any) -> bytes:
    """Return account bytes from any framing the RPC layer hands out.

    Accepts raw bytes, the JSON-RPC ``[data, "base64"]`` pair, a bare base64
    string, or a full account dict carrying a ``data`` field.
    """
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return bytes(raw)
    if isinstance(raw, dict):
        if "data" not in raw:
            raise AccountDataError("account payload has no data field")
        return decode_account_data(raw["data"])

    encoded: Any = raw
    if isinstance(raw, (list, tuple)):
        if len(raw) != 2:
            raise AccountDataError(f"unexpected account data framing: {raw!r}")
        encoded, encoding = raw
        if str(encoding).lower() != "base64":
            raise AccountDataError(f"unsupported account data encoding: {encoding}")

    if not isinstance(encoded, str):
        raise AccountDataError(f"unexpected account data type: {type(raw).__name__}")
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as error:
        raise AccountDataError(f"account data is not valid base64: {error}") from error
