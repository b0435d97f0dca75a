"""Encode/decode the identifier printed on every turn sheet.

Wire form:
  <P>-<BODY>-<CHECK>

  - ``P`` is ``L`` (live sheet) or ``J`` (blank join sheet).
  - ``BODY`` is the Crockford base32 rendering of the packed field bytes.
  - ``CHECK`` is four base32 symbols holding a 20-bit CRC computed over the
    prefix letter followed by the body symbols.

Field packing: each field is written in declaration order as either
``0x01`` + 16 raw bytes (canonical lowercase UUID string) or ``0x02`` +
length byte + UTF-8 bytes (anything else, up to 255 bytes).

The alphabet omits I, L, O and U. On decode, lower case is accepted and
the usual OCR confusions O->0 and I/L->1 are folded before verification.
A single substituted body or checksum symbol is an error burst of at most
5 bits and the CRC polynomial has degree 20, so every such edit is
reported as :class:`ChecksumMismatch`. Two kinds of edit fall outside that:
a character that is not in the alphabet (``U``, punctuation) is a
:class:`MalformedCode`, and an O/0 or I/L/1 swap folds back to the printed
symbol and decodes to the original code.

Pure functions, no I/O.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, fields
from typing import List, Union

from pbm.errors import ChecksumMismatch, MalformedCode

ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_SYMBOL = {ch: i for i, ch in enumerate(ALPHABET)}
_OCR_FOLD = str.maketrans({"O": "0", "I": "1", "L": "1"})

LIVE_PREFIX = "L"
JOIN_PREFIX = "J"
CHECK_LEN = 4

_TAG_UUID = 0x01
_TAG_TEXT = 0x02

_CRC_BITS = 20
_CRC_MASK = (1 << _CRC_BITS) - 1
_CRC_POLY = 0x00009  # x^20 + x^3 + 1 (x^20 implicit)


@dataclass(frozen=True)
class LiveCode:
    game_id: str
    game_instance_id: str
    account_id: str
    turn_sheet_id: str


@dataclass(frozen=True)
class JoinCode:
    game_id: str
    manager_subscription_id: str


SheetCode = Union[LiveCode, JoinCode]

_VARIANTS = {LIVE_PREFIX: LiveCode, JOIN_PREFIX: JoinCode}


def _is_canonical_uuid(value: str) -> bool:
    try:
        return str(uuid.UUID(value)) == value
    except (ValueError, AttributeError, TypeError):
        return False


def _pack(values: List[str]) -> bytes:
    out = bytearray()
    for value in values:
        if not isinstance(value, str) or not value:
            raise MalformedCode("sheet code fields must be non-empty strings")
        if _is_canonical_uuid(value):
            out.append(_TAG_UUID)
            out.extend(uuid.UUID(value).bytes)
            continue
        raw = value.encode("utf-8")
        if len(raw) > 255:
            raise MalformedCode("sheet code field too long")
        out.append(_TAG_TEXT)
        out.append(len(raw))
        out.extend(raw)
    return bytes(out)


def _unpack(data: bytes, count: int) -> List[str]:
    values = []
    pos = 0
    for _ in range(count):
        if pos >= len(data):
            raise MalformedCode("sheet code body truncated")
        tag = data[pos]
        pos += 1
        if tag == _TAG_UUID:
            chunk = data[pos : pos + 16]
            if len(chunk) != 16:
                raise MalformedCode("sheet code body truncated")
            values.append(str(uuid.UUID(bytes=chunk)))
            pos += 16
        elif tag == _TAG_TEXT:
            if pos >= len(data):
                raise MalformedCode("sheet code body truncated")
            size = data[pos]
            pos += 1
            chunk = data[pos : pos + size]
            if len(chunk) != size or size == 0:
                raise MalformedCode("sheet code body truncated")
            try:
                values.append(chunk.decode("utf-8"))
            except UnicodeDecodeError as exc:
                raise MalformedCode("sheet code field is not valid text") from exc
            pos += size
        else:
            raise MalformedCode(f"unknown field tag {tag}")
    if pos != len(data):
        raise MalformedCode("trailing bytes in sheet code body")
    return values


def _b32encode(data: bytes) -> str:
    acc = 0
    bits = 0
    out = []
    for byte in data:
        acc = (acc << 8) | byte
        bits += 8
        while bits >= 5:
            bits -= 5
            out.append(ALPHABET[(acc >> bits) & 0x1F])
    if bits:
        out.append(ALPHABET[(acc << (5 - bits)) & 0x1F])
    return "".join(out)


def _b32decode(symbols: List[int]) -> bytes:
    size = len(symbols) * 5 // 8
    if (size * 8 + 4) // 5 != len(symbols):
        raise MalformedCode("sheet code body has an impossible length")
    acc = 0
    bits = 0
    out = bytearray()
    for sym in symbols:
        acc = (acc << 5) | sym
        bits += 5
        if bits >= 8:
            bits -= 8
            out.append((acc >> bits) & 0xFF)
    if acc & ((1 << bits) - 1):
        raise MalformedCode("sheet code body has non-zero padding")
    return bytes(out)


def _crc20(prefix: str, symbols: List[int]) -> int:
    crc = 0
    stream = [(ord(prefix), 8)] + [(s, 5) for s in symbols]
    for value, width in stream:
        for shift in range(width - 1, -1, -1):
            bit = (value >> shift) & 1
            top = (crc >> (_CRC_BITS - 1)) & 1
            crc = (crc << 1) & _CRC_MASK
            if top ^ bit:
                crc ^= _CRC_POLY
    return crc


def _check_symbols(crc: int) -> str:
    return "".join(ALPHABET[(crc >> (5 * i)) & 0x1F] for i in range(CHECK_LEN - 1, -1, -1))


def encode(code: SheetCode) -> str:
    """Return the printable text for ``code``.

    Deterministic: the same field values always produce the same text.
    """
    if isinstance(code, LiveCode):
        prefix = LIVE_PREFIX
    elif isinstance(code, JoinCode):
        prefix = JOIN_PREFIX
    else:
        raise MalformedCode(f"cannot encode {type(code).__name__}")
    body = _b32encode(_pack([getattr(code, f.name) for f in fields(code)]))
    crc = _crc20(prefix, [_SYMBOL[ch] for ch in body])
    return f"{prefix}-{body}-{_check_symbols(crc)}"


def decode(text: str) -> SheetCode:
    """Parse printed text back into a :class:`LiveCode` or :class:`JoinCode`.

    Raises:
        MalformedCode: wrong prefix, separators, characters or field layout.
        ChecksumMismatch: structure is fine but the checksum does not verify.
    """
    if not isinstance(text, str):
        raise MalformedCode("sheet code must be text")
    cleaned = "".join(text.split()).upper()
    parts = cleaned.split("-")
    if len(parts) != 3:
        raise MalformedCode("sheet code must have three dash separated parts")
    prefix, body, check = parts
    if prefix not in _VARIANTS:
        raise MalformedCode(f"unknown sheet code prefix {prefix!r}")
    if not body or len(check) != CHECK_LEN:
        raise MalformedCode("sheet code body or checksum has the wrong length")
    body = body.translate(_OCR_FOLD)
    check = check.translate(_OCR_FOLD)
    try:
        symbols = [_SYMBOL[ch] for ch in body]
        check_value = 0
        for ch in check:
            check_value = (check_value << 5) | _SYMBOL[ch]
    except KeyError as exc:
        raise MalformedCode(f"invalid sheet code character {exc.args[0]!r}") from exc
    if _crc20(prefix, symbols) != check_value:
        raise ChecksumMismatch("sheet code checksum does not match")
    variant = _VARIANTS[prefix]
    values = _unpack(_b32decode(symbols), len(fields(variant)))
    return variant(*values)


__all__ = ["LiveCode", "JoinCode", "SheetCode", "encode", "decode", "ALPHABET"]
