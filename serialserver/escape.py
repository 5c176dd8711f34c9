"""Render raw serial traffic as readable text for the log."""

_PRINTABLE = {
    0x0A: "\\n",
    0x0D: "\\r",
    0x09: "\\t",
    0x06: "<ACK>",
    0x18: "<CAN>",
    # "!" is shown as <NAK>, not as itself.
    0x21: "<NAK>",
}


def _hex(byte: int) -> str:
    return f"<0x{byte:02x}>"


def escape(data: bytes, offset: int, length: int, printable: bool = True) -> str:
    """Return ``length`` bytes of ``data`` starting at ``offset`` as text.

    In printable mode line controls become backslash escapes, a few
    protocol bytes get their mnemonic (``<ACK>``, ``<CAN>``, ``<NAK>``) and
    printable ASCII is kept as is. Every other byte, and every byte in raw
    mode, is written as ``<0xHH>``.

    Raises ValueError if ``offset`` is greater than ``length`` or the range
    runs past the end of ``data``.
    """
    if offset > length:
        raise ValueError(f"invalid range: offset {offset} is greater than length {length}")
    if offset < 0 or length < 0 or offset + length > len(data):
        raise ValueError(
            f"invalid range: offset {offset} length {length} for {len(data)} bytes"
        )
    parts = []
    for byte in data[offset:offset + length]:
        if not printable:
            parts.append(_hex(byte))
        elif byte in _PRINTABLE:
            parts.append(_PRINTABLE[byte])
        elif 0x20 <= byte <= 0x7E:
            parts.append(chr(byte))
        else:
            parts.append(_hex(byte))
    return "".join(parts)
