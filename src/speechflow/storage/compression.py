"""
Reversible run-length encoding for serialized store values.

Serialized JSON (base64 audio in particular) often contains long runs of
the same character. Runs of five or more are written as ``~{count}~{char}``
and a literal ``~`` is escaped as ``~~``, so every input string round-trips
exactly, including strings that contain digits or the marker itself.

Example:
    >>> rle_compress("aaaaaaab~c")
    '~7~ab~~c'
    >>> rle_decompress("~7~ab~~c")
    'aaaaaaab~c'
"""
from __future__ import annotations

import re
from itertools import groupby

MARKER = "~"
MIN_RUN = 5

_TOKEN = re.compile(r"~(?:(~)|(\d+)~(.))", re.DOTALL)


def rle_compress(data: str) -> str:
    out = []
    for char, group in groupby(data):
        count = sum(1 for _ in group)
        if count >= MIN_RUN:
            out.append(f"{MARKER}{count}{MARKER}{char}")
        elif char == MARKER:
            out.append(MARKER * 2 * count)
        else:
            out.append(char * count)
    return "".join(out)


def rle_decompress(data: str) -> str:
    """
    Inverse of ``rle_compress``.

    Raises:
        ValueError: If ``data`` contains a marker that starts no valid token.
    """
    out = []
    pos = 0
    while True:
        idx = data.find(MARKER, pos)
        if idx < 0:
            out.append(data[pos:])
            break
        out.append(data[pos:idx])
        m = _TOKEN.match(data, idx)
        if m is None:
            raise ValueError(f"malformed run-length token at offset {idx}")
        if m.group(1):
            out.append(MARKER)
        else:
            out.append(m.group(3) * int(m.group(2)))
        pos = m.end()
    return "".join(out)
