"""
Fab Bridge — Message Framing

The exporter writes a single JSON object per connection with no length
prefix and no delimiter. The message boundary is found by brace balance:
the first `{` opens the message and the matching `}` closes it. Braces
inside quoted strings are ignored, and string contents are never
interpreted beyond quote/backslash tracking.
"""

from __future__ import annotations


def try_extract_message(buffer: str) -> tuple[bool, str, str]:
    """
    Extract the first complete top-level JSON object from `buffer`.

    Returns (found, message, remainder). Text before the first `{` is
    discarded. When no complete object is present, found is False and the
    buffer is returned unchanged as the remainder so the caller can keep
    accumulating.
    """
    start = buffer.find("{")
    if start == -1:
        return False, "", buffer

    depth = 0
    in_string = False
    escaped = False

    for i in range(start, len(buffer)):
        c = buffer[i]

        if escaped:
            escaped = False
            continue

        if in_string:
            if c == "\\":
                escaped = True
            elif c == '"':
                in_string = False
            continue

        if c == '"':
            in_string = True
        elif c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
            if depth == 0:
                return True, buffer[start:i + 1], buffer[i + 1:]

    return False, "", buffer


class MessageFramer:
    """
    Incremental version of try_extract_message.

    Keeps the scan state between feeds so a large message arriving in many
    chunks is scanned once instead of once per chunk. Feeding a message in
    any chunking yields the same message and remainder as feeding it whole.
    """

    def __init__(self) -> None:
        self._buf: list[str] = []
        self._started = False
        self._depth = 0
        self._in_string = False
        self._escaped = False
        self._message: str | None = None
        self._remainder = ""

    @property
    def complete(self) -> bool:
        return self._message is not None

    @property
    def message(self) -> str | None:
        return self._message

    @property
    def remainder(self) -> str:
        """Text received after the closing brace of the message."""
        return self._remainder

    @property
    def buffered_chars(self) -> int:
        return sum(len(part) for part in self._buf)

    def feed(self, text: str) -> str | None:
        """
        Append `text` and return the complete message once its closing
        brace has been seen, else None. After completion further input is
        appended to the remainder only.
        """
        if self._message is not None:
            self._remainder += text
            return self._message

        offset = 0
        if not self._started:
            start = text.find("{")
            if start == -1:
                return None
            self._started = True
            offset = start

        for i in range(offset, len(text)):
            c = text[i]

            if self._escaped:
                self._escaped = False
                continue

            if self._in_string:
                if c == "\\":
                    self._escaped = True
                elif c == '"':
                    self._in_string = False
                continue

            if c == '"':
                self._in_string = True
            elif c == "{":
                self._depth += 1
            elif c == "}":
                self._depth -= 1
                if self._depth == 0:
                    self._buf.append(text[offset:i + 1])
                    self._message = "".join(self._buf)
                    self._remainder = text[i + 1:]
                    self._buf = []
                    return self._message

        self._buf.append(text[offset:])
        return None

    def reset(self) -> None:
        self.__init__()
