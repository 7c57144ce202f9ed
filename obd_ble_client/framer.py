"""Reassembly of adapter replies from transport fragments.

An ELM327 adapter ends every reply with the ``>`` prompt.  BLE
notifications split a reply across arbitrary fragment boundaries, so
fragments are accumulated until the prompt shows up.
"""

from __future__ import annotations

from typing import Optional, Union

PROMPT = ">"


class ResponseFramer:
    """Accumulates fragments and yields one reply per prompt."""

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, fragment: Union[bytes, str]) -> Optional[str]:
        """Append *fragment*; return the completed reply, if any.

        The reply is the text before the first prompt, trimmed.  The
        whole buffer is cleared on extraction, including anything that
        followed the prompt in the same fragment.
        """
        if isinstance(fragment, bytes):
            fragment = fragment.decode("ascii", errors="ignore")
        self._buffer += fragment

        prompt_pos = self._buffer.find(PROMPT)
        if prompt_pos == -1:
            return None

        reply = self._buffer[:prompt_pos].strip()
        self._buffer = ""
        return reply

    def clear(self) -> None:
        self._buffer = ""

    @property
    def pending(self) -> str:
        """Text buffered since the last prompt."""
        return self._buffer
