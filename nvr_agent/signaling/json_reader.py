"""
Incremental reader for unframed JSON responses.

The relay writes one JSON object per response with no length prefix, so the
end of a response is the point where the top-level object closes. Braces that
appear inside string values (including after escaped quotes) are not counted.
"""


class JsonResponseReader:
    """
    Accumulates raw bytes until a balanced top-level JSON object is seen.

    States: WAITING (before the first '{') -> IN_OBJECT -> COMPLETE
    """

    def __init__(self):
        self.buffer = bytearray()
        self._depth = 0
        self._started = False
        self._in_string = False
        self._escaped = False
        self._end = None  # Index one past the closing brace

    def feed(self, data: bytes) -> bool:
        """
        Append a chunk and advance the tokenizer.

        Returns:
            True once the top-level object is complete.
        """
        if self._end is not None:
            self.buffer.extend(data)
            return True

        offset = len(self.buffer)
        self.buffer.extend(data)

        for index in range(offset, len(self.buffer)):
            char = self.buffer[index]

            if self._in_string:
                if self._escaped:
                    self._escaped = False
                elif char == 0x5C:  # backslash
                    self._escaped = True
                elif char == 0x22:  # quote
                    self._in_string = False
                continue

            if char == 0x22:
                if self._started:
                    self._in_string = True
            elif char == 0x7B:  # {
                self._depth += 1
                self._started = True
            elif char == 0x7D:  # }
                if self._started:
                    self._depth -= 1
                    if self._depth == 0:
                        self._end = index + 1
                        return True

        return False

    @property
    def complete(self) -> bool:
        return self._end is not None

    @property
    def depth(self) -> int:
        return self._depth

    def text(self) -> str:
        """
        Decoded response text: the complete object when one was read,
        otherwise whatever partial data arrived.
        """
        raw = bytes(self.buffer[:self._end]) if self._end is not None else bytes(self.buffer)
        return raw.decode('utf-8', errors='replace').strip('\x00 \r\n\t')
