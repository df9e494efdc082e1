# keyproxy/usage.py
import codecs
import json
from typing import Any

_DATA_PREFIX = "data: "
_DONE = "[DONE]"


def is_event_stream(content_type: str | None) -> bool:
    return "text/event-stream" in (content_type or "")


def _usage_of(payload: Any) -> Any:
    if isinstance(payload, dict):
        return payload.get("usage")
    return None


class UsageExtractor:
    """Finds the ``usage`` object in an upstream body fed chunk by chunk.

    In streaming mode the body is read as SSE: every complete ``data: {...}``
    line is parsed and the last one carrying ``usage`` wins. Otherwise the
    body is buffered and parsed once when :meth:`finish` is called.
    """

    def __init__(self, streaming: bool) -> None:
        self.streaming = streaming
        self.usage: Any = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._carry = ""
        self._body = bytearray()
        self._finished = False

    def feed(self, chunk: bytes) -> None:
        if not self.streaming:
            self._body.extend(chunk)
            return
        self._carry += self._decoder.decode(chunk)
        *lines, self._carry = self._carry.split("\n")
        for line in lines:
            self._process_line(line)

    def finish(self) -> Any:
        """Flush what is left and return the usage snapshot, or None."""
        if self._finished:
            return self.usage
        self._finished = True

        if self.streaming:
            rest = self._carry + self._decoder.decode(b"", final=True)
            self._carry = ""
            for line in rest.split("\n"):
                self._process_line(line)
            return self.usage

        try:
            usage = _usage_of(json.loads(bytes(self._body)))
        except ValueError:
            usage = None
        if usage is not None:
            self.usage = usage
        return self.usage

    def _process_line(self, line: str) -> None:
        if not line.startswith(_DATA_PREFIX):
            return
        data = line[len(_DATA_PREFIX):].rstrip("\r")
        if data == _DONE:
            return
        try:
            usage = _usage_of(json.loads(data))
        except ValueError:
            # partial or non-JSON frames are expected
            return
        if usage is not None:
            self.usage = usage
