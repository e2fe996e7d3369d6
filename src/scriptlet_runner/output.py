# output.py
# Append-only output buffer shared by single runs and chain runs.
#
# Only the coordinating event loop writes here: process readers decode their
# bytes with a ChunkDecoder and hand complete text to append().

import codecs
from typing import Callable

from scriptlet_runner.events import Event, EventChannel, OutputAppended, OutputCleared

STDERR_PREFIX = "[stderr] "


class ChunkDecoder:
    """
    Incremental UTF-8 decoder for one pipe.

    A multi-byte character split across two reads is held back until it is
    complete; invalid byte sequences are dropped. When `prefix` is set it is
    prepended once per non-empty decoded chunk.
    """

    def __init__(self, prefix: str = "") -> None:
        self.prefix = prefix
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="ignore")

    def decode(self, data: bytes) -> str:
        text = self._decoder.decode(data)
        return self.prefix + text if text else ""

    def flush(self) -> str:
        text = self._decoder.decode(b"", final=True)
        return self.prefix + text if text else ""


class OutputStream:
    """Observable text buffer plus the run flags the views display."""

    def __init__(self, events: EventChannel | None = None) -> None:
        self.events = events or EventChannel()
        self.is_running = False
        self.exit_code: int | None = None
        self._text = ""

    @property
    def text(self) -> str:
        return self._text

    def append(self, chunk: str) -> None:
        if not chunk:
            return
        self._text += chunk
        self.events.emit(OutputAppended(text=chunk))

    def clear(self) -> None:
        self._text = ""
        self.exit_code = None
        self.events.emit(OutputCleared())

    def subscribe(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Call `callback` with every appended chunk. Returns an unsubscribe function."""

        def on_event(event: Event) -> None:
            if isinstance(event, OutputAppended):
                callback(event.text)

        return self.events.subscribe(on_event)
