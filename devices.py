"""Graphics/Audio capabilities consumed by the control unit.

A host plugs in whatever renders pixels and plays sound; the classes here are
the headless implementations used by the CLI runner and the tests.
"""

from __future__ import annotations

import logging
from typing import Protocol


class Graphics(Protocol):
    """Pixel sink. Called only for in-bounds coordinates."""

    def draw_pixel(self, x: int, y: int) -> None: ...

    def clear_pixel(self, x: int, y: int) -> None: ...


class Audio(Protocol):
    """Beeper. Called only on sound timer 0 <-> non-zero edges."""

    def start_beep(self) -> None: ...

    def stop_beep(self) -> None: ...


class NullGraphics:
    """Discard all pixel updates (the Datapath framebuffer still tracks them)."""

    def draw_pixel(self, x: int, y: int) -> None:
        pass

    def clear_pixel(self, x: int, y: int) -> None:
        pass


class RecordingGraphics:
    """Keep every pixel call as ("draw"|"clear", x, y) in `calls`."""

    calls: list[tuple[str, int, int]]

    def __init__(self) -> None:
        self.calls = []

    def draw_pixel(self, x: int, y: int) -> None:
        self.calls.append(("draw", x, y))

    def clear_pixel(self, x: int, y: int) -> None:
        self.calls.append(("clear", x, y))

    def count(self, kind: str) -> int:
        """Return number of recorded calls of `kind`."""
        return sum(1 for c in self.calls if c[0] == kind)


class LogAudio:
    """Audio device that only logs beep edges."""

    def start_beep(self) -> None:
        logging.info("Starting beep")

    def stop_beep(self) -> None:
        logging.info("Stopping beep")


class RecordingAudio(LogAudio):
    """Log beep edges and remember them as "start"/"stop" in `events`."""

    events: list[str]

    def __init__(self) -> None:
        self.events = []

    def start_beep(self) -> None:
        super().start_beep()
        self.events.append("start")

    def stop_beep(self) -> None:
        super().stop_beep()
        self.events.append("stop")
