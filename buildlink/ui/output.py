"""
Terminal output for the build client.

Progress and failure records are plain lines on stdout. Heartbeats are a
single status line rewritten in place with a carriage return; diagnostics
go to stderr.
"""

import sys
from typing import Optional, TextIO


TEXT_COLOR_MAPPING = {
    "red": "31;1",
}

SPINNER_GLYPHS = ("-", "\\", "|", "/")


def get_colored_text(text: str, color: str) -> str:
    """
    Get colored text.

    Raises:
        ValueError: If the specified color is not supported
    """
    if color not in TEXT_COLOR_MAPPING:
        raise ValueError(
            f"Unsupported color: {color}. Available colors: {', '.join(TEXT_COLOR_MAPPING.keys())}"
        )
    return f"\u001b[{TEXT_COLOR_MAPPING[color]}m{text}\u001b[0m"


def _isatty(stream: TextIO) -> bool:
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def print_line(text: str, file: Optional[TextIO] = None) -> None:
    """Print one record line and flush so ordering survives pipes."""
    stream = file or sys.stdout
    print(text, file=stream)
    stream.flush()


def print_error(text: str, file: Optional[TextIO] = None) -> None:
    """Print a diagnostic on stderr, red when stderr is a terminal."""
    stream = file or sys.stderr
    if _isatty(stream):
        text = get_colored_text(text, "red")
    print(text, file=stream)
    stream.flush()


class StatusLine:
    """
    Single overwritable heartbeat line.

    Each wait operation owns its own StatusLine, so whether a spinner was
    drawn is tracked per instance instead of process-wide.
    """

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream or sys.stdout
        self.used = False
        self._width = 0
        self._tick = 0

    def spinner(self) -> str:
        glyph = SPINNER_GLYPHS[self._tick % len(SPINNER_GLYPHS)]
        self._tick += 1
        return glyph

    def show(self, text: str) -> None:
        """
        Rewrite the status line with ``text`` and the next spinner glyph.

        Piped output gets no heartbeats, only real lines.
        """
        if not _isatty(self.stream):
            return
        line = f"{text} {self.spinner()}"
        # Pad over the previous line when this one is shorter.
        padded = line.ljust(self._width)
        self.stream.write(f"{padded} \r")
        self.stream.flush()
        self._width = len(line)
        self.used = True

    def clear(self) -> None:
        """Erase the status line if one was drawn."""
        if not self.used:
            return
        self.stream.write("\r\x1b[K")
        self.stream.flush()
        self.used = False
        self._width = 0
