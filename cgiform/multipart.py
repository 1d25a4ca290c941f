"""
A multipart/form-data parser for fully buffered CGI request bodies.

The body is read into memory before parsing (it is bounded by the maximum
body size), so rather than a byte-at-a-time streaming machine this parser
jumps between boundary occurrences with ``bytes.find``.  Parts are returned
in the order they appear in the body.
"""

from __future__ import annotations

import logging
from enum import IntEnum
from typing import TYPE_CHECKING, cast

from .exceptions import MultipartParseError
from .headers import PartContentType, parse_content_disposition, parse_content_type_line

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Iterator
    from typing import Any, Literal, TypeAlias, TypedDict

    class MultipartCallbacks(TypedDict, total=False):
        on_part_begin: Callable[[], None]
        on_part_end: Callable[[Part], None]
        on_end: Callable[[], None]

    CallbackName: TypeAlias = Literal["part_begin", "part_end", "end"]

    Span: TypeAlias = tuple[int, int]


class MultipartState(IntEnum):
    """States of the multipart parser.

    SEEKING_BOUNDARY -> AT_BOUNDARY -> PART_HEADERS -> PART_BODY -> SEEKING_BOUNDARY,
    until the terminal boundary or the end of the buffer moves it to END.
    """

    SEEKING_BOUNDARY = 0
    AT_BOUNDARY = 1
    PART_HEADERS = 2
    PART_BODY = 3
    END = 4


CRLF = b"\r\n"
# Some upstream producers NUL-terminate lines in place, leaving "\0\n".
NUL_LF = b"\x00\n"
HYPHENS = b"--"

CONTENT_DISPOSITION = b"Content-Disposition"
CONTENT_TYPE = b"Content-Type"


def next_line(data: bytes, cursor: int, end: int | None = None) -> tuple[Span, int] | None:
    """
    Finds the next CRLF-terminated line.  The rest of the line that
    ``cursor`` points into is skipped first, so calling this with the cursor
    it returned walks the buffer line by line.

    Returns ``((line_start, line_end), new_cursor)``, where ``line_end``
    points at the line's CRLF, or ``None`` when no complete line remains.
    """
    if end is None:
        end = len(data)

    # Only look for "\0\n" ahead of the first CRLF, so each call scans one line.
    terminator = data.find(CRLF, cursor, end)
    nul = data.find(NUL_LF, cursor, terminator if terminator != -1 else end)
    if nul != -1:
        terminator = nul
    if terminator == -1:
        return None
    cursor = terminator + 2
    if cursor >= end:
        return None

    line_end = data.find(CRLF, cursor, end)
    if line_end == -1:
        return None
    return ((cursor, line_end), line_end)


def iter_lines(data: bytes, cursor: int = 0, end: int | None = None) -> Iterator[Span]:
    """Yields the spans of successive lines after ``cursor``."""
    while (found := next_line(data, cursor, end)) is not None:
        span, cursor = found
        yield span


class Part:
    """
    One section of a multipart body.  A part with a ``file_name`` is a file
    upload; ``stored_path`` and ``upload_error`` are filled in once its body
    has been written to disk.
    """

    def __init__(self, name: bytes | None = None, file_name: bytes | None = None, body: bytes = b"") -> None:
        self.name = name
        self.file_name = file_name
        self.content_type = PartContentType.TEXT_PLAIN
        self.content_subtype: bytes | None = None
        self.body = body

        # Starts out as UploadError.OK; see cgiform.uploads.
        self.upload_error = 0
        self.stored_path: bytes | None = None

    @property
    def body_length(self) -> int:
        return len(self.body)

    @property
    def is_file(self) -> bool:
        return self.file_name is not None

    def __repr__(self) -> str:
        if len(self.body) > 97:
            body = repr(self.body[:97])[:-1] + "...'"
        else:
            body = repr(self.body)
        return "%s(name=%r, file_name=%r, content_subtype=%r, body=%s)" % (
            self.__class__.__name__,
            self.name,
            self.file_name,
            self.content_subtype,
            body,
        )


class BaseParser:
    """
    This class implements the callback logic shared by our parsers.
    """

    def __init__(self) -> None:
        self.logger = logging.getLogger(__name__)
        self.callbacks: MultipartCallbacks = {}

    def callback(self, name: CallbackName, *args: Any) -> None:
        """
        This function calls a provided callback, if one was registered.
        """
        on_name = "on_" + name
        func = self.callbacks.get(on_name)
        if func is None:
            return
        func = cast("Callable[..., Any]", func)
        self.logger.debug("Calling %s", on_name)
        func(*args)

    def set_callback(self, name: CallbackName, new_func: Callable[..., Any] | None) -> None:
        """
        Update the function for a callback.  Removes from the callbacks dict
        if new_func is None.
        """
        if new_func is None:
            self.callbacks.pop("on_" + name, None)  # type: ignore[misc]
        else:
            self.callbacks["on_" + name] = new_func  # type: ignore[literal-required]

    def __repr__(self) -> str:
        return "%s()" % self.__class__.__name__


class MultipartParser(BaseParser):
    """
    This class implements a state machine that splits a multipart/form-data
    body into parts.

    Valid callbacks:
        - on_part_begin
        - on_part_end       (called with the finished Part)
        - on_end

    Malformed parts (no name, no end to the header block) are skipped with a
    warning; parsing carries on at the next boundary.
    """

    def __init__(self, boundary: bytes | str, callbacks: MultipartCallbacks = {}) -> None:
        super().__init__()
        if isinstance(boundary, str):
            boundary = boundary.encode("latin-1")
        if not boundary:
            raise ValueError("boundary must not be empty")

        # The boundary is the on-wire delimiter, including its leading "--".
        self.boundary = boundary
        self.callbacks = callbacks.copy()
        self.state = MultipartState.SEEKING_BOUNDARY

    def parse(self, data: bytes) -> list[Part]:
        """
        Parses a complete body and returns its parts in body order.
        """
        boundary = self.boundary
        end = len(data)
        parts: list[Part] = []

        state = MultipartState.SEEKING_BOUNDARY
        cursor = 0
        part: Part | None = None

        while state != MultipartState.END:
            if state == MultipartState.SEEKING_BOUNDARY:
                found = data.find(boundary, cursor) if cursor < end else -1
                if found == -1:
                    self.logger.debug("No further boundary after offset %d", cursor)
                    state = MultipartState.END
                else:
                    cursor = found + len(boundary)
                    state = MultipartState.AT_BOUNDARY

            elif state == MultipartState.AT_BOUNDARY:
                if cursor >= end:
                    state = MultipartState.END
                elif data.startswith(HYPHENS, cursor):
                    self.logger.debug("Found terminal boundary at %d", cursor - len(boundary))
                    state = MultipartState.END
                else:
                    part = Part()
                    self.callback("part_begin")
                    state = MultipartState.PART_HEADERS

            elif state == MultipartState.PART_HEADERS:
                assert part is not None
                found_line = next_line(data, cursor, end)
                if found_line is None:
                    self.logger.warning("Header block starting at %d has no end, skipping part", cursor)
                    part = None
                    state = MultipartState.SEEKING_BOUNDARY
                    continue

                (line_start, line_end), line_cursor = found_line
                if line_start == line_end:
                    if part.name is None:
                        self.logger.warning("Part ending its headers at %d has no name, skipping it", line_start)
                        part = None
                        state = MultipartState.SEEKING_BOUNDARY
                    else:
                        # The body starts right after the blank line.
                        cursor = line_end + 2
                        state = MultipartState.PART_BODY
                    continue

                self._on_header_line(part, data[line_start:line_end], line_start)
                cursor = line_cursor

            elif state == MultipartState.PART_BODY:
                assert part is not None
                found = data.find(boundary, cursor)
                if found == -1:
                    self.logger.warning("No boundary after part %r, using the rest of the body", part.name)
                    part.body = data[cursor:end]
                    next_cursor = end
                else:
                    # The CRLF in front of the boundary belongs to the delimiter.
                    part.body = data[cursor : max(cursor, found - 2)]
                    next_cursor = found

                self.logger.debug("Part %r has %d body bytes at %d", part.name, part.body_length, cursor)
                parts.append(part)
                self.callback("part_end", part)
                part = None
                cursor = next_cursor
                state = MultipartState.SEEKING_BOUNDARY

            else:  # pragma: no cover (error case)
                msg = "Reached an unknown state %d at %d" % (state, cursor)
                self.logger.warning(msg)
                e = MultipartParseError(msg)
                e.offset = cursor
                raise e

        self.state = state
        self.callback("end")
        return parts

    def _on_header_line(self, part: Part, line: bytes, offset: int) -> None:
        if line.startswith(CONTENT_DISPOSITION):
            try:
                part.name, part.file_name = parse_content_disposition(line)
            except MultipartParseError as e:
                part.name = part.file_name = None
                self.logger.warning("Bad Content-Disposition at %d: %s", offset + max(e.offset, 0), e)
        elif line.startswith(CONTENT_TYPE):
            part.content_type, part.content_subtype = parse_content_type_line(line)
        else:
            self.logger.debug("Ignoring part header %r", line)

    def __repr__(self) -> str:
        return "%s(boundary=%r)" % (self.__class__.__name__, self.boundary)
