"""
Header parsing for CGI request bodies.

Two levels of headers are handled here: the request's own ``CONTENT_TYPE``
declaration, which decides how the body is parsed and carries the multipart
boundary, and the ``Content-Disposition`` / ``Content-Type`` lines found at
the head of each multipart part.  Everything works on ``bytes``; ``str``
input is encoded as latin-1 so that every byte value survives.
"""

from __future__ import annotations

import logging
from enum import IntEnum

from .exceptions import MultipartParseError

logger = logging.getLogger(__name__)

QUOTE = b'"'[0]
SEMICOLON = b";"[0]

# Same set as C's isspace() in the "C" locale.
WHITESPACE = frozenset(b" \t\n\v\f\r")

MULTIPART_FORM_DATA = b"multipart/form-data"

# Part content types we know how to handle, matched as prefixes.
TEXT_PLAIN = b"text/plain"
OCTET_STREAM = b"application/octet-stream"


class BodyType(IntEnum):
    """How a request body should be treated, as decided from its
    content-type declaration.
    """

    UNRECOGNIZED = 0
    PLAIN = 1
    MULTIPART = 2


class PartContentType(IntEnum):
    UNSUPPORTED = 0
    TEXT_PLAIN = 1
    OCTET_STREAM = 2


def _to_bytes(value: str | bytes) -> bytes:
    if isinstance(value, str):
        return value.encode("latin-1", "replace")
    return value


def _skip_whitespace(data: bytes, pos: int, end: int) -> int:
    while pos < end and data[pos] in WHITESPACE:
        pos += 1
    return pos


def negotiate_content_type(value: str | bytes | None) -> tuple[BodyType, bytes | None]:
    """
    Inspects a request content-type declaration.  Returns one of:

        (BodyType.PLAIN, None)            anything that isn't multipart
        (BodyType.MULTIPART, b"--XYZ")    multipart with its on-wire delimiter
        (BodyType.MULTIPART, None)        multipart without a usable boundary
        (BodyType.UNRECOGNIZED, None)     a boundary that can't be extracted

    The boundary is returned with the two leading hyphens that precede it in
    the body.  Both of the last two results mean the body can't be parsed.
    """
    if not value:
        return (BodyType.PLAIN, None)

    value = _to_bytes(value)
    if MULTIPART_FORM_DATA not in value:
        return (BodyType.PLAIN, None)

    start = value.find(b"boundary")
    if start != -1:
        start = value.find(b"=", start)
    if start == -1:
        logger.warning("No boundary given in content type %r", value)
        return (BodyType.MULTIPART, None)

    start += 1
    if value[start : start + 1] == b'"':
        start += 1
        end = value.find(b'"', start)
        if end == -1:
            logger.warning("Unterminated quoted boundary in content type %r", value)
            return (BodyType.UNRECOGNIZED, None)
    else:
        end = len(value)
        for sep in (b",", b";"):
            pos = value.find(sep, start)
            if pos != -1 and pos < end:
                end = pos

    boundary = value[start:end]
    if not boundary:
        logger.warning("Empty boundary in content type %r", value)
        return (BodyType.MULTIPART, None)

    return (BodyType.MULTIPART, b"--" + boundary)


def parse_name_value_pair(line: bytes, pos: int, end: int | None = None) -> tuple[bytes, bytes, int] | None:
    """
    Parses one ``name=value`` attribute from a header line, starting at
    ``pos``.  The value may be quoted, in which case it runs up to the
    closing quote, or bare, in which case it stops at a semicolon or
    whitespace.

    Returns ``(name, value, next_pos)`` where ``next_pos`` is just past the
    semicolon that ends the attribute, or ``None`` when no further attribute
    can be read.
    """
    if end is None:
        end = len(line)

    pos = _skip_whitespace(line, pos, end)
    if pos >= end:
        return None

    equals = line.find(b"=", pos, end)
    if equals == -1:
        return None
    name = line[pos:equals]

    pos = _skip_whitespace(line, equals + 1, end)
    if pos >= end:
        return None

    if line[pos] == QUOTE:
        pos += 1
        close = line.find(b'"', pos, end)
        if close == -1:
            logger.warning("Missing closing quote for attribute %r", name)
            value = line[pos:end]
            pos = end
        else:
            value = line[pos:close]
            pos = close + 1
    else:
        start = pos
        while pos < end and line[pos] != SEMICOLON and line[pos] not in WHITESPACE:
            pos += 1
        value = line[start:pos]

    sep = line.find(b";", pos, end)
    next_pos = sep + 1 if sep != -1 else end
    return (name, value, next_pos)


def parse_content_disposition(line: bytes) -> tuple[bytes, bytes | None]:
    """
    Parses a part's Content-Disposition line, e.g.

        Content-Disposition: form-data; name="file"; filename="config.CF2"

    and returns ``(name, file_name)``.  ``file_name`` is ``None`` for plain
    fields.  Unknown attributes are ignored.  Raises MultipartParseError
    if the line has no form-data attributes or no ``name``.
    """
    marker = line.find(b"form-data")
    pos = -1 if marker == -1 else line.find(b";", marker)
    if pos == -1 or pos + 1 >= len(line):
        e = MultipartParseError("No form-data attributes in Content-Disposition: %r" % (line,))
        e.offset = max(marker, 0)
        raise e

    name: bytes | None = None
    file_name: bytes | None = None

    pos += 1
    while (pair := parse_name_value_pair(line, pos)) is not None:
        attr, value, pos = pair
        if attr == b"name":
            name = value
        elif attr == b"filename":
            file_name = value
        else:
            logger.debug("Ignoring Content-Disposition attribute %r", attr)

    if name is None:
        e = MultipartParseError("No name in Content-Disposition: %r" % (line,))
        e.offset = marker
        raise e

    return (name, file_name)


def parse_content_type_line(line: bytes) -> tuple[PartContentType, bytes | None]:
    """
    Parses a part's Content-Type line, e.g.

        Content-Type: application/octet-stream

    Returns the recognized type together with the declared value.  Types
    other than text/plain and application/octet-stream come back as
    UNSUPPORTED, but their declared value is still returned so it can be
    reported with the upload.
    """
    colon = line.find(b":")
    if colon == -1:
        logger.warning("No colon in Content-Type line %r", line)
        return (PartContentType.UNSUPPORTED, None)

    pos = _skip_whitespace(line, colon + 1, len(line))
    if pos >= len(line):
        logger.warning("Empty Content-Type line %r", line)
        return (PartContentType.UNSUPPORTED, None)

    value = line[pos:]
    if value.startswith(TEXT_PLAIN):
        return (PartContentType.TEXT_PLAIN, value)
    if value.startswith(OCTET_STREAM):
        return (PartContentType.OCTET_STREAM, value)

    logger.warning("Unsupported part Content-Type: %r", value)
    return (PartContentType.UNSUPPORTED, value)
