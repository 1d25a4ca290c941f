"""
Request body ingestion.

``parse_form`` reads a CGI request body, splits multipart bodies into
parts, saves uploaded files and renders the two outputs handed to scripts:

    posted fields    name=value&other=value
    uploaded files   id=<field>&name=<file>&type=<type>&size=<n>&tmp_name=<path>&error=<code>[;...]

Field values are passed through exactly as they arrived, without any
URL-decoding.  ``parse_posted_fields`` and ``parse_uploaded_files`` turn the
two strings back into dicts on the consuming side.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from urllib.parse import unquote, unquote_plus

from .exceptions import ContentLengthError, ParseError
from .headers import BodyType, negotiate_content_type
from .multipart import MultipartParser, Part
from .uploads import UploadWriter

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Iterable, Mapping
    from typing import Any, Protocol, TypedDict

    class SupportsRead(Protocol):
        def read(self, __n: int) -> bytes: ...

    class FormParserConfig(TypedDict):
        MAX_BODY_SIZE: int
        MAX_FILE_SIZE: int
        MAX_DISK_SPACE: int
        UPLOAD_DIR: str
        UPLOAD_PREFIX: str
        MULTI_FILE_UPLOAD: bool
        DEBUG_BODY_SAVE_PATH: str | None
        DEBUG_BODY_LOAD_PATH: str | None


logger = logging.getLogger(__name__)

MEGABYTE = 1024 * 1024

FILE_RECORD = b"id=%s&name=%s&type=%s&size=%d&tmp_name=%s&error=%d"
DEFAULT_FILE_TYPE = b"text/plain"


def render_files(parts: Iterable[Part]) -> bytes | None:
    """
    Renders the file parts as ``;``-separated upload records, or returns
    ``None`` if there are no file parts.
    """
    records = [
        FILE_RECORD
        % (
            part.name,
            part.file_name,
            part.content_subtype or DEFAULT_FILE_TYPE,
            part.body_length,
            part.stored_path or b"",
            part.upload_error,
        )
        for part in parts
        if part.is_file
    ]
    if not records:
        return None
    return b";".join(records)


def render_fields(parts: Iterable[Part], raw_body: bytes) -> bytes:
    """
    Renders the non-file parts as ``name=value`` pairs joined by ``&``.
    When there are none, the raw body is passed through unchanged.
    """
    fields = [b"%s=%s" % (part.name, part.body) for part in parts if not part.is_file]
    if not fields:
        return raw_body
    return b"&".join(fields)


class IngestionResult:
    """
    The two outputs of one request.  Each can be taken exactly once; after
    that (or if it was never produced) ``take_*`` returns ``None``.
    """

    def __init__(self, posted: bytes | None = None, files: bytes | None = None) -> None:
        self._posted = posted
        self._files = files

    def take_posted(self) -> bytes | None:
        posted, self._posted = self._posted, None
        return posted

    def take_files(self) -> bytes | None:
        files, self._files = self._files, None
        return files

    def __repr__(self) -> str:
        return "%s(posted=%r, files=%r)" % (self.__class__.__name__, self._posted, self._files)


class FormParser:
    """
    This class decides from the request content type how a body is handled
    and produces its IngestionResult.

    Plain bodies are passed through as the posted fields.  Multipart bodies
    are split into parts, file parts are saved by an UploadWriter, and both
    outputs are rendered.  A multipart body without a usable boundary
    produces nothing at all.
    """

    DEFAULT_CONFIG: FormParserConfig = {
        "MAX_BODY_SIZE": 8 * MEGABYTE,
        "MAX_FILE_SIZE": 2 * MEGABYTE,
        "MAX_DISK_SPACE": 8 * MEGABYTE,
        "UPLOAD_DIR": "/tmp",
        "UPLOAD_PREFIX": "jst_post_",
        "MULTI_FILE_UPLOAD": True,
        "DEBUG_BODY_SAVE_PATH": None,
        "DEBUG_BODY_LOAD_PATH": None,
    }

    def __init__(
        self, content_type: str | bytes | None, writer: UploadWriter | None = None, config: dict[str, Any] = {}
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.content_type = content_type

        self.config: FormParserConfig = self.DEFAULT_CONFIG.copy()
        self.config.update(config)  # type: ignore[typeddict-item]

        self.body_type, self.boundary = negotiate_content_type(content_type)
        self.writer = writer if writer is not None else UploadWriter.from_config(self.config)
        self.parts: list[Part] = []

    def process(self, body: bytes) -> IngestionResult:
        if self.body_type == BodyType.PLAIN:
            return IngestionResult(posted=body)

        if self.boundary is None:
            self.logger.error("Failed to parse multipart boundary from %r", self.content_type)
            return IngestionResult()

        self.parts = []
        parser = MultipartParser(self.boundary, callbacks={"on_part_end": self.parts.append})
        parser.parse(body)
        self.logger.info("Got %d parts", len(self.parts))

        for part in self.parts:
            if part.is_file:
                self.writer.write(part)

        files = render_files(self.parts)
        posted = render_fields(self.parts, body)
        self.logger.debug("Posted fields: %r", posted)
        self.logger.debug("Uploaded files: %r", files)
        return IngestionResult(posted=posted, files=files)

    def __repr__(self) -> str:
        return "%s(content_type=%r, body_type=%s)" % (
            self.__class__.__name__,
            self.content_type,
            self.body_type.name,
        )


def read_body(
    content_length: str | int | None,
    input_stream: SupportsRead,
    config: Mapping[str, Any] = FormParser.DEFAULT_CONFIG,  # type: ignore[assignment]
    chunk_size: int = 65536,
) -> bytes:
    """
    Reads exactly ``content_length`` bytes of body.  A short read is logged
    and whatever arrived is returned.  Raises ContentLengthError if the
    length is missing, invalid or above MAX_BODY_SIZE.
    """
    if content_length is None:
        raise ContentLengthError("No content length given")
    try:
        length = int(content_length)
    except ValueError:
        raise ContentLengthError("Invalid content length: %r" % (content_length,))

    max_size = config["MAX_BODY_SIZE"]
    if length > max_size:
        logger.warning("Post size %d exceeds limit %d", length, max_size)
        raise ContentLengthError("Post size %d exceeds limit %d" % (length, max_size))
    if length <= 0:
        return b""

    load_path = config.get("DEBUG_BODY_LOAD_PATH")
    if load_path:
        logger.info("Loading body from %s", load_path)
        try:
            with open(load_path, "rb") as f:
                body = f.read(length)
        except OSError as e:
            logger.error("Failed to load body from %s: %s", load_path, e)
            body = b""
    else:
        chunks: list[bytes] = []
        bytes_read = 0
        while bytes_read < length:
            buff = input_stream.read(min(chunk_size, length - bytes_read))
            if not buff:
                break
            chunks.append(buff)
            bytes_read += len(buff)
        body = b"".join(chunks)

    if len(body) != length:
        logger.warning("Failed to read post data: got %d of %d bytes", len(body), length)

    save_path = config.get("DEBUG_BODY_SAVE_PATH")
    if save_path:
        logger.info("Saving body to %s", save_path)
        try:
            with open(save_path, "wb") as f:
                f.write(body)
        except OSError as e:
            logger.error("Failed to save body to %s: %s", save_path, e)

    return body


def create_form_parser(environ: Mapping[str, str], config: dict[str, Any] = {}) -> FormParser:
    """
    Creates a FormParser for the request described by a CGI environment.
    """
    return FormParser(environ.get("CONTENT_TYPE"), config=config)


def parse_form(environ: Mapping[str, str], input_stream: SupportsRead, config: dict[str, Any] = {}) -> IngestionResult:
    """
    Reads and ingests the request body described by ``environ`` (a CGI
    environment: CONTENT_LENGTH and CONTENT_TYPE) from ``input_stream``.
    Raises ContentLengthError if the body can't be accepted.
    """
    parser = create_form_parser(environ, config)
    body = read_body(environ.get("CONTENT_LENGTH"), input_stream, parser.config)
    if not body:
        return IngestionResult()
    return parser.process(body)


def parse_posted_fields(data: bytes, strict: bool = False) -> dict[str, str]:
    """
    Decodes a posted-fields string into a dict.  Values have ``+`` turned
    into spaces and are percent-decoded; names are kept as they are.  A
    chunk without exactly one ``=`` is skipped with a warning, or raises
    ParseError when ``strict`` is set.
    """
    fields: dict[str, str] = {}
    text = data.decode("utf-8", "replace")
    offset = 0
    for chunk in text.split("&"):
        pair = chunk.split("=")
        if len(pair) == 2:
            fields[pair[0]] = unquote_plus(pair[1])
        elif strict:
            e = ParseError("Unexpected post data at %d: %r" % (offset, chunk))
            e.offset = offset
            raise e
        else:
            logger.warning("Unexpected post data: %r", chunk)
        offset += len(chunk) + 1
    return fields


def parse_uploaded_files(data: bytes) -> dict[str, dict[str, str]]:
    """
    Decodes an uploaded-files string into ``{field: {"name": ..., "type":
    ..., "size": ..., "tmp_name": ..., "error": ...}}``.
    """
    files: dict[str, dict[str, str]] = {}
    for record in data.decode("utf-8", "replace").split(";"):
        current: dict[str, str] | None = None
        for chunk in record.split("&"):
            pair = chunk.split("=")
            if len(pair) != 2:
                logger.warning("Unexpected file data: %r", chunk)
                continue
            if current is None:
                current = files[unquote(pair[1])] = {}
            else:
                current[unquote(pair[0])] = unquote(pair[1])
    return files
