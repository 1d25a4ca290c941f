"""
File-backed sessions.

Each session lives in one file named after its identifier, e.g.
``/tmp/jst_sess3kTq...``.  The identifier travels in a cookie.  The file
holds a flat record of typed values, one ``key|type|value;`` entry per key:

    fruit|s|apple;quantity|n|12.000000000000;organic|b|1;

Type tags are ``s`` (string), ``n`` (number, written with fixed precision)
and ``b`` (boolean, ``0`` or ``1``).  A file is only accepted if it is a
complete run of such records, optionally followed by whitespace; anything
else yields an empty record.

There is no locking: two requests for the same session may race.
"""

from __future__ import annotations

import logging
import os
from enum import IntEnum
from typing import TYPE_CHECKING

from .exceptions import SessionFormatError

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Mapping
    from typing import Any, TypedDict, Union

    SessionValue = Union[str, int, float, bool]

    class SessionConfig(TypedDict):
        SESSION_DIR: str
        SESSION_PREFIX: str
        SESSION_ID_BYTES: int
        SESSION_COOKIE: str
        SESSION_NUMBER_PRECISION: int


logger = logging.getLogger(__name__)

# Random bytes are mapped onto these with a modulo, which slightly favours
# the first 8 symbols since 62 does not divide 256.
PRINTABLE_CHARS = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"

# Same set as C's isspace() in the "C" locale.
WHITESPACE = " \t\n\v\f\r"

TYPE_STRING = "s"
TYPE_NUMBER = "n"
TYPE_BOOLEAN = "b"
VALUE_TYPES = frozenset((TYPE_STRING, TYPE_NUMBER, TYPE_BOOLEAN))


class RecordState(IntEnum):
    KEY = 0
    TYPE = 1
    VALUE = 2


class CsprngSource:
    """Cryptographically secure random bytes from the operating system."""

    def read(self, n: int) -> bytes:
        return os.urandom(n)

    def __repr__(self) -> str:
        return "%s()" % self.__class__.__name__


def make_identifier(random_bytes: bytes, prefix: str) -> str:
    return prefix + "".join(PRINTABLE_CHARS[b % len(PRINTABLE_CHARS)] for b in random_bytes)


def find_cookie(cookie: str, name: str) -> str | None:
    """
    Returns the value of the last cookie called ``name`` in a Cookie
    header, or ``None``.
    """
    value = None
    for pair in cookie.split(";"):
        key, sep, val = pair.strip().partition("=")
        if sep and key == name:
            value = val
    return value


def is_valid_identifier(identifier: str, prefix: str, id_length: int) -> bool:
    if len(identifier) != id_length or not identifier.startswith(prefix):
        return False
    token = identifier[len(prefix) :]
    return token.isascii() and token.isalnum()


def dumps(record: Mapping[str, Any], precision: int = 12) -> str:
    """
    Serializes a record.  Values that are not strings, numbers or booleans
    are logged and left out.
    """
    out = []
    for key, value in record.items():
        # bool first: it is also an int.
        if isinstance(value, bool):
            out.append("%s|%s|%d;" % (key, TYPE_BOOLEAN, value))
        elif isinstance(value, str):
            out.append("%s|%s|%s;" % (key, TYPE_STRING, value))
        elif isinstance(value, (int, float)):
            out.append("%s|%s|%.*f;" % (key, TYPE_NUMBER, precision, value))
        else:
            logger.warning("Skipping session key %r: unsupported type %s", key, type(value).__name__)
    return "".join(out)


def _decode_value(type_tag: str, value: str, offset: int) -> SessionValue:
    try:
        if type_tag == TYPE_STRING:
            return value
        if type_tag == TYPE_NUMBER:
            number = float(value)
            return int(number) if number.is_integer() else number
        return bool(int(value))
    except ValueError:
        e = SessionFormatError("Bad %r value %r at %d" % (type_tag, value, offset))
        e.offset = offset
        raise e


def loads(data: str) -> dict[str, SessionValue]:
    """
    Parses the contents of a session file.  Raises SessionFormatError
    unless the whole of ``data`` is a run of complete records followed by
    nothing but whitespace.
    """
    record: dict[str, SessionValue] = {}
    state = RecordState.KEY
    key = type_tag = ""
    length = len(data)
    content_end = len(data.rstrip(WHITESPACE))

    i = 0
    while i < length:
        if state == RecordState.KEY:
            end = data.find("|", i)
            if end == -1:
                break
            key = data[i:end]
            state = RecordState.TYPE

        elif state == RecordState.TYPE:
            end = data.find("|", i)
            if end == -1:
                break
            type_tag = data[i:end]
            if type_tag not in VALUE_TYPES:
                e = SessionFormatError("Invalid type %r at %d" % (type_tag, i))
                e.offset = i
                raise e
            state = RecordState.VALUE

        else:
            end = data.find(";", i)
            if end == -1:
                break
            record[key] = _decode_value(type_tag, data[i:end], i)
            state = RecordState.KEY

            if end + 1 >= content_end:
                return record

        i = end + 1

    e = SessionFormatError("Incomplete record at %d" % (i,))
    e.offset = i
    raise e


class SessionStore:
    """
    Reads and writes session files in one directory.  Failures are logged
    and reported as empty records or ``False``.
    """

    def __init__(self, directory: str, precision: int = 12) -> None:
        self.logger = logging.getLogger(__name__)
        self.directory = directory
        self.precision = precision

    def path(self, identifier: str) -> str:
        return os.path.join(self.directory, identifier)

    def exists(self, identifier: str) -> bool:
        return os.path.exists(self.path(identifier))

    def touch(self, identifier: str) -> bool:
        path = self.path(identifier)
        try:
            os.utime(path, None)
        except OSError as e:
            self.logger.error("Failed to update last access time on %s: %s", path, e)
            return False
        return True

    def read(self, identifier: str) -> dict[str, SessionValue]:
        path = self.path(identifier)
        try:
            with open(path, encoding="utf-8", errors="surrogateescape") as f:
                contents = f.read()
        except OSError as e:
            self.logger.info("Failed to read session file %s: %s", path, e)
            return {}

        try:
            record = loads(contents)
        except SessionFormatError as e:
            self.logger.warning("Discarding invalid session file %s: %s", path, e)
            return {}

        self.logger.debug("Read %d session values from %s", len(record), path)
        return record

    def write(self, identifier: str, record: Mapping[str, Any]) -> bool:
        path = self.path(identifier)
        try:
            with open(path, "w", encoding="utf-8", errors="surrogateescape") as f:
                f.write(dumps(record, self.precision))
        except OSError as e:
            self.logger.error("Failed to write session file %s: %s", path, e)
            return False
        self.logger.debug("Session file written %s", path)
        return True

    def delete(self, identifier: str) -> bool:
        path = self.path(identifier)
        self.logger.info("Removing session file %s", path)
        try:
            os.unlink(path)
        except OSError as e:
            self.logger.warning("Failed to remove session file %s: %s", path, e)
            return False
        return True

    def __repr__(self) -> str:
        return "%s(directory=%r)" % (self.__class__.__name__, self.directory)


class Session:
    """
    The session of one request: its identifier, once started or created,
    and access to the stored record.
    """

    DEFAULT_CONFIG: SessionConfig = {
        "SESSION_DIR": "/tmp",
        "SESSION_PREFIX": "jst_sess",
        "SESSION_ID_BYTES": 32,
        "SESSION_COOKIE": "DUKSID",
        "SESSION_NUMBER_PRECISION": 12,
    }

    def __init__(self, config: dict[str, Any] = {}, random_source: CsprngSource | None = None) -> None:
        self.logger = logging.getLogger(__name__)

        self.config: SessionConfig = self.DEFAULT_CONFIG.copy()
        self.config.update(config)  # type: ignore[typeddict-item]

        self.store = SessionStore(self.config["SESSION_DIR"], self.config["SESSION_NUMBER_PRECISION"])
        self.random_source = random_source if random_source is not None else CsprngSource()
        self.identifier: str | None = None

    @property
    def id_length(self) -> int:
        return len(self.config["SESSION_PREFIX"]) + self.config["SESSION_ID_BYTES"]

    def start(self, cookie: str | None) -> bool:
        """
        Resumes the session named by the request cookie.  The identifier is
        accepted only if it is well formed and its file exists.  If a
        session is already active, its file's access time is refreshed.
        """
        if self.identifier is not None:
            return self.store.touch(self.identifier)

        if not cookie:
            self.logger.debug("No cookie, no session")
            return False

        value = find_cookie(cookie, self.config["SESSION_COOKIE"])
        if value is None:
            self.logger.debug("No session cookie in %r", cookie)
            return False
        if len(value) < self.id_length:
            self.logger.warning("Session id too short: %r", value)
            return False

        # The whole value names the session file, so anything longer than an
        # identifier can never match one.
        identifier = value
        if not is_valid_identifier(identifier, self.config["SESSION_PREFIX"], self.id_length):
            self.logger.warning("Invalid session id: %r", value)
            return False
        if not self.store.exists(identifier):
            self.logger.info("No session file for %s", identifier)
            return False

        self.logger.info("Resuming session %s", identifier)
        self.identifier = identifier
        return True

    def create(self) -> bool:
        """Starts a new session under a fresh random identifier."""
        n = self.config["SESSION_ID_BYTES"]
        random_bytes = self.random_source.read(n)
        if len(random_bytes) != n:
            self.logger.error("Failed to get random bytes (%d of %d)", len(random_bytes), n)
            return False

        self.identifier = make_identifier(random_bytes, self.config["SESSION_PREFIX"])
        self.logger.info("Created session %s", self.identifier)
        return True

    def get_id(self) -> str | None:
        return self.identifier

    def get_status(self) -> bool:
        return self.identifier is not None

    def get_data(self) -> dict[str, SessionValue] | None:
        if self.identifier is None:
            return None
        return self.store.read(self.identifier)

    def set_data(self, record: Mapping[str, Any]) -> bool:
        if self.identifier is None:
            self.logger.warning("Session not started, not saving data")
            return False
        return self.store.write(self.identifier, record)

    def destroy(self) -> bool:
        if self.identifier is None:
            return False
        self.store.delete(self.identifier)
        self.identifier = None
        return True

    def cookie_header(self, secure: bool = False) -> str | None:
        if self.identifier is None:
            return None
        attrs = "; secure; httponly" if secure else "; httponly"
        return "Set-Cookie: %s=%s%s" % (self.config["SESSION_COOKIE"], self.identifier, attrs)

    def __repr__(self) -> str:
        return "%s(identifier=%r, store=%r)" % (self.__class__.__name__, self.identifier, self.store)
