class FormParserError(ValueError):
    """Base error class for our form parser."""


class ParseError(FormParserError):
    """This exception (or a subclass) is raised when there is an error while
    parsing something.
    """

    #: This is the offset in the input data (the whole body, or the single
    #: header line being parsed) at which the parse error occurred.  It will
    #: be -1 if not specified.
    offset = -1


class MultipartParseError(ParseError):
    """This is a specific error that is raised when a multipart part header
    cannot be parsed.  The MultipartParser catches it and skips the part.
    """


class ContentLengthError(FormParserError):
    """Raised when the declared content length is missing, invalid, or
    larger than the configured maximum body size.
    """


class FileError(FormParserError, OSError):
    """Exception class for problems with uploaded files."""


class SessionError(Exception):
    """Base error class for the session store."""


class SessionFormatError(SessionError):
    """Raised when a session file does not hold a valid, complete set of
    records.
    """

    #: Offset in the file contents where the problem was detected.
    offset = -1
