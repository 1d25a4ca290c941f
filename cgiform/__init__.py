__version__ = "0.1.0"

from .context import RequestContext
from .form import (
    FormParser,
    IngestionResult,
    create_form_parser,
    parse_form,
    parse_posted_fields,
    parse_uploaded_files,
)
from .multipart import MultipartParser, Part
from .session import Session, SessionStore

__all__ = (
    "FormParser",
    "IngestionResult",
    "MultipartParser",
    "Part",
    "RequestContext",
    "Session",
    "SessionStore",
    "create_form_parser",
    "parse_form",
    "parse_posted_fields",
    "parse_uploaded_files",
)
