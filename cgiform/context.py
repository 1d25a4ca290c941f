from __future__ import annotations

import logging
import os
import sys
from typing import TYPE_CHECKING

from .exceptions import FormParserError
from .form import IngestionResult, parse_form, parse_posted_fields, parse_uploaded_files
from .session import Session

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Mapping
    from typing import Any

    from .form import SupportsRead
    from .session import CsprngSource


class RequestContext:
    """
    Everything one CGI request knows about its body and session.  Build it
    with ``from_environ``; the body is read and ingested exactly once, there.
    """

    def __init__(self, environ: Mapping[str, str], form: IngestionResult, session: Session) -> None:
        self.logger = logging.getLogger(__name__)
        self.environ = environ
        self.form = form
        self.session = session

    @classmethod
    def from_environ(
        cls,
        environ: Mapping[str, str] | None = None,
        input_stream: SupportsRead | None = None,
        config: dict[str, Any] = {},
        random_source: CsprngSource | None = None,
    ) -> RequestContext:
        if environ is None:
            environ = os.environ
        if input_stream is None:
            input_stream = sys.stdin.buffer

        try:
            form = parse_form(environ, input_stream, config)
        except FormParserError as e:
            logging.getLogger(__name__).info("Not ingesting request body: %s", e)
            form = IngestionResult()

        return cls(environ, form, Session(config, random_source))

    @property
    def is_secure(self) -> bool:
        return bool(self.environ.get("HTTPS"))

    def take_posted(self) -> bytes | None:
        return self.form.take_posted()

    def take_files(self) -> bytes | None:
        return self.form.take_files()

    def posted_fields(self) -> dict[str, str]:
        """Takes the posted fields and decodes them."""
        posted = self.form.take_posted()
        if posted is None:
            return {}
        return parse_posted_fields(posted)

    def uploaded_files(self) -> dict[str, dict[str, str]]:
        """Takes the uploaded files and decodes them."""
        files = self.form.take_files()
        if files is None:
            return {}
        return parse_uploaded_files(files)

    def start_session(self) -> bool:
        return self.session.start(self.environ.get("HTTP_COOKIE"))

    def create_session(self) -> bool:
        return self.session.create()

    def session_cookie_header(self) -> str | None:
        return self.session.cookie_header(self.is_secure)

    def __repr__(self) -> str:
        return "%s(form=%r, session=%r)" % (self.__class__.__name__, self.form, self.session)
