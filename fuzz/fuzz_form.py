import io
import sys
import tempfile

import atheris
from helpers import EnhancedDataProvider

with atheris.instrument_imports():
    from cgiform.exceptions import FormParserError
    from cgiform.form import parse_form, parse_posted_fields, parse_uploaded_files

upload_dir = tempfile.mkdtemp(prefix="cgiform-fuzz-")
config = {"UPLOAD_DIR": upload_dir, "MAX_DISK_SPACE": 1024 * 1024}


def parse(content_type: str, body: bytes) -> None:
    environ = {"CONTENT_TYPE": content_type, "CONTENT_LENGTH": str(len(body))}
    result = parse_form(environ, io.BytesIO(body), config)

    posted = result.take_posted()
    if posted is not None:
        parse_posted_fields(posted)
    files = result.take_files()
    if files is not None:
        parse_uploaded_files(files)


def parse_form_urlencoded(fdp: EnhancedDataProvider) -> None:
    parse("application/x-www-form-urlencoded", fdp.ConsumeRandomBytes())


def parse_random_content_type(fdp: EnhancedDataProvider) -> None:
    content_type = fdp.ConsumeShortBytes().decode("latin-1")
    parse(content_type, fdp.ConsumeRandomBytes())


def parse_multipart_form_data(fdp: EnhancedDataProvider) -> None:
    boundary = b"boundary"
    lines = [b"--" + boundary]
    for _ in range(fdp.ConsumeIntInRange(0, 4)):
        lines.append(fdp.ConsumeHeaderLine())
    lines.append(b"")
    lines.append(fdp.ConsumeRandomBytes())
    lines.append(b"--" + boundary + b"--")
    parse("multipart/form-data; boundary=boundary", b"\r\n".join(lines))


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    targets = [parse_form_urlencoded, parse_random_content_type, parse_multipart_form_data]
    target = fdp.PickValueInList(targets)

    try:
        target(fdp)
    except FormParserError:
        return


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()
