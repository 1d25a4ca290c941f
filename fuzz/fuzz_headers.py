import sys

import atheris
from helpers import EnhancedDataProvider

with atheris.instrument_imports():
    from cgiform.exceptions import MultipartParseError
    from cgiform.headers import negotiate_content_type, parse_content_disposition, parse_content_type_line


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    negotiate_content_type(fdp.ConsumeShortBytes())
    parse_content_type_line(fdp.ConsumeHeaderLine())
    try:
        parse_content_disposition(fdp.ConsumeHeaderLine())
    except MultipartParseError:
        return


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()
