import sys

import atheris
from helpers import EnhancedDataProvider

with atheris.instrument_imports():
    from cgiform.exceptions import SessionFormatError
    from cgiform.session import find_cookie, is_valid_identifier, loads


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    value = find_cookie(fdp.ConsumeUnicodeNoSurrogates(64), "DUKSID")
    if value is not None:
        is_valid_identifier(value[:40], "jst_sess", 40)

    try:
        loads(fdp.ConsumeRandomString())
    except SessionFormatError:
        return


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()
