import atheris

# Header lines the multipart parser reacts to; mixing them into random input
# gets the fuzzer past the header block far more often.
HEADER_PREFIXES = [
    b"Content-Disposition: form-data; ",
    b"Content-Type: ",
    b"X-Other: ",
]


class EnhancedDataProvider(atheris.FuzzedDataProvider):
    def ConsumeRandomBytes(self) -> bytes:
        return self.ConsumeBytes(self.ConsumeIntInRange(0, self.remaining_bytes()))

    def ConsumeRandomString(self) -> str:
        return self.ConsumeUnicodeNoSurrogates(self.ConsumeIntInRange(0, self.remaining_bytes()))

    def ConsumeShortBytes(self, limit: int = 64) -> bytes:
        return self.ConsumeBytes(self.ConsumeIntInRange(0, min(limit, self.remaining_bytes())))

    def ConsumeHeaderLine(self) -> bytes:
        return self.PickValueInList(HEADER_PREFIXES) + self.ConsumeShortBytes()
