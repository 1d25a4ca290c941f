from __future__ import annotations

import os
import unittest
from typing import TYPE_CHECKING

import pytest
import yaml

from cgiform.headers import PartContentType
from cgiform.multipart import MultipartParser, MultipartState, Part, iter_lines, next_line

if TYPE_CHECKING:
    from typing import Any, TypedDict

    class TestParams(TypedDict):
        name: str
        test: bytes
        result: Any


# Get the current directory for our later test cases.
curr_dir = os.path.abspath(os.path.dirname(__file__))

# Load our list of HTTP test cases: each <name>.http body has a <name>.yaml
# holding its boundary and the parts we expect from it.
http_tests_dir = os.path.join(curr_dir, "test_data", "http")
http_tests: list[TestParams] = []
for f in sorted(os.listdir(http_tests_dir)):
    fname, ext = os.path.splitext(f)
    if ext != ".http":
        continue

    with open(os.path.join(http_tests_dir, f), "rb") as fh:
        test_data = fh.read()

    with open(os.path.join(http_tests_dir, fname + ".yaml"), "rb") as fy:
        yaml_data = yaml.safe_load(fy)

    http_tests.append({"name": fname, "test": test_data, "result": yaml_data})


def build_body(boundary: bytes, *fields: tuple[bytes, bytes]) -> bytes:
    out = []
    for name, value in fields:
        out.append(b"--%s\r\nContent-Disposition: form-data; name=\"%s\"\r\n\r\n%s\r\n" % (boundary, name, value))
    out.append(b"--%s--\r\n" % boundary)
    return b"".join(out)


class TestLineScanner(unittest.TestCase):
    data = b"--B\r\nA: 1\r\nB: 2\r\n\r\nbody"

    def test_next_line(self) -> None:
        self.assertEqual(next_line(self.data, 3), ((5, 9), 9))
        self.assertEqual(next_line(self.data, 9), ((11, 15), 15))

    def test_blank_line(self) -> None:
        self.assertEqual(next_line(self.data, 15), ((17, 17), 17))

    def test_no_more_lines(self) -> None:
        self.assertIsNone(next_line(self.data, 17))
        self.assertIsNone(next_line(b"abc", 0))
        self.assertIsNone(next_line(b"abc\r\n", 0))

    def test_end_bound(self) -> None:
        self.assertIsNone(next_line(b"a\r\nb\r\n", 0, 4))

    def test_nul_terminated_line(self) -> None:
        self.assertEqual(next_line(b"x\x00\nline\r\n", 0), ((3, 7), 7))

    def test_iter_lines(self) -> None:
        self.assertEqual(list(iter_lines(self.data, 3)), [(5, 9), (11, 15), (17, 17)])

    def test_nul_terminator_after_crlf_is_ignored(self) -> None:
        self.assertEqual(next_line(b"x\r\nline\x00\nmore\r\n", 0), ((3, 13), 13))

    def test_iter_lines_is_restartable(self) -> None:
        lines = iter_lines(self.data, 3)
        first = next(lines)
        self.assertEqual(first, (5, 9))
        self.assertEqual(list(iter_lines(self.data, first[1])), [(11, 15), (17, 17)])


class TestPart(unittest.TestCase):
    def test_defaults(self) -> None:
        p = Part(b"name")
        self.assertEqual(p.body, b"")
        self.assertEqual(p.body_length, 0)
        self.assertFalse(p.is_file)
        self.assertEqual(p.content_type, PartContentType.TEXT_PLAIN)
        self.assertIsNone(p.content_subtype)
        self.assertEqual(p.upload_error, 0)
        self.assertIsNone(p.stored_path)

    def test_file(self) -> None:
        p = Part(b"up", b"a.bin", b"1234")
        self.assertTrue(p.is_file)
        self.assertEqual(p.body_length, 4)

    def test_empty_file_name_is_file(self) -> None:
        self.assertTrue(Part(b"up", b"").is_file)

    def test_repr(self) -> None:
        p = Part(b"big", body=b"x" * 200)
        r = repr(p)
        self.assertIn("name=b'big'", r)
        self.assertIn("...'", r)


class TestMultipartParser(unittest.TestCase):
    def test_requires_boundary(self) -> None:
        with self.assertRaises(ValueError):
            MultipartParser(b"")

    def test_str_boundary(self) -> None:
        p = MultipartParser("--B")
        self.assertEqual(p.boundary, b"--B")

    def test_single_field(self) -> None:
        body = b'--XYZ\r\nContent-Disposition: form-data; name="color"\r\n\r\nred\r\n--XYZ--'
        parts = MultipartParser(b"--XYZ").parse(body)
        self.assertEqual(len(parts), 1)
        self.assertEqual(parts[0].name, b"color")
        self.assertEqual(parts[0].body, b"red")

    def test_part_count_and_order(self) -> None:
        fields = [(b"f%d" % i, b"value %d" % i) for i in range(25)]
        parts = MultipartParser(b"--B").parse(build_body(b"B", *fields))
        self.assertEqual([(p.name, p.body) for p in parts], fields)

    def test_callbacks(self) -> None:
        events: list[Any] = []
        p = MultipartParser(
            b"--B",
            callbacks={
                "on_part_begin": lambda: events.append("begin"),
                "on_part_end": lambda part: events.append(part.name),
                "on_end": lambda: events.append("end"),
            },
        )
        p.parse(build_body(b"B", (b"a", b"1"), (b"b", b"2")))
        self.assertEqual(events, ["begin", b"a", "begin", b"b", "end"])
        self.assertEqual(p.state, MultipartState.END)

    def test_set_callback(self) -> None:
        seen: list[Part] = []
        p = MultipartParser(b"--B")
        p.set_callback("part_end", seen.append)
        p.parse(build_body(b"B", (b"a", b"1")))
        self.assertEqual(len(seen), 1)

        p.set_callback("part_end", None)
        p.parse(build_body(b"B", (b"a", b"1")))
        self.assertEqual(len(seen), 1)

    def test_no_boundary_in_body(self) -> None:
        self.assertEqual(MultipartParser(b"--B").parse(b"just some text"), [])

    def test_empty_body(self) -> None:
        self.assertEqual(MultipartParser(b"--B").parse(b""), [])

    def test_terminal_boundary_only(self) -> None:
        self.assertEqual(MultipartParser(b"--B").parse(b"--B--\r\n"), [])

    def test_boundary_at_end_of_buffer(self) -> None:
        body = b'--B\r\nContent-Disposition: form-data; name="a"\r\n\r\n1\r\n--B'
        parts = MultipartParser(b"--B").parse(body)
        self.assertEqual([(p.name, p.body) for p in parts], [(b"a", b"1")])

    def test_stops_at_terminal_boundary(self) -> None:
        body = build_body(b"B", (b"a", b"1")) + build_body(b"B", (b"after", b"2"))
        parts = MultipartParser(b"--B").parse(body)
        self.assertEqual([p.name for p in parts], [b"a"])

    def test_body_shorter_than_delimiter(self) -> None:
        body = b'--B\r\nContent-Disposition: form-data; name="a"\r\n\r\n--B--'
        parts = MultipartParser(b"--B").parse(body)
        self.assertEqual(len(parts), 1)
        self.assertEqual(parts[0].body, b"")

    def test_unterminated_headers(self) -> None:
        body = b'--B\r\nContent-Disposition: form-data; name="a"'
        self.assertEqual(MultipartParser(b"--B").parse(body), [])

    def test_bad_disposition_skips_part(self) -> None:
        body = (
            b'--B\r\nContent-Disposition: form-data; name="a"\r\nContent-Disposition: attachment\r\n\r\nx\r\n'
            b'--B\r\nContent-Disposition: form-data; name="b"\r\n\r\ny\r\n--B--'
        )
        parts = MultipartParser(b"--B").parse(body)
        self.assertEqual([p.name for p in parts], [b"b"])

    def test_header_names_are_case_sensitive(self) -> None:
        body = b'--B\r\ncontent-disposition: form-data; name="a"\r\n\r\nx\r\n--B--'
        self.assertEqual(MultipartParser(b"--B").parse(body), [])

    def test_binary_body(self) -> None:
        payload = bytes(range(256)) * 4
        body = (
            b'--B\r\nContent-Disposition: form-data; name="f"; filename="a.bin"\r\n'
            b"Content-Type: application/octet-stream\r\n\r\n" + payload + b"\r\n--B--\r\n"
        )
        parts = MultipartParser(b"--B").parse(body)
        self.assertEqual(parts[0].body, payload)
        self.assertEqual(parts[0].content_type, PartContentType.OCTET_STREAM)

    def test_many_header_lines(self) -> None:
        # Runs under the --timeout=30 set in tasks.py.
        body = (
            b"--B\r\n"
            + b"X: 1\r\n" * 100000
            + b'Content-Disposition: form-data; name="a"\r\n\r\nvalue\r\n--B--\r\n'
        )
        parts = MultipartParser(b"--B").parse(body)
        self.assertEqual([(p.name, p.body) for p in parts], [(b"a", b"value")])

    def test_repr(self) -> None:
        self.assertEqual(repr(MultipartParser(b"--B")), "MultipartParser(boundary=b'--B')")


@pytest.mark.parametrize("param", http_tests, ids=[t["name"] for t in http_tests])
def test_http(param: TestParams) -> None:
    boundary = b"--" + param["result"]["boundary"].encode("latin-1")
    parts = MultipartParser(boundary).parse(param["test"])

    expected = param["result"]["expected"]
    assert len(parts) == len(expected), param["name"]

    for part, e in zip(parts, expected):
        assert part.name == e["name"].encode("latin-1")
        assert part.body == e["data"].encode("latin-1")

        file_name = e.get("file_name")
        if file_name is None:
            assert not part.is_file
        else:
            assert part.file_name == file_name.encode("latin-1")

        content_type = e.get("content_type")
        if content_type is not None:
            assert part.content_subtype == content_type.encode("latin-1")


def test_http_fixtures_loaded() -> None:
    assert len(http_tests) >= 10
