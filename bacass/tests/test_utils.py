import io
import os

import pytest

from bacass.hashing import hash_path, hash_stream, hash_struct
from bacass.utils import format_table, json_dumps, parse_memory, str2bool, trim_string


def test_str2bool() -> None:
    assert str2bool("Yes") is True
    assert str2bool(" off ") is False
    assert str2bool(True) is True
    with pytest.raises(ValueError):
        str2bool("sometimes")


@pytest.mark.parametrize(
    "text,expected",
    [
        ("16.GB", 16.0),
        ("512 MB", 0.5),
        ("2t", 2048.0),
        ("8", 8.0),
        (4, 4.0),
    ],
)
def test_parse_memory(text, expected) -> None:
    assert parse_memory(text) == expected


def test_parse_memory_invalid() -> None:
    with pytest.raises(ValueError):
        parse_memory("lots")


def test_json_dumps() -> None:
    assert json_dumps({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'


def test_trim_string() -> None:
    assert trim_string("short") == "short"
    assert trim_string("abcdefghij", max_length=6) == "abc..."


def test_format_table() -> None:
    lines = list(format_table([["NAME", "N"], ["a", "10"], ["bbb", "2"]], "lr"))
    assert lines == ["NAME  N", "", "a    10", "bbb   2"]


def test_hash_path(tmp_path) -> None:
    """
    Directory hashes should depend on file names and contents only.
    """
    first = tmp_path / "first"
    second = tmp_path / "second"
    for base, names in ((first, ["b.txt", "a.txt"]), (second, ["a.txt", "b.txt"])):
        os.makedirs(str(base / "sub"))
        for name in names:
            (base / "sub" / name).write_text(name)

    assert hash_path(str(first)) == hash_path(str(second))
    (second / "sub" / "a.txt").write_text("changed")
    assert hash_path(str(first)) != hash_path(str(second))

    assert hash_path(str(first / "sub" / "a.txt")) == hash_stream(io.BytesIO(b"a.txt"))
    assert len(hash_stream(io.BytesIO(b"hello"))) == 40
    assert hash_struct({"a": 1, "b": 2}) == hash_struct({"b": 2, "a": 1})
