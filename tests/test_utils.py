import pytest

from flamethrower.utils import split


@pytest.mark.parametrize(
    "text, expected",
    [
        ("a,b,c", ["a", "b", "c"]),
        ("a,,b", ["a", "", "b"]),
        (",a", ["", "a"]),
        ("a,", ["a"]),
        (",", [""]),
        ("", []),
        ("single", ["single"]),
    ],
)
def test_split(text, expected):
    assert split(text, ",") == expected


def test_split_other_delimiter():
    assert split("1000,500;2000,100", ";") == ["1000,500", "2000,100"]


def test_split_rejoins_to_input_without_trailing_delimiter():
    text = "x=1=2"
    assert "=".join(split(text, "=")) == text