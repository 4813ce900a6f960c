import pytest

from coordinator.config import parse_sequence


def test_default_fibonacci_curve():
    assert parse_sequence("1,2,3,5,8,13,21,34,55,89,144,233,377,500")[-3:] == [233, 377, 500]


def test_whitespace_and_trailing_commas():
    assert parse_sequence(" 0, 4 ,10,") == [0, 4, 10]


@pytest.mark.parametrize("raw", ["", " , ", "1,-2", "1,two"])
def test_invalid_sequences(raw):
    with pytest.raises(ValueError):
        parse_sequence(raw)
