import re

import pytest

from certledger.numbers import generate_certificate_number, to_base36

NUMBER_RE = re.compile(r"^CERT-[0-9A-Z]+-[0-9A-F]{6}$")


@pytest.mark.parametrize("value,expected", [(0, "0"), (35, "z"), (36, "10"), (1700000000000, "loyw3v28")])
def test_to_base36(value, expected):
    assert to_base36(value) == expected


def test_to_base36_rejects_negative():
    with pytest.raises(ValueError):
        to_base36(-1)


def test_number_layout_is_deterministic_for_fixed_inputs():
    number = generate_certificate_number(now_ms=1700000000000, random_bytes=b"\xab\x01\xff")
    assert number == "CERT-LOYW3V28-AB01FF"


def test_generated_numbers_match_format():
    for _ in range(50):
        assert NUMBER_RE.match(generate_certificate_number())


def test_random_suffix_changes_between_calls():
    numbers = {generate_certificate_number(now_ms=1) for _ in range(20)}
    assert len(numbers) > 1
