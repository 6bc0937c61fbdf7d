import itertools

import pytest

from participant_portal.core import code_generator
from participant_portal.core.code_generator import ALPHABET, generate_code, generate_unique_code
from participant_portal.core.errors import ExhaustedError


def test_alphabet_has_no_ambiguous_characters():
    assert len(ALPHABET) == 32
    for ch in "IO01":
        assert ch not in ALPHABET


def test_generated_code_uses_alphabet_and_length():
    code = generate_code(8)

    assert len(code) == 8
    assert all(ch in ALPHABET for ch in code)


def test_unique_codes_never_repeat_with_shared_predicate():
    taken = set()
    for _ in range(300):
        code = generate_unique_code(4, taken.__contains__)
        assert code not in taken
        taken.add(code)

    assert len(taken) == 300


def test_retries_past_collisions(monkeypatch):
    sequence = iter(["AAAA", "AAAA", "BBBB"])
    monkeypatch.setattr(code_generator, "generate_code", lambda length: next(sequence))

    assert generate_unique_code(4, {"AAAA"}.__contains__) == "BBBB"


def test_exhausted_when_whole_space_is_taken():
    taken = {"".join(pair) for pair in itertools.product(ALPHABET, repeat=2)}
    assert len(taken) == 1024

    with pytest.raises(ExhaustedError):
        generate_unique_code(2, taken.__contains__, max_attempts=50)


@pytest.mark.parametrize("length", [0, -1])
def test_invalid_length_is_rejected(length):
    with pytest.raises(ValueError):
        generate_code(length)


def test_invalid_max_attempts_is_rejected():
    with pytest.raises(ValueError):
        generate_unique_code(8, lambda code: False, max_attempts=0)
