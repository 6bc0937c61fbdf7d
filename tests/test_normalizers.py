import pytest

from participant_portal.core.normalizers import (
    build_phone_hint,
    factor_matches,
    is_valid_code,
    mask_display_name,
    mask_identifier,
    normalize_access_code,
    normalize_checkin_code,
    normalize_identity_number,
)


@pytest.mark.parametrize(
    "phone",
    ["+90 532 123 45 67", "05321234567", "(532) 123-4567", "905321234567"],
)
def test_factor_ignores_separators_and_country_code(phone):
    assert factor_matches(phone, "4567") is True
    assert factor_matches(phone, " 45-67 ") is True


@pytest.mark.parametrize("supplied", ["4568", "567", "34567", "", None, "abcd"])
def test_factor_mismatch(supplied):
    assert factor_matches("+90 532 123 45 67", supplied) is False


def test_factor_without_phone_never_matches():
    assert factor_matches(None, "4567") is False
    assert factor_matches("12", "0012") is False


def test_phone_hint():
    assert build_phone_hint("+90 532 123 45 67") == "+90 *** *** ** 67"
    assert build_phone_hint("(11) 99938-0969") == "***0969"
    assert build_phone_hint("7") is None
    assert build_phone_hint(None) is None


def test_display_name_is_masked():
    assert mask_display_name("Ayşe Yılmaz Demir") == "Ayşe Y."
    assert mask_display_name("  Mehmet  ") == "Mehmet"
    assert mask_display_name("") == "Participant"
    assert mask_display_name(None) == "Participant"


def test_code_normalization():
    assert normalize_checkin_code(" abcd 2345 ") == "ABCD2345"
    assert normalize_checkin_code("ab-cd-23-45") == "ABCD2345"
    assert normalize_checkin_code(None) == ""
    assert normalize_access_code(" abcd-2345 ") == "ABCD2345"
    assert normalize_identity_number("123 456 789 01") == "12345678901"


def test_code_validation_uses_alphabet_and_length():
    assert is_valid_code("ABCD2345", 8) is True
    assert is_valid_code("ABCD234", 8) is False
    assert is_valid_code("ABCD2340", 8) is False  # 0 fora do alfabeto
    assert is_valid_code("ABCDI345", 8) is False


def test_mask_identifier():
    assert mask_identifier("12345678901") == "12****01"
    assert mask_identifier("123") == "****"
