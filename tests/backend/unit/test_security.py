from rollrelay.backend.security import (
    PAIRING_CODE_ALPHABET,
    PAIRING_CODE_LENGTH,
    generate_pairing_code,
    generate_token,
    normalize_pairing_code,
    verify_service_key,
)


def test_generate_pairing_code_uses_unambiguous_alphabet() -> None:
    for _ in range(200):
        code = generate_pairing_code()
        assert len(code) == PAIRING_CODE_LENGTH
        assert set(code) <= set(PAIRING_CODE_ALPHABET)

    assert not set("01IO") & set(PAIRING_CODE_ALPHABET)


def test_normalize_pairing_code_upper_cases_and_strips() -> None:
    assert normalize_pairing_code("  ab3xyz ") == "AB3XYZ"


def test_generate_token_returns_unique_values() -> None:
    assert generate_token() != generate_token()


def test_verify_service_key_accepts_matching_key() -> None:
    assert verify_service_key("secret", "secret") is True


def test_verify_service_key_rejects_missing_or_wrong_key() -> None:
    assert verify_service_key(None, "secret") is False
    assert verify_service_key("", "secret") is False
    assert verify_service_key("other", "secret") is False


def test_verify_service_key_is_open_when_no_key_configured() -> None:
    assert verify_service_key(None, None) is True
    assert verify_service_key("anything", "") is True
