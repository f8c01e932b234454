"""Unit tests for account number validation and the secrets vault."""
import pytest
from faker import Faker

from agency_billing.core.vault import (
    FIRST_BLOCK_WEIGHTS,
    SECOND_BLOCK_WEIGHTS,
    SecretsVault,
    account_last4,
    compute_check_digit,
    hash_account,
    is_valid_account_number,
    mask_account,
    normalize_account_number,
    validate_account_number,
)
from agency_billing.errors import DecryptionFailed, InvalidAccountNumber

VALID = "2850590940090418135201"


def test_normalize_strips_separators() -> None:
    """Test that spaces and dashes are removed from account numbers."""
    assert normalize_account_number("2850 5909-4009 0418 1352 01") == VALID
    assert normalize_account_number(None) == ""


def test_check_digit_of_first_block() -> None:
    assert compute_check_digit("2850590", FIRST_BLOCK_WEIGHTS) == 9


def test_check_digit_rejects_wrong_block_length() -> None:
    with pytest.raises(ValueError):
        compute_check_digit("123", FIRST_BLOCK_WEIGHTS)


@pytest.mark.parametrize("value", [VALID, "0070999000000000000017", "2850-5909 4009041813 5201"])
def test_valid_account_numbers(value: str) -> None:
    assert is_valid_account_number(value)
    assert validate_account_number(value) == normalize_account_number(value)


@pytest.mark.parametrize(
    "value",
    [
        "2850590940090418135202",  # second check digit flipped
        "2850590840090418135201",  # first check digit flipped
        "285059094009041813520",  # 21 digits
        "",
    ],
)
def test_invalid_account_numbers(value: str) -> None:
    """Test that wrong lengths and check digits are rejected."""
    assert not is_valid_account_number(value)
    with pytest.raises(InvalidAccountNumber):
        validate_account_number(value)


def test_every_single_digit_change_is_detected() -> None:
    """Test that replacing any one digit with any other digit fails validation."""
    for position, original in enumerate(VALID):
        for replacement in "0123456789":
            if replacement == original:
                continue
            changed = VALID[:position] + replacement + VALID[position + 1 :]
            assert not is_valid_account_number(changed), f"{changed} (position {position}) passed"


def test_computed_check_digits_always_validate() -> None:
    fake = Faker()
    fake.seed_instance(2024)
    for _ in range(200):
        first = fake.numerify("#######")
        second = fake.numerify("#############")
        number = (
            f"{first}{compute_check_digit(first, FIRST_BLOCK_WEIGHTS)}"
            f"{second}{compute_check_digit(second, SECOND_BLOCK_WEIGHTS)}"
        )
        assert is_valid_account_number(number), number


def test_masking_and_hashing() -> None:
    assert account_last4(VALID) == "5201"
    assert mask_account("5201") == "****5201"
    # Formatting does not change the lookup digest
    assert hash_account(VALID) == hash_account("2850 5909 4009 0418 1352 01")
    assert len(hash_account(VALID)) == 64


def test_vault_requires_32_byte_key() -> None:
    with pytest.raises(ValueError):
        SecretsVault(b"short")


def test_encrypt_decrypt_round_trip(vault: SecretsVault) -> None:
    """Test that a value encrypts to a fresh triplet and decrypts back."""
    first = vault.encrypt(VALID)
    second = vault.encrypt(VALID)

    assert first != second, "Each encryption must use a fresh nonce"
    assert VALID not in first
    nonce, ciphertext, tag = first.split(":")
    assert len(nonce) == 24
    assert len(tag) == 32
    assert ciphertext
    assert vault.decrypt(first) == VALID
    assert vault.decrypt(second) == VALID


def test_decrypt_rejects_tampered_ciphertext(vault: SecretsVault) -> None:
    nonce, ciphertext, tag = vault.encrypt(VALID).split(":")
    flipped = ("0" if ciphertext[0] != "0" else "1") + ciphertext[1:]

    with pytest.raises(DecryptionFailed):
        vault.decrypt(f"{nonce}:{flipped}:{tag}")


def test_decrypt_with_other_key_fails(vault: SecretsVault) -> None:
    payload = vault.encrypt(VALID)
    other = SecretsVault(bytes(reversed(range(32))))

    with pytest.raises(DecryptionFailed):
        other.decrypt(payload)


@pytest.mark.parametrize("payload", ["", "abc", "zz:zz:zz", "00:11", "00:11:22:33"])
def test_decrypt_rejects_malformed_payloads(vault: SecretsVault, payload: str) -> None:
    with pytest.raises(DecryptionFailed):
        vault.decrypt(payload)
