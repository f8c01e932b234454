"""Secrets vault for bank account numbers.

Authenticated encryption (AES-256-GCM) for storage and a one-way digest for
equality lookups. Also holds the 22-digit account number validation rules.
"""
import hashlib
import os
import re
from typing import Sequence

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from agency_billing.errors import DecryptionFailed, InvalidAccountNumber

logger = structlog.get_logger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16

FIRST_BLOCK_WEIGHTS = (7, 1, 3, 9, 7, 1, 3)
SECOND_BLOCK_WEIGHTS = (3, 9, 7, 1, 3, 9, 7, 1, 3, 9, 7, 1, 3)

_HEX_RE = re.compile(r"^[0-9a-f]*$")


def normalize_account_number(value: str) -> str:
    """Strip everything except digits."""
    return re.sub(r"\D", "", value or "")


def compute_check_digit(block: str, weights: Sequence[int]) -> int:
    """
    Compute the check digit for a block of digits.

    Args:
        block: Digits covered by the check digit
        weights: Weight for each digit position

    Returns:
        Complement to ten of the weighted sum, modulo ten
    """
    if len(block) != len(weights) or not block.isdigit():
        raise ValueError(f"Block must have exactly {len(weights)} digits")
    total = sum(int(digit) * weight for digit, weight in zip(block, weights))
    return (10 - total % 10) % 10


def is_valid_account_number(value: str) -> bool:
    """Check length and both check digits of a 22-digit account number."""
    digits = normalize_account_number(value)
    if len(digits) != 22:
        return False
    first, second = digits[:8], digits[8:]
    if compute_check_digit(first[:7], FIRST_BLOCK_WEIGHTS) != int(first[7]):
        return False
    return compute_check_digit(second[:13], SECOND_BLOCK_WEIGHTS) == int(second[13])


def validate_account_number(value: str) -> str:
    """
    Validate and normalize an account number.

    Raises:
        InvalidAccountNumber: If length or either check digit is wrong
    """
    digits = normalize_account_number(value)
    if len(digits) != 22:
        raise InvalidAccountNumber("Account number must have 22 digits")
    if not is_valid_account_number(digits):
        raise InvalidAccountNumber("Account number check digit mismatch")
    return digits


def account_last4(value: str) -> str:
    """Last four digits of the normalized account number."""
    return normalize_account_number(value)[-4:]


def mask_account(last4: str) -> str:
    """Masked display form, e.g. ****1234."""
    return f"****{last4}"


def hash_account(value: str) -> str:
    """SHA-256 hex digest of the digits-only account number."""
    return hashlib.sha256(normalize_account_number(value).encode("utf-8")).hexdigest()


class SecretsVault:
    """
    AES-256-GCM encryption with a fresh 96-bit nonce per call.

    Ciphertext is serialized as ``nonce:ciphertext:tag`` in lowercase hex.
    """

    def __init__(self, key: bytes):
        if len(key) != 32:
            raise ValueError("Vault key must be 32 bytes")
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string.

        Args:
            plaintext: Value to protect

        Returns:
            Serialized ``nonce:ciphertext:tag`` triplet
        """
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return f"{nonce.hex()}:{ciphertext.hex()}:{tag.hex()}"

    def decrypt(self, payload: str) -> str:
        """
        Decrypt a serialized triplet.

        Raises:
            DecryptionFailed: On a malformed triplet or authentication failure
        """
        parts = (payload or "").split(":")
        if len(parts) != 3 or not all(_HEX_RE.match(part.lower()) for part in parts):
            logger.warning("vault_decrypt_malformed", part_count=len(parts))
            raise DecryptionFailed("Malformed encrypted value")

        nonce_hex, ciphertext_hex, tag_hex = parts
        try:
            nonce = bytes.fromhex(nonce_hex)
            ciphertext = bytes.fromhex(ciphertext_hex)
            tag = bytes.fromhex(tag_hex)
        except ValueError as e:
            logger.warning("vault_decrypt_malformed", reason="hex")
            raise DecryptionFailed("Malformed encrypted value") from e

        if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
            logger.warning("vault_decrypt_malformed", nonce_size=len(nonce), tag_size=len(tag))
            raise DecryptionFailed("Malformed encrypted value")

        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            logger.warning("vault_decrypt_failed")
            raise DecryptionFailed() from e
        return plaintext.decode("utf-8")
