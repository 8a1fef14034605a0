"""
Validation utilities.
Provides validation for Solana addresses and tenant table names.
"""

import re
from typing import Iterable, List

from solders.pubkey import Pubkey

import structlog
from webhook_indexer.core.exceptions import InvalidTableNameError


logger = structlog.get_logger(__name__)

BASE58_ADDRESS_PATTERN = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")
TABLE_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_]*$")
TABLE_NAME_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_]")
MAX_TABLE_NAME_LENGTH = 63


class SolanaValidator:
    """Validator for Solana blockchain data."""

    @staticmethod
    def is_valid_pubkey(address: str) -> bool:
        """
        Validate if a string is a valid Solana public key.

        Args:
            address: String to validate

        Returns:
            True if valid, False otherwise
        """
        if not address or not BASE58_ADDRESS_PATTERN.match(address):
            return False
        try:
            Pubkey.from_string(address)
            return True
        except ValueError:
            return False

    @staticmethod
    def invalid_addresses(addresses: Iterable[str]) -> List[str]:
        """Return the subset of addresses that are not valid public keys."""
        return [a for a in addresses if not SolanaValidator.is_valid_pubkey(a)]


def validate_table_name(name: str) -> str:
    """
    Validate a user-supplied target table name.

    Raises:
        InvalidTableNameError: If the name is empty, too long or uses
            characters outside the identifier alphabet
    """
    if not name:
        raise InvalidTableNameError(name, "table name cannot be empty")
    if len(name) > MAX_TABLE_NAME_LENGTH:
        raise InvalidTableNameError(name, f"table name cannot exceed {MAX_TABLE_NAME_LENGTH} characters")
    if not TABLE_NAME_PATTERN.match(name):
        raise InvalidTableNameError(
            name,
            "table name must start with a letter and contain only letters, numbers, and underscores"
        )
    return name


def format_table_name(name: str) -> str:
    """
    Map a table name onto the safe identifier alphabet.

    Every character outside [A-Za-z0-9_] becomes an underscore, and the
    result is prefixed with ``idx_`` when it is empty or does not start
    with a letter.
    """
    sanitized = TABLE_NAME_UNSAFE_CHARS.sub("_", name or "")
    if not sanitized or not sanitized[0].isascii() or not sanitized[0].isalpha():
        sanitized = "idx_" + sanitized
    return sanitized

