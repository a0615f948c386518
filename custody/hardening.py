"""
Custody Errors, Validation and Guards

Shared by every vault component:

- the vault error taxonomy, one class per terminal failure, each with a
  stable ``error_code``;
- input validation for accounts, uint256 quantities and signature bytes;
- the reentrancy busy flag and the compare-and-set counter behind nonces;
- invariant checks that must never fail in a correct vault.

Inputs are untrusted until they pass a validator here. Key comparisons are
constant-time.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import hmac
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, List, Optional

UINT256_MAX = 2 ** 256 - 1


# =============================================================================
# INPUT ERRORS
# =============================================================================

class ValidationError(Exception):
    """One rejected input field."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class ValidationErrors(Exception):
    """Every rejected field of one input."""

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        super().__init__("Validation failed: " + "; ".join(str(e) for e in errors))


class InvalidAccount(ValidationError):
    """An account identifier is not a well-formed address."""
    pass


class InvariantViolation(Exception):
    """Internal state broke a rule a correct vault never breaks."""
    pass


# =============================================================================
# VAULT ERROR TAXONOMY
# =============================================================================

class VaultError(Exception):
    """
    Base class for terminal vault failures.

    Every subclass carries a stable ``error_code`` so callers and log
    consumers can branch on it without matching message text.
    """
    error_code = "VAULT_ERROR"

    def __init__(self, message: str = "", **details: Any):
        self.details = details
        super().__init__(message or self.error_code)


class InvalidAmount(VaultError):
    """Zero, negative, non-integer or out-of-range quantity."""
    error_code = "INVALID_AMOUNT"


class DeadlineExpired(VaultError):
    """Authorization presented after its deadline."""
    error_code = "DEADLINE_EXPIRED"


class InvalidSignature(VaultError):
    """Malformed signature, or signer lacking the required capability."""
    error_code = "INVALID_SIGNATURE"


class TransferFailure(VaultError):
    """The underlying asset movement did not succeed."""
    error_code = "TRANSFER_FAILURE"


class Unauthorized(VaultError):
    """Caller lacks the capability the operation requires."""
    error_code = "UNAUTHORIZED"


class PausedState(VaultError):
    """Operation attempted while the vault is paused."""
    error_code = "PAUSED"


class ReentrantCall(VaultError):
    """A guarded operation was re-entered while already executing."""
    error_code = "REENTRANT_CALL"


# =============================================================================
# VALIDATORS
# =============================================================================

@dataclass
class ValidationResult:
    """Outcome of one validator: the normalized value, or the reasons it was rejected."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    sanitized_value: Any = None

    @classmethod
    def ok(cls, value: Any) -> "ValidationResult":
        return cls(True, sanitized_value=value)

    @classmethod
    def rejected(cls, *errors: ValidationError) -> "ValidationResult":
        return cls(False, errors=list(errors))

    def raise_if_invalid(self) -> None:
        if not self.is_valid:
            raise ValidationErrors(self.errors)


class Validators:
    """Validators for the input shapes a vault accepts."""

    ADDRESS = re.compile(r"^0x[0-9a-f]{40}$")
    HEX_DIGITS = re.compile(r"^[0-9a-f]*$")

    @classmethod
    def validate_address(cls, value: Any, field_name: str = "address") -> ValidationResult:
        """``0x`` followed by 40 hex digits; normalized to lower case."""
        if not isinstance(value, str):
            return ValidationResult.rejected(
                InvalidAccount(field_name, f"Expected string, got {type(value).__name__}", value)
            )
        normalized = value.strip().lower()
        if cls.ADDRESS.match(normalized) is None:
            return ValidationResult.rejected(
                InvalidAccount(field_name, "Must be a valid address (0x + 40 hex)", value)
            )
        return ValidationResult.ok(normalized)

    @classmethod
    def validate_uint(
        cls,
        value: Any,
        field_name: str,
        min_value: int = 0,
        max_value: int = UINT256_MAX,
    ) -> ValidationResult:
        """An int within ``min_value..max_value``. ``bool`` is not a quantity."""
        if isinstance(value, bool) or not isinstance(value, int):
            return ValidationResult.rejected(
                ValidationError(field_name, f"Expected integer, got {type(value).__name__}", value)
            )
        if value < min_value:
            return ValidationResult.rejected(ValidationError(field_name, f"Below minimum ({min_value})", value))
        if value > max_value:
            return ValidationResult.rejected(ValidationError(field_name, "Exceeds uint256 range", value))
        return ValidationResult.ok(value)

    @classmethod
    def validate_bytes(
        cls,
        value: Any,
        field_name: str,
        min_length: int = 0,
        max_length: int = 1024,
    ) -> ValidationResult:
        """Raw bytes, or a hex string with or without ``0x``, within the length bounds."""
        if isinstance(value, str):
            digits = value.strip().lower()
            digits = digits[2:] if digits.startswith("0x") else digits
            if len(digits) % 2 or cls.HEX_DIGITS.match(digits) is None:
                return ValidationResult.rejected(ValidationError(field_name, "Invalid hex string", value))
            raw = bytes.fromhex(digits)
        elif isinstance(value, (bytes, bytearray, memoryview)):
            raw = bytes(value)
        else:
            return ValidationResult.rejected(
                ValidationError(field_name, f"Expected bytes, got {type(value).__name__}", value)
            )

        if not min_length <= len(raw) <= max_length:
            bound = f"min {min_length}" if len(raw) < min_length else f"max {max_length}"
            problem = "Too short" if len(raw) < min_length else "Too long"
            return ValidationResult.rejected(ValidationError(field_name, f"{problem} ({bound} bytes)", value))
        return ValidationResult.ok(raw)


def require_account(value: Any, field_name: str = "account") -> str:
    """Normalized address, or raise InvalidAccount."""
    checked = Validators.validate_address(value, field_name)
    if not checked.is_valid:
        raise checked.errors[0]
    return checked.sanitized_value


def require_amount(value: Any, field_name: str = "amount") -> int:
    """Positive uint256, or raise InvalidAmount."""
    checked = Validators.validate_uint(value, field_name, min_value=1)
    if not checked.is_valid:
        raise InvalidAmount(str(checked.errors[0]), amount=value)
    return checked.sanitized_value


class CryptoUtils:
    """Key material helpers."""

    @staticmethod
    def secure_compare(a: bytes, b: bytes) -> bool:
        """Constant-time equality."""
        return hmac.compare_digest(a, b)


# =============================================================================
# GUARDS
# =============================================================================

class AtomicCounter:
    """Integer cell whose reads and compare-and-set are serialized by a lock."""

    def __init__(self, initial: int = 0):
        self._value = initial
        self._lock = threading.Lock()

    def get(self) -> int:
        with self._lock:
            return self._value

    def compare_and_set(self, expected: int, new_value: int) -> bool:
        """Store ``new_value`` only if the cell still holds ``expected``."""
        with self._lock:
            if self._value != expected:
                return False
            self._value = new_value
            return True


class ReentrancyGuard:
    """
    Busy flag for guarded operations.

    ``enter()`` is a context manager: it raises ReentrantCall if the flag is
    already held, otherwise holds it for the body and releases it on every
    exit path. Serialization across threads is the owner's job; this guard
    only rejects nested entry.
    """

    def __init__(self, name: str = "guard"):
        self.name = name
        self._owner: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self._owner is not None

    @contextmanager
    def enter(self, operation: str) -> Iterator[None]:
        if self._owner is not None:
            raise ReentrantCall(
                f"{operation} re-entered {self.name} during {self._owner}",
                operation=operation,
                active=self._owner,
            )
        self._owner = operation
        try:
            yield
        finally:
            self._owner = None


class InvariantChecker:
    """Checks that raise InvariantViolation."""

    @staticmethod
    def check_monotonic_increase(field_name: str, old_value: int, new_value: int) -> None:
        if new_value < old_value:
            raise InvariantViolation(f"{field_name} went backwards: {old_value} -> {new_value}")

    @staticmethod
    def check_conservation(amount: int, *parts: int) -> None:
        """The parts of a split add up to exactly ``amount``."""
        if sum(parts) != amount:
            raise InvariantViolation(f"split {list(parts)} does not add up to {amount}")
