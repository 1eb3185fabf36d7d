"""
Money value objects.

Amounts are integers in minor units (cents). Two Money values are equal when
their amount and currency are equal.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

BPS_DENOMINATOR = 10_000


class CurrencyMismatch(ValueError):
    """Raised when combining Money of different currencies."""


class Money(BaseModel):
    """Immutable amount of money in minor units with an ISO 4217 currency."""

    amount_minor: int = Field(..., ge=0)
    currency: str

    model_config = {"frozen": True, "strict": True}

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        if len(v) != 3 or not v.isalpha():
            raise ValueError(f"Invalid ISO 4217 currency code: {v!r}")
        return v.upper()

    def _check_currency(self, other: Money) -> None:
        if self.currency != other.currency:
            raise CurrencyMismatch(f"Cannot combine {self.currency} with {other.currency}")

    def __add__(self, other: Money) -> Money:
        self._check_currency(other)
        return Money(amount_minor=self.amount_minor + other.amount_minor, currency=self.currency)

    def __sub__(self, other: Money) -> Money:
        self._check_currency(other)
        return Money(amount_minor=self.amount_minor - other.amount_minor, currency=self.currency)

    def __lt__(self, other: Money) -> bool:
        self._check_currency(other)
        return self.amount_minor < other.amount_minor

    def basis_points(self, bps: int) -> Money:
        """Return ``bps`` basis points of this amount, rounded half-up to a minor unit."""
        return Money(
            amount_minor=apply_basis_points(self.amount_minor, bps), currency=self.currency
        )

    def __repr__(self) -> str:
        return f"Money({self.amount_minor}, {self.currency})"


class FeeSplit(BaseModel):
    """A booking total split into the provider's escrow share and the platform fee."""

    total: int
    platform_fee: int
    escrow_amount: int

    model_config = {"frozen": True}


def apply_basis_points(amount_minor: int, bps: int) -> int:
    """Integer half-up rounding of ``amount_minor * bps / 10000``."""
    if bps < 0 or bps > BPS_DENOMINATOR:
        raise ValueError(f"Basis points must be between 0 and {BPS_DENOMINATOR}, got {bps}")
    return (amount_minor * bps + BPS_DENOMINATOR // 2) // BPS_DENOMINATOR


def split_platform_fee(total_minor: int, fee_bps: int) -> FeeSplit:
    """
    Split a total into platform fee and escrow amount.

    The escrow amount is derived by subtraction so that
    ``escrow_amount + platform_fee == total`` holds exactly.
    """
    if total_minor <= 0:
        raise ValueError("Total amount must be positive")
    platform_fee = apply_basis_points(total_minor, fee_bps)
    return FeeSplit(
        total=total_minor,
        platform_fee=platform_fee,
        escrow_amount=total_minor - platform_fee,
    )


def split_with_fee(total_minor: int, platform_fee: int) -> FeeSplit:
    """Build a split from an explicit platform fee."""
    if total_minor <= 0:
        raise ValueError("Total amount must be positive")
    if platform_fee < 0 or platform_fee > total_minor:
        raise ValueError("Platform fee must be between 0 and the total amount")
    return FeeSplit(
        total=total_minor,
        platform_fee=platform_fee,
        escrow_amount=total_minor - platform_fee,
    )
