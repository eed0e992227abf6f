"""Decimal amount to token base-unit conversion.

Amounts arrive as decimal strings and are scaled with the token's on-chain
decimals at processing time. The conversion is exact: an amount carrying
more fractional digits than the token supports is rejected, never rounded.
"""

from decimal import Decimal, InvalidOperation

from ortenberg.errors import AmountConversionError

MAX_UINT256 = 2**256 - 1
MAX_TOKEN_DECIMALS = 255  # ERC20 decimals() is a uint8


def to_base_units(amount: str, decimals: int) -> int:
    """Scale a decimal string to the token's minimal integer unit.

    Args:
        amount: Human-readable amount, e.g. "1500.00"
        decimals: Token decimals as reported by the contract

    Returns:
        Integer amount in base units (e.g. 1500000000 for "1500.00" at 6 decimals)

    Raises:
        AmountConversionError: malformed, non-finite or negative amount,
            too many fractional digits, invalid decimals, or uint256 overflow
    """
    if isinstance(decimals, bool) or not isinstance(decimals, int):
        raise AmountConversionError(f"Token decimals must be an integer, got {decimals!r}")
    if not 0 <= decimals <= MAX_TOKEN_DECIMALS:
        raise AmountConversionError(f"Token decimals out of range: {decimals}")

    if not isinstance(amount, str) or not amount.strip():
        raise AmountConversionError(f"Amount must be a non-empty decimal string, got {amount!r}")

    try:
        value = Decimal(amount.strip())
    except InvalidOperation as e:
        raise AmountConversionError(f"Invalid decimal amount: {amount!r}") from e

    if not value.is_finite():
        raise AmountConversionError(f"Amount must be finite: {amount!r}")
    if value < 0:
        raise AmountConversionError(f"Amount must not be negative: {amount!r}")

    _, digits, exponent = value.as_tuple()
    coefficient = int("".join(map(str, digits)))
    shift = exponent + decimals
    if coefficient == 0:
        units = 0
    elif shift >= 0:
        # 10**80 already exceeds uint256
        if shift > 80:
            raise AmountConversionError(f"Amount {amount} overflows uint256 at {decimals} decimals")
        units = coefficient * 10**shift
    else:
        if -shift > len(digits):
            units, remainder = 0, coefficient
        else:
            units, remainder = divmod(coefficient, 10**-shift)
        if remainder:
            raise AmountConversionError(
                f"Amount {amount} has more fractional digits than the token's {decimals} decimals"
            )

    if units > MAX_UINT256:
        raise AmountConversionError(f"Amount {amount} overflows uint256 at {decimals} decimals")
    return units
