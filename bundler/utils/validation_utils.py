"""
Normalization of trade request parameters.

The ``validate_*`` helpers return ``(is_valid, value_or_error_message)``;
the ``parse_*``/``normalize_*`` helpers raise InvalidArgumentError instead
and are what the trade executor calls while validating a request.
"""

import math
from typing import Any, Dict, Optional, Tuple, Union

from solders.pubkey import Pubkey

from bundler.errors import InvalidArgumentError
from bundler.solana.models import FixedAmount, PercentageAmount, PerWalletAmounts

MAX_SLIPPAGE_BPS = 10_000


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def validate_percentage(value: Any) -> Tuple[bool, Union[float, str]]:
    """
    Validate a sell percentage.

    Args:
        value: A number, or a string with or without a trailing "%"

    Returns:
        A tuple of (is_valid, percent_or_error_message)
    """
    raw = value.strip().rstrip("%").strip() if isinstance(value, str) else value
    number = _as_number(raw)
    if number is None:
        return False, f"Percentage must be a number between 0 and 100, got {value!r}."
    if number <= 0 or number > 100:
        return False, f"Percentage must be greater than 0 and at most 100, got {value!r}."
    return True, number


def normalize_percentage(value: Any) -> str:
    """
    Canonical ``"N%"`` form of a sell percentage: 50 -> "50%", "75" -> "75%".

    Raises:
        InvalidArgumentError: For anything outside (0, 100]
    """
    return parse_sell_amount(value).canonical


def parse_sell_amount(value: Any) -> PercentageAmount:
    is_valid, result = validate_percentage(value)
    if not is_valid:
        raise InvalidArgumentError(result)
    return PercentageAmount(percent=result)


def validate_sol_amount(value: Any) -> Tuple[bool, Union[float, str]]:
    number = _as_number(value)
    if number is None or number <= 0:
        return False, f"SOL amount must be a positive number, got {value!r}."
    return True, number


def parse_buy_amount(value: Any) -> Union[FixedAmount, PerWalletAmounts]:
    """
    Buy amounts are either one SOL amount for every wallet or a
    ``{wallet_name: sol}`` map.

    Raises:
        InvalidArgumentError: If any amount is not a positive number
    """
    if isinstance(value, dict):
        if not value:
            raise InvalidArgumentError("Per-wallet buy amounts must not be empty.")
        amounts: Dict[str, float] = {}
        for name, amount in value.items():
            is_valid, result = validate_sol_amount(amount)
            if not is_valid:
                raise InvalidArgumentError(f"{name}: {result}")
            amounts[str(name)] = result
        return PerWalletAmounts(amounts=amounts)

    is_valid, result = validate_sol_amount(value)
    if not is_valid:
        raise InvalidArgumentError(result)
    return FixedAmount(sol=result)


def validate_slippage_bps(value: Any, default: int) -> int:
    """
    Slippage in basis points. None falls back to ``default``.

    Raises:
        InvalidArgumentError: Outside 1..10000 or not an integer
    """
    if value is None:
        return default
    number = _as_number(value)
    if number is None or not number.is_integer():
        raise InvalidArgumentError(f"Slippage must be an integer number of basis points, got {value!r}.")
    if number < 1 or number > MAX_SLIPPAGE_BPS:
        raise InvalidArgumentError(f"Slippage must be between 1 and {MAX_SLIPPAGE_BPS} bps, got {value!r}.")
    return int(number)


def validate_mint_address(text: Any) -> Tuple[bool, str]:
    """
    Validate a token mint address.

    Returns:
        A tuple of (is_valid, address_or_error_message)
    """
    if not isinstance(text, str) or not text.strip():
        return False, "Mint address is required."
    address = text.strip()
    try:
        Pubkey.from_string(address)
    except ValueError:
        return False, f"Invalid mint address: {address}"
    return True, address


def validate_token_name(text: str) -> Tuple[bool, str]:
    name = (text or "").strip()
    if not name:
        return False, "Token name is required."
    if len(name) > 32:
        return False, "Token name cannot exceed 32 characters."
    return True, name


def validate_token_ticker(text: str) -> Tuple[bool, str]:
    ticker = (text or "").strip()
    if not ticker:
        return False, "Token ticker is required."
    if len(ticker) > 10:
        return False, "Token ticker cannot exceed 10 characters."
    return True, ticker
