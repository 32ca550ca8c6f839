"""
Pixel Canvas - Pricing
Token registry and the price of a placement.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, InvalidOperation
from typing import Dict, Optional

from pixelcanvas.core.config import settings
from pixelcanvas.core.errors import ValidationError


# ============================================================
# TOKEN REGISTRY
# ============================================================

@dataclass(frozen=True)
class TokenInfo:
    symbol: str
    decimals: int
    # Mint per network; None for native SOL
    mints: Optional[Dict[str, str]] = None

    @property
    def is_native(self) -> bool:
        return self.mints is None

    def mint_for(self, network: str) -> str:
        if self.mints is None:
            raise ValidationError(f"{self.symbol} is the native token and has no mint")
        mint = self.mints.get(network)
        if not mint:
            raise ValidationError(f"{self.symbol} is not available on {network}")
        return mint


TOKENS: Dict[str, TokenInfo] = {
    "SOL": TokenInfo(symbol="SOL", decimals=9),
    "USDC": TokenInfo(
        symbol="USDC",
        decimals=6,
        mints={
            "devnet": "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU",
            "testnet": "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU",
            "mainnet-beta": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
        },
    ),
}


def get_token(symbol: str) -> TokenInfo:
    token = TOKENS.get((symbol or "").upper())
    if not token:
        raise ValidationError(f"Unsupported payment token: {symbol}", {"supported": sorted(TOKENS)})
    return token


def active_token() -> TokenInfo:
    return get_token(settings.ACTIVE_PAYMENT_TOKEN)


# ============================================================
# AMOUNTS
# ============================================================

def to_decimal(amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {amount}")
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount}")
    return value


def quantize(amount, token: TokenInfo) -> Decimal:
    """Truncate an amount to the token's precision"""
    step = Decimal(1).scaleb(-token.decimals)
    return to_decimal(amount).quantize(step, rounding=ROUND_DOWN)


def to_base_units(amount, token: TokenInfo) -> int:
    """
    Whole-token amount to the smallest unit (lamports, micro-USDC).
    Truncates, never rounds up.
    """
    value = to_decimal(amount) * (Decimal(10) ** token.decimals)
    return int(value.to_integral_value(rounding=ROUND_DOWN))


def from_base_units(units: int, token: TokenInfo) -> Decimal:
    return Decimal(int(units)).scaleb(-token.decimals)


# ============================================================
# PLACEMENT COST
# ============================================================

def price_per_pixel(token: TokenInfo) -> Decimal:
    rate = settings.PRICE_PER_PIXEL.get(token.symbol)
    if rate is None:
        raise ValidationError(f"No price configured for {token.symbol}")
    return to_decimal(rate)


def calculate_cost(width: int, height: int, token: Optional[TokenInfo] = None) -> Decimal:
    """Cost of a width x height placement in whole token units"""
    token = token or active_token()
    pixels = int(width) * int(height)
    return quantize(price_per_pixel(token) * pixels, token)
