"""
Pre-flight checks run before a transfer touches any exchange.

Stateless and network-free: address format, destination tag, amount
limits and route sanity. Balance checks happen inside the adapters.
"""

import logging
import re
from typing import Optional

from config import EXCHANGE_CRYPTO_SUPPORT, TAG_REQUIRED_ASSETS, TRANSFER_CRYPTOS, is_viable_route
from errors import PreflightError
from models import Opportunity, TransferCredentials

logger = logging.getLogger(__name__)


# Basic format patterns to catch obvious typos. Exchanges validate fully.
ADDRESS_PATTERNS = {
    "XRP": re.compile(r"^r[1-9A-HJ-NP-Za-km-z]{24,34}$"),
    "BTC": re.compile(r"^(1|3|bc1)[a-zA-Z0-9]{25,62}$"),
    "ETH": re.compile(r"^0x[a-fA-F0-9]{40}$"),
    "TRX": re.compile(r"^T[a-zA-Z0-9]{33}$"),
    "XLM": re.compile(r"^G[A-Z2-7]{55}$"),
    "LTC": re.compile(r"^(L|M|ltc1)[a-zA-Z0-9]{26,62}$"),
    "DOGE": re.compile(r"^D[a-zA-Z0-9]{33}$"),
    "BCH": re.compile(r"^(1|3|q|p)[a-zA-Z0-9]{25,62}$"),
    "ADA": re.compile(r"^addr1[a-z0-9]{53,}$"),
    "DOT": re.compile(r"^1[a-zA-Z0-9]{47}$"),
}


def validate_crypto_address(crypto: str, address: Optional[str]) -> bool:
    """True when the address looks plausible for ``crypto``.

    Assets without a known pattern (multi-network stablecoins included)
    only need a non-empty address.
    """
    if not address:
        return False

    pattern = ADDRESS_PATTERNS.get(crypto.upper())
    if pattern is None:
        return True

    valid = bool(pattern.match(address))
    if not valid:
        logger.warning(f"[Preflight] {crypto} address failed format validation: {address[:12]}...")
    return valid


def check_transfer(
    opportunity: Opportunity,
    credentials: TransferCredentials,
    max_trade_usdt: Optional[float] = None,
    deposit_max_wait_sec: Optional[float] = None,
) -> list[str]:
    """
    Validate an opportunity before execution.

    Returns a list of non-fatal warnings; raises PreflightError on anything
    that would make the transfer unsafe.
    """
    warnings = []
    asset = opportunity.asset.upper()

    if opportunity.usdt_to_spend <= 0:
        raise PreflightError(f"usdt_to_spend must be positive, got {opportunity.usdt_to_spend}")

    if max_trade_usdt is not None and opportunity.usdt_to_spend > max_trade_usdt:
        raise PreflightError(
            f"Trade amount ${opportunity.usdt_to_spend:.2f} exceeds limit ${max_trade_usdt:.2f}"
        )

    if opportunity.source_exchange.lower() == opportunity.dest_exchange.lower():
        raise PreflightError("Source and destination exchange must differ")

    if not validate_crypto_address(asset, credentials.deposit_address):
        raise PreflightError(
            f"Invalid {asset} deposit address: {credentials.deposit_address!r}. "
            f"Verify the address configured for {opportunity.dest_exchange}."
        )

    if asset in TAG_REQUIRED_ASSETS and not credentials.deposit_tag:
        raise PreflightError(
            f"{asset} requires a destination tag - withdrawing without one loses the funds"
        )

    known = (
        opportunity.source_exchange.lower() in EXCHANGE_CRYPTO_SUPPORT
        and opportunity.dest_exchange.lower() in EXCHANGE_CRYPTO_SUPPORT
    )
    if known and not is_viable_route(asset, opportunity.source_exchange, opportunity.dest_exchange):
        warnings.append(
            f"Route {asset} {opportunity.source_exchange}->{opportunity.dest_exchange} "
            f"is not listed as viable"
        )

    profile = TRANSFER_CRYPTOS.get(asset)
    if profile and deposit_max_wait_sec is not None and profile["avg_transfer_min"] * 60 > deposit_max_wait_sec:
        warnings.append(
            f"{asset} transfers average {profile['avg_transfer_min']} min, "
            f"longer than the {deposit_max_wait_sec / 60:.0f} min deposit wait"
        )

    for warning in warnings:
        logger.warning(f"[Preflight] {warning}")

    return warnings
