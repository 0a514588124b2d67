"""
Tests for pre-flight checks.
"""

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import BTC_ADDRESS
from errors import PreflightError
from models import ExchangeCredentials, Opportunity, TransferCredentials
from preflight import check_transfer, validate_crypto_address

XRP_ADDRESS = "rEb8TK3gBgk5auZkwc6sHnwrGVJH8DuaLh"
CREDS = ExchangeCredentials(api_key="k", api_secret="s")


def transfer_creds(address=BTC_ADDRESS, tag=None):
    return TransferCredentials(source=CREDS, destination=CREDS, deposit_address=address, deposit_tag=tag)


def opp(asset="BTC", source="binance", dest="kraken", usdt=1000.0):
    return Opportunity(asset=asset, source_exchange=source, dest_exchange=dest, usdt_to_spend=usdt)


class TestAddressValidation:

    @pytest.mark.parametrize("crypto,address", [
        ("BTC", BTC_ADDRESS),
        ("BTC", "1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2"),
        ("ETH", "0x" + "a" * 40),
        ("XRP", XRP_ADDRESS),
        ("TRX", "T" + "A" * 33),
    ])
    def test_valid(self, crypto, address):
        assert validate_crypto_address(crypto, address) is True

    @pytest.mark.parametrize("crypto,address", [
        ("BTC", "not-an-address"),
        ("ETH", "0x123"),
        ("XRP", "xEb8TK3gBgk5auZkwc6sHnwrGVJH8DuaLh"),
        ("BTC", ""),
        ("BTC", None),
    ])
    def test_invalid(self, crypto, address):
        assert validate_crypto_address(crypto, address) is False

    def test_unknown_asset_needs_only_non_empty(self):
        assert validate_crypto_address("USDT", "TXYZ") is True
        assert validate_crypto_address("USDT", "") is False

    def test_case_insensitive_asset(self):
        assert validate_crypto_address("btc", BTC_ADDRESS) is True


class TestCheckTransfer:

    def test_clean_route_has_no_warnings(self):
        assert check_transfer(opp(), transfer_creds(), max_trade_usdt=10000) == []

    @pytest.mark.parametrize("usdt", [0.0, -5.0])
    def test_rejects_non_positive_amount(self, usdt):
        with pytest.raises(PreflightError):
            check_transfer(opp(usdt=usdt), transfer_creds())

    def test_rejects_amount_over_limit(self):
        with pytest.raises(PreflightError, match="exceeds limit"):
            check_transfer(opp(usdt=20000.0), transfer_creds(), max_trade_usdt=10000)

    def test_no_limit_when_unset(self):
        assert check_transfer(opp(usdt=1_000_000.0), transfer_creds()) == []

    def test_rejects_same_exchange(self):
        with pytest.raises(PreflightError, match="must differ"):
            check_transfer(opp(source="Binance", dest="binance"), transfer_creds())

    def test_rejects_bad_address(self):
        with pytest.raises(PreflightError, match="Invalid BTC deposit address"):
            check_transfer(opp(), transfer_creds(address="0xdeadbeef"))

    def test_xrp_requires_tag(self):
        with pytest.raises(PreflightError, match="destination tag"):
            check_transfer(opp(asset="XRP"), transfer_creds(address=XRP_ADDRESS))

        assert check_transfer(opp(asset="XRP"), transfer_creds(address=XRP_ADDRESS, tag="12345")) == []

    def test_unlisted_route_warns(self):
        warnings = check_transfer(opp(source="gemini", dest="kraken"), transfer_creds())

        assert len(warnings) == 1
        assert "not listed as viable" in warnings[0]

    def test_slow_asset_warns_against_deposit_wait(self):
        warnings = check_transfer(opp(), transfer_creds(), deposit_max_wait_sec=600.0)

        assert len(warnings) == 1
        assert "average 30 min" in warnings[0]

    def test_asset_within_deposit_wait(self):
        assert check_transfer(opp(), transfer_creds(), deposit_max_wait_sec=3600.0) == []

    def test_unknown_venues_skip_route_check(self):
        assert check_transfer(opp(source="exchange_a", dest="exchange_b"), transfer_creds()) == []
