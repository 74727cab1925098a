"""Tests for UTXO transaction assembly helpers."""

import pytest
from bitcoin import segwit_addr
from bitcoin.base58 import CBase58Data
from bitcoin.core.script import OP_DUP, CScript

from htlc_resolver.errors import InsufficientFunds, ValidationError
from htlc_resolver.models import Utxo
from htlc_resolver.transactions import (
    DUST_LIMIT,
    RBF_SEQUENCE,
    address_to_script_pubkey,
    build_funding_tx,
    build_htlc_spend,
    bumped_fee_rate,
    input_stack,
    select_outputs,
)

HTLC_SPK = CScript([0, b"\x33" * 32])
CHANGE_SPK = CScript([0, b"\x44" * 20])


def utxo(value, n=0):
    return Utxo(txid=f"{n:064x}", vout=0, value=value)


class TestCoinSelection:
    """Test largest-first selection."""

    def test_largest_output_first(self):
        selected, fee = select_outputs([utxo(30_000, 1), utxo(80_000, 2), utxo(10_000, 3)], 50_000, 2)

        assert [u.value for u in selected] == [80_000]
        assert fee == 330

    def test_combines_outputs(self):
        selected, _ = select_outputs([utxo(30_000, 1), utxo(30_000, 2)], 50_000, 1)
        assert len(selected) == 2

    def test_insufficient(self):
        with pytest.raises(InsufficientFunds):
            select_outputs([utxo(1_000)], 5_000, 1)


class TestFunding:
    """Test funding transaction layout."""

    def test_htlc_output_first_with_change(self):
        tx, fee = build_funding_tx([utxo(80_000)], HTLC_SPK, 50_000, CHANGE_SPK, 2)

        assert fee == 330
        assert tx.vout[0].nValue == 50_000
        assert tx.vout[0].scriptPubKey == HTLC_SPK
        assert tx.vout[1].nValue == 80_000 - 50_000 - 330
        assert all(txin.nSequence == RBF_SEQUENCE for txin in tx.vin)

    def test_dust_change_goes_to_fee(self):
        tx, fee = build_funding_tx([utxo(50_500)], HTLC_SPK, 50_000, CHANGE_SPK, 1)

        assert len(tx.vout) == 1
        assert fee == 500

    def test_spend_below_dust(self):
        with pytest.raises(InsufficientFunds):
            build_htlc_spend("aa" * 32, 0, DUST_LIMIT + 100, CHANGE_SPK, 200)

    def test_refund_sets_locktime(self):
        tx = build_htlc_spend("aa" * 32, 0, 50_000, CHANGE_SPK, 350, locktime=1_750_003_600)

        assert tx.nLockTime == 1_750_003_600
        assert tx.vout[0].nValue == 49_650


class TestHelpers:
    """Test address decoding, fee bumps and stack parsing."""

    def test_bech32_address(self):
        address = segwit_addr.encode("tb", 0, b"\x11" * 20)
        assert address_to_script_pubkey(address, "testnet") == CScript([0, b"\x11" * 20])

    def test_base58_p2pkh_address(self):
        address = str(CBase58Data.from_bytes(b"\x22" * 20, 111))
        script = address_to_script_pubkey(address, "testnet")
        assert script[0] == OP_DUP

    @pytest.mark.parametrize("address", ["tb1qnotvalid", "not-an-address"])
    def test_invalid_address(self, address):
        with pytest.raises(ValidationError):
            address_to_script_pubkey(address, "testnet")

    @pytest.mark.parametrize(
        "old_rate,multiplier,expected",
        [(2, 1.5, 3), (1, 1.01, 2), (10, 1.0, 11)],
    )
    def test_bumped_fee_rate(self, old_rate, multiplier, expected):
        assert bumped_fee_rate(old_rate, multiplier) == expected

    def test_witness_stack(self):
        assert input_stack({"witness": ["aa", "01"]}) == [b"\xaa", b"\x01"]

    def test_scriptsig_stack(self):
        scriptsig = CScript([b"\xaa" * 3, 1, b"QQ"]).hex()
        assert input_stack({"scriptsig": scriptsig}) == [b"\xaa" * 3, b"\x01", b"QQ"]

    def test_empty_input(self):
        assert input_stack({}) == []
