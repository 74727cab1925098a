"""Tests for HTLC script construction and local spend validation."""

import hashlib

import pytest

from htlc_resolver.errors import ScriptMismatch, ValidationError
from htlc_resolver.htlc_script import (
    REFUND_SELECTOR,
    HTLCScriptBuilder,
    RedeemProof,
    RefundProof,
    SpendPath,
    decode_script_num,
)
from htlc_resolver.models import AddressScheme, RefundPolicy

from conftest import FAKE_DER, MAKER_PUBKEY, RESOLVER_PUBKEY, accept_all

SECRET = b"\x42" * 32
HASHLOCK = hashlib.sha256(SECRET).digest()
RECIPIENT = bytes.fromhex(MAKER_PUBKEY)
SENDER = bytes.fromhex(RESOLVER_PUBKEY)
TIMELOCK = 1_750_003_600
SIG = FAKE_DER + b"\x01"
SIGHASH = b"\x99" * 32


def make_builder(policy=RefundPolicy.SENDER_ONLY, verifier=accept_all):
    return HTLCScriptBuilder("testnet", policy, verifier=verifier)


def make_script(builder):
    return bytes(builder.build(builder.params(HASHLOCK, RECIPIENT, SENDER, TIMELOCK)))


class TestScriptBuild:
    """Test script layout and parsing."""

    @pytest.mark.parametrize("policy", list(RefundPolicy))
    def test_parse_round_trip(self, policy):
        builder = make_builder(policy)
        params = builder.parse(make_script(builder))

        assert params.hashlock == HASHLOCK
        assert params.recipient_pubkey == RECIPIENT
        assert params.timelock == TIMELOCK
        assert params.refund_policy == policy

    def test_sender_only_keeps_sender_key(self):
        builder = make_builder()
        assert builder.parse(make_script(builder)).sender_pubkey == SENDER

    def test_builder_rejects_other_family(self):
        builder = make_builder()
        params = make_builder(RefundPolicy.ANYONE_AFTER_TIMEOUT).params(HASHLOCK, RECIPIENT, SENDER, TIMELOCK)
        with pytest.raises(ValidationError):
            builder.build(params)

    def test_bad_hashlock_rejected(self):
        builder = make_builder()
        with pytest.raises(ValidationError):
            builder.build(builder.params(b"\x00" * 20, RECIPIENT, SENDER, TIMELOCK))

    def test_parse_rejects_foreign_script(self):
        with pytest.raises(ScriptMismatch):
            make_builder().parse(bytes.fromhex("76a914" + "00" * 20 + "88ac"))

    def test_addresses(self):
        builder = make_builder()
        script = make_script(builder)

        assert builder.derive_address(script, AddressScheme.P2WSH).startswith("tb1q")
        assert builder.derive_address(script, AddressScheme.P2SH)[0] == "2"

    def test_script_number_decoding(self):
        assert decode_script_num(b"") == 0
        assert decode_script_num(b"\x81") == -1
        assert decode_script_num((TIMELOCK).to_bytes(4, "little")) == TIMELOCK


class TestSpendPaths:
    """Test that exactly one branch accepts each spend."""

    def test_redeem_with_correct_secret(self):
        builder = make_builder()
        script = make_script(builder)
        proof = RedeemProof(secret=SECRET, pubkey=RECIPIENT, signature=SIG, sighash=SIGHASH)

        assert builder.validate(script, SpendPath.REDEEM, proof)

    def test_redeem_with_wrong_secret(self):
        builder = make_builder()
        script = make_script(builder)
        proof = RedeemProof(secret=b"\x43" * 32, pubkey=RECIPIENT, signature=SIG, sighash=SIGHASH)

        assert not builder.validate(script, SpendPath.REDEEM, proof)

    def test_redeem_by_wrong_key(self):
        builder = make_builder()
        script = make_script(builder)
        proof = RedeemProof(secret=SECRET, pubkey=SENDER, signature=SIG, sighash=SIGHASH)

        assert not builder.validate(script, SpendPath.REDEEM, proof)

    def test_redeem_needs_valid_signature(self):
        builder = make_builder(verifier=lambda *args: False)
        script = make_script(builder)
        proof = RedeemProof(secret=SECRET, pubkey=RECIPIENT, signature=SIG, sighash=SIGHASH)

        assert not builder.validate(script, SpendPath.REDEEM, proof)

    def test_refund_before_timelock(self):
        builder = make_builder()
        script = make_script(builder)
        proof = RefundProof(TIMELOCK - 1, SENDER, SIG, SIGHASH)

        assert not builder.validate(script, SpendPath.REFUND, proof)

    def test_sender_only_refund(self):
        builder = make_builder()
        script = make_script(builder)

        assert builder.validate(script, SpendPath.REFUND, RefundProof(TIMELOCK, SENDER, SIG, SIGHASH))
        assert not builder.validate(script, SpendPath.REFUND, RefundProof(TIMELOCK, RECIPIENT, SIG, SIGHASH))
        assert not builder.validate(script, SpendPath.REFUND, RefundProof(TIMELOCK))

    def test_anyone_refund_needs_no_signature(self):
        builder = make_builder(RefundPolicy.ANYONE_AFTER_TIMEOUT)
        script = make_script(builder)

        assert builder.validate(script, SpendPath.REFUND, RefundProof(TIMELOCK))
        assert not builder.validate(script, SpendPath.REFUND, RefundProof(TIMELOCK - 1))

    @pytest.mark.parametrize("policy", list(RefundPolicy))
    def test_witness_selects_one_branch(self, policy):
        builder = make_builder(policy)
        script = make_script(builder)
        redeem = builder.redeem_witness(SIG, SECRET, script)
        refund = builder.refund_witness(SIG, script)

        assert builder.evaluate_witness(script, redeem, SIGHASH, TIMELOCK - 1) == SpendPath.REDEEM
        assert builder.evaluate_witness(script, refund, SIGHASH, TIMELOCK - 1) is None
        assert builder.evaluate_witness(script, refund, SIGHASH, TIMELOCK) == SpendPath.REFUND

    def test_refund_witness_shapes(self):
        script = make_script(make_builder())

        assert make_builder().refund_witness(SIG, script) == [SIG, REFUND_SELECTOR, script]
        assert make_builder(RefundPolicy.ANYONE_AFTER_TIMEOUT).refund_witness(None, script) == [
            REFUND_SELECTOR,
            script,
        ]
        with pytest.raises(ValidationError):
            make_builder().refund_witness(None, script)


class TestSecretExtraction:
    """Test pulling revealed secrets out of spends."""

    def test_extract_from_redeem_witness(self):
        builder = make_builder()
        script = make_script(builder)
        stack = builder.redeem_witness(SIG, SECRET, script)

        assert HTLCScriptBuilder.extract_secret(stack, HASHLOCK) == SECRET

    def test_extract_without_script_push(self):
        assert HTLCScriptBuilder.extract_secret([SIG, SECRET, b"\x01"], HASHLOCK) == SECRET

    def test_non_matching_preimage_ignored(self):
        assert HTLCScriptBuilder.extract_secret([SIG, b"\x43" * 32, b"\x01"], HASHLOCK) is None

    def test_refund_spend_has_no_secret(self):
        builder = make_builder()
        script = make_script(builder)
        assert HTLCScriptBuilder.extract_secret(builder.refund_witness(SIG, script), HASHLOCK) is None
