"""
UTXO transaction assembly with python-bitcoinlib.

Funding spends wallet outputs into the HTLC, redeem and refund spend the
HTLC back out. All inputs signal replaceability (nSequence 0xfffffffd)
so the recovery handler can fee-bump anything stuck in the mempool.
Keys never enter this module: signatures come from the wallet signer.
"""

import math

from bitcoin import segwit_addr
from bitcoin.base58 import Base58Error, CBase58Data
from bitcoin.core import (
    CMutableTransaction,
    CMutableTxIn,
    CMutableTxOut,
    COutPoint,
    CTxInWitness,
    CTxWitness,
    b2lx,
    lx,
)
from bitcoin.core.script import (
    OP_CHECKSIG,
    OP_DUP,
    OP_EQUAL,
    OP_EQUALVERIFY,
    OP_HASH160,
    SIGHASH_ALL,
    SIGVERSION_BASE,
    SIGVERSION_WITNESS_V0,
    CScript,
    CScriptWitness,
    SignatureHash,
)

from .errors import InsufficientFunds, ValidationError
from .htlc_script import NETWORKS
from .models import AddressScheme, Utxo

RBF_SEQUENCE = 0xFFFFFFFD
DUST_LIMIT = 546

# vbyte estimates
TX_OVERHEAD_VSIZE = 11
INPUT_VSIZE = 68
OUTPUT_VSIZE = 43
REDEEM_VSIZE = 175
REFUND_VSIZE = 160

_P2PKH_PREFIXES = {0, 111}
_P2SH_PREFIXES = {5, 196}


def address_to_script_pubkey(address: str, network: str) -> CScript:
    """scriptPubKey for a bech32 or base58 address on `network`."""
    _, hrp = NETWORKS[network]
    if address.lower().startswith(hrp + "1"):
        witver, witprog = segwit_addr.decode(hrp, address)
        if witver is None:
            raise ValidationError("invalid bech32 address", address=address)
        return CScript([witver, bytes(witprog)])

    try:
        data = CBase58Data(address)
    except Base58Error as e:
        raise ValidationError("invalid base58 address", address=address) from e
    if data.nVersion in _P2SH_PREFIXES:
        return CScript([OP_HASH160, bytes(data), OP_EQUAL])
    if data.nVersion in _P2PKH_PREFIXES:
        return CScript([OP_DUP, OP_HASH160, bytes(data), OP_EQUALVERIFY, OP_CHECKSIG])
    raise ValidationError("unknown address version", address=address)


def estimate_vsize(n_inputs: int, n_outputs: int) -> int:
    return TX_OVERHEAD_VSIZE + INPUT_VSIZE * n_inputs + OUTPUT_VSIZE * n_outputs


def txid_of(tx: CMutableTransaction) -> str:
    return b2lx(tx.GetTxid())


def select_outputs(utxos: list[Utxo], amount: int, fee_rate: int) -> tuple[list[Utxo], int]:
    """
    Largest-first coin selection.

    Returns:
        (selected outputs, fee) where the fee assumes a change output

    Raises:
        InsufficientFunds: if every output together cannot cover amount + fee
    """
    selected: list[Utxo] = []
    total = 0
    for utxo in sorted(utxos, key=lambda u: u.value, reverse=True):
        selected.append(utxo)
        total += utxo.value
        fee = fee_rate * estimate_vsize(len(selected), 2)
        if total >= amount + fee:
            return selected, fee
    needed = amount + fee_rate * estimate_vsize(max(len(selected), 1), 2)
    raise InsufficientFunds("spendable outputs do not cover amount plus fee", available=total, needed=needed)


def build_funding_tx(
    inputs: list[Utxo],
    htlc_script_pubkey: CScript,
    amount: int,
    change_script_pubkey: CScript,
    fee_rate: int,
) -> tuple[CMutableTransaction, int]:
    """Unsigned funding transaction; the HTLC output is always vout 0."""
    total = sum(u.value for u in inputs)
    fee = fee_rate * estimate_vsize(len(inputs), 2)
    change = total - amount - fee
    if change < 0:
        raise InsufficientFunds("inputs do not cover amount plus fee", available=total, needed=amount + fee)

    vin = [CMutableTxIn(COutPoint(lx(u.txid), u.vout), nSequence=RBF_SEQUENCE) for u in inputs]
    vout = [CMutableTxOut(amount, htlc_script_pubkey)]
    if change >= DUST_LIMIT:
        vout.append(CMutableTxOut(change, change_script_pubkey))
    else:
        fee += change  # sub-dust change goes to the miner
    return CMutableTransaction(vin, vout, nVersion=2), fee


def build_htlc_spend(
    funding_txid: str,
    funding_vout: int,
    amount: int,
    payout_script_pubkey: CScript,
    fee: int,
    locktime: int = 0,
) -> CMutableTransaction:
    """Unsigned spend of the HTLC output (redeem when locktime=0, else refund)."""
    value = amount - fee
    if value < DUST_LIMIT:
        raise InsufficientFunds("HTLC value does not cover the spend fee", amount=amount, fee=fee)
    txin = CMutableTxIn(COutPoint(lx(funding_txid), funding_vout), nSequence=RBF_SEQUENCE)
    return CMutableTransaction([txin], [CMutableTxOut(value, payout_script_pubkey)], nLockTime=locktime, nVersion=2)


def htlc_sighash(tx: CMutableTransaction, script: bytes, amount: int, scheme: AddressScheme) -> bytes:
    if AddressScheme(scheme) == AddressScheme.P2WSH:
        return SignatureHash(CScript(script), tx, 0, SIGHASH_ALL, amount=amount, sigversion=SIGVERSION_WITNESS_V0)
    return SignatureHash(CScript(script), tx, 0, SIGHASH_ALL, sigversion=SIGVERSION_BASE)


def attach_spend_stack(tx: CMutableTransaction, stack: list[bytes], scheme: AddressScheme) -> CMutableTransaction:
    """Put the unlocking stack in the witness (P2WSH) or scriptSig (P2SH)."""
    if AddressScheme(scheme) == AddressScheme.P2WSH:
        tx.wit = CTxWitness([CTxInWitness(CScriptWitness(stack))])
    else:
        tx.vin[0].scriptSig = CScript(stack)
    return tx


def with_sighash_type(der_signature: bytes) -> bytes:
    return der_signature + bytes([SIGHASH_ALL])


def bumped_fee_rate(old_rate: int, multiplier: float) -> int:
    """Replacement fee rate, strictly above the old one."""
    return max(math.ceil(old_rate * multiplier), old_rate + 1)


def input_stack(vin: dict) -> list[bytes]:
    """Unlocking stack of an Esplora-format input (witness or scriptSig pushes)."""
    witness = vin.get("witness") or []
    if witness:
        return [bytes.fromhex(item) for item in witness]

    scriptsig = vin.get("scriptsig") or ""
    if not scriptsig:
        return []
    stack = []
    for item in CScript(bytes.fromhex(scriptsig)):
        if isinstance(item, bytes):
            stack.append(item)
        elif 0 <= item <= 16:
            stack.append(bytes([item]) if item else b"")
    return stack
