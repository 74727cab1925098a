"""
Deterministic escrow addresses.

Any party holding the order can recompute where each leg's value sits
without asking the deployer: the account-chain escrow is a CREATE2
clone whose salt hashes the immutables (including `deployed_at`), and
the UTXO escrow is simply the address of the HTLC script.
"""

from eth_utils import keccak, to_checksum_address

from .errors import ValidationError
from .htlc_script import HTLCScriptBuilder
from .models import AddressScheme, EscrowImmutables

# EIP-1167 minimal proxy around the implementation address
_PROXY_PREFIX = bytes.fromhex("3d602d80600a3d3981f3363d3d373d3d3d363d73")
_PROXY_SUFFIX = bytes.fromhex("5af43d82803e903d91602b57fd5bf3")


def _address_bytes(address: str) -> bytes:
    raw = bytes.fromhex(address[2:] if address.startswith("0x") else address)
    if len(raw) != 20:
        raise ValidationError("expected a 20-byte address", address=address)
    return raw


def _word(value: int) -> bytes:
    return value.to_bytes(32, "big")


def immutables_hash(immutables: EscrowImmutables) -> bytes:
    """keccak256 over the packed immutables; used as the CREATE2 salt."""
    return keccak(
        bytes.fromhex(immutables.order_hash)
        + bytes.fromhex(immutables.hashlock)
        + keccak(text=immutables.maker)
        + keccak(text=immutables.taker)
        + keccak(text=immutables.asset)
        + _word(immutables.amount)
        + _word(immutables.timelocks.dst_cancellation)
        + _word(immutables.timelocks.src_cancellation)
        + _word(immutables.deployed_at)
    )


def proxy_bytecode_hash(implementation: str) -> bytes:
    return keccak(_PROXY_PREFIX + _address_bytes(implementation) + _PROXY_SUFFIX)


def account_escrow_address(immutables: EscrowImmutables, factory: str, implementation: str) -> str:
    digest = keccak(
        b"\xff"
        + _address_bytes(factory)
        + immutables_hash(immutables)
        + proxy_bytecode_hash(implementation)
    )
    return to_checksum_address(digest[12:])


def utxo_escrow_address(
    builder: HTLCScriptBuilder,
    immutables: EscrowImmutables,
    scheme: AddressScheme = AddressScheme.P2WSH,
) -> tuple[str, bytes]:
    """HTLC address and script for the destination leg."""
    if not immutables.maker_pubkey or not immutables.resolver_pubkey:
        raise ValidationError("destination escrow needs both pubkeys")
    script = builder.build(
        builder.params(
            hashlock=bytes.fromhex(immutables.hashlock),
            recipient_pubkey=bytes.fromhex(immutables.maker_pubkey),
            sender_pubkey=bytes.fromhex(immutables.resolver_pubkey),
            timelock=immutables.timelocks.dst_cancellation,
        )
    )
    return builder.derive_address(script, scheme), bytes(script)
