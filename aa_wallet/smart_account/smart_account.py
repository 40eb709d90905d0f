from dataclasses import dataclass, replace
from enum import Enum

from eth_account import Account
from eth_account.messages import encode_defunct

from aa_wallet.typing import Address


class SignatureScheme(Enum):
    """
    How the account contract checks the owner signature over the
    UserOperation hash. SimpleAccount v0.6 recovers the signer from the
    eth_sign wrapped hash, other implementations recover from the raw hash.
    """
    personal_message = "personal_message"
    raw_hash = "raw_hash"

    def __str__(self):
        return self.value


@dataclass(frozen=True)
class SmartAccount:
    owner_address: Address
    smart_account_address: Address
    salt: int
    is_deployed: bool
    chain_id: int

    def with_deployment(self, is_deployed: bool) -> "SmartAccount":
        return replace(self, is_deployed=is_deployed)


def sign_user_operation_hash(
    user_operation_hash: bytes,
    private_key: str | bytes,
    signature_scheme: SignatureScheme = SignatureScheme.personal_message,
) -> bytes:
    account = Account.from_key(private_key)
    if signature_scheme == SignatureScheme.personal_message:
        # keccak("\x19Ethereum Signed Message:\n32" + hash)
        signed_message = account.sign_message(
            encode_defunct(primitive=user_operation_hash))
    else:
        signed_message = account.unsafe_sign_hash(user_operation_hash)
    return bytes(signed_message.signature)
