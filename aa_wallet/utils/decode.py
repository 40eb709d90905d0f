from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import to_checksum_address

from aa_wallet.typing import Address

ERROR_STRING_SELECTOR = "08c379a0"  # Error(string)


def _result_bytes(result_hex: str) -> bytes:
    if not isinstance(result_hex, str) or result_hex[:2] != "0x":
        raise ValueError(f"Invalid hex result : {result_hex}")
    return bytes.fromhex(result_hex[2:])


def decode_address_word(result_hex: str) -> Address:
    word = _result_bytes(result_hex)
    if len(word) < 32:
        raise ValueError(f"Expected a 32 bytes word, got {len(word)} bytes")
    return Address(to_checksum_address(word[12:32]))


def decode_uint256(result_hex: str) -> int:
    word = _result_bytes(result_hex)
    if len(word) < 32:
        raise ValueError(f"Expected a 32 bytes word, got {len(word)} bytes")
    return decode(["uint256"], word[:32])[0]


def decode_revert_reason(revert_data_hex: str) -> str | None:
    try:
        revert_data = _result_bytes(revert_data_hex)
    except ValueError:
        return None
    if len(revert_data) < 68 or revert_data[:4].hex() != ERROR_STRING_SELECTOR:
        return None
    try:
        return decode(["string"], revert_data[4:])[0]
    except DecodingError:
        return None


def decode_user_operation_revert_reason(log_data_hex: str) -> str | None:
    """
    Decode the data of an EntryPoint UserOperationRevertReason log, which
    is (uint256 nonce, bytes revertReason). Returns the Error(string)
    message, or the raw revert bytes as hex for custom errors.
    """
    try:
        _, revert_reason = decode(
            ["uint256", "bytes"], _result_bytes(log_data_hex))
    except (ValueError, DecodingError):
        return None
    revert_reason_hex = "0x" + revert_reason.hex()
    message = decode_revert_reason(revert_reason_hex)
    if message is None and len(revert_reason) > 0:
        return revert_reason_hex
    return message
