from eth_abi import encode
from eth_utils import to_checksum_address, to_bytes

from aa_wallet.typing import Address

# SimpleAccountFactory
GET_ADDRESS_SELECTOR = "0x8cb84e18"  # getAddress(address,uint256)
CREATE_ACCOUNT_SELECTOR = "0x5fbfb9cf"  # createAccount(address,uint256)

# SimpleAccount
EXECUTE_SELECTOR = "0xb61d27f6"  # execute(address,uint256,bytes)
EXECUTE_BATCH_SELECTOR = "0x47e1da2a"  # executeBatch(address[],uint256[],bytes[])

# EntryPoint
GET_NONCE_SELECTOR = "0x35567e1a"  # getNonce(address,uint192)

# ERC-20
TRANSFER_SELECTOR = "0xa9059cbb"  # transfer(address,uint256)
BALANCE_OF_SELECTOR = "0x70a08231"  # balanceOf(address)


def encode_function_call(
    function_selector: str, types: list[str], args: list
) -> bytes:
    return to_bytes(hexstr=function_selector) + encode(types, args)


def encode_execute(to: Address, value: int, data: bytes) -> bytes:
    return encode_function_call(
        EXECUTE_SELECTOR,
        ["address", "uint256", "bytes"],
        [to_checksum_address(to), value, data],
    )


def encode_execute_batch(
    targets: list[Address], values: list[int], datas: list[bytes]
) -> bytes:
    return encode_function_call(
        EXECUTE_BATCH_SELECTOR,
        ["address[]", "uint256[]", "bytes[]"],
        [[to_checksum_address(target) for target in targets], values, datas],
    )


def encode_get_address(owner: Address, salt: int) -> bytes:
    return encode_function_call(
        GET_ADDRESS_SELECTOR,
        ["address", "uint256"],
        [to_checksum_address(owner), salt],
    )


def encode_init_code(factory: Address, owner: Address, salt: int) -> bytes:
    # the factory address is not padded, the EntryPoint reads the first
    # 20 bytes as the target of the deployment call
    return to_bytes(hexstr=factory) + encode_function_call(
        CREATE_ACCOUNT_SELECTOR,
        ["address", "uint256"],
        [to_checksum_address(owner), salt],
    )


def encode_get_nonce(sender: Address, key: int = 0) -> bytes:
    return encode_function_call(
        GET_NONCE_SELECTOR,
        ["address", "uint192"],
        [to_checksum_address(sender), key],
    )


def encode_erc20_transfer(to: Address, amount: int) -> bytes:
    return encode_function_call(
        TRANSFER_SELECTOR,
        ["address", "uint256"],
        [to_checksum_address(to), amount],
    )


def encode_erc20_balance_of(owner: Address) -> bytes:
    return encode_function_call(
        BALANCE_OF_SELECTOR, ["address"], [to_checksum_address(owner)])
