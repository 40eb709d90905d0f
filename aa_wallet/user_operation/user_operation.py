from abc import ABC, abstractmethod
from dataclasses import dataclass, fields, replace
import re

from eth_abi import encode
from eth_utils import keccak, to_checksum_address

from aa_wallet.exceptions import InvalidResponseException
from aa_wallet.typing import Address

USER_OPERATION_JSON_FIELDS = [
    "sender",
    "nonce",
    "initCode",
    "callData",
    "callGasLimit",
    "verificationGasLimit",
    "preVerificationGas",
    "maxFeePerGas",
    "maxPriorityFeePerGas",
    "paymasterAndData",
    "signature",
]


def dummy_signature() -> bytes:
    """
    65 bytes ecdsa signature with r=1, s=1 and v=27.
    ecrecover doesn't revert on it, so validation can be simulated
    before the real signature exists.
    """
    return (
        (1).to_bytes(32, "big") +
        (1).to_bytes(32, "big") +
        (27).to_bytes(1, "big")
    )


@dataclass(frozen=True)
class BaseUserOperation(ABC):
    """EntryPoint v0.6 UserOperation fields, minus the signature."""
    sender_address: Address
    nonce: int
    init_code: bytes
    call_data: bytes
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    paymaster_and_data: bytes

    @property
    @abstractmethod
    def wire_signature(self) -> bytes:
        pass

    @property
    def factory_address(self) -> Address | None:
        if len(self.init_code) > 20:
            return Address("0x" + self.init_code[:20].hex())
        return None

    @property
    def paymaster_address(self) -> Address | None:
        if len(self.paymaster_and_data) >= 20:
            return Address("0x" + self.paymaster_and_data[:20].hex())
        return None

    @property
    def is_deployment(self) -> bool:
        return len(self.init_code) > 0

    @property
    def uses_paymaster(self) -> bool:
        return self.paymaster_address is not None

    def get_user_operation_json(self) -> dict[str, Address | str]:
        return {
            "sender": self.sender_address,
            "nonce": hex(self.nonce),
            "initCode": "0x" + self.init_code.hex(),
            "callData": "0x" + self.call_data.hex(),
            "callGasLimit": hex(self.call_gas_limit),
            "verificationGasLimit": hex(self.verification_gas_limit),
            "preVerificationGas": hex(self.pre_verification_gas),
            "maxFeePerGas": hex(self.max_fee_per_gas),
            "maxPriorityFeePerGas": hex(self.max_priority_fee_per_gas),
            "paymasterAndData": "0x" + self.paymaster_and_data.hex(),
            "signature": "0x" + self.wire_signature.hex(),
        }

    def to_list(self) -> list[Address | int | bytes]:
        return [
            self.sender_address,
            self.nonce,
            self.init_code,
            self.call_data,
            self.call_gas_limit,
            self.verification_gas_limit,
            self.pre_verification_gas,
            self.max_fee_per_gas,
            self.max_priority_fee_per_gas,
            self.paymaster_and_data,
            self.wire_signature,
        ]

    def get_user_operation_hash(
        self, chain_id: int, entrypoint: Address
    ) -> bytes:
        return get_user_operation_hash(self.to_list(), entrypoint, chain_id)

    def get_required_prefund(self) -> int:
        gas = (
            self.pre_verification_gas +
            self.verification_gas_limit +
            self.call_gas_limit
        )
        if self.uses_paymaster:
            gas += 2 * self.verification_gas_limit
        return gas * self.max_fee_per_gas

    def get_fields(self) -> dict:
        return {
            field.name: getattr(self, field.name)
            for field in fields(BaseUserOperation)
        }


@dataclass(frozen=True)
class UnsignedUserOperation(BaseUserOperation):
    """
    A UserOperation that can be estimated or sponsored but never sent.
    Its wire form always carries the dummy signature.
    """

    @property
    def wire_signature(self) -> bytes:
        return dummy_signature()

    def with_signature(self, signature: bytes) -> "SignedUserOperation":
        return SignedUserOperation(**self.get_fields(), signature=signature)

    def with_changes(self, **changes) -> "UnsignedUserOperation":
        return replace(self, **changes)


@dataclass(frozen=True)
class SignedUserOperation(BaseUserOperation):
    signature: bytes

    @property
    def wire_signature(self) -> bytes:
        return self.signature

    @classmethod
    def from_json(
        cls, json_dict: dict, service: str = "bundler"
    ) -> "SignedUserOperation":
        if not isinstance(json_dict, dict):
            raise InvalidResponseException(
                service, "Expected userOperation object")
        verify_fields_exist(json_dict, service)

        return cls(
            sender_address=verify_and_get_address(
                "sender", json_dict["sender"], service),
            nonce=verify_and_get_uint(
                "nonce", json_dict["nonce"], service),
            init_code=verify_and_get_bytes(
                "initCode", json_dict["initCode"], service),
            call_data=verify_and_get_bytes(
                "callData", json_dict["callData"], service),
            call_gas_limit=verify_and_get_uint(
                "callGasLimit", json_dict["callGasLimit"], service),
            verification_gas_limit=verify_and_get_uint(
                "verificationGasLimit",
                json_dict["verificationGasLimit"],
                service,
            ),
            pre_verification_gas=verify_and_get_uint(
                "preVerificationGas", json_dict["preVerificationGas"], service
            ),
            max_fee_per_gas=verify_and_get_uint(
                "maxFeePerGas", json_dict["maxFeePerGas"], service),
            max_priority_fee_per_gas=verify_and_get_uint(
                "maxPriorityFeePerGas",
                json_dict["maxPriorityFeePerGas"],
                service,
            ),
            paymaster_and_data=verify_and_get_bytes(
                "paymasterAndData", json_dict["paymasterAndData"], service
            ),
            signature=verify_and_get_bytes(
                "signature", json_dict["signature"], service),
        )


def get_user_operation_hash(
    user_operation_list: list, entrypoint_addr: str, chain_id: int
) -> bytes:
    packed_user_operation = keccak(
        pack_user_operation(user_operation_list)
    )

    encoded_user_operation_hash = encode(
        ["(bytes32,address,uint256)"],
        [[packed_user_operation, to_checksum_address(entrypoint_addr), chain_id]],
    )
    return keccak(encoded_user_operation_hash)


def pack_user_operation(user_operation_list: list) -> bytes:
    # the signature is left out, it signs this very hash
    user_operation_list_without_signature = list(user_operation_list[:-1])
    user_operation_list_without_signature[0] = to_checksum_address(
        user_operation_list[0])
    user_operation_list_without_signature[2] = keccak(user_operation_list[2])
    user_operation_list_without_signature[3] = keccak(user_operation_list[3])
    user_operation_list_without_signature[9] = keccak(user_operation_list[9])

    return encode(
        [
            "address",
            "uint256",
            "bytes32",
            "bytes32",
            "uint256",
            "uint256",
            "uint256",
            "uint256",
            "uint256",
            "bytes32",
        ],
        user_operation_list_without_signature,
    )


def verify_fields_exist(json_dict: dict, service: str) -> None:
    for field in USER_OPERATION_JSON_FIELDS:
        if field not in json_dict:
            raise InvalidResponseException(
                service, f"UserOperation missing {field} field")


def verify_and_get_address(
    field_name: str, value: Address | None, service: str = "bundler"
) -> Address:
    address_pattern = "^0x[0-9a-fA-F]{40}$"
    if isinstance(value, str) and re.match(address_pattern, value) is not None:
        return Address(value)
    else:
        raise InvalidResponseException(
            service,
            f"Invalid address value : {value} in field {field_name}",
        )


def verify_and_get_uint(
    field_name: str, value: str | None, service: str = "bundler"
) -> int:
    if value is None:
        raise InvalidResponseException(
            service,
            f"Invalid uint hex value in field {field_name}",
        )

    if value == "0x":
        return 0
    elif isinstance(value, str) and value[:2] == "0x":
        try:
            return int(value, 16)
        except ValueError:
            raise InvalidResponseException(
                service,
                f"Invalid uint hex value : {value} in field {field_name}",
            )
    else:
        raise InvalidResponseException(
            service,
            f"Invalid uint hex value : {value} in field {field_name}",
        )


def verify_and_get_optional_uint(
    field_name: str, value: str | None, service: str = "bundler"
) -> int | None:
    if value is None:
        return None
    return verify_and_get_uint(field_name, value, service)


def verify_and_get_bytes(
    field_name: str, value: str | None, service: str = "bundler"
) -> bytes:
    if value is None:
        raise InvalidResponseException(
            service,
            f"Invalid bytes hex value in field {field_name}",
        )

    if isinstance(value, str) and value[:2] == "0x":
        try:
            return bytes.fromhex(value[2:])
        except ValueError:
            raise InvalidResponseException(
                service,
                f"Invalid bytes hex value : {value} in field {field_name}",
            )
    else:
        raise InvalidResponseException(
            service,
            f"Invalid bytes hex value : {value} in field {field_name}",
        )


def is_user_operation_hash(user_operation_hash: str) -> bool:
    hash_pattern = "^0x[0-9a-fA-F]{64}$"
    return (
        isinstance(user_operation_hash, str)
        and re.match(hash_pattern, user_operation_hash) is not None
    )
