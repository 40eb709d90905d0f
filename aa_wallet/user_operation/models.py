from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from eth_utils import to_checksum_address

from aa_wallet.exceptions import InvalidResponseException
from aa_wallet.typing import Address, PolicyId
from aa_wallet.utils.decode import decode_user_operation_revert_reason
from aa_wallet.user_operation.user_operation import (
    SignedUserOperation, verify_and_get_address, verify_and_get_bytes,
    verify_and_get_optional_uint, verify_and_get_uint)

USER_OPERATION_EVENT_TOPIC = (
    "0x49628fd1471006c1482da88028e9ce4dbb080b815c9b0344d39e5a8e6ec1419f")
USER_OPERATION_REVERT_REASON_TOPIC = (
    "0x1c4fada7374c0a9ee8841fc38afe82932dc0f8e69012e927f061a8bae611a201")
TRANSFER_TOPIC = (
    "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef")
APPROVAL_TOPIC = (
    "0x8c5be1e5ebec7d5bd14f71427d1e84f3dd0314c0f7b2291e5b200ac8c7c3b925")

KNOWN_EVENTS = {
    USER_OPERATION_EVENT_TOPIC: "UserOperationEvent",
    USER_OPERATION_REVERT_REASON_TOPIC: "UserOperationRevertReason",
    TRANSFER_TOPIC: "Transfer",
    APPROVAL_TOPIC: "Approval",
}


def _expect_dict(value, service: str, name: str) -> dict:
    if not isinstance(value, dict):
        raise InvalidResponseException(service, f"Expected {name} object")
    return value


def _get_str(
    json_dict: dict, field_name: str, service: str, optional: bool = False
) -> str | None:
    value = json_dict.get(field_name)
    if value is None and optional:
        return None
    if not isinstance(value, str):
        raise InvalidResponseException(
            service, f"Invalid string value : {value} in field {field_name}")
    return value


@dataclass(frozen=True)
class UserOperationCall:
    to: Address
    value: int = 0
    data: bytes = b""

    @classmethod
    def transfer(cls, to: Address, value: int) -> "UserOperationCall":
        return cls(to, value, b"")

    @classmethod
    def contract_call(cls, to: Address, data: bytes) -> "UserOperationCall":
        return cls(to, 0, data)

    @classmethod
    def contract_call_with_value(
        cls, to: Address, value: int, data: bytes
    ) -> "UserOperationCall":
        return cls(to, value, data)


@dataclass(frozen=True)
class GasEstimate:
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    max_fee_per_gas: int | None = None
    max_priority_fee_per_gas: int | None = None
    paymaster_verification_gas_limit: int | None = None
    paymaster_post_op_gas_limit: int | None = None

    @classmethod
    def from_json(
        cls, json_dict: dict, service: str = "bundler"
    ) -> "GasEstimate":
        json_dict = _expect_dict(json_dict, service, "gas estimate")
        return cls(
            call_gas_limit=verify_and_get_uint(
                "callGasLimit", json_dict.get("callGasLimit"), service),
            verification_gas_limit=verify_and_get_uint(
                "verificationGasLimit",
                json_dict.get("verificationGasLimit"),
                service,
            ),
            pre_verification_gas=verify_and_get_uint(
                "preVerificationGas",
                json_dict.get("preVerificationGas"),
                service,
            ),
            max_fee_per_gas=verify_and_get_optional_uint(
                "maxFeePerGas", json_dict.get("maxFeePerGas"), service),
            max_priority_fee_per_gas=verify_and_get_optional_uint(
                "maxPriorityFeePerGas",
                json_dict.get("maxPriorityFeePerGas"),
                service,
            ),
            paymaster_verification_gas_limit=verify_and_get_optional_uint(
                "paymasterVerificationGasLimit",
                json_dict.get("paymasterVerificationGasLimit"),
                service,
            ),
            paymaster_post_op_gas_limit=verify_and_get_optional_uint(
                "paymasterPostOpGasLimit",
                json_dict.get("paymasterPostOpGasLimit"),
                service,
            ),
        )


@dataclass(frozen=True)
class GasPriceOption:
    max_fee_per_gas: int
    max_priority_fee_per_gas: int

    @classmethod
    def from_json(
        cls, json_dict: dict | None, service: str = "bundler"
    ) -> "GasPriceOption":
        # a missing tier is reported as zero fees
        if json_dict is None:
            return cls(0, 0)
        json_dict = _expect_dict(json_dict, service, "gas price tier")
        return cls(
            max_fee_per_gas=verify_and_get_uint(
                "maxFeePerGas", json_dict.get("maxFeePerGas", "0x0"), service),
            max_priority_fee_per_gas=verify_and_get_uint(
                "maxPriorityFeePerGas",
                json_dict.get("maxPriorityFeePerGas", "0x0"),
                service,
            ),
        )


@dataclass(frozen=True)
class GasPrices:
    slow: GasPriceOption
    standard: GasPriceOption
    fast: GasPriceOption

    @classmethod
    def from_json(cls, json_dict: dict, service: str = "bundler") -> "GasPrices":
        json_dict = _expect_dict(json_dict, service, "gas price")
        return cls(
            slow=GasPriceOption.from_json(json_dict.get("slow"), service),
            standard=GasPriceOption.from_json(
                json_dict.get("standard"), service),
            fast=GasPriceOption.from_json(json_dict.get("fast"), service),
        )


@dataclass(frozen=True)
class PaymasterDataResponse:
    paymaster_and_data: bytes
    pre_verification_gas: int | None = None
    verification_gas_limit: int | None = None
    call_gas_limit: int | None = None
    paymaster_verification_gas_limit: int | None = None
    paymaster_post_op_gas_limit: int | None = None

    @classmethod
    def from_json(
        cls, json_dict: dict, service: str = "paymaster"
    ) -> "PaymasterDataResponse":
        """
        Accepts the single field paymasterAndData (EntryPoint v0.6) and the
        split paymaster + paymasterData (EntryPoint v0.7) shapes. The split
        form is joined back as paymaster address followed by its data.
        """
        json_dict = _expect_dict(json_dict, service, "paymaster data")
        if json_dict.get("paymasterAndData") is not None:
            paymaster_and_data = verify_and_get_bytes(
                "paymasterAndData", json_dict["paymasterAndData"], service)
        elif (
            json_dict.get("paymaster") is not None and
            json_dict.get("paymasterData") is not None
        ):
            paymaster_and_data = verify_and_get_bytes(
                "paymaster", json_dict["paymaster"], service
            ) + verify_and_get_bytes(
                "paymasterData", json_dict["paymasterData"], service)
        else:
            paymaster_and_data = b""

        return cls(
            paymaster_and_data=paymaster_and_data,
            pre_verification_gas=verify_and_get_optional_uint(
                "preVerificationGas",
                json_dict.get("preVerificationGas"),
                service,
            ),
            verification_gas_limit=verify_and_get_optional_uint(
                "verificationGasLimit",
                json_dict.get("verificationGasLimit"),
                service,
            ),
            call_gas_limit=verify_and_get_optional_uint(
                "callGasLimit", json_dict.get("callGasLimit"), service),
            paymaster_verification_gas_limit=verify_and_get_optional_uint(
                "paymasterVerificationGasLimit",
                json_dict.get("paymasterVerificationGasLimit"),
                service,
            ),
            paymaster_post_op_gas_limit=verify_and_get_optional_uint(
                "paymasterPostOpGasLimit",
                json_dict.get("paymasterPostOpGasLimit"),
                service,
            ),
        )


class PaymasterMode(Enum):
    none = "none"
    sponsored = "sponsored"
    erc20 = "erc20"

    def __str__(self):
        return self.value


@dataclass(frozen=True)
class PaymasterToken:
    address: Address
    symbol: str
    decimals: int
    exchange_rate: float  # token units per wei of gas
    chain_id: int

    def token_amount_for_gas(self, gas_in_wei: int) -> int:
        return int(gas_in_wei * self.exchange_rate)

    def format_amount(self, amount: int) -> str:
        return f"{amount / 10 ** self.decimals:.4f} {self.symbol}"


@dataclass(frozen=True)
class SponsorshipLimits:
    max_gas_per_operation: int | None = None
    max_operations_per_day: int | None = None
    max_gas_per_day: int | None = None
    valid_until: datetime | None = None

    @property
    def is_valid(self) -> bool:
        if self.valid_until is None:
            return True
        return self.valid_until >= datetime.now(timezone.utc)


@dataclass(frozen=True)
class SponsorshipPolicy:
    id: PolicyId
    name: str
    description: str
    chain_id: int
    limits: SponsorshipLimits | None = None
    # None allows every contract
    allowed_contracts: tuple[Address, ...] | None = None
    is_active: bool = True

    def allows_contract(self, address: Address) -> bool:
        if self.allowed_contracts is None:
            return True
        return any(
            allowed.lower() == address.lower()
            for allowed in self.allowed_contracts
        )


@dataclass(frozen=True)
class UserOperationLog:
    address: Address
    topics: list[str]
    data: str
    block_number: str | None
    transaction_hash: str | None
    log_index: str | None

    @property
    def event_name(self) -> str | None:
        if len(self.topics) == 0:
            return None
        return KNOWN_EVENTS.get(self.topics[0].lower())

    @classmethod
    def from_json(
        cls, json_dict: dict, service: str = "bundler"
    ) -> "UserOperationLog":
        json_dict = _expect_dict(json_dict, service, "log")
        topics = json_dict.get("topics", [])
        if not isinstance(topics, list):
            raise InvalidResponseException(
                service, f"Invalid log topics : {topics}")
        return cls(
            address=verify_and_get_address(
                "address", json_dict.get("address"), service),
            topics=topics,
            data=_get_str(json_dict, "data", service),
            block_number=_get_str(
                json_dict, "blockNumber", service, optional=True),
            transaction_hash=_get_str(
                json_dict, "transactionHash", service, optional=True),
            log_index=_get_str(json_dict, "logIndex", service, optional=True),
        )


@dataclass(frozen=True)
class ReceiptInfo:
    transaction_hash: str
    block_hash: str
    block_number: int
    from_address: Address
    to: Address | None
    cumulative_gas_used: int
    gas_used: int
    effective_gas_price: int
    status: int | None

    @property
    def is_success(self) -> bool:
        return self.status == 1

    @classmethod
    def from_json(
        cls, json_dict: dict, service: str = "bundler"
    ) -> "ReceiptInfo":
        json_dict = _expect_dict(json_dict, service, "transaction receipt")
        to = json_dict.get("to")
        return cls(
            transaction_hash=_get_str(json_dict, "transactionHash", service),
            block_hash=_get_str(json_dict, "blockHash", service),
            block_number=verify_and_get_uint(
                "blockNumber", json_dict.get("blockNumber"), service),
            from_address=verify_and_get_address(
                "from", json_dict.get("from"), service),
            to=verify_and_get_address("to", to, service) if to else None,
            cumulative_gas_used=verify_and_get_uint(
                "cumulativeGasUsed",
                json_dict.get("cumulativeGasUsed"),
                service,
            ),
            gas_used=verify_and_get_uint(
                "gasUsed", json_dict.get("gasUsed"), service),
            effective_gas_price=verify_and_get_uint(
                "effectiveGasPrice",
                json_dict.get("effectiveGasPrice", "0x0"),
                service,
            ),
            status=verify_and_get_optional_uint(
                "status", json_dict.get("status"), service),
        )


class UserOperationStatus(Enum):
    not_found = "not_found"
    pending = "pending"
    submitted = "submitted"
    included = "included"
    succeeded = "succeeded"
    reverted = "reverted"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            UserOperationStatus.succeeded,
            UserOperationStatus.reverted,
            UserOperationStatus.failed,
        )

    @classmethod
    def from_vendor(cls, value: str | None) -> "UserOperationStatus":
        if not isinstance(value, str):
            return cls.pending
        value = value.lower()
        if value in VENDOR_STATUS_ALIASES:
            return VENDOR_STATUS_ALIASES[value]
        try:
            return cls(value)
        except ValueError:
            return cls.pending


VENDOR_STATUS_ALIASES = {
    "not_submitted": UserOperationStatus.pending,
    "queued": UserOperationStatus.pending,
    "rejected": UserOperationStatus.failed,
}


@dataclass(frozen=True)
class UserOperationStatusInfo:
    status: UserOperationStatus
    transaction_hash: str | None = None

    @classmethod
    def from_json(
        cls, json_dict: dict, service: str = "bundler"
    ) -> "UserOperationStatusInfo":
        json_dict = _expect_dict(json_dict, service, "status")
        return cls(
            status=UserOperationStatus.from_vendor(json_dict.get("status")),
            transaction_hash=_get_str(
                json_dict, "transactionHash", service, optional=True),
        )


def _revert_reason_from_logs(logs: list[UserOperationLog]) -> str | None:
    for log in logs:
        if log.event_name == "UserOperationRevertReason":
            return decode_user_operation_revert_reason(log.data)
    return None


@dataclass(frozen=True)
class UserOperationReceipt:
    user_op_hash: str
    entrypoint: Address | None
    sender: Address
    nonce: int
    paymaster: Address | None
    actual_gas_cost: int
    actual_gas_used: int
    success: bool
    reason: str | None
    logs: list[UserOperationLog]
    receipt: ReceiptInfo

    @property
    def status(self) -> UserOperationStatus:
        if self.success:
            return UserOperationStatus.succeeded
        return UserOperationStatus.reverted

    @property
    def transaction_hash(self) -> str:
        return self.receipt.transaction_hash

    @property
    def block_number(self) -> int:
        return self.receipt.block_number

    @classmethod
    def from_json(
        cls, json_dict: dict, service: str = "bundler"
    ) -> "UserOperationReceipt":
        json_dict = _expect_dict(json_dict, service, "receipt")
        success = json_dict.get("success")
        if not isinstance(success, bool):
            raise InvalidResponseException(
                service, f"Invalid success value : {success}")
        logs = json_dict.get("logs") or []
        if not isinstance(logs, list):
            raise InvalidResponseException(
                service, f"Invalid receipt logs : {logs}")

        user_operation_logs = [
            UserOperationLog.from_json(log, service) for log in logs]
        reason = _get_str(json_dict, "reason", service, optional=True)
        if reason is None and not success:
            reason = _revert_reason_from_logs(user_operation_logs)

        entrypoint = json_dict.get("entryPoint")
        paymaster = json_dict.get("paymaster")
        return cls(
            user_op_hash=_get_str(json_dict, "userOpHash", service),
            entrypoint=verify_and_get_address(
                "entryPoint", entrypoint, service) if entrypoint else None,
            sender=verify_and_get_address(
                "sender", json_dict.get("sender"), service),
            nonce=verify_and_get_uint("nonce", json_dict.get("nonce"), service),
            paymaster=verify_and_get_address(
                "paymaster", paymaster, service) if paymaster else None,
            actual_gas_cost=verify_and_get_uint(
                "actualGasCost", json_dict.get("actualGasCost"), service),
            actual_gas_used=verify_and_get_uint(
                "actualGasUsed", json_dict.get("actualGasUsed"), service),
            success=success,
            reason=reason,
            logs=user_operation_logs,
            receipt=ReceiptInfo.from_json(json_dict.get("receipt"), service),
        )


@dataclass(frozen=True)
class UserOperationByHash:
    user_operation: SignedUserOperation
    entrypoint: Address
    block_number: int | None
    block_hash: str | None
    transaction_hash: str | None

    @classmethod
    def from_json(
        cls, json_dict: dict, service: str = "bundler"
    ) -> "UserOperationByHash":
        json_dict = _expect_dict(json_dict, service, "userOperation by hash")
        return cls(
            user_operation=SignedUserOperation.from_json(
                json_dict.get("userOperation"), service),
            entrypoint=Address(to_checksum_address(verify_and_get_address(
                "entryPoint", json_dict.get("entryPoint"), service))),
            block_number=verify_and_get_optional_uint(
                "blockNumber", json_dict.get("blockNumber"), service),
            block_hash=_get_str(json_dict, "blockHash", service, optional=True),
            transaction_hash=_get_str(
                json_dict, "transactionHash", service, optional=True),
        )
