from dataclasses import dataclass
from enum import Enum
from signal import Signals

INVALID_METHOD_PARAMS = -32602


class BundlerErrorCode(Enum):
    InvalidFields = -32602
    SimulateValidation = -32500
    SimulatePaymasterValidation = -32501
    OpcodeValidation = -32502
    ExpiresShortly = -32503
    Reputation = -32504
    InsufficientStake = -32505
    UnsupportedSignatureAggregator = -32506
    InvalidSignature = -32507
    PaymasterDepositTooLow = -32508
    UserOperationReverted = -32521


@dataclass
class RpcClientException(Exception):
    service: str
    message: str

    def __str__(self) -> str:
        return f"{self.service}: {self.message}"

    @property
    def is_recoverable(self) -> bool:
        """
        The caller can work around the failure, either by resubmitting or
        by changing the UserOperation.
        """
        return False

    @property
    def requires_rebuild(self) -> bool:
        """
        Resubmitting the same signed UserOperation can't succeed. A
        recoverable error that requires a rebuild is worked around with a
        new, re-signed UserOperation.
        """
        return False


@dataclass
class NoAPIKeyException(RpcClientException):
    def __str__(self) -> str:
        return f"{self.service}: API key not configured"


@dataclass
class NetworkException(RpcClientException):
    @property
    def is_recoverable(self) -> bool:
        return True


@dataclass
class HttpException(RpcClientException):
    status: int
    body: str

    def __str__(self) -> str:
        return f"{self.service}: HTTP error {self.status}: {self.body}"


@dataclass
class InvalidResponseException(RpcClientException):
    def __str__(self) -> str:
        return f"{self.service}: Invalid response: {self.message}"


@dataclass
class RpcErrorException(RpcClientException):
    code: int

    def __str__(self) -> str:
        return f"{self.service} error ({self.code}): {self.message}"

    @property
    def is_recoverable(self) -> bool:
        return self.code == INVALID_METHOD_PARAMS

    @property
    def requires_rebuild(self) -> bool:
        return True

    @property
    def bundler_error_code(self) -> BundlerErrorCode | None:
        try:
            return BundlerErrorCode(self.code)
        except ValueError:
            return None


@dataclass
class SponsorshipDeniedException(RpcErrorException):
    def __str__(self) -> str:
        return f"{self.service}: Sponsorship denied: {self.message}"

    @property
    def reason(self) -> str:
        return self.message

    @property
    def is_recoverable(self) -> bool:
        return True


@dataclass
class UserOperationTimeoutException(RpcClientException):
    user_operation_hash: str

    def __str__(self) -> str:
        return (
            f"{self.service}: UserOperation {self.user_operation_hash} "
            f"confirmation timed out: {self.message}"
        )

    @property
    def is_recoverable(self) -> bool:
        return True


class SmartAccountExceptionCode(Enum):
    AddressComputationFailed = "address_computation_failed"
    NonceRetrievalFailed = "nonce_retrieval_failed"
    SignatureFailed = "signature_failed"
    InvalidCalls = "invalid_calls"
    UnsupportedEntryPoint = "unsupported_entrypoint"
    ChainIdMismatch = "chain_id_mismatch"


@dataclass
class SmartAccountException(Exception):
    exception_code: SmartAccountExceptionCode
    message: str

    def __str__(self) -> str:
        return f"{self.exception_code.value}: {self.message}"


class PaymasterExceptionCode(Enum):
    TokenNotAccepted = "token_not_accepted"
    InsufficientTokenBalance = "insufficient_token_balance"


@dataclass
class PaymasterException(Exception):
    exception_code: PaymasterExceptionCode
    message: str

    def __str__(self) -> str:
        return f"{self.exception_code.value}: {self.message}"


class SignalHaltError(SystemExit):
    def __init__(self, signal_enum: Signals):
        self.signal_enum = signal_enum
        super().__init__(128 + signal_enum.value)

    def __str__(self) -> str:
        return f"halted by {self.signal_enum.name}"
