import logging
from typing import Any

from aiohttp import ClientSession

from aa_wallet.config import PaymasterConfig
from aa_wallet.exceptions import (INVALID_METHOD_PARAMS, InvalidResponseException,
                                  NoAPIKeyException, PaymasterException,
                                  PaymasterExceptionCode, RpcErrorException,
                                  SponsorshipDeniedException)
from aa_wallet.typing import Address, PolicyId
from aa_wallet.user_operation.models import (PaymasterDataResponse,
                                             PaymasterMode, PaymasterToken,
                                             SponsorshipPolicy)
from aa_wallet.user_operation.user_operation import UnsignedUserOperation
from aa_wallet.utils.eth_client_utils import JsonRpcClient

# gas paid in tokens, rates are approximate
ACCEPTED_TOKENS: dict[int, list[PaymasterToken]] = {
    1: [  # Ethereum Mainnet
        PaymasterToken(
            address=Address("0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"),
            symbol="USDC",
            decimals=6,
            exchange_rate=0.000001,
            chain_id=1,
        ),
        PaymasterToken(
            address=Address("0xdAC17F958D2ee523a2206206994597C13D831ec7"),
            symbol="USDT",
            decimals=6,
            exchange_rate=0.000001,
            chain_id=1,
        ),
    ],
    11155111: [  # Sepolia
        PaymasterToken(
            address=Address("0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"),
            symbol="USDC",
            decimals=6,
            exchange_rate=0.000001,
            chain_id=11155111,
        ),
    ],
}

DEFAULT_SPONSORSHIP_POLICY_ID = PolicyId("default")


def is_sponsorship_denied(error: RpcErrorException) -> bool:
    return (
        error.code == INVALID_METHOD_PARAMS or
        "not sponsored" in error.message.lower()
    )


class PaymasterClient:
    service = "paymaster"
    config: PaymasterConfig
    rpc_client: JsonRpcClient

    def __init__(
        self, config: PaymasterConfig, session: ClientSession | None = None
    ):
        self.config = config
        self.rpc_client = JsonRpcClient(
            self.service, config.url, config.timeout_seconds, session)

    @property
    def is_available(self) -> bool:
        return self.config.has_api_key

    async def get_paymaster_and_data(
        self,
        user_operation: UnsignedUserOperation,
        sponsorship_policy_id: PolicyId | None = None,
    ) -> PaymasterDataResponse:
        params: list = [
            user_operation.get_user_operation_json(),
            self.config.entrypoint,
        ]
        if sponsorship_policy_id is not None:
            params.append({"sponsorshipPolicyId": sponsorship_policy_id})

        result = await self._rpc_call(self.config.rpc_method, params)
        return PaymasterDataResponse.from_json(result, self.service)

    async def can_sponsor(self, user_operation: UnsignedUserOperation) -> bool:
        try:
            await self.get_paymaster_and_data(user_operation)
        except SponsorshipDeniedException as excp:
            logging.info(f"UserOperation not sponsored: {excp.reason}")
            return False
        return True

    async def sponsor_user_operation(
        self,
        user_operation: UnsignedUserOperation,
        sponsorship_policy_id: PolicyId | None = None,
    ) -> UnsignedUserOperation:
        paymaster_data = await self.get_paymaster_and_data(
            user_operation, sponsorship_policy_id)
        return apply_paymaster_data(user_operation, paymaster_data)

    async def get_erc20_paymaster_data(
        self, user_operation: UnsignedUserOperation, token: PaymasterToken
    ) -> PaymasterDataResponse:
        params = [
            user_operation.get_user_operation_json(),
            self.config.entrypoint,
            {"token": token.address},
        ]
        result = await self._rpc_call(self.config.rpc_method, params)
        return PaymasterDataResponse.from_json(result, self.service)

    async def build_sponsored_user_operation(
        self,
        user_operation: UnsignedUserOperation,
        mode: PaymasterMode,
        token: PaymasterToken | None = None,
        sponsorship_policy_id: PolicyId | None = None,
    ) -> UnsignedUserOperation:
        if mode == PaymasterMode.none:
            return user_operation
        elif mode == PaymasterMode.sponsored:
            return await self.sponsor_user_operation(
                user_operation, sponsorship_policy_id)
        elif mode == PaymasterMode.erc20:
            if token is None:
                raise PaymasterException(
                    PaymasterExceptionCode.TokenNotAccepted,
                    "an ERC-20 token is required to pay gas in tokens",
                )
            paymaster_data = await self.get_erc20_paymaster_data(
                user_operation, token)
            return apply_paymaster_data(user_operation, paymaster_data)
        else:
            raise ValueError(f"Unknown paymaster mode {mode}")

    async def get_accepted_tokens(self) -> list[PaymasterToken]:
        return list(ACCEPTED_TOKENS.get(self.config.chain_id, []))

    async def get_accepted_token(self, address: Address) -> PaymasterToken:
        for token in await self.get_accepted_tokens():
            if token.address.lower() == address.lower():
                return token
        raise PaymasterException(
            PaymasterExceptionCode.TokenNotAccepted,
            f"token {address} is not accepted on chain {self.config.chain_id}",
        )

    async def get_sponsorship_policies(self) -> list[SponsorshipPolicy]:
        return [
            SponsorshipPolicy(
                id=DEFAULT_SPONSORSHIP_POLICY_ID,
                name="Default Sponsorship",
                description="Standard gas sponsorship",
                chain_id=self.config.chain_id,
            )
        ]

    @staticmethod
    def validate_stub_data(paymaster_and_data: bytes) -> bool:
        # a paymaster address prefix, optionally followed by its data
        return len(paymaster_and_data) >= 20

    async def _rpc_call(self, method: str, params: list) -> Any:
        if not self.config.has_api_key:
            raise NoAPIKeyException(self.service, "API key not configured")
        try:
            result = await self.rpc_client.send_rpc_request(method, params)
        except RpcErrorException as excp:
            if is_sponsorship_denied(excp):
                raise SponsorshipDeniedException(
                    self.service, excp.message, excp.code
                ) from excp
            raise
        if not isinstance(result, dict):
            raise InvalidResponseException(
                self.service, "Expected paymaster data object")
        return result


def apply_paymaster_data(
    user_operation: UnsignedUserOperation,
    paymaster_data: PaymasterDataResponse,
) -> UnsignedUserOperation:
    changes: dict[str, Any] = {
        "paymaster_and_data": paymaster_data.paymaster_and_data
    }
    if paymaster_data.pre_verification_gas is not None:
        changes["pre_verification_gas"] = paymaster_data.pre_verification_gas
    if paymaster_data.verification_gas_limit is not None:
        changes["verification_gas_limit"] = (
            paymaster_data.verification_gas_limit)
    if paymaster_data.call_gas_limit is not None:
        changes["call_gas_limit"] = paymaster_data.call_gas_limit
    return user_operation.with_changes(**changes)
