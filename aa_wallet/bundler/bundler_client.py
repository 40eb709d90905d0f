import asyncio
import logging
from typing import Any

from aiohttp import ClientSession

from aa_wallet.config import BundlerConfig, is_chain_supported
from aa_wallet.exceptions import (InvalidResponseException,
                                  NoAPIKeyException,
                                  UserOperationTimeoutException)
from aa_wallet.typing import Address, UserOperationHash
from aa_wallet.user_operation.models import (GasEstimate, GasPrices,
                                             UserOperationByHash,
                                             UserOperationReceipt,
                                             UserOperationStatusInfo)
from aa_wallet.user_operation.user_operation import (BaseUserOperation,
                                                     SignedUserOperation)
from aa_wallet.utils.eth_client_utils import JsonRpcClient


class BundlerClient:
    """
    ERC-4337 bundler json-rpc client, standard eth_ namespace plus the
    pimlico_ status and gas price extensions.
    """

    service = "bundler"
    config: BundlerConfig
    rpc_client: JsonRpcClient

    def __init__(
        self, config: BundlerConfig, session: ClientSession | None = None
    ):
        self.config = config
        self.rpc_client = JsonRpcClient(
            self.service, config.url, config.timeout_seconds, session)

    @staticmethod
    def is_chain_supported(chain_id: int) -> bool:
        return is_chain_supported(chain_id)

    async def send_user_operation(
        self, user_operation: SignedUserOperation
    ) -> UserOperationHash:
        if not isinstance(user_operation, SignedUserOperation):
            raise TypeError(
                "only a SignedUserOperation can be sent to the bundler")

        result = await self._rpc_call(
            "eth_sendUserOperation",
            [user_operation.get_user_operation_json(), self.config.entrypoint],
        )
        if not isinstance(result, str):
            raise InvalidResponseException(
                self.service, "Expected string hash")

        logging.info(
            f"UserOperation sent by {user_operation.sender_address} "
            f"with nonce {user_operation.nonce}: {result}"
        )
        return UserOperationHash(result)

    async def estimate_user_operation_gas(
        self, user_operation: BaseUserOperation
    ) -> GasEstimate:
        result = await self._rpc_call(
            "eth_estimateUserOperationGas",
            [user_operation.get_user_operation_json(), self.config.entrypoint],
        )
        return GasEstimate.from_json(result, self.service)

    async def get_user_operation_receipt(
        self, user_operation_hash: str
    ) -> UserOperationReceipt | None:
        result = await self._rpc_call(
            "eth_getUserOperationReceipt", [user_operation_hash])
        # still pending
        if result is None:
            return None
        return UserOperationReceipt.from_json(result, self.service)

    async def get_user_operation_by_hash(
        self, user_operation_hash: str
    ) -> UserOperationByHash | None:
        result = await self._rpc_call(
            "eth_getUserOperationByHash", [user_operation_hash])
        if result is None:
            return None
        return UserOperationByHash.from_json(result, self.service)

    async def get_supported_entry_points(self) -> list[Address]:
        result = await self._rpc_call("eth_supportedEntryPoints", [])
        if not isinstance(result, list) or not all(
            isinstance(entrypoint, str) for entrypoint in result
        ):
            raise InvalidResponseException(
                self.service, "Expected array of entry points")
        return [Address(entrypoint) for entrypoint in result]

    async def get_chain_id(self) -> int:
        result = await self._rpc_call("eth_chainId", [])
        if not isinstance(result, str):
            raise InvalidResponseException(
                self.service, "Expected chain ID string")
        try:
            return int(result, 16)
        except ValueError:
            raise InvalidResponseException(
                self.service, f"Invalid chain ID format : {result}")

    async def get_user_operation_status(
        self, user_operation_hash: str
    ) -> UserOperationStatusInfo:
        result = await self._rpc_call(
            "pimlico_getUserOperationStatus", [user_operation_hash])
        return UserOperationStatusInfo.from_json(result, self.service)

    async def get_gas_prices(self) -> GasPrices:
        result = await self._rpc_call("pimlico_getUserOperationGasPrice", [])
        return GasPrices.from_json(result, self.service)

    async def wait_for_receipt(
        self,
        user_operation_hash: str,
        timeout: float = 120,
        poll_interval: float = 2,
    ) -> UserOperationReceipt:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            receipt = await self.get_user_operation_receipt(
                user_operation_hash)
            if receipt is not None:
                return receipt
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            logging.debug(
                f"UserOperation {user_operation_hash} has no receipt yet.")
            await asyncio.sleep(min(poll_interval, remaining))

        raise UserOperationTimeoutException(
            self.service,
            f"no receipt after {timeout} seconds",
            user_operation_hash,
        )

    async def wait_for_status(
        self,
        user_operation_hash: str,
        timeout: float = 120,
        poll_interval: float = 2,
    ) -> UserOperationStatusInfo:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            status_info = await self.get_user_operation_status(
                user_operation_hash)
            if status_info.status.is_terminal:
                return status_info
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            logging.debug(
                f"UserOperation {user_operation_hash} status: "
                f"{status_info.status.value}"
            )
            await asyncio.sleep(min(poll_interval, remaining))

        raise UserOperationTimeoutException(
            self.service,
            f"no terminal status after {timeout} seconds",
            user_operation_hash,
        )

    async def _rpc_call(self, method: str, params: list) -> Any:
        if not self.config.has_api_key:
            raise NoAPIKeyException(self.service, "API key not configured")
        return await self.rpc_client.send_rpc_request(method, params)
