import asyncio
import json
import logging
from typing import Any

from aiohttp import ClientError, ClientSession, ClientTimeout

from aa_wallet.exceptions import (HttpException, InvalidResponseException,
                                  NetworkException, RpcErrorException)
from aa_wallet.metrics.metrics import count_rpc_error, observe_rpc_request
from aa_wallet.rpc.jsonrpc import (RPCInvalidResponse, build_json_rpc_request,
                                   get_error_message,
                                   validate_json_rpc_response)
from aa_wallet.typing import Address


class JsonRpcClient:
    """
    Single attempt JSON-RPC 2.0 transport over an HTTP POST.
    Every failure is raised as an RpcClientException subclass, retrying
    is left to the caller.
    """

    service: str
    url: str
    timeout_seconds: float
    session: ClientSession | None

    def __init__(
        self,
        service: str,
        url: str,
        timeout_seconds: float = 30.0,
        session: ClientSession | None = None,
    ):
        self.service = service
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.session = session

    async def send_rpc_request(self, method: str, params=None) -> Any:
        json_request = build_json_rpc_request(method, params)
        logging.debug(f"{self.service} rpc request: {method}")

        loop = asyncio.get_running_loop()
        start_time = loop.time()
        try:
            if self.session is not None:
                status, body = await self._post(self.session, json_request)
            else:
                async with ClientSession() as session:
                    status, body = await self._post(session, json_request)
        except (ClientError, asyncio.TimeoutError) as excp:
            count_rpc_error(self.service, method, "network")
            logging.warning(
                f"{self.service} rpc request {method} failed. "
                f"error: {str(excp) or type(excp).__name__}"
            )
            raise NetworkException(
                self.service, str(excp) or type(excp).__name__
            ) from excp
        finally:
            observe_rpc_request(
                self.service, method, loop.time() - start_time)

        if not 200 <= status < 300:
            count_rpc_error(self.service, method, "http")
            raise HttpException(
                self.service, f"HTTP error {status}", status, body)

        try:
            json_result = json.loads(body)
        except json.decoder.JSONDecodeError:
            count_rpc_error(self.service, method, "invalid_response")
            raise InvalidResponseException(
                self.service, "Invalid JSON response")

        try:
            result, error = validate_json_rpc_response(json_result)
        except RPCInvalidResponse as err:
            count_rpc_error(self.service, method, "invalid_response")
            raise InvalidResponseException(self.service, str(err))

        if error is not None:
            count_rpc_error(self.service, method, "rpc")
            code = error.get("code", -1)
            message = get_error_message(error)
            logging.debug(
                f"{self.service} rpc error for {method}: {code} - {message}")
            raise RpcErrorException(self.service, message, code)

        return result

    async def _post(
        self, session: ClientSession, json_request: dict
    ) -> tuple[int, str]:
        headers = {"content-type": "application/json"}
        async with session.post(
            self.url,
            json=json_request,
            headers=headers,
            timeout=ClientTimeout(total=self.timeout_seconds),
        ) as response:
            resp = await response.read()
            return response.status, resp.decode("utf-8", errors="replace")


class EthClient:
    """Minimal Ethereum node client for the reads a smart account needs."""

    def __init__(
        self,
        node_url: str,
        timeout_seconds: float = 30.0,
        session: ClientSession | None = None,
    ):
        self.rpc_client = JsonRpcClient(
            "eth_client", node_url, timeout_seconds, session)

    async def eth_call(
        self, to: Address, data: bytes, block: str = "latest"
    ) -> str:
        call = {"to": to, "data": "0x" + data.hex()}
        result = await self.rpc_client.send_rpc_request(
            "eth_call", [call, block])
        if not isinstance(result, str):
            raise InvalidResponseException(
                self.rpc_client.service, "Expected eth_call result string")
        return result

    async def eth_get_code(self, address: Address, block: str = "latest") -> str:
        result = await self.rpc_client.send_rpc_request(
            "eth_getCode", [address, block])
        if not isinstance(result, str):
            raise InvalidResponseException(
                self.rpc_client.service, "Expected eth_getCode result string")
        return result
