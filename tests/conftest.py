import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from eth_account import Account

from aa_wallet.bundler.bundler_client import BundlerClient
from aa_wallet.config import (ENTRYPOINT_V06, SIMPLE_ACCOUNT_FACTORY_V06,
                              BundlerConfig, NetworkConfig, PaymasterConfig)
from aa_wallet.paymaster.paymaster_client import PaymasterClient
from aa_wallet.smart_account.smart_account_manager import SmartAccountManager
from aa_wallet.utils.eth_client_utils import EthClient
from aa_wallet.utils.encode import (BALANCE_OF_SELECTOR, GET_ADDRESS_SELECTOR,
                                    GET_NONCE_SELECTOR)

from fake_rpc import FakeJsonRpcNode, address_word, uint_word

CHAIN_ID = 11155111
OWNER_PRIVATE_KEY = (
    "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318")
SMART_ACCOUNT_ADDRESS = "0x1F9090aaE28b8a3dCeaDf281B0F12828e676c326"
PAYMASTER_ADDRESS = "0x0000000000325602a77416A16136FDafd04b299f"


@pytest.fixture
def owner_address() -> str:
    return Account.from_key(OWNER_PRIVATE_KEY).address


@pytest_asyncio.fixture
async def rpc_node():
    node = FakeJsonRpcNode()
    app = web.Application()
    app.router.add_post("/rpc", node.handle)
    server = TestServer(app)
    await server.start_server()
    node.url = str(server.make_url("/rpc"))
    yield node
    await server.close()


@pytest.fixture
def bundler_config(rpc_node) -> BundlerConfig:
    return BundlerConfig(
        chain_id=CHAIN_ID,
        api_key="test-key",
        rpc_url=rpc_node.url,
        timeout_seconds=2,
    )


@pytest.fixture
def bundler(bundler_config) -> BundlerClient:
    return BundlerClient(bundler_config)


@pytest.fixture
def paymaster(rpc_node) -> PaymasterClient:
    return PaymasterClient(
        PaymasterConfig(
            chain_id=CHAIN_ID,
            api_key="test-key",
            rpc_url=rpc_node.url,
            timeout_seconds=2,
        )
    )


@pytest.fixture
def manager(rpc_node, bundler, paymaster) -> SmartAccountManager:
    return SmartAccountManager(
        NetworkConfig(chain_id=CHAIN_ID),
        EthClient(rpc_node.url, 2),
        bundler,
        paymaster,
    )


@pytest.fixture
def wallet_node(rpc_node):
    """
    Fake node, bundler and paymaster for an undeployed account with
    EntryPoint nonce 0.
    """
    def eth_call(params):
        call = params[0]
        data = call["data"]
        if (
            call["to"].lower() == SIMPLE_ACCOUNT_FACTORY_V06.lower() and
            data.startswith(GET_ADDRESS_SELECTOR)
        ):
            return address_word(SMART_ACCOUNT_ADDRESS)
        if (
            call["to"].lower() == ENTRYPOINT_V06.lower() and
            data.startswith(GET_NONCE_SELECTOR)
        ):
            return uint_word(0)
        if data.startswith(BALANCE_OF_SELECTOR):
            return uint_word(rpc_node.token_balances.get(call["to"].lower(), 0))
        return "0x"

    rpc_node.on("eth_call", eth_call)
    rpc_node.on("eth_getCode", "0x")
    rpc_node.on("eth_chainId", hex(CHAIN_ID))
    rpc_node.on("eth_supportedEntryPoints", [ENTRYPOINT_V06])
    rpc_node.on("pimlico_getUserOperationGasPrice", {
        "slow": {"maxFeePerGas": "0x3b9aca00", "maxPriorityFeePerGas": "0x5f5e100"},
        "standard": {"maxFeePerGas": "0x77359400", "maxPriorityFeePerGas": "0xbebc200"},
        "fast": {"maxFeePerGas": "0xb2d05e00", "maxPriorityFeePerGas": "0x11e1a300"},
    })
    rpc_node.on("eth_estimateUserOperationGas", {
        "callGasLimit": "0x9c40",
        "verificationGasLimit": "0x5b8d8",
        "preVerificationGas": "0xc350",
    })
    rpc_node.on("pm_sponsorUserOperation", {
        "paymasterAndData": PAYMASTER_ADDRESS.lower() + "ab" * 32,
        "preVerificationGas": "0xd000",
        "verificationGasLimit": "0x60000",
        "callGasLimit": "0xa000",
    })
    rpc_node.on("eth_sendUserOperation", "0x" + "11" * 32)
    return rpc_node
