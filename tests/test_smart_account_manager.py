import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import to_checksum_address

from aa_wallet.bundler.bundler_client import BundlerClient
from aa_wallet.config import (ENTRYPOINT_V06, SIMPLE_ACCOUNT_FACTORY_V06,
                              BundlerConfig, NetworkConfig, PaymasterConfig)
from aa_wallet.exceptions import (InvalidResponseException, NetworkException,
                                  NoAPIKeyException, PaymasterException,
                                  PaymasterExceptionCode,
                                  SmartAccountException,
                                  SmartAccountExceptionCode)
from aa_wallet.paymaster.paymaster_client import PaymasterClient
from aa_wallet.smart_account.smart_account import (SignatureScheme,
                                                   SmartAccount,
                                                   sign_user_operation_hash)
from aa_wallet.smart_account.smart_account_manager import (
    SmartAccountManager, apply_gas_estimate)
from aa_wallet.user_operation.models import (GasEstimate, PaymasterMode,
                                             UserOperationCall)
from aa_wallet.user_operation.user_operation import (SignedUserOperation,
                                                     UnsignedUserOperation,
                                                     dummy_signature)
from aa_wallet.utils.encode import (EXECUTE_BATCH_SELECTOR, EXECUTE_SELECTOR,
                                    GET_ADDRESS_SELECTOR, encode_init_code)
from aa_wallet.utils.eth_client_utils import EthClient

from conftest import (CHAIN_ID, OWNER_PRIVATE_KEY, PAYMASTER_ADDRESS,
                      SMART_ACCOUNT_ADDRESS)
from fake_rpc import FakeRpcError

RECIPIENT = "0x000000000000000000000000000000000000dEaD"
OTHER_PRIVATE_KEY = "0x" + "22" * 32
SEPOLIA_USDC = "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"


def sent_user_operation(rpc_node) -> SignedUserOperation:
    [params] = rpc_node.calls("eth_sendUserOperation")
    return SignedUserOperation.from_json(params[0])


def recover_owner(user_operation: SignedUserOperation) -> str:
    user_operation_hash = user_operation.get_user_operation_hash(
        CHAIN_ID, ENTRYPOINT_V06)
    return Account.recover_message(
        encode_defunct(primitive=user_operation_hash),
        signature=user_operation.signature,
    )


@pytest.mark.asyncio
async def test_create_smart_account(wallet_node, manager, owner_address):
    account = await manager.create_smart_account(owner_address, 0)

    assert account.owner_address == owner_address
    assert account.smart_account_address == to_checksum_address(
        SMART_ACCOUNT_ADDRESS)
    assert not account.is_deployed
    assert account.chain_id == CHAIN_ID

    [params] = wallet_node.calls("eth_call")
    assert params[0]["to"] == SIMPLE_ACCOUNT_FACTORY_V06
    assert params[0]["data"].startswith(GET_ADDRESS_SELECTOR)
    assert wallet_node.calls("eth_getCode") == [
        [account.smart_account_address, "latest"]]


@pytest.mark.asyncio
async def test_deployed_smart_account(wallet_node, manager, owner_address):
    wallet_node.on("eth_getCode", "0x60806040")
    account = await manager.create_smart_account(owner_address, 0)
    assert account.is_deployed

    wallet_node.on("eth_getCode", "0x")
    assert not (await manager.refresh_deployment(account)).is_deployed


@pytest.mark.asyncio
async def test_compute_address_failure(rpc_node, manager, owner_address):
    def revert(params):
        raise FakeRpcError(3, "execution reverted")

    rpc_node.on("eth_call", revert)
    with pytest.raises(SmartAccountException) as excinfo:
        await manager.compute_address(owner_address, 0)
    assert excinfo.value.exception_code == (
        SmartAccountExceptionCode.AddressComputationFailed)


@pytest.mark.asyncio
async def test_compute_address_short_result(rpc_node, manager, owner_address):
    rpc_node.on("eth_call", "0x")
    with pytest.raises(SmartAccountException):
        await manager.compute_address(owner_address, 0)


@pytest.mark.asyncio
async def test_get_nonce_failure(rpc_node, manager, owner_address):
    rpc_node.on("eth_call", "0x")
    account = SmartAccount(
        owner_address, SMART_ACCOUNT_ADDRESS, 0, True, CHAIN_ID)
    with pytest.raises(SmartAccountException) as excinfo:
        await manager.get_nonce(account)
    assert excinfo.value.exception_code == (
        SmartAccountExceptionCode.NonceRetrievalFailed)


def test_build_call_data():
    single = SmartAccountManager.build_call_data(
        [UserOperationCall.transfer(RECIPIENT, 1)])
    assert single[:4].hex() == EXECUTE_SELECTOR[2:]

    batch = SmartAccountManager.build_call_data([
        UserOperationCall.transfer(RECIPIENT, 1),
        UserOperationCall.contract_call(RECIPIENT, b"\x01"),
    ])
    assert batch[:4].hex() == EXECUTE_BATCH_SELECTOR[2:]

    with pytest.raises(SmartAccountException) as excinfo:
        SmartAccountManager.build_call_data([])
    assert excinfo.value.exception_code == (
        SmartAccountExceptionCode.InvalidCalls)


@pytest.mark.asyncio
async def test_build_user_operation(wallet_node, manager, owner_address):
    """Test an undeployed account gets initCode and estimated gas"""
    account = await manager.create_smart_account(owner_address, 0)
    user_operation = await manager.build_user_operation(
        account, [UserOperationCall.transfer(RECIPIENT, 10)])

    assert isinstance(user_operation, UnsignedUserOperation)
    assert user_operation.sender_address == account.smart_account_address
    assert user_operation.nonce == 0
    assert user_operation.init_code == encode_init_code(
        SIMPLE_ACCOUNT_FACTORY_V06, owner_address, 0)
    assert user_operation.call_gas_limit == 40_000
    assert user_operation.verification_gas_limit == 375_000
    assert user_operation.pre_verification_gas == 50_000
    assert user_operation.max_fee_per_gas == 2_000_000_000
    assert user_operation.max_priority_fee_per_gas == 200_000_000
    assert user_operation.paymaster_and_data == b""

    [params] = wallet_node.calls("eth_estimateUserOperationGas")
    assert params[0]["signature"] == "0x" + dummy_signature().hex()


@pytest.mark.asyncio
async def test_build_user_operation_for_deployed_account(
    wallet_node, manager, owner_address
):
    account = SmartAccount(
        owner_address,
        to_checksum_address(SMART_ACCOUNT_ADDRESS),
        0,
        True,
        CHAIN_ID,
    )
    user_operation = await manager.build_user_operation(
        account,
        [UserOperationCall.transfer(RECIPIENT, 10)],
        skip_estimation=True,
    )
    assert user_operation.init_code == b""
    assert user_operation.call_gas_limit == 50_000
    assert wallet_node.calls("eth_estimateUserOperationGas") == []


def test_apply_gas_estimate_keeps_fees():
    user_operation = UnsignedUserOperation(
        SMART_ACCOUNT_ADDRESS, 0, b"", b"", 1, 1, 1, 5, 2, b"")
    estimated = apply_gas_estimate(
        user_operation, GasEstimate(10, 20, 30, max_fee_per_gas=0))
    assert (
        estimated.call_gas_limit,
        estimated.verification_gas_limit,
        estimated.pre_verification_gas,
    ) == (10, 20, 30)
    assert estimated.max_fee_per_gas == 5
    assert estimated.max_priority_fee_per_gas == 2

    repriced = apply_gas_estimate(
        user_operation, GasEstimate(10, 20, 30, 7, 3))
    assert repriced.max_fee_per_gas == 7
    assert repriced.max_priority_fee_per_gas == 3


@pytest.mark.parametrize("signature_scheme", list(SignatureScheme))
def test_sign_user_operation(signature_scheme, owner_address):
    manager = SmartAccountManager(
        NetworkConfig(chain_id=CHAIN_ID),
        EthClient("http://127.0.0.1:1"),
        None,
        signature_scheme=signature_scheme,
    )
    user_operation = UnsignedUserOperation(
        SMART_ACCOUNT_ADDRESS, 0, b"", b"", 1, 1, 1, 5, 2, b"")
    signed = manager.sign_user_operation(user_operation, OWNER_PRIVATE_KEY)
    user_operation_hash = user_operation.get_user_operation_hash(
        CHAIN_ID, ENTRYPOINT_V06)

    assert len(signed.signature) == 65
    assert signed.get_fields() == user_operation.get_fields()
    if signature_scheme == SignatureScheme.personal_message:
        assert recover_owner(signed) == owner_address
    else:
        raw_signature = Account.from_key(
            OWNER_PRIVATE_KEY).unsafe_sign_hash(user_operation_hash)
        assert signed.signature == bytes(raw_signature.signature)
        assert signed.signature != sign_user_operation_hash(
            user_operation_hash, OWNER_PRIVATE_KEY)


def test_sign_user_operation_with_invalid_key():
    manager = SmartAccountManager(
        NetworkConfig(chain_id=CHAIN_ID), EthClient("http://127.0.0.1:1"), None)
    user_operation = UnsignedUserOperation(
        SMART_ACCOUNT_ADDRESS, 0, b"", b"", 1, 1, 1, 5, 2, b"")
    with pytest.raises(SmartAccountException) as excinfo:
        manager.sign_user_operation(user_operation, "0x1234")
    assert excinfo.value.exception_code == (
        SmartAccountExceptionCode.SignatureFailed)


@pytest.mark.asyncio
async def test_send_eth(wallet_node, manager, owner_address):
    """Test the whole flow: build, estimate, sign and submit"""
    account = await manager.create_smart_account(owner_address, 0)
    user_operation_hash = await manager.send_eth(
        account, RECIPIENT, 10**15, OWNER_PRIVATE_KEY)

    assert user_operation_hash == "0x" + "11" * 32
    assert len(wallet_node.calls("eth_estimateUserOperationGas")) == 1
    assert wallet_node.calls("pm_sponsorUserOperation") == []

    sent = sent_user_operation(wallet_node)
    assert sent.paymaster_and_data == b""
    assert sent.is_deployment
    assert recover_owner(sent) == owner_address
    [params] = wallet_node.calls("eth_sendUserOperation")
    assert params[1] == ENTRYPOINT_V06


@pytest.mark.asyncio
async def test_sponsored_execute(wallet_node, manager, owner_address):
    """Test sponsorship replaces estimation and the paymaster gas is signed"""
    account = await manager.create_smart_account(owner_address, 0)
    await manager.execute(
        account,
        [UserOperationCall.contract_call(RECIPIENT, b"\x01")],
        OWNER_PRIVATE_KEY,
        PaymasterMode.sponsored,
        sponsorship_policy_id="policy-1",
    )

    assert wallet_node.calls("eth_estimateUserOperationGas") == []
    [sponsor_params] = wallet_node.calls("pm_sponsorUserOperation")
    assert sponsor_params[2] == {"sponsorshipPolicyId": "policy-1"}

    sent = sent_user_operation(wallet_node)
    assert sent.paymaster_address == PAYMASTER_ADDRESS.lower()
    assert sent.pre_verification_gas == 0xd000
    assert sent.verification_gas_limit == 0x60000
    assert sent.call_gas_limit == 0xa000
    assert recover_owner(sent) == owner_address


@pytest.mark.asyncio
async def test_send_token(wallet_node, manager, owner_address):
    account = await manager.create_smart_account(owner_address, 0)
    token_address = "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"
    await manager.send_token(
        account, token_address, RECIPIENT, 1_000_000, OWNER_PRIVATE_KEY)

    sent = sent_user_operation(wallet_node)
    assert sent.call_data[:4].hex() == EXECUTE_SELECTOR[2:]
    assert bytes.fromhex(token_address[2:].lower()) in sent.call_data


@pytest.mark.asyncio
async def test_execute_with_wrong_owner_key(wallet_node, manager, owner_address):
    account = await manager.create_smart_account(owner_address, 0)
    request_count = len(wallet_node.requests)
    with pytest.raises(SmartAccountException) as excinfo:
        await manager.send_eth(account, RECIPIENT, 1, OTHER_PRIVATE_KEY)
    assert excinfo.value.exception_code == (
        SmartAccountExceptionCode.SignatureFailed)
    assert len(wallet_node.requests) == request_count


@pytest.mark.asyncio
async def test_bundler_is_verified_once(wallet_node, manager, owner_address):
    account = await manager.create_smart_account(owner_address, 0)
    await manager.send_eth(account, RECIPIENT, 1, OWNER_PRIVATE_KEY)
    await manager.send_eth(account, RECIPIENT, 2, OWNER_PRIVATE_KEY)
    assert len(wallet_node.calls("eth_chainId")) == 1
    assert len(wallet_node.calls("eth_supportedEntryPoints")) == 1
    assert len(wallet_node.calls("eth_sendUserOperation")) == 2


@pytest.mark.asyncio
async def test_bundler_chain_id_mismatch(wallet_node, manager, owner_address):
    wallet_node.on("eth_chainId", "0x1")
    account = await manager.create_smart_account(owner_address, 0)
    with pytest.raises(SmartAccountException) as excinfo:
        await manager.send_eth(account, RECIPIENT, 1, OWNER_PRIVATE_KEY)
    assert excinfo.value.exception_code == (
        SmartAccountExceptionCode.ChainIdMismatch)
    assert wallet_node.calls("eth_sendUserOperation") == []


@pytest.mark.asyncio
async def test_bundler_unsupported_entrypoint(
    wallet_node, manager, owner_address
):
    wallet_node.on(
        "eth_supportedEntryPoints",
        ["0x0000000071727De22E5E9d8BAf0edAc6f37da032"],
    )
    account = await manager.create_smart_account(owner_address, 0)
    with pytest.raises(SmartAccountException) as excinfo:
        await manager.send_eth(account, RECIPIENT, 1, OWNER_PRIVATE_KEY)
    assert excinfo.value.exception_code == (
        SmartAccountExceptionCode.UnsupportedEntryPoint)


@pytest.mark.asyncio
async def test_sponsor_without_paymaster(wallet_node, bundler, owner_address):
    manager = SmartAccountManager(
        NetworkConfig(chain_id=CHAIN_ID),
        EthClient(wallet_node.url, 2),
        bundler,
    )
    account = await manager.create_smart_account(owner_address, 0)
    with pytest.raises(NoAPIKeyException):
        await manager.send_eth(
            account, RECIPIENT, 1, OWNER_PRIVATE_KEY, PaymasterMode.sponsored)


@pytest.mark.asyncio
async def test_estimate_cost(wallet_node, manager, owner_address):
    account = await manager.create_smart_account(owner_address, 0)
    calls = [UserOperationCall.transfer(RECIPIENT, 1)]

    assert await manager.estimate_cost(account, calls) == (
        (50_000 + 375_000 + 40_000) * 2_000_000_000)
    assert await manager.estimate_cost(
        account, calls, PaymasterMode.sponsored
    ) == (0xd000 + 3 * 0x60000 + 0xa000) * 2_000_000_000
    assert wallet_node.calls("eth_sendUserOperation") == []


@pytest.mark.asyncio
async def test_get_status(rpc_node, manager):
    rpc_node.on(
        "pimlico_getUserOperationStatus",
        {"status": "included", "transactionHash": "0x" + "ab" * 32},
    )
    status_info = await manager.get_status("0x" + "11" * 32)
    assert status_info.status.value == "included"
    assert status_info.transaction_hash == "0x" + "ab" * 32


@pytest.mark.asyncio
async def test_resubmit_after_network_failure(
    wallet_node, manager, owner_address
):
    """Test a timed out send can be retried with the same signed operation"""
    bundler = BundlerClient(BundlerConfig(
        chain_id=CHAIN_ID,
        api_key="test-key",
        rpc_url=wallet_node.url,
        timeout_seconds=0.2,
    ))
    manager.bundler = bundler
    account = await manager.create_smart_account(owner_address, 0)
    user_operation = await manager.build_user_operation(
        account, [UserOperationCall.transfer(RECIPIENT, 1)])
    signed = manager.sign_user_operation(user_operation, OWNER_PRIVATE_KEY)
    await manager.verify_bundler()

    wallet_node.delay = 0.5
    with pytest.raises(NetworkException) as excinfo:
        await manager.send_user_operation(signed)
    assert excinfo.value.is_recoverable
    assert not excinfo.value.requires_rebuild

    wallet_node.delay = 0
    assert await manager.send_user_operation(signed) == "0x" + "11" * 32

    sent_params = wallet_node.calls("eth_sendUserOperation")
    assert len(sent_params) >= 1
    for params in sent_params:
        assert params[0]["nonce"] == hex(signed.nonce)
        assert params[0]["signature"] == "0x" + signed.signature.hex()
        assert params[0] == signed.get_user_operation_json()


@pytest.mark.asyncio
async def test_erc20_execute(wallet_node, manager, owner_address):
    account = await manager.create_smart_account(owner_address, 0)
    token = await manager.paymaster.get_accepted_token(SEPOLIA_USDC)
    wallet_node.token_balances[SEPOLIA_USDC.lower()] = 10**12

    await manager.send_eth(
        account, RECIPIENT, 1, OWNER_PRIVATE_KEY, PaymasterMode.erc20, token)

    [sponsor_params] = wallet_node.calls("pm_sponsorUserOperation")
    assert sponsor_params[2] == {"token": token.address}
    sent = sent_user_operation(wallet_node)
    assert sent.paymaster_address == PAYMASTER_ADDRESS.lower()


@pytest.mark.asyncio
async def test_erc20_execute_with_insufficient_token_balance(
    wallet_node, manager, owner_address
):
    """Test the account must hold enough tokens for the paymaster prefund"""
    account = await manager.create_smart_account(owner_address, 0)
    token = await manager.paymaster.get_accepted_token(SEPOLIA_USDC)
    wallet_node.token_balances[SEPOLIA_USDC.lower()] = 1_000_000

    with pytest.raises(PaymasterException) as excinfo:
        await manager.send_eth(
            account, RECIPIENT, 1, OWNER_PRIVATE_KEY,
            PaymasterMode.erc20, token)
    assert excinfo.value.exception_code == (
        PaymasterExceptionCode.InsufficientTokenBalance)
    assert wallet_node.calls("eth_sendUserOperation") == []


@pytest.mark.asyncio
async def test_get_token_balance(wallet_node, manager, owner_address):
    account = await manager.create_smart_account(owner_address, 0)
    wallet_node.token_balances[SEPOLIA_USDC.lower()] = 42
    assert await manager.get_token_balance(account, SEPOLIA_USDC) == 42

    wallet_node.on("eth_call", "0x")
    with pytest.raises(InvalidResponseException):
        await manager.get_token_balance(account, SEPOLIA_USDC)


@pytest.mark.asyncio
async def test_sponsor_with_paymaster_without_api_key(
    wallet_node, bundler, owner_address
):
    paymaster = PaymasterClient(PaymasterConfig(
        chain_id=CHAIN_ID, api_key=None, rpc_url=wallet_node.url))
    manager = SmartAccountManager(
        NetworkConfig(chain_id=CHAIN_ID),
        EthClient(wallet_node.url, 2),
        bundler,
        paymaster,
    )
    account = await manager.create_smart_account(owner_address, 0)
    with pytest.raises(NoAPIKeyException):
        await manager.send_eth(
            account, RECIPIENT, 1, OWNER_PRIVATE_KEY, PaymasterMode.sponsored)
    assert wallet_node.calls("pm_sponsorUserOperation") == []
