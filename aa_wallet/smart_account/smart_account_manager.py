import asyncio
import logging

from eth_account import Account

from aa_wallet.bundler.bundler_client import BundlerClient
from aa_wallet.config import (DEFAULT_CALL_GAS_LIMIT,
                              DEFAULT_PRE_VERIFICATION_GAS,
                              DEFAULT_VERIFICATION_GAS_LIMIT, NetworkConfig)
from aa_wallet.exceptions import (InvalidResponseException,
                                  NoAPIKeyException, PaymasterException,
                                  PaymasterExceptionCode, RpcClientException,
                                  SmartAccountException,
                                  SmartAccountExceptionCode)
from aa_wallet.paymaster.paymaster_client import PaymasterClient
from aa_wallet.smart_account.smart_account import (SignatureScheme,
                                                   SmartAccount,
                                                   sign_user_operation_hash)
from aa_wallet.typing import Address, PolicyId, UserOperationHash
from aa_wallet.user_operation.models import (GasEstimate, PaymasterMode,
                                             PaymasterToken,
                                             UserOperationCall,
                                             UserOperationReceipt,
                                             UserOperationStatusInfo)
from aa_wallet.user_operation.user_operation import (SignedUserOperation,
                                                     UnsignedUserOperation)
from aa_wallet.utils.decode import decode_address_word, decode_uint256
from aa_wallet.utils.encode import (encode_erc20_balance_of,
                                    encode_erc20_transfer, encode_execute,
                                    encode_execute_batch, encode_get_address,
                                    encode_get_nonce, encode_init_code)
from aa_wallet.utils.eth_client_utils import EthClient


class SmartAccountManager:
    """
    Builds, sponsors, signs and submits UserOperations for SimpleAccount
    style smart accounts.

    Every built UserOperation is an independent immutable value, concurrent
    builds for the same account read the same nonce and only one of them
    can be included.
    """

    network: NetworkConfig
    eth_client: EthClient
    bundler: BundlerClient
    paymaster: PaymasterClient | None
    signature_scheme: SignatureScheme
    _is_bundler_verified: bool

    def __init__(
        self,
        network: NetworkConfig,
        eth_client: EthClient,
        bundler: BundlerClient,
        paymaster: PaymasterClient | None = None,
        signature_scheme: SignatureScheme = SignatureScheme.personal_message,
    ):
        self.network = network
        self.eth_client = eth_client
        self.bundler = bundler
        self.paymaster = paymaster
        self.signature_scheme = signature_scheme
        self._is_bundler_verified = False

    async def compute_address(self, owner: Address, salt: int = 0) -> Address:
        try:
            result = await self.eth_client.eth_call(
                self.network.factory, encode_get_address(owner, salt))
            return decode_address_word(result)
        except (RpcClientException, ValueError) as excp:
            raise SmartAccountException(
                SmartAccountExceptionCode.AddressComputationFailed,
                f"getAddress({owner}, {salt}) failed: {excp}",
            ) from excp

    async def is_deployed(self, address: Address) -> bool:
        code = await self.eth_client.eth_get_code(address)
        return code not in ("", "0x", "0x0")

    def get_init_code(self, owner: Address, salt: int = 0) -> bytes:
        return encode_init_code(self.network.factory, owner, salt)

    async def create_smart_account(
        self, owner: Address, salt: int = 0
    ) -> SmartAccount:
        smart_account_address = await self.compute_address(owner, salt)
        deployed = await self.is_deployed(smart_account_address)
        logging.debug(
            f"Smart account of {owner} with salt {salt}: "
            f"{smart_account_address} deployed: {deployed}"
        )
        return SmartAccount(
            owner_address=owner,
            smart_account_address=smart_account_address,
            salt=salt,
            is_deployed=deployed,
            chain_id=self.network.chain_id,
        )

    async def refresh_deployment(self, account: SmartAccount) -> SmartAccount:
        deployed = await self.is_deployed(account.smart_account_address)
        return account.with_deployment(deployed)

    async def get_nonce(self, account: SmartAccount, key: int = 0) -> int:
        try:
            result = await self.eth_client.eth_call(
                self.network.entrypoint,
                encode_get_nonce(account.smart_account_address, key),
            )
            return decode_uint256(result)
        except (RpcClientException, ValueError) as excp:
            raise SmartAccountException(
                SmartAccountExceptionCode.NonceRetrievalFailed,
                f"getNonce({account.smart_account_address}, {key}) "
                f"failed: {excp}",
            ) from excp

    @staticmethod
    def build_call_data(calls: list[UserOperationCall]) -> bytes:
        if len(calls) == 0:
            raise SmartAccountException(
                SmartAccountExceptionCode.InvalidCalls,
                "at least one call is required",
            )
        if len(calls) == 1:
            call = calls[0]
            return encode_execute(call.to, call.value, call.data)
        return encode_execute_batch(
            [call.to for call in calls],
            [call.value for call in calls],
            [call.data for call in calls],
        )

    async def build_user_operation(
        self,
        account: SmartAccount,
        calls: list[UserOperationCall],
        skip_estimation: bool = False,
    ) -> UnsignedUserOperation:
        call_data = self.build_call_data(calls)
        if account.is_deployed:
            init_code = b""
        else:
            init_code = self.get_init_code(account.owner_address, account.salt)

        nonce, gas_prices = await asyncio.gather(
            self.get_nonce(account),
            self.bundler.get_gas_prices(),
        )

        user_operation = UnsignedUserOperation(
            sender_address=account.smart_account_address,
            nonce=nonce,
            init_code=init_code,
            call_data=call_data,
            call_gas_limit=DEFAULT_CALL_GAS_LIMIT,
            verification_gas_limit=DEFAULT_VERIFICATION_GAS_LIMIT,
            pre_verification_gas=DEFAULT_PRE_VERIFICATION_GAS,
            max_fee_per_gas=gas_prices.standard.max_fee_per_gas,
            max_priority_fee_per_gas=(
                gas_prices.standard.max_priority_fee_per_gas),
            paymaster_and_data=b"",
        )

        # a paymaster re-simulates and supplies its own gas values
        if skip_estimation:
            return user_operation

        gas_estimate = await self.bundler.estimate_user_operation_gas(
            user_operation)
        return apply_gas_estimate(user_operation, gas_estimate)

    def sign_user_operation(
        self, user_operation: UnsignedUserOperation, private_key: str | bytes
    ) -> SignedUserOperation:
        user_operation_hash = user_operation.get_user_operation_hash(
            self.network.chain_id, self.network.entrypoint)
        try:
            signature = sign_user_operation_hash(
                user_operation_hash, private_key, self.signature_scheme)
        except (ValueError, TypeError) as excp:
            raise SmartAccountException(
                SmartAccountExceptionCode.SignatureFailed,
                f"could not sign UserOperation: {excp}",
            ) from excp
        if len(signature) != 65:
            raise SmartAccountException(
                SmartAccountExceptionCode.SignatureFailed,
                f"expected a 65 bytes signature, got {len(signature)} bytes",
            )
        return user_operation.with_signature(signature)

    async def verify_bundler(self) -> None:
        if self._is_bundler_verified:
            return
        supported_entry_points, bundler_chain_id = await asyncio.gather(
            self.bundler.get_supported_entry_points(),
            self.bundler.get_chain_id(),
        )
        if self.network.entrypoint.lower() not in [
            entrypoint.lower() for entrypoint in supported_entry_points
        ]:
            raise SmartAccountException(
                SmartAccountExceptionCode.UnsupportedEntryPoint,
                f"bundler doesn't support entrypoint {self.network.entrypoint}",
            )
        if bundler_chain_id != self.network.chain_id:
            raise SmartAccountException(
                SmartAccountExceptionCode.ChainIdMismatch,
                f"bundler chain id {bundler_chain_id} doesn't match "
                f"{self.network.chain_id}",
            )
        self._is_bundler_verified = True

    async def send_user_operation(
        self, user_operation: SignedUserOperation
    ) -> UserOperationHash:
        await self.verify_bundler()
        return await self.bundler.send_user_operation(user_operation)

    async def get_token_balance(
        self, account: SmartAccount, token_address: Address
    ) -> int:
        result = await self.eth_client.eth_call(
            token_address,
            encode_erc20_balance_of(account.smart_account_address),
        )
        try:
            return decode_uint256(result)
        except ValueError as excp:
            raise InvalidResponseException(
                self.eth_client.rpc_client.service,
                f"balanceOf({token_address}) result: {excp}",
            ) from excp

    async def verify_token_balance(
        self,
        account: SmartAccount,
        token: PaymasterToken,
        user_operation: UnsignedUserOperation,
    ) -> None:
        required_amount = token.token_amount_for_gas(
            user_operation.get_required_prefund())
        balance = await self.get_token_balance(account, token.address)
        if balance < required_amount:
            raise PaymasterException(
                PaymasterExceptionCode.InsufficientTokenBalance,
                f"{account.smart_account_address} holds "
                f"{token.format_amount(balance)}, gas needs up to "
                f"{token.format_amount(required_amount)}",
            )

    async def sponsor(
        self,
        user_operation: UnsignedUserOperation,
        paymaster_mode: PaymasterMode = PaymasterMode.none,
        token: PaymasterToken | None = None,
        sponsorship_policy_id: PolicyId | None = None,
    ) -> UnsignedUserOperation:
        if paymaster_mode == PaymasterMode.none:
            return user_operation
        if self.paymaster is None or not self.paymaster.is_available:
            raise NoAPIKeyException(
                "paymaster", "no paymaster client configured")
        return await self.paymaster.build_sponsored_user_operation(
            user_operation, paymaster_mode, token, sponsorship_policy_id)

    async def execute(
        self,
        account: SmartAccount,
        calls: list[UserOperationCall],
        private_key: str | bytes,
        paymaster_mode: PaymasterMode = PaymasterMode.none,
        token: PaymasterToken | None = None,
        sponsorship_policy_id: PolicyId | None = None,
    ) -> UserOperationHash:
        self._verify_owner(account, private_key)
        user_operation = await self.build_user_operation(
            account,
            calls,
            skip_estimation=paymaster_mode != PaymasterMode.none,
        )
        user_operation = await self.sponsor(
            user_operation, paymaster_mode, token, sponsorship_policy_id)
        if paymaster_mode == PaymasterMode.erc20 and token is not None:
            await self.verify_token_balance(account, token, user_operation)
        signed_user_operation = self.sign_user_operation(
            user_operation, private_key)
        return await self.send_user_operation(signed_user_operation)

    async def send_eth(
        self,
        account: SmartAccount,
        to: Address,
        amount: int,
        private_key: str | bytes,
        paymaster_mode: PaymasterMode = PaymasterMode.none,
        token: PaymasterToken | None = None,
        sponsorship_policy_id: PolicyId | None = None,
    ) -> UserOperationHash:
        return await self.execute(
            account,
            [UserOperationCall.transfer(to, amount)],
            private_key,
            paymaster_mode,
            token,
            sponsorship_policy_id,
        )

    async def send_token(
        self,
        account: SmartAccount,
        token_address: Address,
        to: Address,
        amount: int,
        private_key: str | bytes,
        paymaster_mode: PaymasterMode = PaymasterMode.none,
        token: PaymasterToken | None = None,
        sponsorship_policy_id: PolicyId | None = None,
    ) -> UserOperationHash:
        call = UserOperationCall.contract_call(
            token_address, encode_erc20_transfer(to, amount))
        return await self.execute(
            account,
            [call],
            private_key,
            paymaster_mode,
            token,
            sponsorship_policy_id,
        )

    async def estimate_cost(
        self,
        account: SmartAccount,
        calls: list[UserOperationCall],
        paymaster_mode: PaymasterMode = PaymasterMode.none,
        token: PaymasterToken | None = None,
    ) -> int:
        user_operation = await self.build_user_operation(
            account,
            calls,
            skip_estimation=paymaster_mode != PaymasterMode.none,
        )
        user_operation = await self.sponsor(
            user_operation, paymaster_mode, token)
        return user_operation.get_required_prefund()

    async def wait_for_receipt(
        self,
        user_operation_hash: str,
        timeout: float = 120,
        poll_interval: float = 2,
    ) -> UserOperationReceipt:
        return await self.bundler.wait_for_receipt(
            user_operation_hash, timeout, poll_interval)

    async def get_status(
        self, user_operation_hash: str
    ) -> UserOperationStatusInfo:
        return await self.bundler.get_user_operation_status(
            user_operation_hash)

    @staticmethod
    def _verify_owner(account: SmartAccount, private_key: str | bytes) -> None:
        try:
            signer = Account.from_key(private_key).address
        except (ValueError, TypeError) as excp:
            raise SmartAccountException(
                SmartAccountExceptionCode.SignatureFailed,
                f"invalid owner private key: {excp}",
            ) from excp
        if signer.lower() != account.owner_address.lower():
            raise SmartAccountException(
                SmartAccountExceptionCode.SignatureFailed,
                f"private key of {signer} can't sign for owner "
                f"{account.owner_address}",
            )


def apply_gas_estimate(
    user_operation: UnsignedUserOperation, gas_estimate: GasEstimate
) -> UnsignedUserOperation:
    changes = {
        "call_gas_limit": gas_estimate.call_gas_limit,
        "verification_gas_limit": gas_estimate.verification_gas_limit,
        "pre_verification_gas": gas_estimate.pre_verification_gas,
    }
    # fee fields are kept unless the bundler returns non zero values
    if gas_estimate.max_fee_per_gas:
        changes["max_fee_per_gas"] = gas_estimate.max_fee_per_gas
    if gas_estimate.max_priority_fee_per_gas:
        changes["max_priority_fee_per_gas"] = (
            gas_estimate.max_priority_fee_per_gas)
    return user_operation.with_changes(**changes)
