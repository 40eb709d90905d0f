import asyncio
import json
import logging
import sys
from signal import SIGINT, SIGTERM, Signals

import uvloop
from aiohttp import ClientSession

from aa_wallet.bundler.bundler_client import BundlerClient
from aa_wallet.cli_manager import InitData, parse_args
from aa_wallet.config import BundlerConfig, NetworkConfig, PaymasterConfig
from aa_wallet.exceptions import (PaymasterException, RpcClientException,
                                  SignalHaltError, SmartAccountException)
from aa_wallet.metrics.metrics import run_metrics_server
from aa_wallet.paymaster.paymaster_client import PaymasterClient
from aa_wallet.smart_account.smart_account_manager import SmartAccountManager
from aa_wallet.user_operation.models import (PaymasterMode, UserOperationCall,
                                             UserOperationReceipt)
from aa_wallet.utils.eth_client_utils import EthClient


def build_smart_account_manager(
    init_data: InitData, session: ClientSession | None = None
) -> SmartAccountManager:
    network = NetworkConfig(
        chain_id=init_data.chain_id,
        entrypoint=init_data.entrypoint,
        factory=init_data.factory,
    )
    bundler = BundlerClient(
        BundlerConfig(
            chain_id=init_data.chain_id,
            api_key=init_data.api_key,
            rpc_url=init_data.bundler_url,
            entrypoint=init_data.entrypoint,
            timeout_seconds=init_data.request_timeout,
        ),
        session,
    )
    paymaster = PaymasterClient(
        PaymasterConfig(
            chain_id=init_data.chain_id,
            api_key=init_data.api_key,
            rpc_url=init_data.paymaster_url,
            entrypoint=init_data.entrypoint,
            timeout_seconds=init_data.request_timeout,
        ),
        session,
    )
    eth_client = EthClient(
        init_data.ethereum_node_url, init_data.request_timeout, session)
    return SmartAccountManager(
        network,
        eth_client,
        bundler,
        paymaster,
        init_data.signature_scheme,
    )


def receipt_summary(receipt: UserOperationReceipt) -> dict:
    return {
        "userOpHash": receipt.user_op_hash,
        "status": receipt.status.value,
        "success": receipt.success,
        "reason": receipt.reason,
        "transactionHash": receipt.transaction_hash,
        "blockNumber": receipt.block_number,
        "actualGasCost": receipt.actual_gas_cost,
        "actualGasUsed": receipt.actual_gas_used,
        "events": [
            log.event_name for log in receipt.logs
            if log.event_name is not None
        ],
    }


async def execute_command(
    manager: SmartAccountManager, init_data: InitData
) -> dict:
    if init_data.command == "status":
        status_info = await manager.get_status(init_data.user_operation_hash)
        return {
            "status": status_info.status.value,
            "transactionHash": status_info.transaction_hash,
        }

    if init_data.command == "wait":
        receipt = await manager.wait_for_receipt(
            init_data.user_operation_hash,
            init_data.wait_timeout,
            init_data.poll_interval,
        )
        return receipt_summary(receipt)

    if init_data.command == "entrypoints":
        entrypoints, chain_id = await asyncio.gather(
            manager.bundler.get_supported_entry_points(),
            manager.bundler.get_chain_id(),
        )
        return {"entrypoints": entrypoints, "chainId": chain_id}

    account = await manager.create_smart_account(
        init_data.owner_address, init_data.salt)
    if init_data.command == "address":
        return {
            "owner": account.owner_address,
            "smartAccount": account.smart_account_address,
            "salt": account.salt,
            "isDeployed": account.is_deployed,
            "chainId": account.chain_id,
        }

    calls = [
        UserOperationCall.contract_call_with_value(
            init_data.to, init_data.value, init_data.data)
    ]
    token = None
    if init_data.paymaster_mode == PaymasterMode.erc20:
        token = await manager.paymaster.get_accepted_token(init_data.token)

    if init_data.command == "estimate":
        required_prefund = await manager.estimate_cost(
            account, calls, init_data.paymaster_mode, token)
        result = {
            "smartAccount": account.smart_account_address,
            "requiredPrefund": required_prefund,
        }
        if token is not None:
            result["tokenAmount"] = token.format_amount(
                token.token_amount_for_gas(required_prefund))
        return result

    if init_data.command == "send":
        user_operation_hash = await manager.execute(
            account,
            calls,
            init_data.owner_pk,
            init_data.paymaster_mode,
            token,
            init_data.sponsorship_policy_id,
        )
        result = {
            "smartAccount": account.smart_account_address,
            "userOpHash": user_operation_hash,
        }
        if init_data.wait:
            receipt = await manager.wait_for_receipt(
                user_operation_hash,
                init_data.wait_timeout,
                init_data.poll_interval,
            )
            result["receipt"] = receipt_summary(receipt)
        return result

    raise ValueError(f"Unknown command {init_data.command}")


async def main(cmd_args=sys.argv[1:], loop=None) -> None:
    init_data = parse_args(cmd_args)
    if loop is None:
        loop = asyncio.get_running_loop()

    main_task = asyncio.current_task()
    received_signals: list[Signals] = []

    def halt(signal_enum: Signals) -> None:
        logging.warning(f"Received {signal_enum.name}, stopping.")
        received_signals.append(signal_enum)
        main_task.cancel()

    for signal_enum in [SIGINT, SIGTERM]:
        loop.add_signal_handler(signal_enum, halt, signal_enum)

    if init_data.is_metrics:
        run_metrics_server(
            host=init_data.metrics_host,
            port=init_data.metrics_port,
        )

    try:
        async with ClientSession() as session:
            manager = build_smart_account_manager(init_data, session)
            result = await execute_command(manager, init_data)
    except asyncio.CancelledError:
        if len(received_signals) > 0:
            raise SignalHaltError(received_signals[0])
        raise
    except (
        RpcClientException, SmartAccountException, PaymasterException
    ) as excp:
        logging.critical(str(excp))
        if isinstance(excp, RpcClientException) and excp.is_recoverable:
            if excp.requires_rebuild:
                logging.info("Rebuild and re-sign the UserOperation to retry")
            else:
                logging.info("The same UserOperation can be resubmitted")
        sys.exit(1)

    print(json.dumps(result, indent=2))


def run() -> None:
    uvloop.run(main())


if __name__ == "__main__":
    run()
