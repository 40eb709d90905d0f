import logging
import os
import re
from argparse import ArgumentParser, ArgumentTypeError, Namespace
from dataclasses import dataclass
from importlib.metadata import version

from aa_wallet.config import (ENTRYPOINT_V06, PIMLICO_RPC_URL,
                              SIMPLE_ACCOUNT_FACTORY_V06)
from aa_wallet.smart_account.smart_account import SignatureScheme
from aa_wallet.typing import Address, PolicyId
from aa_wallet.user_operation.models import PaymasterMode
from aa_wallet.user_operation.user_operation import is_user_operation_hash
from aa_wallet.utils.import_key import (import_owner_account,
                                        public_address_from_private_key)

__version__ = version("aa_wallet")

COMMANDS_REQUIRING_OWNER = ("address", "estimate", "send")


@dataclass()
class InitData:
    command: str
    chain_id: int
    ethereum_node_url: str
    bundler_url: str
    paymaster_url: str
    api_key: str | None
    entrypoint: Address
    factory: Address
    owner_pk: str | None
    owner_address: Address | None
    signature_scheme: SignatureScheme
    request_timeout: float
    is_metrics: bool
    metrics_host: str
    metrics_port: int
    salt: int = 0
    to: Address | None = None
    value: int = 0
    data: bytes = b""
    paymaster_mode: PaymasterMode = PaymasterMode.none
    token: Address | None = None
    sponsorship_policy_id: PolicyId | None = None
    user_operation_hash: str | None = None
    wait: bool = False
    wait_timeout: float = 120
    poll_interval: float = 2


def address(ep: str):
    address_pattern = "^0x[0-9a-fA-F]{40}$"
    if not isinstance(ep, str) or re.match(address_pattern, ep) is None:
        raise ArgumentTypeError(f"Wrong address format : {ep}")
    return ep


def unsigned_int(value):
    ivalue = int(value, 0) if isinstance(value, str) else int(value)
    if ivalue < 0:
        raise ArgumentTypeError(
                "%s is an invalid unsigned int value" % value)
    return ivalue


def positive_float(value):
    fvalue = float(value)
    if fvalue <= 0:
        raise ArgumentTypeError(
                "%s is an invalid positive value" % value)
    return fvalue


def hex_bytes(value: str) -> bytes:
    if not isinstance(value, str) or value[:2] != "0x":
        raise ArgumentTypeError(f"Wrong hex bytes format : {value}")
    try:
        return bytes.fromhex(value[2:])
    except ValueError:
        raise ArgumentTypeError(f"Wrong hex bytes format : {value}")


def user_operation_hash(value: str) -> str:
    if not is_user_operation_hash(value):
        raise ArgumentTypeError(f"Wrong UserOperation hash format : {value}")
    return value


def _get_env_or_default(env_var, default, value_type):
    """
    Helper function to get the value from an environment variable or return the default value.
    """
    value = os.getenv(env_var, None)
    if value is not None:
        return value_type(value)
    return default


def _add_call_arguments(parser: ArgumentParser) -> None:
    parser.add_argument(
        "--to",
        type=address,
        help="call target address",
        required=True,
    )

    parser.add_argument(
        "--value",
        type=unsigned_int,
        help="wei value sent with the call - defaults to 0",
        nargs="?",
        const=0,
        default=0,
    )

    parser.add_argument(
        "--data",
        type=hex_bytes,
        help="0x prefixed call data - defaults to empty",
        nargs="?",
        const=b"",
        default=b"",
    )

    parser.add_argument(
        "--salt",
        type=unsigned_int,
        help="smart account salt - defaults to 0",
        nargs="?",
        const=0,
        default=_get_env_or_default("AA_WALLET_SALT", 0, unsigned_int),
    )

    parser.add_argument(
        "--paymaster_mode",
        type=PaymasterMode,
        choices=list(PaymasterMode),
        help="who pays for gas: none (the smart account), sponsored or erc20",
        nargs="?",
        const=PaymasterMode.none,
        default=_get_env_or_default(
            "AA_WALLET_PAYMASTER_MODE", PaymasterMode.none, PaymasterMode),
    )

    parser.add_argument(
        "--token",
        type=address,
        help="ERC-20 token paying for gas in erc20 paymaster mode",
        nargs="?",
        default=_get_env_or_default("AA_WALLET_PAYMASTER_TOKEN", None, address),
    )


def _add_wait_arguments(parser: ArgumentParser) -> None:
    parser.add_argument(
        "--wait_timeout",
        type=positive_float,
        help="seconds to wait for the receipt - defaults to 120",
        nargs="?",
        const=120,
        default=_get_env_or_default(
            "AA_WALLET_WAIT_TIMEOUT", 120, positive_float),
    )

    parser.add_argument(
        "--poll_interval",
        type=positive_float,
        help="seconds between receipt polls - defaults to 2",
        nargs="?",
        const=2,
        default=_get_env_or_default(
            "AA_WALLET_POLL_INTERVAL", 2, positive_float),
    )


def initialize_argument_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="aa-wallet",
        description="ERC-4337 smart account wallet",
    )

    group = parser.add_mutually_exclusive_group(required=False)

    group.add_argument(
        "--owner_secret",
        type=str,
        help="Smart account owner private key",
        nargs="?",
        default=_get_env_or_default("AA_WALLET_OWNER_SECRET", None, str),
    )

    group.add_argument(
        "--keystore_file_path",
        type=str,
        help="Owner Keystore file path",
        nargs="?",
        default=_get_env_or_default("AA_WALLET_KEYSTORE_FILE_PATH", None, str),
    )

    parser.add_argument(
        "--keystore_file_password",
        type=str,
        help="Owner Keystore file password - defaults to no password",
        nargs="?",
        const="",
        default=_get_env_or_default(
            "AA_WALLET_KEYSTORE_FILE_PASSWORD", "", str),
    )

    parser.add_argument(
        "--chain_id",
        type=unsigned_int,
        help="chain id - defaults to 11155111 (sepolia)",
        nargs="?",
        default=_get_env_or_default(
            "AA_WALLET_CHAIN_ID", 11155111, unsigned_int),
    )

    parser.add_argument(
        "--ethereum_node_url",
        type=str,
        help="Eth Client JSON-RPC Url - defaults to http://0.0.0.0:8545",
        nargs="?",
        const="http://0.0.0.0:8545",
        default=_get_env_or_default(
            "AA_WALLET_ETHEREUM_NODE_URL", "http://0.0.0.0:8545", str),
    )

    parser.add_argument(
        "--bundler_url",
        type=str,
        help=(
            "Bundler JSON-RPC Url, {chain_id} is replaced by the chain id - "
            "defaults to the pimlico endpoint"
        ),
        nargs="?",
        const=PIMLICO_RPC_URL,
        default=_get_env_or_default(
            "AA_WALLET_BUNDLER_URL", PIMLICO_RPC_URL, str),
    )

    parser.add_argument(
        "--paymaster_url",
        type=str,
        help=(
            "Paymaster JSON-RPC Url, {chain_id} is replaced by the chain id - "
            "defaults to the pimlico endpoint"
        ),
        nargs="?",
        const=PIMLICO_RPC_URL,
        default=_get_env_or_default(
            "AA_WALLET_PAYMASTER_URL", PIMLICO_RPC_URL, str),
    )

    parser.add_argument(
        "--api_key",
        type=str,
        help="Bundler and paymaster api key",
        nargs="?",
        default=_get_env_or_default("AA_WALLET_API_KEY", None, str),
    )

    parser.add_argument(
        "--entrypoint",
        type=address,
        help="EntryPoint address - defaults to EntryPoint v0.6",
        nargs="?",
        const=ENTRYPOINT_V06,
        default=_get_env_or_default(
            "AA_WALLET_ENTRYPOINT", ENTRYPOINT_V06, address),
    )

    parser.add_argument(
        "--factory",
        type=address,
        help="Smart account factory address - defaults to SimpleAccountFactory v0.6",
        nargs="?",
        const=SIMPLE_ACCOUNT_FACTORY_V06,
        default=_get_env_or_default(
            "AA_WALLET_FACTORY", SIMPLE_ACCOUNT_FACTORY_V06, address),
    )

    parser.add_argument(
        "--signature_scheme",
        type=SignatureScheme,
        choices=list(SignatureScheme),
        help=(
            "how the account contract verifies the owner signature - "
            "defaults to personal_message"
        ),
        nargs="?",
        const=SignatureScheme.personal_message,
        default=_get_env_or_default(
            "AA_WALLET_SIGNATURE_SCHEME",
            SignatureScheme.personal_message,
            SignatureScheme,
        ),
    )

    parser.add_argument(
        "--request_timeout",
        type=positive_float,
        help="json-rpc request timeout in seconds - defaults to 30",
        nargs="?",
        const=30.0,
        default=_get_env_or_default(
            "AA_WALLET_REQUEST_TIMEOUT", 30.0, positive_float),
    )

    parser.add_argument(
        "--verbose",
        help="show debug log",
        action="store_const",
        const=True,
        default=_get_env_or_default(
            "AA_WALLET_VERBOSE", False, lambda v: v.lower() == "true"),
    )

    parser.add_argument(
        "--metrics",
        help="enable metrics collection",
        action="store_const",
        const=True,
        default=_get_env_or_default(
            "AA_WALLET_METRICS", False, lambda v: v.lower() == "true"),
    )

    parser.add_argument(
        "--metrics_host",
        type=str,
        help="metrics server host - defaults to localhost",
        nargs="?",
        const="localhost",
        default=_get_env_or_default(
            "AA_WALLET_METRICS_HOST", "localhost", str),
    )

    parser.add_argument(
        "--metrics_port",
        type=unsigned_int,
        help="metrics server port - defaults to 8000",
        nargs="?",
        const=8000,
        default=_get_env_or_default(
            "AA_WALLET_METRICS_PORT", 8000, unsigned_int),
    )

    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s " + "version " + __version__,
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    address_parser = subparsers.add_parser(
        "address", help="compute the counterfactual smart account address")
    address_parser.add_argument(
        "--salt",
        type=unsigned_int,
        help="smart account salt - defaults to 0",
        nargs="?",
        const=0,
        default=_get_env_or_default("AA_WALLET_SALT", 0, unsigned_int),
    )

    estimate_parser = subparsers.add_parser(
        "estimate", help="estimate the worst case cost of a call")
    _add_call_arguments(estimate_parser)

    send_parser = subparsers.add_parser(
        "send", help="build, sign and submit a call")
    _add_call_arguments(send_parser)
    send_parser.add_argument(
        "--sponsorship_policy_id",
        type=str,
        help="paymaster sponsorship policy id",
        nargs="?",
        default=_get_env_or_default(
            "AA_WALLET_SPONSORSHIP_POLICY_ID", None, str),
    )
    send_parser.add_argument(
        "--wait",
        help="wait for the UserOperation receipt",
        action="store_const",
        const=True,
        default=False,
    )
    _add_wait_arguments(send_parser)

    status_parser = subparsers.add_parser(
        "status", help="get the status of a UserOperation")
    status_parser.add_argument(
        "user_operation_hash", type=user_operation_hash)

    wait_parser = subparsers.add_parser(
        "wait", help="wait for the receipt of a UserOperation")
    wait_parser.add_argument("user_operation_hash", type=user_operation_hash)
    _add_wait_arguments(wait_parser)

    subparsers.add_parser(
        "entrypoints", help="list the bundler supported entrypoints")

    return parser


def parse_args(cmd_args: list[str]) -> InitData:
    argument_parser: ArgumentParser = initialize_argument_parser()
    args = argument_parser.parse_args(cmd_args)
    if args.command in COMMANDS_REQUIRING_OWNER:
        if not args.owner_secret and not args.keystore_file_path:
            argument_parser.error(
                "You must specify either --owner_secret or --keystore_file_path, "
                "or set AA_WALLET_OWNER_SECRET or AA_WALLET_KEYSTORE_FILE_PATH "
                "environment variables."
            )
    if args.owner_secret and args.keystore_file_path:
        argument_parser.error(
            "You can only specify either --owner_secret or "
            "--keystore_file_path but not both at the same time"
        )
    if (
        getattr(args, "paymaster_mode", None) == PaymasterMode.erc20 and
        args.token is None
    ):
        argument_parser.error(
            "--token is required with --paymaster_mode erc20")

    try:
        owner_address, owner_pk = init_owner_address_and_secret(args)
    except (ValueError, OSError) as excp:
        argument_parser.error(f"Invalid owner key: {excp}")
    return get_init_data(args, owner_address, owner_pk)


def init_logging(args: Namespace):
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s.%(msecs)03d %(levelname)s %(message)s",
        datefmt="%b %d %H:%M:%S",
    )


def init_owner_address_and_secret(
    args: Namespace,
) -> tuple[Address | None, str | None]:
    if args.keystore_file_path is not None:
        return import_owner_account(
            args.keystore_file_password, args.keystore_file_path
        )
    if args.owner_secret is not None:
        owner_pk = args.owner_secret
        if owner_pk[:2] != "0x":
            owner_pk = "0x" + owner_pk
        return public_address_from_private_key(owner_pk), owner_pk
    return None, None


def get_init_data(
    args: Namespace, owner_address: Address | None, owner_pk: str | None
) -> InitData:
    init_logging(args)

    init_data = InitData(
        command=args.command,
        chain_id=args.chain_id,
        ethereum_node_url=args.ethereum_node_url,
        bundler_url=args.bundler_url,
        paymaster_url=args.paymaster_url,
        api_key=args.api_key,
        entrypoint=Address(args.entrypoint),
        factory=Address(args.factory),
        owner_pk=owner_pk,
        owner_address=owner_address,
        signature_scheme=args.signature_scheme,
        request_timeout=args.request_timeout,
        is_metrics=bool(args.metrics),
        metrics_host=args.metrics_host,
        metrics_port=args.metrics_port,
    )
    if args.command in ("address", "estimate", "send"):
        init_data.salt = args.salt
    if args.command in ("estimate", "send"):
        init_data.to = Address(args.to)
        init_data.value = args.value
        init_data.data = args.data
        init_data.paymaster_mode = args.paymaster_mode
        init_data.token = args.token
    if args.command == "send":
        init_data.sponsorship_policy_id = args.sponsorship_policy_id
        init_data.wait = bool(args.wait)
    if args.command in ("send", "wait"):
        init_data.wait_timeout = args.wait_timeout
        init_data.poll_interval = args.poll_interval
    if args.command in ("status", "wait"):
        init_data.user_operation_hash = args.user_operation_hash

    logging.info(f"aa-wallet {__version__} on chain {init_data.chain_id}")
    return init_data
