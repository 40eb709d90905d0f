from dataclasses import dataclass

from yarl import URL

from aa_wallet.typing import Address

ENTRYPOINT_V06 = Address("0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789")
SIMPLE_ACCOUNT_FACTORY_V06 = Address(
    "0x9406Cc6185a346906296840746125a0E44976454")

PIMLICO_RPC_URL = "https://api.pimlico.io/v2/{chain_id}/rpc"

DEFAULT_CALL_GAS_LIMIT = 50_000
DEFAULT_VERIFICATION_GAS_LIMIT = 100_000
DEFAULT_PRE_VERIFICATION_GAS = 50_000

# chains served by the pimlico bundler and paymaster
SUPPORTED_CHAINS = {
    1,  # Ethereum Mainnet
    11155111,  # Sepolia
    8453,  # Base
    84531,  # Base Goerli
    137,  # Polygon
    80001,  # Mumbai
    42161,  # Arbitrum One
    421613,  # Arbitrum Goerli
    10,  # Optimism
    420,  # Optimism Goerli
}


def is_chain_supported(chain_id: int) -> bool:
    return chain_id in SUPPORTED_CHAINS


@dataclass(frozen=True)
class NetworkConfig:
    chain_id: int
    entrypoint: Address = ENTRYPOINT_V06
    factory: Address = SIMPLE_ACCOUNT_FACTORY_V06


@dataclass(frozen=True)
class BundlerConfig:
    chain_id: int
    api_key: str | None
    rpc_url: str = PIMLICO_RPC_URL
    entrypoint: Address = ENTRYPOINT_V06
    timeout_seconds: float = 30.0

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key)

    @property
    def url(self) -> str:
        base_url = URL(self.rpc_url.format(chain_id=self.chain_id))
        return str(base_url.update_query(apikey=self.api_key or ""))


@dataclass(frozen=True)
class PaymasterConfig(BundlerConfig):
    rpc_method: str = "pm_sponsorUserOperation"
