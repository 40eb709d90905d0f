import glob

from eth_account import Account

from aa_wallet.typing import Address

DEFAULT_KEYSTORE_PATH = "keystore/*"


def import_owner_account(
    keystore_file_password: str, keystore_file_path: str = DEFAULT_KEYSTORE_PATH
) -> tuple[Address, str]:
    """
    Decrypt the smart account owner key from a keystore file. With the
    default path the first file of the local keystore directory is used.
    """
    keystore_files = glob.glob(keystore_file_path)
    if len(keystore_files) == 0:
        raise FileNotFoundError(f"No keystore file at {keystore_file_path}")

    with open(sorted(keystore_files)[0]) as keystore_file:
        owner_key = Account.decrypt(
            keystore_file.read(), keystore_file_password)
    owner = Account.from_key(owner_key)
    return Address(owner.address), "0x" + bytes(owner_key).hex()


def public_address_from_private_key(private_key: str) -> Address:
    return Address(Account.from_key(private_key).address)
