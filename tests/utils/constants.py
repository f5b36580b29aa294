from web3 import Web3

# Anvil's first default key
OWNER_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"

SMART_ACCOUNT_ADDRESS = Web3.to_checksum_address("0x" + "ab" * 20)
TARGET_ADDRESS = Web3.to_checksum_address("0x" + "cd" * 20)
USER_OPERATION_HASH = "0x" + "11" * 32
TRANSACTION_HASH = "0x" + "22" * 32
