import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# RPC configuration
SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com")
RPC_PROVIDER = os.getenv("RPC_PROVIDER")  # "public" / "premium", detected from the URL when unset

# Storage configuration
DATA_DIR = os.getenv("BUNDLER_DATA_DIR", "data")
WALLETS_DIR = os.path.join(DATA_DIR, "wallets")
LAST_MINT_FILE = os.path.join(DATA_DIR, "latestMint.txt")
KEYSTORE_STRICT_KEYS = os.getenv("KEYSTORE_STRICT_KEYS", "false").lower() in ("1", "true", "yes")

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")

# Batch execution
BATCH_CONCURRENCY = int(os.getenv("BATCH_CONCURRENCY", "2"))
OPERATION_TIMEOUT_SEC = float(os.getenv("OPERATION_TIMEOUT_SEC", "0"))  # 0 disables the timeout

# Fee configuration (lamports / micro-lamports)
LAMPORTS_PER_SOL = 1_000_000_000
BASE_SIGNATURE_FEE_LAMPORTS = 5000
PRIORITY_FEE_MICROLAMPORTS = int(os.getenv("PRIORITY_FEE_MICROLAMPORTS", "100000"))
COMPUTE_UNIT_LIMIT = int(os.getenv("COMPUTE_UNIT_LIMIT", "200000"))
FUNDING_FEE_BUFFER = 1.2
COLLECT_FEE_RESERVE_LAMPORTS = int(os.getenv("COLLECT_FEE_RESERVE_LAMPORTS", "100000"))  # 0.0001 SOL

# pump.fun trading
DEFAULT_SLIPPAGE_BPS = int(os.getenv("DEFAULT_SLIPPAGE_BPS", "2500"))
TRADE_FEE_HEADROOM_SOL = float(os.getenv("TRADE_FEE_HEADROOM_SOL", "0.005"))  # kept on top of a buy for fees and rent
TRADE_PRIORITY_FEE_SOL = float(os.getenv("TRADE_PRIORITY_FEE_SOL", "0.00005"))
MAX_BUYERS_IN_CREATE = 4
PUMPPORTAL_TRADE_URL = os.getenv("PUMPPORTAL_TRADE_URL", "https://pumpportal.fun/api/trade-local")
PUMPPORTAL_TIMEOUT = int(os.getenv("PUMPPORTAL_TIMEOUT", "30"))

# Metadata uploads (Pinata IPFS)
PINATA_JWT = os.getenv("PINATA_JWT")
PINATA_UPLOAD_URL = os.getenv("PINATA_UPLOAD_URL", "https://uploads.pinata.cloud/v3/files")
IPFS_GATEWAY_URL = os.getenv("IPFS_GATEWAY_URL", "https://ipfs.io/ipfs")

# Wallet naming
MOTHER_WALLET_NAME = "MotherAirdropWallet"
DEV_WALLET_NAME = "DevWallet"
FIRST_BUNDLED_PREFIX = "First Bundled Wallet"
CHILD_WALLET_PREFIX = "ChildWallet"
DEFAULT_WALLET_SET = os.getenv("DEFAULT_WALLET_SET", "default")

__all__ = [
    "SOLANA_RPC_URL",
    "RPC_PROVIDER",
    "DATA_DIR",
    "WALLETS_DIR",
    "LAST_MINT_FILE",
    "KEYSTORE_STRICT_KEYS",
    "LOG_LEVEL",
    "LOG_DIR",
    "BATCH_CONCURRENCY",
    "OPERATION_TIMEOUT_SEC",
    "LAMPORTS_PER_SOL",
    "BASE_SIGNATURE_FEE_LAMPORTS",
    "PRIORITY_FEE_MICROLAMPORTS",
    "COMPUTE_UNIT_LIMIT",
    "FUNDING_FEE_BUFFER",
    "COLLECT_FEE_RESERVE_LAMPORTS",
    "DEFAULT_SLIPPAGE_BPS",
    "TRADE_FEE_HEADROOM_SOL",
    "TRADE_PRIORITY_FEE_SOL",
    "MAX_BUYERS_IN_CREATE",
    "PUMPPORTAL_TRADE_URL",
    "PUMPPORTAL_TIMEOUT",
    "PINATA_JWT",
    "PINATA_UPLOAD_URL",
    "IPFS_GATEWAY_URL",
    "MOTHER_WALLET_NAME",
    "DEV_WALLET_NAME",
    "FIRST_BUNDLED_PREFIX",
    "CHILD_WALLET_PREFIX",
    "DEFAULT_WALLET_SET",
]
