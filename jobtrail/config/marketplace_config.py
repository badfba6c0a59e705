"""
Marketplace Configuration Module

Constants for the job marketplace wire format, job lifecycle and
content-addressed storage access. Deployment-specific values are read
from the environment (load a .env file before importing in entry points).
"""

import os

# Sentinel values
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
ZERO_HASH = "0x" + "00" * 32

# Public key directory returns this when an address never registered a key
EMPTY_PUBLIC_KEY = "0x"

# Shown in place of content that could not be fetched or decrypted
ENCRYPTED_PLACEHOLDER = "<encrypted message>"

# Wire format widths (bytes)
ADDRESS_SIZE = 20
HASH_SIZE = 32
UINT256_SIZE = 32
LENGTH_PREFIX_SIZE = 4
ARBITRATED_PAYLOAD_SIZE = 152
MESSAGE_PAYLOAD_SIZE = 52

# Session key encryption (AES-256-GCM, nonce prepended to ciphertext)
SESSION_KEY_SIZE = 32
AES_NONCE_SIZE = 12

# Closing a job within this window of creation leaves collateral owed to the creator
CLOSE_COLLATERAL_WINDOW = 24 * 60 * 60  # seconds

# Content-addressed storage (IPFS gateway)
IPFS_GATEWAY_URL = os.getenv("IPFS_GATEWAY_URL", "https://ipfs.io/ipfs")
CONTENT_REQUEST_TIMEOUT = int(os.getenv("CONTENT_REQUEST_TIMEOUT", "30"))  # seconds
CONTENT_MAX_RETRIES = int(os.getenv("CONTENT_MAX_RETRIES", "3"))
CONTENT_RETRY_DELAY = float(os.getenv("CONTENT_RETRY_DELAY", "0.5"))  # seconds
CONTENT_CACHE_SIZE = 1024
