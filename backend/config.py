"""Application-wide configuration constants."""

import logging
import os
import socket
from pathlib import Path

logger = logging.getLogger(__name__)

# --- Identity ---
APP_ID = "file-cloner-v1"
MODULE_NAME = "FileCloner"  # transport subscription shared by receiver and sender

# --- Networking ---
API_HOST = "0.0.0.0"
API_PORT = int(os.environ.get("FILE_CLONER_API_PORT", "8766"))

CLONER_BIND_HOST = "0.0.0.0"
CLONER_PORT = int(os.environ.get("FILE_CLONER_PORT", "50555"))


def _local_ip() -> str:
    """Best guess at the LAN address peers can reach us on."""
    try:
        _, _, ips = socket.gethostbyname_ex(socket.gethostname())
        for ip in ips:
            if not ip.startswith("127."):
                return ip
    except OSError as e:
        logger.debug(f"Error resolving local IPs: {e}")
    return "127.0.0.1"


# Host advertised in outgoing messages and used in per-peer file names
CLONER_HOST = os.environ.get("FILE_CLONER_HOST") or _local_ip()

MAX_FRAME_SIZE = 16 * 1024 * 1024  # 16 MB

# --- Collection ---
COLLECTION_WINDOW = 3.0  # seconds to wait for acknowledgements in /sync

# --- Storage ---
BASE_DIR = Path(
    os.environ.get("FILE_CLONER_HOME", str(Path.home() / ".file-cloner"))
)
CONFIG_DIR = BASE_DIR / "FileClonerConfig"
USER_CONFIG_DIR = BASE_DIR / "FileClonerUserConfig"
DIFF_DIR = CONFIG_DIR / "FileClonerDiffDirectory"
SHARED_DIR = BASE_DIR / "Shared"

REQUEST_CONFIG_PATH = USER_CONFIG_DIR / "requestConfig.json"
SUMMARY_FILE_PATH = CONFIG_DIR / "summary.txt"


def ensure_directories() -> None:
    """Create the on-disk layout. Failures are logged, not raised."""
    for directory in (CONFIG_DIR, USER_CONFIG_DIR, DIFF_DIR, SHARED_DIR):
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as e:
            logger.error(f"Could not create directory {directory}: {e}")
