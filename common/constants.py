"""Project-wide constants (chunk sizes, default paths, permissions)."""

import stat

TELEGRAM_MAX_CHUNK_SIZE_BYTES: int = 20 * 1024 * 1024  # Bot API download limit
DEFAULT_MAX_CHUNK_SIZE_BYTES: int = TELEGRAM_MAX_CHUNK_SIZE_BYTES

DEFAULT_CONFIG_PATH = "config.json"
DEFAULT_INDEX_FILE = "index.json"
DEFAULT_LOCAL_BLOB_DIR = "blobs"
DEFAULT_TELEGRAM_API_URL = "https://api.telegram.org"

INDEX_FORMAT_VERSION = 1

ROOT_DIR_MODE: int = stat.S_IFDIR | 0o755
DEFAULT_FILE_MODE: int = stat.S_IFREG | 0o644

UNLIMITED_RETRIES = -1
