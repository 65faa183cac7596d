"""Entry point for the FileCollage storage engine.
Loads the index, checks integrity, runs periodic saves until a shutdown signal.
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from common.exceptions import ConfigError, FlushError, IntegrityViolationError
from common.logging_config import setup_logging
from engine.chunk_cache import ChunkCache
from engine.chunk_mapper import ChunkMapper
from engine.config import Config, load_config
from engine.directory_index import DirectoryIndex
from engine.file_store import FileStore
from engine.filesystem import FileCollageFS
from engine.integrity import BrokenFilePolicy
from engine.persistence import IndexFile, PersistenceManager
from remote.client import QueuedRemoteClient
from remote.retry import RetryPolicy
from remote.transports import BlobTransport, LocalDirectoryTransport, TelegramTransport

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    """Every long-lived component, wired together."""
    config: Config
    index: DirectoryIndex
    remote_client: QueuedRemoteClient
    cache: ChunkCache
    file_store: FileStore
    filesystem: FileCollageFS
    persistence: PersistenceManager


def create_transport(config: Config) -> BlobTransport:
    if config.backend == "telegram":
        return TelegramTransport(
            token=config.telegram_token,
            chat_id=config.telegram_chat_id,
            api_url=config.telegram_api_url,
            timeout_seconds=config.request_timeout_seconds,
        )
    return LocalDirectoryTransport(config.local_blob_dir, config.max_chunk_size)


def build_engine(config: Config, transport: Optional[BlobTransport] = None) -> Engine:
    """
    Build the engine from configuration.

    Args:
        config: Validated configuration
        transport: Blob store to use instead of the configured backend

    Returns:
        Engine with an empty index; call PersistenceManager.load() to restore one
    """
    if transport is None:
        transport = create_transport(config)

    remote_client = QueuedRemoteClient(
        transport,
        download_workers=config.download_workers,
        upload_workers=config.upload_workers,
        download_retry=RetryPolicy(
            max_attempts=config.download_retries,
            backoff_seconds=config.retry_backoff_seconds,
            max_backoff_seconds=config.max_retry_backoff_seconds,
        ),
        upload_retry=RetryPolicy(
            max_attempts=config.upload_retries,
            backoff_seconds=config.retry_backoff_seconds,
            max_backoff_seconds=config.max_retry_backoff_seconds,
        ),
    )
    cache = ChunkCache(
        remote_client,
        soft_limit=config.cache_soft_limit_chunks,
        hard_limit=config.cache_hard_limit_chunks,
        simultaneous_evictions=config.simultaneous_cache_evictions,
    )
    index = DirectoryIndex()
    file_store = FileStore(
        cache,
        ChunkMapper(remote_client.max_chunk_size()),
        prefetch_depth=config.prefetch_chunk_count,
    )
    persistence = PersistenceManager(
        index,
        cache,
        file_store,
        IndexFile(config.index_file),
        save_interval_seconds=config.save_interval_seconds,
        force_exit_signal_count=config.force_exit_signal_count,
    )
    return Engine(
        config=config,
        index=index,
        remote_client=remote_client,
        cache=cache,
        file_store=file_store,
        filesystem=FileCollageFS(index, file_store),
        persistence=persistence,
    )


async def run(engine: Engine, install_signals: bool = True) -> None:
    """
    Run the engine until a shutdown is requested, then save and close.

    Raises:
        IntegrityViolationError: If broken files exist and the policy is EXIT
    """
    persistence = engine.persistence
    persistence.load()
    persistence.enforce_integrity(engine.config.on_broken_files)

    await persistence.start()
    if install_signals:
        persistence.install_signal_handlers()

    logger.info("Engine running")
    try:
        await persistence.wait_for_shutdown()
    finally:
        try:
            await persistence.shutdown()
        except FlushError as e:
            logger.error(f"Final flush incomplete, some data was not uploaded: {e}")
        finally:
            if install_signals:
                persistence.remove_signal_handlers()
            await engine.cache.close()
            await engine.remote_client.close()
            logger.info("Engine stopped")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="filecollage",
        description="Chunked storage engine backed by a remote blob store",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to config.json")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--on-broken",
        choices=[policy.value for policy in BrokenFilePolicy],
        default=None,
        help="Override the action for files with chunks that were never uploaded",
    )
    return parser.parse_args(argv)


def main(argv=None) -> None:
    """Bootstrap the engine."""
    args = parse_args(argv)
    logger = setup_logging('filecollage', 'DEBUG' if args.debug else None)
    logger.info("Initializing FileCollage...")

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(2)
    if args.on_broken:
        config = config.model_copy(update={'on_broken_files': BrokenFilePolicy(args.on_broken)})

    engine = build_engine(config)
    try:
        asyncio.run(run(engine))
    except IntegrityViolationError as e:
        logger.error(f"{e}; refusing to start (use --on-broken mount or remove)")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except Exception as e:
        logger.error(f"Engine error: {e}", exc_info=True)
        raise


if __name__ == "__main__":
    main()
