"""Index snapshots, periodic flush + save, and graceful shutdown on signals."""

import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Callable, List, Optional

from common.constants import INDEX_FORMAT_VERSION
from common.exceptions import FlushError
from engine.chunk_cache import ChunkCache
from engine.directory_index import DirectoryIndex
from engine.file_store import FileStore
from engine.integrity import BrokenFilePolicy, enforce_policy, find_broken_files
from engine.models import Dir, node_from_dict

logger = logging.getLogger(__name__)


class IndexFile:
    """JSON file holding the whole directory tree."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Optional[Dir]:
        """
        Load the root directory from disk.

        Returns:
            The root, or None if the file does not exist

        Raises:
            ValueError: If the file is corrupted or has an unknown format version
        """
        if not self.path.exists():
            return None

        with open(self.path, 'r') as f:
            data = json.load(f)

        if not isinstance(data, dict) or data.get('version') != INDEX_FORMAT_VERSION:
            raise ValueError(f"Unsupported index format in {self.path}")
        root = node_from_dict(data['root'])
        if not isinstance(root, Dir):
            raise ValueError(f"Index root in {self.path} is not a directory")
        return root

    @staticmethod
    def serialize(root: Dir) -> str:
        return json.dumps({'version': INDEX_FORMAT_VERSION, 'root': root.to_dict()})

    def write(self, content: str) -> None:
        """
        Replace the index file atomically.

        Raises:
            OSError: If the write fails; the previous file is left intact
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(self.path.name + '.tmp')
        with open(temp_path, 'w') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, self.path)

    def save(self, root: Dir) -> None:
        self.write(self.serialize(root))


class PersistenceManager:
    """
    Keeps the on-disk index in step with memory.

    A background task flushes the chunk cache and writes the index every
    save interval. SIGINT and SIGTERM request a graceful shutdown; once the
    configured number of signals has arrived the process exits immediately.
    """

    def __init__(
        self,
        index: DirectoryIndex,
        cache: ChunkCache,
        file_store: FileStore,
        index_file: IndexFile,
        save_interval_seconds: float,
        force_exit_signal_count: int = 3,
        exit_func: Callable[[int], None] = os._exit
    ):
        """
        Initialize persistence manager.

        Args:
            index: Directory tree to snapshot
            cache: Cache flushed before every snapshot
            file_store: Used to drop chunks of removed broken files
            index_file: Snapshot location
            save_interval_seconds: Time between periodic saves
            force_exit_signal_count: Signals after which the process exits at once
            exit_func: Called with the exit status on forced exit
        """
        self.index = index
        self.cache = cache
        self.file_store = file_store
        self.index_file = index_file
        self.save_interval_seconds = save_interval_seconds
        self.force_exit_signal_count = force_exit_signal_count
        self._exit_func = exit_func

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._save_lock = asyncio.Lock()
        self._save_pending = False
        self._signal_count = 0
        self._shutdown_event = asyncio.Event()

    def load(self) -> bool:
        """
        Load the index snapshot into the directory index.

        Returns:
            True if a snapshot was loaded, False if none exists yet (an
            initial save is scheduled for when the loop starts)

        Raises:
            ValueError: If the snapshot is corrupted
        """
        root = self.index_file.load()
        if root is None:
            logger.warning(f"Index file {self.index_file.path} not found, creating default")
            self._save_pending = True
            return False
        self.index.replace_root(root)
        file_count = sum(1 for _ in self.index.iter_files())
        logger.info(f"Loaded index with {file_count} file(s) from {self.index_file.path}")
        return True

    def check_integrity(self) -> List[str]:
        """Paths of files with chunks that were never uploaded."""
        return find_broken_files(self.index)

    def enforce_integrity(self, policy: BrokenFilePolicy) -> List[str]:
        """
        Apply the broken file policy.

        Raises:
            IntegrityViolationError: If broken files exist and the policy is EXIT
        """
        return enforce_policy(self.index, self.file_store, policy)

    async def save(self) -> None:
        """
        Flush the chunk cache, then write the index.

        The index is written even when the flush failed, since every upload
        that did succeed has recorded its blob id.

        Raises:
            FlushError: If any chunk failed to upload (after the index is written)
            OSError: If the index could not be written
        """
        async with self._save_lock:
            flush_error: Optional[FlushError] = None
            logger.info("Flushing chunk cache...")
            try:
                uploaded = await self.cache.flush()
                logger.info(f"Uploaded {uploaded} chunk(s)")
            except FlushError as e:
                flush_error = e

            logger.info("Saving file index...")
            content = IndexFile.serialize(self.index.root)
            await asyncio.to_thread(self.index_file.write, content)
            self._save_pending = False

            if flush_error is not None:
                raise flush_error
            logger.info("State saved")

    async def start(self) -> None:
        """Start the periodic save task."""
        if self._running:
            logger.warning("Persistence task already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Started persistence task (interval: {self.save_interval_seconds}s)")

    async def stop(self) -> None:
        """Stop the periodic save task without saving."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Stopped persistence task")

    async def _run(self) -> None:
        if self._save_pending:
            await self._save_cycle()
        while self._running:
            try:
                await asyncio.sleep(self.save_interval_seconds)
                if not self._running:
                    break
                await self._save_cycle()
            except asyncio.CancelledError:
                break

    async def _save_cycle(self) -> None:
        try:
            await self.save()
        except Exception as e:
            logger.error(f"Error in save cycle: {e}", exc_info=True)

    def install_signal_handlers(self) -> None:
        """Route SIGINT and SIGTERM to handle_signal on the running loop."""
        if sys.platform == 'win32':
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.handle_signal, sig)

    def remove_signal_handlers(self) -> None:
        if sys.platform == 'win32':
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    def handle_signal(self, sig: int) -> None:
        """
        Count a shutdown signal.

        The first request starts a graceful shutdown; reaching
        force_exit_signal_count exits without saving.
        """
        self._signal_count += 1
        if self._signal_count >= self.force_exit_signal_count:
            logger.critical(
                f"Received {self._signal_count} signals, exiting immediately; "
                f"the saved state may be inconsistent"
            )
            self._exit_func(1)
            return

        remaining = self.force_exit_signal_count - self._signal_count
        logger.info(
            f"Received signal {sig}, shutting down... "
            f"(send {remaining} more to force exit)"
        )
        self.request_shutdown()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_event.is_set()

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()

    async def shutdown(self) -> None:
        """Stop the periodic task and perform the final flush and save."""
        await self.stop()
        logger.info("Performing final save")
        await self.save()
