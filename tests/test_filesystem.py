"""Unit tests for the filesystem call surface."""

import asyncio
import errno
import stat

import pytest

from common.exceptions import (
    AlreadyExistsError,
    DirectoryNotEmptyError,
    InvalidOperationError,
    IsDirectoryError,
    NotDirectoryError,
    NotFoundError,
    ResourceBusyError,
    errno_for,
)


class TestCreate:
    """Test node creation and attributes."""

    @pytest.mark.asyncio
    async def test_create_and_getattr(self, fs):
        await fs.create('/file.txt', 0o644, uid=1000, gid=1000)

        attrs = await fs.getattr('/file.txt')

        assert stat.S_ISREG(attrs.mode)
        assert stat.S_IMODE(attrs.mode) == 0o644
        assert attrs.size == 0
        assert attrs.uid == 1000
        assert attrs.nlink == 1
        assert attrs.to_stat()['st_mode'] == attrs.mode

    @pytest.mark.asyncio
    async def test_create_existing(self, fs):
        await fs.create('/file.txt', 0o644)

        with pytest.raises(AlreadyExistsError) as exc_info:
            await fs.create('/file.txt', 0o644)
        assert errno_for(exc_info.value) == errno.EEXIST

    @pytest.mark.asyncio
    async def test_create_without_parent(self, fs):
        with pytest.raises(NotFoundError) as exc_info:
            await fs.create('/missing/file.txt', 0o644)
        assert errno_for(exc_info.value) == errno.ENOENT

    @pytest.mark.asyncio
    async def test_mkdir_and_readdir(self, fs):
        await fs.mkdir('/docs', 0o755)
        await fs.create('/docs/a', 0o644)

        attrs = await fs.getattr('/docs')
        assert stat.S_ISDIR(attrs.mode)
        assert await fs.readdir('/') == ['.', '..', 'docs']
        assert await fs.readdir('/docs') == ['.', '..', 'a']

    @pytest.mark.asyncio
    async def test_getattr_missing(self, fs):
        with pytest.raises(NotFoundError):
            await fs.getattr('/nope')

    @pytest.mark.asyncio
    async def test_readdir_on_file(self, fs):
        await fs.create('/file.txt', 0o644)

        with pytest.raises(NotDirectoryError):
            await fs.readdir('/file.txt')

    @pytest.mark.asyncio
    async def test_open_missing(self, fs):
        with pytest.raises(NotFoundError):
            await fs.open('/nope')


class TestReadWrite:
    """Test data operations by path."""

    @pytest.mark.asyncio
    async def test_write_then_read(self, fs):
        await fs.create('/file.txt', 0o644)

        assert await fs.write('/file.txt', b"hello world", 0) == 11
        assert await fs.read('/file.txt', 5, 6) == b"world"
        assert (await fs.getattr('/file.txt')).size == 11

    @pytest.mark.asyncio
    async def test_data_operations_on_directory(self, fs):
        await fs.mkdir('/docs', 0o755)

        with pytest.raises(IsDirectoryError):
            await fs.read('/docs', 1, 0)
        with pytest.raises(IsDirectoryError):
            await fs.write('/docs', b"x", 0)
        with pytest.raises(IsDirectoryError):
            await fs.truncate('/docs', 0)

    @pytest.mark.asyncio
    async def test_write_missing(self, fs):
        with pytest.raises(NotFoundError):
            await fs.write('/nope', b"x", 0)

    @pytest.mark.asyncio
    async def test_truncate_negative(self, fs):
        await fs.create('/file.txt', 0o644)

        with pytest.raises(InvalidOperationError):
            await fs.truncate('/file.txt', -1)

    @pytest.mark.asyncio
    async def test_utimens(self, fs):
        await fs.create('/file.txt', 0o644)

        await fs.utimens('/file.txt', 1_000_000_000, 2_500_000_000)

        attrs = await fs.getattr('/file.txt')
        assert attrs.access_time == 1_000_000_000
        assert attrs.modification_time == 2_500_000_000
        assert attrs.to_stat()['st_mtime'] == 2.5

    @pytest.mark.asyncio
    async def test_utimens_missing(self, fs):
        with pytest.raises(NotFoundError):
            await fs.utimens('/nope', 0, 0)


class TestRename:
    """Test moving nodes."""

    @pytest.mark.asyncio
    async def test_rename_across_directories(self, fs, index):
        await fs.mkdir('/a', 0o755)
        await fs.mkdir('/b', 0o755)
        await fs.create('/a/x', 0o644)
        await fs.write('/a/x', b"payload", 0)

        await fs.rename('/a/x', '/b/y')

        assert index.lookup_node('/a/x') is None
        assert index.lookup_node('/b/y').name == 'y'
        assert await fs.read('/b/y', 100, 0) == b"payload"

    @pytest.mark.asyncio
    async def test_rename_missing_source(self, fs):
        with pytest.raises(NotFoundError):
            await fs.rename('/nope', '/other')

    @pytest.mark.asyncio
    async def test_rename_into_missing_parent(self, fs):
        await fs.create('/x', 0o644)

        with pytest.raises(NotFoundError):
            await fs.rename('/x', '/missing/x')

    @pytest.mark.asyncio
    async def test_rename_under_file(self, fs):
        await fs.create('/x', 0o644)
        await fs.create('/f', 0o644)

        with pytest.raises(NotDirectoryError):
            await fs.rename('/x', '/f/x')

    @pytest.mark.asyncio
    async def test_rename_directory_into_itself(self, fs):
        await fs.mkdir('/a', 0o755)
        await fs.mkdir('/a/b', 0o755)

        with pytest.raises(InvalidOperationError) as exc_info:
            await fs.rename('/a', '/a/b/c')
        assert errno_for(exc_info.value) == errno.EINVAL

    @pytest.mark.asyncio
    async def test_rename_replaces_file_and_drops_its_chunks(self, fs, index, cache):
        await fs.create('/src', 0o644)
        await fs.create('/dst', 0o644)
        await fs.write('/src', b"new", 0)
        await fs.write('/dst', b"old contents", 0)
        old_chunks = list(index.lookup_node('/dst').chunks)

        await fs.rename('/src', '/dst')

        assert await fs.read('/dst', 100, 0) == b"new"
        assert index.lookup_node('/src') is None
        assert not any(chunk in cache for chunk in old_chunks)

    @pytest.mark.asyncio
    async def test_rename_directory_onto_empty_directory(self, fs, index):
        await fs.mkdir('/a', 0o755)
        await fs.create('/a/f', 0o644)
        await fs.mkdir('/b', 0o755)

        await fs.rename('/a', '/b')

        assert index.lookup_node('/a') is None
        assert index.lookup_node('/b/f') is not None

    @pytest.mark.asyncio
    async def test_rename_directory_onto_non_empty_directory(self, fs):
        await fs.mkdir('/a', 0o755)
        await fs.mkdir('/b', 0o755)
        await fs.create('/b/f', 0o644)

        with pytest.raises(DirectoryNotEmptyError):
            await fs.rename('/a', '/b')

    @pytest.mark.asyncio
    async def test_rename_directory_onto_file(self, fs):
        await fs.mkdir('/a', 0o755)
        await fs.create('/f', 0o644)

        with pytest.raises(NotDirectoryError):
            await fs.rename('/a', '/f')

    @pytest.mark.asyncio
    async def test_rename_file_onto_directory(self, fs):
        await fs.create('/f', 0o644)
        await fs.mkdir('/a', 0o755)

        with pytest.raises(IsDirectoryError):
            await fs.rename('/f', '/a')

    @pytest.mark.asyncio
    async def test_rename_root(self, fs):
        with pytest.raises(ResourceBusyError):
            await fs.rename('/', '/x')


class TestRemove:
    """Test rmdir and unlink."""

    @pytest.mark.asyncio
    async def test_rmdir(self, fs, index):
        await fs.mkdir('/a', 0o755)

        await fs.rmdir('/a')

        assert index.lookup_node('/a') is None

    @pytest.mark.asyncio
    async def test_rmdir_not_empty(self, fs):
        await fs.mkdir('/a', 0o755)
        await fs.create('/a/f', 0o644)

        with pytest.raises(DirectoryNotEmptyError) as exc_info:
            await fs.rmdir('/a')
        assert errno_for(exc_info.value) == errno.ENOTEMPTY

    @pytest.mark.asyncio
    async def test_rmdir_root(self, fs):
        with pytest.raises(ResourceBusyError) as exc_info:
            await fs.rmdir('/')
        assert errno_for(exc_info.value) == errno.EBUSY

    @pytest.mark.asyncio
    async def test_rmdir_file(self, fs):
        await fs.create('/f', 0o644)

        with pytest.raises(NotDirectoryError):
            await fs.rmdir('/f')

    @pytest.mark.asyncio
    async def test_unlink_releases_chunk_slots(self, fs, index, cache):
        await fs.create('/big', 0o644)
        await fs.write('/big', b"q" * 25, 0)
        assert len(cache) == 3
        assert cache.slots_in_use == 3

        await fs.unlink('/big')

        assert index.lookup_node('/big') is None
        assert len(cache) == 0
        assert cache.slots_in_use == 0

    @pytest.mark.asyncio
    async def test_unlink_directory(self, fs):
        await fs.mkdir('/a', 0o755)

        with pytest.raises(IsDirectoryError) as exc_info:
            await fs.unlink('/a')
        assert errno_for(exc_info.value) == errno.EISDIR

    @pytest.mark.asyncio
    async def test_unlink_missing(self, fs):
        with pytest.raises(NotFoundError):
            await fs.unlink('/nope')


class TestConcurrentAccess:
    """Test data operations racing on one path."""

    @pytest.mark.asyncio
    async def test_read_racing_unlink(self, fs, index, cache, transport):
        await fs.create('/f', 0o644)
        await fs.write('/f', b"hello", 0)
        await cache.flush()
        cache.drop(index.lookup_node('/f').chunks[0])
        transport.gate.clear()

        reader = asyncio.create_task(fs.read('/f', 5, 0))
        await asyncio.sleep(0.01)
        await fs.unlink('/f')

        with pytest.raises(NotFoundError) as exc_info:
            await reader
        assert errno_for(exc_info.value) == errno.ENOENT
        assert cache.slots_in_use == 0

    @pytest.mark.asyncio
    async def test_write_racing_unlink(self, fs, index, cache):
        await fs.create('/f', 0o644)

        written, _ = await asyncio.gather(
            fs.write('/f', b"q" * 25, 0),
            fs.unlink('/f'),
        )

        assert written == 25
        assert index.lookup_node('/f') is None
        assert len(cache) == 0
        assert cache.slots_in_use == 0

    @pytest.mark.asyncio
    async def test_concurrent_writes_past_end(self, fs):
        await fs.create('/f', 0o644)

        await asyncio.gather(
            fs.write('/f', b"a" * 25, 0),
            fs.write('/f', b"b", 30),
        )

        assert (await fs.getattr('/f')).size == 31
        assert await fs.read('/f', 100, 0) == b"a" * 25 + b"\x00" * 5 + b"b"


class TestErrno:
    """Test errno mapping of arbitrary exceptions."""

    def test_unknown_exception_maps_to_eio(self):
        assert errno_for(RuntimeError("boom")) == errno.EIO

    def test_os_error_keeps_its_errno(self):
        assert errno_for(OSError(errno.ENOSPC, "full")) == errno.ENOSPC
