import os
import sys
import pytest
from unittest.mock import AsyncMock

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from bot_manager import ServiceManager, safe_service_start


@pytest.fixture
def manager(tmp_path):
    return ServiceManager(lock_file=tmp_path / "dispatch.lock")


def test_lock_is_taken_once(manager):
    assert manager.create_lock()
    assert manager.get_pid() == os.getpid()
    # Our own PID is alive, so a second start must refuse
    assert not manager.create_lock()


def test_stale_lock_is_replaced(manager, mocker):
    manager.lock_file.write_text("999999")
    mocker.patch('psutil.pid_exists', return_value=False)
    assert manager.create_lock()
    assert manager.get_pid() == os.getpid()


def test_corrupted_lock_is_replaced(manager):
    manager.lock_file.write_text("not-a-pid")
    assert manager.create_lock()


@pytest.mark.asyncio
async def test_safe_start_releases_lock(manager):
    start = AsyncMock()
    assert await safe_service_start(start, manager)
    start.assert_awaited_once()
    assert not manager.is_running()


@pytest.mark.asyncio
async def test_safe_start_refuses_second_instance(manager):
    manager.create_lock()
    start = AsyncMock()
    assert not await safe_service_start(start, manager)
    start.assert_not_awaited()
