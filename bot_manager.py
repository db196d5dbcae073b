#!/usr/bin/env python3
"""
Single-instance guard for the dispatch service.

Tracking subscriptions and notification cooldowns live in process memory,
so two running instances would split watchers and double-notify partners.
"""
from pathlib import Path
import os
import sys

import psutil
from loguru import logger

from config.config import BASE_DIR


class ServiceManager:
    """Keeps a PID lock file next to the project."""

    def __init__(self, lock_file: Path | None = None):
        self.lock_file = lock_file or BASE_DIR / "dispatch.lock"

    def is_running(self) -> bool:
        return self.lock_file.exists()

    def get_pid(self) -> int | None:
        """Reads the PID from the lock file."""
        if not self.is_running():
            return None
        try:
            with open(self.lock_file, 'r') as f:
                return int(f.read().strip())
        except (IOError, ValueError) as e:
            logger.error(f"Could not read PID from lock file: {e}")
            return None

    def create_lock(self) -> bool:
        """Creates the lock file unless a live process already holds it."""
        pid = self.get_pid()
        if pid and psutil.pid_exists(pid):
            logger.warning(f"Service is already running with PID {pid}.")
            return False
        elif pid:
            logger.warning(f"Found a stale lock file for inactive PID {pid}. Removing it.")
            self.remove_lock()
        elif self.is_running():
            logger.warning("Found a corrupted lock file. Removing it.")
            self.remove_lock()

        try:
            with open(self.lock_file, 'w') as f:
                f.write(str(os.getpid()))
            logger.info("Lock file created")
            return True
        except OSError as e:
            logger.error(f"Could not create lock file: {e}")
            return False

    def remove_lock(self):
        try:
            if self.lock_file.exists():
                self.lock_file.unlink()
                logger.info("Lock file removed")
        except OSError as e:
            logger.error(f"Could not remove lock file: {e}")


service_manager = ServiceManager()


async def safe_service_start(start_func, manager: ServiceManager | None = None) -> bool:
    """Runs start_func under the lock. Returns False when another instance holds it."""
    manager = manager or service_manager
    if not manager.create_lock():
        return False
    try:
        logger.info("Starting dispatch service...")
        await start_func()
    except KeyboardInterrupt:
        logger.info("Stop signal received")
    finally:
        manager.remove_lock()
        logger.info("Dispatch service stopped")
    return True


def force_stop_service(manager: ServiceManager | None = None):
    """Terminates the process holding the lock, killing it if it does not exit in time."""
    manager = manager or service_manager
    pid = manager.get_pid()
    if not pid:
        print("✅ Service is not running.")
        return

    try:
        if psutil.pid_exists(pid):
            process = psutil.Process(pid)
            process.terminate()
            print(f"Sent terminate signal to process {pid}...")
            try:
                process.wait(timeout=5)
                print("✅ Service stopped.")
            except psutil.TimeoutExpired:
                logger.warning(f"Process {pid} did not exit. Killing it.")
                process.kill()
                process.wait()
                print("✅ Service killed.")
        else:
            print("ℹ️ Process not found, only the lock file was left behind.")
    except psutil.NoSuchProcess:
        print("ℹ️ Process no longer exists.")
    finally:
        manager.remove_lock()


if __name__ == '__main__':
    if len(sys.argv) > 1 and sys.argv[1] == 'stop':
        force_stop_service()
    else:
        print("Usage: python bot_manager.py stop")
