#!/usr/bin/env python3
# filename: geo_updater.py
# -----------------------------------------------------------------------------
# Project: Fallback DNS Server
# Version: 1.3.0
# -----------------------------------------------------------------------------
"""
Background refresh of the GeoIP database from a subscription URL.

Loop:  FETCHING -> (ok)   WAITING until next local midnight -> FETCHING
                -> (fail) WAITING 10 minutes             -> FETCHING

A download is written to a temp file, opened and validated, renamed to
geo_new.mmdb and only then published on the classifier. Failures leave the
current database in service.
"""

import asyncio
import os
import tempfile
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import httpx

from geoip import GeoClassifier, open_database, NEW_DB_FILENAME, DATABASE_ERRORS
from utils import get_logger

logger = get_logger("Fallback.GeoUpdater")

RETRY_DELAY = 600  # seconds after a failed refresh
DOWNLOAD_TIMEOUT = 120.0


class RefreshState(Enum):
    FETCHING = "fetching"
    WAITING = "waiting"


def next_midnight(now: datetime) -> datetime:
    return (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)


class GeoDatabaseRefresher:
    def __init__(self, classifier: GeoClassifier, url: str, storage_dir,
                 timeout: float = DOWNLOAD_TIMEOUT, retry_delay: float = RETRY_DELAY,
                 clock: Callable[[], datetime] = datetime.now,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.classifier = classifier
        self.url = url
        self.storage_dir = Path(storage_dir)
        self.timeout = timeout
        self.retry_delay = retry_delay
        self.clock = clock
        self.transport = transport

        self.state = RefreshState.FETCHING
        self.last_success: Optional[datetime] = None
        self.failures = 0
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stop.clear()
            self._task = asyncio.create_task(self.run(), name="geo-refresher")
            logger.info(f"GeoIP refresher started ({self.url})")
        return self._task

    async def stop(self, grace: float = 5.0):
        self._stop.set()
        task = self._task
        if task is None or task.done():
            return

        done, _ = await asyncio.wait({task}, timeout=grace)
        if not done:
            # Only reachable while a fetch is in flight; nothing is published before validation
            logger.info("Abandoning in-flight GeoIP download")
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("GeoIP refresher stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # =========================================================================
    # LOOP
    # =========================================================================

    async def run(self):
        while not self._stop.is_set():
            self.state = RefreshState.FETCHING
            try:
                success = await self.refresh_once()
            except Exception as e:
                logger.exception(f"Unexpected GeoIP refresh error: {e}")
                success = False

            delay = self.next_delay(success)
            self.state = RefreshState.WAITING
            logger.info(f"Next GeoIP refresh in {timedelta(seconds=int(delay))}")

            if await self._wait(delay):
                break

    async def _wait(self, delay: float) -> bool:
        """Sleep for delay seconds. Returns True if stop was requested."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    def next_delay(self, success: bool, now: Optional[datetime] = None) -> float:
        if not success:
            return float(self.retry_delay)
        now = now or self.clock()
        return (next_midnight(now) - now).total_seconds()

    # =========================================================================
    # FETCH / VALIDATE / PUBLISH
    # =========================================================================

    async def refresh_once(self) -> bool:
        logger.info("Starting GeoIP database download")
        try:
            data = await self._download()
        except httpx.HTTPError as e:
            self.failures += 1
            logger.warning(f"GeoIP download failed: {e}")
            return False

        if not data:
            self.failures += 1
            logger.warning("GeoIP download returned an empty body")
            return False

        loop = asyncio.get_running_loop()
        try:
            reader = await loop.run_in_executor(None, self._persist_and_open, data)
        except DATABASE_ERRORS as e:
            self.failures += 1
            logger.warning(f"Downloaded GeoIP database rejected: {e}")
            return False

        self.classifier.publish(reader)
        self.last_success = self.clock()
        self.failures = 0
        logger.info(f"GeoIP database updated ({len(data)} bytes)")
        return True

    async def _download(self) -> bytes:
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True,
                                     transport=self.transport) as client:
            async with client.stream('GET', self.url) as response:
                response.raise_for_status()
                return await response.aread()

    def _persist_and_open(self, data: bytes):
        """Write to a temp file, validate by opening, then rename into place."""
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix='.geo_', suffix='.tmp', dir=self.storage_dir)
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
            reader = open_database(tmp_path)
            os.replace(tmp_path, self.storage_dir / NEW_DB_FILENAME)
            return reader
        finally:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
