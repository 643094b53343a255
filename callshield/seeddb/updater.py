"""
Seed spam database refresh.

Protocol:
1. fetch the manifest `{version, sha256, download_url}`,
2. no-op when the local version is already >= the manifest version,
3. stream the CSV (`hash,category,score`, no header) to a temporary file while
   hashing the raw bytes,
4. compare the digest with the manifest before the database is touched,
5. replace the dataset and its version record in one transaction.

A checksum mismatch discards the download; readers keep seeing the previous
version.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import sqlite3
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Iterator, Union

import httpx

from callshield.core.identity import is_hex64
from callshield.net.api import ReputationApiClient
from callshield.net.http import compute_backoff
from callshield.storage.device import SeedDbEntry, SeedDbRepository

logger = logging.getLogger(__name__)


class SeedChecksumError(Exception):
    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(f"Checksum mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


@dataclass(frozen=True, slots=True)
class AlreadyUpToDate:
    version: int


@dataclass(frozen=True, slots=True)
class Updated:
    version: int
    rows_inserted: int


@dataclass(frozen=True, slots=True)
class Failed:
    reason: str


UpdateResult = Union[AlreadyUpToDate, Updated, Failed]


def parse_seed_line(line: str) -> SeedDbEntry | None:
    """Parse one `hash,category,score` line; None for malformed lines."""

    parts = line.strip().split(",")
    if len(parts) != 3:
        return None
    number_hash, category, score_s = (p.strip() for p in parts)
    if not is_hex64(number_hash) or not category:
        return None
    try:
        score = float(score_s)
    except ValueError:
        return None
    if not 0.0 <= score <= 1.0:
        return None
    return SeedDbEntry(number_hash, category, score)


def iter_seed_file(path: Path) -> Iterator[SeedDbEntry]:
    skipped = 0
    with path.open("r", encoding="utf-8") as fh:
        for line in fh:
            if not line.strip():
                continue
            entry = parse_seed_line(line)
            if entry is None:
                skipped += 1
                continue
            yield entry
    if skipped:
        logger.info("skipped %d malformed seed rows", skipped)


class SeedDbUpdater:
    def __init__(
        self,
        api: ReputationApiClient,
        seed_db: SeedDbRepository,
        *,
        device_token_hash: str,
        work_dir: Path | None = None,
    ) -> None:
        self._api = api
        self._seed_db = seed_db
        self._device_token_hash = device_token_hash
        self._work_dir = work_dir

    async def check_and_update(self) -> UpdateResult:
        try:
            manifest = await self._api.get_seed_manifest(device_token_hash=self._device_token_hash)
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.warning("seed manifest unavailable: %s", e)
            return Failed(f"manifest: {e}")

        meta = await asyncio.to_thread(self._seed_db.get_meta)
        if meta is not None and meta.version >= manifest.version:
            return AlreadyUpToDate(meta.version)

        fd, tmp_name = tempfile.mkstemp(prefix="seed-", suffix=".csv", dir=self._work_dir)
        tmp_path = Path(tmp_name)
        try:
            digest = hashlib.sha256()
            with os.fdopen(fd, "wb") as out:
                async for chunk in self._api.stream_download(manifest.download_url):
                    digest.update(chunk)
                    out.write(chunk)

            actual = digest.hexdigest()
            if actual != manifest.sha256:
                raise SeedChecksumError(manifest.sha256, actual)

            inserted = await asyncio.to_thread(
                self._seed_db.replace_all,
                iter_seed_file(tmp_path),
                version=manifest.version,
                sha256=actual,
            )
        except SeedChecksumError as e:
            logger.warning("seed db v%d rejected: %s", manifest.version, e)
            return Failed(str(e))
        except httpx.HTTPError as e:
            logger.warning("seed db download failed: %s", e)
            return Failed(f"download: {e}")
        except (UnicodeDecodeError, OSError, sqlite3.Error) as e:
            # replace_all rolled back; the previous dataset is still in place.
            logger.warning("seed db v%d not applied: %s: %s", manifest.version, type(e).__name__, e)
            return Failed(f"apply: {type(e).__name__}: {e}")
        finally:
            tmp_path.unlink(missing_ok=True)

        logger.info("seed db updated to v%d (%d rows)", manifest.version, inserted)
        return Updated(manifest.version, inserted)

    async def run_with_retries(
        self,
        max_attempts: int = 3,
        *,
        backoff_base_seconds: float = 30.0,
        backoff_max_seconds: float = 15 * 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> UpdateResult:
        """Retry failed updates with bounded backoff; the last failure is returned, not raised."""

        result: UpdateResult = Failed("not attempted")
        for attempt in range(max(1, max_attempts)):
            result = await self.check_and_update()
            if not isinstance(result, Failed):
                return result
            if attempt + 1 < max_attempts:
                delay = compute_backoff(
                    attempt, base=backoff_base_seconds, cap=backoff_max_seconds
                )
                logger.info(
                    "seed update attempt %d/%d failed; retrying in %.1fs",
                    attempt + 1,
                    max_attempts,
                    delay,
                )
                await sleep(delay)
        logger.warning("seed update failed after %d attempts: %s", max_attempts, result.reason)
        return result
