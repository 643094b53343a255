"""Seed spam database publishing and signed download URLs."""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from pathlib import Path
from typing import Any, Callable
from urllib.parse import urlencode

from callshield.backend.errors import BadRequestError, NotFoundError, UnauthorizedError
from callshield.backend.store import BackendStore

logger = logging.getLogger(__name__)

DOWNLOAD_PATH = "/seed-db/{version}"


def file_sha256(path: Path, *, chunk_size: int = 64 * 1024) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


class SeedDbService:
    def __init__(
        self,
        store: BackendStore,
        *,
        signing_secret: str,
        public_base_url: str,
        url_ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not signing_secret:
            raise ValueError("signing_secret must not be empty")
        self._store = store
        self._secret = signing_secret.encode("utf-8")
        self._base_url = public_base_url.rstrip("/")
        self._ttl = url_ttl_seconds
        self._clock = clock

    def _signature(self, path: str, expires: int) -> str:
        return hmac.new(self._secret, f"{path}:{expires}".encode(), hashlib.sha256).hexdigest()

    def signed_url(self, version: int) -> str:
        path = DOWNLOAD_PATH.format(version=version)
        expires = int(self._clock()) + self._ttl
        query = urlencode({"expires": expires, "signature": self._signature(path, expires)})
        return f"{self._base_url}{path}?{query}"

    def get_manifest(self) -> dict[str, Any]:
        with self._store.transaction() as conn:
            row = conn.execute(
                "SELECT version, sha256 FROM seed_db_versions WHERE is_current = 1"
            ).fetchone()
        if row is None:
            raise NotFoundError("No seed DB version available")
        version = int(row["version"])
        return {
            "version": version,
            "sha256": str(row["sha256"]),
            "download_url": self.signed_url(version),
        }

    def resolve_download(self, version: int, *, expires: int, signature: str) -> Path:
        """Check a signed URL and return the file it grants access to."""

        path = DOWNLOAD_PATH.format(version=version)
        if expires < self._clock():
            raise UnauthorizedError("Download URL expired")
        if not hmac.compare_digest(self._signature(path, expires), signature):
            raise UnauthorizedError("Invalid download signature")

        with self._store.transaction() as conn:
            row = conn.execute(
                "SELECT storage_path FROM seed_db_versions WHERE version = ?", (version,)
            ).fetchone()
        if row is None:
            raise NotFoundError("Unknown seed DB version")
        file_path = Path(row["storage_path"])
        if not file_path.exists():
            raise NotFoundError("Seed DB file missing")
        return file_path

    def publish(self, csv_path: Path, *, version: int | None = None) -> dict[str, Any]:
        """Register `csv_path` as the current seed dataset."""

        if not csv_path.is_file():
            raise BadRequestError(f"Seed file not found: {csv_path}")
        sha256 = file_sha256(csv_path)
        now = self._clock()

        with self._store.transaction() as conn:
            (latest,) = conn.execute("SELECT MAX(version) FROM seed_db_versions").fetchone()
            latest = int(latest or 0)
            if version is None:
                version = latest + 1
            elif version <= latest:
                raise BadRequestError(f"version must be greater than {latest}")
            conn.execute("UPDATE seed_db_versions SET is_current = 0 WHERE is_current = 1")
            conn.execute(
                "INSERT INTO seed_db_versions(version, sha256, storage_path, is_current, created_at) "
                "VALUES (?, ?, ?, 1, ?)",
                (version, sha256, str(csv_path.resolve()), now),
            )

        logger.info("published seed db v%d (%s)", version, sha256[:12])
        return {"version": version, "sha256": sha256}
