"""Device-side client for the reputation backend."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx

from callshield.net.http import HttpClientConfig, json_object, request_with_retries


@dataclass(frozen=True, slots=True)
class ReputationResponse:
    confidence_score: float
    category: str | None
    report_count: int
    unique_reporters: int


@dataclass(frozen=True, slots=True)
class SeedDbManifest:
    version: int
    sha256: str
    download_url: str


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class ReputationApiClient:
    """
    Thin wrapper around the backend JSON endpoints.

    The caller owns the `httpx.AsyncClient` (see `build_async_client`), whose
    `base_url` points at the backend.
    """

    def __init__(self, client: httpx.AsyncClient, *, http_config: HttpClientConfig) -> None:
        self._client = client
        self._config = http_config

    async def get_reputation(
        self, number_hash: str, *, device_token_hash: str, max_retries: int | None = 0
    ) -> ReputationResponse:
        resp = await request_with_retries(
            self._client,
            "GET",
            "/reputation",
            config=self._config,
            max_retries=max_retries,
            params={"hash": number_hash, "device_token": device_token_hash},
        )
        data = json_object(resp)
        category = data.get("category")
        return ReputationResponse(
            confidence_score=float(data.get("confidence_score") or 0.0),
            category=str(category) if category else None,
            report_count=_as_int(data.get("report_count")),
            unique_reporters=_as_int(data.get("unique_reporters")),
        )

    async def post_report(
        self, number_hash: str, *, device_token_hash: str, category: str
    ) -> dict[str, Any]:
        resp = await request_with_retries(
            self._client,
            "POST",
            "/report",
            config=self._config,
            json={
                "number_hash": number_hash,
                "device_token_hash": device_token_hash,
                "category": category,
            },
        )
        return json_object(resp)

    async def post_correction(self, number_hash: str, *, device_token_hash: str) -> dict[str, Any]:
        resp = await request_with_retries(
            self._client,
            "POST",
            "/correct",
            config=self._config,
            json={"number_hash": number_hash, "device_token_hash": device_token_hash},
        )
        return json_object(resp)

    async def get_seed_manifest(self, *, device_token_hash: str) -> SeedDbManifest:
        resp = await request_with_retries(
            self._client,
            "GET",
            "/seed-db-manifest",
            config=self._config,
            headers={"x-device-token": device_token_hash},
        )
        data = json_object(resp)
        return SeedDbManifest(
            version=int(data["version"]),
            sha256=str(data["sha256"]).lower(),
            download_url=str(data["download_url"]),
        )

    async def stream_download(self, url: str) -> AsyncIterator[bytes]:
        """Yield the raw body of `url` chunk by chunk."""

        async with self._client.stream("GET", url) as resp:
            resp.raise_for_status()
            async for chunk in resp.aiter_bytes():
                yield chunk
