"""
Backend HTTP surface (FastAPI).

Every endpoint answers JSON; errors are `{"error": message, ...}` with the
status code of the raised `CallShieldError`. Stack traces are logged and never
returned.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from fastapi import FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel

from callshield import __version__
from callshield.backend.aggregation import ReputationAggregationService
from callshield.backend.errors import CallShieldError, UnauthorizedError
from callshield.backend.family import FamilySyncService
from callshield.backend.hardening import AbuseHardeningService
from callshield.backend.ratelimit import SlidingWindowRateLimiter
from callshield.backend.seed import SeedDbService
from callshield.backend.store import BackendStore
from callshield.config import CallShieldSettings

logger = logging.getLogger(__name__)


class ReportBody(BaseModel):
    number_hash: str | None = None
    device_token_hash: str | None = None
    category: str | None = None


class CorrectionBody(BaseModel):
    number_hash: str | None = None
    device_token_hash: str | None = None


class PairBody(BaseModel):
    token_hash: str | None = None
    expires_at: str | None = None
    guardian_device_hash: str | None = None
    plan_type: str | None = None
    subscription_expires_at: str | None = None


class SyncPushBody(BaseModel):
    token_hash: str | None = None
    rule_type: str | None = None
    rule_payload: Any = None


class GuardianBody(BaseModel):
    guardian_device_hash: str | None = None
    plan_type: str | None = None
    subscription_expires_at: str | None = None


class TokenBody(BaseModel):
    token_hash: str | None = None


class NumberBody(BaseModel):
    number_hash: str | None = None


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(CallShieldError)
    async def _callshield_error(request: Request, exc: CallShieldError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": "Invalid request body"})

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(
    settings: CallShieldSettings,
    store: BackendStore | None = None,
    clock: Callable[[], float] | None = None,
) -> FastAPI:
    clock = clock or time.time
    store = store or BackendStore(settings.backend_db_path)
    limiter = SlidingWindowRateLimiter(clock=clock)

    reputation = ReputationAggregationService(store, limiter=limiter, clock=clock)
    hardening = AbuseHardeningService(store, clock=clock)
    seed = SeedDbService(
        store,
        signing_secret=settings.download_signing_secret,
        public_base_url=settings.public_base_url,
        url_ttl_seconds=settings.download_url_ttl_seconds,
        clock=clock,
    )
    family = FamilySyncService(store, limiter=limiter, clock=clock)

    app = FastAPI(title="CallShield reputation API", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _install_error_handlers(app)

    app.state.store = store
    app.state.limiter = limiter

    def require_admin(secret: str | None) -> None:
        # Without a configured secret the admin endpoints are open (local development).
        if settings.admin_secret and secret != settings.admin_secret:
            raise UnauthorizedError("Unauthorized")

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/reputation")
    def get_reputation(
        hash: str | None = Query(default=None),
        device_token: str | None = Query(default=None),
    ) -> dict[str, Any]:
        return reputation.get_reputation(hash, device_token)

    @app.post("/report")
    def report(body: ReportBody) -> dict[str, Any]:
        outcome = reputation.submit_report(body.number_hash, body.device_token_hash, body.category)
        return outcome.to_dict()

    @app.post("/correct")
    def correct(body: CorrectionBody) -> dict[str, Any]:
        score = reputation.submit_correction(body.number_hash, body.device_token_hash)
        return {"success": True, "confidence_score": score}

    @app.get("/seed-db-manifest")
    def seed_manifest(x_device_token: str | None = Header(default=None)) -> dict[str, Any]:
        return seed.get_manifest()

    @app.get("/seed-db/{version}")
    def seed_download(version: int, expires: int = 0, signature: str = "") -> FileResponse:
        path = seed.resolve_download(version, expires=expires, signature=signature)
        return FileResponse(path, media_type="text/csv", filename=f"seed-v{version}.csv")

    @app.post("/reputation-harden")
    def harden(x_admin_secret: str | None = Header(default=None)) -> dict[str, int]:
        require_admin(x_admin_secret)
        return hardening.run().to_dict()

    @app.post("/reputation-resolve")
    def resolve_flags(
        body: NumberBody, x_admin_secret: str | None = Header(default=None)
    ) -> dict[str, Any]:
        require_admin(x_admin_secret)
        resolved = hardening.resolve_flags(body.number_hash or "")
        return {"success": True, "resolved": resolved}

    @app.post("/quarantine-review")
    def review_quarantine(
        body: NumberBody, x_admin_secret: str | None = Header(default=None)
    ) -> dict[str, Any]:
        require_admin(x_admin_secret)
        score = reputation.review_quarantine(body.number_hash or "")
        return {"success": True, "confidence_score": score}

    @app.post("/family-pair", status_code=201)
    def family_pair(body: PairBody) -> dict[str, bool]:
        family.pair(
            token_hash=body.token_hash,
            expires_at=body.expires_at,
            guardian_device_hash=body.guardian_device_hash,
            plan_type=body.plan_type,
            subscription_expires_at=body.subscription_expires_at,
        )
        return {"success": True}

    @app.post("/family-sync")
    def family_push(body: SyncPushBody) -> dict[str, bool]:
        family.push_rules(
            token_hash=body.token_hash, rule_type=body.rule_type, rule_payload=body.rule_payload
        )
        return {"success": True}

    @app.get("/family-sync")
    def family_pull(token_hash: str | None = Query(default=None)) -> dict[str, Any]:
        return {"rules": family.pull_rules(token_hash)}

    @app.post("/family-renew")
    def family_renew(body: GuardianBody) -> dict[str, Any]:
        renewed = family.renew(
            guardian_device_hash=body.guardian_device_hash,
            plan_type=body.plan_type,
            subscription_expires_at=body.subscription_expires_at,
        )
        return {"success": True, "renewed_count": renewed}

    @app.post("/family-revoke")
    def family_revoke(body: GuardianBody) -> dict[str, Any]:
        revoked = family.revoke(guardian_device_hash=body.guardian_device_hash)
        return {"success": True, "revoked_count": revoked}

    @app.delete("/family-unpair")
    def family_unpair(body: TokenBody) -> dict[str, bool]:
        family.unpair(token_hash=body.token_hash)
        return {"success": True}

    return app
