from __future__ import annotations

import hmac
import json
import logging
from typing import List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from .airdrop_models import (
    STATUS_DUPLICATE,
    STATUS_FAILED,
    STATUS_IGNORED,
    STATUS_NEEDS_REVIEW,
    STATUS_RETRYABLE,
    STATUS_SETTLED,
    RateOut,
    ReviewItemOut,
    SettlementOut,
    SettlementOutcome,
    WebhookOut,
)
from .airdrop_store import AirdropLedger
from .config import AirdropConfig, load_config
from .errors import InvalidPayload, LedgerUnavailable
from .oracle import PriceOracle
from .settlement import AirdropSettlement, utc_now
from .solana_transfer import build_executor

logger = logging.getLogger(__name__)

WEBHOOK_PATHS = ("/api/airdrop-handler", "/webhook")

STATUS_CODES = {
    STATUS_IGNORED: 200,
    STATUS_DUPLICATE: 200,
    STATUS_SETTLED: 200,
    STATUS_FAILED: 200,  # fatal: the indexer must not redeliver
    STATUS_RETRYABLE: 503,
    STATUS_NEEDS_REVIEW: 500,
}


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def consteq(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def outcome_response(outcome: SettlementOutcome) -> JSONResponse:
    rec = outcome.record
    body = WebhookOut(
        ok=outcome.status in (STATUS_IGNORED, STATUS_DUPLICATE, STATUS_SETTLED),
        status=outcome.status,
        ignored=outcome.status == STATUS_IGNORED,
        reason=outcome.reason,
        source_tx_id=outcome.source_tx_id,
        payout_amount=rec.payout_amount if rec else None,
        payout_tx_id=rec.payout_tx_id if rec else None,
        price_is_fallback=rec.price_is_fallback if rec else None,
        detail=outcome.detail or None,
    )
    return JSONResponse(status_code=STATUS_CODES.get(outcome.status, 500), content=body.model_dump())


def create_airdrop_router(cfg: AirdropConfig, settlement: AirdropSettlement, ledger: AirdropLedger) -> APIRouter:
    router = APIRouter()

    def check_webhook_auth(req: Request) -> None:
        if not cfg.webhook_auth_token:
            return
        got = req.headers.get("authorization", "")
        if not consteq(got, cfg.webhook_auth_token):
            raise HTTPException(status_code=401, detail="bad webhook authorization")

    def check_admin(req: Request) -> None:
        if not cfg.admin_token:
            raise HTTPException(status_code=403, detail="admin api disabled")
        auth = req.headers.get("authorization", "")
        if not auth.lower().startswith("bearer "):
            raise HTTPException(status_code=401, detail="missing bearer token")
        if not consteq(auth.split(" ", 1)[1].strip(), cfg.admin_token):
            raise HTTPException(status_code=401, detail="bad admin token")

    async def airdrop_webhook(req: Request):
        check_webhook_auth(req)
        raw = await req.body()
        try:
            payload = json.loads(raw or b"null")
        except (json.JSONDecodeError, UnicodeDecodeError):
            return JSONResponse(status_code=400, content={"ok": False, "status": "invalid", "detail": "body is not JSON"})

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("[airdrop] webhook event received: %s", json.dumps(payload, indent=2))
        try:
            outcome = await run_in_threadpool(settlement.process, payload)
        except InvalidPayload as e:
            logger.info("[airdrop] malformed webhook body: %s", e)
            return JSONResponse(status_code=400, content={"ok": False, "status": "invalid", "detail": str(e)})
        except Exception:
            logger.exception("[airdrop] unexpected error while handling webhook")
            return JSONResponse(status_code=500, content={"ok": False, "status": "error", "detail": "internal error"})
        return outcome_response(outcome)

    async def method_not_allowed(req: Request):
        return JSONResponse(status_code=405, content={"message": "Only POST allowed"})

    for path in WEBHOOK_PATHS:
        router.add_api_route(path, airdrop_webhook, methods=["POST"], response_model=WebhookOut)
        router.add_api_route(path, method_not_allowed, methods=["GET", "PUT", "PATCH", "DELETE"], include_in_schema=False)

    @router.get("/health")
    def health():
        return {"status": "ok", "ts": int(utc_now().timestamp())}

    @router.get("/rate", response_model=RateOut)
    def current_rate():
        now = utc_now()
        sched = cfg.schedule
        phase, rate = sched.quote(now)
        return RateOut(
            now=int(now.timestamp()),
            phase=phase,
            rate=str(rate),
            launch_at=int(sched.launch_at.timestamp()),
            launch_rate=str(sched.launch_rate),
            phases=[
                dict(name=p.name, start=int(p.start.timestamp()), end=int(p.end.timestamp()), rate=str(p.rate))
                for p in sched.phases
            ],
        )

    @router.get("/settlements/{source_tx_id}", response_model=SettlementOut)
    def get_settlement(source_tx_id: str, req: Request):
        check_admin(req)
        try:
            rec = ledger.get_settlement(source_tx_id)
        except LedgerUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))
        if rec is None:
            raise HTTPException(status_code=404, detail="unknown source transaction")
        return SettlementOut(
            source_tx_id=rec.source_tx_id,
            buyer_address=rec.buyer_address,
            paid_asset=rec.paid_asset.value,
            paid_amount=str(rec.paid_amount),
            rate_applied=str(rec.rate_applied),
            native_usd_price=None if rec.native_usd_price is None else str(rec.native_usd_price),
            price_is_fallback=rec.price_is_fallback,
            payout_amount=rec.payout_amount,
            payout_tx_id=rec.payout_tx_id,
            settled_at=int(rec.settled_at.timestamp()),
        )

    @router.get("/admin/review", response_model=List[ReviewItemOut])
    def review_queue(req: Request, all: bool = False, limit: int = 100):
        check_admin(req)
        try:
            return ledger.fetch_review_items(include_resolved=all, limit=limit)
        except LedgerUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))

    return router


def create_app(
    cfg: Optional[AirdropConfig] = None,
    settlement: Optional[AirdropSettlement] = None,
) -> FastAPI:
    """
    Build the FastAPI app. With no arguments everything is wired from the
    environment: `uvicorn airdrop_backend.app:create_app --factory`.
    """
    cfg = cfg or load_config()
    configure_logging(cfg.log_level)

    if settlement is None:
        ledger = AirdropLedger(cfg.db_path, cfg.ledger_timeout_sec)
        oracle = PriceOracle(
            cfg.oracle_url,
            cfg.oracle_asset_id,
            cfg.fallback_native_usd_price,
            timeout=cfg.oracle_timeout_sec,
        )
        settlement = AirdropSettlement(cfg, ledger, oracle, build_executor(cfg))
    ledger = settlement.ledger
    ledger.init()

    app = FastAPI(title="ABC presale airdrop")
    if cfg.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(cfg.cors_origins),
            allow_credentials=False,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )
    app.include_router(create_airdrop_router(cfg, settlement, ledger))
    logger.info(
        "[airdrop] ready: collection=%s source=%s mint=%s db=%s",
        cfg.collection_wallet, cfg.source_wallet, cfg.token_mint, cfg.db_path,
    )
    return app
