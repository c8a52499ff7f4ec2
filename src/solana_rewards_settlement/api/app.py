"""HTTP boundary: staking reads and transaction-building endpoints."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from ..config.settings import AppConfig, get_app_config
from ..errors import RewardsError, parse_amount, parse_optional_pubkey, parse_pubkey
from ..execution.transaction_builder import TransactionComposer
from ..monitoring.logger import correlation_scope, get_logger
from ..monitoring.metrics import METRICS
from ..schemas import SaleContext

REQUEST_ID_HEADER = "X-Request-ID"

logger = get_logger(__name__)


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class StakeBody(_Body):
    stake_mint: str = Field(validation_alias=AliasChoices("stakeMint", "cloutMint", "stake_mint"))
    staker: str
    amount: str
    staker_token_account: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("stakerTokenAccount", "staker_token_account")
    )


class UnstakeBody(_Body):
    stake_mint: str = Field(validation_alias=AliasChoices("stakeMint", "cloutMint", "stake_mint"))
    staker: str
    amount: str
    destination_token_account: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("destinationTokenAccount", "destination_token_account"),
    )


class HarvestBody(_Body):
    stake_mint: str = Field(validation_alias=AliasChoices("stakeMint", "cloutMint", "stake_mint"))
    staker: str
    recipient_token_account: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("recipientTokenAccount", "recipient_token_account"),
    )


class RecordLoyaltyBody(_Body):
    actor: str
    volume_lamports: str = Field(validation_alias=AliasChoices("volumeLamports", "volume_lamports"))
    bonus_points: str = Field(default="0", validation_alias=AliasChoices("bonusPoints", "bonus_points"))


class SettlementBody(_Body):
    listing: str
    seller: str
    buyer: str
    reward_mint: str = Field(validation_alias=AliasChoices("rewardMint", "reward_mint"))
    reward_amount: str = Field(default="0", validation_alias=AliasChoices("rewardAmount", "reward_amount"))
    loyalty_bonus_points: str = Field(
        default="0", validation_alias=AliasChoices("loyaltyBonusPoints", "loyalty_bonus_points")
    )
    treasury_destination: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("treasuryDestination", "treasury_destination")
    )
    marketplace_fee_destination: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("marketplaceFeeDestination", "marketplace_fee_destination"),
    )
    buyer_reward_account: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("buyerRewardAccount", "buyer_reward_account")
    )


def _error_payload(exc: RewardsError) -> Dict[str, Any]:
    return {"error": str(exc), "kind": exc.kind, "retryable": exc.retryable}


def create_api_app(composer: TransactionComposer, *, config: Optional[AppConfig] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await composer.aclose()

    app = FastAPI(title="Solana Rewards Settlement", version="0.1.0", lifespan=lifespan)
    cfg = (config or get_app_config()).api
    if cfg.allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cfg.allowed_origins,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

    def get_composer() -> TransactionComposer:
        return composer

    @app.middleware("http")
    async def assign_correlation_id(request: Request, call_next):
        with correlation_scope(request.headers.get(REQUEST_ID_HEADER)) as correlation_id:
            response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = correlation_id
        return response

    @app.exception_handler(RewardsError)
    async def handle_rewards_error(request: Request, exc: RewardsError) -> JSONResponse:
        METRICS.increment(f"api.errors.{exc.kind}")
        log = logger.error if exc.status_code >= 500 else logger.info
        log("%s %s rejected: %s", request.method, request.url.path, exc, extra={"kind": exc.kind})
        return JSONResponse(status_code=exc.status_code, content=_error_payload(exc))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        METRICS.increment("api.errors.RequestValidationError")
        fields = sorted({".".join(str(part) for part in error.get("loc", ())[1:]) for error in exc.errors()})
        return JSONResponse(
            status_code=400,
            content={"error": f"Invalid request body: {', '.join(fields)}", "kind": "ValidationError", "retryable": False},
        )

    @app.get("/health")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/metrics", response_class=PlainTextResponse)
    async def prometheus_metrics() -> str:
        return METRICS.export_prometheus()

    @app.get("/staking/{stake_mint}")
    async def staking_snapshot(
        stake_mint: str,
        owner: Optional[str] = Query(default=None),
        service: TransactionComposer = Depends(get_composer),
    ) -> JSONResponse:
        snapshot = await service.staking_snapshot(
            parse_pubkey(stake_mint, "stakeMint"),
            parse_optional_pubkey(owner, "owner"),
        )
        return JSONResponse(snapshot.to_dict())

    @app.post("/staking/transactions/stake")
    async def stake_transaction(
        body: StakeBody, service: TransactionComposer = Depends(get_composer)
    ) -> JSONResponse:
        built = await service.build_stake(
            parse_pubkey(body.stake_mint, "stakeMint"),
            parse_pubkey(body.staker, "staker"),
            parse_amount(body.amount, "amount"),
            parse_optional_pubkey(body.staker_token_account, "stakerTokenAccount"),
        )
        return JSONResponse(built.to_response())

    @app.post("/staking/transactions/unstake")
    async def unstake_transaction(
        body: UnstakeBody, service: TransactionComposer = Depends(get_composer)
    ) -> JSONResponse:
        built = await service.build_unstake(
            parse_pubkey(body.stake_mint, "stakeMint"),
            parse_pubkey(body.staker, "staker"),
            parse_amount(body.amount, "amount"),
            parse_optional_pubkey(body.destination_token_account, "destinationTokenAccount"),
        )
        return JSONResponse(built.to_response())

    @app.post("/staking/transactions/harvest")
    async def harvest_transaction(
        body: HarvestBody, service: TransactionComposer = Depends(get_composer)
    ) -> JSONResponse:
        built = await service.build_harvest(
            parse_pubkey(body.stake_mint, "stakeMint"),
            parse_pubkey(body.staker, "staker"),
            parse_optional_pubkey(body.recipient_token_account, "recipientTokenAccount"),
        )
        return JSONResponse(built.to_response())

    @app.post("/loyalty/transactions/record")
    async def record_loyalty_transaction(
        body: RecordLoyaltyBody, service: TransactionComposer = Depends(get_composer)
    ) -> JSONResponse:
        built = await service.build_record_loyalty(
            parse_pubkey(body.actor, "actor"),
            parse_amount(body.volume_lamports, "volumeLamports", allow_zero=True),
            parse_amount(body.bonus_points, "bonusPoints", allow_zero=True),
        )
        return JSONResponse(built.to_response())

    @app.post("/market/transactions/settle")
    async def settle_transaction(
        body: SettlementBody, service: TransactionComposer = Depends(get_composer)
    ) -> JSONResponse:
        sale = SaleContext(
            listing=parse_pubkey(body.listing, "listing"),
            seller=parse_pubkey(body.seller, "seller"),
            buyer=parse_pubkey(body.buyer, "buyer"),
            reward_mint=parse_pubkey(body.reward_mint, "rewardMint"),
            reward_amount=parse_amount(body.reward_amount, "rewardAmount", allow_zero=True),
            loyalty_bonus_points=parse_amount(body.loyalty_bonus_points, "loyaltyBonusPoints", allow_zero=True),
            treasury_destination=parse_optional_pubkey(body.treasury_destination, "treasuryDestination"),
            marketplace_fee_destination=parse_optional_pubkey(
                body.marketplace_fee_destination, "marketplaceFeeDestination"
            ),
            buyer_reward_account=parse_optional_pubkey(body.buyer_reward_account, "buyerRewardAccount"),
        )
        built = await service.build_settlement(sale)
        return JSONResponse(built.to_response())

    return app


__all__ = ["create_api_app"]
