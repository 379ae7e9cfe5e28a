from decimal import Decimal
from typing import Optional, Union

from fastapi import APIRouter, Request, HTTPException
from pydantic import BaseModel
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.config import settings
from app.core import vrf
from app.core.exceptions import (
    EntropySourceFailure,
    InvalidBet,
    InvalidSide,
    PersistenceFailure,
)
from app.core.games.coinflip import CoinflipGame, parse_bet
from app.core.logger import get_logger

limiter = Limiter(key_func=get_remote_address)

logger = get_logger("api")

router = APIRouter()

# ==================== Request Models ====================

class RegisterRequest(BaseModel):
    walletAddress: str
    publicKey: Optional[str] = None

class FlipRequest(BaseModel):
    betAmount: Union[str, int, float]
    selectedSide: str
    publicKey: str
    gameId: Optional[str] = None

class VerifyRequest(BaseModel):
    proof: Optional[str] = None
    seed: Optional[str] = None
    gameId: Optional[str] = None
    selectedSide: Optional[str] = None
    message: Optional[str] = None


# ==================== Helpers ====================

def get_game(request: Request) -> CoinflipGame:
    return request.app.state.coinflip

def get_storage(request: Request):
    return request.app.state.coinflip.storage

def validate_bet(bet_amount) -> Decimal:
    """Parse the bet and apply the configured table limits."""
    bet = parse_bet(bet_amount)
    min_bet = settings.game.min_bet
    max_bet = settings.game.max_bet
    if bet < min_bet or bet > max_bet:
        raise InvalidBet(bet_amount, f"Bet must be between {min_bet} and {max_bet}")
    return bet

def get_rate_limit():
    """Get rate limit string from config."""
    return settings.rate_limit.game_requests if settings.rate_limit.enabled else "1000/minute"

def get_api_rate_limit():
    return settings.rate_limit.api_requests if settings.rate_limit.enabled else "1000/minute"

def _stringify(record: dict) -> dict:
    return {k: str(v) if isinstance(v, Decimal) else v for k, v in record.items()}


# ==================== Users ====================

@router.post("/auth/register")
async def register(request: Request, data: RegisterRequest):
    """Register a wallet, or return the existing user for it."""
    wallet = data.walletAddress.strip()
    if not wallet:
        raise HTTPException(status_code=400, detail="walletAddress is required")
    try:
        user = get_storage(request).create_or_get_user(wallet, data.publicKey)
    except PersistenceFailure as e:
        logger.error(f"Registration failed for {wallet}: {e}")
        raise HTTPException(status_code=503, detail="Registration failed")
    return user


# ==================== Game Endpoints ====================

@router.post("/games/flip")
@limiter.limit(get_rate_limit)
async def flip(request: Request, data: FlipRequest):
    game = get_game(request)
    try:
        bet = validate_bet(data.betAmount)
        result = game.play(
            data.publicKey, data.selectedSide, bet, public_key=data.publicKey, game_id=data.gameId
        )
    except (InvalidBet, InvalidSide) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceFailure as e:
        raise HTTPException(status_code=503, detail=f"Game could not be recorded, please retry: {e}")
    except EntropySourceFailure as e:
        logger.critical(f"Refusing to play without entropy: {e}")
        raise HTTPException(status_code=500, detail="Randomness unavailable")

    return result

@router.get("/games/history")
@limiter.limit(get_api_rate_limit)
async def game_history(
    request: Request,
    walletAddress: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
):
    if not walletAddress:
        raise HTTPException(status_code=400, detail="Wallet address required")

    storage = get_storage(request)
    user = storage.get_user_by_wallet(walletAddress)
    if not user:
        return []

    limit = max(1, min(limit, 100))
    return storage.get_game_history(user["id"], limit, max(0, offset))

@router.get("/games/stats/{wallet_address}")
@limiter.limit(get_api_rate_limit)
async def game_stats(request: Request, wallet_address: str):
    game = get_game(request)
    user = game.storage.get_user_by_wallet(wallet_address)

    if not user:
        return {
            "currentStreak": 0,
            "maxStreak": 0,
            "currentMultiplier": "1",
            "totalGames": 0,
            "totalWinnings": "0",
        }

    totals = game.storage.get_user_stats(user["id"])
    return {
        **game.streaks.get_stats(user["id"]),
        "totalGames": totals["total_games"],
        "totalWinnings": str(totals["total_winnings"]),
    }


# ==================== Fairness ====================

@router.post("/vrf/verify")
@limiter.limit(get_api_rate_limit)
async def verify(request: Request, data: VerifyRequest):
    """Replay a disclosed round. Malformed input answers verified=false, never an error."""
    result = get_game(request).verify(
        data.proof, data.seed, data.gameId, data.selectedSide, message=data.message
    )
    logger.info(f"Verification for game {data.gameId}: {result.verified} ({result.reason})")

    return {
        "verified": result.verified,
        "reason": result.reason,
        "details": "Proof is valid" if result.verified else "Proof is invalid",
        "gameId": data.gameId,
        "selectedSide": data.selectedSide,
        "proofLength": len(data.proof or ""),
        "seedLength": len(data.seed or ""),
    }

@router.get("/vrf/proof/{game_id}")
async def get_proof(request: Request, game_id: str):
    record = get_storage(request).get_vrf_proof(game_id)
    if not record:
        raise HTTPException(status_code=404, detail="Proof not found")
    return record

@router.get("/fairness")
async def fairness_info(request: Request):
    game = get_game(request)
    return {
        "protocolTag": game.protocol_tag,
        "houseEdge": str(game.house_edge),
        "payoutDecimals": settings.fairness.payout_decimals,
        "proofHexLength": vrf.PROOF_HEX_LENGTH,
        "seedHexLength": vrf.SEED_HEX_LENGTH,
        "messageFormat": f"{game.protocol_tag}:<gameId>:<selectedSide>:<seedHex>",
    }


# ==================== Leaderboard ====================

@router.get("/leaderboard")
@limiter.limit(get_api_rate_limit)
async def leaderboard(request: Request, period: str = "daily", limit: int = 10):
    try:
        rows = get_storage(request).get_leaderboard(period, max(1, min(limit, 100)))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [_stringify(row) for row in rows]
