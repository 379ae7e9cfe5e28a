"""
Provably-fair coin flip.

`flip` is the pure engine: seed -> proof -> randomness -> outcome and payout.
`play` runs a full round against the storage and streak collaborators, and
`verify` replays a disclosed round.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_FLOOR, localcontext
from typing import Dict, Optional, Union

from app.config import settings
from app.core import vrf
from app.core.exceptions import InvalidBet, PersistenceFailure, RoundStateError
from app.core.logger import get_logger
from app.core.rng import seed_generator
from app.core.vrf import Side, VerificationResult

logger = get_logger("coinflip")

MAX_BET_DIGITS = 18


def parse_bet(bet_amount, max_decimals: int = None) -> Decimal:
    """
    Parse a bet into a Decimal. Non-numeric or non-positive amounts, and
    amounts with more than `max_decimals` fractional digits, raise InvalidBet.
    """
    if max_decimals is None:
        max_decimals = settings.fairness.payout_decimals
    if bet_amount is None or isinstance(bet_amount, bool):
        raise InvalidBet(bet_amount, "Bet amount must be a decimal string")
    if isinstance(bet_amount, float):
        # shortest repr, not the binary expansion
        bet_amount = repr(bet_amount)

    try:
        bet = Decimal(str(bet_amount).strip())
    except (InvalidOperation, ValueError):
        raise InvalidBet(bet_amount, "Bet amount is not a number") from None

    if not bet.is_finite():
        raise InvalidBet(bet_amount, "Bet amount is not a number")
    if bet <= 0:
        raise InvalidBet(bet_amount, "Bet amount must be positive")
    if bet.adjusted() >= MAX_BET_DIGITS:
        raise InvalidBet(bet_amount, "Bet amount is too large")
    if bet.as_tuple().exponent < -max_decimals:
        raise InvalidBet(bet_amount, f"Bet amount has more than {max_decimals} decimal places")
    return bet


def payout_multiplier(house_edge: Decimal) -> Decimal:
    if not 0 <= house_edge < 1:
        raise ValueError(f"House edge must be in [0, 1), got {house_edge}")
    return Decimal(2) * (Decimal(1) - house_edge)


@dataclass(frozen=True)
class FlipResolution:
    result: Side
    won: bool
    multiplier: Decimal
    payout: Decimal


def resolve(
    randomness: bytes,
    bet_amount,
    selected_side,
    house_edge: Decimal = None,
    payout_decimals: int = None,
) -> FlipResolution:
    """
    Map randomness to heads/tails and settle the bet.

    A win pays bet * 2 * (1 - house_edge), floored to `payout_decimals`
    places so rounding never overpays. A loss pays 0.
    """
    if house_edge is None:
        house_edge = settings.fairness.house_edge
    if payout_decimals is None:
        payout_decimals = settings.fairness.payout_decimals
    bet = parse_bet(bet_amount, payout_decimals)
    side = Side.parse(selected_side)

    result = Side.from_outcome(vrf.randomness_to_outcome(randomness, 2))
    won = result == side

    if not won:
        return FlipResolution(result, False, Decimal(0), Decimal(0))

    multiplier = payout_multiplier(Decimal(house_edge))
    with localcontext() as ctx:
        # wide enough that the product is exact before flooring
        ctx.prec = len(multiplier.as_tuple().digits) + len(bet.as_tuple().digits) + payout_decimals
        payout = (multiplier * bet).quantize(Decimal(1).scaleb(-payout_decimals), rounding=ROUND_FLOOR)
    return FlipResolution(result, True, multiplier, payout)


@dataclass(frozen=True)
class FlipOutcome:
    game_id: str
    selected_side: Side
    bet_amount: Decimal
    seed: str
    message: str
    proof: str
    randomness: bytes
    result: Side
    won: bool
    multiplier: Decimal
    payout: Decimal

    def to_dict(self) -> Dict:
        return {
            "gameId": self.game_id,
            "selectedSide": self.selected_side.value,
            "betAmount": str(self.bet_amount),
            "result": self.result.value,
            "won": self.won,
            "multiplier": str(self.multiplier),
            "payout": str(self.payout),
            "proof": self.proof,
            "seed": self.seed,
            "message": self.message,
        }


class CoinflipGame:
    """
    Coin flip with a provably-fair proof per round and a 2% house edge.

    Storage, streak tracker and broadcaster are injected so the same game
    runs against SQLite, an in-memory database or test doubles.
    """

    def __init__(
        self,
        storage=None,
        streaks=None,
        broadcaster=None,
        seed_source=None,
        protocol_tag: str = None,
        house_edge: Decimal = None,
    ):
        self.storage = storage
        self.streaks = streaks
        self.broadcaster = broadcaster
        self.seed_source = seed_source or seed_generator
        self.protocol_tag = protocol_tag or settings.fairness.protocol_tag
        self.house_edge = Decimal(house_edge) if house_edge is not None else settings.fairness.house_edge

    def flip(
        self,
        game_id: str,
        selected_side,
        bet_amount,
        seed: Optional[Union[bytes, str]] = None,
    ) -> FlipOutcome:
        """
        Run the proof engine for one round. No state is touched.

        The bet is validated before any randomness is drawn.
        """
        bet = parse_bet(bet_amount)
        side = Side.parse(selected_side)

        if seed is None:
            seed = self.seed_source.generate_seed()
        seed_hex = seed.hex() if isinstance(seed, (bytes, bytearray)) else seed.lower()

        message = vrf.build_message(game_id, side, seed_hex, self.protocol_tag)
        proof = vrf.construct_proof(game_id, side, seed_hex, self.protocol_tag)
        randomness = vrf.proof_to_randomness(proof)
        resolution = resolve(randomness, bet, side, self.house_edge)

        return FlipOutcome(
            game_id=game_id,
            selected_side=side,
            bet_amount=bet,
            seed=seed_hex,
            message=message,
            proof=proof,
            randomness=randomness,
            result=resolution.result,
            won=resolution.won,
            multiplier=resolution.multiplier,
            payout=resolution.payout,
        )

    def play(
        self,
        wallet_address: str,
        selected_side,
        bet_amount,
        public_key: str = None,
        game_id: str = None,
    ) -> Dict:
        """
        Play a full round for a wallet under `game_id` (a fresh uuid when not
        given): create the pending round, flip, then
        commit the proof record, the round completion and the streak update
        in one transaction. Raises PersistenceFailure if that commit fails;
        the round then stays pending and nothing is reported as final.
        """
        side = Side.parse(selected_side)
        bet = parse_bet(bet_amount)
        # no round row exists unless real entropy was obtained
        seed = self.seed_source.generate_seed()

        user = self.storage.create_or_get_user(wallet_address, public_key)
        game = self.storage.create_game(
            user["id"], bet, side.value, public_key, game_id=game_id
        )
        game_id = game["id"]

        outcome = self.flip(game_id, side, bet, seed=seed)

        def persist_round(cursor):
            self.storage.create_vrf_proof(
                game_id,
                outcome.proof,
                outcome.seed,
                side.value,
                outcome.message,
                cursor=cursor,
            )
            self.storage.complete_game(
                game_id,
                outcome.result.value,
                outcome.won,
                outcome.multiplier,
                outcome.payout,
                outcome.proof,
                outcome.seed,
                cursor=cursor,
            )

        try:
            state = self.streaks.record(user["id"], outcome.won, persist_round)
        except PersistenceFailure as e:
            logger.error(f"Failed to record game {game_id}: {e}", exc_info=True)
            raise PersistenceFailure(f"Game {game_id} could not be recorded", game_id=game_id) from e
        except RoundStateError as e:
            logger.error(f"Game {game_id} was already settled: {e}")
            raise PersistenceFailure(str(e), game_id=game_id) from e

        logger.info(
            f"Game {game_id}: {user['username']} picked {side.value}, "
            f"got {outcome.result.value}, payout {outcome.payout}"
        )

        if self.broadcaster is not None:
            try:
                self.broadcaster.notify_game_update(game_id, outcome.result.value, outcome.won)
            except Exception as e:
                logger.warning(f"Broadcast for game {game_id} failed: {e}")

        return {
            **outcome.to_dict(),
            "winAmount": str(outcome.payout),
            "gameStats": self.streaks.to_stats(state),
            "game": self.storage.get_game(game_id),
        }

    def verify(
        self,
        proof: str,
        seed: str,
        game_id: str,
        selected_side,
        message: str = None,
    ) -> VerificationResult:
        """
        Recompute a proof from disclosed inputs. A match also marks the stored
        proof record (if any) as verified.
        """
        verification = vrf.verify_proof(
            proof, seed, game_id, selected_side, message=message, tag=self.protocol_tag
        )
        if verification.verified and self.storage is not None:
            try:
                if self.storage.mark_proof_verified(game_id, proof):
                    logger.info(f"Proof for game {game_id} verified")
            except PersistenceFailure as e:
                logger.warning(f"Could not flag proof for game {game_id} as verified: {e}")
        return verification
