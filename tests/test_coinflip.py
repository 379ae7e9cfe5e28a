"""
Outcome resolution, payouts and full rounds for the coin flip.
"""

import sqlite3
from decimal import Decimal

import pytest

from app.core import vrf
from app.core.exceptions import (
    EntropySourceFailure,
    InvalidBet,
    InvalidSide,
    PersistenceFailure,
    RoundStateError,
)
from app.core.games.coinflip import CoinflipGame, parse_bet, resolve
from app.core.rng import SeedGenerator
from app.core.vrf import Side
from tests.conftest import GOLDEN_SEED, FixedSeeds
from tests.test_vrf import GOLDEN_PROOF

HEADS_RANDOMNESS = bytes([0x10, 0, 0, 0]) + bytes(60)
TAILS_RANDOMNESS = bytes([0x11, 0, 0, 0]) + bytes(60)


# ==================== Bets ====================


@pytest.mark.parametrize("bet", ["0", "-1", "abc", "", "NaN", "Infinity", None, True, "1e40"])
def test_invalid_bets_rejected(bet):
    with pytest.raises(InvalidBet):
        parse_bet(bet)


@pytest.mark.parametrize("bet,expected", [
    ("1.0", Decimal("1.0")),
    (" 0.5 ", Decimal("0.5")),
    (0.1, Decimal("0.1")),
    (3, Decimal("3")),
])
def test_valid_bets(bet, expected):
    assert parse_bet(bet) == expected


# ==================== Resolution ====================


def test_win_payout():
    resolution = resolve(HEADS_RANDOMNESS, "1.0", "heads", house_edge=Decimal("0.02"))
    assert resolution.result is Side.HEADS
    assert resolution.won is True
    assert resolution.multiplier == Decimal("1.96")
    assert resolution.payout == Decimal("1.96")


def test_loss_payout():
    resolution = resolve(TAILS_RANDOMNESS, "1.0", "heads", house_edge=Decimal("0.02"))
    assert resolution.result is Side.TAILS
    assert resolution.won is False
    assert resolution.multiplier == 0
    assert resolution.payout == 0


def test_payout_floors_to_nine_decimals():
    # 1.96 * 0.123456789 = 0.24197530644
    resolution = resolve(TAILS_RANDOMNESS, "0.123456789", "B", house_edge=Decimal("0.02"))
    assert resolution.payout == Decimal("0.241975306")


def test_payout_never_rounds_up():
    resolution = resolve(HEADS_RANDOMNESS, "0.000000001", "A", house_edge=Decimal("0.02"))
    # 1.96e-9 floors to 1e-9
    assert resolution.payout == Decimal("0.000000001")


@pytest.mark.parametrize("bet", [
    "0.5102040816326530612244897959183673469387",
    "0.1234567891",
    "1.0000000000",
    1e-10,
])
def test_bets_finer_than_payout_precision_rejected(bet):
    with pytest.raises(InvalidBet):
        parse_bet(bet)
    with pytest.raises(InvalidBet):
        resolve(HEADS_RANDOMNESS, bet, "heads", house_edge=Decimal("0.02"))


def test_long_bet_payout_is_exact_floor():
    # 0.5102040816326530612244897959183673469387 * 1.96 = 0.(39 nines)852
    resolution = resolve(
        HEADS_RANDOMNESS,
        "0.5102040816326530612244897959183673469387",
        "heads",
        house_edge=Decimal("0.02"),
        payout_decimals=40,
    )
    assert resolution.payout == Decimal("0." + "9" * 39 + "8")
    assert resolution.payout < 1


def test_payout_near_max_bet_is_exact_floor():
    # 999999999999999999.999999999 * 1.96 = 1959999999999999999.99999999804
    resolution = resolve(HEADS_RANDOMNESS, "999999999999999999.999999999", "heads", house_edge=Decimal("0.02"))
    assert resolution.payout == Decimal("1959999999999999999.999999998")


def test_won_matches_result():
    for randomness in (HEADS_RANDOMNESS, TAILS_RANDOMNESS):
        for side in ("heads", "tails"):
            resolution = resolve(randomness, "2", side)
            assert resolution.won == (resolution.result.value == side)


@pytest.mark.parametrize("edge", ["1.5", "1", "-0.01"])
def test_out_of_range_house_edge_rejected(edge):
    with pytest.raises(ValueError):
        resolve(HEADS_RANDOMNESS, "1", "heads", house_edge=Decimal(edge))


def test_resolve_rejects_invalid_bet_before_outcome():
    with pytest.raises(InvalidBet):
        resolve(HEADS_RANDOMNESS, "abc", "heads")


# ==================== Engine ====================


def test_flip_golden_vector():
    outcome = CoinflipGame().flip("g1", "heads", "1.0", seed=GOLDEN_SEED)
    assert outcome.proof == GOLDEN_PROOF
    assert outcome.seed == GOLDEN_SEED.hex()
    assert outcome.message == "SOLFLIP:g1:heads:" + GOLDEN_SEED.hex()
    assert outcome.result is Side.HEADS
    assert outcome.won is True
    assert outcome.payout == Decimal("1.96")

    opposite = CoinflipGame().flip("g1", "tails", "1.0", seed=GOLDEN_SEED)
    assert opposite.proof != GOLDEN_PROOF


def test_flip_is_verifiable():
    outcome = CoinflipGame().flip("round-1", "tails", "0.25")
    assert vrf.verify_proof(outcome.proof, outcome.seed, "round-1", "tails", message=outcome.message)
    assert len(outcome.seed) == vrf.SEED_HEX_LENGTH


def test_flip_invalid_bet_draws_no_seed():
    seeds = FixedSeeds()
    with pytest.raises(InvalidBet):
        CoinflipGame(seed_source=seeds).flip("g1", "heads", "-1")
    assert seeds.calls == 0


def test_outcomes_are_balanced():
    game = CoinflipGame()
    trials = 10_000
    heads = sum(1 for i in range(trials) if game.flip(f"game-{i}", "heads", "1").result is Side.HEADS)
    assert 0.47 <= heads / trials <= 0.53


# ==================== Seeds ====================


def test_seeds_are_fresh():
    generator = SeedGenerator()
    seeds = {generator.generate_seed() for _ in range(100)}
    assert len(seeds) == 100
    assert all(len(seed) == 32 for seed in seeds)


def test_entropy_failure_propagates():
    def broken(n):
        raise OSError("no entropy")

    with pytest.raises(EntropySourceFailure):
        SeedGenerator(token_bytes=broken).generate_seed()


def test_short_entropy_rejected():
    with pytest.raises(EntropySourceFailure):
        SeedGenerator(token_bytes=lambda n: b"\x00" * (n - 1)).generate_seed()


# ==================== Rounds ====================


def test_play_records_completed_round(game, storage, broadcaster):
    game.seed_source = FixedSeeds()
    result = game.play("wallet-abcdefgh", "heads", "1.0", game_id="g1")

    assert result["result"] == "heads"
    assert result["won"] is True
    assert result["payout"] == "1.960000000"
    assert result["multiplier"] == "1.96"
    assert vrf.verify_proof(result["proof"], result["seed"], result["gameId"], "heads")

    stored = storage.get_game(result["gameId"])
    assert stored["status"] == "completed"
    assert stored["won"] is True
    assert stored["vrf_proof"] == result["proof"]
    assert Decimal(stored["win_amount"]) == Decimal("1.96")

    record = storage.get_vrf_proof(result["gameId"])
    assert record["message"] == result["message"]
    assert record["committed_side"] == "heads"
    assert record["verified"] is False

    assert result["gameStats"]["currentStreak"] == 1
    assert broadcaster.updates == [{"gameId": result["gameId"], "result": "heads", "won": True}]


def test_play_loss_resets_streak(game, storage):
    game.seed_source = FixedSeeds()
    user = storage.create_or_get_user("wallet-loser")
    game.play("wallet-loser", "heads", "1", game_id="g1")
    result = game.play("wallet-loser", "tails", "1", game_id="g2")

    assert result["won"] is False
    assert result["payout"] == "0"
    assert result["gameStats"]["currentStreak"] == 0
    assert result["gameStats"]["maxStreak"] == 1
    assert storage.get_user_stats(user["id"])["total_games"] == 2


@pytest.mark.parametrize("bet", ["0", "-1", "abc"])
def test_play_invalid_bet_mutates_nothing(game, storage, bet):
    with pytest.raises(InvalidBet):
        game.play("wallet-invalid", "heads", bet)
    assert storage.get_user_by_wallet("wallet-invalid") is None


def test_play_invalid_side_mutates_nothing(game, storage):
    with pytest.raises(InvalidSide):
        game.play("wallet-invalid", "edge", "1")
    assert storage.get_user_by_wallet("wallet-invalid") is None


def test_play_without_entropy_creates_no_round(game, storage):
    class NoEntropy:
        def generate_seed(self):
            raise EntropySourceFailure("entropy source offline")

    game.seed_source = NoEntropy()
    with pytest.raises(EntropySourceFailure):
        game.play("wallet-entropy", "heads", "1")
    assert storage.get_user_by_wallet("wallet-entropy") is None


def test_persistence_failure_rolls_back_round(game, storage, broadcaster, monkeypatch):
    def broken_streak_write(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(storage, "save_user_streak", broken_streak_write)

    with pytest.raises(PersistenceFailure) as excinfo:
        game.play("wallet-unlucky", "heads", "1")

    game_id = excinfo.value.game_id
    stored = storage.get_game(game_id)
    assert stored["status"] == "pending"
    assert stored["result"] is None
    assert storage.get_vrf_proof(game_id) is None
    assert broadcaster.updates == []


def test_broadcast_failure_does_not_fail_round(game, storage):
    class BrokenBroadcaster:
        def notify_game_update(self, *args):
            raise RuntimeError("socket gone")

    game.broadcaster = BrokenBroadcaster()
    result = game.play("wallet-broadcast", "tails", "1")
    assert storage.get_game(result["gameId"])["status"] == "completed"


def test_round_completes_once(game, storage):
    result = game.play("wallet-once", "heads", "1")
    with pytest.raises(RoundStateError):
        storage.complete_game(
            result["gameId"], "tails", False, Decimal(0), Decimal(0), result["proof"], result["seed"]
        )
    assert storage.get_game(result["gameId"])["result"] == result["result"]


def test_verify_marks_stored_proof(game, storage):
    result = game.play("wallet-verify", "tails", "1")
    game_id = result["gameId"]

    assert not game.verify(result["proof"], "00" * 32, game_id, "tails").verified
    assert storage.get_vrf_proof(game_id)["verified"] is False

    assert game.verify(result["proof"], result["seed"], game_id, "tails", message=result["message"]).verified
    assert storage.get_vrf_proof(game_id)["verified"] is True
