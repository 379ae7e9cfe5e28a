"""Game modules for SolFlip."""

from .coinflip import CoinflipGame, FlipOutcome, FlipResolution, parse_bet, resolve

__all__ = [
    "CoinflipGame",
    "FlipOutcome",
    "FlipResolution",
    "parse_bet",
    "resolve",
]
