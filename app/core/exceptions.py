
class FairnessError(Exception):
    """Base class for errors raised by the coinflip engine."""


class InvalidBet(FairnessError):
    def __init__(self, bet_amount, reason: str = "Bet amount must be a positive number"):
        self.bet_amount = bet_amount
        self.reason = reason
        super().__init__(f"Invalid bet amount {bet_amount!r}: {reason}")


class InvalidSide(FairnessError):
    def __init__(self, side):
        self.side = side
        super().__init__(f"Invalid side: {side!r}. Must be 'heads' or 'tails'.")


class EntropySourceFailure(FairnessError):
    """The OS random source could not supply a seed. Fatal for the round."""


class PersistenceFailure(FairnessError):
    """A round could not be durably recorded; its outcome must not be reported."""

    def __init__(self, message: str, game_id: str = None):
        self.game_id = game_id
        super().__init__(message)


class RoundStateError(FairnessError):
    """A round was asked to transition from a state it is not in."""
