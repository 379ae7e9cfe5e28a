import secrets

from app.core.exceptions import EntropySourceFailure
from app.core.logger import get_logger

logger = get_logger("rng")

SEED_BYTES = 32


class SeedGenerator:
    """
    Per-round seed source backed by the OS CSPRNG (`secrets`).
    Every call draws fresh entropy; there is no weaker fallback.
    """

    def __init__(self, token_bytes=secrets.token_bytes):
        self._token_bytes = token_bytes

    def generate_seed(self) -> bytes:
        """Returns SEED_BYTES of cryptographically secure randomness."""
        try:
            seed = self._token_bytes(SEED_BYTES)
        except (OSError, NotImplementedError) as e:
            logger.critical(f"Entropy source failed: {e}")
            raise EntropySourceFailure(f"Could not obtain {SEED_BYTES} random bytes: {e}") from e

        if len(seed) != SEED_BYTES:
            raise EntropySourceFailure(
                f"Entropy source returned {len(seed)} bytes, expected {SEED_BYTES}"
            )
        return bytes(seed)


seed_generator = SeedGenerator()
