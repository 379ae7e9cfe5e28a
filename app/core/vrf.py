"""
Provably-fair proof engine for SolFlip.

A round commits to {game id, chosen side, seed} through a SHA-512 hash chain.
The seed stays secret until the round completes; afterwards anyone holding
the disclosed seed can rebuild the proof and check it byte for byte.

This is a replay-verification scheme, not an ECVRF: checking a proof needs
the seed, it cannot be done with a public key alone.

Layout of a proof (80 bytes, 160 hex chars on the wire):

    h0 = SHA512(SUITE_ID || message || seed)            64 bytes
    h1 = SHA512(SUITE_ID || CHAIN_BYTE || h0)           64 bytes
    proof = (h0 || h1)[:80]

Randomness is drawn from the first 32 bytes of the proof only:

    randomness = SHA512(SUITE_ID || RANDOMNESS_MODE || proof[:32] || 0x00)

and only its first 4 bytes decide the flip. Changing either window changes
the outcome of every proof already issued, so it needs a new protocol tag.
"""

import hashlib
import hmac
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from app.core.exceptions import InvalidSide
from app.core.logger import get_logger

logger = get_logger("vrf")

SUITE_ID = b"\x03"
RANDOMNESS_MODE = b"\x03"
CHAIN_BYTE = b"\x01"
TERMINATOR = b"\x00"

PROOF_BYTES = 80
SEED_BYTES = 32
GAMMA_BYTES = 32
OUTCOME_WINDOW = 4

PROOF_HEX_LENGTH = PROOF_BYTES * 2
SEED_HEX_LENGTH = SEED_BYTES * 2

DEFAULT_PROTOCOL_TAG = "SOLFLIP"


class Side(str, Enum):
    HEADS = "heads"  # side A
    TAILS = "tails"  # side B

    @classmethod
    def parse(cls, value) -> "Side":
        """Accepts a Side, 'heads'/'tails' or the aliases 'A'/'B'."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise InvalidSide(value)

        normalized = value.strip().lower()
        if normalized == "a":
            return cls.HEADS
        if normalized == "b":
            return cls.TAILS
        try:
            return cls(normalized)
        except ValueError:
            raise InvalidSide(value) from None

    @classmethod
    def from_outcome(cls, outcome: int) -> "Side":
        return cls.HEADS if outcome == 0 else cls.TAILS


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    reason: str

    def __bool__(self):
        return self.verified


def _seed_bytes(seed: Union[bytes, str]) -> bytes:
    if isinstance(seed, (bytes, bytearray)):
        raw = bytes(seed)
    else:
        raw = bytes.fromhex(seed)
    if len(raw) != SEED_BYTES:
        raise ValueError(f"Seed must be {SEED_BYTES} bytes, got {len(raw)}")
    return raw


def build_message(
    game_id: str, side, seed: Union[bytes, str], tag: str = DEFAULT_PROTOCOL_TAG
) -> str:
    """Canonical message hashed into the proof: '<tag>:<gameId>:<side>:<seedHex>'."""
    side = Side.parse(side)
    seed_hex = _seed_bytes(seed).hex()
    return f"{tag}:{game_id}:{side.value}:{seed_hex}"


def _proof_from_message(message: str, seed: bytes) -> bytes:
    h0 = hashlib.sha512(SUITE_ID + message.encode("utf-8") + seed).digest()
    h1 = hashlib.sha512(SUITE_ID + CHAIN_BYTE + h0).digest()
    return (h0 + h1)[:PROOF_BYTES]


def construct_proof(
    game_id: str, side, seed: Union[bytes, str], tag: str = DEFAULT_PROTOCOL_TAG
) -> str:
    """
    Build the 80-byte proof for a round and return it as lowercase hex.

    Deterministic: identical (game_id, side, seed, tag) always yield the
    same proof.
    """
    raw_seed = _seed_bytes(seed)
    message = build_message(game_id, side, raw_seed, tag)
    return _proof_from_message(message, raw_seed).hex()


def proof_to_randomness(proof: Union[bytes, str]) -> bytes:
    """Derive the 64-byte randomness digest from a proof."""
    raw = bytes(proof) if isinstance(proof, (bytes, bytearray)) else bytes.fromhex(proof)
    if len(raw) < GAMMA_BYTES:
        raise ValueError(f"Proof must be at least {GAMMA_BYTES} bytes, got {len(raw)}")
    return hashlib.sha512(
        SUITE_ID + RANDOMNESS_MODE + raw[:GAMMA_BYTES] + TERMINATOR
    ).digest()


def randomness_to_outcome(randomness: bytes, range_size: int = 2) -> int:
    """Reduce the first 4 bytes (uint32, little-endian) modulo range_size."""
    if len(randomness) < OUTCOME_WINDOW:
        raise ValueError(f"Randomness must be at least {OUTCOME_WINDOW} bytes")
    value = int.from_bytes(randomness[:OUTCOME_WINDOW], "little")
    return value % range_size


def _is_hex(value: str, length: int) -> bool:
    if len(value) != length:
        return False
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return True


def parse_message(message: str, tag: str = DEFAULT_PROTOCOL_TAG) -> Optional[dict]:
    """
    Split a canonical message into its fields, or return None if it is not one.
    Game ids may contain ':' so the side and seed are taken from the right.
    """
    prefix = f"{tag}:"
    if not message.startswith(prefix):
        return None
    parts = message[len(prefix):].rsplit(":", 2)
    if len(parts) != 3 or not parts[0]:
        return None
    game_id, side, seed_hex = parts
    return {"tag": tag, "game_id": game_id, "side": side, "seed": seed_hex}


def verify_proof(
    proof: str,
    seed: str,
    game_id: str,
    side,
    message: Optional[str] = None,
    tag: str = DEFAULT_PROTOCOL_TAG,
) -> VerificationResult:
    """
    Recompute the proof from the disclosed inputs and compare it exactly.

    When a canonical message is supplied the seed is read from its trailing
    field; the message must agree with every other argument. Never raises:
    malformed input yields VerificationResult(False, reason).
    """
    try:
        if not proof or not seed or not game_id or not side:
            return VerificationResult(False, "Proof, seed, gameId and selectedSide are required")
        if not all(isinstance(v, str) for v in (proof, seed, game_id)):
            return VerificationResult(False, "Proof, seed and gameId must be strings")

        try:
            side = Side.parse(side)
        except InvalidSide:
            return VerificationResult(False, f"Unknown side: {side!r}")

        if message is not None:
            fields = parse_message(message, tag)
            if fields is None:
                return VerificationResult(False, "Message is not a canonical proof message")
            if fields["game_id"] != game_id:
                return VerificationResult(False, "Message gameId does not match")
            if fields["side"] != side.value:
                return VerificationResult(False, "Message side does not match")
            if fields["seed"].lower() != seed.lower():
                return VerificationResult(False, "Message seed does not match the disclosed seed")
            seed = fields["seed"]

        if not _is_hex(proof, PROOF_HEX_LENGTH):
            return VerificationResult(
                False, f"Proof must be {PROOF_HEX_LENGTH} hex characters"
            )
        if not _is_hex(seed, SEED_HEX_LENGTH):
            return VerificationResult(
                False, f"Seed must be {SEED_HEX_LENGTH} hex characters"
            )

        expected = bytes.fromhex(construct_proof(game_id, side, seed, tag))
        supplied = bytes.fromhex(proof)
        if not hmac.compare_digest(expected, supplied):
            logger.info(f"Proof mismatch for game {game_id}")
            return VerificationResult(False, "Proof does not match the disclosed inputs")

        return VerificationResult(True, "Proof is valid")
    except Exception as e:
        logger.warning(f"Verification error for game {game_id!r}: {e}")
        return VerificationResult(False, "Malformed verification input")
