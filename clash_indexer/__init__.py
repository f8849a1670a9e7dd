"""Off-chain mirror of a commit-reveal battle game contract.

Scans contract events into a local record store, heals gaps through periodic
discovery and reconciliation jobs, and resolves battles once both players
have revealed their teams.
"""

from .models import GameRecord, GameStatus, RevealPayload, RoundResult
from .resolution import compute_winner, get_round_result

__version__ = "0.1.0"

__all__ = [
    "GameRecord",
    "GameStatus",
    "RevealPayload",
    "RoundResult",
    "compute_winner",
    "get_round_result",
]
