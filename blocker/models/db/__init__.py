from .skylinks import BlockedSkylink
from .checkpoints import LatestBlockTimestamp, CHECKPOINT_ROW_ID

__all__ = [
    "BlockedSkylink",
    "LatestBlockTimestamp",
    "CHECKPOINT_ROW_ID",
]
