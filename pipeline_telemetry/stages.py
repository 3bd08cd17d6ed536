"""
Security pipeline stages.

Every transaction walks the same four stages in order:
AUTH -> ENCRYPT -> DECRYPT -> HASH. HASH is terminal.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class Stage(str, Enum):
    AUTH = "AUTH"
    ENCRYPT = "ENCRYPT"
    DECRYPT = "DECRYPT"
    HASH = "HASH"

    @property
    def order(self) -> int:
        return STAGE_ORDER.index(self)

    @property
    def is_terminal(self) -> bool:
        return self is Stage.HASH

    def next(self) -> Optional["Stage"]:
        """Return the following stage, or None once the pipeline is done."""
        if self.is_terminal:
            return None
        return STAGE_ORDER[self.order + 1]


STAGE_ORDER = (Stage.AUTH, Stage.ENCRYPT, Stage.DECRYPT, Stage.HASH)


@dataclass(frozen=True)
class StageInfo:
    stage: Stage
    name: str
    status_text: str
    # forward: device -> gateway, reverse: gateway -> device, internal: gateway only
    direction: str
    throughput: float
    latency: float
    security_score: float
    dwell_ticks: Tuple[int, int]


STAGES = {
    Stage.AUTH: StageInfo(
        Stage.AUTH, "Authentication", "AUTHENTICATING...", "reverse",
        throughput=850, latency=1.2, security_score=98, dwell_ticks=(1, 2),
    ),
    Stage.ENCRYPT: StageInfo(
        Stage.ENCRYPT, "Encryption", "ENCRYPTING PAYLOAD", "forward",
        throughput=980, latency=0.5, security_score=99, dwell_ticks=(2, 4),
    ),
    Stage.DECRYPT: StageInfo(
        Stage.DECRYPT, "Decryption", "DECRYPTING DATA", "internal",
        throughput=960, latency=0.6, security_score=99, dwell_ticks=(3, 6),
    ),
    Stage.HASH: StageInfo(
        Stage.HASH, "Hash", "CALCULATING HASH", "forward",
        throughput=1200, latency=0.3, security_score=95, dwell_ticks=(2, 3),
    ),
}


def stage_metrics(stage: Stage, rng) -> dict:
    """Baseline metrics for a stage with a little random jitter."""
    info = STAGES[stage]
    return {
        "throughput": round(info.throughput * rng.uniform(0.85, 1.05)),
        "latency": round(info.latency * rng.uniform(0.8, 1.4), 2),
        "securityScore": min(100, round(info.security_score - rng.uniform(0, 3))),
    }


def dwell_for(stage: Stage, rng) -> int:
    low, high = STAGES[stage].dwell_ticks
    return rng.randint(low, high)
