"""
Transaction engine.

Owns at most one in-flight transaction per device address and walks each one
through the stage pipeline, one tick at a time.
"""

import logging
import math
import random
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .registry import DeviceRegistry
from .stages import Stage, dwell_for, stage_metrics

logger = logging.getLogger(__name__)

TARGET_ACTIVE_FRACTION = 0.8
START_PROBABILITY = 0.6
MAX_STARTS_PER_TICK = 3


@dataclass
class Transaction:
    device_address: str
    stage: Stage
    remaining_ticks: int
    started_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class TelemetryEvent:
    source: str
    stage: Stage
    is_last_stage: bool
    metrics: dict
    ts: int

    def to_message(self) -> dict:
        return {
            "type": "telemetry",
            "source": self.source,
            "stageId": self.stage.value,
            "isLastStage": self.is_last_stage,
            "metrics": dict(self.metrics),
            "ts": self.ts,
        }


class TransactionEngine:
    def __init__(self, registry: DeviceRegistry, rng=None,
                 target_active_fraction=TARGET_ACTIVE_FRACTION,
                 start_probability=START_PROBABILITY,
                 max_starts_per_tick=MAX_STARTS_PER_TICK):
        self.registry = registry
        self.rng = rng or random.Random()
        self.target_active_fraction = target_active_fraction
        self.start_probability = start_probability
        self.max_starts_per_tick = max_starts_per_tick
        self._transactions: Dict[str, Transaction] = {}

    def __contains__(self, address) -> bool:
        return address in self._transactions

    @property
    def active_count(self) -> int:
        return len(self._transactions)

    def get(self, address: str) -> Optional[Transaction]:
        return self._transactions.get(address)

    def discard(self, address: str) -> bool:
        """Drop the in-flight transaction for a device, if any."""
        tx = self._transactions.pop(address, None)
        if tx is not None:
            logger.debug("Discarded %s transaction for %s", tx.stage.value, address)
        return tx is not None

    def tick(self, now: Optional[float] = None) -> List[TelemetryEvent]:
        """Run one engine tick and return the events it emitted."""
        now = time.time() if now is None else now
        self._start_transactions(now)
        return self._advance(now)

    def _start_transactions(self, now: float) -> None:
        population = len(self.registry)
        if population == 0:
            return

        target = math.ceil(population * self.target_active_fraction)
        room = target - len(self._transactions)
        if room <= 0:
            return
        if self.rng.random() >= self.start_probability:
            return

        idle = [a for a in self.registry.addresses() if a not in self._transactions]
        count = min(self.rng.randint(1, self.max_starts_per_tick), room, len(idle))
        for address in self.rng.sample(idle, count):
            self._transactions[address] = Transaction(
                device_address=address,
                stage=Stage.AUTH,
                remaining_ticks=dwell_for(Stage.AUTH, self.rng),
                started_at=now,
            )
            logger.debug("Started transaction for %s", address)

    def _advance(self, now: float) -> List[TelemetryEvent]:
        events = []
        ts = int(now * 1000)

        for address, tx in list(self._transactions.items()):
            tx.remaining_ticks -= 1
            if tx.remaining_ticks > 0:
                continue

            next_stage = tx.stage.next()
            events.append(TelemetryEvent(
                source=address,
                stage=tx.stage,
                is_last_stage=next_stage is None,
                metrics=stage_metrics(tx.stage, self.rng),
                ts=ts,
            ))
            self.registry.touch(address, now)

            if next_stage is None:
                del self._transactions[address]
            else:
                tx.stage = next_stage
                tx.remaining_ticks = dwell_for(next_stage, self.rng)

        return events
