"""
Seeded fault injection for the platform simulator.

Faults are keyed by ``"<operation>:<resource type or lookup kind>"`` (for
example ``"create:aws_iam_instance_profile"``) and are either counted (fail
the next N calls) or probabilistic with a seeded RNG, so every scenario is
reproducible.
"""

import random
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import PlatformError, TransientPlatformError
from ..logging import get_logger

logger = get_logger(__name__)


class FaultType(Enum):
    """Kinds of platform misbehaviour that can be injected."""

    THROTTLING = "throttling"
    EVENTUAL_CONSISTENCY = "eventual_consistency"
    REJECTED = "rejected"
    SLOW_RESPONSE = "slow_response"


@dataclass
class FaultConfig:
    """Configuration for one injected fault."""

    fault_type: FaultType
    times: Optional[int] = 1  # None means "use probability"
    probability: float = 0.0
    delay_seconds: float = 0.0
    message: str = ""

    def __post_init__(self):
        if not 0.0 <= self.probability <= 1.0:
            raise ValueError("Fault probability must be between 0.0 and 1.0")

        if self.times is not None and self.times < 0:
            raise ValueError("times cannot be negative")


@dataclass
class FaultRecord:
    operation: str
    fault_type: FaultType
    timestamp: float = field(default_factory=time.time)


class FaultInjector:
    """Seeded fault injector for reproducible failure scenarios."""

    def __init__(self, seed: int = 42):
        self.seed = seed
        self.rng = random.Random(seed)
        self.configs: Dict[str, FaultConfig] = {}
        self.history: List[FaultRecord] = []
        self.enabled = True
        self._lock = threading.Lock()

    def configure(self, operation: str, config: FaultConfig):
        """Configure a fault for a specific operation key."""
        with self._lock:
            self.configs[operation] = config
        logger.debug(
            "Fault configured",
            operation=operation,
            fault_type=config.fault_type.value,
            times=config.times,
            probability=config.probability,
        )

    def _should_fire(self, operation: str) -> Optional[FaultConfig]:
        with self._lock:
            if not self.enabled or operation not in self.configs:
                return None

            config = self.configs[operation]
            if config.times is not None:
                if config.times == 0:
                    return None
                config.times -= 1
                return config

            return config if self.rng.random() < config.probability else None

    def check(self, operation: str):
        """Raise (or delay) if a fault is configured for *operation*."""
        config = self._should_fire(operation)
        if config is None:
            return

        with self._lock:
            self.history.append(FaultRecord(operation, config.fault_type))

        logger.warning("Injecting fault", operation=operation, fault_type=config.fault_type.value)

        if config.fault_type == FaultType.SLOW_RESPONSE:
            time.sleep(config.delay_seconds)
            return

        if config.fault_type == FaultType.THROTTLING:
            raise TransientPlatformError(
                operation, config.message or "Rate exceeded", code="ThrottlingException"
            )

        if config.fault_type == FaultType.EVENTUAL_CONSISTENCY:
            raise TransientPlatformError(
                operation,
                config.message or "referenced resource is not yet visible",
                code="InvalidParameterValue",
            )

        raise PlatformError(operation, config.message or "request rejected", code="Rejected")

    def fired(self, operation: Optional[str] = None) -> int:
        """How many faults fired, optionally for one operation key."""
        with self._lock:
            return sum(1 for r in self.history if operation is None or r.operation == operation)

    def reset(self):
        """Forget all configured faults and history."""
        with self._lock:
            self.configs.clear()
            self.history.clear()

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about injected faults."""
        with self._lock:
            counts: Dict[str, int] = {}
            for record in self.history:
                counts[record.fault_type.value] = counts.get(record.fault_type.value, 0) + 1
            return {"total_faults": len(self.history), "fault_type_counts": counts}
