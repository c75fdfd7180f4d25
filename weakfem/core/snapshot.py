from dataclasses import dataclass, field
from enum import Enum
from typing import Dict

import numpy as np


class ExportTransform(Enum):
    """Pure data transforms applied to a snapshot before export."""
    NONE = "none"
    DISPLACE = "displace"     # positions + scale * vector field


@dataclass
class Snapshot:
    """Copied state of every control point at one committed step."""
    step: int
    t: float
    positions: np.ndarray
    values: Dict[str, np.ndarray] = field(default_factory=dict)
    rates: Dict[str, np.ndarray] = field(default_factory=dict)
    external: Dict[str, np.ndarray] = field(default_factory=dict)
    occupied: np.ndarray | None = None

    def max_abs_rate(self, name: str, component: int | None = None) -> float:
        """max |rate| over occupied control points (0 when there are none)."""
        r = self.rates[name]
        if component is not None:
            r = r[:, component]
        if self.occupied is not None:
            r = r[self.occupied]
        return float(np.max(np.abs(r))) if r.size else 0.0

    def transformed(self, transform: ExportTransform = ExportTransform.NONE, *,
                    field: str | None = None, scale: float = 1.0) -> np.ndarray:
        """Export positions under ``transform``; the snapshot itself is unchanged."""
        transform = ExportTransform(transform)
        if transform is ExportTransform.NONE:
            return self.positions.copy()
        if field is None:
            raise ValueError(f"{transform.name} needs a field name")
        vec = self.values[field]
        if vec.shape != self.positions.shape:
            raise ValueError(f"field '{field}' with shape {vec.shape} cannot displace "
                             f"positions of shape {self.positions.shape}")
        return self.positions + scale * vec
