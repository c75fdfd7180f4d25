import numpy as np

from weakfem.symbolic.symbols import FieldLayout


class ControlPoints:
    """
    Arena of control-point records.

    Elements and facets refer to control points by integer index only.  Each
    record holds a position, the values and rates of every internal field,
    the external-field slots and an occupancy flag.  Field storage is one
    array per kind with the columns given by the field layouts.
    """

    def __init__(self, positions: np.ndarray, internal: FieldLayout, external: FieldLayout):
        self.positions = np.asarray(positions, dtype=float)
        n = len(self.positions)
        self.internal = internal
        self.external_layout = external
        self.values = np.zeros((n, internal.n_components))
        self.rates = np.zeros((n, internal.n_components))
        self.external = np.zeros((n, external.n_components))
        self.is_occupied = np.zeros(n, dtype=bool)

    def __len__(self):
        return len(self.positions)

    @property
    def dim(self) -> int:
        return self.positions.shape[1]

    def value(self, name: str) -> np.ndarray:
        """View (n, n_components) of an internal field's values."""
        return self.values[:, self.internal.slice(name)]

    def rate(self, name: str) -> np.ndarray:
        return self.rates[:, self.internal.slice(name)]

    def external_value(self, name: str) -> np.ndarray:
        if name not in self.external_layout:
            raise KeyError(f"'{name}' is not an external field")
        return self.external[:, self.external_layout.slice(name)]

    def set_external(self, name: str, value, cp_ids=None):
        """Write prescribed values into the external slots of ``name``."""
        view = self.external_value(name)
        if cp_ids is None:
            view[:] = value
        else:
            view[np.asarray(cp_ids, dtype=np.int64)] = value

    def __repr__(self):
        return (f"ControlPoints(n={len(self)}, occupied={int(self.is_occupied.sum())}, "
                f"internal={self.internal.names}, external={self.external_layout.names})")
