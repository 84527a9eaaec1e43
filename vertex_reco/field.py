from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import numpy as np


__all__ = ["MagneticFieldCache", "ConstantMagneticField"]


@dataclass(slots=True)
class MagneticFieldCache:
    r"""
    Call-scoped lookup cache of a magnetic-field provider.

    One cache is created per vertex fit (see
    :class:`vertex_reco.linearizer.LinearizerState`) and is never shared
    between concurrent fits.

    Attributes
    ----------
    last_position : ndarray or None
        Position of the most recent lookup.
    last_value : ndarray or None
        Field vector (Tesla) returned by that lookup.
    lookups : int
        Number of lookups served through this cache.
    hits : int
        Lookups answered without consulting the provider.
    """
    last_position: Optional[np.ndarray] = None
    last_value: Optional[np.ndarray] = None
    lookups: int = 0
    hits: int = 0


@dataclass(frozen=True)
class ConstantMagneticField:
    r"""
    Homogeneous solenoidal field :math:`\mathbf{B} = (0, 0, B_z)`.

    Parameters
    ----------
    bz : float
        Longitudinal field strength in Tesla. ``0.0`` yields straight-line
        tracks.
    """
    bz: float = 2.0
    _value: np.ndarray = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_value", np.array([0.0, 0.0, float(self.bz)]))

    def make_cache(self) -> MagneticFieldCache:
        """Create a fresh, empty lookup cache."""
        return MagneticFieldCache()

    def field_at(self, position: np.ndarray, cache: MagneticFieldCache) -> np.ndarray:
        r"""
        Field vector at ``position``.

        Parameters
        ----------
        position : array_like, shape (3,)
            Global position (mm).
        cache : MagneticFieldCache
            Cache of the calling fit.

        Returns
        -------
        ndarray, shape (3,)
            Field in Tesla.
        """
        pos = np.asarray(position, dtype=np.float64)[:3]
        cache.lookups += 1
        if cache.last_position is not None and np.array_equal(cache.last_position, pos):
            cache.hits += 1
            return cache.last_value
        cache.last_position = pos.copy()
        cache.last_value = self._value.copy()
        return cache.last_value
