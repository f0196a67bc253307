# matrix.py
from __future__ import annotations

import itertools
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

from .errors import ConfigError


class MatrixSpec:
    """
    Cross-product generator over named dimensions.

    Example:
        MatrixSpec({"rust": ["stable", "beta"], "os": ["linux"]})
        -> {"rust": "stable", "os": "linux"}, {"rust": "beta", "os": "linux"}

    Iteration is lazy and restartable: every iter() starts a fresh product.
    The first declared dimension varies slowest. A spec with no dimensions
    yields exactly one empty binding.
    """

    def __init__(
        self,
        dimensions: Optional[Mapping[str, Iterable[Any]]] = None,
        *,
        exclude: Iterable[Mapping[str, Any]] = (),
    ):
        self.dimensions: Dict[str, List[Any]] = {}
        for key, values in (dimensions or {}).items():
            if isinstance(values, (str, bytes)) or not isinstance(values, Iterable):
                raise ConfigError(f"Matrix dimension '{key}' must be a list of values")
            values = list(values)
            if not values:
                raise ConfigError(f"Matrix dimension '{key}' has no values")
            self.dimensions[str(key)] = values

        self.exclude: List[Dict[str, Any]] = [dict(e) for e in exclude]
        for entry in self.exclude:
            unknown = sorted(set(entry) - set(self.dimensions))
            if unknown:
                raise ConfigError(f"Matrix exclude references unknown dimensions: {unknown}")

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        if not self.dimensions:
            yield {}
            return

        keys = list(self.dimensions)
        for combo in itertools.product(*(self.dimensions[k] for k in keys)):
            binding = dict(zip(keys, combo))
            if any(all(binding.get(k) == v for k, v in ex.items()) for ex in self.exclude):
                continue
            yield binding

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def __bool__(self) -> bool:
        return bool(self.dimensions)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MatrixSpec):
            return NotImplemented
        return self.dimensions == other.dimensions and self.exclude == other.exclude

    def __repr__(self) -> str:
        if self.exclude:
            return f"MatrixSpec({self.dimensions!r}, exclude={self.exclude!r})"
        return f"MatrixSpec({self.dimensions!r})"


def instance_name(job_name: str, binding: Mapping[str, Any]) -> str:
    """'build' for an empty binding, 'build (stable, linux)' otherwise."""
    if not binding:
        return job_name
    return f"{job_name} ({', '.join(str(v) for v in binding.values())})"
