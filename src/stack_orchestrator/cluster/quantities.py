"""
stack_orchestrator.cluster.quantities

Kubernetes resource quantity parsing.

Responsibilities:
- Parse CPU quantities ("250m", "2", "1500000n") into cores.
- Parse memory quantities ("512Mi", "1G", "1e3") into bytes.
"""

from __future__ import annotations

_CPU_SUFFIXES = (("n", 1e-9), ("u", 1e-6), ("m", 1e-3))

# Binary suffixes first so "Mi" is not read as "M".
_MEMORY_SUFFIXES = (
    ("Ei", 1024**6),
    ("Pi", 1024**5),
    ("Ti", 1024**4),
    ("Gi", 1024**3),
    ("Mi", 1024**2),
    ("Ki", 1024),
    ("E", 10**18),
    ("P", 10**15),
    ("T", 10**12),
    ("G", 10**9),
    ("M", 10**6),
    ("k", 10**3),
)


def parse_cpu(quantity: str | int | float | None) -> float:
    if quantity is None or quantity == "":
        return 0.0
    if isinstance(quantity, int | float):
        return float(quantity)
    q = quantity.strip()
    for suffix, factor in _CPU_SUFFIXES:
        if q.endswith(suffix):
            return float(q[: -len(suffix)]) * factor
    return float(q)


def parse_memory(quantity: str | int | float | None) -> int:
    if quantity is None or quantity == "":
        return 0
    if isinstance(quantity, int | float):
        return int(quantity)
    q = quantity.strip()
    for suffix, factor in _MEMORY_SUFFIXES:
        if q.endswith(suffix):
            return round(float(q[: -len(suffix)]) * factor)
    return round(float(q))
