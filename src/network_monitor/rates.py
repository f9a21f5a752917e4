"""
Interface rate and utilization computation.

Rates come from the difference between two successive counter snapshots
of the same device. Counter regressions (wrap or agent restart) are
clamped to zero for that interval; no attempt is made to correct a wrap.
"""

from typing import Optional

from ._types import (
    CongestionLevel,
    CongestionSummary,
    InterfaceCounters,
    InterfaceRates,
    InterfaceSnapshot,
)

# Peak utilization (%) above which each level applies
CONGESTION_BREAKPOINTS = [
    (90.0, CongestionLevel.CRITICAL),
    (75.0, CongestionLevel.HIGH),
    (50.0, CongestionLevel.MODERATE),
    (25.0, CongestionLevel.LOW),
]


def _delta(current: int, previous: int) -> int:
    return max(0, current - previous)


def _zero_rates(counters: InterfaceCounters) -> InterfaceRates:
    return InterfaceRates(counters=counters)


def compute_rates(
    current: InterfaceSnapshot,
    previous: Optional[InterfaceSnapshot],
) -> list[InterfaceRates]:
    """
    Derive per-interface rates from two snapshots.

    Interfaces are matched by index. Without a previous snapshot, for
    interfaces absent from it, or when no time has elapsed, all rates are
    zero. Utilization is clamped to [0, 100] and is zero for interfaces
    reporting no speed.
    """
    if previous is None:
        return [_zero_rates(c) for c in current.interfaces]

    elapsed = current.timestamp - previous.timestamp
    if elapsed <= 0:
        return [_zero_rates(c) for c in current.interfaces]

    by_index = {c.index: c for c in previous.interfaces}
    results = []

    for counters in current.interfaces:
        before = by_index.get(counters.index)
        if before is None:
            results.append(_zero_rates(counters))
            continue

        in_rate = _delta(counters.in_octets, before.in_octets) / elapsed
        out_rate = _delta(counters.out_octets, before.out_octets) / elapsed
        total_rate = in_rate + out_rate
        errors = (
            _delta(counters.in_errors, before.in_errors)
            + _delta(counters.out_errors, before.out_errors)
        )

        utilization = 0.0
        if counters.speed > 0:
            utilization = min(100.0, max(0.0, total_rate * 8 / counters.speed * 100))

        results.append(InterfaceRates(
            counters=counters,
            in_rate=in_rate,
            out_rate=out_rate,
            total_rate=total_rate,
            utilization=utilization,
            error_rate=errors / elapsed,
        ))

    return results


def congestion_level(max_utilization: float) -> CongestionLevel:
    for breakpoint, level in CONGESTION_BREAKPOINTS:
        if max_utilization > breakpoint:
            return level
    return CongestionLevel.NONE


def compute_congestion(interfaces: list[InterfaceRates]) -> CongestionSummary:
    """Aggregate interface rates into one per-device congestion summary."""
    if not interfaces:
        return CongestionSummary()

    utilizations = [i.utilization for i in interfaces]
    avg_utilization = sum(utilizations) / len(utilizations)
    max_utilization = max(utilizations)

    return CongestionSummary(
        avg_utilization=round(avg_utilization, 2),
        max_utilization=round(max_utilization, 2),
        total_traffic_rate=sum(i.total_rate for i in interfaces),
        level=congestion_level(max_utilization),
        error_rate=sum(i.error_rate for i in interfaces) / len(interfaces),
        active_interfaces=sum(1 for i in interfaces if i.counters.oper_status == "up"),
    )
