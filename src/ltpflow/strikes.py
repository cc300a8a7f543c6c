"""Strike price helpers for index option chains."""

import math
from typing import Callable, List

# (index_name, ltp, strike_diff) -> ATM strike
StrikeRounder = Callable[[str, float, float], float]


def round_to_nearest_strike(index_name: str, ltp: float, strike_diff: float) -> float:
    """ATM strike: the listed strike nearest to the index LTP."""
    if strike_diff <= 0:
        raise ValueError(f"Strike increment for {index_name} must be positive, got {strike_diff}")
    # Half-up on ties so 20025 with a 50 step rounds to 20050
    return math.floor(ltp / strike_diff + 0.5) * strike_diff


def strike_window(atm_strike: float, strike_diff: float, strike_range: int) -> List[float]:
    """
    Symmetric window of strikes around the ATM strike.

    Returns atm + i * strike_diff for i in [-strike_range, strike_range],
    skipping non-positive strikes, in ascending order.
    """
    strikes = []
    for i in range(-strike_range, strike_range + 1):
        strike = atm_strike + i * strike_diff
        if strike <= 0:
            continue
        strikes.append(strike)
    return strikes
