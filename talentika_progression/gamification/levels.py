"""
Level Calculator

Maps total XP earned to a level. The curve is content data: a table of
cumulative thresholds followed by a fixed step per level.

Default curve (no table configured):
- Level 1: 0 XP
- Level 2: 1000 XP
- Level n: (n - 1) * 1000 XP

With LEVEL_THRESHOLDS=100,300,600 and LEVEL_XP_PER_LEVEL=500:
- Level 2 at 100, level 3 at 300, level 4 at 600, level 5 at 1100, ...
"""

from bisect import bisect_right
from typing import Dict, List, Optional, Sequence

from talentika_progression import config


class LevelCurve:
    """Monotonic XP -> level step function"""

    def __init__(self, thresholds: Sequence[int] = (), xp_per_level: int = 1000):
        thresholds = [int(t) for t in thresholds]
        if xp_per_level <= 0:
            raise ValueError("xp_per_level must be positive")
        previous = 0
        for threshold in thresholds:
            if threshold <= previous:
                raise ValueError("Level thresholds must be positive and strictly increasing")
            previous = threshold
        self._thresholds: List[int] = thresholds
        self._xp_per_level = xp_per_level

    @classmethod
    def from_config(cls) -> "LevelCurve":
        return cls(config.LEVEL_THRESHOLDS, config.LEVEL_XP_PER_LEVEL)

    @property
    def table_top(self) -> int:
        """XP at which the table ends and the fixed step begins"""
        return self._thresholds[-1] if self._thresholds else 0

    def level_of(self, total_xp: int) -> int:
        """Level for a total XP value. Negative input is treated as 0."""
        total_xp = max(0, int(total_xp))
        table_level = 1 + bisect_right(self._thresholds, total_xp)
        if total_xp < self.table_top:
            return table_level
        return table_level + (total_xp - self.table_top) // self._xp_per_level

    def xp_for_level(self, level: int) -> int:
        """Minimum total XP needed to reach `level`"""
        if level <= 1:
            return 0
        if level - 2 < len(self._thresholds):
            return self._thresholds[level - 2]
        extra_levels = level - 1 - len(self._thresholds)
        return self.table_top + extra_levels * self._xp_per_level

    def level_info(self, total_xp: int) -> Dict[str, float]:
        """
        Calculate level progress from total XP

        Returns:
            {
                'current_level': int,
                'xp_in_current_level': int,
                'xp_to_next_level': int,
                'total_xp_for_next_level': int,
                'progress_percent': float (0-100)
            }
        """
        total_xp = max(0, int(total_xp))
        level = self.level_of(total_xp)
        level_floor = self.xp_for_level(level)
        next_floor = self.xp_for_level(level + 1)
        span = next_floor - level_floor

        return {
            "current_level": level,
            "xp_in_current_level": total_xp - level_floor,
            "xp_to_next_level": next_floor - total_xp,
            "total_xp_for_next_level": next_floor,
            "progress_percent": min(100.0, (total_xp - level_floor) * 100.0 / span),
        }


_default_curve: Optional[LevelCurve] = None


def default_curve() -> LevelCurve:
    """Curve built from configuration (cached)"""
    global _default_curve
    if _default_curve is None:
        _default_curve = LevelCurve.from_config()
    return _default_curve


def calculate_level_from_xp(total_xp: int, curve: Optional[LevelCurve] = None) -> int:
    """Level for `total_xp` on the given (or configured) curve"""
    return (curve or default_curve()).level_of(total_xp)
