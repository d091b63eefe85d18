"""Level calculation from accumulated XP.

Levels are never stored: every component derives them from ``xp`` through
``level_for_xp`` so the two can never disagree.
"""

XP_PER_LEVEL = 100


def level_for_xp(xp: int) -> int:
    """Return the level for *xp*: ``xp // 100 + 1``."""
    if xp < 0:
        raise ValueError("xp must be non-negative")
    return xp // XP_PER_LEVEL + 1


def xp_into_level(xp: int) -> int:
    """Return the XP earned since the current level started."""
    return xp - (level_for_xp(xp) - 1) * XP_PER_LEVEL


def xp_to_next_level(xp: int) -> int:
    """Return the XP still missing to reach the next level."""
    return XP_PER_LEVEL - xp_into_level(xp)


def level_progress(xp: int) -> float:
    """Return progress through the current level as a fraction in ``[0, 1)``."""
    return xp_into_level(xp) / XP_PER_LEVEL
