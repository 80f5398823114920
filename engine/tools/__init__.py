"""
Leveling engine tools.

Submodules:
- bid_level: Bid leveling across contractors for one division
"""

from tools import bid_level

__all__ = [
    "bid_level",
]
