"""
Bid leveling: turn contractor bid documents for one division into a
comparable scope matrix.
"""

from tools.bid_level.bid_level import (
    _do_level_workflow,
    bid_level_main,
    bid_level_report_main,
    bid_level_worker_main,
)
from tools.bid_level.job_processors import process_bid_level_job

__all__ = [
    "_do_level_workflow",
    "bid_level_main",
    "bid_level_report_main",
    "bid_level_worker_main",
    "process_bid_level_job",
]
