"""
LeadForge: places-driven lead acquisition and paced outreach.
"""

from leadforge.db import init_db
from leadforge.search import run_search
from leadforge.outreach import enqueue_campaign, poll_worker, get_stats

__all__ = [
    'init_db',
    'run_search',
    'enqueue_campaign',
    'poll_worker',
    'get_stats',
]
