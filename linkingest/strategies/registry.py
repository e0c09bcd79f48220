from __future__ import annotations

from types import MappingProxyType

from linkingest.strategies.base import Strategy
from linkingest.strategies.beacons import BEACONS_STRATEGY
from linkingest.strategies.laylo import LAYLO_STRATEGY
from linkingest.strategies.linktree import LINKTREE_STRATEGY
from linkingest.strategies.youtube import YOUTUBE_STRATEGY

STRATEGIES: tuple[Strategy, ...] = (
    LINKTREE_STRATEGY,
    BEACONS_STRATEGY,
    YOUTUBE_STRATEGY,
    LAYLO_STRATEGY,
)
STRATEGIES_BY_JOB_TYPE = MappingProxyType({strategy.job_type: strategy for strategy in STRATEGIES})


def get_strategy(job_type: str) -> Strategy | None:
    return STRATEGIES_BY_JOB_TYPE.get(job_type)


def match_strategy(url: str) -> Strategy | None:
    for strategy in STRATEGIES:
        if strategy.validate(url):
            return strategy
    return None
