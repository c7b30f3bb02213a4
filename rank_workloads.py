#!/usr/bin/env python3
"""
Memory Hall of Shame - Usage Aggregation and Ranking
Version: 0.2

This module fetches runtime stats for every listed app under a bounded number
of concurrent requests, reduces the per-instance samples of each app to an
average memory use, and ranks apps by how far their memory allocation exceeds
what they actually use (allocation / average use).

Note: Apps whose stats cannot be fetched, that are not running, or that report
      no usable instances are left out of the result rather than reported
      with a zero ratio.
"""

import sys
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence

from collect_stats import (
    RUNNING_STATE,
    InstanceRuntimeStat,
    StatsFetchError,
    WorkloadDescriptor,
    fetch_stats,
)

# Default configuration
DEFAULT_MAX_CONCURRENT: int = 2 # Stats requests allowed in flight at once

TABLE_HEADERS: List[str] = ["Name", "Space", "Alloc", "AvgUse", "Ratio"]


@dataclass(frozen=True)
class WorkloadUsageSummary:
    name: str
    guid: str
    space_guid: str
    instances: int # declared instance count
    memory_alloc: int # quota of instance "0", bytes
    avg_memory_use: int # bytes
    ratio: float

    def to_row(self) -> List[str]:
        """Row values in TABLE_HEADERS order."""
        return [
            self.name,
            self.space_guid,
            str(self.memory_alloc),
            str(self.avg_memory_use),
            f"{self.ratio:f}",
        ]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class NullProgress:
    """Progress sink that ignores every signal."""

    def start(self, total: int) -> None:
        pass

    def increment(self) -> None:
        pass

    def finish(self, message: str) -> None:
        pass


def summarize_workload(
    workload: WorkloadDescriptor,
    stats: Dict[str, InstanceRuntimeStat],
) -> Optional[WorkloadUsageSummary]:
    """
    Reduce the per-instance stats of one app to a usage summary.

    All instances of an app share one quota, so the quota of instance "0"
    stands for the allocation. The average is taken over the instances that
    reported stats, which can differ from the declared instance count.

    Args:
        workload (WorkloadDescriptor): The app being summarized
        stats (dict): Instance index to InstanceRuntimeStat

    Returns:
        WorkloadUsageSummary, or None when the app is skipped
    """
    if not stats:
        return None

    first = stats.get("0")
    if first is None or first.state != RUNNING_STATE:
        return None

    memory_alloc = first.mem_quota
    total_usage = sum(stat.mem_usage for stat in stats.values())
    avg_memory_use = total_usage // len(stats)
    if avg_memory_use <= 0:
        return None

    return WorkloadUsageSummary(
        name=workload.name,
        guid=workload.guid,
        space_guid=workload.space_guid,
        instances=workload.instances,
        memory_alloc=memory_alloc,
        avg_memory_use=avg_memory_use,
        ratio=memory_alloc / avg_memory_use,
    )


def aggregate_usage(
    channel: Any,
    workloads: Sequence[WorkloadDescriptor],
    max_concurrent: int = DEFAULT_MAX_CONCURRENT,
    progress: Any = None,
) -> List[WorkloadUsageSummary]:
    """
    Fetch stats for every app and collect the usage summaries.

    At most ``max_concurrent`` stats requests run at the same time. The call
    returns only once every app has been processed. A failure for one app
    never stops the others; the progress sink is advanced exactly once per
    app whatever the outcome.

    Args:
        channel: Command channel exposing curl(path)
        workloads (list): WorkloadDescriptor entries to process
        max_concurrent (int): Upper bound on in-flight stats requests
        progress: Sink with start(total) and increment()

    Returns:
        list: Summaries in completion order (unranked)
    """
    if max_concurrent < 1:
        raise ValueError(f"max_concurrent must be at least 1, got {max_concurrent}")

    progress = progress or NullProgress()
    summaries: List[WorkloadUsageSummary] = []
    results_lock = threading.Lock()
    progress_lock = threading.Lock()

    def _process(workload: WorkloadDescriptor) -> None:
        try:
            stats = fetch_stats(channel, workload.guid)
        except StatsFetchError:
            return
        finally:
            with progress_lock:
                progress.increment()

        summary = summarize_workload(workload, stats)
        if summary is not None:
            with results_lock:
                summaries.append(summary)

    progress.start(len(workloads))
    if not workloads:
        return []

    with ThreadPoolExecutor(max_workers=max_concurrent) as pool:
        futures = {pool.submit(_process, workload): workload for workload in workloads}
        for future in as_completed(futures):
            try:
                future.result()
            except Exception as e:
                workload = futures[future]
                print(f"Warning: Skipping app {workload.name} ({workload.guid}): {e}", file=sys.stderr)

    with results_lock:
        return list(summaries)


def rank_by_ratio(summaries: Sequence[WorkloadUsageSummary]) -> List[WorkloadUsageSummary]:
    """Most over-provisioned first; ties ordered by name, then guid."""
    return sorted(summaries, key=lambda s: (-s.ratio, s.name, s.guid))
