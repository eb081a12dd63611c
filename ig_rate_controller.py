#!/usr/bin/env python3
"""
Sliding-window rate controller for Instagram queries.

Requests are tracked per query type ("channel"): a GraphQL query hash, a
doc_id, "iphone" for i.instagram.com or "other" for the remaining web
endpoints.
"""

import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional

PER_TYPE_SLIDING_WINDOW = 660
PER_TYPE_MARGIN = 6
GQL_ACCUMULATED_SLIDING_WINDOW = 600
GQL_ACCUMULATED_MAX_COUNT = 275
IPHONE_SLIDING_WINDOW = 1800
IPHONE_MARGIN = 18
IPHONE_MAX_COUNT = 199
HISTORY_KEEP = 60 * 60

UNTRACKED_TYPES = {"iphone", "other"}


def format_waittime(waittime: float) -> str:
    if waittime <= 666:
        return f"{round(waittime)} seconds"
    return f"{round(waittime / 60)} minutes"


class RateController:
    """
    Keeps request timestamps of one context and computes how long to wait
    before the next request of a given type may be sent.

    Subclass and override sleep() or count_per_sliding_window() to change
    the behaviour, then pass ``rate_controller=lambda ctx: MyController(ctx)``
    to the context.
    """

    def __init__(self, context):
        self._context = context
        self._query_timestamps: Dict[str, List[float]] = {}
        self._earliest_next_request_time = 0.0
        self._iphone_earliest_next_request_time = 0.0

    def sleep(self, secs: float) -> None:
        time.sleep(secs)

    def count_per_sliding_window(self, query_type: str) -> int:
        return 75 if query_type == "other" else 200

    def record_request(self, query_type: str, current_time: float) -> None:
        self._query_timestamps.setdefault(query_type, []).append(current_time)

    def _reqs_in_sliding_window(self, query_type: Optional[str], current_time: float, window: float) -> List[float]:
        if query_type is not None:
            timestamps = self._query_timestamps.get(query_type, [])
        else:
            # all GraphQL channels, i.e. query hashes and doc_ids
            timestamps = [
                t
                for key, times in self._query_timestamps.items()
                if key not in UNTRACKED_TYPES
                for t in times
            ]
        return [t for t in timestamps if t > current_time - window]

    def query_waittime(self, query_type: str, current_time: float, untracked_queries: bool = False) -> float:
        self._query_timestamps[query_type] = [
            t for t in self._query_timestamps.get(query_type, []) if t > current_time - HISTORY_KEEP
        ]

        def per_type_next_request_time() -> float:
            reqs = self._reqs_in_sliding_window(query_type, current_time, PER_TYPE_SLIDING_WINDOW)
            if len(reqs) < self.count_per_sliding_window(query_type):
                return 0.0
            return min(reqs) + PER_TYPE_SLIDING_WINDOW + PER_TYPE_MARGIN

        def gql_accumulated_next_request_time() -> float:
            if query_type in UNTRACKED_TYPES:
                return 0.0
            reqs = self._reqs_in_sliding_window(None, current_time, GQL_ACCUMULATED_SLIDING_WINDOW)
            if len(reqs) < GQL_ACCUMULATED_MAX_COUNT:
                return 0.0
            return min(reqs) + GQL_ACCUMULATED_SLIDING_WINDOW

        def untracked_next_request_time() -> float:
            if untracked_queries:
                if query_type == "iphone":
                    reqs = self._reqs_in_sliding_window(query_type, current_time, IPHONE_SLIDING_WINDOW)
                    if reqs:
                        self._iphone_earliest_next_request_time = min(reqs) + IPHONE_SLIDING_WINDOW + IPHONE_MARGIN
                else:
                    reqs = self._reqs_in_sliding_window(query_type, current_time, PER_TYPE_SLIDING_WINDOW)
                    if reqs:
                        self._earliest_next_request_time = min(reqs) + PER_TYPE_SLIDING_WINDOW + PER_TYPE_MARGIN
            return max(self._iphone_earliest_next_request_time, self._earliest_next_request_time)

        def iphone_next_request_time() -> float:
            if query_type != "iphone":
                return 0.0
            reqs = self._reqs_in_sliding_window(query_type, current_time, IPHONE_SLIDING_WINDOW)
            if len(reqs) < IPHONE_MAX_COUNT:
                return 0.0
            return min(reqs) + IPHONE_SLIDING_WINDOW + IPHONE_MARGIN

        next_request_time = max(
            per_type_next_request_time(),
            gql_accumulated_next_request_time(),
            untracked_next_request_time(),
            iphone_next_request_time(),
        )
        return max(0.0, next_request_time - current_time)

    def wait_before_query(self, query_type: str) -> None:
        waittime = self.query_waittime(query_type, time.monotonic(), False)
        if waittime > 15:
            resume_at = datetime.now() + timedelta(seconds=waittime)
            self._context.log(
                f"\nToo many queries in the last time. Need to wait {format_waittime(waittime)}, "
                f"until {resume_at:%H:%M}."
            )
        if waittime > 0:
            self.sleep(waittime)
        self.record_request(query_type, time.monotonic())

    def handle_429(self, query_type: str) -> None:
        current_time = time.monotonic()
        waittime = self.query_waittime(query_type, current_time, True)
        self._context.error(
            'Instagram responded with HTTP error "429 - Too Many Requests". Please do not run multiple '
            "crawls with the same session in parallel or within short sequence.",
            repeat_at_end=False,
        )
        self.dump_query_timestamps(current_time, query_type)
        if waittime > 1.5:
            resume_at = datetime.now() + timedelta(seconds=waittime)
            self._context.error(
                f"The request will be retried in {format_waittime(waittime)}, at {resume_at:%H:%M}.",
                repeat_at_end=False,
            )
        if waittime > 0:
            self.sleep(waittime)

    def dump_query_timestamps(self, current_time: float, failed_query_type: str) -> None:
        windows = [10, 11, 20, 22, 30, 60]
        self._context.error(
            "Number of requests within last {} minutes grouped by type:".format("/".join(str(w) for w in windows)),
            repeat_at_end=False,
        )
        for query_type, times in self._query_timestamps.items():
            counts = [sum(1 for t in times if t > current_time - w * 60) for w in windows]
            marker = "*" if query_type == failed_query_type else " "
            self._context.error(
                f" {marker} {query_type:>32}: " + " ".join(f"{count:4}" for count in counts),
                repeat_at_end=False,
            )
