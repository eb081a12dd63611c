#!/usr/bin/env python3
"""
Helpers for reading Instagram JSON payloads.
"""

from typing import Any, Callable, Dict, List, Optional, Sequence

from ig_exceptions import BadResponseException

Path = Sequence[Any]


def deep_get(data: Any, path: Path) -> Any:
    cur = data
    for key in path:
        if isinstance(cur, dict) and key in cur:
            cur = cur[key]
            continue
        if isinstance(cur, list) and isinstance(key, int) and 0 <= key < len(cur):
            cur = cur[key]
            continue
        return None
    return cur


def pick_first_path(data: Any, paths: List[Path]) -> Any:
    for path in paths:
        value = deep_get(data, path)
        if value is not None:
            return value
    return None


def find_connection_in_data(payload: dict, suffixes: List[str]) -> Optional[dict]:
    data = payload.get("data")
    if not isinstance(data, dict):
        return None
    for key, value in data.items():
        if not isinstance(value, dict):
            continue
        for suffix in suffixes:
            if key.endswith(suffix):
                return value
    return None


def connection_extractor(paths: List[Path], suffixes: Optional[List[str]] = None) -> Callable[[dict], dict]:
    """
    Build an edge extractor for NodeIterator.

    The extractor returns the first connection ({"edges", "page_info",
    "count"}) found at one of ``paths``, falling back to a key under "data"
    ending with one of ``suffixes`` (doc_id responses use generated keys
    such as ``xdt_api__v1__feed__user_timeline_graphql_connection``).
    """

    def extract(payload: dict) -> dict:
        for path in paths:
            connection = deep_get(payload, path)
            if isinstance(connection, dict) and "edges" in connection:
                return connection
        if suffixes:
            connection = find_connection_in_data(payload, suffixes)
            if isinstance(connection, dict) and "edges" in connection:
                return connection
        raise BadResponseException("No connection found in response: {}".format(sorted(payload.get("data") or {})))

    return extract


def sections_extractor(paths: List[Path]) -> Callable[[dict], dict]:
    """Build a sections extractor for SectionIterator."""

    def extract(payload: dict) -> dict:
        for path in paths:
            data = deep_get(payload, path) if path else payload
            if isinstance(data, dict) and "sections" in data:
                return data
        raise BadResponseException("No sections found in response.")

    return extract


class LazyPayload:
    """
    Two-tier access to a node that may only be partially loaded.

    get() looks the path up in the partial payload first. On a miss the full
    payload is fetched once through ``fetch_full`` and cached; the lookup is
    retried there and a still-missing value is returned as None.
    """

    def __init__(self, partial: Dict[str, Any], fetch_full: Optional[Callable[[], Dict[str, Any]]] = None):
        self._partial = partial
        self._fetch_full = fetch_full
        self._full: Optional[Dict[str, Any]] = None

    @property
    def partial(self) -> Dict[str, Any]:
        return self._partial

    @property
    def full(self) -> Dict[str, Any]:
        if self._full is None:
            if self._fetch_full is None:
                return self._partial
            self._full = self._fetch_full()
        return self._full

    @property
    def is_fully_loaded(self) -> bool:
        return self._full is not None

    def get(self, path: Path, default: Any = None) -> Any:
        value = deep_get(self._partial, path)
        if value is not None:
            return value
        if self._fetch_full is not None:
            value = deep_get(self.full, path)
        return default if value is None else value

    def get_first(self, paths: List[Path], default: Any = None) -> Any:
        value = pick_first_path(self._partial, paths)
        if value is None and self._fetch_full is not None:
            value = pick_first_path(self.full, paths)
        return default if value is None else value


comment_connection = connection_extractor(
    [
        ["data", "xdt_api__v1__media__media_id__comments__connection"],
        ["data", "xdt_shortcode_media", "edge_media_to_parent_comment"],
        ["data", "shortcode_media", "edge_media_to_parent_comment"],
        ["data", "xdt_shortcode_media", "edge_media_to_comment"],
        ["data", "shortcode_media", "edge_media_to_comment"],
    ],
    ["__comments__connection"],
)

reply_connection = connection_extractor(
    [
        ["data", "comment", "edge_threaded_comments"],
        ["data", "comment", "edge_media_to_parent_comment"],
        ["data", "comment", "edge_media_to_comment"],
        ["data", "xdt_shortcode_media", "edge_media_to_comment"],
        ["data", "shortcode_media", "edge_media_to_comment"],
    ],
    ["__replies__connection", "__comments__replies__connection", "__child_comments__connection"],
)

timeline_connection = connection_extractor(
    [
        ["data", "user", "edge_owner_to_timeline_media"],
        ["data", "xdt_api__v1__feed__user_timeline_graphql_connection"],
    ],
    ["__timeline_graphql_connection"],
)
