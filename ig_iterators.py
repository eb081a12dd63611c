#!/usr/bin/env python3
"""
Lazy iterators over paginated Instagram responses.

NodeIterator walks "connection" shaped responses (edges + page_info) and can
be frozen to a checkpoint and thawed later. SectionIterator walks the
"sections" shape used by a few endpoints (sections of media batches with
more_available / next_max_id).
"""

import base64
import hashlib
import json
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, NamedTuple, Optional, Tuple, TypeVar

from ig_exceptions import AbortDownloadException, InvalidArgumentException, MismatchedCheckpointException

T = TypeVar("T")


class FrozenNodeIterator(NamedTuple):
    query_hash: Optional[str]
    query_variables: Dict[str, Any]
    query_referer: Optional[str]
    context_username: Optional[str]
    total_index: int
    best_before: Optional[float]
    remaining_data: Optional[Dict[str, Any]]
    first_node: Optional[Dict[str, Any]]
    doc_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return self._asdict()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FrozenNodeIterator":
        return cls(**{field: data.get(field) for field in cls._fields})


class NodeIterator(Iterator[T]):
    """
    Iterate the nodes of a GraphQL connection, fetching further pages on
    demand.

    Exactly one of ``query_hash`` and ``doc_id`` selects the query.
    ``edge_extractor`` maps a raw response to the connection dict
    (``edges``, ``page_info``, optionally ``count``), ``node_wrapper`` maps
    a node to the item handed out. ``first_data`` is an already extracted
    first page, which saves the initial request. ``is_first(item,
    first_item)`` decides whether an item should replace the tracked first
    item; without it, the first item ever returned is tracked.
    """

    _graphql_page_length = 12
    _shelf_life = timedelta(days=29)

    def __init__(
        self,
        context,
        query_hash: Optional[str],
        edge_extractor: Callable[[Dict[str, Any]], Dict[str, Any]],
        node_wrapper: Callable[[Dict[str, Any]], T],
        query_variables: Optional[Dict[str, Any]] = None,
        query_referer: Optional[str] = None,
        first_data: Optional[Dict[str, Any]] = None,
        is_first: Optional[Callable[[T, Optional[T]], bool]] = None,
        doc_id: Optional[str] = None,
    ):
        if (query_hash is None) == (doc_id is None):
            raise InvalidArgumentException("Exactly one of query_hash and doc_id must be given.")
        self._context = context
        self._query_hash = query_hash
        self._doc_id = doc_id
        self._edge_extractor = edge_extractor
        self._node_wrapper = node_wrapper
        self._query_variables = dict(query_variables) if query_variables is not None else {}
        self._query_referer = query_referer
        self._is_first = is_first
        self._page_index = 0
        self._total_index = 0
        self._data: Optional[Dict[str, Any]] = None
        self._best_before: Optional[datetime] = None
        self._first_node: Optional[Dict[str, Any]] = None
        self._exhausted = False
        if first_data is not None:
            self._data = first_data
            self._best_before = datetime.now() + NodeIterator._shelf_life

    def _query(self, after: Optional[str] = None) -> Dict[str, Any]:
        if self._doc_id is not None:
            pagination_variables: Dict[str, Any] = {"__relay_internal__pv__PolarisFeedShareMenurelayprovider": False}
            if after is not None:
                pagination_variables.update({
                    "after": after,
                    "before": None,
                    "first": NodeIterator._graphql_page_length,
                    "last": None,
                })
            response = self._context.doc_id_graphql_query(
                self._doc_id, {**self._query_variables, **pagination_variables}, self._query_referer
            )
        else:
            pagination_variables = {"first": NodeIterator._graphql_page_length}
            if after is not None:
                pagination_variables["after"] = after
            response = self._context.graphql_query(
                self._query_hash, {**self._query_variables, **pagination_variables}, self._query_referer
            )
        data = self._edge_extractor(response)
        if self._best_before is None:
            self._best_before = datetime.now() + NodeIterator._shelf_life
        return data

    def __iter__(self) -> "NodeIterator[T]":
        return self

    def __next__(self) -> T:
        if self._exhausted:
            raise StopIteration()
        if self._data is None:
            self._data = self._query()
        edges = self._data["edges"]
        if self._page_index < len(edges):
            node = edges[self._page_index]["node"]
            self._page_index += 1
            self._total_index += 1
            item = self._node_wrapper(node)
            if self._is_first is not None:
                if self._is_first(item, self.first_item):
                    self._first_node = node
            elif self._first_node is None:
                self._first_node = node
            return item
        page_info = self._data.get("page_info") or {}
        if page_info.get("has_next_page"):
            query_response = self._query(page_info.get("end_cursor"))
            new_edges = query_response.get("edges") or []
            # Some endpoints echo the previous page instead of advancing.
            if new_edges and json.dumps(edges) != json.dumps(new_edges):
                self._page_index = 0
                self._data = query_response
                return self.__next__()
        self._exhausted = True
        raise StopIteration()

    @property
    def count(self) -> Optional[int]:
        """Number of items the server announced for this connection, if any."""
        return self._data.get("count") if self._data is not None else None

    @property
    def total_index(self) -> int:
        """Number of items that have been returned so far."""
        return self._total_index

    @property
    def magic(self) -> str:
        """Short identifier of this iterator's query, used to name checkpoints."""
        magic_hash = hashlib.blake2b(digest_size=6)
        magic_hash.update(json.dumps(
            [self._query_hash if self._query_hash is not None else self._doc_id,
             self._query_variables, self._query_referer, self._context.username]
        ).encode())
        return base64.urlsafe_b64encode(magic_hash.digest()).decode()

    @property
    def first_item(self) -> Optional[T]:
        return self._node_wrapper(self._first_node) if self._first_node is not None else None

    @staticmethod
    def page_length() -> int:
        return NodeIterator._graphql_page_length

    def freeze(self) -> FrozenNodeIterator:
        """Checkpoint of the iteration state, restorable with thaw()."""
        remaining_data = None
        if self._data is not None:
            remaining_data = {**self._data, "edges": self._data["edges"][max(self._page_index - 1, 0):]}
        return FrozenNodeIterator(
            query_hash=self._query_hash,
            query_variables=dict(self._query_variables),
            query_referer=self._query_referer,
            context_username=self._context.username,
            total_index=max(self._total_index - 1, 0),
            best_before=self._best_before.timestamp() if self._best_before else None,
            remaining_data=remaining_data,
            first_node=self._first_node,
            doc_id=self._doc_id,
        )

    def thaw(self, frozen: FrozenNodeIterator) -> None:
        """
        Continue from a checkpoint taken with freeze().

        The iterator must be unused and configured with the same query,
        variables, referer and login as the frozen one.

        :raises InvalidArgumentException: The iterator has already been used.
        :raises MismatchedCheckpointException: The checkpoint belongs to another iteration or is incomplete.
        """
        if self._total_index or self._page_index:
            raise InvalidArgumentException("thaw() called on already-used iterator.")
        if (self._query_hash != frozen.query_hash or
                self._doc_id != frozen.doc_id or
                self._query_variables != frozen.query_variables or
                self._query_referer != frozen.query_referer or
                self._context.username != frozen.context_username):
            raise MismatchedCheckpointException("Mismatching resume information.")
        if not frozen.best_before:
            raise MismatchedCheckpointException('"best before" date missing.')
        if frozen.remaining_data is None:
            raise MismatchedCheckpointException('"remaining_data" missing.')
        self._total_index = frozen.total_index
        self._best_before = datetime.fromtimestamp(frozen.best_before)
        self._data = frozen.remaining_data
        self._exhausted = False
        if frozen.first_node is not None:
            self._first_node = frozen.first_node


class SectionIterator(Iterator[T]):
    """Iterate the media of a "sections" shaped endpoint."""

    def __init__(
        self,
        context,
        sections_extractor: Callable[[Dict[str, Any]], Dict[str, Any]],
        media_wrapper: Callable[[Dict[str, Any]], T],
        query_path: str,
        first_data: Optional[Dict[str, Any]] = None,
    ):
        self._context = context
        self._sections_extractor = sections_extractor
        self._media_wrapper = media_wrapper
        self._query_path = query_path
        self._data = self._sections_extractor(first_data) if first_data is not None else None
        self._section_index = 0
        self._media_index = 0
        self._exhausted = False

    def _query(self, max_id: Optional[str] = None) -> Dict[str, Any]:
        params = {"__a": "1", "__d": "dis"}
        if max_id is not None:
            params["max_id"] = max_id
        return self._sections_extractor(self._context.get_json(self._query_path, params))

    def __iter__(self) -> "SectionIterator[T]":
        return self

    @staticmethod
    def _first_section_has_media(data: Dict[str, Any]) -> bool:
        sections = data.get("sections") or []
        return bool(sections and sections[0]["layout_content"]["medias"])

    def __next__(self) -> T:
        if self._exhausted:
            raise StopIteration()
        if self._data is None:
            self._data = self._query()
        while True:
            sections = self._data.get("sections") or []
            while self._section_index < len(sections):
                medias = sections[self._section_index]["layout_content"]["medias"]
                if self._media_index < len(medias):
                    media = medias[self._media_index]["media"]
                    self._media_index += 1
                    return self._media_wrapper(media)
                self._section_index += 1
                self._media_index = 0
            if not (self._data.get("more_available") and sections):
                break
            self._data = self._query(self._data.get("next_max_id"))
            self._section_index = 0
            self._media_index = 0
            # a fetched page without media ends the iteration
            if not self._first_section_has_media(self._data):
                break
        self._exhausted = True
        raise StopIteration()


@contextmanager
def resumable_iteration(
    context,
    iterator: Iterator,
    load: Callable[[Any, str], Optional[FrozenNodeIterator]],
    save: Callable[[FrozenNodeIterator, str], None],
    format_path: Callable[[str], str],
    check_bbd: bool = True,
    enabled: bool = True,
    clear: Optional[Callable[[str], None]] = None,
):
    """
    Resume ``iterator`` from a saved checkpoint, and save one when the
    iteration is aborted.

    Yields ``(is_resuming, start_index)``. A checkpoint is loaded from
    ``format_path(iterator.magic)``; expired or mismatching checkpoints are
    reported and ignored. On KeyboardInterrupt or AbortDownloadException
    inside the block the iterator is frozen and saved before the exception
    propagates. ``clear(path)`` is called when the block completes normally.

    Only NodeIterator can be resumed; other iterators, or ``enabled=False``,
    yield ``(False, 0)``.
    """
    if not enabled or not isinstance(iterator, NodeIterator):
        yield False, 0
        return
    is_resuming = False
    start_index = 0
    resume_file_path = format_path(iterator.magic)
    fni = load(context, resume_file_path)
    if fni is not None:
        try:
            if check_bbd and fni.best_before and datetime.fromtimestamp(fni.best_before) < datetime.now():
                raise InvalidArgumentException('"Best before" date exceeded.')
            iterator.thaw(fni)
            is_resuming = True
            start_index = iterator.total_index
            context.log(f"Resuming from {resume_file_path}.")
        except InvalidArgumentException as exc:
            context.error(f"Warning: Not resuming from {resume_file_path}: {exc}")
    try:
        yield is_resuming, start_index
    except (KeyboardInterrupt, AbortDownloadException):
        save(iterator.freeze(), resume_file_path)
        context.log(f"\nSaved resume information to {resume_file_path}.")
        raise
    if clear is not None:
        clear(resume_file_path)


def iterate_resumable(
    context,
    iterator: Iterator[T],
    load: Callable[[Any, str], Optional[FrozenNodeIterator]],
    save: Callable[[FrozenNodeIterator, str], None],
    format_path: Callable[[str], str],
    check_bbd: bool = True,
    enabled: bool = True,
    abort_check: Optional[Callable[[T], None]] = None,
    clear: Optional[Callable[[str], None]] = None,
) -> Iterator[Tuple[T, bool, int]]:
    """
    Generator form of resumable_iteration(), yielding
    ``(item, is_resuming, start_index)``.

    ``abort_check(item)`` is called for every item and may raise
    AbortDownloadException to stop the crawl with a checkpoint.
    """
    with resumable_iteration(context, iterator, load, save, format_path,
                             check_bbd=check_bbd, enabled=enabled, clear=clear) as (is_resuming, start_index):
        for item in iterator:
            if abort_check is not None:
                abort_check(item)
            yield item, is_resuming, start_index
