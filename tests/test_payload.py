import pytest

from ig_exceptions import BadResponseException
from ig_payload import (
    LazyPayload,
    comment_connection,
    deep_get,
    pick_first_path,
    reply_connection,
    sections_extractor,
    timeline_connection,
)


def test_deep_get_walks_dicts_and_lists():
    data = {"a": {"b": [{"c": 1}, {"c": 2}]}}
    assert deep_get(data, ["a", "b", 1, "c"]) == 2
    assert deep_get(data, ["a", "x"]) is None
    assert deep_get(data, ["a", "b", 5]) is None
    assert deep_get(data, []) == data


def test_pick_first_path_skips_missing():
    data = {"user": {"pk": "9"}}
    assert pick_first_path(data, [["owner", "id"], ["user", "pk"]]) == "9"
    assert pick_first_path(data, [["owner", "id"]]) is None


def test_comment_connection_primary_path():
    payload = {
        "data": {
            "xdt_shortcode_media": {
                "edge_media_to_parent_comment": {
                    "edges": [{"node": {"id": "1"}}],
                    "page_info": {"has_next_page": True, "end_cursor": "abc"},
                    "count": 11,
                }
            }
        }
    }

    connection = comment_connection(payload)
    assert len(connection["edges"]) == 1
    assert connection["page_info"]["has_next_page"] is True
    assert connection["count"] == 11


def test_comment_connection_suffix_fallback():
    payload = {
        "data": {
            "some_dynamic_key__comments__connection": {
                "edges": [{"node": {"id": "2"}}],
                "page_info": {"has_next_page": False},
                "count": 1,
            }
        }
    }

    connection = comment_connection(payload)
    assert connection["edges"][0]["node"]["id"] == "2"
    assert connection["page_info"]["has_next_page"] is False


def test_reply_connection_threaded_comments():
    payload = {"data": {"comment": {"edge_threaded_comments": {"edges": [], "page_info": {}}}}}
    assert reply_connection(payload) == {"edges": [], "page_info": {}}


def test_timeline_connection_doc_id_shape():
    payload = {
        "data": {
            "xdt_api__v1__feed__user_timeline_graphql_connection": {
                "edges": [{"node": {"id": "3"}}],
                "page_info": {"has_next_page": False, "end_cursor": None},
            }
        }
    }
    assert timeline_connection(payload)["edges"][0]["node"]["id"] == "3"


def test_missing_connection_raises():
    with pytest.raises(BadResponseException):
        comment_connection({"data": {"something_else": {"count": 0}}})
    with pytest.raises(BadResponseException):
        timeline_connection({"status": "ok"})


def test_sections_extractor():
    extract = sections_extractor([["data", "top"], []])
    assert extract({"sections": [], "more_available": False}) == {"sections": [], "more_available": False}
    assert extract({"data": {"top": {"sections": [1]}}}) == {"sections": [1]}
    with pytest.raises(BadResponseException):
        extract({"data": {}})


def test_lazy_payload_prefers_partial():
    calls = []

    def fetch():
        calls.append(1)
        return {"id": "1", "caption": "full caption"}

    payload = LazyPayload({"id": "1"}, fetch)
    assert payload.get(["id"]) == "1"
    assert calls == []
    assert not payload.is_fully_loaded

    assert payload.get(["caption"]) == "full caption"
    assert payload.get(["caption"]) == "full caption"
    assert payload.get(["location"], "nowhere") == "nowhere"
    assert calls == [1]
    assert payload.is_fully_loaded


def test_lazy_payload_without_fetcher():
    payload = LazyPayload({"owner": {"id": "5"}})
    assert payload.get(["owner", "username"]) is None
    assert payload.get_first([["owner", "username"], ["owner", "id"]]) == "5"
    assert payload.full == payload.partial


def test_timeline_connection_ignores_unrelated_connections():
    payload = {"data": {"xdt_api__v1__friendships__followers_connection": {"edges": [], "page_info": {}}}}
    with pytest.raises(BadResponseException):
        timeline_connection(payload)
