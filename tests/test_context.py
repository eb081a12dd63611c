import json

import pytest
import requests

from conftest import FakeResponse
from ig_context import IPHONE_HOST, TEST_LOGIN_QUERY_HASH, IGContext
from ig_exceptions import (
    AbortDownloadException,
    ConnectionException,
    IPhoneSupportDisabledException,
    LoginRequiredException,
    QueryReturnedBadRequestException,
    QueryReturnedForbiddenException,
    QueryReturnedNotFoundException,
    TooManyRequestsException,
)

OK = {"status": "ok", "data": {}}


def retry_entries(context):
    return [entry for entry in context.error_log if entry.endswith("[retrying]")]


def test_defaults(context):
    assert context.max_connection_attempts == 3
    assert context.request_timeout == 300.0
    assert context.iphone_support is True
    assert not context.is_logged_in
    assert context.csrf_token == ""
    assert context.error_log == []


def test_get_json_returns_body_and_merges_cookies(context, fake_session):
    fake_session.queue(FakeResponse(200, {"status": "ok", "value": 1}, cookies={"csrftoken": "tok1"}))
    assert context.get_json("api/v1/some/endpoint/", {"a": "b"}) == {"status": "ok", "value": 1}
    assert context.cookies["csrftoken"] == "tok1"
    assert context.csrf_token == "tok1"
    sent = fake_session.requests[0]
    assert sent["method"] == "GET"
    assert sent["url"] == "https://www.instagram.com/api/v1/some/endpoint/"
    assert sent["params"] == {"a": "b"}
    assert sent["allow_redirects"] is False


def test_channels_recorded_per_query_type(context, fake_session):
    fake_session.queue(*[FakeResponse(200, OK) for _ in range(4)])
    context.graphql_query("hash1", {"id": "1"})
    context.doc_id_graphql_query("doc1", {"id": "1"})
    context.get_json("api/v1/x/", {})
    context.get_iphone_json("api/v1/feed/", {})
    assert set(context.rate_controller._query_timestamps) == {"hash1", "doc1", "other", "iphone"}


def test_graphql_query_encodes_variables(context, fake_session):
    fake_session.queue(FakeResponse(200, OK))
    context.graphql_query("hash1", {"id": "1", "first": 12}, referer="https://www.instagram.com/someone/")
    sent = fake_session.requests[0]
    assert sent["params"]["query_hash"] == "hash1"
    assert json.loads(sent["params"]["variables"]) == {"id": "1", "first": 12}
    assert sent["headers"]["Referer"] == "https://www.instagram.com/someone/"


def test_doc_id_query_is_posted(context, fake_session):
    fake_session.queue(FakeResponse(200, OK))
    context.doc_id_graphql_query("123", {"id": "1"})
    sent = fake_session.requests[0]
    assert sent["method"] == "POST"
    assert sent["data"]["doc_id"] == "123"
    assert sent["data"]["server_timestamps"] == "true"
    assert sent["headers"]["Content-Type"] == "application/x-www-form-urlencoded"


def test_missing_status_field_is_reported(context, fake_session):
    fake_session.queue(FakeResponse(200, {"data": {}}))
    context.graphql_query("hash1", {})
    assert any("status" in entry for entry in context.error_log)


def test_429_then_success_retries(context, fake_session, sleeps):
    fake_session.queue(FakeResponse(429), FakeResponse(429), FakeResponse(200, OK))
    assert context.graphql_query("hash1", {}) == OK
    assert len(fake_session.requests) == 3
    assert len(retry_entries(context)) == 2
    # 429 explanations are printed but not kept for the end-of-run summary
    assert len(context.error_log) == 2
    assert sleeps


def test_429_exhaustion_raises_too_many_requests(context, fake_session):
    fake_session.queue(*[FakeResponse(429) for _ in range(3)])
    with pytest.raises(TooManyRequestsException) as excinfo:
        context.graphql_query("hash1", {})
    assert "graphql/query" in str(excinfo.value)
    assert len(fake_session.requests) == 3


def test_attempts_are_bounded(fake_session, sleeps):
    context = IGContext(sleep=False, quiet=True, max_connection_attempts=5)
    fake_session.queue(*[FakeResponse(500) for _ in range(5)])
    with pytest.raises(ConnectionException):
        context.get_json("api/v1/x/", {})
    assert len(fake_session.requests) == 5
    assert len(retry_entries(context)) == 4


def test_single_attempt_never_retries(fake_session, sleeps):
    context = IGContext(sleep=False, quiet=True, max_connection_attempts=1)
    fake_session.queue(FakeResponse(429))
    with pytest.raises(TooManyRequestsException):
        context.get_json("api/v1/x/", {})
    assert context.error_log == []


def test_404_is_retried_then_terminal(context, fake_session):
    fake_session.queue(*[FakeResponse(404, text="") for _ in range(3)])
    with pytest.raises(QueryReturnedNotFoundException):
        context.get_json("api/v1/x/", {})
    assert len(fake_session.requests) == 3


def test_404_then_success(context, fake_session):
    fake_session.queue(FakeResponse(404), FakeResponse(200, OK))
    assert context.get_json("api/v1/x/", {}) == OK


@pytest.mark.parametrize("message", ["feedback_required", "checkpoint_required", "challenge_required"])
def test_400_with_abort_marker_aborts(context, fake_session, message):
    fake_session.queue(FakeResponse(400, {"status": "fail", "message": message}))
    with pytest.raises(AbortDownloadException):
        context.get_json("api/v1/x/", {})
    assert len(fake_session.requests) == 1


def test_plain_400_is_retried(context, fake_session):
    fake_session.queue(*[FakeResponse(400, {"status": "fail", "message": "bad"}) for _ in range(3)])
    with pytest.raises(QueryReturnedBadRequestException) as excinfo:
        context.get_json("api/v1/x/", {})
    assert "bad" in str(excinfo.value)
    assert len(fake_session.requests) == 3


def test_fatal_status_code_aborts_immediately(fake_session, sleeps):
    context = IGContext(sleep=False, quiet=True, fatal_status_codes=[429])
    fake_session.queue(FakeResponse(429, text="slow down"))
    with pytest.raises(AbortDownloadException) as excinfo:
        context.get_json("api/v1/x/", {})
    assert "slow down" in str(excinfo.value)
    assert len(fake_session.requests) == 1


def test_login_redirect_when_anonymous(context, fake_session):
    fake_session.queue(FakeResponse(302, headers={"Location": "https://www.instagram.com/accounts/login/?next=/x/"}))
    with pytest.raises(LoginRequiredException):
        context.get_json("api/v1/x/", {})
    assert len(fake_session.requests) == 1


def test_login_redirect_when_logged_in_aborts(context, fake_session):
    context.load_session("someone", {"sessionid": "s", "csrftoken": "c", "ds_user_id": "1"})
    fake_session.queue(FakeResponse(302, headers={"Location": "https://i.instagram.com/accounts/login/"}))
    with pytest.raises(AbortDownloadException):
        context.get_json("api/v1/x/", {})


def test_non_ok_status_is_retried(context, fake_session):
    fake_session.queue(FakeResponse(200, {"status": "fail", "message": "try later"}), FakeResponse(200, OK))
    assert context.get_json("api/v1/x/", {}) == OK
    assert "try later" in retry_entries(context)[0]


def test_invalid_json_is_a_connection_error(fake_session, sleeps):
    context = IGContext(sleep=False, quiet=True, max_connection_attempts=1)
    fake_session.queue(FakeResponse(200, text="<html>"))
    with pytest.raises(ConnectionException):
        context.get_json("api/v1/x/", {})


def test_transport_errors_become_connection_errors(context, fake_session):
    fake_session.queue(requests.exceptions.Timeout("timed out"), FakeResponse(200, OK))
    assert context.get_json("api/v1/x/", {}) == OK
    assert "timed out" in retry_entries(context)[0]


def test_iphone_headers_follow_server_updates(context, fake_session):
    context.load_session("someone", {"sessionid": "s", "csrftoken": "c", "ds_user_id": "42", "mid": "m1"})
    fake_session.queue(
        FakeResponse(200, OK, headers={"ig-set-ig-u-rur": "RUR1", "x-ig-set-www-claim": "claim1"}),
        FakeResponse(200, OK),
    )
    context.get_iphone_json("api/v1/feed/", {})
    assert context.iphone_headers["ig-u-rur"] == "RUR1"
    assert context.iphone_headers["x-ig-www-claim"] == "claim1"
    context.get_iphone_json("api/v1/feed/", {})
    sent = fake_session.requests[1]
    assert sent["url"] == f"https://{IPHONE_HOST}/api/v1/feed/"
    assert sent["headers"]["ig-u-rur"] == "RUR1"
    assert sent["headers"]["ig-intended-user-id"] == "42"
    assert sent["headers"]["x-mid"] == "m1"


def test_iphone_support_disabled(fake_session, sleeps):
    context = IGContext(sleep=False, quiet=True, iphone_support=False)
    with pytest.raises(IPhoneSupportDisabledException):
        context.get_iphone_json("api/v1/feed/", {})
    assert fake_session.requests == []


def test_save_and_load_session_bundle(context):
    context.load_session("someone", {"sessionid": "s", "csrftoken": "c1", "ds_user_id": "7"})
    bundle = context.save_session()
    assert bundle == {
        "cookies": {"sessionid": "s", "csrftoken": "c1", "ds_user_id": "7"},
        "csrftoken": "c1",
        "username": "someone",
    }
    other = IGContext(sleep=False, quiet=True)
    other.load_session(None, bundle)
    assert other.username == "someone"
    assert other.user_id == "7"
    assert other.csrf_token == "c1"
    assert other.is_logged_in


def test_load_session_fills_csrf_from_bundle(context):
    context.load_session("someone", {"cookies": {"sessionid": "s"}, "csrftoken": "c2"})
    assert context.csrf_token == "c2"
    assert context.cookies["csrftoken"] == "c2"


def test_csrf_header_tracks_cookie(context, fake_session):
    context.update_cookies({"csrftoken": "first"})
    fake_session.queue(FakeResponse(200, OK, cookies={"csrftoken": "second"}), FakeResponse(200, OK))
    context.get_json("api/v1/x/", {})
    context.get_json("api/v1/x/", {})
    assert fake_session.requests[0]["headers"]["X-CSRFToken"] == "first"
    assert fake_session.requests[1]["headers"]["X-CSRFToken"] == "second"
    assert fake_session.requests[1]["cookies"]["csrftoken"] == "second"


@pytest.mark.parametrize("query", [
    lambda ctx: ctx.get_json("api/v1/x/", {}),
    lambda ctx: ctx.graphql_query("hash1", {}),
    lambda ctx: ctx.doc_id_graphql_query("doc1", {}),
])
def test_retry_sends_csrf_from_failed_attempt(context, fake_session, query):
    context.update_cookies({"csrftoken": "old"})
    fake_session.queue(FakeResponse(500, cookies={"csrftoken": "new"}), FakeResponse(200, OK))
    query(context)
    retry = fake_session.requests[1]
    assert retry["cookies"]["csrftoken"] == "new"
    assert retry["headers"]["X-CSRFToken"] == "new"


def test_retry_sends_iphone_headers_from_failed_attempt(context, fake_session):
    fake_session.queue(FakeResponse(500, headers={"ig-set-ig-u-rur": "RUR1"}), FakeResponse(200, OK))
    context.get_iphone_json("api/v1/feed/", {})
    assert context.iphone_headers["ig-u-rur"] == "RUR1"
    assert fake_session.requests[1]["headers"]["ig-u-rur"] == "RUR1"


def test_test_login(context, fake_session):
    fake_session.queue(FakeResponse(200, {"status": "ok", "data": {"user": {"username": "someone"}}}))
    assert context.test_login() == "someone"
    assert fake_session.requests[0]["params"]["query_hash"] == TEST_LOGIN_QUERY_HASH


def test_test_login_anonymous(context, fake_session):
    fake_session.queue(FakeResponse(200, {"status": "ok", "data": {"user": None}}))
    assert context.test_login() is None


def test_test_login_reports_failures(fake_session, sleeps):
    context = IGContext(sleep=False, quiet=True, max_connection_attempts=1)
    fake_session.queue(FakeResponse(500))
    assert context.test_login() is None
    assert any("checking if logged in" in entry for entry in context.error_log)


def test_get_raw_status_mapping(context, fake_session):
    fake_session.queue(FakeResponse(403), FakeResponse(404), FakeResponse(200, text="img"))
    with pytest.raises(QueryReturnedForbiddenException):
        context.get_raw("https://scontent.cdninstagram.com/a.jpg")
    with pytest.raises(QueryReturnedNotFoundException):
        context.get_raw("https://scontent.cdninstagram.com/b.jpg")
    assert context.get_raw("https://scontent.cdninstagram.com/c.jpg").text == "img"


def test_error_catcher(context):
    with context.error_catcher("Profile someone"):
        raise ConnectionException("boom")
    assert context.error_log == ["Profile someone: boom"]
    context.raise_all_errors = True
    with pytest.raises(ConnectionException):
        with context.error_catcher():
            raise ConnectionException("again")


def test_anonymous_copy_restores_state(context):
    context.load_session("someone", {"sessionid": "s", "csrftoken": "c", "ds_user_id": "1"})
    with context.anonymous_copy() as anon:
        assert anon.username is None
        assert anon.csrf_token == ""
    assert context.username == "someone"
    assert context.csrf_token == "c"


def test_close_repeats_errors(context, capsys):
    context.quiet = False
    context.error("first problem")
    context.close()
    err = capsys.readouterr().err
    assert "Errors or warnings occurred" in err
    assert err.count("first problem") == 2
