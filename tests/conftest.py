import json
from pathlib import Path
import sys

import pytest
from requests.structures import CaseInsensitiveDict

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import ig_context
from ig_context import IGContext

REASONS = {200: "OK", 302: "Found", 400: "Bad Request", 403: "Forbidden", 404: "Not Found",
           429: "Too Many Requests", 500: "Internal Server Error"}


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, text=None, headers=None, cookies=None,
                 url="https://www.instagram.com/graphql/query"):
        self.status_code = status_code
        if text is None:
            text = json.dumps(json_data) if json_data is not None else ""
        self.text = text
        self.headers = CaseInsensitiveDict(headers or {})
        self.cookies = dict(cookies or {})
        self.url = url
        self.reason = REASONS.get(status_code, "")

    def json(self):
        return json.loads(self.text)


class FakeSession:
    def __init__(self):
        self.responses = []
        self.requests = []
        self.proxies = {}
        self.closed = False

    def queue(self, *responses):
        self.responses.extend(responses)

    def request(self, method, url, **kwargs):
        self.requests.append({"method": method, "url": url, **kwargs})
        if not self.responses:
            raise AssertionError(f"Unexpected request: {method} {url}")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        self.closed = True


class FakeGraphQLContext:
    """Stands in for IGContext in iterator tests; hands out queued responses."""

    def __init__(self, responses=None, username=None):
        self.responses = list(responses or [])
        self.calls = []
        self.username = username
        self.logs = []
        self.errors = []

    def _next(self):
        if not self.responses:
            raise AssertionError("Unexpected query")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    def graphql_query(self, query_hash, variables, referer=None):
        self.calls.append({"query_hash": query_hash, "variables": variables, "referer": referer})
        return self._next()

    def doc_id_graphql_query(self, doc_id, variables, referer=None):
        self.calls.append({"doc_id": doc_id, "variables": variables, "referer": referer})
        return self._next()

    def get_json(self, path, params, **kwargs):
        self.calls.append({"path": path, "params": params})
        return self._next()

    def log(self, *msg, **kwargs):
        self.logs.append(" ".join(str(m) for m in msg))

    def error(self, msg, repeat_at_end=True):
        self.errors.append(msg)


def timeline_page(ids, has_next=False, cursor=None, count=None):
    return {
        "status": "ok",
        "data": {
            "user": {
                "edge_owner_to_timeline_media": {
                    "count": count,
                    "edges": [{"node": {"id": str(i)}} for i in ids],
                    "page_info": {"has_next_page": has_next, "end_cursor": cursor},
                }
            }
        },
    }


@pytest.fixture
def sleeps(monkeypatch):
    calls = []
    monkeypatch.setattr(ig_context.time, "sleep", calls.append)
    return calls


@pytest.fixture
def fake_session(monkeypatch):
    session = FakeSession()
    monkeypatch.setattr(ig_context.requests, "Session", lambda: session)
    return session


@pytest.fixture
def context(fake_session, sleeps):
    ctx = IGContext(sleep=False, quiet=True)
    yield ctx
    ctx.close()
