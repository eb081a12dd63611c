#!/usr/bin/env python3
"""
Session context for Instagram queries.

Owns cookies, login state and the request/retry loop that every query goes
through. One context is meant to be used from a single thread of control;
run several contexts for parallel crawls.
"""

import json
import random
import sys
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, NamedTuple, Optional

import requests

from ig_exceptions import (
    AbortDownloadException,
    BadCredentialsException,
    ConnectionException,
    InstaloaderException,
    InvalidArgumentException,
    IPhoneSupportDisabledException,
    LoginException,
    LoginRequiredException,
    QueryReturnedBadRequestException,
    QueryReturnedForbiddenException,
    QueryReturnedNotFoundException,
    TooManyRequestsException,
    TwoFactorAuthRequiredException,
)
from ig_rate_controller import RateController

WEB_HOST = "www.instagram.com"
IPHONE_HOST = "i.instagram.com"
LOGIN_URL = "https://www.instagram.com/api/v1/web/accounts/login/ajax/"
TWO_FACTOR_URL = "https://www.instagram.com/accounts/login/ajax/two_factor/"
LOGIN_REDIRECTS = (
    "https://www.instagram.com/accounts/login",
    "https://i.instagram.com/accounts/login",
)
ABORT_MESSAGES = {"feedback_required", "checkpoint_required", "challenge_required"}
TEST_LOGIN_QUERY_HASH = "d6f4427fbe92d846298cf93df0b937d3"

# request header -> cookie it is derived from
IPHONE_HEADER_COOKIES = {
    "x-mid": "mid",
    "ig-u-ds-user-id": "ds_user_id",
    "x-ig-device-id": "ig_did",
    "x-ig-family-device-id": "ig_did",
    "family_device_id": "ig_did",
}


def default_user_agent() -> str:
    return (
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/142.0.0.0 Safari/537.36"
    )


def default_iphone_headers() -> Dict[str, str]:
    offset = datetime.now().astimezone().utcoffset() or timedelta(seconds=0)
    return {
        "User-Agent": (
            "Instagram 361.0.0.35.82 (iPad13,8; iOS 18_0; en_US; en-US; "
            "scale=2.00; 2048x2732; 674117118) AppleWebKit/420+"
        ),
        "x-ads-opt-out": "1",
        "x-bloks-is-panorama-enabled": "true",
        "x-bloks-version-id": "16b7bd25c6c06886d57c4d455265669345a2d96625385b8ee30026ac2dc5ed97",
        "x-fb-client-ip": "True",
        "x-fb-connection-type": "wifi",
        "x-fb-http-engine": "Liger",
        "x-fb-server-cluster": "True",
        "x-fb": "1",
        "x-ig-abr-connection-speed-kbps": "2",
        "x-ig-app-id": "124024574287414",
        "x-ig-app-locale": "en-US",
        "x-ig-app-startup-country": "US",
        "x-ig-bandwidth-speed-kbps": "0.000",
        "x-ig-capabilities": "36r/F/8=",
        "x-ig-connection-speed": f"{random.randint(1000, 20000)}kbps",
        "x-ig-connection-type": "WiFi",
        "x-ig-device-locale": "en-US",
        "x-ig-mapped-locale": "en-US",
        "x-ig-timezone-offset": str(int(offset.total_seconds())),
        "x-ig-www-claim": "0",
        "x-pigeon-session-id": str(uuid.uuid4()),
        "x-tigon-is-retry": "False",
        "x-whatsapp": "0",
    }


def anonymous_cookies() -> Dict[str, str]:
    return {
        "sessionid": "",
        "mid": "",
        "ig_pr": "1",
        "ig_vw": "1920",
        "csrftoken": "",
        "s_network": "",
        "ds_user_id": "",
    }


def response_error(response, body: Optional[str] = None) -> str:
    extra = ""
    if body:
        try:
            resp_json = json.loads(body)
        except ValueError:
            resp_json = None
        if isinstance(resp_json, dict) and "status" in resp_json:
            if "message" in resp_json:
                extra = f' - "{resp_json["status"]}" status, message "{resp_json["message"]}"'
            else:
                extra = f' - "{resp_json["status"]}" status'
    return f"{response.status_code} {response.reason}{extra} when accessing {response.url}"


class TwoFactorPending(NamedTuple):
    cookies: Dict[str, str]
    user: str
    two_factor_id: str


class IGContext:
    """
    Low-level communication with Instagram.

    Every JSON query goes through get_json(), which sleeps a random jitter,
    waits for the rate controller, sends the request, classifies the
    response and retries transient failures up to max_connection_attempts.
    """

    def __init__(
        self,
        sleep: bool = True,
        quiet: bool = False,
        user_agent: Optional[str] = None,
        max_connection_attempts: int = 3,
        request_timeout: float = 300.0,
        fatal_status_codes: Optional[List[int]] = None,
        iphone_support: bool = True,
        proxies: Optional[Dict[str, str]] = None,
        rate_controller: Optional[Callable[["IGContext"], RateController]] = None,
    ):
        self.sleep = sleep
        self.quiet = quiet
        self.user_agent = user_agent or default_user_agent()
        self.max_connection_attempts = max_connection_attempts
        self.request_timeout = request_timeout
        self.fatal_status_codes = fatal_status_codes or []
        self.iphone_support = iphone_support
        self.proxies = proxies

        self.cookies: Dict[str, str] = anonymous_cookies()
        self.username: Optional[str] = None
        self.user_id: Optional[str] = None
        self.two_factor_auth_pending: Optional[TwoFactorPending] = None
        self.iphone_headers = default_iphone_headers()

        # filled by error(), repeated on close()
        self.error_log: List[str] = []
        # disables the suppression in error_catcher(), used by tests
        self.raise_all_errors = False

        self._session = self._new_session()
        self._rate_controller = rate_controller(self) if rate_controller is not None else RateController(self)

    @classmethod
    def from_config(cls, loader, **overrides) -> "IGContext":
        settings = loader.get("instagram.settings", {})
        kwargs = {
            "sleep": settings.get("sleep", True),
            "quiet": settings.get("quiet", False),
            "user_agent": settings.get("user_agent"),
            "max_connection_attempts": settings.get("max_connection_attempts", 3),
            "request_timeout": settings.get("request_timeout", 300.0),
            "fatal_status_codes": settings.get("fatal_status_codes"),
            "iphone_support": settings.get("iphone_support", True),
            "proxies": loader.get_proxy_settings(),
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    # -- state --------------------------------------------------------------

    @property
    def csrf_token(self) -> str:
        return self.cookies.get("csrftoken", "")

    @property
    def is_logged_in(self) -> bool:
        return bool(self.username)

    @property
    def has_stored_errors(self) -> bool:
        return bool(self.error_log)

    @property
    def rate_controller(self) -> RateController:
        return self._rate_controller

    def _new_session(self) -> requests.Session:
        session = requests.Session()
        if self.proxies:
            session.proxies = self.proxies
        return session

    def _reset_anonymous(self) -> None:
        self._session.close()
        self._session = self._new_session()
        self.cookies = anonymous_cookies()

    @contextmanager
    def anonymous_copy(self):
        saved = (self._session, self.cookies, self.username, self.user_id, self.iphone_headers)
        self._session = self._new_session()
        self.cookies = anonymous_cookies()
        self.username = None
        self.user_id = None
        self.iphone_headers = default_iphone_headers()
        try:
            yield self
        finally:
            self._session.close()
            self._session, self.cookies, self.username, self.user_id, self.iphone_headers = saved

    # -- logging ------------------------------------------------------------

    def log(self, *msg, sep: str = " ", end: str = "\n", flush: bool = False) -> None:
        if not self.quiet:
            print(*msg, sep=sep, end=end, flush=flush)

    def error(self, msg: str, repeat_at_end: bool = True) -> None:
        print(msg, file=sys.stderr)
        if repeat_at_end:
            self.error_log.append(msg)

    @contextmanager
    def error_catcher(self, extra_info: Optional[str] = None):
        try:
            yield
        except InstaloaderException as err:
            self.error(f"{extra_info}: {err}" if extra_info else f"{err}")
            if self.raise_all_errors:
                raise

    def close(self) -> None:
        if self.error_log and not self.quiet:
            print("\nErrors or warnings occurred:", file=sys.stderr)
            for err in self.error_log:
                print(err, file=sys.stderr)
        self._session.close()

    def do_sleep(self) -> None:
        if self.sleep:
            time.sleep(min(random.expovariate(0.6), 15.0))

    # -- session export / import -------------------------------------------

    def save_session(self) -> Dict[str, Any]:
        return {
            "cookies": dict(self.cookies),
            "csrftoken": self.csrf_token,
            "username": self.username,
        }

    def update_cookies(self, cookies: Dict[str, str]) -> None:
        self.cookies.update(cookies)

    def load_session(self, username: Optional[str], sessiondata: Dict[str, Any]) -> None:
        if isinstance(sessiondata.get("cookies"), dict):
            cookies = dict(sessiondata["cookies"])
            if sessiondata.get("csrftoken") and not cookies.get("csrftoken"):
                cookies["csrftoken"] = sessiondata["csrftoken"]
            username = username or sessiondata.get("username")
        else:
            # bare cookie map
            cookies = dict(sessiondata)
        self._session.close()
        self._session = self._new_session()
        self.cookies = cookies
        self.username = username
        self.user_id = cookies.get("ds_user_id") or None

    # -- http ---------------------------------------------------------------

    def _default_http_header(self, empty_session_only: bool = False) -> Dict[str, str]:
        header = {
            "Accept-Encoding": "gzip, deflate",
            "Accept-Language": "en-US,en;q=0.8",
            "Connection": "keep-alive",
            "Host": WEB_HOST,
            "Origin": "https://www.instagram.com",
            "Referer": "https://www.instagram.com/",
            "User-Agent": self.user_agent,
            "X-Instagram-AJAX": "1",
            "X-Requested-With": "XMLHttpRequest",
        }
        if empty_session_only:
            for key in ["Host", "Origin", "X-Instagram-AJAX", "X-Requested-With"]:
                del header[key]
        return header

    def _web_headers(self, referer: Optional[str] = None) -> Dict[str, str]:
        headers = self._default_http_header(empty_session_only=True)
        del headers["Connection"]
        headers.update({
            "authority": WEB_HOST,
            "scheme": "https",
            "accept": "*/*",
            "X-CSRFToken": self.csrf_token,
        })
        if referer:
            headers["Referer"] = referer
        return headers

    def _iphone_request_headers(self) -> Dict[str, str]:
        headers = dict(self.iphone_headers)
        headers["ig-intended-user-id"] = str(self.user_id) if self.user_id else ""
        headers["x-pigeon-rawclienttime"] = f"{time.time():.6f}"
        for header, cookie in IPHONE_HEADER_COOKIES.items():
            if self.cookies.get(cookie) and header not in headers:
                headers[header] = self.cookies[cookie]
        if self.cookies.get("rur") and "ig-u-rur" not in headers:
            headers["ig-u-rur"] = self.cookies["rur"].strip('"')
        return headers

    def _update_iphone_headers(self, response) -> None:
        for key, value in response.headers.items():
            key = key.lower()
            if key.startswith("ig-set-"):
                self.iphone_headers[key[len("ig-set-"):]] = value
            elif key.startswith("x-ig-set-"):
                self.iphone_headers["x-ig-" + key[len("x-ig-set-"):]] = value

    def _merge_cookies(self, response) -> None:
        for name, value in response.cookies.items():
            self.cookies[name] = value

    def _send(self, method: str, url: str, **kwargs):
        kwargs.setdefault("timeout", self.request_timeout)
        kwargs.setdefault("allow_redirects", False)
        try:
            response = self._session.request(method, url, cookies=dict(self.cookies), **kwargs)
        except requests.exceptions.RequestException as err:
            raise ConnectionException(f"Request to {url} failed: {err}") from err
        self._merge_cookies(response)
        return response

    def _query_type(self, path: str, params: Dict[str, Any], host: str) -> Optional[str]:
        if "graphql/query" in path and "query_hash" in params:
            return params["query_hash"]
        if "graphql/query" in path and "doc_id" in params:
            return params["doc_id"]
        if host == IPHONE_HOST:
            return "iphone"
        if host == WEB_HOST:
            return "other"
        return None

    def _request_json(self, path: str, params: Dict[str, Any], host: str, use_post: bool,
                      headers: Dict[str, str]) -> Dict[str, Any]:
        url = f"https://{host}/{path}"
        if use_post:
            response = self._send("POST", url, data=params, headers=headers)
        else:
            response = self._send("GET", url, params=params, headers=headers)
        if host == IPHONE_HOST:
            self._update_iphone_headers(response)

        if response.status_code in self.fatal_status_codes:
            body = response.text or ""
            raise AbortDownloadException(
                f'Query to {url} responded with "{response.status_code} {response.reason}"'
                + (f": {body[:500]}" if body else "")
            )

        if 300 <= response.status_code < 400:
            location = response.headers.get("location", "")
            if location.startswith(LOGIN_REDIRECTS):
                if self.username is None:
                    raise LoginRequiredException("Redirected to login page. Use login() first.")
                raise AbortDownloadException(
                    "Redirected to login page. You've been logged out, please wait some time, "
                    "recreate the session and try again"
                )

        body = response.text
        if response.status_code == 400:
            try:
                message = json.loads(body).get("message")
            except (ValueError, AttributeError):
                message = None
            if message in ABORT_MESSAGES:
                raise AbortDownloadException(response_error(response, body))
            raise QueryReturnedBadRequestException(response_error(response, body))
        if response.status_code == 404:
            raise QueryReturnedNotFoundException(response_error(response, body))
        if response.status_code == 429:
            raise TooManyRequestsException(response_error(response, body))
        if response.status_code != 200:
            raise ConnectionException(response_error(response, body))

        try:
            resp_json = json.loads(body)
        except ValueError as err:
            raise ConnectionException(f"Could not parse JSON from {url}: {err}") from err
        if not isinstance(resp_json, dict):
            raise ConnectionException(f"Unexpected JSON from {url}: {body[:200]}")
        if "status" in resp_json and resp_json["status"] != "ok":
            raise ConnectionException(response_error(response, body))
        return resp_json

    def get_json(self, path: str, params: Dict[str, Any], host: str = WEB_HOST, use_post: bool = False,
                 header_factory: Optional[Callable[[], Dict[str, str]]] = None) -> Dict[str, Any]:
        """
        JSON request to Instagram with rate control and retries.

        Headers come from ``header_factory`` (web headers by default) and are
        rebuilt for every attempt, so cookies set by a failed attempt are
        reflected in the retry.

        :raises LoginRequiredException: Redirected to login without being logged in.
        :raises AbortDownloadException: Fatal status code, logged out, or a checkpoint/feedback 400.
        :raises QueryReturnedNotFoundException: 404 on every attempt.
        :raises TooManyRequestsException: 429 on the last attempt.
        :raises ConnectionException: Any other failure on the last attempt.
        """
        if header_factory is None:
            header_factory = self._web_headers
        query_type = self._query_type(path, params, host)
        attempts = max(1, self.max_connection_attempts)
        for attempt in range(1, attempts + 1):
            self.do_sleep()
            if query_type is not None:
                self._rate_controller.wait_before_query(query_type)
            try:
                return self._request_json(path, params, host, use_post, header_factory())
            except (QueryReturnedBadRequestException, ConnectionException) as err:
                error_string = f"JSON Query to {path}: {err}"
                if attempt >= attempts:
                    raise type(err)(error_string) from err
                self.error(error_string + " [retrying]")
                if isinstance(err, TooManyRequestsException) and query_type is not None:
                    self._rate_controller.handle_429(query_type)
        raise ConnectionException(f"JSON Query to {path}: no attempt made")

    def graphql_query(self, query_hash: str, variables: Dict[str, Any],
                      referer: Optional[str] = None) -> Dict[str, Any]:
        params = {
            "query_hash": query_hash,
            "variables": json.dumps(variables, separators=(",", ":")),
        }
        resp_json = self.get_json("graphql/query", params, header_factory=lambda: self._web_headers(referer))
        if "status" not in resp_json:
            self.error('GraphQL response did not contain a "status" field.')
        return resp_json

    def doc_id_graphql_query(self, doc_id: str, variables: Dict[str, Any],
                             referer: Optional[str] = None) -> Dict[str, Any]:
        params = {
            "variables": json.dumps(variables, separators=(",", ":")),
            "doc_id": doc_id,
            "server_timestamps": "true",
        }

        def headers() -> Dict[str, str]:
            header = self._web_headers(referer)
            header["Content-Type"] = "application/x-www-form-urlencoded"
            return header

        resp_json = self.get_json("graphql/query", params, use_post=True, header_factory=headers)
        if "status" not in resp_json:
            self.error('GraphQL response did not contain a "status" field.')
        return resp_json

    def get_iphone_json(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        if not self.iphone_support:
            raise IPhoneSupportDisabledException("iPhone support is disabled.")
        return self.get_json(path, params, host=IPHONE_HOST, header_factory=self._iphone_request_headers)

    def _check_plain_response(self, response):
        if response.status_code == 200:
            return response
        if response.status_code == 403:
            raise QueryReturnedForbiddenException(response_error(response))
        if response.status_code == 404:
            raise QueryReturnedNotFoundException(response_error(response))
        raise ConnectionException(response_error(response))

    def get_raw(self, url: str):
        response = self._send("GET", url, headers=self._default_http_header(empty_session_only=True),
                              allow_redirects=True)
        return self._check_plain_response(response)

    def head(self, url: str, allow_redirects: bool = False):
        response = self._send("HEAD", url, headers=self._default_http_header(empty_session_only=True),
                              allow_redirects=allow_redirects)
        return self._check_plain_response(response)

    # -- login --------------------------------------------------------------

    def test_login(self) -> Optional[str]:
        try:
            data = self.graphql_query(TEST_LOGIN_QUERY_HASH, {})
        except (AbortDownloadException, ConnectionException) as err:
            self.error(f"Error when checking if logged in: {err}")
            return None
        user = (data.get("data") or {}).get("user")
        return user.get("username") if isinstance(user, dict) else None

    def _login_headers(self) -> Dict[str, str]:
        headers = self._default_http_header()
        headers["X-CSRFToken"] = self.csrf_token
        headers["Content-Type"] = "application/x-www-form-urlencoded"
        return headers

    def login(self, user: str, passwd: str) -> None:
        """
        :raises BadCredentialsException: Wrong password.
        :raises TwoFactorAuthRequiredException: Continue with two_factor_login().
        :raises LoginException: Any other login failure, including a checkpoint or unknown user.
        """
        self._reset_anonymous()
        self._send("GET", "https://www.instagram.com/", headers=self._default_http_header(empty_session_only=True),
                   allow_redirects=True)
        self.do_sleep()

        enc_password = f"#PWD_INSTAGRAM_BROWSER:0:{int(datetime.now().timestamp())}:{passwd}"
        response = self._send("POST", LOGIN_URL, data={"enc_password": enc_password, "username": user},
                              headers=self._login_headers())
        try:
            resp_json = response.json()
        except ValueError as err:
            raise LoginException(
                f"Login error: JSON decode fail, {response.status_code} - {response.reason}."
            ) from err

        if resp_json.get("two_factor_required"):
            two_factor_id = (resp_json.get("two_factor_info") or {}).get("two_factor_identifier")
            self.two_factor_auth_pending = TwoFactorPending(dict(self.cookies), user, two_factor_id)
            raise TwoFactorAuthRequiredException(
                "Login error: two-factor authentication required.", two_factor_id
            )
        if resp_json.get("checkpoint_url"):
            raise LoginException(
                f"Login: Checkpoint required. Point your browser to {resp_json['checkpoint_url']} - "
                "follow the instructions, then retry."
            )
        if resp_json.get("status") != "ok":
            if "message" in resp_json:
                raise LoginException(
                    f'Login error: "{resp_json.get("status")}" status, message "{resp_json["message"]}".'
                )
            raise LoginException(f'Login error: "{resp_json.get("status")}" status.')
        if "authenticated" not in resp_json:
            if "message" in resp_json:
                raise LoginException(f'Login error: Unexpected response, "{resp_json["message"]}".')
            raise LoginException("Login error: Unexpected response, this might indicate a blocked IP.")
        if not resp_json["authenticated"]:
            if resp_json.get("user"):
                raise BadCredentialsException("Login error: Wrong password.")
            raise LoginException(f"Login error: User {user} does not exist.")

        self.username = user
        self.user_id = resp_json.get("userId")

    def two_factor_login(self, two_factor_code: str) -> None:
        """
        :raises InvalidArgumentException: No two-factor authentication pending.
        :raises BadCredentialsException: 2FA verification code invalid.
        """
        if not self.two_factor_auth_pending:
            raise InvalidArgumentException("No two-factor authentication pending.")
        pending = self.two_factor_auth_pending
        self.cookies = dict(pending.cookies)

        response = self._send(
            "POST",
            TWO_FACTOR_URL,
            data={"username": pending.user, "verificationCode": two_factor_code,
                  "identifier": pending.two_factor_id},
            headers=self._login_headers(),
        )
        try:
            resp_json = response.json()
        except ValueError as err:
            raise BadCredentialsException("2FA error: JSON decode fail") from err
        if resp_json.get("status") != "ok":
            if "message" in resp_json:
                raise BadCredentialsException(f"2FA error: {resp_json['message']}")
            raise BadCredentialsException(f'2FA error: "{resp_json.get("status")}" status.')

        self.username = pending.user
        self.user_id = resp_json.get("userId") or self.cookies.get("ds_user_id") or None
        self.two_factor_auth_pending = None

