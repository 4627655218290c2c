"""
github_client.py
================
GitHub clients used by the gateway:

* :class:`GitHubOAuthClient`: authorization-code flow used by the
  ``/login/github`` routes in ``githunt_server.py``.
* :class:`GitHubConnector`: request-scoped REST client that fetches
  repositories and users, joins identical in-flight lookups and caches
  successful results until :meth:`GitHubConnector.close` is called.
* :class:`DemoGitHubConnector`: same interface backed by a fixed catalogue,
  used by ``githunt-server --demo``.

OAuth flow summary
------------------
* ``build_auth_url(state)`` → URL to redirect the browser to
* ``exchange_code(code)``   → access token string

The token is stored with the session credentials and attached once to the
connector built for each request made by that user.

Configuration keys (``config.json`` or environment)
---------------------------------------------------
::

    "github_client_id":     "YOUR_GITHUB_CLIENT_ID",
    "github_client_secret": "YOUR_GITHUB_CLIENT_SECRET",
    "github_callback_url":  "http://localhost:3010/login/github/callback",
    "github_token":         "",   # optional server token for anonymous calls
    "github_timeout":       10
"""
from __future__ import annotations

import logging
import re
import threading
import urllib.parse
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional, Tuple

import requests

from githunt.entities import Repository, User
from githunt.errors import NotFound, RemoteUnavailable, ValidationError

logger = logging.getLogger('githunt.github')

FULL_NAME_RE = re.compile(r'^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$')
LOGIN_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9-]*(\[bot\])?$')


def validate_full_name(full_name: str) -> str:
    """Return *full_name* stripped, or raise :class:`ValidationError`."""
    value = (full_name or '').strip()
    if not FULL_NAME_RE.match(value):
        raise ValidationError(
            f'"{full_name}" is not a repository name of the form owner/name.'
        )
    return value


# ---------------------------------------------------------------------------
# Payload mapping, the only place GitHub field names are read
# ---------------------------------------------------------------------------

def _field(payload: Dict[str, Any], name: str, kind, optional: bool = False):
    value = payload.get(name)
    if value is None and optional:
        return None
    # bool is an int subclass; a boolean count is still a malformed payload
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise RemoteUnavailable(
            f"GitHub returned a malformed payload: field '{name}' is missing or invalid."
        )
    return value


def repository_from_api(payload: Any) -> Repository:
    """Map a ``GET /repos/{owner}/{repo}`` payload to a :class:`Repository`.

    Raises:
        RemoteUnavailable: When a required field is missing or mistyped.
    """
    if not isinstance(payload, dict):
        raise RemoteUnavailable('GitHub returned a malformed repository payload.')
    return Repository(
        name=_field(payload, 'name', str),
        full_name=_field(payload, 'full_name', str),
        description=_field(payload, 'description', str, optional=True),
        html_url=_field(payload, 'html_url', str),
        stargazers_count=_field(payload, 'stargazers_count', int),
        open_issues_count=_field(payload, 'open_issues_count', int, optional=True),
        created_at=_field(payload, 'created_at', str),
    )


def user_from_api(payload: Any) -> User:
    """Map a ``GET /users/{login}`` (or ``GET /user``) payload to a :class:`User`."""
    if not isinstance(payload, dict):
        raise RemoteUnavailable('GitHub returned a malformed user payload.')
    return User(
        login=_field(payload, 'login', str),
        avatar_url=_field(payload, 'avatar_url', str),
        html_url=_field(payload, 'html_url', str),
    )


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------

class GitHubOAuthClient:
    """GitHub OAuth2 authorization-code client.

    Args:
        client_id:     OAuth application client ID.
        client_secret: OAuth application client secret.
        callback_url:  Registered callback URL (``/login/github/callback``).
        timeout:       HTTP request timeout in seconds.
    """

    _AUTH_URL  = "https://github.com/login/oauth/authorize"
    _TOKEN_URL = "https://github.com/login/oauth/access_token"

    def __init__(self, client_id: str, client_secret: str, callback_url: str = '',
                 timeout: int = 10) -> None:
        self._client_id     = client_id
        self._client_secret = client_secret
        self._callback_url  = callback_url
        self._timeout       = timeout
        self._session       = requests.Session()

    @property
    def is_configured(self) -> bool:
        return bool(self._client_id and self._client_secret)

    def build_auth_url(self, state: str) -> str:
        """Return the GitHub authorization URL to redirect the user to."""
        params = {
            'client_id': self._client_id,
            'state':     state,
            'scope':     'read:user',
        }
        if self._callback_url:
            params['redirect_uri'] = self._callback_url
        return f"{self._AUTH_URL}?{urllib.parse.urlencode(params)}"

    def exchange_code(self, code: str) -> str:
        """Exchange an authorization code for an access token.

        Raises:
            RemoteUnavailable: On HTTP errors or an OAuth error response.
        """
        data = {
            'client_id':     self._client_id,
            'client_secret': self._client_secret,
            'code':          code,
        }
        if self._callback_url:
            data['redirect_uri'] = self._callback_url
        try:
            resp = self._session.post(
                self._TOKEN_URL, data=data, headers={'Accept': 'application/json'},
                timeout=self._timeout,
            )
            resp.raise_for_status()
            body = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("GitHub token exchange failed: %s", exc)
            raise RemoteUnavailable('Could not complete GitHub login.') from exc

        token = body.get('access_token') if isinstance(body, dict) else None
        if not token:
            error = body.get('error_description') or body.get('error') if isinstance(body, dict) else None
            logger.warning("GitHub token exchange rejected: %s", error)
            raise RemoteUnavailable('Could not complete GitHub login.')
        return token


# ---------------------------------------------------------------------------
# Request-scoped REST connector
# ---------------------------------------------------------------------------

class GitHubConnector:
    """Fetches GitHub repositories and users for one GraphQL request.

    A connector is created per request and closed at the end of it, so the
    cache never outlives the caller it was filled for. Within that lifetime:

    * a second lookup for the same ``(kind, key)`` is served from the cache;
    * a lookup already in flight on another thread is joined, not repeated;
    * failures are raised to every waiter and are never cached.

    There are no automatic retries: GitHub rate limits make blind retries
    expensive, so the caller decides what to do with a failure.

    Args:
        token:    OAuth or personal access token, attached to every call.
        timeout:  Per-call HTTP timeout in seconds.
        base_url: REST API root.
        session:  Optional ``requests.Session`` (tests inject a mock).
    """

    BASE_URL = "https://api.github.com"

    def __init__(self, token: Optional[str] = None, timeout: float = 10,
                 base_url: str = BASE_URL,
                 session: Optional[requests.Session] = None) -> None:
        self._timeout  = timeout
        self._base_url = base_url.rstrip('/')
        self._session  = session or requests.Session()
        self._headers  = {
            'Accept':               'application/vnd.github+json',
            'X-GitHub-Api-Version': '2022-11-28',
        }
        if token:
            self._headers['Authorization'] = f'Bearer {token}'

        self._lock = threading.Lock()
        self._cache: Dict[Tuple[str, str], Any] = {}
        self._in_flight: Dict[Tuple[str, str], Future] = {}
        self.request_count = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_repository(self, full_name: str) -> Repository:
        """Return the repository named ``owner/name``.

        Raises:
            ValidationError:   *full_name* is not of the form ``owner/name``.
            NotFound:          GitHub has no such repository.
            RemoteUnavailable: The call failed or the payload was malformed.
        """
        full_name = validate_full_name(full_name)
        return self._load(
            'repository', full_name,
            lambda: repository_from_api(self._get(f'/repos/{full_name}')),
        )

    def get_user(self, login: str) -> User:
        """Return the public profile of *login*."""
        login = (login or '').strip()
        if not LOGIN_RE.match(login):
            raise ValidationError(f'"{login}" is not a valid GitHub login.')
        return self._load(
            'user', login,
            lambda: user_from_api(self._get(f'/users/{login}')),
        )

    def get_authenticated_user(self) -> User:
        """Return the owner of the connector's token (``GET /user``)."""
        user = self._load('user', '', lambda: user_from_api(self._get('/user')))
        with self._lock:
            self._cache.setdefault(('user', user.login.lower()), user)
        return user

    def close(self) -> None:
        """Drop the per-request cache and release the HTTP session."""
        with self._lock:
            self._cache.clear()
            self._in_flight.clear()
        self._session.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load(self, kind: str, key: str, fetch: Callable[[], Any]) -> Any:
        cache_key = (kind, key.lower())
        with self._lock:
            if cache_key in self._cache:
                return self._cache[cache_key]
            future = self._in_flight.get(cache_key)
            owner = future is None
            if owner:
                future = Future()
                self._in_flight[cache_key] = future

        if not owner:
            logger.debug("Joining in-flight %s lookup for %s", kind, key)
            return future.result()

        try:
            value = fetch()
        except BaseException as exc:
            with self._lock:
                self._in_flight.pop(cache_key, None)
            future.set_exception(exc)
            raise

        with self._lock:
            self._cache[cache_key] = value
            self._in_flight.pop(cache_key, None)
        future.set_result(value)
        return value

    def _get(self, path: str) -> Any:
        url = f"{self._base_url}{path}"
        with self._lock:
            self.request_count += 1
        try:
            resp = self._session.get(url, headers=self._headers, timeout=self._timeout)
        except requests.RequestException as exc:
            logger.warning("GitHub request %s failed: %s", path, exc)
            raise RemoteUnavailable('GitHub is unavailable right now.') from exc

        if resp.status_code == 404:
            raise NotFound(f'Nothing found on GitHub at {path}.')
        if resp.status_code == 403 and resp.headers.get('X-RateLimit-Remaining') == '0':
            logger.warning("GitHub rate limit exhausted on %s", path)
            raise RemoteUnavailable('GitHub API rate limit exceeded.')
        try:
            resp.raise_for_status()
        except requests.HTTPError as exc:
            logger.warning("GitHub request %s returned %s", path, resp.status_code)
            raise RemoteUnavailable(
                f'GitHub returned HTTP {resp.status_code}.'
            ) from exc
        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteUnavailable('GitHub returned invalid JSON.') from exc


# ---------------------------------------------------------------------------
# Demo connector
# ---------------------------------------------------------------------------

def _demo_user(login: str) -> Dict[str, Any]:
    return {
        'login': login,
        'avatar_url': f'https://avatars.githubusercontent.com/{login}',
        'html_url': f'https://github.com/{login}',
    }


def _demo_repo(full_name: str, description: Optional[str], stars: int,
               issues: int, created_at: str) -> Dict[str, Any]:
    return {
        'name': full_name.split('/', 1)[1],
        'full_name': full_name,
        'description': description,
        'html_url': f'https://github.com/{full_name}',
        'stargazers_count': stars,
        'open_issues_count': issues,
        'created_at': created_at,
    }


DEMO_USER_LOGIN = 'demo'

DEMO_REPOSITORIES = [
    _demo_repo('octocat/Hello-World', 'My first repository on GitHub!',
               2600, 1200, '2011-01-26T19:01:12Z'),
    _demo_repo('octocat/Spoon-Knife', 'This repo is for demonstration purposes only.',
               12500, 400, '2011-01-27T19:30:43Z'),
    _demo_repo('graphql/graphql-js', 'A reference implementation of GraphQL for JavaScript',
               20000, 100, '2015-06-30T16:10:09Z'),
    _demo_repo('apollographql/apollo-client', None,
               19000, 350, '2016-02-26T18:07:28Z'),
]


class DemoGitHubConnector(GitHubConnector):
    """Connector serving a fixed catalogue without touching the network.

    Caching and single-flight behave exactly as in :class:`GitHubConnector`;
    only the transport is replaced.
    """

    def __init__(self, token: Optional[str] = None, **kwargs) -> None:
        super().__init__(token=token, **kwargs)
        self._payloads: Dict[str, Any] = {'/user': _demo_user(DEMO_USER_LOGIN)}
        for repo in DEMO_REPOSITORIES:
            self._payloads[f"/repos/{repo['full_name']}".lower()] = repo
            owner = repo['full_name'].split('/', 1)[0]
            self._payloads[f'/users/{owner}'.lower()] = _demo_user(owner)
        self._payloads[f'/users/{DEMO_USER_LOGIN}'] = _demo_user(DEMO_USER_LOGIN)

    def _get(self, path: str) -> Any:
        with self._lock:
            self.request_count += 1
        payload = self._payloads.get(path.lower())
        if payload is None and path.lower().startswith('/users/'):
            payload = _demo_user(path.split('/', 2)[2])
        if payload is None:
            raise NotFound(f'Nothing found on GitHub at {path}.')
        return dict(payload)
