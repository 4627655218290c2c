"""Per-request execution context handed to every GraphQL resolver."""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .entities import User
from .errors import Unauthenticated

logger = logging.getLogger('githunt.context')

DEFAULT_LOOKUP_WORKERS = 8

# Session lookups run here so a stuck store cannot hold a request forever.
_lookup_pool = ThreadPoolExecutor(max_workers=DEFAULT_LOOKUP_WORKERS,
                                  thread_name_prefix='session-lookup')
_lookup_workers = DEFAULT_LOOKUP_WORKERS
_pending_lock = threading.Lock()
_pending_lookups = 0


def configure_lookup_pool(max_workers: int) -> None:
    """Replace the session-lookup pool with one of *max_workers* threads.

    Lookups already running on the old pool finish there.
    """
    global _lookup_pool, _lookup_workers
    old = _lookup_pool
    _lookup_pool = ThreadPoolExecutor(max_workers=max(1, int(max_workers)),
                                      thread_name_prefix='session-lookup')
    _lookup_workers = max(1, int(max_workers))
    old.shutdown(wait=False)


def pending_lookups() -> int:
    """Number of session lookups submitted and not yet finished."""
    with _pending_lock:
        return _pending_lookups


def _lookup_done(_future) -> None:
    global _pending_lookups
    with _pending_lock:
        _pending_lookups -= 1


@dataclass(frozen=True)
class SessionContext:
    """Identity and data-access handles for one GraphQL request.

    Built once by :func:`build_context`; ``connector`` and ``store`` belong to
    this request only and are closed by :meth:`close` when it ends.
    """
    user: Optional[User]
    connector: object
    store: object

    def require_user(self) -> User:
        if self.user is None:
            raise Unauthenticated()
        return self.user

    def close(self) -> None:
        try:
            self.connector.close()
        finally:
            self.store.close()


def identity_from_credentials(credentials: Optional[Dict]) -> Tuple[Optional[User], str]:
    """Split stored session credentials into a :class:`User` and a token.

    Credentials without a usable login are treated as anonymous.
    """
    if not isinstance(credentials, dict) or not credentials.get('login'):
        return None, ''
    user = User(
        login=str(credentials['login']),
        avatar_url=str(credentials.get('avatar_url') or ''),
        html_url=str(credentials.get('html_url') or ''),
    )
    return user, str(credentials.get('access_token') or '')


def load_credentials(session_store, session_id: Optional[str],
                     timeout: float) -> Optional[Dict]:
    """Look up *session_id* with a bounded wait.

    Returns ``None`` (anonymous) when there is no session id, the lookup
    fails, or it takes longer than *timeout* seconds.
    """
    global _pending_lookups
    if not session_id:
        return None
    with _pending_lock:
        if _pending_lookups >= _lookup_workers:
            logger.warning("Session lookup pool backed up: %d lookups outstanding for %d workers",
                           _pending_lookups, _lookup_workers)
        _pending_lookups += 1
    try:
        future = _lookup_pool.submit(session_store.load, session_id)
    except RuntimeError as exc:
        _lookup_done(None)
        logger.warning("Session lookup not started (%s); continuing anonymously", exc)
        return None
    future.add_done_callback(_lookup_done)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        logger.warning("Session lookup timed out after %.1fs; continuing anonymously", timeout)
    except Exception as exc:
        logger.warning("Session lookup failed (%s); continuing anonymously", exc)
    return None


def build_context(session_id: Optional[str], session_store,
                  connector_factory: Callable[[Optional[str]], object],
                  store_factory: Callable[[], object],
                  timeout: float = 2.0) -> SessionContext:
    """Build the :class:`SessionContext` for one request.

    Args:
        session_id:        Id from the session cookie, or ``None``.
        session_store:     Object with ``load(session_id)``.
        connector_factory: Called with the user's OAuth token (``None`` when
                           anonymous) to create a fresh connector.
        store_factory:     Called with no arguments to create a fresh store.
        timeout:           Maximum seconds to wait for the session lookup.
    """
    user, token = identity_from_credentials(
        load_credentials(session_store, session_id, timeout)
    )
    return SessionContext(
        user=user,
        connector=connector_factory(token or None),
        store=store_factory(),
    )
