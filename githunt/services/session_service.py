"""Server-side storage for login sessions."""
import logging
from typing import Dict, Optional

logger = logging.getLogger('githunt.sessions')


class SessionStore:
    """Loads and saves session credentials by session id.

    Unlike :class:`~githunt.services.EngagementStore`, each call opens and
    closes its own database session, so lookups can run on a worker thread
    with a timeout.
    """

    def __init__(self, session_factory, db_module=None) -> None:
        """
        Args:
            session_factory: Callable returning a new SQLAlchemy session
                (see ``database.make_session_factory``).
            db_module:       The imported ``database`` module. Defaults to
                ``database``.
        """
        if db_module is None:
            import database as db_module
        self._session_factory = session_factory
        self._db = db_module

    def load(self, session_id: str) -> Optional[Dict]:
        """Return the credentials saved for *session_id*, or ``None``."""
        if not session_id:
            return None
        db = self._session_factory()
        try:
            return self._db.load_session(db, session_id)
        finally:
            db.close()

    def save(self, session_id: str, credentials: Dict) -> None:
        db = self._session_factory()
        try:
            self._db.save_session(db, session_id, credentials)
        finally:
            db.close()
        logger.info("Session saved for %s", credentials.get('login'))

    def delete(self, session_id: str) -> bool:
        if not session_id:
            return False
        db = self._session_factory()
        try:
            return self._db.delete_session(db, session_id)
        finally:
            db.close()
