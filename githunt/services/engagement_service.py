"""Business logic for entries, votes, comments and the feed."""
import base64
import binascii
import json
from datetime import datetime
from typing import Dict, List, Optional

from ..errors import ValidationError

FEED_TYPES = ('HOT', 'NEW')
VOTE_TYPES = ('UP', 'DOWN', 'CANCEL')
MAX_COMMENT_LENGTH = 2000


def encode_cursor(entry: Dict) -> str:
    """Opaque feed position of *entry*, valid for both feed orders."""
    raw = json.dumps({
        's': entry['score'],
        't': entry['created_at'],
        'i': entry['id'],
    }, separators=(',', ':'))
    return base64.urlsafe_b64encode(raw.encode()).decode().rstrip('=')


def decode_cursor(cursor: str) -> Dict:
    """Inverse of :func:`encode_cursor`.

    Raises:
        ValidationError: If *cursor* was not produced by :func:`encode_cursor`.
    """
    try:
        padded = cursor + '=' * (-len(cursor) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode()).decode())
        return {
            'score': int(data['s']),
            'created_at': datetime.fromisoformat(data['t']),
            'id': int(data['i']),
        }
    except (binascii.Error, UnicodeDecodeError, ValueError, KeyError, TypeError) as exc:
        raise ValidationError(f'Invalid feed cursor "{cursor}".') from exc


class EngagementStore:
    """Per-request handle on the engagement ledger.

    Wraps one SQLAlchemy session, owned by the request that created the
    store, and delegates persistence to the ``database`` module's helper
    functions. Every mutation commits as a single transaction or rolls back
    and re-raises.

    Rules
    -----
    * One entry per repository full name; resubmission raises
      :class:`~githunt.errors.DuplicateEntry`.
    * ``score`` is recomputed from all current votes on every vote.
    * Comments must be non-blank and at most ``MAX_COMMENT_LENGTH``
      characters.
    """

    def __init__(self, db, db_module=None, feed_page_size: int = 10) -> None:
        """
        Args:
            db:             SQLAlchemy session scoped to one request.
            db_module:      The imported ``database`` module (or any object
                that exposes the same helpers). Defaults to ``database``.
            feed_page_size: Number of entries per feed page.
        """
        if db_module is None:
            import database as db_module
        self._session = db
        self._db = db_module
        self.feed_page_size = feed_page_size

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def get_entry(self, full_name: str) -> Optional[Dict]:
        return self._db.get_entry(self._session, full_name)

    def create_entry(self, full_name: str, posted_by: str) -> Dict:
        return self._db.create_entry(self._session, full_name, posted_by)

    def get_feed(self, feed_type: str, after: Optional[str] = None,
                 limit: Optional[int] = None) -> List[Dict]:
        """Return one page of the feed.

        Args:
            feed_type: ``'HOT'`` or ``'NEW'``.
            after:     Cursor of the last entry already shown, or ``None``.
            limit:     Page size; defaults to ``feed_page_size``.
        """
        if feed_type not in FEED_TYPES:
            raise ValidationError(f'Unknown feed type "{feed_type}".')
        position = decode_cursor(after) if after else None
        return self._db.get_feed(self._session, feed_type,
                                limit=limit or self.feed_page_size, after=position)

    # ------------------------------------------------------------------
    # Votes
    # ------------------------------------------------------------------

    def apply_vote(self, full_name: str, voter_login: str, direction: str) -> Dict:
        """Set *voter_login*'s vote and return the entry with its new score."""
        if direction not in VOTE_TYPES:
            raise ValidationError(f'Unknown vote type "{direction}".')
        return self._db.apply_vote(self._session, full_name, voter_login, direction)

    def get_vote(self, entry_id: int, voter_login: str) -> int:
        return self._db.get_vote_value(self._session, entry_id, voter_login)

    # ------------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------------

    def add_comment(self, full_name: str, posted_by: str, content: str) -> Dict:
        """Append a comment and return the entry with its new comment count."""
        content = (content or '').strip()
        if not content:
            raise ValidationError('Comment content must not be empty.')
        if len(content) > MAX_COMMENT_LENGTH:
            raise ValidationError(
                f'Comment content must be at most {MAX_COMMENT_LENGTH} characters.'
            )
        return self._db.add_comment(self._session, full_name, posted_by, content)

    def get_comments(self, entry_id: int) -> List[Dict]:
        return self._db.get_comments(self._session, entry_id)

    def close(self) -> None:
        self._session.close()
