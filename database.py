#!/usr/bin/env python3
"""
Database models and configuration for GitHunt.
Persists submitted entries, votes, comments and web sessions.

Helper functions take a SQLAlchemy session as their first argument so that
callers control the session lifecycle. Read helpers return plain dicts;
mutating helpers commit on success and roll back and re-raise on failure.
"""

import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import (
    CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text,
    UniqueConstraint, and_, create_engine, event, func, or_,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from githunt.errors import DuplicateEntry, NotFound

logger = logging.getLogger('githunt.database')

VOTE_VALUES = {'UP': 1, 'DOWN': -1, 'CANCEL': 0}

Base = declarative_base()


class Entry(Base):
    """A repository submitted to the feed."""
    __tablename__ = "entries"

    id = Column(Integer, primary_key=True)
    repository_full_name = Column(String(255), unique=True, nullable=False, index=True)
    posted_by = Column(String(255), nullable=False)
    score = Column(Integer, nullable=False, default=0)
    comment_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    votes = relationship("Vote", back_populates="entry", cascade="all, delete-orphan")
    comments = relationship("Comment", back_populates="entry", cascade="all, delete-orphan")


class Vote(Base):
    """Current vote of one user on one entry. CANCEL removes the row."""
    __tablename__ = "votes"
    __table_args__ = (
        UniqueConstraint("entry_id", "voter_login", name="uq_votes_entry_voter"),
        CheckConstraint("vote_value IN (1, -1)", name="ck_votes_vote_value"),
    )

    id = Column(Integer, primary_key=True)
    entry_id = Column(Integer, ForeignKey("entries.id"), nullable=False, index=True)
    voter_login = Column(String(255), nullable=False)
    vote_value = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    entry = relationship("Entry", back_populates="votes")


class Comment(Base):
    """Append-only comment on an entry."""
    __tablename__ = "comments"

    id = Column(Integer, primary_key=True)
    entry_id = Column(Integer, ForeignKey("entries.id"), nullable=False, index=True)
    posted_by = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    entry = relationship("Entry", back_populates="comments")


class WebSession(Base):
    """Server-side session credentials keyed by the cookie's session id."""
    __tablename__ = "web_sessions"

    session_id = Column(String(255), primary_key=True)
    credentials = Column(Text, nullable=False)  # JSON object
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# ---------------------------------------------------------------------------
# Engine / session factory
# ---------------------------------------------------------------------------

def make_engine(url: str, **kwargs):
    """Create an engine for *url*.

    SQLite has no row locks, so every SQLite transaction is opened with
    ``BEGIN IMMEDIATE``: writers then queue on the database write lock
    instead of failing on lock upgrade. Read helpers end their transaction
    before returning, so the lock is held only while a helper runs. In-memory SQLite URLs share a single
    connection so every thread sees the same database.
    """
    if not url.startswith('sqlite'):
        return create_engine(url, pool_pre_ping=True, **kwargs)

    connect_args = {'check_same_thread': False, 'timeout': 30}
    if url in ('sqlite://', 'sqlite:///:memory:'):
        kwargs.setdefault('poolclass', StaticPool)
    engine = create_engine(url, connect_args=connect_args, **kwargs)

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def make_session_factory(bind):
    """Session factory for *bind*. Attributes stay loaded after commit."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


def init_db(bind) -> bool:
    """Create all tables on *bind*."""
    try:
        Base.metadata.create_all(bind=bind)
        logger.info("Database tables initialized successfully")
        return True
    except Exception as e:
        logger.error("Failed to initialize database: %s", e)
        return False


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

@contextmanager
def _read(db):
    """Run read queries in a transaction that ends with the block.

    Store sessions live for the whole request. The transaction, and on
    SQLite the write lock, must not outlive the read.
    """
    try:
        yield db
    finally:
        db.rollback()


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------

def _iso(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ''


def entry_to_dict(entry: Entry) -> Dict:
    return {
        'id': entry.id,
        'repository_full_name': entry.repository_full_name,
        'posted_by': entry.posted_by,
        'score': entry.score or 0,
        'comment_count': entry.comment_count or 0,
        'created_at': _iso(entry.created_at),
    }


def comment_to_dict(comment: Comment) -> Dict:
    return {
        'id': comment.id,
        'entry_id': comment.entry_id,
        'posted_by': comment.posted_by,
        'content': comment.content,
        'created_at': _iso(comment.created_at),
    }


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------

def _find_entry(db, full_name: str, for_update: bool = False) -> Optional[Entry]:
    query = db.query(Entry).filter(
        func.lower(Entry.repository_full_name) == full_name.lower()
    )
    if for_update:
        query = query.with_for_update()
    return query.first()


def get_entry(db, full_name: str) -> Optional[Dict]:
    """Get the entry submitted for *full_name*, or ``None``."""
    with _read(db):
        entry = _find_entry(db, full_name)
        return entry_to_dict(entry) if entry else None


def create_entry(db, full_name: str, posted_by: str) -> Dict:
    """Create the entry for *full_name*.

    Raises:
        DuplicateEntry: If the repository has already been submitted,
            including when a concurrent submission wins the race.
    """
    try:
        if _find_entry(db, full_name) is not None:
            raise DuplicateEntry(f'"{full_name}" has already been submitted.')
        entry = Entry(repository_full_name=full_name, posted_by=posted_by,
                      score=0, comment_count=0)
        db.add(entry)
        db.flush()
        result = entry_to_dict(entry)
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise DuplicateEntry(f'"{full_name}" has already been submitted.') from e
    except Exception:
        db.rollback()
        raise
    logger.info("Entry %s submitted by %s", full_name, posted_by)
    return result


def apply_vote(db, full_name: str, voter_login: str, direction: str) -> Dict:
    """Record *voter_login*'s vote on *full_name* and recompute the score.

    The entry row is locked for the whole transaction and ``score`` is
    recomputed from every current vote, so concurrent votes serialize and a
    repeated vote never counts twice.

    Args:
        direction: ``'UP'``, ``'DOWN'`` or ``'CANCEL'`` (removes the vote).

    Raises:
        NotFound: If no entry exists for *full_name*.
    """
    value = VOTE_VALUES[direction]
    try:
        entry = _find_entry(db, full_name, for_update=True)
        if entry is None:
            raise NotFound(f'No entry has been submitted for "{full_name}".')

        vote = db.query(Vote).filter(
            Vote.entry_id == entry.id,
            Vote.voter_login == voter_login,
        ).first()
        if value == 0:
            if vote:
                db.delete(vote)
        elif vote:
            vote.vote_value = value
        else:
            db.add(Vote(entry_id=entry.id, voter_login=voter_login, vote_value=value))
        db.flush()

        entry.score = int(db.query(func.coalesce(func.sum(Vote.vote_value), 0)).filter(
            Vote.entry_id == entry.id
        ).scalar())
        db.flush()
        result = entry_to_dict(entry)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.debug("Vote %s by %s on %s -> score %s", direction, voter_login,
                 full_name, result['score'])
    return result


def get_vote_value(db, entry_id: int, voter_login: str) -> int:
    """Current vote value of *voter_login* on the entry (0 when none)."""
    with _read(db):
        vote = db.query(Vote).filter(
            Vote.entry_id == entry_id,
            Vote.voter_login == voter_login,
        ).first()
        return vote.vote_value if vote else 0


# ---------------------------------------------------------------------------
# Comments
# ---------------------------------------------------------------------------

def add_comment(db, full_name: str, posted_by: str, content: str) -> Dict:
    """Append a comment to *full_name*'s entry and recompute its count.

    Raises:
        NotFound: If no entry exists for *full_name*.
    """
    try:
        entry = _find_entry(db, full_name, for_update=True)
        if entry is None:
            raise NotFound(f'No entry has been submitted for "{full_name}".')
        db.add(Comment(entry_id=entry.id, posted_by=posted_by, content=content))
        db.flush()
        entry.comment_count = db.query(func.count(Comment.id)).filter(
            Comment.entry_id == entry.id
        ).scalar()
        db.flush()
        result = entry_to_dict(entry)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return result


def get_comments(db, entry_id: int) -> List[Dict]:
    """Comments on the entry, oldest first."""
    with _read(db):
        comments = db.query(Comment).filter(
            Comment.entry_id == entry_id
        ).order_by(Comment.created_at, Comment.id).all()
        return [comment_to_dict(c) for c in comments]


# ---------------------------------------------------------------------------
# Feed
# ---------------------------------------------------------------------------

def get_feed(db, feed_type: str, limit: int = 10, after: Optional[Dict] = None) -> List[Dict]:
    """Return a page of entries.

    Args:
        feed_type: ``'HOT'`` (score, newest id first on ties) or ``'NEW'``
                   (creation time, newest first).
        limit:     Page size.
        after:     Position of the last entry of the previous page, as a dict
                   with ``score``, ``created_at`` (datetime) and ``id`` keys.
    """
    query = db.query(Entry)
    if feed_type == 'HOT':
        if after:
            query = query.filter(or_(
                Entry.score < after['score'],
                and_(Entry.score == after['score'], Entry.id < after['id']),
            ))
        query = query.order_by(Entry.score.desc(), Entry.id.desc())
    else:
        if after:
            query = query.filter(or_(
                Entry.created_at < after['created_at'],
                and_(Entry.created_at == after['created_at'], Entry.id < after['id']),
            ))
        query = query.order_by(Entry.created_at.desc(), Entry.id.desc())
    with _read(db):
        return [entry_to_dict(e) for e in query.limit(limit).all()]


# ---------------------------------------------------------------------------
# Web sessions
# ---------------------------------------------------------------------------

def load_session(db, session_id: str) -> Optional[Dict]:
    """Return the stored credentials for *session_id*, or ``None``."""
    with _read(db):
        row = db.query(WebSession).filter(WebSession.session_id == session_id).first()
        raw = row.credentials if row else None
    if raw is None:
        return None
    try:
        credentials = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Discarding unreadable credentials for session %s", session_id)
        return None
    return credentials if isinstance(credentials, dict) else None


def save_session(db, session_id: str, credentials: Dict) -> None:
    """Create or replace the credentials stored for *session_id*."""
    try:
        row = db.query(WebSession).filter(WebSession.session_id == session_id).first()
        if row:
            row.credentials = json.dumps(credentials)
            row.updated_at = datetime.utcnow()
        else:
            db.add(WebSession(session_id=session_id, credentials=json.dumps(credentials)))
        db.commit()
    except Exception:
        db.rollback()
        raise


def delete_session(db, session_id: str) -> bool:
    """Delete *session_id*. Returns ``True`` if it existed."""
    try:
        deleted = db.query(WebSession).filter(WebSession.session_id == session_id).delete()
        db.commit()
    except Exception:
        db.rollback()
        raise
    return bool(deleted)
