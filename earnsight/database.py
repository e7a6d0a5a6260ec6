import logging
from datetime import datetime, timedelta
from typing import Dict, Optional, List, Any

from sqlalchemy import create_engine, desc, asc
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.exc import SQLAlchemyError, IntegrityError

from earnsight.config import get_database_url
from earnsight.models import Base, UserAccount, UserSession, Analysis, Conversation, WatchlistEntry

logger = logging.getLogger(__name__)


class WatchlistConflictError(Exception):
    """Raised when a ticker is already on the user's watchlist."""


def _make_engine(url: str):
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


ENGINE = _make_engine(get_database_url())
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=ENGINE)


def configure_engine(url: str):
    """Point the module at a different database (used by tests and scripts)."""
    global ENGINE
    ENGINE = _make_engine(url)
    SessionLocal.configure(bind=ENGINE)
    return ENGINE


def init_db() -> None:
    """Initialize the database and create tables."""
    try:
        Base.metadata.create_all(bind=ENGINE)
    except SQLAlchemyError as e:
        logger.error(f"Error initializing database: {e}")
        raise


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _watchlist_dict(entry: WatchlistEntry) -> Dict[str, Any]:
    return {
        'id': entry.id,
        'user_id': entry.user_id,
        'ticker': entry.ticker,
        'company_name': entry.company_name,
        'created_at': _iso(entry.created_at),
        'updated_at': _iso(entry.updated_at),
    }


# Accounts and sessions

def create_user(email: str, password_hash: str) -> Dict[str, str]:
    session = SessionLocal()
    try:
        user = UserAccount(email=email, password_hash=password_hash)
        session.add(user)
        session.commit()
        return {'id': user.id, 'email': user.email}
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Error creating user: {e}")
        raise
    finally:
        session.close()


def get_user_by_email(email: str) -> Optional[Dict[str, str]]:
    session = SessionLocal()
    try:
        user = session.query(UserAccount).filter(UserAccount.email == email).first()
        if not user:
            return None
        return {'id': user.id, 'email': user.email, 'password_hash': user.password_hash}
    finally:
        session.close()


def create_session(user_id: str, token: str, ttl_hours: int) -> None:
    session = SessionLocal()
    try:
        now = datetime.utcnow()
        session.add(UserSession(
            token=token,
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(hours=ttl_hours),
        ))
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Error creating session: {e}")
        raise
    finally:
        session.close()


def get_session_user(token: str) -> Optional[Dict[str, str]]:
    """Resolve a bearer token to its user, ignoring expired sessions."""
    session = SessionLocal()
    try:
        row = (
            session.query(UserAccount)
            .join(UserSession, UserSession.user_id == UserAccount.id)
            .filter(UserSession.token == token)
            .filter(UserSession.expires_at > datetime.utcnow())
            .first()
        )
        if not row:
            return None
        return {'id': row.id, 'email': row.email}
    finally:
        session.close()


def delete_session(token: str) -> None:
    session = SessionLocal()
    try:
        session.query(UserSession).filter(UserSession.token == token).delete()
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Error deleting session: {e}")
        raise
    finally:
        session.close()


# Analyses and conversation turns (append-only)

def save_analysis(user_id: str, ticker: str, content: str) -> None:
    """Store a generated analysis for the user."""
    session = SessionLocal()
    try:
        now = datetime.utcnow()
        session.add(Analysis(
            user_id=user_id,
            ticker=ticker.upper(),
            initial_insights=content,
            created_at=now,
            updated_at=now,
        ))
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Error saving analysis: {e}")
        raise
    finally:
        session.close()


def get_analyses(user_id: str, ticker: str) -> List[Dict[str, Any]]:
    """Newest first."""
    session = SessionLocal()
    try:
        rows = (
            session.query(Analysis)
            .filter(Analysis.user_id == user_id)
            .filter(Analysis.ticker == ticker.upper())
            .order_by(desc(Analysis.created_at))
            .all()
        )
        return [
            {
                'id': row.id,
                'ticker': row.ticker,
                'initial_insights': row.initial_insights,
                'created_at': _iso(row.created_at),
            }
            for row in rows
        ]
    except SQLAlchemyError as e:
        logger.error(f"Error getting analyses: {e}")
        return []
    finally:
        session.close()


def save_conversation(user_id: str, ticker: str, message: str, response: str) -> None:
    session = SessionLocal()
    try:
        session.add(Conversation(
            user_id=user_id,
            ticker=ticker.upper(),
            message=message,
            response=response,
        ))
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Error saving conversation: {e}")
        raise
    finally:
        session.close()


def get_conversations(user_id: str, ticker: str) -> List[Dict[str, Any]]:
    """Oldest first, so the turns read as a transcript."""
    session = SessionLocal()
    try:
        rows = (
            session.query(Conversation)
            .filter(Conversation.user_id == user_id)
            .filter(Conversation.ticker == ticker.upper())
            .order_by(asc(Conversation.created_at))
            .all()
        )
        return [
            {
                'id': row.id,
                'ticker': row.ticker,
                'message': row.message,
                'response': row.response,
                'created_at': _iso(row.created_at),
            }
            for row in rows
        ]
    except SQLAlchemyError as e:
        logger.error(f"Error getting conversations: {e}")
        return []
    finally:
        session.close()


# Watchlist

def list_watchlist(user_id: str) -> List[Dict[str, Any]]:
    session = SessionLocal()
    try:
        rows = (
            session.query(WatchlistEntry)
            .filter(WatchlistEntry.user_id == user_id)
            .order_by(desc(WatchlistEntry.created_at))
            .all()
        )
        return [_watchlist_dict(row) for row in rows]
    finally:
        session.close()


def add_watchlist_entry(user_id: str, ticker: str, company_name: str) -> Dict[str, Any]:
    session = SessionLocal()
    ticker = ticker.upper()
    try:
        existing = (
            session.query(WatchlistEntry.id)
            .filter(WatchlistEntry.user_id == user_id)
            .filter(WatchlistEntry.ticker == ticker)
            .first()
        )
        if existing:
            raise WatchlistConflictError(f"{ticker} already in watchlist")

        now = datetime.utcnow()
        entry = WatchlistEntry(
            user_id=user_id,
            ticker=ticker,
            company_name=company_name,
            created_at=now,
            updated_at=now,
        )
        session.add(entry)
        session.commit()
        return _watchlist_dict(entry)
    except IntegrityError:
        session.rollback()
        raise WatchlistConflictError(f"{ticker} already in watchlist")
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Error adding to watchlist: {e}")
        raise
    finally:
        session.close()


def remove_watchlist_entry(user_id: str, ticker: str) -> bool:
    """Returns True when a row was deleted."""
    session = SessionLocal()
    try:
        deleted = (
            session.query(WatchlistEntry)
            .filter(WatchlistEntry.user_id == user_id)
            .filter(WatchlistEntry.ticker == ticker.upper())
            .delete()
        )
        session.commit()
        return deleted > 0
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Error removing from watchlist: {e}")
        raise
    finally:
        session.close()
