import uuid
from datetime import datetime

from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class UserAccount(Base):
    __tablename__ = 'user_accounts'

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(320), nullable=False, unique=True, index=True)
    password_hash = Column(String(255), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class UserSession(Base):
    __tablename__ = 'user_sessions'

    token = Column(String(128), primary_key=True)
    user_id = Column(String(36), ForeignKey('user_accounts.id', ondelete='CASCADE'), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False)


class Analysis(Base):
    __tablename__ = 'analyses'

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey('user_accounts.id', ondelete='CASCADE'), nullable=False)
    ticker = Column(String(10), nullable=False)
    initial_insights = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index('idx_analyses_user_id', 'user_id'),
        Index('idx_analyses_ticker', 'ticker'),
    )


class Conversation(Base):
    __tablename__ = 'conversations'

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey('user_accounts.id', ondelete='CASCADE'), nullable=False)
    ticker = Column(String(10), nullable=False)
    message = Column(Text, nullable=False)
    response = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index('idx_conversations_user_id', 'user_id'),
        Index('idx_conversations_ticker', 'ticker'),
    )


class WatchlistEntry(Base):
    __tablename__ = 'watchlist'

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey('user_accounts.id', ondelete='CASCADE'), nullable=False)
    ticker = Column(String(10), nullable=False)
    company_name = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'ticker', name='uq_watchlist_user_ticker'),
        Index('idx_watchlist_user_id', 'user_id'),
        Index('idx_watchlist_ticker', 'ticker'),
    )
