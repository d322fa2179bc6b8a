from __future__ import annotations
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, String, Text, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

SPOTIFY_REFRESH_TOKEN_KEY = 'spotify_refresh_token'
DEFAULT_DB_URL = 'sqlite:///streambot.sqlite'

Base = declarative_base()


class Credential(Base):
    __tablename__ = 'credentials'

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class CredentialStore:
    """Durable key/value storage for refreshable credentials.

    Only one key is used in practice (``SPOTIFY_REFRESH_TOKEN_KEY``); values
    survive restarts in the configured SQLite database.
    """

    def __init__(self, db_url: str = DEFAULT_DB_URL):
        connect_args = {'check_same_thread': False} if db_url.startswith('sqlite') else {}
        self.engine = create_engine(db_url, connect_args=connect_args)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False)
        Base.metadata.create_all(self.engine)

    def get(self, key: str) -> Optional[str]:
        db = self.SessionLocal()
        try:
            row = db.get(Credential, key)
            if not row or not row.value:
                return None
            return row.value
        finally:
            db.close()

    def set(self, key: str, value: str) -> None:
        normalized = value.strip() if isinstance(value, str) else None
        db = self.SessionLocal()
        try:
            row = db.get(Credential, key)
            if row:
                row.value = normalized or None
            else:
                db.add(Credential(key=key, value=normalized or None))
            db.commit()
        finally:
            db.close()

    def clear(self, key: str) -> None:
        db = self.SessionLocal()
        try:
            db.query(Credential).filter(Credential.key == key).delete()
            db.commit()
        finally:
            db.close()

    def dispose(self) -> None:
        self.engine.dispose()
