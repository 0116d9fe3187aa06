"""
Database module using SQLAlchemy ORM for the injection audit log
"""
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, Column, Integer, String, Text, TIMESTAMP, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()


# ============================================================================
# SQLAlchemy Models
# ============================================================================

class InjectionLogDB(Base):
    """Database model for injection audit entries"""
    __tablename__ = 'injection_log'

    id = Column(Integer, primary_key=True)
    token = Column(String(64), nullable=False, index=True)
    command = Column(Text, nullable=False)
    target = Column(String(255))
    strategy = Column(String(50), nullable=False, index=True)
    success = Column(Boolean, nullable=False, default=True, index=True)
    error = Column(Text)
    pid = Column(Integer)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, default=datetime.now, index=True)


# ============================================================================
# Database Manager
# ============================================================================

class DatabaseManager:
    """Manages database operations using SQLAlchemy ORM"""

    def __init__(self, database_url: str):
        """
        Initialize database manager

        Args:
            database_url: SQLAlchemy connection string
                         e.g., sqlite:///data/relay.db
        """
        url = make_url(database_url)
        if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(url.database)), exist_ok=True)

        self.engine = create_engine(
            database_url,
            pool_pre_ping=True,  # Verify connections before using
            echo=False  # Set to True for SQL query logging
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        Base.metadata.create_all(self.engine)
        logger.info(f"Database engine created: {url.render_as_string(hide_password=True)}")

    def get_session(self) -> Session:
        """Get a new database session"""
        return self.SessionLocal()

    def close(self):
        """Close database engine"""
        self.engine.dispose()
        logger.info("Database engine disposed")

    # ========================================================================
    # Injection Log Operations
    # ========================================================================

    def log_injection(
        self,
        token: str,
        command: str,
        strategy: str,
        success: bool = True,
        target: Optional[str] = None,
        error: Optional[str] = None
    ) -> int:
        """
        Record an injection attempt

        Returns:
            The ID of the inserted record
        """
        with self.get_session() as session:
            entry = InjectionLogDB(
                token=token,
                command=command,
                target=target,
                strategy=strategy,
                success=success,
                error=error,
                pid=os.getpid(),
                created_at=datetime.now()
            )
            session.add(entry)
            session.commit()
            logger.debug(f"Logged {strategy} injection for token {token} (id: {entry.id})")
            return entry.id

    def get_recent_injections(self, limit: int = 50, token: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get the most recent audit entries, newest first"""
        with self.get_session() as session:
            query = session.query(InjectionLogDB)
            if token:
                query = query.filter_by(token=token.upper())
            rows = query.order_by(InjectionLogDB.created_at.desc(), InjectionLogDB.id.desc()).limit(limit).all()

            return [
                {
                    "id": row.id,
                    "token": row.token,
                    "command": row.command,
                    "target": row.target,
                    "strategy": row.strategy,
                    "success": row.success,
                    "error": row.error,
                    "pid": row.pid,
                    "created_at": row.created_at.isoformat() if row.created_at else None
                }
                for row in rows
            ]

    def count_injections(self, success: Optional[bool] = None) -> int:
        with self.get_session() as session:
            query = session.query(InjectionLogDB)
            if success is not None:
                query = query.filter_by(success=success)
            return query.count()
