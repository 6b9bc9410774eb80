"""
TaskFlow Database Module
========================

SQLAlchemy models and session management for the credential, task and tag
stores.

Features:
- User, Task, TaskTag and Tag ORM models keyed by UUID strings
- Soft delete columns on tasks and tags; no implicit query rewriting,
  callers pass ``include_deleted`` explicitly
- Unique email and partial unique (owner, tag name) among live tags
- Connection pooling with SQLite in-memory support for tests
- Session context manager with automatic commit/rollback
- Query logging on the ``taskflow.database`` logger

Author: jetgause
Created: 2025-12-10
"""

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    case,
    create_engine,
    event,
    text,
)
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

# Query audit trail
query_logger = logging.getLogger("taskflow.database")

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat() + "Z"


# ============================================================================
# ENUMS AND CONSTANTS
# ============================================================================

class TaskStatus(str, Enum):
    """Task status enumeration"""
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TaskPriority(str, Enum):
    """Task priority enumeration"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


DEFAULT_TAG_COLOR = "#007bff"


def apply_status(
    values: Dict[str, Any],
    now: Optional[datetime] = None,
    in_place: bool = False,
) -> Dict[str, Any]:
    """
    Derive completion fields from a status write.

    The returned dict is meant to be written in the same UPDATE/flush as the
    status itself, so ``is_completed == (status == completed)`` always holds.

    With ``in_place`` the values target an UPDATE of existing rows: a row
    that is already completed keeps its ``completed_at``, only a transition
    into completed stamps the time.
    """
    if "status" not in values:
        return values
    status = values["status"]
    if isinstance(status, TaskStatus):
        status = status.value
    values = dict(values, status=status)
    if status == TaskStatus.COMPLETED.value:
        values["is_completed"] = True
        stamp = now or utcnow()
        if in_place:
            stamp = case((Task.is_completed.is_(True), Task.completed_at), else_=stamp)
        values["completed_at"] = stamp
    else:
        values["is_completed"] = False
        values["completed_at"] = None
    return values


# ============================================================================
# DATABASE MODELS
# ============================================================================

class User(Base):
    """
    Identity record. Owns tasks and tags; never exposes hashes in ``to_dict``.
    """
    __tablename__ = 'users'

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(50), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)

    # Password reset state (hash of the emailed token only)
    reset_password_token = Column(String(64), nullable=True, index=True)
    reset_password_expire = Column(DateTime, nullable=True)

    # Activity
    last_login = Column(DateTime, nullable=True)
    last_logout = Column(DateTime, nullable=True)
    last_activity = Column(DateTime, default=utcnow)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "lastLogin": isoformat(self.last_login),
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}')>"


class TaskTag(Base):
    """One tag name attached to one task, in insertion order."""
    __tablename__ = 'task_tags'

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(String(36), ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False, index=True)
    name = Column(String(50), nullable=False, index=True)

    task = relationship('Task', back_populates='tag_links')


class Task(Base):
    """
    Task model with owner scoping and soft delete support.
    """
    __tablename__ = 'tasks'

    id = Column(String(36), primary_key=True, default=new_id)
    owner_id = Column(String(36), ForeignKey('users.id'), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(20), default=TaskStatus.PENDING.value, nullable=False)
    priority = Column(String(20), default=TaskPriority.MEDIUM.value, nullable=False)
    due_date = Column(DateTime, nullable=True)

    is_completed = Column(Boolean, default=False, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    # Soft delete support
    is_deleted = Column(Boolean, default=False, nullable=False, index=True)
    deleted_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    tag_links = relationship(
        'TaskTag',
        back_populates='task',
        order_by='TaskTag.id',
        cascade='all, delete-orphan',
        lazy='selectin',
    )
    owner = relationship('User')

    __table_args__ = (
        Index('idx_task_owner_status', 'owner_id', 'status', 'is_deleted'),
        Index('idx_task_owner_due_date', 'owner_id', 'due_date'),
        Index('idx_task_owner_priority', 'owner_id', 'priority'),
        Index('idx_task_owner_created', 'owner_id', 'created_at'),
    )

    @property
    def tags(self) -> List[str]:
        return [link.name for link in self.tag_links]

    def set_tags(self, names: List[str]):
        """Replace the tag list, keeping first occurrence order."""
        seen = []
        for name in names:
            if name not in seen:
                seen.append(name)
        self.tag_links = [TaskTag(name=name) for name in seen]

    @property
    def is_overdue(self) -> bool:
        return bool(self.due_date and self.due_date < utcnow() and not self.is_completed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "dueDate": isoformat(self.due_date),
            "tags": self.tags,
            "isCompleted": self.is_completed,
            "completedAt": isoformat(self.completed_at),
            "isOverdue": self.is_overdue,
            "user": self.owner_id,
            "isDeleted": self.is_deleted,
            "deletedAt": isoformat(self.deleted_at),
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<Task(id={self.id}, title='{self.title}', status='{self.status}')>"


class Tag(Base):
    """
    Tag model. Names are unique per owner among tags that are not deleted.
    """
    __tablename__ = 'tags'

    id = Column(String(36), primary_key=True, default=new_id)
    owner_id = Column(String(36), ForeignKey('users.id'), nullable=False, index=True)
    name = Column(String(30), nullable=False)
    color = Column(String(7), default=DEFAULT_TAG_COLOR, nullable=False)
    description = Column(String(200), nullable=True)
    usage_count = Column(Integer, default=0, nullable=False)

    is_deleted = Column(Boolean, default=False, nullable=False, index=True)
    deleted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index(
            'uq_tag_owner_name_live',
            'owner_id', 'name',
            unique=True,
            sqlite_where=text('is_deleted = 0'),
            postgresql_where=text('NOT is_deleted'),
        ),
        Index('idx_tag_owner_usage', 'owner_id', 'usage_count'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "color": self.color,
            "description": self.description,
            "usageCount": self.usage_count,
            "user": self.owner_id,
            "isDeleted": self.is_deleted,
            "deletedAt": isoformat(self.deleted_at),
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<Tag(id={self.id}, name='{self.name}', owner='{self.owner_id}')>"


# ============================================================================
# DATABASE CONNECTION AND POOLING
# ============================================================================

class DatabaseConfig:
    """Database configuration with secure defaults"""

    def __init__(
        self,
        database_url: str,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_timeout: int = 30,
        pool_recycle: int = 3600,
        echo: bool = False,
    ):
        self.database_url = database_url
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.pool_timeout = pool_timeout
        self.pool_recycle = pool_recycle
        self.echo = echo

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def is_memory(self) -> bool:
        return self.is_sqlite and (":memory:" in self.database_url or self.database_url == "sqlite://")


class DatabaseManager:
    """
    Database manager with connection pooling and transaction management.

    Commits on clean exit from ``get_session`` and rolls back on any error.
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.engine = None
        self.session_factory = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self):
        """Create the engine, the session factory and any missing tables."""
        if self._initialized:
            logger.debug("DatabaseManager already initialized")
            return

        try:
            engine_kwargs: Dict[str, Any] = {"echo": self.config.echo}
            if self.config.is_sqlite:
                engine_kwargs["connect_args"] = {"check_same_thread": False}
                if self.config.is_memory:
                    engine_kwargs["poolclass"] = StaticPool
            else:
                engine_kwargs.update(
                    pool_size=self.config.pool_size,
                    max_overflow=self.config.max_overflow,
                    pool_timeout=self.config.pool_timeout,
                    pool_recycle=self.config.pool_recycle,
                    pool_pre_ping=True,
                )

            self.engine = create_engine(self.config.database_url, **engine_kwargs)
            self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

            self._setup_event_listeners()
            Base.metadata.create_all(self.engine)

            self._initialized = True
            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    def _setup_event_listeners(self):
        """Set up SQLAlchemy event listeners for query logging"""

        if self.config.is_sqlite:
            @event.listens_for(self.engine, "connect")
            def enable_foreign_keys(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

        @event.listens_for(self.engine, "before_cursor_execute")
        def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            query_logger.debug(f"Query: {statement}")

        @event.listens_for(self.engine, "handle_error")
        def handle_error(exception_context):
            query_logger.warning(f"Database error: {exception_context.original_exception}")

    @contextmanager
    def get_session(self) -> Iterator[Session]:
        """
        Context manager for database sessions with automatic rollback.

        Usage:
            with db_manager.get_session() as session:
                user = session.get(User, user_id)
        """
        if not self._initialized:
            raise RuntimeError("DatabaseManager not initialized. Call initialize() first.")

        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def close(self):
        """Close database connections"""
        if self.engine:
            self.engine.dispose()
            logger.info("Database engine disposed")
        self._initialized = False
