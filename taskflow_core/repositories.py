"""
Resource Access Layer
=====================

Owner-scoped repositories over the SQLAlchemy models.

Every task and tag query is built from ``owner_id == <caller>`` and
``is_deleted`` is false unless the caller explicitly asks for deleted rows.
Mutations use a single UPDATE whose WHERE clause carries the ownership
predicate, so a row the caller does not own is indistinguishable from a row
that does not exist.

Author: jetgause
Created: 2025-12-10
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import and_, case, delete, exists, func, or_, select, update
from sqlalchemy.orm import Session

from taskflow_core.auth import PasswordManager, generate_reset_token, hash_reset_token
from taskflow_core.database import (
    Tag,
    Task,
    TaskPriority,
    TaskStatus,
    TaskTag,
    User,
    apply_status,
    utcnow,
)
from taskflow_core.errors import (
    AuthenticationFailure,
    AuthFailureReason,
    DuplicateResource,
    NotFoundOrDenied,
    TagInUse,
    ValidationFailure,
)
from taskflow_core.input_validator import TagCreate, TagQuery, TaskCreate, TaskQuery

logger = logging.getLogger(__name__)

RESET_TOKEN_TTL = timedelta(hours=1)


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass
class PageResult:
    items: List[Any]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_prev_page(self) -> bool:
        return self.page > 1

    def pagination_dict(self, alias: Optional[str] = None) -> Dict[str, Any]:
        """``totalItems`` always; alias repeats it under a resource name (``totalTasks``)."""
        pagination = {
            "currentPage": self.page,
            "totalPages": self.total_pages,
            "totalItems": self.total,
            "limit": self.limit,
            "hasNextPage": self.has_next_page,
            "hasPrevPage": self.has_prev_page,
        }
        if alias:
            pagination[alias] = self.total
        return pagination


@dataclass
class BulkUpdateResult:
    matched_count: int
    modified_count: int
    modified_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, int]:
        return {"matchedCount": self.matched_count, "modifiedCount": self.modified_count}


@dataclass
class TagDeleteResult:
    removed_from_tasks: int


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _contains(column, term: str):
    return column.ilike(f"%{_escape_like(term)}%", escape="\\")


# ============================================================================
# CREDENTIAL STORE
# ============================================================================

class UserRepository:
    """User records, credentials and password-reset state."""

    def __init__(self, session: Session, password_manager: Optional[PasswordManager] = None):
        self.session = session
        self.passwords = password_manager or PasswordManager()

    def _attached(self, user: User) -> User:
        attached = self.session.get(User, user.id)
        if attached is None:
            raise AuthenticationFailure(
                AuthFailureReason.UNKNOWN_IDENTITY, "Token is valid but user no longer exists"
            )
        return attached

    def get_by_id(self, user_id: str) -> Optional[User]:
        return self.session.get(User, user_id)

    def get_by_email(self, email: str) -> Optional[User]:
        return self.session.execute(
            select(User).where(func.lower(User.email) == email.strip().lower())
        ).scalar_one_or_none()

    def create(self, name: str, email: str, password: str) -> User:
        if self.get_by_email(email) is not None:
            raise DuplicateResource("User already exists with that email")

        user = User(
            name=name.strip(),
            email=email.strip().lower(),
            password_hash=self.passwords.hash_password(password),
        )
        self.session.add(user)
        self.session.flush()
        logger.info(f"Registered user {user.id}")
        return user

    def authenticate(self, email: str, password: str) -> User:
        user = self.get_by_email(email)
        if user is None or not self.passwords.verify_password(password, user.password_hash):
            raise AuthenticationFailure(AuthFailureReason.INVALID_CREDENTIALS, "Invalid credentials")
        user.last_login = utcnow()
        user.last_activity = user.last_login
        return user

    def update_profile(self, user: User, name: Optional[str] = None, email: Optional[str] = None) -> User:
        user = self._attached(user)
        if email is not None:
            email = email.strip().lower()
            other = self.get_by_email(email)
            if other is not None and other.id != user.id:
                raise DuplicateResource("Email is already in use")
            user.email = email
        if name is not None:
            user.name = name.strip()
        self.session.flush()
        return user

    def change_password(self, user: User, current_password: str, new_password: str) -> User:
        user = self._attached(user)
        if not self.passwords.verify_password(current_password, user.password_hash):
            raise AuthenticationFailure(
                AuthFailureReason.INVALID_CREDENTIALS, "Current password is incorrect"
            )
        user.password_hash = self.passwords.hash_password(new_password)
        self.session.flush()
        return user

    def touch_activity(self, user_id: str):
        self.session.execute(update(User).where(User.id == user_id).values(last_activity=utcnow()))

    def record_logout(self, user_id: str):
        now = utcnow()
        self.session.execute(
            update(User).where(User.id == user_id).values(last_logout=now, last_activity=now)
        )

    def create_password_reset_token(self, user: User) -> str:
        """Persist the hash of a fresh reset token and return the plaintext."""
        user = self._attached(user)
        plain, hashed = generate_reset_token()
        user.reset_password_token = hashed
        user.reset_password_expire = utcnow() + RESET_TOKEN_TTL
        self.session.flush()
        return plain

    def clear_password_reset_token(self, user: User):
        user = self._attached(user)
        user.reset_password_token = None
        user.reset_password_expire = None
        self.session.flush()

    def reset_password(self, token: str, new_password: str) -> User:
        user = self.session.execute(
            select(User).where(
                User.reset_password_token == hash_reset_token(token),
                User.reset_password_expire > utcnow(),
            )
        ).scalar_one_or_none()
        if user is None:
            raise ValidationFailure("Invalid or expired reset token")

        user.password_hash = self.passwords.hash_password(new_password)
        user.reset_password_token = None
        user.reset_password_expire = None
        self.session.flush()
        return user


# ============================================================================
# TASK STORE
# ============================================================================

_PRIORITY_RANK = {
    TaskPriority.LOW.value: 0,
    TaskPriority.MEDIUM.value: 1,
    TaskPriority.HIGH.value: 2,
    TaskPriority.CRITICAL.value: 3,
}

TASK_SORT_COLUMNS = {
    "createdAt": Task.created_at,
    "updatedAt": Task.updated_at,
    "dueDate": Task.due_date,
    "priority": case(_PRIORITY_RANK, value=Task.priority, else_=-1),
    "status": Task.status,
    "title": Task.title,
}

TASK_SCALAR_FIELDS = ("title", "description", "status", "priority", "due_date")


class TaskRepository:
    """Tasks of one owner."""

    def __init__(self, session: Session, owner_id: str):
        self.session = session
        self.owner_id = owner_id

    def _predicate(self, include_deleted: bool = False):
        clauses = [Task.owner_id == self.owner_id]
        if not include_deleted:
            clauses.append(Task.is_deleted.is_(False))
        return and_(*clauses)

    def _owned(self, task_id: str):
        return and_(Task.id == task_id, self._predicate())

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list(self, filters: TaskQuery, include_deleted: bool = False) -> PageResult:
        conditions = [self._predicate(include_deleted)]

        if filters.status:
            conditions.append(Task.status == filters.status)
        if filters.priority:
            conditions.append(Task.priority == filters.priority)
        if filters.tags:
            conditions.append(Task.id.in_(
                select(TaskTag.task_id).where(TaskTag.name.in_(filters.tags))
            ))
        if filters.search:
            conditions.append(or_(
                _contains(Task.title, filters.search),
                _contains(Task.description, filters.search),
            ))
        if filters.overdue:
            conditions.append(Task.due_date < utcnow())
            conditions.append(Task.is_completed.is_(False))
        if filters.due_date_from:
            conditions.append(Task.due_date >= filters.due_date_from)
        if filters.due_date_to:
            conditions.append(Task.due_date <= filters.due_date_to)

        where = and_(*conditions)
        total = self.session.execute(select(func.count()).select_from(Task).where(where)).scalar_one()

        sort_column = TASK_SORT_COLUMNS[filters.sort_by]
        ordering = sort_column.asc() if filters.sort_order == "asc" else sort_column.desc()
        items = self.session.execute(
            select(Task)
            .where(where)
            .order_by(ordering, Task.id)
            .offset((filters.page - 1) * filters.limit)
            .limit(filters.limit)
        ).scalars().all()

        return PageResult(list(items), total, filters.page, filters.limit)

    def get(self, task_id: str, include_deleted: bool = False) -> Task:
        task = self.session.execute(
            select(Task).where(Task.id == task_id, self._predicate(include_deleted))
        ).scalar_one_or_none()
        if task is None:
            raise NotFoundOrDenied("Task not found")
        return task

    def exists(self, task_id: str) -> bool:
        return self.session.query(exists().where(self._owned(task_id))).scalar()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, data: TaskCreate) -> Task:
        values = apply_status(data.model_dump(exclude={"tags"}))
        task = Task(owner_id=self.owner_id, **values)
        task.set_tags(data.tags)
        self.session.add(task)
        self.session.flush()
        self.refresh_tag_usage(task.tags)
        return task

    def update(self, task_id: str, changes: Dict[str, Any]) -> Task:
        """
        Apply changes to one owned task.

        Scalar fields and the derived completion fields go out in a single
        UPDATE guarded by the ownership predicate.
        """
        changes = dict(changes)
        new_tags = changes.pop("tags", None)
        scalar = {k: v for k, v in changes.items() if k in TASK_SCALAR_FIELDS}
        values = apply_status(scalar, in_place=True)
        values["updated_at"] = utcnow()

        result = self.session.execute(
            update(Task).where(self._owned(task_id)).values(**values),
            execution_options={"synchronize_session": False},
        )
        if result.rowcount == 0:
            raise NotFoundOrDenied("Task not found")

        if new_tags is not None:
            old_tags = self._tag_names([task_id])
            self._replace_tags([task_id], new_tags)
            self.refresh_tag_usage(set(old_tags) | set(new_tags))

        return self._reload(task_id)

    def soft_delete(self, task_id: str) -> List[str]:
        """Mark an owned task deleted. Returns the tag names it carried."""
        now = utcnow()
        result = self.session.execute(
            update(Task).where(self._owned(task_id)).values(is_deleted=True, deleted_at=now, updated_at=now),
            execution_options={"synchronize_session": False},
        )
        if result.rowcount == 0:
            raise NotFoundOrDenied("Task not found")

        tags = self._tag_names([task_id])
        self.refresh_tag_usage(tags)
        return tags

    def bulk_update(self, task_ids: Sequence[str], changes: Dict[str, Any]) -> BulkUpdateResult:
        """
        Apply changes to every owned, non-deleted task among task_ids.

        Ids the caller does not own are ignored, never reported. ``matched``
        counts rows passing the ownership predicate, ``modified`` those whose
        stored values actually change.
        """
        changes = dict(changes)
        new_tags = changes.pop("tags", None)
        scalar = {k: v for k, v in changes.items() if k in TASK_SCALAR_FIELDS}

        matched = self.session.execute(
            select(Task).where(Task.id.in_(list(task_ids)), self._predicate())
        ).scalars().all()

        modified_ids = [
            task.id for task in matched
            if any(getattr(task, name) != value for name, value in scalar.items())
            or (new_tags is not None and task.tags != list(dict.fromkeys(new_tags)))
        ]

        if modified_ids:
            if scalar:
                values = apply_status(scalar, in_place=True)
                values["updated_at"] = utcnow()
                self.session.execute(
                    update(Task)
                    .where(Task.id.in_(modified_ids), self._predicate())
                    .values(**values),
                    execution_options={"synchronize_session": False},
                )
            touched = set()
            if new_tags is not None:
                touched.update(self._tag_names(modified_ids))
                self._replace_tags(modified_ids, new_tags)
                touched.update(new_tags)
            self.refresh_tag_usage(touched)
            self.session.expire_all()

        return BulkUpdateResult(len(matched), len(modified_ids), modified_ids)

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        now = utcnow()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        end_of_day = start_of_day + timedelta(days=1)
        live = self._predicate()
        open_task = Task.is_completed.is_(False)

        def count(*conditions) -> int:
            return self.session.execute(
                select(func.count()).select_from(Task).where(live, *conditions)
            ).scalar_one()

        by_status = dict(
            self.session.execute(
                select(Task.status, func.count()).where(live).group_by(Task.status)
            ).all()
        )
        by_priority = dict(
            self.session.execute(
                select(Task.priority, func.count()).where(live).group_by(Task.priority)
            ).all()
        )

        return {
            "total": count(),
            "overdue": count(Task.due_date < now, open_task),
            "dueToday": count(Task.due_date >= start_of_day, Task.due_date < end_of_day, open_task),
            "dueThisWeek": count(Task.due_date >= now, Task.due_date <= now + timedelta(days=7), open_task),
            "byStatus": {status.value: by_status.get(status.value, 0) for status in TaskStatus},
            "byPriority": {priority.value: by_priority.get(priority.value, 0) for priority in TaskPriority},
        }

    def refresh_tag_usage(self, names: Iterable[str]):
        """Recount how many live tasks reference each tag name."""
        for name in set(names):
            usage = self.session.execute(
                select(func.count(func.distinct(TaskTag.task_id)))
                .select_from(TaskTag)
                .join(Task, Task.id == TaskTag.task_id)
                .where(TaskTag.name == name, self._predicate())
            ).scalar_one()
            self.session.execute(
                update(Tag)
                .where(Tag.owner_id == self.owner_id, Tag.name == name, Tag.is_deleted.is_(False))
                .values(usage_count=usage),
                execution_options={"synchronize_session": False},
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _tag_names(self, task_ids: Sequence[str]) -> List[str]:
        return list(self.session.execute(
            select(TaskTag.name).where(TaskTag.task_id.in_(list(task_ids))).distinct()
        ).scalars())

    def _replace_tags(self, task_ids: Sequence[str], names: Sequence[str]):
        self.session.execute(delete(TaskTag).where(TaskTag.task_id.in_(list(task_ids))))
        unique = list(dict.fromkeys(names))
        for task_id in task_ids:
            self.session.add_all([TaskTag(task_id=task_id, name=name) for name in unique])
        self.session.flush()

    def _reload(self, task_id: str) -> Task:
        return self.session.execute(
            select(Task).where(Task.id == task_id).execution_options(populate_existing=True)
        ).scalar_one()


# ============================================================================
# TAG STORE
# ============================================================================

TAG_SORT_COLUMNS = {
    "createdAt": Tag.created_at,
    "updatedAt": Tag.updated_at,
    "name": Tag.name,
    "usageCount": Tag.usage_count,
}


class TagRepository:
    """Tags of one owner."""

    def __init__(self, session: Session, owner_id: str):
        self.session = session
        self.owner_id = owner_id

    def _predicate(self, include_deleted: bool = False):
        clauses = [Tag.owner_id == self.owner_id]
        if not include_deleted:
            clauses.append(Tag.is_deleted.is_(False))
        return and_(*clauses)

    def _owned(self, tag_id: str):
        return and_(Tag.id == tag_id, self._predicate())

    def _name_taken(self, name: str, exclude_id: Optional[str] = None) -> bool:
        conditions = [self._predicate(), Tag.name == name]
        if exclude_id:
            conditions.append(Tag.id != exclude_id)
        return self.session.query(exists().where(*conditions)).scalar()

    def _tasks_using(self, name: str) -> List[str]:
        return list(self.session.execute(
            select(Task.id)
            .join(TaskTag, TaskTag.task_id == Task.id)
            .where(
                TaskTag.name == name,
                Task.owner_id == self.owner_id,
                Task.is_deleted.is_(False),
            )
            .distinct()
        ).scalars())

    def list(self, query: TagQuery, include_deleted: bool = False) -> PageResult:
        conditions = [self._predicate(include_deleted)]
        if query.search:
            conditions.append(or_(_contains(Tag.name, query.search), _contains(Tag.description, query.search)))
        where = and_(*conditions)

        total = self.session.execute(select(func.count()).select_from(Tag).where(where)).scalar_one()
        sort_column = TAG_SORT_COLUMNS[query.sort_by]
        ordering = sort_column.asc() if query.sort_order == "asc" else sort_column.desc()
        items = self.session.execute(
            select(Tag)
            .where(where)
            .order_by(ordering, Tag.id)
            .offset((query.page - 1) * query.limit)
            .limit(query.limit)
        ).scalars().all()
        return PageResult(list(items), total, query.page, query.limit)

    def get(self, tag_id: str, include_deleted: bool = False) -> Tag:
        tag = self.session.execute(
            select(Tag).where(Tag.id == tag_id, self._predicate(include_deleted))
        ).scalar_one_or_none()
        if tag is None:
            raise NotFoundOrDenied("Tag not found")
        return tag

    def exists(self, tag_id: str) -> bool:
        return self.session.query(exists().where(self._owned(tag_id))).scalar()

    def create(self, data: TagCreate) -> Tag:
        if self._name_taken(data.name):
            raise DuplicateResource("Tag with this name already exists")
        tag = Tag(
            owner_id=self.owner_id,
            name=data.name,
            color=data.color,
            description=data.description,
            usage_count=len(self._tasks_using(data.name)),
        )
        self.session.add(tag)
        self.session.flush()
        return tag

    def update(self, tag_id: str, changes: Dict[str, Any]) -> Tag:
        """Renaming a tag leaves task tag lists as they are."""
        name = changes.get("name")
        if name is not None and self._name_taken(name, exclude_id=tag_id):
            if not self.exists(tag_id):
                raise NotFoundOrDenied("Tag not found")
            raise DuplicateResource("Tag with this name already exists")

        values = dict(changes, updated_at=utcnow())
        if name is not None:
            values["usage_count"] = len(self._tasks_using(name))

        result = self.session.execute(
            update(Tag).where(self._owned(tag_id)).values(**values),
            execution_options={"synchronize_session": False},
        )
        if result.rowcount == 0:
            raise NotFoundOrDenied("Tag not found")

        return self.session.execute(
            select(Tag).where(Tag.id == tag_id).execution_options(populate_existing=True)
        ).scalar_one()

    def delete(self, tag_id: str, force: bool = False) -> TagDeleteResult:
        """
        Soft-delete a tag.

        A tag referenced by live tasks is only deleted with ``force``; the
        name is then removed from those tasks in the same transaction.
        """
        tag = self.get(tag_id)
        task_ids = self._tasks_using(tag.name)

        if task_ids and not force:
            count = len(task_ids)
            raise TagInUse(
                f"Tag is being used in {count} task(s). Use force=true to delete anyway.",
                data={"tasksCount": count},
            )

        now = utcnow()
        self.session.execute(
            update(Tag).where(self._owned(tag_id)).values(is_deleted=True, deleted_at=now, updated_at=now),
            execution_options={"synchronize_session": False},
        )
        if task_ids:
            self.session.execute(
                delete(TaskTag).where(TaskTag.task_id.in_(task_ids), TaskTag.name == tag.name)
            )
            self.session.execute(
                update(Task).where(Task.id.in_(task_ids)).values(updated_at=now),
                execution_options={"synchronize_session": False},
            )
            logger.info(f"Removed tag '{tag.name}' from {len(task_ids)} task(s) of {self.owner_id}")

        self.session.expire_all()
        return TagDeleteResult(removed_from_tasks=len(task_ids))

    def stats(self) -> Dict[str, Any]:
        live = self._predicate()
        most_used = self.session.execute(
            select(Tag).where(live).order_by(Tag.usage_count.desc(), Tag.name).limit(10)
        ).scalars().all()
        total, total_usage, avg_usage, max_usage, min_usage = self.session.execute(
            select(
                func.count(Tag.id),
                func.coalesce(func.sum(Tag.usage_count), 0),
                func.coalesce(func.avg(Tag.usage_count), 0),
                func.coalesce(func.max(Tag.usage_count), 0),
                func.coalesce(func.min(Tag.usage_count), 0),
            ).where(live)
        ).one()

        return {
            "totalTags": total,
            "mostUsedTags": [
                {"id": tag.id, "name": tag.name, "usageCount": tag.usage_count, "color": tag.color}
                for tag in most_used
            ],
            "usage": {
                "totalTags": total,
                "totalUsage": int(total_usage),
                "avgUsage": float(avg_usage),
                "maxUsage": int(max_usage),
                "minUsage": int(min_usage),
            },
        }
