"""
Input Validation Utilities for TaskFlow
=======================================

Request schemas and validation helpers:
- Resource id format validation
- Injection marker detection for request payloads
- Registration/login/profile/password schemas
- Task and tag create/update schemas
- List query schemas with pagination and sort allow-lists
- FastAPI dependency functions for query parameters

All datetimes leaving this module are naive UTC.

Author: jetgause
Created: 2025-12-10
"""

import re
from datetime import datetime, timezone
from typing import Any, List, Literal, Optional

from fastapi import Query
from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from taskflow_core.database import DEFAULT_TAG_COLOR, TaskPriority, TaskStatus, utcnow
from taskflow_core.errors import ValidationFailure


# ============================================================================
# Constants and Patterns
# ============================================================================

# UUID v4, the format every resource id is generated in
RESOURCE_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

NAME_PATTERN = r"^[a-zA-Z\s]+$"
COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"

DEFAULT_PAGE_SIZE = 10
DEFAULT_TAG_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
MAX_SEARCH_LENGTH = 100
MAX_TAGS_PER_TASK = 10

TaskSortField = Literal['createdAt', 'updatedAt', 'dueDate', 'priority', 'status', 'title']
TagSortField = Literal['createdAt', 'updatedAt', 'name', 'usageCount']
SortOrder = Literal['asc', 'desc']

# Injection markers rejected anywhere in a request body or query string
HARMFUL_CONTENT_PATTERNS = [
    r"<script[^>]*>.*?</script>",
    r"javascript:",
    r"onload=",
    r"onerror=",
    r"\$\{.*\}",  # Template injection
    r"union.*select",
    r"drop.*table",
    r"exec.*xp_",
]

_HARMFUL_CONTENT = [re.compile(p, re.IGNORECASE) for p in HARMFUL_CONTENT_PATTERNS]


# ============================================================================
# Helpers
# ============================================================================

def validate_object_id(value: str) -> str:
    """
    Validate a resource id taken from a path or body.

    Raises:
        ValidationFailure: if value is not a UUID string
    """
    if not isinstance(value, str) or not RESOURCE_ID_PATTERN.match(value):
        raise ValidationFailure("Invalid ID format")
    return value.lower()


def detect_harmful_content(value: Any) -> bool:
    """
    Detect injection markers in a decoded request payload.

    Strings are matched against ``HARMFUL_CONTENT_PATTERNS``; dicts and lists
    are searched recursively (values only, like the query string).

    Returns:
        True if any string inside value matches
    """
    if isinstance(value, str):
        return any(pattern.search(value) for pattern in _HARMFUL_CONTENT)
    if isinstance(value, dict):
        return any(detect_harmful_content(item) for item in value.values())
    if isinstance(value, (list, tuple)):
        return any(detect_harmful_content(item) for item in value)
    return False


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _check_password_strength(value: str) -> str:
    from taskflow_core.auth import PasswordManager

    is_valid, errors = PasswordManager.validate_password_strength(value)
    if not is_valid:
        raise ValueError('; '.join(errors))
    return value


class _Schema(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        str_strip_whitespace=True,
        use_enum_values=True,
        extra='ignore',
    )


# ============================================================================
# Authentication Schemas
# ============================================================================

class UserRegister(_Schema):
    name: str = Field(..., min_length=2, max_length=50, pattern=NAME_PATTERN)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    confirm_password: Optional[str] = Field(None, alias='confirmPassword')

    @field_validator('email')
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.lower()

    @field_validator('password')
    @classmethod
    def validate_password(cls, v: str) -> str:
        return _check_password_strength(v)

    @model_validator(mode='after')
    def passwords_match(self):
        if self.confirm_password is not None and self.confirm_password != self.password:
            raise ValueError('Password confirmation does not match password')
        return self


class UserLogin(_Schema):
    email: EmailStr
    password: str = Field(..., min_length=1)

    @field_validator('email')
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.lower()


class ProfileUpdate(_Schema):
    name: Optional[str] = Field(None, min_length=2, max_length=50, pattern=NAME_PATTERN)
    email: Optional[EmailStr] = None

    @field_validator('email')
    @classmethod
    def normalize_email(cls, v: Optional[str]) -> Optional[str]:
        return v.lower() if v else v

    @model_validator(mode='after')
    def at_least_one(self):
        if self.name is None and self.email is None:
            raise ValueError('At least one field must be provided for update')
        return self


class PasswordChange(_Schema):
    current_password: str = Field(..., min_length=1, alias='currentPassword')
    new_password: str = Field(..., min_length=8, max_length=128, alias='newPassword')

    @field_validator('new_password')
    @classmethod
    def validate_password(cls, v: str) -> str:
        return _check_password_strength(v)


class ForgotPassword(_Schema):
    email: EmailStr

    @field_validator('email')
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.lower()


class ResetPassword(_Schema):
    token: str = Field(..., min_length=1)
    password: str = Field(..., min_length=8, max_length=128)

    @field_validator('password')
    @classmethod
    def validate_password(cls, v: str) -> str:
        return _check_password_strength(v)


# ============================================================================
# Task Schemas
# ============================================================================

def _clean_tags(tags: Optional[List[str]]) -> Optional[List[str]]:
    if tags is None:
        return None
    cleaned = [tag.strip() for tag in tags]
    if any(not tag for tag in cleaned):
        raise ValueError('Tag names cannot be empty')
    if any(len(tag) > 50 for tag in cleaned):
        raise ValueError('Each tag cannot exceed 50 characters')
    if len(cleaned) > MAX_TAGS_PER_TASK:
        raise ValueError(f'Cannot have more than {MAX_TAGS_PER_TASK} tags')
    if len(set(cleaned)) != len(cleaned):
        raise ValueError('Tags must be unique')
    return cleaned


class TaskCreate(_Schema):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    status: TaskStatus = TaskStatus.PENDING.value
    priority: TaskPriority = TaskPriority.MEDIUM.value
    due_date: Optional[datetime] = Field(None, alias='dueDate')
    tags: List[str] = Field(default_factory=list)

    @field_validator('due_date')
    @classmethod
    def due_date_in_future(cls, v: Optional[datetime]) -> Optional[datetime]:
        v = to_naive_utc(v)
        if v is not None and v < utcnow():
            raise ValueError('Due date cannot be in the past')
        return v

    @field_validator('tags')
    @classmethod
    def validate_tags(cls, v: List[str]) -> List[str]:
        return _clean_tags(v)


class TaskUpdate(_Schema):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = Field(None, alias='dueDate')
    tags: Optional[List[str]] = None

    @field_validator('due_date')
    @classmethod
    def normalize_due_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)

    @field_validator('tags')
    @classmethod
    def validate_tags(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return _clean_tags(v)

    @model_validator(mode='after')
    def at_least_one(self):
        if not self.model_fields_set:
            raise ValueError('At least one field must be provided for update')
        for name in ('title', 'status', 'priority'):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f'{name} cannot be null')
        return self

    def changes(self) -> dict:
        """Only the fields the client actually sent, keyed by column name."""
        return self.model_dump(exclude_unset=True)


class BulkUpdate(_Schema):
    task_ids: List[str] = Field(default_factory=list, alias='taskIds')
    update_data: Optional[dict] = Field(None, alias='updateData')

    def validated(self) -> tuple[List[str], TaskUpdate]:
        """Return (ids, changes); raises ValidationFailure with the request's wording."""
        if not self.task_ids:
            raise ValidationFailure('Task IDs are required and must be an array')
        if not self.update_data:
            raise ValidationFailure('Update data is required')
        ids = [validate_object_id(task_id) for task_id in self.task_ids]
        try:
            changes = TaskUpdate.model_validate(self.update_data)
        except ValidationError as e:
            raise ValidationFailure(errors=[err['msg'].replace('Value error, ', '') for err in e.errors()])
        return ids, changes


class TaskQuery(_Schema):
    page: int = Field(1, ge=1)
    limit: int = Field(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE)
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    search: Optional[str] = Field(None, max_length=MAX_SEARCH_LENGTH)
    tags: Optional[List[str]] = None
    overdue: Optional[bool] = None
    sort_by: TaskSortField = Field('createdAt', alias='sortBy')
    sort_order: SortOrder = Field('desc', alias='sortOrder')
    due_date_from: Optional[datetime] = Field(None, alias='dueDateFrom')
    due_date_to: Optional[datetime] = Field(None, alias='dueDateTo')

    @field_validator('tags', mode='before')
    @classmethod
    def split_tags(cls, v):
        if isinstance(v, str):
            return [tag.strip() for tag in v.split(',') if tag.strip()]
        return v

    @field_validator('due_date_from', 'due_date_to')
    @classmethod
    def normalize_dates(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)

    @model_validator(mode='after')
    def range_ordered(self):
        if self.due_date_from and self.due_date_to and self.due_date_to < self.due_date_from:
            raise ValueError('Due date to must be after due date from')
        return self


# ============================================================================
# Tag Schemas
# ============================================================================

class TagCreate(_Schema):
    name: str = Field(..., min_length=1, max_length=30)
    description: Optional[str] = Field(None, max_length=200)
    color: str = Field(DEFAULT_TAG_COLOR, pattern=COLOR_PATTERN)


class TagUpdate(_Schema):
    name: Optional[str] = Field(None, min_length=1, max_length=30)
    description: Optional[str] = Field(None, max_length=200)
    color: Optional[str] = Field(None, pattern=COLOR_PATTERN)

    @model_validator(mode='after')
    def at_least_one(self):
        if not self.model_fields_set:
            raise ValueError('At least one field must be provided for update')
        for name in ('name', 'color'):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f'{name} cannot be null')
        return self

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True)


class TagQuery(_Schema):
    page: int = Field(1, ge=1)
    limit: int = Field(DEFAULT_TAG_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE)
    search: Optional[str] = Field(None, max_length=MAX_SEARCH_LENGTH)
    sort_by: TagSortField = Field('createdAt', alias='sortBy')
    sort_order: SortOrder = Field('desc', alias='sortOrder')


class TagDelete(_Schema):
    force: bool = False


# ============================================================================
# FastAPI Dependencies
# ============================================================================

def get_task_query(
    page: int = Query(1, description="Page number (1-indexed)"),
    limit: int = Query(DEFAULT_PAGE_SIZE, description="Items per page"),
    status: Optional[str] = Query(None),
    priority: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    tags: Optional[str] = Query(None, description="Comma-separated tag names"),
    overdue: Optional[bool] = Query(None),
    sort_by: str = Query('createdAt', alias='sortBy'),
    sort_order: str = Query('desc', alias='sortOrder'),
    due_date_from: Optional[str] = Query(None, alias='dueDateFrom'),
    due_date_to: Optional[str] = Query(None, alias='dueDateTo'),
) -> TaskQuery:
    """
    FastAPI dependency that validates task list query parameters.

    Bounds and allow-lists are enforced by ``TaskQuery``; a failure surfaces
    as a 400 through the central translator.
    """
    return TaskQuery(
        page=page,
        limit=limit,
        status=status,
        priority=priority,
        search=search,
        tags=tags,
        overdue=overdue,
        sortBy=sort_by,
        sortOrder=sort_order,
        dueDateFrom=due_date_from,
        dueDateTo=due_date_to,
    )


def get_tag_query(
    page: int = Query(1),
    limit: int = Query(DEFAULT_TAG_PAGE_SIZE),
    search: Optional[str] = Query(None),
    sort_by: str = Query('createdAt', alias='sortBy'),
    sort_order: str = Query('desc', alias='sortOrder'),
) -> TagQuery:
    return TagQuery(page=page, limit=limit, search=search, sortBy=sort_by, sortOrder=sort_order)
