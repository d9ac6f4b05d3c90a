"""
Common mixins for terminal-scoped local models
"""
from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func


class TerminalMixin:
    """Mixin for models owned by a terminal (not by an employee)"""

    terminal_key = Column(String(100), nullable=False, index=True)


class TimestampMixin:
    """Mixin for models that need timestamp tracking"""

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class ResolvableMixin:
    """Mixin for local records that wait for a manual or background resolution"""

    resolved_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_resolved(self):
        return self.resolved_at is not None

    def resolve(self):
        self.resolved_at = func.now()
