import uuid
from sqlalchemy import Column, DateTime
from sqlalchemy.orm import declarative_base
from core.clock import utcnow

Base = declarative_base()


def new_uuid() -> str:
    return str(uuid.uuid4())


class TimestampMixin:
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
