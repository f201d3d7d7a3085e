from datetime import UTC, datetime

from sqlalchemy.orm import DeclarativeBase


def _utc_now() -> datetime:
    """Return naive UTC datetime for database operations.

    Returns naive datetime to match TIMESTAMP WITHOUT TIME ZONE columns.
    """
    return datetime.now(UTC).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass
