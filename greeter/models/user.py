import uuid
from datetime import date, datetime

from sqlalchemy import Date, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from greeter.models.base import Base, TimestampMixin


class User(Base, TimestampMixin):
    """A person who gets a birthday greeting at 09:00 in their own timezone."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    first_name: Mapped[str] = mapped_column(String(100))
    last_name: Mapped[str] = mapped_column(String(100))
    birthday: Mapped[date] = mapped_column(Date)
    # MM-DD, the index the birthday queries run against
    birthday_md: Mapped[str] = mapped_column(String(5), index=True)
    location: Mapped[str] = mapped_column(String(64))  # IANA timezone
    last_greeting_sent_at: Mapped[datetime | None] = mapped_column(default=None)

    def __repr__(self) -> str:
        return f"<User {self.id} {self.first_name} {self.last_name}>"
