from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import String, Integer, DateTime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class AnimalCount(Base):
    __tablename__ = "animal_counts"

    category: Mapped[int] = mapped_column(Integer, primary_key=True)
    count: Mapped[int] = mapped_column(Integer, default=0)


class Loan(Base):
    __tablename__ = "loans"

    # 대여자 1명당 1건
    holder: Mapped[str] = mapped_column(String(200), primary_key=True)
    category: Mapped[int] = mapped_column(Integer)
    age: Mapped[int] = mapped_column(Integer)
    gender: Mapped[int] = mapped_column(Integer)
    borrowed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class ZooEvent(Base):
    __tablename__ = "zoo_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(20))  # Added / Borrowed / Returned
    category: Mapped[int] = mapped_column(Integer)
    count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    holder: Mapped[str] = mapped_column(String(200))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
