"""동물 대여 규칙 엔진.

trainer만 재고를 추가할 수 있고, 누구나 한 번에 한 마리만 대여할 수 있다.
모든 연산은 전역 락 + DB 트랜잭션(행 잠금) 하나 안에서 실행되며, 거절되면 롤백된다.
"""
import enum
import logging
import os
import threading
from contextlib import contextmanager
from typing import Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import AnimalCount, Loan, ZooEvent

logger = logging.getLogger(__name__)

TRAINER_ID = os.getenv("TRAINER_ID", "trainer")

_ledger_lock = threading.Lock()


class Category(enum.IntEnum):
    FISH = 1
    CAT = 2
    DOG = 3
    RABBIT = 4
    PARROT = 5


class Gender(enum.IntEnum):
    MALE = 0
    FEMALE = 1


# 한국어/영어 별칭 → 내부 enum
CATEGORY_ALIASES = {
    "fish": Category.FISH,
    "물고기": Category.FISH,
    "cat": Category.CAT,
    "고양이": Category.CAT,
    "dog": Category.DOG,
    "개": Category.DOG,
    "강아지": Category.DOG,
    "rabbit": Category.RABBIT,
    "토끼": Category.RABBIT,
    "parrot": Category.PARROT,
    "앵무새": Category.PARROT,
}

GENDER_ALIASES = {
    "male": Gender.MALE,
    "m": Gender.MALE,
    "남": Gender.MALE,
    "남자": Gender.MALE,
    "female": Gender.FEMALE,
    "f": Gender.FEMALE,
    "여": Gender.FEMALE,
    "여자": Gender.FEMALE,
}

PRETTY_NAMES = {
    Category.FISH: "물고기",
    Category.CAT: "고양이",
    Category.DOG: "개",
    Category.RABBIT: "토끼",
    Category.PARROT: "앵무새",
}

MALE_CATEGORIES = frozenset({Category.FISH, Category.DOG})
CAT_MIN_AGE_FEMALE = 40

# DB Integer 범위 안에 들도록
MAX_AGE = 150
MAX_COUNT = 1_000_000


def parse_category(raw: Union[str, Category, None]) -> Optional[Category]:
    if raw is None or isinstance(raw, Category):
        return raw
    key = raw.strip().lower().replace(" ", "")
    return CATEGORY_ALIASES.get(key)


def parse_gender(raw: Union[str, Gender, None]) -> Optional[Gender]:
    if raw is None or isinstance(raw, Gender):
        return raw
    return GENDER_ALIASES.get(raw.strip().lower())


def to_pretty(category: Category) -> str:
    return PRETTY_NAMES.get(category, category.name.lower())


class LendingError(Exception):
    """Rejected registry call. ``reason`` is shown to the caller as-is."""

    reason = "Rejected"
    status_code = 400

    def __init__(self, reason: Optional[str] = None):
        if reason is not None:
            self.reason = reason
        super().__init__(self.reason)


class Unauthorized(LendingError):
    reason = "Not an trainer"
    status_code = 403


class InvalidCategory(LendingError):
    reason = "Invalid animal"


class InvalidCount(LendingError):
    reason = "Invalid count"


class InvalidAge(LendingError):
    reason = "Invalid Age"


class Unavailable(LendingError):
    reason = "Selected animal not available"
    status_code = 409


class GenderRestricted(LendingError):
    reason = "Invalid animal for men"


class GenderMismatch(LendingError):
    reason = "Invalid Gender"
    status_code = 409


class AlreadyBorrowed(LendingError):
    reason = "Already adopted a animal"
    status_code = 409


class NoActiveLoan(LendingError):
    reason = "No borrowed animals"
    status_code = 404


@contextmanager
def _transaction(db: Session, op: str, caller: str):
    with _ledger_lock:
        try:
            yield
            db.commit()
        except LendingError as e:
            db.rollback()
            logger.warning("%s rejected for %s: %s", op, caller, e.reason)
            raise
        except Exception:
            db.rollback()
            raise


# 여러 워커/컨테이너가 같은 DB를 쓰므로 행 잠금(SELECT ... FOR UPDATE)까지 건다
def _count_row(db: Session, category: Category, lock: bool = False) -> Optional[AnimalCount]:
    return db.get(AnimalCount, int(category), with_for_update=lock)


def _loan_row(db: Session, caller: str) -> Optional[Loan]:
    return db.get(Loan, caller, with_for_update=True)


def _record(db: Session, kind: str, category: Category, holder: str, count: Optional[int] = None) -> ZooEvent:
    event = ZooEvent(kind=kind, category=int(category), count=count, holder=holder)
    db.add(event)
    db.flush()
    return event


def add(db: Session, caller: str, category: Optional[Category], count: int) -> ZooEvent:
    with _transaction(db, "add", caller):
        if caller != TRAINER_ID:
            raise Unauthorized()
        if category is None:
            raise InvalidCategory()
        if count < 0 or count > MAX_COUNT:
            raise InvalidCount()

        row = _count_row(db, category, lock=True)
        if row is None:
            row = AnimalCount(category=int(category), count=0)
            db.add(row)
        row.count += count
        event = _record(db, "Added", category, caller, count=count)
    logger.info("Added %d %s (now %d)", count, category.name, row.count)
    return event


def borrow(db: Session, caller: str, age: int, gender: Gender, category: Optional[Category]) -> ZooEvent:
    with _transaction(db, "borrow", caller):
        if age <= 0 or age > MAX_AGE:
            raise InvalidAge()

        # 대여 중인 동안은 처음 신고한 나이/성별이 고정되고, 어떤 동물을 요청하든 거절된다
        loan = _loan_row(db, caller)
        if loan is not None:
            if age != loan.age:
                raise InvalidAge()
            if gender != loan.gender:
                raise GenderMismatch()
            raise AlreadyBorrowed()

        if category is None:
            raise InvalidCategory("Invalid animal type")

        row = _count_row(db, category, lock=True)
        if row is None or row.count == 0:
            raise Unavailable()

        if gender == Gender.MALE and category not in MALE_CATEGORIES:
            raise GenderRestricted("Invalid animal for men")
        if gender == Gender.FEMALE and category == Category.CAT and age < CAT_MIN_AGE_FEMALE:
            raise GenderRestricted("Invalid animal for women under 40")

        row.count -= 1
        db.add(Loan(holder=caller, category=int(category), age=age, gender=int(gender)))
        try:
            db.flush()
        except IntegrityError as e:
            # 같은 대여자의 동시 첫 대여: 먼저 커밋한 쪽이 이긴다
            raise AlreadyBorrowed() from e
        event = _record(db, "Borrowed", category, caller)
    logger.info("%s borrowed %s (left %d)", caller, category.name, row.count)
    return event


def give_back(db: Session, caller: str) -> ZooEvent:
    with _transaction(db, "give_back", caller):
        loan = _loan_row(db, caller)
        if loan is None:
            raise NoActiveLoan()

        category = Category(loan.category)
        row = _count_row(db, category, lock=True)
        if row is None:
            row = AnimalCount(category=int(category), count=0)
            db.add(row)
        row.count += 1
        db.delete(loan)
        event = _record(db, "Returned", category, caller)
    logger.info("%s returned %s (now %d)", caller, category.name, row.count)
    return event


def animal_count(db: Session, category: Optional[Category]) -> int:
    if category is None:
        return 0
    row = _count_row(db, category)
    return row.count if row else 0


def inventory(db: Session) -> dict[Category, int]:
    counts = {c.category: c.count for c in db.query(AnimalCount).all()}
    return {c: counts.get(int(c), 0) for c in Category}


def active_loan(db: Session, caller: str) -> Optional[Loan]:
    return db.get(Loan, caller)


def recent_events(db: Session, limit: int = 50) -> list[ZooEvent]:
    return db.query(ZooEvent).order_by(ZooEvent.id.desc()).limit(limit).all()
