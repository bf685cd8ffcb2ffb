from fastapi import FastAPI, Form, Header, HTTPException, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
import logging
import os, re

from .db import engine, get_db
from .models import Base
from . import registry
from .registry import Category, LendingError, parse_category, parse_gender, to_pretty

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="zoobot")
MM_TOKEN = os.getenv("MM_TOKEN", "")
API_TOKEN = os.getenv("API_TOKEN", "")

# 테이블 보장 (idempotent)
Base.metadata.create_all(bind=engine)


def mm_text_response(text: str, in_channel: bool = False) -> JSONResponse:
    # Mattermost JSON 응답 형식
    return JSONResponse({
        "response_type": "in_channel" if in_channel else "ephemeral",
        "text": text
    })


def event_view(event) -> dict:
    return {
        "kind": event.kind,
        "category": Category(event.category).name.lower(),
        "count": event.count,
        "holder": event.holder,
    }


def raise_http(e: LendingError):
    raise HTTPException(status_code=e.status_code, detail=e.reason) from e


def require_api_token(x_api_token: str = Header(None)):
    # REST 쪽은 신뢰하는 프런트엔드만 호출한다 (caller 필드를 그대로 믿으므로)
    if not API_TOKEN or x_api_token != API_TOKEN:
        logger.warning("REST call with bad or missing API token")
        raise HTTPException(status_code=403, detail="Forbidden")


@app.post("/mm/command")
def mm_command(
    token: str = Form(...),
    user_name: str = Form(...),      # 실행한 사용자 이름
    user_id: str = Form(...),        # 실행한 사용자 ID (대여자 식별자)
    text: str = Form(""),            # 슬래시 명령어 뒤에 친 내용
    team_domain: str = Form(None),
    channel_name: str = Form(None),
    command: str = Form(None),
    db: Session = Depends(get_db)
):
    # 토큰 검증
    if token != MM_TOKEN:
        logger.warning("slash command with bad token from %s", user_name)
        raise HTTPException(status_code=403, detail="Forbidden")

    # 파싱: "현황" / "추가 물고기 5" / "대여 물고기 24 남" / "반납"
    raw = text.strip()

    # 1) 현황
    if raw in ("현황", "상태", "status"):
        return status_view(db)

    # 2) 추가 <동물> <수량>  (trainer 전용)
    m = re.match(r"^(추가|add)\s+(\S+)\s+(\d+)$", raw, re.IGNORECASE)
    if m:
        category = parse_category(m.group(2))
        count = int(m.group(3))
        try:
            registry.add(db, user_id, category, count)
        except LendingError as e:
            return mm_text_response(f"추가 실패: {e.reason}")
        return mm_text_response(
            f"추가 완료: {to_pretty(category)} +{count} (현재 {registry.animal_count(db, category)})",
            in_channel=True,
        )

    # 3) 대여 <동물> <나이> <성별>
    m = re.match(r"^(대여|borrow)\s+(\S+)\s+(\d+)\s+(\S+)$", raw, re.IGNORECASE)
    if m:
        category = parse_category(m.group(2))
        age = int(m.group(3))
        gender = parse_gender(m.group(4))
        if gender is None:
            return mm_text_response(f"알 수 없는 성별입니다: {m.group(4)}")
        try:
            registry.borrow(db, user_id, age, gender, category)
        except LendingError as e:
            return mm_text_response(f"대여 실패: {e.reason}")
        return mm_text_response(f"대여 완료: {to_pretty(category)} → {user_name}", in_channel=True)

    # 4) 반납
    if re.match(r"^(반납|return)$", raw, re.IGNORECASE):
        try:
            event = registry.give_back(db, user_id)
        except LendingError as e:
            return mm_text_response(f"반납 실패: {e.reason}")
        return mm_text_response(
            f"반납 완료: {to_pretty(Category(event.category))} ← {user_name}", in_channel=True
        )

    # 도움말
    help_text = (
        "사용법 예시:\n"
        "- `/동물원 현황` : 동물별 남은 수량 보기\n"
        "- `/동물원 추가 물고기 5` : (trainer 전용) 재고 추가\n"
        "- `/동물원 대여 물고기 24 남` : 동물 대여 (동물, 나이, 성별)\n"
        "- `/동물원 반납` : 대여한 동물 반납\n"
        "\n*규칙: 한 사람은 한 번에 한 마리만 대여 가능*\n"
        "*남성: 물고기/개만, 여성: 고양이는 40세 이상*\n"
    )
    return mm_text_response(help_text)


def status_view(db: Session) -> JSONResponse:
    counts = registry.inventory(db)
    lines = ["**동물원 현황**"]
    if not any(counts.values()):
        lines.append("_대여 가능한 동물이 없습니다_")
        return mm_text_response("\n".join(lines), in_channel=True)
    for category, count in counts.items():
        lines.append(f"- {to_pretty(category)}: {count}")
    return mm_text_response("\n".join(lines), in_channel=True)


@app.post("/zoo/add", dependencies=[Depends(require_api_token)])
def zoo_add(
    caller: str = Form(...),
    category: str = Form(...),
    count: int = Form(..., ge=0, le=registry.MAX_COUNT),
    db: Session = Depends(get_db)
):
    try:
        event = registry.add(db, caller, parse_category(category), count)
    except LendingError as e:
        raise_http(e)
    return event_view(event)


@app.post("/zoo/borrow", dependencies=[Depends(require_api_token)])
def zoo_borrow(
    caller: str = Form(...),
    age: int = Form(..., ge=0, le=registry.MAX_AGE),
    gender: str = Form(...),
    category: str = Form(...),
    db: Session = Depends(get_db)
):
    parsed_gender = parse_gender(gender)
    if parsed_gender is None:
        raise HTTPException(status_code=400, detail="Invalid gender")
    try:
        event = registry.borrow(db, caller, age, parsed_gender, parse_category(category))
    except LendingError as e:
        raise_http(e)
    return event_view(event)


@app.post("/zoo/give-back", dependencies=[Depends(require_api_token)])
def zoo_give_back(caller: str = Form(...), db: Session = Depends(get_db)):
    try:
        event = registry.give_back(db, caller)
    except LendingError as e:
        raise_http(e)
    return event_view(event)


@app.get("/zoo/animal-counts/{category}")
def zoo_animal_count(category: str, db: Session = Depends(get_db)):
    parsed = parse_category(category)
    if parsed is None:
        raise HTTPException(status_code=400, detail="Invalid animal type")
    return {"category": parsed.name.lower(), "count": registry.animal_count(db, parsed)}


@app.get("/zoo/inventory")
def zoo_inventory(db: Session = Depends(get_db)):
    return {c.name.lower(): n for c, n in registry.inventory(db).items()}


@app.get("/zoo/loans/{caller}")
def zoo_loan(caller: str, db: Session = Depends(get_db)):
    loan = registry.active_loan(db, caller)
    if loan is None:
        raise HTTPException(status_code=404, detail="No borrowed animals")
    return {
        "holder": loan.holder,
        "category": Category(loan.category).name.lower(),
        "age": loan.age,
        "gender": registry.Gender(loan.gender).name.lower(),
    }


@app.get("/zoo/events")
def zoo_events(limit: int = Query(50, ge=1, le=500), db: Session = Depends(get_db)):
    return [event_view(e) for e in registry.recent_events(db, limit)]
