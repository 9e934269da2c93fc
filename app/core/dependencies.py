# app/core/dependencies.py

"""
FastAPI 애플리케이션의 의존성 주입(Dependency Injection)을 정의하는 모듈입니다.

- 데이터베이스 세션 관리 (get_db_session).
- 요청 주체(actor)와 회사(company) 컨텍스트 획득 (get_request_context).

인증 자체는 앞단의 게이트웨이가 담당하며, 이 서비스는 게이트웨이가 채워 준
`X-Company-Id` / `X-Actor-Id` 헤더만 신뢰합니다.
"""

from typing import AsyncGenerator, Optional

from fastapi import Header
from pydantic import BaseModel, Field
from sqlmodel.ext.asyncio.session import AsyncSession  # AsyncSession 임포트

# 실제 데이터베이스 세션 제너레이터 임포트
from app.core.database import get_session as get_main_app_session
from app.core.exceptions import TenancyViolation

SYSTEM_ACTOR = "system"


class RequestContext(BaseModel):
    """모든 서비스 호출에 전달되는 회사/작업자 컨텍스트."""
    company_id: int = Field(..., gt=0, description="테넌트(회사) ID")
    actor_id: str = Field(SYSTEM_ACTOR, description="작업을 수행한 사용자 ID")


# --- 데이터베이스 세션 의존성 주입 ---
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:  # 타입을 AsyncSession으로 명시
    """
    FastAPI 의존성 주입을 위한 비동기 데이터베이스 세션 제너레이터입니다.
    app.core.database.get_session을 래핑하여 사용합니다.
    """
    async for session in get_main_app_session():
        yield session


# --- 테넌트 컨텍스트 의존성 주입 ---
async def get_request_context(
    x_company_id: Optional[str] = Header(None, description="요청 대상 회사 ID"),
    x_actor_id: Optional[str] = Header(None, description="요청을 수행하는 사용자 ID"),
) -> RequestContext:
    """
    헤더에서 회사 ID와 작업자 ID를 읽습니다.
    회사 ID가 없거나 잘못된 경우 어떤 조회도 하기 전에 TenancyViolation을 발생시킵니다.
    """
    raw_company_id = (x_company_id or "").strip()
    if not raw_company_id.isdigit() or int(raw_company_id) <= 0:
        raise TenancyViolation(
            "X-Company-Id header is missing or invalid.",
            context={"x_company_id": x_company_id},
        )
    actor_id = (x_actor_id or "").strip() or SYSTEM_ACTOR
    return RequestContext(company_id=int(raw_company_id), actor_id=actor_id)
