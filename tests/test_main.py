# tests/test_main.py

"""
FastAPI 애플리케이션의 메인 엔드포인트에 대한 통합 테스트를 정의하는 모듈입니다.

- 애플리케이션의 루트 경로 (`/`) 응답을 테스트합니다.
- 데이터베이스 연결 헬스 체크 엔드포인트 (`/health-check`)를 테스트합니다.
- 도메인 예외가 공통 JSON 오류 형식으로 변환되는지 테스트합니다.
"""

import pytest
from httpx import AsyncClient

from app.core.config import settings


@pytest.mark.asyncio
async def test_read_root(client: AsyncClient):
    """(성공) 루트 엔드포인트가 환영 메시지를 반환"""
    response = await client.get("/")

    assert response.status_code == 200
    assert response.json() == {
        "message": f"Welcome to {settings.APP_NAME}. Visit /docs for interactive API documentation."
    }


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    """(성공) 헬스 체크 엔드포인트가 DB 연결 상태를 반환"""
    response = await client.get("/health-check")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "database_connection": "successful"}


@pytest.mark.asyncio
async def test_missing_company_header_is_rejected(client_factory):
    """(실패) 테넌시: X-Company-Id 헤더가 없으면 조회 전에 403"""
    async with client_factory() as client:
        # [Given] 회사 헤더를 제거
        del client.headers["X-Company-Id"]

        # [When]
        response = await client.get("/api/v1/batch/batches")

    # [Then]
    assert response.status_code == 403
    body = response.json()
    assert body["error_code"] == "tenancy_violation"
    assert "detail" in body and "context" in body


@pytest.mark.asyncio
async def test_invalid_company_header_is_rejected(client_factory):
    """(실패) 테넌시: 숫자가 아닌 회사 ID는 403"""
    async with client_factory() as client:
        client.headers["X-Company-Id"] = "abc"
        response = await client.get("/api/v1/flow/ledgers/printing")

    assert response.status_code == 403
