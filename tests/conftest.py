# tests/conftest.py

from typing import AsyncGenerator, Callable
from contextlib import asynccontextmanager

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

# app.main을 임포트하여 FastAPI 앱 인스턴스에 접근합니다.
from app.main import app as main_app
from app.core import dependencies as deps
from app.core.database import get_session

# --- 모든 모델 임포트 ---
#  설명: SQLModel.metadata.create_all()이 모든 테이블을 인식하려면,
#  아래처럼 모든 모델 클래스가 한 번 이상 임포트되어야 합니다.
from app.domains.models import *    # noqa: F401, F403


# --- 테스트용 데이터베이스 설정 ---
# 테스트마다 새로운 인메모리 SQLite DB를 사용합니다.
# StaticPool은 하나의 연결을 공유하므로 인메모리 DB가 세션 사이에서 유지됩니다.
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

COMPANY_ID = 1
OTHER_COMPANY_ID = 2
ACTOR_ID = "tester"


# --- 데이터베이스 픽스처 ---
@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """
    테스트 함수마다 모든 테이블을 새로 생성한 엔진을 제공하고, 종료 시 폐기합니다.
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine  # 테스트 실행

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """
    각 테스트 함수마다 독립적인 비동기 데이터베이스 세션을 제공합니다.
    """
    TestingSessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with TestingSessionLocal() as session:
        yield session


# --- 테넌트 컨텍스트 픽스처 ---
@pytest.fixture(scope="function")
def ctx() -> deps.RequestContext:
    """회사 1 / 작업자 'tester' 컨텍스트."""
    return deps.RequestContext(company_id=COMPANY_ID, actor_id=ACTOR_ID)


@pytest.fixture(scope="function")
def other_ctx() -> deps.RequestContext:
    """다른 회사(2) 컨텍스트. 테넌트 격리 검증용."""
    return deps.RequestContext(company_id=OTHER_COMPANY_ID, actor_id="outsider")


# --- 클라이언트 픽스처 ---
@pytest.fixture(scope="function")
def client_factory(db_session: AsyncSession) -> Callable[..., AsyncGenerator[AsyncClient, None]]:
    """
    지정한 회사/작업자 헤더를 가진 AsyncClient를 생성하는 팩토리 함수를 반환합니다.
    """
    @asynccontextmanager
    async def _create_client_context(
        company_id: int = COMPANY_ID, actor_id: str = ACTOR_ID
    ) -> AsyncGenerator[AsyncClient, None]:
        def override_get_session():
            yield db_session

        original_overrides = main_app.dependency_overrides.copy()
        try:
            main_app.dependency_overrides.update({
                get_session: override_get_session,
                deps.get_db_session: override_get_session,
            })
            transport = ASGITransport(app=main_app)
            headers = {"X-Company-Id": str(company_id), "X-Actor-Id": actor_id}
            async with AsyncClient(transport=transport, base_url="http://test", headers=headers) as client:
                yield client
        finally:
            # 테스트가 끝난 후 원래 의존성 상태로 되돌립니다.
            main_app.dependency_overrides.clear()
            main_app.dependency_overrides.update(original_overrides)

    return _create_client_context


@pytest_asyncio.fixture(scope="function")
async def client(client_factory) -> AsyncGenerator[AsyncClient, None]:
    """회사 1의 작업자로 요청하는 클라이언트."""
    async with client_factory() as client:
        yield client


@pytest_asyncio.fixture(scope="function")
async def other_client(client_factory) -> AsyncGenerator[AsyncClient, None]:
    """회사 2의 작업자로 요청하는 클라이언트."""
    async with client_factory(company_id=OTHER_COMPANY_ID, actor_id="outsider") as client:
        yield client
