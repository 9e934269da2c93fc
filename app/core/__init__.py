# app/core/__init__.py

"""
FastAPI 애플리케이션의 핵심 구성 요소 패키지입니다.

주요 서브모듈은 다음과 같습니다:

- `config.py`: 애플리케이션의 설정 및 환경 변수 관리 (Pydantic Settings).
- `database.py`: 데이터베이스 연결, 세션 관리 (SQLModel 및 AsyncSQLAlchemy).
- `exceptions.py`: 도메인 예외 계층과 HTTP 응답 변환 핸들러.
- `crud_base.py`: 회사 단위로 격리되고 버전 검사를 포함한 공통 CRUD.
- `dependencies.py`: FastAPI의 의존성 주입 시스템에서 사용될 공통 의존성 함수들.
- `tasks.py`: ARQ 워커의 공통 태스크.
"""

__title__ = "ProdFlow Core"
__description__ = "Core components for the ProdFlow FastAPI application."
__version__ = "0.1.0"
__all__ = []
