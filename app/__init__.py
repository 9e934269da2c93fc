# app/__init__.py

"""
ProdFlow FastAPI 애플리케이션의 메인 패키지입니다.

섬유 생산 공정의 단계 원장(표백 후 → 날염 → 큐어링 → 수세 → 가공 → 펠팅 → 검사 → 포장)과
8단계 생산 배치를 관리하는 백엔드입니다.
FastAPI 애플리케이션의 진입점 (main.py)과
공통 설정, 데이터베이스 연결, 예외 계층을 담는 core 서브패키지,
그리고 각 비즈니스 도메인(flow, batch)을 대표하는 domains 서브패키지로 구성됩니다.
"""

APP_NAME = "ProdFlow FastAPI API"
APP_VERSION = "0.1.0"
API_PREFIX = "/api/v1"  # API 라우트의 공통 접두사 (main.py에서 적용)

__version__ = APP_VERSION
__title__ = APP_NAME
__description__ = "Textile production flow (stage ledger & production batch) API backend."
__license__ = "MIT"
__all__ = []
