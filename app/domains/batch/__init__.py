# app/domains/batch/__init__.py

"""
FastAPI 애플리케이션의 'batch' 도메인 패키지입니다.

'batch' 도메인은 제조 오더 하나를 고정된 8단계 템플릿으로 관리하는 생산 배치(ProductionBatch)를
다룹니다. 배치는 단계별 상태 머신, 품질 게이트, 투입/산출 자재, 비용 원장, 그리고
추가만 가능한(append-only) 상태 변경 로그와 자재 소비 로그를 하나의 문서로 포함합니다.

주요 서브모듈:
- `models.py`: ProductionBatch 테이블과 배치 문서에 포함되는 하위 구조 정의.
- `schemas.py`: 요청 및 응답 Pydantic 모델.
- `rules.py`: 파생 필드 계산, 단계 전이 검증, 비용/지표 집계 등 순수 함수.
- `crud.py`: 배치 및 배치 번호 시퀀스에 대한 비동기 CRUD.
- `services.py`: 배치 단계 상태 머신 연산.
- `routers.py`: FastAPI API 엔드포인트 정의.
"""

__title__ = "ProdFlow Production Batch Domain"
__description__ = "Eight-stage production batch with quality gates, material and cost ledgers."
__version__ = "0.1.0"
__all__ = []
