# app/domains/flow/__init__.py

"""
FastAPI 애플리케이션의 'flow' 도메인 패키지입니다.

'flow' 도메인은 원단 한 로트(lot)가 공정 단계(표백 후 → 날염 → 큐어링 → 수세 →
가공 → 펠팅 → 검단 → 포장)를 거치며 투입량(미터)이 전달량, 부산물(불량/수축),
잔여 재공(WIP)으로 나뉘는 과정을 단계별 원장(StageLedger)으로 관리합니다.

주요 서브모듈:
- `stages.py`: 단계 체인 정의 (다음 단계, 부산물 풀 종류, 기본 사유, 품질 보유 여부).
- `models.py`: 단계별 원장, 부산물 풀(Loss/Overflow), forwarding step(아웃박스) SQLModel 정의.
- `schemas.py`: 요청 및 응답 Pydantic 모델.
- `crud.py`: 원장/풀/step에 대한 비동기 CRUD.
- `services.py`: 출력 기록(record_output) 및 로트 조회(resolve_lot) 등 전달 엔진.
- `routers.py`: FastAPI API 엔드포인트 정의.
- `tasks.py`: ARQ 백그라운드 작업 (미완료 전달 재처리, 보존 법칙 감사).
"""

__title__ = "ProdFlow Stage Ledger Domain"
__description__ = "Tracks fabric quantity through the stage chain with a conservation invariant."
__version__ = "0.1.0"
__all__ = []
