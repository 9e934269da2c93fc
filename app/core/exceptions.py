# app/core/exceptions.py

"""
생산 흐름 도메인 전반에서 사용하는 예외 계층을 정의하는 모듈입니다.

서비스 계층은 HTTPException 대신 이 예외들을 발생시키며,
HTTP 응답으로의 변환은 `register_exception_handlers`가 등록한 핸들러만 담당합니다.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ProductionFlowError(Exception):
    """모든 도메인 예외의 기반 클래스."""
    status_code: int = status.HTTP_400_BAD_REQUEST
    error_code: str = "production_flow_error"

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "error_code": self.error_code, "context": self.context}


class NotFoundError(ProductionFlowError):
    """원장/배치/단계 ID를 찾을 수 없는 경우."""
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "not_found"


class ConservationViolation(ProductionFlowError):
    """수량 보존 법칙 위반 (투입량 초과 전달, 할당량 초과 소비 등)."""
    error_code = "conservation_violation"


class OverconsumptionError(ConservationViolation):
    """자재 소비량이 할당량을 초과하는 경우."""
    error_code = "overconsumption"


class InvalidTransition(ProductionFlowError):
    """단계 순서, 품질 게이트 또는 상태 전이 조건을 만족하지 못한 경우."""
    error_code = "invalid_transition"


class InvalidPayload(ProductionFlowError):
    """단계별 고유 필드(payload)가 해당 단계의 형식과 맞지 않는 경우."""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_code = "invalid_payload"


class TenancyViolation(ProductionFlowError):
    """companyId가 없거나 다른 회사의 데이터에 접근하려는 경우."""
    status_code = status.HTTP_403_FORBIDDEN
    error_code = "tenancy_violation"


class ConcurrentModificationError(ProductionFlowError):
    """낙관적 버전 검사에 실패한 경우. 호출자가 다시 읽고 재시도해야 합니다."""
    status_code = status.HTTP_409_CONFLICT
    error_code = "concurrent_modification"


class PartialForwardFailure(ProductionFlowError):
    """
    원장 변경은 이미 커밋되었으나 부산물/하위 원장 생성 단계가 실패한 경우.
    context에 원장 ID, 단계, 수량, 실패한 forwarding step ID가 담깁니다.
    """
    status_code = status.HTTP_502_BAD_GATEWAY
    error_code = "partial_forward_failure"


async def production_flow_error_handler(request: Request, exc: ProductionFlowError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s -> %s: %s %s", request.method, request.url.path, exc.error_code, exc.message, exc.context)
    else:
        logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.error_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def register_exception_handlers(app: FastAPI) -> None:
    """FastAPI 앱에 도메인 예외 핸들러를 등록합니다."""
    app.add_exception_handler(ProductionFlowError, production_flow_error_handler)
