# app/domains/flow/tasks.py

import logging
from typing import Any, Dict, Optional

from app.core.database import get_async_session_context
from app.domains.flow import services as flow_services

#  로거 설정
logger = logging.getLogger(__name__)


async def reconcile_forwarding_steps_task(ctx: Dict[str, Any]) -> Dict[str, Any]:
    """
    ARQ 워커에 의해 주기적으로 실행되는 forwarding step 재처리 작업.
    record_output 이후 완료되지 못한 부산물/하위 원장 생성 단계를 다시 실행합니다.
    """
    logger.info("백그라운드 작업 시작: forwarding step 재처리")
    async with get_async_session_context() as db:
        report = await flow_services.reconcile_forwarding_steps(db)
    if report.failed:
        logger.warning("재처리 후에도 실패한 step: %s", report.failed)
    return report.model_dump()


async def audit_ledger_conservation_task(ctx: Dict[str, Any], company_id: Optional[int] = None) -> Dict[str, Any]:
    """
    모든 단계 원장의 보존 법칙을 검사하고, 잔여량/상태가 어긋난 원장을 바로잡습니다.
    """
    logger.info("백그라운드 작업 시작: 원장 보존 법칙 감사 (company_id=%s)", company_id)
    async with get_async_session_context() as db:
        report = await flow_services.audit_ledgers(db, company_id=company_id)
    if report.violations:
        logger.error("보존 법칙 위반 원장 발견: %s", report.violations)
    logger.info("원장 감사 완료: checked=%s repaired=%s", report.checked, len(report.repaired))
    return report.model_dump()
