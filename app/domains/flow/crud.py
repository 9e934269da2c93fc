# app/domains/flow/crud.py

"""
'flow' 도메인의 CRUD(Create, Read, Update, Delete) 작업을 위한 클래스들을 정의하는 모듈입니다.
모든 조회는 company_id로 격리되며, 수량/상태 변경은 버전 검사(update_versioned)를 거칩니다.
"""

import logging
from typing import Dict, List, Optional, Tuple
from decimal import Decimal

from sqlalchemy import func
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.crud_base import CRUDBase, require_company_id
from app.domains.flow import models as flow_models
from app.domains.flow.stages import StageType, PoolKind

logger = logging.getLogger(__name__)


class CRUDStageLedger(CRUDBase[flow_models.StageLedgerBase, flow_models.StageLedgerBase, flow_models.StageLedgerBase]):
    def __init__(self, stage_type: StageType):
        super().__init__(model=flow_models.LEDGER_MODELS[stage_type])
        self.stage_type = stage_type

    async def get_wip(
        self, db: AsyncSession, *, company_id: int, skip: int = 0, limit: int = 100
    ) -> List[flow_models.StageLedgerBase]:
        """잔여 재공량이 남아 있는 원장 목록 (오래된 순)."""
        require_company_id(company_id)
        query = (
            select(self.model)
            .where(self.model.company_id == company_id, self.model.pending_quantity > 0)
            .order_by(self.model.id)
            .offset(skip)
            .limit(limit)
        )
        result = await db.execute(query)
        return list(result.scalars().all())

    async def get_by_lot(
        self, db: AsyncSession, *, company_id: int, lot_number: str
    ) -> List[flow_models.StageLedgerBase]:
        require_company_id(company_id)
        query = (
            select(self.model)
            .where(self.model.company_id == company_id, self.model.lot_number == lot_number)
            .order_by(self.model.id)
        )
        result = await db.execute(query)
        return list(result.scalars().all())

    async def get_latest_by_lot(
        self, db: AsyncSession, *, company_id: int, lot_number: str
    ) -> Optional[flow_models.StageLedgerBase]:
        """로트와 일치하는 가장 최근 원장 하나."""
        require_company_id(company_id)
        query = (
            select(self.model)
            .where(self.model.company_id == company_id, self.model.lot_number == lot_number)
            .order_by(self.model.id.desc())
            .limit(1)
        )
        result = await db.execute(query)
        return result.scalars().first()

    async def get_all_for_audit(
        self, db: AsyncSession, *, company_id: Optional[int] = None
    ) -> List[flow_models.StageLedgerBase]:
        query = select(self.model).order_by(self.model.id)
        if company_id is not None:
            query = query.where(self.model.company_id == require_company_id(company_id))
        result = await db.execute(query)
        return list(result.scalars().all())


class CRUDPoolEntry(CRUDBase[flow_models.PoolEntryBase, flow_models.PoolEntryBase, flow_models.PoolEntryBase]):
    def __init__(self, kind: PoolKind):
        super().__init__(model=flow_models.POOL_MODELS[kind])
        self.kind = kind

    async def get_by_lot(
        self, db: AsyncSession, *, company_id: int, lot_number: str
    ) -> List[flow_models.PoolEntryBase]:
        require_company_id(company_id)
        query = (
            select(self.model)
            .where(self.model.company_id == company_id, self.model.lot_number == lot_number)
            .order_by(self.model.id)
        )
        result = await db.execute(query)
        return list(result.scalars().all())

    async def get_totals_by_status(
        self, db: AsyncSession, *, company_id: int
    ) -> Dict[flow_models.PoolStatus, Tuple[int, Decimal]]:
        """상태별 (건수, 수량 합계)."""
        require_company_id(company_id)
        query = (
            select(self.model.status, func.count(self.model.id), func.coalesce(func.sum(self.model.quantity), 0))
            .where(self.model.company_id == company_id)
            .group_by(self.model.status)
        )
        result = await db.execute(query)
        return {
            flow_models.PoolStatus(status): (count, Decimal(str(total)))
            for status, count, total in result.all()
        }


class CRUDForwardingStep(CRUDBase[flow_models.ForwardingStep, flow_models.ForwardingStep, flow_models.ForwardingStep]):
    def __init__(self):
        super().__init__(model=flow_models.ForwardingStep)

    async def get_retryable(
        self, db: AsyncSession, *, max_attempts: int, company_id: Optional[int] = None, limit: int = 100
    ) -> List[flow_models.ForwardingStep]:
        """pending/failed 상태이면서 재시도 한도에 도달하지 않은 step을 id 순으로 반환합니다."""
        query = (
            select(self.model)
            .where(
                self.model.status.in_([flow_models.StepStatus.PENDING, flow_models.StepStatus.FAILED]),
                self.model.attempts < max_attempts,
            )
            .order_by(self.model.id)
            .limit(limit)
        )
        if company_id is not None:
            query = query.where(self.model.company_id == require_company_id(company_id))
        result = await db.execute(query)
        return list(result.scalars().all())


# 단계/풀 종류별 CRUD 인스턴스
stage_ledger: Dict[StageType, CRUDStageLedger] = {stage_type: CRUDStageLedger(stage_type) for stage_type in StageType}
pool_entry: Dict[PoolKind, CRUDPoolEntry] = {kind: CRUDPoolEntry(kind) for kind in PoolKind}
forwarding_step = CRUDForwardingStep()
