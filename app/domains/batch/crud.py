# app/domains/batch/crud.py

"""
'batch' 도메인의 CRUD 작업을 위한 클래스들을 정의하는 모듈입니다.
배치 문서의 모든 변경은 update_versioned(낙관적 버전 검사)를 거칩니다.
"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.crud_base import CRUDBase, require_company_id
from app.core.exceptions import ConcurrentModificationError
from app.domains.batch import models as batch_models

logger = logging.getLogger(__name__)

SEQUENCE_RETRY_LIMIT = 5


class CRUDBatchNumberSequence(
    CRUDBase[batch_models.BatchNumberSequence, batch_models.BatchNumberSequence, batch_models.BatchNumberSequence]
):
    async def get_for_period(
        self, db: AsyncSession, *, company_id: int, period: str
    ) -> Optional[batch_models.BatchNumberSequence]:
        statement = select(self.model).where(self.model.company_id == company_id, self.model.period == period)
        result = await db.execute(statement)
        return result.scalars().first()

    async def next_value(self, db: AsyncSession, *, company_id: int, period: str) -> int:
        """
        회사 + 기간의 시퀀스를 1 증가시키고 새 값을 반환합니다. (커밋하지 않음)
        동시 증가로 버전이 어긋나거나 최초 행이 중복 생성되면 다시 읽고 재시도합니다.
        """
        require_company_id(company_id)
        for attempt in range(1, SEQUENCE_RETRY_LIMIT + 1):
            row = await self.get_for_period(db, company_id=company_id, period=period)
            try:
                if row is None:
                    row = batch_models.BatchNumberSequence(company_id=company_id, period=period, last_value=1)
                    await self.create(db, obj_in=row, commit=False)
                    return 1
                next_value = row.last_value + 1
                await self.update_versioned(db, db_obj=row, values={"last_value": next_value}, commit=False)
                return next_value
            except IntegrityError:
                await db.rollback()
                logger.warning(
                    "Batch number sequence insert collided (company=%s, period=%s, attempt=%s)",
                    company_id, period, attempt,
                )
            except ConcurrentModificationError:
                logger.warning(
                    "Batch number sequence increment conflicted (company=%s, period=%s, attempt=%s)",
                    company_id, period, attempt,
                )
        raise ConcurrentModificationError(
            "Could not allocate a batch number; please retry.",
            context={"company_id": company_id, "period": period},
        )


production_batch = CRUDBase[
    batch_models.ProductionBatch, batch_models.ProductionBatch, batch_models.ProductionBatch
](model=batch_models.ProductionBatch)
batch_number_sequence = CRUDBatchNumberSequence(model=batch_models.BatchNumberSequence)
