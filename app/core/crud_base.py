# app/core/crud_base.py

"""
공통 CRUD(Create, Read, Update, Delete) 작업을 위한 기본 클래스 모듈입니다.
모든 메서드는 비동기(async) 환경에 맞게 작성되었으며,
모든 조회는 회사(company_id) 단위로 격리됩니다.
"""

from typing import Generic, List, Optional, Type, TypeVar, Any, Dict

from sqlalchemy import update as sa_update
from sqlmodel import SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession
from pydantic import BaseModel

from app.core.exceptions import ConcurrentModificationError, TenancyViolation

ModelType = TypeVar("ModelType", bound=SQLModel)
CreateSchemaType = TypeVar("CreateSchemaType", bound=BaseModel)
UpdateSchemaType = TypeVar("UpdateSchemaType", bound=BaseModel)


def require_company_id(company_id: Optional[int]) -> int:
    """
    companyId가 없으면 어떤 조회도 하기 전에 즉시 실패합니다.
    """
    if company_id is None or isinstance(company_id, bool) or not isinstance(company_id, int) or company_id <= 0:
        raise TenancyViolation("A valid companyId is required for every operation.")
    return company_id


class CRUDBase(Generic[ModelType, CreateSchemaType, UpdateSchemaType]):
    """
    모든 CRUD 작업에 대한 기본 클래스를 정의합니다.
    """
    def __init__(self, model: Type[ModelType]):
        self.model = model

    async def get(self, db: AsyncSession, id: Any) -> Optional[ModelType]:
        """
        ID를 기준으로 단일 레코드를 조회합니다. (회사 격리 없음, 내부 용도)
        """
        return await db.get(self.model, id)

    async def get_for_company(self, db: AsyncSession, *, company_id: int, id: Any) -> Optional[ModelType]:
        """
        회사 ID와 레코드 ID로 단일 레코드를 조회합니다.
        다른 회사의 레코드는 존재하지 않는 것으로 취급합니다.
        """
        require_company_id(company_id)
        statement = select(self.model).where(self.model.id == id, self.model.company_id == company_id)
        response = await db.execute(statement)
        return response.scalar_one_or_none()

    async def get_multi_for_company(
        self,
        db: AsyncSession,
        *,
        company_id: int,
        filters: Optional[Dict[str, Any]] = None,  # 다중 속성 필터: {"attribute_name": "value"}
        order_by_field: Optional[str] = None,      # 정렬할 필드 (예: "id")
        order_desc: bool = True,                   # 내림차순 정렬 여부
        skip: int = 0,
        limit: int = 100
    ) -> List[ModelType]:
        """
        회사 단위 다중 조회. None 값의 필터는 무시합니다.
        """
        require_company_id(company_id)
        conditions = [self.model.company_id == company_id]

        if filters:
            for attribute, value in filters.items():
                if value is None:
                    continue
                if not hasattr(self.model, attribute):
                    raise ValueError(f"Model {self.model.__name__} has no attribute '{attribute}'")
                conditions.append(getattr(self.model, attribute) == value)

        query = select(self.model).where(*conditions)

        if order_by_field:
            column = getattr(self.model, order_by_field)
            query = query.order_by(column.desc() if order_desc else column)
        else:
            # 기본 정렬 (id 내림차순)
            query = query.order_by(self.model.id.desc())

        query = query.offset(skip).limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())

    async def create(self, db: AsyncSession, *, obj_in: Any, commit: bool = True) -> ModelType:
        """
        새로운 레코드를 생성합니다. obj_in은 스키마 또는 모델 인스턴스일 수 있습니다.
        """
        db_obj = obj_in if isinstance(obj_in, self.model) else self.model.model_validate(obj_in)
        db.add(db_obj)
        if commit:
            await db.commit()
        else:
            await db.flush()
        await db.refresh(db_obj)
        return db_obj

    async def update_versioned(
        self, db: AsyncSession, *, db_obj: ModelType, values: Dict[str, Any], commit: bool = True
    ) -> ModelType:
        """
        낙관적 버전 검사를 포함한 업데이트.
        `UPDATE ... WHERE id = :id AND version = :version` 이 한 행도 갱신하지 못하면
        다른 요청이 먼저 수정한 것이므로 ConcurrentModificationError를 발생시킵니다.
        """
        obj_id = db_obj.id
        expected_version = db_obj.version
        statement = (
            sa_update(self.model)
            .where(self.model.id == obj_id, self.model.version == expected_version)
            .values(**values, version=expected_version + 1)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(statement)
        if result.rowcount != 1:
            await db.rollback()
            raise ConcurrentModificationError(
                f"{self.model.__name__} {obj_id} was modified concurrently; reload and retry.",
                context={"id": obj_id, "expected_version": expected_version},
            )
        if commit:
            await db.commit()
        await db.refresh(db_obj)
        return db_obj

    async def delete(self, db: AsyncSession, *, id: Any) -> Optional[ModelType]:
        """
        ID를 기준으로 레코드를 삭제합니다.
        """
        db_obj = await db.get(self.model, id)
        if db_obj:
            await db.delete(db_obj)
            await db.commit()
        return db_obj
