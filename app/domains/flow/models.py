# app/domains/flow/models.py

"""
'flow' 도메인의 데이터베이스 ORM 모델을 정의하는 모듈입니다.

- 공정 단계별 원장: 공통 원장 형태(StageLedgerBase) + 단계별 고유 필드.
- 부산물 풀: 불량(Loss)과 수축/과잉(Overflow) 두 종류.
- ForwardingStep: 출력 기록 후 실행해야 할 부수 효과(부산물/하위 원장 생성)의 아웃박스.
"""

from typing import Optional, List, Dict, Type
from datetime import datetime, UTC
from decimal import Decimal
from enum import Enum

from sqlmodel import Field, SQLModel
from sqlalchemy import Index, JSON, Numeric
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from sqlalchemy.types import TIMESTAMP

from app.domains.flow.stages import StageType, PoolKind

# PostgreSQL에서는 JSONB, 그 외(SQLite 테스트 DB)에서는 JSON으로 저장합니다.
JSON_VARIANT = JSON().with_variant(JSONB(), "postgresql")
QUANTITY = Numeric(14, 2)


class LedgerStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class PoolStatus(str, Enum):
    AVAILABLE = "available"
    ALLOCATED = "allocated"
    USED = "used"
    DISPOSED = "disposed"
    REWORKED = "reworked"


class StepKind(str, Enum):
    BYPRODUCT = "byproduct"
    DOWNSTREAM = "downstream"


class StepStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


def _created_at_field() -> Optional[datetime]:
    return Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=TIMESTAMP(timezone=True),
        sa_column_kwargs={"server_default": func.now()},
        description="레코드 생성 일시"
    )


def _updated_at_field() -> Optional[datetime]:
    return Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=TIMESTAMP(timezone=True),
        sa_column_kwargs={"server_default": func.now(), "onupdate": func.now()},
        description="레코드 마지막 업데이트 일시"
    )


def _tenant_indexes(table_name: str) -> tuple:
    # 모든 조회는 (company_id, lot_number) 또는 (company_id, status)로 이루어집니다.
    return (
        Index(f"ix_{table_name}_company_lot", "company_id", "lot_number"),
        Index(f"ix_{table_name}_company_status", "company_id", "status"),
    )


# =============================================================================
# 1. 공통 원장 형태
# =============================================================================
class StageLedgerBase(SQLModel):
    """
    모든 단계 원장이 공유하는 형태.
    pending_quantity == input_quantity - output_quantity - byproduct_quantity 를 항상 만족합니다.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: int = Field(index=True, description="테넌트(회사) ID")
    lot_number: str = Field(max_length=100, description="로트 번호")
    party_name: str = Field(max_length=200, description="거래처(파티) 이름")
    customer_id: Optional[str] = Field(default=None, max_length=100, description="고객 ID")

    input_quantity: Decimal = Field(default=Decimal("0"), sa_type=QUANTITY, description="투입량 (미터)")
    output_quantity: Decimal = Field(default=Decimal("0"), sa_type=QUANTITY, description="누적 전달량")
    byproduct_quantity: Decimal = Field(default=Decimal("0"), sa_type=QUANTITY, description="누적 부산물량")
    pending_quantity: Decimal = Field(default=Decimal("0"), sa_type=QUANTITY, description="잔여 재공량")
    status: LedgerStatus = Field(default=LedgerStatus.PENDING)

    upstream_ref: Optional[int] = Field(default=None, description="전달받은 상위 원장 ID")
    upstream_stage: Optional[StageType] = Field(default=None, description="상위 원장의 단계")
    downstream_refs: List[int] = Field(default_factory=list, sa_type=JSON_VARIANT, description="전달한 하위 원장 ID 목록")
    forwarding_step_id: Optional[int] = Field(default=None, description="이 원장을 생성한 forwarding step ID")

    notes: Optional[str] = Field(default=None)
    created_by: Optional[str] = Field(default=None, max_length=100)
    updated_by: Optional[str] = Field(default=None, max_length=100)
    version: int = Field(default=1, description="낙관적 동시성 제어 버전")
    created_at: Optional[datetime] = _created_at_field()
    updated_at: Optional[datetime] = _updated_at_field()


class QualityCarrier(SQLModel):
    quality: Optional[str] = Field(default=None, max_length=100, description="원단 품질 등급/명칭")


# =============================================================================
# 2. 단계별 원장 테이블
# =============================================================================
class AfterBleachingLedger(StageLedgerBase, table=True):
    __tablename__ = "after_bleaching_ledgers"
    __table_args__ = _tenant_indexes("after_bleaching_ledgers")

    bleaching_process_ref: Optional[str] = Field(default=None, max_length=100, description="표백 공정 참조 번호")
    mercerise: bool = Field(default=False, description="머서화 여부")


class PrintingLedger(StageLedgerBase, QualityCarrier, table=True):
    __tablename__ = "printing_ledgers"
    __table_args__ = _tenant_indexes("printing_ledgers")

    printing_type: Optional[str] = Field(default=None, max_length=20, description="table | rotary | digital")
    design_number: Optional[str] = Field(default=None, max_length=100)


class CuringLedger(StageLedgerBase, QualityCarrier, table=True):
    __tablename__ = "curing_ledgers"
    __table_args__ = _tenant_indexes("curing_ledgers")

    process_type: str = Field(default="hazer", max_length=20, description="hazer | silicate | curing")
    temperature: Optional[Decimal] = Field(default=None, sa_type=Numeric(6, 1))


class WashingLedger(StageLedgerBase, table=True):
    __tablename__ = "washing_ledgers"
    __table_args__ = _tenant_indexes("washing_ledgers")

    washing_type: Optional[str] = Field(default=None, max_length=50)


class FinishingLedger(StageLedgerBase, QualityCarrier, table=True):
    __tablename__ = "finishing_ledgers"
    __table_args__ = _tenant_indexes("finishing_ledgers")

    finishing_type: Optional[str] = Field(default=None, max_length=50)
    gsm: Optional[Decimal] = Field(default=None, sa_type=Numeric(8, 2), description="평량 (g/m²)")


class FeltingLedger(StageLedgerBase, table=True):
    __tablename__ = "felting_ledgers"
    __table_args__ = _tenant_indexes("felting_ledgers")

    felt_type: Optional[str] = Field(default=None, max_length=50)


class CheckingLedger(StageLedgerBase, table=True):
    __tablename__ = "checking_ledgers"
    __table_args__ = _tenant_indexes("checking_ledgers")

    checker_name: Optional[str] = Field(default=None, max_length=100, description="검단자")
    fold_type: Optional[str] = Field(default=None, max_length=50)


class PackingLedger(StageLedgerBase, QualityCarrier, table=True):
    __tablename__ = "packing_ledgers"
    __table_args__ = _tenant_indexes("packing_ledgers")

    packing_type: Optional[str] = Field(default=None, max_length=50)
    bale_count: Optional[int] = Field(default=None, ge=0)


LEDGER_MODELS: Dict[StageType, Type[StageLedgerBase]] = {
    StageType.AFTER_BLEACHING: AfterBleachingLedger,
    StageType.PRINTING: PrintingLedger,
    StageType.CURING: CuringLedger,
    StageType.WASHING: WashingLedger,
    StageType.FINISHING: FinishingLedger,
    StageType.FELTING: FeltingLedger,
    StageType.CHECKING: CheckingLedger,
    StageType.PACKING: PackingLedger,
}

# 단계별 고유 필드 (공통 원장 형태 외의 필드)
STAGE_PAYLOAD_FIELDS: Dict[StageType, tuple] = {
    StageType.AFTER_BLEACHING: ("bleaching_process_ref", "mercerise"),
    StageType.PRINTING: ("printing_type", "design_number"),
    StageType.CURING: ("process_type", "temperature"),
    StageType.WASHING: ("washing_type",),
    StageType.FINISHING: ("finishing_type", "gsm"),
    StageType.FELTING: ("felt_type",),
    StageType.CHECKING: ("checker_name", "fold_type"),
    StageType.PACKING: ("packing_type", "bale_count"),
}


# =============================================================================
# 3. 부산물 풀
# =============================================================================
class PoolEntryBase(SQLModel):
    """
    부산물 풀 항목. 생성 후 quantity는 변경되지 않으며 status만 전이합니다.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: int = Field(index=True)
    lot_number: str = Field(max_length=100)
    party_name: Optional[str] = Field(default=None, max_length=200)
    source_stage_type: StageType
    source_ledger_id: int
    quantity: Decimal = Field(sa_type=QUANTITY)
    reason: str = Field(max_length=255)
    status: PoolStatus = Field(default=PoolStatus.AVAILABLE)
    forwarding_step_id: Optional[int] = Field(default=None)
    version: int = Field(default=1)
    created_at: Optional[datetime] = _created_at_field()
    updated_at: Optional[datetime] = _updated_at_field()


class LossPoolEntry(PoolEntryBase, table=True):
    """불량/폐기 수량이 쌓이는 풀 (rejection stock)."""
    __tablename__ = "loss_pool_entries"
    __table_args__ = _tenant_indexes("loss_pool_entries")


class OverflowPoolEntry(PoolEntryBase, table=True):
    """수축/과잉 수량이 쌓이는 풀 (longation stock)."""
    __tablename__ = "overflow_pool_entries"
    __table_args__ = _tenant_indexes("overflow_pool_entries")


POOL_MODELS: Dict[PoolKind, Type[PoolEntryBase]] = {
    PoolKind.LOSS: LossPoolEntry,
    PoolKind.OVERFLOW: OverflowPoolEntry,
}


# =============================================================================
# 4. Forwarding step (아웃박스)
# =============================================================================
class ForwardingStep(SQLModel, table=True):
    """
    record_output이 원장을 갱신한 트랜잭션 안에서 함께 기록되는 후속 작업.
    각 step은 독립 트랜잭션으로 실행되며, completed 상태의 step은 다시 실행되지 않습니다.
    """
    __tablename__ = "forwarding_steps"
    __table_args__ = (
        Index("ix_forwarding_steps_company_status", "company_id", "status"),
        Index("ix_forwarding_steps_ledger", "stage_type", "ledger_id"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: int = Field(index=True)
    stage_type: StageType = Field(description="원천 원장의 단계")
    ledger_id: int = Field(description="원천 원장 ID")
    kind: StepKind
    quantity: Decimal = Field(sa_type=QUANTITY)
    reason: Optional[str] = Field(default=None, max_length=255)
    status: StepStatus = Field(default=StepStatus.PENDING)
    attempts: int = Field(default=0)
    last_error: Optional[str] = Field(default=None)
    result_ref: Optional[int] = Field(default=None, description="생성된 풀 항목 또는 하위 원장 ID")
    created_by: Optional[str] = Field(default=None, max_length=100)
    version: int = Field(default=1)
    created_at: Optional[datetime] = _created_at_field()
    updated_at: Optional[datetime] = _updated_at_field()
    completed_at: Optional[datetime] = Field(default=None, sa_type=TIMESTAMP(timezone=True))
