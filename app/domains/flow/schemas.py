# app/domains/flow/schemas.py

"""
'flow' 도메인의 Pydantic 스키마를 정의하는 모듈입니다.
"""

from typing import Optional, Dict, Any, List, Type
from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import ConfigDict, Field
from sqlmodel import SQLModel

from app.domains.flow.models import (
    LedgerStatus, PoolStatus, StepKind, StepStatus, STAGE_PAYLOAD_FIELDS, StageLedgerBase,
)
from app.domains.flow.stages import StageType, PoolKind


# =============================================================================
# 1. 단계별 고유 필드 (payload) 스키마
# =============================================================================
class PrintingType(str, Enum):
    TABLE = "table"
    ROTARY = "rotary"
    DIGITAL = "digital"


class CuringProcess(str, Enum):
    HAZER = "hazer"
    SILICATE = "silicate"
    CURING = "curing"


class StagePayload(SQLModel):
    model_config = ConfigDict(extra="forbid", use_enum_values=True)


class AfterBleachingPayload(StagePayload):
    bleaching_process_ref: Optional[str] = Field(None, max_length=100)
    mercerise: Optional[bool] = None


class PrintingPayload(StagePayload):
    printing_type: Optional[PrintingType] = None
    design_number: Optional[str] = Field(None, max_length=100)


class CuringPayload(StagePayload):
    process_type: Optional[CuringProcess] = None
    temperature: Optional[Decimal] = Field(None, ge=0)


class WashingPayload(StagePayload):
    washing_type: Optional[str] = Field(None, max_length=50)


class FinishingPayload(StagePayload):
    finishing_type: Optional[str] = Field(None, max_length=50)
    gsm: Optional[Decimal] = Field(None, gt=0)


class FeltingPayload(StagePayload):
    felt_type: Optional[str] = Field(None, max_length=50)


class CheckingPayload(StagePayload):
    checker_name: Optional[str] = Field(None, max_length=100)
    fold_type: Optional[str] = Field(None, max_length=50)


class PackingPayload(StagePayload):
    packing_type: Optional[str] = Field(None, max_length=50)
    bale_count: Optional[int] = Field(None, ge=0)


PAYLOAD_SCHEMAS: Dict[StageType, Type[StagePayload]] = {
    StageType.AFTER_BLEACHING: AfterBleachingPayload,
    StageType.PRINTING: PrintingPayload,
    StageType.CURING: CuringPayload,
    StageType.WASHING: WashingPayload,
    StageType.FINISHING: FinishingPayload,
    StageType.FELTING: FeltingPayload,
    StageType.CHECKING: CheckingPayload,
    StageType.PACKING: PackingPayload,
}


# =============================================================================
# 2. 원장 스키마
# =============================================================================
class LedgerCreate(SQLModel):
    lot_number: str = Field(..., min_length=1, max_length=100, description="로트 번호")
    party_name: str = Field(..., min_length=1, max_length=200, description="거래처(파티) 이름")
    customer_id: Optional[str] = Field(None, max_length=100, description="고객 ID")
    quality: Optional[str] = Field(None, max_length=100, description="품질 (품질을 보유하는 단계에만 저장)")
    input_quantity: Decimal = Field(..., description="투입량 (미터)")
    notes: Optional[str] = Field(None, description="비고")
    payload: Dict[str, Any] = Field(default_factory=dict, description="단계별 고유 필드")


class RecordOutputRequest(SQLModel):
    forwarded_quantity: Decimal = Field(..., description="누적 전달량")
    byproduct_quantity: Decimal = Field(Decimal("0"), description="누적 부산물량 (불량/수축)")
    reason: Optional[str] = Field(None, max_length=255, description="부산물 사유 (없으면 단계 기본값)")
    payload: Dict[str, Any] = Field(default_factory=dict, description="단계별 고유 필드 갱신값")


class LedgerRead(SQLModel):
    id: int
    stage_type: StageType
    company_id: int
    lot_number: str
    party_name: str
    customer_id: Optional[str] = None
    quality: Optional[str] = None
    input_quantity: Decimal
    output_quantity: Decimal
    byproduct_quantity: Decimal
    pending_quantity: Decimal
    status: LedgerStatus
    upstream_ref: Optional[int] = None
    upstream_stage: Optional[StageType] = None
    downstream_refs: List[int] = Field(default_factory=list)
    payload: Dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None
    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_ledger(cls, stage_type: StageType, ledger: StageLedgerBase) -> "LedgerRead":
        payload = {name: getattr(ledger, name) for name in STAGE_PAYLOAD_FIELDS[StageType(stage_type)]}
        return cls(
            id=ledger.id,
            stage_type=stage_type,
            company_id=ledger.company_id,
            lot_number=ledger.lot_number,
            party_name=ledger.party_name,
            customer_id=ledger.customer_id,
            quality=getattr(ledger, "quality", None),
            input_quantity=ledger.input_quantity,
            output_quantity=ledger.output_quantity,
            byproduct_quantity=ledger.byproduct_quantity,
            pending_quantity=ledger.pending_quantity,
            status=ledger.status,
            upstream_ref=ledger.upstream_ref,
            upstream_stage=ledger.upstream_stage,
            downstream_refs=list(ledger.downstream_refs or []),
            payload=payload,
            notes=ledger.notes,
            version=ledger.version,
            created_at=ledger.created_at,
            updated_at=ledger.updated_at,
        )


# =============================================================================
# 3. 부산물 풀 스키마
# =============================================================================
class PoolEntryRead(SQLModel):
    id: int
    company_id: int
    lot_number: str
    party_name: Optional[str] = None
    source_stage_type: StageType
    source_ledger_id: int
    quantity: Decimal
    reason: str
    status: PoolStatus
    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PoolStatusUpdate(SQLModel):
    status: PoolStatus = Field(..., description="변경할 상태")


class PoolSummary(SQLModel):
    kind: PoolKind
    entry_count: int
    total_quantity: Decimal
    by_status: Dict[PoolStatus, Decimal]


# =============================================================================
# 4. 전달 결과 / 로트 조회 스키마
# =============================================================================
class RecordOutputResult(SQLModel):
    ledger: LedgerRead
    byproduct_pool: Optional[PoolEntryRead] = None
    next_ledger: Optional[LedgerRead] = None


class LotDescriptor(SQLModel):
    """로트 자동 채움(auto-fill)용 최선 노력(best-effort) 조회 결과."""
    lot_number: str
    party_name: str
    customer_id: Optional[str] = None
    quality: str
    available_quantity: Decimal
    source_stage: StageType
    ledger_id: int


class LotTrail(SQLModel):
    lot_number: str
    ledgers: List[LedgerRead]
    pool_entries: List[PoolEntryRead]


class ForwardingStepRead(SQLModel):
    id: int
    company_id: int
    stage_type: StageType
    ledger_id: int
    kind: StepKind
    quantity: Decimal
    reason: Optional[str] = None
    status: StepStatus
    attempts: int
    last_error: Optional[str] = None
    result_ref: Optional[int] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ReconcileReport(SQLModel):
    attempted: int = 0
    completed: List[int] = Field(default_factory=list)
    failed: List[int] = Field(default_factory=list)


class LedgerAuditReport(SQLModel):
    checked: int = 0
    repaired: List[str] = Field(default_factory=list, description="'<stage>:<id>' 형식")
    violations: List[str] = Field(default_factory=list, description="'<stage>:<id>' 형식")
