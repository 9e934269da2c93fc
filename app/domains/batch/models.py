# app/domains/batch/models.py

"""
'batch' 도메인의 데이터베이스 ORM 모델과 배치 문서의 하위 구조를 정의하는 모듈입니다.

ProductionBatch는 8개 단계와 모든 로그를 JSON 컬럼으로 포함하는 하나의 문서입니다.
단계나 로그를 별도 테이블로 정규화하지 않습니다.
"""

import uuid
from typing import Optional, List, Dict, Any
from datetime import datetime, UTC
from enum import Enum

from pydantic import model_validator
from sqlmodel import Field, SQLModel
from sqlalchemy import Index, JSON, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from sqlalchemy.types import TIMESTAMP

JSON_VARIANT = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# 1. 열거형
# =============================================================================
class BatchStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    QUALITY_HOLD = "quality_hold"


class StageStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ON_HOLD = "on_hold"
    QUALITY_HOLD = "quality_hold"
    FAILED = "failed"
    SKIPPED = "skipped"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class QualityGrade(str, Enum):
    A_PLUS = "A+"
    A = "A"
    B_PLUS = "B+"
    B = "B"
    C = "C"
    REJECT = "Reject"


class BatchStageType(str, Enum):
    PRE_PROCESSING = "pre_processing"
    DYEING = "dyeing"
    PRINTING = "printing"
    WASHING = "washing"
    FIXING = "fixing"
    FINISHING = "finishing"
    QUALITY_CONTROL = "quality_control"
    CUTTING_PACKING = "cutting_packing"


class MaterialStatus(str, Enum):
    ALLOCATED = "allocated"
    CONSUMED = "consumed"
    PARTIAL = "partial"
    RETURNED = "returned"
    WASTED = "wasted"


class InputCategory(str, Enum):
    RAW_MATERIAL = "raw_material"
    CHEMICAL = "chemical"
    DYE = "dye"
    AUXILIARY = "auxiliary"
    PACKAGING = "packaging"
    OTHER = "other"


class OutputCategory(str, Enum):
    FINISHED_GOODS = "finished_goods"
    SEMI_FINISHED = "semi_finished"
    BY_PRODUCT = "by_product"
    WASTE = "waste"


class CostType(str, Enum):
    MATERIAL = "material"
    LABOR = "labor"
    OVERHEAD = "overhead"
    UTILITY = "utility"
    EQUIPMENT = "equipment"
    QUALITY = "quality"
    WASTE = "waste"
    OTHER = "other"


class CostCategory(str, Enum):
    DIRECT_MATERIAL = "direct_material"
    DIRECT_LABOR = "direct_labor"
    MANUFACTURING_OVERHEAD = "manufacturing_overhead"
    VARIABLE_OVERHEAD = "variable_overhead"
    FIXED_OVERHEAD = "fixed_overhead"
    QUALITY_COST = "quality_cost"
    WASTE_COST = "waste_cost"


class CheckResult(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    CONDITIONAL = "conditional"


class ResourceType(str, Enum):
    MACHINE = "machine"
    OPERATOR = "operator"
    TOOL = "tool"


class ChangeType(str, Enum):
    BATCH_STATUS = "batch_status"
    STAGE_STATUS = "stage_status"
    STAGE_TRANSITION = "stage_transition"
    QUALITY_APPROVAL = "quality_approval"
    MATERIAL_CONSUMPTION = "material_consumption"
    RESOURCE_ALLOCATION = "resource_allocation"
    COST_UPDATE = "cost_update"


class EntityType(str, Enum):
    BATCH = "batch"
    STAGE = "stage"
    MATERIAL = "material"
    RESOURCE = "resource"
    COST = "cost"


# 고정 8단계 템플릿 (stage_number, stage_type, stage_name)
STAGE_TEMPLATE = [
    (1, BatchStageType.PRE_PROCESSING, "Pre-Processing (Desizing/Bleaching)"),
    (2, BatchStageType.DYEING, "Dyeing Process"),
    (3, BatchStageType.PRINTING, "Printing Process"),
    (4, BatchStageType.WASHING, "Washing Process"),
    (5, BatchStageType.FIXING, "Color Fixing"),
    (6, BatchStageType.FINISHING, "Finishing (Stenter, Coating)"),
    (7, BatchStageType.QUALITY_CONTROL, "Quality Control (Pass/Hold/Reject)"),
    (8, BatchStageType.CUTTING_PACKING, "Cutting & Packing (Labels & Cartons)"),
]
STAGE_COUNT = len(STAGE_TEMPLATE)


# =============================================================================
# 2. 배치 문서의 하위 구조 (JSON으로 저장)
# =============================================================================
class ProductSpecification(SQLModel):
    product_type: str
    fabric_type: str
    gsm: Optional[float] = Field(default=None, ge=0)
    width: Optional[float] = Field(default=None, ge=0)
    color: Optional[str] = None
    design: Optional[str] = None


class MaterialInput(SQLModel):
    material_id: str
    item_name: str
    category: InputCategory = InputCategory.RAW_MATERIAL
    quantity: float = Field(ge=0, description="할당량")
    unit: str
    cost_per_unit: float = Field(default=0, ge=0)
    total_cost: float = Field(default=0, ge=0)
    actual_consumption: float = Field(default=0, ge=0)
    waste_quantity: float = Field(default=0, ge=0)
    returned_quantity: float = Field(default=0, ge=0)
    status: MaterialStatus = MaterialStatus.ALLOCATED
    consumption_date: Optional[datetime] = None
    consumed_by: Optional[str] = None
    notes: Optional[str] = None


class MaterialOutput(SQLModel):
    id: str = Field(default_factory=_new_id)
    item_name: str
    category: OutputCategory = OutputCategory.FINISHED_GOODS
    quantity: float = Field(ge=0)
    unit: str
    quality_grade: Optional[QualityGrade] = None
    defects: List[str] = Field(default_factory=list)
    output_date: datetime = Field(default_factory=_utcnow)
    produced_by: Optional[str] = None
    cost_per_unit: Optional[float] = Field(default=None, ge=0)
    notes: Optional[str] = None


class QualityParameter(SQLModel):
    name: str
    expected_value: Optional[str] = None
    actual_value: str
    unit: Optional[str] = None
    status: str = Field(description="pass | fail | warning")


class QualityCheck(SQLModel):
    id: str = Field(default_factory=_new_id)
    check_type: str
    check_date: datetime = Field(default_factory=_utcnow)
    checked_by: str
    parameters: List[QualityParameter] = Field(default_factory=list)
    overall_result: CheckResult
    grade: Optional[QualityGrade] = None
    score: Optional[float] = Field(default=None, ge=0, le=100)
    defects: List[str] = Field(default_factory=list)
    notes: Optional[str] = None


class QualityGate(SQLModel):
    required: bool = True
    passed: bool = False
    passed_by: Optional[str] = None
    passed_date: Optional[datetime] = None
    notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    retest_required: bool = False


class ResourceAllocation(SQLModel):
    id: str = Field(default_factory=_new_id)
    resource_type: ResourceType
    resource_id: str
    resource_name: str
    allocated_from: datetime
    allocated_to: datetime
    cost_per_hour: float = Field(default=0, ge=0)
    total_cost: float = Field(default=0, ge=0)
    notes: Optional[str] = None


class BatchCost(SQLModel):
    id: str = Field(default_factory=_new_id)
    cost_type: CostType
    category: CostCategory
    description: str
    amount: float = Field(ge=0)
    currency: str = "INR"
    date: datetime = Field(default_factory=_utcnow)
    stage_number: Optional[int] = None
    reference: Optional[str] = None
    created_by: Optional[str] = None
    notes: Optional[str] = None


class StatusChangeLog(SQLModel):
    id: str = Field(default_factory=_new_id)
    change_type: ChangeType
    entity_type: EntityType
    entity_id: Optional[str] = None
    previous_status: Optional[str] = None
    new_status: str
    change_reason: str
    changed_by: str
    changed_date: datetime = Field(default_factory=_utcnow)
    stage_number: Optional[int] = None
    previous_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    system_generated: bool = False


class MaterialConsumptionLog(SQLModel):
    id: str = Field(default_factory=_new_id)
    material_id: str
    material_name: str
    stage_number: int
    stage_name: str
    allocated_quantity: float
    consumed_quantity: float
    waste_quantity: float = 0
    returned_quantity: float = 0
    consumption_date: datetime = Field(default_factory=_utcnow)
    consumed_by: str
    cost_per_unit: float = 0
    total_cost: float = 0
    notes: Optional[str] = None


class BatchStage(SQLModel):
    stage_number: int = Field(ge=1, le=STAGE_COUNT)
    stage_name: str
    stage_type: BatchStageType
    status: StageStatus = StageStatus.NOT_STARTED
    progress: int = Field(default=0, ge=0, le=100)
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    resource_allocations: List[ResourceAllocation] = Field(default_factory=list)
    input_materials: List[MaterialInput] = Field(default_factory=list)
    output_materials: List[MaterialOutput] = Field(default_factory=list)
    quality_checks: List[QualityCheck] = Field(default_factory=list)
    quality_gate: QualityGate = Field(default_factory=QualityGate)
    stage_costs: List[BatchCost] = Field(default_factory=list)
    total_stage_cost: float = 0

    def find_input(self, material_id: str) -> Optional[MaterialInput]:
        return next((m for m in self.input_materials if m.material_id == material_id), None)


# =============================================================================
# 3. production_batches 테이블 모델
# =============================================================================
class ProductionBatchBase(SQLModel):
    company_id: int = Field(index=True, description="테넌트(회사) ID")
    batch_number: str = Field(max_length=50, description="{회사코드}-{YYMM}-{순번}")
    customer_order_id: Optional[str] = Field(default=None, max_length=100)
    product_spec: Optional[Dict[str, Any]] = Field(default=None, sa_type=JSON_VARIANT)
    planned_quantity: float = Field(gt=0)
    actual_quantity: Optional[float] = Field(default=None)
    unit: str = Field(default="meters", max_length=20)
    priority: Priority = Field(default=Priority.MEDIUM)
    status: BatchStatus = Field(default=BatchStatus.PENDING)
    current_stage_number: int = Field(default=1)
    progress_percent: int = Field(default=0)
    planned_start_date: Optional[datetime] = Field(default=None, sa_type=TIMESTAMP(timezone=True))
    planned_end_date: Optional[datetime] = Field(default=None, sa_type=TIMESTAMP(timezone=True))
    actual_start_date: Optional[datetime] = Field(default=None, sa_type=TIMESTAMP(timezone=True))
    actual_end_date: Optional[datetime] = Field(default=None, sa_type=TIMESTAMP(timezone=True))
    total_cost: float = Field(default=0)
    cost_per_unit: float = Field(default=0)
    notes: Optional[str] = Field(default=None)


class ProductionBatch(ProductionBatchBase, table=True):
    __tablename__ = "production_batches"
    __table_args__ = (
        UniqueConstraint("company_id", "batch_number", name="uq_production_batches_company_batch_number"),
        Index("ix_production_batches_company_status", "company_id", "status"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    stages: List[Dict[str, Any]] = Field(default_factory=list, sa_type=JSON_VARIANT)
    input_materials: List[Dict[str, Any]] = Field(default_factory=list, sa_type=JSON_VARIANT)
    output_materials: List[Dict[str, Any]] = Field(default_factory=list, sa_type=JSON_VARIANT)
    costs: List[Dict[str, Any]] = Field(default_factory=list, sa_type=JSON_VARIANT)
    status_change_logs: List[Dict[str, Any]] = Field(default_factory=list, sa_type=JSON_VARIANT)
    material_consumption_logs: List[Dict[str, Any]] = Field(default_factory=list, sa_type=JSON_VARIANT)
    created_by: Optional[str] = Field(default=None, max_length=100)
    updated_by: Optional[str] = Field(default=None, max_length=100)
    version: int = Field(default=1, description="낙관적 동시성 제어 버전")
    created_at: Optional[datetime] = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=TIMESTAMP(timezone=True),
        sa_column_kwargs={"server_default": func.now()},
        description="레코드 생성 일시"
    )
    updated_at: Optional[datetime] = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=TIMESTAMP(timezone=True),
        sa_column_kwargs={"server_default": func.now(), "onupdate": func.now()},
        description="레코드 마지막 업데이트 일시"
    )


# 배치 문서에서 JSON 컬럼으로 저장되는 필드
DOCUMENT_JSON_FIELDS = (
    "product_spec", "stages", "input_materials", "output_materials",
    "costs", "status_change_logs", "material_consumption_logs",
)


# =============================================================================
# 4. 배치 번호 시퀀스
# =============================================================================
class BatchNumberSequence(SQLModel, table=True):
    """회사 + 월(YYMM) 단위로 단조 증가하는 배치 번호 시퀀스."""
    __tablename__ = "batch_number_sequences"
    __table_args__ = (
        UniqueConstraint("company_id", "period", name="uq_batch_number_sequences_company_period"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: int = Field(index=True)
    period: str = Field(max_length=4, description="YYMM")
    last_value: int = Field(default=0)
    version: int = Field(default=1)


# =============================================================================
# 5. 배치 문서 (서비스 계층의 작업 단위)
# =============================================================================
class BatchDocument(ProductionBatchBase):
    """
    ProductionBatch 행을 읽어 하위 구조를 타입이 있는 모델로 변환한 문서.
    서비스는 이 문서를 변경하고, 파생 필드를 다시 계산한 뒤 한 번에 저장합니다.
    """
    id: Optional[int] = None
    product_spec: Optional[ProductSpecification] = None
    stages: List[BatchStage] = Field(default_factory=list)
    input_materials: List[MaterialInput] = Field(default_factory=list)
    output_materials: List[MaterialOutput] = Field(default_factory=list)
    costs: List[BatchCost] = Field(default_factory=list)
    status_change_logs: List[StatusChangeLog] = Field(default_factory=list)
    material_consumption_logs: List[MaterialConsumptionLog] = Field(default_factory=list)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _stages_in_template_order(self) -> "BatchDocument":
        self.stages.sort(key=lambda s: s.stage_number)
        return self

    @classmethod
    def from_row(cls, row: ProductionBatch) -> "BatchDocument":
        data = {name: getattr(row, name) for name in cls.model_fields}
        return cls.model_validate(data)

    def to_row_values(self) -> Dict[str, Any]:
        """ProductionBatch 컬럼 값으로 직렬화합니다. (id, version, 생성 정보 제외)"""
        values = self.model_dump(
            exclude={"id", "version", "created_at", "updated_at", "created_by", *DOCUMENT_JSON_FIELDS}
        )
        for name in DOCUMENT_JSON_FIELDS:
            value = getattr(self, name)
            if value is None:
                values[name] = None
            elif isinstance(value, list):
                values[name] = [item.model_dump(mode="json") for item in value]
            else:
                values[name] = value.model_dump(mode="json")
        return values

    def get_stage(self, stage_number: int) -> Optional[BatchStage]:
        return next((s for s in self.stages if s.stage_number == stage_number), None)
