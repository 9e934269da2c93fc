# app/domains/batch/schemas.py

"""
'batch' 도메인의 Pydantic 스키마(요청/응답)를 정의하는 모듈입니다.
배치 문서의 하위 구조 자체는 models.py에 정의되어 있습니다.
"""

from typing import Optional, Dict, List
from datetime import datetime

from pydantic import Field
from sqlmodel import SQLModel

from app.domains.batch.models import (
    BatchDocument, BatchStatus, CheckResult, CostCategory, CostType,
    InputCategory, OutputCategory, Priority,
    ProductSpecification, QualityGrade, QualityParameter, ResourceType, StageStatus,
)


# =============================================================================
# 1. 배치 생성 / 조회
# =============================================================================
class MaterialAllocationCreate(SQLModel):
    material_id: str = Field(..., min_length=1, max_length=100, description="재고 품목 ID")
    item_name: str = Field(..., min_length=1, max_length=200)
    category: InputCategory = InputCategory.RAW_MATERIAL
    quantity: float = Field(..., gt=0, allow_inf_nan=False, description="할당량")
    unit: str = Field(..., max_length=20)
    cost_per_unit: float = Field(0, ge=0, allow_inf_nan=False)
    notes: Optional[str] = None


class StageMaterialAllocation(MaterialAllocationCreate):
    stage_number: int = Field(..., ge=1, le=8)


class BatchCreate(SQLModel):
    planned_quantity: float = Field(..., gt=0, allow_inf_nan=False)
    unit: str = Field("meters", max_length=20)
    priority: Priority = Priority.MEDIUM
    product_spec: Optional[ProductSpecification] = None
    customer_order_id: Optional[str] = Field(None, max_length=100)
    planned_start_date: Optional[datetime] = None
    planned_end_date: Optional[datetime] = None
    company_code: Optional[str] = Field(None, min_length=1, max_length=10, description="배치 번호 접두어")
    input_materials: List[StageMaterialAllocation] = Field(default_factory=list)
    notes: Optional[str] = None


class BatchRead(BatchDocument):
    pass


class BatchSummaryRead(SQLModel):
    """목록 조회용 요약."""
    id: int
    batch_number: str
    status: BatchStatus
    priority: Priority
    planned_quantity: float
    actual_quantity: Optional[float] = None
    unit: str
    current_stage_number: int
    progress_percent: int
    total_cost: float
    cost_per_unit: float
    version: int
    created_at: Optional[datetime] = None


# =============================================================================
# 2. 단계 상태 / 품질 게이트 / 전이
# =============================================================================
class StageStatusUpdate(SQLModel):
    status: StageStatus
    reason: str = Field("Status updated", max_length=500)
    progress: Optional[int] = Field(None, ge=0, le=100)


class QualityGatePass(SQLModel):
    notes: Optional[str] = None


class QualityGateFail(SQLModel):
    rejection_reason: str = Field(..., min_length=1, max_length=500)
    retest_required: bool = True


class TransitionCheck(SQLModel):
    valid: bool
    reason: Optional[str] = None


class NextStageRequest(SQLModel):
    reason: Optional[str] = Field(None, max_length=500)


# =============================================================================
# 3. 자재 / 산출물 / 품질 검사 / 자원 / 비용
# =============================================================================
class MaterialConsume(SQLModel):
    quantity: float = Field(..., gt=0, allow_inf_nan=False)
    waste_quantity: float = Field(0, ge=0, allow_inf_nan=False, description="소비량 중 폐기된 수량")
    returned_quantity: float = Field(0, ge=0, allow_inf_nan=False, description="함께 반납하는 미사용 수량")
    notes: Optional[str] = None


class MaterialReturn(SQLModel):
    as_waste: bool = False
    notes: Optional[str] = None


class MaterialOutputCreate(SQLModel):
    item_name: str = Field(..., min_length=1, max_length=200)
    category: OutputCategory = OutputCategory.FINISHED_GOODS
    quantity: float = Field(..., gt=0, allow_inf_nan=False)
    unit: str = Field(..., max_length=20)
    quality_grade: Optional[QualityGrade] = None
    defects: List[str] = Field(default_factory=list)
    cost_per_unit: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    notes: Optional[str] = None


class QualityCheckCreate(SQLModel):
    check_type: str = Field(..., min_length=1, max_length=100)
    parameters: List[QualityParameter] = Field(default_factory=list)
    overall_result: CheckResult
    grade: Optional[QualityGrade] = None
    score: Optional[float] = Field(None, ge=0, le=100, allow_inf_nan=False)
    defects: List[str] = Field(default_factory=list)
    notes: Optional[str] = None


class ResourceAllocationCreate(SQLModel):
    resource_type: ResourceType
    resource_id: str = Field(..., min_length=1, max_length=100)
    resource_name: str = Field(..., min_length=1, max_length=200)
    allocated_from: datetime
    allocated_to: datetime
    cost_per_hour: float = Field(0, ge=0, allow_inf_nan=False)
    notes: Optional[str] = None


class CostCreate(SQLModel):
    cost_type: CostType
    category: CostCategory
    description: str = Field(..., min_length=1, max_length=500)
    amount: float = Field(..., ge=0, allow_inf_nan=False)
    currency: str = Field("INR", min_length=3, max_length=3)
    stage_number: Optional[int] = Field(None, ge=1, le=8)
    reference: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = None


# =============================================================================
# 4. 집계 결과
# =============================================================================
class CostBreakdown(SQLModel):
    direct_material: float = 0
    direct_labor: float = 0
    manufacturing_overhead: float = 0
    quality_cost: float = 0
    waste_cost: float = 0


class CostSummary(SQLModel):
    total_cost: float
    cost_per_unit: float
    by_category: Dict[str, float] = Field(default_factory=dict)
    by_stage: Dict[str, float] = Field(default_factory=dict)
    by_cost_type: Dict[str, float] = Field(default_factory=dict)
    cost_breakdown: CostBreakdown


class ProductionMetrics(SQLModel):
    batch_number: str
    status: BatchStatus
    progress_percent: int
    current_stage_number: int
    stages_total: int
    stages_completed: int
    planned_quantity: float
    actual_quantity: Optional[float] = None
    yield_percent: Optional[float] = None
    planned_duration_hours: Optional[float] = None
    elapsed_hours: Optional[float] = None
    total_consumption: float
    total_waste: float
    waste_percent: float
    quality_checks_total: int
    quality_pass_rate: Optional[float] = None
    total_cost: float
    cost_per_unit: float
    on_time: Optional[bool] = None


class MaterialUsage(SQLModel):
    material_id: str
    item_name: str
    unit: str
    stage_numbers: List[int] = Field(default_factory=list)
    allocated: float = 0
    consumed: float = 0
    wasted: float = 0
    returned: float = 0
    total_cost: float = 0


class MaterialConsumptionSummary(SQLModel):
    batch_number: str
    materials: List[MaterialUsage] = Field(default_factory=list)
    total_allocated: float = 0
    total_consumed: float = 0
    total_wasted: float = 0
    total_returned: float = 0
    total_cost: float = 0
    log_count: int = 0


class ElongationResult(SQLModel):
    meters: float
    yards: float
    yards_in_meters: float
    difference: float
    elongation_percent: float

