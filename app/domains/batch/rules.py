# app/domains/batch/rules.py

"""
생산 배치의 순수 규칙 함수 모음입니다. (DB 접근 없음)

- derive_batch_state: 단계 상태로부터 배치 상태/진행률/현재 단계/총 비용/단위 원가를 다시 계산합니다.
- STAGE_STATUS_TRANSITIONS / check_stage_status_change: 단계 상태 머신.
- validate_stage_transition: 다음 단계로 넘어갈 수 있는지 판정합니다.
- build_cost_summary / build_production_metrics / build_material_consumption_summary: 집계.
- calculate_elongation: 미터와 야드 측정값의 신장률 계산.
"""

from collections import defaultdict
from datetime import datetime, UTC
from typing import Dict, List, Optional, Set

from app.domains.batch.models import (
    STAGE_COUNT, STAGE_TEMPLATE, BatchDocument, BatchStage, BatchStatus,
    CheckResult, CostCategory, MaterialStatus, QualityGate, StageStatus,
)
from app.domains.batch import schemas as batch_schemas

YARD_TO_METER = 0.9144

# 단계 상태 머신. completed / failed / skipped 는 종료 상태입니다.
STAGE_STATUS_TRANSITIONS: Dict[StageStatus, Set[StageStatus]] = {
    StageStatus.NOT_STARTED: {StageStatus.IN_PROGRESS, StageStatus.SKIPPED, StageStatus.FAILED},
    StageStatus.IN_PROGRESS: {
        StageStatus.COMPLETED, StageStatus.ON_HOLD, StageStatus.QUALITY_HOLD,
        StageStatus.FAILED, StageStatus.SKIPPED,
    },
    StageStatus.ON_HOLD: {StageStatus.IN_PROGRESS, StageStatus.FAILED, StageStatus.SKIPPED},
    StageStatus.QUALITY_HOLD: {StageStatus.IN_PROGRESS, StageStatus.FAILED, StageStatus.SKIPPED},
    StageStatus.COMPLETED: set(),
    StageStatus.FAILED: set(),
    StageStatus.SKIPPED: set(),
}

RESOLVED_STAGE_STATUSES = {StageStatus.COMPLETED, StageStatus.SKIPPED}
SETTLED_MATERIAL_STATUSES = {MaterialStatus.CONSUMED, MaterialStatus.RETURNED, MaterialStatus.WASTED}
OVERHEAD_CATEGORIES = {
    CostCategory.MANUFACTURING_OVERHEAD, CostCategory.VARIABLE_OVERHEAD, CostCategory.FIXED_OVERHEAD,
}


def round2(value: float) -> float:
    return round(value + 0.0, 2)


def build_stage_template() -> List[BatchStage]:
    """8단계 템플릿. 모든 단계의 품질 게이트는 필수이며 아직 통과하지 않은 상태입니다."""
    return [
        BatchStage(
            stage_number=number,
            stage_name=name,
            stage_type=stage_type,
            quality_gate=QualityGate(required=True, passed=False),
        )
        for number, stage_type, name in STAGE_TEMPLATE
    ]


def format_batch_number(company_code: str, period: str, sequence: int) -> str:
    return f"{company_code}-{period}-{sequence:04d}"


def batch_period(moment: Optional[datetime] = None) -> str:
    return (moment or datetime.now(UTC)).strftime("%y%m")


# =============================================================================
# 1. 파생 상태
# =============================================================================
def _stage_progress(stage: BatchStage) -> int:
    if stage.status in RESOLVED_STAGE_STATUSES:
        return 100
    if stage.status == StageStatus.NOT_STARTED:
        return 0
    return stage.progress


def derive_batch_status(stages: List[BatchStage]) -> BatchStatus:
    """
    우선순위: quality_hold > on_hold(보류 또는 실패 단계) > in_progress > 전부 완료 > 미착수 > 진행 중.
    """
    statuses = [s.status for s in stages]
    if StageStatus.QUALITY_HOLD in statuses:
        return BatchStatus.QUALITY_HOLD
    if StageStatus.ON_HOLD in statuses or StageStatus.FAILED in statuses:
        return BatchStatus.ON_HOLD
    if StageStatus.IN_PROGRESS in statuses:
        return BatchStatus.IN_PROGRESS
    if statuses and all(s in RESOLVED_STAGE_STATUSES for s in statuses):
        return BatchStatus.COMPLETED
    if all(s == StageStatus.NOT_STARTED for s in statuses):
        return BatchStatus.PENDING
    return BatchStatus.IN_PROGRESS


def derive_current_stage_number(stages: List[BatchStage]) -> int:
    active = next((s for s in stages if s.status == StageStatus.IN_PROGRESS), None)
    if active:
        return active.stage_number
    resolved = [s.stage_number for s in stages if s.status in RESOLVED_STAGE_STATUSES]
    if not resolved:
        return 1
    return min(max(resolved) + 1, STAGE_COUNT)


def derive_batch_state(doc: BatchDocument) -> BatchDocument:
    """
    저장 직전에 매번 호출되는 파생 필드 계산. 같은 문서에 두 번 적용해도 결과가 같습니다.
    """
    for stage in doc.stages:
        stage.total_stage_cost = round2(sum(c.amount for c in stage.stage_costs))
        if stage.status in RESOLVED_STAGE_STATUSES:
            stage.progress = 100
    # 배치 수준 투입 자재 목록은 단계별 할당의 사본입니다.
    doc.input_materials = [m.model_copy() for s in doc.stages for m in s.input_materials]

    doc.status = derive_batch_status(doc.stages)
    if doc.stages:
        doc.progress_percent = round(sum(_stage_progress(s) for s in doc.stages) / len(doc.stages))
    else:
        doc.progress_percent = 0
    if doc.status == BatchStatus.COMPLETED:
        doc.progress_percent = 100
    doc.current_stage_number = derive_current_stage_number(doc.stages)

    doc.total_cost = round2(sum(c.amount for c in doc.costs))
    if doc.status == BatchStatus.COMPLETED and doc.actual_quantity and doc.actual_quantity > 0:
        divisor = doc.actual_quantity
    else:
        divisor = doc.planned_quantity
    doc.cost_per_unit = round2(doc.total_cost / divisor) if divisor else 0.0
    return doc


# =============================================================================
# 2. 단계 상태 머신과 단계 전이 검증
# =============================================================================
def check_stage_status_change(stage: BatchStage, new_status: StageStatus) -> Optional[str]:
    """허용되지 않는 상태 변경이면 사유 문자열을, 허용되면 None을 반환합니다."""
    if stage.status == new_status:
        return f"Stage {stage.stage_number} is already {new_status.value}"
    if new_status not in STAGE_STATUS_TRANSITIONS[stage.status]:
        return f"Cannot change stage {stage.stage_number} from {stage.status.value} to {new_status.value}"
    if new_status == StageStatus.COMPLETED and not gate_satisfied(stage.quality_gate):
        return "Quality gate must be passed before completing the stage"
    return None


def gate_satisfied(gate: QualityGate) -> bool:
    return (not gate.required) or gate.passed


def validate_stage_transition(
    doc: BatchDocument, from_stage: int, to_stage: int
) -> batch_schemas.TransitionCheck:
    """다음 단계로의 이동 가능 여부. 첫 번째로 실패한 조건의 사유를 반환합니다."""
    if to_stage != from_stage + 1:
        return batch_schemas.TransitionCheck(valid=False, reason="Stages must be sequential")
    source = doc.get_stage(from_stage)
    target = doc.get_stage(to_stage)
    if source is None or target is None:
        return batch_schemas.TransitionCheck(valid=False, reason="Stage not found")
    if source.status != StageStatus.COMPLETED:
        return batch_schemas.TransitionCheck(valid=False, reason="Previous stage must be completed")
    if not gate_satisfied(source.quality_gate):
        return batch_schemas.TransitionCheck(valid=False, reason="Quality gate must be passed")
    if any(m.status not in SETTLED_MATERIAL_STATUSES for m in source.input_materials):
        return batch_schemas.TransitionCheck(valid=False, reason="All materials must be consumed or returned")
    return batch_schemas.TransitionCheck(valid=True)


# =============================================================================
# 3. 집계
# =============================================================================
def build_cost_summary(doc: BatchDocument) -> batch_schemas.CostSummary:
    by_category: Dict[str, float] = defaultdict(float)
    by_stage: Dict[str, float] = defaultdict(float)
    by_cost_type: Dict[str, float] = defaultdict(float)

    for cost in doc.costs:
        by_category[cost.category.value] += cost.amount
        by_cost_type[cost.cost_type.value] += cost.amount
        stage_key = str(cost.stage_number) if cost.stage_number is not None else "unassigned"
        by_stage[stage_key] += cost.amount

    def total_of(categories) -> float:
        return round2(sum(c.amount for c in doc.costs if c.category in categories))

    total_cost = round2(sum(c.amount for c in doc.costs))
    return batch_schemas.CostSummary(
        total_cost=total_cost,
        cost_per_unit=doc.cost_per_unit,
        by_category={k: round2(v) for k, v in by_category.items()},
        by_stage={k: round2(v) for k, v in by_stage.items()},
        by_cost_type={k: round2(v) for k, v in by_cost_type.items()},
        cost_breakdown=batch_schemas.CostBreakdown(
            direct_material=total_of({CostCategory.DIRECT_MATERIAL}),
            direct_labor=total_of({CostCategory.DIRECT_LABOR}),
            manufacturing_overhead=total_of(OVERHEAD_CATEGORIES),
            quality_cost=total_of({CostCategory.QUALITY_COST}),
            waste_cost=total_of({CostCategory.WASTE_COST}),
        ),
    )


def _as_utc(moment: datetime) -> datetime:
    return moment if moment.tzinfo else moment.replace(tzinfo=UTC)


def _hours_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    if start is None or end is None:
        return None
    return round2((_as_utc(end) - _as_utc(start)).total_seconds() / 3600)


def build_production_metrics(
    doc: BatchDocument, now: Optional[datetime] = None
) -> batch_schemas.ProductionMetrics:
    now = now or datetime.now(UTC)
    materials = [m for s in doc.stages for m in s.input_materials]
    consumed = sum(m.actual_consumption for m in materials)
    wasted = sum(m.waste_quantity for m in materials)
    checks = [c for s in doc.stages for c in s.quality_checks]
    passed_checks = sum(1 for c in checks if c.overall_result == CheckResult.PASS)

    yield_percent = None
    if doc.actual_quantity is not None and doc.planned_quantity:
        yield_percent = round2(doc.actual_quantity / doc.planned_quantity * 100)

    on_time = None
    if doc.planned_end_date is not None:
        finished_at = doc.actual_end_date or now
        on_time = _as_utc(finished_at) <= _as_utc(doc.planned_end_date)

    return batch_schemas.ProductionMetrics(
        batch_number=doc.batch_number,
        status=doc.status,
        progress_percent=doc.progress_percent,
        current_stage_number=doc.current_stage_number,
        stages_total=len(doc.stages),
        stages_completed=sum(1 for s in doc.stages if s.status == StageStatus.COMPLETED),
        planned_quantity=doc.planned_quantity,
        actual_quantity=doc.actual_quantity,
        yield_percent=yield_percent,
        planned_duration_hours=_hours_between(doc.planned_start_date, doc.planned_end_date),
        elapsed_hours=_hours_between(doc.actual_start_date, doc.actual_end_date or now),
        total_consumption=round2(consumed),
        total_waste=round2(wasted),
        waste_percent=round2(wasted / consumed * 100) if consumed else 0.0,
        quality_checks_total=len(checks),
        quality_pass_rate=round2(passed_checks / len(checks) * 100) if checks else None,
        total_cost=doc.total_cost,
        cost_per_unit=doc.cost_per_unit,
        on_time=on_time,
    )


def build_material_consumption_summary(doc: BatchDocument) -> batch_schemas.MaterialConsumptionSummary:
    """자재 ID별로 모든 단계의 할당/소비/폐기/반납 수량과 소비 원가를 합산합니다."""
    grouped: Dict[str, batch_schemas.MaterialUsage] = {}
    for stage in doc.stages:
        for material in stage.input_materials:
            usage = grouped.get(material.material_id)
            if usage is None:
                usage = batch_schemas.MaterialUsage(
                    material_id=material.material_id,
                    item_name=material.item_name,
                    unit=material.unit,
                )
                grouped[material.material_id] = usage
            usage.stage_numbers.append(stage.stage_number)
            usage.allocated = round2(usage.allocated + material.quantity)
            usage.consumed = round2(usage.consumed + material.actual_consumption)
            usage.wasted = round2(usage.wasted + material.waste_quantity)
            usage.returned = round2(usage.returned + material.returned_quantity)
            usage.total_cost = round2(usage.total_cost + material.actual_consumption * material.cost_per_unit)

    materials = list(grouped.values())
    return batch_schemas.MaterialConsumptionSummary(
        batch_number=doc.batch_number,
        materials=materials,
        total_allocated=round2(sum(m.allocated for m in materials)),
        total_consumed=round2(sum(m.consumed for m in materials)),
        total_wasted=round2(sum(m.wasted for m in materials)),
        total_returned=round2(sum(m.returned for m in materials)),
        total_cost=round2(sum(m.total_cost for m in materials)),
        log_count=len(doc.material_consumption_logs),
    )


def calculate_elongation(meters: float, yards: float) -> batch_schemas.ElongationResult:
    """
    야드 측정값을 미터로 환산해 미터 측정값과의 차이와 비율을 계산합니다.
    """
    if yards <= 0:
        return batch_schemas.ElongationResult(
            meters=meters, yards=yards, yards_in_meters=0.0, difference=0.0, elongation_percent=0.0
        )
    yards_in_meters = yards * YARD_TO_METER
    difference = meters - yards_in_meters
    return batch_schemas.ElongationResult(
        meters=meters,
        yards=yards,
        yards_in_meters=round2(yards_in_meters),
        difference=round2(difference),
        elongation_percent=round2(difference / yards_in_meters * 100),
    )
