# app/domains/batch/routers.py

from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, Response, status
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core import dependencies as deps
from app.domains.batch import models as batch_models
from app.domains.batch import rules as batch_rules
from app.domains.batch import schemas as batch_schemas
from app.domains.batch import services as batch_services

router = APIRouter(
    tags=["Production Batch (생산 배치)"],
    responses={404: {"description": "Not found"}},
)


# =============================================================================
# 1. 배치 엔드포인트
# =============================================================================
@router.post("/batches", response_model=batch_schemas.BatchRead, status_code=status.HTTP_201_CREATED)
async def create_batch(
    batch_create: batch_schemas.BatchCreate,
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """새 생산 배치를 생성합니다. 배치 번호는 자동으로 발급됩니다."""
    return await batch_services.create_batch(db, company_id=ctx.company_id, actor_id=ctx.actor_id, obj_in=batch_create)


@router.get("/batches", response_model=List[batch_schemas.BatchSummaryRead])
async def read_batches(
    status_filter: Optional[batch_models.BatchStatus] = Query(None, alias="status"),
    priority: Optional[batch_models.Priority] = None,
    skip: int = 0,
    limit: int = 100,
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """생산 배치 목록을 조회합니다. 상태와 우선순위로 필터링할 수 있습니다."""
    return await batch_services.list_batches(
        db, company_id=ctx.company_id, status=status_filter, priority=priority, skip=skip, limit=limit
    )


@router.get("/batches/{batch_id}", response_model=batch_schemas.BatchRead)
async def read_batch(
    batch_id: int,
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    return await batch_services.get_batch(db, company_id=ctx.company_id, batch_id=batch_id)


@router.delete("/batches/{batch_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_batch(
    batch_id: int,
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """시작되지 않은 배치를 삭제합니다."""
    await batch_services.delete_batch(db, company_id=ctx.company_id, batch_id=batch_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# 2. 단계 상태 / 품질 게이트 / 단계 이동
# =============================================================================
@router.patch("/batches/{batch_id}/stages/{stage_number}/status", response_model=batch_schemas.BatchRead)
async def update_stage_status(
    batch_id: int,
    status_update: batch_schemas.StageStatusUpdate,
    stage_number: int = Path(..., ge=1, le=batch_models.STAGE_COUNT),
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """단계 상태를 변경합니다. 허용되지 않는 전이는 400으로 거부됩니다."""
    return await batch_services.update_stage_status(
        db, company_id=ctx.company_id, actor_id=ctx.actor_id, batch_id=batch_id,
        stage_number=stage_number, new_status=status_update.status,
        reason=status_update.reason, progress=status_update.progress,
    )


@router.post("/batches/{batch_id}/stages/{stage_number}/quality-gate/pass", response_model=batch_schemas.BatchRead)
async def pass_quality_gate(
    batch_id: int,
    gate_in: batch_schemas.QualityGatePass,
    stage_number: int = Path(..., ge=1, le=batch_models.STAGE_COUNT),
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    return await batch_services.pass_quality_gate(
        db, company_id=ctx.company_id, actor_id=ctx.actor_id, batch_id=batch_id,
        stage_number=stage_number, notes=gate_in.notes,
    )


@router.post("/batches/{batch_id}/stages/{stage_number}/quality-gate/fail", response_model=batch_schemas.BatchRead)
async def fail_quality_gate(
    batch_id: int,
    gate_in: batch_schemas.QualityGateFail,
    stage_number: int = Path(..., ge=1, le=batch_models.STAGE_COUNT),
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """품질 게이트를 불합격 처리합니다. 단계와 배치는 quality_hold 상태가 됩니다."""
    return await batch_services.fail_quality_gate(
        db, company_id=ctx.company_id, actor_id=ctx.actor_id, batch_id=batch_id,
        stage_number=stage_number, rejection_reason=gate_in.rejection_reason,
        retest_required=gate_in.retest_required,
    )


@router.post("/batches/{batch_id}/next-stage", response_model=batch_schemas.BatchRead)
async def move_to_next_stage(
    batch_id: int,
    next_in: Optional[batch_schemas.NextStageRequest] = None,
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """마지막으로 완료된 단계의 다음 단계를 시작합니다."""
    return await batch_services.move_to_next_stage(
        db, company_id=ctx.company_id, actor_id=ctx.actor_id, batch_id=batch_id,
        reason=next_in.reason if next_in else None,
    )


@router.get("/batches/{batch_id}/transitions/validate", response_model=batch_schemas.TransitionCheck)
async def validate_stage_transition(
    batch_id: int,
    from_stage: int = Query(..., ge=1),
    to_stage: int = Query(..., ge=1),
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """단계 이동 가능 여부와 불가 사유를 반환합니다."""
    return await batch_services.validate_stage_transition(
        db, company_id=ctx.company_id, batch_id=batch_id, from_stage=from_stage, to_stage=to_stage
    )


# =============================================================================
# 3. 자재 / 산출물 / 품질 검사 / 자원
# =============================================================================
@router.post(
    "/batches/{batch_id}/stages/{stage_number}/materials",
    response_model=batch_schemas.BatchRead,
    status_code=status.HTTP_201_CREATED,
)
async def allocate_material(
    batch_id: int,
    material_in: batch_schemas.MaterialAllocationCreate,
    stage_number: int = Path(..., ge=1, le=batch_models.STAGE_COUNT),
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    return await batch_services.allocate_material(
        db, company_id=ctx.company_id, actor_id=ctx.actor_id, batch_id=batch_id,
        stage_number=stage_number, obj_in=material_in,
    )


@router.post(
    "/batches/{batch_id}/stages/{stage_number}/materials/{material_id}/consume",
    response_model=batch_schemas.BatchRead,
)
async def consume_material(
    batch_id: int,
    material_id: str,
    consume_in: batch_schemas.MaterialConsume,
    stage_number: int = Path(..., ge=1, le=batch_models.STAGE_COUNT),
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """할당된 자재를 소비합니다. 할당량을 넘으면 400(overconsumption)으로 거부됩니다."""
    return await batch_services.consume_material(
        db, company_id=ctx.company_id, actor_id=ctx.actor_id, batch_id=batch_id,
        stage_number=stage_number, material_id=material_id,
        quantity=consume_in.quantity, waste_quantity=consume_in.waste_quantity,
        returned_quantity=consume_in.returned_quantity, notes=consume_in.notes,
    )


@router.post(
    "/batches/{batch_id}/stages/{stage_number}/materials/{material_id}/return",
    response_model=batch_schemas.BatchRead,
)
async def return_material(
    batch_id: int,
    material_id: str,
    return_in: batch_schemas.MaterialReturn,
    stage_number: int = Path(..., ge=1, le=batch_models.STAGE_COUNT),
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    return await batch_services.return_material(
        db, company_id=ctx.company_id, actor_id=ctx.actor_id, batch_id=batch_id,
        stage_number=stage_number, material_id=material_id,
        as_waste=return_in.as_waste, notes=return_in.notes,
    )


@router.post(
    "/batches/{batch_id}/stages/{stage_number}/outputs",
    response_model=batch_schemas.BatchRead,
    status_code=status.HTTP_201_CREATED,
)
async def add_material_output(
    batch_id: int,
    output_in: batch_schemas.MaterialOutputCreate,
    stage_number: int = Path(..., ge=1, le=batch_models.STAGE_COUNT),
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    return await batch_services.add_material_output(
        db, company_id=ctx.company_id, actor_id=ctx.actor_id, batch_id=batch_id,
        stage_number=stage_number, obj_in=output_in,
    )


@router.post(
    "/batches/{batch_id}/stages/{stage_number}/quality-checks",
    response_model=batch_schemas.BatchRead,
    status_code=status.HTTP_201_CREATED,
)
async def add_quality_check(
    batch_id: int,
    check_in: batch_schemas.QualityCheckCreate,
    stage_number: int = Path(..., ge=1, le=batch_models.STAGE_COUNT),
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    return await batch_services.add_quality_check(
        db, company_id=ctx.company_id, actor_id=ctx.actor_id, batch_id=batch_id,
        stage_number=stage_number, obj_in=check_in,
    )


@router.post(
    "/batches/{batch_id}/stages/{stage_number}/resources",
    response_model=batch_schemas.BatchRead,
    status_code=status.HTTP_201_CREATED,
)
async def allocate_resource(
    batch_id: int,
    resource_in: batch_schemas.ResourceAllocationCreate,
    stage_number: int = Path(..., ge=1, le=batch_models.STAGE_COUNT),
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """단계에 설비/작업자/공구를 할당합니다."""
    return await batch_services.allocate_resource(
        db, company_id=ctx.company_id, actor_id=ctx.actor_id, batch_id=batch_id,
        stage_number=stage_number, obj_in=resource_in,
    )


# =============================================================================
# 4. 비용 / 집계 / 이력
# =============================================================================
@router.post("/batches/{batch_id}/costs", response_model=batch_schemas.BatchRead, status_code=status.HTTP_201_CREATED)
async def add_cost(
    batch_id: int,
    cost_in: batch_schemas.CostCreate,
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    return await batch_services.add_cost(
        db, company_id=ctx.company_id, actor_id=ctx.actor_id, batch_id=batch_id, obj_in=cost_in
    )


@router.get("/batches/{batch_id}/cost-summary", response_model=batch_schemas.CostSummary)
async def read_cost_summary(
    batch_id: int,
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """비용 분류/단계/유형별 합계와 원가 구성 요약을 조회합니다."""
    return await batch_services.get_cost_summary(db, company_id=ctx.company_id, batch_id=batch_id)


@router.get("/batches/{batch_id}/metrics", response_model=batch_schemas.ProductionMetrics)
async def read_production_metrics(
    batch_id: int,
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    return await batch_services.get_production_metrics(db, company_id=ctx.company_id, batch_id=batch_id)


@router.get("/batches/{batch_id}/status-history", response_model=List[batch_models.StatusChangeLog])
async def read_status_history(
    batch_id: int,
    change_type: Optional[batch_models.ChangeType] = None,
    stage_number: Optional[int] = Query(None, ge=1, le=batch_models.STAGE_COUNT),
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """상태 변경 이력을 최신순으로 조회합니다."""
    return await batch_services.get_status_history(
        db, company_id=ctx.company_id, batch_id=batch_id, change_type=change_type, stage_number=stage_number
    )


@router.get("/batches/{batch_id}/material-summary", response_model=batch_schemas.MaterialConsumptionSummary)
async def read_material_summary(
    batch_id: int,
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    return await batch_services.get_material_consumption_summary(db, company_id=ctx.company_id, batch_id=batch_id)


@router.get("/elongation", response_model=batch_schemas.ElongationResult)
async def calculate_elongation(
    meters: float = Query(..., ge=0),
    yards: float = Query(..., ge=0),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """미터/야드 측정값으로 원단 신장률을 계산합니다."""
    return batch_rules.calculate_elongation(meters, yards)
