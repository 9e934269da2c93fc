# app/domains/flow/routers.py

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core import dependencies as deps
from app.domains.flow import models as flow_models
from app.domains.flow import schemas as flow_schemas
from app.domains.flow import services as flow_services
from app.domains.flow.stages import StageType, PoolKind

router = APIRouter(
    tags=["Stage Ledger & Forwarding (공정 원장 및 전달)"],
    responses={404: {"description": "Not found"}},
)


# =============================================================================
# 1. 단계 원장 엔드포인트
# =============================================================================
@router.post(
    "/ledgers/{stage_type}",
    response_model=flow_schemas.LedgerRead,
    status_code=status.HTTP_201_CREATED,
)
async def create_ledger(
    stage_type: StageType,
    ledger_create: flow_schemas.LedgerCreate,
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """작업자가 직접 시작하는 단계 원장을 생성합니다."""
    return await flow_services.create_ledger(
        db, company_id=ctx.company_id, actor_id=ctx.actor_id, stage_type=stage_type, obj_in=ledger_create
    )


@router.get("/ledgers/{stage_type}", response_model=List[flow_schemas.LedgerRead])
async def read_ledgers(
    stage_type: StageType,
    status_filter: Optional[flow_models.LedgerStatus] = Query(None, alias="status"),
    lot_number: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """단계 원장 목록을 조회합니다. 상태 및 로트 번호로 필터링할 수 있습니다."""
    return await flow_services.list_ledgers(
        db, company_id=ctx.company_id, stage_type=stage_type,
        status=status_filter, lot_number=lot_number, skip=skip, limit=limit,
    )


@router.get("/ledgers/{stage_type}/wip", response_model=List[flow_schemas.LedgerRead])
async def read_wip_ledgers(
    stage_type: StageType,
    skip: int = 0,
    limit: int = 100,
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """잔여 재공량이 남아 있는 원장 목록을 조회합니다."""
    return await flow_services.list_wip(db, company_id=ctx.company_id, stage_type=stage_type, skip=skip, limit=limit)


@router.get("/ledgers/{stage_type}/{ledger_id}", response_model=flow_schemas.LedgerRead)
async def read_ledger(
    stage_type: StageType,
    ledger_id: int,
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """ID로 단계 원장을 조회합니다."""
    return await flow_services.get_ledger(db, company_id=ctx.company_id, stage_type=stage_type, ledger_id=ledger_id)


@router.post("/ledgers/{stage_type}/{ledger_id}/output", response_model=flow_schemas.RecordOutputResult)
async def record_output(
    stage_type: StageType,
    ledger_id: int,
    output_in: flow_schemas.RecordOutputRequest,
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """누적 전달량/부산물량을 기록하고 부산물 풀 항목과 다음 단계 원장을 생성합니다."""
    return await flow_services.record_output(
        db, company_id=ctx.company_id, actor_id=ctx.actor_id,
        stage_type=stage_type, ledger_id=ledger_id, request=output_in,
    )


# =============================================================================
# 2. 로트 조회 엔드포인트
# =============================================================================
@router.get("/lots/{lot_number}", response_model=Optional[flow_schemas.LotDescriptor])
async def resolve_lot(
    lot_number: str,
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """로트 번호로 거래처/고객/품질 정보를 조회합니다. 없으면 null을 반환합니다."""
    return await flow_services.resolve_lot(db, company_id=ctx.company_id, lot_number=lot_number)


@router.get("/lots/{lot_number}/trail", response_model=flow_schemas.LotTrail)
async def read_lot_trail(
    lot_number: str,
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """로트가 거쳐 간 모든 단계 원장과 부산물 풀 항목을 조회합니다."""
    return await flow_services.get_lot_trail(db, company_id=ctx.company_id, lot_number=lot_number)


# =============================================================================
# 3. 부산물 풀 엔드포인트
# =============================================================================
@router.get("/pools/{kind}", response_model=List[flow_schemas.PoolEntryRead])
async def read_pool_entries(
    kind: PoolKind,
    status_filter: Optional[flow_models.PoolStatus] = Query(None, alias="status"),
    lot_number: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """부산물 풀 항목 목록을 조회합니다."""
    return await flow_services.list_pool_entries(
        db, company_id=ctx.company_id, kind=kind, status=status_filter,
        lot_number=lot_number, skip=skip, limit=limit,
    )


@router.get("/pools/{kind}/summary", response_model=flow_schemas.PoolSummary)
async def read_pool_summary(
    kind: PoolKind,
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """상태별 부산물 수량 합계를 조회합니다."""
    return await flow_services.get_pool_summary(db, company_id=ctx.company_id, kind=kind)


@router.patch("/pools/{kind}/{entry_id}/status", response_model=flow_schemas.PoolEntryRead)
async def update_pool_entry_status(
    kind: PoolKind,
    entry_id: int,
    status_update: flow_schemas.PoolStatusUpdate,
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """부산물 풀 항목의 상태를 변경합니다."""
    return await flow_services.update_pool_status(
        db, company_id=ctx.company_id, kind=kind, entry_id=entry_id, new_status=status_update.status
    )


# =============================================================================
# 4. Forwarding step 엔드포인트 (수동 재처리)
# =============================================================================
@router.get("/forwarding-steps", response_model=List[flow_schemas.ForwardingStepRead])
async def read_forwarding_steps(
    status_filter: Optional[flow_models.StepStatus] = Query(None, alias="status"),
    skip: int = 0,
    limit: int = 100,
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """forwarding step 목록을 조회합니다. (status=failed 로 재처리 대상 확인)"""
    return await flow_services.list_forwarding_steps(
        db, company_id=ctx.company_id, status=status_filter, skip=skip, limit=limit
    )


@router.post("/forwarding-steps/{step_id}/retry", response_model=flow_schemas.ForwardingStepRead)
async def retry_forwarding_step(
    step_id: int,
    db: AsyncSession = Depends(deps.get_db_session),
    ctx: deps.RequestContext = Depends(deps.get_request_context),
):
    """실패한 forwarding step을 즉시 재실행합니다."""
    return await flow_services.retry_forwarding_step(db, company_id=ctx.company_id, step_id=step_id)
