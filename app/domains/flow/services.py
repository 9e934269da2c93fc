# app/domains/flow/services.py

"""
단계 원장 전달 엔진(Flow Forwarding Engine).

- record_output: 원장의 전달/부산물/잔여 분할을 갱신하고, 부산물 풀 항목과
  다음 단계 원장 생성을 forwarding step(아웃박스)으로 기록한 뒤 실행합니다.
- resolve_lot: 로트 번호로 거래처/고객/품질 정보를 최선 노력으로 조회합니다.
- reconcile_forwarding_steps: 실패하거나 남아 있는 step을 결정적으로 재실행합니다.
"""

import logging
from datetime import datetime, UTC
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.config import settings
from app.core.crud_base import require_company_id
from app.core.exceptions import (
    ConservationViolation, InvalidPayload, InvalidTransition, NotFoundError,
    PartialForwardFailure, ProductionFlowError,
)
from app.domains.flow import crud as flow_crud
from app.domains.flow import models as flow_models
from app.domains.flow import schemas as flow_schemas
from app.domains.flow.stages import (
    DEFAULT_QUALITY, STAGE_CHAIN, PoolKind, StageType, get_stage,
)

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")

POOL_STATUS_TRANSITIONS: Dict[flow_models.PoolStatus, set] = {
    flow_models.PoolStatus.AVAILABLE: {
        flow_models.PoolStatus.ALLOCATED, flow_models.PoolStatus.USED,
        flow_models.PoolStatus.DISPOSED, flow_models.PoolStatus.REWORKED,
    },
    flow_models.PoolStatus.ALLOCATED: {
        flow_models.PoolStatus.AVAILABLE, flow_models.PoolStatus.USED,
        flow_models.PoolStatus.DISPOSED, flow_models.PoolStatus.REWORKED,
    },
    flow_models.PoolStatus.USED: set(),
    flow_models.PoolStatus.DISPOSED: set(),
    flow_models.PoolStatus.REWORKED: set(),
}


# =============================================================================
# 1. 순수 함수: 수량 정규화 및 파생 상태
# =============================================================================
def to_quantity(value: Any) -> Decimal:
    """입력값을 소수점 둘째 자리 Decimal로 정규화합니다."""
    try:
        return Decimal(str(value)).quantize(TWO_PLACES)
    except (InvalidOperation, ValueError, TypeError):
        raise ConservationViolation(f"Invalid quantity: {value!r}")


def derive_ledger_state(
    input_quantity: Decimal, output_quantity: Decimal, byproduct_quantity: Decimal
) -> Tuple[Decimal, flow_models.LedgerStatus]:
    """
    (pending_quantity, status)를 계산합니다. 같은 입력에 대해 항상 같은 결과를 돌려줍니다.

    - pending: 전달량과 부산물량이 모두 0
    - in_progress: 잔여 재공량 > 0
    - completed: 잔여 재공량 == 0 이고 전달량 + 부산물량 > 0
    """
    pending = input_quantity - output_quantity - byproduct_quantity
    if pending < 0:
        raise ConservationViolation(
            "Forwarded + byproduct quantity cannot exceed input quantity",
            context={
                "input_quantity": str(input_quantity),
                "output_quantity": str(output_quantity),
                "byproduct_quantity": str(byproduct_quantity),
            },
        )
    if output_quantity == 0 and byproduct_quantity == 0:
        return pending, flow_models.LedgerStatus.PENDING
    if pending > 0:
        return pending, flow_models.LedgerStatus.IN_PROGRESS
    return pending, flow_models.LedgerStatus.COMPLETED


def validate_output(
    ledger: flow_models.StageLedgerBase, forwarded: Decimal, byproduct: Decimal
) -> None:
    """출력 기록 전 검증. 실패 시 원장은 변경되지 않습니다."""
    context = {
        "ledger_id": ledger.id,
        "input_quantity": str(ledger.input_quantity),
        "forwarded_quantity": str(forwarded),
        "byproduct_quantity": str(byproduct),
    }
    if forwarded < 0 or byproduct < 0:
        raise ConservationViolation("Forwarded and byproduct quantities must be non-negative", context=context)
    if forwarded + byproduct > ledger.input_quantity:
        raise ConservationViolation("Forwarded + byproduct quantity cannot exceed input quantity", context=context)
    if forwarded < ledger.output_quantity or byproduct < ledger.byproduct_quantity:
        # 기록값은 누적 합계이므로 줄어들 수 없습니다. 정정은 별도 보정 작업으로 처리합니다.
        context.update(
            recorded_output=str(ledger.output_quantity),
            recorded_byproduct=str(ledger.byproduct_quantity),
        )
        raise ConservationViolation("Recorded quantities cannot decrease", context=context)


def _validate_payload(stage_type: StageType, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    schema = flow_schemas.PAYLOAD_SCHEMAS[stage_type]
    try:
        validated = schema.model_validate(payload or {})
    except ValidationError as exc:
        raise InvalidPayload(
            f"Invalid {stage_type.value} payload",
            context={"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
        )
    return validated.model_dump(exclude_none=True)


# =============================================================================
# 2. 원장 조회/생성
# =============================================================================
async def _get_ledger(
    db: AsyncSession, *, company_id: int, stage_type: StageType, ledger_id: int
) -> flow_models.StageLedgerBase:
    ledger = await flow_crud.stage_ledger[stage_type].get_for_company(db, company_id=company_id, id=ledger_id)
    if ledger is None:
        raise NotFoundError(
            f"{stage_type.value} ledger not found.",
            context={"stage_type": stage_type.value, "ledger_id": ledger_id},
        )
    return ledger


async def get_ledger(
    db: AsyncSession, *, company_id: int, stage_type: StageType, ledger_id: int
) -> flow_schemas.LedgerRead:
    ledger = await _get_ledger(db, company_id=company_id, stage_type=stage_type, ledger_id=ledger_id)
    return flow_schemas.LedgerRead.from_ledger(stage_type, ledger)


async def list_ledgers(
    db: AsyncSession,
    *,
    company_id: int,
    stage_type: StageType,
    status: Optional[flow_models.LedgerStatus] = None,
    lot_number: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[flow_schemas.LedgerRead]:
    ledgers = await flow_crud.stage_ledger[stage_type].get_multi_for_company(
        db, company_id=company_id, filters={"status": status, "lot_number": lot_number}, skip=skip, limit=limit,
    )
    return [flow_schemas.LedgerRead.from_ledger(stage_type, ledger) for ledger in ledgers]


async def list_wip(
    db: AsyncSession, *, company_id: int, stage_type: StageType, skip: int = 0, limit: int = 100
) -> List[flow_schemas.LedgerRead]:
    ledgers = await flow_crud.stage_ledger[stage_type].get_wip(db, company_id=company_id, skip=skip, limit=limit)
    return [flow_schemas.LedgerRead.from_ledger(stage_type, ledger) for ledger in ledgers]


async def create_ledger(
    db: AsyncSession,
    *,
    company_id: int,
    actor_id: str,
    stage_type: StageType,
    obj_in: flow_schemas.LedgerCreate,
) -> flow_schemas.LedgerRead:
    """
    작업자가 직접 시작하는 원장(보통 표백 후 단계)을 생성합니다.
    """
    require_company_id(company_id)
    stage_type = StageType(stage_type)
    input_quantity = to_quantity(obj_in.input_quantity)
    if input_quantity <= 0:
        raise ConservationViolation("Input quantity must be positive", context={"input_quantity": str(input_quantity)})
    payload = _validate_payload(stage_type, obj_in.payload)

    pending, status = derive_ledger_state(input_quantity, Decimal("0"), Decimal("0"))
    ledger = flow_models.LEDGER_MODELS[stage_type](
        company_id=company_id,
        lot_number=obj_in.lot_number,
        party_name=obj_in.party_name,
        customer_id=obj_in.customer_id,
        input_quantity=input_quantity,
        output_quantity=Decimal("0"),
        byproduct_quantity=Decimal("0"),
        pending_quantity=pending,
        status=status,
        notes=obj_in.notes,
        created_by=actor_id,
        updated_by=actor_id,
        **payload,
    )
    if get_stage(stage_type).carries_quality:
        ledger.quality = obj_in.quality
    ledger = await flow_crud.stage_ledger[stage_type].create(db, obj_in=ledger)
    logger.info(
        "원장 생성: stage=%s id=%s lot=%s input=%s", stage_type.value, ledger.id, ledger.lot_number, input_quantity
    )
    return flow_schemas.LedgerRead.from_ledger(stage_type, ledger)


# =============================================================================
# 3. 품질 추적 및 로트 조회
# =============================================================================
async def trace_quality(db: AsyncSession, stage_type: StageType, ledger: flow_models.StageLedgerBase) -> str:
    """
    주어진 원장부터 상위 원장으로 거슬러 올라가며 품질 값을 가진 가장 가까운 원장의 품질을 찾습니다.
    찾지 못하면 기본값을 사용합니다.
    """
    current_type: Optional[StageType] = StageType(stage_type)
    current: Optional[flow_models.StageLedgerBase] = ledger
    for _ in range(len(STAGE_CHAIN)):
        if current is None or current_type is None:
            break
        quality = getattr(current, "quality", None)
        if get_stage(current_type).carries_quality and quality:
            return quality
        if current.upstream_ref is None or current.upstream_stage is None:
            break
        current_type = StageType(current.upstream_stage)
        current = await flow_crud.stage_ledger[current_type].get(db, current.upstream_ref)

    logger.warning(
        "품질 정보를 찾지 못해 기본값을 사용합니다: stage=%s ledger_id=%s lot=%s",
        StageType(stage_type).value, ledger.id, ledger.lot_number,
    )
    return DEFAULT_QUALITY


async def resolve_lot(
    db: AsyncSession, *, company_id: int, lot_number: str
) -> Optional[flow_schemas.LotDescriptor]:
    """
    모든 단계 원장을 체인 순서(앞 단계 우선)로 탐색하여 로트와 일치하는 가장 최근 원장의 정보를 반환합니다.
    어디에도 없으면 None. 여러 체인에 존재하면 첫 번째 일치 항목만 사용합니다.
    """
    require_company_id(company_id)
    for definition in STAGE_CHAIN:
        ledger = await flow_crud.stage_ledger[definition.stage_type].get_latest_by_lot(
            db, company_id=company_id, lot_number=lot_number
        )
        if ledger is None:
            continue
        quality = await trace_quality(db, definition.stage_type, ledger)
        return flow_schemas.LotDescriptor(
            lot_number=ledger.lot_number,
            party_name=ledger.party_name,
            customer_id=ledger.customer_id,
            quality=quality,
            available_quantity=ledger.pending_quantity,
            source_stage=definition.stage_type,
            ledger_id=ledger.id,
        )
    return None


async def get_lot_trail(db: AsyncSession, *, company_id: int, lot_number: str) -> flow_schemas.LotTrail:
    """로트의 모든 원장(체인 순서)과 부산물 풀 항목."""
    require_company_id(company_id)
    ledgers: List[flow_schemas.LedgerRead] = []
    for definition in STAGE_CHAIN:
        rows = await flow_crud.stage_ledger[definition.stage_type].get_by_lot(
            db, company_id=company_id, lot_number=lot_number
        )
        ledgers.extend(flow_schemas.LedgerRead.from_ledger(definition.stage_type, row) for row in rows)

    pool_entries: List[flow_schemas.PoolEntryRead] = []
    for kind in PoolKind:
        rows = await flow_crud.pool_entry[kind].get_by_lot(db, company_id=company_id, lot_number=lot_number)
        pool_entries.extend(flow_schemas.PoolEntryRead.model_validate(row) for row in rows)

    if not ledgers and not pool_entries:
        raise NotFoundError(f"Lot {lot_number} not found.", context={"lot_number": lot_number})
    return flow_schemas.LotTrail(lot_number=lot_number, ledgers=ledgers, pool_entries=pool_entries)


# =============================================================================
# 4. 출력 기록 (전달 엔진)
# =============================================================================
async def record_output(
    db: AsyncSession,
    *,
    company_id: int,
    actor_id: str,
    stage_type: StageType,
    ledger_id: int,
    request: flow_schemas.RecordOutputRequest,
) -> flow_schemas.RecordOutputResult:
    """
    원장의 누적 전달량/부산물량을 기록합니다.

    1) 검증 후 원장을 버전 검사와 함께 갱신하고, 같은 트랜잭션에 forwarding step을 기록합니다.
    2) 각 step(부산물 풀 항목 생성, 다음 단계 원장 생성)을 독립 트랜잭션으로 실행합니다.
    3) 하나라도 실패하면 PartialForwardFailure를 발생시킵니다. 원장 변경은 이미 커밋된 상태입니다.
    """
    require_company_id(company_id)
    stage_type = StageType(stage_type)
    stage = get_stage(stage_type)
    crud = flow_crud.stage_ledger[stage_type]

    ledger = await _get_ledger(db, company_id=company_id, stage_type=stage_type, ledger_id=ledger_id)
    forwarded = to_quantity(request.forwarded_quantity)
    byproduct = to_quantity(request.byproduct_quantity)

    # 모든 검증은 변경 전에 수행합니다.
    validate_output(ledger, forwarded, byproduct)
    payload = _validate_payload(stage_type, request.payload)
    if stage_type == StageType.CHECKING and not (payload.get("checker_name") or ledger.checker_name):
        raise InvalidPayload("Checker name is required", context={"ledger_id": ledger_id})

    forward_delta = forwarded - ledger.output_quantity
    byproduct_delta = byproduct - ledger.byproduct_quantity
    pending, status = derive_ledger_state(ledger.input_quantity, forwarded, byproduct)

    await crud.update_versioned(
        db,
        db_obj=ledger,
        values={
            "output_quantity": forwarded,
            "byproduct_quantity": byproduct,
            "pending_quantity": pending,
            "status": status,
            "updated_by": actor_id,
            **payload,
        },
        commit=False,
    )

    steps: List[flow_models.ForwardingStep] = []
    if byproduct_delta > 0:
        steps.append(flow_models.ForwardingStep(
            company_id=company_id,
            stage_type=stage_type,
            ledger_id=ledger_id,
            kind=flow_models.StepKind.BYPRODUCT,
            quantity=byproduct_delta,
            reason=request.reason or stage.default_reason,
            created_by=actor_id,
        ))
    if forward_delta > 0 and stage.next_stage is not None:
        steps.append(flow_models.ForwardingStep(
            company_id=company_id,
            stage_type=stage_type,
            ledger_id=ledger_id,
            kind=flow_models.StepKind.DOWNSTREAM,
            quantity=forward_delta,
            created_by=actor_id,
        ))
    for step in steps:
        db.add(step)
    await db.commit()
    step_ids = [step.id for step in steps]

    logger.info(
        "출력 기록: stage=%s ledger_id=%s forwarded=%s byproduct=%s pending=%s status=%s steps=%s",
        stage_type.value, ledger_id, forwarded, byproduct, pending, status.value, step_ids,
    )

    byproduct_entry: Optional[flow_models.PoolEntryBase] = None
    next_ledger: Optional[flow_models.StageLedgerBase] = None
    failed: Dict[int, str] = {}
    for step_id in step_ids:
        step = await flow_crud.forwarding_step.get(db, step_id)
        kind = step.kind
        try:
            created = await execute_step(db, step)
        except Exception as exc:
            failed[step_id] = str(exc)
            continue
        if kind == flow_models.StepKind.BYPRODUCT:
            byproduct_entry = created
        else:
            next_ledger = created

    if failed:
        context = {
            "ledger_id": ledger_id,
            "stage_type": stage_type.value,
            "forwarded_quantity": str(forwarded),
            "byproduct_quantity": str(byproduct),
            "failed_step_ids": list(failed),
            "errors": failed,
        }
        logger.error("부분 전달 실패 (수동/자동 재처리 필요): %s", context)
        raise PartialForwardFailure(
            "Ledger output was recorded but forwarding did not complete", context=context
        )

    await db.refresh(ledger)
    return flow_schemas.RecordOutputResult(
        ledger=flow_schemas.LedgerRead.from_ledger(stage_type, ledger),
        byproduct_pool=flow_schemas.PoolEntryRead.model_validate(byproduct_entry) if byproduct_entry else None,
        next_ledger=(
            flow_schemas.LedgerRead.from_ledger(stage.next_stage, next_ledger) if next_ledger else None
        ),
    )


async def execute_step(db: AsyncSession, step: flow_models.ForwardingStep) -> Any:
    """
    forwarding step 하나를 독립 트랜잭션으로 실행합니다.
    이미 completed인 step은 다시 실행하지 않고 결과 객체를 반환합니다.
    실패 시 트랜잭션을 롤백하고 step을 failed로 기록한 뒤 예외를 다시 발생시킵니다.
    """
    step_id = step.id
    source_type = StageType(step.stage_type)
    stage = get_stage(source_type)

    if step.status == flow_models.StepStatus.COMPLETED:
        return await _step_result(db, step)

    try:
        source = await flow_crud.stage_ledger[source_type].get(db, step.ledger_id)
        if source is None:
            raise NotFoundError(f"Source ledger {step.ledger_id} not found.")

        if step.kind == flow_models.StepKind.BYPRODUCT:
            created = flow_models.POOL_MODELS[stage.pool_kind](
                company_id=step.company_id,
                lot_number=source.lot_number,
                party_name=source.party_name,
                source_stage_type=source_type,
                source_ledger_id=source.id,
                quantity=step.quantity,
                reason=step.reason or stage.default_reason,
                status=flow_models.PoolStatus.AVAILABLE,
                forwarding_step_id=step_id,
            )
            db.add(created)
            await db.flush()
        else:
            if stage.next_stage is None:
                raise InvalidTransition(f"{source_type.value} is the last stage and cannot forward.")
            next_type = stage.next_stage
            pending, status = derive_ledger_state(step.quantity, Decimal("0"), Decimal("0"))
            created = flow_models.LEDGER_MODELS[next_type](
                company_id=step.company_id,
                lot_number=source.lot_number,
                party_name=source.party_name,
                customer_id=source.customer_id,
                input_quantity=step.quantity,
                output_quantity=Decimal("0"),
                byproduct_quantity=Decimal("0"),
                pending_quantity=pending,
                status=status,
                upstream_ref=source.id,
                upstream_stage=source_type,
                forwarding_step_id=step_id,
                created_by=step.created_by,
                updated_by=step.created_by,
            )
            if get_stage(next_type).carries_quality:
                created.quality = await trace_quality(db, source_type, source)
            db.add(created)
            await db.flush()
            await flow_crud.stage_ledger[source_type].update_versioned(
                db,
                db_obj=source,
                values={"downstream_refs": [*(source.downstream_refs or []), created.id]},
                commit=False,
            )

        await flow_crud.forwarding_step.update_versioned(
            db,
            db_obj=step,
            values={
                "status": flow_models.StepStatus.COMPLETED,
                "attempts": step.attempts + 1,
                "result_ref": created.id,
                "last_error": None,
                "completed_at": datetime.now(UTC),
            },
            commit=False,
        )
        await db.commit()
    except Exception as exc:
        await db.rollback()
        await _mark_step_failed(db, step_id, exc)
        raise

    await db.refresh(created)
    logger.info(
        "forwarding step 완료: step_id=%s kind=%s source=%s:%s result_ref=%s quantity=%s",
        step_id, step.kind.value, source_type.value, step.ledger_id, created.id, step.quantity,
    )
    return created


async def _mark_step_failed(db: AsyncSession, step_id: int, exc: Exception) -> None:
    step = await flow_crud.forwarding_step.get(db, step_id)
    await flow_crud.forwarding_step.update_versioned(
        db,
        db_obj=step,
        values={
            "status": flow_models.StepStatus.FAILED,
            "attempts": step.attempts + 1,
            "last_error": f"{type(exc).__name__}: {exc}"[:1000],
        },
    )
    logger.warning("forwarding step 실패: step_id=%s attempts=%s error=%s", step_id, step.attempts, exc)


async def _step_result(db: AsyncSession, step: flow_models.ForwardingStep) -> Any:
    stage = get_stage(step.stage_type)
    if step.kind == flow_models.StepKind.BYPRODUCT:
        return await flow_crud.pool_entry[stage.pool_kind].get(db, step.result_ref)
    return await flow_crud.stage_ledger[stage.next_stage].get(db, step.result_ref)


# =============================================================================
# 5. 재처리 (reconcile)
# =============================================================================
async def list_forwarding_steps(
    db: AsyncSession,
    *,
    company_id: int,
    status: Optional[flow_models.StepStatus] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[flow_models.ForwardingStep]:
    return await flow_crud.forwarding_step.get_multi_for_company(
        db, company_id=company_id, filters={"status": status}, skip=skip, limit=limit,
    )


async def retry_forwarding_step(db: AsyncSession, *, company_id: int, step_id: int) -> flow_models.ForwardingStep:
    """step 하나를 즉시 재실행합니다. 실패하면 PartialForwardFailure를 발생시킵니다."""
    step = await flow_crud.forwarding_step.get_for_company(db, company_id=company_id, id=step_id)
    if step is None:
        raise NotFoundError("Forwarding step not found.", context={"step_id": step_id})
    if step.status != flow_models.StepStatus.COMPLETED:
        try:
            await execute_step(db, step)
        except Exception as exc:
            step = await flow_crud.forwarding_step.get(db, step_id)
            raise PartialForwardFailure(
                "Forwarding step retry failed",
                context={
                    "step_id": step_id,
                    "ledger_id": step.ledger_id,
                    "stage_type": StageType(step.stage_type).value,
                    "quantity": str(step.quantity),
                    "attempts": step.attempts,
                    "error": str(exc),
                },
            )
    return await flow_crud.forwarding_step.get(db, step_id)


async def reconcile_forwarding_steps(
    db: AsyncSession, *, company_id: Optional[int] = None, max_attempts: Optional[int] = None, limit: int = 100
) -> flow_schemas.ReconcileReport:
    """
    pending/failed 상태의 step을 id 순서대로 재실행합니다.
    completed step은 건너뛰므로 같은 입력에 대해 여러 번 실행해도 중복 생성이 없습니다.
    """
    max_attempts = max_attempts or settings.FORWARDING_RETRY_LIMIT
    steps = await flow_crud.forwarding_step.get_retryable(
        db, max_attempts=max_attempts, company_id=company_id, limit=limit
    )
    report = flow_schemas.ReconcileReport()
    for step_id in [step.id for step in steps]:
        step = await flow_crud.forwarding_step.get(db, step_id)
        report.attempted += 1
        try:
            await execute_step(db, step)
        except Exception as exc:
            logger.warning("재처리 실패: step_id=%s error=%s", step_id, exc)
            report.failed.append(step_id)
        else:
            report.completed.append(step_id)
    logger.info("forwarding 재처리 완료: %s", report.model_dump())
    return report


# =============================================================================
# 6. 부산물 풀
# =============================================================================
async def list_pool_entries(
    db: AsyncSession,
    *,
    company_id: int,
    kind: PoolKind,
    status: Optional[flow_models.PoolStatus] = None,
    lot_number: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[flow_models.PoolEntryBase]:
    return await flow_crud.pool_entry[kind].get_multi_for_company(
        db, company_id=company_id, filters={"status": status, "lot_number": lot_number}, skip=skip, limit=limit,
    )


async def get_pool_summary(db: AsyncSession, *, company_id: int, kind: PoolKind) -> flow_schemas.PoolSummary:
    totals = await flow_crud.pool_entry[kind].get_totals_by_status(db, company_id=company_id)
    by_status = {status: totals.get(status, (0, Decimal("0")))[1] for status in flow_models.PoolStatus}
    return flow_schemas.PoolSummary(
        kind=kind,
        entry_count=sum(count for count, _ in totals.values()),
        total_quantity=sum(by_status.values(), Decimal("0")),
        by_status=by_status,
    )


async def update_pool_status(
    db: AsyncSession,
    *,
    company_id: int,
    kind: PoolKind,
    entry_id: int,
    new_status: flow_models.PoolStatus,
) -> flow_models.PoolEntryBase:
    """풀 항목의 상태만 전이시킵니다. 수량은 생성 후 변경되지 않습니다."""
    entry = await flow_crud.pool_entry[kind].get_for_company(db, company_id=company_id, id=entry_id)
    if entry is None:
        raise NotFoundError(f"{kind.value} pool entry not found.", context={"entry_id": entry_id})
    current = flow_models.PoolStatus(entry.status)
    new_status = flow_models.PoolStatus(new_status)
    if new_status not in POOL_STATUS_TRANSITIONS[current]:
        raise InvalidTransition(
            f"Cannot change pool entry status from {current.value} to {new_status.value}",
            context={"entry_id": entry_id},
        )
    entry = await flow_crud.pool_entry[kind].update_versioned(db, db_obj=entry, values={"status": new_status})
    logger.info("풀 상태 변경: kind=%s id=%s %s -> %s", kind.value, entry_id, current.value, new_status.value)
    return entry


# =============================================================================
# 7. 보존 법칙 감사
# =============================================================================
async def audit_ledgers(db: AsyncSession, *, company_id: Optional[int] = None) -> flow_schemas.LedgerAuditReport:
    """
    저장된 수량으로 잔여량/상태를 다시 계산하여 어긋난 행을 바로잡고,
    보존 법칙을 위반한 행(전달+부산물 > 투입)은 보고만 합니다.
    """
    report = flow_schemas.LedgerAuditReport()
    for stage_type in StageType:
        crud = flow_crud.stage_ledger[stage_type]
        for ledger in await crud.get_all_for_audit(db, company_id=company_id):
            report.checked += 1
            key = f"{stage_type.value}:{ledger.id}"
            try:
                pending, status = derive_ledger_state(
                    ledger.input_quantity, ledger.output_quantity, ledger.byproduct_quantity
                )
            except ProductionFlowError:
                logger.error("보존 법칙 위반 원장: %s", key)
                report.violations.append(key)
                continue
            if ledger.pending_quantity != pending or ledger.status != status:
                await crud.update_versioned(
                    db, db_obj=ledger, values={"pending_quantity": pending, "status": status}
                )
                report.repaired.append(key)
    return report
