# app/domains/batch/services.py

"""
생산 배치 단계 상태 머신(Batch Stage Machine).

모든 연산은 같은 흐름을 따릅니다.
1) 회사 단위로 배치를 읽어 BatchDocument로 변환합니다.
2) 변경 전에 모든 검증을 수행합니다. 실패하면 아무것도 저장되지 않습니다.
3) 문서를 변경하고 상태 변경 로그를 추가합니다.
4) derive_batch_state로 파생 필드를 다시 계산한 뒤 버전 검사와 함께 한 번에 저장합니다.
"""

import logging
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional, Tuple

from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.config import settings
from app.core.crud_base import require_company_id
from app.core.dependencies import SYSTEM_ACTOR
from app.core.exceptions import (
    ConservationViolation, InvalidPayload, InvalidTransition, NotFoundError, OverconsumptionError,
)
from app.domains.batch import crud as batch_crud
from app.domains.batch import rules
from app.domains.batch import schemas as batch_schemas
from app.domains.batch.models import (
    STAGE_COUNT, BatchCost, BatchDocument, BatchStage, BatchStatus, ChangeType, EntityType,
    MaterialConsumptionLog, MaterialInput, MaterialOutput, MaterialStatus, OutputCategory,
    Priority, ProductionBatch, QualityCheck, ResourceAllocation, StageStatus, StatusChangeLog,
)

logger = logging.getLogger(__name__)

CLOSED_STAGE_STATUSES = {StageStatus.COMPLETED, StageStatus.FAILED, StageStatus.SKIPPED}


# =============================================================================
# 1. 내부 도우미
# =============================================================================
def _utcnow() -> datetime:
    return datetime.now(UTC)


async def _load_batch(
    db: AsyncSession, *, company_id: int, batch_id: int
) -> Tuple[ProductionBatch, BatchDocument]:
    row = await batch_crud.production_batch.get_for_company(db, company_id=company_id, id=batch_id)
    if row is None:
        raise NotFoundError("Production batch not found.", context={"batch_id": batch_id})
    return row, BatchDocument.from_row(row)


def _require_stage(doc: BatchDocument, stage_number: int) -> BatchStage:
    stage = doc.get_stage(stage_number)
    if stage is None:
        raise NotFoundError("Stage not found", context={"batch_id": doc.id, "stage_number": stage_number})
    return stage


def _require_material(doc: BatchDocument, stage: BatchStage, material_id: str) -> MaterialInput:
    material = stage.find_input(material_id)
    if material is None:
        raise NotFoundError(
            "Material not allocated to this stage",
            context={"batch_id": doc.id, "stage_number": stage.stage_number, "material_id": material_id},
        )
    return material


def _log(
    doc: BatchDocument,
    *,
    change_type: ChangeType,
    entity_type: EntityType,
    new_status: str,
    reason: str,
    actor_id: str,
    previous_status: Optional[str] = None,
    entity_id: Optional[str] = None,
    stage_number: Optional[int] = None,
    previous_values: Optional[Dict[str, Any]] = None,
    new_values: Optional[Dict[str, Any]] = None,
    system_generated: bool = False,
) -> StatusChangeLog:
    """상태 변경 로그를 하나 추가합니다. 로그는 추가만 가능하며 수정/삭제하지 않습니다."""
    entry = StatusChangeLog(
        change_type=change_type,
        entity_type=entity_type,
        entity_id=entity_id,
        previous_status=previous_status,
        new_status=new_status,
        change_reason=reason,
        changed_by=actor_id,
        stage_number=stage_number,
        previous_values=previous_values,
        new_values=new_values,
        system_generated=system_generated,
    )
    doc.status_change_logs.append(entry)
    return entry


def _apply_stage_status(doc: BatchDocument, stage: BatchStage, new_status: StageStatus, now: datetime) -> None:
    stage.status = new_status
    if new_status == StageStatus.IN_PROGRESS:
        if stage.actual_start_time is None:
            stage.actual_start_time = now
        if doc.actual_start_date is None:
            doc.actual_start_date = now
    elif new_status == StageStatus.COMPLETED:
        stage.progress = 100
        stage.actual_end_time = now
    elif new_status in (StageStatus.FAILED, StageStatus.SKIPPED):
        stage.actual_end_time = now


def _infer_completion(doc: BatchDocument, previous_status: BatchStatus, now: datetime) -> None:
    """
    단계 변경 후 모든 단계가 완료(또는 건너뜀)되면 배치 완료를 기록합니다.
    배치 수준의 완료가 자동으로 추론되는 유일한 지점입니다.
    """
    rules.derive_batch_state(doc)
    if doc.status != BatchStatus.COMPLETED or previous_status == BatchStatus.COMPLETED:
        return
    doc.actual_end_date = now
    _log(
        doc,
        change_type=ChangeType.BATCH_STATUS,
        entity_type=EntityType.BATCH,
        entity_id=doc.batch_number,
        previous_status=previous_status.value,
        new_status=BatchStatus.COMPLETED.value,
        reason="All stages completed",
        actor_id=SYSTEM_ACTOR,
        system_generated=True,
    )
    logger.info("배치 완료: batch_id=%s batch_number=%s", doc.id, doc.batch_number)


async def _save(db: AsyncSession, row: ProductionBatch, doc: BatchDocument, actor_id: str) -> BatchDocument:
    rules.derive_batch_state(doc)
    doc.updated_by = actor_id
    row = await batch_crud.production_batch.update_versioned(db, db_obj=row, values=doc.to_row_values())
    return BatchDocument.from_row(row)


def _material_from_allocation(obj_in: batch_schemas.MaterialAllocationCreate) -> MaterialInput:
    return MaterialInput(
        material_id=obj_in.material_id,
        item_name=obj_in.item_name,
        category=obj_in.category,
        quantity=rules.round2(obj_in.quantity),
        unit=obj_in.unit,
        cost_per_unit=obj_in.cost_per_unit,
        total_cost=rules.round2(obj_in.quantity * obj_in.cost_per_unit),
        notes=obj_in.notes,
    )


# =============================================================================
# 2. 배치 생성 / 조회 / 삭제
# =============================================================================
async def create_batch(
    db: AsyncSession, *, company_id: int, actor_id: str, obj_in: batch_schemas.BatchCreate
) -> BatchDocument:
    """
    배치 번호를 발급하고 8단계 템플릿으로 새 배치를 생성합니다.
    배치 번호 시퀀스 증가와 배치 삽입은 같은 트랜잭션으로 커밋됩니다.
    """
    require_company_id(company_id)
    if obj_in.planned_start_date and obj_in.planned_end_date and obj_in.planned_end_date < obj_in.planned_start_date:
        raise InvalidPayload("Planned end date cannot be before the planned start date")

    stages = rules.build_stage_template()
    for allocation in obj_in.input_materials:
        stage = stages[allocation.stage_number - 1]
        if stage.find_input(allocation.material_id):
            raise InvalidPayload(
                "Material already allocated to this stage",
                context={"stage_number": allocation.stage_number, "material_id": allocation.material_id},
            )
        stage.input_materials.append(_material_from_allocation(allocation))

    company_code = (obj_in.company_code or settings.DEFAULT_COMPANY_CODE).upper()
    period = rules.batch_period()
    sequence = await batch_crud.batch_number_sequence.next_value(db, company_id=company_id, period=period)
    batch_number = rules.format_batch_number(company_code, period, sequence)

    doc = BatchDocument(
        company_id=company_id,
        batch_number=batch_number,
        customer_order_id=obj_in.customer_order_id,
        product_spec=obj_in.product_spec,
        planned_quantity=obj_in.planned_quantity,
        unit=obj_in.unit,
        priority=obj_in.priority,
        planned_start_date=obj_in.planned_start_date,
        planned_end_date=obj_in.planned_end_date,
        notes=obj_in.notes,
        stages=stages,
        updated_by=actor_id,
    )
    _log(
        doc,
        change_type=ChangeType.BATCH_STATUS,
        entity_type=EntityType.BATCH,
        entity_id=batch_number,
        new_status=BatchStatus.PENDING.value,
        reason="Batch created",
        actor_id=actor_id,
    )
    rules.derive_batch_state(doc)

    row = ProductionBatch(**doc.to_row_values(), created_by=actor_id)
    row = await batch_crud.production_batch.create(db, obj_in=row)
    logger.info("배치 생성: batch_id=%s batch_number=%s company=%s", row.id, batch_number, company_id)
    return BatchDocument.from_row(row)


async def get_batch(db: AsyncSession, *, company_id: int, batch_id: int) -> BatchDocument:
    _, doc = await _load_batch(db, company_id=company_id, batch_id=batch_id)
    return doc


async def list_batches(
    db: AsyncSession,
    *,
    company_id: int,
    status: Optional[BatchStatus] = None,
    priority: Optional[Priority] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[ProductionBatch]:
    return await batch_crud.production_batch.get_multi_for_company(
        db, company_id=company_id, filters={"status": status, "priority": priority}, skip=skip, limit=limit,
    )


async def delete_batch(db: AsyncSession, *, company_id: int, batch_id: int) -> None:
    """한 번도 시작되지 않은 배치만 삭제할 수 있습니다."""
    row, doc = await _load_batch(db, company_id=company_id, batch_id=batch_id)
    if doc.status != BatchStatus.PENDING or any(s.status != StageStatus.NOT_STARTED for s in doc.stages):
        raise InvalidTransition(
            "Only batches that have not started can be deleted",
            context={"batch_id": batch_id, "status": doc.status.value},
        )
    await batch_crud.production_batch.delete(db, id=row.id)
    logger.info("배치 삭제: batch_id=%s batch_number=%s", batch_id, doc.batch_number)


# =============================================================================
# 3. 단계 상태 / 품질 게이트 / 단계 이동
# =============================================================================
async def update_stage_status(
    db: AsyncSession,
    *,
    company_id: int,
    actor_id: str,
    batch_id: int,
    stage_number: int,
    new_status: StageStatus,
    reason: str = "Status updated",
    progress: Optional[int] = None,
) -> BatchDocument:
    row, doc = await _load_batch(db, company_id=company_id, batch_id=batch_id)
    stage = _require_stage(doc, stage_number)
    new_status = StageStatus(new_status)

    problem = rules.check_stage_status_change(stage, new_status)
    if problem:
        raise InvalidTransition(
            problem,
            context={"batch_id": batch_id, "stage_number": stage_number, "status": stage.status.value},
        )

    now = _utcnow()
    previous_batch_status = doc.status
    previous_stage_status = stage.status
    _apply_stage_status(doc, stage, new_status, now)
    if progress is not None and new_status not in CLOSED_STAGE_STATUSES:
        stage.progress = progress

    _log(
        doc,
        change_type=ChangeType.STAGE_STATUS,
        entity_type=EntityType.STAGE,
        entity_id=str(stage_number),
        previous_status=previous_stage_status.value,
        new_status=new_status.value,
        reason=reason,
        actor_id=actor_id,
        stage_number=stage_number,
    )
    _infer_completion(doc, previous_batch_status, now)
    return await _save(db, row, doc, actor_id)


async def pass_quality_gate(
    db: AsyncSession,
    *,
    company_id: int,
    actor_id: str,
    batch_id: int,
    stage_number: int,
    notes: Optional[str] = None,
) -> BatchDocument:
    row, doc = await _load_batch(db, company_id=company_id, batch_id=batch_id)
    stage = _require_stage(doc, stage_number)
    if stage.status in (StageStatus.FAILED, StageStatus.SKIPPED):
        raise InvalidTransition(
            f"Cannot pass the quality gate of a {stage.status.value} stage",
            context={"batch_id": batch_id, "stage_number": stage_number},
        )

    gate = stage.quality_gate
    previous = "passed" if gate.passed else ("failed" if gate.rejection_reason else "pending")
    gate.passed = True
    gate.passed_by = actor_id
    gate.passed_date = _utcnow()
    gate.notes = notes
    gate.rejection_reason = None
    gate.retest_required = False

    _log(
        doc,
        change_type=ChangeType.QUALITY_APPROVAL,
        entity_type=EntityType.STAGE,
        entity_id=str(stage_number),
        previous_status=previous,
        new_status="passed",
        reason=notes or "Quality gate passed",
        actor_id=actor_id,
        stage_number=stage_number,
    )
    return await _save(db, row, doc, actor_id)


async def fail_quality_gate(
    db: AsyncSession,
    *,
    company_id: int,
    actor_id: str,
    batch_id: int,
    stage_number: int,
    rejection_reason: str,
    retest_required: bool = True,
) -> BatchDocument:
    """
    품질 게이트를 불합격 처리하고 단계를 quality_hold로 전환합니다.
    이미 소비된 자재는 되돌리지 않습니다.
    """
    row, doc = await _load_batch(db, company_id=company_id, batch_id=batch_id)
    stage = _require_stage(doc, stage_number)
    if not rejection_reason or not rejection_reason.strip():
        raise InvalidPayload("Rejection reason is required", context={"stage_number": stage_number})
    if stage.status in CLOSED_STAGE_STATUSES:
        raise InvalidTransition(
            f"Cannot fail the quality gate of a {stage.status.value} stage",
            context={"batch_id": batch_id, "stage_number": stage_number},
        )

    gate = stage.quality_gate
    previous_gate = "passed" if gate.passed else ("failed" if gate.rejection_reason else "pending")
    gate.passed = False
    gate.passed_by = None
    gate.passed_date = None
    gate.rejection_reason = rejection_reason
    gate.retest_required = retest_required

    _log(
        doc,
        change_type=ChangeType.QUALITY_APPROVAL,
        entity_type=EntityType.STAGE,
        entity_id=str(stage_number),
        previous_status=previous_gate,
        new_status="failed",
        reason=rejection_reason,
        actor_id=actor_id,
        stage_number=stage_number,
        new_values={"retest_required": retest_required},
    )
    if stage.status != StageStatus.QUALITY_HOLD:
        previous_stage_status = stage.status
        stage.status = StageStatus.QUALITY_HOLD
        _log(
            doc,
            change_type=ChangeType.STAGE_STATUS,
            entity_type=EntityType.STAGE,
            entity_id=str(stage_number),
            previous_status=previous_stage_status.value,
            new_status=StageStatus.QUALITY_HOLD.value,
            reason=f"Quality gate failed: {rejection_reason}",
            actor_id=actor_id,
            stage_number=stage_number,
        )
    logger.info(
        "품질 게이트 불합격: batch_id=%s stage=%s reason=%s", batch_id, stage_number, rejection_reason
    )
    return await _save(db, row, doc, actor_id)


async def validate_stage_transition(
    db: AsyncSession, *, company_id: int, batch_id: int, from_stage: int, to_stage: int
) -> batch_schemas.TransitionCheck:
    _, doc = await _load_batch(db, company_id=company_id, batch_id=batch_id)
    return rules.validate_stage_transition(doc, from_stage, to_stage)


async def move_to_next_stage(
    db: AsyncSession,
    *,
    company_id: int,
    actor_id: str,
    batch_id: int,
    reason: Optional[str] = None,
) -> BatchDocument:
    """
    가장 마지막으로 완료된 단계에서 다음 단계로 이동하고, 다음 단계를 in_progress로 시작합니다.
    """
    row, doc = await _load_batch(db, company_id=company_id, batch_id=batch_id)
    completed = [s.stage_number for s in doc.stages if s.status == StageStatus.COMPLETED]
    if not completed:
        raise InvalidTransition("Previous stage must be completed", context={"batch_id": batch_id})
    from_stage = max(completed)
    if from_stage >= STAGE_COUNT:
        raise InvalidTransition("Batch is already at the final stage", context={"batch_id": batch_id})
    to_stage = from_stage + 1

    check = rules.validate_stage_transition(doc, from_stage, to_stage)
    if not check.valid:
        raise InvalidTransition(
            check.reason, context={"batch_id": batch_id, "from_stage": from_stage, "to_stage": to_stage}
        )
    target = _require_stage(doc, to_stage)
    problem = rules.check_stage_status_change(target, StageStatus.IN_PROGRESS)
    if problem:
        raise InvalidTransition(problem, context={"batch_id": batch_id, "stage_number": to_stage})

    now = _utcnow()
    previous_target_status = target.status
    _apply_stage_status(doc, target, StageStatus.IN_PROGRESS, now)
    _log(
        doc,
        change_type=ChangeType.STAGE_TRANSITION,
        entity_type=EntityType.STAGE,
        entity_id=str(to_stage),
        previous_status=str(from_stage),
        new_status=str(to_stage),
        reason=reason or f"Moved from stage {from_stage} to stage {to_stage}",
        actor_id=actor_id,
        stage_number=to_stage,
    )
    _log(
        doc,
        change_type=ChangeType.STAGE_STATUS,
        entity_type=EntityType.STAGE,
        entity_id=str(to_stage),
        previous_status=previous_target_status.value,
        new_status=StageStatus.IN_PROGRESS.value,
        reason=reason or "Stage started",
        actor_id=actor_id,
        stage_number=to_stage,
    )
    return await _save(db, row, doc, actor_id)


# =============================================================================
# 4. 자재 할당 / 소비 / 반납 / 산출
# =============================================================================
async def allocate_material(
    db: AsyncSession,
    *,
    company_id: int,
    actor_id: str,
    batch_id: int,
    stage_number: int,
    obj_in: batch_schemas.MaterialAllocationCreate,
) -> BatchDocument:
    row, doc = await _load_batch(db, company_id=company_id, batch_id=batch_id)
    stage = _require_stage(doc, stage_number)
    if stage.status in CLOSED_STAGE_STATUSES:
        raise InvalidTransition(
            f"Cannot allocate materials to a {stage.status.value} stage",
            context={"batch_id": batch_id, "stage_number": stage_number},
        )
    if stage.find_input(obj_in.material_id):
        raise InvalidPayload(
            "Material already allocated to this stage",
            context={"stage_number": stage_number, "material_id": obj_in.material_id},
        )

    material = _material_from_allocation(obj_in)
    stage.input_materials.append(material)
    _log(
        doc,
        change_type=ChangeType.MATERIAL_CONSUMPTION,
        entity_type=EntityType.MATERIAL,
        entity_id=material.material_id,
        new_status=MaterialStatus.ALLOCATED.value,
        reason=f"Allocated {material.quantity} {material.unit} of {material.item_name}",
        actor_id=actor_id,
        stage_number=stage_number,
        new_values={"quantity": material.quantity},
    )
    return await _save(db, row, doc, actor_id)


async def consume_material(
    db: AsyncSession,
    *,
    company_id: int,
    actor_id: str,
    batch_id: int,
    stage_number: int,
    material_id: str,
    quantity: float,
    waste_quantity: float = 0,
    returned_quantity: float = 0,
    notes: Optional[str] = None,
) -> BatchDocument:
    """
    할당된 자재를 소비합니다. 누적 소비량(+반납량)이 할당량을 넘으면
    아무것도 변경하지 않고 OverconsumptionError를 발생시킵니다.
    """
    row, doc = await _load_batch(db, company_id=company_id, batch_id=batch_id)
    stage = _require_stage(doc, stage_number)
    material = _require_material(doc, stage, material_id)

    if quantity is None or quantity <= 0:
        raise ConservationViolation("Consumption quantity must be positive", context={"quantity": quantity})
    if waste_quantity < 0 or returned_quantity < 0:
        raise ConservationViolation(
            "Waste and returned quantities cannot be negative",
            context={"waste_quantity": waste_quantity, "returned_quantity": returned_quantity},
        )
    if waste_quantity > quantity:
        raise ConservationViolation(
            "Waste quantity cannot exceed the consumed quantity",
            context={"quantity": quantity, "waste_quantity": waste_quantity},
        )

    new_consumption = rules.round2(material.actual_consumption + quantity)
    new_returned = rules.round2(material.returned_quantity + returned_quantity)
    remaining = rules.round2(material.quantity - material.actual_consumption - material.returned_quantity)
    context = {
        "batch_id": batch_id,
        "stage_number": stage_number,
        "material_id": material_id,
        "allocated": material.quantity,
        "consumed": material.actual_consumption,
        "requested": quantity,
    }
    if new_consumption > material.quantity:
        logger.warning("자재 과소비 거부: %s", context)
        raise OverconsumptionError(
            f"Consumption of {quantity} exceeds the remaining allocation of {remaining}", context=context
        )
    if rules.round2(new_consumption + new_returned) > material.quantity:
        raise OverconsumptionError(
            "Consumed and returned quantities exceed the allocated quantity", context=context
        )

    now = _utcnow()
    previous_status = material.status
    material.actual_consumption = new_consumption
    material.waste_quantity = rules.round2(material.waste_quantity + waste_quantity)
    material.returned_quantity = new_returned
    material.consumption_date = now
    material.consumed_by = actor_id
    if new_consumption >= material.quantity:
        material.status = MaterialStatus.CONSUMED
    elif rules.round2(new_consumption + new_returned) >= material.quantity:
        material.status = MaterialStatus.RETURNED
    else:
        material.status = MaterialStatus.PARTIAL

    doc.material_consumption_logs.append(MaterialConsumptionLog(
        material_id=material.material_id,
        material_name=material.item_name,
        stage_number=stage_number,
        stage_name=stage.stage_name,
        allocated_quantity=material.quantity,
        consumed_quantity=quantity,
        waste_quantity=waste_quantity,
        returned_quantity=returned_quantity,
        consumption_date=now,
        consumed_by=actor_id,
        cost_per_unit=material.cost_per_unit,
        total_cost=rules.round2(quantity * material.cost_per_unit),
        notes=notes,
    ))
    _log(
        doc,
        change_type=ChangeType.MATERIAL_CONSUMPTION,
        entity_type=EntityType.MATERIAL,
        entity_id=material_id,
        previous_status=previous_status.value,
        new_status=material.status.value,
        reason=notes or f"Consumed {quantity} {material.unit} of {material.item_name}",
        actor_id=actor_id,
        stage_number=stage_number,
        new_values={"actual_consumption": new_consumption},
    )
    return await _save(db, row, doc, actor_id)


async def return_material(
    db: AsyncSession,
    *,
    company_id: int,
    actor_id: str,
    batch_id: int,
    stage_number: int,
    material_id: str,
    as_waste: bool = False,
    notes: Optional[str] = None,
) -> BatchDocument:
    """
    소비되지 않은 잔량 전체를 반납합니다. as_waste이면 잔량을 폐기(소비 + 폐기)로 처리합니다.
    """
    row, doc = await _load_batch(db, company_id=company_id, batch_id=batch_id)
    stage = _require_stage(doc, stage_number)
    material = _require_material(doc, stage, material_id)

    remaining = rules.round2(material.quantity - material.actual_consumption - material.returned_quantity)
    if remaining <= 0:
        raise InvalidTransition(
            "No unconsumed quantity left to return",
            context={"batch_id": batch_id, "stage_number": stage_number, "material_id": material_id},
        )

    now = _utcnow()
    previous_status = material.status
    if as_waste:
        material.actual_consumption = rules.round2(material.actual_consumption + remaining)
        material.waste_quantity = rules.round2(material.waste_quantity + remaining)
        material.status = MaterialStatus.WASTED
    else:
        material.returned_quantity = rules.round2(material.returned_quantity + remaining)
        material.status = MaterialStatus.RETURNED

    consumed = remaining if as_waste else 0.0
    doc.material_consumption_logs.append(MaterialConsumptionLog(
        material_id=material.material_id,
        material_name=material.item_name,
        stage_number=stage_number,
        stage_name=stage.stage_name,
        allocated_quantity=material.quantity,
        consumed_quantity=consumed,
        waste_quantity=remaining if as_waste else 0.0,
        returned_quantity=0.0 if as_waste else remaining,
        consumption_date=now,
        consumed_by=actor_id,
        cost_per_unit=material.cost_per_unit,
        total_cost=rules.round2(consumed * material.cost_per_unit),
        notes=notes,
    ))
    _log(
        doc,
        change_type=ChangeType.MATERIAL_CONSUMPTION,
        entity_type=EntityType.MATERIAL,
        entity_id=material_id,
        previous_status=previous_status.value,
        new_status=material.status.value,
        reason=notes or f"{'Wasted' if as_waste else 'Returned'} {remaining} {material.unit} of {material.item_name}",
        actor_id=actor_id,
        stage_number=stage_number,
    )
    return await _save(db, row, doc, actor_id)


async def add_material_output(
    db: AsyncSession,
    *,
    company_id: int,
    actor_id: str,
    batch_id: int,
    stage_number: int,
    obj_in: batch_schemas.MaterialOutputCreate,
) -> BatchDocument:
    """
    단계 산출물을 기록합니다. 마지막 단계의 완제품은 배치 산출물과 실제 수량에도 반영됩니다.
    """
    row, doc = await _load_batch(db, company_id=company_id, batch_id=batch_id)
    stage = _require_stage(doc, stage_number)

    output = MaterialOutput.model_validate({**obj_in.model_dump(), "produced_by": actor_id})
    stage.output_materials.append(output)
    if output.category == OutputCategory.FINISHED_GOODS and stage_number == STAGE_COUNT:
        doc.output_materials.append(output.model_copy())
        doc.actual_quantity = rules.round2((doc.actual_quantity or 0) + output.quantity)

    _log(
        doc,
        change_type=ChangeType.MATERIAL_CONSUMPTION,
        entity_type=EntityType.MATERIAL,
        entity_id=output.id,
        new_status="produced",
        reason=obj_in.notes or f"Produced {output.quantity} {output.unit} of {output.item_name}",
        actor_id=actor_id,
        stage_number=stage_number,
        new_values={"category": output.category.value, "quantity": output.quantity},
    )
    return await _save(db, row, doc, actor_id)


# =============================================================================
# 5. 품질 검사 / 자원 할당 / 비용
# =============================================================================
async def add_quality_check(
    db: AsyncSession,
    *,
    company_id: int,
    actor_id: str,
    batch_id: int,
    stage_number: int,
    obj_in: batch_schemas.QualityCheckCreate,
) -> BatchDocument:
    row, doc = await _load_batch(db, company_id=company_id, batch_id=batch_id)
    stage = _require_stage(doc, stage_number)

    check = QualityCheck.model_validate({**obj_in.model_dump(), "checked_by": actor_id})
    stage.quality_checks.append(check)
    _log(
        doc,
        change_type=ChangeType.QUALITY_APPROVAL,
        entity_type=EntityType.STAGE,
        entity_id=str(stage_number),
        new_status=check.overall_result.value,
        reason=obj_in.notes or f"{check.check_type} check recorded",
        actor_id=actor_id,
        stage_number=stage_number,
        new_values={"check_id": check.id, "grade": check.grade.value if check.grade else None},
    )
    return await _save(db, row, doc, actor_id)


async def allocate_resource(
    db: AsyncSession,
    *,
    company_id: int,
    actor_id: str,
    batch_id: int,
    stage_number: int,
    obj_in: batch_schemas.ResourceAllocationCreate,
) -> BatchDocument:
    row, doc = await _load_batch(db, company_id=company_id, batch_id=batch_id)
    stage = _require_stage(doc, stage_number)
    if obj_in.allocated_to <= obj_in.allocated_from:
        raise InvalidPayload(
            "Resource allocation must end after it starts",
            context={"resource_id": obj_in.resource_id},
        )

    hours = (obj_in.allocated_to - obj_in.allocated_from).total_seconds() / 3600
    allocation = ResourceAllocation.model_validate({
        **obj_in.model_dump(),
        "total_cost": rules.round2(hours * obj_in.cost_per_hour),
    })
    stage.resource_allocations.append(allocation)
    _log(
        doc,
        change_type=ChangeType.RESOURCE_ALLOCATION,
        entity_type=EntityType.RESOURCE,
        entity_id=allocation.resource_id,
        new_status="allocated",
        reason=obj_in.notes or f"{allocation.resource_name} allocated for {hours:.2f} hours",
        actor_id=actor_id,
        stage_number=stage_number,
        new_values={"total_cost": allocation.total_cost},
    )
    return await _save(db, row, doc, actor_id)


async def add_cost(
    db: AsyncSession,
    *,
    company_id: int,
    actor_id: str,
    batch_id: int,
    obj_in: batch_schemas.CostCreate,
) -> BatchDocument:
    """배치 비용 원장에 항목을 추가합니다. 단계가 지정되면 해당 단계 비용에도 기록됩니다."""
    row, doc = await _load_batch(db, company_id=company_id, batch_id=batch_id)
    stage = _require_stage(doc, obj_in.stage_number) if obj_in.stage_number is not None else None
    if obj_in.amount < 0:
        raise InvalidPayload("Cost amount cannot be negative", context={"amount": obj_in.amount})

    cost = BatchCost.model_validate({**obj_in.model_dump(), "created_by": actor_id})
    previous_total = doc.total_cost
    doc.costs.append(cost)
    if stage is not None:
        stage.stage_costs.append(cost.model_copy())

    new_total = rules.round2(previous_total + cost.amount)
    _log(
        doc,
        change_type=ChangeType.COST_UPDATE,
        entity_type=EntityType.COST,
        entity_id=cost.id,
        previous_status=f"{previous_total:.2f}",
        new_status=f"{new_total:.2f}",
        reason=cost.description,
        actor_id=actor_id,
        stage_number=cost.stage_number,
        previous_values={"total_cost": previous_total},
        new_values={"total_cost": new_total, "amount": cost.amount, "currency": cost.currency},
    )
    return await _save(db, row, doc, actor_id)


# =============================================================================
# 6. 조회 / 집계
# =============================================================================
async def get_cost_summary(db: AsyncSession, *, company_id: int, batch_id: int) -> batch_schemas.CostSummary:
    doc = await get_batch(db, company_id=company_id, batch_id=batch_id)
    return rules.build_cost_summary(doc)


async def get_production_metrics(
    db: AsyncSession, *, company_id: int, batch_id: int
) -> batch_schemas.ProductionMetrics:
    doc = await get_batch(db, company_id=company_id, batch_id=batch_id)
    return rules.build_production_metrics(doc)


async def get_status_history(
    db: AsyncSession,
    *,
    company_id: int,
    batch_id: int,
    change_type: Optional[ChangeType] = None,
    stage_number: Optional[int] = None,
) -> List[StatusChangeLog]:
    """상태 변경 로그를 최신순으로 반환합니다."""
    doc = await get_batch(db, company_id=company_id, batch_id=batch_id)
    logs = [
        log for log in doc.status_change_logs
        if (change_type is None or log.change_type == change_type)
        and (stage_number is None or log.stage_number == stage_number)
    ]
    # 로그는 발생 순서대로 추가되므로 뒤집으면 최신순입니다.
    return list(reversed(logs))


async def get_material_consumption_summary(
    db: AsyncSession, *, company_id: int, batch_id: int
) -> batch_schemas.MaterialConsumptionSummary:
    doc = await get_batch(db, company_id=company_id, batch_id=batch_id)
    return rules.build_material_consumption_summary(doc)
