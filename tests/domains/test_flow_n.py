# tests/domains/test_flow_n.py

"""
'flow' 도메인 (단계 원장 및 전달 엔진) 관련 서비스와 API 엔드포인트에 대한 통합 테스트 모듈입니다.

- 출력 기록 시 전달/부산물/잔여 분할과 보존 법칙
- 부산물 풀 항목 및 다음 단계 원장 생성
- 누적 기록(감소 불가)과 재호출 시 중복 생성 방지
- 품질 추적과 로트 조회
- 부분 전달 실패 및 재처리(reconcile)
- 회사 단위 격리
"""

from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy.orm import sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core import dependencies as deps
from app.core.crud_base import require_company_id
from app.core.exceptions import (
    ConcurrentModificationError, ConservationViolation, InvalidPayload, InvalidTransition, NotFoundError,
    PartialForwardFailure, TenancyViolation,
)
from app.domains.flow import crud as flow_crud
from app.domains.flow import models as flow_models
from app.domains.flow import schemas as flow_schemas
from app.domains.flow import services as flow_services
from app.domains.flow.stages import DEFAULT_QUALITY, PoolKind, StageType


# =================================================================================
# 0. 테스트를 위한 Fixture 설정
# =================================================================================
async def _create_ledger(
    db: AsyncSession,
    ctx: deps.RequestContext,
    stage_type: StageType,
    input_quantity: str = "100",
    lot_number: str = "LOT-001",
    quality: str = None,
    payload: dict = None,
) -> flow_schemas.LedgerRead:
    return await flow_services.create_ledger(
        db,
        company_id=ctx.company_id,
        actor_id=ctx.actor_id,
        stage_type=stage_type,
        obj_in=flow_schemas.LedgerCreate(
            lot_number=lot_number,
            party_name="Sharma Textiles",
            customer_id="CUST-9",
            quality=quality,
            input_quantity=Decimal(input_quantity),
            payload=payload or {},
        ),
    )


async def _record(
    db: AsyncSession,
    ctx: deps.RequestContext,
    stage_type: StageType,
    ledger_id: int,
    forwarded: str,
    byproduct: str = "0",
    payload: dict = None,
) -> flow_schemas.RecordOutputResult:
    return await flow_services.record_output(
        db,
        company_id=ctx.company_id,
        actor_id=ctx.actor_id,
        stage_type=stage_type,
        ledger_id=ledger_id,
        request=flow_schemas.RecordOutputRequest(
            forwarded_quantity=Decimal(forwarded),
            byproduct_quantity=Decimal(byproduct),
            payload=payload or {},
        ),
    )


@pytest_asyncio.fixture(scope="function")
async def printing_ledger(db_session: AsyncSession, ctx: deps.RequestContext) -> flow_schemas.LedgerRead:
    """투입량 100의 날염 원장 (품질 Premium)"""
    return await _create_ledger(db_session, ctx, StageType.PRINTING, quality="Premium")


# =================================================================================
# 1. 순수 함수: 파생 상태
# =================================================================================
def test_derive_ledger_state_statuses():
    """(성공) 파생 상태: pending / in_progress / completed"""
    assert flow_services.derive_ledger_state(Decimal("100"), Decimal("0"), Decimal("0")) == (
        Decimal("100"), flow_models.LedgerStatus.PENDING
    )
    assert flow_services.derive_ledger_state(Decimal("100"), Decimal("70"), Decimal("10")) == (
        Decimal("20"), flow_models.LedgerStatus.IN_PROGRESS
    )
    assert flow_services.derive_ledger_state(Decimal("100"), Decimal("90"), Decimal("10")) == (
        Decimal("0"), flow_models.LedgerStatus.COMPLETED
    )


def test_derive_ledger_state_rejects_negative_pending():
    """(실패) 파생 상태: 전달 + 부산물이 투입량을 넘으면 ConservationViolation"""
    with pytest.raises(ConservationViolation):
        flow_services.derive_ledger_state(Decimal("100"), Decimal("80"), Decimal("30"))


def test_to_quantity_rejects_garbage():
    """(실패) 수량 정규화: 숫자가 아닌 값은 거부"""
    assert flow_services.to_quantity("12.5") == Decimal("12.50")
    with pytest.raises(ConservationViolation):
        flow_services.to_quantity("abc")


def test_require_company_id_fails_fast():
    """(실패) 테넌시: companyId가 없으면 TenancyViolation"""
    with pytest.raises(TenancyViolation):
        require_company_id(None)
    with pytest.raises(TenancyViolation):
        require_company_id(0)
    assert require_company_id(3) == 3


# =================================================================================
# 2. 출력 기록 (전달 엔진)
# =================================================================================
async def test_record_output_printing_scenario(
    db_session: AsyncSession, ctx: deps.RequestContext, printing_ledger: flow_schemas.LedgerRead
):
    """(성공) 날염 100 → 전달 70 / 불량 10: 잔여 20, 손실 풀 10, 큐어링 원장 70"""
    # [When]
    result = await _record(db_session, ctx, StageType.PRINTING, printing_ledger.id, "70", "10")

    # [Then] 원장 분할
    assert result.ledger.output_quantity == Decimal("70")
    assert result.ledger.byproduct_quantity == Decimal("10")
    assert result.ledger.pending_quantity == Decimal("20")
    assert result.ledger.status == flow_models.LedgerStatus.IN_PROGRESS

    # [Then] 손실 풀 항목
    assert result.byproduct_pool is not None
    assert result.byproduct_pool.quantity == Decimal("10")
    assert result.byproduct_pool.reason == "Printing rejection"
    assert result.byproduct_pool.source_stage_type == StageType.PRINTING
    assert result.byproduct_pool.source_ledger_id == printing_ledger.id
    assert result.byproduct_pool.status == flow_models.PoolStatus.AVAILABLE

    # [Then] 다음 단계(큐어링) 원장
    next_ledger = result.next_ledger
    assert next_ledger.stage_type == StageType.CURING
    assert next_ledger.input_quantity == Decimal("70")
    assert next_ledger.pending_quantity == Decimal("70")
    assert next_ledger.status == flow_models.LedgerStatus.PENDING
    assert next_ledger.upstream_ref == printing_ledger.id
    assert next_ledger.upstream_stage == StageType.PRINTING
    assert next_ledger.lot_number == printing_ledger.lot_number
    assert next_ledger.party_name == printing_ledger.party_name
    assert next_ledger.quality == "Premium"
    assert result.ledger.downstream_refs == [next_ledger.id]


async def test_record_output_over_forwarding_rejected(
    db_session: AsyncSession, ctx: deps.RequestContext, printing_ledger: flow_schemas.LedgerRead
):
    """(실패) 보존 법칙: 전달 80 + 불량 30 > 투입 100 이면 아무것도 변경되지 않음"""
    # [When / Then]
    with pytest.raises(ConservationViolation):
        await _record(db_session, ctx, StageType.PRINTING, printing_ledger.id, "80", "30")

    # [Then] 원장, 풀, 다음 단계 모두 변경 없음
    ledger = await flow_services.get_ledger(
        db_session, company_id=ctx.company_id, stage_type=StageType.PRINTING, ledger_id=printing_ledger.id
    )
    assert ledger.output_quantity == Decimal("0")
    assert ledger.byproduct_quantity == Decimal("0")
    assert ledger.pending_quantity == Decimal("100")
    assert ledger.status == flow_models.LedgerStatus.PENDING
    assert ledger.version == printing_ledger.version
    assert await flow_services.list_pool_entries(db_session, company_id=ctx.company_id, kind=PoolKind.LOSS) == []
    assert await flow_services.list_ledgers(db_session, company_id=ctx.company_id, stage_type=StageType.CURING) == []


async def test_record_output_negative_quantity_rejected(
    db_session: AsyncSession, ctx: deps.RequestContext, printing_ledger: flow_schemas.LedgerRead
):
    """(실패) 음수 전달량은 거부"""
    with pytest.raises(ConservationViolation):
        await _record(db_session, ctx, StageType.PRINTING, printing_ledger.id, "-1", "0")


async def test_record_output_is_cumulative_and_forwards_only_delta(
    db_session: AsyncSession, ctx: deps.RequestContext, printing_ledger: flow_schemas.LedgerRead
):
    """(성공) 누적 기록: 두 번째 기록은 증가분만 전달/풀 적재"""
    # [Given]
    first = await _record(db_session, ctx, StageType.PRINTING, printing_ledger.id, "70", "10")

    # [When] 누적 합계 90 / 10 으로 다시 기록
    second = await _record(db_session, ctx, StageType.PRINTING, printing_ledger.id, "90", "10")

    # [Then]
    assert second.ledger.pending_quantity == Decimal("0")
    assert second.ledger.status == flow_models.LedgerStatus.COMPLETED
    assert second.byproduct_pool is None  # 부산물 증가분 없음
    assert second.next_ledger.input_quantity == Decimal("20")
    assert second.ledger.downstream_refs == [first.next_ledger.id, second.next_ledger.id]

    # 전달된 합계 == 원장 전달량
    curing = await flow_services.list_ledgers(db_session, company_id=ctx.company_id, stage_type=StageType.CURING)
    assert sum(c.input_quantity for c in curing) == Decimal("90")
    loss = await flow_services.list_pool_entries(db_session, company_id=ctx.company_id, kind=PoolKind.LOSS)
    assert sum(e.quantity for e in loss) == Decimal("10")


async def test_record_output_cannot_decrease(
    db_session: AsyncSession, ctx: deps.RequestContext, printing_ledger: flow_schemas.LedgerRead
):
    """(실패) 누적 기록값은 줄어들 수 없음"""
    await _record(db_session, ctx, StageType.PRINTING, printing_ledger.id, "70", "10")

    with pytest.raises(ConservationViolation) as exc_info:
        await _record(db_session, ctx, StageType.PRINTING, printing_ledger.id, "60", "10")
    assert "cannot decrease" in exc_info.value.message


async def test_record_output_repeated_totals_creates_nothing(
    db_session: AsyncSession, ctx: deps.RequestContext, printing_ledger: flow_schemas.LedgerRead
):
    """(성공) 같은 누적값으로 재호출하면 상태는 같고 새 원장/풀 항목은 생기지 않음"""
    first = await _record(db_session, ctx, StageType.PRINTING, printing_ledger.id, "70", "10")

    again = await _record(db_session, ctx, StageType.PRINTING, printing_ledger.id, "70", "10")

    assert again.ledger.status == first.ledger.status
    assert again.ledger.pending_quantity == first.ledger.pending_quantity
    assert again.byproduct_pool is None
    assert again.next_ledger is None
    curing = await flow_services.list_ledgers(db_session, company_id=ctx.company_id, stage_type=StageType.CURING)
    assert len(curing) == 1


async def test_record_output_shrinkage_goes_to_overflow_pool(db_session: AsyncSession, ctx: deps.RequestContext):
    """(성공) 수세 단계의 수축분은 과잉(overflow) 풀로 적재"""
    washing = await _create_ledger(db_session, ctx, StageType.WASHING, input_quantity="50")

    result = await _record(db_session, ctx, StageType.WASHING, washing.id, "47", "3")

    assert result.byproduct_pool.reason == "Washing shrinkage"
    overflow = await flow_services.list_pool_entries(db_session, company_id=ctx.company_id, kind=PoolKind.OVERFLOW)
    assert [e.quantity for e in overflow] == [Decimal("3")]
    assert await flow_services.list_pool_entries(db_session, company_id=ctx.company_id, kind=PoolKind.LOSS) == []
    assert result.next_ledger.stage_type == StageType.FINISHING


async def test_record_output_packing_is_terminal(db_session: AsyncSession, ctx: deps.RequestContext):
    """(성공) 포장 단계는 다음 단계 원장을 만들지 않음"""
    packing = await _create_ledger(db_session, ctx, StageType.PACKING, input_quantity="40", quality="A")

    result = await _record(db_session, ctx, StageType.PACKING, packing.id, "38", "2")

    assert result.next_ledger is None
    assert result.ledger.status == flow_models.LedgerStatus.COMPLETED
    assert result.byproduct_pool.reason == "Packing rejection"


async def test_record_output_checking_requires_checker_name(db_session: AsyncSession, ctx: deps.RequestContext):
    """(실패) 검사 단계: 검사자 이름 없이 출력 기록 불가"""
    checking = await _create_ledger(db_session, ctx, StageType.CHECKING, input_quantity="30")

    with pytest.raises(InvalidPayload):
        await _record(db_session, ctx, StageType.CHECKING, checking.id, "30", "0")

    # [Then] 검사자 이름을 주면 성공
    result = await _record(
        db_session, ctx, StageType.CHECKING, checking.id, "29", "1", payload={"checker_name": "Ravi"}
    )
    assert result.ledger.payload["checker_name"] == "Ravi"
    assert result.byproduct_pool.reason == "QC rejection"


async def test_create_ledger_rejects_unknown_payload_field(db_session: AsyncSession, ctx: deps.RequestContext):
    """(실패) 단계에 없는 고유 필드는 InvalidPayload"""
    with pytest.raises(InvalidPayload):
        await _create_ledger(db_session, ctx, StageType.PRINTING, payload={"gsm": 120})


async def test_create_ledger_requires_positive_input(db_session: AsyncSession, ctx: deps.RequestContext):
    """(실패) 투입량은 0보다 커야 함"""
    with pytest.raises(ConservationViolation):
        await _create_ledger(db_session, ctx, StageType.PRINTING, input_quantity="0")


async def test_list_wip_returns_only_pending_quantity(db_session: AsyncSession, ctx: deps.RequestContext):
    """(성공) 재공 목록: 잔여량이 남은 원장만"""
    open_ledger = await _create_ledger(db_session, ctx, StageType.PRINTING, lot_number="LOT-A")
    done_ledger = await _create_ledger(db_session, ctx, StageType.PRINTING, lot_number="LOT-B")
    await _record(db_session, ctx, StageType.PRINTING, done_ledger.id, "100", "0")

    wip = await flow_services.list_wip(db_session, company_id=ctx.company_id, stage_type=StageType.PRINTING)

    assert [w.id for w in wip] == [open_ledger.id]


# =================================================================================
# 3. 품질 추적 및 로트 조회
# =================================================================================
async def test_quality_is_traced_through_stages_without_quality(db_session: AsyncSession, ctx: deps.RequestContext):
    """(성공) 품질 추적: 수세(품질 없음)를 거쳐도 가공 원장은 날염 품질을 상속"""
    # [Given] 날염(Premium) → 큐어링 → 수세 → 가공
    printing = await _create_ledger(db_session, ctx, StageType.PRINTING, quality="Premium")
    curing = (await _record(db_session, ctx, StageType.PRINTING, printing.id, "100")).next_ledger
    washing = (await _record(db_session, ctx, StageType.CURING, curing.id, "100")).next_ledger
    assert washing.quality is None

    # [When]
    finishing = (await _record(db_session, ctx, StageType.WASHING, washing.id, "95", "5")).next_ledger

    # [Then]
    assert finishing.stage_type == StageType.FINISHING
    assert finishing.quality == "Premium"


async def test_quality_defaults_when_no_upstream_quality(db_session: AsyncSession, ctx: deps.RequestContext):
    """(성공) 품질 추적: 상위 어디에도 품질이 없으면 기본값"""
    bleaching = await _create_ledger(db_session, ctx, StageType.AFTER_BLEACHING)

    result = await _record(db_session, ctx, StageType.AFTER_BLEACHING, bleaching.id, "98", "2")

    assert result.next_ledger.stage_type == StageType.PRINTING
    assert result.next_ledger.quality == DEFAULT_QUALITY


async def test_resolve_lot_returns_descriptor(
    db_session: AsyncSession, ctx: deps.RequestContext, printing_ledger: flow_schemas.LedgerRead
):
    """(성공) 로트 조회: 거래처/고객/품질/가용 수량 반환"""
    lot = await flow_services.resolve_lot(db_session, company_id=ctx.company_id, lot_number="LOT-001")

    assert lot.party_name == "Sharma Textiles"
    assert lot.customer_id == "CUST-9"
    assert lot.quality == "Premium"
    assert lot.available_quantity == Decimal("100")
    assert lot.source_stage == StageType.PRINTING
    assert lot.ledger_id == printing_ledger.id


async def test_resolve_lot_unknown_returns_none(db_session: AsyncSession, ctx: deps.RequestContext):
    """(성공) 로트 조회: 어디에도 없으면 None (오류 아님)"""
    assert await flow_services.resolve_lot(db_session, company_id=ctx.company_id, lot_number="NOPE") is None


async def test_resolve_lot_prefers_earliest_stage(db_session: AsyncSession, ctx: deps.RequestContext):
    """(성공) 로트 조회: 체인 앞 단계의 원장을 우선 사용"""
    await _create_ledger(db_session, ctx, StageType.FINISHING, lot_number="LOT-X", quality="Late")
    bleaching = await _create_ledger(db_session, ctx, StageType.AFTER_BLEACHING, lot_number="LOT-X")

    lot = await flow_services.resolve_lot(db_session, company_id=ctx.company_id, lot_number="LOT-X")

    assert lot.source_stage == StageType.AFTER_BLEACHING
    assert lot.ledger_id == bleaching.id
    assert lot.quality == DEFAULT_QUALITY


async def test_lot_trail_lists_ledgers_and_pool_entries(
    db_session: AsyncSession, ctx: deps.RequestContext, printing_ledger: flow_schemas.LedgerRead
):
    """(성공) 로트 이력: 체인 순서의 원장과 풀 항목"""
    await _record(db_session, ctx, StageType.PRINTING, printing_ledger.id, "70", "10")

    trail = await flow_services.get_lot_trail(db_session, company_id=ctx.company_id, lot_number="LOT-001")

    assert [ledger.stage_type for ledger in trail.ledgers] == [StageType.PRINTING, StageType.CURING]
    assert len(trail.pool_entries) == 1

    with pytest.raises(NotFoundError):
        await flow_services.get_lot_trail(db_session, company_id=ctx.company_id, lot_number="NOPE")


# =================================================================================
# 4. 부산물 풀 상태 전이
# =================================================================================
async def test_pool_status_transitions(
    db_session: AsyncSession, ctx: deps.RequestContext, printing_ledger: flow_schemas.LedgerRead
):
    """(성공/실패) 풀 상태: available → allocated → used, 종료 상태에서는 전이 불가"""
    result = await _record(db_session, ctx, StageType.PRINTING, printing_ledger.id, "70", "10")
    entry_id = result.byproduct_pool.id

    allocated = await flow_services.update_pool_status(
        db_session, company_id=ctx.company_id, kind=PoolKind.LOSS, entry_id=entry_id,
        new_status=flow_models.PoolStatus.ALLOCATED,
    )
    assert allocated.status == flow_models.PoolStatus.ALLOCATED
    used = await flow_services.update_pool_status(
        db_session, company_id=ctx.company_id, kind=PoolKind.LOSS, entry_id=entry_id,
        new_status=flow_models.PoolStatus.USED,
    )
    assert used.status == flow_models.PoolStatus.USED
    assert used.quantity == Decimal("10")

    with pytest.raises(InvalidTransition):
        await flow_services.update_pool_status(
            db_session, company_id=ctx.company_id, kind=PoolKind.LOSS, entry_id=entry_id,
            new_status=flow_models.PoolStatus.AVAILABLE,
        )


async def test_pool_summary_totals_by_status(
    db_session: AsyncSession, ctx: deps.RequestContext, printing_ledger: flow_schemas.LedgerRead
):
    """(성공) 풀 요약: 상태별 수량 합계"""
    await _record(db_session, ctx, StageType.PRINTING, printing_ledger.id, "70", "10")
    await _record(db_session, ctx, StageType.PRINTING, printing_ledger.id, "70", "15")

    summary = await flow_services.get_pool_summary(db_session, company_id=ctx.company_id, kind=PoolKind.LOSS)

    assert summary.entry_count == 2
    assert summary.total_quantity == Decimal("15")
    assert summary.by_status[flow_models.PoolStatus.AVAILABLE] == Decimal("15")


# =================================================================================
# 5. 부분 전달 실패 및 재처리
# =================================================================================
async def test_partial_forward_failure_and_reconcile(
    db_session: AsyncSession, ctx: deps.RequestContext, printing_ledger: flow_schemas.LedgerRead, monkeypatch
):
    """(실패→성공) 하위 원장 생성이 실패하면 PartialForwardFailure, 재처리로 복구"""
    # [Given] 하위 원장 생성 중 품질 추적이 실패하도록 설정
    async def broken_trace(*args, **kwargs):
        raise RuntimeError("downstream store unavailable")

    monkeypatch.setattr(flow_services, "trace_quality", broken_trace)

    # [When]
    with pytest.raises(PartialForwardFailure) as exc_info:
        await _record(db_session, ctx, StageType.PRINTING, printing_ledger.id, "70", "10")

    # [Then] 원장 변경과 부산물 풀 항목은 이미 커밋됨
    context = exc_info.value.context
    assert context["ledger_id"] == printing_ledger.id
    assert context["stage_type"] == "printing"
    assert len(context["failed_step_ids"]) == 1
    ledger = await flow_services.get_ledger(
        db_session, company_id=ctx.company_id, stage_type=StageType.PRINTING, ledger_id=printing_ledger.id
    )
    assert ledger.output_quantity == Decimal("70")
    assert len(await flow_services.list_pool_entries(db_session, company_id=ctx.company_id, kind=PoolKind.LOSS)) == 1
    assert await flow_services.list_ledgers(db_session, company_id=ctx.company_id, stage_type=StageType.CURING) == []

    failed_steps = await flow_services.list_forwarding_steps(
        db_session, company_id=ctx.company_id, status=flow_models.StepStatus.FAILED
    )
    assert len(failed_steps) == 1
    assert failed_steps[0].kind == flow_models.StepKind.DOWNSTREAM
    assert failed_steps[0].attempts == 1
    assert "downstream store unavailable" in failed_steps[0].last_error

    # [When] 원인 제거 후 재처리
    monkeypatch.undo()
    report = await flow_services.reconcile_forwarding_steps(db_session, company_id=ctx.company_id)

    # [Then]
    assert report.completed == [failed_steps[0].id]
    assert report.failed == []
    curing = await flow_services.list_ledgers(db_session, company_id=ctx.company_id, stage_type=StageType.CURING)
    assert len(curing) == 1
    assert curing[0].input_quantity == Decimal("70")
    assert curing[0].quality == "Premium"

    # [Then] 다시 재처리해도 중복 생성 없음
    again = await flow_services.reconcile_forwarding_steps(db_session, company_id=ctx.company_id)
    assert again.attempted == 0
    assert len(await flow_services.list_ledgers(db_session, company_id=ctx.company_id, stage_type=StageType.CURING)) == 1


async def test_retry_forwarding_step_of_completed_step_is_noop(
    db_session: AsyncSession, ctx: deps.RequestContext, printing_ledger: flow_schemas.LedgerRead
):
    """(성공) 완료된 step 재시도는 아무것도 다시 만들지 않음"""
    await _record(db_session, ctx, StageType.PRINTING, printing_ledger.id, "70", "10")
    steps = await flow_services.list_forwarding_steps(db_session, company_id=ctx.company_id)
    assert {s.status for s in steps} == {flow_models.StepStatus.COMPLETED}

    step = await flow_services.retry_forwarding_step(db_session, company_id=ctx.company_id, step_id=steps[0].id)

    assert step.status == flow_models.StepStatus.COMPLETED
    assert len(await flow_services.list_ledgers(db_session, company_id=ctx.company_id, stage_type=StageType.CURING)) == 1


# =================================================================================
# 6. 감사 / 테넌시
# =================================================================================
async def test_audit_repairs_drifted_pending_quantity(
    db_session: AsyncSession, ctx: deps.RequestContext, printing_ledger: flow_schemas.LedgerRead
):
    """(성공) 감사: 잔여량이 어긋난 원장을 다시 계산해 바로잡음"""
    # [Given] 저장된 잔여량을 임의로 어긋나게 만듦
    crud = flow_crud.stage_ledger[StageType.PRINTING]
    row = await crud.get(db_session, printing_ledger.id)
    await crud.update_versioned(db_session, db_obj=row, values={"pending_quantity": Decimal("5")})

    # [When]
    report = await flow_services.audit_ledgers(db_session, company_id=ctx.company_id)

    # [Then]
    assert report.repaired == [f"printing:{printing_ledger.id}"]
    assert report.violations == []
    ledger = await flow_services.get_ledger(
        db_session, company_id=ctx.company_id, stage_type=StageType.PRINTING, ledger_id=printing_ledger.id
    )
    assert ledger.pending_quantity == Decimal("100")


async def test_concurrent_record_output_serializes_on_version(
    test_engine,
    db_session: AsyncSession,
    ctx: deps.RequestContext,
    printing_ledger: flow_schemas.LedgerRead,
):
    """(실패) 동시 출력 기록: 먼저 커밋된 기록만 반영되고 뒤늦은 기록은 버전 충돌"""
    # [Given] 세션 B가 버전 1의 원장을 들고 있는 상태
    OtherSessionLocal = sessionmaker(bind=test_engine, class_=AsyncSession, expire_on_commit=False)
    async with OtherSessionLocal() as other_session:
        stale_ledger = await flow_crud.stage_ledger[StageType.PRINTING].get_for_company(
            other_session, company_id=ctx.company_id, id=printing_ledger.id
        )
        assert stale_ledger.version == printing_ledger.version

        # [When] 세션 A가 먼저 기록
        await _record(db_session, ctx, StageType.PRINTING, printing_ledger.id, "60")

        # [Then] 세션 B의 기록은 충돌
        with pytest.raises(ConcurrentModificationError):
            await _record(other_session, ctx, StageType.PRINTING, printing_ledger.id, "70")

    # [Then] 원장은 세션 A의 값 그대로, 다음 단계 원장도 하나뿐
    ledger = await flow_services.get_ledger(
        db_session, company_id=ctx.company_id, stage_type=StageType.PRINTING, ledger_id=printing_ledger.id
    )
    assert ledger.output_quantity == Decimal("60")
    assert ledger.pending_quantity == Decimal("40")
    assert ledger.version == printing_ledger.version + 1
    curing = await flow_services.list_ledgers(db_session, company_id=ctx.company_id, stage_type=StageType.CURING)
    assert [c.input_quantity for c in curing] == [Decimal("60")]


async def test_other_company_cannot_see_ledger(
    db_session: AsyncSession,
    ctx: deps.RequestContext,
    other_ctx: deps.RequestContext,
    printing_ledger: flow_schemas.LedgerRead,
):
    """(실패) 테넌시: 다른 회사의 원장은 존재하지 않는 것으로 취급"""
    with pytest.raises(NotFoundError):
        await _record(db_session, other_ctx, StageType.PRINTING, printing_ledger.id, "10")
    assert await flow_services.resolve_lot(db_session, company_id=other_ctx.company_id, lot_number="LOT-001") is None


# =================================================================================
# 7. API 엔드포인트
# =================================================================================
async def test_api_create_and_record_output(client: AsyncClient):
    """(성공) API: 원장 생성 후 출력 기록"""
    # [Given]
    create_res = await client.post(
        "/api/v1/flow/ledgers/printing",
        json={
            "lot_number": "LOT-API",
            "party_name": "Mehta Mills",
            "quality": "Gold",
            "input_quantity": "100",
            "payload": {"printing_type": "rotary", "design_number": "D-42"},
        },
    )
    assert create_res.status_code == 201
    ledger = create_res.json()
    assert ledger["payload"]["printing_type"] == "rotary"

    # [When]
    output_res = await client.post(
        f"/api/v1/flow/ledgers/printing/{ledger['id']}/output",
        json={"forwarded_quantity": "70", "byproduct_quantity": "10"},
    )

    # [Then]
    assert output_res.status_code == 200
    body = output_res.json()
    assert Decimal(body["ledger"]["pending_quantity"]) == Decimal("20")
    assert body["ledger"]["status"] == "in_progress"
    assert Decimal(body["byproduct_pool"]["quantity"]) == Decimal("10")
    assert body["next_ledger"]["stage_type"] == "curing"
    assert body["next_ledger"]["quality"] == "Gold"

    lot_res = await client.get("/api/v1/flow/lots/LOT-API")
    assert lot_res.status_code == 200
    assert lot_res.json()["party_name"] == "Mehta Mills"

    summary_res = await client.get("/api/v1/flow/pools/loss/summary")
    assert summary_res.status_code == 200
    assert Decimal(summary_res.json()["total_quantity"]) == Decimal("10")


async def test_api_over_forwarding_returns_400(client: AsyncClient):
    """(실패) API: 보존 법칙 위반 시 400과 오류 코드"""
    create_res = await client.post(
        "/api/v1/flow/ledgers/printing",
        json={"lot_number": "LOT-400", "party_name": "P", "input_quantity": "100"},
    )
    ledger_id = create_res.json()["id"]

    response = await client.post(
        f"/api/v1/flow/ledgers/printing/{ledger_id}/output",
        json={"forwarded_quantity": "80", "byproduct_quantity": "30"},
    )

    assert response.status_code == 400
    assert response.json()["error_code"] == "conservation_violation"


async def test_api_unknown_lot_returns_null(client: AsyncClient):
    """(성공) API: 알 수 없는 로트는 null"""
    response = await client.get("/api/v1/flow/lots/UNKNOWN")
    assert response.status_code == 200
    assert response.json() is None


async def test_api_other_company_gets_404(client: AsyncClient, other_client: AsyncClient):
    """(실패) API: 다른 회사 헤더로는 원장을 조회할 수 없음"""
    create_res = await client.post(
        "/api/v1/flow/ledgers/washing",
        json={"lot_number": "LOT-T", "party_name": "P", "input_quantity": "10"},
    )
    ledger_id = create_res.json()["id"]

    response = await other_client.get(f"/api/v1/flow/ledgers/washing/{ledger_id}")

    assert response.status_code == 404
    assert response.json()["error_code"] == "not_found"


async def test_api_invalid_pool_transition_returns_400(client: AsyncClient):
    """(실패) API: 종료된 풀 항목의 상태 변경은 400"""
    create_res = await client.post(
        "/api/v1/flow/ledgers/curing",
        json={"lot_number": "LOT-P", "party_name": "P", "input_quantity": "10"},
    )
    ledger_id = create_res.json()["id"]
    output_res = await client.post(
        f"/api/v1/flow/ledgers/curing/{ledger_id}/output",
        json={"forwarded_quantity": "8", "byproduct_quantity": "2"},
    )
    entry_id = output_res.json()["byproduct_pool"]["id"]

    disposed = await client.patch(f"/api/v1/flow/pools/loss/{entry_id}/status", json={"status": "disposed"})
    assert disposed.status_code == 200
    assert disposed.json()["status"] == "disposed"

    response = await client.patch(f"/api/v1/flow/pools/loss/{entry_id}/status", json={"status": "available"})
    assert response.status_code == 400
    assert response.json()["error_code"] == "invalid_transition"
