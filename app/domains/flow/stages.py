# app/domains/flow/stages.py

"""
공정 단계 체인의 정적 정의.

각 단계는 다음 단계, 부산물이 쌓이는 풀의 종류, 부산물 기본 사유,
그리고 품질(quality) 속성을 직접 보유하는지 여부를 가집니다.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

DEFAULT_QUALITY = "Standard"


class StageType(str, Enum):
    AFTER_BLEACHING = "after_bleaching"
    PRINTING = "printing"
    CURING = "curing"
    WASHING = "washing"
    FINISHING = "finishing"
    FELTING = "felting"
    CHECKING = "checking"
    PACKING = "packing"


class PoolKind(str, Enum):
    LOSS = "loss"          # 불량/폐기
    OVERFLOW = "overflow"  # 수축/과잉 (longation)


@dataclass(frozen=True)
class StageDefinition:
    stage_type: StageType
    next_stage: Optional[StageType]
    pool_kind: PoolKind
    default_reason: str
    carries_quality: bool


# 체인 순서가 곧 resolve_lot의 탐색 우선순위입니다 (앞 단계 우선).
STAGE_CHAIN: List[StageDefinition] = [
    StageDefinition(StageType.AFTER_BLEACHING, StageType.PRINTING, PoolKind.LOSS, "Bleaching loss", False),
    StageDefinition(StageType.PRINTING, StageType.CURING, PoolKind.LOSS, "Printing rejection", True),
    StageDefinition(StageType.CURING, StageType.WASHING, PoolKind.LOSS, "Curing rejection", True),
    StageDefinition(StageType.WASHING, StageType.FINISHING, PoolKind.OVERFLOW, "Washing shrinkage", False),
    StageDefinition(StageType.FINISHING, StageType.FELTING, PoolKind.OVERFLOW, "Finishing shrinkage", True),
    StageDefinition(StageType.FELTING, StageType.CHECKING, PoolKind.OVERFLOW, "Felting shrinkage", False),
    StageDefinition(StageType.CHECKING, StageType.PACKING, PoolKind.LOSS, "QC rejection", False),
    StageDefinition(StageType.PACKING, None, PoolKind.LOSS, "Packing rejection", True),
]

STAGES: Dict[StageType, StageDefinition] = {d.stage_type: d for d in STAGE_CHAIN}


def get_stage(stage_type: StageType) -> StageDefinition:
    return STAGES[StageType(stage_type)]
