"""Pipeline, stage and automation schemas."""
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class StageOutcome(str, Enum):
    WON = "won"
    LOST = "lost"
    COMPLETED = "completed"


class StageConfig(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    order: int = Field(ge=0)
    color: Optional[str] = None
    probability: Optional[float] = Field(default=None, ge=0, le=100)
    outcome: Optional[StageOutcome] = None
    automations: List[Dict[str, Any]] = Field(default_factory=list)


class PipelineCreate(BaseModel):
    object_type: str
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    stages: List[StageConfig] = Field(min_length=1)
    is_default: bool = False
    allow_skip_stages: bool = True

    @model_validator(mode="after")
    def _unique_stage_ids(self):
        ids = [s.id for s in self.stages]
        if len(ids) != len(set(ids)):
            raise ValueError("stage ids must be unique within a pipeline")
        return self


class StageMove(BaseModel):
    amount: Optional[float] = Field(default=None, ge=0)
    probability: Optional[float] = Field(default=None, ge=0, le=100)
    expected_close_date: Optional[date] = None
    notes: Optional[str] = None


def ordered_stages(stages: List[dict]) -> List[dict]:
    return sorted(stages, key=lambda s: s.get("order", 0))


def find_stage(stages: List[dict], stage_id: str) -> Optional[dict]:
    for stage in stages:
        if stage.get("id") == stage_id:
            return stage
    return None


def is_adjacent(stages: List[dict], from_stage_id: str, to_stage_id: str) -> bool:
    """True when the two stages sit next to each other in stage order."""
    ids = [s["id"] for s in ordered_stages(stages)]
    try:
        return abs(ids.index(from_stage_id) - ids.index(to_stage_id)) == 1
    except ValueError:
        return False


class TriggerType(str, Enum):
    ENTER_STAGE = "enter_stage"
    EXIT_STAGE = "exit_stage"
    TIME_IN_STAGE = "time_in_stage"


class ActionType(str, Enum):
    CREATE_TASK = "create_task"
    SEND_EMAIL = "send_email"
    UPDATE_PROPERTY = "update_property"
    NOTIFY = "notify"
    WEBHOOK = "webhook"


class AutomationCreate(BaseModel):
    trigger_type: TriggerType
    trigger_stage_id: str
    trigger_conditions: Dict[str, Any] = Field(default_factory=dict)
    action_type: ActionType
    action_config: Dict[str, Any] = Field(default_factory=dict)
    run_once: bool = False
    delay: int = Field(default=0, ge=0, description="Minutes")

    @model_validator(mode="after")
    def _time_trigger_needs_delay(self):
        if self.trigger_type == TriggerType.TIME_IN_STAGE and self.delay <= 0:
            raise ValueError("time_in_stage automations need a positive delay")
        return self
