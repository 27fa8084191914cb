"""
Automatic Canary Ramp

Drives a rollout through the canary stages (1% -> 5% -> 10% -> 25% -> 50% ->
100% by default), waiting at each stage and validating before moving on.
A failed validation rolls the rollout back.
"""
from typing import Any, Awaitable, Callable, Dict, List, Optional
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime
import asyncio

from config import settings
from logger import get_logger

from .exceptions import InvalidState, InvalidTransition
from .rollout import RolloutController, RolloutStatus

logger = get_logger(__name__)

ValidationFunc = Callable[[int], Awaitable[bool]]


class RampPhase(Enum):
    """Phases of an automatic ramp"""
    ROLLING_OUT = "rolling_out"
    MONITORING = "monitoring"
    VALIDATING = "validating"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


@dataclass
class RampResult:
    """Progress of an automatic ramp"""
    candidate_version: str
    baseline_version: str
    phase: RampPhase
    current_percentage: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    rollout_id: Optional[str] = None
    stages_completed: List[int] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)


class AutoRamp:
    """
    Steps a rollout through canary stages with validation

    Example:
        ramp = AutoRamp(controller, stage_wait_seconds=300)

        async def validate(percentage):
            return error_rate("v2") < 0.01

        result = await ramp.run("v2", "v1", validation_func=validate)
        print(result.phase, result.current_percentage)
    """

    def __init__(
        self,
        controller: RolloutController,
        stages: Optional[List[int]] = None,
        stage_wait_seconds: Optional[float] = None
    ):
        self.controller = controller
        self.stages = sorted(stages or controller.canary_stages)
        if self.stages[-1] != 100:
            self.stages.append(100)
        self.stage_wait_seconds = (
            stage_wait_seconds if stage_wait_seconds is not None
            else settings.ramp_stage_wait_seconds
        )
        self._current: Optional[RampResult] = None

    @property
    def current(self) -> Optional[RampResult]:
        return self._current

    async def run(
        self,
        candidate: str,
        baseline: str,
        validation_func: Optional[ValidationFunc] = None
    ) -> RampResult:
        """
        Start a rollout and ramp it to 100%

        Raises:
            InvalidInput, InvalidState: The rollout could not be started
        """
        first_stage = self.stages[0]
        state = self.controller.start_rollout(candidate, baseline, first_stage)
        rollout_id = state.rollout_id

        result = RampResult(
            candidate_version=candidate,
            baseline_version=baseline,
            phase=RampPhase.ROLLING_OUT,
            current_percentage=first_stage,
            started_at=datetime.utcnow(),
            rollout_id=rollout_id,
        )
        self._current = result

        logger.info(f"Auto ramp of {candidate} started at {first_stage}% (stages: {self.stages})")

        for stage in self.stages:
            try:
                if stage != first_stage:
                    logger.info(f"Auto ramp {candidate}: advancing to {stage}%")
                    self.controller.set_percentage(stage, rollout_id=rollout_id)
                result.current_percentage = stage
                result.metrics[f"stage_{stage}"] = datetime.utcnow().isoformat()

                if stage == 100:
                    break

                result.phase = RampPhase.MONITORING
                await asyncio.sleep(self.stage_wait_seconds)
                self._ensure_owned(rollout_id)

                if validation_func:
                    result.phase = RampPhase.VALIDATING
                    passed = await validation_func(stage)
                    self._ensure_owned(rollout_id)
                    if not passed:
                        self._roll_back(result, f"Validation failed at {stage}%")
                        return result

                result.stages_completed.append(stage)
                result.phase = RampPhase.ROLLING_OUT

            except (InvalidTransition, InvalidState) as e:
                # Operator rolled back, promoted or replaced the rollout underneath us
                status = self._status_of(rollout_id)
                result.phase = (
                    RampPhase.ROLLED_BACK if status == RolloutStatus.ROLLED_BACK
                    else RampPhase.FAILED
                )
                result.error = str(e)
                result.completed_at = datetime.utcnow()
                logger.warning(f"Auto ramp of {candidate} interrupted: {e}")
                return result

            except Exception as e:
                logger.error(f"Auto ramp of {candidate} failed at {stage}%: {e}")
                self._roll_back(result, f"Ramp error at {stage}%: {e}")
                return result

        result.stages_completed.append(100)
        result.phase = RampPhase.COMPLETED
        result.completed_at = datetime.utcnow()

        duration = (result.completed_at - result.started_at).total_seconds()
        logger.info(f"Auto ramp of {candidate} completed in {duration:.0f} seconds")
        return result

    def _ensure_owned(self, rollout_id: str):
        current = self.controller.status()
        if current.rollout_id != rollout_id:
            raise InvalidState(f"Rollout {rollout_id} was replaced by {current.rollout_id}")

    def _status_of(self, rollout_id: str) -> Optional[RolloutStatus]:
        current = self.controller.status()
        if current.rollout_id == rollout_id:
            return current.status
        for state in reversed(self.controller.history()):
            if state.rollout_id == rollout_id:
                return state.status
        return None

    def _roll_back(self, result: RampResult, error: str):
        result.phase = RampPhase.FAILED
        result.error = error
        logger.error(error)

        try:
            self.controller.rollback(reason=error, rollout_id=result.rollout_id)
            result.phase = RampPhase.ROLLED_BACK
            result.current_percentage = 0
        except (InvalidTransition, InvalidState) as e:
            logger.warning(f"Auto ramp could not roll back: {e}")
            if self._status_of(result.rollout_id) == RolloutStatus.ROLLED_BACK:
                result.phase = RampPhase.ROLLED_BACK

        result.completed_at = datetime.utcnow()
