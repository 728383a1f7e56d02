"""Stage-driven virtual user scheduler."""

import asyncio
import math
import random
from typing import Dict, List, Optional

from loadgen.executor import VirtualUser
from loadgen.http import HttpClient
from loadgen.log import get_logger
from loadgen.metrics import MetricRecorder
from loadgen.models import RunConfig, Stage
from loadgen.thresholds import evaluate

logger = get_logger(__name__)

_EPSILON = 1e-9


class StagePlan:
    """Linear ramp arithmetic over an ordered list of stages.

    Within a stage of duration D ramping from C0 to C1, the target at offset
    t is ``ceil(C0 + (C1 - C0) * t / D)``, so the pool is never smaller than
    the ramp line and never leaves the [min, max] of the two targets.
    """

    def __init__(self, stages: List[Stage], start_vus: int = 0):
        if not stages:
            raise ValueError("at least one stage is required")
        for stage in stages:
            if not math.isfinite(stage.duration) or stage.duration <= 0:
                raise ValueError(f"stage duration must be > 0, got {stage.duration}")
            if stage.target < 0:
                raise ValueError(f"stage target must be >= 0, got {stage.target}")
        self.stages = list(stages)
        self.start_vus = start_vus
        self.total_duration = sum(s.duration for s in stages)

    @property
    def max_target(self) -> int:
        return max([self.start_vus] + [s.target for s in self.stages])

    def stage_index_at(self, t: float) -> int:
        """Index of the stage active at offset ``t``; ``len(stages)`` once finished."""
        offset = 0.0
        for i, stage in enumerate(self.stages):
            offset += stage.duration
            if t < offset:
                return i
        return len(self.stages)

    def target_at(self, t: float) -> int:
        if t <= 0:
            return self.start_vus
        previous = self.start_vus
        offset = 0.0
        for stage in self.stages:
            if t < offset + stage.duration:
                progress = (t - offset) / stage.duration
                value = previous + (stage.target - previous) * progress
                low, high = sorted((previous, stage.target))
                return min(max(math.ceil(value - _EPSILON), low), high)
            offset += stage.duration
            previous = stage.target
        return self.stages[-1].target


class Scheduler:
    """Keeps the number of running virtual users on the stage ramp.

    Every tick the pool is grown by spawning users or shrunk by signalling
    the most recently started ones. After the last stage every user is
    signalled; stragglers still busy after ``graceful_stop`` are cancelled.
    """

    def __init__(
        self,
        config: RunConfig,
        client: HttpClient,
        recorder: MetricRecorder,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.client = client
        self.recorder = recorder
        self.rng = rng or random.Random()
        self.plan = StagePlan(config.stages, config.start_vus)
        self.fatal_errors = 0
        self.aborted = False
        self.spawned = 0
        self.max_active = 0
        self._active: Dict[int, asyncio.Task] = {}
        self._retiring: Dict[int, asyncio.Task] = {}
        self._users: Dict[int, VirtualUser] = {}
        self._abort_thresholds = [t for t in config.thresholds if t.abort_on_fail]

    @property
    def active_count(self) -> int:
        return len(self._active)

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        start = loop.time()
        total = self.plan.total_duration
        stage_index = -1
        next_abort_check = self.config.abort_check_interval

        logger.info(
            "run_started",
            name=self.config.name,
            stages=len(self.plan.stages),
            duration=total,
            max_vus=self.plan.max_target,
        )
        while True:
            elapsed = loop.time() - start
            if elapsed >= total:
                break

            index = self.plan.stage_index_at(elapsed)
            if index != stage_index:
                stage_index = index
                stage = self.plan.stages[index]
                logger.info("stage_started", stage=index, duration=stage.duration, target=stage.target)

            self._scale_to(self.plan.target_at(elapsed))
            self._sample()

            if self._abort_thresholds and elapsed >= next_abort_check:
                next_abort_check += self.config.abort_check_interval
                if self._thresholds_crossed():
                    self.aborted = True
                    logger.warning("run_aborted", elapsed=round(elapsed, 3))
                    break

            await asyncio.sleep(min(self.config.tick, total - elapsed))

        await self._shutdown()

    def _scale_to(self, target: int) -> None:
        while len(self._active) < target:
            self._spawn()
        while len(self._active) > target:
            vu_id = next(reversed(list(self._active)))
            self._retire(vu_id)

    def _spawn(self) -> None:
        self.spawned += 1
        vu = VirtualUser(
            vu_id=self.spawned,
            config=self.config,
            client=self.client,
            recorder=self.recorder,
            rng=random.Random(self.rng.random()),
        )
        self._users[vu.vu_id] = vu
        self._active[vu.vu_id] = asyncio.create_task(self._drive(vu), name=f"vu-{vu.vu_id}")

    def _retire(self, vu_id: int) -> None:
        task = self._active.pop(vu_id)
        self._users[vu_id].stop()
        if not task.done():
            self._retiring[vu_id] = task

    async def _drive(self, vu: VirtualUser) -> None:
        try:
            await vu.run()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.fatal_errors += 1
            logger.error("virtual_user_crashed", vu=vu.vu_id, iterations=vu.iterations, error=repr(exc))
        finally:
            self._active.pop(vu.vu_id, None)
            self._retiring.pop(vu.vu_id, None)
            self._users.pop(vu.vu_id, None)

    def _sample(self) -> None:
        active = len(self._active)
        self.max_active = max(self.max_active, active)
        self.recorder.record("vus", active)
        self.recorder.record("vus_max", self.max_active)

    def _thresholds_crossed(self) -> bool:
        report = evaluate(self._abort_thresholds, self.recorder)
        for result in report.failed:
            logger.warning(
                "threshold_crossed",
                metric=result.threshold.selector,
                expression=result.threshold.expression,
                value=result.value,
            )
        return not report.passed

    async def _shutdown(self) -> None:
        for vu_id in list(self._active):
            self._retire(vu_id)
        self._sample()

        pending = list(self._retiring.values())
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=self.config.graceful_stop)
        if still_running:
            logger.warning("graceful_stop_expired", cancelled=len(still_running))
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)
