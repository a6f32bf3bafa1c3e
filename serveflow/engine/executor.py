"""
Step execution coordinator.

Every step the route function requests goes through ``AutoExecutor.add_step``.
Requests issued in the same event loop turn (typically through
``asyncio.gather`` or ``context.parallel``) are collected into one batch:

- a batch of one step is resolved by ``run_single``
- a larger batch is a parallel group, resolved by ``run_parallel``

Resolving a step either replays its recorded output from the history or
publishes a new step to the queue and raises ``WorkflowAbort``, which ends
the invocation.
"""

from __future__ import annotations

import asyncio
import json
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from serveflow.constants import NO_CONCURRENCY
from serveflow.core.exceptions import WorkflowAbort, WorkflowError, WorkflowProtocolError
from serveflow.core.steps import BaseLazyStep, CallStep, Step
from serveflow.engine.requests import get_headers
from serveflow.observability.logging import log_workflow_event, step_logging_context

if TYPE_CHECKING:
    from serveflow.context.base import WorkflowContext


class ParallelCallState(str, Enum):
    """
    Where a parallel group stands in its publish/resolve lifecycle.

    - FIRST: nothing recorded yet, plan steps must be published
    - PARTIAL: a plan step arrived, its member must be executed
    - DISCARD: a result arrived that needs no action from this invocation
    - LAST: all results are recorded, the group can be returned
    """

    FIRST = "first"
    PARTIAL = "partial"
    DISCARD = "discard"
    LAST = "last"


class _StepBatch:
    """Steps requested in the same event loop turn."""

    def __init__(self) -> None:
        self.lazy_steps: List[BaseLazyStep] = []
        self.resolution: Optional[asyncio.Future] = None


def validate_step(lazy_step: BaseLazyStep, step_from_request: Step) -> None:
    """
    Check that a recorded step matches the step requested at its position.

    Raises:
        WorkflowProtocolError: On a name or type mismatch
    """
    if lazy_step.step_name != step_from_request.step_name:
        raise WorkflowProtocolError(
            f"Incompatible step name. Expected '{lazy_step.step_name}',"
            f" got '{step_from_request.step_name}' from the request"
        )
    if lazy_step.step_type != step_from_request.step_type:
        raise WorkflowProtocolError(
            f"Incompatible step type. Expected '{lazy_step.step_type.value}',"
            f" got '{step_from_request.step_type.value}' from the request"
        )


def validate_parallel_steps(lazy_steps: List[BaseLazyStep], steps_from_request: List[Step]) -> None:
    """Validate a whole parallel group, reporting both sides on mismatch."""
    try:
        for lazy_step, step_from_request in zip(lazy_steps, steps_from_request):
            validate_step(lazy_step, step_from_request)
    except WorkflowProtocolError as e:
        compact = {"separators": (",", ":")}
        request_names = json.dumps([s.step_name for s in steps_from_request], **compact)
        request_types = json.dumps([s.step_type.value for s in steps_from_request], **compact)
        expected_names = json.dumps([s.step_name for s in lazy_steps], **compact)
        expected_types = json.dumps([s.step_type.value for s in lazy_steps], **compact)
        raise WorkflowProtocolError(
            f"Incompatible steps detected in parallel execution: {e}"
            f"\n  > Step Names from the request: {request_names}"
            f"\n    Step Types from the request: {request_types}"
            f"\n  > Step Names expected: {expected_names}"
            f"\n    Step Types expected: {expected_types}"
        ) from e


def sort_steps(steps: List[Step]) -> List[Step]:
    """Order steps by position: plan steps by their target, others by id."""
    return sorted(steps, key=lambda step: step.sort_key)


class AutoExecutor:
    """
    Resolves the steps of one invocation against the recorded history.

    Attributes:
        step_count: Steps requested so far in this invocation
        plan_step_count: Plan steps belonging to parallel groups already returned
        non_plan_step_count: Recorded steps that are not plan steps
    """

    def __init__(self, context: "WorkflowContext", steps: List[Step]) -> None:
        self.context = context
        self.steps = steps
        self.step_count = 0
        self.plan_step_count = 0
        self.non_plan_step_count = len([step for step in steps if not step.is_plan_step])
        self.executing_step: Optional[str] = None

        self._active_batch: Optional[_StepBatch] = None

    def _log(self, event_type: str, message: str, **details: Any) -> None:
        log_workflow_event(
            event_type,
            message,
            run_id=self.context.workflow_run_id,
            verbose=self.context.verbose,
            **details,
        )

    async def add_step(self, lazy_step: BaseLazyStep) -> Any:
        """
        Request a step and wait for its output.

        Raises:
            WorkflowError: If called from inside a running step
            WorkflowAbort: If the step was published and the invocation must end
        """
        if self.executing_step:
            raise WorkflowError(
                "A step can not be run inside another step."
                f" Tried to run '{lazy_step.step_name}' inside '{self.executing_step}'"
            )

        self.step_count += 1

        batch = self._active_batch
        if batch is None:
            batch = self._active_batch = _StepBatch()
        batch.lazy_steps.append(lazy_step)
        index = len(batch.lazy_steps) - 1

        # Let sibling requests of the same gather join the batch
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        if batch.resolution is None:
            self._active_batch = None
            batch.resolution = asyncio.ensure_future(self._run_batch(batch.lazy_steps))

        result = await batch.resolution

        if len(batch.lazy_steps) == 1:
            return result
        if not isinstance(result, list) or len(result) != len(batch.lazy_steps):
            raise WorkflowError(
                f"unexpected parallel call result: '{result}'."
                f" Expected {len(batch.lazy_steps)} many items"
            )
        return result[index]

    async def _run_batch(self, lazy_steps: List[BaseLazyStep]) -> Any:
        if len(lazy_steps) == 1:
            return await self.run_single(lazy_steps[0])
        return await self.run_parallel(lazy_steps)

    async def _execute(self, lazy_step: BaseLazyStep, step_id: int, concurrent: int) -> Step:
        self.executing_step = lazy_step.step_name
        try:
            with step_logging_context(self.context.workflow_run_id, step_id, lazy_step.step_name):
                return await lazy_step.get_result_step(step_id, concurrent)
        finally:
            self.executing_step = None

    async def run_single(self, lazy_step: BaseLazyStep) -> Any:
        """Replay a single step from history or execute and publish it."""
        if self.step_count < self.non_plan_step_count:
            step = self.steps[self.step_count + self.plan_step_count]
            validate_step(lazy_step, step)
            self._log(
                "RUN_SINGLE",
                f"Replaying step '{step.step_name}'",
                step_id=step.step_id,
                from_request=True,
            )
            return getattr(step, "out", None)

        result_step = await self._execute(lazy_step, self.step_count, NO_CONCURRENCY)
        self._log(
            "RUN_SINGLE",
            f"Executed step '{result_step.step_name}'",
            step_id=result_step.step_id,
            from_request=False,
        )
        await self.submit_steps([result_step])
        return getattr(result_step, "out", None)

    async def run_parallel(self, lazy_steps: List[BaseLazyStep]) -> List[Any]:
        """
        Resolve a parallel group.

        Each member is executed in an invocation of its own: the first
        invocation publishes one plan step per member, each plan step comes
        back and gets its member executed, and once every result is
        recorded the group returns all outputs at once.
        """
        parallel_count = len(lazy_steps)
        initial_step_count = self.step_count - (parallel_count - 1)
        state = self.get_parallel_call_state(parallel_count, initial_step_count)
        sorted_steps = sort_steps(self.steps)

        planned_index = initial_step_count + self.plan_step_count
        planned = sorted_steps[planned_index].concurrent if planned_index < len(sorted_steps) else None
        if state != ParallelCallState.FIRST and planned != parallel_count:
            raise WorkflowProtocolError(
                "Incompatible number of parallel steps when call state was"
                f" '{state.value}'. Expected {parallel_count}, got {planned} from the request."
            )

        self._log(
            "RUN_PARALLEL",
            f"Running {parallel_count} steps in parallel, state '{state.value}'",
            initial_step_count=initial_step_count,
            step_names=[step.step_name for step in lazy_steps],
        )

        if state == ParallelCallState.FIRST:
            plan_steps = [
                lazy_step.get_plan_step(parallel_count, initial_step_count + i)
                for i, lazy_step in enumerate(lazy_steps)
            ]
            await self.submit_steps(plan_steps)

        elif state == ParallelCallState.PARTIAL:
            plan_step = self.steps[-1]
            if not plan_step.is_plan_step:
                raise WorkflowProtocolError(
                    "There must be a last step and it should have target_step larger than 0."
                    f" Received: {plan_step.to_json()}"
                )
            step_index = plan_step.target_step - initial_step_count
            if not 0 <= step_index < parallel_count:
                raise WorkflowProtocolError(
                    f"Plan step targets step {plan_step.target_step}, which is not part of"
                    f" the parallel group starting at {initial_step_count}"
                )
            lazy_step = lazy_steps[step_index]
            validate_step(lazy_step, plan_step)
            result_step = await self._execute(lazy_step, plan_step.target_step, parallel_count)
            await self.submit_steps([result_step])

        elif state == ParallelCallState.DISCARD:
            raise WorkflowAbort("discarded parallel")

        else:
            result_steps: List[Step] = []
            seen_ids = set()
            for step in sorted_steps:
                if step.is_plan_step or step.step_id < initial_step_count or step.step_id in seen_ids:
                    continue
                seen_ids.add(step.step_id)
                result_steps.append(step)
            result_steps = result_steps[:parallel_count]
            validate_parallel_steps(lazy_steps, result_steps)
            self.plan_step_count += parallel_count
            return [getattr(step, "out", None) for step in result_steps]

        # submit_steps always raises, this is not reached
        raise WorkflowError(f"Parallel group in state '{state.value}' was not resolved")

    def get_parallel_call_state(
        self, parallel_step_count: int, initial_step_count: int
    ) -> ParallelCallState:
        """
        Classify a parallel group from the history recorded for it.

        Args:
            parallel_step_count: Size of the group
            initial_step_count: Id the first member of the group gets
        """
        remaining = [step for step in self.steps if step.sort_key >= initial_step_count]

        if not remaining:
            return ParallelCallState.FIRST
        if len(remaining) >= 2 * parallel_step_count:
            return ParallelCallState.LAST
        if remaining[-1].is_plan_step:
            return ParallelCallState.PARTIAL
        return ParallelCallState.DISCARD

    def _build_message(self, step: Step) -> Dict[str, Any]:
        context = self.context
        headers = get_headers(
            "false",
            context.workflow_run_id,
            context.url,
            context.headers,
            step,
            context.failure_url,
        )

        if isinstance(step, CallStep) and step.call_url:
            return {
                "destination": step.call_url,
                "headers": headers,
                "method": step.call_method,
                "body": step.call_body,
            }

        will_wait = step.concurrent == NO_CONCURRENCY or step.step_id == 0
        return {
            "destination": context.url,
            "headers": headers,
            "method": "POST",
            "body": step.to_dict(),
            "delay": getattr(step, "sleep_for", None) if will_wait else None,
            "not_before": getattr(step, "sleep_until", None) if will_wait else None,
        }

    async def submit_steps(self, steps: List[Step]) -> None:
        """
        Publish steps to the queue and end the invocation.

        Raises:
            WorkflowError: If no steps are given
            WorkflowAbort: Always, once the steps are published
        """
        if not steps:
            raise WorkflowError(
                "Unable to submit steps to the queue. Provided list is empty."
                f" Current step: {self.step_count}"
            )

        self._log(
            "SUBMIT_STEP",
            f"Submitting {len(steps)} step(s)",
            step_ids=[step.step_id for step in steps],
            step_names=[step.step_name for step in steps],
        )
        await self.context.client.batch_json([self._build_message(step) for step in steps])

        raise WorkflowAbort(steps[0].step_name, steps[0])
