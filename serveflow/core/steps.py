"""
Step model and lazy step builders.

A step exists in two wire forms:

- plan step: announced ahead of a parallel group, ``step_id`` is 0 and
  ``target_step`` names the id the result will get. No ``out``.
- result step: carries the real id and the output (or the sleep/call
  scheduling fields).

Steps are serialized as JSON objects with camelCase keys. Fields left as
``None`` are omitted from the wire form.
"""

from __future__ import annotations

import inspect
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, Optional, Type

from serveflow.constants import NO_CONCURRENCY
from serveflow.core.exceptions import WorkflowProtocolError


class StepType(str, Enum):
    """Kinds of steps a route function can request."""

    INITIAL = "Initial"
    RUN = "Run"
    SLEEP_FOR = "SleepFor"
    SLEEP_UNTIL = "SleepUntil"
    CALL = "Call"


# Python attribute -> wire key, in wire order
_WIRE_KEYS: Dict[str, str] = {
    "step_id": "stepId",
    "step_name": "stepName",
    "step_type": "stepType",
    "out": "out",
    "sleep_for": "sleepFor",
    "sleep_until": "sleepUntil",
    "concurrent": "concurrent",
    "target_step": "targetStep",
    "call_url": "callUrl",
    "call_method": "callMethod",
    "call_body": "callBody",
    "call_headers": "callHeaders",
}
_ATTRIBUTES = {wire: attr for attr, wire in _WIRE_KEYS.items()}


@dataclass
class Step:
    """
    Base class of all step variants.

    Attributes:
        step_id: Position of the step in the run, 0 for plan steps
        step_name: Name given by the route function
        concurrent: Size of the parallel group the step belongs to
        target_step: Id the result will get (plan steps only)
    """

    step_type: ClassVar[StepType]

    step_id: int
    step_name: str
    concurrent: int = NO_CONCURRENCY
    target_step: Optional[int] = None

    @property
    def is_plan_step(self) -> bool:
        return self.step_id == 0 and bool(self.target_step)

    @property
    def sort_key(self) -> int:
        """Position used to order history: the target for plan steps, else the id."""
        return self.target_step or self.step_id

    def to_dict(self) -> Dict[str, Any]:
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values["step_type"] = self.step_type.value

        data: Dict[str, Any] = {}
        for attr, wire_key in _WIRE_KEYS.items():
            value = values.get(attr)
            if value is not None:
                data[wire_key] = value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Step":
        """
        Build the matching step variant from its wire form.

        Raises:
            WorkflowProtocolError: If the object is not a valid step
        """
        if not isinstance(data, dict):
            raise WorkflowProtocolError(f"Step must be a JSON object, got: {data!r}")

        raw_type = data.get("stepType")
        try:
            step_type = StepType(raw_type)
        except ValueError:
            raise WorkflowProtocolError(f"Unknown step type: {raw_type!r}") from None

        if "stepId" not in data or "stepName" not in data:
            raise WorkflowProtocolError(f"Step is missing stepId or stepName: {data!r}")

        step_class = STEP_CLASSES[step_type]
        allowed = {f.name for f in fields(step_class)}
        kwargs = {}
        for wire_key, value in data.items():
            attr = _ATTRIBUTES.get(wire_key)
            if attr is not None and attr in allowed:
                kwargs[attr] = value

        try:
            return step_class(**kwargs)
        except (TypeError, ValueError) as e:
            raise WorkflowProtocolError(f"Invalid {step_type.value} step: {e}") from e


@dataclass
class InitialStep(Step):
    """Synthetic first step holding the raw initial payload."""

    step_type: ClassVar[StepType] = StepType.INITIAL

    out: Any = None


@dataclass
class RunStep(Step):
    step_type: ClassVar[StepType] = StepType.RUN

    out: Any = None


@dataclass
class SleepForStep(Step):
    step_type: ClassVar[StepType] = StepType.SLEEP_FOR

    sleep_for: Optional[int] = None
    out: Any = None


@dataclass
class SleepUntilStep(Step):
    step_type: ClassVar[StepType] = StepType.SLEEP_UNTIL

    sleep_until: Optional[int] = None
    out: Any = None


@dataclass
class CallStep(Step):
    """
    Third-party call step.

    The request form carries the call fields and is published to
    ``call_url``. The result form carries only ``out``, built from the
    callback the queue service delivers once the call has been made.
    """

    step_type: ClassVar[StepType] = StepType.CALL

    out: Any = None
    call_url: Optional[str] = None
    call_method: Optional[str] = None
    call_body: Any = None
    call_headers: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.call_url is not None and self.out is not None:
            raise ValueError("a call step carries either call fields or out, not both")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if not self.call_url:
            data.pop("callHeaders", None)
        return data


STEP_CLASSES: Dict[StepType, Type[Step]] = {
    StepType.INITIAL: InitialStep,
    StepType.RUN: RunStep,
    StepType.SLEEP_FOR: SleepForStep,
    StepType.SLEEP_UNTIL: SleepUntilStep,
    StepType.CALL: CallStep,
}


# =========================================================================
# Lazy step builders
# =========================================================================


class BaseLazyStep(ABC):
    """
    A step requested by the route function but not yet resolved.

    The executor decides, from the step history, whether the step is replayed,
    announced as part of a parallel group (plan step) or executed (result step).
    """

    step_type: ClassVar[StepType]

    def __init__(self, step_name: str) -> None:
        if not step_name:
            raise ValueError("A step name is required")
        self.step_name = step_name

    @abstractmethod
    def get_plan_step(self, concurrent: int, target_step: int) -> Step:
        """Step announcing this one as member of a parallel group."""
        ...

    @abstractmethod
    async def get_result_step(self, step_id: int, concurrent: int = NO_CONCURRENCY) -> Step:
        """
        Step to publish once this one has been executed.

        Args:
            step_id: Id the step gets in the run
            concurrent: Size of the parallel group, 1 for a single step
        """
        ...

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(step_name={self.step_name!r})"


class LazyFunctionStep(BaseLazyStep):
    """``context.run``: executes a user function and records its return value."""

    step_type = StepType.RUN

    def __init__(
        self,
        step_name: str,
        func: Callable[..., Any],
        args: tuple = (),
        kwargs: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(step_name)
        self.func = func
        self.args = args
        self.kwargs = kwargs or {}

    def get_plan_step(self, concurrent: int, target_step: int) -> Step:
        return RunStep(
            step_id=0,
            step_name=self.step_name,
            concurrent=concurrent,
            target_step=target_step,
        )

    async def get_result_step(self, step_id: int, concurrent: int = NO_CONCURRENCY) -> Step:
        result = await self._execute_func()
        return RunStep(
            step_id=step_id,
            step_name=self.step_name,
            out=result,
            concurrent=concurrent,
        )

    async def _execute_func(self) -> Any:
        """Execute the step function, handling sync and async."""
        if inspect.iscoroutinefunction(self.func):
            return await self.func(*self.args, **self.kwargs)

        result = self.func(*self.args, **self.kwargs)
        if inspect.isawaitable(result):
            return await result
        return result


class LazySleepStep(BaseLazyStep):
    """``context.sleep``: delays the next invocation by a number of seconds."""

    step_type = StepType.SLEEP_FOR

    def __init__(self, step_name: str, sleep: int) -> None:
        super().__init__(step_name)
        self.sleep = sleep

    def get_plan_step(self, concurrent: int, target_step: int) -> Step:
        return SleepForStep(
            step_id=0,
            step_name=self.step_name,
            sleep_for=self.sleep,
            concurrent=concurrent,
            target_step=target_step,
        )

    async def get_result_step(self, step_id: int, concurrent: int = NO_CONCURRENCY) -> Step:
        # In a parallel group the plan step already carried the delay
        return SleepForStep(
            step_id=step_id,
            step_name=self.step_name,
            sleep_for=self.sleep if concurrent == NO_CONCURRENCY else None,
            concurrent=concurrent,
        )


class LazySleepUntilStep(BaseLazyStep):
    """``context.sleep_until``: holds the next invocation until a unix timestamp."""

    step_type = StepType.SLEEP_UNTIL

    def __init__(self, step_name: str, sleep_until: int) -> None:
        super().__init__(step_name)
        self.sleep_until = sleep_until

    def get_plan_step(self, concurrent: int, target_step: int) -> Step:
        return SleepUntilStep(
            step_id=0,
            step_name=self.step_name,
            sleep_until=self.sleep_until,
            concurrent=concurrent,
            target_step=target_step,
        )

    async def get_result_step(self, step_id: int, concurrent: int = NO_CONCURRENCY) -> Step:
        return SleepUntilStep(
            step_id=step_id,
            step_name=self.step_name,
            sleep_until=self.sleep_until if concurrent == NO_CONCURRENCY else None,
            concurrent=concurrent,
        )


class LazyCallStep(BaseLazyStep):
    """``context.call``: the queue service performs the HTTP request for us."""

    step_type = StepType.CALL

    def __init__(
        self,
        step_name: str,
        url: str,
        method: str = "GET",
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(step_name)
        self.url = url
        self.method = method.upper()
        self.body = body
        self.headers = headers or {}

    def get_plan_step(self, concurrent: int, target_step: int) -> Step:
        return CallStep(
            step_id=0,
            step_name=self.step_name,
            concurrent=concurrent,
            target_step=target_step,
        )

    async def get_result_step(self, step_id: int, concurrent: int = NO_CONCURRENCY) -> Step:
        return CallStep(
            step_id=step_id,
            step_name=self.step_name,
            concurrent=concurrent,
            call_url=self.url,
            call_method=self.method,
            call_body=self.body,
            call_headers=dict(self.headers),
        )
