"""Typed messages exchanged between a running subsolver search and the controller.

The subsolver posts an event from inside its callback; the handler answers
with a list of commands that the subsolver executes before resuming.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional, Union

from .types import Point, TerminationReason


@dataclass(slots=True)
class NewIncumbent:
    point: Point
    objective_value: float
    dual_bound: Optional[float] = None


@dataclass(slots=True)
class NewBound:
    dual_bound: float
    explored_nodes: int = 0
    open_nodes: int = 0


@dataclass(slots=True)
class NodeRelaxationSolved:
    point: Point
    dual_bound: Optional[float] = None


@dataclass(slots=True)
class AddLazyRow:
    coefficients: dict[int, float] = field(default_factory=dict)
    rhs: float = 0.0
    name: str = ""
    sense: str = "<="


@dataclass(slots=True)
class AbortSearch:
    reason: TerminationReason = TerminationReason.USER_ABORT


@dataclass(slots=True)
class UpdateCutoff:
    value: float


@dataclass(slots=True)
class NoAction:
    pass


Event = Union[NewIncumbent, NewBound, NodeRelaxationSolved]
Command = Union[AddLazyRow, AbortSearch, UpdateCutoff, NoAction]
CallbackHandler = Callable[[Event], list[Command]]


__all__ = [
    "NewIncumbent",
    "NewBound",
    "NodeRelaxationSolved",
    "AddLazyRow",
    "AbortSearch",
    "UpdateCutoff",
    "NoAction",
    "Event",
    "Command",
    "CallbackHandler",
]
