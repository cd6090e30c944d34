from __future__ import annotations

import logging
import uuid
from typing import Any

from langgraph.graph.state import CompiledStateGraph
from langgraph.types import Command, interrupt
from pydantic import BaseModel, ConfigDict

from .events import parse_event
from .models import ContractViolation
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)


class Suspension(BaseModel):
    """What a suspended component waits for before it can continue."""

    model_config = ConfigDict(frozen=True)

    component: str
    state: str
    expects: tuple[str, ...] = ()
    stage: str | None = None
    invoke: str | None = None
    input: dict[str, Any] | None = None
    detail: dict[str, Any] = {}


def await_event(component: str, state: str, *expects: str, **extra: Any) -> dict[str, Any]:
    """Suspend the running graph until one of ``expects`` is delivered.

    Must be the first statement of its node: the node re-executes on resume.
    """
    suspension = Suspension(component=component, state=state, expects=expects, **extra)
    return interrupt(suspension.model_dump(mode="json"))


def await_invocation(component: str, state: str, child: str, child_input: BaseModel) -> dict[str, Any]:
    """Suspend the running graph until the session returns ``child``'s terminal output."""
    suspension = Suspension(
        component=component,
        state=state,
        invoke=child,
        input=child_input.model_dump(mode="json"),
    )
    return interrupt(suspension.model_dump(mode="json"))


class GraphSession:
    """Drives one compiled graph through a single attempt, one event at a time."""

    component = "graph"

    def __init__(self, graph: CompiledStateGraph, *, settings: RuntimeSettings) -> None:
        self._graph = graph
        self.settings = settings
        self.thread_id = f"{self.component}-{uuid.uuid4().hex[:8]}"
        self._config = {
            "recursion_limit": settings.recursion_limit,
            "configurable": {"thread_id": self.thread_id},
        }
        self._suspension: Suspension | None = None
        self._values: dict[str, Any] = {}
        self._started = False
        self._terminal = False
        self._closed = False

    @property
    def suspension(self) -> Suspension | None:
        return self._suspension

    @property
    def is_terminal(self) -> bool:
        return self._terminal

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def values(self) -> dict[str, Any]:
        """Copy of the component's current graph state."""
        return dict(self._values)

    @property
    def expects(self) -> tuple[str, ...]:
        suspension = self.suspension
        return suspension.expects if suspension is not None else ()

    def send(self, event: BaseModel | dict[str, Any]) -> Suspension | None:
        self._require_running()
        parsed = parse_event(event)
        self._require_expected(parsed)
        return self._deliver(parsed)

    def _start(self, initial_state: dict[str, Any]) -> Suspension | None:
        if self._started:
            raise ContractViolation(f"{self.thread_id} was already started")
        self._started = True
        logger.info("%s started", self.thread_id)
        return self._run(initial_state)

    def _deliver(self, event: BaseModel) -> Suspension | None:
        logger.debug("%s <- %s", self.thread_id, event.type)
        return self._run(Command(resume=event.model_dump(mode="json")))

    def _resume_with(self, payload: dict[str, Any]) -> Suspension | None:
        return self._run(Command(resume=payload))

    def _run(self, payload: Any) -> Suspension | None:
        self._graph.invoke(payload, config=self._config)
        snapshot = self._graph.get_state(self._config)
        self._values = dict(snapshot.values)
        pending = [item.value for task in snapshot.tasks for item in task.interrupts]
        if pending:
            self._suspension = Suspension.model_validate(pending[0])
            logger.debug(
                "%s suspended in %s expecting %s",
                self.thread_id,
                self._suspension.state,
                self._suspension.expects,
            )
            return self._suspension
        if snapshot.next:
            raise ContractViolation(f"{self.thread_id} stopped in {snapshot.next} without a pending event")
        self._suspension = None
        self._terminal = True
        self._on_terminal()
        return None

    def close(self) -> None:
        """Abandon an unfinished attempt: it accepts no further events and its records are dropped."""
        if self._closed or self._terminal:
            return
        self._closed = True
        logger.info("%s closed before reaching a terminal state", self.thread_id)
        if self._started:
            self._graph.checkpointer.delete_thread(self.thread_id)

    def _on_terminal(self) -> None:
        logger.info("%s reached a terminal state", self.thread_id)
        # Per-attempt records are not kept once the component has emitted its output.
        self._graph.checkpointer.delete_thread(self.thread_id)

    def _require_running(self) -> None:
        if not self._started:
            raise ContractViolation(f"{self.thread_id} has not been started")
        if self._terminal:
            raise ContractViolation(f"{self.thread_id} is terminal and accepts no further events")
        if self._closed:
            raise ContractViolation(f"{self.thread_id} was closed and accepts no further events")

    def _require_expected(self, event: BaseModel) -> None:
        suspension = self._suspension
        if suspension is None or event.type not in suspension.expects:
            state = suspension.state if suspension is not None else "<none>"
            expected = ", ".join(suspension.expects) if suspension is not None else ""
            raise ContractViolation(
                f"{self.thread_id} in state {state} does not accept {event.type!r} (expects: {expected or 'nothing'})"
            )

    def _require_terminal(self) -> None:
        if not self._terminal:
            state = self._suspension.state if self._suspension is not None else "<not started>"
            raise ContractViolation(f"{self.thread_id} has no output yet; suspended in {state}")
