"""Dictionary-defined finite state machine engine."""

from __future__ import annotations

from typing import Any, Dict, Mapping

from fsplane.foundation.errors import TransitionError


class State:
    """Lightweight state wrapper exposing the state name as ``.value``."""

    __slots__ = ("value",)

    def __init__(self, value: str) -> None:
        self.value = value

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"State({self.value!r})"


class Machine:
    """Minimal FSM engine.

    The machine is defined by a dictionary with the following structure::

        {
          "id": "job",
          "initial": "PENDING",
          "states": {
            "PENDING": {"on": {"CONFIRM": "RUNNING"}},
            "RUNNING": {"on": {"FAIL": "ERROR"}},
            "ERROR": {},
          }
        }

    Every transition target must itself be a declared state.
    """

    def __init__(self, definition: Mapping[str, Any]) -> None:
        self.id = str(definition.get("id", "machine"))
        self._initial = str(definition.get("initial"))
        self._states: Dict[str, Mapping[str, Any]] = dict(definition.get("states", {}))
        if self._initial not in self._states:
            raise ValueError("initial state must be defined in states")
        for name, config in self._states.items():
            for event, target in dict(config.get("on", {})).items():
                if target not in self._states:
                    raise ValueError(
                        f"state {name!r} event {event!r} targets undeclared state {target!r}"
                    )
        self.initial_state = State(self._initial)

    @property
    def states(self) -> frozenset[str]:
        return frozenset(self._states)

    def state_from(self, name: str) -> State:
        if name not in self._states:
            raise ValueError(f"unknown state: {name}")
        return State(name)

    def events_for(self, name: str) -> frozenset[str]:
        return frozenset(dict(self._states.get(name, {}).get("on", {})))

    def can_transition(self, state: State, event: str) -> bool:
        return event in self.events_for(state.value)

    def transition(self, state: State, event: str) -> State:
        current = state.value
        if current not in self._states:
            raise ValueError(f"unknown state: {current}")
        on = dict(self._states[current].get("on", {}))
        if event not in on:
            raise TransitionError(
                f"{self.id}: invalid event {event!r} for state {current!r}"
            )
        return State(on[event])


__all__ = ["Machine", "State"]
