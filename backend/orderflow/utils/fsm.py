from __future__ import annotations
"""Declarative, role-gated finite state machine for order lifecycles.

Each edge names its source, target, the roles allowed to drive it and whether
only the original requester may do so. All checks raise domain errors instead
of HTTP aborts so callers can fold them into a uniform result.

Usage:
    from orderflow.utils.fsm import Transition, TransitionValidator
    FSM = TransitionValidator([
        Transition('QUEUED', 'STARTED', roles={'PRINTER'}),
        Transition('STARTED', 'COMPLETED', roles={'PRINTER'}),
    ])
    FSM.assert_can_transition(current_status, target_status)
    FSM.assert_role_allowed(target_status, actor_role)
"""
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Set

from orderflow.errors import OrderStateError, OrderAuthorizationError


@dataclass(frozen=True)
class Transition:
    # None marks the creation edge
    source: Optional[str]
    target: str
    roles: FrozenSet[str] = field(default_factory=frozenset)
    requester_only: bool = False
    # operation name(s) expected to drive this edge; informational
    via: str = ''

    def __post_init__(self):
        object.__setattr__(self, 'roles', frozenset(self.roles))


class TransitionValidator:
    def __init__(self, transitions: Iterable[Transition], field_name: str = 'status'):
        self.transitions: List[Transition] = list(transitions)
        self.field_name = field_name
        self.graph: Dict[str, Set[str]] = {}
        self._edges: Dict[tuple, Transition] = {}
        self._roles_by_target: Dict[str, Set[str]] = {}
        for t in self.transitions:
            self.graph.setdefault(t.source, set()).add(t.target)
            self.graph.setdefault(t.target, set())
            self._edges[(t.source, t.target)] = t
            self._roles_by_target.setdefault(t.target, set()).update(t.roles)

    def find(self, current: str, target: str) -> Optional[Transition]:
        return self._edges.get((current, target))

    def assert_role_allowed(self, target: str, role: str):
        if role not in self._roles_by_target.get(target, set()):
            raise OrderAuthorizationError(f'Role {role} cannot move an order to {target}')
        return True

    def assert_can_transition(self, current: str, target: str) -> Transition:
        edge = self._edges.get((current, target))
        if edge is None:
            raise OrderStateError(f'Invalid transition: {current} → {target}')
        return edge

    def describe(self) -> List[dict]:
        return [
            {
                'from': t.source,
                'to': t.target,
                'roles': sorted(t.roles),
                'requester_only': t.requester_only,
                'via': t.via,
            }
            for t in self.transitions
        ]

__all__ = ['Transition', 'TransitionValidator']
