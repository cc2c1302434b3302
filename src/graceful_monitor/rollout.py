"""Graceful rollout of API server instances on a single host.

A run never relies on remembered progress. The plan is derived from the
manifests on disk and the NAT chain contents every time, and each step is
idempotent, so a run interrupted at any point is completed (or undone) by the
next one.

Sequence for a pending transition from the active instance to the next one:

1. route everything to the active instance;
2. wait for the next instance's health port to accept connections;
3. keep established connections on the active instance, send new ones to
   the next instance;
4. delete the active instance's manifest so the kubelet stops it;
5. wait for the active instance's health port to refuse connections;
6. route everything to the next instance.

Failures in steps 3-5 restore the rules of step 1 before the error is raised.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TypeVar

from .manifests import InstanceManifest, ManifestScanner, ManifestSet
from .portmap import PortMap, active_port_map, next_port_map
from .probes import ReadinessProbe
from .rules import DnatRule, NatRuleReconciler, ReconcileResult, transition_rules

LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")


class RolloutError(RuntimeError):
    """Raised when a rollout step fails."""


class RollbackError(RolloutError):
    """Raised when restoring the active rules fails after a step failed."""

    def __init__(self, step: RolloutAction, primary: BaseException, rollback: BaseException):
        """Keep both the failure of *step* and the failure to roll it back."""
        super().__init__(
            f"{step.value} failed ({primary}) and restoring the active forwarding "
            f"rules also failed ({rollback})."
        )
        self.step = step
        self.primary = primary
        self.rollback = rollback


class RolloutState(str, Enum):
    """Phases of a rollout."""

    NO_INSTANCE = "no-instance"
    SINGLE_ACTIVE = "single-active"
    AWAITING_NEXT_READY = "awaiting-next-ready"
    TRANSITIONING = "transitioning"
    RETIRING_OLD = "retiring-old"
    AWAITING_DRAIN = "awaiting-drain"
    FINALIZED = "finalized"
    AMBIGUOUS = "ambiguous"


class RolloutAction(str, Enum):
    """Steps a rollout pass may execute, in execution order."""

    ENSURE_ACTIVE = "ensure-active-rules"
    AWAIT_NEXT_READY = "await-next-ready"
    ENSURE_TRANSITION = "ensure-transition-rules"
    RETIRE_MANIFEST = "retire-manifest"
    AWAIT_DRAIN = "await-drain"
    FINALIZE = "finalize"


TRANSITION_ACTIONS: tuple[RolloutAction, ...] = tuple(RolloutAction)


@dataclass(frozen=True, slots=True)
class RolloutPlan:
    """What a rollout pass is going to do, derived from observed state."""

    state: RolloutState
    manifests: ManifestSet
    actions: tuple[RolloutAction, ...] = ()
    active: InstanceManifest | None = None
    incoming: InstanceManifest | None = None
    active_map: PortMap | None = None
    next_map: PortMap | None = None
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "state": self.state.value,
            "actions": [action.value for action in self.actions],
            "manifests": [manifest.to_dict() for manifest in self.manifests],
            "active": self.active.to_dict() if self.active else None,
            "incoming": self.incoming.to_dict() if self.incoming else None,
            "active_map": self.active_map.to_dict() if self.active_map else None,
            "next_map": self.next_map.to_dict() if self.next_map else None,
            "warnings": list(self.warnings),
        }


def plan_rollout(
    manifests: ManifestSet,
    chain_rules: Iterable[DnatRule | None] = (),
) -> RolloutPlan:
    """Derive the rollout plan for *manifests* and the current *chain_rules*.

    The chain contents only refine the reported state; the actions for a
    given number of manifests are always the same because every action is
    idempotent.
    """
    count = len(manifests)
    if count == 0:
        return RolloutPlan(state=RolloutState.NO_INSTANCE, manifests=manifests)

    if count > 2:
        warning = f"Graceful transition only possible for 2 instances, but {count} found."
        return RolloutPlan(
            state=RolloutState.AMBIGUOUS,
            manifests=manifests,
            warnings=(warning,),
        )

    active = manifests[0]
    active_map = active_port_map(active.port)
    if count == 1:
        return RolloutPlan(
            state=RolloutState.SINGLE_ACTIVE,
            manifests=manifests,
            actions=(RolloutAction.ENSURE_ACTIVE,),
            active=active,
            active_map=active_map,
        )

    incoming = manifests.next_manifest()
    next_map = next_port_map(active.port)
    warnings: list[str] = []
    if incoming is not None and incoming.port != next_map.secure_port:
        warnings.append(
            f"Revision {incoming.revision} declares port {incoming.port}; "
            f"expected {next_map.secure_port} after port {active.port}."
        )

    state = RolloutState.AWAITING_NEXT_READY
    observed = list(chain_rules)
    if observed and None not in observed:
        if set(observed) == set(transition_rules(active_map, next_map)):
            state = RolloutState.TRANSITIONING

    return RolloutPlan(
        state=state,
        manifests=manifests,
        actions=TRANSITION_ACTIONS,
        active=active,
        incoming=incoming,
        active_map=active_map,
        next_map=next_map,
        warnings=tuple(warnings),
    )


@dataclass(slots=True)
class RolloutResult:
    """Outcome of a rollout pass."""

    plan: RolloutPlan
    state: RolloutState
    visited: list[RolloutState] = field(default_factory=list)
    reconciliations: list[tuple[RolloutAction, ReconcileResult]] = field(default_factory=list)
    retired: Path | None = None

    @property
    def changed(self) -> bool:
        """Return ``True`` when the firewall or manifests were modified."""
        if self.retired is not None:
            return True
        return any(result.changed for _, result in self.reconciliations)

    @property
    def warnings(self) -> tuple[str, ...]:
        return self.plan.warnings

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "state": self.state.value,
            "visited": [state.value for state in self.visited],
            "changed": self.changed,
            "retired": str(self.retired) if self.retired else None,
            "reconciliations": [
                {"action": action.value, **result.to_dict()}
                for action, result in self.reconciliations
            ],
            "plan": self.plan.to_dict(),
        }


def _remove_manifest(path: Path) -> None:
    path.unlink(missing_ok=True)


@dataclass(slots=True)
class RolloutOrchestrator:
    """Execute a single rollout pass."""

    scanner: ManifestScanner
    reconciler: NatRuleReconciler
    probe: ReadinessProbe
    remove_file: Callable[[Path], None] = _remove_manifest

    def plan(self) -> RolloutPlan:
        """Scan manifests and chain contents and derive the plan."""
        manifests = self.scanner.scan()
        return plan_rollout(manifests, self.reconciler.current_rules())

    def run(self) -> RolloutResult:
        """Plan and execute one rollout pass."""
        plan = self.plan()
        return self.execute(plan)

    def execute(self, plan: RolloutPlan) -> RolloutResult:
        """Execute *plan*, rolling the firewall back when a step fails."""
        # visited only lists states this run enters; the planned state stays on plan.
        result = RolloutResult(plan=plan, state=plan.state)
        for warning in plan.warnings:
            LOGGER.warning(warning)

        if plan.state is RolloutState.NO_INSTANCE:
            LOGGER.info(
                "No static pod manifests found in %s with prefix %r.",
                self.scanner.directory,
                self.scanner.prefix,
            )
            self._enter(result, plan.state)
            return result
        if plan.state is RolloutState.AMBIGUOUS:
            self._enter(result, plan.state)
            return result

        active = plan.active
        active_map = plan.active_map
        if active is None or active_map is None:
            raise RolloutError(f"Plan in state {plan.state.value} has no active instance.")

        if plan.next_map is None:
            LOGGER.info(
                "Ensuring port forwarding for revision %d on port %d.",
                active.revision,
                active.port,
            )
            self._reconcile(result, RolloutAction.ENSURE_ACTIVE, active_map)
            self._enter(result, plan.state)
            return result

        next_map = plan.next_map
        incoming = plan.incoming
        if incoming is None:
            raise RolloutError("Transition plan has no incoming instance.")
        LOGGER.info(
            "Attempting graceful transition from revision %d on port %d "
            "to revision %d on port %d.",
            active.revision,
            active.port,
            incoming.revision,
            next_map.secure_port,
        )

        self._reconcile(result, RolloutAction.ENSURE_ACTIVE, active_map)

        self._enter(result, RolloutState.AWAITING_NEXT_READY)
        self.probe.wait_until_reachable(next_map.health_port)

        self._enter(result, RolloutState.TRANSITIONING)
        transition = self._guarded(
            RolloutAction.ENSURE_TRANSITION,
            active_map,
            lambda: self.reconciler.ensure_transition_rules(active_map, next_map),
        )
        result.reconciliations.append((RolloutAction.ENSURE_TRANSITION, transition))

        self._enter(result, RolloutState.RETIRING_OLD)
        self._guarded(
            RolloutAction.RETIRE_MANIFEST,
            active_map,
            lambda: self.remove_file(active.filename),
        )
        result.retired = active.filename
        LOGGER.info("Removed manifest %s for revision %d.", active.filename, active.revision)

        self._enter(result, RolloutState.AWAITING_DRAIN)
        self._guarded(
            RolloutAction.AWAIT_DRAIN,
            active_map,
            lambda: self.probe.wait_until_unreachable(active_map.health_port),
        )

        self._reconcile(result, RolloutAction.FINALIZE, next_map)
        self._enter(result, RolloutState.FINALIZED)
        return result

    # ------------------------------------------------------------------
    def _reconcile(self, result: RolloutResult, action: RolloutAction, port_map: PortMap) -> None:
        result.reconciliations.append((action, self.reconciler.ensure_active_rules(port_map)))

    def _enter(self, result: RolloutResult, state: RolloutState) -> None:
        LOGGER.debug("Rollout entering state %s.", state.value)
        result.state = state
        result.visited.append(state)

    def _guarded(
        self,
        action: RolloutAction,
        active_map: PortMap,
        step: Callable[[], _T],
    ) -> _T:
        try:
            return step()
        except Exception as exc:
            LOGGER.error("%s failed: %s. Restoring active forwarding rules.", action.value, exc)
            try:
                self.reconciler.ensure_active_rules(active_map)
            except Exception as rollback_exc:
                LOGGER.error("Error attempting to restore forwarding rules: %s", rollback_exc)
                raise RollbackError(action, exc, rollback_exc) from rollback_exc
            raise


__all__ = [
    "RollbackError",
    "RolloutAction",
    "RolloutError",
    "RolloutOrchestrator",
    "RolloutPlan",
    "RolloutResult",
    "RolloutState",
    "plan_rollout",
]
