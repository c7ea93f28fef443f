"""Plan computation: diff desired resources against recorded live state.

Per resource:
- in state, not desired   -> delete
- desired, not in state   -> create
- declared properties differ -> update, or delete+create when a property
  the remote API cannot change in place differs (flagged as a replace)
- depends on a replaced resource -> replaced along with it
- otherwise               -> noop

Deletes run first, dependents before dependencies. Creates and updates
follow, dependencies before dependents.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from manifest import RESOURCE_TYPES, Resource
from reconciler.graph import ResourceGraph, topological_levels
from reconciler.state import LiveStateRecord

logger = logging.getLogger(__name__)

CREATE = 'create'
UPDATE = 'update'
DELETE = 'delete'
NOOP = 'noop'

PHASE_DELETE = 'delete'
PHASE_APPLY = 'apply'


@dataclass
class PlannedAction:
    """One action the executor will carry out.

    Attributes:
        resource_id: Target resource id
        kind: create, update, delete or noop
        reason: Human-readable explanation (replacements start with 'replace')
        resource_type: Resource type, for provider lookup
        depends_on: Keys of actions that must succeed first
        destructive: Action removes a resource as part of a replace or teardown
        requires_confirmation: Destroys persistent data; needs explicit consent
        error: Per-resource planning problem; the action fails without a call
        phase: 'delete' or 'apply'
    """
    resource_id: str
    kind: str
    reason: str
    resource_type: str = ''
    depends_on: list[str] = field(default_factory=list)
    destructive: bool = False
    requires_confirmation: bool = False
    error: Optional[str] = None
    phase: str = PHASE_APPLY

    @property
    def key(self) -> str:
        return f'{self.kind}:{self.resource_id}'

    @property
    def is_change(self) -> bool:
        return self.kind != NOOP

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'resource': self.resource_id,
            'type': self.resource_type,
            'action': self.kind,
            'reason': self.reason,
        }
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        if self.destructive:
            d['destructive'] = True
        if self.requires_confirmation:
            d['requires_confirmation'] = True
        if self.error:
            d['error'] = self.error
        return d


@dataclass
class Plan:
    """Ordered actions for one reconciliation run."""
    manifest_name: str
    actions: list[PlannedAction] = field(default_factory=list)
    destroy: bool = False

    def get(self, key: str) -> PlannedAction:
        for action in self.actions:
            if action.key == key:
                return action
        raise KeyError(key)

    def levels(self) -> list[list[PlannedAction]]:
        """Execution stages: delete levels first, then apply levels.

        Actions within a stage have no dependencies on each other.
        """
        stages: list[list[PlannedAction]] = []
        for phase in (PHASE_DELETE, PHASE_APPLY):
            by_key = {a.key: a for a in self.actions if a.phase == phase}
            edges = {k: a.depends_on for k, a in by_key.items()}
            for level in topological_levels(by_key, edges):
                stages.append([by_key[k] for k in level])
        return stages

    @property
    def has_changes(self) -> bool:
        return any(a.is_change for a in self.actions)

    @property
    def confirmations(self) -> list[PlannedAction]:
        """Actions that destroy persistent data."""
        return [a for a in self.actions if a.requires_confirmation]

    @property
    def errors(self) -> list[PlannedAction]:
        return [a for a in self.actions if a.error]

    def summary(self) -> dict[str, int]:
        counts = {CREATE: 0, UPDATE: 0, DELETE: 0, NOOP: 0}
        for action in self.actions:
            counts[action.kind] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            'manifest': self.manifest_name,
            'destroy': self.destroy,
            'summary': self.summary(),
            'actions': [a.to_dict() for a in self.actions],
        }


class Planner:
    """Diffs a resource graph against a state snapshot.

    The planner never mutates state or calls a provider.
    """

    def __init__(self, graph: ResourceGraph, snapshot: dict[str, LiveStateRecord]):
        self.graph = graph
        self.snapshot = dict(snapshot)

    def plan(self) -> Plan:
        """Compute the actions that move live state to the manifest."""
        apply_actions: list[PlannedAction] = []
        apply_keys: dict[str, str] = {}
        replaced: dict[str, PlannedAction] = {}

        for rid in self.graph.order():
            resource = self.graph.get(rid)
            record = self.snapshot.get(rid)
            action, replace_delete = self._diff(resource, record)
            if replace_delete is None and action.kind in (NOOP, UPDATE) and not action.error:
                # Dependents of a replaced resource go down and come back with it
                parents = sorted(self.graph.dependencies(rid) & set(replaced))
                if parents:
                    action, replace_delete = self._replace(
                        resource, record, f"replace: {parents[0]} replaced")
            if replace_delete is not None:
                replaced[rid] = replace_delete
                action.depends_on.append(replace_delete.key)
            # Dependencies are earlier in graph order, so their keys exist
            action.depends_on.extend(
                apply_keys[dep] for dep in sorted(self.graph.dependencies(rid))
            )
            apply_keys[rid] = action.key
            apply_actions.append(action)

        orphans = {rid: self._orphan_delete(rec) for rid, rec in self.snapshot.items()
                   if rid not in self.graph}
        deletes = self._order_deletes({**orphans, **replaced})

        plan = Plan(self.graph.manifest.name, deletes + apply_actions)
        summary = plan.summary()
        logger.info(
            f"Plan for '{plan.manifest_name}': {summary[CREATE]} to create, "
            f"{summary[UPDATE]} to update, {summary[DELETE]} to delete, "
            f"{summary[NOOP]} unchanged"
        )
        return plan

    def plan_destroy(self) -> Plan:
        """Compute a full teardown of every recorded resource."""
        deletes = {rid: self._teardown_delete(rec) for rid, rec in self.snapshot.items()}
        noops = [
            PlannedAction(resource_id=rid, kind=NOOP, reason='not in state',
                          resource_type=self.graph.get(rid).type, phase=PHASE_DELETE)
            for rid in self.graph.reverse_order() if rid not in self.snapshot
        ]
        plan = Plan(self.graph.manifest.name, self._order_deletes(deletes) + noops, destroy=True)
        logger.info(f"Destroy plan for '{plan.manifest_name}': {len(deletes)} to delete")
        return plan

    def _diff(self, resource: Resource,
              record: Optional[LiveStateRecord]) -> tuple[PlannedAction, Optional[PlannedAction]]:
        """Diff one resource. Returns (apply action, replace delete or None)."""
        rid = resource.id
        if record is None:
            return PlannedAction(rid, CREATE, 'not in state', resource.type), None

        if record.resource_type and record.resource_type != resource.type:
            return PlannedAction(
                rid, NOOP, 'state record does not match manifest', resource.type,
                error=f"state records type '{record.resource_type}' for {rid}",
            ), None
        if not record.provider_id:
            return PlannedAction(rid, CREATE, 'state record has no provider id', resource.type), None

        changed = _changed_keys(resource.properties, record.properties)
        if not changed:
            return PlannedAction(rid, NOOP, 'up to date', resource.type), None

        rtype = resource.resource_type
        forced = sorted(set(changed) & rtype.replace_on)
        if not forced:
            return PlannedAction(rid, UPDATE, f"changed: {', '.join(changed)}", resource.type), None

        logger.warning(f"{rid} will be replaced ({', '.join(forced)} changed)")
        return self._replace(resource, record, f"replace: {', '.join(forced)} cannot change in place")

    def _replace(self, resource: Resource, record: LiveStateRecord,
                 reason: str) -> tuple[PlannedAction, PlannedAction]:
        """Plan a delete+create pair. Returns (create, delete)."""
        rtype = resource.resource_type
        data_loss = rtype.is_stateful(record.properties) or rtype.is_stateful(resource.properties)
        if data_loss:
            reason += '; destroys persistent data'
        delete = PlannedAction(
            resource.id, DELETE, reason, resource.type,
            destructive=True, requires_confirmation=data_loss, phase=PHASE_DELETE,
        )
        create = PlannedAction(resource.id, CREATE, reason, resource.type, destructive=True)
        return create, delete

    def _orphan_delete(self, record: LiveStateRecord) -> PlannedAction:
        return self._delete_action(record, 'removed from manifest')

    def _teardown_delete(self, record: LiveStateRecord) -> PlannedAction:
        return self._delete_action(record, 'destroy')

    def _delete_action(self, record: LiveStateRecord, reason: str) -> PlannedAction:
        rtype = RESOURCE_TYPES.get(record.resource_type)
        action = PlannedAction(
            record.resource_id, DELETE, reason, record.resource_type,
            destructive=True, phase=PHASE_DELETE,
        )
        if rtype is None:
            action.error = f"unknown resource type '{record.resource_type}' in state"
        elif rtype.is_stateful(record.properties):
            action.requires_confirmation = True
            action.reason += '; destroys persistent data'
        return action

    def _recorded_dependencies(self, rid: str) -> set[str]:
        if rid in self.graph:
            deps = self.graph.dependencies(rid)
        else:
            deps = set()
        record = self.snapshot.get(rid)
        if record is not None:
            deps |= set(record.dependencies)
        return deps

    def _order_deletes(self, deletes: dict[str, PlannedAction]) -> list[PlannedAction]:
        """Wire delete dependencies and return deletes in teardown order.

        A resource is deleted only after every resource that depends on it
        and is also being deleted.
        """
        deps_of = {rid: self._recorded_dependencies(rid) for rid in deletes}
        # Reverse edges: a delete waits on its dependents' deletes
        waits_on = {
            rid: sorted(other for other in deletes if rid in deps_of[other])
            for rid in deletes
        }
        for rid, action in deletes.items():
            action.depends_on = [deletes[other].key for other in waits_on[rid]]
        ordered = topological_levels(deletes, waits_on)
        return [deletes[rid] for level in ordered for rid in level]


def _changed_keys(desired: dict, recorded: dict) -> list[str]:
    """Top-level property keys whose values differ structurally."""
    return sorted(k for k in set(desired) | set(recorded) if desired.get(k) != recorded.get(k))
