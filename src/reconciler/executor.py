"""Plan executor for reconciliation runs.

Walks the plan level by level. Actions in one level have no edges
between them and run concurrently up to the concurrency limit; the next
level starts only when every action in the current one has resolved.

Per action: pending -> in_flight -> succeeded | failed, or straight to
skipped when a dependency did not succeed or the run was cancelled.
Transient provider errors are retried with exponential backoff; every
other error fails the action at once. Property references and secrets
are rendered when the action runs, never at plan time.
"""

import copy
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable

from common import retry_call
from manifest import REFERENCE_PATTERN, PropertyReference, Resource
from reconciler.errors import (
    DriverError,
    PermanentError,
    StateStoreError,
    TransientError,
)
from reconciler.graph import ResourceGraph
from reconciler.planner import CREATE, DELETE, NOOP, UPDATE, Plan, PlannedAction
from reconciler.provider import ProviderRegistry, RenderedResource
from reconciler.secrets import SecretMaterializer
from reconciler.state import LiveStateRecord, StateStore
from reporting.report import SUCCEEDED, ApplyReport, ApplyResult

logger = logging.getLogger(__name__)

# Attributes answered from state without a provider read
_ID_ATTRIBUTES = frozenset({'id', 'providerId'})


@dataclass
class Executor:
    """Executes a plan against the provider and records live state.

    The executor is the only writer of the state store. A create or
    update is marked succeeded only after its state record is flushed.

    Attributes:
        graph: Resource graph the plan was computed from
        state: Open state store
        providers: Provider clients by resource type
        materializer: Secret materializer for this run
        concurrency: Max concurrent actions within a level
        max_attempts: Attempts per action on transient errors
        backoff_base: First retry delay in seconds
        backoff_max: Upper bound for one retry delay
        allow_destructive: Permit actions that destroy persistent data
        sleep: Sleep function used between retries
    """
    graph: ResourceGraph
    state: StateStore
    providers: ProviderRegistry
    materializer: SecretMaterializer
    concurrency: int = 4
    max_attempts: int = 5
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    allow_destructive: bool = False
    sleep: Callable[[float], None] = time.sleep
    cancel_event: threading.Event = field(default_factory=threading.Event)
    _outputs: dict[str, dict] = field(default_factory=dict, init=False, repr=False)
    _outputs_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def cancel(self) -> None:
        """Stop starting new actions; in-flight actions run to completion."""
        if not self.cancel_event.is_set():
            logger.warning("Cancellation requested; waiting for in-flight actions")
        self.cancel_event.set()

    def run(self, plan: Plan) -> ApplyReport:
        """Execute every action in the plan and return the report."""
        if not self.state.is_open:
            raise StateStoreError("State store must be opened before executing a plan")

        report = ApplyReport(plan.manifest_name, destroy=plan.destroy)
        results = {a.key: ApplyResult(a.resource_id, a.kind) for a in plan.actions}
        report.results = [results[a.key] for a in plan.actions]
        report.start()

        try:
            for level in plan.levels():
                ready = [a for a in level if self._admit(a, results)]
                if not ready:
                    continue
                workers = max(1, min(self.concurrency, len(ready)))
                with ThreadPoolExecutor(max_workers=workers) as pool:
                    futures = [pool.submit(self._execute, a, results[a.key]) for a in ready]
                    for future in futures:
                        future.result()
        finally:
            self.materializer.clear()
            with self._outputs_lock:
                self._outputs.clear()

        status = report.finish(cancelled=self.cancel_event.is_set())
        log = logger.info if report.success else logger.error
        log(f"Run {status}: {len(report.succeeded)} succeeded, "
            f"{len(report.failed)} failed, {len(report.skipped)} skipped")
        return report

    def _admit(self, action: PlannedAction, results: dict[str, ApplyResult]) -> bool:
        """Skip an action whose dependencies did not all succeed."""
        result = results[action.key]
        if self.cancel_event.is_set():
            result.skip('cancelled')
            return False
        for dep in action.depends_on:
            dep_result = results.get(dep)
            if dep_result is not None and dep_result.outcome != SUCCEEDED:
                result.skip(f"dependency {dep} {dep_result.outcome}")
                logger.info(f"[{action.kind}] Skipping {action.resource_id}: {dep} {dep_result.outcome}")
                return False
        return True

    def _execute(self, action: PlannedAction, result: ApplyResult) -> None:
        """Run one action to a terminal outcome. Never raises."""
        if self.cancel_event.is_set():
            result.skip('cancelled')
            return

        result.start()
        rid = action.resource_id
        try:
            if action.error:
                raise PermanentError(action.error)
            if action.requires_confirmation and not self.allow_destructive:
                raise PermanentError(
                    "destroys persistent data and was not confirmed (use --allow-replace)"
                )
            if action.is_change:
                logger.info(f"[{action.kind}] {rid}: {action.reason}")

            if action.kind == CREATE:
                provider_id = self._create(action, result)
            elif action.kind == UPDATE:
                provider_id = self._update(action, result)
            elif action.kind == DELETE:
                provider_id = self._delete(action, result)
            elif action.kind == NOOP:
                record = self.state.get(rid)
                provider_id = record.provider_id if record else None
            else:
                raise PermanentError(f"unknown action kind '{action.kind}'")
        except DriverError as e:
            message = self.materializer.redact(e.message)
            result.fail(message)
            logger.error("%s failed for '%s': %s", action.kind.capitalize(), rid, message)
            return
        except Exception as e:
            message = self.materializer.redact(f"{type(e).__name__}: {e}")
            result.fail(message)
            logger.error("%s failed for '%s': %s", action.kind.capitalize(), rid, message)
            return

        result.succeed(provider_id)
        if action.is_change:
            logger.info(f"[{action.kind}] {rid} done")

    def _retry(self, fn: Callable[[], Any], action: PlannedAction, result: ApplyResult) -> Any:
        def on_attempt(n: int) -> None:
            result.attempts = n

        return retry_call(
            fn,
            retry_on=(TransientError,),
            attempts=self.max_attempts,
            base_delay=self.backoff_base,
            max_delay=self.backoff_max,
            sleep=self.sleep,
            description=f'{action.kind} {action.resource_id}',
            on_attempt=on_attempt,
        )

    def _create(self, action: PlannedAction, result: ApplyResult) -> str:
        resource = self.graph.get(action.resource_id)
        client = self.providers.for_type(resource.type)
        provider_id = self._retry(lambda: client.create(self._render(resource)), action, result)
        self._record(resource, provider_id)
        return provider_id

    def _update(self, action: PlannedAction, result: ApplyResult) -> str:
        resource = self.graph.get(action.resource_id)
        record = self.state.get(resource.id)
        if record is None:
            raise PermanentError(f"{resource.id} has no state record to update")
        client = self.providers.for_type(resource.type)
        self._retry(lambda: client.update(self._render(resource), record.provider_id), action, result)
        self._record(resource, record.provider_id)
        return record.provider_id

    def _delete(self, action: PlannedAction, result: ApplyResult) -> str:
        rid = action.resource_id
        record = self.state.get(rid)
        if record is None:
            logger.debug(f"{rid} has no state record; nothing to delete")
            return ''
        client = self.providers.for_type(record.resource_type or action.resource_type)
        self._retry(lambda: client.delete(record.provider_id), action, result)
        with self._outputs_lock:
            self._outputs.pop(rid, None)
        try:
            self.state.remove(rid)
        except StateStoreError as e:
            raise StateStoreError(
                f"{e.message}; {rid} was deleted remotely but is still recorded"
            )
        return record.provider_id

    def _record(self, resource: Resource, provider_id: str) -> None:
        """Write the state record for a successful create/update."""
        with self._outputs_lock:
            self._outputs.pop(resource.id, None)
        record = LiveStateRecord(
            resource_id=resource.id,
            provider_id=provider_id,
            properties=copy.deepcopy(resource.properties),
            last_applied_at=time.time(),
            resource_type=resource.type,
            dependencies=sorted(self.graph.dependencies(resource.id)),
        )
        try:
            self.state.put(record)
        except StateStoreError as e:
            raise StateStoreError(
                f"{e.message}; {resource.id} exists remotely as {provider_id} "
                "and will be reconciled on the next apply"
            )

    # Rendering: expand references and materialize secrets for one call

    def _render(self, resource: Resource) -> RenderedResource:
        refs = {ref.expression: ref for ref in resource.references}
        app_secrets = {
            e['name'] for e in resource.properties.get('secrets', []) or []
            if isinstance(e, dict) and 'name' in e
        }
        properties = self._render_value(resource, resource.properties, refs, app_secrets)
        return RenderedResource(resource.id, resource.type, resource.name, properties)

    def _render_value(self, resource: Resource, value: Any,
                      refs: dict[str, PropertyReference], app_secrets: set[str]) -> Any:
        if isinstance(value, dict):
            rendered = {}
            for key, item in value.items():
                if key == 'valueRef' or (key == 'secretRef' and item not in app_secrets):
                    rendered['value'] = self._secret(item, resource)
                elif isinstance(key, str) and key.endswith('Ref') and key != 'secretRef':
                    rendered[key] = self.attribute(refs[item])
                else:
                    rendered[key] = self._render_value(resource, item, refs, app_secrets)
            return rendered
        if isinstance(value, list):
            return [self._render_value(resource, item, refs, app_secrets) for item in value]
        if isinstance(value, str):
            return self._interpolate(value, refs)
        return value

    def _interpolate(self, text: str, refs: dict[str, PropertyReference]) -> Any:
        match = REFERENCE_PATTERN.fullmatch(text)
        if match:
            # A lone reference keeps the attribute's own type
            return self.attribute(refs[match.group(1)])
        return REFERENCE_PATTERN.sub(lambda m: str(self.attribute(refs[m.group(1)])), text)

    def _secret(self, name: str, resource: Resource) -> str:
        return self.materializer.resolve(name, scope=resource.id,
                                         output_reader=self.attribute).resolved_value

    def attribute(self, ref: PropertyReference) -> Any:
        """Read a referenced resource's attribute.

        Raises:
            PermanentError: If the resource is not provisioned or lacks the attribute
            TransientError: If the provider read fails transiently
        """
        record = self.state.get(ref.resource_id)
        if record is None:
            raise PermanentError(f"{ref.resource_id} is not provisioned (needed for {ref.expression})")
        if ref.attribute in _ID_ATTRIBUTES:
            return record.provider_id
        if ref.attribute == 'name' and ref.resource_id in self.graph:
            return self.graph.get(ref.resource_id).name

        with self._outputs_lock:
            outputs = self._outputs.get(ref.resource_id)
        if outputs is None:
            resource_type = record.resource_type or self.graph.get(ref.resource_id).type
            outputs = self.providers.for_type(resource_type).read(record.provider_id)
            with self._outputs_lock:
                self._outputs[ref.resource_id] = outputs
        if ref.attribute not in outputs:
            raise PermanentError(f"{ref.resource_id} has no attribute '{ref.attribute}'")
        return outputs[ref.attribute]
