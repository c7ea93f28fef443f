"""Apply reporting: per-action outcomes, run status and rendered tables."""

import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from common import format_duration

PENDING = 'pending'
IN_FLIGHT = 'in_flight'
SUCCEEDED = 'succeeded'
FAILED = 'failed'
SKIPPED = 'skipped'

RUN_COMPLETE = 'complete'
RUN_PARTIAL_FAILURE = 'partial_failure'
RUN_CANCELLED = 'cancelled'


@dataclass
class ApplyResult:
    """Outcome of one planned action.

    Transitions: pending -> in_flight -> succeeded | failed, or
    pending -> skipped (never attempted).
    """
    resource_id: str
    action: str
    outcome: str = PENDING
    error: Optional[str] = None
    attempts: int = 0
    provider_id: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def key(self) -> str:
        return f'{self.action}:{self.resource_id}'

    def start(self) -> None:
        self.outcome = IN_FLIGHT
        self.started_at = time.time()

    def succeed(self, provider_id: Optional[str] = None) -> None:
        self.outcome = SUCCEEDED
        self.finished_at = time.time()
        if provider_id is not None:
            self.provider_id = provider_id

    def fail(self, error: str) -> None:
        self.outcome = FAILED
        self.finished_at = time.time()
        self.error = error

    def skip(self, reason: str) -> None:
        self.outcome = SKIPPED
        self.finished_at = time.time()
        self.error = reason

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return self.finished_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'resource': self.resource_id,
            'action': self.action,
            'outcome': self.outcome,
        }
        if self.attempts:
            d['attempts'] = self.attempts
        if self.provider_id is not None:
            d['provider_id'] = self.provider_id
        if self.duration is not None:
            d['duration'] = round(self.duration, 2)
        if self.error is not None:
            d['error'] = self.error
        return d


@dataclass
class ApplyReport:
    """Aggregated results of an apply or destroy run."""
    manifest_name: str
    destroy: bool = False
    results: list[ApplyResult] = field(default_factory=list)
    status: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def start(self) -> None:
        self.started_at = datetime.now()

    def finish(self, cancelled: bool = False) -> str:
        """Compute the run status.

        complete: no action failed and nothing was cancelled
        partial_failure: at least one action failed
        cancelled: the run was cancelled before all actions started
        """
        self.finished_at = datetime.now()
        if cancelled:
            self.status = RUN_CANCELLED
        elif self.failed:
            self.status = RUN_PARTIAL_FAILURE
        else:
            self.status = RUN_COMPLETE
        return self.status

    @property
    def success(self) -> bool:
        return self.status == RUN_COMPLETE

    def _with_outcome(self, outcome: str) -> list[ApplyResult]:
        return [r for r in self.results if r.outcome == outcome]

    @property
    def succeeded(self) -> list[ApplyResult]:
        return self._with_outcome(SUCCEEDED)

    @property
    def failed(self) -> list[ApplyResult]:
        return self._with_outcome(FAILED)

    @property
    def skipped(self) -> list[ApplyResult]:
        return self._with_outcome(SKIPPED)

    def outcome(self, resource_id: str) -> str:
        """Outcome for a resource (a replace's create wins over its delete)."""
        found = [r for r in self.results if r.resource_id == resource_id]
        if not found:
            raise KeyError(resource_id)
        return found[-1].outcome

    def get(self, resource_id: str, action: Optional[str] = None) -> ApplyResult:
        for result in reversed(self.results):
            if result.resource_id == resource_id and (action is None or result.action == action):
                return result
        raise KeyError(resource_id)

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def format_table(self) -> str:
        """Per-resource outcome table."""
        rows = [(r.resource_id, r.action, r.outcome, str(r.attempts or '-'),
                 format_duration(r.duration), r.error or '') for r in self.results]
        header = ('RESOURCE', 'ACTION', 'OUTCOME', 'ATTEMPTS', 'DURATION', 'DETAIL')
        lines = _table(header, rows)
        lines.append('')
        lines.append(
            f"Run {self.status or 'unfinished'}: {len(self.succeeded)} succeeded, "
            f"{len(self.failed)} failed, {len(self.skipped)} skipped"
        )
        return '\n'.join(lines)

    def to_dict(self) -> dict:
        return {
            'manifest': self.manifest_name,
            'verb': 'destroy' if self.destroy else 'apply',
            'status': self.status,
            'success': self.success,
            'duration_seconds': round(self.duration, 2),
            'results': [r.to_dict() for r in self.results],
        }

    def write(self, report_dir: Path) -> list[Path]:
        """Write JSON and markdown reports to report_dir."""
        report_dir.mkdir(parents=True, exist_ok=True)
        stamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        verb = 'destroy' if self.destroy else 'apply'
        base = report_dir / f"{stamp}.{self.manifest_name}.{verb}.{self.status}"

        json_path = base.with_name(base.name + '.json')
        with open(json_path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2)

        md_path = base.with_name(base.name + '.md')
        lines = [
            f"# {verb} {self.manifest_name}",
            "",
            f"**Status**: {self.status}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
            "",
            "| Resource | Action | Outcome | Detail |",
            "|----------|--------|---------|--------|",
        ]
        for r in self.results:
            lines.append(f"| {r.resource_id} | {r.action} | {r.outcome} | {r.error or ''} |")
        with open(md_path, 'w', encoding='utf-8') as f:
            f.write('\n'.join(lines) + '\n')
        return [json_path, md_path]


def format_plan(plan) -> str:
    """Render a plan as a table with a summary line."""
    markers = {'create': '+', 'update': '~', 'delete': '-', 'noop': ' '}
    rows = []
    for action in plan.actions:
        detail = action.reason
        if action.error:
            detail = f'ERROR: {action.error}'
        elif action.requires_confirmation:
            detail += ' [requires confirmation]'
        rows.append((markers.get(action.kind, '?'), action.resource_id, action.kind, detail))
    lines = _table(('', 'RESOURCE', 'ACTION', 'REASON'), rows)
    summary = plan.summary()
    lines.append('')
    lines.append(
        f"Plan: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['delete']} to delete, {summary['noop']} unchanged"
    )
    return '\n'.join(lines)


def _table(header: tuple, rows: list[tuple]) -> list[str]:
    widths = [len(h) for h in header]
    for row in rows:
        widths = [max(w, len(str(c))) for w, c in zip(widths, row)]
    fmt = '  '.join(f'{{:<{w}}}' for w in widths)
    lines = [fmt.format(*header).rstrip()]
    lines.extend(fmt.format(*row).rstrip() for row in rows)
    return lines
