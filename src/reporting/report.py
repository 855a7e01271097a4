"""Apply run reporting."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional


@dataclass
class OperationResult:
    """Result of one plan operation, as reported."""
    key: str
    address: str
    action: str
    status: str  # 'applied', 'failed', 'skipped', 'cancelled', 'unchanged'
    message: str = ''
    duration: float = 0.0
    resource_id: Optional[str] = None


@dataclass
class RunReport:
    """Collects an apply or destroy run and writes JSON and Markdown reports."""
    stack: str
    workspace: str
    report_dir: Path
    verb: str = 'apply'
    run_id: str = ''
    operations: list[OperationResult] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    summary: dict[str, int] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    success: bool = False
    cancelled: bool = False

    @classmethod
    def from_apply(cls, apply_report, plan, workspace: str, report_dir: Path,
                   verb: str = 'apply') -> 'RunReport':
        """Build from an executor ApplyReport and the plan it applied."""
        report = cls(
            stack=apply_report.stack or plan.desired.name,
            workspace=workspace,
            report_dir=Path(report_dir),
            verb=verb,
            run_id=apply_report.run_id,
            outputs=dict(apply_report.outputs),
            summary=plan.summary(),
            started_at=datetime.fromtimestamp(apply_report.started_at),
            finished_at=(datetime.fromtimestamp(apply_report.finished_at)
                         if apply_report.finished_at else None),
            success=apply_report.success,
            cancelled=apply_report.cancelled,
        )
        for outcome in apply_report.outcomes.values():
            report.operations.append(OperationResult(
                key=outcome.key,
                address=outcome.address,
                action=outcome.action,
                status=outcome.status,
                message=outcome.error or '',
                duration=outcome.duration or 0.0,
                resource_id=outcome.resource_id,
            ))
        return report

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def write(self) -> list[Path]:
        """Write JSON and Markdown reports into report_dir."""
        self.report_dir.mkdir(parents=True, exist_ok=True)
        return [self._write_json(), self._write_markdown()]

    def _write_json(self) -> Path:
        data = {
            'verb': self.verb,
            'stack': self.stack,
            'workspace': self.workspace,
            'run_id': self.run_id,
            'success': self.success,
            'cancelled': self.cancelled,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration': self.duration,
            'summary': dict(self.summary),
            'operations': [
                {
                    'key': op.key,
                    'status': op.status,
                    'resource_id': op.resource_id,
                    'message': op.message,
                    'duration': op.duration,
                }
                for op in self.operations
            ],
            'outputs': dict(self.outputs),
        }
        filename = self._report_filename('json')
        with open(filename, 'w', encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
        return filename

    def _write_markdown(self) -> Path:
        if self.cancelled:
            status = 'CANCELLED'
        else:
            status = 'SUCCEEDED' if self.success else 'FAILED'

        lines = [
            f"# {self.verb} {self.stack}",
            "",
            f"**Workspace**: {self.workspace}",
            f"**Run**: {self.run_id}",
            f"**Status**: {status}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
            "",
            "## Operations",
            "",
            "| Operation | Status | Duration | Message |",
            "|-----------|--------|----------|---------|",
        ]

        for op in self.operations:
            marker = {'applied': '✅', 'unchanged': '➖', 'failed': '❌',
                      'skipped': '⏭️', 'cancelled': '⏹️'}.get(op.status, '❓')
            lines.append(f"| {op.key} | {marker} {op.status} | {op.duration:.1f}s | {op.message} |")

        if self.outputs:
            lines.extend(["", "## Outputs", ""])
            for name, value in self.outputs.items():
                lines.append(f"- **{name}**: `{json.dumps(value, default=str)}`")

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        filename = self._report_filename('md')
        with open(filename, 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))
        return filename

    def _report_filename(self, ext: str) -> Path:
        """Report filename: timestamp, stack and outcome."""
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        status = 'succeeded' if self.success else 'failed'
        stack_slug = self.stack.replace('/', '-') if self.stack else ''
        if stack_slug:
            return self.report_dir / f"{timestamp}.{self.verb}.{stack_slug}.{status}.{ext}"
        return self.report_dir / f"{timestamp}.{self.verb}.{status}.{ext}"
