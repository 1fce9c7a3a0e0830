"""Run reporting.

Writes an end-of-run summary for apply and destroy runs as JSON and markdown
under the report directory.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from engine.state import RunState

logger = logging.getLogger(__name__)

STATUS_MARKERS = {
    'applied': '✅',
    'destroyed': '✅',
    'failed': '❌',
    'skipped': '⏭️',
}


@dataclass
class RunReport:
    """Collects a run's node results and writes report files."""
    run_state: RunState
    report_dir: Path
    created_at: datetime = field(default_factory=datetime.now)
    plan_summary: Optional[dict] = None

    @property
    def status(self) -> str:
        if self.run_state.fatal_error:
            return 'HALTED'
        if self.run_state.cancelled:
            return 'CANCELLED'
        return 'PASSED' if self.run_state.success else 'FAILED'

    def write(self) -> list[Path]:
        """Write JSON and markdown reports; return the written paths."""
        self.report_dir.mkdir(parents=True, exist_ok=True)
        paths = [self._write_json(), self._write_markdown()]
        logger.info(f"Report written to {paths[0]}")
        return paths

    def _write_json(self) -> Path:
        path = self._report_filename('json')
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2)
        return path

    def _write_markdown(self) -> Path:
        rs = self.run_state
        lines = [
            f"# {rs.stack} {rs.verb}",
            "",
            f"**Status**: {self.status}",
            f"**Date**: {self.created_at.strftime('%Y-%m-%d %H:%M:%S')}",
            f"**Duration**: {rs.duration:.1f}s",
            "",
        ]
        if rs.fatal_error:
            lines.extend([f"**Fatal**: {rs.fatal_error}", ""])

        lines.extend([
            "## Resources",
            "",
            "| Resource | Action | Status | Duration | Message |",
            "|----------|--------|--------|----------|---------|",
        ])
        for ns in rs.nodes.values():
            marker = STATUS_MARKERS.get(ns.status, '❓')
            duration = f"{ns.duration:.1f}s" if ns.duration is not None else '-'
            lines.append(
                f"| {ns.name} | {ns.action} | {marker} {ns.status} | {duration} | {ns.error or ''} |"
            )

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        path = self._report_filename('md')
        with open(path, 'w', encoding='utf-8') as f:
            f.write('\n'.join(lines))
        return path

    def _report_filename(self, ext: str) -> Path:
        timestamp = self.created_at.strftime('%Y%m%d-%H%M%S')
        stack_slug = self.run_state.stack.replace('/', '-') or 'stack'
        return self.report_dir / f"{stack_slug}-{self.run_state.verb}-{timestamp}.{ext}"

    def to_dict(self) -> dict:
        result = self.run_state.to_dict()
        result['status'] = self.status
        result['created_at'] = self.created_at.isoformat()
        if self.plan_summary is not None:
            result['plan'] = self.plan_summary
        failures = self.run_state.failures
        if failures:
            result['error'] = next(iter(failures.values()))
        return result
