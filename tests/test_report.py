"""Tests for engine.report - run report files."""

import json
import sys
from datetime import datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from engine.report import RunReport
from engine.state import RunState


def _run_state(fail=False):
    rs = RunState('web', 'apply')
    rs.start()
    main = rs.add_node('main')
    main.plan('create')
    main.start()
    main.complete('vpc-1')
    sub = rs.add_node('sub')
    sub.plan('create')
    if fail:
        sub.start()
        sub.fail('PermanentProviderError: 400 InvalidParameterValue')
    else:
        sub.start()
        sub.complete('subnet-1')
    rs.finish()
    return rs


class TestRunReport:
    """Tests for RunReport."""

    def test_write_creates_both_files(self, tmp_path):
        report = RunReport(_run_state(), tmp_path / 'reports',
                           created_at=datetime(2026, 3, 1, 12, 30, 0))
        json_path, md_path = report.write()

        assert json_path.name == 'web-apply-20260301-123000.json'
        assert md_path.name == 'web-apply-20260301-123000.md'

        data = json.loads(json_path.read_text())
        assert data['status'] == 'PASSED'
        assert data['summary'] == {'applied': 2}
        assert 'error' not in data

    def test_markdown_table(self, tmp_path):
        report = RunReport(_run_state(fail=True), tmp_path)
        _, md_path = report.write()
        text = md_path.read_text()

        assert '# web apply' in text
        assert '**Status**: FAILED' in text
        assert '| main | create | ✅ applied |' in text
        assert '❌ failed' in text
        assert 'InvalidParameterValue' in text

    def test_to_dict_includes_first_error(self, tmp_path):
        report = RunReport(_run_state(fail=True), tmp_path, plan_summary={'create': 2})
        data = report.to_dict()
        assert data['error'].startswith('PermanentProviderError')
        assert data['plan'] == {'create': 2}

    def test_status_halted_and_cancelled(self, tmp_path):
        rs = _run_state()
        rs.cancelled = True
        assert RunReport(rs, tmp_path).status == 'CANCELLED'
        rs.fatal_error = 'state write failed'
        assert RunReport(rs, tmp_path).status == 'HALTED'
