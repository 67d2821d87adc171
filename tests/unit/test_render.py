from __future__ import annotations

import re

from reconciler.engine.types import (
    Action,
    ApplyResult,
    DriftEntry,
    Plan,
    PlanMetadata,
    ResourceChange,
    ResourceOutcome,
    ResourceStatus,
)
from reconciler.render import (
    SENSITIVE,
    UNKNOWN_VALUE,
    changes_summary,
    format_apply_report,
    format_apply_summary,
    format_change,
    format_drift,
    format_plan,
    format_plan_summary,
    format_progress,
    has_actionable_changes,
)

_META = PlanMetadata(
    workspace="/tmp/ws",
    destroy=False,
    refresh=True,
    state_lineage="lineage-1",
    state_serial=0,
    config_digest="cdigest",
    engine_version="0.1.0",
)


def _strip_ansi(text: str) -> str:
    return re.sub(r"\x1b\[[0-9;]*m", "", text)


def _change(address: str, action: Action, **kwargs) -> ResourceChange:
    return ResourceChange(
        address=address, resource_type=address.split(".", 1)[0], action=action, **kwargs
    )


class TestFormatChange:
    def test_create_shows_planned_values(self) -> None:
        change = _change(
            "vm.web",
            Action.CREATE,
            planned={"name": "web", "size": 2, "group_id": None, "password": "hunter2"},
            unknown=["group_id"],
            sensitive=["password"],
        )
        out = format_change(change, color=False)
        assert "# vm.web will be created" in out
        assert 'resource "vm" "web"' in out
        assert '+ name     = "web"' in out
        assert "size     = 2" in out
        assert f"group_id = {UNKNOWN_VALUE}" in out
        assert f"password = {SENSITIVE}" in out
        assert "hunter2" not in out

    def test_update_shows_diff(self) -> None:
        change = _change(
            "group.prod",
            Action.UPDATE,
            diff={"tags": {"from": ["a"], "to": ["a", "b"]}},
        )
        out = format_change(change, color=False)
        assert "will be updated in-place" in out
        assert "~ tags = ['a'] -> ['a', 'b']" in out

    def test_replace_marks_forcing_attribute(self) -> None:
        change = _change(
            "group.prod",
            Action.DESTROY_THEN_CREATE,
            diff={"location": {"from": "westeurope", "to": "northeurope"}},
            replace_reasons=["location"],
        )
        out = format_change(change, color=False)
        assert "must be replaced" in out
        assert '-/+ resource "group" "prod"' in out
        assert '"westeurope" -> "northeurope" # forces replacement' in out

    def test_create_before_destroy_symbol(self) -> None:
        change = _change("group.prod", Action.CREATE_BEFORE_DESTROY, replace_reasons=["requested"])
        out = format_change(change, color=False)
        assert "must be replaced (requested)" in out
        assert "+/- resource" in out

    def test_tainted_in_header(self) -> None:
        change = _change("vm.a", Action.DESTROY_THEN_CREATE, replace_reasons=["tainted"])
        assert "(tainted)" in format_change(change, color=False)

    def test_delete_shows_prior_with_sensitive_masked(self) -> None:
        change = _change(
            "vm.old",
            Action.DELETE,
            prior={"name": "old", "password": "hunter2"},
            sensitive=["password"],
        )
        out = format_change(change, color=False)
        assert "will be destroyed" in out
        assert '- name     = "old"' in out
        assert "hunter2" not in out

    def test_indexed_address_keeps_index_in_name(self) -> None:
        out = format_change(_change('vm.web["a"]', Action.CREATE, planned={}), color=False)
        assert 'resource "vm" "web["a"]"' in out

    def test_color_mode_contains_ansi(self) -> None:
        out = format_change(_change("vm.web", Action.CREATE, planned={"name": "web"}))
        assert "\x1b[" in out
        assert "vm.web will be created" in _strip_ansi(out)


class TestFormatPlan:
    def test_noop_only(self) -> None:
        plan = Plan(metadata=_META, changes=[_change("vm.a", Action.NOOP)])
        assert not has_actionable_changes(plan)
        assert format_plan(plan, color=False) == "No changes. Resources are up-to-date."

    def test_body_and_summary(self) -> None:
        plan = Plan(
            metadata=_META,
            changes=[
                _change("vm.a", Action.CREATE, planned={"name": "a"}),
                _change("vm.b", Action.NOOP),
                _change("vm.c", Action.DELETE, prior={"name": "c"}),
            ],
        )
        out = format_plan(plan, color=False)
        assert has_actionable_changes(plan)
        assert "vm.b" not in out
        assert out.endswith("Plan: 1 to add, 0 to change, 1 to destroy.")


class TestSummaries:
    def test_replace_counts_as_add_and_destroy(self) -> None:
        changes = [
            _change("a.x", Action.DESTROY_THEN_CREATE),
            _change("a.y", Action.CREATE_BEFORE_DESTROY),
            _change("a.z", Action.UPDATE),
            _change("a.w", Action.NOOP),
        ]
        assert changes_summary(changes) == {"create": 2, "update": 1, "delete": 2}

    def test_plan_summary(self) -> None:
        out = format_plan_summary({"create": 2, "update": 1, "delete": 3}, color=False)
        assert out == "Plan: 2 to add, 1 to change, 3 to destroy."

    def test_plan_summary_color(self) -> None:
        out = format_plan_summary({"create": 1, "update": 0, "delete": 0}, color=True)
        assert "\x1b[" in out
        assert _strip_ansi(out) == "Plan: 1 to add, 0 to change, 0 to destroy."

    def test_apply_summary_complete(self) -> None:
        result = ApplyResult(
            outcomes={
                "vm.a": ResourceOutcome(
                    address="vm.a", action=Action.CREATE, status=ResourceStatus.APPLIED
                )
            },
            applied=[_change("vm.a", Action.CREATE)],
        )
        out = format_apply_summary(result, color=False)
        assert out == "Apply complete! Resources: 1 added, 0 changed, 0 destroyed."

    def test_apply_summary_with_errors(self) -> None:
        result = ApplyResult(
            outcomes={
                "vm.a": ResourceOutcome(
                    address="vm.a",
                    action=Action.CREATE,
                    status=ResourceStatus.FAILED,
                    error_type="ApplyFailedError",
                    error="boom",
                )
            }
        )
        out = format_apply_summary(result, color=False)
        assert out.startswith("Apply finished with errors.")
        assert "0 added" in out

    def test_apply_summary_canceled(self) -> None:
        out = format_apply_summary(ApplyResult(canceled=True), color=False)
        assert out.startswith("Apply canceled.")


class TestApplyReport:
    def test_lists_every_address_sorted(self) -> None:
        result = ApplyResult(
            outcomes={
                "vm.b": ResourceOutcome(
                    address="vm.b",
                    action=Action.CREATE,
                    status=ResourceStatus.SKIPPED,
                    error_type="Skipped",
                    error="dependency vm.a failed",
                ),
                "vm.a": ResourceOutcome(
                    address="vm.a",
                    action=Action.CREATE,
                    status=ResourceStatus.FAILED,
                    error_type="ApplyFailedError",
                    error="boom",
                ),
                "vm.c": ResourceOutcome(
                    address="vm.c", action=Action.NOOP, status=ResourceStatus.NOOP
                ),
            }
        )
        lines = format_apply_report(result, color=False).splitlines()
        assert lines == [
            "  failed  vm.a (create): boom",
            "  skipped vm.b (create): dependency vm.a failed",
            "  no-op   vm.c (no-op)",
        ]


class TestProgressAndDrift:
    def test_progress_lines(self) -> None:
        change = _change("vm.a", Action.UPDATE)
        assert format_progress(change, "start", color=False) == "vm.a: Modifying..."
        assert format_progress(change, "done", color=False) == "vm.a: Modifications complete"
        assert format_progress(change, "failed", color=False) == "vm.a: Failed"

    def test_no_drift(self) -> None:
        assert format_drift([]) == "No drift detected."

    def test_drift_masks_sensitive(self) -> None:
        entries = [
            DriftEntry(
                address="vm.a",
                resource_type="vm",
                kind="changed",
                diff={
                    "size": {"from": 1, "to": 2},
                    "password": {"from": "old", "to": "new"},
                },
                sensitive=["password"],
            ),
            DriftEntry(address="vm.b", resource_type="vm", kind="vanished"),
        ]
        out = format_drift(entries)
        assert "vm.a has changed outside of the engine" in out
        assert "~ size     = 1 -> 2" in out
        assert f"~ password = {SENSITIVE}" in out
        assert "\"new\"" not in out
        assert "vm.b has been deleted outside of the engine" in out
