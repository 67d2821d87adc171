from __future__ import annotations

import argparse
import json
import uuid
from pathlib import Path
from typing import Any

from reconciler.config import apply, configure_logging, load, plan
from reconciler.core import Provider, ResourceSchema
from reconciler.engine import ResourceTypeRegistry
from reconciler.render import (
    format_apply_report,
    format_apply_summary,
    format_plan,
    format_progress,
)
from reconciler.resources import Configuration, ref


class DirectoryProvider(Provider):
    """Stores every object as a JSON file under *root*."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, external_id: str) -> Path:
        return self.root / f"{external_id}.json"

    def create(self, resource_type: str, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        external_id = f"{resource_type}-{uuid.uuid4().hex[:8]}"
        observed = {**attributes, "id": external_id}
        self._path(external_id).write_text(json.dumps(observed), encoding="utf-8")
        return external_id, observed

    def read(self, resource_type: str, external_id: str) -> dict[str, Any] | None:
        path = self._path(external_id)
        if not path.is_file():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def update(
        self, resource_type: str, external_id: str, attribute_diff: dict[str, Any]
    ) -> dict[str, Any]:
        observed = {**(self.read(resource_type, external_id) or {}), **attribute_diff}
        self._path(external_id).write_text(json.dumps(observed), encoding="utf-8")
        return observed

    def delete(self, resource_type: str, external_id: str) -> None:
        self._path(external_id).unlink(missing_ok=True)


def _configuration(regions: list[str]) -> Configuration:
    config = Configuration()
    config.declare("network.main", {"name": "main", "cidr": "10.0.0.0/16"})
    config.declare(
        "subnet.zone",
        {
            "name": "${each.key}",
            "network_id": ref("network.main.id"),
        },
        for_each=regions,
    )
    config.declare(
        "vm.web",
        {"name": "web", "subnet_ids": ref("subnet.zone.id"), "image": "debian-12"},
        lifecycle={"create_before_destroy": True},
    )
    return config


def main() -> None:
    parser = argparse.ArgumentParser(description="Plan/apply a small configuration via Python API")
    parser.add_argument("--workspace", default=".", help="Workspace root")
    parser.add_argument("--region", action="append", default=None, help="Subnet region (repeat)")
    parser.add_argument("--apply", action="store_true", help="Apply the generated plan")
    parser.add_argument("-v", "--verbose", action="count", default=0)
    args = parser.parse_args()

    configure_logging(args.verbose)
    workspace = load(Path(args.workspace))

    provider = DirectoryProvider(workspace.root / "objects")
    registry = ResourceTypeRegistry()
    registry.register(
        ResourceSchema(resource_type="network", force_new=frozenset({"cidr"})), provider
    )
    registry.register(ResourceSchema(resource_type="subnet"), provider)
    registry.register(
        ResourceSchema(
            resource_type="vm", force_new=frozenset({"image"}), compare={"subnet_ids": "set"}
        ),
        provider,
    )

    plan_obj = plan(workspace, _configuration(args.region or ["west", "east"]), registry)
    print(format_plan(plan_obj))

    if args.apply:
        result = apply(
            workspace,
            plan_obj,
            registry,
            progress=lambda change, event: print(format_progress(change, event)),
        )
        print(format_apply_report(result))
        print(format_apply_summary(result))


if __name__ == "__main__":
    main()
