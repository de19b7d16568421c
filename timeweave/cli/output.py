"""
CLI output formatting helpers.

Provides consistent formatting for human-readable and JSON output.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from timeweave.branches.tree import BranchNode
from timeweave.merge.details import describe_conflicts
from timeweave.merge.models import MergeConflict, MergePreview
from timeweave.storage.models import Branch, Version


class OutputFormat(str, Enum):
    """Output format options."""

    HUMAN = "human"
    JSON = "json"


error_console = Console(stderr=True)


def _when(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


class Formatter:
    """Output formatter with support for multiple formats."""

    def __init__(
        self,
        format: OutputFormat = OutputFormat.HUMAN,
        verbose: bool = False,
        color: bool = True,
    ):
        """
        Initialize formatter.

        Args:
            format: Output format (human or json)
            verbose: Enable verbose output
            color: Enable colored output
        """
        self.format = format
        self.verbose = verbose
        self.console = Console(no_color=not color)

    @property
    def is_json(self) -> bool:
        return self.format == OutputFormat.JSON

    def print_json(self, data: Any):
        """Print data as JSON."""
        print(json.dumps(data, indent=2, default=str))

    def success(self, message: str, data: Optional[dict] = None):
        """Display success message."""
        if self.is_json:
            output = {"status": "success", "message": message}
            if data:
                output.update(data)
            self.print_json(output)
        else:
            self.console.print(f"[green]✓[/green] {message}")
            if data and self.verbose:
                for key, value in data.items():
                    self.console.print(f"  [dim]{key}:[/dim] {value}")

    def error(self, message: str, code: Optional[str] = None, details: Optional[dict] = None):
        """Display error message."""
        if self.is_json:
            self.print_json({
                "status": "error",
                "error": {"message": message, "code": code or "ERROR", "details": details},
            })
        else:
            error_console.print(f"[red]✗[/red] {message}")
            if code:
                error_console.print(f"  [dim]Code:[/dim] {code}")
            if details:
                for key, value in details.items():
                    error_console.print(f"  [dim]{key}:[/dim] {value}")

    def warning(self, message: str):
        """Display warning message."""
        if self.is_json:
            self.print_json({"status": "warning", "message": message})
        else:
            self.console.print(f"[yellow]![/yellow] {message}")

    def print_branches(self, branches: list[Branch]):
        """Print a list of branches."""
        if self.is_json:
            self.print_json({"branches": [b.to_dict() for b in branches], "total": len(branches)})
            return
        if not branches:
            self.console.print("[dim]No branches found[/dim]")
            return

        table = Table(title="Branches")
        table.add_column("ID", style="cyan")
        table.add_column("Name")
        table.add_column("Parent")
        table.add_column("Diverged")
        for branch in branches:
            table.add_row(
                branch.id,
                branch.name + (" [yellow]*[/yellow]" if branch.is_pinned else ""),
                branch.parent_id or "[dim]root[/dim]",
                _when(branch.diverged_at),
            )
        self.console.print(table)

    def print_hierarchy(self, roots: list[BranchNode]):
        """Print the branch forest as a tree."""
        if self.is_json:
            self.print_json({"roots": [r.to_dict() for r in roots]})
            return

        tree = Tree("[bold]Branches[/bold]")

        def attach(parent: Tree, node: BranchNode):
            label = f"[cyan]{node.branch.name}[/cyan] [dim]{node.branch.id}[/dim]"
            if node.branch.diverged_at:
                label += f" [dim](diverged {_when(node.branch.diverged_at)})[/dim]"
            child = parent.add(label)
            for grandchild in node.children:
                attach(child, grandchild)

        for root in roots:
            attach(tree, root)
        self.console.print(tree)

    def print_versions(self, versions: list[Version], title: str = "Versions"):
        """Print version rows."""
        if self.is_json:
            self.print_json({"versions": [v.to_dict(include_payload=False) for v in versions]})
            return
        if not versions:
            self.console.print("[dim]No versions found[/dim]")
            return

        table = Table(title=title)
        table.add_column("ID", style="cyan")
        table.add_column("Entity")
        table.add_column("#", justify="right")
        table.add_column("Valid From")
        table.add_column("Valid To")
        table.add_column("Comment")
        for version in versions:
            table.add_row(
                version.id,
                f"{version.entity_type}:{version.entity_id}",
                str(version.version),
                _when(version.valid_from),
                _when(version.valid_to),
                version.comment or "",
            )
        self.console.print(table)

    def print_payload(self, version: Version, payload: dict[str, Any]):
        """Print one version with its decoded payload."""
        if self.is_json:
            data = version.to_dict(include_payload=False)
            data["payload"] = payload
            self.print_json(data)
            return
        self.console.print(
            f"[cyan]{version.entity_type}:{version.entity_id}[/cyan] "
            f"v{version.version} in branch {version.branch_id}"
        )
        self.console.print(f"  [dim]Valid:[/dim] {_when(version.valid_from)} .. {_when(version.valid_to)}")
        self.console.print_json(json.dumps(payload, default=str))

    def print_conflicts(
        self,
        conflicts: list[MergeConflict],
        entity_type: str = "",
        title: str = "Conflicts",
    ):
        """Print merge conflicts, with descriptions when verbose."""
        table = Table(title=title)
        table.add_column("Path", style="cyan")
        table.add_column("Type")
        table.add_column("Base")
        table.add_column("Source")
        table.add_column("Target")
        for conflict in conflicts:
            row = conflict.to_dict()
            table.add_row(
                row["path"],
                f"[red]{row['type']}[/red]",
                json.dumps(row["base_value"], default=str),
                json.dumps(row["source_value"], default=str),
                json.dumps(row["target_value"], default=str),
            )
        self.console.print(table)
        if self.verbose:
            for detail in describe_conflicts(entity_type, conflicts):
                self.console.print(f"  {detail.description}")
                if detail.suggestion:
                    self.console.print(f"    [dim]{detail.suggestion}[/dim]")

    def print_preview(self, preview: MergePreview):
        """Print a merge preview."""
        if self.is_json:
            self.print_json(preview.to_dict())
            return

        self.console.print(f"Common ancestor: [cyan]{preview.common_ancestor_id}[/cyan]")
        for entity in preview.entities:
            self.console.print()
            self.console.print(f"[bold]{entity.entity_type}:{entity.entity_id}[/bold]")
            for change in entity.auto_resolved_changes:
                self.console.print(
                    f"  [green]auto[/green] {change.path} -> "
                    f"{json.dumps(change.to_dict()['resolved_value'], default=str)}"
                )
            if entity.conflicts:
                self.print_conflicts(entity.conflicts, entity_type=entity.entity_type)

        status = "[red]manual resolution required[/red]" if preview.requires_manual_resolution else "[green]clean[/green]"
        self.console.print()
        self.console.print(
            f"{preview.total_conflicts} conflicts, {preview.total_auto_resolved} auto-resolved: {status}"
        )
