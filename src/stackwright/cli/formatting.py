"""Output formatting for stackwright CLI commands."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from stackwright.builder import Stack
from stackwright.models import ExecutionResult, UnitStatus
from stackwright.plan import ExecutionPlan

logger = logging.getLogger(__name__)
console = Console()


class OutputFormatter:
    """Handles formatting CLI output for different commands."""

    STATUS_TEXT = {
        UnitStatus.SUCCEEDED: "[green]Succeeded[/green]",
        UnitStatus.FAILED: "[red]Failed[/red]",
        UnitStatus.SKIPPED: "[yellow]Skipped[/yellow]",
        UnitStatus.NOT_SELECTED: "[dim]Not selected[/dim]",
    }

    def show_startup_banner(
        self,
        stack_path: Path,
        plan: ExecutionPlan,
        parallelism: int,
        filters: list[str],
    ) -> None:
        """Show startup banner for an action command.

        Args:
            stack_path: Path to the stack file
            plan: The plan about to run
            parallelism: Effective parallelism
            filters: Filter expressions given on the command line

        """
        startup_panel = Panel(
            f"[bold cyan]🚀 Running {plan.action.value}[/bold cyan]\n\n"
            f"[bold]Stack:[/bold] {plan.stack.name} ({stack_path})\n"
            f"[bold]Filters:[/bold] {', '.join(filters) if filters else 'all units'}\n"
            f"[bold]Units:[/bold] {len(plan)} planned, {len(plan.not_selected)} not selected\n"
            f"[bold]Parallelism:[/bold] {parallelism}",
            title="🧱 Stackwright",
            border_style="cyan",
        )
        console.print(startup_panel)

    def format_execution_result(self, result: ExecutionResult, verbose: bool = False) -> None:
        """Format and print the per-unit summary table and failure details.

        Args:
            result: ExecutionResult from the scheduler.
            verbose: Also show skip reasons and mocked providers.

        """
        table = Table(
            title=f"📊 {result.action.value.title()} Results Summary",
            show_header=True,
            header_style="bold magenta",
        )
        table.add_column("Unit", style="cyan", no_wrap=True)
        table.add_column("Status")
        table.add_column("Duration", style="blue")
        if verbose:
            table.add_column("Details", style="dim")

        for name, unit_result in result.units.items():
            duration = (
                f"{unit_result.duration_seconds:.2f}s"
                if unit_result.status in (UnitStatus.SUCCEEDED, UnitStatus.FAILED)
                else "-"
            )
            row = [name, self.STATUS_TEXT[unit_result.status], duration]
            if verbose:
                details = unit_result.reason or ""
                if unit_result.mocked:
                    details = f"mocked: {', '.join(unit_result.mocked)}"
                row.append(details)
            table.add_row(*row)

        console.print(table)

        for name in result.failed:
            error_text = result.units[name].error or "Unknown error"
            console.print(
                Panel(f"[red]{error_text}[/red]", title=f"Error in {name}", border_style="red")
            )

        if result.cancelled:
            console.print("\n[yellow]⚠️  Run was cancelled; remaining units were skipped[/yellow]")

    def format_outputs(self, result: ExecutionResult) -> None:
        """Print outputs of every unit that reported some."""
        for name, unit_result in result.units.items():
            if unit_result.outputs is None:
                continue
            tree = Tree(f"[bold green]{name}[/bold green]")
            for key, value in sorted(unit_result.outputs.items()):
                tree.add(f"{key} = [white]{json.dumps(value, default=str)}[/white]")
            console.print(tree)

    def show_completion_summary(self, result: ExecutionResult, report_path: Path | None) -> None:
        """Show completion summary banner.

        Args:
            result: ExecutionResult for summary statistics.
            report_path: Where the JSON report was written, if anywhere.

        """
        style = "green" if result.success else "red"
        heading = "✅ Run Complete" if result.success else "❌ Run Finished With Failures"
        lines = [
            f"[bold {style}]{heading}[/bold {style}]\n",
            f"[bold]Succeeded:[/bold] {len(result.succeeded)}",
            f"[bold]Failed:[/bold] {len(result.failed)}",
            f"[bold]Skipped:[/bold] {len(result.skipped)}",
            f"[bold]Not selected:[/bold] {len(result.not_selected)}",
            f"[bold]Duration:[/bold] {result.total_duration_seconds:.2f}s",
        ]
        if report_path is not None:
            lines.append(f"[bold]Report:[/bold] {report_path}")
        console.print(Panel("\n".join(lines), title="🎉 Completion Summary", border_style=style))

    def format_stack_graph(self, stack: Stack) -> None:
        """Print a validated stack and its dependency levels.

        Args:
            stack: The built stack.

        """
        success_content = f"""
[green]✅ Stack validation successful![/green]

[bold]Name:[/bold] {stack.name}
[bold]Description:[/bold] {stack.definition.description or '-'}
[bold]Units:[/bold] {len(stack.units)}
[bold]Depth:[/bold] {stack.graph.get_depth()}
[bold]State bucket:[/bold] {stack.state_bucket}
        """.strip()
        console.print(Panel(success_content, title="📋 Stack", border_style="green"))

        if not stack.units:
            return

        tree = Tree("[bold blue]🔄 Unit Dependencies[/bold blue]")
        for level, names in enumerate(stack.graph.levels()):
            level_branch = tree.add(f"[dim]Level {level}[/dim]")
            for name in names:
                unit = stack.units[name]
                branch = level_branch.add(f"[cyan]{name}[/cyan] [dim]({unit.path})[/dim]")
                branch.add(f"Source: [yellow]{unit.source}[/yellow]")
                for edge in stack.graph.edges(name):
                    flags = []
                    if not edge.enabled:
                        flags.append("disabled")
                    if edge.skip_outputs:
                        flags.append("skip outputs")
                    if edge.mock_outputs:
                        flags.append("mocked")
                    suffix = f" [dim]({', '.join(flags)})[/dim]" if flags else ""
                    branch.add(f"Depends on: [blue]{edge.provider}[/blue]{suffix}")
        console.print(tree)

        logger.debug("Stack has %d units", len(stack.units))

    def show_generated(self, paths: list[Path], output_dir: Path) -> None:
        """Show the unit directories written by generate."""
        console.print(
            f"\n[green]✅ Generated {len(paths)} units into {output_dir}[/green]"
        )
        for path in paths:
            console.print(f"  [dim]{path}[/dim]")

    def show_file_save_success(self, file_path: Path) -> None:
        """Show successful file save message."""
        console.print(f"\n[green]✅ Saved: {file_path}[/green]")
