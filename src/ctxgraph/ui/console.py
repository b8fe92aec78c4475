"""Rich-powered console output for ctxgraph."""

from __future__ import annotations

from rich.console import Console as RichConsole
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from ctxgraph import __version__
from ctxgraph.context.models import (
    ArtifactSequence,
    CacheStats,
    EnrichedContext,
    EntityStats,
    FactStats,
    NumericStats,
    PersonContext,
    PersonProfile,
    PersonRelationship,
)


class Console:
    """Terminal output for ctxgraph using Rich."""

    def __init__(self) -> None:
        self.console = RichConsole()

    def banner(self) -> None:
        self.console.print(
            Panel(
                f"[bold cyan]ctxgraph[/bold cyan] [dim]v{__version__}[/dim]\n"
                "[dim]Enriched cross-document context for artifact analysis[/dim]",
                border_style="cyan",
                padding=(1, 2),
            )
        )

    def success(self, message: str) -> None:
        self.console.print(f"[green]✓[/green] {message}")

    def error(self, message: str) -> None:
        self.console.print(f"[red]✗[/red] {message}")

    def warning(self, message: str) -> None:
        self.console.print(f"[yellow]![/yellow] {message}")

    def info(self, message: str) -> None:
        self.console.print(f"[blue]i[/blue] {message}")

    def show_context(self, context: EnrichedContext) -> None:
        """Budget summary, related-artifact scores, then the rendered sections."""
        over = context.was_truncated
        color = "red" if over else "green"
        self.console.print(
            Panel(
                f"[bold]Artifact:[/bold] {context.target_artifact_id}\n"
                f"[bold]Tokens:[/bold] [{color}]{context.estimated_tokens:,}"
                f"[/{color}] / {context.token_budget:,} ({context.budget_used_pct:.0f}%)"
                + (" [red]over budget[/red]" if over else "")
                + f"\n[bold]Time:[/bold] {context.build_time_ms:.1f}ms",
                title="[bold]Enriched Context[/bold]",
                border_style=color,
            )
        )

        table = Table(title="Token Breakdown", border_style="cyan")
        table.add_column("Component", style="bold")
        table.add_column("Tokens", justify="right", style="cyan")
        for component, tokens in context.component_breakdown.items():
            table.add_row(component, str(tokens))
        self.console.print(table)

        if context.related_artifacts:
            related = Table(title="Related Artifacts", border_style="cyan")
            related.add_column("Artifact", style="bold")
            related.add_column("Category")
            related.add_column("Score", justify="right", style="cyan")
            related.add_column("Sem", justify="right", style="dim")
            related.add_column("Ent", justify="right", style="dim")
            related.add_column("Time", justify="right", style="dim")
            related.add_column("Type", justify="right", style="dim")
            related.add_column("Facts", justify="right", style="dim")
            related.add_column("Tokens", justify="right")
            for cand in context.related_artifacts:
                related.add_row(
                    cand.filename,
                    cand.category or "-",
                    f"{cand.total_score:.2f}",
                    f"{cand.semantic_score:.2f}",
                    f"{cand.entity_score:.2f}",
                    f"{cand.temporal_score:.2f}",
                    f"{cand.type_score:.2f}",
                    f"{cand.density_score:.2f}",
                    str(cand.estimated_tokens),
                )
            self.console.print(related)

        self.console.print()
        self.console.print(context.render(), markup=False, highlight=False)

    def show_sequences(self, sequences: list[ArtifactSequence]) -> None:
        table = Table(title="Detected Sequences", border_style="cyan")
        table.add_column("Name", style="bold")
        table.add_column("Type")
        table.add_column("Method", style="dim")
        table.add_column("Artifacts", justify="right")
        table.add_column("From")
        table.add_column("To")
        table.add_column("Confidence", justify="right", style="cyan")
        for seq in sequences:
            table.add_row(
                seq.name,
                seq.sequence_type.value,
                seq.detection_method.value,
                str(len(seq.artifact_ids)),
                f"{seq.start_date:%Y-%m-%d}",
                f"{seq.end_date:%Y-%m-%d}",
                f"{seq.confidence:.2f}",
            )
        self.console.print(table)

    def show_person(
        self, profile: PersonProfile, relationships: list[PersonRelationship]
    ) -> None:
        descriptor = ", ".join(p for p in (profile.role, profile.organization) if p)
        tree = Tree(
            f"[bold cyan]{profile.name}[/bold cyan]"
            + (f" [dim]({descriptor})[/dim]" if descriptor else "")
            + f" [dim]{profile.classification.value}[/dim]"
        )
        tree.add(
            f"{profile.mention_count} mentions across {profile.artifact_count} artifacts"
        )
        if profile.recent_snippet:
            tree.add(f"[dim]Recent:[/dim] {profile.recent_snippet}")
        if relationships:
            partners = tree.add("[bold]Appears with[/bold]")
            for rel in relationships:
                _, name = rel.other(profile.person_id)
                partners.add(
                    f"{name} [dim]x{rel.co_occurrences}[/dim] "
                    f"strength=[cyan]{rel.strength:.2f}[/cyan]"
                )
        self.console.print(tree)

    def show_program_stats(
        self,
        entity_stats: EntityStats,
        fact_stats: FactStats,
        key_people: list[PersonContext],
    ) -> None:
        table = Table(title="Program Statistics", border_style="cyan")
        table.add_column("Metric", style="bold")
        table.add_column("Value", justify="right", style="cyan")

        table.add_row("People", str(entity_stats.total_people))
        table.add_row("Relationships", str(entity_stats.total_relationships))
        table.add_row("Avg co-occurrences", f"{entity_stats.avg_co_occurrences:.2f}")
        if entity_stats.most_connected_person:
            table.add_row(
                "Most connected",
                f"{entity_stats.most_connected_person} "
                f"({entity_stats.most_connected_relationships})",
            )
        table.add_section()
        table.add_row("Facts", str(fact_stats.total_facts))
        for fact_type, count in fact_stats.facts_by_type.items():
            table.add_row(f"  {fact_type}", str(count))
        table.add_row("Conflicts", str(fact_stats.total_conflicts))
        table.add_row("  major", str(fact_stats.major_conflicts))
        self.console.print(table)

        if key_people:
            self.console.print("\n[bold]Key people:[/bold]")
            for person in key_people:
                with_str = f" [dim]with {', '.join(person.co_occurs_with)}[/dim]" \
                    if person.co_occurs_with else ""
                self.console.print(
                    f"  [bold]{person.name}[/bold] "
                    f"[cyan]{person.artifact_count}[/cyan] artifacts{with_str}"
                )

    def show_facts(self, fact_key: str, values: list[str], stats: NumericStats | None) -> None:
        self.console.print(f"[bold]{fact_key}[/bold]: {len(values)} values")
        for value in values:
            self.console.print(f"  {value}")
        if stats is not None:
            outliers = ", ".join(f"{v:g}" for v in stats.outliers) or "none"
            self.console.print(
                f"  [dim]mean[/dim] {stats.mean:g}  [dim]std[/dim] {stats.std_dev:g}  "
                f"[dim]min[/dim] {stats.min:g}  [dim]max[/dim] {stats.max:g}  "
                f"[dim]outliers[/dim] [yellow]{outliers}[/yellow]"
            )

    def show_cache_stats(self, stats: CacheStats) -> None:
        table = Table(title="Context Cache", border_style="cyan")
        table.add_column("Tier", style="bold")
        table.add_column("Entries", justify="right", style="cyan")
        table.add_row("local", str(stats.local_entries))
        table.add_row(
            "shared", "-" if stats.shared_entries is None else str(stats.shared_entries)
        )
        table.add_row("durable", str(stats.durable_entries))
        table.add_row("  expired", str(stats.durable_expired))
        table.add_row("  avg tokens", f"{stats.durable_avg_tokens:.1f}")
        table.add_row("repopulation failures", str(stats.repopulation_failures))
        self.console.print(table)
