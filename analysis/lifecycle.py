"""
Lifecycle transition model.

Raw status histories bounce back and forth (Review -> Draft -> Review). Each
history is collapsed into a forward-only trace and the transitions of all
traces are counted, giving an acyclic flow suitable for a Sankey diagram.
"""

import logging
from collections import Counter
from typing import Dict, Iterable, List, Sequence, Tuple

from rich.console import Console
from rich.table import Table

from config.settings import DELETED_STATUS, MOVED_STATUS, UNKNOWN
from iptracker.database import Database, Proposal, ProposalVersion

logger = logging.getLogger(__name__)
console = Console()

STATUS_ALIASES: Dict[str, str] = {
    "Accepted": "Final",
    "Abandoned": "Withdrawn",
    "Superseded": "Withdrawn",
    "Deferred": "Withdrawn",
    "Replaced": "Withdrawn",
}

# Forward progress; terminal statuses rank highest
STATUS_RANK: Dict[str, int] = {
    "Idea": 0,
    "Draft": 1,
    "Review": 2,
    "Last Call": 3,
    "Final": 4,
    "Living": 4,
    "Withdrawn": 5,
    "Stagnant": 5,
}


def canonical_status(status: str) -> str:
    return STATUS_ALIASES.get(status, status)


def collapse_trace(statuses: Iterable[str]) -> List[str]:
    """
    Collapse a status history into a strictly rank-increasing trace.

    An incoming status pops every trailing trace entry whose rank is not
    below its own, then is appended. Statuses without a rank are dropped.

    Args:
        statuses: Raw statuses in chronological order

    Returns:
        Canonical statuses with strictly increasing rank
    """
    trace: List[str] = []
    for status in statuses:
        current = canonical_status(status)
        rank = STATUS_RANK.get(current)
        if rank is None:
            continue
        while trace and rank <= STATUS_RANK[trace[-1]]:
            trace.pop()
        trace.append(current)
    return trace


def trace_transitions(trace: Sequence[str]) -> List[Tuple[str, str]]:
    """Adjacent (source, target) pairs of a trace."""
    return list(zip(trace, trace[1:]))


def aggregate_transitions(histories: Iterable[Sequence[str]]) -> Counter:
    """
    Count collapsed transitions across many status histories.

    Args:
        histories: One chronological status sequence per proposal

    Returns:
        Counter mapping (source, target) to the number of proposals taking it
    """
    transitions: Counter = Counter()
    for history in histories:
        if len(history) < 2:
            continue
        transitions.update(trace_transitions(collapse_trace(history)))
    return transitions


def to_sankey(transitions: Counter) -> Dict[str, list]:
    """Node/link lists for a Sankey diagram, nodes in first-seen order."""
    links = [
        {"source": source, "target": target, "value": value}
        for (source, target), value in transitions.items()
    ]
    names: List[str] = []
    for link in links:
        for name in (link["source"], link["target"]):
            if name not in names:
                names.append(name)
    return {"nodes": [{"id": name, "name": name} for name in names], "links": links}


class LifecycleCollapser:
    """Builds the lifecycle transition model of a protocol from stored versions."""

    def __init__(self, database: Database):
        """
        Initialize lifecycle collapser.

        Args:
            database: Database instance
        """
        self.database = database

    def status_histories(self, protocol: str) -> Dict[int, List[str]]:
        """
        Consecutive-duplicate-free status history per proposal.

        Versions with an Unknown status and proposals currently Moved or
        Deleted are left out.
        """
        with self.database.get_session() as session:
            rows = (
                session.query(ProposalVersion.proposal_id, ProposalVersion.status)
                .join(Proposal, Proposal.id == ProposalVersion.proposal_id)
                .filter(
                    Proposal.protocol == protocol,
                    Proposal.status.notin_([MOVED_STATUS, DELETED_STATUS]),
                    ProposalVersion.status != UNKNOWN,
                )
                .order_by(ProposalVersion.proposal_id, ProposalVersion.commit_date, ProposalVersion.id)
                .all()
            )

        histories: Dict[int, List[str]] = {}
        for proposal_id, status in rows:
            history = histories.setdefault(proposal_id, [])
            if not history or history[-1] != status:
                history.append(status)
        return histories

    def transitions(self, protocol: str) -> Counter:
        """Aggregated collapsed transitions of a protocol."""
        histories = self.status_histories(protocol)
        transitions = aggregate_transitions(histories.values())
        logger.info(
            f"Lifecycle for {protocol}: {len(histories)} proposals, "
            f"{sum(transitions.values())} transitions"
        )
        return transitions

    def sankey(self, protocol: str) -> Dict[str, list]:
        """Node/link lists of a protocol's lifecycle."""
        return to_sankey(self.transitions(protocol))

    def display(self, protocol: str) -> None:
        """Print a protocol's transition counts as a table."""
        transitions = self.transitions(protocol)
        if not transitions:
            console.print(f"[yellow]No lifecycle transitions for {protocol}[/yellow]")
            return

        table = Table(title=f"{protocol} Lifecycle Transitions", show_header=True)
        table.add_column("From", style="cyan")
        table.add_column("To", style="magenta")
        table.add_column("Proposals", justify="right", style="green")
        for (source, target), value in sorted(
            transitions.items(), key=lambda item: (STATUS_RANK[item[0][0]], STATUS_RANK[item[0][1]])
        ):
            table.add_row(source, target, str(value))
        console.print(table)
