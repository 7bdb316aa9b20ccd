#!/usr/bin/env python3
# Ticket: 0091_pm_intelligence_engine
# Design: DESIGN.md
"""
Dependency Graph Engine

Directed blocking relationships between issues (blocker → blocked), held
in the dependencies table and analyzed with networkx.

Insertion rules (checked inside one BEGIN IMMEDIATE transaction):
- no self-edges
- both issues must exist
- no cycles: the new edge blocker → blocked is rejected when blocker is
  already reachable from blocked. Reachability follows every stored edge,
  resolved or not.

Analysis works on the unresolved edge set: critical path, bottlenecks,
topological execution order, per-node depth and network metrics.
"""

import logging
import sqlite3
from typing import Any

import networkx as nx

from . import events
from .models import Dependency, EventType, SourceState, WorkflowState
from .repository import Repository
from .results import ErrorCode, Failure, Ok, issue_not_found, validation_error

logger = logging.getLogger(__name__)

BOTTLENECK_LIMIT = 10


# ---------------------------------------------------------------------------
# Graph construction
# ---------------------------------------------------------------------------


def build_graph(conn: sqlite3.Connection, unresolved_only: bool = True) -> nx.DiGraph:
    """
    Load the dependency edges into a DiGraph.

    Nodes carry title/state/workflow attributes from the issues table. Only
    issues that take part in at least one loaded edge are added.
    """
    where = "WHERE d.resolved = 0" if unresolved_only else ""
    rows = conn.execute(
        f"""
        SELECT d.blocker_issue, d.blocked_issue, d.resolved
        FROM dependencies d
        {where}
        ORDER BY d.blocker_issue, d.blocked_issue
        """
    ).fetchall()

    graph = nx.DiGraph()
    for row in rows:
        graph.add_edge(
            row["blocker_issue"], row["blocked_issue"], resolved=bool(row["resolved"])
        )

    if graph.number_of_nodes():
        placeholders = ",".join("?" for _ in graph.nodes)
        for issue in conn.execute(
            f"SELECT number, title, state, workflow FROM issues WHERE number IN ({placeholders})",
            list(graph.nodes),
        ):
            graph.nodes[issue["number"]].update(
                title=issue["title"], state=issue["state"], workflow=issue["workflow"]
            )
    return graph


def _is_pending(attrs: dict[str, Any]) -> bool:
    """Open and not yet Done."""
    return (
        attrs.get("state") == SourceState.OPEN
        and attrs.get("workflow") != WorkflowState.DONE
    )


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


def add_dependency(
    repo: Repository,
    blocker_issue: int,
    blocked_issue: int,
    actor: str = "engine",
) -> Ok | Failure:
    """
    Record that blocked_issue cannot proceed until blocker_issue is Done.

    Returns:
        Ok({"dependency": Dependency, "created": bool}). Re-adding an existing
        edge is a no-op with created=False.
        Failure(validation, self_dependency | cycle) or Failure(not_found).
    """
    if blocker_issue == blocked_issue:
        failure = validation_error(
            ErrorCode.SELF_DEPENDENCY,
            f"Issue #{blocker_issue} cannot block itself",
            issue_number=blocker_issue,
        )
        logger.info("Dependency rejected (%s): %s", failure.code, failure.message)
        return failure

    with repo.transaction() as conn:
        for number in (blocker_issue, blocked_issue):
            if conn.execute("SELECT 1 FROM issues WHERE number = ?", (number,)).fetchone() is None:
                return issue_not_found(number)

        existing = conn.execute(
            "SELECT * FROM dependencies WHERE blocker_issue = ? AND blocked_issue = ?",
            (blocker_issue, blocked_issue),
        ).fetchone()
        if existing is not None:
            return Ok({"dependency": Dependency.from_row(existing), "created": False})

        cycle = find_cycle_path(conn, blocker_issue, blocked_issue)
        if cycle is not None:
            chain = " → ".join(f"#{n}" for n in cycle)
            failure = validation_error(
                ErrorCode.CYCLE,
                f"Cycle detected: #{blocker_issue} → #{blocked_issue} would close "
                f"the loop {chain}",
                blocker_issue=blocker_issue,
                blocked_issue=blocked_issue,
                cycle=cycle,
            )
            logger.info("Dependency rejected (%s): %s", failure.code, failure.message)
            return failure

        now = repo.now_iso()
        cursor = conn.execute(
            """
            INSERT INTO dependencies (blocker_issue, blocked_issue, resolved, created_at)
            VALUES (?, ?, 0, ?)
            """,
            (blocker_issue, blocked_issue, now),
        )
        events.append(
            conn,
            now,
            EventType.DEPENDENCY_ADDED,
            actor,
            issue_number=blocked_issue,
            to_value=str(blocker_issue),
            metadata={"blocker": blocker_issue, "blocked": blocked_issue},
        )
        row = conn.execute(
            "SELECT * FROM dependencies WHERE id = ?", (cursor.lastrowid,)
        ).fetchone()

    logger.info("Added dependency #%s blocks #%s", blocker_issue, blocked_issue)
    return Ok({"dependency": Dependency.from_row(row), "created": True})


def find_cycle_path(
    conn: sqlite3.Connection,
    blocker_issue: int,
    blocked_issue: int,
) -> list[int] | None:
    """
    Return the cycle the edge blocker → blocked would close, or None.

    The path runs blocked → ... → blocker over all stored edges, resolved
    ones included, followed by blocker → blocked.
    """
    graph = build_graph(conn, unresolved_only=False)
    if blocked_issue not in graph or blocker_issue not in graph:
        return None
    try:
        path = nx.shortest_path(graph, source=blocked_issue, target=blocker_issue)
    except nx.NetworkXNoPath:
        return None
    return [blocker_issue] + path


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def get_dependencies(repo: Repository, issue_number: int) -> Ok | Failure:
    """Direct edges touching an issue: what blocks it and what it blocks."""
    conn = repo.conn
    if conn.execute("SELECT 1 FROM issues WHERE number = ?", (issue_number,)).fetchone() is None:
        return issue_not_found(issue_number)

    blocked_by = [
        Dependency.from_row(row)
        for row in conn.execute(
            "SELECT * FROM dependencies WHERE blocked_issue = ? ORDER BY blocker_issue",
            (issue_number,),
        )
    ]
    blocks = [
        Dependency.from_row(row)
        for row in conn.execute(
            "SELECT * FROM dependencies WHERE blocker_issue = ? ORDER BY blocked_issue",
            (issue_number,),
        )
    ]
    return Ok({"issue_number": issue_number, "blocked_by": blocked_by, "blocks": blocks})


def compute_depths(graph: nx.DiGraph) -> dict[int, int]:
    """Length of the longest chain of edges ending at each node."""
    depths: dict[int, int] = {}
    for node in nx.topological_sort(graph):
        preds = list(graph.predecessors(node))
        depths[node] = max((depths[p] + 1 for p in preds), default=0)
    return depths


def _components(graph: nx.DiGraph) -> list[set[int]]:
    return [set(c) for c in nx.weakly_connected_components(graph)]


def analyze_dependency_graph(repo: Repository) -> dict[str, Any]:
    """
    Analyze the unresolved dependency graph.

    Returns a dict with:
        nodes            — per-node title/state/workflow, in/out degree, depth
        edges            — unresolved blocker → blocked pairs
        critical_path    — longest chain among open, non-Done issues
        bottlenecks      — open blockers ranked by transitive dependents (top 10)
        topological_order
        orphaned_blocked — open issues whose unresolved blockers are all Done/closed
        metrics          — max depth, average degree, density, components
    """
    graph = build_graph(repo.conn, unresolved_only=True)
    depths = compute_depths(graph)

    nodes = sorted(
        (
            {
                "number": n,
                "title": attrs.get("title"),
                "state": attrs.get("state"),
                "workflow": attrs.get("workflow"),
                "in_degree": graph.in_degree(n),
                "out_degree": graph.out_degree(n),
                "depth": depths.get(n, 0),
            }
            for n, attrs in graph.nodes(data=True)
        ),
        key=lambda node: (-node["out_degree"], node["number"]),
    )
    edges = [{"blocker": u, "blocked": v} for u, v in sorted(graph.edges)]

    pending = graph.subgraph(n for n, attrs in graph.nodes(data=True) if _is_pending(attrs))
    critical_path = nx.dag_longest_path(pending) if pending.number_of_edges() else []

    bottlenecks = []
    for n, attrs in pending.nodes(data=True):
        if graph.out_degree(n) == 0:
            continue
        transitive = len(nx.descendants(graph, n))
        if transitive >= 5:
            severity = "critical"
            recommendation = f"CRITICAL: Unblocks {transitive} issues. Prioritize immediately."
        elif transitive >= 3:
            severity = "high"
            recommendation = f"HIGH: Unblocks {transitive} issues. Address this sprint."
        else:
            severity = "medium"
            recommendation = f"MEDIUM: Blocks {graph.out_degree(n)} direct dependencies."
        bottlenecks.append({
            "number": n,
            "title": attrs.get("title"),
            "workflow": attrs.get("workflow"),
            "blocks_count": graph.out_degree(n),
            "transitive_blocks_count": transitive,
            "severity": severity,
            "recommendation": recommendation,
        })
    bottlenecks.sort(key=lambda b: (-b["transitive_blocks_count"], b["number"]))

    orphaned = []
    for n, attrs in graph.nodes(data=True):
        blockers = sorted(graph.predecessors(n))
        if not _is_pending(attrs) or not blockers:
            continue
        if all(not _is_pending(graph.nodes[b]) for b in blockers):
            orphaned.append({
                "number": n,
                "title": attrs.get("title"),
                "blocked_by": blockers,
                "recommendation": "All blockers are Done or closed; move to Ready",
            })

    components = _components(graph)
    node_count = graph.number_of_nodes()
    possible_edges = node_count * (node_count - 1)
    total_degree = sum(d for _, d in graph.degree())

    return {
        "nodes": nodes,
        "edges": edges,
        "critical_path": critical_path,
        "critical_path_length": len(critical_path),
        "bottlenecks": bottlenecks[:BOTTLENECK_LIMIT],
        "topological_order": list(nx.lexicographical_topological_sort(graph)),
        "orphaned_blocked": orphaned,
        "metrics": {
            "total_nodes": node_count,
            "total_edges": graph.number_of_edges(),
            "max_depth": max(depths.values(), default=0),
            "avg_degree": round(total_degree / node_count, 1) if node_count else 0,
            "density": round(nx.density(graph), 4) if node_count > 1 else 0,
            "connected_components": len(components),
            "largest_component": max((len(c) for c in components), default=0),
        },
    }


def get_issue_dependencies(repo: Repository, issue_number: int) -> Ok | Failure:
    """
    Upstream and downstream view of a single issue.

    Direct lists include resolved edges (with their flag); the transitive
    chains and execution_order follow unresolved edges only.
    execution_order is the issue's 1-based position in the topological
    order of the unresolved graph, or None when it has no unresolved edges.
    """
    conn = repo.conn
    issue = conn.execute(
        "SELECT number, title, state, workflow FROM issues WHERE number = ?",
        (issue_number,),
    ).fetchone()
    if issue is None:
        return issue_not_found(issue_number)

    blocked_by = [
        {
            "number": row["blocker_issue"],
            "title": row["title"],
            "state": row["state"],
            "workflow": row["workflow"],
            "resolved": bool(row["resolved"]),
        }
        for row in conn.execute(
            """
            SELECT d.blocker_issue, d.resolved, i.title, i.state, i.workflow
            FROM dependencies d JOIN issues i ON i.number = d.blocker_issue
            WHERE d.blocked_issue = ?
            ORDER BY d.blocker_issue
            """,
            (issue_number,),
        )
    ]
    blocks = [
        {
            "number": row["blocked_issue"],
            "title": row["title"],
            "state": row["state"],
            "workflow": row["workflow"],
            "resolved": bool(row["resolved"]),
        }
        for row in conn.execute(
            """
            SELECT d.blocked_issue, d.resolved, i.title, i.state, i.workflow
            FROM dependencies d JOIN issues i ON i.number = d.blocked_issue
            WHERE d.blocker_issue = ?
            ORDER BY d.blocked_issue
            """,
            (issue_number,),
        )
    ]

    graph = build_graph(conn, unresolved_only=True)
    if issue_number in graph:
        upstream = sorted(nx.ancestors(graph, issue_number))
        downstream = sorted(nx.descendants(graph, issue_number))
        order = list(nx.lexicographical_topological_sort(graph))
        execution_order = order.index(issue_number) + 1
    else:
        upstream, downstream, execution_order = [], [], None

    return Ok({
        "issue_number": issue_number,
        "title": issue["title"],
        "state": issue["state"],
        "workflow": issue["workflow"],
        "blocked_by": blocked_by,
        "blocks": blocks,
        "upstream_chain": upstream,
        "downstream_chain": downstream,
        "is_unblocked": all(
            b["resolved"] or b["workflow"] == WorkflowState.DONE for b in blocked_by
        ),
        "execution_order": execution_order,
    })
