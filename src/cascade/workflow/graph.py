"""Workflow graph queries.

All lookups run against an event's graph snapshot, never the pipeline's live
graph, because the pipeline config may have changed since the event started.

Key exports:
    next_jobs — Direct successors of a trigger job
    join_sources — Join member nodes of a job
    join_map — Successor name → join member names, for one trigger
    node_for, job_id_for, parent_source_of
"""

from __future__ import annotations

import logging

from cascade.errors import MalformedGraphError
from cascade.models import WorkflowGraph, WorkflowNode
from cascade.naming import PR_JOB_PATTERN, is_external_trigger, pr_job_name, trim_job_name

logger = logging.getLogger(__name__)


def _strip_tilde(name: str) -> str:
    return name[1:] if name.startswith("~") else name


def next_jobs(graph: WorkflowGraph, trigger: str, *, chain_pr: bool = False) -> list[str]:
    """Names of the jobs that run after ``trigger`` finishes.

    PR jobs (``PR-3:main``) only fan out when ``chain_pr`` is on, and then to the
    PR-scoped copy of each internal successor.
    """
    if not trigger:
        msg = "A trigger job name is required"
        raise ValueError(msg)

    jobs: list[str] = []
    pr_match = PR_JOB_PATTERN.match(trigger)
    if pr_match:
        if not chain_pr or not pr_match.group(2):
            return jobs
        bare = pr_match.group(2)
        for edge in graph.edges:
            if _strip_tilde(edge.src) == bare and not is_external_trigger(edge.dest):
                name = pr_job_name(pr_match.group(1), edge.dest)
                if name not in jobs:
                    jobs.append(name)
        return jobs

    wanted = _strip_tilde(trigger)
    for edge in graph.edges:
        if _strip_tilde(edge.src) == wanted and edge.dest not in jobs:
            jobs.append(edge.dest)
    logger.debug("Successors of %s: %s", trigger, jobs)
    return jobs


def join_sources(graph: WorkflowGraph, job_name: str) -> list[WorkflowNode]:
    """Nodes that ``job_name`` waits on. Empty when the job is not a join."""
    sources: list[WorkflowNode] = []
    for edge in graph.edges:
        if edge.dest != job_name or not edge.join:
            continue
        node = graph.get_node(edge.src) or graph.get_node(_strip_tilde(edge.src))
        if node is None:
            msg = f"Join source '{edge.src}' of '{job_name}' is not a node of the workflow graph"
            raise MalformedGraphError(msg)
        if node not in sources:
            sources.append(node)
    return sources


def join_map(
    graph: WorkflowGraph, trigger: str, *, chain_pr: bool = False
) -> dict[str, list[str]]:
    """Map every successor of ``trigger`` to the names of its join members."""
    return {
        name: [node.name for node in join_sources(graph, name)]
        for name in next_jobs(graph, trigger, chain_pr=chain_pr)
    }


def node_for(graph: WorkflowGraph, job_name: str) -> WorkflowNode:
    """Find the node for ``job_name`` (PR prefix ignored)."""
    node = graph.get_node(trim_job_name(job_name))
    if node is None:
        msg = f"Job '{job_name}' is not a node of the workflow graph"
        raise MalformedGraphError(msg)
    return node


def job_id_for(graph: WorkflowGraph, job_name: str) -> int:
    node = node_for(graph, job_name)
    if node.id is None:
        msg = f"Workflow node '{node.name}' has no job id"
        raise MalformedGraphError(msg)
    return node.id


def parent_source_of(graph: WorkflowGraph, job_name: str) -> str:
    """Source name of the first edge that feeds ``job_name``."""
    for edge in graph.edges:
        if edge.dest == job_name:
            return edge.src
    msg = f"No edge leads into '{job_name}'"
    raise MalformedGraphError(msg)
