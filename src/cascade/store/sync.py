"""Write pipelines declared in cascade.yaml into the registry."""

from __future__ import annotations

import logging

from cascade.config import PipelineSeed
from cascade.models import Job, Pipeline, WorkflowGraph, WorkflowNode
from cascade.store.registry import TriggerRegistry

logger = logging.getLogger(__name__)


async def sync_pipeline(registry: TriggerRegistry, seed: PipelineSeed) -> Pipeline:
    """Upsert one pipeline and its jobs; graph nodes get the stored job ids."""
    pipeline = Pipeline(
        id=seed.id,
        name=seed.name,
        scm_uri=seed.scm_uri,
        scm_context=seed.scm_context,
        admins=seed.admins,
        chain_pr=seed.chain_pr,
    )
    await registry.save_pipeline(pipeline)

    job_ids: dict[str, int | None] = {}
    for job_seed in seed.jobs:
        job = await registry.save_job(
            Job(pipeline_id=seed.id, name=job_seed.name, state=job_seed.state)
        )
        job_ids[job.name] = job.id

    graph = WorkflowGraph(
        nodes=[WorkflowNode(name=n.name, id=job_ids.get(n.name, n.id)) for n in seed.workflow_graph.nodes],
        edges=seed.workflow_graph.edges,
    )
    pipeline = pipeline.model_copy(update={"workflow_graph": graph})
    await registry.save_pipeline(pipeline)
    logger.info("Synced pipeline %s (%s): %d jobs", seed.id, seed.name, len(job_ids))
    return pipeline


async def sync_pipelines(registry: TriggerRegistry, seeds: list[PipelineSeed]) -> list[Pipeline]:
    return [await sync_pipeline(registry, seed) for seed in seeds]
