"""SQLite persistence for pipelines, jobs, events and builds."""

from cascade.store.registry import TriggerRegistry
from cascade.store.sync import sync_pipeline, sync_pipelines

__all__ = ["TriggerRegistry", "sync_pipeline", "sync_pipelines"]
