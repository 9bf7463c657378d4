"""Configuration loading for cascade.

Reads cascade.yaml: database location, trigger behaviour, SCM access and the
pipelines (jobs + workflow graph) that ``cascade sync`` writes to the registry.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, model_validator

from cascade.models import JobState, WorkflowGraph
from cascade.naming import is_external_trigger

logger = logging.getLogger(__name__)


# ── Config Models ────────────────────────────────────────────────────────────


class DatabaseConfig(BaseModel):
    path: str = "cascade.db"


class TriggerConfig(BaseModel):
    external_join: bool = True  # Allow joins whose members span pipelines


class ScmSettings(BaseModel):
    api_url: str = "https://api.github.com"
    timeout: float = 30.0
    tokens: dict[str, str] = Field(default_factory=dict)  # admin username → token
    default_token_env: str = "CASCADE_SCM_TOKEN"

    @property
    def default_token(self) -> str | None:
        return os.environ.get(self.default_token_env)


class JobSeed(BaseModel):
    name: str
    state: JobState = JobState.ENABLED


class PipelineSeed(BaseModel):
    """A pipeline as declared in cascade.yaml."""

    id: int
    name: str = ""
    scm_uri: str = ""
    scm_context: str = "github:github.com"
    admins: list[str] = Field(default_factory=list)
    chain_pr: bool = False
    jobs: list[JobSeed] = Field(default_factory=list)
    workflow_graph: WorkflowGraph = Field(default_factory=WorkflowGraph)

    @model_validator(mode="after")
    def validate_graph(self) -> PipelineSeed:
        job_names = {j.name for j in self.jobs}
        node_names = {n.name for n in self.workflow_graph.nodes}

        for node in self.workflow_graph.nodes:
            if is_external_trigger(node.name) or node.name.startswith("~"):
                continue
            if node.name not in job_names:
                msg = f"Pipeline {self.id}: node '{node.name}' has no matching job"
                raise ValueError(msg)

        for edge in self.workflow_graph.edges:
            for end in (edge.src, edge.dest):
                if is_external_trigger(end) or end.startswith("~"):
                    continue
                if end not in node_names:
                    msg = f"Pipeline {self.id}: edge {edge.src} -> {edge.dest} names unknown node '{end}'"
                    raise ValueError(msg)
        return self


class CascadeConfig(BaseModel):
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    triggers: TriggerConfig = Field(default_factory=TriggerConfig)
    scm: ScmSettings = Field(default_factory=ScmSettings)
    pipelines: list[PipelineSeed] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_pipeline_ids(self) -> CascadeConfig:
        ids = [p.id for p in self.pipelines]
        dupes = sorted({pid for pid in ids if ids.count(pid) > 1})
        if dupes:
            msg = f"Duplicate pipeline IDs: {dupes}"
            raise ValueError(msg)
        return self


def _env_flag(value: str) -> bool:
    return value.lower() in ("1", "true", "yes")


def load_config(config_path: Path) -> CascadeConfig:
    """Load cascade configuration from a YAML file.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        pydantic.ValidationError: If config validation fails.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"cascade config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    config = CascadeConfig(**raw)

    # Environment variable overrides for deployment
    db_path = os.environ.get("CASCADE_DB_PATH")
    if db_path:
        config.database.path = db_path

    external_join = os.environ.get("CASCADE_EXTERNAL_JOIN")
    if external_join is not None:
        config.triggers.external_join = _env_flag(external_join)

    api_url = os.environ.get("CASCADE_SCM_API_URL")
    if api_url:
        config.scm.api_url = api_url

    logger.info(
        "Loaded cascade config: %d pipelines, external_join=%s",
        len(config.pipelines),
        config.triggers.external_join,
    )
    return config
