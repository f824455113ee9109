"""
Explicit per-run context shared by the scheduler, executor and completion step.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from pydantic import BaseModel

from seqflow.core.store import ArtifactStore
from seqflow.models.config import RunConfig

if TYPE_CHECKING:
    from seqflow.core.scheduler import ResourceBudget


@dataclass
class RunContext:
    """
    Everything one run needs, created once at startup.

    Attributes:
        run_id: Unique identifier of this run.
        created_at: UTC creation timestamp (ISO 8601).
        config: Effective run configuration.
        params: Resolved, frozen pipeline parameters.
        store: Artifact store rooted at ``config.workdir``.
        budget: Global CPU/memory budget.
        logger: Logger for run-level messages.
    """

    run_id: str
    created_at: str
    config: RunConfig
    params: BaseModel
    store: ArtifactStore
    budget: ResourceBudget
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("seqflow.run"))

    @classmethod
    def create(cls, config: RunConfig, params: BaseModel) -> RunContext:
        from seqflow.core.scheduler import ResourceBudget

        config.workdir.mkdir(parents=True, exist_ok=True)
        return cls(
            run_id=uuid.uuid4().hex[:12],
            created_at=datetime.now(timezone.utc).isoformat(),
            config=config,
            params=params,
            store=ArtifactStore(config.workdir, config.cache_mode),
            budget=ResourceBudget(config.limits.max_cpus, config.limits.max_memory_mb),
        )
