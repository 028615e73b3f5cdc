"""Validated graph construction from external records.

The list of task records is the only structure TaskGrid accepts from the
outside (typically deserialised JSON).  Records are validated with pydantic
first, then handed to ``TaskGraph.add_tasks`` which rejects cycles and
dangling references wholesale.

Usage::

    graph = load_graph([
        {"id": "plan", "description": "...", "required_capability": "planning"},
        {"id": "code", "description": "...", "required_capability": "coding",
         "dependencies": ["plan"], "priority": 5},
    ])
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from taskgrid.exceptions import TaskValidationError
from taskgrid.interfaces.worker import CostTier
from taskgrid.scheduling.task_graph import Task, TaskGraph

logger = logging.getLogger(__name__)


class TaskRecord(BaseModel):
    """One task as supplied by the caller."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: str = Field(min_length=1)
    description: str = ""
    required_capability: str = Field(min_length=1, alias="capability")
    dependencies: List[str] = Field(default_factory=list)
    priority: int = 0
    max_retries: Optional[int] = Field(default=None, ge=0)
    timeout: Optional[float] = Field(default=None, gt=0)
    tier: Optional[CostTier] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("dependencies")
    @classmethod
    def dedupe_dependencies(cls, v: List[str]) -> List[str]:
        """Collapse repeated dependency ids, keeping first-seen order."""
        return list(dict.fromkeys(v))

    def to_task(self) -> Task:
        return Task(
            task_id=self.id,
            description=self.description,
            required_capability=self.required_capability,
            dependencies=frozenset(self.dependencies),
            priority=self.priority,
            max_retries=self.max_retries,
            timeout=self.timeout,
            tier=self.tier,
            metadata=dict(self.metadata),
        )


class GraphDefinition(BaseModel):
    """A whole graph: the ordered list of task records."""

    model_config = ConfigDict(extra="forbid")

    tasks: List[TaskRecord]

    @model_validator(mode="after")
    def check_unique_ids(self) -> "GraphDefinition":
        seen = set()
        for record in self.tasks:
            if record.id in seen:
                raise ValueError(f"duplicate task id {record.id!r}")
            seen.add(record.id)
        return self


GraphInput = Union[str, bytes, Dict[str, Any], List[Dict[str, Any]], GraphDefinition]


def parse_definition(data: GraphInput) -> GraphDefinition:
    """Validate raw input into a ``GraphDefinition``.

    Accepts a JSON document, a ``{"tasks": [...]}`` mapping, or a bare list
    of records.

    Raises:
        TaskValidationError: on malformed JSON or schema violations.
    """
    if isinstance(data, GraphDefinition):
        return data
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise TaskValidationError(f"Graph definition is not valid JSON: {e}") from e
    if isinstance(data, list):
        data = {"tasks": data}
    try:
        return GraphDefinition.model_validate(data)
    except ValidationError as e:
        raise TaskValidationError(
            f"Invalid graph definition: {e.error_count()} error(s)",
            details={"errors": e.errors(include_url=False)},
        ) from e


def load_graph(data: GraphInput, graph: Optional[TaskGraph] = None) -> TaskGraph:
    """Validate *data* and add its tasks to *graph* (a new one by default).

    Raises:
        TaskValidationError: on schema violations or duplicate ids.
        DanglingDependencyError: on references to unknown tasks.
        CyclicDependencyError: if the edges form a cycle.
    """
    definition = parse_definition(data)
    graph = graph if graph is not None else TaskGraph()
    inserted = graph.add_tasks(record.to_task() for record in definition.tasks)
    logger.info("Loaded graph with %d task(s)", len(inserted))
    return graph
