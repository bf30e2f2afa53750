"""
Workflow schema definitions: blocks, edges and loop/parallel metadata.

Block configuration is typed per block type and validated once, when a
workflow state is parsed (i.e. when a version is published).
"""
from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple, Type, Union

import jsonschema
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator, model_validator

from .identity import ITERATION_MARKER, PARALLEL_MARKER, is_reserved_block_id


JsonSchema = Dict[str, Any]

START_BRANCH = "start"


class BlockType(str, Enum):
    """Closed set of block types the runtime knows how to execute."""

    AGENT = "agent"
    API = "api"
    CONDITION = "condition"
    EVALUATOR = "evaluator"
    FUNCTION = "function"
    GENERIC = "generic"
    LOOP = "loop"
    PARALLEL = "parallel"
    RESPONSE = "response"
    ROUTER = "router"
    TRIGGER = "trigger"
    WORKFLOW = "workflow"


CONTAINER_TYPES = frozenset({BlockType.LOOP, BlockType.PARALLEL})


class StrictModel(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        populate_by_name=True,
    )


# -----------------------------
# Per-type block configuration
# -----------------------------
class AgentConfig(StrictModel):
    model: Optional[str] = None
    system_prompt: str = ""
    user_prompt: str = Field(min_length=1)
    temperature: float = 0.2
    response_format: Optional[JsonSchema] = None


class ApiConfig(StrictModel):
    url: str = Field(min_length=1)
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    params: Dict[str, Any] = Field(default_factory=dict)
    body: Optional[Any] = None
    timeout_seconds: float = Field(default=30.0, gt=0)

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class ConditionCase(StrictModel):
    id: str = Field(min_length=1)
    expression: str = Field(min_length=1)


class ConditionConfig(StrictModel):
    conditions: List[ConditionCase] = Field(min_length=1)
    else_branch: Optional[str] = "else"

    @field_validator("conditions")
    @classmethod
    def _unique_case_ids(cls, v: List[ConditionCase]) -> List[ConditionCase]:
        ids = [case.id for case in v]
        if len(ids) != len(set(ids)):
            raise ValueError("condition case ids must be unique")
        return v


class EvaluatorMetric(StrictModel):
    name: str = Field(min_length=1)
    description: str = ""
    min_score: float = 0
    max_score: float = 10

    @model_validator(mode="after")
    def _check_range(self) -> "EvaluatorMetric":
        if self.min_score > self.max_score:
            raise ValueError(f"metric '{self.name}' has min_score > max_score")
        return self


class EvaluatorConfig(StrictModel):
    model: Optional[str] = None
    content: str = Field(min_length=1)
    metrics: List[EvaluatorMetric] = Field(min_length=1)


class FunctionConfig(StrictModel):
    code: str = Field(min_length=1)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


class GenericConfig(BaseModel):
    """Escape hatch for schema-less blocks: any fields are accepted."""

    model_config = ConfigDict(extra="allow")


class ContainerConfig(StrictModel):
    """Loop/parallel blocks carry their settings in the workflow metadata."""


class ResponseConfig(StrictModel):
    data: Any = None
    status: int = Field(default=200, ge=100, le=599)
    headers: Dict[str, str] = Field(default_factory=dict)


class RouterConfig(StrictModel):
    expression: Optional[str] = None
    routes: List[str] = Field(default_factory=list)
    default_route: Optional[str] = None

    @model_validator(mode="after")
    def _require_selection(self) -> "RouterConfig":
        if not self.expression and not self.default_route:
            raise ValueError("router blocks require an expression or a default_route")
        return self


class TriggerConfig(StrictModel):
    input_fields: List[str] = Field(default_factory=list)


class WorkflowBlockConfig(StrictModel):
    workflow_id: str = Field(min_length=1)
    input: Dict[str, Any] = Field(default_factory=dict)


BlockConfig = Union[
    AgentConfig,
    ApiConfig,
    ConditionConfig,
    EvaluatorConfig,
    FunctionConfig,
    GenericConfig,
    ContainerConfig,
    ResponseConfig,
    RouterConfig,
    TriggerConfig,
    WorkflowBlockConfig,
]

CONFIG_MODELS: Dict[BlockType, Type[BaseModel]] = {
    BlockType.AGENT: AgentConfig,
    BlockType.API: ApiConfig,
    BlockType.CONDITION: ConditionConfig,
    BlockType.EVALUATOR: EvaluatorConfig,
    BlockType.FUNCTION: FunctionConfig,
    BlockType.GENERIC: GenericConfig,
    BlockType.LOOP: ContainerConfig,
    BlockType.PARALLEL: ContainerConfig,
    BlockType.RESPONSE: ResponseConfig,
    BlockType.ROUTER: RouterConfig,
    BlockType.TRIGGER: TriggerConfig,
    BlockType.WORKFLOW: WorkflowBlockConfig,
}


def parse_block_config(block_type: BlockType, raw: Any) -> BaseModel:
    """Validate raw configuration against the model for ``block_type``."""
    model = CONFIG_MODELS[block_type]
    if isinstance(raw, model):
        return raw
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()
    return model.model_validate(raw or {})


class BlockDefinition(BaseModel):
    """Definition of a workflow block."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Unique block ID")
    type: BlockType = Field(..., description="Block type")
    name: Optional[str] = Field(default=None, description="Human label, usable as a template alias")
    config: Any = Field(default_factory=dict, description="Block-specific configuration")
    output_schema: Optional[JsonSchema] = Field(default=None, description="Declared output shape")

    @model_validator(mode="after")
    def _parse_config(self) -> "BlockDefinition":
        try:
            typed = parse_block_config(self.type, self.config)
        except ValueError as exc:
            raise ValueError(f"Invalid config for {self.type.value} block '{self.id}': {exc}") from exc
        object.__setattr__(self, "config", typed)
        if self.output_schema is not None:
            try:
                jsonschema.validators.validator_for(self.output_schema).check_schema(self.output_schema)
            except jsonschema.SchemaError as exc:
                raise ValueError(f"Invalid output_schema for block '{self.id}': {exc.message}") from exc
        return self

    @property
    def is_container(self) -> bool:
        return self.type in CONTAINER_TYPES


class EdgeDefinition(BaseModel):
    """Definition of a connection between blocks."""

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = Field(default=None, description="Edge ID")
    source: str = Field(..., description="Source block ID")
    target: str = Field(..., description="Target block ID")
    branch: Optional[str] = Field(
        default=None,
        description="Branch label: condition case id, router route, or 'start' for container bodies",
    )


# -----------------------------
# Loop / parallel metadata
# -----------------------------
DEFAULT_LOOP_TYPE = "for"
DEFAULT_ITERATION_COUNT = 5
DEFAULT_COLLECTION = ""
DEFAULT_LOOP_MAX_CONCURRENCY = 1


@dataclass(frozen=True)
class ContainerSettings:
    """Loop/parallel settings with defaults applied, fixed for one run."""

    container_id: str
    kind: BlockType
    mode: str
    count: int
    collection: Any
    max_concurrency: Optional[int]

    @property
    def iterates_collection(self) -> bool:
        return self.mode in ("forEach", "collection")


class LoopMetadata(StrictModel):
    id: Optional[str] = None
    nodes: List[str] = Field(default_factory=list)
    loop_type: Optional[Literal["for", "forEach"]] = None
    count: Optional[int] = Field(default=None, ge=0)
    collection: Optional[Any] = None
    max_concurrency: Optional[int] = Field(default=None, ge=1)

    def resolve(self) -> ContainerSettings:
        return ContainerSettings(
            container_id=self.id or "",
            kind=BlockType.LOOP,
            mode=self.loop_type or DEFAULT_LOOP_TYPE,
            count=DEFAULT_ITERATION_COUNT if self.count is None else self.count,
            collection=DEFAULT_COLLECTION if self.collection is None else self.collection,
            max_concurrency=self.max_concurrency or DEFAULT_LOOP_MAX_CONCURRENCY,
        )


class ParallelMetadata(StrictModel):
    id: Optional[str] = None
    nodes: List[str] = Field(default_factory=list)
    parallel_type: Optional[Literal["count", "collection"]] = None
    count: Optional[int] = Field(default=None, ge=0)
    collection: Optional[Any] = None
    max_concurrency: Optional[int] = Field(default=None, ge=1)

    def resolve(self, concurrency_cap: Optional[int] = None) -> ContainerSettings:
        max_concurrency = self.max_concurrency
        if max_concurrency is None:
            max_concurrency = concurrency_cap
        return ContainerSettings(
            container_id=self.id or "",
            kind=BlockType.PARALLEL,
            mode=self.parallel_type or "count",
            count=DEFAULT_ITERATION_COUNT if self.count is None else self.count,
            collection=DEFAULT_COLLECTION if self.collection is None else self.collection,
            max_concurrency=max_concurrency,
        )


class WorkflowSchema(BaseModel):
    """Complete workflow definition."""

    version: str = Field(default="1.0", description="Schema version")
    blocks: List[BlockDefinition] = Field(..., description="List of blocks in workflow")
    edges: List[EdgeDefinition] = Field(default_factory=list, description="List of edges connecting blocks")
    loops: Dict[str, LoopMetadata] = Field(default_factory=dict)
    parallels: Dict[str, ParallelMetadata] = Field(default_factory=dict)

    _blocks_by_id: Dict[str, BlockDefinition] = PrivateAttr(default_factory=dict)
    _bodies: Dict[str, Tuple[str, ...]] = PrivateAttr(default_factory=dict)
    _owner: Dict[str, str] = PrivateAttr(default_factory=dict)

    @field_validator("blocks")
    @classmethod
    def validate_blocks(cls, v: List[BlockDefinition]) -> List[BlockDefinition]:
        """Validate that blocks have unique IDs."""
        block_ids = [block.id for block in v]
        if len(block_ids) != len(set(block_ids)):
            raise ValueError("Block IDs must be unique")
        reserved = [block_id for block_id in block_ids if is_reserved_block_id(block_id)]
        if reserved:
            raise ValueError(
                f"Block IDs {reserved} are reserved: ids may not contain '{PARALLEL_MARKER}' "
                f"or '{ITERATION_MARKER}' or end with '{PARALLEL_MARKER.rstrip('_')}'"
            )
        return v

    @field_validator("edges")
    @classmethod
    def validate_edges(cls, v: List[EdgeDefinition], info) -> List[EdgeDefinition]:
        """Validate that edges reference existing blocks."""
        blocks = info.data.get("blocks", [])
        block_ids = {block.id for block in blocks}

        for edge in v:
            if edge.source not in block_ids:
                raise ValueError(f"Edge source '{edge.source}' does not exist in blocks")
            if edge.target not in block_ids:
                raise ValueError(f"Edge target '{edge.target}' does not exist in blocks")

        return v

    @model_validator(mode="after")
    def _validate_graph(self) -> "WorkflowSchema":
        self._blocks_by_id = {block.id: block for block in self.blocks}
        self._fill_container_metadata()
        self._compute_bodies()
        self._check_body_edges()
        self._check_acyclic()
        return self

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------
    def _fill_container_metadata(self) -> None:
        for key, expected_type, metadata_map, metadata_cls in (
            ("loops", BlockType.LOOP, self.loops, LoopMetadata),
            ("parallels", BlockType.PARALLEL, self.parallels, ParallelMetadata),
        ):
            for container_id, metadata in list(metadata_map.items()):
                block = self._blocks_by_id.get(container_id)
                if block is None or block.type != expected_type:
                    raise ValueError(f"{key} entry '{container_id}' does not reference a {expected_type.value} block")
                if metadata.id is not None and metadata.id != container_id:
                    raise ValueError(f"{key} entry '{container_id}' declares mismatching id '{metadata.id}'")
                metadata.id = container_id
            for block in self.blocks:
                if block.type == expected_type and block.id not in metadata_map:
                    metadata_map[block.id] = metadata_cls(id=block.id)

    def _compute_bodies(self) -> None:
        outgoing: Dict[str, List[EdgeDefinition]] = defaultdict(list)
        for edge in self.edges:
            outgoing[edge.source].append(edge)

        containers = {**self.loops, **self.parallels}
        for container_id, metadata in containers.items():
            if metadata.nodes:
                body = list(dict.fromkeys(metadata.nodes))
            else:
                body = []
                queue = deque(
                    edge.target for edge in outgoing[container_id] if edge.branch == START_BRANCH
                )
                seen = set()
                while queue:
                    node_id = queue.popleft()
                    if node_id in seen or node_id == container_id:
                        continue
                    seen.add(node_id)
                    body.append(node_id)
                    queue.extend(edge.target for edge in outgoing[node_id])

            for node_id in body:
                block = self._blocks_by_id.get(node_id)
                if block is None:
                    raise ValueError(f"Container '{container_id}' references unknown block '{node_id}'")
                if block.is_container:
                    raise ValueError(
                        f"Nested containers are not supported: '{node_id}' inside '{container_id}'"
                    )
                if node_id in self._owner:
                    raise ValueError(
                        f"Block '{node_id}' belongs to both '{self._owner[node_id]}' and '{container_id}'"
                    )
                self._owner[node_id] = container_id
            self._bodies[container_id] = tuple(body)

    def _check_body_edges(self) -> None:
        for edge in self.edges:
            source_owner = self._owner.get(edge.source)
            target_owner = self._owner.get(edge.target)
            if source_owner == target_owner:
                continue
            if edge.source == target_owner and edge.branch == START_BRANCH:
                continue
            if source_owner is not None:
                raise ValueError(
                    f"Edge '{edge.source}' -> '{edge.target}' leaves the body of '{source_owner}'"
                )
            raise ValueError(
                f"Edge '{edge.source}' -> '{edge.target}' enters the body of '{target_owner}' "
                "without going through the container"
            )

    def _check_acyclic(self) -> None:
        graph = {block.id: [] for block in self.blocks}
        in_degree = {block.id: 0 for block in self.blocks}
        for edge in self.edges:
            graph[edge.source].append(edge.target)
            in_degree[edge.target] += 1

        # Kahn's algorithm
        queue = deque([block_id for block_id, degree in in_degree.items() if degree == 0])
        visited = 0
        while queue:
            node = queue.popleft()
            visited += 1
            for neighbor in graph[node]:
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)

        if visited != len(self.blocks):
            raise ValueError("Workflow graph contains cycles")

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    def get_block(self, block_id: str) -> BlockDefinition:
        return self._blocks_by_id[block_id]

    def has_block(self, block_id: str) -> bool:
        return block_id in self._blocks_by_id

    def body_of(self, container_id: str) -> Tuple[str, ...]:
        return self._bodies.get(container_id, ())

    def container_of(self, block_id: str) -> Optional[str]:
        return self._owner.get(block_id)

    def container_metadata(self, container_id: str) -> Union[LoopMetadata, ParallelMetadata]:
        if container_id in self.loops:
            return self.loops[container_id]
        return self.parallels[container_id]


def parse_workflow_state(payload: Dict[str, Any]) -> WorkflowSchema:
    """
    Validate a stored workflow state and convert it to a WorkflowSchema.

    Blocks may be given either as a list or as a mapping keyed by block id
    (the shape deployment snapshots are stored in).

    Raises:
        ValueError: If the state is invalid
    """
    if isinstance(payload, WorkflowSchema):
        return payload
    data = dict(payload or {})
    blocks = data.get("blocks", [])
    if isinstance(blocks, dict):
        data["blocks"] = [
            {"id": block_id, **block} if "id" not in block else block
            for block_id, block in blocks.items()
        ]
    return WorkflowSchema.model_validate(data)


__all__ = [
    "AgentConfig",
    "ApiConfig",
    "BlockConfig",
    "BlockDefinition",
    "BlockType",
    "CONFIG_MODELS",
    "CONTAINER_TYPES",
    "ConditionCase",
    "ConditionConfig",
    "ContainerConfig",
    "ContainerSettings",
    "EdgeDefinition",
    "EvaluatorConfig",
    "EvaluatorMetric",
    "FunctionConfig",
    "GenericConfig",
    "LoopMetadata",
    "ParallelMetadata",
    "ResponseConfig",
    "RouterConfig",
    "START_BRANCH",
    "TriggerConfig",
    "WorkflowBlockConfig",
    "WorkflowSchema",
    "parse_block_config",
    "parse_workflow_state",
]
