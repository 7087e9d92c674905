"""Structured cluster and logs configuration models."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

NODE_ROLES = ("sequencer", "storage")


class NodeConfig(BaseModel):
    """A single cluster member."""

    model_config = ConfigDict(frozen=True)

    node_id: int = Field(..., ge=0)
    host: str = Field(..., min_length=1)
    roles: List[str] = Field(default_factory=lambda: list(NODE_ROLES))
    weight: float = Field(default=1.0, ge=0.0)
    location: Optional[str] = None

    @field_validator("roles")
    @classmethod
    def _known_roles(cls, v: List[str]) -> List[str]:
        unknown = [role for role in v if role not in NODE_ROLES]
        if unknown:
            raise ValueError(f"unknown node roles: {', '.join(unknown)}")
        return v


class ServerConfig(BaseModel):
    """Cluster topology: name, members and the logs config reference."""

    model_config = ConfigDict(frozen=True)

    cluster: str = Field(..., min_length=1)
    version: int = Field(default=0, ge=0)
    nodes: List[NodeConfig] = Field(..., min_length=1)
    include_log_config: Optional[str] = None
    pairing: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _unique_node_ids(self) -> "ServerConfig":
        seen = set()
        for node in self.nodes:
            if node.node_id in seen:
                raise ValueError(f"duplicate node_id {node.node_id}")
            seen.add(node.node_id)
        return self

    def get_node(self, node_id: int) -> Optional[NodeConfig]:
        for node in self.nodes:
            if node.node_id == node_id:
                return node
        return None


class LogGroupConfig(BaseModel):
    """Replication policy for a contiguous range of log ids."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    id_range: Tuple[int, int]
    replication_factor: int = Field(..., ge=1)
    backlog_seconds: Optional[int] = Field(default=None, gt=0)
    attributes: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("id_range", mode="before")
    @classmethod
    def _single_id(cls, v: Any) -> Any:
        if isinstance(v, int):
            return (v, v)
        return v

    @field_validator("id_range")
    @classmethod
    def _ordered_range(cls, v: Tuple[int, int]) -> Tuple[int, int]:
        lo, hi = v
        if lo < 1:
            raise ValueError("log ids start at 1")
        if lo > hi:
            raise ValueError(f"invalid id range {lo}..{hi}")
        return v

    def contains(self, log_id: int) -> bool:
        return self.id_range[0] <= log_id <= self.id_range[1]


class LogsConfig(BaseModel):
    """Per-log configuration."""

    model_config = ConfigDict(frozen=True)

    logs: List[LogGroupConfig] = Field(default_factory=list)
    pairing: Optional[str] = None

    @model_validator(mode="after")
    def _no_overlap(self) -> "LogsConfig":
        names = set()
        for group in self.logs:
            if group.name in names:
                raise ValueError(f"duplicate log group {group.name!r}")
            names.add(group.name)

        ordered = sorted(self.logs, key=lambda g: g.id_range[0])
        for prev, cur in zip(ordered, ordered[1:]):
            if cur.id_range[0] <= prev.id_range[1]:
                raise ValueError(
                    f"log group {cur.name!r} overlaps {prev.name!r}"
                )
        return self

    def find(self, log_id: int) -> Optional[LogGroupConfig]:
        for group in self.logs:
            if group.contains(log_id):
                return group
        return None

    @property
    def log_count(self) -> int:
        return sum(g.id_range[1] - g.id_range[0] + 1 for g in self.logs)


__all__ = [
    "NODE_ROLES",
    "NodeConfig",
    "ServerConfig",
    "LogGroupConfig",
    "LogsConfig",
]
