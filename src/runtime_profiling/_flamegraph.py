"""Flame graph construction from raw ``.cpuprofile`` payloads.

The payload has ``nodes`` (``id`` plus a ``callFrame`` with ``functionName``,
``url``, ``lineNumber``, ``columnNumber``), a ``samples`` sequence of node
ids and a parallel ``timeDeltas`` sequence.

The result is a one-level aggregation: every node's time is the sum of the
deltas of the samples that landed on it. Parent/child edges are not
reconstructed.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from beartype import beartype
from loguru import logger

from runtime_profiling._errors import PersistenceError

ANONYMOUS = "(anonymous)"
MISSING_DELTA = 1


@dataclass
class NodeTiming:
    self_time: float = 0.0
    total_time: float = 0.0


@dataclass(frozen=True)
class FlameNode:
    name: str
    value: float
    url: str = ""
    line: int = -1
    column: int = -1

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "url": self.url,
            "line": self.line,
            "column": self.column,
        }


@dataclass(frozen=True)
class FlameGraph:
    name: str
    value: float
    children: list[FlameNode] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "children": [child.to_dict() for child in self.children],
        }


def aggregate_samples(
    nodes: list[dict[str, Any]],
    samples: list[int],
    time_deltas: list[float],
) -> dict[int, NodeTiming]:
    """Sum the time delta of each sample into the node it references.

    A sample with no matching delta counts as 1; samples pointing at
    unknown node ids are ignored.
    """
    timings: dict[int, NodeTiming] = {node["id"]: NodeTiming() for node in nodes}
    for index, node_id in enumerate(samples):
        delta = time_deltas[index] if index < len(time_deltas) else MISSING_DELTA
        timing = timings.get(node_id)
        if timing is not None:
            timing.self_time += delta
            timing.total_time += delta
    return timings


@beartype
def build_flame_graph(profile: dict[str, Any]) -> FlameGraph:
    """Project a raw CPU profile into a flat flame graph under a ``root`` node."""
    nodes = profile.get("nodes", [])
    timings = aggregate_samples(nodes, profile.get("samples", []), profile.get("timeDeltas", []))

    children = []
    for node in nodes:
        frame = node.get("callFrame", {})
        children.append(
            FlameNode(
                name=frame.get("functionName") or ANONYMOUS,
                value=timings[node["id"]].total_time,
                url=frame.get("url", ""),
                line=frame.get("lineNumber", -1),
                column=frame.get("columnNumber", -1),
            )
        )

    return FlameGraph(
        name="root",
        value=profile.get("endTime", 0) - profile.get("startTime", 0),
        children=children,
    )


def flame_graph_path(profile_path: Path) -> Path:
    """``cpu_1.cpuprofile`` -> ``cpu_1.flamegraph.json``."""
    if profile_path.suffix in (".cpuprofile", ".json"):
        return profile_path.with_suffix(".flamegraph.json")
    return profile_path.with_name(profile_path.name + ".flamegraph.json")


@beartype
def write_flame_graph(profile_path: Path) -> Path:
    """Read a saved CPU profile and write its flame graph beside it.

    Raises:
        PersistenceError: If the profile cannot be read or parsed, or the
            flame graph cannot be written
    """
    try:
        profile = json.loads(profile_path.read_text())
    except (OSError, ValueError) as exc:
        logger.error(f"Failed to generate flame graph from {profile_path}: {exc}")
        raise PersistenceError(f"Cannot read CPU profile {profile_path}") from exc

    graph = build_flame_graph(profile)
    output = flame_graph_path(profile_path)
    try:
        output.write_text(json.dumps(graph.to_dict(), indent=2))
    except OSError as exc:
        logger.error(f"Failed to write flame graph {output}: {exc}")
        raise PersistenceError(f"Cannot write flame graph {output}") from exc

    logger.success(f"Flame graph generated: {output}")
    return output
