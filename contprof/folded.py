"""
Conversion of sampler snapshots into folded stacks.

A folded stack is one line per distinct stack, frames joined root to leaf
with ";" and followed by an integer weight:

    main (app/server.py:10);handle (app/views.py:42) 17

Lines are joined with "\n" and come in no particular order.
"""

from collections import defaultdict
from collections.abc import Iterable

from contprof.frames import (
    CpuSnapshot,
    HeapNode,
    HeapSnapshot,
    format_frame_label,
    is_root_frame,
    should_skip_frame,
)

# Walks deeper than this stop early, guarding against malformed or cyclic
# parent links.
MAX_STACK_DEPTH = 512
DEFAULT_SAMPLE_RATE = 100


def _serialize(weights: "dict[str, int]") -> str:
    return "\n".join(f"{stack} {weight}" for stack, weight in weights.items())


def _fold_cpu_samples(
    snapshot: CpuSnapshot, weighted_samples: Iterable[tuple[int, int]], keep_idle: bool
) -> str:
    node_by_id = {}
    parent_by_id = {}
    for node in snapshot.nodes:
        node_by_id[node.id] = node
        for child_id in node.children:
            parent_by_id[child_id] = node.id

    # Many samples share a leaf, so resolve each leaf once.
    stack_by_leaf: dict[int, str] = {}
    weights: dict[str, int] = defaultdict(int)

    for leaf_id, weight in weighted_samples:
        if leaf_id not in stack_by_leaf:
            labels = []
            current_id: "int | None" = leaf_id
            depth = 0
            while current_id is not None and depth < MAX_STACK_DEPTH:
                node = node_by_id.get(current_id)
                if node is None or is_root_frame(node.call_frame):
                    break
                if not should_skip_frame(node.call_frame, keep_idle=keep_idle):
                    labels.append(format_frame_label(node.call_frame))
                current_id = parent_by_id.get(current_id)
                depth += 1

            labels.reverse()
            stack_by_leaf[leaf_id] = ";".join(labels)

        stack = stack_by_leaf[leaf_id]
        if not stack:
            # Pure idle or engine-only sample.
            continue
        weights[stack] += weight

    return _serialize(weights)


def cpu_to_folded(snapshot: CpuSnapshot) -> str:
    """
    Fold a CPU snapshot weighting every stack by its sample count.

    "(idle)" samples are dropped. Returns "" when there are no samples.
    """
    if not snapshot.samples:
        return ""
    return _fold_cpu_samples(
        snapshot, ((leaf_id, 1) for leaf_id in snapshot.samples), keep_idle=False
    )


def cpu_to_folded_wall(snapshot: CpuSnapshot) -> str:
    """
    Fold a CPU snapshot weighting every stack by elapsed wall-clock
    microseconds (the sample's time delta).

    "(idle)" frames are kept so time spent waiting shows up in the
    flamegraph. Returns "" when samples or time deltas are missing.
    """
    if not snapshot.samples or not snapshot.time_deltas:
        return ""
    return _fold_cpu_samples(
        snapshot, zip(snapshot.samples, snapshot.time_deltas), keep_idle=True
    )


def heap_to_folded(snapshot: HeapSnapshot) -> str:
    """
    Fold a sampling heap snapshot, one line per frame with allocated bytes.

    A node's self size is charged to the path of visible frames leading to
    it, so bytes on a skipped frame land on its nearest visible ancestor.
    Returns "" if nothing was allocated.
    """
    lines = []
    pending: list[tuple[HeapNode, tuple[str, ...]]] = [(snapshot.head, ())]
    while pending:
        node, path = pending.pop()
        frame = node.call_frame
        if not (is_root_frame(frame) or should_skip_frame(frame)):
            path = path + (format_frame_label(frame),)

        if node.self_size > 0 and path:
            lines.append(f"{';'.join(path)} {node.self_size}")

        # Reversed so lines come out in depth-first, left-to-right order.
        for child in reversed(node.children):
            pending.append((child, path))

    return "\n".join(lines)


def calculate_sample_rate(snapshot: CpuSnapshot) -> int:
    """
    Estimate the sampling frequency in Hz, used by the backend to turn
    sample counts into CPU time.
    """
    if not snapshot.samples:
        return DEFAULT_SAMPLE_RATE
    duration_us = snapshot.end_time - snapshot.start_time
    if duration_us <= 0:
        return DEFAULT_SAMPLE_RATE
    return round(len(snapshot.samples) / duration_us * 1_000_000)
