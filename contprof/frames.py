"""
Snapshot data model and the per-frame rules shared by every folded-stack
conversion: which frames mark the root, which are noise, and how a frame is
rendered as a label.
"""

from typing import Any

import attrs

from contprof.snapshot_types import RawCallFrame, RawCpuProfile, RawHeapProfile

ROOT_FRAME_NAME = "(root)"
IDLE_FRAME_NAME = "(idle)"
ANONYMOUS_FRAME_NAME = "(anonymous)"
# Frames reported with this url are the profiler's own overhead.
PROFILER_OVERHEAD_URL = "node:inspector"

_FILE_SCHEME = "file://"


@attrs.frozen(kw_only=True)
class CallFrame:
    function_name: str
    url: str = ""
    line_number: int = -1


@attrs.frozen(kw_only=True)
class CpuNode:
    id: int
    call_frame: CallFrame
    children: tuple[int, ...] = ()


@attrs.frozen(kw_only=True)
class CpuSnapshot:
    nodes: tuple[CpuNode, ...]
    samples: "tuple[int, ...] | None" = None
    time_deltas: "tuple[int, ...] | None" = None
    start_time: int = 0
    end_time: int = 0


@attrs.define(kw_only=True)
class HeapNode:
    id: int
    call_frame: CallFrame
    self_size: int = 0
    children: list["HeapNode"] = attrs.Factory(list)


@attrs.frozen(kw_only=True)
class HeapSnapshot:
    head: HeapNode


def is_root_frame(frame: CallFrame) -> bool:
    return frame.function_name == ROOT_FRAME_NAME


def should_skip_frame(frame: CallFrame, keep_idle: bool = False) -> bool:
    """
    Return True for frames left out of a folded stack while the walk
    continues through them.

    Arguments:
        frame: The frame to check
        keep_idle: Keep "(idle)" frames so idle time stays attributable
    """
    if frame.url == PROFILER_OVERHEAD_URL:
        return True
    return not keep_idle and frame.function_name == IDLE_FRAME_NAME


def shorten_url(url: str) -> str:
    """
    Strip a file:// scheme and keep only the last two path segments.

    >>> shorten_url("file:///home/user/project/src/handler.py")
    'src/handler.py'
    """
    if url.startswith(_FILE_SCHEME):
        url = url[len(_FILE_SCHEME) :]
    return "/".join(url.split("/")[-2:])


def format_frame_label(frame: CallFrame) -> str:
    """
    Render a frame for a flamegraph.

    "name (dir/file.py:12)" when url and line are known, "name (dir/file.py)"
    when only the url is, and bare "name" without a url. Blank function names
    become "(anonymous)".
    """
    name = frame.function_name.strip() or ANONYMOUS_FRAME_NAME

    if not frame.url:
        return name

    short_url = shorten_url(frame.url)
    if frame.line_number >= 0:
        return f"{name} ({short_url}:{frame.line_number})"
    return f"{name} ({short_url})"


def parse_call_frame(raw: "RawCallFrame | dict[str, Any]") -> CallFrame:
    line_number = raw.get("lineNumber")
    return CallFrame(
        function_name=raw.get("functionName") or "",
        url=raw.get("url") or "",
        line_number=-1 if line_number is None else int(line_number),
    )


def parse_cpu_profile(raw: "RawCpuProfile | dict[str, Any]") -> CpuSnapshot:
    nodes = tuple(
        CpuNode(
            id=node["id"],
            call_frame=parse_call_frame(node["callFrame"]),
            children=tuple(node.get("children") or ()),
        )
        for node in raw.get("nodes") or ()
    )
    samples = raw.get("samples")
    time_deltas = raw.get("timeDeltas")
    return CpuSnapshot(
        nodes=nodes,
        samples=None if samples is None else tuple(samples),
        time_deltas=None if time_deltas is None else tuple(time_deltas),
        start_time=raw.get("startTime") or 0,
        end_time=raw.get("endTime") or 0,
    )


def _parse_heap_node(raw: dict[str, Any]) -> HeapNode:
    return HeapNode(
        id=raw.get("id", 0),
        call_frame=parse_call_frame(raw["callFrame"]),
        self_size=raw.get("selfSize") or 0,
    )


def parse_heap_profile(raw: "RawHeapProfile | dict[str, Any]") -> HeapSnapshot:
    # Iterative so deeply nested allocation trees can't hit the
    # recursion limit.
    head = _parse_heap_node(raw["head"])
    pending = [(head, raw["head"])]
    while pending:
        node, raw_node = pending.pop()
        for raw_child in raw_node.get("children") or ():
            child = _parse_heap_node(raw_child)
            node.children.append(child)
            pending.append((child, raw_child))
    return HeapSnapshot(head=head)
