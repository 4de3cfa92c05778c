from typing import List, TypedDict

from typing_extensions import NotRequired


class RawCallFrame(TypedDict):
    """
    A single stack frame as reported by the sampler session.

    lineNumber is -1 when unknown.
    """

    functionName: str
    url: str
    lineNumber: int
    scriptId: NotRequired[str]
    columnNumber: NotRequired[int]


class RawCpuNode(TypedDict):
    id: int
    callFrame: RawCallFrame
    hitCount: NotRequired[int]
    children: NotRequired[List[int]]


class RawCpuProfile(TypedDict):
    """
    Result of Profiler.stop.

    samples[i] is the leaf node id of sample i and timeDeltas[i] the
    microseconds elapsed since the previous sample. startTime and endTime are
    microseconds since an arbitrary epoch.
    """

    nodes: List[RawCpuNode]
    startTime: int
    endTime: int
    samples: NotRequired[List[int]]
    timeDeltas: NotRequired[List[int]]


class RawHeapNode(TypedDict):
    id: int
    callFrame: RawCallFrame
    selfSize: int
    children: List["RawHeapNode"]


class RawHeapProfile(TypedDict):
    """
    Result of HeapProfiler.stopSampling.
    """

    head: RawHeapNode
