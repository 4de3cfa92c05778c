"""Builders for raw sampler snapshots used across tests."""


def call_frame(name, url="", line=-1):
    return {
        "functionName": name,
        "scriptId": "1",
        "url": url,
        "lineNumber": line,
        "columnNumber": -1,
    }


def make_cpu_profile(
    nodes, samples, start_time=0, end_time=1_000_000, time_deltas=None
):
    """
    Build a CPU profile from a flat description:
    ``[{"id": 1, "name": "(root)", "children": [2]}, ...]``.

    Time deltas default to an even split of the duration.
    """
    if time_deltas is None and samples is not None:
        time_deltas = [
            (end_time - start_time) // len(samples) if samples else 0
            for _ in samples
        ]

    profile = {
        "nodes": [
            {
                "id": node["id"],
                "callFrame": call_frame(
                    node["name"], node.get("url", ""), node.get("line", -1)
                ),
                "children": node.get("children", []),
            }
            for node in nodes
        ],
        "startTime": start_time,
        "endTime": end_time,
    }
    if samples is not None:
        profile["samples"] = samples
    if time_deltas is not None:
        profile["timeDeltas"] = time_deltas
    return profile


def make_heap_node(id, name, self_size, children=(), url="", line=-1):
    return {
        "id": id,
        "callFrame": call_frame(name, url, line),
        "selfSize": self_size,
        "children": list(children),
    }


def make_heap_profile(head):
    return {"head": head}


def simple_cpu_profile(sample_count=2):
    """(root) -> main (app.py:1), every sample on main."""
    return make_cpu_profile(
        [
            {"id": 1, "name": "(root)", "children": [2]},
            {"id": 2, "name": "main", "url": "app.py", "line": 1},
        ],
        [2] * sample_count,
    )


def empty_heap_profile():
    return make_heap_profile(make_heap_node(1, "(root)", 0))
