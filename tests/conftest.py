from typing import Any, Dict, List, Optional, Tuple

import pytest

from datastream_shardguard import FetchError

GIB = 1024 ** 3


class FakeClusterClient:
    """In-memory stand-in for ClusterClient, routed by API endpoint."""

    def __init__(self, responses: Optional[Dict[str, Any]] = None):
        # route -> JSON body, or an exception instance to raise
        self.responses = dict(responses or {})
        self.calls: List[Tuple[str, Optional[Dict[str, str]]]] = []

    @staticmethod
    def route(path: str) -> str:
        if path.startswith("/_cluster/health"):
            return "health"
        if path.startswith("/_data_stream"):
            return "data_streams"
        if path.startswith("/_cat/indices/"):
            return "cat_indices"
        if path.endswith("/_stats/store"):
            return "stats"
        raise AssertionError(f"unexpected path {path}")

    def get_json(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        self.calls.append((path, params))
        route = self.route(path)
        if route not in self.responses:
            raise FetchError(f"HTTP 404 for GET {path}")
        body = self.responses[route]
        if isinstance(body, Exception):
            raise body
        return body

    def routes_called(self) -> List[str]:
        return [self.route(path) for path, _ in self.calls]


def data_streams_body(streams: Dict[str, List[str]]) -> Dict[str, Any]:
    return {
        "data_streams": [
            {"name": name, "indices": [{"index_name": index} for index in indices]}
            for name, indices in streams.items()
        ]
    }


def stats_body(sizes: Dict[str, float]) -> Dict[str, Any]:
    return {
        "indices": {
            index: {"primaries": {"store": {"size_in_bytes": size}}}
            for index, size in sizes.items()
        }
    }


def cat_body(counts: Dict[str, str]) -> List[Dict[str, str]]:
    return [{"index": index, "pri": pri, "rep": "1"} for index, pri in counts.items()]


@pytest.fixture
def healthy_cluster() -> FakeClusterClient:
    """Two data streams; logs-app is oversized, metrics-host is within target."""
    return FakeClusterClient({
        "health": {"cluster_name": "prod-search"},
        "data_streams": data_streams_body({
            "logs-app": [".ds-logs-app-000001", ".ds-logs-app-000002"],
            "metrics-host": [".ds-metrics-host-000007"],
            "traces-empty": [],
        }),
        "stats": stats_body({
            ".ds-logs-app-000002": 100 * GIB,
            ".ds-metrics-host-000007": 45 * GIB,
        }),
        "cat_indices": cat_body({
            ".ds-logs-app-000002": "2",
            ".ds-metrics-host-000007": "2",
        }),
    })
