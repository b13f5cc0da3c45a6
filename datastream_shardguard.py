#!/usr/bin/env python3
"""
OpenSearch Data Stream Shard Guard

Prometheus exporter that checks the shard sizing of the latest backing index
(the write index) of every data stream in a cluster.

For each data stream it exposes, labelled by cluster, data stream and index:
    opensearch_datastream_primary_store_size_bytes
    opensearch_datastream_primary_shards
    opensearch_datastream_primary_shard_size_bytes
    opensearch_datastream_recommended_primary_shards
    opensearch_datastream_shard_size_ok

Configuration:
    Environment variables, optionally from a .env file.

    # Required - cluster URL
    OPENSEARCH_URL=https://search.example.com:9200

    # Optional - authentication (first match wins)
    OPENSEARCH_USE_IAM=true          # SigV4 request signing
    OPENSEARCH_AWS_REGION=eu-west-1  # Default: AWS_REGION
    OPENSEARCH_AWS_SERVICE=es        # Default: es ("aoss" for serverless)
    OPENSEARCH_API_KEY=your_base64_encoded_api_key
    OPENSEARCH_USERNAME=myuser
    OPENSEARCH_PASSWORD=mypassword

    # Optional - sizing and serving
    TARGET_SHARD_SIZE_GB=30          # Default: 30 (GiB)
    LISTEN_ADDR=:9108                # Default: :9108
    REQUEST_TIMEOUT=10               # Default: 10 seconds per upstream call
    OPENSEARCH_VERIFY_TLS=true       # Default: true
    LOG_LEVEL=INFO

    # Optional - SSH jumphost
    SSH_USER=sshuser
    SSH_HOST=jumphost.example.com
    SSH_PASS=sshpassword
    # OR
    SSH_KEY=/path/to/key
    # Requests then go to https://localhost:19200, so certificate hostname
    # checks fail unless OPENSEARCH_VERIFY_TLS=false

Usage:
    opensearch-datastream-shardguard
"""

import logging
import math
import os
import sys
import threading
from dataclasses import dataclass
from fractions import Fraction
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

import requests
from requests.auth import AuthBase, HTTPBasicAuth
import urllib3
from botocore.auth import SigV4Auth as BotocoreSigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.session import Session as BotocoreSession
from dotenv import load_dotenv
from prometheus_client import REGISTRY, start_http_server
from prometheus_client.core import GaugeMetricFamily
from sshtunnel import BaseSSHTunnelForwarderError, SSHTunnelForwarder

logger = logging.getLogger(__name__)

GIB = 1024 ** 3
DEFAULT_TARGET_SHARD_SIZE_GB = 30.0
DEFAULT_LISTEN_ADDR = ":9108"
DEFAULT_REQUEST_TIMEOUT = 10.0
DEFAULT_AWS_SERVICE = "es"
SSH_LOCAL_PORT = 19200

METRIC_PREFIX = "opensearch_datastream"
LABEL_NAMES = ["cluster", "data_stream", "index"]

TRUE_VALUES = ("true", "1", "yes")


# --------------------------------------------------------------------------- #
# Errors                                                                      #
# --------------------------------------------------------------------------- #
class ShardGuardError(Exception):
    """Base class for all exporter errors."""


class FetchError(ShardGuardError):
    """An upstream call failed: network, HTTP status or response decoding."""


class ConfigError(ShardGuardError):
    """Invalid startup configuration. Fatal."""


class ParseError(ShardGuardError):
    """A single upstream row could not be parsed."""


# --------------------------------------------------------------------------- #
# Configuration                                                               #
# --------------------------------------------------------------------------- #
@dataclass(frozen=True)
class Config:
    base_url: str
    username: Optional[str] = None
    password: Optional[str] = None
    api_key: Optional[str] = None
    use_iam: bool = False
    aws_region: Optional[str] = None
    aws_service: str = DEFAULT_AWS_SERVICE
    target_shard_size_gb: float = DEFAULT_TARGET_SHARD_SIZE_GB
    listen_host: str = "0.0.0.0"
    listen_port: int = 9108
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    verify_tls: bool = True
    ssh_user: Optional[str] = None
    ssh_host: Optional[str] = None
    ssh_pass: Optional[str] = None
    ssh_key: Optional[str] = None
    log_level: str = "INFO"

    @property
    def target_shard_size_bytes(self) -> float:
        return self.target_shard_size_gb * GIB

    @property
    def auth_mode(self) -> str:
        if self.use_iam:
            return "iam"
        if self.api_key:
            return "api-key"
        if self.username:
            return "basic"
        return "no-auth"

    @property
    def use_ssh(self) -> bool:
        return any([self.ssh_user, self.ssh_host, self.ssh_pass, self.ssh_key])


def _env(environ: Mapping[str, str], name: str) -> Optional[str]:
    """Return a stripped environment value, with empty strings normalized to None."""
    value = environ.get(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _positive_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = _env(environ, name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number (got: {raw})")
    if not math.isfinite(value) or value <= 0:
        raise ConfigError(f"{name} must be greater than 0 (got: {raw})")
    return value


def parse_listen_addr(addr: str) -> Tuple[str, int]:
    """
    Split a listen address of the form "[host]:port" into (host, port).

    An empty host binds all interfaces, so ":9108" becomes ("0.0.0.0", 9108).
    """
    host, sep, port_str = addr.rpartition(":")
    if not sep:
        raise ConfigError(f"LISTEN_ADDR must look like [host]:port (got: {addr})")
    try:
        port = int(port_str)
    except ValueError:
        raise ConfigError(f"LISTEN_ADDR port must be an integer (got: {addr})")
    if port < 0 or port > 65535:
        raise ConfigError(f"LISTEN_ADDR port must be between 0 and 65535 (got: {port})")
    host = host.strip("[]") or "0.0.0.0"
    return host, port


def load_config(environ: Optional[Mapping[str, str]] = None) -> Config:
    """Build and validate the exporter configuration from the environment."""
    if environ is None:
        environ = os.environ

    base_url = _env(environ, "OPENSEARCH_URL")
    if not base_url:
        raise ConfigError("OPENSEARCH_URL is required")
    base_url = base_url.rstrip("/")

    use_iam = (_env(environ, "OPENSEARCH_USE_IAM") or "").lower() in TRUE_VALUES
    aws_region = _env(environ, "OPENSEARCH_AWS_REGION") or _env(environ, "AWS_REGION")
    aws_service = _env(environ, "OPENSEARCH_AWS_SERVICE") or DEFAULT_AWS_SERVICE
    if use_iam and not aws_region:
        raise ConfigError("OPENSEARCH_AWS_REGION or AWS_REGION must be set when OPENSEARCH_USE_IAM is enabled")

    target_gb = _positive_float(environ, "TARGET_SHARD_SIZE_GB", DEFAULT_TARGET_SHARD_SIZE_GB)
    timeout = _positive_float(environ, "REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT)
    listen_host, listen_port = parse_listen_addr(_env(environ, "LISTEN_ADDR") or DEFAULT_LISTEN_ADDR)

    verify_raw = _env(environ, "OPENSEARCH_VERIFY_TLS")
    verify_tls = verify_raw is None or verify_raw.lower() in TRUE_VALUES

    config = Config(
        base_url=base_url,
        username=_env(environ, "OPENSEARCH_USERNAME"),
        password=environ.get("OPENSEARCH_PASSWORD", ""),
        api_key=_env(environ, "OPENSEARCH_API_KEY"),
        use_iam=use_iam,
        aws_region=aws_region,
        aws_service=aws_service,
        target_shard_size_gb=target_gb,
        listen_host=listen_host,
        listen_port=listen_port,
        request_timeout=timeout,
        verify_tls=verify_tls,
        ssh_user=_env(environ, "SSH_USER"),
        ssh_host=_env(environ, "SSH_HOST"),
        ssh_pass=_env(environ, "SSH_PASS"),
        ssh_key=_env(environ, "SSH_KEY"),
        log_level=(_env(environ, "LOG_LEVEL") or "INFO").upper(),
    )

    # Validate SSH configuration if any SSH var is set
    if config.use_ssh:
        if not config.ssh_user or not config.ssh_host:
            raise ConfigError("SSH_USER and SSH_HOST are required when using SSH jumphost")
        if not config.ssh_pass and not config.ssh_key:
            raise ConfigError("Either SSH_PASS or SSH_KEY must be set when using SSH jumphost")

    return config


# --------------------------------------------------------------------------- #
# Authentication                                                              #
# --------------------------------------------------------------------------- #
class RequestAuthenticator(AuthBase):
    """Attaches credentials to a prepared request right before it is sent."""

    def apply(self, request: requests.PreparedRequest) -> requests.PreparedRequest:
        raise NotImplementedError

    def __call__(self, request: requests.PreparedRequest) -> requests.PreparedRequest:
        return self.apply(request)


class NoAuth(RequestAuthenticator):
    def apply(self, request: requests.PreparedRequest) -> requests.PreparedRequest:
        return request


class BasicAuth(RequestAuthenticator):
    def __init__(self, username: str, password: str):
        self._auth = HTTPBasicAuth(username, password)

    def apply(self, request: requests.PreparedRequest) -> requests.PreparedRequest:
        return self._auth(request)


class ApiKeyAuth(RequestAuthenticator):
    def __init__(self, api_key: str):
        self._header = f"ApiKey {api_key}"

    def apply(self, request: requests.PreparedRequest) -> requests.PreparedRequest:
        request.headers["Authorization"] = self._header
        return request


class SigV4Auth(RequestAuthenticator):
    """
    Signs each request with AWS Signature Version 4.

    `credentials` is a botocore credentials object. Refreshable credentials
    are frozen once per request so a refresh happening in another scrape
    thread cannot mix key and token from different generations.
    """

    def __init__(self, credentials: Any, region: str, service: str = DEFAULT_AWS_SERVICE):
        self.credentials = credentials
        self.region = region
        self.service = service

    def apply(self, request: requests.PreparedRequest) -> requests.PreparedRequest:
        frozen = self.credentials.get_frozen_credentials()
        aws_request = AWSRequest(method=request.method, url=request.url, data=request.body)
        BotocoreSigV4Auth(frozen, self.service, self.region).add_auth(aws_request)
        request.headers.update(dict(aws_request.headers.items()))
        return request


def build_authenticator(config: Config) -> RequestAuthenticator:
    """Pick the authentication scheme: IAM, then API key, then basic, else none."""
    if config.use_iam:
        credentials = BotocoreSession().get_credentials()
        if credentials is None:
            raise ConfigError("IAM auth enabled but no AWS credentials could be found")
        return SigV4Auth(credentials, config.aws_region, config.aws_service)
    if config.api_key:
        return ApiKeyAuth(config.api_key)
    if config.username:
        return BasicAuth(config.username, config.password or "")
    return NoAuth()


# --------------------------------------------------------------------------- #
# HTTP client                                                                 #
# --------------------------------------------------------------------------- #
class ClusterClient:
    """Sends authenticated GET requests to the cluster and decodes JSON bodies."""

    def __init__(
        self,
        base_url: str,
        authenticator: Optional[RequestAuthenticator] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        verify: bool = True,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.authenticator = authenticator or NoAuth()
        self.timeout = timeout
        self.verify = verify
        self.session = session or requests.Session()

    def get_json(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.get(
                url, params=params, auth=self.authenticator, timeout=self.timeout, verify=self.verify
            )
        except requests.exceptions.RequestException as exc:
            raise FetchError(f"GET {path} failed: {exc}") from exc

        if not 200 <= resp.status_code < 300:
            resp.close()
            raise FetchError(f"HTTP {resp.status_code} for GET {path}")

        try:
            return resp.json()
        except ValueError as exc:
            raise FetchError(f"GET {path} returned an undecodable body: {exc}") from exc


# --------------------------------------------------------------------------- #
# Fetchers                                                                    #
# --------------------------------------------------------------------------- #
def resolve_cluster_name(client: ClusterClient) -> str:
    """Return the cluster name reported by the cluster health API."""
    body = client.get_json("/_cluster/health", params={"filter_path": "cluster_name"})
    if not isinstance(body, dict):
        raise FetchError("Unexpected response structure from /_cluster/health")
    return str(body.get("cluster_name", ""))


def resolve_latest_indices(client: ClusterClient) -> Dict[str, str]:
    """
    Map the latest backing index of each data stream to its data stream name.

    The upstream API lists backing indices oldest first, so the last entry
    is the current write index. Streams without backing indices are skipped.
    """
    body = client.get_json(
        "/_data_stream",
        params={"filter_path": "data_streams.name,data_streams.indices.index_name"},
    )
    if not isinstance(body, dict):
        raise FetchError("Unexpected response structure from /_data_stream")

    result = {}
    try:
        for data_stream in body.get("data_streams", []):
            indices = data_stream.get("indices") or []
            if not indices:
                continue
            latest = indices[-1].get("index_name")
            name = data_stream.get("name", "")
            if not latest or not isinstance(latest, str) or not isinstance(name, str):
                logger.warning("Skipping data stream with malformed name or index: %r", data_stream)
                continue
            result[latest] = name
    except (AttributeError, TypeError) as exc:
        raise FetchError(f"Unexpected response structure from /_data_stream: {exc}") from exc
    return result


def fetch_storage_stats(client: ClusterClient, index_names: Iterable[str]) -> Dict[str, float]:
    """Return primary store size in bytes for each of `index_names` still present."""
    index_names = sorted(index_names)
    if not index_names:
        return {}

    body = client.get_json(
        f"/{','.join(index_names)}/_stats/store",
        params={
            "filter_path": "indices.*.primaries.store.size_in_bytes",
            "ignore_unavailable": "true",
        },
    )
    if not isinstance(body, dict):
        raise FetchError("Unexpected response structure from _stats/store")

    try:
        indices_data = body.get("indices", {}).items()
        sizes = [
            (index_name, index_stats.get("primaries", {}).get("store", {}).get("size_in_bytes", 0))
            for index_name, index_stats in indices_data
        ]
    except (AttributeError, TypeError) as exc:
        raise FetchError(f"Unexpected response structure from _stats/store: {exc}") from exc

    result = {}
    for index_name, size in sizes:
        try:
            result[index_name] = parse_store_size(size)
        except ParseError as exc:
            logger.warning("Dropping store size for index %s: %s", index_name, exc)
    return result


def parse_store_size(size: Any) -> float:
    """Return `size` as a finite, non-negative number of bytes."""
    if isinstance(size, bool) or not isinstance(size, (int, float)):
        raise ParseError(f"non-numeric primary store size {size!r}")
    try:
        value = float(size)
    except OverflowError:
        raise ParseError("primary store size too large")
    if not math.isfinite(value) or value < 0:
        raise ParseError(f"invalid primary store size {size!r}")
    return value


def parse_shard_count_row(row: Any) -> Tuple[str, int]:
    """Parse one `_cat/indices` row into (index_name, primary_shard_count)."""
    if not isinstance(row, dict) or not isinstance(row.get("index"), str) or not row["index"]:
        raise ParseError(f"row without an index name: {row!r}")
    index_name = row["index"]
    pri = row.get("pri")
    try:
        count = int(str(pri).strip())
        # counts must survive float division when deriving averages
        float(count)
    except (ValueError, OverflowError):
        raise ParseError(f"invalid primary shard count {pri!r} for index {index_name}")
    return index_name, count


def fetch_shard_counts(client: ClusterClient, index_names: Iterable[str]) -> Dict[str, int]:
    """
    Return the primary shard count for each of `index_names`.

    Malformed rows are logged and dropped; the rest of the listing is kept.
    """
    index_names = sorted(index_names)
    if not index_names:
        return {}

    rows = client.get_json(
        f"/_cat/indices/{','.join(index_names)}",
        params={"format": "json", "h": "index,pri,rep"},
    )
    if not isinstance(rows, list):
        raise FetchError("Unexpected response structure from _cat/indices")

    result = {}
    for row in rows:
        try:
            index_name, count = parse_shard_count_row(row)
        except ParseError as exc:
            logger.warning("Dropping _cat/indices row: %s", exc)
            continue
        result[index_name] = count
    return result


# --------------------------------------------------------------------------- #
# Join and derive                                                             #
# --------------------------------------------------------------------------- #
@dataclass(frozen=True)
class BackingIndexStats:
    data_stream: str
    index_name: str
    primary_store_bytes: float
    primary_shard_count: int


@dataclass(frozen=True)
class DerivedMetricSet:
    data_stream: str
    index_name: str
    primary_store_bytes: float
    primary_shard_count: int
    avg_primary_shard_bytes: float
    recommended_primary_shards: int
    shard_size_ok: int


def join_latest_indices(
    index_to_stream: Mapping[str, str],
    storage_stats: Mapping[str, float],
    shard_counts: Mapping[str, int],
) -> List[BackingIndexStats]:
    """
    Inner join of latest indices, store sizes and shard counts on index name.

    Only indices present in all three inputs with a positive shard count are
    returned; anything else cannot be measured this scrape.
    """
    joined = []
    for index_name, data_stream in index_to_stream.items():
        if index_name not in storage_stats:
            continue
        shard_count = shard_counts.get(index_name)
        if shard_count is None or shard_count <= 0:
            continue
        joined.append(BackingIndexStats(
            data_stream=data_stream,
            index_name=index_name,
            primary_store_bytes=storage_stats[index_name],
            primary_shard_count=shard_count,
        ))
    return joined


def derive_metrics(stats: BackingIndexStats, target_shard_size_bytes: float) -> DerivedMetricSet:
    store = stats.primary_store_bytes
    count = stats.primary_shard_count
    # exact arithmetic so boundaries (avg == target, store == n * target) are not lost to rounding
    exact_store = Fraction(store)
    exact_target = Fraction(target_shard_size_bytes)
    return DerivedMetricSet(
        data_stream=stats.data_stream,
        index_name=stats.index_name,
        primary_store_bytes=store,
        primary_shard_count=count,
        avg_primary_shard_bytes=store / count,
        recommended_primary_shards=math.ceil(exact_store / exact_target),
        shard_size_ok=1 if exact_store <= exact_target * count else 0,
    )


# --------------------------------------------------------------------------- #
# Collector                                                                   #
# --------------------------------------------------------------------------- #
class ClusterNameCache:
    """
    Process-wide cluster name, resolved lazily and kept once resolution succeeds.

    Concurrent scrapes may resolve at the same time; the first successful
    result is the one kept.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._value: Optional[str] = None

    def get(self, resolve: Callable[[], str]) -> str:
        with self._lock:
            if self._value is not None:
                return self._value
        try:
            resolved = resolve()
        except FetchError as exc:
            logger.error("error fetching cluster name: %s", exc)
            return ""
        with self._lock:
            if self._value is None:
                self._value = resolved
            return self._value


def _metric_families() -> List[GaugeMetricFamily]:
    return [
        GaugeMetricFamily(
            f"{METRIC_PREFIX}_primary_store_size_bytes",
            "Total primary store size (bytes) for the latest backing index of a data stream",
            labels=LABEL_NAMES,
        ),
        GaugeMetricFamily(
            f"{METRIC_PREFIX}_primary_shards",
            "Number of primary shards for the latest backing index of a data stream",
            labels=LABEL_NAMES,
        ),
        GaugeMetricFamily(
            f"{METRIC_PREFIX}_primary_shard_size_bytes",
            "Average size of primary shards for the latest backing index of a data stream, in bytes",
            labels=LABEL_NAMES,
        ),
        GaugeMetricFamily(
            f"{METRIC_PREFIX}_recommended_primary_shards",
            "Recommended number of primary shards for the latest backing index "
            "of a data stream based on target shard size",
            labels=LABEL_NAMES,
        ),
        GaugeMetricFamily(
            f"{METRIC_PREFIX}_shard_size_ok",
            "1 if avg primary shard size for latest backing index is less than or equal to target, 0 otherwise",
            labels=LABEL_NAMES,
        ),
    ]


class DataStreamShardCollector:
    """Prometheus collector recomputing shard sizing on every scrape."""

    def __init__(self, client: ClusterClient, target_shard_size_bytes: float,
                 cluster_name_cache: Optional[ClusterNameCache] = None):
        self.client = client
        self.target_shard_size_bytes = target_shard_size_bytes
        self.cluster_name_cache = cluster_name_cache or ClusterNameCache()

    def describe(self) -> Iterator[GaugeMetricFamily]:
        return iter(_metric_families())

    def scrape(self) -> Tuple[str, List[DerivedMetricSet]]:
        """
        Run one scrape against the cluster.

        Returns the cluster label and one DerivedMetricSet per measurable
        index. Raises FetchError if data streams, stats or shard counts
        cannot be fetched.
        """
        cluster = self.cluster_name_cache.get(lambda: resolve_cluster_name(self.client))

        index_to_stream = resolve_latest_indices(self.client)
        if not index_to_stream:
            return cluster, []

        storage_stats = fetch_storage_stats(self.client, index_to_stream.keys())
        shard_counts = fetch_shard_counts(self.client, index_to_stream.keys())

        joined = join_latest_indices(index_to_stream, storage_stats, shard_counts)
        return cluster, [derive_metrics(stats, self.target_shard_size_bytes) for stats in joined]

    def collect(self) -> Iterator[GaugeMetricFamily]:
        try:
            cluster, metric_sets = self.scrape()
        except FetchError as exc:
            logger.error("scrape aborted: %s", exc)
            return

        store, shards, avg_size, recommended, size_ok = families = _metric_families()
        for metric_set in metric_sets:
            labels = [cluster, metric_set.data_stream, metric_set.index_name]
            store.add_metric(labels, metric_set.primary_store_bytes)
            shards.add_metric(labels, metric_set.primary_shard_count)
            avg_size.add_metric(labels, metric_set.avg_primary_shard_bytes)
            recommended.add_metric(labels, metric_set.recommended_primary_shards)
            size_ok.add_metric(labels, metric_set.shard_size_ok)
        yield from families


# --------------------------------------------------------------------------- #
# SSH Tunnel Setup                                                            #
# --------------------------------------------------------------------------- #
def setup_ssh_tunnel(
    ssh_host: str,
    ssh_user: str,
    ssh_pass: Optional[str],
    ssh_key: Optional[str],
    remote_host: str,
    remote_port: int,
    local_port: int = SSH_LOCAL_PORT,
) -> SSHTunnelForwarder:
    """
    Create and start an SSH tunnel through a jumphost.

    SSH agent and key directories are disabled so only the configured
    password or key is offered to the jumphost.
    """
    credentials: Dict[str, Any]
    if ssh_pass:
        credentials = {"ssh_password": ssh_pass}
    elif ssh_key:
        credentials = {"ssh_pkey": ssh_key}
    else:
        raise ConfigError("Either SSH_PASS or SSH_KEY must be provided for SSH authentication")

    tunnel = SSHTunnelForwarder(
        ssh_host,
        ssh_username=ssh_user,
        remote_bind_address=(remote_host, remote_port),
        local_bind_address=("127.0.0.1", local_port),
        allow_agent=False,
        host_pkey_directories=[],
        **credentials,
    )
    tunnel.start()
    return tunnel


def tunnel_endpoint(config: Config) -> Tuple[str, str, int]:
    """Return (local endpoint, remote host, remote port) for tunnelling `config.base_url`."""
    parsed = urlparse(config.base_url)
    remote_host = parsed.hostname
    if not remote_host:
        raise ConfigError(f"OPENSEARCH_URL has no host (got: {config.base_url})")
    remote_port = parsed.port or (443 if parsed.scheme == "https" else 80)
    endpoint = f"{parsed.scheme}://localhost:{SSH_LOCAL_PORT}{parsed.path}"
    return endpoint, remote_host, remote_port


# --------------------------------------------------------------------------- #
# Main                                                                        #
# --------------------------------------------------------------------------- #
def main() -> None:
    load_dotenv()

    try:
        config = load_config()
    except ConfigError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not config.verify_tls:
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    tunnel: Optional[SSHTunnelForwarder] = None
    endpoint = config.base_url

    try:
        if config.use_ssh:
            endpoint, remote_host, remote_port = tunnel_endpoint(config)
            logger.info(
                "Setting up SSH tunnel through %s: localhost:%d -> %s:%d",
                config.ssh_host, SSH_LOCAL_PORT, remote_host, remote_port,
            )
            tunnel = setup_ssh_tunnel(
                ssh_host=config.ssh_host,
                ssh_user=config.ssh_user,
                ssh_pass=config.ssh_pass,
                ssh_key=config.ssh_key,
                remote_host=remote_host,
                remote_port=remote_port,
            )
            if config.verify_tls and endpoint.startswith("https://"):
                logger.warning(
                    "TLS verification is on but requests go through localhost; "
                    "set OPENSEARCH_VERIFY_TLS=false if certificate hostname checks fail"
                )

        authenticator = build_authenticator(config)
        client = ClusterClient(endpoint, authenticator, config.request_timeout, config.verify_tls)
        REGISTRY.register(DataStreamShardCollector(client, config.target_shard_size_bytes))

        start_http_server(config.listen_port, addr=config.listen_host)
        logger.info(
            "Starting OpenSearch data stream shard exporter on %s:%d, target shard %.1f GB, auth=%s",
            config.listen_host, config.listen_port, config.target_shard_size_gb, config.auth_mode,
        )
        threading.Event().wait()

    except ConfigError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)
    except BaseSSHTunnelForwarderError as exc:
        logger.error("SSH tunnel failed: %s: %s", type(exc).__name__, exc)
        sys.exit(2)
    except OSError as exc:
        logger.error("Cannot serve metrics on %s:%d: %s", config.listen_host, config.listen_port, exc)
        sys.exit(2)
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        if tunnel:
            tunnel.stop()
            logger.info("SSH tunnel closed")


if __name__ == "__main__":
    main()
