# Standard library imports and third-party dependencies
# asyncio drives the per-cycle fan-out, aiohttp issues the HTTP probes
import argparse
import asyncio
import logging
import os
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, TextIO
from urllib.parse import urlparse

import aiohttp
import yaml

logger = logging.getLogger(__name__)

# Delay between the end of one report and the start of the next cycle
CHECK_INTERVAL_SEC = 15
# Hard bound on a single probe, DNS resolution included
REQUEST_TIMEOUT_SEC = 0.5

DEFAULT_METHOD = "GET"
# Bodies are sent verbatim; only configured headers describe them
NO_AUTO_HEADERS = ("Content-Type",)


class ConfigError(Exception):
    """Raised when the endpoint configuration cannot be used to start monitoring."""


@dataclass(frozen=True)
class EndpointConfig:
    """
    Represents the configuration for a single HTTP endpoint.

    The hostname is derived from the URL once, at construction, and is the key
    under which availability is aggregated. Several endpoints on the same host
    share one bucket; the port is not part of the key.

    Example: https://api.example.com:8080/path -> api.example.com
    """
    name: str
    url: str
    method: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    body: Optional[str] = None
    hostname: str = field(init=False, default="")

    def __post_init__(self):
        try:
            hostname = urlparse(self.url).hostname or ""
        except ValueError:
            hostname = ""
        object.__setattr__(self, "hostname", hostname)

    @classmethod
    def from_dict(cls, item: Any) -> "EndpointConfig":
        """
        Builds and validates an endpoint from one record of the config document.

        Only `name` and `url` are required. Optional fields must have the
        documented types; anything else is a ConfigError rather than a probe
        that can never succeed.
        """
        if not isinstance(item, Mapping):
            raise ConfigError(f"entry must be a mapping, got {type(item).__name__}")

        name = item.get("name")
        url = item.get("url")
        if not name:
            raise ConfigError("required field 'name' not found")
        if not url:
            raise ConfigError("required field 'url' not found")
        if not isinstance(name, str) or not isinstance(url, str):
            raise ConfigError("'name' and 'url' must be strings")

        method = item.get("method")
        if method is not None and not isinstance(method, str):
            raise ConfigError(f"{name}: 'method' must be a string")

        headers = item.get("headers")
        if headers is not None:
            if not isinstance(headers, Mapping):
                raise ConfigError(f"{name}: 'headers' must be a mapping")
            if not all(isinstance(k, str) and isinstance(v, str) for k, v in headers.items()):
                raise ConfigError(f"{name}: header names and values must be strings")
            headers = dict(headers)

        body = item.get("body")
        if body is not None and not isinstance(body, str):
            raise ConfigError(f"{name}: 'body' must be a JSON-encoded string")

        endpoint = cls(name=name, url=url, method=method, headers=headers, body=body)
        endpoint.validate()
        return endpoint

    def validate(self) -> None:
        """
        Raises ConfigError unless name and url are set and the url is an
        http(s) address with an extractable host.
        """
        if not self.name:
            raise ConfigError("required field 'name' not found")
        if not self.url:
            raise ConfigError("required field 'url' not found")
        if not self.hostname or urlparse(self.url).scheme not in ("http", "https"):
            raise ConfigError(f"{self.name}: can't parse URL: {self.url}")

    def effective_method(self) -> str:
        """The configured HTTP method, GET when none is given."""
        return self.method or DEFAULT_METHOD


class ConfigurationParser:
    """
    Handles the parsing of YAML configuration files into endpoint configs.

    The document must be a YAML list of records. Every failure (missing file,
    bad YAML, bad record) surfaces as a ConfigError; deciding to exit is left
    to the caller.
    """
    def __init__(self, config_path: str):
        self.config_path = config_path

    def parse_config(self) -> List[EndpointConfig]:
        try:
            with open(self.config_path, 'r') as file:
                config_data = yaml.safe_load(file)
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(f"Unable to open yaml config file: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Unable to parse yaml config: {e}") from e

        if config_data is None:
            logger.warning("Configuration %s contains no endpoints", self.config_path)
            return []
        if not isinstance(config_data, list):
            raise ConfigError("Configuration must be a YAML list")

        endpoints = []
        for index, item in enumerate(config_data):
            try:
                endpoints.append(EndpointConfig.from_dict(item))
            except ConfigError as e:
                raise ConfigError(f"entry {index}: {e}") from e

        if not endpoints:
            logger.warning("Configuration %s contains no endpoints", self.config_path)
        return endpoints


@dataclass
class HealthCheckResult:
    """
    Stores the result of a single probe.

    UP means a 2xx status arrived within the request timeout. `status_code` is
    None when no response was received, in which case `error` says why.
    """
    endpoint_name: str
    hostname: str
    status_code: Optional[int] = None
    error: Optional[str] = None
    response_time_ms: float = 0.0

    @property
    def is_up(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code <= 299


class HealthChecker:
    """
    Probes endpoints with async HTTP requests.

    A probe never raises: timeouts, DNS failures, refused connections and
    malformed requests all become a DOWN result, so one bad endpoint cannot
    abort the cycle for the others.
    """
    def __init__(self, timeout: float = REQUEST_TIMEOUT_SEC):
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def check_endpoint(self, session: aiohttp.ClientSession,
                             endpoint: EndpointConfig) -> HealthCheckResult:
        """
        Checks a single endpoint and returns the classified result.

        Only the status line and headers are awaited; the body is released
        unread when the response context exits.
        """
        start_time = time.monotonic()
        try:
            async with session.request(
                method=endpoint.effective_method(),
                url=endpoint.url,
                headers=endpoint.headers,
                data=endpoint.body if endpoint.body else None,
                skip_auto_headers=NO_AUTO_HEADERS,
                timeout=self.timeout,
            ) as response:
                return HealthCheckResult(
                    endpoint_name=endpoint.name,
                    hostname=endpoint.hostname,
                    status_code=response.status,
                    response_time_ms=(time.monotonic() - start_time) * 1000,
                )
        except asyncio.TimeoutError:
            error = f"timed out after {self.timeout.total}s"
        except Exception as e:
            error = f"{type(e).__name__}: {e}"

        logger.debug("%s (%s) is DOWN: %s", endpoint.name, endpoint.url, error)
        return HealthCheckResult(
            endpoint_name=endpoint.name,
            hostname=endpoint.hostname,
            error=error,
            response_time_ms=(time.monotonic() - start_time) * 1000,
        )

    async def execute(self, session: aiohttp.ClientSession,
                      endpoint: EndpointConfig) -> bool:
        """The UP/DOWN outcome of one probe; never raises."""
        result = await self.check_endpoint(session, endpoint)
        if not result.is_up and result.status_code is not None:
            logger.debug("%s (%s) is DOWN: status %s",
                         endpoint.name, endpoint.url, result.status_code)
        return result.is_up


@dataclass
class HostCounters:
    attempts: int = 0
    successes: int = 0

    def uptime(self) -> int:
        """Whole-number availability, rounding .5 away from zero; 0 before any attempt."""
        if self.attempts == 0:
            return 0
        return (200 * self.successes + self.attempts) // (2 * self.attempts)


class AggregateStore:
    """
    Cumulative attempt/success counters keyed by hostname.

    A single lock guards the whole mapping. Buckets are never removed.
    """
    def __init__(self, hostnames=()):
        self._lock = threading.Lock()
        self._counters: Dict[str, HostCounters] = {}
        for hostname in hostnames:
            self.register(hostname)

    def register(self, hostname: str) -> None:
        """Creates a zeroed bucket for the hostname; an existing bucket is kept as is."""
        with self._lock:
            self._counters.setdefault(hostname, HostCounters())

    def record_attempt(self, hostname: str, success: bool) -> None:
        """
        Counts one probe against the hostname, and one success when it was UP.

        Safe to call from any number of concurrent tasks or threads.
        """
        with self._lock:
            counters = self._counters.setdefault(hostname, HostCounters())
            counters.attempts += 1
            if success:
                counters.successes += 1

    def snapshot(self) -> Dict[str, HostCounters]:
        """Copies of every bucket, safe to read while probes keep running."""
        with self._lock:
            return {
                hostname: HostCounters(c.attempts, c.successes)
                for hostname, c in self._counters.items()
            }

    def uptime_percent(self, hostname: str) -> int:
        """Rounded availability of the hostname; 0 for an unknown or unprobed host."""
        with self._lock:
            counters = self._counters.get(hostname)
            return counters.uptime() if counters else 0

    def __len__(self):
        with self._lock:
            return len(self._counters)


class Reporter:
    """Writes one availability line per hostname."""

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream

    @staticmethod
    def format_line(hostname: str, uptime: int) -> str:
        return f"{hostname} has {uptime}% availability percentage"

    def report(self, snapshot: Mapping[str, HostCounters]) -> None:
        stream = self.stream if self.stream is not None else sys.stdout
        for hostname in sorted(snapshot):
            print(self.format_line(hostname, snapshot[hostname].uptime()), file=stream)
        stream.flush()


class MonitoringService:
    """
    Orchestrates the monitoring cycles.

    Each cycle probes every endpoint concurrently, waits for all of them,
    reports, then sleeps for the interval. Cycles never overlap.
    """
    def __init__(self, endpoints: List[EndpointConfig],
                 interval: float = CHECK_INTERVAL_SEC,
                 health_checker: Optional[HealthChecker] = None,
                 store: Optional[AggregateStore] = None,
                 reporter: Optional[Reporter] = None):
        self.endpoints = list(endpoints)
        self.interval = interval
        self.health_checker = health_checker or HealthChecker()
        self.store = store if store is not None else AggregateStore()
        self.reporter = reporter or Reporter()
        self.running = False
        self.cycles = 0
        for endpoint in self.endpoints:
            self.store.register(endpoint.hostname)

    @classmethod
    def from_config(cls, config_path: str, **kwargs) -> "MonitoringService":
        return cls(ConfigurationParser(config_path).parse_config(), **kwargs)

    async def _probe_and_record(self, session: aiohttp.ClientSession,
                                endpoint: EndpointConfig) -> bool:
        success = await self.health_checker.execute(session, endpoint)
        self.store.record_attempt(endpoint.hostname, success)
        return success

    async def run_check_cycle(self, session: aiohttp.ClientSession) -> Dict[str, HostCounters]:
        """
        Executes a single monitoring cycle and returns the snapshot it reported.

        gather() is the barrier: the report is only produced once every probe
        of this cycle has been recorded.
        """
        start = time.monotonic()
        await asyncio.gather(*(
            self._probe_and_record(session, endpoint)
            for endpoint in self.endpoints
        ))
        snapshot = self.store.snapshot()
        self.reporter.report(snapshot)
        self.cycles += 1
        logger.debug("Cycle %d complete in %.3fs", self.cycles, time.monotonic() - start)
        return snapshot

    async def run(self, max_cycles: Optional[int] = None) -> None:
        """
        Runs cycles until stopped, or until `max_cycles` have completed.

        One ClientSession is shared by all cycles. The sleep is the last step
        of a cycle and is skipped after the final one.
        """
        self.running = True
        completed = 0
        # limit=0: no pool cap, every endpoint of a cycle gets its own connection
        connector = aiohttp.TCPConnector(limit=0)
        async with aiohttp.ClientSession(connector=connector) as session:
            while self.running:
                await self.run_check_cycle(session)
                completed += 1
                if max_cycles is not None and completed >= max_cycles:
                    break
                await asyncio.sleep(self.interval)
        self.running = False

    def stop(self):
        """Ends the loop after the cycle in progress."""
        self.running = False


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Poll HTTP endpoints and report availability per host")
    parser.add_argument("config", help="Path to YAML endpoint configuration")
    parser.add_argument("--once", action="store_true",
                        help="Run one check cycle and exit")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (DEBUG, INFO, WARNING, ...)",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Application entry point.

    Configuration errors are reported on stderr and exit with -1 before any
    request is sent.
    """
    args = build_arg_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    try:
        service = MonitoringService.from_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return -1

    logger.info("Monitoring %d endpoints across %d hosts",
                len(service.endpoints), len(service.store))

    try:
        asyncio.run(service.run(max_cycles=1 if args.once else None))
    except KeyboardInterrupt:
        print("\nStopping monitoring service...", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
