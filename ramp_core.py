"""Staged ramp load generator core.

This module drives a pool of closed-loop virtual users against a single HTTP
target. One scheduling loop ticks on a fixed interval, reads the scheduled
number of users from a :class:`ramp_schedule.Schedule` and starts or retires
workers to match it. Every request produces a :class:`RequestOutcome` that is
counted locally and handed to any number of outcome sinks.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
import time
from collections import Counter
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

import aiohttp
import yaml

from ramp_schedule import ConfigError, Schedule, Stage, parse_duration

__version__ = "0.1.0"

LOGGER = logging.getLogger("ramp_load")

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_CANCELLED = 130

HTTP_METHODS = frozenset({"GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"})

STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"


def _seconds(value: Any, field_name: str, *, allow_zero: bool = False) -> float:
    if allow_zero and not isinstance(value, bool) and value in (0, "0"):
        return 0.0
    return parse_duration(value, field_name)


@dataclass
class TargetConfig:
    """The endpoint every virtual user hits."""

    url: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.url, str) or not self.url.strip():
            raise ConfigError("target url must be a non-empty string")

        # Expand the target into a full URL if only host:port provided
        url = self.url.strip()
        if "://" not in url:
            url = f"http://{url}"
        parts = urlsplit(url)
        try:
            parts.port
        except ValueError:
            raise ConfigError(f"target url {self.url!r} has an invalid port") from None
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ConfigError(f"target url {self.url!r} is not a valid http(s) URL")
        self.url = url

        self.method = str(self.method).upper()
        if self.method not in HTTP_METHODS:
            raise ConfigError(f"unsupported HTTP method {self.method!r}")

        if not isinstance(self.headers, dict):
            raise ConfigError("target headers must be a mapping")
        self.headers = {str(name): str(value) for name, value in self.headers.items()}

    @classmethod
    def from_dict(cls, raw: Any) -> "TargetConfig":
        """Build a target from a URL string or ``{url, method?, headers?}``."""

        if isinstance(raw, str):
            return cls(url=raw)
        if not isinstance(raw, dict):
            raise ConfigError(f"target must be a URL or a mapping, got {raw!r}")
        unknown = set(raw) - {"url", "method", "headers"}
        if unknown:
            raise ConfigError(f"unknown target keys: {', '.join(sorted(unknown))}")
        return cls(url=raw.get("url"), method=raw.get("method", "GET"), headers=raw.get("headers") or {})


@dataclass
class RampConfig:
    """A complete load profile: the stages, the target and run tuning."""

    stages: List[Stage]
    target: TargetConfig
    name: str = "ramp"
    start_concurrency: int = 0
    tick_interval: float = 1.0
    timeout_seconds: float = 10.0
    grace_period: float = 5.0
    summary_interval: float = 30.0

    def __post_init__(self) -> None:
        if not isinstance(self.stages, (list, tuple)):
            raise ConfigError("stages must be a list of stage records")
        self.stages = [stage if isinstance(stage, Stage) else Stage.from_dict(stage) for stage in self.stages]
        if not isinstance(self.target, TargetConfig):
            self.target = TargetConfig.from_dict(self.target)

        self.schedule = Schedule(self.stages, self.start_concurrency)

        self.tick_interval = _seconds(self.tick_interval, "tick_interval")
        self.timeout_seconds = _seconds(self.timeout_seconds, "timeout_seconds")
        self.grace_period = _seconds(self.grace_period, "grace_period", allow_zero=True)
        self.summary_interval = _seconds(self.summary_interval, "summary_interval", allow_zero=True)

        # Default headers that the target's own headers can override
        merged_headers = {
            "User-Agent": f"ramp-load/{__version__}",
            "X-Load-Profile": str(self.name),
        }
        merged_headers.update(self.target.headers)
        self.headers = merged_headers

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "RampConfig":
        """Build a config object from a plain dict (the config file shape)."""

        if not isinstance(raw, dict):
            raise ConfigError("configuration must be a mapping")
        unknown = set(raw) - {f.name for f in fields(cls)}
        if unknown:
            raise ConfigError(f"unknown configuration keys: {', '.join(sorted(unknown))}")
        for required in ("stages", "target"):
            if required not in raw:
                raise ConfigError(f"configuration is missing '{required}'")
        return cls(**raw)


@dataclass(frozen=True)
class RequestOutcome:
    """The result of one request issued by one virtual user."""

    timestamp: float
    duration: float
    status: Optional[int] = None
    error: Optional[str] = None
    worker_id: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None and self.status is not None and 200 <= self.status < 300


OutcomeSink = Callable[[RequestOutcome], None]
# (target url, requests in the window, error labels seen in the window)
UnreachableHook = Callable[[str, int, Dict[str, int]], None]


class RunStats:
    """Counters over every outcome of a run."""

    def __init__(self) -> None:
        self.status_counts: Counter[str] = Counter()
        self.error_counts: Counter[str] = Counter()
        self.total_requests = 0
        self.total_latency = 0.0
        self.max_latency = 0.0
        self.target_unreachable = False
        self.unreachable_windows = 0
        self._window_requests = 0
        self._window_responses = 0
        self._window_errors: Counter[str] = Counter()
        self.last_window_requests = 0
        self.last_window_errors: Counter[str] = Counter()

    def record(self, outcome: RequestOutcome) -> None:
        self.total_requests += 1
        self._window_requests += 1
        self.total_latency += outcome.duration
        self.max_latency = max(self.max_latency, outcome.duration)
        if outcome.status is not None:
            self.status_counts[str(outcome.status)] += 1
            self._window_responses += 1
        if outcome.error is not None:
            self.error_counts[outcome.error] += 1
            self._window_errors[outcome.error] += 1

    @property
    def success_count(self) -> int:
        return sum(count for status, count in self.status_counts.items() if status.startswith("2"))

    @property
    def failure_count(self) -> int:
        """Responses that came back with a non-2xx status."""

        return sum(self.status_counts.values()) - self.success_count

    @property
    def error_count(self) -> int:
        return sum(self.error_counts.values())

    @property
    def mean_latency(self) -> float:
        return self.total_latency / self.total_requests if self.total_requests else 0.0

    def close_window(self, target: str) -> bool:
        """Finish the current summary window.

        A window in which requests were issued but not one produced an HTTP
        response marks the target as unreachable. This is reported, never
        raised: the run carries on with its schedule.
        """

        if self._window_requests:
            unreachable = self._window_responses == 0
            if unreachable:
                self.unreachable_windows += 1
                top_errors = ", ".join(f"{name}:{count}" for name, count in self._window_errors.most_common(3))
                LOGGER.warning(
                    "Target %s unreachable: %d requests without a single response [%s]",
                    target,
                    self._window_requests,
                    top_errors,
                )
            elif self.target_unreachable:
                LOGGER.info("Target %s is responding again", target)
            self.target_unreachable = unreachable

        self.last_window_requests = self._window_requests
        self.last_window_errors = self._window_errors
        self._window_requests = 0
        self._window_responses = 0
        self._window_errors = Counter()
        return self.target_unreachable

    def log_summary(self, elapsed: float, live_workers: int, *, final: bool = False) -> None:
        """Emit a summary of collected metrics so far."""

        parts = [
            f"vus={live_workers}",
            f"total={self.total_requests}",
            f"2xx={self.success_count}",
            f"non2xx={self.failure_count}",
            f"errors={self.error_count}",
            f"avg={self.mean_latency * 1000:.1f}ms",
            f"max={self.max_latency * 1000:.1f}ms",
        ]
        top_statuses = ", ".join(f"{status}:{count}" for status, count in self.status_counts.most_common(5))
        if top_statuses:
            parts.append(f"status_breakdown=[{top_statuses}]")
        if self.error_counts:
            top_exceptions = ", ".join(f"{name}:{count}" for name, count in self.error_counts.most_common(3))
            parts.append(f"errors=[{top_exceptions}]")

        message = "FINAL" if final else "SUMMARY"
        LOGGER.info("%s %.1fs %s", message, elapsed, " | ".join(parts))


@dataclass
class RunResult:
    status: str
    elapsed: float
    stats: RunStats

    @property
    def cancelled(self) -> bool:
        return self.status == STATUS_CANCELLED

    @property
    def target_unreachable(self) -> bool:
        return self.stats.target_unreachable

    @property
    def exit_code(self) -> int:
        return EXIT_CANCELLED if self.cancelled else EXIT_OK


class _Worker:
    __slots__ = ("worker_id", "task", "stopping")

    def __init__(self, worker_id: int) -> None:
        self.worker_id = worker_id
        self.task: Optional[asyncio.Task] = None
        self.stopping = False


class Run:
    """One execution of a load profile.

    The scheduling loop in :meth:`run` is the only code that adds workers to
    or removes them from the live set. Workers only read their own
    ``stopping`` flag and exit after the request they are working on.
    """

    def __init__(
        self,
        config: RampConfig,
        sinks: Iterable[OutcomeSink] = (),
        *,
        handle_signals: bool = False,
        on_unreachable: Optional[UnreachableHook] = None,
    ) -> None:
        self.config = config
        self.schedule = config.schedule
        self.sinks = list(sinks)
        self.on_unreachable = on_unreachable
        self.handle_signals = handle_signals
        self.stats = RunStats()
        self.observed_levels: List[Tuple[float, int]] = []
        self._active: List[_Worker] = []
        self._draining: List[_Worker] = []
        self._next_worker_id = 0
        self._stop_event = asyncio.Event()
        self._session: Optional[aiohttp.ClientSession] = None
        self._started = False

    @property
    def live_workers(self) -> int:
        return len(self._active)

    @property
    def draining_workers(self) -> int:
        return len(self._draining)

    @property
    def running_workers(self) -> int:
        """Worker tasks that have not finished, live or draining."""

        return sum(1 for worker in self._active + self._draining if worker.task is not None and not worker.task.done())

    def stop(self) -> None:
        """Ask the run to end early. Safe to call more than once."""

        if not self._stop_event.is_set():
            LOGGER.info("Stop requested")
        self._stop_event.set()

    async def run(self) -> RunResult:
        """Run the whole schedule, or until :meth:`stop` is called."""

        if self._started:
            raise RuntimeError("a Run can only be executed once")
        self._started = True

        config = self.config
        loop = asyncio.get_running_loop()
        installed = _install_signal_handlers(loop, self.stop) if self.handle_signals else []
        timeout = aiohttp.ClientTimeout(total=config.timeout_seconds)
        status = STATUS_CANCELLED
        start = loop.time()

        try:
            async with aiohttp.ClientSession(timeout=timeout, connector=aiohttp.TCPConnector(limit=0)) as session:
                self._session = session
                LOGGER.info(
                    "Starting %s: %s %s, %s (%.0fs)",
                    config.name,
                    config.target.method,
                    config.target.url,
                    self.schedule.describe(),
                    self.schedule.total_duration,
                )
                try:
                    status = await self._drive(loop, start)
                finally:
                    if status == STATUS_COMPLETED:
                        # in-flight requests are bounded by the request timeout
                        await self._shutdown(config.timeout_seconds + config.tick_interval)
                    else:
                        await self._shutdown(config.grace_period)
        finally:
            _remove_signal_handlers(loop, installed)
            self._session = None
            elapsed = loop.time() - start
            self._close_window()
            self.stats.log_summary(elapsed, self.live_workers, final=True)
            LOGGER.info("Run %s %s after %.2fs", config.name, status, elapsed)

        return RunResult(status=status, elapsed=elapsed, stats=self.stats)

    async def _drive(self, loop: asyncio.AbstractEventLoop, start: float) -> str:
        summary_interval = self.config.summary_interval
        next_summary = summary_interval if summary_interval else None
        current_stage = -1

        for elapsed, level in self.schedule.checkpoints(self.config.tick_interval):
            if await self._wait_until(loop, start + elapsed):
                return STATUS_CANCELLED

            stage_index = self.schedule.stage_at(elapsed)
            if stage_index != current_stage:
                current_stage = stage_index
                stage = self.schedule.stages[stage_index]
                from_level = (
                    self.schedule.stages[stage_index - 1].target if stage_index else self.schedule.start_concurrency
                )
                LOGGER.info(
                    "Stage %d/%d: %d -> %d users over %gs",
                    stage_index + 1,
                    len(self.schedule.stages),
                    from_level,
                    stage.target,
                    stage.duration,
                )

            self._reap()
            self._scale_to(level)
            self.observed_levels.append((elapsed, level))

            if next_summary is not None and elapsed >= next_summary:
                self._close_window()
                self.stats.log_summary(elapsed, self.live_workers)
                next_summary = elapsed + summary_interval

        return STATUS_COMPLETED

    async def _wait_until(self, loop: asyncio.AbstractEventLoop, deadline: float) -> bool:
        """Sleep until ``deadline``; return True if a stop was requested."""

        if self._stop_event.is_set():
            return True
        delay = deadline - loop.time()
        if delay <= 0:
            return False
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    def _scale_to(self, level: int) -> None:
        current = len(self._active)
        if level > current:
            for _ in range(level - current):
                try:
                    self._spawn()
                except (RuntimeError, MemoryError, OSError) as exc:
                    LOGGER.warning(
                        "Could not start virtual user (%s); running %d of %d, retrying next tick",
                        exc,
                        len(self._active),
                        level,
                    )
                    break
        elif level < current:
            for _ in range(current - level):
                worker = self._active.pop()
                worker.stopping = True
                self._draining.append(worker)
        else:
            return
        LOGGER.debug("Scaled virtual users %d -> %d (%d draining)", current, len(self._active), len(self._draining))

    def _spawn(self) -> None:
        worker = _Worker(self._next_worker_id)
        worker.task = asyncio.create_task(self._worker_loop(worker), name=f"vu-{worker.worker_id}")
        self._next_worker_id += 1
        self._active.append(worker)

    def _reap(self) -> None:
        for worker in [w for w in self._active if w.task.done()]:
            # a live worker only finishes when it crashed; the next scale step replaces it
            self._active.remove(worker)
            _log_worker_exit(worker)
        finished = [w for w in self._draining if w.task.done()]
        for worker in finished:
            self._draining.remove(worker)
            _log_worker_exit(worker)

    async def _shutdown(self, timeout: float) -> None:
        workers = self._active + self._draining
        for worker in workers:
            worker.stopping = True
        self._active = []
        self._draining = workers

        tasks = [worker.task for worker in workers if worker.task is not None]
        if tasks:
            LOGGER.info("Stopping %d virtual users (waiting up to %.1fs for in-flight requests)", len(tasks), timeout)
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            if pending:
                LOGGER.warning("Cancelling %d virtual users still running after %.1fs", len(pending), timeout)
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        self._reap()

    async def _worker_loop(self, worker: _Worker) -> None:
        while not worker.stopping:
            await self._issue_request(worker)
            # let the scheduling loop in between back-to-back fast failures
            await asyncio.sleep(0)

    async def _issue_request(self, worker: _Worker) -> None:
        target = self.config.target
        timestamp = time.time()
        started = time.monotonic()
        status, error = await self._send_request(target.method, target.url, headers=self.config.headers)
        outcome = RequestOutcome(
            timestamp=timestamp,
            duration=time.monotonic() - started,
            status=status,
            error=error,
            worker_id=worker.worker_id,
        )
        self._record(outcome)
        LOGGER.debug("vu=%d status=%s error=%s %.3fs", worker.worker_id, status, error, outcome.duration)

    async def _send_request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
    ) -> Tuple[Optional[int], Optional[str]]:
        """Send the HTTP request and return status + error label (if any)."""

        assert self._session is not None, "Session must be initialized before running"
        try:
            async with self._session.request(method, url, headers=headers) as response:
                await response.read()  # ensure the connection can be reused
                return response.status, None
        except asyncio.TimeoutError:
            return None, "timeout"
        except aiohttp.ClientResponseError as exc:
            return exc.status, exc.__class__.__name__
        except aiohttp.ClientError as exc:
            return None, exc.__class__.__name__
        except Exception as exc:  # pragma: no cover - unexpected client failure
            LOGGER.exception("Unexpected error during request: %s", exc)
            return None, exc.__class__.__name__

    def _record(self, outcome: RequestOutcome) -> None:
        self.stats.record(outcome)
        for sink in self.sinks:
            sink(outcome)

    def _close_window(self) -> None:
        url = self.config.target.url
        stats = self.stats
        if stats.close_window(url) and stats.last_window_requests and self.on_unreachable is not None:
            self.on_unreachable(url, stats.last_window_requests, dict(stats.last_window_errors))


def _log_worker_exit(worker: _Worker) -> None:
    task = worker.task
    if task.cancelled():
        LOGGER.debug("vu=%d cancelled", worker.worker_id)
        return
    exc = task.exception()
    if exc is not None:
        LOGGER.warning("vu=%d died: %r", worker.worker_id, exc)
    else:
        LOGGER.debug("vu=%d stopped", worker.worker_id)


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, callback: Callable[[], None]) -> List[int]:
    """Install SIGINT/SIGTERM handlers to stop the run gracefully."""

    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, callback)
        except NotImplementedError:  # pragma: no cover - Windows / restricted envs
            LOGGER.debug("Signal handlers not supported on this platform")
            break
        installed.append(sig)
    return installed


def _remove_signal_handlers(loop: asyncio.AbstractEventLoop, installed: Sequence[int]) -> None:
    for sig in installed:
        loop.remove_signal_handler(sig)


def load_config_file(path: Path) -> Dict[str, Any]:
    """Load a configuration file in YAML or JSON format."""

    suffix = path.suffix.lower()
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        raise ConfigError(f"{path} is not valid UTF-8") from None
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(text) or {}
    elif suffix == ".json":
        data = json.loads(text or "{}")
    else:
        raise ConfigError(f"Unsupported configuration file format: {suffix}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return dict(data)


def setup_logging(level: str = "INFO") -> None:
    """Configure basic logging output."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def run_with_config(
    config: RampConfig,
    sinks: Iterable[OutcomeSink] = (),
    *,
    handle_signals: bool = True,
    on_unreachable: Optional[UnreachableHook] = None,
) -> RunResult:
    """Helper to run a profile with asyncio.run."""

    async def _runner() -> RunResult:
        run = Run(config, sinks, handle_signals=handle_signals, on_unreachable=on_unreachable)
        return await run.run()

    return asyncio.run(_runner())


def print_schedule(config: RampConfig, out=None) -> None:
    """Write every scheduled checkpoint, one ``elapsed users`` pair per line."""

    out = out or sys.stdout
    out.write(f"# {config.name}: {config.schedule.describe()}\n")
    for elapsed, level in config.schedule.checkpoints(config.tick_interval):
        out.write(f"{elapsed:10.2f}s {level:6d}\n")


def _apply_overrides(config_dict: Dict[str, Any], args: argparse.Namespace) -> None:
    if args.url is not None:
        target = config_dict.get("target")
        if isinstance(target, dict):
            config_dict["target"] = dict(target, url=args.url)
        else:
            config_dict["target"] = {"url": args.url}
    for option, key in (
        ("timeout", "timeout_seconds"),
        ("tick_interval", "tick_interval"),
        ("grace_period", "grace_period"),
        ("summary_interval", "summary_interval"),
    ):
        value = getattr(args, option)
        if value is not None:
            config_dict[key] = value


def build_argparser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Staged ramp HTTP load generator")
    parser.add_argument("--config", type=Path, required=True, help="Path to YAML/JSON load profile")
    parser.add_argument("--url", type=str, default=None, help="Override the target URL")
    parser.add_argument("--timeout", type=float, default=None, help="Override per-request timeout (seconds)")
    parser.add_argument("--tick-interval", type=float, default=None, help="Override scheduler tick (seconds)")
    parser.add_argument(
        "--grace-period",
        type=float,
        default=None,
        help="Override how long a stop waits for in-flight requests (seconds)",
    )
    parser.add_argument(
        "--summary-interval",
        type=float,
        default=None,
        help="Override summary logging interval in seconds (0 to disable)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Print the schedule and exit without sending requests")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level (DEBUG, INFO, ...)")
    return parser


def main(argv: Optional[Iterable[str]] = None) -> int:
    """CLI entry point for the ramp load generator."""

    args = build_argparser().parse_args(list(argv) if argv is not None else None)
    setup_logging(args.log_level)

    try:
        config_dict = load_config_file(args.config)
        _apply_overrides(config_dict, args)
        config = RampConfig.from_dict(config_dict)
    except (ConfigError, OSError, yaml.YAMLError, json.JSONDecodeError) as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG_ERROR

    if args.dry_run:
        print_schedule(config)
        return EXIT_OK

    try:
        result = run_with_config(config)
    except KeyboardInterrupt:
        LOGGER.info("KeyboardInterrupt received; exiting")
        return EXIT_CANCELLED
    return result.exit_code


if __name__ == "__main__":  # pragma: no cover - CLI usage
    sys.exit(main())
