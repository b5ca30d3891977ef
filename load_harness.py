"""
Load harness: sequential worker loops fanned out over one event loop.

Each worker issues GET requests one after another, draining every response
body before sending the next request, until its quota is used up. A trial
runs `concurrency` such workers side by side and completes only when all of
them have. Any non-200 status or transport error aborts the whole trial.
"""
import os
import enum
import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import httpx
from prometheus_client import Counter, Histogram

DEFAULT_HOST = os.getenv("PROXYBENCH_HOST", "127.0.0.1")
DEFAULT_TARGET_PATH = os.getenv("PROXYBENCH_TARGET_PATH", "/get")

logger = logging.getLogger("proxybench.harness")

M_REQUESTS = Counter("loadgen_requests_total", "Requests completed by worker loops", ["status"])
M_TRIALS = Counter("loadgen_trials_total", "Trials run", ["outcome"])
M_TRIAL_DURATION = Histogram("loadgen_trial_duration_seconds", "Wall-clock duration of trials")


class ProxyBenchError(Exception):
    """Base class for harness failures."""


class UnexpectedStatusError(ProxyBenchError, AssertionError):
    def __init__(self, actual: int, port: Optional[int] = None, url: str = "", expected: int = 200):
        self.actual = actual
        self.expected = expected
        self.port = port
        self.url = url
        message = f"Target did not return a {expected} HTTP status code (got {actual} from {url})."
        if port is not None:
            message += f" Make sure the proxy on port {port} is running and its backend points at the echo backend."
        super().__init__(message)


class InvalidTrialParameters(ProxyBenchError, ValueError):
    pass


class QuotaPolicy(str, enum.Enum):
    # Exactly total_requests requests, remainder spread over the first workers.
    EXACT = "exact"
    # Every worker runs total // concurrency + 1 cycles.
    LEGACY = "legacy"


def parse_policy(value, source: str = "quota policy") -> QuotaPolicy:
    try:
        return QuotaPolicy(value)
    except ValueError:
        allowed = ", ".join(p.value for p in QuotaPolicy)
        raise InvalidTrialParameters(f"{source} must be one of: {allowed} (got {value!r})") from None


DEFAULT_POLICY = parse_policy(os.getenv("PROXYBENCH_QUOTA_POLICY", QuotaPolicy.EXACT.value),
                              "PROXYBENCH_QUOTA_POLICY")


@dataclass
class TrialParameters:
    total_requests: int
    concurrency: int
    target_port: int
    target_path: str = DEFAULT_TARGET_PATH
    target_host: str = DEFAULT_HOST

    def validate(self):
        if self.total_requests < 1:
            raise InvalidTrialParameters(f"total_requests must be positive, got {self.total_requests}")
        if self.concurrency < 1:
            raise InvalidTrialParameters(f"concurrency must be positive, got {self.concurrency}")
        if self.concurrency > self.total_requests:
            raise InvalidTrialParameters(
                f"concurrency ({self.concurrency}) cannot exceed total_requests ({self.total_requests})")

    @property
    def url(self) -> str:
        path = self.target_path if self.target_path.startswith("/") else "/" + self.target_path
        return f"http://{self.target_host}:{self.target_port}{path}"


@dataclass
class TrialResult:
    params: TrialParameters
    counters: List[int] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def requests_issued(self) -> int:
        return sum(self.counters)


def split_quota(total_requests: int, concurrency: int, policy: QuotaPolicy = QuotaPolicy.EXACT) -> List[int]:
    """Return the loop limit of every worker.

    A worker with limit Q performs Q + 1 request cycles, so under the exact
    policy a worker owning `share` requests gets `share - 1`.
    """
    TrialParameters(total_requests, concurrency, 0).validate()
    base, remainder = divmod(total_requests, concurrency)
    if parse_policy(policy) is QuotaPolicy.LEGACY:
        return [base] * concurrency
    return [base + (1 if i < remainder else 0) - 1 for i in range(concurrency)]


async def worker_loop(client: httpx.AsyncClient, url: str, limit: int, port: Optional[int] = None) -> int:
    if port is None:
        port = httpx.URL(url).port
    counter = 0
    while True:
        async with client.stream("GET", url) as res:
            M_REQUESTS.labels(status=str(res.status_code)).inc()
            if res.status_code != 200:
                raise UnexpectedStatusError(res.status_code, port=port, url=url)
            # Read the body to the end so the connection can be reused.
            async for _chunk in res.aiter_raw():
                pass
        counter += 1
        if counter > limit:
            return counter


async def fan_out(client: httpx.AsyncClient, url: str, total_requests: int, concurrency: int,
                  policy: QuotaPolicy = QuotaPolicy.EXACT, port: Optional[int] = None) -> List[int]:
    limits = split_quota(total_requests, concurrency, policy)
    tasks = [asyncio.create_task(worker_loop(client, url, limit, port)) for limit in limits]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


async def run_trial_async(client: httpx.AsyncClient, params: TrialParameters,
                          policy: QuotaPolicy = DEFAULT_POLICY) -> TrialResult:
    params.validate()
    loop = asyncio.get_running_loop()
    start = loop.time()
    try:
        counters = await fan_out(client, params.url, params.total_requests, params.concurrency,
                                 policy=policy, port=params.target_port)
    except Exception:
        M_TRIALS.labels(outcome="failed").inc()
        logger.exception(f"Trial against {params.url} failed")
        raise
    elapsed = loop.time() - start
    M_TRIALS.labels(outcome="ok").inc()
    M_TRIAL_DURATION.observe(elapsed)
    logger.debug(f"Trial {params.total_requests}/{params.concurrency} against {params.url} took {elapsed:.4f}s")
    return TrialResult(params=params, counters=list(counters), elapsed=elapsed)
