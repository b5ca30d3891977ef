"""
Benchmark runtime: one background event loop hosting the servers and workers.

BenchRuntime owns a dedicated thread running an asyncio loop. The echo
backend (and, for the system-under-test scenarios, the forwarding proxy) are
served there by uvicorn, and every trial's worker loops are scheduled on the
same loop. run_trial() blocks the calling thread until the trial is done, so
an external timer can measure it.
"""
import os
import time
import socket
import asyncio
import logging
import threading
import statistics
from dataclasses import dataclass
from typing import List, Optional

import httpx
import uvicorn

import echo_backend
import proxy_service
from load_harness import (
    DEFAULT_POLICY,
    DEFAULT_TARGET_PATH,
    ProxyBenchError,
    QuotaPolicy,
    TrialParameters,
    TrialResult,
    run_trial_async,
)

HOST = os.getenv("PROXYBENCH_HOST", "127.0.0.1")
ECHO_PORT = int(os.getenv("PROXYBENCH_ECHO_PORT", "9091"))
PROXY_PORT = int(os.getenv("PROXYBENCH_PROXY_PORT", "9090"))
REFERENCE_PORT = int(os.getenv("PROXYBENCH_REFERENCE_PORT", "6081"))
_metrics_port = os.getenv("PROXYBENCH_METRICS_PORT", "")
METRICS_PORT = int(_metrics_port) if _metrics_port else None
_timeout = os.getenv("PROXYBENCH_REQUEST_TIMEOUT", "")
REQUEST_TIMEOUT = float(_timeout) if _timeout else None
MAX_CONNECTIONS = int(os.getenv("PROXYBENCH_MAX_CONNECTIONS", "1000"))
STARTUP_TIMEOUT = float(os.getenv("PROXYBENCH_STARTUP_TIMEOUT", "5.0"))
SHUTDOWN_TIMEOUT = float(os.getenv("PROXYBENCH_SHUTDOWN_TIMEOUT", "5.0"))
LOG_LEVEL = os.getenv("PROXYBENCH_LOG_LEVEL", "WARNING").upper()

logger = logging.getLogger("proxybench.runtime")


class RuntimeStateError(ProxyBenchError, RuntimeError):
    pass


class ServerStartupError(ProxyBenchError):
    pass


@dataclass
class SpawnedServer:
    name: str
    port: int
    server: uvicorn.Server
    sock: socket.socket
    task: Optional[asyncio.Task] = None


def bind_socket(host: str, port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    return sock


def new_client(timeout: Optional[float] = REQUEST_TIMEOUT) -> httpx.AsyncClient:
    limits = httpx.Limits(max_connections=MAX_CONNECTIONS, max_keepalive_connections=MAX_CONNECTIONS)
    # trust_env=False: loopback traffic must never go through an environment proxy.
    return httpx.AsyncClient(timeout=timeout, limits=limits, trust_env=False)


class BenchRuntime:
    def __init__(self, echo_port: int = ECHO_PORT, proxy_port: Optional[int] = None, host: str = HOST,
                 metrics_port: Optional[int] = None):
        self.host = host
        self.echo_port = echo_port
        self.proxy_port = proxy_port
        self.metrics_port = metrics_port
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._servers: List[SpawnedServer] = []
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def running(self) -> bool:
        return self._loop is not None

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    def start(self) -> "BenchRuntime":
        if self.running:
            return self
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name="proxybench-runtime", daemon=True)
        self._thread.start()
        try:
            self.spawn_app(echo_backend.create_app(), self.echo_port, name="echo")
            if self.proxy_port is not None:
                app = proxy_service.create_app(self.echo_port, self.host)
                self.spawn_app(app, self.proxy_port, name="proxy", lifespan="on")
            if self.metrics_port is not None:
                self.spawn_app(proxy_service.create_metrics_app(), self.metrics_port, name="metrics")
        except BaseException:
            self.stop()
            raise
        logger.info(f"Runtime started (echo={self.echo_port}, proxy={self.proxy_port}, metrics={self.metrics_port})")
        return self

    def _run_loop(self):
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def call(self, coro, timeout: Optional[float] = None):
        """Run a coroutine on the runtime loop and block until it returns."""
        if not self.running:
            coro.close()
            raise RuntimeStateError("BenchRuntime is not started")
        return asyncio.run_coroutine_threadsafe(coro, self._loop).result(timeout)

    def spawn_app(self, app, port: int, name: str = "app", lifespan: str = "off") -> SpawnedServer:
        """Serve an ASGI app on host:port in the background until stop()."""
        # Bind here so "address already in use" reaches the caller as OSError.
        sock = bind_socket(self.host, port)
        config = uvicorn.Config(app, host=self.host, port=port, lifespan=lifespan, log_config=None,
                                log_level=LOG_LEVEL.lower(), access_log=False,
                                timeout_graceful_shutdown=SHUTDOWN_TIMEOUT)
        spawned = SpawnedServer(name=name, port=port, server=uvicorn.Server(config), sock=sock)
        self._servers.append(spawned)
        self.call(self._launch(spawned))
        logger.info(f"{name} listening on {self.host}:{port}")
        return spawned

    async def _launch(self, spawned: SpawnedServer):
        loop = asyncio.get_running_loop()
        spawned.task = asyncio.create_task(spawned.server.serve(sockets=[spawned.sock]))
        deadline = loop.time() + STARTUP_TIMEOUT
        while not spawned.server.started:
            if spawned.task.done():
                exc = None if spawned.task.cancelled() else spawned.task.exception()
                raise ServerStartupError(f"{spawned.name} on port {spawned.port} exited during startup") from exc
            if loop.time() > deadline:
                spawned.server.should_exit = True
                raise ServerStartupError(f"{spawned.name} on port {spawned.port} did not start within {STARTUP_TIMEOUT}s")
            await asyncio.sleep(0.01)

    async def _trial(self, params: TrialParameters, policy: QuotaPolicy) -> TrialResult:
        if self._client is None:
            self._client = new_client()
        return await run_trial_async(self._client, params, policy)

    def run_trial(self, total_requests: int, concurrency: int, target_port: int,
                  target_path: str = DEFAULT_TARGET_PATH, policy: QuotaPolicy = DEFAULT_POLICY) -> TrialResult:
        params = TrialParameters(total_requests, concurrency, target_port, target_path, self.host)
        return self.call(self._trial(params, policy))

    async def _shutdown(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        # Proxy before echo, so its upstream connections are gone first.
        for spawned in reversed(self._servers):
            spawned.server.should_exit = True
            if spawned.task is not None:
                try:
                    await spawned.task
                except Exception:
                    logger.exception(f"{spawned.name} on port {spawned.port} failed during shutdown")
            spawned.sock.close()
        self._servers = []

    def stop(self):
        if not self.running:
            return
        try:
            self.call(self._shutdown())
        finally:
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join()
            self._loop.run_until_complete(self._loop.shutdown_asyncgens())
            self._loop.close()
            self._loop = None
            self._thread = None
            logger.info("Runtime stopped")


def start_server_background(proxy_port: int = PROXY_PORT, echo_port: int = ECHO_PORT,
                            metrics_port: Optional[int] = None) -> BenchRuntime:
    return BenchRuntime(echo_port=echo_port, proxy_port=proxy_port, metrics_port=metrics_port).start()


SCENARIOS = [
    ("a_1_request", 1, 1),
    ("b_10_requests", 10, 1),
    ("c_100_requests", 100, 1),
    ("d_10_parallel_requests", 10, 10),
    ("e_100_parallel_requests", 100, 10),
    ("f_1_000_parallel_requests", 1000, 100),
]


def run_scenarios(runtime: BenchRuntime, target_port: int, iterations: int, label: str):
    for name, amount, concurrency in SCENARIOS:
        timings = []
        for _ in range(iterations):
            t0 = time.perf_counter()
            runtime.run_trial(amount, concurrency, target_port)
            timings.append(time.perf_counter() - t0)
        title = name + label
        print(f"{title:<36} mean {statistics.mean(timings) * 1000:9.3f}ms  "
              f"min {min(timings) * 1000:9.3f}ms  ({iterations} runs)")


def main():
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(message)s")
    iterations = int(os.getenv("PROXYBENCH_ITERATIONS", "10"))
    with start_server_background(PROXY_PORT, ECHO_PORT, METRICS_PORT) as runtime:
        run_scenarios(runtime, PROXY_PORT, iterations, "")
    if os.getenv("PROXYBENCH_REFERENCE", "0") == "1":
        # The reference proxy is expected to be running already, with its
        # backend pointed at ECHO_PORT.
        with BenchRuntime(echo_port=ECHO_PORT, metrics_port=METRICS_PORT) as runtime:
            run_scenarios(runtime, REFERENCE_PORT, iterations, "_reference")


if __name__ == "__main__":
    main()
