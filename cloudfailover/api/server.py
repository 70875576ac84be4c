"""HTTP control surface and command line entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from aiohttp import web

from cloudfailover import __version__
from cloudfailover.config.declaration import ConfigWorker, Declaration
from cloudfailover.config.settings import Settings
from cloudfailover.device.client import DeviceClient
from cloudfailover.errors import ConfigurationError, FailoverError
from cloudfailover.failover.orchestrator import DeviceFacts, FailoverOrchestrator
from cloudfailover.failover.retrier import RetryPolicy

logger = logging.getLogger("cloudfailover.api")

BASE_PATH = "/cloud-failover"

OrchestratorFactory = Callable[[Declaration], Awaitable[FailoverOrchestrator]]


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def setup_logging(settings: Settings) -> logging.Logger:
    """Configure rotating file + console logging for the ``cloudfailover`` loggers."""
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    root = logging.getLogger("cloudfailover")
    root.setLevel(settings.log_level.upper())

    ch = logging.StreamHandler(sys.stdout)
    ch.setFormatter(fmt)
    root.addHandler(ch)

    try:
        log_dir = Path(settings.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        fh = TimedRotatingFileHandler(
            log_dir / "cloud-failover.log",
            when="midnight",
            backupCount=settings.log_retention_days,
            utc=True,
        )
    except OSError as exc:
        root.warning("File logging disabled, cannot write to %s: %s", settings.log_dir, exc)
    else:
        fh.setFormatter(fmt)
        root.addHandler(fh)
    return root


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class FailoverService:
    """Owns the current orchestrator and serialises failover runs in this process."""

    def __init__(
        self,
        settings: Settings,
        config_worker: Optional[ConfigWorker] = None,
        device: Optional[DeviceFacts] = None,
        factory: Optional[OrchestratorFactory] = None,
    ) -> None:
        self.settings = settings
        self.config_worker = config_worker or ConfigWorker(settings.declaration_path)
        self._device = device or DeviceClient(settings)
        self._factory = factory or self._create_orchestrator
        self._orchestrator: Optional[FailoverOrchestrator] = None
        self._lock = asyncio.Lock()
        # Guards orchestrator construction only; acquired after _lock when both are held
        self._init_lock = asyncio.Lock()
        self._run_task: Optional[asyncio.Task[None]] = None

    async def _create_orchestrator(self, declaration: Declaration) -> FailoverOrchestrator:
        return await FailoverOrchestrator.create(
            declaration,
            self._device,
            region=self.settings.aws_region,
            retry_policy=RetryPolicy(self.settings.cloud_retry_attempts, self.settings.cloud_retry_interval_s),
        )

    async def orchestrator(self) -> FailoverOrchestrator:
        async with self._init_lock:
            if self._orchestrator is None:
                declaration = await self.config_worker.get_config()
                self._orchestrator = await self._factory(declaration)
            return self._orchestrator

    async def declare(self, body: dict[str, Any]) -> Declaration:
        declaration = await self.config_worker.process_config_request(body)
        async with self._lock, self._init_lock:
            self._orchestrator = await self._factory(declaration)
        return declaration

    @property
    def running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    def trigger(self) -> bool:
        """Start a failover run in the background unless one is already in flight."""
        if self.running:
            return False
        self._run_task = asyncio.create_task(self._background_execute(), name="failover-execute")
        return True

    async def execute(self) -> None:
        async with self._lock:
            orchestrator = await self.orchestrator()
            await orchestrator.execute()

    async def _background_execute(self) -> None:
        try:
            await self.execute()
        except Exception:
            # The failure is already recorded in the state file
            logger.exception("Background failover run failed")

    async def wait(self) -> None:
        if self._run_task is not None:
            await asyncio.gather(self._run_task, return_exceptions=True)


# ---------------------------------------------------------------------------
# HTTP handlers
# ---------------------------------------------------------------------------

def _service(request: web.Request) -> FailoverService:
    return request.app["service"]


async def _json_body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise web.HTTPBadRequest(
            text=json.dumps({"message": "Body must be valid JSON"}), content_type="application/json",
        ) from None
    return body if isinstance(body, dict) else {}


@web.middleware
async def auth_middleware(request: web.Request, handler):
    token = request.app["settings"].api_token
    if token and request.headers.get("Authorization", "") != f"Bearer {token}":
        return web.json_response({"message": "unauthorized"}, status=401)
    return await handler(request)


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except ConfigurationError as exc:
        return web.json_response({"message": str(exc)}, status=400)
    except FailoverError as exc:
        logger.error("%s %s failed: %s", request.method, request.path, exc)
        return web.json_response({"message": str(exc)}, status=500)


async def handle_info(request: web.Request) -> web.Response:
    return web.json_response({"message": "success", "version": __version__})


async def handle_get_declare(request: web.Request) -> web.Response:
    raw = await asyncio.to_thread(_service(request).config_worker.load_raw)
    return web.json_response({"message": "success", "declaration": raw})


async def handle_post_declare(request: web.Request) -> web.Response:
    body = await _json_body(request)
    await _service(request).declare(body)
    return web.json_response({"message": "success", "declaration": body})


async def handle_post_trigger(request: web.Request) -> web.Response:
    service = _service(request)
    # Raises ConfigurationError (400) before any background run starts
    await service.orchestrator()
    started = service.trigger()
    message = "Failover running" if started else "Failover already running"
    return web.json_response({"taskState": "RUNNING", "message": message}, status=202)


async def handle_get_trigger(request: web.Request) -> web.Response:
    orchestrator = await _service(request).orchestrator()
    return web.json_response(await orchestrator.get_task_state_file())


async def handle_reset(request: web.Request) -> web.Response:
    body = await _json_body(request)
    orchestrator = await _service(request).orchestrator()
    return web.json_response(await orchestrator.reset_failover_state(body))


async def handle_inspect(request: web.Request) -> web.Response:
    orchestrator = await _service(request).orchestrator()
    return web.json_response(await orchestrator.get_failover_status_and_objects())


async def cleanup_background_tasks(app: web.Application) -> None:
    await app["service"].wait()


def create_app(settings: Settings, service: Optional[FailoverService] = None) -> web.Application:
    app = web.Application(middlewares=[auth_middleware, error_middleware])
    app["settings"] = settings
    app["service"] = service or FailoverService(settings)
    app.router.add_get(f"{BASE_PATH}/info", handle_info)
    app.router.add_get(f"{BASE_PATH}/declare", handle_get_declare)
    app.router.add_post(f"{BASE_PATH}/declare", handle_post_declare)
    app.router.add_get(f"{BASE_PATH}/trigger", handle_get_trigger)
    app.router.add_post(f"{BASE_PATH}/trigger", handle_post_trigger)
    app.router.add_post(f"{BASE_PATH}/reset", handle_reset)
    app.router.add_get(f"{BASE_PATH}/inspect", handle_inspect)
    app.on_cleanup.append(cleanup_background_tasks)
    return app


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

async def _run_command(command: str, settings: Settings) -> dict[str, Any]:
    service = FailoverService(settings)
    orchestrator = await service.orchestrator()
    if command == "execute":
        await orchestrator.execute()
        return await orchestrator.get_task_state_file()
    if command == "status":
        return await orchestrator.get_failover_status_and_objects()
    if command == "reset":
        return await orchestrator.reset_failover_state({"resetStateFile": True})
    return await orchestrator.get_task_state_file()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="cloud-failover", description="Cloud failover for HA appliance pairs")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="run the HTTP control API (default)")
    sub.add_parser("execute", help="run one failover cycle and print the task state")
    sub.add_parser("task", help="print the task state file")
    sub.add_parser("status", help="print device HA status and associated cloud objects")
    sub.add_parser("reset", help="reset the failover state file")
    args = parser.parse_args(argv)

    try:
        settings = Settings.from_env()
    except ConfigurationError as exc:
        parser.error(str(exc))
    setup_logging(settings)

    command = args.command or "serve"
    if command == "serve":
        web.run_app(create_app(settings), host=settings.api_host, port=settings.api_port)
        return 0

    try:
        result = asyncio.run(_run_command(command, settings))
    except FailoverError as exc:
        logger.error("%s failed: %s", command, exc)
        return 1
    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
