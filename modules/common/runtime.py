"""Application runtime scaffolding for the bot process."""

from __future__ import annotations

import asyncio
import logging
import math
import os
import random
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from aiohttp import web
from discord.ext import commands

from config.runtime import get_port, get_scheduled_poll_interval_sec
from shared import health as healthmod
from shared.config import get_bot_name, get_config_snapshot, get_env_name, load_settings
from shared.logging import get_trace_id, set_trace_id, setup_logging
from shared.sheets.async_adapter import arun, shutdown_executor
from shared.web_routes import INTAKE_PATH, mount_intake_route

log = logging.getLogger("dtm.runtime")

EXTENSIONS = ("cogs.downtime",)


async def create_app(*, runtime: "Runtime | None" = None) -> web.Application:
    """Create the aiohttp application with health and intake routes."""

    static_fields = {"env": get_env_name(), "bot": get_bot_name()}
    access_logger = setup_logging(static_fields=static_fields)

    healthmod.set_component("runtime", True)

    @web.middleware
    async def tracing_middleware(
        request: web.Request, handler: Callable[[web.Request], Awaitable[web.StreamResponse]]
    ) -> web.StreamResponse:
        trace = set_trace_id()
        started = time.perf_counter()
        status = 500
        try:
            response = await handler(request)
            status = getattr(response, "status", status)
            response.headers["X-Trace-Id"] = trace
            return response
        except web.HTTPException as exc:
            status = exc.status
            raise
        finally:
            duration_ms = int((time.perf_counter() - started) * 1000)
            access_logger.info(
                "http_request",
                extra={
                    "trace": trace,
                    "path": request.path,
                    "method": request.method,
                    "status": status,
                    "ms": duration_ms,
                },
            )

    app = web.Application(middlewares=[tracing_middleware])
    mount_intake_route(app)
    log.info("web: %s mounted", INTAKE_PATH)

    def _base_payload() -> dict[str, Any]:
        return {
            "ok": True,
            "bot": get_bot_name(),
            "env": get_env_name(),
            "version": os.getenv("BOT_VERSION", "dev"),
        }

    async def root(_: web.Request) -> web.Response:
        payload = _base_payload()
        payload["trace"] = get_trace_id()
        return web.json_response(payload)

    async def ready(_: web.Request) -> web.Response:
        components = healthmod.components_snapshot()
        ok = healthmod.overall_ready()
        return web.json_response({"ok": ok, "components": components}, status=200 if ok else 503)

    async def _health_payload() -> tuple[dict[str, Any], bool]:
        if runtime is None:
            return _base_payload(), True
        return runtime.health_payload()

    async def health(_: web.Request) -> web.Response:
        base_payload, healthy = await _health_payload()
        components = healthmod.components_snapshot()
        components_ok = all(item.get("ok", False) for item in components.values())
        payload = dict(base_payload)
        payload.update(
            {
                "ok": bool(healthy and components_ok),
                "components": components,
                "ready": healthmod.overall_ready(),
                "endpoint": "health",
            }
        )
        return web.json_response(payload, status=200 if payload["ok"] else 503)

    async def healthz(_: web.Request) -> web.Response:
        payload, healthy = await _health_payload()
        payload = dict(payload)
        payload["endpoint"] = "healthz"
        return web.json_response(payload, status=200 if healthy else 503)

    app.router.add_get("/", root)
    app.router.add_get("/ready", ready)
    app.router.add_get("/health", health)
    app.router.add_get("/healthz", healthz)
    return app


class _RecurringJob:
    def __init__(
        self,
        scheduler: "Scheduler",
        *,
        interval: timedelta,
        jitter: float | None = None,
        name: str | None = None,
        run_immediately: bool = False,
    ) -> None:
        self._scheduler = scheduler
        self._interval = interval
        self._jitter = jitter
        self._run_immediately = run_immediately
        self.name = name
        self.next_run: datetime | None = None
        self.last_error: str | None = None

    def _pick_jitter(self) -> float:
        if not self._jitter:
            return 0.0
        window = abs(float(self._jitter))
        return random.uniform(-window, window)

    def _compute_next_run(self, reference: datetime | None = None) -> datetime:
        now = reference or datetime.now(timezone.utc)
        interval_seconds = max(1.0, self._interval.total_seconds())
        # Align to interval boundaries so restarts keep the same cadence.
        cycles = math.floor(now.timestamp() / interval_seconds)
        candidate = datetime.fromtimestamp((cycles + 1) * interval_seconds, tz=timezone.utc)
        jitter_offset = self._pick_jitter()
        if jitter_offset:
            candidate = candidate + timedelta(seconds=jitter_offset)
        if candidate <= now:
            candidate = now + timedelta(seconds=1)
        return candidate

    async def _sleep_until_due(self) -> None:
        while self.next_run is not None:
            delay = (self.next_run - datetime.now(timezone.utc)).total_seconds()
            if delay <= 0:
                break
            await asyncio.sleep(min(delay, 60.0))

    def do(self, job: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        job_name = self.name or getattr(job, "__name__", "recurring_job")
        self.next_run = None if self._run_immediately else self._compute_next_run()

        async def runner() -> None:
            while True:
                await self._sleep_until_due()
                try:
                    await job()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    self.last_error = repr(exc)
                    log.exception("recurring job error", extra={"job_name": job_name})
                else:
                    self.last_error = None
                finally:
                    self.next_run = self._compute_next_run()

        return self._scheduler.spawn(runner(), name=job_name)


class Scheduler:
    """Very small asyncio task supervisor for background jobs."""

    def __init__(self) -> None:
        self._tasks: list[asyncio.Task] = []
        self.jobs: dict[str, _RecurringJob] = {}

    def spawn(self, coro: Awaitable, *, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name) if name is not None else asyncio.create_task(coro)
        self._tasks.append(task)
        return task

    def every(
        self,
        *,
        hours: float = 0.0,
        minutes: float = 0.0,
        seconds: float = 0.0,
        jitter: float | None = None,
        name: str | None = None,
        run_immediately: bool = False,
    ) -> _RecurringJob:
        total_seconds = float(hours) * 3600.0 + float(minutes) * 60.0 + float(seconds)
        if total_seconds <= 0:
            total_seconds = 60.0
        job = _RecurringJob(
            self,
            interval=timedelta(seconds=total_seconds),
            jitter=jitter,
            name=name,
            run_immediately=run_immediately,
        )
        if name:
            self.jobs[name] = job
        return job

    async def shutdown(self) -> None:
        for task in self._tasks:
            if not task.done():
                task.cancel()
        for task in self._tasks:
            if task.done():
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:  # pragma: no cover - best-effort cleanup
                log.exception("scheduler task error during shutdown")
        self._tasks.clear()


async def scheduled_messages_job() -> None:
    from modules.downtime.scheduled import run_scheduled_messages

    try:
        result = await run_scheduled_messages()
    except Exception as exc:
        healthmod.set_component("sheets", False, repr(exc))
        raise
    healthmod.set_component("sheets", True)
    if result.aborted:
        log.info("scheduled poll skipped", extra={"reason": result.aborted})


class Runtime:
    """Container object that wires the bot, web server and scheduler."""

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot
        self.scheduler = Scheduler()
        self._web_app: Optional[web.Application] = None
        self._web_runner: Optional[web.AppRunner] = None
        self._web_site: Optional[web.TCPSite] = None
        self._started_mono = time.monotonic()

    async def start_webserver(self, *, port: Optional[int] = None) -> None:
        if self._web_site is not None:
            return
        port = port or get_port()
        app = await create_app(runtime=self)
        self._web_app = app
        self._web_runner = web.AppRunner(app)
        await self._web_runner.setup()
        self._web_site = web.TCPSite(self._web_runner, host="0.0.0.0", port=port)
        await self._web_site.start()
        log.info("web server listening", extra={"port": port})

    def health_payload(self) -> tuple[dict[str, Any], bool]:
        connected = self.bot.is_ready() and not self.bot.is_closed()
        latency = getattr(self.bot, "latency", None)
        payload = {
            "ok": connected,
            "bot": get_bot_name(),
            "env": get_env_name(),
            "version": os.getenv("BOT_VERSION", "dev"),
            "connected": connected,
            "latency_ms": None if latency is None or math.isinf(latency) else round(latency * 1000, 1),
            "uptime_seconds": round(time.monotonic() - self._started_mono, 1),
            "scheduled_jobs": {
                name: {
                    "next_run": job.next_run.isoformat() if job.next_run else None,
                    "last_error": job.last_error,
                }
                for name, job in self.scheduler.jobs.items()
            },
        }
        return payload, connected

    async def shutdown_webserver(self) -> None:
        site, runner = self._web_site, self._web_runner
        self._web_site = None
        self._web_runner = None
        self._web_app = None
        if site is not None:
            await site.stop()
        if runner is not None:
            await runner.cleanup()

    async def load_extensions(self) -> None:
        for name in EXTENSIONS:
            await self.bot.load_extension(name)
            log.info("extension loaded", extra={"extension": name})

    async def preload_settings(self) -> None:
        try:
            settings = await arun(load_settings, force=True)
        except Exception as exc:
            healthmod.set_component("sheets", False, repr(exc))
            log.exception("settings preload failed")
            return
        healthmod.set_component("sheets", True)
        log.info("settings loaded", extra={"active_sheet": settings.active_sheet_name})
        log.debug("config snapshot: %s", get_config_snapshot(settings))

    def schedule_scheduled_messages(self) -> asyncio.Task:
        interval = get_scheduled_poll_interval_sec()
        job = self.scheduler.every(seconds=interval, jitter=min(30.0, interval * 0.05), name="scheduled_messages")
        log.info("scheduled-message poll active", extra={"interval_sec": interval})
        return job.do(scheduled_messages_job)

    async def start(self, token: str) -> None:
        await self.start_webserver()
        await self.preload_settings()
        await self.load_extensions()
        self.schedule_scheduled_messages()
        await self.bot.start(token)

    async def close(self) -> None:
        await self.shutdown_webserver()
        await self.scheduler.shutdown()
        if not self.bot.is_closed():
            await self.bot.close()
        shutdown_executor()
