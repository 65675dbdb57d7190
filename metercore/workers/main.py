"""ARQ worker entrypoint."""

from arq import cron
from arq.connections import RedisSettings

from metercore.core.config import get_settings
from metercore.workers.dispatch import dispatch_due_messages
from metercore.workers.grants import grant_period_credits


def _redis_settings() -> RedisSettings:
    """Parse REDIS_URL into ARQ RedisSettings."""
    settings = get_settings()
    # redis://host:port/db
    url = settings.redis_url
    rest = url.split("://", 1)[1] if "://" in url else url
    host_port, _, db = rest.partition("/")
    host, _, port = host_port.partition(":")
    return RedisSettings(
        host=host or "localhost",
        port=int(port) if port else 6379,
        database=int(db) if db else 0,
    )


def _tick_schedule(interval_seconds: int) -> dict:
    """Translate the dispatcher interval into cron ``second``/``minute`` sets."""
    interval = max(1, interval_seconds)
    if interval < 60:
        return {"second": set(range(0, 60, interval))}
    minutes = max(1, interval // 60)
    return {"minute": set(range(0, 60, minutes)), "second": 0}


async def startup(ctx: dict) -> None:
    """Called when the worker starts."""
    from metercore.core.database import init_db
    from metercore.services.scheduling import default_worker_id

    await init_db()
    ctx["worker_id"] = default_worker_id()


async def shutdown(ctx: dict) -> None:
    """Called when the worker shuts down."""


class WorkerSettings:
    """ARQ worker configuration."""
    functions = [dispatch_due_messages, grant_period_credits]
    cron_jobs = [
        cron(
            dispatch_due_messages,
            name="dispatch_due_messages",
            unique=True,
            run_at_startup=True,
            **_tick_schedule(get_settings().scheduler_interval_seconds),
        ),
        cron(grant_period_credits, name="grant_period_credits", hour=0, minute=5, second=0, run_at_startup=True),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = _redis_settings()
    max_jobs = 10
    job_timeout = 300


if __name__ == "__main__":
    from arq import run_worker
    run_worker(WorkerSettings)  # type: ignore[arg-type]
