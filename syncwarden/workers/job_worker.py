from __future__ import annotations

import logging

from arq.connections import RedisSettings

from syncwarden.core.config import get_settings
from syncwarden.core.logging import configure_logging
from syncwarden.services.jobs.runner import JobRunner
from syncwarden.services.plugins import ensure_plugins_loaded


logger = logging.getLogger(__name__)


async def process_background_job(ctx, job_id: str) -> str:
    # The job row stays the source of truth; arq only carries the id.
    runner: JobRunner = ctx["runner"]
    outcome = await runner.process_job(job_id)
    logger.info("arq_job_processed job_id=%s outcome=%s attempt=%s", job_id, outcome, ctx.get("job_try", 1))
    return outcome


async def _startup(ctx) -> None:
    configure_logging()
    ensure_plugins_loaded()
    ctx["runner"] = JobRunner()


async def _shutdown(ctx) -> None:
    ctx.pop("runner", None)


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.job_queue_name
    # Retries are an administrator decision recorded on the job row, not an arq redelivery.
    max_tries = 1
    functions = [process_background_job]
    on_startup = _startup
    on_shutdown = _shutdown
