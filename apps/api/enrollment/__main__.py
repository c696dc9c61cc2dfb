from __future__ import annotations

import asyncio

import uvicorn

from enrollment.core.components import build_components
from enrollment.core.logging import configure_logging, get_logger
from enrollment.core.retry import sanitize_error
from enrollment.core.settings import Settings, get_settings
from enrollment.core.timeutil import to_iso, utcnow
from enrollment.worker.redrive_processor import RedriveProcessor

logger = get_logger("worker.supervisor")


async def run_worker_tick(processor: RedriveProcessor) -> dict[str, object]:
    tick_started_at = to_iso(utcnow())
    try:
        metrics: dict[str, object] = dict(await processor.run_once())
    except Exception as exc:  # pragma: no cover
        logger.error(
            "worker.tick_error",
            extra={"component": "worker", "error": sanitize_error(exc, default_message="worker error")},
        )
        metrics = {"errors": 1}
    return {
        "mode": "worker",
        "tick_started_at": tick_started_at,
        "tick_finished_at": to_iso(utcnow()),
        **metrics,
    }


async def run_worker_loop(settings: Settings) -> None:
    if not settings.SUPABASE_SERVICE_ROLE_KEY:
        raise RuntimeError("SUPABASE_SERVICE_ROLE_KEY must be configured for worker mode")

    components = build_components(settings)
    processor = RedriveProcessor(
        settings,
        components.store,
        components.state_machine,
        components.checkout_links,
    )
    while True:
        await run_worker_tick(processor)
        await asyncio.sleep(max(1, settings.REDRIVE_INTERVAL_SECONDS))


def main() -> None:
    configure_logging()
    settings = get_settings()
    mode = settings.ENROLLMENT_MODE.strip().lower()

    if mode == "worker":
        asyncio.run(run_worker_loop(settings))
        return

    uvicorn.run("enrollment.main:app", host=settings.API_HOST, port=settings.API_PORT)


if __name__ == "__main__":
    main()
