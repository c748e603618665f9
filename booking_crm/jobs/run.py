import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

from sqlalchemy.ext.asyncio import async_sessionmaker

from booking_crm.domain.bookings.ports import NotificationSink
from booking_crm.domain.notifications import service as notification_service
from booking_crm.domain.waitlist import service as waitlist_service
from booking_crm.infra.db import get_session_factory
from booking_crm.infra.logging import clear_log_context, configure_logging, update_log_context
from booking_crm.infra.metrics import configure_metrics, metrics
from booking_crm.services import build_app_services
from booking_crm.settings import settings

logger = logging.getLogger(__name__)

DEFAULT_JOBS = ("booking-reminders", "service-documents", "waitlist-expiry")

JobRunner = Callable[[object], Awaitable[dict[str, int]]]


async def _expire_waitlist(session) -> dict[str, int]:
    return {"expired": await waitlist_service.expire_old_entries(session)}


def _job_runner(name: str, sink: NotificationSink) -> JobRunner:
    if name == "booking-reminders":
        return lambda session: notification_service.send_due_reminders(session, sink)
    if name == "service-documents":
        return lambda session: notification_service.deliver_due_documents(session, sink)
    if name == "waitlist-expiry":
        return _expire_waitlist
    raise ValueError(f"unknown_job:{name}")


async def _run_job(name: str, session_factory: async_sessionmaker, runner: JobRunner) -> dict[str, int]:
    update_log_context(job=name)
    try:
        async with session_factory() as session:
            result = await runner(session)
        logger.info("job_complete", extra={"extra": {"job": name, **result}})
        metrics.record_job(name, "success")
        return result
    finally:
        clear_log_context()


async def run_cycle(
    session_factory: async_sessionmaker,
    job_names: Sequence[str],
    runners: Sequence[JobRunner],
) -> dict[str, bool]:
    """Run each job once; a failing job is logged and does not stop the others."""
    outcomes: dict[str, bool] = {}
    for name, runner in zip(job_names, runners):
        try:
            await _run_job(name, session_factory, runner)
        except Exception as exc:  # noqa: BLE001
            metrics.record_job(name, "error")
            logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
            outcomes[name] = False
        else:
            outcomes[name] = True
    return outcomes


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run scheduled booking jobs")
    parser.add_argument("--job", action="append", dest="jobs", choices=DEFAULT_JOBS, help="Job name to run")
    parser.add_argument("--interval", type=int, default=60, help="Seconds between loops when not using --once")
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    args = parser.parse_args(argv)

    configure_logging()
    services = build_app_services(settings, metrics=configure_metrics(settings.metrics_enabled))
    session_factory = get_session_factory()

    job_names = args.jobs or list(DEFAULT_JOBS)
    runners = [_job_runner(name, services.notifications) for name in job_names]

    try:
        while True:
            await run_cycle(session_factory, job_names, runners)
            if args.once:
                break
            await asyncio.sleep(max(args.interval, 1))
    finally:
        await services.close()


if __name__ == "__main__":
    asyncio.run(main())
