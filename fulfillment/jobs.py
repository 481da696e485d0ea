from __future__ import annotations

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler

from .container import Container
from .logging import ServiceLogger

STALE_SWEEP_INTERVAL_HOURS = 1
OUTBOX_RELAY_INTERVAL_SECONDS = 30

JOB_DEFAULTS = {
    "coalesce": True,
    "max_instances": 1,
    "misfire_grace_time": 60,
}

log = ServiceLogger("jobs")


def cleanup_expired_reservations(container: Container) -> int:
    try:
        released = container.reservation_ledger.cleanup_expired()
    except Exception as exc:
        log.error("Expired reservation cleanup failed", error=exc)
        return 0
    if released:
        log.info("Expired reservation cleanup finished", released=released)
    return released


def sweep_stale_reservations(container: Container) -> int:
    threshold = container.settings.stale_reservation_threshold_minutes
    try:
        stale = container.reservation_ledger.stale_reservations(threshold)
        if not stale:
            return 0
        log.warning("Found stale reservations", count=len(stale), threshold_minutes=threshold)
        return container.reservation_ledger.release_stale(threshold)
    except Exception as exc:
        log.error("Stale reservation sweep failed", error=exc)
        return 0


def relay_outbox(container: Container) -> int:
    if container.outbox is None:
        return 0
    try:
        relayed = container.outbox.relay(container.settings.outbox_batch_size, container.clock.now())
    except Exception as exc:
        log.error("Outbox relay failed", error=exc)
        return 0
    if relayed:
        log.debug("Relayed outbox events", count=relayed)
    return relayed


def build_scheduler(container: Container) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(
        jobstores={"default": MemoryJobStore()},
        executors={"default": ThreadPoolExecutor(2)},
        job_defaults=JOB_DEFAULTS,
        timezone="UTC",
    )
    scheduler.add_job(
        cleanup_expired_reservations,
        "interval",
        minutes=container.settings.reservation_cleanup_interval_minutes,
        args=[container],
        id="cleanup_expired_reservations",
        name="Release expired reservations",
        replace_existing=True,
    )
    scheduler.add_job(
        sweep_stale_reservations,
        "interval",
        hours=STALE_SWEEP_INTERVAL_HOURS,
        args=[container],
        id="sweep_stale_reservations",
        name="Release stale reservations",
        replace_existing=True,
    )
    if container.outbox is not None:
        scheduler.add_job(
            relay_outbox,
            "interval",
            seconds=OUTBOX_RELAY_INTERVAL_SECONDS,
            args=[container],
            id="relay_outbox",
            name="Relay outbox events",
            replace_existing=True,
        )
    return scheduler


def start_scheduler(container: Container) -> BackgroundScheduler:
    scheduler = build_scheduler(container)
    scheduler.start()
    for job in scheduler.get_jobs():
        log.info("Scheduled job", name=job.name, next_run=job.next_run_time)
    return scheduler


def shutdown_scheduler(scheduler: BackgroundScheduler) -> None:
    if scheduler.running:
        scheduler.shutdown(wait=True)
        log.info("Background scheduler stopped")
