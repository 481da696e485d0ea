from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .container import Container, build_container
from .jobs import shutdown_scheduler, start_scheduler
from .logging import ServiceLogger, setup_logging
from .settings import Settings, load_settings


@dataclass
class Runtime:
    container: Container
    scheduler: Optional[BackgroundScheduler] = None

    def shutdown(self) -> None:
        if self.scheduler is not None:
            shutdown_scheduler(self.scheduler)
        self.container.close()


def bootstrap(settings: Optional[Settings] = None) -> Runtime:
    """Load settings, configure logging and wire the services for an outer application."""
    settings = settings or load_settings()
    setup_logging(settings.log_level)
    container = build_container(settings)
    scheduler = start_scheduler(container) if settings.scheduler_enabled else None
    ServiceLogger("runtime").info(
        "Fulfillment core started",
        app=settings.app_name,
        persistence="sql" if container.db else "memory",
        scheduler=scheduler is not None,
    )
    return Runtime(container=container, scheduler=scheduler)
