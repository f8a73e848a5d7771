# src/flowday/main.py

"""
CLI entrypoint.

Initializes logging from settings, builds AppState, activates the engine (session
and rollover), prints today's agenda and shuts down.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from .bootstrap import create_app_state, shutdown_app, start_app
from .config import get_settings
from .core.state import AppState
from .logging_setup import level_from_name, setup_logging

logger = logging.getLogger(__name__)


def format_agenda(state: AppState) -> list[str]:
    service = state.service
    today = service.today()
    done, total = service.today_progress()

    lines = [f"{today.isoformat()}  {done}/{total} done"]
    for occ in service.occurrences_on(today):
        at = datetime.fromtimestamp(occ.execution_at / 1000.0).strftime("%H:%M")
        d = occ.definition
        lines.append(f"  {at}  [{d.status.value}] {d.name} ({d.validity_label})")
    return lines


async def _run(settings) -> None:
    state = create_app_state(settings=settings)
    try:
        await start_app(state)
        await state.engine.drain()
        print("\n".join(format_agenda(state)))
    finally:
        await shutdown_app(state)


def main() -> None:
    settings = get_settings()

    console_level = level_from_name(getattr(settings, "log_level", "INFO"))
    setup_logging(log_dir=settings.log_dir, console_level=console_level)
    logger.info("Starting %s...", getattr(settings, "app_name", "flowday"))

    try:
        asyncio.run(_run(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted.")


if __name__ == "__main__":
    main()
