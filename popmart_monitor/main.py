from __future__ import annotations

import argparse
import datetime as _dt
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import pytz

from . import config, notifier, scraper
from .db import ItemStore
from .errors import FatalMonitorFailure, HighTrafficDetected, PageUnreachable
from .fetcher import PageFetcher, create_fetcher
from .models import AlertEvent, Item
from .schedule import SNOOZE, THROTTLE, Schedule, ScheduleSettings, select_schedule

logger = logging.getLogger(__name__)

# Jitter never exceeds this share of the base interval.
JITTER_FRACTION = 0.1


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def compute_jitter(interval: float, max_jitter: float = config.MAX_JITTER_SECONDS) -> float:
    return random.uniform(0, min(max_jitter, interval * JITTER_FRACTION))


def _utcnow() -> _dt.datetime:
    return _dt.datetime.now(pytz.utc)


@dataclass
class RunState:
    """State that outlives a single pass."""

    consecutive_failures: int = 0
    mode: str = SNOOZE
    fetcher: Optional[PageFetcher] = None
    known_cache: Optional[Dict[str, Item]] = None
    cache_valid: bool = False

    def get_fetcher(self, factory: Callable[[], PageFetcher]) -> PageFetcher:
        if self.fetcher is None:
            self.fetcher = factory()
        return self.fetcher

    def reset_fetcher(self) -> None:
        if self.fetcher is not None:
            try:
                self.fetcher.close()
            except Exception:
                logger.exception("Error closing fetcher")
            self.fetcher = None

    def invalidate_cache(self) -> None:
        self.known_cache = None
        self.cache_valid = False


@dataclass
class MonitorContext:
    store: ItemStore
    channel_url: Optional[str]
    operator_url: Optional[str]
    fetcher_factory: Callable[[], PageFetcher]
    settings: ScheduleSettings = field(default_factory=ScheduleSettings.from_config)
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], _dt.datetime] = _utcnow
    jitter: Callable[[float], float] = compute_jitter
    max_consecutive_failures: int = config.MAX_CONSECUTIVE_FAILURES
    retry_delay: float = config.RETRY_DELAY_SECONDS
    traffic_cooldown: float = config.HIGH_TRAFFIC_COOLDOWN_SECONDS


def run_pass(run: RunState, ctx: MonitorContext, schedule: Schedule) -> List[AlertEvent]:
    """Run one pass in the strategy matching the schedule mode."""
    fetcher = run.get_fetcher(ctx.fetcher_factory)

    if schedule.mode == THROTTLE:
        state = scraper.check_hot_products(ctx.store, fetcher)
        if not state.cache_valid:
            run.invalidate_cache()
        return state.alerts

    known = run.known_cache if run.cache_valid else None
    state = scraper.check_products(ctx.store, fetcher, known=known)
    # check_products closes the browser; the next pass starts a fresh one.
    run.fetcher = None
    run.known_cache = state.known
    run.cache_valid = state.cache_valid
    return state.alerts


def dispatch_alerts(alerts: Sequence[AlertEvent], ctx: MonitorContext) -> None:
    for event in alerts:
        try:
            notifier.send_alert(event, webhook_url=ctx.channel_url)
        except Exception:
            logger.exception("Error sending %s alert for %s", event.kind.value, event.item.name)


def _record_failure(run: RunState, ctx: MonitorContext, label: str, exc: Exception) -> float:
    run.consecutive_failures += 1
    run.reset_fetcher()
    run.invalidate_cache()
    logger.error("%s: %s (%d/%d)", label, exc, run.consecutive_failures, ctx.max_consecutive_failures)

    if run.consecutive_failures >= ctx.max_consecutive_failures:
        reason = (
            f"{run.consecutive_failures} consecutive failed passes. "
            f"Last error ({type(exc).__name__}): {exc}"
        )
        try:
            notifier.send_fatal_alert(reason, webhook_url=ctx.operator_url)
        except Exception:
            logger.exception("Error sending fatal operator alert")
        raise FatalMonitorFailure("Too many consecutive failures. Exiting monitor.") from exc

    logger.info(
        "Retrying in %.0fs... (%d/%d)",
        ctx.retry_delay, run.consecutive_failures, ctx.max_consecutive_failures,
    )
    return ctx.retry_delay


def monitor_step(run: RunState, ctx: MonitorContext) -> float:
    """Select a mode, run one pass and handle its outcome.

    Returns the number of seconds to sleep before the next pass. Raises
    :class:`FatalMonitorFailure` once consecutive failures hit the limit.
    """
    schedule = select_schedule(ctx.clock(), ctx.settings)
    if schedule.mode != run.mode:
        logger.info("Switching mode %s -> %s", run.mode, schedule.mode)
    run.mode = schedule.mode

    try:
        alerts = run_pass(run, ctx, schedule)
    except HighTrafficDetected as e:
        logger.warning("%s", e)
        run.reset_fetcher()
        # The prober may have stored stock flips before tripping.
        run.invalidate_cache()
        dispatch_alerts(e.alerts, ctx)
        try:
            notifier.send_traffic_alert(webhook_url=ctx.channel_url)
        except Exception:
            logger.exception("Error sending high traffic alert")
        logger.info("Cooling down for %.0f minutes", ctx.traffic_cooldown / 60)
        return ctx.traffic_cooldown
    except PageUnreachable as e:
        return _record_failure(run, ctx, "Page error", e)
    except Exception as e:
        logger.exception("Unexpected error during %s pass", schedule.mode)
        return _record_failure(run, ctx, "Other error", e)

    run.consecutive_failures = 0
    dispatch_alerts(alerts, ctx)
    return schedule.interval + ctx.jitter(schedule.interval)


def monitor(ctx: MonitorContext, run: Optional[RunState] = None, *, max_passes: Optional[int] = None) -> RunState:
    """Run passes back to back, forever unless ``max_passes`` is given."""
    run = run or RunState()
    passes = 0
    try:
        while max_passes is None or passes < max_passes:
            wait = monitor_step(run, ctx)
            passes += 1
            logger.info("Waiting %.1fs before next scrape (mode=%s)", wait, run.mode)
            ctx.sleep(wait)
    finally:
        run.reset_fetcher()
    return run


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Monitor the Pop Mart catalog for drops and restocks.")
    parser.add_argument(
        "mode",
        nargs="?",
        choices=("prod", "test"),
        default="prod",
        help="'test' sends product alerts to the test channel (default: prod)",
    )
    parser.add_argument("--prioritize", nargs="+", metavar="ITEM_ID", help="flag items for direct probing and exit")
    parser.add_argument("--unprioritize", nargs="+", metavar="ITEM_ID", help="clear the priority flag and exit")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Initialise and run the monitoring loop."""
    args = parse_args(argv)
    setup_logging()

    logger.info("Initializing database…")
    store = ItemStore()
    store.init_db()

    if args.prioritize or args.unprioritize:
        if args.prioritize:
            n = store.set_priority(args.prioritize, True)
            logger.info("Flagged %d item(s) as priority", n)
        if args.unprioritize:
            n = store.set_priority(args.unprioritize, False)
            logger.info("Cleared priority on %d item(s)", n)
        return

    config.validate()
    if args.mode == "prod":
        if not config.DISCORD_WEBHOOK_URL:
            raise RuntimeError("DISCORD_WEBHOOK_URL must be set to run in prod mode.")
        channel_url = config.DISCORD_WEBHOOK_URL
        notifier.send_startup_alert(webhook_url=config.DISCORD_TEST_WEBHOOK_URL)
    else:
        channel_url = config.DISCORD_TEST_WEBHOOK_URL
    logger.info("*** App running in %s ***", args.mode)

    ctx = MonitorContext(
        store=store,
        channel_url=channel_url,
        operator_url=config.DISCORD_TEST_WEBHOOK_URL,
        fetcher_factory=lambda: create_fetcher(config.FETCHER_BACKEND),
    )
    try:
        monitor(ctx)
    except FatalMonitorFailure as e:
        logger.critical("%s", e)
        raise SystemExit(1) from e


if __name__ == "__main__":
    main()
