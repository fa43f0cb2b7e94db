import datetime as dt

import pytest

from conftest import FakeFetcher, FakeStore, detail_payload, listing_entry, listing_payload
from popmart_monitor import main
from popmart_monitor.errors import FatalMonitorFailure, HighTrafficDetected, PageUnreachable
from popmart_monitor.models import AlertEvent, ChangeKind, Item
from popmart_monitor.reconciler import SessionState
from popmart_monitor.schedule import SNOOZE, THROTTLE, ScheduleSettings
from popmart_monitor.urls import build_item_url, build_search_url

IN_WINDOW = dt.datetime(2025, 1, 2, 18, 30)     # Thursday
OUT_OF_WINDOW = dt.datetime(2025, 1, 3, 9, 0)   # Friday


def _settings():
    return ScheduleSettings(
        hot_weekdays=frozenset({3}),
        start_hour=18,
        end_hour=20,
        prep_lead_hours=1,
        throttle_interval=20.0,
        standby_interval=180.0,
        snooze_interval=900.0,
        timezone="UTC",
    )


def _event(item_id, kind=ChangeKind.NEW_ITEM):
    return AlertEvent(Item(item_id, f"Item {item_id}", 100, True, "u"), kind)


class Recorder:
    def __init__(self):
        self.alerts = []
        self.fatal = []
        self.traffic = 0

    def install(self, monkeypatch):
        monkeypatch.setattr(main.notifier, "send_alert", lambda event, webhook_url=None: self.alerts.append((event, webhook_url)))
        monkeypatch.setattr(main.notifier, "send_fatal_alert", lambda reason, webhook_url=None: self.fatal.append((reason, webhook_url)))

        def traffic(webhook_url=None):
            self.traffic += 1

        monkeypatch.setattr(main.notifier, "send_traffic_alert", traffic)


@pytest.fixture
def recorder(monkeypatch):
    r = Recorder()
    r.install(monkeypatch)
    return r


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fetchers():
    return []


def _ctx(sleeps, fetchers, now=OUT_OF_WINDOW, store=None):
    def factory():
        f = FakeFetcher()
        fetchers.append(f)
        return f

    return main.MonitorContext(
        store=store or FakeStore(),
        channel_url="https://discord.test/channel",
        operator_url="https://discord.test/ops",
        fetcher_factory=factory,
        settings=_settings(),
        sleep=sleeps.append,
        clock=lambda: now,
        jitter=lambda interval: 1.5,
        max_consecutive_failures=5,
        retry_delay=10.0,
        traffic_cooldown=1800.0,
    )


def _scripted(outcomes, calls=None):
    """Fake pass: each call pops the next outcome (exception or alert list)."""
    outcomes = list(outcomes)

    def run(store, fetcher, **kwargs):
        if calls is not None:
            calls.append(kwargs)
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        state = SessionState(alerts=list(outcome))
        state.cache_valid = not outcome
        return state

    return run


def test_success_dispatches_alerts_in_order_and_sleeps_with_jitter(monkeypatch, recorder, sleeps, fetchers):
    events = [_event("1"), _event("2", ChangeKind.RESTOCK), _event("3", ChangeKind.PRICE_CHANGE)]
    monkeypatch.setattr(main.scraper, "check_products", _scripted([events]))
    run = main.RunState(consecutive_failures=3)

    main.monitor(_ctx(sleeps, fetchers), run, max_passes=1)

    assert [e.item.id for e, _ in recorder.alerts] == ["1", "2", "3"]
    assert all(url == "https://discord.test/channel" for _, url in recorder.alerts)
    assert run.consecutive_failures == 0
    assert run.mode == SNOOZE
    assert sleeps == [901.5]


def test_five_consecutive_failures_are_fatal(monkeypatch, recorder, sleeps, fetchers):
    monkeypatch.setattr(main.scraper, "check_products", _scripted([PageUnreachable("down")] * 5))
    run = main.RunState()

    with pytest.raises(FatalMonitorFailure):
        main.monitor(_ctx(sleeps, fetchers), run, max_passes=10)

    assert len(recorder.fatal) == 1
    assert recorder.fatal[0][1] == "https://discord.test/ops"
    assert sleeps == [10.0] * 4
    assert run.consecutive_failures == 5
    assert recorder.alerts == []


def test_other_errors_count_as_failures(monkeypatch, recorder, sleeps, fetchers):
    monkeypatch.setattr(main.scraper, "check_products", _scripted([RuntimeError("boom")]))
    run = main.RunState()

    main.monitor(_ctx(sleeps, fetchers), run, max_passes=1)

    assert run.consecutive_failures == 1
    assert sleeps == [10.0]
    assert recorder.fatal == []


def test_success_between_failures_resets_counter(monkeypatch, recorder, sleeps, fetchers):
    outcomes = [PageUnreachable("x")] * 4 + [[]] + [PageUnreachable("x")] * 4
    monkeypatch.setattr(main.scraper, "check_products", _scripted(outcomes))
    run = main.RunState()

    main.monitor(_ctx(sleeps, fetchers), run, max_passes=9)

    assert run.consecutive_failures == 4
    assert recorder.fatal == []


def test_failure_resets_fetcher_and_cache(monkeypatch, recorder, sleeps, fetchers):
    monkeypatch.setattr(main.scraper, "check_products", _scripted([PageUnreachable("x")]))
    run = main.RunState(known_cache={"1": Item("1", "a", 1, True, "u")}, cache_valid=True)

    main.monitor_step(run, _ctx(sleeps, fetchers))

    assert run.fetcher is None
    assert fetchers[0].closed == 1
    assert run.known_cache is None
    assert run.cache_valid is False


def test_throttle_mode_runs_priority_probe(monkeypatch, recorder, sleeps, fetchers):
    monkeypatch.setattr(main.scraper, "check_products", _scripted([]))
    monkeypatch.setattr(main.scraper, "check_hot_products", _scripted([[_event("7", ChangeKind.RESTOCK)]]))
    run = main.RunState()

    wait = main.monitor_step(run, _ctx(sleeps, fetchers, now=IN_WINDOW))

    assert run.mode == THROTTLE
    assert wait == 21.5
    assert [e.kind for e, _ in recorder.alerts] == [ChangeKind.RESTOCK]
    assert run.fetcher is fetchers[0]


def test_high_traffic_cools_down_without_counting_failure(monkeypatch, recorder, sleeps, fetchers):
    carried = [_event("7", ChangeKind.RESTOCK)]
    monkeypatch.setattr(
        main.scraper, "check_hot_products", _scripted([HighTrafficDetected("busy", alerts=carried)])
    )
    run = main.RunState(consecutive_failures=2)

    main.monitor(_ctx(sleeps, fetchers, now=IN_WINDOW), run, max_passes=1)

    assert sleeps == [1800.0]
    assert run.consecutive_failures == 2
    assert recorder.traffic == 1
    assert [e.item.id for e, _ in recorder.alerts] == ["7"]
    assert recorder.fatal == []


def test_known_state_cache_reused_only_after_quiet_pass(monkeypatch, recorder, sleeps, fetchers):
    calls = []
    monkeypatch.setattr(main.scraper, "check_products", _scripted([[_event("1")], [], []], calls))
    run = main.RunState()
    ctx = _ctx(sleeps, fetchers)

    main.monitor_step(run, ctx)
    assert run.cache_valid is False
    main.monitor_step(run, ctx)
    assert run.cache_valid is True
    main.monitor_step(run, ctx)

    assert calls[0]["known"] is None
    assert calls[1]["known"] is None
    assert calls[2]["known"] is not None


def test_full_pass_end_to_end_with_real_scraper(recorder, sleeps, fetchers):
    store = FakeStore([Item("42", "Labubu", 2500, False, "u")])
    payload = listing_payload([listing_entry(42, "Labubu", price=2500, stock=1)])

    def factory():
        f = FakeFetcher({build_search_url(1): [[payload]]})
        fetchers.append(f)
        return f

    ctx = _ctx(sleeps, fetchers, store=store)
    ctx.fetcher_factory = factory
    run = main.RunState()

    main.monitor_step(run, ctx)

    assert [e.kind for e, _ in recorder.alerts] == [ChangeKind.RESTOCK]
    assert store.items["42"].in_stock is True
    assert fetchers[0].closed == 1
    assert run.fetcher is None


def test_traffic_trip_invalidates_known_state_cache(recorder, sleeps, fetchers):
    names = {str(i): f"Hot {i}" for i in (1, 2, 3)}
    store = FakeStore([
        Item(i, name, 2500, False, build_item_url(i, name), is_priority=True) for i, name in names.items()
    ])
    listing = {"stock": {"1": 0, "2": 0, "3": 0}}

    def factory():
        payload = listing_payload([
            listing_entry(int(i), name, price=2500, stock=listing["stock"][i]) for i, name in names.items()
        ])
        # Only item 1's detail page loads, so the probe trips at 2/3 failures.
        f = FakeFetcher({
            build_search_url(1): [[payload]],
            build_item_url("1", "Hot 1"): [[detail_payload(5)]],
        })
        fetchers.append(f)
        return f

    now = [OUT_OF_WINDOW]
    ctx = _ctx(sleeps, fetchers, store=store)
    ctx.fetcher_factory = factory
    ctx.clock = lambda: now[0]
    run = main.RunState()

    main.monitor_step(run, ctx)
    assert run.cache_valid is True
    assert recorder.alerts == []

    now[0] = IN_WINDOW
    assert main.monitor_step(run, ctx) == 1800.0
    assert [(e.item.id, e.kind) for e, _ in recorder.alerts] == [("1", ChangeKind.RESTOCK)]
    assert store.items["1"].in_stock is True
    assert run.cache_valid is False

    now[0] = OUT_OF_WINDOW
    listing["stock"]["1"] = 5
    main.monitor_step(run, ctx)

    assert len(recorder.alerts) == 1


def test_parse_args_defaults_to_prod():
    assert main.parse_args([]).mode == "prod"
    assert main.parse_args(["test"]).mode == "test"
    assert main.parse_args(["--prioritize", "1", "2"]).prioritize == ["1", "2"]


def test_main_prioritize_updates_store_and_exits(monkeypatch):
    flagged = []

    class Store:
        def init_db(self):
            pass

        def set_priority(self, ids, priority=True):
            flagged.append((list(ids), priority))
            return len(flagged[-1][0])

    monkeypatch.setattr(main, "ItemStore", Store)
    monkeypatch.setattr(main, "monitor", lambda *a, **k: pytest.fail("monitor should not start"))

    main.main(["--prioritize", "1", "2", "--unprioritize", "3"])

    assert flagged == [(["1", "2"], True), (["3"], False)]


def test_main_exits_nonzero_on_fatal_failure(monkeypatch):
    class Store:
        def init_db(self):
            pass

    def fatal(ctx, *a, **k):
        raise FatalMonitorFailure("too many")

    monkeypatch.setattr(main, "ItemStore", Store)
    monkeypatch.setattr(main, "monitor", fatal)
    monkeypatch.setattr(main.config, "validate", lambda: None)
    monkeypatch.setattr(main.config, "DISCORD_TEST_WEBHOOK_URL", "https://discord.test/ops")

    with pytest.raises(SystemExit) as excinfo:
        main.main(["test"])
    assert excinfo.value.code == 1
