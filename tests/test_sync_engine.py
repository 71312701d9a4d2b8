"""End-to-end tests for the synchronization engine.

The provider is an in-memory fake that pages through a fixed history the way
the exchange does; storage writes to a temporary directory.
"""

import asyncio
import json
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock, patch

from chart_sync.models.progress import Gap, GapKind
from chart_sync.models.results import BatchResult
from chart_sync.models.series import SeriesIdentity
from chart_sync.sources.base import ApiError, NetworkError
from chart_sync.store.candle_store import CandleStore
from chart_sync.sync.engine import SyncEngine
from chart_sync.sync.signals import SignalKind
from tests.conftest import HOUR, T, FakeProvider, make_candle, make_candles

KEY = "BTCUSDT_1h"
SERIES = SeriesIdentity.parse(KEY)


def kinds(received, kind):
    return [s for s in received if s.kind == kind]


class TestFullSynchronization:
    """Backfill of a whole series."""

    def test_empty_series_is_backfilled_and_saved(self, repository, sync_config, signal_log):
        bus, received = signal_log
        provider = FakeProvider(make_candles(T, 1500))
        engine = SyncEngine(provider, repository, sync_config, signals=bus)

        async def scenario():
            assert await engine.synchronize(KEY, now=T) is True
            await engine.wait(KEY)

        asyncio.run(scenario())

        store = engine.get_store(KEY)
        assert len(store) == 1500
        assert store.time_range() == (T - 1499 * HOUR, T)
        assert [c["end_time"] for c in provider.calls] == [T, T - 999 * HOUR - 1]
        assert engine.downloads.is_downloading(KEY) is False
        assert engine.is_history_exhausted(KEY) is True

        data = json.loads(repository.path_for(SERIES).read_text())
        assert len(data["candles"]) == 1500
        assert data["history_exhausted"] is True

        complete = kinds(received, SignalKind.SYNC_COMPLETE)
        assert [(s.series_id, s.count) for s in complete] == [(KEY, 1500)]
        progress = kinds(received, SignalKind.BATCH_PROGRESS)
        assert [s.count for s in progress] == [1000, 1500]

    def test_up_to_date_series_signals_completion_without_requests(
        self, repository, sync_config, signal_log
    ):
        bus, received = signal_log
        provider = FakeProvider(make_candles(T, 10))
        engine = SyncEngine(provider, repository, sync_config, signals=bus)
        engine.register_series(KEY).merge(make_candles(T, 10))

        started = asyncio.run(engine.synchronize(KEY, now=T))

        assert started is False
        assert provider.calls == []
        assert engine.is_history_exhausted(KEY) is True
        assert [(s.kind, s.count) for s in received] == [(SignalKind.SYNC_COMPLETE, 10)]

    def test_progress_counts_only_downloaded_candles(self, repository, sync_config, signal_log):
        bus, received = signal_log
        history = make_candles(T, 105)
        provider = FakeProvider(history)
        engine = SyncEngine(provider, repository, sync_config, signals=bus)
        engine.register_series(KEY).merge(history[:100])

        async def scenario():
            assert await engine.synchronize(KEY, now=T) is True
            record = engine.downloads.get_progress(KEY)
            seeded = (record.current_count, record.estimated_total)
            await engine.wait(KEY)
            return seeded

        assert asyncio.run(scenario()) == (0, 5)
        progress = kinds(received, SignalKind.BATCH_PROGRESS)
        assert [(s.count, s.estimated_total) for s in progress] == [(5, 5)]
        assert all(s.count <= s.estimated_total for s in progress)
        assert len(engine.get_store(KEY)) == 105

    def test_each_page_waits_for_the_batch_delay(self, repository, sync_config):
        events = []
        provider = FakeProvider(make_candles(T, 1500))
        provider.on_fetch = lambda: events.append("fetch")
        config = replace(sync_config, batch_delay_ms=100)
        engine = SyncEngine(provider, repository, config)

        async def record_sleep(seconds):
            events.append(("sleep", seconds))

        async def scenario():
            await engine.synchronize(KEY, now=T)
            await engine.wait(KEY)

        with patch("chart_sync.sync.engine.asyncio.sleep", side_effect=record_sleep):
            asyncio.run(scenario())

        assert events == [("sleep", 0.1), "fetch", ("sleep", 0.1), "fetch"]
        assert len(engine.get_store(KEY)) == 1500

    def test_interior_and_recent_gaps_are_filled_newest_first(self, repository, sync_config):
        history = make_candles(T, 200)
        provider = FakeProvider(history)
        config = replace(sync_config, history_start=T - 199 * HOUR)
        engine = SyncEngine(provider, repository, config)
        store = engine.register_series(KEY)
        store.merge(history[:50] + history[100:150])

        async def scenario():
            assert await engine.synchronize(KEY, now=T) is True
            await engine.wait(KEY)

        asyncio.run(scenario())

        assert store.timestamps() == [c.timestamp for c in history]
        assert [c["end_time"] for c in provider.calls] == [T, history[100].timestamp]
        # A configured floor never marks the provider's history as exhausted.
        assert engine.is_history_exhausted(KEY) is False

    def test_second_request_while_active_is_noop(self, repository, sync_config):
        provider = FakeProvider(make_candles(T, 10))
        engine = SyncEngine(provider, repository, sync_config)

        async def scenario():
            first = await engine.synchronize(KEY, now=T)
            second = await engine.synchronize(KEY, now=T)
            await engine.wait(KEY)
            return first, second

        assert asyncio.run(scenario()) == (True, False)
        assert len(provider.calls) == 1


class TestCancellationAndPause:
    """Stop, pause and resume semantics."""

    def test_result_arriving_after_stop_is_discarded(self, repository, sync_config):
        provider = FakeProvider(make_candles(T, 50))
        engine = SyncEngine(provider, repository, sync_config)
        provider.on_fetch = lambda: engine.stop(KEY)

        async def scenario():
            await engine.synchronize(KEY, now=T)
            await engine.wait(KEY)

        asyncio.run(scenario())

        assert len(provider.calls) == 1
        assert len(engine.get_store(KEY)) == 0
        assert engine.downloads.count() == 0
        assert not repository.path_for(SERIES).exists()

    def test_pending_result_for_stopped_series_is_not_merged(self, repository, sync_config):
        engine = SyncEngine(FakeProvider(), repository, sync_config)
        store = engine.register_series(KEY)

        engine.downloads.start(SERIES, [Gap(0, T, GapKind.HISTORICAL)], 10)
        engine.stop(KEY)

        applied = asyncio.run(
            engine.handle_batch_result(KEY, BatchResult(candles=make_candles(T, 5), next_boundary=0))
        )

        assert applied is False
        assert len(store) == 0

    def test_pause_blocks_requests_until_resume(self, repository, sync_config):
        provider = FakeProvider(make_candles(T, 20))
        engine = SyncEngine(provider, repository, sync_config)

        async def scenario():
            await engine.synchronize(KEY, now=T)
            assert engine.pause(KEY) is True
            await engine.wait(KEY)
            calls_while_paused = len(provider.calls)
            assert await engine.step(KEY) is None

            assert engine.resume(KEY) is True
            await engine.wait(KEY)
            return calls_while_paused

        assert asyncio.run(scenario()) == 0
        assert len(provider.calls) == 1
        assert len(engine.get_store(KEY)) == 20
        assert engine.downloads.is_downloading(KEY) is False

    def test_controls_on_idle_series_are_noops(self, repository, sync_config):
        engine = SyncEngine(FakeProvider(), repository, sync_config)
        assert engine.pause(KEY) is False
        assert engine.resume(KEY) is False
        assert engine.stop(KEY) is False
        assert asyncio.run(engine.step(KEY)) is None


class TestFailures:
    """Retry and stall behaviour."""

    def test_network_error_is_retried_from_same_boundary(self, repository, sync_config):
        provider = FakeProvider(make_candles(T, 30))
        provider.errors = [NetworkError("connection reset"), NetworkError("connection reset")]
        engine = SyncEngine(provider, repository, sync_config)

        async def scenario():
            await engine.synchronize(KEY, now=T)
            await engine.wait(KEY)

        asyncio.run(scenario())

        assert [c["end_time"] for c in provider.calls] == [T, T, T]
        assert len(engine.get_store(KEY)) == 30
        assert engine.downloads.is_downloading(KEY) is False

    def test_permanent_error_stalls_without_corrupting_progress(
        self, repository, sync_config, signal_log
    ):
        bus, received = signal_log
        provider = FakeProvider(make_candles(T, 30))
        provider.errors = [ApiError(400, "Invalid symbol.")]
        engine = SyncEngine(provider, repository, sync_config, signals=bus)

        async def scenario():
            await engine.synchronize(KEY, now=T)
            await engine.wait(KEY)
            progress = engine.downloads.get_progress(KEY)
            assert progress is not None
            assert progress.target_end == T
            assert progress.batches_completed == 0
            assert "Invalid symbol." in engine.last_error(KEY)

            # User-triggered retry resumes from the same boundary.
            engine.resume(KEY)
            await engine.wait(KEY)

        asyncio.run(scenario())

        assert len(provider.calls) == 2
        assert len(engine.get_store(KEY)) == 30
        errors = [s.error for s in kinds(received, SignalKind.BATCH_PROGRESS) if s.error]
        assert errors and "Invalid symbol." in errors[0]

    def test_retries_are_bounded(self, repository, sync_config):
        provider = FakeProvider(make_candles(T, 30))
        provider.errors = [NetworkError("down")] * 10
        engine = SyncEngine(provider, repository, replace(sync_config, max_retries=2))

        async def scenario():
            await engine.synchronize(KEY, now=T)
            await engine.wait(KEY)

        asyncio.run(scenario())

        assert len(provider.calls) == 3
        assert engine.downloads.is_downloading(KEY) is True


class TestCheckpoints:
    """Checkpoint cadence during long backfills."""

    def test_saves_every_tenth_page_and_at_finish(self, mock_repository, sync_config):
        provider = FakeProvider(make_candles(T, 125))
        engine = SyncEngine(provider, mock_repository, replace(sync_config, page_limit=10))

        async def scenario():
            await engine.synchronize(KEY, now=T)
            await engine.wait(KEY)

        asyncio.run(scenario())

        assert len(provider.calls) == 13
        assert mock_repository.save.call_count == 2
        saved_counts = [len(call.args[1]) for call in mock_repository.save.call_args_list]
        assert saved_counts == [100, 125]

    def test_completed_gap_is_saved_before_next_gap(self, mock_repository, sync_config):
        history = make_candles(T, 60)
        provider = FakeProvider(history)
        engine = SyncEngine(
            provider, mock_repository, replace(sync_config, history_start=T - 59 * HOUR)
        )
        engine.register_series(KEY).merge(history[10:20] + history[30:40])

        async def scenario():
            await engine.synchronize(KEY, now=T)
            await engine.wait(KEY)

        asyncio.run(scenario())

        # recent, internal, historical: one save per closed gap, the last one at finish
        assert len(provider.calls) == 3
        assert mock_repository.save.call_count == 3
        assert len(engine.get_store(KEY)) == 60


class TestHistoryExhaustion:
    """Remembering that no older data exists."""

    def test_coincidentally_full_first_page_costs_one_extra_request(
        self, repository, sync_config
    ):
        provider = FakeProvider(make_candles(T, 1000), report_earliest=False)
        engine = SyncEngine(provider, repository, sync_config)

        async def scenario():
            await engine.synchronize(KEY, now=T)
            await engine.wait(KEY)
            first_run_calls = len(provider.calls)
            started_again = await engine.synchronize(KEY, now=T)
            return first_run_calls, started_again

        first_run_calls, started_again = asyncio.run(scenario())

        assert first_run_calls == 2
        assert provider.calls[1]["end_time"] == T - 999 * HOUR - 1
        assert engine.is_history_exhausted(KEY) is True
        assert started_again is False
        assert len(provider.calls) == 2

    def test_exhaustion_survives_reload(self, repository, sync_config):
        provider = FakeProvider(make_candles(T, 20), report_earliest=False)
        engine = SyncEngine(provider, repository, sync_config)

        async def first_session():
            await engine.synchronize(KEY, now=T)
            await engine.wait(KEY)

        asyncio.run(first_session())

        fresh_provider = FakeProvider(make_candles(T, 20), report_earliest=False)
        reloaded = SyncEngine(fresh_provider, repository, sync_config)

        async def second_session():
            store = await reloaded.load_series(KEY)
            started = await reloaded.synchronize(KEY, now=T)
            return len(store), started

        assert asyncio.run(second_session()) == (20, False)
        assert reloaded.is_history_exhausted(KEY) is True
        assert fresh_provider.calls == []

    def test_unexhausted_history_is_extended_one_page(self, repository, sync_config):
        provider = FakeProvider(make_candles(T, 30), report_earliest=False)
        engine = SyncEngine(provider, repository, sync_config)
        engine.register_series(KEY).merge(make_candles(T, 10))

        async def scenario():
            assert await engine.synchronize(KEY, now=T) is True
            await engine.wait(KEY)

        asyncio.run(scenario())

        assert [c["end_time"] for c in provider.calls] == [T - 9 * HOUR]
        assert len(engine.get_store(KEY)) == 30
        assert engine.is_history_exhausted(KEY) is True


class TestJobsAndRealtime:
    """Batch job summary, shutdown and realtime polling."""

    def test_sync_multiple_series_summary(self, repository, sync_config):
        provider = FakeProvider(make_candles(T, 40))
        engine = SyncEngine(provider, repository, sync_config)

        async def scenario():
            return await engine.sync_multiple_series(["BTCUSDT_1h", "ethusdt_1h", "bad-key"])

        result = asyncio.run(scenario())

        assert result["job_name"] == "chart_sync"
        assert result["series_processed"] == 2
        assert result["candles_added"] == 80
        assert result["status"] == "completed_with_errors"
        assert len(result["errors"]) == 1
        assert "bad-key" in result["errors"][0]

    def test_stalled_series_is_reported_and_saved(self, repository, sync_config):
        provider = FakeProvider(make_candles(T, 40))
        provider.errors = [ApiError(403, "Forbidden")]
        engine = SyncEngine(provider, repository, sync_config)

        result = asyncio.run(engine.sync_series(KEY, now=T))

        assert result.status == "stalled"
        assert "Forbidden" in result.errors[0]
        assert engine.downloads.is_downloading(KEY) is False
        assert repository.path_for(SERIES).exists()

    def test_shutdown_saves_loaded_series(self, repository, sync_config):
        engine = SyncEngine(FakeProvider(), repository, sync_config)
        engine.register_series(KEY).merge(make_candles(T, 5))

        results = asyncio.run(engine.shutdown())

        assert [(r.series_id, r.success, r.candles_saved) for r in results] == [(KEY, True, 5)]

    def test_update_realtime_isolates_failures(self, repository, sync_config):
        provider = MagicMock()

        async def fetch_latest(symbol, interval):
            if symbol == "ETHUSDT":
                raise NetworkError("timeout")
            return make_candle(T + HOUR, price=200.0)

        provider.fetch_latest = AsyncMock(side_effect=fetch_latest)
        engine = SyncEngine(provider, repository, sync_config)
        btc = engine.register_series("BTCUSDT_1h")
        btc.merge(make_candles(T, 3))
        eth = engine.register_series("ETHUSDT_1h")
        eth.merge(make_candles(T, 3))

        results = asyncio.run(engine.update_realtime())

        assert results["BTCUSDT_1h"].status == "appended"
        assert btc.newest_timestamp == T + HOUR
        assert results["ETHUSDT_1h"].status == "error"
        assert len(eth) == 3

    def test_realtime_replaces_open_candle(self, repository, sync_config):
        provider = FakeProvider(latest=make_candle(T, price=300.0))
        engine = SyncEngine(provider, repository, sync_config)
        store = engine.register_series(KEY)
        store.merge(make_candles(T, 3))

        results = asyncio.run(engine.update_realtime())

        assert results[KEY].status == "updated"
        assert store.latest().open == 300.0
        assert len(store) == 3

    def test_complete_missing_data_catches_up_and_fills_holes(self, repository, sync_config):
        history = make_candles(T, 50)
        provider = FakeProvider(history)
        engine = SyncEngine(provider, repository, sync_config)
        store = engine.register_series(KEY)
        store.merge(history[:10] + history[20:45])

        result = asyncio.run(engine.complete_missing_data(KEY, now=T))

        assert result.status == "appended"
        assert result.candles_added == 15
        assert store.timestamps() == [c.timestamp for c in history]


def test_store_registry_is_shared_per_series(repository, sync_config):
    engine = SyncEngine(FakeProvider(), repository, sync_config)
    first = engine.register_series(KEY)
    second = engine.register_series("btcusdt_1h")
    assert first is second
    assert isinstance(first, CandleStore)
