import asyncio
from datetime import timedelta

import pytest
from fakes import NOW, FakeAggregator, FakeChannel, RecordingSleep, make_job

from swiss_job_alert.pipeline import AlertPipeline, DeliveryPolicy, SubscriberNotFoundError
from swiss_job_alert.storage import AlertStore


def _pipeline(store, aggregator, channel, *, policy=None, sleep=None) -> AlertPipeline:
    return AlertPipeline(
        store,
        aggregator,
        channel,
        policy or DeliveryPolicy(message_delay_seconds=0.0, user_delay_seconds=0.0),
        clock=lambda: NOW,
        sleep=sleep or RecordingSleep(),
    )


def _register(store: AlertStore, chat_id: str, keywords=("secrétaire",)):
    subscriber = store.add_subscriber(chat_id)
    store.add_saved_search(subscriber.id, list(keywords), ["Vaud"])
    return subscriber


def test_process_all_isolates_a_failing_subscriber(tmp_path, monkeypatch) -> None:
    aggregator = FakeAggregator([make_job("1")])
    channel = FakeChannel()

    with AlertStore(tmp_path / "alerts.sqlite") as store:
        _register(store, "1")
        broken = _register(store, "2")
        _register(store, "3")

        original = store.list_active_searches

        def flaky_searches(subscriber_id: int):
            if subscriber_id == broken.id:
                raise RuntimeError("database hiccup")
            return original(subscriber_id)

        monkeypatch.setattr(store, "list_active_searches", flaky_searches)
        result = asyncio.run(_pipeline(store, aggregator, channel).process_all())

    assert result.success
    assert result.error is None
    assert result.users_processed == 3
    assert result.users_failed == 1
    assert result.jobs_found == 2
    assert result.notifications_sent == 2
    assert [chat_id for chat_id, _ in channel.sent] == ["1", "3"]


def test_failing_search_does_not_stop_other_searches(tmp_path) -> None:
    aggregator = FakeAggregator([make_job("1")], failing_keywords=["boom"])
    channel = FakeChannel()

    with AlertStore(tmp_path / "alerts.sqlite") as store:
        subscriber = store.add_subscriber("42")
        store.add_saved_search(subscriber.id, ["boom"], ["Genève"])
        store.add_saved_search(subscriber.id, ["comptable"], ["Vaud"])
        stats = asyncio.run(_pipeline(store, aggregator, channel).process_subscriber(subscriber))

    assert stats.jobs_found == 1
    assert stats.notifications_sent == 1
    assert [keywords for keywords, _ in aggregator.calls] == [("boom",), ("comptable",)]


def test_subscriber_without_active_searches_yields_zero(tmp_path) -> None:
    aggregator = FakeAggregator([make_job("1")])

    with AlertStore(tmp_path / "alerts.sqlite") as store:
        subscriber = store.add_subscriber("7")
        search = store.add_saved_search(subscriber.id, ["infirmier"], ["Valais"])
        store.set_search_active(search.id, False)
        stats = asyncio.run(_pipeline(store, aggregator, FakeChannel()).process_subscriber(subscriber))

    assert stats.jobs_found == 0
    assert stats.notifications_sent == 0
    assert aggregator.calls == []


def test_paused_subscribers_are_skipped(tmp_path) -> None:
    aggregator = FakeAggregator([make_job("1")])
    channel = FakeChannel()

    with AlertStore(tmp_path / "alerts.sqlite") as store:
        _register(store, "active")
        _register(store, "paused")
        assert store.set_subscriber_active("paused", False)
        result = asyncio.run(_pipeline(store, aggregator, channel).process_all())

    assert result.users_processed == 1
    assert [chat_id for chat_id, _ in channel.sent] == ["active"]


def test_process_all_reports_store_failure(tmp_path, monkeypatch) -> None:
    with AlertStore(tmp_path / "alerts.sqlite") as store:

        def unreachable():
            raise RuntimeError("database is locked")

        monkeypatch.setattr(store, "list_active_subscribers", unreachable)
        result = asyncio.run(_pipeline(store, FakeAggregator(), FakeChannel()).process_all())

    assert not result.success
    assert result.error == "database is locked"
    assert result.users_processed == 0


def test_process_all_stops_at_wall_clock_budget(tmp_path) -> None:
    class StalledAggregator(FakeAggregator):
        async def fetch(self, keywords, locations):
            await asyncio.sleep(10)
            return []

    policy = DeliveryPolicy(message_delay_seconds=0.0, user_delay_seconds=0.0, run_timeout_seconds=0.05)

    with AlertStore(tmp_path / "alerts.sqlite") as store:
        _register(store, "1")
        result = asyncio.run(_pipeline(store, StalledAggregator(), FakeChannel(), policy=policy).process_all())

    assert not result.success
    assert "timed out" in (result.error or "")
    assert result.users_processed == 1


def test_subscribers_are_spaced_by_user_delay(tmp_path) -> None:
    sleep = RecordingSleep()
    policy = DeliveryPolicy(message_delay_seconds=0.0, user_delay_seconds=1.0)

    with AlertStore(tmp_path / "alerts.sqlite") as store:
        _register(store, "1")
        _register(store, "2")
        asyncio.run(
            _pipeline(store, FakeAggregator(), FakeChannel(), policy=policy, sleep=sleep).process_all()
        )

    assert sleep.delays == [1.0]


def test_process_chat_id_targets_one_subscriber(tmp_path) -> None:
    channel = FakeChannel()

    with AlertStore(tmp_path / "alerts.sqlite") as store:
        _register(store, "1")
        _register(store, "2")
        pipeline = _pipeline(store, FakeAggregator([make_job("1")]), channel)

        subscriber, stats = asyncio.run(pipeline.process_chat_id("2"))
        assert subscriber.chat_id == "2"
        assert stats.notifications_sent == 1

        with pytest.raises(SubscriberNotFoundError):
            asyncio.run(pipeline.process_chat_id("999"))

    assert [chat_id for chat_id, _ in channel.sent] == ["2"]


def test_cleanup_removes_old_postings_and_their_notifications(tmp_path) -> None:
    with AlertStore(tmp_path / "alerts.sqlite") as store:
        subscriber = store.add_subscriber("1")
        store.save_postings([make_job("old")], created_at_utc=NOW - timedelta(days=95))
        store.save_postings([make_job("new", title="Récent")], created_at_utc=NOW - timedelta(days=10))
        ids = store.get_posting_ids(["old", "new"])
        store.record_notifications(subscriber.id, [ids["old"], ids["new"]])

        pipeline = _pipeline(store, FakeAggregator(), FakeChannel())
        result = asyncio.run(pipeline.cleanup(retention_days=90))

        assert result.success
        assert result.deleted_jobs_count == 1
        assert result.cutoff_date == NOW - timedelta(days=90)
        assert store.get_posting("old") is None
        assert store.get_posting("new") is not None
        assert store.count_notifications(subscriber.id) == 1

        again = asyncio.run(pipeline.cleanup(retention_days=90))
        assert again.success
        assert again.deleted_jobs_count == 0


def test_overlapping_passes_send_each_posting_once(tmp_path) -> None:
    channel = FakeChannel(delay=0.05)
    with AlertStore(tmp_path / "state.sqlite") as store:
        subscriber = _register(store, "1")
        pipeline = _pipeline(store, FakeAggregator([make_job("j1")]), channel)

        async def both():
            return await asyncio.gather(pipeline.process_all(), pipeline.process_chat_id("1"))

        result, (_, stats) = asyncio.run(both())

        assert result.success
        assert len(channel.sent) == 1
        assert result.notifications_sent + stats.notifications_sent == 1
        assert store.count_notifications(subscriber.id) == 1


def test_timeout_mid_dispatch_keeps_record_of_sent_messages(tmp_path) -> None:
    jobs = [make_job(f"t{i}", title=f"T{i}") for i in range(3)]
    channel = FakeChannel(delay=0.05)
    with AlertStore(tmp_path / "state.sqlite") as store:
        subscriber = _register(store, "1")
        short = DeliveryPolicy(message_delay_seconds=0.0, user_delay_seconds=0.0, run_timeout_seconds=0.12)
        first = asyncio.run(_pipeline(store, FakeAggregator(jobs), channel, policy=short).process_all())
        asyncio.run(_pipeline(store, FakeAggregator(jobs), channel).process_all())

        assert not first.success
        assert "timed out" in first.error
        titles = [text.split("<b>Titre:</b> ")[1].split("\n")[0] for _, text in channel.sent]
        assert sorted(titles) == ["T0", "T1", "T2"]
        assert store.count_notifications(subscriber.id) == 3
