"""
Tests for the Poller

Tests cover dedup against both ledger models, chronological publishing,
item skipping, rate-limit retries, fatal error policy and test mode.
"""

import pytest
import threading
from unittest.mock import MagicMock
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import FakeFetcher, FakeGateway, RecordingSleep
from services.poller import Poller, extract_html, start_poller_thread
from services.signer import Ed25519Signer, verify_content
from data.models import PublishableContent
from utils.exceptions import (
    ItemContentMissing, KeyNotFound, LedgerError, PublishError, TransientSourceError
)


@pytest.fixture
def signer(key_store, feed_source):
    signer = Ed25519Signer(key_store)
    signer.add_identity(key_store.get_or_create_identity(feed_source.identifier))
    return signer


@pytest.fixture
def make_poller(feed_source, snapshot_ledger, signer):
    """Factory building a poller around fake fetcher and gateway."""
    def _make(items=None, gateway=None, ledger=None, fetcher=None, **kwargs):
        kwargs.setdefault("sleep", RecordingSleep())
        kwargs.setdefault("room_id", "!room:example.org")
        kwargs.setdefault("event_type_prefix", "network.informo.news.")
        kwargs.setdefault("backoff_seconds", 5)
        test_mode = kwargs.get("test_mode", False)
        return Poller(
            feed=feed_source,
            fetcher=fetcher or FakeFetcher(items),
            ledger=ledger or snapshot_ledger,
            signer=signer,
            gateway=gateway if gateway is not None or test_mode else FakeGateway(),
            **kwargs
        )
    return _make


# =============================================================================
# Content Extraction Tests
# =============================================================================

class TestExtractHtml:
    """Tests for finding the HTML of an item."""

    def test_prefers_body(self, feed_item_factory):
        item = feed_item_factory(body_html="<p>Body</p>", description="<b>desc</b>")
        assert extract_html(item) == "<p>Body</p>"

    def test_falls_back_to_html_description(self, feed_item_factory):
        item = feed_item_factory(body_html="", description="<p>From description</p>")
        assert extract_html(item) == "<p>From description</p>"

    def test_plain_description_is_missing_content(self, feed_item_factory):
        item = feed_item_factory(body_html="", description="Just text")
        with pytest.raises(ItemContentMissing):
            extract_html(item)

    def test_empty_item_is_missing_content(self, feed_item_factory):
        item = feed_item_factory(body_html="", description="")
        with pytest.raises(ItemContentMissing):
            extract_html(item)


# =============================================================================
# Dedup and Ordering Tests
# =============================================================================

class TestPollOnce:
    """Tests for a single poll cycle."""

    def test_publishes_oldest_first_and_records_links(self, make_poller, feed_item_factory,
                                                       snapshot_ledger, feed_source):
        """Feed [b(200), a(100)] with an empty ledger publishes a then b."""
        items = [feed_item_factory(link="b", published_at=200),
                 feed_item_factory(link="a", published_at=100)]
        gateway = FakeGateway()
        poller = make_poller(items, gateway=gateway)

        assert poller.poll_once() == 2

        assert [sent["payload"]["link"] for sent in gateway.sent] == ["a", "b"]
        assert snapshot_ledger.load(feed_source).links == frozenset({"a", "b"})

    def test_second_poll_publishes_nothing(self, make_poller, feed_item_factory):
        """Polling twice with no new upstream items is a no-op the second time."""
        items = [feed_item_factory(link="b", published_at=200),
                 feed_item_factory(link="a", published_at=100)]
        gateway = FakeGateway()
        poller = make_poller(items, gateway=gateway)

        poller.poll_once()
        assert poller.poll_once() == 0
        assert len(gateway.sent) == 2

    def test_known_ledger_publishes_nothing(self, make_poller, feed_item_factory,
                                            snapshot_ledger, feed_source):
        snapshot_ledger.save_item(feed_source.identifier, "a")
        snapshot_ledger.save_item(feed_source.identifier, "b")
        gateway = FakeGateway()
        poller = make_poller([feed_item_factory(link="b", published_at=200),
                              feed_item_factory(link="a", published_at=100)], gateway=gateway)

        assert poller.poll_once() == 0
        assert gateway.sent == []

    def test_new_item_in_middle_is_published(self, make_poller, feed_item_factory,
                                             snapshot_ledger, feed_source):
        snapshot_ledger.save_item(feed_source.identifier, "a")
        snapshot_ledger.save_item(feed_source.identifier, "c")
        gateway = FakeGateway()
        poller = make_poller([feed_item_factory(link="c", published_at=300),
                              feed_item_factory(link="b", published_at=50),
                              feed_item_factory(link="a", published_at=100)], gateway=gateway)

        assert poller.poll_once() == 1
        assert gateway.sent[0]["payload"]["link"] == "b"

    def test_identical_timestamps_are_told_apart_by_link(self, make_poller, feed_item_factory):
        gateway = FakeGateway()
        poller = make_poller([feed_item_factory(link="x", published_at=100),
                              feed_item_factory(link="y", published_at=100)], gateway=gateway)

        assert poller.poll_once() == 2

    def test_empty_feed_is_noop(self, make_poller):
        gateway = FakeGateway()
        poller = make_poller([], gateway=gateway)

        assert poller.poll_once() == 0
        assert gateway.sent == []

    def test_links_that_left_the_feed_are_pruned(self, make_poller, feed_item_factory,
                                                 snapshot_ledger, feed_source):
        snapshot_ledger.save_item(feed_source.identifier, "old")
        poller = make_poller([feed_item_factory(link="a")])

        poller.poll_once()

        assert snapshot_ledger.load(feed_source).links == frozenset({"a"})

    def test_event_content_is_signed(self, make_poller, feed_item_factory, key_store, feed_source):
        gateway = FakeGateway()
        poller = make_poller([feed_item_factory(link="a")], gateway=gateway)

        poller.poll_once()

        sent = gateway.sent[0]
        assert sent["room_id"] == "!room:example.org"
        assert sent["event_type"] == "network.informo.news.example"
        content = PublishableContent(**sent["payload"])
        identity = key_store.load_identity(feed_source.identifier)
        assert verify_content(content, identity.public_key)

    def test_media_is_rewritten_before_signing(self, make_poller, feed_item_factory):
        gateway = FakeGateway()
        item = feed_item_factory(link="a", body_html='<img src="https://cdn.example.com/p.jpg">')
        poller = make_poller([item], gateway=gateway)

        poller.poll_once()

        assert gateway.uploads == ["https://cdn.example.com/p.jpg"]
        assert "mxc://example.org/media1" in gateway.sent[0]["payload"]["content"]
        assert "cdn.example.com" not in gateway.sent[0]["payload"]["content"]


class TestSkippedItems:
    """Tests for items without HTML."""

    def test_item_without_html_is_skipped(self, make_poller, feed_item_factory,
                                          snapshot_ledger, feed_source, capture_logs):
        """Empty body and plain description: no publish, no ledger entry."""
        gateway = FakeGateway()
        items = [feed_item_factory(link="plain", body_html="", description="No markup here"),
                 feed_item_factory(link="a", published_at=50)]
        poller = make_poller(items, gateway=gateway)

        assert poller.poll_once() == 1

        assert [sent["payload"]["link"] for sent in gateway.sent] == ["a"]
        assert "plain" not in snapshot_ledger.load(feed_source).links
        assert any("Could not find any HTML content" in r.getMessage() for r in capture_logs)

    def test_skipped_item_is_retried_next_cycle(self, make_poller, feed_item_factory):
        fetcher = FakeFetcher([feed_item_factory(link="plain", body_html="", description="text")])
        gateway = FakeGateway()
        poller = make_poller(fetcher=fetcher, gateway=gateway)

        poller.poll_once()
        fetcher.items = [feed_item_factory(link="plain", body_html="<p>Now with HTML</p>")]

        assert poller.poll_once() == 1


# =============================================================================
# Rate Limit Tests
# =============================================================================

class TestRateLimits:
    """Tests for retrying rate-limited publish calls."""

    def test_rate_limited_twice_then_published_once(self, make_poller, feed_item_factory, rate_limited):
        gateway = FakeGateway(send_errors=[rate_limited(), rate_limited()])
        sleep = RecordingSleep()
        poller = make_poller([feed_item_factory(link="a")], gateway=gateway, sleep=sleep,
                             backoff_seconds=5)

        assert poller.poll_once() == 1

        assert len(gateway.sent) == 1
        assert gateway.send_attempts == 3
        assert sum(sleep.delays) >= 2 * 5

    def test_retries_reuse_transaction_id(self, make_poller, feed_item_factory, rate_limited):
        txn_ids = []

        class TrackingGateway(FakeGateway):
            def send_message(self, room_id, event_type, payload, txn_id=None):
                txn_ids.append(txn_id)
                return super().send_message(room_id, event_type, payload, txn_id)

        gateway = TrackingGateway(send_errors=[rate_limited()])
        poller = make_poller([feed_item_factory(link="a")], gateway=gateway)

        poller.poll_once()

        assert len(txn_ids) == 2
        assert txn_ids[0] == txn_ids[1]

    def test_retry_after_hint_is_used(self, make_poller, feed_item_factory, rate_limited):
        gateway = FakeGateway(send_errors=[rate_limited(retry_after=12.5)])
        sleep = RecordingSleep()
        poller = make_poller([feed_item_factory(link="a")], gateway=gateway, sleep=sleep)

        poller.poll_once()

        assert sleep.delays == [12.5]

    def test_rate_limited_upload_is_retried(self, make_poller, feed_item_factory, rate_limited):
        gateway = FakeGateway(upload_errors=[rate_limited()])
        item = feed_item_factory(link="a", body_html='<img src="https://cdn.example.com/p.png">')
        poller = make_poller([item], gateway=gateway)

        assert poller.poll_once() == 1
        assert gateway.upload_attempts == 2
        assert gateway.uploads == ["https://cdn.example.com/p.png"]


# =============================================================================
# Error Policy Tests
# =============================================================================

class TestErrorPolicy:
    """Tests for what is skipped and what is fatal."""

    def test_transient_source_error_changes_nothing(self, make_poller, snapshot_ledger, feed_source):
        snapshot_ledger.save_item(feed_source.identifier, "a")
        poller = make_poller(fetcher=FakeFetcher(error=TransientSourceError("HTTP 503", status_code=503)))

        with pytest.raises(TransientSourceError):
            poller.poll_once()

        assert snapshot_ledger.load(feed_source).links == frozenset({"a"})

    def test_publish_error_propagates_without_ledger_update(self, make_poller, feed_item_factory,
                                                            snapshot_ledger, feed_source):
        gateway = FakeGateway(send_errors=[PublishError("Forbidden", status_code=403)])
        poller = make_poller([feed_item_factory(link="a")], gateway=gateway)

        with pytest.raises(PublishError):
            poller.poll_once()

        assert gateway.send_attempts == 1
        assert snapshot_ledger.load(feed_source).links == frozenset()

    def test_items_before_failure_stay_recorded(self, make_poller, feed_item_factory,
                                                snapshot_ledger, feed_source):
        class FailSecond(FakeGateway):
            def send_message(self, room_id, event_type, payload, txn_id=None):
                if payload["link"] == "b":
                    raise PublishError("boom")
                return super().send_message(room_id, event_type, payload, txn_id)

        poller = make_poller([feed_item_factory(link="b", published_at=200),
                              feed_item_factory(link="a", published_at=100)], gateway=FailSecond())

        with pytest.raises(PublishError):
            poller.poll_once()

        assert snapshot_ledger.load(feed_source).links == frozenset({"a"})

    def test_signing_error_propagates(self, feed_source, snapshot_ledger, key_store, feed_item_factory):
        # No key was ever generated for this feed
        poller = Poller(feed=feed_source, fetcher=FakeFetcher([feed_item_factory()]),
                        ledger=snapshot_ledger, signer=Ed25519Signer(key_store),
                        gateway=FakeGateway(), room_id="!r:x")

        with pytest.raises(KeyNotFound):
            poller.poll_once()


class TestRunForever:
    """Tests for the polling loop."""

    def test_transient_error_sleeps_full_interval(self, make_poller, feed_source):
        stop = threading.Event()
        fetcher = FakeFetcher(error=TransientSourceError("HTTP 500", status_code=500))
        poller = make_poller(fetcher=fetcher, stop_event=stop)

        waits = []

        def fake_wait(timeout=None):
            waits.append(timeout)
            stop.set()
            return True

        stop.wait = fake_wait
        poller.run_forever()

        assert fetcher.calls == 1
        assert waits == [feed_source.poll_interval_seconds]

    def test_publish_error_calls_on_fatal(self, make_poller, feed_item_factory):
        on_fatal = MagicMock()
        gateway = FakeGateway(send_errors=[PublishError("boom")])
        poller = make_poller([feed_item_factory()], gateway=gateway, on_fatal=on_fatal)

        poller.run_forever()

        on_fatal.assert_called_once()
        assert isinstance(on_fatal.call_args[0][1], PublishError)

    def test_storage_error_ends_task_without_on_fatal(self, make_poller):
        on_fatal = MagicMock()
        ledger = MagicMock()
        ledger.load.side_effect = LedgerError("disk full")
        del ledger.seconds_until_next_poll
        poller = make_poller(ledger=ledger, on_fatal=on_fatal)

        poller.run_forever()

        on_fatal.assert_not_called()

    def test_unexpected_error_is_logged_with_feed_context(self, make_poller, feed_source, capture_logs):
        on_fatal = MagicMock()
        poller = make_poller(fetcher=FakeFetcher(error=RuntimeError("parser blew up")), on_fatal=on_fatal)

        poller.run_forever()

        critical = [r for r in capture_logs if r.levelname == "CRITICAL"]
        assert len(critical) == 1
        assert feed_source.identifier in critical[0].getMessage()
        assert feed_source.url in critical[0].getMessage()
        assert critical[0].exc_info is not None
        on_fatal.assert_not_called()

    def test_duplicate_link_in_batch_is_published_once(self, make_poller, feed_item_factory):
        gateway = FakeGateway()
        poller = make_poller([feed_item_factory(link="a", published_at=200),
                              feed_item_factory(link="a", published_at=100)], gateway=gateway)

        assert poller.poll_once() == 1
        assert len(gateway.sent) == 1

    def test_stops_when_stop_event_set(self, make_poller, feed_item_factory):
        stop = threading.Event()
        poller = make_poller([feed_item_factory()], stop_event=stop)
        stop.set()

        thread = start_poller_thread(poller)
        thread.join(timeout=5)

        assert not thread.is_alive()

    def test_watermark_ledger_delays_first_poll(self, make_poller, watermark_ledger, feed_source):
        import time
        watermark_ledger.update_status_for_feed(feed_source.url, int(time.time()), 0)
        stop = threading.Event()
        fetcher = FakeFetcher([])
        poller = make_poller(fetcher=fetcher, ledger=watermark_ledger, stop_event=stop)

        waits = []

        def fake_wait(timeout=None):
            waits.append(timeout)
            return True

        stop.wait = fake_wait
        poller.run_forever()

        assert fetcher.calls == 0
        assert 0 < waits[0] <= feed_source.poll_interval_seconds


# =============================================================================
# Watermark Model Tests
# =============================================================================

class TestWatermarkModel:
    """Tests for polling with the watermark ledger."""

    def test_items_sharing_a_timestamp_are_all_published(self, make_poller, feed_item_factory,
                                                         watermark_ledger, feed_source):
        """Publishing the first item must not hide a second one with the same date."""
        gateway = FakeGateway()
        poller = make_poller([feed_item_factory(link="b", published_at=200),
                              feed_item_factory(link="a", published_at=200)],
                             gateway=gateway, ledger=watermark_ledger)

        assert poller.poll_once() == 2

        assert sorted(sent["payload"]["link"] for sent in gateway.sent) == ["a", "b"]
        assert watermark_ledger.load(feed_source).last_item_ts == 200

    def test_new_items_judged_against_loaded_watermark(self, make_poller, feed_item_factory,
                                                       watermark_ledger, feed_source):
        watermark_ledger.update_status_for_feed(feed_source.url, 0, 100)
        gateway = FakeGateway()
        poller = make_poller([feed_item_factory(link="c", published_at=300),
                              feed_item_factory(link="b", published_at=150),
                              feed_item_factory(link="a", published_at=150)],
                             gateway=gateway, ledger=watermark_ledger)

        assert poller.poll_once() == 3
        assert watermark_ledger.load(feed_source).last_item_ts == 300

    def test_only_newer_items_are_published(self, make_poller, feed_item_factory,
                                            watermark_ledger, feed_source):
        watermark_ledger.update_status_for_feed(feed_source.url, 0, 150)
        gateway = FakeGateway()
        poller = make_poller([feed_item_factory(link="b", published_at=200),
                              feed_item_factory(link="a", published_at=100)],
                             gateway=gateway, ledger=watermark_ledger)

        assert poller.poll_once() == 1
        assert gateway.sent[0]["payload"]["link"] == "b"
        assert watermark_ledger.load(feed_source).last_item_ts == 200

    def test_second_poll_publishes_nothing(self, make_poller, feed_item_factory, watermark_ledger):
        gateway = FakeGateway()
        poller = make_poller([feed_item_factory(link="b", published_at=200),
                              feed_item_factory(link="a", published_at=100)],
                             gateway=gateway, ledger=watermark_ledger)

        assert poller.poll_once() == 2
        assert poller.poll_once() == 0

    def test_poll_time_is_recorded(self, make_poller, watermark_ledger, feed_source):
        poller = make_poller([], ledger=watermark_ledger)

        poller.poll_once()

        assert watermark_ledger.load(feed_source).last_poll_ts > 0


# =============================================================================
# Test Mode Tests
# =============================================================================

class TestTestMode:
    """Tests for running without publishing."""

    def test_nothing_sent_and_ledger_untouched(self, make_poller, feed_item_factory,
                                               snapshot_ledger, feed_source, capture_logs):
        poller = make_poller([feed_item_factory(link="a")], test_mode=True)

        assert poller.poll_once() == 1

        assert snapshot_ledger.load(feed_source).links == frozenset()
        assert any("TEST MODE" in r.getMessage() for r in capture_logs)

    def test_gateway_required_outside_test_mode(self, feed_source, snapshot_ledger):
        with pytest.raises(ValueError):
            Poller(feed=feed_source, fetcher=FakeFetcher(), ledger=snapshot_ledger,
                   signer=MagicMock(), gateway=None)
