"""Tests for pull aggregation into the statistics tables."""

import json
import random
import threading

import pytest
from structlog.testing import capture_logs

from pullstats.aggregate import AggregateStats, PassCancelled, WriteFailure, aggregate_batch
from pullstats.queries import get_manifest_stat, get_tag_stat
from pullstats.warehouse import DeadlineExceeded
from tests.conftest import (
    DIGEST_A,
    DIGEST_B,
    ExplodingConnection,
    StallingConnection,
    StaticResolver,
    at,
    make_record,
)


def _count(conn, table: str) -> int:
    return conn.execute(f"SELECT count(*) FROM {table}").fetchone()[0]


class TestTagPulls:
    def test_single_tag_pull_updates_both_tables(self, conn):
        stats = aggregate_batch(
            conn, [make_record(1, when=at(1), tag="v1.0", digest=DIGEST_A)], StaticResolver(), now=at(60)
        )
        assert stats.applied == 1
        assert stats.tag_pulls == 1

        tag = get_tag_stat(conn, 1, "v1.0")
        assert tag.pull_count == 1
        assert tag.last_pull_date == at(1)
        assert tag.current_manifest_digest == DIGEST_A
        assert tag.created_at == at(60)

        manifest = get_manifest_stat(conn, 1, DIGEST_A)
        assert manifest.pull_count == 1
        assert manifest.last_tag_pulled == "v1.0"
        assert manifest.last_tag_pull_date == at(1)

    def test_n_pulls_in_any_order_count_n_with_latest_time(self, conn):
        records = [make_record(i, when=at(i * 7 % 50), tag="latest", digest=DIGEST_A) for i in range(1, 21)]
        random.Random(4).shuffle(records)
        aggregate_batch(conn, records[:9], StaticResolver(), now=at(100))
        aggregate_batch(conn, records[9:], StaticResolver(), now=at(100))

        latest = max(r.occurred_at for r in records)
        tag = get_tag_stat(conn, 1, "latest")
        assert tag.pull_count == 20
        assert tag.last_pull_date == latest
        assert get_manifest_stat(conn, 1, DIGEST_A).last_pull_date == latest

    def test_digest_resolved_through_resolver(self, conn):
        resolver = StaticResolver({(1, "latest"): DIGEST_B})
        aggregate_batch(conn, [make_record(1, when=at(1), tag="latest")], resolver)
        assert resolver.calls == [(1, "latest")]
        assert get_manifest_stat(conn, 1, DIGEST_B).pull_count == 1

    def test_recorded_digest_skips_resolver(self, conn):
        resolver = StaticResolver({(1, "latest"): DIGEST_B})
        aggregate_batch(conn, [make_record(1, when=at(1), tag="latest", digest=DIGEST_A)], resolver)
        assert resolver.calls == []
        assert get_manifest_stat(conn, 1, DIGEST_B) is None

    def test_unresolved_tag_counts_tag_only(self, conn):
        with capture_logs() as logs:
            stats = aggregate_batch(conn, [make_record(1, when=at(1), tag="gone")], StaticResolver())
        assert stats.unresolved == 1
        assert stats.applied == 1
        assert get_tag_stat(conn, 1, "gone").pull_count == 1
        assert get_tag_stat(conn, 1, "gone").current_manifest_digest is None
        assert _count(conn, "manifest_pull_stats") == 0
        assert any(e["event"] == "unresolved tag manifest" for e in logs)

    def test_current_digest_follows_newest_pull(self, conn):
        aggregate_batch(conn, [make_record(2, when=at(20), tag="latest", digest=DIGEST_B)], StaticResolver())
        aggregate_batch(conn, [make_record(1, when=at(10), tag="latest", digest=DIGEST_A)], StaticResolver())
        tag = get_tag_stat(conn, 1, "latest")
        assert tag.current_manifest_digest == DIGEST_B
        assert tag.last_pull_date == at(20)

    def test_unresolved_pull_keeps_known_digest(self, conn):
        aggregate_batch(conn, [make_record(1, when=at(10), tag="latest", digest=DIGEST_A)], StaticResolver())
        aggregate_batch(conn, [make_record(2, when=at(20), tag="latest")], StaticResolver())
        tag = get_tag_stat(conn, 1, "latest")
        assert tag.pull_count == 2
        assert tag.current_manifest_digest == DIGEST_A

    def test_older_resolved_pull_does_not_replace_newer_digest(self, conn):
        aggregate_batch(conn, [make_record(1, when=at(7), tag="latest", digest=DIGEST_B)], StaticResolver())
        aggregate_batch(
            conn,
            [
                make_record(2, when=at(5), tag="latest", digest=DIGEST_A),
                make_record(3, when=at(10), tag="latest"),
            ],
            StaticResolver(),
        )
        tag = get_tag_stat(conn, 1, "latest")
        assert tag.pull_count == 3
        assert tag.last_pull_date == at(10)
        assert tag.current_manifest_digest == DIGEST_B

    def test_newer_resolved_pull_in_mixed_batch_replaces_digest(self, conn):
        aggregate_batch(conn, [make_record(1, when=at(7), tag="latest", digest=DIGEST_B)], StaticResolver())
        aggregate_batch(
            conn,
            [
                make_record(2, when=at(8), tag="latest", digest=DIGEST_A),
                make_record(3, when=at(10), tag="latest"),
            ],
            StaticResolver(),
        )
        assert get_tag_stat(conn, 1, "latest").current_manifest_digest == DIGEST_A


class TestDigestPulls:
    def test_digest_pull_counts_manifest_only(self, conn):
        stats = aggregate_batch(conn, [make_record(1, when=at(1), digest=DIGEST_A)], StaticResolver())
        assert stats.digest_pulls == 1
        assert _count(conn, "tag_pull_stats") == 0
        manifest = get_manifest_stat(conn, 1, DIGEST_A)
        assert manifest.pull_count == 1
        assert manifest.last_tag_pulled is None
        assert manifest.last_tag_pull_date is None

    def test_tag_pull_and_digest_pull_count_the_same(self, conn):
        aggregate_batch(conn, [make_record(1, when=at(1), tag="v1", digest=DIGEST_A)], StaticResolver())
        aggregate_batch(
            conn, [make_record(2, when=at(1), repository_id=2, digest=DIGEST_A)], StaticResolver()
        )
        assert get_manifest_stat(conn, 1, DIGEST_A).pull_count == 1
        assert get_manifest_stat(conn, 2, DIGEST_A).pull_count == 1
        assert get_manifest_stat(conn, 1, DIGEST_A).last_pull_date == at(1)
        assert get_manifest_stat(conn, 2, DIGEST_A).last_pull_date == at(1)

    def test_later_digest_pull_keeps_last_tag(self, conn):
        aggregate_batch(conn, [make_record(1, when=at(1), tag="v1", digest=DIGEST_A)], StaticResolver())
        aggregate_batch(conn, [make_record(2, when=at(9), digest=DIGEST_A)], StaticResolver())
        manifest = get_manifest_stat(conn, 1, DIGEST_A)
        assert manifest.pull_count == 2
        assert manifest.last_pull_date == at(9)
        assert manifest.last_tag_pulled == "v1"
        assert manifest.last_tag_pull_date == at(1)

    def test_same_digest_in_two_repositories_independent(self, conn):
        records = [
            make_record(1, when=at(1), repository_id=1, digest=DIGEST_A),
            make_record(2, when=at(2), repository_id=1, digest=DIGEST_A),
            make_record(3, when=at(3), repository_id=2, digest=DIGEST_A),
        ]
        aggregate_batch(conn, records, StaticResolver())
        assert get_manifest_stat(conn, 1, DIGEST_A).pull_count == 2
        assert get_manifest_stat(conn, 2, DIGEST_A).pull_count == 1


class TestMixedScenario:
    def test_two_tags_and_a_digest_pull_on_one_manifest(self, conn):
        resolver = StaticResolver({(1, "v1.0"): DIGEST_A, (1, "latest"): DIGEST_A})
        records = [
            make_record(1, when=at(1), tag="v1.0"),
            make_record(2, when=at(2), tag="latest"),
            make_record(3, when=at(3), digest=DIGEST_A),
        ]
        stats = aggregate_batch(conn, records, resolver)

        assert stats == AggregateStats(
            total=3,
            applied=3,
            tag_pulls=2,
            digest_pulls=1,
            tags_touched=2,
            manifests_touched=1,
        )
        assert get_tag_stat(conn, 1, "v1.0").pull_count == 1
        assert get_tag_stat(conn, 1, "latest").pull_count == 1
        manifest = get_manifest_stat(conn, 1, DIGEST_A)
        assert manifest.pull_count == 3
        assert manifest.last_pull_date == at(3)
        assert manifest.last_tag_pulled == "latest"
        assert manifest.last_tag_pull_date == at(2)

    def test_last_tag_tracks_newest_tag_pull_across_batches(self, conn):
        resolver = StaticResolver({(1, "v1.0"): DIGEST_A, (1, "latest"): DIGEST_A})
        aggregate_batch(conn, [make_record(2, when=at(5), tag="latest")], resolver)
        aggregate_batch(conn, [make_record(1, when=at(2), tag="v1.0")], resolver)
        assert get_manifest_stat(conn, 1, DIGEST_A).last_tag_pulled == "latest"


class TestMalformed:
    def test_malformed_skipped_and_counted(self, conn):
        records = [
            make_record(1, when=at(1), tag="ok"),
            make_record(2, when=at(2), repository_id=None, tag="ok"),
            make_record(3, when=at(3), metadata=["not", "an", "object"]),
        ]
        with capture_logs() as logs:
            stats = aggregate_batch(conn, records, StaticResolver())
        assert stats.total == 3
        assert stats.malformed == 2
        assert stats.applied == 1
        assert get_tag_stat(conn, 1, "ok").pull_count == 1
        assert sum(e["event"] == "malformed pull event skipped" for e in logs) == 2

    def test_malformed_quarantined(self, conn, tmp_path):
        record = make_record(7, when=at(1), metadata={"tag": "bad tag"})
        aggregate_batch(conn, [record], StaticResolver(), quarantine_dir=tmp_path, source="log_archive")
        path = tmp_path / "malformed_events" / "2026-10-19" / "log_archive.jsonl"
        payload = json.loads(path.read_text(encoding="utf-8"))
        assert payload["record"]["id"] == 7
        assert "tag" in payload["reason"]

    def test_unparseable_repository_id_counted_and_quarantined(self, conn, tmp_path):
        record = make_record(8, when=at(1), repository_id="not-a-number", tag="v1")
        stats = aggregate_batch(
            conn, [record], StaticResolver(), quarantine_dir=tmp_path, source="log_archive"
        )
        assert stats.malformed == 1
        assert stats.applied == 0
        path = tmp_path / "malformed_events" / "2026-10-19" / "log_archive.jsonl"
        payload = json.loads(path.read_text(encoding="utf-8"))
        assert payload["record"]["repository_id"] == "not-a-number"
        assert "repository_id" in payload["reason"]

    def test_all_malformed_writes_nothing(self, conn):
        stats = aggregate_batch(conn, [make_record(1, when=at(1), metadata={})], StaticResolver())
        assert stats.malformed == 1
        assert _count(conn, "tag_pull_stats") == 0

    def test_empty_batch(self, conn):
        assert aggregate_batch(conn, [], StaticResolver()) == AggregateStats()


class TestAtomicity:
    def test_failed_manifest_write_leaves_both_tables_untouched(self, conn):
        aggregate_batch(conn, [make_record(1, when=at(1), tag="v1", digest=DIGEST_A)], StaticResolver())

        with pytest.raises(WriteFailure, match="simulated disk failure"):
            aggregate_batch(
                ExplodingConnection(conn),
                [
                    make_record(2, when=at(2), tag="v1", digest=DIGEST_A),
                    make_record(3, when=at(3), tag="v2", digest=DIGEST_B),
                ],
                StaticResolver(),
            )

        assert get_tag_stat(conn, 1, "v1").pull_count == 1
        assert get_tag_stat(conn, 1, "v2") is None
        assert get_manifest_stat(conn, 1, DIGEST_A).pull_count == 1
        assert get_manifest_stat(conn, 1, DIGEST_B) is None

    def test_write_past_deadline_rolls_back(self, conn):
        aggregate_batch(conn, [make_record(1, when=at(1), tag="v1", digest=DIGEST_A)], StaticResolver())

        with pytest.raises(WriteFailure, match="deadline") as excinfo:
            aggregate_batch(
                StallingConnection(conn),
                [
                    make_record(2, when=at(2), tag="v1", digest=DIGEST_A),
                    make_record(3, when=at(3), tag="v2", digest=DIGEST_B),
                ],
                StaticResolver(),
                write_timeout_seconds=0.05,
            )

        assert isinstance(excinfo.value.__cause__, DeadlineExceeded)
        assert get_tag_stat(conn, 1, "v1").pull_count == 1
        assert get_tag_stat(conn, 1, "v2") is None
        assert get_manifest_stat(conn, 1, DIGEST_A).pull_count == 1
        assert get_manifest_stat(conn, 1, DIGEST_B) is None


    def test_connection_usable_after_failure(self, conn):
        with pytest.raises(WriteFailure):
            aggregate_batch(
                ExplodingConnection(conn),
                [make_record(1, when=at(1), tag="v1", digest=DIGEST_A)],
                StaticResolver(),
            )
        aggregate_batch(conn, [make_record(1, when=at(1), tag="v1", digest=DIGEST_A)], StaticResolver())
        assert get_tag_stat(conn, 1, "v1").pull_count == 1

    def test_replaying_a_batch_double_counts(self, conn):
        batch = [make_record(1, when=at(1), tag="v1", digest=DIGEST_A)]
        aggregate_batch(conn, batch, StaticResolver())
        aggregate_batch(conn, batch, StaticResolver())
        assert get_tag_stat(conn, 1, "v1").pull_count == 2


class TestCancellation:
    def test_stop_set_before_start_writes_nothing(self, conn):
        stop = threading.Event()
        stop.set()
        with pytest.raises(PassCancelled):
            aggregate_batch(conn, [make_record(1, when=at(1), tag="v1")], StaticResolver(), stop=stop)
        assert _count(conn, "tag_pull_stats") == 0

    def test_stop_set_midway_writes_nothing(self, conn):
        stop = threading.Event()

        class StoppingResolver(StaticResolver):
            def resolve(self, repository_id, tag_name):
                stop.set()
                return super().resolve(repository_id, tag_name)

        records = [make_record(i, when=at(i), tag="v1") for i in range(1, 4)]
        with pytest.raises(PassCancelled):
            aggregate_batch(conn, records, StoppingResolver(), stop=stop)
        assert _count(conn, "tag_pull_stats") == 0


class TestAggregateStats:
    def test_addition(self):
        a = AggregateStats(total=2, applied=1, malformed=1)
        b = AggregateStats(total=3, applied=3, tag_pulls=3)
        assert a + b == AggregateStats(total=5, applied=4, tag_pulls=3, malformed=1)
