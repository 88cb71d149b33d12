"""Tests for shardloader/lib/models.py."""

import json

import pytest

from shardloader.lib.models import (
    CheckpointRow,
    LoadContext,
    Manifest,
    ShardDescriptor,
    ShardReadResult,
    parse_sequence_number,
)

# Real Kinesis sequence numbers are 56 digits
BIG = 49546986683135544286507457936321625675700192471156785154


class TestParseSequenceNumber:
    def test_big_decimal_string(self):
        assert parse_sequence_number(str(BIG)) == BIG

    def test_int_passthrough(self):
        assert parse_sequence_number(7) == 7

    @pytest.mark.parametrize("value", [None, "", "  "])
    def test_no_position(self, value):
        assert parse_sequence_number(value) is None

    def test_ordering_is_numeric_not_lexical(self):
        assert parse_sequence_number("10") > parse_sequence_number("9")


class TestShardDescriptor:
    def test_from_kinesis_open_shard(self):
        shard = ShardDescriptor.from_kinesis(
            {
                "ShardId": "shardId-000000000000",
                "HashKeyRange": {
                    "StartingHashKey": "0",
                    "EndingHashKey": "340282366920938463463374607431768211455",
                },
                "SequenceNumberRange": {"StartingSequenceNumber": str(BIG)},
            }
        )
        assert shard.shard_id == "shardId-000000000000"
        assert shard.hash_key_range == (0, 340282366920938463463374607431768211455)
        assert shard.sequence_number_range == (BIG, None)
        assert shard.is_open

    def test_closed_shard(self):
        shard = ShardDescriptor.from_kinesis(
            {
                "ShardId": "shardId-1",
                "SequenceNumberRange": {
                    "StartingSequenceNumber": "1",
                    "EndingSequenceNumber": "99",
                },
            }
        )
        assert not shard.is_open
        assert shard.hash_key_range is None

    def test_no_ranges_is_open(self):
        assert ShardDescriptor("host").is_open

    def test_is_frozen(self):
        shard = ShardDescriptor("a")
        with pytest.raises(AttributeError):
            shard.shard_id = "b"


class TestCheckpointRow:
    def test_from_record_parses_big_ints(self):
        row = CheckpointRow.from_record(
            {
                "stream_name": "s",
                "shard_id": "shardId-0",
                "table_name": "t",
                "starting_sequence_number": str(BIG),
                "ending_sequence_number": str(BIG + 10),
                "load_timestamp": "2024-01-15 10:00:00",
            }
        )
        assert row.starting_sequence_number == BIG
        assert row.ending_sequence_number - row.starting_sequence_number == 10
        assert row.to_dict()["ending_sequence_number"] == str(BIG + 10)


class TestManifest:
    def test_json_wire_form(self):
        manifest = Manifest()
        manifest.add("s3://b/one.gz")
        manifest.add("s3://b/two.gz")

        assert json.loads(manifest.to_json()) == {
            "entries": [
                {"url": "s3://b/one.gz", "mandatory": True},
                {"url": "s3://b/two.gz", "mandatory": True},
            ]
        }
        assert len(manifest) == 2

    def test_from_json(self):
        manifest = Manifest.from_json(
            '{"entries": [{"url": "s3://b/k", "mandatory": false}]}'
        )
        assert manifest.urls == ["s3://b/k"]
        assert manifest.entries[0].mandatory is False


class TestLoadContext:
    def test_shards_to_load_skips_empty_results(self):
        context = LoadContext(
            table="t",
            stream="s",
            results=[
                ShardReadResult("a", records=0),
                ShardReadResult("b", records=3, starting_sequence_number=1, ending_sequence_number=3),
            ],
        )
        assert [r.shard_id for r in context.shards_to_load] == ["b"]

    def test_to_dict_is_json_serializable(self):
        context = LoadContext(
            table="t",
            stream="s",
            shards=[ShardDescriptor("a")],
            last_checkpoints={"a": None},
            results=[ShardReadResult("a", records=1, starting_sequence_number=BIG, ending_sequence_number=BIG)],
        )
        data = json.loads(json.dumps(context.to_dict()))
        assert data["results"][0]["starting_sequence_number"] == str(BIG)
        assert data["last_checkpoints"] == {"a": None}
