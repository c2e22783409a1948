"""
Tests for the chain verification service.
"""

import pytest

from logchain.crypto import ZERO_HASH, compute_log_hash
from logchain.exceptions import ConfigurationError, LogValidationError
from logchain.models import LogRecord
from logchain.services.processor import append_log
from logchain.services.verifier import ChainReplay, verify_chain, verify_records

APP_ID = "6f1c2d7e-8a4b-4c3d-9e2f-1a0b9c8d7e6f"
KEY = "verifier-key"


def build_chain(count: int, application_id: str = APP_ID, key: str = KEY):
    """Build a valid in-memory chain of LogRecords."""
    records = []
    prev_hash = ZERO_HASH
    for seq in range(1, count + 1):
        payload = {"n": seq}
        log_hash = compute_log_hash(application_id, seq, "DATA_UPDATE", payload, prev_hash, key)
        records.append(LogRecord(
            id=f"log-{seq}",
            application_id=application_id,
            seq=seq,
            log_type="DATA_UPDATE",
            payload=payload,
            hash=log_hash,
            prev_hash=prev_hash,
        ))
        prev_hash = log_hash
    return records


class TestVerifyRecords:
    """Tests for replaying a chain held in memory."""

    def test_empty_chain_is_valid(self):
        report = verify_records([], APP_ID, KEY)
        assert report.valid
        assert report.total_logs == 0
        assert report.first_invalid_seq is None
        assert report.errors == []

    def test_valid_chain(self):
        report = verify_records(build_chain(5), APP_ID, KEY)
        assert report.valid
        assert report.total_logs == 5

    def test_missing_key(self):
        with pytest.raises(ConfigurationError):
            verify_records(build_chain(1), APP_ID, "")

    def test_sequence_gap(self):
        chain = build_chain(5)
        del chain[2]

        report = verify_records(chain, APP_ID, KEY)

        assert not report.valid
        assert report.total_logs == 4
        assert report.first_invalid_seq == 4
        assert "Sequence gap at seq=4, expected=3" in report.errors
        # seq 4 still links to seq 3, which is gone
        assert "Hash chain broken at seq=4, prevHash mismatch" in report.errors

    def test_modified_payload_reports_only_that_record(self):
        chain = build_chain(3)
        chain[1] = chain[1].model_copy(update={"payload": {"n": 999}})

        report = verify_records(chain, APP_ID, KEY)

        assert not report.valid
        assert report.first_invalid_seq == 2
        assert report.errors == ["Invalid hash at seq=2"]

    def test_modified_hash_breaks_the_next_link(self):
        chain = build_chain(3)
        chain[1] = chain[1].model_copy(update={"hash": "a" * 64})

        report = verify_records(chain, APP_ID, KEY)

        assert report.errors == [
            "Invalid hash at seq=2",
            "Hash chain broken at seq=3, prevHash mismatch",
        ]

    def test_bad_genesis(self):
        chain = build_chain(2)
        prev = "1" * 64
        forged_hash = compute_log_hash(APP_ID, 1, "DATA_UPDATE", {"n": 1}, prev, KEY)
        chain[0] = chain[0].model_copy(update={"prev_hash": prev, "hash": forged_hash})

        report = verify_records(chain, APP_ID, KEY)

        assert report.first_invalid_seq == 1
        assert "First log (seq=1) prevHash should be 64 zeros" in report.errors

    def test_all_errors_are_accumulated(self):
        chain = build_chain(6)
        chain[1] = chain[1].model_copy(update={"payload": {"n": -1}})
        del chain[3]

        report = verify_records(chain, APP_ID, KEY)

        assert report.first_invalid_seq == 2
        assert report.errors[0] == "Invalid hash at seq=2"
        assert "Sequence gap at seq=5, expected=4" in report.errors
        assert "Sequence gap at seq=6, expected=5" in report.errors

    def test_records_are_checked_against_the_given_application(self):
        chain = build_chain(2, application_id="some-other-app")
        report = verify_records(chain, APP_ID, KEY)
        assert report.errors == ["Invalid hash at seq=1", "Invalid hash at seq=2"]

    def test_wrong_key_invalidates_every_record(self):
        report = verify_records(build_chain(3), APP_ID, "another-key")
        assert report.first_invalid_seq == 1
        assert len(report.errors) == 3


class TestChainReplay:
    """Tests for ranged replay."""

    def test_range_anchored_to_previous_hash(self):
        chain = build_chain(6)
        replay = ChainReplay(APP_ID, KEY, first_expected_seq=3, anchor_hash=chain[1].hash)
        for record in chain[2:5]:
            replay.feed(record)

        report = replay.report()
        assert report.valid
        assert report.total_logs == 3

    def test_range_with_wrong_anchor(self):
        chain = build_chain(4)
        replay = ChainReplay(APP_ID, KEY, first_expected_seq=3, anchor_hash="b" * 64)
        for record in chain[2:]:
            replay.feed(record)

        assert replay.report().errors == ["Hash chain broken at seq=3, prevHash mismatch"]


class TestVerifyChain:
    """Tests for verifying a stored chain."""

    @pytest.mark.asyncio
    async def test_stored_chain_is_valid(self, mock_db, application, hash_key):
        for i in range(4):
            await append_log(application["id"], "AUTH_LOGIN", {"i": i}, hash_key, mock_db)

        report = await verify_chain(application["id"], hash_key, mock_db)

        assert report.valid
        assert report.total_logs == 4

    @pytest.mark.asyncio
    async def test_empty_application(self, mock_db, application, hash_key):
        report = await verify_chain(application["id"], hash_key, mock_db)
        assert report.valid
        assert report.total_logs == 0

    @pytest.mark.asyncio
    async def test_tampered_payload_detected(self, mock_db, application, hash_key):
        for i in range(3):
            await append_log(application["id"], "DATA_UPDATE", {"amount": i}, hash_key, mock_db)

        mock_db.replace_log(application["id"], 2, payload='{"amount":1000}')

        report = await verify_chain(application["id"], hash_key, mock_db)

        assert not report.valid
        assert report.first_invalid_seq == 2
        assert report.errors == ["Invalid hash at seq=2"]

    @pytest.mark.asyncio
    async def test_deleting_the_middle_of_three(self, mock_db, application, hash_key):
        for i in range(3):
            await append_log(application["id"], "DATA_UPDATE", {"i": i}, hash_key, mock_db)

        mock_db.delete_log(application["id"], 2)

        report = await verify_chain(application["id"], hash_key, mock_db)

        assert not report.valid
        assert report.first_invalid_seq == 3
        assert "Sequence gap at seq=3, expected=2" in report.errors

    @pytest.mark.asyncio
    async def test_deleted_record_detected(self, mock_db, application, hash_key):
        for i in range(5):
            await append_log(application["id"], "DATA_UPDATE", {"i": i}, hash_key, mock_db)

        mock_db.delete_log(application["id"], 3)

        report = await verify_chain(application["id"], hash_key, mock_db)

        assert not report.valid
        assert report.total_logs == 4
        assert report.first_invalid_seq == 4

    @pytest.mark.asyncio
    async def test_other_tenants_do_not_affect_verification(self, mock_db, hash_key):
        app_a = mock_db.add_application(slug="a")
        app_b = mock_db.add_application(slug="b")
        await append_log(app_a["id"], "DATA_CREATE", {"x": 1}, hash_key, mock_db)
        await append_log(app_b["id"], "DATA_CREATE", {"x": 1}, hash_key, mock_db)
        mock_db.replace_log(app_b["id"], 1, payload='{"x":2}')

        assert (await verify_chain(app_a["id"], hash_key, mock_db)).valid
        assert not (await verify_chain(app_b["id"], hash_key, mock_db)).valid

    @pytest.mark.asyncio
    async def test_ranged_verification(self, mock_db, application, hash_key):
        for i in range(6):
            await append_log(application["id"], "DATA_UPDATE", {"i": i}, hash_key, mock_db)
        mock_db.replace_log(application["id"], 1, payload='{"i":100}')

        report = await verify_chain(application["id"], hash_key, mock_db, start_seq=3, end_seq=5)

        assert report.valid
        assert report.total_logs == 3

        full = await verify_chain(application["id"], hash_key, mock_db)
        assert full.first_invalid_seq == 1

    @pytest.mark.asyncio
    async def test_missing_key(self, mock_db, application):
        with pytest.raises(ConfigurationError):
            await verify_chain(application["id"], None, mock_db)

    @pytest.mark.asyncio
    async def test_bad_bounds(self, mock_db, application, hash_key):
        with pytest.raises(LogValidationError):
            await verify_chain(application["id"], hash_key, mock_db, start_seq=0)
        with pytest.raises(LogValidationError):
            await verify_chain(application["id"], hash_key, mock_db, start_seq=5, end_seq=2)
        with pytest.raises(LogValidationError):
            await verify_chain(application["id"], hash_key, mock_db, end_seq=2 ** 63)
