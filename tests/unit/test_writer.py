"""
Unit tests for the upsert writer.
"""

import pytest

from pgmirror.errors import ConstraintViolationError, ErrorKind, TransientIOError
from pgmirror.replication.models import ApplyResult, DivergenceKind


def demanda_record(entity_id, fiscalizado_id=77, **fields):
    record = {"id": entity_id, "fiscalizado_id": fiscalizado_id, "situacao_id": 2, "fiscal_id": None}
    record.update(fields)
    return record


@pytest.fixture(autouse=True)
def person_77(pessoa):
    pessoa.add_destination({"id": 77})


class TestUpsertWriter:
    """Test suite for UpsertWriter.apply."""

    def test_bulk_write(self, writer, demanda):
        result = writer.apply(demanda, [demanda_record(1), demanda_record(2)])

        assert result == ApplyResult(applied=2)
        assert demanda.update_calls == [[1, 2]]
        assert set(demanda.destination) == {1, 2}

    def test_empty_batch(self, writer, demanda):
        assert writer.apply(demanda, []) == ApplyResult()
        assert demanda.update_calls == []

    def test_idempotent(self, writer, demanda):
        record = demanda_record(1, situacao_id=7)

        writer.apply(demanda, [record])
        once = {k: dict(v) for k, v in demanda.destination.items()}
        for _ in range(3):
            writer.apply(demanda, [record])

        assert demanda.destination == once

    def test_single_and_bulk_paths_agree(self, writer, demanda, pessoa):
        writer.apply(demanda, [demanda_record(1), demanda_record(2)])
        bulk = dict(demanda.destination)

        demanda.destination.clear()
        writer.apply_one(demanda, demanda_record(1))
        writer.apply_one(demanda, demanda_record(2))

        assert demanda.destination == bulk

    def test_destination_local_fields_preserved(self, writer, demanda):
        demanda.add_destination(demanda_record(1, fiscal_id=5, situacao_id=2))

        writer.apply(demanda, [demanda_record(1, situacao_id=7)])

        assert demanda.destination[1]["fiscal_id"] == 5
        assert demanda.destination[1]["situacao_id"] == 7

    def test_unhandled_foreign_key_isolated_to_one_record(self, writer, demanda, ledger):
        demanda.fail_ids[900] = ConstraintViolationError(
            ErrorKind.FOREIGN_KEY, "demandas_operacao_id_fkey", "Key (operacao_id)=(3) is not present"
        )

        result = writer.apply(demanda, [demanda_record(900), demanda_record(901)])

        assert result.applied == 1
        assert result.failed == 1
        assert result.failed_ids == {900}
        assert 901 in demanda.destination

        entries = ledger.list()
        assert [e.key for e in entries] == [("demanda", 900)]
        assert entries[0].error_kind == DivergenceKind.FOREIGN_KEY.value
        assert entries[0].payload["constraint"] == "demandas_operacao_id_fkey"
        # bulk, single, single retry after re-resolution, sibling
        assert demanda.update_calls == [[900, 901], [900], [900], [901]]

    def test_foreign_key_race_healed_by_re_resolution(self, writer, demanda, pessoa, ledger):
        pessoa.add_source({"id": 80})

        result = writer.apply(demanda, [demanda_record(502, fiscalizado_id=80)])

        assert result == ApplyResult(applied=1)
        assert 80 in pessoa.destination
        assert 502 in demanda.destination
        assert len(ledger) == 0

    def test_other_constraint_recorded_with_detail(self, writer, demanda, ledger):
        demanda.fail_ids[900] = ConstraintViolationError(
            ErrorKind.CHECK, "demandas_uf_check", "new row violates check constraint"
        )

        result = writer.apply(demanda, [demanda_record(900), demanda_record(901)])

        assert result.failed_ids == {900}
        entry = ledger.list()[0]
        assert entry.error_kind == DivergenceKind.CONSTRAINT.value
        assert entry.message == "new row violates check constraint"
        assert entry.payload == {"constraint": "demandas_uf_check", "kind": "check", "path": "realtime"}
        assert demanda.update_calls == [[900, 901], [900], [901]]

    def test_transient_bulk_failure_propagates(self, writer, demanda):
        demanda.transient_failures = 10

        with pytest.raises(TransientIOError):
            writer.apply(demanda, [demanda_record(1)])

    def test_transient_single_failure_recorded(self, writer, demanda, ledger):
        demanda.fail_ids[900] = TransientIOError("statement timeout")

        result = writer.apply_one(demanda, demanda_record(900), path="reconcile")

        assert result.failed_ids == {900}
        assert len(demanda.update_calls) == 3
        entry = ledger.list()[0]
        assert entry.error_kind == DivergenceKind.TRANSIENT_IO.value
        assert entry.payload == {"path": "reconcile"}

    def test_apply_counts_metrics(self, writer, demanda, metrics):
        writer.apply(demanda, [demanda_record(1), demanda_record(2)], path="reconcile")

        assert metrics.registry.get_sample_value(
            "pgmirror_records_applied_total", {"entity": "demanda", "path": "reconcile", "status": "applied"}
        ) == 2.0

    def test_divergence_without_id_not_recorded(self, writer, demanda, ledger):
        writer.record_divergence(demanda, None, DivergenceKind.UNEXPECTED, "no id")

        assert len(ledger) == 0


class TestSoftDelete:
    """Test suite for UpsertWriter.soft_delete."""

    def test_marks_inactive(self, writer, demanda):
        demanda.add_destination(demanda_record(5, ativo=True))

        assert writer.soft_delete(demanda, 5) == 1
        assert demanda.destination[5]["ativo"] is False
        assert 5 in demanda.destination

    def test_absent_row(self, writer, demanda):
        assert writer.soft_delete(demanda, 404) == 0
