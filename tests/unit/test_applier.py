"""
Unit tests for the record applier.
"""

from unittest.mock import MagicMock

from fakes import InMemoryEntityHandler
from pgmirror.entities.base import LinkEntityHandler
from pgmirror.entities.fiscalizacao import FISCAL_DEMANDA
from pgmirror.replication.models import ApplyResult, DependencyReference, DivergenceKind


class TestRecordApplier:
    """Test suite for RecordApplier.apply_rows."""

    def test_missing_dependency_inserted_before_dependent(self, applier, pessoa, demanda):
        pessoa.add_source({"id": 77, "razaosocial": "Padaria Central"})

        result = applier.apply_rows(demanda, [{"id": 500, "fiscalizado_id": 77}])

        assert result == ApplyResult(applied=1)
        assert pessoa.destination[77]["razaosocial"] == "Padaria Central"
        assert demanda.destination[500]["fiscalizado_id"] == 77

    def test_dependencies_resolved_once_per_batch(self, applier, pessoa, demanda):
        pessoa.add_source({"id": 77}, {"id": 78})
        rows = [
            {"id": 500, "fiscalizado_id": 77},
            {"id": 501, "fiscalizado_id": 78},
            {"id": 502, "fiscalizado_id": 77},
        ]

        result = applier.apply_rows(demanda, rows)

        assert result.applied == 3
        assert pessoa.fetch_calls == [[77, 78]]
        assert demanda.update_calls == [[500, 501, 502]]

    def test_unresolved_required_dependency_withheld(self, applier, pessoa, demanda, ledger):
        pessoa.add_source({"id": 77})
        rows = [{"id": 500, "fiscalizado_id": 77}, {"id": 501, "fiscalizado_id": 99}]

        result = applier.apply_rows(demanda, rows, path="reconcile")

        assert result.applied == 1
        assert result.failed_ids == {501}
        assert 501 not in demanda.destination
        assert demanda.update_calls == [[500]]

        entry = ledger.list()[0]
        assert entry.key == ("demanda", 501)
        assert entry.error_kind == DivergenceKind.UNRESOLVED_DEPENDENCY.value
        assert entry.message == "Unresolved pessoa reference(s) in fiscalizado_id: [99]"
        assert entry.payload == {
            "dependency": "pessoa", "field": "fiscalizado_id", "reference": 99, "path": "reconcile"
        }

    def test_unresolved_optional_dependency_written_as_null(self, applier, registry, ledger):
        ocorrencia = InMemoryEntityHandler(
            "ocorrencia",
            source_table="public.ocorrencia",
            dependencies=(DependencyReference("pessoa", "responsavel_id", required=False),),
        )
        registry.register(ocorrencia)

        result = applier.apply_rows(ocorrencia, [{"id": 1, "responsavel_id": 42}])

        assert result == ApplyResult(applied=1)
        assert ocorrencia.destination[1]["responsavel_id"] is None
        assert len(ledger) == 0

    def test_null_reference_needs_no_resolution(self, applier, pessoa, demanda):
        result = applier.apply_rows(demanda, [{"id": 500, "fiscalizado_id": None}])

        assert result.applied == 1
        assert pessoa.fetch_calls == []

    def test_mapping_failure_recorded(self, applier, registry, ledger):
        def mapper(row):
            return {"id": row["id"], "nome": row["nome"].strip()}

        usuario = InMemoryEntityHandler("usuario", source_table="public.usuario", mapper=mapper)
        registry.register(usuario)

        result = applier.apply_rows(usuario, [{"id": 1, "nome": " Ana "}, {"id": 2}])

        assert result.applied == 1
        assert result.failed_ids == {2}
        assert usuario.destination[1]["nome"] == "Ana"
        entry = ledger.list()[0]
        assert entry.error_kind == DivergenceKind.UNEXPECTED.value
        assert entry.message.startswith("Mapping failed")

    def test_nothing_to_write(self, applier, demanda):
        assert applier.apply_rows(demanda, []) == ApplyResult()
        assert demanda.update_calls == []

    def test_inactive_link_rows_not_written(self, applier, ledger):
        destination = MagicMock()
        link = LinkEntityHandler(FISCAL_DEMANDA, MagicMock(), destination, ("demanda_id", "usuario_id"))

        result = applier.apply_rows(link, [{"id": 9, "demanda_id": 500, "usuario_id": 3, "ativo": False}])

        assert result == ApplyResult()
        destination.transaction.assert_not_called()
        assert len(ledger) == 0
