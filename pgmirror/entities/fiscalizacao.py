"""
Entity definitions for the fiscalize (source) -> agefis (destination) deployment.

    public.demanda       -> fiscalizacao.demandas          (depends on pessoa)
    public.pessoa        -> fiscalizacao.pessoas           (dependency target)
    public.fiscaldemanda -> fiscalizacao.demandas_fiscais  (link: demanda x fiscal)
    fiscalizacao.fiscais                                   (destination only)
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pgmirror.db.client import DatabaseClient
from pgmirror.entities.base import EntityDefinition, LinkEntityHandler, PostgresEntityHandler
from pgmirror.replication.models import DependencyReference, normalize_id
from pgmirror.replication.registry import EntityRegistry

logger = logging.getLogger(__name__)

PESSOA_COLUMNS = (
    "id", "ativo", "data_criacao", "bairro", "complemento", "contato", "cpfcnpj",
    "latitude", "logradouro", "longitude", "nomefantasia", "numero", "razaosocial",
    "telefone", "ramoatividade_id", "regional_id", "usuarioalteracao", "email",
    "cep", "codigo", "senha", "pushtoken", "regionalid", "nacionalidade",
    "naturalidade", "rg", "selo_agefis", "abordargem_fiscal", "atuacao_agefis",
    "data_aprovacao_selo", "data_solicitacao_selo", "licencas_agefis",
    "passaporte_sanitario", "regras_agefis", "taxas_agefis", "estado_civil",
    "data_nascimento", "fiscalize_id",
)

DEMANDA_COLUMNS = (
    "id", "situacao_id", "motivo_id", "fiscal_id", "fiscalizado_id", "operacao_id",
    "fiscalizado_demanda", "fiscalizado_cpf_cnpj", "fiscalizado_nome",
    "fiscalizado_logradouro", "fiscalizado_numero", "fiscalizado_complemento",
    "fiscalizado_bairro", "fiscalizado_municipio", "fiscalizado_uf",
    "fiscalizado_lat", "fiscalizado_lng", "classificacao",
    "data_criacao", "data_realizacao", "ativo", "tipo_rota", "grupo_ocorrencia_id",
)

DEMANDA_SOURCE_SELECT = (
    "SELECT d.*, "
    "p.nomefantasia AS pessoa_nomefantasia, "
    "p.razaosocial AS pessoa_razaosocial, "
    "p.cpfcnpj AS pessoa_cpfcnpj "
    "FROM public.demanda d "
    "LEFT JOIN public.pessoa p ON p.id = d.fiscalizado_id"
)

SITUACAO_DIRETA = 12
SITUACOES_ORDINARIAS = (2, 7)
DEFAULT_GRUPO_OCORRENCIA = 1


def _or_none(value: Any) -> Any:
    return value if value not in (None, "") else None


def classify_demanda(situacao_id: Optional[int], operacao_id: Optional[int]) -> str:
    """Derive the destination classification of a demand."""
    if operacao_id:
        return "operacao"
    if situacao_id == SITUACAO_DIRETA:
        return "direta"
    if situacao_id in SITUACOES_ORDINARIAS:
        return "ordinaria"
    return "N/A"


def map_demanda(row: Dict[str, Any]) -> Dict[str, Any]:
    """Map a public.demanda row (joined with its person) to fiscalizacao.demandas."""
    entity_id = normalize_id(row.get("id"))
    situacao_id = normalize_id(row.get("situacao"))
    operacao_id = normalize_id(row.get("operacao_id"))

    return {
        "id": entity_id,
        "situacao_id": situacao_id,
        # motivo_id and fiscal_id are destination-local
        "motivo_id": None,
        "fiscal_id": None,
        "fiscalizado_id": normalize_id(row.get("fiscalizado_id")),
        "operacao_id": operacao_id,
        "fiscalizado_demanda": row.get("descricao") or row.get("protocolo") or f"DEMANDA-{entity_id}",
        "fiscalizado_cpf_cnpj": row.get("pessoa_cpfcnpj") or "",
        "fiscalizado_nome": row.get("pessoa_nomefantasia") or row.get("pessoa_razaosocial") or "",
        "fiscalizado_logradouro": row.get("logradouro") or "",
        "fiscalizado_numero": row.get("numero") or "",
        "fiscalizado_complemento": row.get("complemento") or "",
        "fiscalizado_bairro": row.get("bairro") or "",
        "fiscalizado_municipio": _or_none(row.get("municipio")),
        "fiscalizado_uf": _or_none(row.get("uf")),
        "fiscalizado_lat": row.get("latitude") or "",
        "fiscalizado_lng": row.get("longitude") or "",
        "classificacao": classify_demanda(situacao_id, operacao_id),
        "data_criacao": row.get("data_criacao"),
        "data_realizacao": row.get("datafiscalizacao") or row.get("dataexecucao") or row.get("data_criacao"),
        "ativo": row.get("ativo"),
        "tipo_rota": _or_none(row.get("tipo_rota")),
        "grupo_ocorrencia_id": normalize_id(row.get("grupodemanda_id")) or DEFAULT_GRUPO_OCORRENCIA,
    }


def map_pessoa(row: Dict[str, Any]) -> Dict[str, Any]:
    """Map a public.pessoa row to fiscalizacao.pessoas."""
    record = {column: _or_none(row.get(column)) for column in PESSOA_COLUMNS}
    record["id"] = normalize_id(row.get("id"))
    record["ativo"] = True if row.get("ativo") is None else row.get("ativo")
    record["data_criacao"] = row.get("data_criacao") or datetime.now(timezone.utc)
    record["selo_agefis"] = row.get("selo_agefis")
    record["fiscalize_id"] = record["id"]
    return record


def map_fiscal_demanda(row: Dict[str, Any]) -> Dict[str, Any]:
    """Map a public.fiscaldemanda row to the fiscalizacao.demandas_fiscais pair."""
    return {
        "source_id": normalize_id(row.get("id")),
        "demanda_id": normalize_id(row.get("demanda_id")),
        "fiscal_id": normalize_id(row.get("usuario_id")),
    }


PESSOA = EntityDefinition(
    entity_type="pessoa",
    source_table="public.pessoa",
    destination_table="fiscalizacao.pessoas",
    columns=PESSOA_COLUMNS,
    active_column="ativo",
    mapper=map_pessoa,
    reconcile=False,
)

FISCAL = EntityDefinition(
    entity_type="fiscal",
    destination_table="fiscalizacao.fiscais",
    reconcile=False,
)

DEMANDA = EntityDefinition(
    entity_type="demanda",
    source_table="public.demanda",
    destination_table="fiscalizacao.demandas",
    columns=DEMANDA_COLUMNS,
    preserved_fields=("motivo_id", "fiscal_id"),
    active_column="ativo",
    dependencies=(DependencyReference("pessoa", "fiscalizado_id", required=True),),
    mapper=map_demanda,
    source_select=DEMANDA_SOURCE_SELECT,
    source_key_expr="d.id",
    window_size=5000,
)

FISCAL_DEMANDA = EntityDefinition(
    entity_type="fiscaldemanda",
    source_table="public.fiscaldemanda",
    destination_table="fiscalizacao.demandas_fiscais",
    columns=("demanda_id", "fiscal_id"),
    key=("demanda_id", "fiscal_id"),
    dependencies=(
        DependencyReference("demanda", "demanda_id", required=True),
        DependencyReference("fiscal", "fiscal_id", required=True),
    ),
    mapper=map_fiscal_demanda,
    window_filter="ativo = true",
    source_active_column="ativo",
    window_size=10000,
)


def build_default_registry(source: DatabaseClient, destination: DatabaseClient) -> EntityRegistry:
    """Registry for the fiscalize -> agefis deployment."""
    registry = EntityRegistry()
    registry.register(PostgresEntityHandler(PESSOA, source, destination))
    registry.register(PostgresEntityHandler(FISCAL, None, destination))
    registry.register(PostgresEntityHandler(DEMANDA, source, destination))
    registry.register(LinkEntityHandler(
        FISCAL_DEMANDA, source, destination,
        pair_source_columns=("demanda_id", "usuario_id")
    ))
    logger.info(f"Built entity registry with {len(registry)} entity types")
    return registry
