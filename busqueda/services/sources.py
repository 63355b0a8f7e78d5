from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from busqueda.core.config import Settings
from busqueda.schemas.facts import FactIn, PoiIn

logger = logging.getLogger(__name__)

# Upstream field name -> index field name. The index's own camelCase names are
# accepted as-is by the pydantic aliases.
_FACT_FIELD_ALIASES = {
    "id": "factId",
    "hechoId": "factId",
    "nombreColeccion": "collectionName",
    "coleccion": "collectionName",
    "origen": "origin",
    "titulo": "title",
    "descripcion": "description",
    "ubicacion": "location",
    "categoria": "category",
    "fecha": "occurredAt",
    "etiquetas": "tags",
}
_POI_FIELD_ALIASES = {
    "id": "poiId",
    "pdiId": "poiId",
    "hechoId": "factId",
    "descripcion": "description",
    "lugar": "place",
    "contenido": "content",
    "momento": "occurredAt",
    "imagenUrl": "imageUrl",
    "etiquetasIA": "aiTags",
    "etiquetas_ia": "aiTags",
    "estadoProcesamiento": "processingState",
    "fechaProcesamiento": "processedAt",
}


class UpstreamUnavailableError(Exception):
    """Raised when an upstream source of truth cannot be reached or answers with an error."""


class UpstreamRecordError(ValueError):
    """Raised when an upstream record cannot be normalized into an index payload."""


def normalize_fact_record(record: Any, *, collection_name: str | None = None) -> FactIn:
    if not isinstance(record, dict):
        raise UpstreamRecordError(f"fact record must be an object, got {type(record).__name__}")
    data = _rename_fields(record, _FACT_FIELD_ALIASES)
    if collection_name and not data.get("collectionName"):
        data["collectionName"] = collection_name
    if data.get("factId") is not None:
        data["factId"] = str(data["factId"])
    try:
        return FactIn.model_validate(data)
    except ValidationError as exc:
        raise UpstreamRecordError(f"invalid fact record id={data.get('factId')!r}: {exc}") from exc


def normalize_poi_record(record: Any) -> PoiIn:
    if not isinstance(record, dict):
        raise UpstreamRecordError(f"poi record must be an object, got {type(record).__name__}")
    data = _rename_fields(record, _POI_FIELD_ALIASES)
    for key in ("poiId", "factId"):
        if data.get(key) is not None:
            data[key] = str(data[key])
    try:
        return PoiIn.model_validate(data)
    except ValidationError as exc:
        raise UpstreamRecordError(f"invalid poi record id={data.get('poiId')!r}: {exc}") from exc


def _rename_fields(record: dict[str, Any], aliases: dict[str, str]) -> dict[str, Any]:
    renamed: dict[str, Any] = {}
    for key, value in record.items():
        target = aliases.get(key, key)
        # Explicit index names win over upstream aliases.
        if target in renamed and key != target:
            continue
        renamed[target] = value
    return renamed


def _collection_name(item: Any) -> str | None:
    if isinstance(item, str):
        return item.strip() or None
    if isinstance(item, dict):
        for key in ("nombre", "name", "collectionName"):
            value = item.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


class UpstreamSourceClient:
    """Pull interface over the fact and point-of-interest systems of record."""

    def __init__(
        self,
        fact_source_url: str,
        poi_source_url: str,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.fact_source_url = fact_source_url.rstrip("/")
        self.poi_source_url = poi_source_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> UpstreamSourceClient:
        return cls(
            fact_source_url=settings.fact_source_url,
            poi_source_url=settings.poi_source_url,
            timeout_seconds=settings.upstream_timeout_seconds,
        )

    async def list_collections(self) -> list[str]:
        payload = await self._get_list(f"{self.fact_source_url}/api/colecciones")
        names: list[str] = []
        for item in payload:
            name = _collection_name(item)
            if name is None:
                logger.warning("skipping unnamed upstream collection item=%r", item)
                continue
            if name not in names:
                names.append(name)
        return names

    async def list_facts_in_collection(self, name: str) -> list[dict[str, Any]]:
        return await self._get_list(f"{self.fact_source_url}/api/colecciones/{quote(name, safe='')}/hechos")

    async def list_all_pois(self) -> list[dict[str, Any]]:
        return await self._get_list(f"{self.poi_source_url}/api/PdIs")

    async def _get_list(self, url: str) -> list[Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.get(url, headers={"Accept": "application/json"})
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as exc:
            raise UpstreamUnavailableError(f"upstream request failed url={url}: {exc}") from exc
        except ValueError as exc:
            raise UpstreamUnavailableError(f"upstream returned invalid json url={url}") from exc

        if payload is None:
            return []
        if not isinstance(payload, list):
            raise UpstreamUnavailableError(f"upstream returned {type(payload).__name__}, expected a list url={url}")
        return payload
