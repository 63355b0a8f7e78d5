from __future__ import annotations

from datetime import datetime, timezone

from busqueda.schemas.facts import FactAggregate, FactIn, PoiIn, PoiSummary, dedupe_text_list

_FACT_SCALAR_FIELDS = ("origin", "title", "description", "location", "category", "occurred_at")


def merge_fact(
    existing: FactAggregate | None,
    incoming: FactIn,
    *,
    now: datetime | None = None,
) -> FactAggregate:
    """Fold a fact payload into its aggregate, creating it on first sighting.

    Null incoming scalars mean "no opinion" and keep the stored value. Tags are
    replaced wholesale when the payload carries them. Every call counts as a
    mutation, so replaying an identical payload still bumps ``version``.
    """
    current = now or _utcnow()
    if existing is None:
        return FactAggregate(
            fact_id=incoming.fact_id,
            collection_name=incoming.collection_name,
            collections=[incoming.collection_name],
            origin=incoming.origin,
            title=incoming.title,
            description=incoming.description,
            location=incoming.location,
            category=incoming.category,
            occurred_at=incoming.occurred_at,
            tags=list(incoming.tags or []),
            version=1,
            censored=False,
            created_at=current,
            indexed_at=current,
            last_updated_at=current,
        )

    merged = existing.model_copy(deep=True)
    for field_name in _FACT_SCALAR_FIELDS:
        value = getattr(incoming, field_name)
        if value is not None:
            setattr(merged, field_name, value)

    if incoming.tags is not None:
        merged.tags = dedupe_text_list(incoming.tags)

    merged.collections = _append_unique(merged.collections or [merged.collection_name], incoming.collection_name)
    merged.version += 1
    merged.last_updated_at = current
    return merged


def merge_poi(
    existing: FactAggregate,
    incoming: PoiIn,
    *,
    now: datetime | None = None,
) -> FactAggregate:
    """Attach a point of interest to its fact, or refresh the one already attached.

    Returns ``existing`` itself when a re-sighting carries nothing new, so the
    caller can skip the write by comparing versions.
    """
    if incoming.fact_id != existing.fact_id:
        raise ValueError(f"poi {incoming.poi_id} belongs to fact {incoming.fact_id}, not {existing.fact_id}")

    current = now or _utcnow()
    incoming_ai_tags = list(incoming.ai_tags or [])
    known = existing.find_poi(incoming.poi_id)

    if known is None:
        merged = existing.model_copy(deep=True)
        merged.pois.append(
            PoiSummary(
                poi_id=incoming.poi_id,
                description=incoming.description,
                content=incoming.content,
                place=incoming.place,
                occurred_at=incoming.occurred_at,
                image_url=incoming.image_url,
                ocr_text=incoming.ocr_text,
                ai_tags=incoming_ai_tags,
                processing_state=incoming.processing_state or "pending",
                processed_at=incoming.processed_at,
            )
        )
        merged.poi_ids = [poi.poi_id for poi in merged.pois]
        merged.ai_tags = dedupe_text_list([*merged.ai_tags, *incoming_ai_tags])
        merged.version += 1
        merged.last_updated_at = current
        return merged

    updated = known.model_copy(deep=True)
    if incoming.ocr_text is not None:
        updated.ocr_text = incoming.ocr_text
    updated.ai_tags = dedupe_text_list([*updated.ai_tags, *incoming_ai_tags])
    if incoming.processing_state is not None:
        updated.processing_state = incoming.processing_state
    if incoming.processed_at is not None:
        updated.processed_at = incoming.processed_at

    fact_ai_tags = dedupe_text_list([*existing.ai_tags, *updated.ai_tags])
    if updated == known and fact_ai_tags == existing.ai_tags:
        return existing

    merged = existing.model_copy(deep=True)
    merged.pois = [updated if poi.poi_id == updated.poi_id else poi for poi in merged.pois]
    merged.ai_tags = fact_ai_tags
    merged.version += 1
    merged.last_updated_at = current
    return merged


def censor(
    existing: FactAggregate,
    *,
    request_id: str,
    now: datetime | None = None,
) -> FactAggregate:
    """Hide a fact from search. Irreversible; censoring twice keeps the first stamp."""
    if existing.censored:
        return existing

    current = now or _utcnow()
    merged = existing.model_copy(deep=True)
    merged.censored = True
    merged.censored_at = current
    merged.censored_by_request_id = request_id
    merged.version += 1
    merged.last_updated_at = current
    return merged


def _append_unique(values: list[str], value: str) -> list[str]:
    if value in values:
        return list(values)
    return [*values, value]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
