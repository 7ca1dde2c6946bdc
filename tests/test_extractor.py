"""
Unit tests for the entity/relation extraction pipeline.

Tests field helpers, response parsing, cross-chunk deduplication and the
end-to-end pipeline against the in-memory graph store.
"""

# Standard library
from unittest.mock import patch

# Third-party
import pytest

# Local application
from knowledge_graph.extractor import (
    MAX_NAME_LENGTH,
    MIN_CHUNK_LENGTH,
    EntityExtractionPipeline,
    deduplicate_entities,
    delete_entities_for_document,
    get_entities_for_document,
    is_valid_entity_name,
    merge_descriptions,
    normalize_entity_name,
    parse_extraction_response,
    process_entities_for_document,
    reprocess_document_entities,
    sanitize_extraction,
    truncate,
)
from knowledge_graph.memory_store import InMemoryGraphStore
from knowledge_graph.schemas import (
    ChunkInput,
    ExtractedEntity,
    ExtractionResult,
    RecordKind,
)
from knowledge_graph.store import StoreError
from graph_fixtures import USER_A, USER_B, ScriptedLLM, extraction_json, make_chunk, seed

JANE_TEXT = "Jane Doe founded Acme Corp in 2010."
JANE_RESPONSE = extraction_json(
    entities=[
        {"name": "Jane Doe", "type": "PERSON", "description": "Founder of Acme Corp"},
        {"name": "Acme Corp", "type": "ORGANIZATION", "description": "Robotics company founded in 2010"},
    ],
    relations=[
        {"source": "Jane Doe", "target": "Acme Corp", "type": "FOUNDED", "description": "Jane Doe founded Acme Corp in 2010"},
    ],
)


def _llm_patch(llm):
    return patch("knowledge_graph.extractor.get_llm", return_value=llm)


# ============================================================================
# Field helpers
# ============================================================================

class TestNormalization:
    """Tests for normalize_entity_name."""

    def test_lowercases_trims_and_collapses_whitespace(self):
        assert normalize_entity_name("  Acme \t  Corp\n") == "acme corp"

    @pytest.mark.parametrize("name", ["Acme Corp", "  JANE   doe ", "Hồ Chí Minh", "a\tb\nc"])
    def test_idempotent(self, name):
        once = normalize_entity_name(name)
        assert normalize_entity_name(once) == once


class TestTruncate:
    """Tests for truncate."""

    def test_exact_limit_is_kept(self):
        name = "x" * MAX_NAME_LENGTH
        assert truncate(name, MAX_NAME_LENGTH) == name

    def test_one_over_limit_is_cut_with_ellipsis(self):
        result = truncate("x" * (MAX_NAME_LENGTH + 1), MAX_NAME_LENGTH)
        assert len(result) == MAX_NAME_LENGTH
        assert result.endswith("...")
        assert result[:-3] == "x" * (MAX_NAME_LENGTH - 3)

    def test_trims_before_measuring(self):
        assert truncate("  abc  ", 3) == "abc"

    def test_empty_values(self):
        assert truncate(None, 10) == ""
        assert truncate("", 10) == ""


class TestValidation:
    """Tests for is_valid_entity_name."""

    @pytest.mark.parametrize("name", ["AI", "Acme Corp", "R2-D2", "Việt Nam"])
    def test_valid_names(self, name):
        assert is_valid_entity_name(name) is True

    @pytest.mark.parametrize("name", ["", "A", " a ", "2010", "--", "12 34", "!!!", "__", "_1_", None, 42])
    def test_invalid_names(self, name):
        assert is_valid_entity_name(name) is False


def test_merge_descriptions_skips_blanks_and_duplicates():
    assert merge_descriptions(["One.", "", "Two.", "One."]) == "One. Two."


# ============================================================================
# Response parsing
# ============================================================================

class TestParseExtractionResponse:
    """Tests for parse_extraction_response."""

    def test_plain_json(self):
        result = parse_extraction_response(JANE_RESPONSE)
        assert len(result.entities) == 2
        assert len(result.relations) == 1

    def test_json_wrapped_in_prose_and_fences(self):
        raw = "Sure! Here it is:\n```json\n" + JANE_RESPONSE + "\n```\nLet me know {if} you need more."
        result = parse_extraction_response(raw)
        assert [e["name"] for e in result.entities] == ["Jane Doe", "Acme Corp"]

    def test_braces_inside_strings(self):
        raw = '{"entities": [{"name": "Set {A}", "type": "CONCEPT", "description": "uses \\"}\\" chars"}], "relations": []}'
        result = parse_extraction_response(raw)
        assert result.entities[0]["name"] == "Set {A}"

    @pytest.mark.parametrize("raw", ["", "no json here", "{not valid json}", '{"entities": [', "[1, 2]"])
    def test_malformed_gives_empty(self, raw):
        result = parse_extraction_response(raw)
        assert result.entities == []
        assert result.relations == []

    def test_non_list_fields_become_empty(self):
        result = parse_extraction_response('{"entities": "oops", "relations": {"a": 1}}')
        assert result.entities == []
        assert result.relations == []

    def test_non_dict_items_are_skipped(self):
        result = parse_extraction_response('{"entities": ["Jane", {"name": "Acme Corp"}], "relations": [null]}')
        assert result.entities == [{"name": "Acme Corp"}]
        assert result.relations == []


class TestSanitizeExtraction:
    """Tests for sanitize_extraction."""

    def test_types_uppercased_and_defaulted(self):
        extraction = ExtractionResult(
            entities=[{"name": "Acme Corp", "type": "organization"}, {"name": "Widget"}],
            relations=[{"source": "Acme Corp", "target": "Widget"}],
        )
        entities, relations = sanitize_extraction(extraction, "chunk-1")

        assert [e.type for e in entities] == ["ORGANIZATION", "UNKNOWN"]
        assert relations[0].type == "RELATED_TO"
        assert all(e.source_chunk_id == "chunk-1" for e in entities)

    def test_invalid_names_are_dropped(self):
        extraction = ExtractionResult(
            entities=[{"name": "X"}, {"name": "2010", "type": "DATE"}, {"name": "Acme Corp"}],
            relations=[{"source": "Acme Corp", "target": "?"}, {"target": "Acme Corp"}],
        )
        entities, relations = sanitize_extraction(extraction, "chunk-1")

        assert [e.name for e in entities] == ["Acme Corp"]
        assert relations == []

    def test_long_fields_truncated(self):
        extraction = ExtractionResult(
            entities=[{"name": "N" * 600, "type": "T" * 150, "description": "d" * 2500}],
        )
        entities, _ = sanitize_extraction(extraction, "chunk-1")

        assert len(entities[0].name) == 500
        assert len(entities[0].type) == 100
        assert len(entities[0].description) == 2000


class TestDeduplicate:
    """Tests for deduplicate_entities."""

    def test_merges_on_normalized_name_first_write_wins(self):
        candidates = [
            ExtractedEntity(name="Acme Corp", type="ORGANIZATION", description="Robot maker", source_chunk_id="c1"),
            ExtractedEntity(name="acme  corp", type="COMPANY", description="Founded 2010", source_chunk_id="c2"),
            ExtractedEntity(name="ACME CORP", type="ORGANIZATION", description="Robot maker", source_chunk_id="c2"),
        ]
        merged = deduplicate_entities(candidates)

        assert list(merged) == ["acme corp"]
        entity = merged["acme corp"]
        assert entity.name == "Acme Corp"
        assert entity.type == "ORGANIZATION"
        assert entity.descriptions == ["Robot maker", "Founded 2010"]
        assert entity.source_chunk_ids == ["c1", "c2"]


# ============================================================================
# Pipeline
# ============================================================================

class TestProcessEntitiesForDocument:
    """End-to-end extraction against the in-memory store."""

    @pytest.mark.asyncio
    async def test_jane_doe_scenario(self, memory_store):
        llm = ScriptedLLM({"Jane Doe founded": JANE_RESPONSE})

        with _llm_patch(llm):
            result = await process_entities_for_document(
                "doc-1", [ChunkInput(id="c1", content=JANE_TEXT)], user_id=USER_A, store=memory_store
            )

        assert result.entities_created == 2
        assert result.relations_created == 1
        assert len(llm.prompts) == 1
        assert JANE_TEXT in llm.prompts[0]

        graph = memory_store._tenants[USER_A].graph
        names = {data["record"].entity_name: data["record"] for _, data in graph.nodes(data=True)}
        assert names["Jane Doe"].entity_type == "PERSON"
        assert names["Acme Corp"].entity_type == "ORGANIZATION"
        assert names["Acme Corp"].source_chunk_ids == ["c1"]

        relation = next(data["record"] for _, _, data in graph.edges(data=True))
        assert relation.relation_type == "FOUNDED"
        assert relation.source_entity_id == names["Jane Doe"].id
        assert relation.target_entity_id == names["Acme Corp"].id
        assert relation.source_chunk_ids == ["c1"]

    @pytest.mark.asyncio
    async def test_records_carry_tenant_workspace_and_vectors(self, memory_store):
        llm = ScriptedLLM({"Jane Doe founded": JANE_RESPONSE})

        with _llm_patch(llm):
            await process_entities_for_document(
                "doc-1", [ChunkInput(id="c1", content=JANE_TEXT)], "research", USER_A, store=memory_store
            )

        graph = memory_store._tenants[USER_A].graph
        for _, data in graph.nodes(data=True):
            assert data["record"].user_id == USER_A
            assert data["record"].workspace == "research"
            assert data["record"].content_vector is not None

    @pytest.mark.asyncio
    async def test_empty_chunk_list(self, memory_store):
        llm = ScriptedLLM({})
        with _llm_patch(llm):
            result = await process_entities_for_document("doc-1", [], user_id=USER_A, store=memory_store)

        assert result.entities_created == 0
        assert result.relations_created == 0
        assert llm.prompts == []

    @pytest.mark.asyncio
    async def test_short_chunks_are_not_sent_to_model(self, memory_store):
        llm = ScriptedLLM({"Jane Doe founded": JANE_RESPONSE})
        chunks = [
            ChunkInput(id="short", content="x" * (MIN_CHUNK_LENGTH - 1)),
            ChunkInput(id="c1", content=JANE_TEXT),
        ]

        with _llm_patch(llm):
            result = await process_entities_for_document("doc-1", chunks, user_id=USER_A, store=memory_store)

        assert len(llm.prompts) == 1
        assert result.entities_created == 2

    @pytest.mark.asyncio
    async def test_entities_merge_across_chunks(self, memory_store):
        second_text = "Acme Corp opened a research lab in Berlin. ACME CORP hires engineers there."
        llm = ScriptedLLM({
            "Jane Doe founded": JANE_RESPONSE,
            "research lab in Berlin": extraction_json(
                entities=[
                    {"name": "acme  corp", "type": "ORGANIZATION", "description": "Has a lab in Berlin"},
                    {"name": "Berlin", "type": "LOCATION", "description": "City in Germany"},
                ],
                relations=[{"source": "ACME CORP", "target": "berlin", "type": "LOCATED_IN", "description": ""}],
            ),
        })
        chunks = [ChunkInput(id="c1", content=JANE_TEXT), ChunkInput(id="c2", content=second_text)]

        with _llm_patch(llm):
            result = await process_entities_for_document("doc-1", chunks, user_id=USER_A, store=memory_store)

        assert result.entities_created == 3
        assert result.relations_created == 2

        graph = memory_store._tenants[USER_A].graph
        acme = next(d["record"] for _, d in graph.nodes(data=True) if d["record"].entity_name == "Acme Corp")
        assert acme.source_chunk_ids == ["c1", "c2"]
        assert acme.description == "Robotics company founded in 2010 Has a lab in Berlin"

    @pytest.mark.asyncio
    async def test_identical_rerun_gives_same_entity_count(self):
        llm = ScriptedLLM({"Jane Doe founded": JANE_RESPONSE})
        chunks = [ChunkInput(id="c1", content=JANE_TEXT), ChunkInput(id="c2", content=JANE_TEXT + " Again.")]

        counts = []
        for _ in range(2):
            store = InMemoryGraphStore()
            with _llm_patch(llm):
                result = await process_entities_for_document("doc-1", chunks, user_id=USER_A, store=store)
            counts.append((result.entities_created, result.relations_created))

        assert counts[0] == counts[1] == (2, 1)

    @pytest.mark.asyncio
    async def test_unresolvable_relations_are_dropped(self, memory_store):
        response = extraction_json(
            entities=[{"name": "Jane Doe", "type": "PERSON"}, {"name": "Acme Corp", "type": "ORGANIZATION"}],
            relations=[
                {"source": "Jane Doe", "target": "Acme Corp", "type": "FOUNDED"},
                {"source": "Jane Doe", "target": "Globex", "type": "WORKS_FOR"},
                {"source": "jane doe", "target": "ACME CORP", "type": "FOUNDED"},
            ],
        )
        llm = ScriptedLLM({"Jane Doe founded": response})

        with _llm_patch(llm):
            result = await process_entities_for_document(
                "doc-1", [ChunkInput(id="c1", content=JANE_TEXT)], user_id=USER_A, store=memory_store
            )

        assert result.relations_created == 1
        graph = memory_store._tenants[USER_A].graph
        for source, target, _ in graph.edges(data=True):
            assert graph.has_node(source)
            assert graph.has_node(target)

    @pytest.mark.asyncio
    async def test_failing_chunk_does_not_stop_others(self, memory_store):
        llm = ScriptedLLM({
            "Jane Doe founded": JANE_RESPONSE,
            "this chunk breaks": RuntimeError("model timeout"),
        })
        chunks = [
            ChunkInput(id="bad", content="this chunk breaks the model because of reasons and more."),
            ChunkInput(id="c1", content=JANE_TEXT),
        ]

        with _llm_patch(llm):
            result = await process_entities_for_document("doc-1", chunks, user_id=USER_A, store=memory_store)

        assert result.entities_created == 2

    @pytest.mark.asyncio
    async def test_malformed_model_output_yields_nothing(self, memory_store):
        llm = ScriptedLLM({"Jane Doe founded": "I could not find anything {oops"})

        with _llm_patch(llm):
            result = await process_entities_for_document(
                "doc-1", [ChunkInput(id="c1", content=JANE_TEXT)], user_id=USER_A, store=memory_store
            )

        assert result.entities_created == 0

    @pytest.mark.asyncio
    async def test_owner_is_resolved_from_document(self, memory_store):
        memory_store.add_document("doc-1", USER_B, "report.pdf")
        llm = ScriptedLLM({"Jane Doe founded": JANE_RESPONSE})

        with _llm_patch(llm):
            result = await process_entities_for_document(
                "doc-1", [ChunkInput(id="c1", content=JANE_TEXT)], store=memory_store
            )

        assert result.entities_created == 2
        assert USER_B in memory_store._tenants
        assert USER_A not in memory_store._tenants

    @pytest.mark.asyncio
    async def test_unknown_owner_aborts(self, memory_store):
        llm = ScriptedLLM({"Jane Doe founded": JANE_RESPONSE})

        with _llm_patch(llm):
            result = await process_entities_for_document(
                "missing-doc", [ChunkInput(id="c1", content=JANE_TEXT)], store=memory_store
            )

        assert result.entities_created == 0
        assert llm.prompts == []

    @pytest.mark.asyncio
    async def test_accepts_stored_chunk_records_and_dicts(self, memory_store):
        llm = ScriptedLLM({"Jane Doe founded": JANE_RESPONSE})
        chunks = [make_chunk("c1", JANE_TEXT), {"id": "c2", "content": "too short"}]

        with _llm_patch(llm):
            result = await process_entities_for_document("doc-1", chunks, user_id=USER_A, store=memory_store)

        assert result.entities_created == 2


class _BulkRelationFailStore(InMemoryGraphStore):
    """Rejects multi-row relation batches so the per-row path runs."""

    def __init__(self, reject_relation: str = ""):
        super().__init__()
        self.reject_relation = reject_relation

    async def bulk_insert(self, kind, records):
        if kind == RecordKind.RELATION:
            if len(records) > 1:
                raise StoreError("batch rejected")
            if records[0].relation_type == self.reject_relation:
                raise StoreError("row rejected")
        return await super().bulk_insert(kind, records)


class _EntityFailStore(InMemoryGraphStore):
    async def bulk_insert(self, kind, records):
        if kind == RecordKind.ENTITY:
            raise StoreError("entities table unavailable")
        return await super().bulk_insert(kind, records)


TWO_RELATIONS = extraction_json(
    entities=[
        {"name": "Jane Doe", "type": "PERSON"},
        {"name": "Acme Corp", "type": "ORGANIZATION"},
        {"name": "Springfield", "type": "LOCATION"},
    ],
    relations=[
        {"source": "Jane Doe", "target": "Acme Corp", "type": "FOUNDED"},
        {"source": "Acme Corp", "target": "Springfield", "type": "HEADQUARTERS_IN"},
    ],
)


class TestPersistenceFailures:
    """Store write failures."""

    @pytest.mark.asyncio
    async def test_relation_batch_failure_falls_back_to_rows(self):
        store = _BulkRelationFailStore()
        llm = ScriptedLLM({"Jane Doe founded": TWO_RELATIONS})

        with _llm_patch(llm):
            result = await process_entities_for_document(
                "doc-1", [ChunkInput(id="c1", content=JANE_TEXT)], user_id=USER_A, store=store
            )

        assert result.entities_created == 3
        assert result.relations_created == 2

    @pytest.mark.asyncio
    async def test_per_row_fallback_counts_only_successes(self):
        store = _BulkRelationFailStore(reject_relation="HEADQUARTERS_IN")
        llm = ScriptedLLM({"Jane Doe founded": TWO_RELATIONS})

        with _llm_patch(llm):
            result = await process_entities_for_document(
                "doc-1", [ChunkInput(id="c1", content=JANE_TEXT)], user_id=USER_A, store=store
            )

        assert result.relations_created == 1

    @pytest.mark.asyncio
    async def test_entity_insert_failure_returns_zero_counts(self):
        store = _EntityFailStore()
        llm = ScriptedLLM({"Jane Doe founded": JANE_RESPONSE})

        with _llm_patch(llm):
            result = await process_entities_for_document(
                "doc-1", [ChunkInput(id="c1", content=JANE_TEXT)], user_id=USER_A, store=store
            )

        assert result.entities_created == 0
        assert result.relations_created == 0

    @pytest.mark.asyncio
    async def test_concurrency_setting_from_env(self, monkeypatch, memory_store):
        monkeypatch.setenv("EXTRACTION_MAX_CONCURRENCY", "2")
        assert EntityExtractionPipeline(store=memory_store).max_concurrency == 2


# ============================================================================
# Document-level maintenance
# ============================================================================

async def _seed_two_documents(store):
    """doc-1 mentions Jane Doe and Acme Corp; doc-2 also mentions Acme Corp."""
    store.add_document("doc-1", USER_A, "founders.pdf")
    store.add_document("doc-2", USER_A, "press.pdf")
    await seed(store, chunks=[
        make_chunk("c1", JANE_TEXT, document_id="doc-1"),
        make_chunk("c2", "Acme Corp shipped its ten thousandth warehouse robot this spring.", document_id="doc-2"),
    ])
    llm = ScriptedLLM({
        "Jane Doe founded": JANE_RESPONSE,
        "ten thousandth": extraction_json(entities=[{"name": "Acme Corp", "type": "ORGANIZATION"}]),
    })
    # One run over both documents so Acme Corp ends up shared
    with _llm_patch(llm):
        chunks = await store.fetch_document_chunks("doc-1", USER_A) + await store.fetch_document_chunks("doc-2", USER_A)
        await process_entities_for_document("doc-1", chunks, user_id=USER_A, store=store)
    return llm


class TestDocumentMaintenance:
    """Listing, deleting and reprocessing a document's entities."""

    @pytest.mark.asyncio
    async def test_get_entities_for_document(self, memory_store):
        await _seed_two_documents(memory_store)

        doc1 = await get_entities_for_document("doc-1", USER_A, store=memory_store)
        doc2 = await get_entities_for_document("doc-2", USER_A, store=memory_store)

        assert {e.entity_name for e in doc1} == {"Jane Doe", "Acme Corp"}
        assert {e.entity_name for e in doc2} == {"Acme Corp"}

    @pytest.mark.asyncio
    async def test_delete_removes_exclusive_entities_and_shrinks_shared(self, memory_store):
        await _seed_two_documents(memory_store)

        deleted, updated = await delete_entities_for_document("doc-1", USER_A, store=memory_store)

        assert (deleted, updated) == (1, 1)
        graph = memory_store._tenants[USER_A].graph
        remaining = [d["record"] for _, d in graph.nodes(data=True)]
        assert [e.entity_name for e in remaining] == ["Acme Corp"]
        assert remaining[0].source_chunk_ids == ["c2"]
        # FOUNDED relation went with Jane Doe
        assert graph.number_of_edges() == 0

    @pytest.mark.asyncio
    async def test_delete_unknown_document_is_noop(self, memory_store):
        assert await delete_entities_for_document("nope", USER_A, store=memory_store) == (0, 0)

    @pytest.mark.asyncio
    async def test_reprocess_does_not_duplicate_entities(self, memory_store):
        memory_store.add_document("doc-1", USER_A, "founders.pdf")
        await seed(memory_store, chunks=[make_chunk("c1", JANE_TEXT, document_id="doc-1")])
        llm = ScriptedLLM({"Jane Doe founded": JANE_RESPONSE})

        with _llm_patch(llm):
            first = await reprocess_document_entities("doc-1", USER_A, store=memory_store)
            second = await reprocess_document_entities("doc-1", USER_A, store=memory_store)

        assert first.entities_created == second.entities_created == 2
        assert memory_store._tenants[USER_A].graph.number_of_nodes() == 2
