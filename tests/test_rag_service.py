from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest

from wabot.services import rag_service
from wabot.services.product_detector import CatalogProduct
from wabot.services.rag_service import (
    CANDIDATE_COUNT,
    EMERGENCY_THRESHOLD,
    LOW_THRESHOLD,
    TOP_K_AFTER_RERANK,
    RAGContext,
    deduplicate_candidates,
    detect_products_for_query,
    extract_search_context,
    format_rag_context,
    get_relevant_context,
    search_candidates,
    should_skip_retrieval,
)

ORG_ID = uuid4()
EMBEDDING = [0.1] * 1024
CATALOG = [
    CatalogProduct(id="p-visa", name="Visto Americano", slug="visto-americano"),
    CatalogProduct(id="p-pass", name="Passaporte", slug="passaporte"),
]


def chunk(content, scope="global", category="faq", title=None):
    return {"content": content, "scope": scope, "category": category, "title": title, "similarity": 0.8}


class TestSkipGate:
    @pytest.mark.parametrize("text", ["obrigado!", "Obrigada", "kkkk", "ok", "bom dia", "valeu pessoal", "👍"])
    def test_fillers_are_skipped(self, text):
        assert should_skip_retrieval(text, product_keywords=[]) is True

    @pytest.mark.parametrize(
        "text",
        ["qual o prazo do passaporte?", "quanto custa o visto", "bom dia, qual o preço?", "oi quanto custa o visto"],
    )
    def test_questions_are_not_skipped(self, text):
        assert should_skip_retrieval(text, product_keywords=[]) is False

    def test_short_filler_with_answerable_keyword_is_kept(self):
        assert should_skip_retrieval("obrigado pelo preço", product_keywords=[]) is False

    def test_short_filler_with_product_keyword_is_kept(self):
        assert should_skip_retrieval("ok passaporte", product_keywords=["passaporte"]) is False

    def test_catalog_name_counts_as_product_keyword(self):
        assert should_skip_retrieval("oi cidadania italiana", product_keywords=["Cidadania Italiana"]) is False

    @patch("wabot.services.rag_service.search_knowledge_all")
    @patch("wabot.services.rag_service.generate_embedding")
    @patch("wabot.services.rag_service.get_organization_products")
    def test_skipped_message_makes_no_external_calls(self, mock_products, mock_embed, mock_search):
        mock_products.return_value = CATALOG

        result = get_relevant_context(MagicMock(), "obrigado!", ORG_ID, history=[])

        assert result == []
        mock_embed.assert_not_called()
        mock_search.assert_not_called()

    @patch("wabot.services.rag_service.search_knowledge_all")
    @patch("wabot.services.rag_service.generate_embedding")
    @patch("wabot.services.rag_service.get_organization_products")
    def test_greeting_naming_catalog_product_is_retrieved(self, mock_products, mock_embed, mock_search):
        mock_products.return_value = [CatalogProduct(id="p-cit", name="Cidadania Italiana", slug="cidadania-italiana")]
        mock_embed.return_value = EMBEDDING
        mock_search.return_value = []

        with patch("wabot.services.rag_service.search_knowledge_product", return_value=[]), patch(
            "wabot.services.rag_service.search_knowledge_global", return_value=[]
        ):
            get_relevant_context(MagicMock(), "oi cidadania italiana", ORG_ID, history=[])

        mock_embed.assert_called_once()
        mock_products.assert_called_once()


class TestSearchContext:
    def test_short_message_uses_inbound_history_only(self):
        history = [
            {"direction": "inbound", "content": "quero tirar o visto"},
            {"direction": "outbound", "content": "Claro! Qual tipo de visto?"},
            {"direction": "inbound", "content": "de turismo"},
        ]
        context = extract_search_context("e o prazo?", history)

        assert context == "quero tirar o visto de turismo e o prazo?"
        assert "Claro" not in context

    def test_long_message_is_used_alone(self):
        message = "Gostaria de saber quais documentos preciso levar para a entrevista do visto"
        history = [{"direction": "inbound", "content": "oi"}]
        assert extract_search_context(message, history) == message

    def test_history_window_is_bounded(self):
        history = [{"direction": "inbound", "content": f"m{i}"} for i in range(20)]
        context = extract_search_context("e?", history, max_messages=3)
        assert context == "m17 m18 m19 e?"


class TestProductScoping:
    def test_current_message_wins(self):
        history = [{"direction": "inbound", "content": "e o passaporte?"}]
        assert detect_products_for_query("quero o visto americano", history, CATALOG, aliases={}) == {"p-visa"}

    def test_falls_back_to_recent_history(self):
        history = [
            {"direction": "inbound", "content": "quanto custa o passaporte?"},
            {"direction": "outbound", "content": "Custa R$ 300."},
        ]
        assert detect_products_for_query("e o prazo?", history, CATALOG, aliases={}) == {"p-pass"}

    def test_history_lookback_is_limited(self):
        history = [{"direction": "inbound", "content": "passaporte"}] + [
            {"direction": "inbound", "content": "ok"} for _ in range(5)
        ]
        assert detect_products_for_query("e o prazo?", history, CATALOG, aliases={}) == set()

    def test_disambiguation_does_not_inherit_history(self):
        history = [{"direction": "inbound", "content": "visto americano e passaporte"}]
        assert detect_products_for_query("only that one", history, CATALOG, aliases={}) == set()


class TestDeduplicate:
    def test_keeps_first_of_each_prefix(self):
        prefix = "x" * 100
        candidates = [chunk(prefix + "A", scope="product"), chunk(prefix + "B"), chunk("other")]

        result = deduplicate_candidates(candidates)

        assert [c["content"] for c in result] == [prefix + "A", "other"]


class TestSearchCandidates:
    @patch("wabot.services.rag_service.search_knowledge_all")
    @patch("wabot.services.rag_service.search_knowledge_global")
    @patch("wabot.services.rag_service.search_knowledge_product")
    def test_product_scoped_search_unions_product_and_global(self, mock_product, mock_global, mock_all):
        mock_product.side_effect = lambda db, emb, org, pid, thr, lim: [chunk(f"{pid} doc", scope="product")]
        mock_global.return_value = [chunk("global doc"), chunk("p-visa doc")]

        result = search_candidates(MagicMock(), EMBEDDING, ORG_ID, {"p-visa", "p-pass"})

        assert [c["content"] for c in result] == ["p-pass doc", "p-visa doc", "global doc"]
        assert mock_product.call_count == 2
        mock_global.assert_called_once()
        assert mock_global.call_args[0][3:] == (LOW_THRESHOLD, CANDIDATE_COUNT)
        mock_all.assert_not_called()

    @patch("wabot.services.rag_service.search_knowledge_global")
    @patch("wabot.services.rag_service.search_knowledge_product")
    @patch("wabot.services.rag_service.search_knowledge_all")
    def test_unscoped_search_uses_whole_organization(self, mock_all, mock_product, mock_global):
        mock_all.return_value = [chunk("a"), chunk("b")]

        result = search_candidates(MagicMock(), EMBEDDING, ORG_ID, set())

        assert len(result) == 2
        mock_all.assert_called_once()
        mock_product.assert_not_called()
        mock_global.assert_not_called()

    @patch("wabot.services.rag_service.search_knowledge_all")
    def test_emergency_threshold_when_nothing_found(self, mock_all):
        mock_all.side_effect = [[], [chunk("weak match")]]

        result = search_candidates(MagicMock(), EMBEDDING, ORG_ID, set())

        assert [c["content"] for c in result] == ["weak match"]
        assert mock_all.call_count == 2
        assert mock_all.call_args_list[0][0][3] == LOW_THRESHOLD
        assert mock_all.call_args_list[1][0][3] == EMERGENCY_THRESHOLD

    @patch("wabot.services.rag_service.alert_warning")
    @patch("wabot.services.rag_service.search_knowledge_global")
    @patch("wabot.services.rag_service.search_knowledge_product")
    def test_failed_source_degrades(self, mock_product, mock_global, mock_alert):
        mock_product.side_effect = Exception("connection reset")
        mock_global.return_value = [chunk("global doc")]

        result = search_candidates(MagicMock(), EMBEDDING, ORG_ID, {"p-visa"})

        assert [c["content"] for c in result] == ["global doc"]
        mock_alert.assert_called_once()

    @patch("wabot.services.rag_service.alert_warning")
    @patch("wabot.services.rag_service.search_knowledge_global")
    @patch("wabot.services.rag_service.search_knowledge_product")
    def test_each_search_runs_in_a_savepoint(self, mock_product, mock_global, _alert):
        db = MagicMock()
        mock_product.side_effect = Exception("operator does not exist: vector <=> numeric[]")
        mock_global.return_value = [chunk("global doc")]

        search_candidates(db, EMBEDDING, ORG_ID, {"p-visa"})

        assert db.begin_nested.call_count == 2
        savepoint = db.begin_nested.return_value
        failed_exit, ok_exit = savepoint.__exit__.call_args_list
        assert failed_exit[0][0] is Exception
        assert ok_exit[0][0] is None


class TestGetRelevantContext:
    @patch("wabot.services.voyage_service.httpx.Client")
    @patch("wabot.services.rag_service.search_knowledge_all")
    @patch("wabot.services.rag_service.generate_embedding")
    @patch("wabot.services.rag_service.get_organization_products")
    def test_rerank_bypassed_at_top_k(self, mock_products, mock_embed, mock_all, mock_http):
        mock_products.return_value = []
        mock_embed.return_value = EMBEDDING
        mock_all.return_value = [chunk(f"doc {i}") for i in range(TOP_K_AFTER_RERANK)]

        result = get_relevant_context(MagicMock(), "quais documentos preciso levar?", ORG_ID, history=[])

        assert [r.content for r in result] == [f"doc {i}" for i in range(5)]
        mock_http.assert_not_called()

    @patch("wabot.services.rag_service.rerank_results")
    @patch("wabot.services.rag_service.search_knowledge_all")
    @patch("wabot.services.rag_service.generate_embedding")
    @patch("wabot.services.rag_service.get_organization_products")
    def test_results_follow_rerank_order(self, mock_products, mock_embed, mock_all, mock_rerank):
        mock_products.return_value = []
        mock_embed.return_value = EMBEDDING
        mock_all.return_value = [chunk(f"doc {i}", category="preco") for i in range(8)]
        mock_rerank.return_value = [7, 2, 0, 5, 1]

        result = get_relevant_context(MagicMock(), "quanto custa o visto?", ORG_ID, history=[])

        assert [r.content for r in result] == ["doc 7", "doc 2", "doc 0", "doc 5", "doc 1"]
        assert result[0] == RAGContext(content="doc 7", scope="global", category="preco", title=None)
        assert mock_rerank.call_args[0][2] == TOP_K_AFTER_RERANK

    @patch("wabot.services.rag_service.search_knowledge_all")
    @patch("wabot.services.rag_service.generate_embedding")
    @patch("wabot.services.rag_service.get_organization_products")
    def test_embedding_failure_returns_empty(self, mock_products, mock_embed, mock_all):
        mock_products.return_value = []
        mock_embed.return_value = None

        assert get_relevant_context(MagicMock(), "quanto custa o visto?", ORG_ID) == []
        mock_all.assert_not_called()

    @patch("wabot.services.rag_service.get_organization_products")
    def test_never_raises(self, mock_products):
        mock_products.side_effect = RuntimeError("boom")

        assert get_relevant_context(MagicMock(), "quanto custa o visto?", ORG_ID) == []

    @patch("wabot.services.rag_service.search_knowledge_product")
    @patch("wabot.services.rag_service.search_knowledge_global")
    @patch("wabot.services.rag_service.generate_embedding")
    @patch("wabot.services.rag_service.get_organization_products")
    def test_detected_product_scopes_search(self, mock_products, mock_embed, mock_global, mock_product):
        mock_products.return_value = CATALOG
        mock_embed.return_value = EMBEDDING
        mock_product.return_value = [chunk("visa price", scope="product")]
        mock_global.return_value = []

        result = get_relevant_context(MagicMock(), "quanto custa o visto americano?", ORG_ID, history=[])

        assert [r.content for r in result] == ["visa price"]
        assert mock_product.call_args[0][3] == "p-visa"


class TestFormatRagContext:
    def test_empty(self):
        assert format_rag_context([]) == ""

    def test_includes_passages_and_anti_hallucination_rule(self):
        text = format_rag_context(
            [RAGContext(content="O visto custa US$ 185.", scope="product", category="preco", title="Taxas")]
        )
        assert "### PRODUCT | PRECO | Taxas" in text
        assert "O visto custa US$ 185." in text
        assert "ANTI-HALLUCINATION" in text
