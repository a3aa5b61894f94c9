from unittest.mock import MagicMock, Mock, patch
from uuid import uuid4

import pytest

from wabot.models import Contact, MessageThread
from wabot.services.whatsapp_service import (
    ContentTemplateCache,
    hide_typing_indicator,
    prepare_buttons,
    send_whatsapp_message,
    show_typing_indicator,
)

TWILIO_CONFIG = {"account_sid": "AC123", "auth_token": "secret", "whatsapp_number": "+15550001111"}


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _response(status_code, payload):
    response = Mock()
    response.status_code = status_code
    response.json.return_value = payload
    response.text = str(payload)
    return response


@pytest.fixture
def thread():
    thread = MessageThread(id=uuid4(), organization_id=uuid4(), contact_id=uuid4(), awaiting_button_response=False)
    thread.contact = Contact(id=thread.contact_id, phone="+5511999990000")
    return thread


class TestContentTemplateCache:
    def test_hit_within_ttl(self):
        clock = FakeClock()
        cache = ContentTemplateCache(ttl_seconds=100, clock=clock)
        cache.set("k", "HX1")
        clock.now = 99
        assert cache.get("k") == "HX1"

    def test_expires_after_ttl(self):
        clock = FakeClock()
        cache = ContentTemplateCache(ttl_seconds=100, clock=clock)
        cache.set("k", "HX1")
        clock.now = 100
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_evicts_oldest_past_capacity(self):
        cache = ContentTemplateCache(max_entries=2, clock=FakeClock())
        cache.set("a", "HX1")
        cache.set("b", "HX2")
        cache.set("c", "HX3")
        assert cache.get("a") is None
        assert cache.get("c") == "HX3"
        assert len(cache) == 2

    def test_key_depends_on_body_and_buttons(self):
        buttons = [{"id": "1", "title": "Sim"}]
        assert ContentTemplateCache.make_key("a", buttons) == ContentTemplateCache.make_key("a", list(buttons))
        assert ContentTemplateCache.make_key("a", buttons) != ContentTemplateCache.make_key("b", buttons)


class TestPrepareButtons:
    def test_limits_count_and_title_length(self):
        buttons = [{"title": "Falar com um atendente humano agora"}, {"title": ""}, {"id": "x", "title": "B"}, {"title": "C"}]
        prepared = prepare_buttons(buttons)
        assert prepared == [{"id": "option_1", "title": "Falar com um atenden"}, {"id": "x", "title": "B"}]


class TestTypingIndicator:
    def test_show_and_hide(self, db_session, thread):
        show_typing_indicator(db_session, thread)
        assert thread.agent_typing is True
        assert thread.agent_typing_at is not None

        hide_typing_indicator(db_session, thread)
        assert thread.agent_typing is False
        assert thread.agent_typing_at is None


class TestSendWhatsAppMessage:
    @patch("wabot.services.whatsapp_service.get_twilio_config", return_value=TWILIO_CONFIG)
    @patch("wabot.services.whatsapp_service.httpx.Client")
    def test_sends_text_and_saves_message(self, mock_client_class, _config, db_session, thread):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = _response(201, {"sid": "SM1"})

        result = send_whatsapp_message(db_session, thread, "Olá!", metadata={"batch_key": "abc"})

        assert result.ok is True
        assert result.value.whatsapp_message_sid == "SM1"
        assert result.value.whatsapp_status == "sending"
        assert result.value.message_metadata == {"batch_key": "abc", "message_type": "text"}
        url = mock_client.post.call_args[0][0]
        form = mock_client.post.call_args[1]["data"]
        assert url.endswith("/Accounts/AC123/Messages.json")
        assert form == {"From": "whatsapp:+15550001111", "To": "whatsapp:+5511999990000", "Body": "Olá!"}
        assert thread.awaiting_button_response is False
        assert thread.agent_typing is False

    @patch("wabot.services.whatsapp_service.get_twilio_config", return_value=TWILIO_CONFIG)
    @patch("wabot.services.whatsapp_service.httpx.Client")
    def test_sends_pre_provisioned_template(self, mock_client_class, _config, db_session, thread):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = _response(201, {"sid": "SM9"})

        result = send_whatsapp_message(
            db_session, thread, "Lembrete", content_sid="HX42", content_variables={"1": "Maria"}
        )

        assert result.ok is True
        assert mock_client.post.call_count == 1
        form = mock_client.post.call_args[1]["data"]
        assert form["ContentSid"] == "HX42"
        assert form["ContentVariables"] == '{"1": "Maria"}'
        assert "Body" not in form
        assert result.value.message_metadata == {"message_type": "template"}

    @patch("wabot.services.whatsapp_service.get_twilio_config", return_value=TWILIO_CONFIG)
    @patch("wabot.services.whatsapp_service.httpx.Client")
    def test_buttons_use_content_template_and_set_thread_state(
        self, mock_client_class, _config, db_session, thread
    ):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.side_effect = [_response(201, {"sid": "HX1"}), _response(201, {"sid": "SM2"})]
        cache = ContentTemplateCache(clock=FakeClock())
        buttons = [{"id": "b1", "title": "Ver preços"}, {"id": "b2", "title": "Talk to agent"}]

        result = send_whatsapp_message(db_session, thread, "Como posso ajudar?", buttons=buttons, cache=cache)

        assert result.ok is True
        content_call, message_call = mock_client.post.call_args_list
        assert content_call[1]["json"]["types"]["twilio/quick-reply"]["actions"] == buttons
        assert message_call[1]["data"]["ContentSid"] == "HX1"
        assert "Body" not in message_call[1]["data"]
        assert thread.awaiting_button_response is True
        assert thread.button_options == buttons
        assert len(cache) == 1

    @patch("wabot.services.whatsapp_service.get_twilio_config", return_value=TWILIO_CONFIG)
    @patch("wabot.services.whatsapp_service.httpx.Client")
    def test_cached_template_is_reused(self, mock_client_class, _config, db_session, thread):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = _response(201, {"sid": "SM3"})
        buttons = [{"id": "b1", "title": "Sim"}]
        cache = ContentTemplateCache(clock=FakeClock())
        cache.set(cache.make_key("Confirma?", buttons), "HX9")

        send_whatsapp_message(db_session, thread, "Confirma?", buttons=buttons, cache=cache)

        mock_client.post.assert_called_once()
        assert mock_client.post.call_args[1]["data"]["ContentSid"] == "HX9"

    @patch("wabot.services.whatsapp_service.alert_error")
    @patch("wabot.services.whatsapp_service.get_twilio_config", return_value=TWILIO_CONFIG)
    @patch("wabot.services.whatsapp_service.httpx.Client")
    def test_failure_saves_failed_message(self, mock_client_class, _config, _alert, db_session, thread):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = _response(401, {"message": "Authenticate"})
        thread.agent_typing = True

        result = send_whatsapp_message(db_session, thread, "Olá!")

        assert result.ok is False
        assert result.error_code == "send_failed"
        saved = db_session.add.call_args[0][0]
        assert saved.whatsapp_status == "failed"
        assert "401" in saved.error_message
        assert thread.agent_typing is False

    @patch("wabot.services.whatsapp_service.alert_error")
    @patch("wabot.services.whatsapp_service.get_twilio_config")
    @patch("wabot.services.whatsapp_service.httpx.Client")
    def test_missing_credentials(self, mock_client_class, mock_config, _alert, db_session, thread):
        mock_config.return_value = {"account_sid": None, "auth_token": None, "whatsapp_number": None}

        result = send_whatsapp_message(db_session, thread, "Olá!")

        assert result.ok is False
        mock_client_class.assert_not_called()
        assert result.error_code == "not_configured"
