from unittest.mock import MagicMock, Mock, patch

import httpx

from chatcommerce.services.alert_service import alert_error, format_alert, send_alert


class TestFormatAlert:
    def test_includes_level_and_context(self):
        text = format_alert("ERROR", "Job abandoned", {"job_id": "abc", "hook": "sync_stock"})
        assert "*ERROR*" in text
        assert "Job abandoned" in text
        assert "job_id: abc" in text
        assert "hook: sync_stock" in text

    def test_without_context(self):
        assert "```" not in format_alert("INFO", "hello")


class TestSendAlert:
    @patch("chatcommerce.services.alert_service.settings")
    def test_returns_false_when_not_configured(self, mock_settings):
        mock_settings.alert_bot_token = None
        mock_settings.alert_chat_id = None
        assert send_alert("ERROR", "Test message") is False

    @patch("chatcommerce.services.alert_service.httpx.Client")
    def test_sends_alert_to_telegram(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=200)

        result = send_alert("ERROR", "Test error message", {"job_id": "123"}, bot_token="t", chat_id="c")

        assert result is True
        call_args = mock_client.post.call_args
        assert call_args[0][0] == "https://api.telegram.org/bott/sendMessage"
        json_data = call_args[1]["json"]
        assert json_data["chat_id"] == "c"
        assert "ERROR" in json_data["text"]
        assert "123" in json_data["text"]

    @patch("chatcommerce.services.alert_service.httpx.Client")
    def test_returns_false_on_telegram_error(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(status_code=400)

        assert send_alert("ERROR", "Test message", bot_token="t", chat_id="c") is False

    @patch("chatcommerce.services.alert_service.httpx.Client")
    def test_returns_false_on_network_error(self, mock_client_class):
        mock_client_class.return_value.__enter__.side_effect = httpx.ConnectError("Network error")

        assert send_alert("ERROR", "Test message", bot_token="t", chat_id="c") is False


class TestShortcuts:
    @patch("chatcommerce.services.alert_service.send_alert")
    def test_alert_error(self, mock_send):
        mock_send.return_value = True
        assert alert_error("Job abandoned", {"job_id": "1"}) is True
        mock_send.assert_called_once_with("ERROR", "Job abandoned", {"job_id": "1"})
