"""Tests for azext_mate.telemetry: App Insights telemetry collection."""

from unittest.mock import MagicMock, patch

import pytest

TELEMETRY_MODULE = "azext_mate.telemetry"

_FAKE_CONN_STRING = (
    "InstrumentationKey=00000000-0000-0000-0000-000000000000;"
    "IngestionEndpoint=https://test.in.applicationinsights.azure.com"
)


@pytest.fixture(autouse=True)
def _reset_telemetry():
    """Reset telemetry module state before each test."""
    from azext_mate.telemetry import reset
    reset()
    yield
    reset()


@pytest.fixture
def telemetry_on(monkeypatch):
    monkeypatch.setenv("APPINSIGHTS_CONNECTION_STRING", _FAKE_CONN_STRING)
    monkeypatch.setenv("AZURE_CORE_COLLECT_TELEMETRY", "yes")


# ======================================================================
# Gating
# ======================================================================


class TestIsEnabled:

    @pytest.mark.parametrize("value", ["no", "false", "0", "off"])
    def test_env_var_disables(self, monkeypatch, value):
        from azext_mate.telemetry import is_enabled

        monkeypatch.setenv("APPINSIGHTS_CONNECTION_STRING", _FAKE_CONN_STRING)
        monkeypatch.setenv("AZURE_CORE_COLLECT_TELEMETRY", value)
        assert is_enabled() is False

    def test_disabled_without_connection_string(self, monkeypatch):
        from azext_mate import telemetry

        monkeypatch.delenv("APPINSIGHTS_CONNECTION_STRING", raising=False)
        monkeypatch.setenv("AZURE_CORE_COLLECT_TELEMETRY", "yes")
        original = telemetry._BUILTIN_CONNECTION_STRING
        try:
            telemetry._BUILTIN_CONNECTION_STRING = ""
            assert telemetry.is_enabled() is False
        finally:
            telemetry._BUILTIN_CONNECTION_STRING = original

    def test_enabled_and_cached(self, monkeypatch, telemetry_on):
        from azext_mate import telemetry

        assert telemetry.is_enabled() is True
        monkeypatch.delenv("APPINSIGHTS_CONNECTION_STRING")
        assert telemetry.is_enabled() is True

    def test_exception_disables(self):
        from azext_mate.telemetry import is_enabled

        with patch(f"{TELEMETRY_MODULE}._is_cli_telemetry_enabled", side_effect=RuntimeError("boom")):
            assert is_enabled() is False


class TestParseConnectionString:

    def test_valid(self):
        from azext_mate.telemetry import _parse_connection_string

        endpoint, ikey = _parse_connection_string(_FAKE_CONN_STRING)
        assert endpoint == "https://test.in.applicationinsights.azure.com/v2/track"
        assert ikey == "00000000-0000-0000-0000-000000000000"

    @pytest.mark.parametrize("cs", ["", "garbage", "InstrumentationKey=abc"])
    def test_invalid(self, cs):
        from azext_mate.telemetry import _parse_connection_string

        assert _parse_connection_string(cs) == ("", "")


# ======================================================================
# Events
# ======================================================================


class TestTrackDeployment:

    def test_sends_shape_only(self, telemetry_on):
        from azext_mate.telemetry import track_deployment

        record = {
            "id": "abc123",
            "backend": "cloudshell",
            "state": "failed",
            "subscription": "sub-secret",
            "duration_seconds": 4.2,
            "error_category": "ConnectionError",
            "logs": [{"message": "Set-AzContext -Subscription 'sub-secret'"}] * 3,
        }
        with patch(f"{TELEMETRY_MODULE}._send_envelope", return_value=True) as mock_send:
            track_deployment(record)

        envelope, endpoint = mock_send.call_args[0]
        props = envelope["data"]["baseData"]["properties"]
        assert envelope["data"]["baseData"]["name"] == "deployment_finished"
        assert envelope["tags"]["ai.cloud.role"] == "az-mate"
        assert endpoint.endswith("/v2/track")
        assert props["backend"] == "cloudshell"
        assert props["state"] == "failed"
        assert props["logCount"] == "3"
        assert props["errorCategory"] == "ConnectionError"
        assert "sub-secret" not in str(envelope)

    def test_noop_when_disabled(self, monkeypatch):
        from azext_mate.telemetry import track_deployment

        monkeypatch.setenv("AZURE_CORE_COLLECT_TELEMETRY", "no")
        with patch(f"{TELEMETRY_MODULE}._send_envelope") as mock_send:
            track_deployment({"id": "x"})
        mock_send.assert_not_called()


class TestSanitizeParameters:

    def test_redacts_sensitive_keys(self):
        from azext_mate.telemetry import _sanitize_parameters

        clean = _sanitize_parameters({
            "access_token": "eyJ...",
            "tenant": "contoso",
            "backend": "local",
            "variables": ["a=b"],
            "_private": 1,
        })
        assert clean == {
            "access_token": "***",
            "tenant": "***",
            "backend": "local",
            "variables": "list",
        }


class TestTrackDecorator:

    def test_records_success(self, telemetry_on):
        from azext_mate.telemetry import track

        @track("mate deploy run")
        def handler(cmd, backend=None, access_token=None):
            return "ok"

        with patch(f"{TELEMETRY_MODULE}.track_command") as mock_track:
            assert handler(MagicMock(), backend="mock", access_token="secret") == "ok"

        args, kwargs = mock_track.call_args
        assert args[0] == "mate deploy run"
        assert kwargs["success"] is True
        assert kwargs["backend"] == "mock"

    def test_records_failure_and_reraises(self, telemetry_on):
        from azext_mate.telemetry import track

        @track("mate config set")
        def handler(cmd, key=None):
            raise ValueError("bad key")

        with patch(f"{TELEMETRY_MODULE}.track_command") as mock_track:
            with pytest.raises(ValueError):
                handler(MagicMock(), key="x")

        kwargs = mock_track.call_args[1]
        assert kwargs["success"] is False
        assert kwargs["error"] == "ValueError: bad key"

    def test_telemetry_errors_never_break_command(self):
        from azext_mate.telemetry import track

        @track("mate deploy list")
        def handler(cmd):
            return []

        with patch(f"{TELEMETRY_MODULE}.track_command", side_effect=RuntimeError("network")):
            assert handler(MagicMock()) == []

    def test_command_event_redacts_token(self, telemetry_on):
        from azext_mate.telemetry import track_command

        with patch(f"{TELEMETRY_MODULE}._send_envelope", return_value=True) as mock_send:
            track_command(
                "mate deploy run",
                success=True,
                parameters={"access_token": "eyJsecret", "backend": "local"},
                backend="local",
            )

        envelope = mock_send.call_args[0][0]
        assert "eyJsecret" not in str(envelope)
        assert envelope["data"]["baseData"]["properties"]["commandName"] == "mate deploy run"
