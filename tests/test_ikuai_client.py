"""Unit tests for IKuaiClient."""

import base64
import hashlib
import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from ikuai_sync.cli import (
    IKuaiAPIError,
    IKuaiAuthError,
    IKuaiClient,
    RemoteEntry,
    ResourceKind,
)


def make_client() -> IKuaiClient:
    return IKuaiClient(url="http://ikuai.local/", username="admin", password="secret", timeout=7)


def make_response(payload) -> MagicMock:
    response = MagicMock()
    response.raise_for_status = MagicMock()
    response.json.return_value = payload
    return response


class TestIKuaiLogin:
    """Tests for IKuaiClient login."""

    def test_login_success_sends_hashed_credentials(self) -> None:
        """Login posts md5 and salted base64 forms of the password."""
        client = make_client()

        with patch.object(client._session, "post") as mock_post:
            mock_post.return_value = make_response({"Result": 10000, "ErrMsg": "Success"})

            client.login()

            mock_post.assert_called_once_with(
                "http://ikuai.local/Action/login",
                json={
                    "username": "admin",
                    "passwd": hashlib.md5(b"secret").hexdigest(),
                    "pass": base64.b64encode(b"salt_11secret").decode("ascii"),
                    "remember_password": "",
                },
                timeout=7,
            )

    def test_login_rejected_raises_auth_error(self) -> None:
        """A result code other than 10000 is an authentication failure."""
        client = make_client()

        with patch.object(client._session, "post") as mock_post:
            mock_post.return_value = make_response({"Result": 10001, "ErrMsg": "wrong password"})

            with pytest.raises(IKuaiAuthError, match="wrong password"):
                client.login()

    def test_login_connection_error_raises_auth_error(self) -> None:
        """Transport errors during login are reported as authentication failures."""
        client = make_client()

        with patch.object(client._session, "post") as mock_post:
            mock_post.side_effect = requests.exceptions.ConnectionError("Connection refused")

            with pytest.raises(IKuaiAuthError):
                client.login()

    def test_tls_verification_follows_setting(self) -> None:
        """verify_tls=False disables certificate checks on the session."""
        client = IKuaiClient("https://ikuai.local", "admin", "admin", verify_tls=False)

        assert client._session.verify is False


class TestIKuaiShow:
    """Tests for IKuaiClient show."""

    def test_show_returns_remote_entries(self) -> None:
        """Show maps each row to a RemoteEntry using the kind's name key."""
        client = make_client()
        payload = {
            "Result": 30000,
            "ErrMsg": "Success",
            "Data": {
                "data": [
                    {"id": 1, "group_name": "geo", "comment": "ikuai-sync", "addr_pool": "1.1.1.1"},
                    {"id": "2", "group_name": "other", "comment": ""},
                ]
            },
        }

        with patch.object(client._session, "post") as mock_post:
            mock_post.return_value = make_response(payload)

            entries = client.show(ResourceKind.IP_GROUP)

            assert entries == [
                RemoteEntry(id=1, name="geo", comment="ikuai-sync"),
                RemoteEntry(id=2, name="other", comment=""),
            ]
            assert entries[0].fields["addr_pool"] == "1.1.1.1"
            mock_post.assert_called_once_with(
                "http://ikuai.local/Action/call",
                json={"func_name": "ipgroup", "action": "show", "param": {"TYPE": "data"}},
                timeout=7,
            )

    def test_show_stream_domain_uses_interface_as_name(self) -> None:
        client = make_client()
        payload = {"Result": 30000, "Data": {"data": [{"id": 5, "interface": "wan2"}]}}

        with patch.object(client._session, "post") as mock_post:
            mock_post.return_value = make_response(payload)

            entries = client.show(ResourceKind.STREAM_DOMAIN)

            assert entries == [RemoteEntry(id=5, name="wan2")]

    def test_show_skips_rows_without_id(self) -> None:
        """Malformed rows are skipped instead of failing the whole listing."""
        client = make_client()
        payload = {
            "Result": 30000,
            "Data": {"data": [{"name": "no-id"}, "garbage", {"id": 3, "name": "cn"}]},
        }

        with patch.object(client._session, "post") as mock_post:
            mock_post.return_value = make_response(payload)

            entries = client.show(ResourceKind.CUSTOM_ISP)

            assert entries == [RemoteEntry(id=3, name="cn")]

    def test_show_empty_table(self) -> None:
        client = make_client()

        with patch.object(client._session, "post") as mock_post:
            mock_post.return_value = make_response({"Result": 30000, "Data": {}})

            assert client.show(ResourceKind.CUSTOM_ISP) == []

    def test_show_error_code_raises_api_error(self) -> None:
        """A non-success result code surfaces the device message and code."""
        client = make_client()

        with patch.object(client._session, "post") as mock_post:
            mock_post.return_value = make_response({"Result": 30001, "ErrMsg": "no permission"})

            with pytest.raises(IKuaiAPIError, match="no permission") as excinfo:
                client.show(ResourceKind.IP_GROUP)

            assert excinfo.value.result == 30001

    def test_invalid_json_raises_api_error(self) -> None:
        client = make_client()

        with patch.object(client._session, "post") as mock_post:
            response = make_response(None)
            response.json.side_effect = json.JSONDecodeError("Expecting value", "", 0)
            mock_post.return_value = response

            with pytest.raises(IKuaiAPIError):
                client.show(ResourceKind.IP_GROUP)


class TestIKuaiDelete:
    """Tests for IKuaiClient delete."""

    def test_delete_joins_ids(self) -> None:
        client = make_client()

        with patch.object(client._session, "post") as mock_post:
            mock_post.return_value = make_response({"Result": 30000})

            client.delete(ResourceKind.IP_GROUP, [1, 2, 10])

            mock_post.assert_called_once_with(
                "http://ikuai.local/Action/call",
                json={"func_name": "ipgroup", "action": "del", "param": {"id": "1,2,10"}},
                timeout=7,
            )

    def test_delete_without_ids_sends_nothing(self) -> None:
        """An empty ID list never reaches the router."""
        client = make_client()

        with patch.object(client._session, "post") as mock_post:
            client.delete(ResourceKind.IP_GROUP, [])

            mock_post.assert_not_called()


class TestIKuaiAdd:
    """Tests for IKuaiClient add."""

    def test_add_posts_params(self) -> None:
        client = make_client()
        param = {"name": "cn", "ipgroup": "1.0.1.0/24", "comment": "china"}

        with patch.object(client._session, "post") as mock_post:
            mock_post.return_value = make_response({"Result": 30000})

            client.add(ResourceKind.CUSTOM_ISP, param)

            mock_post.assert_called_once_with(
                "http://ikuai.local/Action/call",
                json={"func_name": "custom_isp", "action": "add", "param": param},
                timeout=7,
            )

    def test_add_http_error_raises_api_error(self) -> None:
        client = make_client()

        with patch.object(client._session, "post") as mock_post:
            response = make_response({})
            response.raise_for_status.side_effect = requests.exceptions.HTTPError("413 Too Large")
            mock_post.return_value = response

            with pytest.raises(IKuaiAPIError, match="413"):
                client.add(ResourceKind.IP_GROUP, {"group_name": "geo"})
