import json

import httpx
import pytest
from typer.testing import CliRunner

import sellersync.main as cli
import sellersync.session as session_module
from sellersync.config import ENV_VARS
from sellersync.infra.http.seller_client import SellerApiClient

runner = CliRunner()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS.values():
        monkeypatch.delenv(name, raising=False)


def use_transport(monkeypatch, responder):
    def factory(**kwargs):
        kwargs["transport"] = httpx.MockTransport(responder)
        kwargs["retryBackoffSeconds"] = 0
        return SellerApiClient(**kwargs)

    monkeypatch.setattr(session_module, "SellerApiClient", factory)


def invoke(tmp_path, *args):
    return runner.invoke(
        cli.app,
        ["--base-url", "https://seller.local/api", "--api-token", "t", "--log-dir", str(tmp_path), *args],
    )


def test_help_shows_commands():
    result = runner.invoke(cli.app, ["--help"])
    assert result.exit_code == 0
    assert "notifications" in result.stdout
    assert "transactions" in result.stdout
    assert "check-config" in result.stdout


def test_command_requires_base_url(tmp_path):
    result = runner.invoke(cli.app, ["--log-dir", str(tmp_path), "notifications", "unread"])
    assert result.exit_code == 2


def test_mark_read_requires_id():
    result = runner.invoke(cli.app, ["notifications", "mark-read"])
    assert result.exit_code == 2


def test_unread_prints_count(tmp_path, monkeypatch):
    use_transport(monkeypatch, lambda request: httpx.Response(200, json={"data": {"unreadCount": 3}}))

    result = invoke(tmp_path, "notifications", "unread")

    assert result.exit_code == 0
    assert json.loads(result.stdout) == {"unread": 3}
    assert list(tmp_path.glob("notifications_unread_*.log"))


def test_unread_offline_prints_zero(tmp_path, monkeypatch):
    def responder(request):
        raise httpx.ConnectError("down", request=request)

    use_transport(monkeypatch, responder)

    result = invoke(tmp_path, "--retries", "0", "notifications", "unread")

    assert result.exit_code == 0
    assert json.loads(result.stdout) == {"unread": 0}


def test_failed_mark_read_exits_1(tmp_path, monkeypatch):
    def responder(request):
        if request.method == "PATCH":
            return httpx.Response(500, text="boom")
        return httpx.Response(200, json={"data": {"notifications": [], "unreadCount": 0}})

    use_transport(monkeypatch, responder)

    result = invoke(tmp_path, "notifications", "mark-read", "n1")

    assert result.exit_code == 1


def test_transactions_show_falls_back_to_scan(tmp_path, monkeypatch):
    def responder(request):
        if request.url.path.endswith("/transactions/tx-9"):
            return httpx.Response(404)
        return httpx.Response(
            200,
            json={"data": {"transactions": [{"_id": "tx-9", "amount": 12, "description": "Order earning"}]}},
        )

    use_transport(monkeypatch, responder)

    result = invoke(tmp_path, "transactions", "show", "tx-9")

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["id"] == "tx-9"
    assert payload["direction"] == "credit"


def test_transactions_list_rejects_bad_date(tmp_path):
    result = invoke(tmp_path, "transactions", "list", "--start", "yesterday")
    assert result.exit_code == 2


def test_date_only_end_includes_the_whole_day(tmp_path, monkeypatch):
    seen = {}

    def responder(request):
        seen["params"] = dict(request.url.params)
        body = {"data": {"transactions": [{"_id": "tx-1", "amount": 5, "createdAt": "2024-05-01T12:00:00Z"}]}}
        return httpx.Response(200, json=body)

    use_transport(monkeypatch, responder)

    result = invoke(tmp_path, "transactions", "list", "--start", "2024-05-01", "--end", "2024-05-01")

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert [record["id"] for record in payload["records"]] == ["tx-1"]
    assert payload["total"] == 1
    assert seen["params"]["startDate"] == "2024-05-01T00:00:00+00:00"
    assert seen["params"]["endDate"] == "2024-05-01T23:59:59.999999+00:00"


def test_watch_prints_each_refresh(tmp_path, monkeypatch):
    use_transport(monkeypatch, lambda request: httpx.Response(200, json={"data": {"unreadCount": 1}}))

    result = invoke(tmp_path, "--unread-refresh-seconds", "0.01", "notifications", "watch", "--cycles", "2")

    assert result.exit_code == 0
    lines = [json.loads(line) for line in result.stdout.splitlines()]
    assert [line["unread"] for line in lines] == [1, 1]
