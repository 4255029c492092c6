import pytest
from starlette.websockets import WebSocketDisconnect

SOCKET_URL = "/api/adsheet/v1/ws"
ACCOUNTS_URL = "/api/adsheet/v1/ad-accounts"


def _create_record(client, headers):
    payload = {"rows": [{"temp_marker": "temp-row-1-abc", "values": {"name": "A"}}]}
    response = client.post(f"{ACCOUNTS_URL}/bulk", json=payload, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()["data"]["rows"][0]


def test_socket_receives_updates_from_other_sessions(api_client, make_headers):
    record = _create_record(api_client, make_headers())

    with api_client.websocket_connect(
        f"{SOCKET_URL}?session_id=session_socket",
        headers=make_headers(),
    ) as socket:
        response = api_client.patch(
            f"{ACCOUNTS_URL}/{record['id']}",
            json={"name": "From elsewhere"},
            headers=make_headers(session_id="session_other"),
        )
        assert response.status_code == 200

        message = socket.receive_json()

    assert message["type"] == "field-update"
    assert message["session_id"] == "session_other"
    assert message["record_id"] == record["id"]
    assert message["new_value"] == "From elsewhere"


def test_socket_accepts_query_parameter_credentials(api_client, make_headers):
    record = _create_record(api_client, make_headers())
    url = f"{SOCKET_URL}?api_key=grid-test-key&tenant=acme&user_id=7&session_id=session_query"

    with api_client.websocket_connect(url) as socket:
        api_client.request(
            "DELETE",
            ACCOUNTS_URL,
            json={"ids": [record["id"]]},
            headers=make_headers(session_id="session_other"),
        )
        message = socket.receive_json()

    assert message["type"] == "full-refresh"


def test_status_is_relayed_between_sockets(api_client, make_headers):
    record = _create_record(api_client, make_headers())

    with api_client.websocket_connect(
        f"{SOCKET_URL}?session_id=session_tab1",
        headers=make_headers(),
    ) as first, api_client.websocket_connect(
        f"{SOCKET_URL}?session_id=session_tab2",
        headers=make_headers(),
    ) as second:
        first.send_json(
            {
                "type": "status-update",
                "record_id": record["id"],
                "status": "paused",
                "session_id": "session_tab1",
            }
        )
        message = second.receive_json()

        first.send_json({"type": "status-update", "record_id": 9999, "status": "paused"})
        error = first.receive_json()

    assert message["type"] == "cross-tab-status"
    assert message["record_id"] == record["id"]
    assert message["status"] == "paused"
    assert error["type"] == "error"
    assert "9999" in error["detail"]

    records = api_client.get(ACCOUNTS_URL, headers=make_headers()).json()["data"]
    assert records[0]["status"] == "paused"


def test_socket_without_api_key_is_closed(api_client, make_headers):
    headers = make_headers()
    headers.pop("X-API-Key")

    with pytest.raises(WebSocketDisconnect) as excinfo:
        with api_client.websocket_connect(SOCKET_URL, headers=headers):
            pass

    assert excinfo.value.code == 4401


def test_socket_with_unknown_tenant_is_closed(api_client, make_headers):
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with api_client.websocket_connect(SOCKET_URL, headers=make_headers(tenant_id="nobody")):
            pass

    assert excinfo.value.code == 4400
