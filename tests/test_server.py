import json
import socket
import threading
import time
import urllib.error
import urllib.request
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from checkin_agent.config import Config
from checkin_agent.server import (
    AgentServer,
    Response,
    SystemInfo,
    TaskRequest,
    build_system_info,
    execute_task,
    extract_secure_key,
)

KEY_HEADERS = {"X-Secure-Key": "secret"}
PROXY_VARS = ("http_proxy", "HTTP_PROXY", "https_proxy", "HTTPS_PROXY", "all_proxy", "ALL_PROXY")


@pytest.fixture
def config(tmp_path):
    return Config(secure_key="secret", port=8080, file_path=tmp_path / "agent_config.json")


@pytest.fixture
def server(config):
    return AgentServer(config)


@pytest.fixture
def no_proxy(monkeypatch):
    for name in PROXY_VARS:
        monkeypatch.delenv(name, raising=False)


class _Pong(BaseHTTPRequestHandler):
    def do_GET(self):
        payload = b"pong"
        self.send_response(200)
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format, *args):
        return


@pytest.fixture
def pong_url(no_proxy):
    httpd = HTTPServer(("127.0.0.1", 0), _Pong)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{httpd.server_address[1]}/"
    httpd.shutdown()
    httpd.server_close()


def _decode(reply):
    status, headers, body = reply
    return status, headers, json.loads(body)


def _task_body(**values):
    return json.dumps(values).encode()


def test_health_needs_no_key(server):
    status, headers, payload = _decode(server.dispatch("GET", "/api/health", {}))
    assert status == 200
    assert headers["Content-Type"] == "application/json"
    assert payload == {"success": True, "message": "done"}


def test_health_body_ends_with_newline(server):
    _, _, body = server.dispatch("GET", "/api/health", {})
    assert body.endswith(b"\n")


def test_unknown_path_is_not_found(server):
    status, _, body = server.dispatch("GET", "/api/unknown", KEY_HEADERS)
    assert status == 404
    assert body == b"404 page not found\n"


def test_missing_key_is_unauthorized(server):
    status, _, payload = _decode(server.dispatch("GET", "/api/system/info", {}))
    assert status == 401
    assert payload == {"success": False, "message": "无效的安全密钥"}


def test_wrong_key_is_unauthorized(server):
    headers = {"X-Secure-Key": "token"}
    status, _, payload = _decode(
        server.dispatch("POST", "/api/task/execute", headers, _task_body(type="2"))
    )
    assert status == 401
    assert payload["success"] is False


def test_header_name_is_case_insensitive(server):
    headers = {"x-secure-key": "secret"}
    status, _, payload = _decode(
        server.dispatch("POST", "/api/task/execute", headers, _task_body(type="2"))
    )
    assert status == 200
    assert payload == {"success": False, "message": "Node.js命令执行功能尚未实现"}


def test_execute_requires_post(server):
    status, _, payload = _decode(server.dispatch("GET", "/api/task/execute", KEY_HEADERS))
    assert status == 405
    assert payload["message"] == "仅支持POST请求"


def test_execute_rejects_malformed_body(server):
    status, _, payload = _decode(server.dispatch("POST", "/api/task/execute", KEY_HEADERS, b"{"))
    assert status == 400
    assert payload["message"].startswith("无法解析请求体: ")


def test_execute_rejects_non_string_type(server):
    status, _, payload = _decode(
        server.dispatch("POST", "/api/task/execute", KEY_HEADERS, b'{"type": 1}')
    )
    assert status == 400
    assert payload["success"] is False


def test_execute_python_type(server):
    status, _, payload = _decode(
        server.dispatch("POST", "/api/task/execute", KEY_HEADERS, _task_body(type="3"))
    )
    assert status == 200
    assert payload["message"] == "Python命令执行功能尚未实现"


def test_execute_unknown_type_names_it(server):
    _, _, payload = _decode(
        server.dispatch("POST", "/api/task/execute", KEY_HEADERS, _task_body(type="9"))
    )
    assert payload["message"] == "不支持的任务类型: 9"


def test_html_characters_are_escaped_on_the_wire(server):
    _, _, body = server.dispatch("POST", "/api/task/execute", KEY_HEADERS, _task_body(type="<b>"))
    assert b"\\u003cb\\u003e" in body
    assert json.loads(body)["message"].endswith("<b>")


def test_execute_rejected_curl_command(server):
    status, _, payload = _decode(
        server.dispatch(
            "POST", "/api/task/execute", KEY_HEADERS, _task_body(type="1", command="ls -la")
        )
    )
    assert status == 400
    assert payload["message"] == "执行curl命令失败: 命令必须以curl开头"


def test_execute_curl_returns_body(server, pong_url):
    status, _, payload = _decode(
        server.dispatch(
            "POST", "/api/task/execute", KEY_HEADERS, _task_body(type="1", command=f"curl {pong_url}")
        )
    )
    assert status == 200
    assert payload == {"success": True, "data": "pong"}


def test_key_in_json_body_consumes_it(server):
    headers = {"Content-Type": "application/json"}
    body = _task_body(type="2", secure_key="secret")
    status, _, payload = _decode(server.dispatch("POST", "/api/task/execute", headers, body))
    assert status == 400
    assert payload["message"].startswith("无法解析请求体")


def test_system_info_reports_consistent_figures(server):
    status, _, payload = _decode(server.dispatch("GET", "/api/system/info", KEY_HEADERS))
    assert status == 200
    data = payload["data"]
    assert set(data) == {"total_memory_mb", "used_memory_mb", "memory_usage_perc", "cpu_usage_perc"}
    assert 0 <= data["used_memory_mb"] <= data["total_memory_mb"]
    assert 0 <= data["memory_usage_perc"] <= 100
    assert 0 <= data["cpu_usage_perc"] <= 100


def test_build_system_info_zero_total():
    info = build_system_info(0, 0, 0.0)
    assert info == SystemInfo(0, 0, 0.0, 0.0)


def test_build_system_info_converts_to_megabytes():
    info = build_system_info(4 * 1024 * 1024, 1024 * 1024, 50.0)
    assert (info.total_memory_mb, info.used_memory_mb) == (4, 1)
    assert info.memory_usage_perc == 25.0
    assert info.cpu_usage_perc == 50.0


def test_build_system_info_rounds_halves_away_from_zero():
    assert build_system_info(0, 0, 0.125).cpu_usage_perc == 0.13


def test_extract_key_from_header_first():
    headers = {"X-Secure-Key": "secret", "Content-Type": "application/x-www-form-urlencoded"}
    assert extract_secure_key("POST", headers, b"secure_key=token") == "secret"


def test_extract_key_from_form():
    headers = {"Content-Type": "application/x-www-form-urlencoded"}
    assert extract_secure_key("POST", headers, b"a=1&secure_key=secret") == "secret"


def test_extract_key_from_json():
    headers = {"Content-Type": "application/json"}
    assert extract_secure_key("POST", headers, b'{"secure_key": "secret"}') == "secret"


def test_extract_key_needs_exact_json_type():
    headers = {"Content-Type": "application/json; charset=utf-8"}
    assert extract_secure_key("POST", headers, b'{"secure_key": "secret"}') == ""


def test_extract_key_ignores_body_of_get():
    headers = {"Content-Type": "application/json"}
    assert extract_secure_key("GET", headers, b'{"secure_key": "secret"}') == ""


def test_response_omits_empty_fields():
    assert Response(True).to_dict() == {"success": True}


def test_response_keeps_empty_string_data():
    assert Response(True, data="").to_dict() == {"success": True, "data": ""}


def test_response_serialises_system_info():
    info = SystemInfo(1, 2, 3.5, 4.5)
    assert Response(True, data=info).to_dict()["data"] == {
        "total_memory_mb": 1,
        "used_memory_mb": 2,
        "memory_usage_perc": 3.5,
        "cpu_usage_perc": 4.5,
    }


def test_execute_task_node_type():
    status, response = execute_task(TaskRequest(type="2"))
    assert status == 200
    assert response == Response(False, "Node.js命令执行功能尚未实现")


def _free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _fetch(url, deadline=5.0):
    end = time.monotonic() + deadline
    while True:
        try:
            with urllib.request.urlopen(url, timeout=2) as response:
                return response.read()
        except (urllib.error.URLError, ConnectionError):
            if time.monotonic() > end:
                raise
            time.sleep(0.05)


def test_start_serves_until_stopped(tmp_path, no_proxy):
    port = _free_port()
    agent = AgentServer(Config("secret", port, tmp_path / "agent_config.json"))
    thread = threading.Thread(target=agent.start, daemon=True)
    thread.start()
    body = _fetch(f"http://127.0.0.1:{port}/api/health")
    agent.stop()
    thread.join(5)
    assert json.loads(body) == {"success": True, "message": "done"}
    assert not thread.is_alive()